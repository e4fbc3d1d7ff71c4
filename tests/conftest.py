"""Shared fixtures for the marine reserve eDNA pipeline tests."""

from unittest.mock import Mock

import pandas as pd
import pytest

from models.datasets.marine_reserve_edna.taxonomy import TaxonResolver, WoRMSClient
from models.datasets.marine_reserve_edna.transform import MAPPING_SCHEMA, MappingEngine


# (canonical name, accepted_only) -> AphiaIDs returned by the fake registry
WORMS_IDS = {
    ('Diplodus sargus', True): [127053, 999999],
    ('Gobiidae', True): [],
    ('Gobiidae', False): [125537],
}


def fake_get_ids(name, accepted_only, fuzzy=True):
    return WORMS_IDS.get((name, accepted_only), [])


@pytest.fixture
def worms_client():
    """WoRMSClient stand-in answering from WORMS_IDS."""
    client = Mock(spec=WoRMSClient)
    client.get_ids.side_effect = fake_get_ids
    return client


@pytest.fixture
def resolver(worms_client):
    return TaxonResolver(worms_client)


@pytest.fixture
def mapping_engine():
    return MappingEngine(MAPPING_SCHEMA)


@pytest.fixture
def primary_df():
    """Three detections: two in a linked sample, one in an unknown sample."""
    return pd.DataFrame({
        'Sample name': ['S01', 'S01', 'S99'],
        'Collection method': ['Water filtration', 'Water filtration', 'Water filtration'],
        'Date': [pd.Timestamp('2023-09-12'), pd.Timestamp('2023-09-12'), pd.Timestamp('2023-10-03')],
        'Month': ['Sept', 'Sept', 'Oct'],
        'Season': ['Autumn', 'Autumn', 'Autumn'],
        'Year': [2023, 2023, 2023],
        'Bathymetry': ['30-45', '30-45', '10'],
        'Latitude': ["41°19'41.0''N", "41°19'41.0''N", "41 19 41 N"],
        'Longitude': ["8°53'12.3''W", "8°53'12.3''W", "8°50'00.0''W"],
        'Reads': [120, 35, 8],
        'OTU': [1, 2, 3],
        'Domain': ['Eukaryota'] * 3,
        'Kingdom': ['Animalia'] * 3,
        'Phylum': ['Chordata'] * 3,
        'Class': ['Actinopteri'] * 3,
        'Order': ['Eupercaria incertae sedis', 'Gobiiformes', None],
        'Family': ['Sparidae', 'Gobiidae', None],
        'Genus': ['Diplodus', None, None],
        'Species': ['Diplodus sargus (Linnaeus, 1758)', 'Gobiidae sp.', None],
    })


@pytest.fixture
def read_counts_df():
    return pd.DataFrame({
        'sample_name': ['S01', 'S02'],
        'filtered_reads': [15230, 9800],
    })


@pytest.fixture
def sequences_df():
    return pd.DataFrame({
        'taxonID': [1, 2, 2],
        'Sequence': ['ACGTACGT', 'TTGGCCAA', 'TTGGCCAA'],
    }).drop_duplicates()
