"""
Tests for taxonomic name resolution

Tests cover:
- Canonical name parsing
- WoRMS REST client (not-found handling, accepted filter, errors)
- Accepted → any status → unresolved fallback chain
- Manual override precedence

WoRMS is never contacted; the HTTP session is mocked.
"""

from unittest.mock import Mock

import pytest
import requests

from models.datasets.marine_reserve_edna.taxonomy import (
    ManualOverride,
    NameParser,
    Resolution,
    TaxonResolver,
    WoRMSClient,
    apply_manual_overrides,
    format_worms_lsid,
)


def make_response(status_code=200, payload=None):
    response = Mock()
    response.status_code = status_code
    response.json.return_value = payload
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(f"{status_code} error")
    else:
        response.raise_for_status.return_value = None
    return response


class TestNameParser:
    """Tests for canonical name parsing."""

    @pytest.mark.parametrize("raw, expected", [
        ("Diplodus sargus", "Diplodus sargus"),
        ("Diplodus sargus (Linnaeus, 1758)", "Diplodus sargus"),
        ("Symphodus melops Linnaeus, 1758", "Symphodus melops"),
        ("Diplodus cf. vulgaris", "Diplodus vulgaris"),
        ("Gobiidae sp.", "Gobiidae"),
        ("Atherina spp.", "Atherina"),
        ("Diplodus sargus cadenati de la Paz, Bauchot & Daget, 1974", "Diplodus sargus cadenati"),
        ("Diplodus sargus subsp. sargus", "Diplodus sargus sargus"),
        ("  Mullus surmuletus  ", "Mullus surmuletus"),
        ("Pomatoschistus lozanoi de Buen, 1923", "Pomatoschistus lozanoi"),
        ("Raja clavata van Beneden", "Raja clavata"),
        ("Diplodus vulgaris du Geoffroy", "Diplodus vulgaris"),
        ("Trachurus trachurus von Linne", "Trachurus trachurus"),
    ])
    def test_parse_canonical(self, raw, expected):
        assert NameParser().parse(raw) == expected

    @pytest.mark.parametrize("raw", [None, float('nan'), "", "   ", "NA", "unidentified fish", "12S OTU",
                                     "Unidentified", "Unknown sp.", "Unassigned"])
    def test_unparseable(self, raw):
        assert NameParser().parse(raw) is None


class TestWoRMSClient:
    """Tests for the WoRMS REST client."""

    def test_not_found_returns_empty(self):
        session = Mock()
        session.get.return_value = make_response(204)
        client = WoRMSClient(session=session)

        assert client.records_by_name("Nonexistus fictus") == []
        assert client.get_ids("Nonexistus fictus", accepted_only=False) == []

    def test_request_parameters(self):
        session = Mock()
        session.get.return_value = make_response(204)
        client = WoRMSClient(server_url="https://example.org/rest/", timeout=5, session=session)

        client.records_by_name("Diplodus sargus", fuzzy=True)

        args, kwargs = session.get.call_args
        assert args[0] == "https://example.org/rest/AphiaRecordsByName/Diplodus%20sargus"
        assert kwargs['params'] == {'like': 'true', 'marine_only': 'false'}
        assert kwargs['timeout'] == 5

    def test_accepted_filter(self):
        session = Mock()
        session.get.return_value = make_response(200, [
            {'AphiaID': 1, 'status': 'unaccepted'},
            {'AphiaID': 2, 'status': 'accepted'},
            {'AphiaID': 3, 'status': 'accepted'},
        ])
        client = WoRMSClient(session=session)

        assert client.get_ids("Diplodus sargus", accepted_only=True) == [2, 3]
        assert client.get_ids("Diplodus sargus", accepted_only=False) == [1, 2, 3]

    def test_http_error_propagates(self):
        session = Mock()
        session.get.return_value = make_response(500)
        client = WoRMSClient(session=session)

        with pytest.raises(requests.HTTPError):
            client.get_ids("Diplodus sargus", accepted_only=True)

    def test_format_lsid(self):
        assert format_worms_lsid(127053) == "urn:lsid:marinespecies.org:taxname:127053"
        assert format_worms_lsid(None) is None


class TestTaxonResolver:
    """Tests for the resolution chain."""

    def test_accepted_match(self, resolver):
        [result] = resolver.resolve(["Diplodus sargus (Linnaeus, 1758)"])

        assert result.canonical_name == "Diplodus sargus"
        assert result.identifier == "urn:lsid:marinespecies.org:taxname:127053"
        assert result.strategy == "accepted"

    def test_first_candidate_wins(self, resolver):
        [result] = resolver.resolve(["Diplodus sargus"])
        assert result.identifier.endswith(":127053")

    def test_falls_back_to_any_status(self, resolver):
        [result] = resolver.resolve(["Gobiidae sp."])

        assert result.resolved
        assert result.identifier == "urn:lsid:marinespecies.org:taxname:125537"
        assert result.strategy == "any"

    def test_unresolved_in_both_modes(self, resolver, worms_client):
        with pytest.warns(UserWarning, match="No WoRMS match"):
            [result] = resolver.resolve(["Nonexistus fictus"])

        assert result.canonical_name == "Nonexistus fictus"
        assert result.identifier is None
        assert not result.resolved
        assert worms_client.get_ids.call_count == 2

    def test_placeholder_label_skips_lookup(self, resolver, worms_client):
        with pytest.warns(UserWarning, match="Could not parse"):
            [result] = resolver.resolve(["Unknown"])

        assert not result.resolved
        assert result.canonical_name is None
        worms_client.get_ids.assert_not_called()

    def test_unparseable_skips_lookup(self, resolver, worms_client):
        with pytest.warns(UserWarning, match="Could not parse"):
            [result] = resolver.resolve([None])

        assert result == Resolution(raw_name=None)
        worms_client.get_ids.assert_not_called()

    def test_one_entry_per_input_in_order(self, resolver, worms_client):
        names = ["Gobiidae sp.", "Diplodus sargus", None, "Diplodus sargus (Linnaeus, 1758)"]
        results = resolver.resolve(names)

        assert [r.raw_name for r in results] == names
        assert [r.canonical_name for r in results] == [
            "Gobiidae", "Diplodus sargus", None, "Diplodus sargus"
        ]
        # Each distinct canonical name is looked up once per strategy needed
        looked_up = [c.args[0] for c in worms_client.get_ids.call_args_list]
        assert looked_up.count("Diplodus sargus") == 1
        assert looked_up.count("Gobiidae") == 2

    def test_transport_failure_is_fatal(self, worms_client):
        worms_client.get_ids.side_effect = requests.ConnectionError("network down")
        resolver = TaxonResolver(worms_client)

        with pytest.raises(requests.ConnectionError):
            resolver.resolve(["Diplodus sargus"])


class TestManualOverrides:
    """Tests for positional overrides."""

    def test_override_wins(self, resolver):
        results = resolver.resolve(["Diplodus sargus", "Gobiidae sp."])
        overrides = [
            ManualOverride(row=0, scientific_name="Diplodus vulgaris",
                           scientific_name_id="urn:lsid:marinespecies.org:taxname:127054"),
        ]

        final = apply_manual_overrides(results, overrides)

        assert final[0].canonical_name == "Diplodus vulgaris"
        assert final[0].identifier == "urn:lsid:marinespecies.org:taxname:127054"
        assert final[0].strategy == "override"
        assert final[0].raw_name == "Diplodus sargus"
        assert final[1] == results[1]

    def test_override_applies_to_unresolved(self):
        results = [Resolution(raw_name="Teleostei sp. 4")]
        overrides = [ManualOverride(row=0, scientific_name="Teleostei",
                                    scientific_name_id="urn:lsid:marinespecies.org:taxname:293496")]

        [final] = apply_manual_overrides(results, overrides)

        assert final.canonical_name == "Teleostei"
        assert final.resolved

    def test_out_of_range(self):
        with pytest.raises(ValueError, match="out of range"):
            apply_manual_overrides([Resolution(raw_name="x")], [ManualOverride(row=5, scientific_name="X")])

    def test_from_dict(self):
        override = ManualOverride.from_dict({
            'row': '3', 'scientificName': 'Gobiidae',
            'scientificNameID': 'urn:lsid:marinespecies.org:taxname:125537',
        })
        assert override == ManualOverride(3, 'Gobiidae', 'urn:lsid:marinespecies.org:taxname:125537')
