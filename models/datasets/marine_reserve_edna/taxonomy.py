"""
Taxonomic name resolution against the World Register of Marine Species (WoRMS)
Raw species labels → canonical names → WoRMS LSIDs, with manual corrections
"""

import re
import warnings
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence
from urllib.parse import quote

import pandas as pd
import requests


WORMS_SERVER = "https://www.marinespecies.org/rest"

WORMS_LSID_PREFIX = "urn:lsid:marinespecies.org:taxname:"


# ============================================================================
# NAME PARSING
# ============================================================================

class NameParser:
    """
    Reduce a free-text species label to its canonical scientific name.

    Authorship, rank markers and identification qualifiers are dropped, so
    "Diplodus cf. sargus (Linnaeus, 1758)" becomes "Diplodus sargus" and
    "Gobiidae sp." becomes "Gobiidae".
    """

    QUALIFIERS = {'cf.', 'cf', 'aff.', 'aff', 'nr.', 'sp.', 'sp', 'spp.', 'spp', '?'}
    RANK_MARKERS = {'subsp.', 'ssp.', 'var.', 'f.', 'forma'}
    # Lowercase particles that open an author name, e.g. "de Buen"
    AUTHOR_PARTICLES = {'de', 'da', 'del', 'della', 'dos', 'du', 'la', 'le', 'van', 'von', 'der', 'den', 'ter'}
    # Labels used for OTUs without any identification
    PLACEHOLDERS = {'unidentified', 'unknown', 'unassigned', 'unclassified', 'undetermined',
                    'uncultured', 'environmental', 'none', 'na', 'nan'}

    GENUS_RE = re.compile(r"^[A-Z][a-z]+(?:-[a-z]+)?$")
    EPITHET_RE = re.compile(r"^[a-z][a-z]+(?:-[a-z]+)?$")

    def parse(self, raw_name) -> Optional[str]:
        """
        Parse a raw label into a canonical uninomial, binomial or trinomial.

        Args:
            raw_name: Species text as it appears in the source spreadsheet

        Returns:
            The canonical name, or None when no name can be recognised
        """
        if raw_name is None or pd.isna(raw_name):
            return None

        text = str(raw_name).strip()
        # Parenthesised authorship, e.g. "(Linnaeus, 1758)"
        text = re.sub(r"\([^)]*\)", " ", text)
        tokens = text.replace(',', ' ').split()
        if not tokens:
            return None

        genus = tokens[0]
        if not self.GENUS_RE.match(genus) or genus.lower() in self.PLACEHOLDERS:
            return None

        parts = [genus]
        for token in tokens[1:]:
            if token in self.QUALIFIERS or token in self.RANK_MARKERS:
                continue
            if token in self.AUTHOR_PARTICLES:
                break
            if self.EPITHET_RE.match(token) and len(parts) < 3:
                parts.append(token)
                continue
            # Anything else starts the authorship
            break

        return ' '.join(parts)


# ============================================================================
# WORMS CLIENT
# ============================================================================

class WoRMSClient:
    """Minimal WoRMS REST client for name → AphiaID lookups."""

    def __init__(self, server_url: str = WORMS_SERVER, marine_only: bool = False,
                 timeout: float = 30.0, session: requests.Session = None):
        self.server_url = server_url.rstrip('/')
        self.marine_only = marine_only
        self.timeout = timeout
        self.session = session or requests.Session()

    def records_by_name(self, name: str, fuzzy: bool = True) -> List[Dict]:
        """
        Fetch Aphia records matching a scientific name.

        WoRMS answers HTTP 204 when nothing matches; that is returned as an
        empty list. Every other failure is raised.

        Args:
            name: Canonical scientific name
            fuzzy: Use WoRMS "like" matching instead of an exact match

        Returns:
            List of Aphia record dicts, in WoRMS order
        """
        url = f"{self.server_url}/AphiaRecordsByName/{quote(name)}"
        params = {
            'like': str(fuzzy).lower(),
            'marine_only': str(self.marine_only).lower(),
        }

        response = self.session.get(url, params=params, timeout=self.timeout)
        if response.status_code == 204:
            return []
        response.raise_for_status()

        return response.json() or []

    def get_ids(self, name: str, accepted_only: bool, fuzzy: bool = True) -> List[int]:
        """Return candidate AphiaIDs for a name, optionally only accepted ones."""
        records = self.records_by_name(name, fuzzy=fuzzy)
        if accepted_only:
            records = [r for r in records if r.get('status') == 'accepted']
        return [r['AphiaID'] for r in records if r.get('AphiaID') is not None]


def format_worms_lsid(aphia_id) -> Optional[str]:
    """Format a WoRMS AphiaID as LSID."""
    if aphia_id is None or pd.isna(aphia_id):
        return None
    return f"{WORMS_LSID_PREFIX}{int(aphia_id)}"


# ============================================================================
# RESOLVER
# ============================================================================

@dataclass(frozen=True)
class Resolution:
    """Outcome of resolving one raw species label."""
    raw_name: Optional[str]
    canonical_name: Optional[str] = None
    identifier: Optional[str] = None
    strategy: Optional[str] = None

    @property
    def resolved(self) -> bool:
        return self.identifier is not None


@dataclass(frozen=True)
class LookupStrategy:
    """One step of the resolution chain."""
    name: str
    accepted_only: bool


DEFAULT_STRATEGIES = (
    LookupStrategy('accepted', accepted_only=True),
    LookupStrategy('any', accepted_only=False),
)


class TaxonResolver:
    """
    Resolve species labels to canonical names and WoRMS identifiers.

    Each distinct canonical name is looked up once, walking the strategy chain
    (accepted names first, then any status) and stopping at the first match.
    Names that cannot be parsed or found stay unresolved; they never abort the
    batch.
    """

    def __init__(self, client: WoRMSClient, parser: NameParser = None,
                 fuzzy: bool = True, strategies: Sequence[LookupStrategy] = DEFAULT_STRATEGIES):
        self.client = client
        self.parser = parser or NameParser()
        self.fuzzy = fuzzy
        self.strategies = tuple(strategies)

    def lookup(self, canonical_name: str) -> Resolution:
        """Run the strategy chain for a single canonical name."""
        for strategy in self.strategies:
            ids = self.client.get_ids(canonical_name,
                                      accepted_only=strategy.accepted_only,
                                      fuzzy=self.fuzzy)
            if ids:
                return Resolution(
                    raw_name=None,
                    canonical_name=canonical_name,
                    identifier=format_worms_lsid(ids[0]),
                    strategy=strategy.name,
                )

        return Resolution(raw_name=None, canonical_name=canonical_name)

    def resolve(self, raw_names: Sequence) -> List[Resolution]:
        """
        Resolve a sequence of raw labels.

        Args:
            raw_names: Species labels, one per occurrence row

        Returns:
            One Resolution per input, in input order
        """
        raw_names = list(raw_names)
        canonical = [self.parser.parse(n) for n in raw_names]

        distinct = list(dict.fromkeys(c for c in canonical if c is not None))
        print(f"  - Resolving {len(distinct)} distinct names against WoRMS...")

        matches: Dict[str, Resolution] = {}
        for name in distinct:
            matches[name] = self.lookup(name)

        unparsed = sorted({str(raw) for raw, c in zip(raw_names, canonical) if c is None})
        if unparsed:
            warnings.warn(f"Could not parse {len(unparsed)} species label(s): {unparsed}")

        unresolved = sorted(n for n, m in matches.items() if not m.resolved)
        if unresolved:
            warnings.warn(f"No WoRMS match for {len(unresolved)} name(s): {unresolved}")

        results = []
        for raw, name in zip(raw_names, canonical):
            if name is None:
                results.append(Resolution(raw_name=raw))
                continue
            match = matches[name]
            results.append(Resolution(
                raw_name=raw,
                canonical_name=match.canonical_name,
                identifier=match.identifier,
                strategy=match.strategy,
            ))

        resolved = sum(1 for m in matches.values() if m.resolved)
        print(f"    Resolved {resolved} of {len(distinct)} names")
        return results


# ============================================================================
# MANUAL OVERRIDES
# ============================================================================

@dataclass(frozen=True)
class ManualOverride:
    """Curated correction for one occurrence row."""
    row: int
    scientific_name: str
    scientific_name_id: Optional[str] = None

    @classmethod
    def from_dict(cls, entry: Dict) -> 'ManualOverride':
        return cls(
            row=int(entry['row']),
            scientific_name=entry['scientificName'],
            scientific_name_id=entry.get('scientificNameID'),
        )


def apply_manual_overrides(resolutions: List[Resolution],
                           overrides: Sequence[ManualOverride]) -> List[Resolution]:
    """
    Overwrite name and identifier at fixed row positions.

    Overrides win over whatever automated resolution produced. Row positions
    are 0-based and refer to the occurrence table order.

    Raises:
        ValueError: if an override points past the end of the table
    """
    result = list(resolutions)
    for override in overrides:
        if not 0 <= override.row < len(result):
            raise ValueError(
                f"Manual override row {override.row} is out of range "
                f"for {len(result)} occurrence rows"
            )
        current = result[override.row]
        result[override.row] = Resolution(
            raw_name=current.raw_name,
            canonical_name=override.scientific_name,
            identifier=override.scientific_name_id,
            strategy='override',
        )

    if overrides:
        print(f"  - Applied {len(overrides)} manual taxonomy overrides")
    return result
