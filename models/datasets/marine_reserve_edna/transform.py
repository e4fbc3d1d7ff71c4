"""
Marine Reserve eDNA Survey to Darwin Core - Complete Pipeline
Reads spreadsheets → Resolves taxonomy → Transforms → Writes DwC tables
"""

import argparse
import hashlib
import re
import warnings
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pandas as pd
import yaml

from .taxonomy import (
    WORMS_SERVER,
    ManualOverride,
    TaxonResolver,
    WoRMSClient,
    apply_manual_overrides,
)


# ============================================================================
# CONFIGURATION
# ============================================================================

DATASET_DIR = Path(__file__).parent

# Input files, relative to the working directory
PRIMARY_SPREADSHEET = Path("data") / "edna_detections.xlsx"
SEQUENCE_TABLE = Path("data") / "otu_sequences.csv"
READ_COUNT_SPREADSHEET = Path("data") / "filtered_read_counts.xlsx"

OUTPUT_DIR = Path("dwc_output")

OCCURRENCE_FILE = "occurrence.csv"
DNA_DERIVED_FILE = "dna_derived_data.csv"

# LinkML mapping schema and dataset configuration
MAPPING_SCHEMA = DATASET_DIR / "marine-reserve-to-dwc-mappings.yaml"
DATASET_CONFIG = DATASET_DIR / "marine-reserve-config.yaml"

PRIMARY_COLUMNS = [
    'Sample name', 'Collection method', 'Date', 'Month', 'Season', 'Year',
    'Bathymetry', 'Latitude', 'Longitude', 'Reads', 'OTU',
    'Domain', 'Kingdom', 'Phylum', 'Class', 'Order', 'Family', 'Genus',
    'Species',
]

SEQUENCE_COLUMNS = ['taxonID', 'Sequence']

READ_COUNT_COLUMNS = ['sample_name', 'filtered_reads']

MONTHS = {
    'Jan': 1, 'Feb': 2, 'Mar': 3, 'Apr': 4, 'May': 5, 'Jun': 6,
    'Jul': 7, 'Aug': 8, 'Sep': 9, 'Oct': 10, 'Nov': 11, 'Dec': 12,
}

# Spellings found in the survey spreadsheets
MONTH_FIXES = {'Sept': 'Sep'}

DMS_PATTERN = re.compile(
    r"^\s*(\d+(?:[.,]\d+)?)\s*[°º˚]\s*"
    r"(\d+(?:[.,]\d+)?)\s*['′’´]\s*"
    r"(\d+(?:[.,]\d+)?)\s*(?:''|´´|\"|″|”|“|′′|’’)\s*"
    r"([NSEWnsew])\s*$"
)


# ============================================================================
# GENERIC MAPPING ENGINE
# ============================================================================

class MappingEngine:
    """
    Generic transformation engine that reads LinkML mapping schemas and applies
    exact_mappings renames and ifabsent constants to DataFrames.
    """

    IFABSENT_PATTERN = re.compile(r"^(string|int|integer|float|double|boolean)\((.*)\)$", re.DOTALL)

    def __init__(self, mapping_schema_path):
        """
        Initialize the mapping engine with a LinkML mapping schema.

        Args:
            mapping_schema_path: Path to the LinkML mapping schema YAML file
        """
        self.schema_path = Path(mapping_schema_path)
        self.schema = self._load_schema()
        self.classes = self.schema.get('classes', {})
        self.slots = self.schema.get('slots', {})

    def _load_schema(self) -> Dict:
        """Load and parse the LinkML schema YAML file."""
        with open(self.schema_path, 'r', encoding='utf-8') as f:
            return yaml.safe_load(f)

    def _extract_source_field(self, mapping: str) -> str:
        """
        Extract the source field name from a mapping string.

        Args:
            mapping: String like "reserve_edna:Sample name"

        Returns:
            The field name after the colon (e.g., "Sample name")
        """
        if ':' in mapping:
            return mapping.split(':', 1)[1]
        return mapping

    def slot_names(self, class_name: str) -> List[str]:
        """Ordered slot names of a target class."""
        if class_name not in self.classes:
            raise ValueError(f"Class '{class_name}' not found in schema")
        return list(self.classes[class_name].get('slots', []))

    def _get_slot_mappings(self, class_name: str) -> Dict[str, Dict]:
        """
        Get all slot mappings for a given class.

        Args:
            class_name: Name of the target class (e.g., "Occurrence", "DNADerivedData")

        Returns:
            Dictionary mapping target field names to their mapping specifications
        """
        mappings = {}
        for slot_name in self.slot_names(class_name):
            slot_def = self.slots.get(slot_name) or {}
            mappings[slot_name] = {
                'definition': slot_def,
                'exact_mappings': slot_def.get('exact_mappings', []),
                'range': slot_def.get('range', 'string'),
                'required': slot_def.get('required', False),
                'ifabsent': slot_def.get('ifabsent'),
            }

        return mappings

    def _convert_type(self, value: Any, target_range: str) -> Any:
        """
        Convert a value to the target type specified in the LinkML range.

        Returns:
            Converted value, or None if conversion fails
        """
        if pd.isna(value):
            return None

        try:
            if target_range == 'integer':
                return int(value)
            elif target_range == 'float' or target_range == 'double':
                return float(value)
            elif target_range == 'string':
                return str(value)
            else:
                return value
        except (ValueError, TypeError):
            warnings.warn(f"Could not convert '{value}' to {target_range}")
            return None

    def _parse_ifabsent(self, ifabsent: str) -> Any:
        """
        Turn a LinkML ifabsent expression into a literal value.

        Args:
            ifabsent: Expression like "string(present)" or "int(0)"
        """
        match = self.IFABSENT_PATTERN.match(str(ifabsent).strip())
        if not match:
            raise ValueError(f"Unsupported ifabsent expression: {ifabsent!r}")

        kind, literal = match.groups()
        if kind in ('int', 'integer'):
            return int(literal)
        if kind in ('float', 'double'):
            return float(literal)
        if kind == 'boolean':
            return literal.strip().lower() == 'true'
        return literal

    def constants(self, class_name: str) -> Dict[str, Any]:
        """Constant values of all slots of a class that declare ifabsent."""
        return {
            slot_name: self._parse_ifabsent(spec['ifabsent'])
            for slot_name, spec in self._get_slot_mappings(class_name).items()
            if spec['ifabsent'] is not None
        }

    def transform_dataframe(self, source_df: pd.DataFrame, target_class: str) -> pd.DataFrame:
        """
        Transform a source DataFrame to match a target LinkML class structure.

        Slots with exactly one exact_mapping are copied from the source column
        and converted to the slot range; slots with an ifabsent default get that
        constant on every row. Everything else is left to custom logic.

        Args:
            source_df: Input DataFrame with source field names
            target_class: Name of target class in the mapping schema

        Returns:
            Transformed DataFrame with target field names, same index as source_df
        """
        mappings = self._get_slot_mappings(target_class)
        result = pd.DataFrame(index=source_df.index)

        for target_field, mapping_spec in mappings.items():
            exact_mappings = mapping_spec['exact_mappings']

            if mapping_spec['ifabsent'] is not None:
                result[target_field] = self._parse_ifabsent(mapping_spec['ifabsent'])
                continue

            # Only strict 1:1 renames are automatic
            if len(exact_mappings) != 1:
                continue

            source_field = self._extract_source_field(exact_mappings[0])

            if source_field not in source_df.columns:
                if mapping_spec['required']:
                    warnings.warn(
                        f"Required field '{target_field}' cannot be mapped: "
                        f"source field '{source_field}' not found in DataFrame"
                    )
                continue

            target_range = mapping_spec['range']
            result[target_field] = source_df[source_field].apply(
                lambda x: self._convert_type(x, target_range)
            )

        return result

    def order_columns(self, df: pd.DataFrame, target_class: str) -> pd.DataFrame:
        """Reorder to the class slot order, dropping helper columns."""
        columns = [c for c in self.slot_names(target_class) if c in df.columns]
        missing = [c for c in self.slot_names(target_class) if c not in df.columns]
        if missing:
            warnings.warn(f"{target_class} is missing mapped columns: {missing}")
        return df[columns]


# ============================================================================
# STEP 1: READ SOURCE TABLES
# ============================================================================

class SourceReader:
    """Read the survey spreadsheet and its auxiliary tables."""

    def __init__(self, primary_path, sequence_path, read_count_path):
        self.primary_path = Path(primary_path)
        self.sequence_path = Path(sequence_path)
        self.read_count_path = Path(read_count_path)

    @staticmethod
    def _read_table(path: Path, **kwargs) -> pd.DataFrame:
        """Read a spreadsheet or a delimited text file depending on its suffix."""
        if path.suffix.lower() in ('.csv', '.txt', '.tsv'):
            return pd.read_csv(path, **kwargs)
        return pd.read_excel(path, **kwargs)

    @staticmethod
    def _require_columns(df: pd.DataFrame, columns: Sequence[str], label: str):
        missing = [c for c in columns if c not in df.columns]
        if missing:
            raise ValueError(f"{label} is missing required columns: {missing}")

    def read_primary(self) -> pd.DataFrame:
        """Primary spreadsheet, one row per detection."""
        df = self._read_table(self.primary_path)
        df.columns = [str(c).strip() for c in df.columns]
        self._require_columns(df, PRIMARY_COLUMNS, str(self.primary_path))
        return df.reset_index(drop=True)

    def read_sequences(self) -> pd.DataFrame:
        """OTU sequence table, deduplicated on (taxonID, Sequence)."""
        df = pd.read_csv(self.sequence_path, sep=';')
        df.columns = [str(c).strip() for c in df.columns]
        self._require_columns(df, SEQUENCE_COLUMNS, str(self.sequence_path))
        return df[SEQUENCE_COLUMNS].drop_duplicates().reset_index(drop=True)

    def read_read_counts(self) -> pd.DataFrame:
        """Filtered read counts, first two columns renamed to sample_name/filtered_reads."""
        df = self._read_table(self.read_count_path)
        if df.shape[1] < 2:
            raise ValueError(f"{self.read_count_path} needs a sample column and a read count column")
        df = df.iloc[:, :2].copy()
        df.columns = READ_COUNT_COLUMNS
        return df

    def read_all(self) -> Tuple[pd.DataFrame, pd.DataFrame, pd.DataFrame]:
        """
        Read all three source tables.

        Returns:
            Tuple of (primary_df, sequences_df, read_counts_df)
        """
        print("Reading source tables...")

        print(f"  - Reading detections from {self.primary_path}...")
        primary_df = self.read_primary()
        print(f"    Got {len(primary_df)} detection records")

        print(f"  - Reading OTU sequences from {self.sequence_path}...")
        sequences_df = self.read_sequences()
        print(f"    Got {len(sequences_df)} distinct OTU sequences")

        print(f"  - Reading read counts from {self.read_count_path}...")
        read_counts_df = self.read_read_counts()
        print(f"    Got {len(read_counts_df)} sample read counts")

        return primary_df, sequences_df, read_counts_df


# ============================================================================
# STEP 2: TRANSFORM TO DARWIN CORE
# ============================================================================

class DwCTransformer:
    """Transform the eDNA survey to Darwin Core Occurrence and DNA derived data."""

    def __init__(self, mapping_engine: MappingEngine, resolver: TaxonResolver,
                 biosamples: Dict[str, str] = None,
                 overrides: Sequence[ManualOverride] = ()):
        """
        Initialize transformer.

        Args:
            mapping_engine: MappingEngine for renames and constant fields
            resolver: TaxonResolver for scientificName/scientificNameID
            biosamples: Sample name → BioSample URI lookup table
            overrides: Manual taxonomy corrections by occurrence row
        """
        self.mapping_engine = mapping_engine
        self.resolver = resolver
        self.biosamples = {str(k).strip(): v for k, v in (biosamples or {}).items()}
        self.overrides = list(overrides)

    @staticmethod
    def dms_to_dd(text) -> float:
        """
        Convert a degrees/minutes/seconds string to decimal degrees.

        The result is always a magnitude; see hemisphere_sign. Returns NaN when
        the text does not look like 41°19'41.0''N.
        """
        if not isinstance(text, str):
            return float('nan')
        match = DMS_PATTERN.match(text)
        if not match:
            return float('nan')

        degrees, minutes, seconds = (float(g.replace(',', '.')) for g in match.groups()[:3])
        return degrees + minutes / 60 + seconds / 3600

    @staticmethod
    def hemisphere_sign(text) -> float:
        """-1 for southern and western hemispheres, 1 otherwise."""
        if isinstance(text, str) and text.strip()[-1:].upper() in ('S', 'W'):
            return -1.0
        return 1.0

    @classmethod
    def convert_coordinate(cls, text) -> Optional[float]:
        """Signed decimal degrees rounded to 6 places, or None."""
        value = cls.dms_to_dd(text)
        if pd.isna(value):
            return None
        return round(value * cls.hemisphere_sign(text), 6)

    @staticmethod
    def _id_part(value) -> str:
        if value is None or (not isinstance(value, str) and pd.isna(value)):
            return ''
        if isinstance(value, (datetime, date, pd.Timestamp)):
            return value.strftime('%Y-%m-%d')
        if isinstance(value, float) and value.is_integer():
            return str(int(value))
        return str(value).strip()

    @classmethod
    def create_occurrence_id(cls, otu, latitude, longitude, collection_date) -> str:
        """Generate DwC occurrenceID as the MD5 of OTU, coordinates text and date."""
        key = ':'.join(cls._id_part(v) for v in (otu, latitude, longitude, collection_date))
        return hashlib.md5(key.encode('utf-8')).hexdigest()

    @classmethod
    def _join_key(cls, series: pd.Series) -> pd.Series:
        return series.map(cls._id_part)

    @staticmethod
    def build_event_date(year, month) -> Optional[str]:
        """Format year and month abbreviation as YYYY-MM."""
        if pd.isna(year) or pd.isna(month):
            return None

        label = str(month).strip().title()
        label = MONTH_FIXES.get(label, label)
        ordinal = MONTHS.get(label) or MONTHS.get(label[:3])
        if ordinal is None:
            return None

        try:
            year = int(float(year))
        except (TypeError, ValueError):
            return None
        return f"{year:04d}-{ordinal:02d}"

    @staticmethod
    def parse_depth_range(text) -> Tuple[Optional[int], Optional[int]]:
        """Minimum and maximum depth from bathymetry text such as "30-45"."""
        if text is None or (not isinstance(text, str) and pd.isna(text)):
            return None, None
        text = str(text)

        minimum = re.match(r"^\s*(\d+)", text)
        maximum = re.search(r"-\s*(\d+)", text)
        return (
            int(minimum.group(1)) if minimum else None,
            int(maximum.group(1)) if maximum else None,
        )

    def _sample_size_values(self, sample_names: pd.Series,
                            read_counts_df: pd.DataFrame) -> pd.Series:
        """Left join filtered read counts on sample name."""
        counts = read_counts_df[READ_COUNT_COLUMNS].copy()
        counts['_sample'] = self._join_key(counts['sample_name'])

        duplicated = counts['_sample'].duplicated(keep='first')
        if duplicated.any():
            warnings.warn(
                f"Read count table lists {int(duplicated.sum())} duplicate sample(s); "
                f"keeping the first count for each"
            )
            counts = counts[~duplicated]

        left = pd.DataFrame({'_sample': self._join_key(sample_names)})
        merged = left.merge(counts[['_sample', 'filtered_reads']], on='_sample', how='left')

        missing = sorted(left.loc[merged['filtered_reads'].isna().values, '_sample'].unique())
        if missing:
            warnings.warn(f"No filtered read count for sample(s): {missing}")

        values = pd.to_numeric(merged['filtered_reads'], errors='coerce').round().astype('Int64')
        return pd.Series(values.values, index=sample_names.index)

    def _material_sample_ids(self, sample_names: pd.Series) -> pd.Series:
        ids = self._join_key(sample_names).map(self.biosamples)
        missing = sorted(self._join_key(sample_names)[ids.isna()].unique())
        if missing:
            warnings.warn(f"No BioSample link for sample(s): {missing}")
        return ids

    def transform_to_occurrence(self, primary_df: pd.DataFrame,
                                read_counts_df: pd.DataFrame) -> pd.DataFrame:
        """Transform detection records to the DwC Occurrence core."""
        source = primary_df.reset_index(drop=True)
        n_rows = len(source)

        print("  - Auto-renaming Occurrence fields from LinkML mappings...")
        occurrence = self.mapping_engine.transform_dataframe(source, "Occurrence")
        print(f"    Auto-mapped {len(occurrence.columns)} fields")

        # Taxonomy
        resolutions = self.resolver.resolve(source['Species'])
        resolutions = apply_manual_overrides(resolutions, self.overrides)
        occurrence['scientificName'] = [r.canonical_name for r in resolutions]
        occurrence['scientificNameID'] = [r.identifier for r in resolutions]

        # Location
        occurrence['decimalLatitude'] = source['Latitude'].map(self.convert_coordinate)
        occurrence['decimalLongitude'] = source['Longitude'].map(self.convert_coordinate)
        for column in ('Latitude', 'Longitude'):
            bad = sorted({str(v) for v in source.loc[source[column].map(self.dms_to_dd).isna(), column]})
            if bad:
                warnings.warn(f"Could not convert {column.lower()} value(s) to decimal degrees: {bad}")

        occurrence['occurrenceID'] = [
            self.create_occurrence_id(otu, lat, lon, day)
            for otu, lat, lon, day in zip(
                source['OTU'], source['Latitude'], source['Longitude'], source['Date']
            )
        ]
        if occurrence['occurrenceID'].duplicated().any():
            warnings.warn("Duplicate occurrenceIDs: identical OTU, coordinates and date on several rows")

        occurrence['eventDate'] = [
            self.build_event_date(year, month)
            for year, month in zip(source['Year'], source['Month'])
        ]

        depths = [self.parse_depth_range(text) for text in source['Bathymetry']]
        occurrence['minimumDepthInMeters'] = pd.array([d[0] for d in depths], dtype='Int64')
        occurrence['maximumDepthInMeters'] = pd.array([d[1] for d in depths], dtype='Int64')

        # Auxiliary tables
        occurrence['sampleSizeValue'] = self._sample_size_values(source['Sample name'], read_counts_df)
        occurrence['materialSampleID'] = self._material_sample_ids(source['Sample name'])

        if len(occurrence) != n_rows:
            raise ValueError(
                f"Occurrence table changed from {n_rows} to {len(occurrence)} rows while mapping"
            )

        return self.mapping_engine.order_columns(occurrence, "Occurrence")

    def transform_to_dna_derived(self, occurrence_df: pd.DataFrame,
                                 sequences_df: pd.DataFrame) -> pd.DataFrame:
        """Build the DNA derived data extension, one row per occurrence."""
        base = occurrence_df[['occurrenceID', 'taxonID']].reset_index(drop=True).copy()
        base['_otu'] = self._join_key(base['taxonID'])

        sequences = sequences_df[SEQUENCE_COLUMNS].drop_duplicates().copy()
        sequences['_otu'] = self._join_key(sequences['taxonID'])

        duplicated = sequences['_otu'].duplicated(keep='first')
        if duplicated.any():
            warnings.warn(
                f"{int(duplicated.sum())} OTU(s) have more than one sequence; "
                f"keeping the first for each"
            )
            sequences = sequences[~duplicated]

        dna = base.merge(sequences[['_otu', 'Sequence']], on='_otu', how='left')
        dna = dna.rename(columns={'Sequence': 'DNA_sequence'})

        missing = sorted(dna.loc[dna['DNA_sequence'].isna(), '_otu'].unique())
        if missing:
            warnings.warn(f"No sequence for OTU(s): {missing}")

        for column, value in self.mapping_engine.constants("DNADerivedData").items():
            dna[column] = value

        return self.mapping_engine.order_columns(dna, "DNADerivedData")


# ============================================================================
# STEP 3: WRITE DARWIN CORE TABLES
# ============================================================================

class DwCWriter:
    """Write Darwin Core tables."""

    def __init__(self, output_dir: Path):
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)

    def write_table(self, df: pd.DataFrame, filename: str) -> Path:
        """Write a core or extension table as comma-delimited text."""
        filepath = self.output_dir / filename
        df.to_csv(filepath, index=False, encoding='utf-8', na_rep='')
        print(f"  Wrote {filename} ({len(df)} records)")
        return filepath


# ============================================================================
# MAIN PIPELINE
# ============================================================================

def load_dataset_config(path) -> Dict:
    """Load the dataset configuration YAML (WoRMS options, biosamples, overrides)."""
    with open(path, 'r', encoding='utf-8') as f:
        return yaml.safe_load(f) or {}


def build_transformer(config: Dict, mapping_schema) -> DwCTransformer:
    """Wire mapping engine, resolver and lookup tables from configuration."""
    worms_cfg = config.get('worms') or {}
    client = WoRMSClient(
        server_url=worms_cfg.get('server', WORMS_SERVER),
        marine_only=worms_cfg.get('marine_only', False),
        timeout=worms_cfg.get('timeout', 30),
    )
    resolver = TaxonResolver(client, fuzzy=worms_cfg.get('fuzzy', True))
    overrides = [ManualOverride.from_dict(entry) for entry in config.get('overrides') or []]

    return DwCTransformer(
        MappingEngine(mapping_schema),
        resolver,
        biosamples=config.get('biosamples') or {},
        overrides=overrides,
    )


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Convert the marine reserve eDNA survey to Darwin Core tables"
    )
    parser.add_argument("--primary", type=Path, default=PRIMARY_SPREADSHEET,
                        help="Detection spreadsheet (.xlsx or .csv)")
    parser.add_argument("--sequences", type=Path, default=SEQUENCE_TABLE,
                        help="Semicolon separated OTU sequence table")
    parser.add_argument("--read-counts", type=Path, default=READ_COUNT_SPREADSHEET,
                        help="Filtered read counts per sample (.xlsx or .csv)")
    parser.add_argument("--output-dir", type=Path, default=OUTPUT_DIR,
                        help="Directory for occurrence.csv and dna_derived_data.csv")
    parser.add_argument("--config", type=Path, default=DATASET_CONFIG,
                        help="Dataset configuration YAML")
    parser.add_argument("--mapping-schema", type=Path, default=MAPPING_SCHEMA,
                        help="LinkML mapping schema YAML")
    return parser.parse_args(argv)


def main(argv=None):
    """Execute the complete transformation pipeline."""
    args = parse_args(argv)

    print("=" * 80)
    print("MARINE RESERVE eDNA SURVEY TO DARWIN CORE PIPELINE")
    print("=" * 80)
    print()

    # Step 1: Read source tables
    reader = SourceReader(args.primary, args.sequences, args.read_counts)
    primary_df, sequences_df, read_counts_df = reader.read_all()
    print()

    # Step 2: Transform to Darwin Core
    print("Transforming to Darwin Core...")
    print(f"Loading LinkML mapping schema from {args.mapping_schema}...")
    config = load_dataset_config(args.config)
    transformer = build_transformer(config, args.mapping_schema)

    occurrences = transformer.transform_to_occurrence(primary_df, read_counts_df)
    print(f"  Created {len(occurrences)} Occurrence records")

    dna_derived = transformer.transform_to_dna_derived(occurrences, sequences_df)
    print(f"  Created {len(dna_derived)} DNA derived data records")
    print()

    # Step 3: Write tables
    print("Writing Darwin Core tables...")
    writer = DwCWriter(args.output_dir)
    writer.write_table(occurrences, OCCURRENCE_FILE)
    writer.write_table(dna_derived, DNA_DERIVED_FILE)

    print()
    print("=" * 80)
    print("PIPELINE COMPLETE")
    print("=" * 80)
    print(f"Darwin Core tables ready in: {args.output_dir}")
    print()


if __name__ == "__main__":
    main()
