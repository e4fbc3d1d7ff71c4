#!/usr/bin/env python3
"""
Generate readable schema documentation from the LinkML YAML files.
Creates slot-focused docs with clean tables for the source data and the
Darwin Core mappings.
"""
import yaml
from pathlib import Path
from typing import Dict, List
from collections import defaultdict

# Get the repository root
REPO_ROOT = Path(__file__).parent.parent
SCHEMA_DIR = REPO_ROOT / "models" / "datasets" / "marine_reserve_edna"
DOCS_DIR = REPO_ROOT / "docs" / "schemas"

# Schema configurations
SCHEMAS = {
    'marine-reserve-source-schema.yaml': {
        'output': 'source-data.md',
        'type': 'source'
    },
    'marine-reserve-to-dwc-mappings.yaml': {
        'output': 'dwc-mappings.md',
        'type': 'mappings'
    },
}


class SchemaDocGenerator:
    """Generate readable documentation from LinkML schemas."""

    def __init__(self, schema_path: Path):
        self.schema_path = schema_path
        with open(schema_path, 'r', encoding='utf-8') as f:
            self.schema = yaml.safe_load(f)

        self.classes = self.schema.get('classes', {})
        self.slots = self.schema.get('slots', {})
        self.title = self.schema.get('title', '')
        self.description = self.schema.get('description', '')

    def _header(self) -> str:
        try:
            schema_file = self.schema_path.relative_to(REPO_ROOT)
        except ValueError:
            schema_file = self.schema_path.name
        return f"""# {self.title}

{self.description}

**Schema file**: `{schema_file}`

---

"""

    def generate_source_schema_doc(self) -> str:
        """Generate documentation for a source data schema."""

        doc = self._header() + "## Data Fields (Slots)\n\n"

        for class_name, slots_list in self._group_slots_by_class().items():
            if not slots_list:
                continue

            class_desc = self.classes.get(class_name, {}).get('description', '')

            doc += f"### {class_name} Fields\n\n"
            if class_desc:
                doc += f"{class_desc}\n\n"

            doc += "| Field | Type | Units | Description | Source Column |\n"
            doc += "|-------|------|-------|-------------|---------------|\n"

            for slot_name in slots_list:
                slot_def = self.slots.get(slot_name) or {}
                field_type = slot_def.get('range', 'string')
                description = slot_def.get('description', '').replace('\n', ' ')

                unit_info = slot_def.get('unit', {})
                units = unit_info.get('ucum_code', '-') if isinstance(unit_info, dict) else '-'

                annotations = slot_def.get('annotations', {})
                source_column = annotations.get('source_column', slot_name) if isinstance(annotations, dict) else slot_name

                doc += f"| **{slot_name}** | {field_type} | {units} | {description} | `{source_column}` |\n"

            doc += "\n"

        return doc

    def generate_mappings_doc(self) -> str:
        """Generate documentation for Darwin Core mappings."""

        doc = self._header() + """## Mapping Overview

```mermaid
flowchart LR
    A[Source Fields] -->|exact_mappings| B[Target Terms]
    A -->|related_mappings| C[Custom Transform]
    C --> B
    D[ifabsent] -->|constant| B
```

**Mapping types**:

- **exact_mappings**: 1:1 field renames (auto-transformed)
- **ifabsent**: constant value on every row
- **related_mappings**: derived fields requiring custom logic

---

"""

        for class_name, slots_list in self._group_slots_by_class().items():
            if not slots_list:
                continue

            class_desc = self.classes.get(class_name, {}).get('description', '')

            doc += f"## {class_name} Mappings\n\n"
            if class_desc:
                doc += f"{class_desc}\n\n"

            auto_mapped = []
            constants = []
            custom_mapped = []

            for slot_name in slots_list:
                slot_def = self.slots.get(slot_name) or {}
                exact_mappings = slot_def.get('exact_mappings', [])

                if slot_def.get('ifabsent') is not None:
                    constants.append(slot_name)
                elif len(exact_mappings) == 1:
                    auto_mapped.append(slot_name)
                elif exact_mappings or slot_def.get('related_mappings'):
                    custom_mapped.append(slot_name)

            if auto_mapped:
                doc += "### Auto-Mapped Fields (1:1)\n\n"
                doc += "| Target Term | Source Field | Transformation |\n"
                doc += "|-------------|--------------|----------------|\n"

                for slot_name in auto_mapped:
                    exact_mappings = self.slots[slot_name].get('exact_mappings', [])
                    source = self._extract_field_name(exact_mappings[0])
                    doc += f"| **{slot_name}** | `{source}` | Direct copy |\n"

                doc += "\n"

            if constants:
                doc += "### Constant Fields\n\n"
                doc += "| Target Term | Value |\n"
                doc += "|-------------|-------|\n"

                for slot_name in constants:
                    doc += f"| **{slot_name}** | `{self.slots[slot_name]['ifabsent']}` |\n"

                doc += "\n"

            if custom_mapped:
                doc += "### Custom-Mapped Fields\n\n"
                doc += "| Target Term | Source Fields | Transformation |\n"
                doc += "|-------------|---------------|----------------|\n"

                for slot_name in custom_mapped:
                    slot_def = self.slots[slot_name]
                    description = slot_def.get('description', '')

                    all_mappings = slot_def.get('exact_mappings', []) + slot_def.get('related_mappings', [])
                    sources = [self._extract_field_name(m) for m in all_mappings]
                    source_str = ', '.join(f"`{s}`" for s in sources) if sources else '-'

                    comments = slot_def.get('comments', [])
                    transform_note = comments[0] if comments else description[:50]

                    doc += f"| **{slot_name}** | {source_str} | {transform_note} |\n"

                doc += "\n"

            doc += "---\n\n"

        return doc

    def _group_slots_by_class(self) -> Dict[str, List[str]]:
        """Group slots by their parent class."""
        class_slots = defaultdict(list)

        for class_name, class_def in self.classes.items():
            class_slots[class_name] = class_def.get('slots', [])

        return dict(class_slots)

    def _extract_field_name(self, mapping: str) -> str:
        """Extract field name from mapping string (e.g., 'reserve_edna:OTU' -> 'OTU')."""
        if ':' in mapping:
            return mapping.split(':', 1)[1]
        return mapping


def generate_docs(schema_dir: Path = SCHEMA_DIR, docs_dir: Path = DOCS_DIR):
    """Generate documentation for all schemas."""

    docs_dir.mkdir(parents=True, exist_ok=True)

    print("Generating schema documentation...")
    print("=" * 60)
    print(f"Schema directory: {schema_dir}")
    print(f"Output directory: {docs_dir}")
    print("=" * 60)

    for schema_file, config in SCHEMAS.items():
        schema_path = schema_dir / schema_file
        output_path = docs_dir / config['output']

        if not schema_path.exists():
            print(f"\n⚠️  Schema not found: {schema_path}")
            continue

        print(f"\n📄 Processing {schema_file}...")
        print(f"   Output: {output_path}")

        generator = SchemaDocGenerator(schema_path)

        if config['type'] == 'source':
            content = generator.generate_source_schema_doc()
        else:
            content = generator.generate_mappings_doc()

        output_path.write_text(content, encoding='utf-8')

        print(f"   ✅ Generated successfully ({len(content):,} characters)")

    print("\n" + "=" * 60)
    print("✅ Schema documentation generation complete!")
    print(f"📁 Documentation written to: {docs_dir}")


if __name__ == '__main__':
    generate_docs()
