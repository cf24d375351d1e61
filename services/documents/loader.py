"""
Template Registry

Loads, validates, and caches the template catalog and per-template field
schemas from YAML files. Validates everything on startup and fails fast
if anything is invalid.
"""

import json
import logging
import re
from pathlib import Path
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple

import jsonschema
import yaml

from .exceptions import ConfigurationError, NotFoundError, ValidationError
from .transforms import TRANSFORMS
from .types import FieldSchema, FieldType, FormBundle, TemplateDefinition

logger = logging.getLogger(__name__)

# Paths
DOCUMENTS_DIR = Path(__file__).parent.parent.parent / 'documents'
CATALOG_FILE = 'catalog.yml'
FORMS_SUBDIR = 'forms'
SCHEMA_SUBDIR = 'schema'

_EMPTY = MappingProxyType({})


class TemplateRegistry:
    """
    Process-wide, load-once registry of document templates.

    Loads documents/catalog.yml and every documents/forms/<CODE>.yml on
    startup, validates them against the JSON schemas in documents/schema/,
    and publishes read-only mappings for lookup during request handling.

    Usage:
        # On app startup
        TemplateRegistry.load_all()

        # During request handling
        template = TemplateRegistry.get_template('CA_RPA')
        schema = TemplateRegistry.get_schema('CA_RPA')
    """

    _templates: Mapping[str, TemplateDefinition] = _EMPTY
    _field_schemas: Mapping[str, FieldSchema] = _EMPTY
    _bundles: Mapping[str, FormBundle] = _EMPTY
    _categories: Tuple[Tuple[str, str], ...] = ()
    _json_schemas: Dict[str, dict] = {}
    _config_dir: Path = DOCUMENTS_DIR
    _loaded: bool = False

    @classmethod
    def load_all(cls, config_dir: Optional[Path] = None) -> None:
        """
        Load and validate the catalog and all field schemas.

        Called at app startup. If anything fails validation, raises
        ConfigurationError with all errors listed. The previous catalog
        stays published until the new one is complete.
        """
        config_dir = Path(config_dir) if config_dir else DOCUMENTS_DIR
        errors: List[str] = []

        json_schemas = cls._load_json_schemas(config_dir / SCHEMA_SUBDIR, errors)

        catalog_path = config_dir / CATALOG_FILE
        if not catalog_path.exists():
            raise ConfigurationError(f"Template catalog not found: {catalog_path}")

        templates: Dict[str, TemplateDefinition] = {}
        bundles: Dict[str, FormBundle] = {}
        categories: List[Tuple[str, str]] = []

        try:
            raw_catalog = yaml.safe_load(catalog_path.read_text()) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"{CATALOG_FILE}: YAML syntax error - {e}")

        catalog_errors = cls._validate_against(raw_catalog, json_schemas.get('catalog.v1.0'))
        if catalog_errors:
            errors.extend(f"{CATALOG_FILE}: {e}" for e in catalog_errors)
        else:
            categories = [(str(c['number']), c['name']) for c in raw_catalog.get('categories', [])]
            templates = cls._build_templates(raw_catalog, categories, errors)
            bundles = cls._build_bundles(raw_catalog, templates, errors)

        field_schemas = cls._load_field_schemas(config_dir / FORMS_SUBDIR, json_schemas, templates, errors)

        for code, template in templates.items():
            if template.implemented and code not in field_schemas:
                errors.append(f"{code}: marked implemented but has no {FORMS_SUBDIR}/{code}.yml")

        if errors:
            error_msg = "Template configuration errors:\n" + "\n".join(f"  - {e}" for e in errors)
            logger.error(error_msg)
            raise ConfigurationError(error_msg, errors=errors)

        cls._json_schemas = json_schemas
        cls._templates = MappingProxyType(templates)
        cls._field_schemas = MappingProxyType(field_schemas)
        cls._bundles = MappingProxyType(bundles)
        cls._categories = tuple(sorted(categories))
        cls._config_dir = config_dir
        cls._loaded = True
        logger.info(
            f"Loaded {len(templates)} template(s), {len(field_schemas)} field schema(s), "
            f"{len(bundles)} bundle(s) from {config_dir}"
        )

    # =========================================================================
    # LOADING
    # =========================================================================

    @classmethod
    def _load_json_schemas(cls, schema_dir: Path, errors: List[str]) -> Dict[str, dict]:
        """Load JSON schemas keyed by file stem (e.g. "v1.0", "catalog.v1.0")."""
        schemas: Dict[str, dict] = {}
        if not schema_dir.exists():
            errors.append(f"Schema directory not found: {schema_dir}")
            return schemas

        for schema_file in sorted(schema_dir.glob('*.json')):
            try:
                schemas[schema_file.stem] = json.loads(schema_file.read_text())
                logger.debug(f"Loaded schema: {schema_file.stem}")
            except json.JSONDecodeError as e:
                errors.append(f"{schema_file.name}: invalid JSON - {e}")
        return schemas

    @staticmethod
    def _validate_against(raw, schema: Optional[dict]) -> List[str]:
        if not isinstance(raw, dict):
            return ["Top level must be a mapping"]
        if schema is None:
            return [f"No JSON schema for version {raw.get('schema_version')!r}"]
        validator = jsonschema.Draft7Validator(schema)
        return [
            f"Schema validation: {'/'.join(str(p) for p in e.absolute_path) or '<root>'}: {e.message}"
            for e in sorted(validator.iter_errors(raw), key=lambda e: list(e.absolute_path))
        ]

    @classmethod
    def _build_templates(cls, raw_catalog: dict, categories, errors: List[str]) -> Dict[str, TemplateDefinition]:
        known_categories = {number for number, _ in categories}
        category_numbers = [number for number, _ in categories]
        if len(category_numbers) != len(known_categories):
            errors.append(f"{CATALOG_FILE}: duplicate category numbers")

        templates: Dict[str, TemplateDefinition] = {}
        for entry in raw_catalog.get('templates', []):
            template = TemplateDefinition.from_dict(entry)
            if template.code in templates:
                errors.append(f"{CATALOG_FILE}: Duplicate template code '{template.code}'")
                continue
            if known_categories and template.category_number not in known_categories:
                errors.append(
                    f"{CATALOG_FILE}: Template '{template.code}' references unknown "
                    f"category number '{template.category_number}'"
                )
            templates[template.code] = template
        return templates

    @classmethod
    def _build_bundles(cls, raw_catalog: dict, templates, errors: List[str]) -> Dict[str, FormBundle]:
        bundles: Dict[str, FormBundle] = {}
        for entry in raw_catalog.get('bundles', []):
            bundle = FormBundle(
                key=entry['key'],
                name=entry['name'],
                description=entry.get('description', ''),
                forms=tuple(entry['forms']),
                required_forms=tuple(entry.get('required_forms', [])),
                optional_forms=tuple(entry.get('optional_forms', [])),
            )
            if bundle.key in bundles:
                errors.append(f"{CATALOG_FILE}: Duplicate bundle key '{bundle.key}'")
                continue
            referenced = set(bundle.forms) | set(bundle.required_forms) | set(bundle.optional_forms)
            unknown = sorted(code for code in referenced if code not in templates)
            if unknown:
                errors.append(f"{CATALOG_FILE}: Bundle '{bundle.key}' references unknown templates {unknown}")
            bundles[bundle.key] = bundle
        return bundles

    @classmethod
    def _load_field_schemas(cls, forms_dir: Path, json_schemas, templates, errors: List[str]) -> Dict[str, FieldSchema]:
        field_schemas: Dict[str, FieldSchema] = {}
        if not forms_dir.exists():
            logger.warning(f"Forms directory not found: {forms_dir}")
            return field_schemas

        yaml_files = sorted(list(forms_dir.glob('*.yml')) + list(forms_dir.glob('*.yaml')))
        for yaml_file in yaml_files:
            try:
                schema = cls._load_and_validate(yaml_file, json_schemas)
            except ValidationError as e:
                errors.append(f"{yaml_file.name}: {e}")
                continue
            except yaml.YAMLError as e:
                errors.append(f"{yaml_file.name}: YAML syntax error - {e}")
                continue

            code = schema.template_code
            if code != yaml_file.stem:
                errors.append(f"{yaml_file.name}: template_code '{code}' does not match file name")
            elif code not in templates:
                errors.append(f"{yaml_file.name}: template_code '{code}' is not in the catalog")
            elif not templates[code].implemented:
                errors.append(f"{yaml_file.name}: template '{code}' is not marked implemented")
            elif code in field_schemas:
                errors.append(f"{yaml_file.name}: Duplicate schema for '{code}'")
            else:
                field_schemas[code] = schema
                logger.debug(f"Loaded field schema: {code} ({len(schema.fields)} fields)")
        return field_schemas

    @classmethod
    def _load_and_validate(cls, path: Path, json_schemas: Dict[str, dict]) -> FieldSchema:
        """Load a form YAML file and validate it."""
        raw = yaml.safe_load(path.read_text())
        if not raw:
            raise ValidationError("Empty field schema")

        problems = cls._check_form(raw, json_schemas)
        if problems:
            raise ValidationError('; '.join(problems))
        return FieldSchema.from_dict(raw)

    @classmethod
    def _check_form(cls, raw, json_schemas: Dict[str, dict]) -> List[str]:
        """Run every check on a raw form definition, returning the problems found."""
        if not isinstance(raw, dict):
            return ["Top level must be a mapping"]

        # 1. Schema validation
        schema_version = str(raw.get('schema_version', '1.0'))
        problems = cls._validate_against(raw, json_schemas.get(f"v{schema_version}"))
        if problems:
            return problems

        # 2. Referential integrity
        problems.extend(cls._validate_references(raw))

        # 3. Business rules
        problems.extend(cls._validate_business_rules(raw))
        return problems

    @classmethod
    def _validate_references(cls, raw: dict) -> List[str]:
        """Validate that dependsOn names a sibling field and that dependencies are cycle-free."""
        problems = []
        fields = raw.get('fields', [])
        names = {f['name'] for f in fields}
        edges: Dict[str, str] = {}

        for field in fields:
            dep = field.get('depends_on')
            if not dep:
                continue
            if dep['field'] == field['name']:
                problems.append(f"Field '{field['name']}' depends on itself")
            elif dep['field'] not in names:
                problems.append(
                    f"Field '{field['name']}' depends on unknown field '{dep['field']}'. "
                    f"Available fields: {sorted(names)}"
                )
            else:
                edges[field['name']] = dep['field']

        # Each field has at most one dependency, so a cycle is a loop in a functional graph
        reported = set()
        for start in edges:
            seen = []
            node = start
            while node in edges and node not in seen:
                seen.append(node)
                node = edges[node]
            if node in seen:
                cycle = tuple(sorted(seen[seen.index(node):]))
                if cycle not in reported:
                    reported.add(cycle)
                    problems.append(f"Dependency cycle between fields {list(cycle)}")
        return problems

    @classmethod
    def _validate_business_rules(cls, raw: dict) -> List[str]:
        problems = []
        fields = raw.get('fields', [])
        page_count = raw['page_count']
        width, height = raw.get('page_size', [612, 792])

        field_names = [f['name'] for f in fields]
        if len(field_names) != len(set(field_names)):
            duplicates = sorted({n for n in field_names if field_names.count(n) > 1})
            problems.append(f"Duplicate field names: {duplicates}")

        passthrough = set(raw.get('passthrough', []))
        overlap = sorted(passthrough & set(field_names))
        if overlap:
            problems.append(f"Passthrough names collide with fields: {overlap}")

        for field in fields:
            name = field['name']
            field_type = FieldType(field['type'])
            if field_type.is_choice and not field.get('options'):
                problems.append(f"Field '{name}' of type {field_type.value} requires options")

            fmt = field.get('format')
            if fmt and fmt not in TRANSFORMS:
                problems.append(f"Field '{name}' uses unknown format '{fmt}'")

            pattern = (field.get('validation') or {}).get('pattern')
            if pattern:
                try:
                    re.compile(pattern)
                except re.error as e:
                    problems.append(f"Field '{name}' has invalid pattern '{pattern}': {e}")

            placement = field.get('placement')
            if placement and placement['page'] > page_count:
                problems.append(
                    f"Field '{name}' is placed on page {placement['page']} "
                    f"but the template has {page_count} page(s)"
                )

        signature_ids = [s['id'] for s in raw.get('signature_fields', [])]
        if len(signature_ids) != len(set(signature_ids)):
            duplicates = sorted({i for i in signature_ids if signature_ids.count(i) > 1})
            problems.append(f"Duplicate signature field ids: {duplicates}")

        for sig in raw.get('signature_fields', []):
            if sig['page'] > page_count:
                problems.append(
                    f"Signature field '{sig['id']}' is on page {sig['page']} "
                    f"but the template has {page_count} page(s)"
                )
            elif sig['x'] < 0 or sig['y'] < 0 or sig['x'] + sig['width'] > width or sig['y'] + sig['height'] > height:
                problems.append(f"Signature field '{sig['id']}' lies outside the {width}x{height} page")
        return problems

    # =========================================================================
    # LOOKUP
    # =========================================================================

    @classmethod
    def get(cls, code: str) -> Optional[TemplateDefinition]:
        """Get a template by code. Returns None if not found."""
        return cls._templates.get(code)

    @classmethod
    def get_template(cls, code: str) -> TemplateDefinition:
        """Get a template by code, raising NotFoundError if not registered."""
        template = cls._templates.get(code)
        if template is None:
            raise NotFoundError(f"Unknown template code: {code}", template_code=code)
        return template

    @classmethod
    def get_schema(cls, code: str) -> FieldSchema:
        """
        Get the field schema of a template.

        Raises NotFoundError for unknown codes and for catalog entries that
        have no schema yet (not implemented).
        """
        cls.get_template(code)
        schema = cls._field_schemas.get(code)
        if schema is None:
            raise NotFoundError(f"Template {code} is not implemented", template_code=code)
        return schema

    @classmethod
    def has_schema(cls, code: str) -> bool:
        return code in cls._field_schemas

    @classmethod
    def list_templates(
        cls,
        category: Optional[str] = None,
        category_number: Optional[str] = None,
        commonly_used: Optional[bool] = None,
        implemented: Optional[bool] = None,
    ) -> List[TemplateDefinition]:
        """
        List templates ordered by sort_order, ties broken by code.

        Every filter left as None is ignored; the rest must all match.
        """
        predicates = []
        if category is not None:
            predicates.append(lambda t: t.category == category)
        if category_number is not None:
            predicates.append(lambda t: t.category_number == category_number)
        if commonly_used is not None:
            predicates.append(lambda t: t.commonly_used == commonly_used)
        if implemented is not None:
            predicates.append(lambda t: t.implemented == implemented)

        matches = (t for t in cls._templates.values() if all(p(t) for p in predicates))
        return sorted(matches, key=lambda t: t.sort_key)

    @classmethod
    def all_codes(cls) -> List[str]:
        return [t.code for t in cls.list_templates()]

    @classmethod
    def categories(cls) -> List[Tuple[str, str]]:
        """(category_number, display name) pairs in stage order."""
        return list(cls._categories)

    @classmethod
    def bundles(cls) -> List[FormBundle]:
        return sorted(cls._bundles.values(), key=lambda b: b.key)

    @classmethod
    def get_bundle(cls, key: str) -> FormBundle:
        bundle = cls._bundles.get(key)
        if bundle is None:
            raise NotFoundError(f"Unknown form bundle: {key}", bundle=key)
        return bundle

    @classmethod
    def is_loaded(cls) -> bool:
        """Check if the catalog has been loaded and validated."""
        return cls._loaded

    @classmethod
    def clear(cls) -> None:
        """Clear the published catalog. Mainly for testing."""
        cls._templates = _EMPTY
        cls._field_schemas = _EMPTY
        cls._bundles = _EMPTY
        cls._categories = ()
        cls._loaded = False

    @classmethod
    def validate_yaml_content(cls, yaml_content: str) -> List[str]:
        """
        Validate form YAML content without loading it.

        Args:
            yaml_content: Raw YAML string of a documents/forms/<CODE>.yml file

        Returns:
            List of validation error messages (empty if valid)
        """
        try:
            raw = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            return [f"YAML syntax error: {e}"]

        if not raw:
            return ["Empty field schema"]

        json_schemas = cls._json_schemas or cls._load_json_schemas(cls._config_dir / SCHEMA_SUBDIR, [])
        errors = cls._check_form(raw, json_schemas)

        code = raw.get('template_code') if isinstance(raw, dict) else None
        if not errors and cls._loaded and code not in cls._templates:
            errors.append(f"template_code '{code}' is not in the catalog")
        return errors
