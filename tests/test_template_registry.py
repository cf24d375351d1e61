"""
Template Registry Tests

Validates the real catalog in documents/ and the loader's rejection of
broken configuration. Configuration errors must be caught here, before
deployment.

Run with: python -m pytest tests/test_template_registry.py -v
"""

import shutil
import textwrap

import pytest

from services.documents import ConfigurationError, ErrorCode, NotFoundError, TemplateRegistry
from conftest import DOCUMENTS_DIR

IMPLEMENTED = {
    'CA_RPA',
    'LEAD_BASED_PAINT',
    'REQUEST_FOR_REPAIR',
    'BUYER_CONTINGENCY_REMOVAL',
    'BUYER_COUNTER_OFFER',
    'SELLER_COUNTER_OFFER',
}


@pytest.fixture
def config_copy(tmp_path):
    """A writable copy of documents/ for breaking on purpose."""
    target = tmp_path / 'documents'
    shutil.copytree(DOCUMENTS_DIR, target)
    return target


def write_form(config_dir, code, body):
    path = config_dir / 'forms' / f'{code}.yml'
    path.write_text(textwrap.dedent(body))
    return path


MINIMAL_HEADER = """\
schema_version: "1.0"
template_code: LEAD_BASED_PAINT
page_count: 2
page_size: [612, 792]
"""


class TestCatalogLoading:
    """The shipped catalog loads and is internally consistent."""

    def test_loaded(self):
        assert TemplateRegistry.is_loaded()

    def test_all_templates_registered(self):
        assert len(TemplateRegistry.all_codes()) == 36

    def test_implemented_templates_have_schemas(self):
        implemented = {t.code for t in TemplateRegistry.list_templates(implemented=True)}
        assert implemented == IMPLEMENTED
        for code in implemented:
            schema = TemplateRegistry.get_schema(code)
            assert schema.template_code == code
            assert schema.page_count > 0

    def test_six_categories_in_stage_order(self):
        numbers = [number for number, _ in TemplateRegistry.categories()]
        assert numbers == ['01', '02', '03', '04', '05', '06']

    def test_bundles_reference_registered_templates(self):
        codes = set(TemplateRegistry.all_codes())
        bundles = TemplateRegistry.bundles()
        assert len(bundles) == 5
        for bundle in bundles:
            assert set(bundle.forms) <= codes
            assert set(bundle.required_forms) <= codes
            assert set(bundle.optional_forms) <= codes

    def test_get_bundle(self):
        bundle = TemplateRegistry.get_bundle('BUYER_OFFER_PACKAGE')
        assert 'CA_RPA' in bundle.required_forms

    def test_unknown_bundle(self):
        with pytest.raises(NotFoundError):
            TemplateRegistry.get_bundle('NO_SUCH_PACKAGE')


class TestLookup:
    """getTemplate returns a definition iff the code is registered."""

    def test_every_registered_code_resolves(self):
        for code in TemplateRegistry.all_codes():
            assert TemplateRegistry.get_template(code).code == code

    @pytest.mark.parametrize('code', ['NOPE', '', 'ca_rpa', 'CA_RPA '])
    def test_unknown_codes_are_not_found(self, code):
        with pytest.raises(NotFoundError) as exc_info:
            TemplateRegistry.get_template(code)
        assert exc_info.value.code == ErrorCode.NOT_FOUND
        assert TemplateRegistry.get(code) is None

    def test_schema_of_unimplemented_template_is_not_found(self):
        assert TemplateRegistry.get_template('ADDENDUM_1')
        assert not TemplateRegistry.has_schema('ADDENDUM_1')
        with pytest.raises(NotFoundError):
            TemplateRegistry.get_schema('ADDENDUM_1')

    def test_catalog_is_read_only(self):
        with pytest.raises(TypeError):
            TemplateRegistry._templates['NEW'] = TemplateRegistry.get_template('CA_RPA')


class TestListing:
    """Ordering by sort key with code tie-break, and filter composition."""

    def test_default_order_is_sort_key(self):
        templates = TemplateRegistry.list_templates()
        keys = [(t.sort_order, t.code) for t in templates]
        assert keys == sorted(keys)
        assert templates[0].code == 'CA_RPA'

    def test_filter_by_category(self):
        templates = TemplateRegistry.list_templates(category='buyers-offer')
        assert templates
        assert all(t.category == 'buyers-offer' for t in templates)

    def test_filters_compose_as_intersection(self):
        by_number = {t.code for t in TemplateRegistry.list_templates(category_number='01')}
        common = {t.code for t in TemplateRegistry.list_templates(commonly_used=True)}
        implemented = {t.code for t in TemplateRegistry.list_templates(implemented=True)}

        combined = TemplateRegistry.list_templates(category_number='01', commonly_used=True, implemented=True)
        assert {t.code for t in combined} == by_number & common & implemented

    def test_false_flag_filters(self):
        not_implemented = TemplateRegistry.list_templates(implemented=False)
        assert len(not_implemented) == 36 - len(IMPLEMENTED)
        assert not any(t.implemented for t in not_implemented)

    def test_no_match_is_empty(self):
        assert TemplateRegistry.list_templates(category='no-such-category') == []


class TestLoaderRejection:
    """Broken configuration fails fast with every problem listed."""

    def test_duplicate_field_names(self, config_copy):
        write_form(config_copy, 'LEAD_BASED_PAINT', MINIMAL_HEADER + """\
fields:
  - {name: sellerName, type: string, label: Seller}
  - {name: sellerName, type: string, label: Seller Again}
""")
        with pytest.raises(ConfigurationError) as exc_info:
            TemplateRegistry.load_all(config_copy)
        assert 'Duplicate field names' in str(exc_info.value)

    def test_unknown_depends_on(self, config_copy):
        write_form(config_copy, 'LEAD_BASED_PAINT', MINIMAL_HEADER + """\
fields:
  - name: explanation
    type: text
    label: Explanation
    depends_on: {field: missingField, condition: equals, value: x}
""")
        with pytest.raises(ConfigurationError) as exc_info:
            TemplateRegistry.load_all(config_copy)
        assert "depends on unknown field 'missingField'" in str(exc_info.value)

    def test_dependency_cycle(self, config_copy):
        write_form(config_copy, 'LEAD_BASED_PAINT', MINIMAL_HEADER + """\
fields:
  - name: a
    type: string
    label: A
    depends_on: {field: b, condition: equals, value: x}
  - name: b
    type: string
    label: B
    depends_on: {field: a, condition: equals, value: y}
""")
        with pytest.raises(ConfigurationError) as exc_info:
            TemplateRegistry.load_all(config_copy)
        assert 'Dependency cycle' in str(exc_info.value)

    def test_duplicate_template_code(self, config_copy):
        catalog = config_copy / 'catalog.yml'
        catalog.write_text(catalog.read_text().replace('code: ADDENDUM_1', 'code: CA_RPA', 1))
        with pytest.raises(ConfigurationError) as exc_info:
            TemplateRegistry.load_all(config_copy)
        assert "Duplicate template code 'CA_RPA'" in str(exc_info.value)

    def test_implemented_without_schema(self, config_copy):
        (config_copy / 'forms' / 'REQUEST_FOR_REPAIR.yml').unlink()
        with pytest.raises(ConfigurationError) as exc_info:
            TemplateRegistry.load_all(config_copy)
        assert 'REQUEST_FOR_REPAIR: marked implemented' in str(exc_info.value)

    def test_all_errors_reported_together(self, config_copy):
        (config_copy / 'forms' / 'REQUEST_FOR_REPAIR.yml').unlink()
        write_form(config_copy, 'LEAD_BASED_PAINT', MINIMAL_HEADER + """\
fields:
  - {name: x, type: select, label: X}
""")
        with pytest.raises(ConfigurationError) as exc_info:
            TemplateRegistry.load_all(config_copy)
        assert len(exc_info.value.details['errors']) >= 2

    def test_failed_reload_keeps_previous_catalog(self, config_copy):
        (config_copy / 'catalog.yml').write_text("schema_version: '1.0'\ntemplates: not-a-list\n")
        with pytest.raises(ConfigurationError):
            TemplateRegistry.load_all(config_copy)
        assert TemplateRegistry.get_template('CA_RPA').code == 'CA_RPA'


class TestValidateYamlContent:
    """Candidate form definitions can be checked without loading them."""

    def test_shipped_form_is_valid(self):
        content = (DOCUMENTS_DIR / 'forms' / 'CA_RPA.yml').read_text()
        assert TemplateRegistry.validate_yaml_content(content) == []

    def test_syntax_error(self):
        errors = TemplateRegistry.validate_yaml_content("fields: [unclosed")
        assert errors and errors[0].startswith('YAML syntax error')

    def test_unknown_field_type(self):
        errors = TemplateRegistry.validate_yaml_content(MINIMAL_HEADER + """\
fields:
  - {name: x, type: spreadsheet, label: X}
""")
        assert any('Schema validation' in e for e in errors)

    def test_unknown_format(self):
        errors = TemplateRegistry.validate_yaml_content(MINIMAL_HEADER + """\
fields:
  - {name: x, type: string, label: X, format: roman_numerals}
""")
        assert errors == ["Field 'x' uses unknown format 'roman_numerals'"]

    def test_placement_beyond_page_count(self):
        errors = TemplateRegistry.validate_yaml_content(MINIMAL_HEADER + """\
fields:
  - name: x
    type: string
    label: X
    placement: {page: 3, x: 10, y: 10}
""")
        assert errors == ["Field 'x' is placed on page 3 but the template has 2 page(s)"]
