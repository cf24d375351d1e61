"""
PDF Renderer Tests

Renders against base PDFs generated in tmp_path: AcroForm filling, text
stamping, encrypted templates, geometry checks, out-of-bounds policy,
signature marks and determinism.

Run with: python -m pytest tests/test_pdf_renderer.py -v
"""

import io
from datetime import datetime

import pytest
from pypdf import PdfReader
from pypdf.constants import UserAccessPermissions

from services.documents import (
    ErrorCode,
    FieldOutOfBoundsError,
    FieldResolver,
    FieldSchema,
    PdfRenderer,
    SignatureData,
    TemplateAssetMissingError,
    TemplateGeometryError,
    TemplateLoadError,
    TemplateRegistry,
)
from conftest import RPA_FIELDS, build_pdf, encrypt_pdf, page_text, png_data_url


@pytest.fixture
def rpa():
    template = TemplateRegistry.get_template('CA_RPA')
    schema = TemplateRegistry.get_schema('CA_RPA')
    return template, schema


@pytest.fixture
def lead_paint():
    return TemplateRegistry.get_template('LEAD_BASED_PAINT'), TemplateRegistry.get_schema('LEAD_BASED_PAINT')


def resolve(schema, raw):
    return FieldResolver.resolve_or_raise(schema, raw).values


def lead_paint_values(**overrides):
    raw = {'propertyAddress': '9 Oak Ave', 'sellerName': 'Sam Seller', 'leadPaintKnown': 'unknown'}
    raw.update(overrides)
    return resolve(TemplateRegistry.get_schema('LEAD_BASED_PAINT'), raw)


def offpage_schema(x=600, y=700, width=200, page=1):
    """A two-page schema with one field stamped at the given position."""
    return FieldSchema.from_dict({
        'schema_version': '1.0',
        'template_code': 'LEAD_BASED_PAINT',
        'page_count': 2,
        'page_size': [612, 792],
        'fields': [
            {'name': 'inside', 'type': 'string', 'placement': {'page': 1, 'x': 60, 'y': 700}},
            {'name': 'outside', 'type': 'string', 'placement': {'page': page, 'x': x, 'y': y, 'width': width}},
        ],
    })


class TestFilling:
    """Values land in AcroForm widgets or as stamped text."""

    def test_page_count_matches_schema(self, renderer, rpa):
        template, schema = rpa
        result = renderer.render(template, schema, resolve(schema, RPA_FIELDS))
        assert result.page_count == schema.page_count == 17
        assert len(PdfReader(io.BytesIO(result.pdf_bytes)).pages) == 17
        assert result.warnings == []

    def test_acroform_widgets_filled(self, renderer, rpa):
        template, schema = rpa
        result = renderer.render(template, schema, resolve(schema, RPA_FIELDS))
        fields = PdfReader(io.BytesIO(result.pdf_bytes)).get_fields()
        assert fields['Buyer'].get('/V') == 'Jane Doe'
        assert fields['Seller'].get('/V') == 'John Seller'
        assert fields['Purchase Price'].get('/V') == '$500,000'

    def test_placed_fields_are_stamped(self, renderer, rpa):
        template, schema = rpa
        result = renderer.render(template, schema, resolve(schema, RPA_FIELDS))
        text = page_text(result.pdf_bytes, 1)
        assert 'December 15, 2026' in text
        assert '$15,000.00' in text

    def test_fallback_to_placement_without_widget(self, renderer, lead_paint):
        template, schema = lead_paint
        result = renderer.render(template, schema, lead_paint_values())
        assert '9 Oak Ave' in page_text(result.pdf_bytes, 1)
        assert ('propertyAddress', 1, 150.0, 700.0) in result.placements

    def test_checkbox_true_marks_false_skips(self, renderer, lead_paint):
        template, schema = lead_paint
        checked = renderer.render(template, schema, lead_paint_values(recordsAvailable=True))
        unchecked = renderer.render(template, schema, lead_paint_values(recordsAvailable=False))
        assert 'recordsAvailable' in [p[0] for p in checked.placements]
        assert 'recordsAvailable' not in [p[0] for p in unchecked.placements]

    def test_base_file_is_not_modified(self, renderer, rpa):
        template, schema = rpa
        path = renderer.template_path(template)
        before = path.read_bytes()
        renderer.render(template, schema, resolve(schema, RPA_FIELDS))
        assert path.read_bytes() == before


class TestDeterminism:
    """Same inputs produce the same pages and placements."""

    def test_repeat_render_is_identical(self, renderer, rpa):
        template, schema = rpa
        values = resolve(schema, {**RPA_FIELDS, 'financingType': 'fha', 'loanAmount': 480000})
        signatures = [SignatureData('buyer_signature', 'b1', 'buyer', value='Jane Doe')]

        first = renderer.render(template, schema, values, signatures)
        second = renderer.render(template, schema, values, signatures)

        assert first.page_count == second.page_count
        assert first.placements == second.placements
        first_pages = PdfReader(io.BytesIO(first.pdf_bytes)).pages
        second_pages = PdfReader(io.BytesIO(second.pdf_bytes)).pages
        for a, b in zip(first_pages, second_pages):
            assert a.get_contents().get_data() == b.get_contents().get_data()


class TestTemplateLoading:
    """Missing, corrupt and encrypted base PDFs."""

    def test_missing_file(self, tmp_path, rpa):
        template, schema = rpa
        with pytest.raises(TemplateAssetMissingError) as exc_info:
            PdfRenderer(tmp_path).render(template, schema, {})
        assert exc_info.value.code == ErrorCode.TEMPLATE_NOT_FOUND

    def test_corrupt_file(self, renderer, rpa):
        template, schema = rpa
        renderer.template_path(template).write_bytes(b'this is not a pdf at all')
        with pytest.raises(TemplateLoadError) as exc_info:
            renderer.render(template, schema, resolve(schema, RPA_FIELDS))
        assert exc_info.value.code == ErrorCode.TEMPLATE_LOAD_FAILED

    def test_encrypted_with_fill_permission(self, renderer, lead_paint):
        template, schema = lead_paint
        encrypt_pdf(
            renderer.template_path(template),
            permissions=UserAccessPermissions.PRINT | UserAccessPermissions.FILL_FORM_FIELDS,
        )
        result = renderer.render(template, schema, lead_paint_values())
        output = PdfReader(io.BytesIO(result.pdf_bytes))
        assert not output.is_encrypted
        assert '9 Oak Ave' in output.pages[0].extract_text()

    def test_encrypted_with_modify_permission(self, renderer, lead_paint):
        template, schema = lead_paint
        encrypt_pdf(renderer.template_path(template), permissions=UserAccessPermissions.ADD_OR_MODIFY)
        assert renderer.render(template, schema, lead_paint_values()).page_count == 2

    def test_encrypted_print_only_is_rejected(self, renderer, lead_paint):
        template, schema = lead_paint
        encrypt_pdf(renderer.template_path(template), permissions=UserAccessPermissions.PRINT)
        with pytest.raises(TemplateLoadError) as exc_info:
            renderer.render(template, schema, lead_paint_values())
        assert 'does not permit filling' in exc_info.value.message

    def test_user_password_is_rejected(self, renderer, lead_paint):
        template, schema = lead_paint
        encrypt_pdf(renderer.template_path(template), user_password='letmein')
        with pytest.raises(TemplateLoadError) as exc_info:
            renderer.render(template, schema, lead_paint_values())
        assert 'requires a password' in exc_info.value.message


class TestGeometry:
    """Page count and page size must match the schema."""

    def test_page_count_mismatch(self, renderer, rpa):
        template, schema = rpa
        build_pdf(renderer.template_path(template), page_count=2)
        with pytest.raises(TemplateGeometryError) as exc_info:
            renderer.render(template, schema, resolve(schema, RPA_FIELDS))
        assert exc_info.value.code == ErrorCode.TEMPLATE_GEOMETRY_MISMATCH

    def test_page_size_mismatch(self, renderer, lead_paint):
        template, schema = lead_paint
        build_pdf(renderer.template_path(template), page_count=2, page_size=(595.27, 841.89))
        with pytest.raises(TemplateGeometryError):
            renderer.render(template, schema, lead_paint_values())

    def test_sub_point_difference_is_tolerated(self, renderer, lead_paint):
        template, schema = lead_paint
        build_pdf(renderer.template_path(template), page_count=2, page_size=(612.4, 791.6))
        assert renderer.render(template, schema, lead_paint_values()).page_count == 2


class TestOutOfBounds:
    """Off-page placements are skipped with a warning, or fail under the 'fail' policy."""

    def test_skip_policy_reports_warning(self, renderer, lead_paint):
        template, _ = lead_paint
        result = renderer.render(template, offpage_schema(), {'inside': 'kept', 'outside': 'dropped'})
        assert [(w.code, w.field) for w in result.warnings] == [('FIELD_OUT_OF_BOUNDS', 'outside')]
        assert [p[0] for p in result.placements] == ['inside']
        assert 'kept' in page_text(result.pdf_bytes, 1)

    def test_page_beyond_count_is_out_of_bounds(self, renderer, lead_paint):
        template, _ = lead_paint
        schema = FieldSchema.from_dict({
            'schema_version': '1.0',
            'template_code': 'LEAD_BASED_PAINT',
            'page_count': 2,
            'fields': [{'name': 'late', 'type': 'string', 'placement': {'page': 5, 'x': 10, 'y': 10}}],
        })
        result = renderer.render(template, schema, {'late': 'x'})
        assert result.warnings[0].code == 'FIELD_OUT_OF_BOUNDS'

    def test_fail_policy_raises(self, pdf_dir, lead_paint):
        template, _ = lead_paint
        strict = PdfRenderer(pdf_dir, out_of_bounds_policy='fail')
        with pytest.raises(FieldOutOfBoundsError) as exc_info:
            strict.render(template, offpage_schema(), {'inside': 'kept', 'outside': 'dropped'})
        assert exc_info.value.code == ErrorCode.FIELD_OUT_OF_BOUNDS

    def test_unknown_policy(self, pdf_dir):
        with pytest.raises(ValueError):
            PdfRenderer(pdf_dir, out_of_bounds_policy='ignore')


class TestSignatures:
    """Signature boxes draw placeholders, typed marks, images and dates."""

    def test_placeholder_for_unsigned_field(self, renderer, lead_paint):
        template, schema = lead_paint
        signatures = [SignatureData('buyer_signature', 'b1', 'buyer')]
        result = renderer.render(template, schema, lead_paint_values(), signatures)
        assert 'Buyer Signature' in page_text(result.pdf_bytes, 2)
        assert ('buyer_signature', 2, 60.0, 400.0) in result.placements

    def test_typed_signature(self, renderer, lead_paint):
        template, schema = lead_paint
        signatures = [SignatureData('seller_signature', 's1', 'seller', value='Sam Seller')]
        result = renderer.render(template, schema, lead_paint_values(), signatures)
        assert 'Sam Seller' in page_text(result.pdf_bytes, 2)

    def test_date_field_uses_signed_at(self, renderer, lead_paint):
        template, schema = lead_paint
        signatures = [SignatureData(
            'seller_signature_date', 's1', 'seller', type='date', signed_at=datetime(2026, 11, 2, 15, 0),
        )]
        result = renderer.render(template, schema, lead_paint_values(), signatures)
        assert '11/02/2026' in page_text(result.pdf_bytes, 2)

    def test_png_signature_is_drawn_as_image(self, renderer, lead_paint):
        template, schema = lead_paint
        signatures = [SignatureData('buyer_signature', 'b1', 'buyer', value=png_data_url())]
        result = renderer.render(template, schema, lead_paint_values(), signatures)
        assert result.warnings == []
        page = PdfReader(io.BytesIO(result.pdf_bytes)).pages[1]
        xobjects = page['/Resources']['/XObject']
        assert any(xobjects[name].get_object().get('/Subtype') == '/Image' for name in xobjects)

    def test_bad_image_falls_back_to_placeholder(self, renderer, lead_paint):
        template, schema = lead_paint
        signatures = [SignatureData('buyer_signature', 'b1', 'buyer', value='data:image/png;base64,!!!!')]
        result = renderer.render(template, schema, lead_paint_values(), signatures)
        assert [w.code for w in result.warnings] == ['INVALID_SIGNATURE_IMAGE']
        assert 'Buyer Signature' in page_text(result.pdf_bytes, 2)

    def test_unknown_signature_field_is_a_warning(self, renderer, lead_paint):
        template, schema = lead_paint
        signatures = [SignatureData('notary_stamp', 'n1', 'other', value='N')]
        result = renderer.render(template, schema, lead_paint_values(), signatures)
        assert [(w.code, w.field) for w in result.warnings] == [('UNKNOWN_SIGNATURE_FIELD', 'notary_stamp')]
