"""
PDF Renderer

Fills a template's base PDF with resolved field values and signature
marks and returns the new bytes. Rendering is a pure transform: the base
file is read fresh on every call and nothing PDF-related outlives it.

Values go into the AcroForm widget named by a field's `pdf_field` when the
base PDF has one; otherwise they are stamped at the field's `placement`
through a reportlab overlay merged onto the page.
"""

import base64
import binascii
import io
import logging
from collections import defaultdict
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from PIL import Image, UnidentifiedImageError
from pypdf import PdfReader, PdfWriter
from pypdf.constants import UserAccessPermissions
from pypdf.errors import PyPdfError
from pypdf.generic import NameObject
from reportlab.lib.utils import ImageReader, simpleSplit
from reportlab.pdfgen import canvas

from .exceptions import (
    FieldOutOfBoundsError,
    TemplateAssetMissingError,
    TemplateGeometryError,
    TemplateLoadError,
)
from .transforms import render_value, transform_date_short
from .types import (
    FieldSchema,
    RenderResult,
    RenderWarning,
    SignatureData,
    SignatureField,
    TemplateDefinition,
)

logger = logging.getLogger(__name__)

OUT_OF_BOUNDS_SKIP = 'skip'
OUT_OF_BOUNDS_FAIL = 'fail'

PNG_DATA_PREFIX = 'data:image/png;base64,'
GEOMETRY_TOLERANCE = 1.0

# Either permission lets a filler write into existing form fields.
FILL_PERMISSIONS = (
    UserAccessPermissions.FILL_FORM_FIELDS,
    UserAccessPermissions.ADD_OR_MODIFY,
)


class PdfRenderer:
    """
    Renders filled PDFs for templates.

    Args:
        pdf_dir: Directory holding each template's base PDF (`file_name`)
        out_of_bounds_policy: 'skip' to drop and report an out-of-page
            placement, 'fail' to raise FieldOutOfBoundsError
        font_name: Standard Type 1 font used for stamped text
        font_size: Default point size for stamped text
    """

    def __init__(
        self,
        pdf_dir,
        out_of_bounds_policy: str = OUT_OF_BOUNDS_SKIP,
        font_name: str = 'Helvetica',
        font_size: float = 10,
    ):
        if out_of_bounds_policy not in (OUT_OF_BOUNDS_SKIP, OUT_OF_BOUNDS_FAIL):
            raise ValueError(f"Unknown out-of-bounds policy: {out_of_bounds_policy}")
        self.pdf_dir = Path(pdf_dir)
        self.out_of_bounds_policy = out_of_bounds_policy
        self.font_name = font_name
        self.font_size = float(font_size)

    def render(
        self,
        template: TemplateDefinition,
        schema: FieldSchema,
        values: Mapping[str, Any],
        signatures: Optional[Sequence[SignatureData]] = None,
    ) -> RenderResult:
        """
        Render `values` and `signatures` onto the template's base PDF.

        Raises:
            TemplateAssetMissingError: base PDF file does not exist
            TemplateLoadError: base PDF is unreadable or its permissions forbid filling
            TemplateGeometryError: page count or page size disagrees with the schema
            FieldOutOfBoundsError: a placement is off-page and the policy is 'fail'
        """
        reader = self._load(template)
        self._check_geometry(template, schema, reader)

        try:
            writer = PdfWriter(clone_from=reader)
        except (PyPdfError, ValueError, KeyError, TypeError) as e:
            raise TemplateLoadError(f"Could not copy template {template.code}: {e}", template_code=template.code)

        warnings: List[RenderWarning] = []
        placements: List[Tuple[str, int, float, float]] = []
        page_sizes = [(float(p.mediabox.width), float(p.mediabox.height)) for p in writer.pages]
        overlays: Dict[int, List[Tuple[str, Any]]] = defaultdict(list)

        form_fields = reader.get_fields() or {}
        widget_locations = self._widget_locations(reader)
        acro_values: Dict[str, Any] = {}

        for descriptor in schema.fields:
            if descriptor.name not in values:
                continue
            text = render_value(descriptor, values[descriptor.name])

            if descriptor.pdf_field and descriptor.pdf_field in form_fields:
                acro_values[descriptor.pdf_field] = self._widget_value(
                    form_fields[descriptor.pdf_field], descriptor.type.is_boolean, values[descriptor.name], text
                )
                page_no, x, y = widget_locations.get(descriptor.pdf_field, (0, 0.0, 0.0))
                placements.append((descriptor.name, page_no, x, y))
                continue

            placement = descriptor.placement
            if placement is None:
                logger.debug(f"{template.code}: field {descriptor.name} has no position, not rendered")
                continue
            if not text:
                continue
            box = (placement.x, placement.y, placement.width, placement.height)
            if not self._within_page(descriptor.name, placement.page, box, page_sizes, warnings):
                continue
            overlays[placement.page].append(('text', (box, text, placement.font_size or self.font_size)))
            placements.append((descriptor.name, placement.page, placement.x, placement.y))

        for signature in signatures or ():
            sig_field = schema.get_signature_field(signature.field_id)
            if sig_field is None:
                warnings.append(RenderWarning(
                    'UNKNOWN_SIGNATURE_FIELD', signature.field_id,
                    f"{template.code} has no signature field '{signature.field_id}'",
                ))
                continue
            box = (sig_field.x, sig_field.y, sig_field.width, sig_field.height)
            if not self._within_page(sig_field.id, sig_field.page, box, page_sizes, warnings):
                continue
            overlays[sig_field.page].append(('signature', (sig_field, signature)))
            placements.append((sig_field.id, sig_field.page, sig_field.x, sig_field.y))

        try:
            if acro_values:
                self._fill_acroform(writer, acro_values)
            for page_no in sorted(overlays):
                overlay = self._build_overlay(page_sizes[page_no - 1], overlays[page_no], warnings)
                writer.pages[page_no - 1].merge_page(overlay)

            output = io.BytesIO()
            writer.write(output)
        except PyPdfError as e:
            raise TemplateLoadError(f"Could not render template {template.code}: {e}", template_code=template.code)

        pdf_bytes = output.getvalue()
        logger.info(
            f"Rendered {template.code}: {len(placements)} placement(s), "
            f"{len(warnings)} warning(s), {len(pdf_bytes)} bytes"
        )
        return RenderResult(
            pdf_bytes=pdf_bytes,
            page_count=len(writer.pages),
            warnings=warnings,
            placements=placements,
        )

    # =========================================================================
    # LOADING
    # =========================================================================

    def template_path(self, template: TemplateDefinition) -> Path:
        return self.pdf_dir / template.file_name

    def _load(self, template: TemplateDefinition) -> PdfReader:
        path = self.template_path(template)
        if not path.is_file():
            raise TemplateAssetMissingError(
                f"Base PDF for {template.code} not found: {template.file_name}",
                template_code=template.code,
            )

        data = path.read_bytes()
        try:
            reader = PdfReader(io.BytesIO(data))
            if reader.is_encrypted:
                self._unlock(template, reader)
            # Force a full parse so corrupt files fail here
            len(reader.pages)
        except TemplateLoadError:
            raise
        except (PyPdfError, ValueError, KeyError, TypeError, IndexError, NotImplementedError) as e:
            raise TemplateLoadError(f"Could not read base PDF for {template.code}: {e}", template_code=template.code)
        return reader

    @staticmethod
    def _unlock(template: TemplateDefinition, reader: PdfReader) -> None:
        """
        Open an encrypted template with the empty user password.

        Owner-password-only forms open this way; the /P permissions must
        still allow filling form fields (bit 9) or modifying forms (bit 6).
        """
        if not reader.decrypt(''):
            raise TemplateLoadError(
                f"Base PDF for {template.code} requires a password",
                template_code=template.code,
            )

        encrypt = reader.trailer['/Encrypt'].get_object()
        permissions = int(encrypt.get('/P', 0))
        if not any(permissions & int(flag) for flag in FILL_PERMISSIONS):
            raise TemplateLoadError(
                f"Base PDF for {template.code} does not permit filling form fields",
                template_code=template.code,
                permissions=permissions,
            )
        logger.debug(f"Opened encrypted template {template.code} (P={permissions})")

    @staticmethod
    def _check_geometry(template: TemplateDefinition, schema: FieldSchema, reader: PdfReader) -> None:
        actual_pages = len(reader.pages)
        if actual_pages != schema.page_count:
            raise TemplateGeometryError(
                f"{template.code}: base PDF has {actual_pages} page(s), schema expects {schema.page_count}",
                template_code=template.code,
            )

        expected_w, expected_h = schema.page_size
        for index, page in enumerate(reader.pages, start=1):
            width, height = float(page.mediabox.width), float(page.mediabox.height)
            if abs(width - expected_w) > GEOMETRY_TOLERANCE or abs(height - expected_h) > GEOMETRY_TOLERANCE:
                raise TemplateGeometryError(
                    f"{template.code}: page {index} is {width:g}x{height:g}, "
                    f"schema expects {expected_w:g}x{expected_h:g}",
                    template_code=template.code,
                    page=index,
                )

    @staticmethod
    def _widget_locations(reader: PdfReader) -> Dict[str, Tuple[int, float, float]]:
        """Map AcroForm field name to (page number, x, y) of its first widget."""
        locations: Dict[str, Tuple[int, float, float]] = {}
        for page_no, page in enumerate(reader.pages, start=1):
            annots = page.get('/Annots')
            for annot in (annots.get_object() if annots else []):
                annot = annot.get_object()
                if annot.get('/Subtype') != '/Widget':
                    continue
                name = annot.get('/T')
                if name is None and '/Parent' in annot:
                    name = annot['/Parent'].get_object().get('/T')
                rect = annot.get('/Rect')
                if name is not None and rect is not None and str(name) not in locations:
                    locations[str(name)] = (page_no, float(rect[0]), float(rect[1]))
        return locations

    # =========================================================================
    # WRITING
    # =========================================================================

    @staticmethod
    def _widget_value(form_field, is_boolean: bool, value: Any, text: str) -> Any:
        if form_field.get('/FT') == '/Btn' and is_boolean:
            states = [s for s in form_field.get('/_States_', []) if s != '/Off']
            on_state = states[0] if states else '/Yes'
            return NameObject(on_state if value else '/Off')
        return text

    @staticmethod
    def _fill_acroform(writer: PdfWriter, acro_values: Dict[str, Any]) -> None:
        writer.set_need_appearances_writer(True)
        for page in writer.pages:
            if page.get('/Annots'):
                writer.update_page_form_field_values(page, acro_values, auto_regenerate=False)

    def _within_page(self, name: str, page_no: int, box, page_sizes, warnings: List[RenderWarning]) -> bool:
        x, y, width, height = box
        if 1 <= page_no <= len(page_sizes):
            page_w, page_h = page_sizes[page_no - 1]
            if x >= 0 and y >= 0 and x + width <= page_w and y + height <= page_h:
                return True
            message = f"'{name}' at ({x:g}, {y:g}, {width:g}x{height:g}) lies outside page {page_no} ({page_w:g}x{page_h:g})"
        else:
            message = f"'{name}' is placed on page {page_no} but the document has {len(page_sizes)} page(s)"

        if self.out_of_bounds_policy == OUT_OF_BOUNDS_FAIL:
            raise FieldOutOfBoundsError(message, field=name, page=page_no)
        logger.warning(f"Skipping out-of-bounds field: {message}")
        warnings.append(RenderWarning('FIELD_OUT_OF_BOUNDS', name, message))
        return False

    def _build_overlay(self, page_size: Tuple[float, float], items, warnings: List[RenderWarning]):
        buf = io.BytesIO()
        c = canvas.Canvas(buf, pagesize=page_size, invariant=1)
        for kind, payload in items:
            if kind == 'text':
                box, text, size = payload
                self._draw_text(c, box, text, size)
            else:
                sig_field, signature = payload
                self._draw_signature(c, sig_field, signature, warnings)
        c.showPage()
        c.save()
        return PdfReader(io.BytesIO(buf.getvalue())).pages[0]

    def _draw_text(self, c, box, text: str, size: float) -> None:
        x, y, width, height = box
        c.setFont(self.font_name, size)
        leading = size * 1.2

        if height < leading * 2:
            # Single line, vertically centred in the box
            line = simpleSplit(text, self.font_name, size, width)[:1] or ['']
            c.drawString(x + 1, y + (height - size) / 2 + size * 0.2, line[0])
            return

        lines = []
        for paragraph in text.splitlines() or ['']:
            lines.extend(simpleSplit(paragraph, self.font_name, size, width) or [''])
        max_lines = int(height // leading)
        baseline = y + height - size
        for line in lines[:max_lines]:
            c.drawString(x + 1, baseline, line)
            baseline -= leading

    def _draw_signature(self, c, sig_field: SignatureField, signature: SignatureData, warnings) -> None:
        x, y, width, height = sig_field.x, sig_field.y, sig_field.width, sig_field.height

        if sig_field.type == 'date':
            text = signature.value or (transform_date_short(signature.signed_at) if signature.signed_at else None)
            if text:
                self._draw_text(c, (x, y, width, height), text, min(self.font_size, height * 0.6))
                return
        elif signature.value and signature.value.startswith(PNG_DATA_PREFIX):
            image = self._decode_png(signature.value)
            if image is not None:
                c.drawImage(
                    ImageReader(image), x, y, width=width, height=height,
                    preserveAspectRatio=True, anchor='sw', mask='auto',
                )
                return
            warnings.append(RenderWarning(
                'INVALID_SIGNATURE_IMAGE', sig_field.id, f"Signature image for '{sig_field.id}' could not be decoded"
            ))
        elif signature.value:
            font = 'Helvetica-Oblique'
            size = min(height * 0.7, 18)
            line = simpleSplit(signature.value, font, size, width)[:1] or ['']
            c.setFont(font, size)
            c.drawString(x + 2, y + (height - size) / 2 + size * 0.2, line[0])
            return

        self._draw_placeholder(c, sig_field)

    def _draw_placeholder(self, c, sig_field: SignatureField) -> None:
        label = f"{sig_field.role.title()} {sig_field.type.title()}"
        c.saveState()
        c.setDash(3, 2)
        c.setLineWidth(0.5)
        c.rect(sig_field.x, sig_field.y, sig_field.width, sig_field.height, stroke=1, fill=0)
        size = min(8.0, sig_field.height * 0.5)
        c.setFont(self.font_name, size)
        c.drawString(sig_field.x + 2, sig_field.y + 2, label)
        c.restoreState()

    @staticmethod
    def _decode_png(value: str) -> Optional[Image.Image]:
        try:
            raw = base64.b64decode(value[len(PNG_DATA_PREFIX):], validate=True)
            image = Image.open(io.BytesIO(raw))
            image.load()
        except (binascii.Error, ValueError, UnidentifiedImageError, OSError) as e:
            logger.warning(f"Could not decode signature image: {e}")
            return None
        return image
