"""
PDF form filler.

Fills the AcroForm fields of a blank subsidy template with pypdf and
optionally stamps the tiny anchor markers that envelope providers search for
when placing signature tabs. Each call reads the template from disk into a
fresh in-memory writer, so the template files are never modified. Output is
never flattened: the signer can still correct fields.
"""

import io
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional, Sequence, Set

from pypdf import PdfReader, PdfWriter
from pypdf.generic import BooleanObject, NameObject
from reportlab.pdfgen import canvas

from subsidy_signing.core.errors import (
    FieldNotFoundError,
    InvalidOptionError,
    TemplateFieldError,
    ValidationError,
)
from subsidy_signing.core.logging import get_logger
from subsidy_signing.forms.catalog import PDF_TEMPLATES, FieldCatalog, PdfTemplate
from subsidy_signing.forms.fields import FieldAssignment, FieldKind

logger = get_logger(__name__)

ANCHOR_FONT = "Helvetica"
OFF_STATE = "/Off"


@dataclass
class FilledPdf:
    template_id: str
    file_name: str
    document_name: str
    content: bytes
    page_count: int
    last_page_height: float


@dataclass
class _FormField:
    name: str
    field_type: Optional[str]
    states: Set[str] = field(default_factory=set)


def _strip_name(value: str) -> str:
    return value[1:] if value.startswith("/") else value


def _field_name(annotation) -> Optional[str]:
    if "/T" in annotation:
        return str(annotation["/T"])
    parent = annotation.get("/Parent")
    if parent is not None:
        parent = parent.get_object()
        if "/T" in parent:
            return str(parent["/T"])
    return None


def _field_object(annotation):
    """The dictionary holding /V for a widget: itself or its named parent."""
    if "/T" in annotation:
        return annotation
    parent = annotation.get("/Parent")
    return parent.get_object() if parent is not None else annotation


def _field_type(annotation) -> Optional[str]:
    if "/FT" in annotation:
        return str(annotation["/FT"])
    parent = annotation.get("/Parent")
    if parent is not None and "/FT" in parent.get_object():
        return str(parent.get_object()["/FT"])
    return None


def _widget_states(annotation) -> Set[str]:
    appearance = annotation.get("/AP")
    if appearance is None:
        return set()
    normal = appearance.get_object().get("/N")
    if normal is None or not hasattr(normal.get_object(), "keys"):
        return set()
    return {_strip_name(str(key)) for key in normal.get_object().keys() if str(key) != OFF_STATE}


def _iter_widgets(pages):
    for page in pages:
        for annot_ref in page.get("/Annots") or []:
            annotation = annot_ref.get_object()
            if annotation.get("/Subtype") != "/Widget":
                continue
            yield annotation


def _index_form_fields(pages) -> Dict[str, _FormField]:
    fields: Dict[str, _FormField] = {}
    for annotation in _iter_widgets(pages):
        name = _field_name(annotation)
        if name is None:
            continue
        entry = fields.setdefault(name, _FormField(name=name, field_type=_field_type(annotation)))
        if entry.field_type == "/Btn":
            entry.states.update(_widget_states(annotation))
    return fields


class PdfFormFiller:
    """Fill subsidy PDF templates from catalog-validated field assignments."""

    def __init__(self, template_dir: str, templates: Optional[Mapping[str, PdfTemplate]] = None):
        self.template_dir = Path(template_dir)
        self.templates = templates if templates is not None else PDF_TEMPLATES

    def _template(self, template_id: str) -> PdfTemplate:
        try:
            return self.templates[template_id]
        except KeyError:
            raise TemplateFieldError(f"Unknown PDF template '{template_id}'", template_id, "") from None

    def _template_path(self, template: PdfTemplate) -> Path:
        path = self.template_dir / template.file_name
        if not path.is_file():
            raise TemplateFieldError(
                f"Template file '{path}' not found",
                template.template_id,
                "",
                error_code="template_missing",
            )
        return path

    def check_template(self, template_id: str) -> None:
        """
        Compare the typed catalog against the fields of the real PDF.

        Raises:
            FieldNotFoundError: If a catalog field is missing from the PDF
            InvalidOptionError: If a radio option is not an appearance state of the PDF field
        """
        template = self._template(template_id)
        reader = PdfReader(self._template_path(template))
        pdf_fields = _index_form_fields(reader.pages)
        known = reader.get_fields() or {}

        for key, spec in template.catalog.fields.items():
            if key not in pdf_fields and key not in known:
                raise FieldNotFoundError(template.template_id, key)
            if spec.kind is FieldKind.RADIO:
                states = pdf_fields[key].states if key in pdf_fields else set()
                for option in spec.options:
                    if option not in states:
                        raise InvalidOptionError(template.template_id, key, option, sorted(states))

        logger.info("pdf.template_checked", template_id=template_id, field_count=len(template.catalog.fields))

    def check_templates(self) -> None:
        for template_id in self.templates:
            self.check_template(template_id)

    def fill(self, template_id: str, assignments: Sequence[FieldAssignment], add_anchors: bool = True) -> bytes:
        return self.fill_document(template_id, assignments, add_anchors).content

    def fill_document(
        self,
        template_id: str,
        assignments: Sequence[FieldAssignment],
        add_anchors: bool = True,
    ) -> FilledPdf:
        """
        Fill ``template_id`` and return the PDF bytes with page metadata.

        Raises:
            FieldNotFoundError: If an assignment names a field the template lacks
            InvalidOptionError: If a radio value is not one of the field's options
            ValidationError: If a text value exceeds the field's maximum length
        """
        template = self._template(template_id)
        reader = PdfReader(self._template_path(template))
        writer = PdfWriter(clone_from=reader)
        pdf_fields = _index_form_fields(writer.pages)

        text_values: Dict[str, str] = {}
        button_values: Dict[str, str] = {}
        for assignment in assignments:
            self._validate(template.catalog, pdf_fields, assignment)
            spec = template.catalog.spec(assignment.field_key)
            if spec.kind is FieldKind.TEXT:
                text_values[assignment.field_key] = str(assignment.value)
            elif spec.kind is FieldKind.RADIO:
                button_values[assignment.field_key] = str(assignment.value)
            else:
                button_values[assignment.field_key] = (
                    self._checkbox_on_state(pdf_fields[assignment.field_key]) if assignment.value else OFF_STATE
                )

        if text_values:
            for page in writer.pages:
                writer.update_page_form_field_values(page, text_values, auto_regenerate=False)
        if button_values:
            self._set_buttons(writer, button_values)

        if "/AcroForm" in writer._root_object:
            writer._root_object["/AcroForm"].update({
                NameObject("/NeedAppearances"): BooleanObject(True)
            })

        last_page = writer.pages[-1]
        width = float(last_page.mediabox.width)
        height = float(last_page.mediabox.height)
        if add_anchors and template.anchors:
            last_page.merge_page(self._anchor_overlay(template, width, height))

        buffer = io.BytesIO()
        writer.write(buffer)
        content = buffer.getvalue()

        logger.info(
            "pdf.filled",
            template_id=template_id,
            field_count=len(text_values) + len(button_values),
            anchors=add_anchors,
            size_bytes=len(content),
        )
        return FilledPdf(
            template_id=template.template_id,
            file_name=template.file_name,
            document_name=template.document_name,
            content=content,
            page_count=len(writer.pages),
            last_page_height=height,
        )

    def _validate(self, catalog: FieldCatalog, pdf_fields: Dict[str, _FormField], assignment: FieldAssignment) -> None:
        spec = catalog.spec(assignment.field_key)
        if assignment.field_key not in pdf_fields:
            raise FieldNotFoundError(catalog.name, assignment.field_key)

        if spec.kind is FieldKind.RADIO:
            value = str(assignment.value)
            if value not in spec.options:
                raise InvalidOptionError(catalog.name, assignment.field_key, value, list(spec.options))
        elif spec.kind is FieldKind.TEXT and spec.max_length is not None:
            if len(str(assignment.value)) > spec.max_length:
                raise ValidationError(
                    f"Value for '{assignment.field_key}' exceeds {spec.max_length} characters",
                    errors=[f"{assignment.field_key}: max length {spec.max_length}"],
                )

    @staticmethod
    def _checkbox_on_state(form_field: _FormField) -> str:
        return next(iter(sorted(form_field.states)), "Yes")

    @staticmethod
    def _set_buttons(writer: PdfWriter, values: Dict[str, str]) -> None:
        for annotation in _iter_widgets(writer.pages):
            name = _field_name(annotation)
            if name not in values:
                continue
            selected = _strip_name(values[name])
            on_states = _widget_states(annotation)
            state = f"/{selected}" if selected in on_states else OFF_STATE
            annotation[NameObject("/AS")] = NameObject(state)
            target = _field_object(annotation)
            if selected == _strip_name(OFF_STATE):
                target[NameObject("/V")] = NameObject(OFF_STATE)
            else:
                target[NameObject("/V")] = NameObject(f"/{selected}")

    @staticmethod
    def _anchor_overlay(template: PdfTemplate, width: float, height: float):
        buffer = io.BytesIO()
        overlay = canvas.Canvas(buffer, pagesize=(width, height))
        for anchor in template.anchors:
            overlay.setFillColorRGB(*anchor.color)
            overlay.setFont(ANCHOR_FONT, anchor.size)
            overlay.drawString(anchor.x, anchor.y, anchor.text)
        overlay.save()
        buffer.seek(0)
        return PdfReader(buffer).pages[0]
