"""
Typed field catalogs.

Every fillable target (a PDF template version or a provider-hosted template)
has one explicit catalog: the fields it declares, how logical intake keys bind
onto those fields (duplicate display fields are listed here, never derived),
which keys must always be present, and for PDF templates the anchor
coordinate table. Catalogs are validated at import and again against the real
PDF files at application startup.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, FrozenSet, Mapping, Optional, Tuple

from subsidy_signing.core.errors import FieldNotFoundError, InvalidOptionError, TemplateFieldError
from subsidy_signing.forms.fields import FieldKind

SIGNATURE_ANCHOR = "/sig1/"
DATE_ANCHOR = "/date1/"

YES = "ja"
NO = "nee"


@dataclass(frozen=True)
class FieldSpec:
    kind: FieldKind
    options: Tuple[str, ...] = ()
    max_length: Optional[int] = None


@dataclass(frozen=True)
class ChoiceBinding:
    """
    Binds a logical choice onto a provider field.

    ``options`` maps the canonical choice to the provider option value. When
    ``as_checkboxes`` is set, each option value is instead the key of a
    checkbox field and the binding produces one boolean per option.
    """
    field_key: str
    options: Mapping[str, str]
    as_checkboxes: bool = False


@dataclass(frozen=True)
class AnchorMark:
    """Marker text drawn on the last page for provider-side tab placement."""
    text: str
    x: float
    y: float
    size: float
    color: Tuple[float, float, float]


@dataclass(frozen=True)
class FieldCatalog:
    name: str
    version: str
    fields: Mapping[str, FieldSpec]
    text_bindings: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)
    choice_bindings: Mapping[str, ChoiceBinding] = field(default_factory=dict)
    placeholder_keys: FrozenSet[str] = frozenset()

    def __contains__(self, key: str) -> bool:
        return key in self.fields

    def spec(self, key: str) -> FieldSpec:
        try:
            return self.fields[key]
        except KeyError:
            raise FieldNotFoundError(self.name, key) from None

    def validate(self) -> None:
        """Check that every binding points at a declared field of the right kind."""
        for logical_key, targets in self.text_bindings.items():
            if not targets:
                raise TemplateFieldError(f"Binding '{logical_key}' has no target fields", self.name, logical_key)
            for target in targets:
                if self.spec(target).kind is not FieldKind.TEXT:
                    raise TemplateFieldError(f"Field '{target}' is not a text field", self.name, target)

        for logical_key, binding in self.choice_bindings.items():
            if binding.as_checkboxes:
                for checkbox_key in binding.options.values():
                    if self.spec(checkbox_key).kind is not FieldKind.CHECKBOX:
                        raise TemplateFieldError(f"Field '{checkbox_key}' is not a checkbox", self.name, checkbox_key)
                continue
            spec = self.spec(binding.field_key)
            if spec.kind is not FieldKind.RADIO:
                raise TemplateFieldError(f"Field '{binding.field_key}' is not a radio group", self.name, binding.field_key)
            for option in binding.options.values():
                if option not in spec.options:
                    raise InvalidOptionError(self.name, binding.field_key, option, list(spec.options))

        for key in self.placeholder_keys:
            self.spec(key)


@dataclass(frozen=True)
class PdfTemplate:
    template_id: str
    file_name: str
    document_name: str
    catalog: FieldCatalog
    anchors: Tuple[AnchorMark, ...] = ()


def _text(*names: str, max_length: Optional[int] = None) -> Dict[str, FieldSpec]:
    return {name: FieldSpec(FieldKind.TEXT, max_length=max_length) for name in names}


def _radio(name: str, *options: str) -> Dict[str, FieldSpec]:
    return {name: FieldSpec(FieldKind.RADIO, options=tuple(options))}


def _checkbox(*names: str) -> Dict[str, FieldSpec]:
    return {name: FieldSpec(FieldKind.CHECKBOX) for name in names}


def _freeze(mapping: Dict) -> Mapping:
    return MappingProxyType(dict(mapping))


# Canonical choice tokens shared by every catalog
DE_MINIMIS_CHOICES = ("none", "below_threshold", "other_state_aid")
COMPANY_SIZE_CHOICES = ("small", "medium", "large")
YES_NO = {"yes": YES, "no": NO}

DE_MINIMIS_OPTION_LABELS = {
    "none": "Geen de-minimissteun is verleend",
    "below_threshold": "Wel de-minimissteun is verleend, maar het drempelbedrag niet wordt overschreden",
    "other_state_aid": "al andere staatssteun is verleend voor dezelfde in aanmerking komende kosten",
}

COMPANY_SIZE_LABELS = {
    "small": "Kleine onderneming",
    "medium": "Middelgrote onderneming",
    "large": "Grote onderneming",
}

# --- PDF templates -------------------------------------------------------

_DE_MINIMIS_PDF = FieldCatalog(
    name="pdf:de_minimis",
    version="2024-01",
    fields=_freeze({
        **_radio("1.1", *DE_MINIMIS_OPTION_LABELS.values()),
        **_text("1.2", "1.3", "1.4"),
        **_text("2.1", "2.2", "2.3", "2.4", "2.5", "2.7", "2.8_DAT1"),
        **_text("2.6_PC", max_length=6),
    }),
    text_bindings=_freeze({
        "company_name": ("2.1",),
        "kvk_number": ("2.2",),
        "street": ("2.3",),
        "house_number": ("2.4",),
        "city": ("2.5",),
        "postal_code": ("2.6_PC",),
        "signer_name": ("2.7",),
        "date": ("2.8_DAT1",),
        "aid_amount_1_2": ("1.2",),
        "aid_amount_1_3": ("1.3",),
        "aid_amount_1_4": ("1.4",),
    }),
    choice_bindings=_freeze({
        "de_minimis_choice": ChoiceBinding("1.1", _freeze(DE_MINIMIS_OPTION_LABELS)),
    }),
)

_MACHTIGING_PDF = FieldCatalog(
    name="pdf:machtiging",
    version="2024-01",
    fields=_freeze({
        **_text(
            "aanvrager bedrijfsnaam",
            "aanvrager email",
            "aanvrager contactpersoon",
            "aanvrager email contactpersoon",
            "aanvrager functie",
            "aanvrager datum",
            "gemachtigde bedrijfsnaam",
            "gemachtigde contactpersoon",
            "gemachtigde email",
            "gemachtigde datum 1",
            "gemachtigde naam",
            "gemachtigde functie",
            "gemachtigde telefoon",
            "gemachtigde datum 2",
            "gemachtigde kvk",
        ),
        **_text("aanvrager kvk", max_length=8),
        **_text("aanvrager telefoon", max_length=10),
    }),
    text_bindings=_freeze({
        "applicant_company_name": ("aanvrager bedrijfsnaam",),
        "applicant_email": ("aanvrager email",),
        "applicant_kvk_number": ("aanvrager kvk",),
        "applicant_contact_person": ("aanvrager contactpersoon",),
        "applicant_contact_email": ("aanvrager email contactpersoon",),
        "applicant_position": ("aanvrager functie",),
        "applicant_phone_number": ("aanvrager telefoon",),
        "applicant_date": ("aanvrager datum",),
        "representative_company_name": ("gemachtigde bedrijfsnaam",),
        "representative_contact_person": ("gemachtigde contactpersoon",),
        "representative_email": ("gemachtigde email",),
        "representative_sign_date1": ("gemachtigde datum 1",),
        "representative_name": ("gemachtigde naam",),
        "representative_position": ("gemachtigde functie",),
        "representative_phone_number": ("gemachtigde telefoon",),
        "representative_sign_date2": ("gemachtigde datum 2",),
        "representative_kvk_number": ("gemachtigde kvk",),
    }),
)

_MKB_QUESTION_FIELDS = {
    "fte_question": "aantal fte",
    "turnover_question": "omzet",
    "balance_question": "balans",
    "voting_rights_question": "stemrechten",
    "capital_question": "kapitaal",
    "aggregated_values_question": "opgetelde waarden",
    "small_fte_question": "klein fte",
    "small_turnover_question": "klein omzet",
}

_MKB_PDF = FieldCatalog(
    name="pdf:mkb",
    version="2024-01",
    fields=_freeze({
        **_text(
            "naam onderneming",
            "boekjaar",
            "werkzame personen",
            "jaaromzet",
            "balanstotaal",
            "naam tekenbevoegde",
            "functie",
            "datum en plaats",
        ),
        **_radio("Type onderneming", *COMPANY_SIZE_LABELS.values()),
        **{name: FieldSpec(FieldKind.RADIO, options=(YES, NO)) for name in _MKB_QUESTION_FIELDS.values()},
    }),
    text_bindings=_freeze({
        "company_name": ("naam onderneming",),
        "financial_year": ("boekjaar",),
        "employees": ("werkzame personen",),
        "annual_turnover_eur": ("jaaromzet",),
        "balance_total_eur": ("balanstotaal",),
        "signer_name": ("naam tekenbevoegde",),
        "signer_position": ("functie",),
        "date_and_location": ("datum en plaats",),
    }),
    choice_bindings=_freeze({
        "company_size": ChoiceBinding("Type onderneming", _freeze(COMPANY_SIZE_LABELS)),
        **{key: ChoiceBinding(pdf_field, _freeze(YES_NO)) for key, pdf_field in _MKB_QUESTION_FIELDS.items()},
    }),
)

_FAINT_GREY = (0.95, 0.95, 0.95)
_WHITE = (1.0, 1.0, 1.0)

PDF_TEMPLATES: Mapping[str, PdfTemplate] = _freeze({
    "de_minimis": PdfTemplate(
        template_id="de_minimis",
        file_name="1 de-minimisverklaring.pdf",
        document_name="De-minimisverklaring",
        catalog=_DE_MINIMIS_PDF,
        anchors=(
            AnchorMark(SIGNATURE_ANCHOR, x=205, y=765, size=6, color=_FAINT_GREY),
            AnchorMark(DATE_ANCHOR, x=192, y=730, size=6, color=_FAINT_GREY),
        ),
    ),
    "machtiging": PdfTemplate(
        template_id="machtiging",
        file_name="2 Machtigingsformulier leeg.pdf",
        document_name="Machtigingsformulier",
        catalog=_MACHTIGING_PDF,
        anchors=(
            AnchorMark(SIGNATURE_ANCHOR, x=100, y=100, size=6, color=_FAINT_GREY),
            AnchorMark(DATE_ANCHOR, x=200, y=100, size=6, color=_FAINT_GREY),
        ),
    ),
    "mkb": PdfTemplate(
        template_id="mkb",
        file_name="3 MKB verklaring SLIM.pdf",
        document_name="MKB-verklaring",
        catalog=_MKB_PDF,
        anchors=(
            AnchorMark(SIGNATURE_ANCHOR, x=450, y=515, size=1, color=_WHITE),
            AnchorMark(DATE_ANCHOR, x=200, y=515, size=1, color=_WHITE),
        ),
    ),
})

# --- Provider-hosted templates -------------------------------------------

_COMMON_TEMPLATE_TEXT = (
    "bedrijfsnaam",
    "kvk",
    "adres",
    "huisnummer",
    "postcode",
    "plaats",
    "naam_tekenbevoegde",
    "functie",
    "datum",
    "email",
    "telefoon",
    "contactpersoon",
    "boekjaar",
    "werkzame_personen",
    "jaaromzet",
    "balanstotaal",
    "datum_en_plaats",
    "de_minimis_bedrag",
    "de_minimis_datum",
    "de_minimis_verstrekker",
    "gemachtigde",
    "gemachtigde_naam",
    "gemachtigde_email",
    "gemachtigde_telefoon",
    "gemachtigde_kvk",
)

_COMMON_TEXT_BINDINGS = {
    "company_name": ("bedrijfsnaam",),
    "kvk_number": ("kvk",),
    "street": ("adres",),
    "house_number": ("huisnummer",),
    "postal_code": ("postcode",),
    "city": ("plaats",),
    "signer_name": ("naam_tekenbevoegde",),
    "signer_position": ("functie",),
    "date": ("datum",),
    "applicant_company_name": ("bedrijfsnaam",),
    "applicant_kvk_number": ("kvk",),
    "applicant_email": ("email",),
    "applicant_phone_number": ("telefoon",),
    "applicant_contact_person": ("contactpersoon",),
    "applicant_position": ("functie",),
    "applicant_date": ("datum",),
    "financial_year": ("boekjaar",),
    "employees": ("werkzame_personen",),
    "annual_turnover_eur": ("jaaromzet",),
    "balance_total_eur": ("balanstotaal",),
    "date_and_location": ("datum_en_plaats",),
    "aid_amount_1_2": ("de_minimis_bedrag",),
    "aid_amount_1_3": ("de_minimis_datum",),
    "aid_amount_1_4": ("de_minimis_verstrekker",),
    "representative_company_name": ("gemachtigde",),
    "representative_name": ("gemachtigde_naam",),
    "representative_email": ("gemachtigde_email",),
    "representative_phone_number": ("gemachtigde_telefoon",),
    "representative_kvk_number": ("gemachtigde_kvk",),
}

_CONDITIONAL_TEMPLATE_KEYS = frozenset({"de_minimis_bedrag", "de_minimis_datum", "de_minimis_verstrekker"})

# The hosted templates repeat company name and KvK number on the MKB and
# machtiging pages.
DOCUSIGN_DUPLICATE_FIELDS: Mapping[str, Tuple[str, ...]] = _freeze({
    "bedrijfsnaam": ("bedrijfsnaam_mkb", "bedrijfsnaam_machtiging"),
    "kvk": ("kvk_machtiging",),
})

SIGNWELL_DUPLICATE_FIELDS: Mapping[str, Tuple[str, ...]] = _freeze({
    "bedrijfsnaam": ("bedrijfsnaam_2", "bedrijfsnaam_3"),
    "kvk": ("kvk_2",),
    "naam_tekenbevoegde": ("naam_tekenbevoegde_2",),
})


def _with_duplicates(bindings: Dict[str, Tuple[str, ...]], duplicates: Mapping[str, Tuple[str, ...]]) -> Dict[str, Tuple[str, ...]]:
    expanded = {}
    for logical_key, targets in bindings.items():
        extended = list(targets)
        for target in targets:
            extended.extend(duplicates.get(target, ()))
        expanded[logical_key] = tuple(extended)
    return expanded


def _duplicate_keys(duplicates: Mapping[str, Tuple[str, ...]]) -> Tuple[str, ...]:
    return tuple(key for keys in duplicates.values() for key in keys)


DOCUSIGN_TEMPLATE_CATALOG = FieldCatalog(
    name="docusign:slim_aanvraag",
    version="2024-03",
    fields=_freeze({
        **_text(*_COMMON_TEMPLATE_TEXT, *_duplicate_keys(DOCUSIGN_DUPLICATE_FIELDS)),
        **_radio("de_minimis_keuze", "geen", "wel", "andere"),
        **_radio("bedrijfsgrootte", "kleine", "middel", "grote"),
    }),
    text_bindings=_freeze(_with_duplicates(_COMMON_TEXT_BINDINGS, DOCUSIGN_DUPLICATE_FIELDS)),
    choice_bindings=_freeze({
        "de_minimis_choice": ChoiceBinding(
            "de_minimis_keuze",
            _freeze({"none": "geen", "below_threshold": "wel", "other_state_aid": "andere"}),
        ),
        "company_size": ChoiceBinding(
            "bedrijfsgrootte",
            _freeze({"small": "kleine", "medium": "middel", "large": "grote"}),
        ),
    }),
    placeholder_keys=_CONDITIONAL_TEMPLATE_KEYS,
)

SIGNWELL_CHECKBOX_GROUPS: Mapping[str, str] = _freeze({
    "de_minimis_choice": "de-minimis-group",
    "company_size": "company-size-group",
})

SIGNWELL_TEMPLATE_CATALOG = FieldCatalog(
    name="signwell:slim_aanvraag",
    version="2024-03",
    fields=_freeze({
        **_text(*_COMMON_TEMPLATE_TEXT, *_duplicate_keys(SIGNWELL_DUPLICATE_FIELDS)),
        **_checkbox("geen", "wel", "andere", "kleine", "middel", "grote"),
    }),
    text_bindings=_freeze(_with_duplicates(_COMMON_TEXT_BINDINGS, SIGNWELL_DUPLICATE_FIELDS)),
    choice_bindings=_freeze({
        "de_minimis_choice": ChoiceBinding(
            SIGNWELL_CHECKBOX_GROUPS["de_minimis_choice"],
            _freeze({"none": "geen", "below_threshold": "wel", "other_state_aid": "andere"}),
            as_checkboxes=True,
        ),
        "company_size": ChoiceBinding(
            SIGNWELL_CHECKBOX_GROUPS["company_size"],
            _freeze({"small": "kleine", "medium": "middel", "large": "grote"}),
            as_checkboxes=True,
        ),
    }),
    placeholder_keys=_CONDITIONAL_TEMPLATE_KEYS,
)


def get_pdf_template(template_id: str) -> PdfTemplate:
    try:
        return PDF_TEMPLATES[template_id]
    except KeyError:
        raise TemplateFieldError(f"Unknown PDF template '{template_id}'", template_id, "") from None


def all_catalogs() -> Tuple[FieldCatalog, ...]:
    return tuple(template.catalog for template in PDF_TEMPLATES.values()) + (
        DOCUSIGN_TEMPLATE_CATALOG,
        SIGNWELL_TEMPLATE_CATALOG,
    )


def validate_catalogs() -> None:
    """Validate every catalog's internal consistency. Raises TemplateFieldError."""
    for catalog in all_catalogs():
        catalog.validate()


validate_catalogs()
