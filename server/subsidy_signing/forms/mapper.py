"""
Field/Tab mapper.

Translates a validated intake into provider field assignments. Intake data is
first reduced to provider-neutral logical values (texts plus canonical
choices); the target catalog then binds those onto its own field keys.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Union

from subsidy_signing.core.logging import get_logger
from subsidy_signing.core.tenants import AuthorizedRepresentative
from subsidy_signing.forms.catalog import (
    DATE_ANCHOR,
    DOCUSIGN_TEMPLATE_CATALOG,
    SIGNATURE_ANCHOR,
    SIGNWELL_TEMPLATE_CATALOG,
    FieldCatalog,
    get_pdf_template,
)
from subsidy_signing.forms.classification import CompanySize, CompanySizeResult, classify
from subsidy_signing.forms.fields import FieldAssignment, FieldKind, TabDescriptor, TabType
from subsidy_signing.forms.intake import DeMinimisIntake, MachtigingIntake, MKBIntake

logger = get_logger(__name__)

PLACEHOLDER = " "

# Fallback positions when a document carries no anchor markers
ABSOLUTE_SIGNATURE_POSITION = (200, 100)
ABSOLUTE_DATE_POSITION = (350, 100)

Intake = Union[DeMinimisIntake, MachtigingIntake, MKBIntake]


class ProviderKind(str, Enum):
    """Targets the mapper can produce assignments for."""
    PDF_FORM = "pdf_form"
    DOCUSIGN = "docusign"
    SIGNWELL = "signwell"


@dataclass
class LogicalValues:
    texts: Dict[str, str] = field(default_factory=dict)
    choices: Dict[str, str] = field(default_factory=dict)
    company_size: Optional[CompanySizeResult] = None


@dataclass(frozen=True)
class CheckboxGroup:
    """Synthetic radio behaviour for providers that only know checkboxes."""
    group_name: str
    recipient_id: Optional[str]
    checkbox_ids: tuple
    exact_value: int = 1
    required: bool = True


def format_currency(value: Union[str, int, float, Decimal]) -> str:
    """Format a euro amount the Dutch way: ``€ 1.234.567,89``."""
    if isinstance(value, str):
        cleaned = "".join(ch for ch in value if ch.isdigit() or ch in ".-")
        try:
            amount = Decimal(cleaned)
        except InvalidOperation:
            return value
    else:
        amount = Decimal(str(value))
    formatted = f"{amount:,.2f}"
    formatted = formatted.replace(",", "_").replace(".", ",").replace("_", ".")
    return f"€ {formatted}"


def format_number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


def _yes_no(flag: bool) -> str:
    return "yes" if flag else "no"


def logical_values(intake: Intake, representative: Optional[AuthorizedRepresentative] = None) -> LogicalValues:
    """Reduce an intake to provider-neutral texts and canonical choices."""
    values = LogicalValues()

    if isinstance(intake, DeMinimisIntake):
        general = intake.general_data
        values.texts.update({
            "company_name": general.company_name,
            "kvk_number": general.kvk_number,
            "street": general.street,
            "house_number": general.house_number,
            "city": general.city,
            "postal_code": general.postal_code,
            "signer_name": general.signer_name,
            "date": general.date,
        })
        values.choices["de_minimis_choice"] = {1: "none", 2: "below_threshold", 3: "other_state_aid"}[intake.selected_option]
        amounts = intake.active_amounts
        if amounts is not None:
            values.texts.update({
                "aid_amount_1_2": amounts.field_1_2,
                "aid_amount_1_3": amounts.field_1_3,
                "aid_amount_1_4": amounts.field_1_4,
            })

    elif isinstance(intake, MachtigingIntake):
        applicant = intake.applicant_data
        rep = intake.representative_data
        values.texts.update({
            "applicant_company_name": applicant.company_name,
            "applicant_email": applicant.email,
            "applicant_kvk_number": applicant.kvk_number,
            "applicant_contact_person": applicant.contact_person,
            "applicant_contact_email": applicant.contact_email,
            "applicant_position": applicant.position,
            "applicant_phone_number": applicant.phone_number,
            "applicant_date": applicant.date,
            "representative_company_name": rep.company_name,
            "representative_contact_person": rep.contact_person,
            "representative_email": rep.email,
            "representative_sign_date1": rep.sign_date1,
            "representative_name": rep.name,
            "representative_position": rep.position,
            "representative_phone_number": rep.phone_number,
            "representative_sign_date2": rep.sign_date2,
        })
        if representative is not None:
            defaults = {
                "representative_company_name": representative.organisation,
                "representative_name": representative.name,
                "representative_email": representative.email,
                "representative_phone_number": representative.phone,
                "representative_kvk_number": representative.kvk_number,
            }
            for key, default in defaults.items():
                if not values.texts.get(key) and default:
                    values.texts[key] = default

    elif isinstance(intake, MKBIntake):
        result = classify(intake.employees, intake.annual_turnover, intake.balance_total, intake.is_independent)
        values.company_size = result
        values.texts.update({
            "company_name": intake.company_name,
            "financial_year": intake.financial_year,
            "employees": format_number(intake.employees),
            "annual_turnover_eur": format_currency(intake.annual_turnover),
            "balance_total_eur": format_currency(intake.balance_total),
            "signer_name": intake.signer_name,
            "signer_position": intake.signer_position,
            "date_and_location": intake.date_and_location,
        })
        values.choices["company_size"] = result.category.value
        values.choices.update(_mkb_decision_tree(intake, result.category))

    return values


def _mkb_decision_tree(intake: MKBIntake, category: CompanySize) -> Dict[str, str]:
    emp = intake.employees
    turn = intake.annual_turnover
    bal = intake.balance_total
    answers: Dict[str, str] = {}

    if intake.has_large_company_ownership is not None:
        answers["voting_rights_question"] = _yes_no(intake.has_large_company_ownership)
        answers["capital_question"] = _yes_no(intake.has_large_company_ownership)

    if category is CompanySize.SMALL:
        answers["fte_question"] = _yes_no(emp < 50)
        answers["turnover_question"] = _yes_no(turn <= 10_000_000)
        answers["balance_question"] = _yes_no(bal <= 10_000_000)
    elif category is CompanySize.MEDIUM:
        answers["fte_question"] = _yes_no(emp < 250)
        answers["turnover_question"] = _yes_no(turn <= 50_000_000)
        answers["balance_question"] = _yes_no(bal <= 43_000_000)
        answers["small_fte_question"] = _yes_no(emp >= 50)
        answers["small_turnover_question"] = _yes_no(turn > 10_000_000)

    if intake.has_partner_companies:
        answers["aggregated_values_question"] = "yes"
    return answers


def template_catalog(provider: ProviderKind) -> FieldCatalog:
    """Catalog of the provider-hosted template."""
    if provider is ProviderKind.DOCUSIGN:
        return DOCUSIGN_TEMPLATE_CATALOG
    if provider is ProviderKind.SIGNWELL:
        return SIGNWELL_TEMPLATE_CATALOG
    raise ValueError("PDF form targets have one catalog per template")


def catalog_for(intake: Intake, provider: ProviderKind) -> FieldCatalog:
    if provider is ProviderKind.PDF_FORM:
        return get_pdf_template(intake.form_type).catalog
    return template_catalog(provider)


def bind_values(
    values: LogicalValues,
    catalog: FieldCatalog,
    recipient_id: Optional[str] = None,
) -> List[FieldAssignment]:
    """Bind logical values onto ``catalog`` keys, filling placeholders last."""
    assignments: Dict[str, FieldAssignment] = {}
    unbound: List[str] = []

    for logical_key, text in values.texts.items():
        targets = catalog.text_bindings.get(logical_key)
        if not targets:
            unbound.append(logical_key)
            continue
        for target in targets:
            # first non-empty value wins when several logical keys share a field
            if target in assignments and assignments[target].value:
                continue
            assignments[target] = FieldAssignment(target, text, recipient_id, FieldKind.TEXT)

    for logical_key, choice in values.choices.items():
        binding = catalog.choice_bindings.get(logical_key)
        if binding is None:
            unbound.append(logical_key)
            continue
        if binding.as_checkboxes:
            for option, checkbox_key in binding.options.items():
                assignments[checkbox_key] = FieldAssignment(checkbox_key, option == choice, recipient_id, FieldKind.CHECKBOX)
        else:
            assignments[binding.field_key] = FieldAssignment(
                binding.field_key, binding.options[choice], recipient_id, FieldKind.RADIO
            )

    for key in sorted(catalog.placeholder_keys):
        current = assignments.get(key)
        if current is None or current.value == "":
            assignments[key] = FieldAssignment(key, PLACEHOLDER, recipient_id, FieldKind.TEXT)

    if unbound:
        logger.warning("mapper.keys_dropped", catalog=catalog.name, keys=sorted(unbound))
    return list(assignments.values())


def map_intake(
    intake: Intake,
    provider: ProviderKind,
    recipient_id: Optional[str] = None,
    representative: Optional[AuthorizedRepresentative] = None,
) -> List[FieldAssignment]:
    """
    Map an intake onto the field catalog of ``provider``.

    Every returned ``field_key`` is declared by the target catalog.
    """
    values = logical_values(intake, representative)
    return bind_values(values, catalog_for(intake, provider), recipient_id)


def map_intakes(
    intakes: Sequence[Intake],
    provider: ProviderKind,
    recipient_id: Optional[str] = None,
    representative: Optional[AuthorizedRepresentative] = None,
) -> List[FieldAssignment]:
    """Merge several intakes into one hosted-template field set."""
    if provider is ProviderKind.PDF_FORM:
        raise ValueError("PDF form targets are filled per intake, use map_intake")
    merged = LogicalValues()
    for intake in intakes:
        values = logical_values(intake, representative)
        for key, text in values.texts.items():
            if text or key not in merged.texts:
                merged.texts[key] = text
        merged.choices.update(values.choices)
    return bind_values(merged, template_catalog(provider), recipient_id)


def filter_known_fields(
    raw_fields: Mapping[str, Union[str, bool]],
    catalog: FieldCatalog,
    recipient_id: Optional[str] = None,
) -> List[FieldAssignment]:
    """Keep caller-supplied template fields the catalog knows about, warn about the rest."""
    kept: List[FieldAssignment] = []
    dropped: List[str] = []
    for key, value in raw_fields.items():
        if key not in catalog:
            dropped.append(key)
            continue
        kept.append(FieldAssignment(key, value, recipient_id, catalog.spec(key).kind))
    if dropped:
        logger.warning("mapper.unknown_fields_dropped", catalog=catalog.name, keys=sorted(dropped))
    return kept


def merge_assignments(*groups: Iterable[FieldAssignment]) -> List[FieldAssignment]:
    """Later groups override earlier ones key by key."""
    merged: Dict[str, FieldAssignment] = {}
    for group in groups:
        for assignment in group:
            merged[assignment.field_key] = assignment
    return list(merged.values())


def build_checkbox_groups(catalog: FieldCatalog, assignments: Sequence[FieldAssignment]) -> List[CheckboxGroup]:
    """Checkbox groups for every checkbox binding that has assignments."""
    assigned = {assignment.field_key: assignment for assignment in assignments}
    groups = []
    for binding in catalog.choice_bindings.values():
        if not binding.as_checkboxes:
            continue
        checkbox_ids = tuple(binding.options.values())
        present = [assigned[key] for key in checkbox_ids if key in assigned]
        if not present:
            continue
        groups.append(CheckboxGroup(
            group_name=binding.field_key,
            recipient_id=present[0].recipient_id,
            checkbox_ids=checkbox_ids,
        ))
    return groups


def build_signature_tabs(
    document_count: int,
    use_anchors: bool,
    recipient_id: Optional[str] = None,
    last_pages: Optional[Sequence[int]] = None,
) -> List[TabDescriptor]:
    """
    Signature and date tabs for a signer.

    With anchors a single pair of anchored tabs matches the markers on every
    document. Without anchors each document gets absolutely placed tabs on
    its last page (page 1 when page counts are unknown).
    """
    if use_anchors:
        return [
            TabDescriptor.anchored(TabType.SIGN_HERE, SIGNATURE_ANCHOR, recipient_id=recipient_id),
            TabDescriptor.anchored(TabType.DATE_SIGNED, DATE_ANCHOR, recipient_id=recipient_id),
        ]

    tabs = []
    for index in range(document_count):
        page = last_pages[index] if last_pages else 1
        tabs.append(TabDescriptor.absolute(
            TabType.SIGN_HERE, index + 1, page, *ABSOLUTE_SIGNATURE_POSITION, recipient_id=recipient_id
        ))
        tabs.append(TabDescriptor.absolute(
            TabType.DATE_SIGNED, index + 1, page, *ABSOLUTE_DATE_POSITION, recipient_id=recipient_id
        ))
    return tabs
