"""
Intake models for the three subsidy declarations.

``FormIntake`` is a discriminated union on ``form_type``. The frontend posts
camelCase JSON, so every model accepts both camelCase aliases and the
snake_case attribute names.
"""

import math
import re
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from subsidy_signing.core.errors import ValidationError

SHORT_DATE_PATTERN = re.compile(r"^\d{2}-\d{2}-\d{2}$")


class IntakeModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)


class DeMinimisAmounts(IntakeModel):
    """Amount block for options 2 and 3 (PDF fields 1.2, 1.3 and 1.4)."""

    field_1_2: str = Field(default="", alias="field_1_2")
    field_1_3: str = Field(default="", alias="field_1_3")
    field_1_4: str = Field(default="", alias="field_1_4")

    def is_complete(self) -> bool:
        return bool(self.field_1_2 and self.field_1_3 and self.field_1_4)

    def is_empty(self) -> bool:
        return not (self.field_1_2 or self.field_1_3 or self.field_1_4)


class DeMinimisGeneralData(IntakeModel):
    company_name: str = Field(min_length=1)
    kvk_number: str = Field(min_length=1)
    street: str = ""
    house_number: str = ""
    city: str = ""
    postal_code: str = Field(default="", max_length=6)
    signer_name: str = Field(min_length=1)
    date: str

    @field_validator("date")
    @classmethod
    def validate_date(cls, value: str) -> str:
        if not SHORT_DATE_PATTERN.match(value):
            raise ValueError("date must be in DD-MM-YY format")
        return value


class DeMinimisIntake(IntakeModel):
    """Declaration type A: de-minimis aid received, with a 1/2/3 option selector."""

    form_type: Literal["de_minimis"] = "de_minimis"
    selected_option: Literal[1, 2, 3]
    option2_data: Optional[DeMinimisAmounts] = Field(default=None, alias="option2Data")
    option3_data: Optional[DeMinimisAmounts] = Field(default=None, alias="option3Data")
    general_data: DeMinimisGeneralData
    add_signature_anchors: bool = True

    @model_validator(mode="after")
    def check_selected_branch(self) -> "DeMinimisIntake":
        branches = {2: self.option2_data, 3: self.option3_data}
        for option, data in branches.items():
            if option == self.selected_option:
                if data is None or not data.is_complete():
                    raise ValueError(f"option{option}Data fields are required when selectedOption is {option}")
            elif data is not None and not data.is_empty():
                raise ValueError(f"option{option}Data must be empty when selectedOption is {self.selected_option}")
        return self

    @property
    def active_amounts(self) -> Optional[DeMinimisAmounts]:
        if self.selected_option == 2:
            return self.option2_data
        if self.selected_option == 3:
            return self.option3_data
        return None


class MachtigingApplicant(IntakeModel):
    company_name: str = Field(min_length=1)
    email: str = ""
    kvk_number: str = Field(default="", max_length=8)
    contact_person: str = ""
    contact_email: str = ""
    position: str = ""
    phone_number: str = Field(default="", max_length=10)
    date: str = ""


class MachtigingRepresentative(IntakeModel):
    company_name: str = ""
    contact_person: str = ""
    email: str = ""
    sign_date1: str = Field(default="", alias="signDate1")
    name: str = ""
    position: str = ""
    phone_number: str = ""
    sign_date2: str = Field(default="", alias="signDate2")


class MachtigingIntake(IntakeModel):
    """Declaration type B: authorisation of a representative, two-party form."""

    form_type: Literal["machtiging"] = "machtiging"
    applicant_data: MachtigingApplicant
    representative_data: MachtigingRepresentative = Field(default_factory=MachtigingRepresentative)
    add_signature_anchors: bool = True

    @model_validator(mode="after")
    def check_dates(self) -> "MachtigingIntake":
        for label, value in (
            ("applicantData.date", self.applicant_data.date),
            ("representativeData.signDate1", self.representative_data.sign_date1),
            ("representativeData.signDate2", self.representative_data.sign_date2),
        ):
            if value and not SHORT_DATE_PATTERN.match(value):
                raise ValueError(f"{label} must be in DD-MM-YY format")
        return self


class MKBIntake(IntakeModel):
    """Declaration type C: SME declaration driven by company metrics."""

    form_type: Literal["mkb"] = "mkb"
    company_name: str = Field(min_length=1)
    financial_year: str = Field(min_length=1)
    employees: float = Field(ge=0)
    annual_turnover: float = Field(ge=0)
    balance_total: float = Field(ge=0)
    signer_name: str = Field(min_length=1)
    signer_position: str = Field(min_length=1)
    date_and_location: str = Field(min_length=1)
    is_independent: bool = True
    has_large_company_ownership: Optional[bool] = None
    has_partner_companies: bool = False
    add_signature_anchors: bool = True

    @field_validator("employees", "annual_turnover", "balance_total")
    @classmethod
    def reject_non_finite(cls, value: float) -> float:
        if math.isnan(value) or math.isinf(value):
            raise ValueError("must be a finite number")
        return value


FormIntake = Annotated[
    Union[DeMinimisIntake, MachtigingIntake, MKBIntake],
    Field(discriminator="form_type"),
]

FORM_TYPE_ALIASES = {
    "deMinimis": "de_minimis",
    "de_minimis": "de_minimis",
    "machtiging": "machtiging",
    "mkb": "mkb",
}

_intake_adapter: TypeAdapter = TypeAdapter(FormIntake)


def parse_intake(form_type: str, form_data: dict) -> Union[DeMinimisIntake, MachtigingIntake, MKBIntake]:
    """
    Validate raw form data for ``form_type`` and return the typed intake.

    Raises:
        ValidationError: If the form type is unknown or the data does not validate
    """
    normalized = FORM_TYPE_ALIASES.get(form_type)
    if normalized is None:
        raise ValidationError(
            f"Invalid form type '{form_type}'",
            errors=[f"formType must be one of: {', '.join(sorted(set(FORM_TYPE_ALIASES.values())))}"],
        )
    try:
        return _intake_adapter.validate_python({**form_data, "formType": normalized})
    except PydanticValidationError as exc:
        raise ValidationError(
            f"Form data validation failed for {normalized}",
            errors=format_validation_errors(exc),
            details={"form_type": normalized},
        ) from exc


def format_validation_errors(exc: PydanticValidationError) -> list:
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error["loc"])
        messages.append(f"{location}: {error['msg']}" if location else error["msg"])
    return messages
