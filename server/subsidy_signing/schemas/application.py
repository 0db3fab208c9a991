import re
from typing import Optional

from pydantic import Field, field_validator

from subsidy_signing.schemas.common import ApiModel

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class CompanyInfo(ApiModel):
    """Company details captured in the first intake step."""

    application_id: str = Field(min_length=1)
    tenant_id: str = Field(min_length=1)
    datum: str = Field(min_length=1)
    folder_id: Optional[str] = None

    bedrijfsnaam: str = Field(min_length=1)
    kvk_nummer: str = Field(min_length=1)
    btw_id: str = Field(min_length=1)
    website: str = ""
    adres: str = Field(min_length=1)
    postcode: str = Field(min_length=1)
    plaats: str = Field(min_length=1)
    provincie: str = ""
    nace_classificatie: str = ""

    contact_naam: str = Field(min_length=1)
    contact_telefoon: str = ""
    contact_email: str = Field(min_length=1)
    contact_geslacht: str = ""
    hoofdcontact_persoon: str = ""

    @field_validator("contact_email")
    @classmethod
    def validate_email(cls, value: str) -> str:
        if not EMAIL_PATTERN.match(value):
            raise ValueError("contactEmail must be a valid email address")
        return value


class CompanyInfoResponse(ApiModel):
    success: bool = True
    folder_id: str
    folder_path: Optional[str] = None
    message: str


class BankStatementResponse(ApiModel):
    success: bool = True
    folder_id: str
    file_name: str
    item_id: Optional[str] = None
    web_url: Optional[str] = None
