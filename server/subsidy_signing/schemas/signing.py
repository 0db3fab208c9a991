from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import Field, model_validator

from subsidy_signing.integrations.esignature.base import SigningMode
from subsidy_signing.schemas.common import ApiModel


class SignerPayload(ApiModel):
    email: str = Field(min_length=3, max_length=254)
    name: str = Field(min_length=1, max_length=200)
    client_user_id: Optional[str] = Field(default=None, max_length=100)


class FormPayload(ApiModel):
    form_type: str
    form_data: Dict[str, Any] = Field(default_factory=dict)


class CreateSigningSessionRequest(ApiModel):
    """
    Either a single form (``formType`` + ``formData``) or a ``forms`` array.

    All forms end up as documents of one envelope signed by ``signer``.
    """

    signer: SignerPayload
    forms: Optional[List[FormPayload]] = None
    form_type: Optional[str] = None
    form_data: Optional[Dict[str, Any]] = None
    return_url: Optional[str] = None
    mode: SigningMode = SigningMode.EMBEDDED
    application_id: Optional[str] = None
    tenant_id: Optional[str] = None
    message: Optional[str] = None

    @model_validator(mode="after")
    def check_form_shape(self) -> "CreateSigningSessionRequest":
        has_many = self.forms is not None
        has_single = self.form_type is not None
        if has_many == has_single:
            raise ValueError('Provide either "forms" or "formType" and "formData"')
        if has_many and not self.forms:
            raise ValueError("forms must contain at least one form")
        return self

    def form_payloads(self) -> List[FormPayload]:
        if self.forms is not None:
            return list(self.forms)
        return [FormPayload(form_type=self.form_type, form_data=self.form_data or {})]


class CreateTemplateSessionRequest(ApiModel):
    """Prefill a provider-hosted template from forms and/or raw template fields."""

    signer: SignerPayload
    second_signer: Optional[SignerPayload] = None
    forms: List[FormPayload] = Field(default_factory=list)
    fields: Dict[str, Union[bool, str]] = Field(default_factory=dict)
    template_id: Optional[str] = None
    return_url: Optional[str] = None
    mode: SigningMode = SigningMode.EMBEDDED
    application_id: Optional[str] = None
    tenant_id: Optional[str] = None
    name: Optional[str] = None
    message: Optional[str] = None


class CompanySizeRead(ApiModel):
    category: str
    label: str
    rationale: str
    criteria: Dict[str, bool]


class SigningSessionResponse(ApiModel):
    provider: str
    envelope_id: str
    status: str
    signing_url: Optional[str] = None
    documents: List[str] = Field(default_factory=list)
    company_size: Optional[CompanySizeRead] = None


class EnvelopeStatusResponse(ApiModel):
    envelope_id: str
    status: str
    provider_status: str
    metadata: Dict[str, str] = Field(default_factory=dict)
    completed_at: Optional[datetime] = None


class TemplateDetailsResponse(ApiModel):
    template_id: str
    name: str
    field_names: List[str] = Field(default_factory=list)
    roles: List[str] = Field(default_factory=list)
    known_field_names: List[str] = Field(default_factory=list)
    unknown_field_names: List[str] = Field(default_factory=list)


class AuthorizedRepresentativeResponse(ApiModel):
    tenant_id: str
    organisation: str
    name: str
    email: str
    phone: str
    kvk_number: str


class WebhookAck(ApiModel):
    received: bool = True
    outcome: str
    envelope_id: Optional[str] = None
