"""
Signing session orchestration.

Turns a validated request into a provider envelope: intakes are parsed,
mapped and filled (or mapped onto a hosted template), the envelope is
created with correlation metadata and the signing URL is requested for the
first signer. Steps run strictly in that order within one request.
"""

import uuid
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from subsidy_signing.core.config import Settings
from subsidy_signing.core.errors import ConfigurationError
from subsidy_signing.core.logging import get_logger
from subsidy_signing.core.tenants import TenantRegistry, TenantResolution
from subsidy_signing.forms.catalog import SIGNATURE_ANCHOR
from subsidy_signing.forms.classification import CompanySizeResult, classify
from subsidy_signing.forms.fields import TabDescriptor, TabType
from subsidy_signing.forms.intake import DeMinimisIntake, MachtigingIntake, MKBIntake, parse_intake
from subsidy_signing.forms.mapper import (
    Intake,
    ProviderKind,
    build_checkbox_groups,
    build_signature_tabs,
    filter_known_fields,
    map_intake,
    map_intakes,
    merge_assignments,
    template_catalog,
)
from subsidy_signing.integrations.esignature.base import (
    DocumentInfo,
    EnvelopeProvider,
    EnvelopeSession,
    ESignatureType,
    RecipientInfo,
    SigningUrlInfo,
)
from subsidy_signing.pdf.filler import FilledPdf, PdfFormFiller
from subsidy_signing.schemas.signing import (
    CreateSigningSessionRequest,
    CreateTemplateSessionRequest,
    FormPayload,
    SignerPayload,
)

logger = get_logger(__name__)

DOCUMENT_NAME_PREFIX = "SLIM Subsidie Aanvraag"
DEFAULT_MESSAGE = "Controleer alle gegevens zorgvuldig voordat u ondertekent."
PRIMARY_RECIPIENT_ID = "1"
SECOND_RECIPIENT_ID = "2"
SECOND_SIGNER_ROLE = "second_signer"


@dataclass
class SigningSessionResult:
    session: EnvelopeSession
    signing: SigningUrlInfo
    documents: List[str]
    company_size: Optional[CompanySizeResult] = None


def company_name_of(intake: Intake) -> str:
    if isinstance(intake, DeMinimisIntake):
        return intake.general_data.company_name
    if isinstance(intake, MachtigingIntake):
        return intake.applicant_data.company_name
    return intake.company_name


def document_title(intakes: Sequence[Intake]) -> str:
    names = [company_name_of(intake) for intake in intakes if company_name_of(intake)]
    return f"{DOCUMENT_NAME_PREFIX} - {names[0]}" if names else DOCUMENT_NAME_PREFIX


class SigningService:
    """Creates envelopes from intake forms with the configured provider."""

    def __init__(
        self,
        provider: EnvelopeProvider,
        filler: PdfFormFiller,
        tenants: TenantRegistry,
        settings: Settings,
    ):
        self.provider = provider
        self.filler = filler
        self.tenants = tenants
        self.settings = settings

    @property
    def provider_kind(self) -> ProviderKind:
        return ProviderKind(self.provider.provider_type.value)

    def parse_forms(self, forms: Sequence[FormPayload]) -> List[Intake]:
        return [parse_intake(form.form_type, form.form_data) for form in forms]

    def fill_forms(self, intakes: Sequence[Intake], tenant: TenantResolution) -> List[FilledPdf]:
        representative = tenant.config.authorized_representative
        filled = []
        for intake in intakes:
            assignments = map_intake(intake, ProviderKind.PDF_FORM, representative=representative)
            filled.append(self.filler.fill_document(intake.form_type, assignments, intake.add_signature_anchors))
        return filled

    def signature_tabs(
        self,
        intakes: Sequence[Intake],
        filled: Sequence[FilledPdf],
        recipient_id: str,
    ) -> List[TabDescriptor]:
        """
        Tabs for the primary signer.

        Providers that search anchor text get one anchored pair. Otherwise the
        stamped anchor coordinates are converted to absolute top-left based
        positions on each document's last page, and documents without anchors
        fall back to fixed positions.
        """
        use_anchors = any(intake.add_signature_anchors for intake in intakes)
        if use_anchors and self.provider.supports_anchor_tabs:
            return build_signature_tabs(len(filled), True, recipient_id)

        tabs: List[TabDescriptor] = []
        for index, (intake, pdf) in enumerate(zip(intakes, filled), start=1):
            anchors = self.filler.templates[pdf.template_id].anchors
            if not (intake.add_signature_anchors and anchors):
                fallback = build_signature_tabs(1, False, recipient_id, last_pages=[pdf.page_count])
                tabs.extend(
                    TabDescriptor.absolute(tab.tab_type, index, tab.page_number, tab.x, tab.y, recipient_id=recipient_id)
                    for tab in fallback
                )
                continue
            for anchor in anchors:
                tab_type = TabType.SIGN_HERE if anchor.text == SIGNATURE_ANCHOR else TabType.DATE_SIGNED
                tabs.append(TabDescriptor.absolute(
                    tab_type,
                    index,
                    pdf.page_count,
                    int(anchor.x),
                    int(pdf.last_page_height - anchor.y),
                    recipient_id=recipient_id,
                ))
        return tabs

    def correlation_metadata(
        self,
        tenant: TenantResolution,
        application_id: Optional[str],
        company_name: str,
    ) -> Dict[str, str]:
        metadata = {
            "applicationId": application_id or "",
            "tenantId": tenant.tenant_id,
            "companyName": company_name,
            "source": self.tenants.metadata_source(tenant.tenant_id),
        }
        return {key: value for key, value in metadata.items() if value}

    def recipient_for(
        self,
        signer: SignerPayload,
        recipient_id: str = PRIMARY_RECIPIENT_ID,
        routing_order: int = 1,
        role_name: Optional[str] = None,
    ) -> RecipientInfo:
        return RecipientInfo(
            name=signer.name,
            email=signer.email,
            recipient_id=recipient_id,
            routing_order=routing_order,
            role_name=role_name,
            client_user_id=signer.client_user_id or str(uuid.uuid4()),
        )

    async def create_signing_session(self, request: CreateSigningSessionRequest) -> SigningSessionResult:
        """
        Fill the requested forms and open a signing session.

        Raises:
            ValidationError: If a form fails validation
            TemplateFieldError: If a template and its catalog disagree
            ProviderApiError: If the provider rejects the envelope
            AuthError: If provider credentials are rejected
        """
        intakes = self.parse_forms(request.form_payloads())
        tenant = self.tenants.resolve(request.tenant_id)
        filled = self.fill_forms(intakes, tenant)

        recipient = self.recipient_for(request.signer)
        tabs = self.signature_tabs(intakes, filled, recipient.recipient_id)
        documents = [
            DocumentInfo(
                name=f"{pdf.document_name}.pdf",
                content=pdf.content,
                document_id=str(index),
                page_count=pdf.page_count,
            )
            for index, pdf in enumerate(filled, start=1)
        ]
        company_name = company_name_of(intakes[0])

        session = await self.provider.create_envelope(
            name=document_title(intakes),
            documents=documents,
            recipients=[recipient],
            tabs=tabs,
            message=request.message or DEFAULT_MESSAGE,
            metadata=self.correlation_metadata(tenant, request.application_id, company_name),
            mode=request.mode,
            redirect_url=request.return_url,
        )
        signing = await self.provider.get_signing_url(
            session.envelope_id, recipient, return_url=request.return_url, mode=request.mode
        )

        logger.info(
            "signing.session_created",
            provider=self.provider.provider_type.value,
            envelope_id=session.envelope_id,
            tenant_id=tenant.tenant_id,
            document_count=len(documents),
            mode=request.mode.value,
        )
        return SigningSessionResult(
            session=session,
            signing=signing,
            documents=[document.name for document in documents],
            company_size=self._company_size(intakes),
        )

    def template_id_for(self, tenant: TenantResolution, requested: Optional[str], two_signers: bool) -> str:
        if requested:
            return requested
        if self.provider.provider_type is ESignatureType.DOCUSIGN:
            template_id = self.settings.docusign_template_id
            missing = "docusign_template_id"
        else:
            config = tenant.config
            if two_signers and config.signwell_two_signer_template_id:
                template_id = config.signwell_two_signer_template_id
            else:
                template_id = config.signwell_template_id or self.settings.signwell_template_id
            missing = "signwell_template_id"
        if not template_id:
            raise ConfigurationError("No signing template configured", missing=[missing])
        return template_id

    async def create_template_session(self, request: CreateTemplateSessionRequest) -> SigningSessionResult:
        """
        Open a signing session on a provider-hosted template.

        Forms are merged into one field set; raw ``fields`` override mapped
        values and unknown raw keys are dropped with a warning.
        """
        tenant = self.tenants.resolve(request.tenant_id)
        intakes = self.parse_forms(request.forms)
        kind = self.provider_kind
        representative = tenant.config.authorized_representative

        assignments = map_intakes(intakes, kind, PRIMARY_RECIPIENT_ID, representative) if intakes else []
        catalog = template_catalog(kind)
        extra = filter_known_fields(request.fields, catalog, PRIMARY_RECIPIENT_ID)
        assignments = merge_assignments(assignments, extra)

        recipients = [self.recipient_for(request.signer)]
        if request.second_signer is not None:
            recipients.append(self.recipient_for(
                request.second_signer,
                recipient_id=SECOND_RECIPIENT_ID,
                routing_order=2,
                role_name=SECOND_SIGNER_ROLE,
            ))

        template_id = self.template_id_for(tenant, request.template_id, request.second_signer is not None)
        company_name = company_name_of(intakes[0]) if intakes else str(request.fields.get("bedrijfsnaam", ""))
        name = request.name or (document_title(intakes) if intakes else DOCUMENT_NAME_PREFIX)

        session = await self.provider.create_from_template(
            template_id,
            recipients,
            assignments,
            name=name,
            message=request.message or DEFAULT_MESSAGE,
            metadata=self.correlation_metadata(tenant, request.application_id, company_name),
            mode=request.mode,
            redirect_url=request.return_url,
            checkbox_groups=build_checkbox_groups(catalog, assignments),
        )
        signing = await self.provider.get_signing_url(
            session.envelope_id, recipients[0], return_url=request.return_url, mode=request.mode
        )

        logger.info(
            "signing.template_session_created",
            provider=self.provider.provider_type.value,
            envelope_id=session.envelope_id,
            template_id=template_id,
            tenant_id=tenant.tenant_id,
            field_count=len(assignments),
        )
        return SigningSessionResult(
            session=session,
            signing=signing,
            documents=[name],
            company_size=self._company_size(intakes),
        )

    @staticmethod
    def _company_size(intakes: Sequence[Intake]) -> Optional[CompanySizeResult]:
        for intake in intakes:
            if isinstance(intake, MKBIntake):
                return classify(intake.employees, intake.annual_turnover, intake.balance_total, intake.is_independent)
        return None
