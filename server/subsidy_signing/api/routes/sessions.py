"""
Signing Session API Routes

Endpoints for creating embedded or redirect signing sessions from intake
forms or provider-hosted templates, and for following up on an envelope.
"""

from typing import Dict

from fastapi import APIRouter, Depends, status

from subsidy_signing.api.dependencies.providers import get_envelope_provider, get_signing_service
from subsidy_signing.forms.mapper import ProviderKind, template_catalog
from subsidy_signing.integrations.esignature import EnvelopeProvider
from subsidy_signing.schemas.signing import (
    CompanySizeRead,
    CreateSigningSessionRequest,
    CreateTemplateSessionRequest,
    EnvelopeStatusResponse,
    SigningSessionResponse,
    TemplateDetailsResponse,
)
from subsidy_signing.services.signing_service import SigningService, SigningSessionResult

router = APIRouter(prefix="/signing", tags=["signing"])


def _session_response(result: SigningSessionResult) -> SigningSessionResponse:
    company_size = None
    if result.company_size is not None:
        company_size = CompanySizeRead(
            category=result.company_size.category.value,
            label=result.company_size.category.label,
            rationale=result.company_size.rationale,
            criteria=dict(result.company_size.criteria),
        )
    return SigningSessionResponse(
        provider=result.session.provider_id.value,
        envelope_id=result.session.envelope_id,
        status=result.session.status.value,
        signing_url=result.signing.url,
        documents=result.documents,
        company_size=company_size,
    )


@router.post("/sessions", response_model=SigningSessionResponse, status_code=status.HTTP_201_CREATED)
async def create_signing_session(
    payload: CreateSigningSessionRequest,
    service: SigningService = Depends(get_signing_service),
) -> SigningSessionResponse:
    """Fill the submitted forms and return the signing URL of the signer."""
    result = await service.create_signing_session(payload)
    return _session_response(result)


@router.post("/template-sessions", response_model=SigningSessionResponse, status_code=status.HTTP_201_CREATED)
async def create_template_session(
    payload: CreateTemplateSessionRequest,
    service: SigningService = Depends(get_signing_service),
) -> SigningSessionResponse:
    """Prefill the hosted template and return the signing URL of the first signer."""
    result = await service.create_template_session(payload)
    return _session_response(result)


@router.get("/sessions/{envelope_id}", response_model=EnvelopeStatusResponse)
async def get_session_status(
    envelope_id: str,
    provider: EnvelopeProvider = Depends(get_envelope_provider),
) -> EnvelopeStatusResponse:
    details = await provider.get_status(envelope_id)
    return EnvelopeStatusResponse(
        envelope_id=details.envelope_id,
        status=details.status.value,
        provider_status=details.provider_status,
        metadata=details.metadata,
        completed_at=details.completed_at,
    )


@router.post("/sessions/{envelope_id}/cancel", response_model=EnvelopeStatusResponse)
async def cancel_session(
    envelope_id: str,
    provider: EnvelopeProvider = Depends(get_envelope_provider),
) -> EnvelopeStatusResponse:
    details = await provider.cancel(envelope_id)
    return EnvelopeStatusResponse(
        envelope_id=details.envelope_id,
        status=details.status.value,
        provider_status=details.provider_status,
        metadata=details.metadata,
        completed_at=details.completed_at,
    )


@router.post("/sessions/{envelope_id}/remind", status_code=status.HTTP_202_ACCEPTED)
async def send_reminder(
    envelope_id: str,
    provider: EnvelopeProvider = Depends(get_envelope_provider),
) -> Dict[str, str]:
    await provider.send_reminder(envelope_id)
    return {"envelopeId": envelope_id, "status": "reminder_sent"}


@router.get("/templates/{template_id}", response_model=TemplateDetailsResponse)
async def get_template_details(
    template_id: str,
    provider: EnvelopeProvider = Depends(get_envelope_provider),
) -> TemplateDetailsResponse:
    """Template fields compared with the catalog this service fills."""
    details = await provider.get_template(template_id)
    catalog = template_catalog(ProviderKind(provider.provider_type.value))
    return TemplateDetailsResponse(
        template_id=details.template_id,
        name=details.name,
        field_names=details.field_names,
        roles=details.roles,
        known_field_names=[name for name in details.field_names if name in catalog],
        unknown_field_names=[name for name in details.field_names if name not in catalog],
    )
