"""
Provider webhook endpoints.

Deliveries are always acknowledged with 200 so providers do not retry
failures this service cannot fix by itself. The only exception is a bad
signature, which answers 401 without touching any state.
"""

from typing import Callable, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status

from subsidy_signing.api.dependencies.providers import build_envelope_provider, get_optional_drive, get_tenants
from subsidy_signing.core.config import Settings, get_settings
from subsidy_signing.core.errors import ConfigurationError
from subsidy_signing.core.logging import clear_request_context, get_logger
from subsidy_signing.core.tenants import TenantRegistry
from subsidy_signing.integrations.esignature import EnvelopeProvider, ESignatureType
from subsidy_signing.integrations.storage.graph_drive import GraphDriveService
from subsidy_signing.schemas.signing import WebhookAck
from subsidy_signing.services.webhook_service import CompletionWebhookHandler, WebhookStatus

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

ProviderBuilder = Callable[[Settings, Optional[ESignatureType]], EnvelopeProvider]


def get_provider_builder() -> ProviderBuilder:
    return build_envelope_provider


async def _handle_delivery(
    provider_type: ESignatureType,
    request: Request,
    settings: Settings,
    tenants: TenantRegistry,
    drive: Optional[GraphDriveService],
    builder: ProviderBuilder,
) -> WebhookAck:
    body = await request.body()
    try:
        provider = builder(settings, provider_type)
    except ConfigurationError as e:
        logger.error("webhook.provider_not_configured", provider=provider_type.value, missing=e.missing)
        return WebhookAck(outcome=WebhookStatus.FAILED.value)

    try:
        async with provider:
            handler = CompletionWebhookHandler(provider, drive, tenants, settings.graph_external_root_folder)
            outcome = await handler.handle(body, request.headers)
    finally:
        clear_request_context()

    if outcome.status is WebhookStatus.REJECTED:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature")
    return WebhookAck(outcome=outcome.status.value, envelope_id=outcome.envelope_id)


@router.post("/docusign", response_model=WebhookAck)
async def docusign_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    tenants: TenantRegistry = Depends(get_tenants),
    drive: Optional[GraphDriveService] = Depends(get_optional_drive),
    builder: ProviderBuilder = Depends(get_provider_builder),
) -> WebhookAck:
    """DocuSign Connect deliveries."""
    return await _handle_delivery(ESignatureType.DOCUSIGN, request, settings, tenants, drive, builder)


@router.post("/signwell", response_model=WebhookAck)
async def signwell_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    tenants: TenantRegistry = Depends(get_tenants),
    drive: Optional[GraphDriveService] = Depends(get_optional_drive),
    builder: ProviderBuilder = Depends(get_provider_builder),
) -> WebhookAck:
    """SignWell API application deliveries."""
    return await _handle_delivery(ESignatureType.SIGNWELL, request, settings, tenants, drive, builder)
