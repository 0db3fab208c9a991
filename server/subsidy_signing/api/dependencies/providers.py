from collections.abc import AsyncIterator
from functools import lru_cache
from typing import Optional

from fastapi import Depends

from subsidy_signing.core.config import Settings, get_settings
from subsidy_signing.core.errors import ConfigurationError
from subsidy_signing.core.logging import get_logger
from subsidy_signing.core.tenants import TenantRegistry, get_tenant_registry
from subsidy_signing.integrations.credentials import DocuSignJWTCredentialProvider, GraphClientCredentialProvider
from subsidy_signing.integrations.esignature import ESignatureType, EnvelopeProvider, ProviderFactory
from subsidy_signing.integrations.storage.graph_drive import GraphDriveService
from subsidy_signing.pdf.filler import PdfFormFiller
from subsidy_signing.services.application_service import ApplicationService
from subsidy_signing.services.signing_service import SigningService

logger = get_logger(__name__)


# Credential providers live for the whole process so their token cache is shared
@lru_cache(maxsize=None)
def _docusign_credentials(
    integration_key: str,
    user_id: str,
    private_key: str,
    auth_server: str,
    account_id: Optional[str],
) -> DocuSignJWTCredentialProvider:
    return DocuSignJWTCredentialProvider(
        integration_key=integration_key,
        user_id=user_id,
        private_key=private_key,
        auth_server=auth_server,
        account_id=account_id,
    )


@lru_cache(maxsize=None)
def _graph_credentials(tenant_id: str, client_id: str, client_secret: str) -> GraphClientCredentialProvider:
    return GraphClientCredentialProvider(tenant_id=tenant_id, client_id=client_id, client_secret=client_secret)


def clear_credential_cache() -> None:
    _docusign_credentials.cache_clear()
    _graph_credentials.cache_clear()


def build_envelope_provider(settings: Settings, provider_type: Optional[ESignatureType] = None) -> EnvelopeProvider:
    """
    Build the adapter for ``provider_type`` (default: the configured one).

    Raises:
        ConfigurationError: If the provider's credentials are not configured
    """
    provider_type = ESignatureType(provider_type or settings.esign_provider)

    if provider_type is ESignatureType.DOCUSIGN:
        required = ["docusign_integration_key", "docusign_user_id", "docusign_private_key"]
        missing = [name for name in required if not getattr(settings, name)]
        if missing:
            raise ConfigurationError("DocuSign is not configured", missing=missing)
        credentials = _docusign_credentials(
            settings.docusign_integration_key,
            settings.docusign_user_id,
            settings.docusign_private_key,
            settings.docusign_auth_server,
            settings.docusign_account_id,
        )
        return ProviderFactory.create_provider(
            provider_type,
            credentials=credentials,
            base_url=settings.docusign_base_url,
            account_id=settings.docusign_account_id,
            webhook_secret=settings.docusign_webhook_secret,
            frame_ancestors=settings.embed_allowed_origins,
            message_origin=settings.embed_primary_origin,
        )

    if not settings.signwell_api_key:
        raise ConfigurationError("SignWell is not configured", missing=["signwell_api_key"])
    return ProviderFactory.create_provider(
        provider_type,
        api_key=settings.signwell_api_key,
        api_url=settings.signwell_api_url,
        test_mode=settings.signwell_test_mode,
        webhook_secret=settings.signwell_webhook_secret,
    )


def build_drive_service(settings: Settings, tenants: TenantRegistry) -> Optional[GraphDriveService]:
    if not settings.graph_configured:
        return None
    credentials = _graph_credentials(settings.graph_tenant_id, settings.graph_client_id, settings.graph_client_secret)
    return GraphDriveService(
        credentials,
        site_id=settings.graph_site_id,
        user_id=settings.graph_user_id,
        root_folder=settings.graph_root_folder,
        tenants=tenants,
        retry_attempts=settings.upload_retry_attempts,
        retry_base_delay_seconds=settings.upload_retry_base_delay_seconds,
        retry_multiplier=settings.upload_retry_multiplier,
    )


@lru_cache(maxsize=None)
def get_pdf_filler() -> PdfFormFiller:
    return PdfFormFiller(get_settings().pdf_template_dir)


def get_tenants() -> TenantRegistry:
    return get_tenant_registry()


async def get_envelope_provider(settings: Settings = Depends(get_settings)) -> AsyncIterator[EnvelopeProvider]:
    provider = build_envelope_provider(settings)
    try:
        yield provider
    finally:
        await provider.close()


async def get_optional_drive(
    settings: Settings = Depends(get_settings),
    tenants: TenantRegistry = Depends(get_tenants),
) -> AsyncIterator[Optional[GraphDriveService]]:
    drive = build_drive_service(settings, tenants)
    try:
        yield drive
    finally:
        if drive is not None:
            await drive.close()


async def get_drive(drive: Optional[GraphDriveService] = Depends(get_optional_drive)) -> GraphDriveService:
    if drive is None:
        raise ConfigurationError(
            "OneDrive is not configured",
            missing=["graph_tenant_id", "graph_client_id", "graph_client_secret", "graph_site_id|graph_user_id"],
        )
    return drive


async def get_signing_service(
    provider: EnvelopeProvider = Depends(get_envelope_provider),
    filler: PdfFormFiller = Depends(get_pdf_filler),
    tenants: TenantRegistry = Depends(get_tenants),
    settings: Settings = Depends(get_settings),
) -> SigningService:
    return SigningService(provider, filler, tenants, settings)


async def get_application_service(drive: GraphDriveService = Depends(get_drive)) -> ApplicationService:
    return ApplicationService(drive)
