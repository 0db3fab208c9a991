from typing import Any, Dict

from fastapi import APIRouter, Depends

from subsidy_signing.api.dependencies.providers import get_envelope_provider
from subsidy_signing.core.config import Settings, get_settings
from subsidy_signing.integrations.esignature import EnvelopeProvider

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(settings: Settings = Depends(get_settings)) -> Dict[str, Any]:
    missing = settings.missing_provider_settings()
    return {
        "status": "healthy" if not missing else "degraded",
        "environment": settings.environment,
        "provider": settings.esign_provider,
        "providerConfigured": not missing,
        "storageConfigured": settings.graph_configured,
    }


@router.get("/health/provider")
async def provider_health(provider: EnvelopeProvider = Depends(get_envelope_provider)) -> Dict[str, Any]:
    """Round trip to the provider API with the configured credentials."""
    reachable = await provider.health_check()
    return {"provider": provider.provider_type.value, "reachable": reachable}
