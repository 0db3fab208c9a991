"""
Tenant registry.

A tenant is a reseller/brand operating the subsidy intake. Tenants differ in
their authorised representative (the "gemachtigde" printed on the
authorisation form), the SignWell template they sign with, the metadata
source tag written onto documents and the drive root folder.
"""

import json
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Dict, Optional, Set

from pydantic import BaseModel, Field, TypeAdapter

from subsidy_signing.core.config import Settings, get_settings
from subsidy_signing.core.errors import ConfigurationError
from subsidy_signing.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TENANT_ID = "default"
LEGACY_METADATA_SOURCE = "mister-subsidie-api"


class AuthorizedRepresentative(BaseModel):
    organisation: str = ""
    email: str = ""
    name: str = ""
    phone: str = ""
    kvk_number: str = ""


class TenantConfig(BaseModel):
    authorized_representative: AuthorizedRepresentative = Field(default_factory=AuthorizedRepresentative)
    signwell_template_id: Optional[str] = None
    signwell_two_signer_template_id: Optional[str] = None
    metadata_source: Optional[str] = None
    root_folder: Optional[str] = None


@dataclass(frozen=True)
class TenantResolution:
    tenant_id: str
    config: TenantConfig
    requested_id: Optional[str]
    resolved_from_default: bool


def normalize_tenant_id(tenant_id: Optional[str]) -> Optional[str]:
    normalized = (tenant_id or "").strip().lower()
    return normalized or None


class TenantRegistry:
    """Lookup of tenant configuration with fallback to the default tenant."""

    def __init__(self, tenants: Dict[str, TenantConfig], base_root_folder: str):
        if not tenants:
            raise ConfigurationError("No tenant configuration available")
        self._tenants = {normalize_tenant_id(key) or key: value for key, value in tenants.items()}
        self.base_root_folder = base_root_folder

    @classmethod
    def from_settings(cls, settings: Settings) -> "TenantRegistry":
        tenants: Dict[str, TenantConfig] = {
            DEFAULT_TENANT_ID: TenantConfig(),
            "ignite": TenantConfig(
                metadata_source="ignite",
                root_folder=f"{settings.graph_root_folder} Ignite",
            ),
        }
        if settings.tenants_file:
            path = Path(settings.tenants_file)
            raw = json.loads(path.read_text(encoding="utf-8"))
            tenants.update(TypeAdapter(Dict[str, TenantConfig]).validate_python(raw))
            logger.info("tenants.loaded", path=str(path), tenant_count=len(tenants))
        return cls(tenants, settings.graph_root_folder)

    def resolve(self, tenant_id: Optional[str]) -> TenantResolution:
        normalized = normalize_tenant_id(tenant_id)
        if normalized and normalized in self._tenants:
            return TenantResolution(
                tenant_id=normalized,
                config=self._tenants[normalized],
                requested_id=tenant_id,
                resolved_from_default=normalized == DEFAULT_TENANT_ID,
            )

        if DEFAULT_TENANT_ID in self._tenants:
            fallback_id = DEFAULT_TENANT_ID
        else:
            fallback_id = next(iter(self._tenants))
        if normalized:
            logger.warning("tenants.unknown_tenant", requested_id=tenant_id, fallback_id=fallback_id)
        return TenantResolution(
            tenant_id=fallback_id,
            config=self._tenants[fallback_id],
            requested_id=tenant_id,
            resolved_from_default=True,
        )

    def metadata_source(self, tenant_id: Optional[str]) -> str:
        resolution = self.resolve(tenant_id)
        if resolution.config.metadata_source:
            return resolution.config.metadata_source
        if resolution.tenant_id == DEFAULT_TENANT_ID:
            return LEGACY_METADATA_SOURCE
        return resolution.tenant_id

    def known_metadata_sources(self) -> Set[str]:
        sources = {self.metadata_source(tenant_id) for tenant_id in self._tenants}
        sources.add(LEGACY_METADATA_SOURCE)
        return sources

    def tenant_for_metadata_source(self, source: Optional[str]) -> Optional[str]:
        """Reverse lookup used by webhooks, which only see the metadata source tag."""
        if not source:
            return None
        for tenant_id in self._tenants:
            if self.metadata_source(tenant_id) == source:
                return tenant_id
        return None

    def root_folder(self, tenant_id: Optional[str]) -> str:
        return self.resolve(tenant_id).config.root_folder or self.base_root_folder


@lru_cache(maxsize=None)
def get_tenant_registry() -> TenantRegistry:
    return TenantRegistry.from_settings(get_settings())
