from functools import lru_cache
from typing import List, Optional

from pydantic import AnyHttpUrl, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = Field(default="SLIM Subsidy Signing")
    environment: str = Field(default="development")
    log_level: str = Field(default="INFO")
    allowed_origins: List[AnyHttpUrl] = Field(default_factory=list)

    # Envelope provider selection
    esign_provider: str = Field(default="signwell", description="E-signature provider: 'docusign' or 'signwell'")

    # DocuSign (JWT grant)
    docusign_integration_key: Optional[str] = Field(default=None, description="DocuSign integration key (client id)")
    docusign_user_id: Optional[str] = Field(default=None, description="GUID of the impersonated DocuSign user")
    docusign_private_key: Optional[str] = Field(default=None, description="RSA private key in PEM format")
    docusign_auth_server: str = Field(default="account-d.docusign.com")
    docusign_base_url: str = Field(default="https://demo.docusign.net/restapi")
    docusign_account_id: Optional[str] = Field(default=None, description="Overrides the account returned by userinfo")
    docusign_webhook_secret: Optional[str] = Field(default=None, description="DocuSign Connect HMAC key")
    docusign_template_id: Optional[str] = Field(default=None)

    # SignWell
    signwell_api_key: Optional[str] = Field(default=None)
    signwell_api_url: str = Field(default="https://www.signwell.com/api/v1")
    signwell_test_mode: bool = Field(default=False)
    signwell_template_id: Optional[str] = Field(default=None)
    signwell_webhook_secret: Optional[str] = Field(default=None, description="SignWell API application id used as HMAC key")

    # Embedded signing
    embed_primary_origin: Optional[str] = Field(default=None, description="Origin allowed to receive signing postMessages")
    embed_allowed_origins: List[str] = Field(default_factory=list, description="Frame ancestors allowed to host the signing iframe")

    # Microsoft Graph drive
    graph_tenant_id: Optional[str] = Field(default=None)
    graph_client_id: Optional[str] = Field(default=None)
    graph_client_secret: Optional[str] = Field(default=None)
    graph_site_id: Optional[str] = Field(default=None)
    graph_user_id: Optional[str] = Field(default=None)
    graph_root_folder: str = Field(default="SLIM Subsidies")
    graph_external_root_folder: str = Field(default="SignWell Documenten", description="Root for documents created outside the API")
    tenants_file: Optional[str] = Field(default=None, description="JSON file with per-tenant configuration")

    upload_retry_attempts: int = Field(default=3, ge=1, description="Attempts per upload before giving up")
    upload_retry_base_delay_seconds: float = Field(default=1.0, ge=0)
    upload_retry_multiplier: float = Field(default=2.0, ge=1)

    pdf_template_dir: str = Field(default="pdfs", description="Directory holding the blank form PDFs")
    pdf_check_on_startup: bool = Field(default=True, description="Compare every PDF template with its field catalog at startup")

    @model_validator(mode="before")
    @classmethod
    def validate_provider_configuration(cls, data: dict) -> dict:
        """
        Validate the envelope provider selection.

        Only the provider name is checked here. Missing credentials are reported
        when the provider is first used so the API can still start for health checks.
        """
        data = data.copy()
        provider = str(data.get("esign_provider", "signwell")).strip().lower()
        allowed_providers = {"docusign", "signwell"}
        if provider not in allowed_providers:
            raise ValueError(
                f"esign_provider must be one of {allowed_providers}, got '{provider}'"
            )
        data["esign_provider"] = provider
        return data

    @property
    def graph_configured(self) -> bool:
        return bool(
            self.graph_tenant_id
            and self.graph_client_id
            and self.graph_client_secret
            and (self.graph_site_id or self.graph_user_id)
        )

    def missing_provider_settings(self) -> List[str]:
        """Return the names of required settings that are unset for the selected provider."""
        if self.esign_provider == "docusign":
            required = ["docusign_integration_key", "docusign_user_id", "docusign_private_key"]
        else:
            required = ["signwell_api_key"]
        return [name for name in required if not getattr(self, name)]


@lru_cache(maxsize=None)
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings: The cached settings instance
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the cached settings instance so the next call re-reads the environment."""
    get_settings.cache_clear()
