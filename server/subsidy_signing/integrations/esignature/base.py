"""
E-signature Base Classes and Interfaces

Defines the contract shared by the DocuSign and SignWell adapters. The rest
of the service only ever talks to ``EnvelopeProvider``; the concrete adapter
is chosen from configuration through ``ProviderFactory``.
"""

import hashlib
import hmac
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence

import aiohttp
from aiohttp import ClientTimeout

from subsidy_signing.core.errors import AuthError, ProviderApiError
from subsidy_signing.core.logging import get_logger
from subsidy_signing.forms.fields import FieldAssignment, TabDescriptor

logger = get_logger(__name__)


class ESignatureType(str, Enum):
    """Supported e-signature provider types."""
    DOCUSIGN = "docusign"
    SIGNWELL = "signwell"


class SessionStatus(str, Enum):
    """Lifecycle of an envelope as seen by this service."""
    CREATED = "created"
    SENT = "sent"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class SigningMode(str, Enum):
    EMBEDDED = "embedded"
    REDIRECT = "redirect"


class CanonicalEventType(str, Enum):
    """Provider webhook events reduced to what the completion handler cares about."""
    COMPLETED = "completed"
    SENT = "sent"
    VIEWED = "viewed"
    SIGNED = "signed"
    DECLINED = "declined"
    CANCELLED = "cancelled"
    OTHER = "other"


@dataclass
class DocumentInfo:
    """Document information for signing."""
    name: str
    content: bytes
    document_id: Optional[str] = None
    file_type: str = "pdf"
    page_count: Optional[int] = None


@dataclass
class RecipientInfo:
    """Recipient information."""
    name: str
    email: str
    recipient_id: str = "1"
    routing_order: int = 1
    role_name: Optional[str] = None
    client_user_id: Optional[str] = None


@dataclass
class SigningUrlInfo:
    """Information for embedded signing."""
    url: str
    envelope_id: str
    recipient_id: Optional[str] = None
    mode: SigningMode = SigningMode.EMBEDDED
    expires_at: Optional[datetime] = None


@dataclass
class EnvelopeSession:
    """An envelope (DocuSign) or document (SignWell) created for signing."""
    provider_id: ESignatureType
    envelope_id: str
    recipients: List[RecipientInfo]
    status: SessionStatus = SessionStatus.CREATED
    signing_url: Optional[str] = None
    provider_response: Optional[Dict[str, Any]] = None


@dataclass
class EnvelopeDetails:
    """Envelope status plus the correlation metadata written at creation."""
    envelope_id: str
    status: SessionStatus
    provider_status: str
    metadata: Dict[str, str] = field(default_factory=dict)
    name: Optional[str] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


@dataclass
class SignedDocument:
    """A signed document downloaded from the provider."""
    document_id: str
    name: str
    content: bytes

    @property
    def signed_file_name(self) -> str:
        base = self.name[:-4] if self.name.lower().endswith(".pdf") else self.name
        return f"{base}-signed.pdf"


@dataclass
class TemplateDetails:
    template_id: str
    name: str
    field_names: List[str] = field(default_factory=list)
    roles: List[str] = field(default_factory=list)
    raw: Optional[Dict[str, Any]] = None


@dataclass
class WebhookEvent:
    """Webhook event information."""
    event_type: CanonicalEventType
    provider: ESignatureType
    envelope_id: str
    raw_event_type: str
    raw_payload: Dict[str, Any]
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def is_completion(self) -> bool:
        return self.event_type is CanonicalEventType.COMPLETED


class EnvelopeProvider(ABC):
    """Abstract base class for e-signature providers."""

    signature_header: str = ""

    def __init__(self, webhook_secret: Optional[str] = None, **config):
        """Initialize the e-signature provider with configuration."""
        self.config = config
        self.webhook_secret = webhook_secret
        self.provider_type = self._get_provider_type()
        # Session will be created lazily to avoid event loop issues during initialization
        self._session: Optional[aiohttp.ClientSession] = None
        self._timeout = ClientTimeout(total=30, connect=10)

    @abstractmethod
    def _get_provider_type(self) -> ESignatureType:
        """Return the provider type identifier."""
        pass

    @property
    def supports_anchor_tabs(self) -> bool:
        """Whether the provider places tabs by searching anchor text in the documents."""
        return False

    @property
    def session(self) -> aiohttp.ClientSession:
        """Get or create the HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    @abstractmethod
    async def authenticate(self) -> Dict[str, str]:
        """
        Return the request headers carrying valid credentials.

        Raises:
            AuthError: If credentials cannot be obtained
        """
        pass

    @abstractmethod
    async def create_envelope(
        self,
        name: str,
        documents: Sequence[DocumentInfo],
        recipients: Sequence[RecipientInfo],
        tabs: Sequence[TabDescriptor],
        message: Optional[str] = None,
        metadata: Optional[Mapping[str, str]] = None,
        mode: SigningMode = SigningMode.EMBEDDED,
        redirect_url: Optional[str] = None,
        **kwargs
    ) -> EnvelopeSession:
        """
        Create an envelope from filled documents.

        Args:
            name: Envelope name/title
            documents: Filled PDFs to sign
            recipients: Signers in routing order
            tabs: Signature and date tab placements
            message: Message to recipients
            metadata: Correlation metadata stored on the envelope
            mode: Embedded or redirect signing
            redirect_url: Where the signer lands after signing

        Returns:
            EnvelopeSession in status SENT

        Raises:
            ProviderApiError: If the provider rejects the request
        """
        pass

    @abstractmethod
    async def create_from_template(
        self,
        template_id: str,
        recipients: Sequence[RecipientInfo],
        assignments: Sequence[FieldAssignment],
        name: Optional[str] = None,
        message: Optional[str] = None,
        metadata: Optional[Mapping[str, str]] = None,
        mode: SigningMode = SigningMode.EMBEDDED,
        redirect_url: Optional[str] = None,
        **kwargs
    ) -> EnvelopeSession:
        """Create an envelope from a provider-hosted template with prefilled fields."""
        pass

    @abstractmethod
    async def get_signing_url(
        self,
        session_id: str,
        recipient: RecipientInfo,
        return_url: Optional[str] = None,
        mode: SigningMode = SigningMode.EMBEDDED,
        **kwargs
    ) -> SigningUrlInfo:
        """
        Get the signing URL for a recipient.

        Embedded mode may pass frame ancestors and message origins to the
        provider; redirect mode never does.
        """
        pass

    @abstractmethod
    async def download_completed(self, session_id: str) -> List[SignedDocument]:
        """Download the signed content documents of a completed envelope."""
        pass

    @abstractmethod
    async def get_status(self, session_id: str) -> EnvelopeDetails:
        pass

    @abstractmethod
    async def cancel(self, session_id: str, reason: str = "Cancelled by user") -> EnvelopeDetails:
        pass

    async def send_reminder(self, session_id: str) -> None:
        raise ProviderApiError(
            "Reminders are not supported by this provider",
            code="not_supported",
            provider=self.provider_type.value,
            operation="send_reminder",
        )

    @abstractmethod
    async def get_template(self, template_id: str) -> TemplateDetails:
        pass

    @abstractmethod
    def parse_webhook(self, body: bytes, headers: Mapping[str, str]) -> WebhookEvent:
        """
        Parse a webhook body into a canonical event.

        Signature verification is separate, see ``verify_webhook_signature``.

        Raises:
            ValidationError: If the body is not a recognisable webhook payload
        """
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        pass

    def verify_webhook_signature(self, body: bytes, headers: Mapping[str, str]) -> bool:
        """
        Verify the webhook HMAC-SHA256 signature.

        Without a configured secret every delivery is accepted.
        """
        if not self.webhook_secret:
            return True
        signature = self._extract_signature(body, headers)
        if not signature:
            return False
        digest = hmac.new(self.webhook_secret.encode("utf-8"), body, hashlib.sha256).digest()
        return self._compare_signature(digest, signature)

    def _extract_signature(self, body: bytes, headers: Mapping[str, str]) -> Optional[str]:
        lowered = {key.lower(): value for key, value in headers.items()}
        return lowered.get(self.signature_header.lower())

    @abstractmethod
    def _compare_signature(self, digest: bytes, signature: str) -> bool:
        pass

    async def _handle_api_error(self, response: aiohttp.ClientResponse, operation: str) -> None:
        """Raise the taxonomy error for a non-success response."""
        if response.status in (200, 201, 202, 204):
            return

        raw_body = await response.text()
        message, code = self._parse_error_body(raw_body, operation)
        logger.error(
            "esign.api_error",
            provider=self.provider_type.value,
            operation=operation,
            status=response.status,
            code=code,
        )
        if response.status == 401:
            self._on_unauthorized()
            raise AuthError(
                f"{self.provider_type.value} rejected credentials in {operation}",
                provider=self.provider_type.value,
                status=response.status,
                raw_body=raw_body,
            )
        raise ProviderApiError(
            message,
            status=response.status,
            code=code,
            raw_body=raw_body,
            provider=self.provider_type.value,
            operation=operation,
        )

    def _parse_error_body(self, raw_body: str, operation: str):
        return f"{self.provider_type.value} API error in {operation}", None

    def _on_unauthorized(self) -> None:
        """Hook for adapters that cache tokens."""

    def _wrap_client_error(self, error: Exception, operation: str) -> ProviderApiError:
        logger.error("esign.transport_error", provider=self.provider_type.value, operation=operation, error=str(error))
        return ProviderApiError(
            f"Failed to reach {self.provider_type.value} in {operation}: {error}",
            code="transport_error",
            provider=self.provider_type.value,
            operation=operation,
        )

    async def __aenter__(self):
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    async def close(self):
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()


class ProviderFactory:
    """Factory for creating e-signature provider instances."""

    _providers: Dict[ESignatureType, type] = {}

    @classmethod
    def register_provider(cls, provider_type: ESignatureType, provider_class: type):
        """Register an e-signature provider implementation."""
        cls._providers[provider_type] = provider_class

    @classmethod
    def create_provider(cls, provider_type: ESignatureType, **config) -> EnvelopeProvider:
        """Create an e-signature provider instance."""
        provider_type = ESignatureType(provider_type)
        if provider_type not in cls._providers:
            raise ValueError(f"Unsupported provider type: {provider_type}")

        provider_class = cls._providers[provider_type]
        return provider_class(**config)

    @classmethod
    def get_supported_providers(cls) -> List[ESignatureType]:
        """Get list of registered provider types."""
        return list(cls._providers.keys())
