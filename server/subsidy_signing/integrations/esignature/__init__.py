"""
E-signature integration modules

Provides the DocuSign and SignWell adapters behind one ``EnvelopeProvider``
interface.
"""

from .base import (
    CanonicalEventType,
    DocumentInfo,
    EnvelopeDetails,
    EnvelopeProvider,
    EnvelopeSession,
    ESignatureType,
    ProviderFactory,
    RecipientInfo,
    SessionStatus,
    SignedDocument,
    SigningMode,
    SigningUrlInfo,
    TemplateDetails,
    WebhookEvent,
)
from .docusign_adapter import DocuSignAdapter
from .signwell_adapter import SignWellAdapter

ProviderFactory.register_provider(ESignatureType.DOCUSIGN, DocuSignAdapter)
ProviderFactory.register_provider(ESignatureType.SIGNWELL, SignWellAdapter)

__all__ = [
    "CanonicalEventType",
    "DocumentInfo",
    "DocuSignAdapter",
    "EnvelopeDetails",
    "EnvelopeProvider",
    "EnvelopeSession",
    "ESignatureType",
    "ProviderFactory",
    "RecipientInfo",
    "SessionStatus",
    "SignedDocument",
    "SignWellAdapter",
    "SigningMode",
    "SigningUrlInfo",
    "TemplateDetails",
    "WebhookEvent",
]
