"""
Completion webhook handling.

A delivery moves an envelope through ``Completed -> Downloaded -> Stored``.
Correlation metadata is always read back from the provider rather than
trusted from the body. Signed files get deterministic names and are written
with replace semantics, so a redelivered completion overwrites the same
files instead of duplicating them.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from subsidy_signing.core.errors import SubsidySigningError, ValidationError
from subsidy_signing.core.logging import bind_request_context, get_logger
from subsidy_signing.core.tenants import TenantRegistry
from subsidy_signing.integrations.esignature.base import EnvelopeDetails, EnvelopeProvider, WebhookEvent
from subsidy_signing.integrations.storage.graph_drive import GraphDriveService, StoredArtifact, sanitize_name

logger = get_logger(__name__)


class WebhookStatus(str, Enum):
    STORED = "stored"
    IGNORED = "ignored"
    REJECTED = "rejected"
    FAILED = "failed"


@dataclass
class WebhookOutcome:
    status: WebhookStatus
    envelope_id: Optional[str] = None
    event_type: Optional[str] = None
    folder_path: Optional[str] = None
    stored: List[StoredArtifact] = field(default_factory=list)
    error: Optional[str] = None


class CompletionWebhookHandler:
    """Verifies, parses and stores completion deliveries for one provider."""

    def __init__(
        self,
        provider: EnvelopeProvider,
        drive: Optional[GraphDriveService],
        tenants: TenantRegistry,
        external_root_folder: str = "SignWell Documenten",
    ):
        self.provider = provider
        self.drive = drive
        self.tenants = tenants
        self.external_root_folder = external_root_folder

    async def handle(self, body: bytes, headers: Mapping[str, str]) -> WebhookOutcome:
        """
        Process one delivery. Never raises.

        Only ``REJECTED`` (bad signature) should surface as a non-200 answer.
        """
        provider_name = self.provider.provider_type.value
        if not self.provider.verify_webhook_signature(body, headers):
            logger.warning("webhook.signature_invalid", provider=provider_name)
            return WebhookOutcome(status=WebhookStatus.REJECTED, error="invalid signature")

        try:
            event = self.provider.parse_webhook(body, headers)
        except ValidationError as e:
            logger.error("webhook.unparseable", provider=provider_name, error=e.error_message)
            return WebhookOutcome(status=WebhookStatus.FAILED, error=e.error_message)

        bind_request_context(provider=provider_name, envelope_id=event.envelope_id)
        logger.info("webhook.received", event_type=event.raw_event_type, canonical=event.event_type.value)

        if not event.is_completion or not event.envelope_id:
            return WebhookOutcome(
                status=WebhookStatus.IGNORED,
                envelope_id=event.envelope_id or None,
                event_type=event.event_type.value,
            )

        if self.drive is None:
            logger.error("webhook.storage_not_configured")
            return WebhookOutcome(
                status=WebhookStatus.FAILED,
                envelope_id=event.envelope_id,
                event_type=event.event_type.value,
                error="storage not configured",
            )

        try:
            return await self._store_completed(event)
        except SubsidySigningError as e:
            logger.error(
                "webhook.store_failed",
                error_code=e.error_code,
                error=e.error_message,
                details=e.details,
            )
            return WebhookOutcome(
                status=WebhookStatus.FAILED,
                envelope_id=event.envelope_id,
                event_type=event.event_type.value,
                error=e.error_message,
            )
        except Exception as e:
            logger.exception("webhook.store_crashed", error_type=type(e).__name__, error=str(e))
            return WebhookOutcome(
                status=WebhookStatus.FAILED,
                envelope_id=event.envelope_id,
                event_type=event.event_type.value,
                error=f"{type(e).__name__}: {e}",
            )

    async def _store_completed(self, event: WebhookEvent) -> WebhookOutcome:
        details = await self.provider.get_status(event.envelope_id)
        folder_path = self.folder_path_for(details)

        documents = await self.provider.download_completed(event.envelope_id)
        folder_id = await self.drive.ensure_folder(folder_path)

        stored = []
        for document in documents:
            stored.append(await self.drive.upload_with_retry(folder_id, document.content, document.signed_file_name))

        await self.drive.record_audit(folder_id, "signing_completed", self._audit_payload(event, details, stored))
        logger.info("webhook.stored", folder_path=folder_path, file_count=len(stored))
        return WebhookOutcome(
            status=WebhookStatus.STORED,
            envelope_id=event.envelope_id,
            event_type=event.event_type.value,
            folder_path=folder_path,
            stored=stored,
        )

    def folder_path_for(self, details: EnvelopeDetails) -> str:
        """
        Application folder for envelopes created by this service.

        Envelopes without an application id or from an unknown source were
        created elsewhere and go to ``<external root>/<year>/<name> - DD-MM-YYYY``.
        """
        completed_at = details.completed_at or datetime.now(timezone.utc)
        metadata = details.metadata
        application_id = metadata.get("applicationId")
        source = metadata.get("source")

        if application_id and (source is None or source in self.tenants.known_metadata_sources()):
            tenant_id = metadata.get("tenantId") or self.tenants.tenant_for_metadata_source(source)
            return self.drive.build_application_path(application_id, tenant_id, completed_at.year)

        label = metadata.get("companyName") or details.name or details.envelope_id
        return (
            f"{sanitize_name(self.external_root_folder)}/{completed_at.year}/"
            f"{sanitize_name(label)} - {completed_at.strftime('%d-%m-%Y')}"
        )

    def _audit_payload(
        self,
        event: WebhookEvent,
        details: EnvelopeDetails,
        stored: List[StoredArtifact],
    ) -> Dict[str, Any]:
        return {
            "provider": self.provider.provider_type.value,
            "envelopeId": event.envelope_id,
            "event": event.raw_event_type,
            "status": details.provider_status,
            "completedAt": details.completed_at.isoformat() if details.completed_at else None,
            "metadata": details.metadata,
            "files": [
                {"fileName": artifact.file_name, "sizeBytes": artifact.size_bytes, "itemId": artifact.item_id}
                for artifact in stored
            ],
        }
