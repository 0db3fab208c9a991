"""
SignWell E-signature Adapter

Provides integration with the SignWell API v1, authenticated with an API key.
SignWell has no anchor-text tabs, so document envelopes take absolute field
positions only, and hosted templates are prefilled through ``api_id`` fields.
"""

import asyncio
import base64
import hashlib
import hmac
import io
import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence

import aiohttp
from pypdf import PdfReader, PdfWriter

from subsidy_signing.core.errors import ProviderApiError, ValidationError
from subsidy_signing.core.logging import get_logger
from subsidy_signing.forms.fields import FieldAssignment, FieldKind, TabDescriptor, TabType
from subsidy_signing.forms.mapper import CheckboxGroup

from .base import (
    CanonicalEventType,
    DocumentInfo,
    EnvelopeDetails,
    EnvelopeProvider,
    EnvelopeSession,
    ESignatureType,
    RecipientInfo,
    SessionStatus,
    SignedDocument,
    SigningMode,
    SigningUrlInfo,
    TemplateDetails,
    WebhookEvent,
)

logger = get_logger(__name__)

SIGNWELL_SIGNATURE_HEADER = "X-Signwell-Signature"
TEMPLATE_PLACEHOLDER_NAME = "signer"

_FIELD_TYPES = {
    TabType.SIGN_HERE: "signature",
    TabType.DATE_SIGNED: "date",
    TabType.TEXT: "text",
}


class SignWellAdapter(EnvelopeProvider):
    """SignWell e-signature adapter."""

    signature_header = SIGNWELL_SIGNATURE_HEADER

    def __init__(
        self,
        api_key: str,
        api_url: str = "https://www.signwell.com/api/v1",
        test_mode: bool = False,
        webhook_secret: Optional[str] = None,
        **config
    ):
        """
        Initialize SignWell adapter.

        Args:
            api_key: SignWell API key
            api_url: API base URL
            test_mode: Create documents in test mode (not legally binding)
            webhook_secret: API application id used as webhook HMAC key
        """
        super().__init__(webhook_secret=webhook_secret, **config)
        self.api_key = api_key
        self.api_url = api_url.rstrip('/')
        self.test_mode = test_mode

    def _get_provider_type(self) -> ESignatureType:
        """Return the provider type identifier."""
        return ESignatureType.SIGNWELL

    async def authenticate(self) -> Dict[str, str]:
        return {
            "X-Api-Key": self.api_key,
            "Accept": "application/json",
        }

    async def _request_json(self, method: str, path: str, operation: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        headers = await self.authenticate()
        try:
            async with self.session.request(method, f"{self.api_url}{path}", json=payload, headers=headers) as response:
                await self._handle_api_error(response, operation)
                if response.status == 204:
                    return {}
                return await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise self._wrap_client_error(e, operation) from e

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
        payload = self._build_document_payload(documents, recipients, tabs, name, message, metadata, redirect_url)
        response_data = await self._request_json("POST", "/documents", "create_envelope", payload)
        return self._session_from_response(response_data, recipients, "envelope.created")

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
        checkbox_groups: Sequence[CheckboxGroup] = (),
        **kwargs
    ) -> EnvelopeSession:
        payload = self._build_template_payload(
            template_id, recipients, assignments, name, message, metadata, redirect_url, checkbox_groups
        )
        response_data = await self._request_json(
            "POST", "/document_templates/documents/", "create_from_template", payload
        )
        return self._session_from_response(response_data, recipients, "envelope.created_from_template")

    def _session_from_response(
        self,
        response_data: Dict[str, Any],
        recipients: Sequence[RecipientInfo],
        event: str,
    ) -> EnvelopeSession:
        document_id = response_data["id"]
        signing_url = self._embedded_url(response_data, recipients[0] if recipients else None)
        logger.info(event, provider=self.provider_type.value, envelope_id=document_id, embedded=bool(signing_url))
        return EnvelopeSession(
            provider_id=self.provider_type,
            envelope_id=document_id,
            recipients=list(recipients),
            status=SessionStatus.SENT,
            signing_url=signing_url,
            provider_response=response_data,
        )

    async def get_signing_url(
        self,
        session_id: str,
        recipient: RecipientInfo,
        return_url: Optional[str] = None,
        mode: SigningMode = SigningMode.EMBEDDED,
        **kwargs
    ) -> SigningUrlInfo:
        """
        Look up the recipient's embedded signing URL on the document.

        The redirect target is fixed at document creation (``redirect_uri``),
        so ``return_url`` is not sent here.
        """
        document = await self._request_json("GET", f"/documents/{session_id}", "get_signing_url")
        url = self._embedded_url(document, recipient)
        if not url:
            raise ProviderApiError(
                f"No signing URL for recipient {recipient.recipient_id}",
                code="signing_url_missing",
                provider=self.provider_type.value,
                operation="get_signing_url",
            )
        return SigningUrlInfo(url=url, envelope_id=session_id, recipient_id=recipient.recipient_id, mode=mode)

    async def download_completed(self, session_id: str) -> List[SignedDocument]:
        """
        Download the completed PDF and split it back into the original files.

        SignWell returns one PDF with all files followed by the audit trail;
        ``files[].pages_number`` gives each file's page span and the trailing
        pages are dropped.
        """
        document = await self._request_json("GET", f"/documents/{session_id}", "get_document")
        headers = await self.authenticate()
        headers["Accept"] = "application/pdf"
        try:
            async with self.session.get(f"{self.api_url}/documents/{session_id}/completed_pdf", headers=headers) as response:
                await self._handle_api_error(response, "download_completed")
                content = await response.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise self._wrap_client_error(e, "download_completed") from e

        signed = split_completed_pdf(content, document.get("files") or [], document.get("name") or session_id)
        logger.info("envelope.documents_downloaded", envelope_id=session_id, document_count=len(signed))
        return signed

    async def get_status(self, session_id: str) -> EnvelopeDetails:
        document = await self._request_json("GET", f"/documents/{session_id}", "get_status")
        provider_status = str(document.get("status", ""))
        metadata = {key: str(value) for key, value in (document.get("metadata") or {}).items()}
        return EnvelopeDetails(
            envelope_id=session_id,
            status=self._map_status(provider_status),
            provider_status=provider_status,
            metadata=metadata,
            name=document.get("name"),
            completed_at=self._parse_datetime(document.get("completed_at") or document.get("updated_at")),
            created_at=self._parse_datetime(document.get("created_at")),
        )

    async def cancel(self, session_id: str, reason: str = "Cancelled by user") -> EnvelopeDetails:
        await self._request_json("DELETE", f"/documents/{session_id}", "cancel")
        logger.info("envelope.cancelled", provider=self.provider_type.value, envelope_id=session_id, reason=reason)
        return EnvelopeDetails(envelope_id=session_id, status=SessionStatus.CANCELLED, provider_status="deleted")

    async def send_reminder(self, session_id: str) -> None:
        await self._request_json("POST", f"/documents/{session_id}/remind", "send_reminder")
        logger.info("envelope.reminder_sent", provider=self.provider_type.value, envelope_id=session_id)

    async def get_template(self, template_id: str) -> TemplateDetails:
        template = await self._request_json("GET", f"/document_templates/{template_id}", "get_template")
        field_names: List[str] = []
        for file_fields in template.get("fields") or []:
            entries = file_fields if isinstance(file_fields, list) else [file_fields]
            for entry in entries:
                api_id = entry.get("api_id")
                if api_id and api_id not in field_names:
                    field_names.append(api_id)
        return TemplateDetails(
            template_id=template.get("id", template_id),
            name=template.get("name", ""),
            field_names=field_names,
            roles=[placeholder.get("name", "") for placeholder in template.get("placeholders") or []],
            raw=template,
        )

    def parse_webhook(self, body: bytes, headers: Mapping[str, str]) -> WebhookEvent:
        try:
            payload = json.loads(body.decode('utf-8'))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ValidationError(f"Invalid webhook JSON: {e}", errors=["body is not JSON"]) from e
        if not isinstance(payload, dict):
            raise ValidationError("Invalid webhook payload", errors=["body is not a JSON object"])

        event = payload.get("event") or {}
        document = (payload.get("data") or {}).get("object") or {}
        raw_event = str(event.get("type") or "")
        status = str(document.get("status") or "")
        metadata = {key: str(value) for key, value in (document.get("metadata") or {}).items()}

        return WebhookEvent(
            event_type=self._map_event(raw_event, status),
            provider=self.provider_type,
            envelope_id=str(document.get("id") or ""),
            raw_event_type=raw_event,
            raw_payload=payload,
            metadata=metadata,
        )

    def verify_webhook_signature(self, body: bytes, headers: Mapping[str, str]) -> bool:
        """
        Verify a SignWell delivery.

        A hex HMAC of the raw body in ``X-Signwell-Signature`` is preferred.
        Without the header, ``event.hash`` in the body must equal the HMAC of
        ``"<event.type>@<event.time>"``.
        """
        if not self.webhook_secret:
            return True
        if self._extract_signature(body, headers):
            return super().verify_webhook_signature(body, headers)

        try:
            event = json.loads(body.decode('utf-8')).get("event") or {}
        except (UnicodeDecodeError, json.JSONDecodeError, AttributeError):
            return False
        event_hash = event.get("hash")
        if not event_hash:
            return False
        message = f"{event.get('type')}@{event.get('time')}".encode('utf-8')
        digest = hmac.new(self.webhook_secret.encode('utf-8'), message, hashlib.sha256).digest()
        return self._compare_signature(digest, str(event_hash))

    async def health_check(self) -> bool:
        try:
            headers = await self.authenticate()
            async with self.session.get(f"{self.api_url}/me", headers=headers) as response:
                return response.status == 200
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("esign.health_check_failed", provider=self.provider_type.value, error=str(e))
            return False

    def _compare_signature(self, digest: bytes, signature: str) -> bool:
        return hmac.compare_digest(digest.hex(), signature.strip().lower())

    def _build_document_payload(
        self,
        documents: Sequence[DocumentInfo],
        recipients: Sequence[RecipientInfo],
        tabs: Sequence[TabDescriptor],
        name: str,
        message: Optional[str],
        metadata: Optional[Mapping[str, str]],
        redirect_url: Optional[str],
    ) -> Dict[str, Any]:
        anchored = [tab for tab in tabs if tab.is_anchored]
        if anchored:
            raise ValidationError(
                "SignWell does not support anchor text tabs",
                errors=[f"{tab.tab_type.value}: anchor '{tab.anchor_text}'" for tab in anchored],
            )

        default_recipient = recipients[0].recipient_id if recipients else None
        fields: List[List[Dict[str, Any]]] = [[] for _ in documents]
        for tab in tabs:
            index = tab.document_index - 1
            if not 0 <= index < len(documents):
                raise ValidationError(
                    f"Tab refers to document {tab.document_index} of {len(documents)}",
                    errors=[f"{tab.tab_type.value}: documentIndex out of range"],
                )
            entry: Dict[str, Any] = {
                "x": tab.x,
                "y": tab.y,
                "page": tab.page_number,
                "recipient_id": tab.recipient_id or default_recipient,
                "type": _FIELD_TYPES[tab.tab_type],
                "required": tab.tab_type is not TabType.TEXT,
            }
            if tab.tab_type is TabType.TEXT:
                entry["value"] = tab.value or ""
            fields[index].append(entry)

        payload: Dict[str, Any] = {
            "name": name,
            "test_mode": self.test_mode,
            "draft": False,
            "files": [
                {
                    "name": doc.name if doc.name.lower().endswith(".pdf") else f"{doc.name}.pdf",
                    "file_base64": base64.b64encode(doc.content).decode('utf-8'),
                }
                for doc in documents
            ],
            "recipients": [self._recipient_payload(recipient) for recipient in recipients],
            "fields": fields,
            "embedded_signing": True,
        }
        if message:
            payload["message"] = message
        if redirect_url:
            payload["redirect_uri"] = redirect_url
        if metadata:
            payload["metadata"] = {key: str(value) for key, value in metadata.items()}
        return payload

    def _build_template_payload(
        self,
        template_id: str,
        recipients: Sequence[RecipientInfo],
        assignments: Sequence[FieldAssignment],
        name: Optional[str],
        message: Optional[str],
        metadata: Optional[Mapping[str, str]],
        redirect_url: Optional[str],
        checkbox_groups: Sequence[CheckboxGroup],
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "template_id": template_id,
            "test_mode": self.test_mode,
            "draft": False,
            "recipients": [
                {
                    "id": recipient.recipient_id,
                    "name": recipient.name,
                    "email": recipient.email,
                    "placeholder_name": recipient.role_name or TEMPLATE_PLACEHOLDER_NAME,
                }
                for recipient in recipients
            ],
            "template_fields": [
                {"api_id": assignment.field_key, "value": self._template_value(assignment)}
                for assignment in assignments
            ],
            "embedded_signing": True,
        }
        if checkbox_groups:
            default_recipient = recipients[0].recipient_id if recipients else None
            payload["checkbox_groups"] = [
                {
                    "group_name": group.group_name,
                    "recipient_id": group.recipient_id or default_recipient,
                    "checkbox_ids": list(group.checkbox_ids),
                    "validation": "exact",
                    "exact_value": group.exact_value,
                    "required": group.required,
                }
                for group in checkbox_groups
            ]
        if name:
            payload["name"] = name
        if message:
            payload["message"] = message
        if redirect_url:
            payload["redirect_uri"] = redirect_url
        if metadata:
            payload["metadata"] = {key: str(value) for key, value in metadata.items()}
        return payload

    @staticmethod
    def _template_value(assignment: FieldAssignment):
        if assignment.kind is FieldKind.CHECKBOX:
            return bool(assignment.value)
        return str(assignment.value)

    @staticmethod
    def _recipient_payload(recipient: RecipientInfo) -> Dict[str, Any]:
        return {
            "id": recipient.recipient_id,
            "name": recipient.name,
            "email": recipient.email,
            "signing_order": recipient.routing_order,
        }

    @staticmethod
    def _embedded_url(document: Dict[str, Any], recipient: Optional[RecipientInfo]) -> Optional[str]:
        candidates = document.get("recipients") or []
        if recipient is not None:
            for candidate in candidates:
                if candidate.get("id") == recipient.recipient_id or candidate.get("email") == recipient.email:
                    return candidate.get("embedded_signing_url")
        for candidate in candidates:
            if candidate.get("embedded_signing_url"):
                return candidate["embedded_signing_url"]
        return None

    def _parse_error_body(self, raw_body: str, operation: str):
        try:
            error_data = json.loads(raw_body)
        except (json.JSONDecodeError, TypeError):
            return raw_body or f"SignWell API error in {operation}", None
        if not isinstance(error_data, dict):
            return f"SignWell API error in {operation}", None
        errors = error_data.get("errors")
        message = error_data.get("message") or (json.dumps(errors) if errors else f"SignWell API error in {operation}")
        return message, error_data.get("code")

    @staticmethod
    def _map_status(signwell_status: str) -> SessionStatus:
        status_mapping = {
            "draft": SessionStatus.CREATED,
            "created": SessionStatus.CREATED,
            "sent": SessionStatus.SENT,
            "pending": SessionStatus.SENT,
            "viewed": SessionStatus.SENT,
            "completed": SessionStatus.COMPLETED,
            "canceled": SessionStatus.CANCELLED,
            "cancelled": SessionStatus.CANCELLED,
            "declined": SessionStatus.CANCELLED,
            "expired": SessionStatus.CANCELLED,
        }
        return status_mapping.get(signwell_status.lower(), SessionStatus.SENT)

    @staticmethod
    def _map_event(event_type: str, status: str) -> CanonicalEventType:
        # document_signed carries status "Completed" once the last signer is done
        if event_type == "document_completed" or (event_type == "document_signed" and status.lower() == "completed"):
            return CanonicalEventType.COMPLETED
        event_mapping = {
            "document_sent": CanonicalEventType.SENT,
            "document_viewed": CanonicalEventType.VIEWED,
            "recipient_viewed": CanonicalEventType.VIEWED,
            "document_signed": CanonicalEventType.SIGNED,
            "recipient_completed": CanonicalEventType.SIGNED,
            "document_declined": CanonicalEventType.DECLINED,
            "document_canceled": CanonicalEventType.CANCELLED,
            "document_expired": CanonicalEventType.CANCELLED,
        }
        return event_mapping.get(event_type, CanonicalEventType.OTHER)

    @staticmethod
    def _parse_datetime(value: Any) -> Optional[datetime]:
        if value in (None, ""):
            return None
        if isinstance(value, (int, float)):
            return datetime.fromtimestamp(value, tz=timezone.utc)
        try:
            return datetime.fromisoformat(str(value).replace('Z', '+00:00'))
        except ValueError:
            return None


def split_completed_pdf(content: bytes, files: Sequence[Mapping[str, Any]], fallback_name: str) -> List[SignedDocument]:
    """
    Split a SignWell completed PDF into one document per original file.

    When the file page counts do not fit the PDF the whole PDF is returned as
    a single document.
    """
    reader = PdfReader(io.BytesIO(content))
    total_pages = len(reader.pages)
    spans = [int(item.get("pages_number") or 0) for item in files]

    if not files or any(span <= 0 for span in spans) or sum(spans) > total_pages:
        logger.warning(
            "signwell.split_skipped",
            total_pages=total_pages,
            expected_pages=sum(spans),
            file_count=len(files),
        )
        name = fallback_name if fallback_name.lower().endswith(".pdf") else f"{fallback_name}.pdf"
        return [SignedDocument(document_id="1", name=name, content=content)]

    documents = []
    start = 0
    for index, (item, span) in enumerate(zip(files, spans), start=1):
        writer = PdfWriter()
        for page_index in range(start, start + span):
            writer.add_page(reader.pages[page_index])
        buffer = io.BytesIO()
        writer.write(buffer)
        documents.append(SignedDocument(document_id=str(index), name=str(item.get("name") or f"document-{index}.pdf"), content=buffer.getvalue()))
        start += span

    if total_pages > start:
        logger.info("signwell.audit_pages_dropped", audit_pages=total_pages - start)
    return documents
