"""
DocuSign E-signature Adapter

Provides integration with the DocuSign eSignature REST API v2.1, authenticated
through the OAuth JWT grant with user impersonation.
"""

import asyncio
import base64
import hmac
import json
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence

import aiohttp

from subsidy_signing.core.errors import ValidationError
from subsidy_signing.core.logging import get_logger
from subsidy_signing.forms.fields import FieldAssignment, FieldKind, TabDescriptor, TabType
from subsidy_signing.integrations.credentials import CredentialProvider

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

DOCUSIGN_SIGNATURE_HEADER = "X-DocuSign-Signature-1"
ANCHOR_UNITS = "pixels"
DEFAULT_ROLE_NAME = "signer"


class DocuSignAdapter(EnvelopeProvider):
    """DocuSign e-signature adapter."""

    signature_header = DOCUSIGN_SIGNATURE_HEADER

    def __init__(
        self,
        credentials: CredentialProvider,
        base_url: str = "https://demo.docusign.net/restapi",
        account_id: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        frame_ancestors: Optional[Sequence[str]] = None,
        message_origin: Optional[str] = None,
        **config
    ):
        """
        Initialize DocuSign adapter.

        Args:
            credentials: JWT credential provider; its token cache may carry the
                account id and base URI discovered through userinfo
            base_url: REST base (``.../restapi``) used when userinfo gives none
            account_id: DocuSign account id, overrides the discovered one
            webhook_secret: Connect HMAC key
            frame_ancestors: Origins allowed to frame the embedded signing view
            message_origin: The single origin that receives signing postMessages
        """
        super().__init__(webhook_secret=webhook_secret, **config)
        self.credentials = credentials
        self.base_url = base_url.rstrip('/')
        self.account_id = account_id
        self.frame_ancestors = list(frame_ancestors or [])
        self.message_origin = message_origin

    def _get_provider_type(self) -> ESignatureType:
        """Return the provider type identifier."""
        return ESignatureType.DOCUSIGN

    @property
    def supports_anchor_tabs(self) -> bool:
        return True

    async def authenticate(self) -> Dict[str, str]:
        token = await self.credentials.get_token()
        return {
            "Authorization": f"Bearer {token.access_token}",
            "Accept": "application/json",
        }

    async def _api_base(self) -> str:
        token = await self.credentials.get_token()
        account_id = self.account_id or token.account_id
        if not account_id:
            raise ValidationError("DocuSign account id is unknown", errors=["docusign_account_id is not set"])
        base = f"{token.base_uri.rstrip('/')}/restapi" if token.base_uri else self.base_url
        return f"{base}/v2.1/accounts/{account_id}"

    def _on_unauthorized(self) -> None:
        self.credentials.invalidate()

    async def _request_json(self, method: str, path: str, operation: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{await self._api_base()}{path}"
        headers = await self.authenticate()
        try:
            async with self.session.request(method, url, json=payload, headers=headers) as response:
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
        """
        Create and send an envelope with the filled documents.

        Documents are numbered 1..n in the given order; tab descriptors with an
        absolute ``document_index`` refer to that numbering.
        """
        payload = self._build_document_envelope_payload(documents, recipients, tabs, name, message, metadata)
        response_data = await self._request_json("POST", "/envelopes", "create_envelope", payload)
        envelope_id = response_data["envelopeId"]

        logger.info(
            "envelope.created",
            provider=self.provider_type.value,
            envelope_id=envelope_id,
            document_count=len(documents),
            mode=mode.value,
        )
        return EnvelopeSession(
            provider_id=self.provider_type,
            envelope_id=envelope_id,
            recipients=list(recipients),
            status=self._map_status(response_data.get("status", "sent")),
            provider_response=response_data,
        )

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
        payload = self._build_template_envelope_payload(template_id, recipients, assignments, name, message, metadata)
        response_data = await self._request_json("POST", "/envelopes", "create_from_template", payload)
        envelope_id = response_data["envelopeId"]

        logger.info(
            "envelope.created_from_template",
            provider=self.provider_type.value,
            envelope_id=envelope_id,
            template_id=template_id,
            field_count=len(assignments),
        )
        return EnvelopeSession(
            provider_id=self.provider_type,
            envelope_id=envelope_id,
            recipients=list(recipients),
            status=self._map_status(response_data.get("status", "sent")),
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
        if not recipient.client_user_id:
            raise ValidationError(
                "Recipient view requires an embedded recipient",
                errors=[f"recipient {recipient.recipient_id} has no client_user_id"],
            )
        view_request: Dict[str, Any] = {
            "returnUrl": return_url or "",
            "authenticationMethod": "none",
            "email": recipient.email,
            "userName": recipient.name,
            "clientUserId": recipient.client_user_id,
        }
        if mode is SigningMode.EMBEDDED:
            if self.frame_ancestors:
                view_request["frameAncestors"] = list(self.frame_ancestors)
            if self.message_origin:
                view_request["messageOrigins"] = [self.message_origin]

        response_data = await self._request_json(
            "POST", f"/envelopes/{session_id}/views/recipient", "get_signing_url", view_request
        )
        return SigningUrlInfo(
            url=response_data["url"],
            envelope_id=session_id,
            recipient_id=recipient.recipient_id,
            mode=mode,
        )

    async def download_completed(self, session_id: str) -> List[SignedDocument]:
        """Download every ``content`` document; certificates and summaries are skipped."""
        listing = await self._request_json("GET", f"/envelopes/{session_id}/documents", "list_documents")
        api_base = await self._api_base()
        headers = await self.authenticate()
        headers["Accept"] = "application/pdf"

        signed = []
        for document in listing.get("envelopeDocuments", []):
            if document.get("type") != "content":
                continue
            document_id = str(document["documentId"])
            url = f"{api_base}/envelopes/{session_id}/documents/{document_id}"
            try:
                async with self.session.get(url, headers=headers) as response:
                    await self._handle_api_error(response, "download_document")
                    content = await response.read()
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                raise self._wrap_client_error(e, "download_document") from e
            signed.append(SignedDocument(document_id=document_id, name=document.get("name", f"document-{document_id}"), content=content))

        logger.info("envelope.documents_downloaded", envelope_id=session_id, document_count=len(signed))
        return signed

    async def get_status(self, session_id: str) -> EnvelopeDetails:
        envelope = await self._request_json("GET", f"/envelopes/{session_id}", "get_status")
        custom_fields = await self._request_json("GET", f"/envelopes/{session_id}/custom_fields", "get_custom_fields")
        metadata = {
            item["name"]: item.get("value", "")
            for item in custom_fields.get("textCustomFields", [])
            if item.get("name")
        }
        provider_status = envelope.get("status", "created")
        return EnvelopeDetails(
            envelope_id=session_id,
            status=self._map_status(provider_status),
            provider_status=provider_status,
            metadata=metadata,
            name=envelope.get("emailSubject"),
            completed_at=self._parse_datetime(envelope.get("completedDateTime")),
            created_at=self._parse_datetime(envelope.get("createdDateTime")),
        )

    async def cancel(self, session_id: str, reason: str = "Cancelled by user") -> EnvelopeDetails:
        await self._request_json(
            "PUT", f"/envelopes/{session_id}", "cancel", {"status": "voided", "voidedReason": reason}
        )
        logger.info("envelope.cancelled", provider=self.provider_type.value, envelope_id=session_id)
        return EnvelopeDetails(envelope_id=session_id, status=SessionStatus.CANCELLED, provider_status="voided")

    async def get_template(self, template_id: str) -> TemplateDetails:
        template = await self._request_json("GET", f"/templates/{template_id}?include=recipients,tabs", "get_template")
        signers = (template.get("recipients") or {}).get("signers", [])
        field_names: List[str] = []
        for signer in signers:
            for tab_list in (signer.get("tabs") or {}).values():
                for tab in tab_list:
                    label = tab.get("tabLabel") or tab.get("groupName")
                    if label and label not in field_names:
                        field_names.append(label)
        return TemplateDetails(
            template_id=template.get("templateId", template_id),
            name=template.get("name", ""),
            field_names=field_names,
            roles=[signer.get("roleName", "") for signer in signers],
            raw=template,
        )

    def parse_webhook(self, body: bytes, headers: Mapping[str, str]) -> WebhookEvent:
        """
        Parse a DocuSign Connect JSON payload.

        Both the flat legacy shape (``event``/``status``/``envelopeId``) and the
        current ``data.envelopeId`` shape are accepted.
        """
        try:
            payload = json.loads(body.decode('utf-8'))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ValidationError(f"Invalid webhook JSON: {e}", errors=["body is not JSON"]) from e
        if not isinstance(payload, dict):
            raise ValidationError("Invalid webhook payload", errors=["body is not a JSON object"])

        data = payload.get("data") or {}
        raw_event = str(payload.get("event") or "")
        status = str(payload.get("status") or (data.get("envelopeSummary") or {}).get("status") or "")
        envelope_id = payload.get("envelopeId") or data.get("envelopeId") or ""

        return WebhookEvent(
            event_type=self._map_event(raw_event, status),
            provider=self.provider_type,
            envelope_id=str(envelope_id),
            raw_event_type=raw_event or status,
            raw_payload=payload,
        )

    async def health_check(self) -> bool:
        """Check if DocuSign API is reachable with the current credentials."""
        try:
            url = await self._api_base()
            headers = await self.authenticate()
            async with self.session.get(url, headers=headers) as response:
                return response.status == 200
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("esign.health_check_failed", provider=self.provider_type.value, error=str(e))
            return False

    def _compare_signature(self, digest: bytes, signature: str) -> bool:
        expected = base64.b64encode(digest).decode('ascii')
        return hmac.compare_digest(expected, signature.strip())

    def _build_document_envelope_payload(
        self,
        documents: Sequence[DocumentInfo],
        recipients: Sequence[RecipientInfo],
        tabs: Sequence[TabDescriptor],
        name: str,
        message: Optional[str],
        metadata: Optional[Mapping[str, str]],
    ) -> Dict[str, Any]:
        """Build envelope payload for document-based envelopes."""
        payload: Dict[str, Any] = {
            "emailSubject": name,
            "emailBlurb": message or "Please review and sign the attached documents.",
            "documents": [],
            "recipients": {"signers": []},
            "status": "sent",
        }

        for i, doc in enumerate(documents):
            payload["documents"].append({
                "documentId": str(i + 1),
                "name": doc.name,
                "fileExtension": doc.file_type,
                "documentBase64": base64.b64encode(doc.content).decode('utf-8'),
            })

        for index, recipient in enumerate(recipients):
            signer: Dict[str, Any] = {
                "recipientId": recipient.recipient_id,
                "name": recipient.name,
                "email": recipient.email,
                "routingOrder": str(recipient.routing_order),
            }
            if recipient.client_user_id:
                signer["clientUserId"] = recipient.client_user_id
            signer_tabs = [tab for tab in tabs if self._tab_belongs_to(tab.recipient_id, recipient, index)]
            if signer_tabs:
                signer["tabs"] = self._build_tabs_payload(signer_tabs)
            payload["recipients"]["signers"].append(signer)

        if metadata:
            payload["customFields"] = self._custom_fields(metadata)
        return payload

    def _build_template_envelope_payload(
        self,
        template_id: str,
        recipients: Sequence[RecipientInfo],
        assignments: Sequence[FieldAssignment],
        name: Optional[str],
        message: Optional[str],
        metadata: Optional[Mapping[str, str]],
    ) -> Dict[str, Any]:
        """Build envelope payload for template-based envelopes."""
        template_roles = []
        for index, recipient in enumerate(recipients):
            role: Dict[str, Any] = {
                "email": recipient.email,
                "name": recipient.name,
                "roleName": recipient.role_name or DEFAULT_ROLE_NAME,
            }
            if recipient.client_user_id:
                role["clientUserId"] = recipient.client_user_id
            role_assignments = [a for a in assignments if self._tab_belongs_to(a.recipient_id, recipient, index)]
            if role_assignments:
                role["tabs"] = self._build_prefill_tabs(role_assignments)
            template_roles.append(role)

        payload: Dict[str, Any] = {
            "templateId": template_id,
            "templateRoles": template_roles,
            "status": "sent",
        }
        if name:
            payload["emailSubject"] = name
        if message:
            payload["emailBlurb"] = message
        if metadata:
            payload["customFields"] = self._custom_fields(metadata)
        return payload

    @staticmethod
    def _tab_belongs_to(recipient_id: Optional[str], recipient: RecipientInfo, index: int) -> bool:
        if recipient_id is None:
            return index == 0
        return recipient_id == recipient.recipient_id

    @staticmethod
    def _build_tabs_payload(tabs: Sequence[TabDescriptor]) -> Dict[str, List[Dict[str, Any]]]:
        tab_keys = {
            TabType.SIGN_HERE: "signHereTabs",
            TabType.DATE_SIGNED: "dateSignedTabs",
            TabType.TEXT: "textTabs",
        }
        payload: Dict[str, List[Dict[str, Any]]] = {}
        for tab in tabs:
            if tab.is_anchored:
                entry: Dict[str, Any] = {
                    "anchorString": tab.anchor_text,
                    "anchorUnits": ANCHOR_UNITS,
                    "anchorXOffset": tab.anchor_offset_x,
                    "anchorYOffset": tab.anchor_offset_y,
                }
            else:
                entry = {
                    "documentId": str(tab.document_index),
                    "pageNumber": str(tab.page_number),
                    "xPosition": str(tab.x),
                    "yPosition": str(tab.y),
                }
            if tab.tab_type is TabType.TEXT:
                entry["value"] = tab.value or ""
                entry["locked"] = "true" if tab.locked else "false"
            payload.setdefault(tab_keys[tab.tab_type], []).append(entry)
        return payload

    @staticmethod
    def _build_prefill_tabs(assignments: Sequence[FieldAssignment]) -> Dict[str, List[Dict[str, Any]]]:
        text_tabs = []
        checkbox_tabs = []
        radio_groups = []
        for assignment in assignments:
            if assignment.kind is FieldKind.RADIO:
                radio_groups.append({
                    "groupName": assignment.field_key,
                    "radios": [{"value": str(assignment.value), "selected": "true"}],
                })
            elif assignment.kind is FieldKind.CHECKBOX:
                checkbox_tabs.append({
                    "tabLabel": assignment.field_key,
                    "selected": "true" if assignment.value else "false",
                })
            else:
                text_tabs.append({"tabLabel": assignment.field_key, "value": str(assignment.value)})

        tabs: Dict[str, List[Dict[str, Any]]] = {}
        if text_tabs:
            tabs["textTabs"] = text_tabs
        if checkbox_tabs:
            tabs["checkboxTabs"] = checkbox_tabs
        if radio_groups:
            tabs["radioGroupTabs"] = radio_groups
        return tabs

    @staticmethod
    def _custom_fields(metadata: Mapping[str, str]) -> Dict[str, Any]:
        return {
            "textCustomFields": [
                {"name": key, "value": str(value), "show": "false", "required": "false"}
                for key, value in metadata.items()
            ]
        }

    def _parse_error_body(self, raw_body: str, operation: str):
        try:
            error_data = json.loads(raw_body)
        except (json.JSONDecodeError, TypeError):
            return raw_body or f"DocuSign API error in {operation}", None
        if not isinstance(error_data, dict):
            return f"DocuSign API error in {operation}", None
        return error_data.get("message", f"DocuSign API error in {operation}"), error_data.get("errorCode")

    def _map_status(self, docusign_status: str) -> SessionStatus:
        """Map DocuSign status to our SessionStatus enum."""
        status_mapping = {
            "created": SessionStatus.CREATED,
            "sent": SessionStatus.SENT,
            "delivered": SessionStatus.SENT,
            "signed": SessionStatus.SENT,
            "completed": SessionStatus.COMPLETED,
            "declined": SessionStatus.CANCELLED,
            "voided": SessionStatus.CANCELLED,
            "deleted": SessionStatus.CANCELLED,
        }
        return status_mapping.get(docusign_status.lower(), SessionStatus.SENT)

    @staticmethod
    def _map_event(event: str, status: str) -> CanonicalEventType:
        if event == "envelope-completed" or status.lower() == "completed":
            return CanonicalEventType.COMPLETED
        event_mapping = {
            "envelope-sent": CanonicalEventType.SENT,
            "envelope-delivered": CanonicalEventType.VIEWED,
            "recipient-completed": CanonicalEventType.SIGNED,
            "envelope-declined": CanonicalEventType.DECLINED,
            "recipient-declined": CanonicalEventType.DECLINED,
            "envelope-voided": CanonicalEventType.CANCELLED,
        }
        return event_mapping.get(event, CanonicalEventType.OTHER)

    def _parse_datetime(self, datetime_str: Optional[str]) -> Optional[datetime]:
        """Parse DocuSign datetime string."""
        if not datetime_str:
            return None

        try:
            # DocuSign format: 2023-01-01T12:00:00.0000000Z
            trimmed = datetime_str.replace('Z', '+00:00')
            if '.' in trimmed:
                head, _, tail = trimmed.partition('.')
                fraction, sign, offset = tail.partition('+')
                trimmed = f"{head}.{fraction[:6]}{sign}{offset}"
            return datetime.fromisoformat(trimmed)
        except (ValueError, AttributeError):
            return None
