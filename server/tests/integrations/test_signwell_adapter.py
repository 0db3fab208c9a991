"""
SignWell adapter tests with the REST API mocked at the aiohttp session.
"""

import asyncio
import hashlib
import hmac
import io
import json
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from pypdf import PdfReader
from reportlab.pdfgen import canvas

from subsidy_signing.core.errors import ProviderApiError, ValidationError
from subsidy_signing.forms.catalog import SIGNATURE_ANCHOR
from subsidy_signing.forms.fields import FieldAssignment, FieldKind, TabDescriptor, TabType
from subsidy_signing.forms.mapper import CheckboxGroup
from subsidy_signing.integrations.esignature import (
    CanonicalEventType,
    DocumentInfo,
    ESignatureType,
    ProviderFactory,
    RecipientInfo,
    SessionStatus,
    SigningMode,
    SignWellAdapter,
)
from subsidy_signing.integrations.esignature.signwell_adapter import split_completed_pdf

API_URL = "https://www.signwell.com/api/v1"


def mock_response(mock_call, status=200, json_data=None, text="", content=b""):
    response = mock_call.return_value.__aenter__.return_value
    response.status = status
    response.json = AsyncMock(return_value=json_data or {})
    response.text = AsyncMock(return_value=text)
    response.read = AsyncMock(return_value=content)
    return response


def make_pdf(page_count: int) -> bytes:
    buffer = io.BytesIO()
    pdf = canvas.Canvas(buffer)
    for number in range(1, page_count + 1):
        pdf.drawString(72, 720, f"Pagina {number}")
        pdf.showPage()
    pdf.save()
    return buffer.getvalue()


def page_texts(content: bytes):
    return [page.extract_text().strip() for page in PdfReader(io.BytesIO(content)).pages]


@pytest_asyncio.fixture
async def adapter():
    adapter = SignWellAdapter(api_key="sw-key", test_mode=True, webhook_secret="app-id")
    yield adapter
    await adapter.close()


@pytest.fixture
def signer():
    return RecipientInfo(name="Jan Jansen", email="jan@acme.nl", recipient_id="1")


class TestSignWellDocuments:
    def test_factory_creates_signwell_adapter(self):
        adapter = ProviderFactory.create_provider(ESignatureType.SIGNWELL, api_key="sw-key")

        assert isinstance(adapter, SignWellAdapter)
        assert adapter.supports_anchor_tabs is False
        assert set(ProviderFactory.get_supported_providers()) == {ESignatureType.DOCUSIGN, ESignatureType.SIGNWELL}

    @pytest.mark.asyncio
    async def test_create_envelope_with_absolute_fields(self, adapter, signer):
        documents = [
            DocumentInfo(name="De-minimisverklaring.pdf", content=b"%PDF-1.4 a"),
            DocumentInfo(name="MKB-verklaring", content=b"%PDF-1.4 b"),
        ]
        tabs = [
            TabDescriptor.absolute(TabType.SIGN_HERE, 1, 1, 205, 77, recipient_id="1"),
            TabDescriptor.absolute(TabType.DATE_SIGNED, 2, 3, 200, 327),
        ]
        response = {"id": "doc-1", "recipients": [{"id": "1", "email": "jan@acme.nl", "embedded_signing_url": "https://www.signwell.com/sign/abc"}]}

        with patch("aiohttp.ClientSession.request") as mock_request:
            mock_response(mock_request, status=201, json_data=response)

            session = await adapter.create_envelope(
                "SLIM Subsidie Aanvraag - Acme B.V.",
                documents,
                [signer],
                tabs,
                metadata={"applicationId": "APP-1"},
                redirect_url="https://app.example.nl/done",
            )

        method, url = mock_request.call_args.args
        payload = mock_request.call_args.kwargs["json"]
        assert (method, url) == ("POST", f"{API_URL}/documents")
        assert mock_request.call_args.kwargs["headers"]["X-Api-Key"] == "sw-key"
        assert session.envelope_id == "doc-1"
        assert session.signing_url == "https://www.signwell.com/sign/abc"
        assert payload["test_mode"] is True
        assert payload["embedded_signing"] is True
        assert payload["redirect_uri"] == "https://app.example.nl/done"
        assert [item["name"] for item in payload["files"]] == ["De-minimisverklaring.pdf", "MKB-verklaring.pdf"]
        assert payload["fields"][0] == [{"x": 205, "y": 77, "page": 1, "recipient_id": "1", "type": "signature", "required": True}]
        assert payload["fields"][1][0]["type"] == "date"
        assert payload["fields"][1][0]["recipient_id"] == "1"
        assert payload["metadata"] == {"applicationId": "APP-1"}

    @pytest.mark.asyncio
    async def test_anchor_tabs_are_rejected(self, adapter, signer):
        tabs = [TabDescriptor.anchored(TabType.SIGN_HERE, SIGNATURE_ANCHOR)]

        with patch("aiohttp.ClientSession.request") as mock_request:
            with pytest.raises(ValidationError):
                await adapter.create_envelope("Test", [DocumentInfo(name="a.pdf", content=b"x")], [signer], tabs)

        mock_request.assert_not_called()

    @pytest.mark.asyncio
    async def test_tab_for_missing_document(self, adapter, signer):
        tabs = [TabDescriptor.absolute(TabType.SIGN_HERE, 2, 1, 10, 10)]

        with pytest.raises(ValidationError):
            await adapter.create_envelope("Test", [DocumentInfo(name="a.pdf", content=b"x")], [signer], tabs)

    @pytest.mark.asyncio
    async def test_create_from_template(self, adapter, signer):
        second = RecipientInfo(name="Piet", email="piet@acme.nl", recipient_id="2", role_name="second_signer")
        assignments = [
            FieldAssignment("bedrijfsnaam", "Acme B.V.", "1"),
            FieldAssignment("kleine", True, "1", FieldKind.CHECKBOX),
            FieldAssignment("middel", False, "1", FieldKind.CHECKBOX),
        ]
        groups = [CheckboxGroup("company-size-group", "1", ("kleine", "middel", "grote"))]

        with patch("aiohttp.ClientSession.request") as mock_request:
            mock_response(mock_request, status=201, json_data={"id": "doc-2", "recipients": []})

            session = await adapter.create_from_template(
                "tpl-1", [signer, second], assignments, name="Aanvraag", checkbox_groups=groups
            )

        method, url = mock_request.call_args.args
        payload = mock_request.call_args.kwargs["json"]
        assert url == f"{API_URL}/document_templates/documents/"
        assert session.signing_url is None
        assert payload["template_id"] == "tpl-1"
        assert payload["recipients"][0]["placeholder_name"] == "signer"
        assert payload["recipients"][1]["placeholder_name"] == "second_signer"
        assert payload["template_fields"] == [
            {"api_id": "bedrijfsnaam", "value": "Acme B.V."},
            {"api_id": "kleine", "value": True},
            {"api_id": "middel", "value": False},
        ]
        assert payload["checkbox_groups"] == [{
            "group_name": "company-size-group",
            "recipient_id": "1",
            "checkbox_ids": ["kleine", "middel", "grote"],
            "validation": "exact",
            "exact_value": 1,
            "required": True,
        }]

    @pytest.mark.asyncio
    async def test_redirect_template_document_is_still_embedded(self, adapter, signer):
        response = {"id": "doc-3", "recipients": [{"id": "1", "email": "jan@acme.nl", "embedded_signing_url": "https://sign/jan"}]}

        with patch("aiohttp.ClientSession.request") as mock_request:
            mock_response(mock_request, status=201, json_data=response)

            session = await adapter.create_from_template(
                "tpl-1",
                [signer],
                [FieldAssignment("bedrijfsnaam", "Acme B.V.", "1")],
                mode=SigningMode.REDIRECT,
                redirect_url="https://app.example.nl/klaar",
            )

        payload = mock_request.call_args.kwargs["json"]
        assert payload["embedded_signing"] is True
        assert payload["redirect_uri"] == "https://app.example.nl/klaar"
        assert session.signing_url == "https://sign/jan"

    @pytest.mark.asyncio
    async def test_redirect_document_is_still_embedded(self, adapter, signer):
        tabs = [TabDescriptor.absolute(TabType.SIGN_HERE, 1, 1, 205, 77, recipient_id="1")]

        with patch("aiohttp.ClientSession.request") as mock_request:
            mock_response(mock_request, status=201, json_data={"id": "doc-4", "recipients": []})

            await adapter.create_envelope(
                "Test",
                [DocumentInfo(name="a.pdf", content=b"%PDF")],
                [signer],
                tabs,
                mode=SigningMode.REDIRECT,
                redirect_url="https://app.example.nl/klaar",
            )

        payload = mock_request.call_args.kwargs["json"]
        assert payload["embedded_signing"] is True
        assert payload["redirect_uri"] == "https://app.example.nl/klaar"

    @pytest.mark.asyncio
    async def test_timeout_becomes_transport_error(self, adapter):
        with patch("aiohttp.ClientSession.request", side_effect=asyncio.TimeoutError()):
            with pytest.raises(ProviderApiError) as exc_info:
                await adapter.get_status("doc-1")

        assert exc_info.value.code == "transport_error"


class TestSignWellFollowUp:
    @pytest.mark.asyncio
    async def test_signing_url_by_email(self, adapter, signer):
        document = {"id": "doc-1", "recipients": [
            {"id": "9", "email": "other@acme.nl", "embedded_signing_url": "https://sign/other"},
            {"id": "7", "email": "jan@acme.nl", "embedded_signing_url": "https://sign/jan"},
        ]}

        with patch("aiohttp.ClientSession.request") as mock_request:
            mock_response(mock_request, json_data=document)

            signing = await adapter.get_signing_url("doc-1", signer)

        assert signing.url == "https://sign/jan"

    @pytest.mark.asyncio
    async def test_missing_signing_url(self, adapter, signer):
        with patch("aiohttp.ClientSession.request") as mock_request:
            mock_response(mock_request, json_data={"id": "doc-1", "recipients": []})

            with pytest.raises(ProviderApiError) as exc_info:
                await adapter.get_signing_url("doc-1", signer)

        assert exc_info.value.code == "signing_url_missing"

    @pytest.mark.asyncio
    async def test_status_with_metadata(self, adapter):
        document = {
            "id": "doc-1",
            "name": "SLIM Subsidie Aanvraag - Acme B.V.",
            "status": "Completed",
            "completed_at": "2024-05-17T10:30:00Z",
            "metadata": {"applicationId": "APP-1", "source": "ignite"},
        }

        with patch("aiohttp.ClientSession.request") as mock_request:
            mock_response(mock_request, json_data=document)

            details = await adapter.get_status("doc-1")

        assert details.status is SessionStatus.COMPLETED
        assert details.metadata["source"] == "ignite"
        assert details.completed_at.year == 2024

    @pytest.mark.asyncio
    async def test_reminder_and_cancel(self, adapter):
        with patch("aiohttp.ClientSession.request") as mock_request:
            mock_response(mock_request, status=204)

            await adapter.send_reminder("doc-1")
            assert mock_request.call_args.args == ("POST", f"{API_URL}/documents/doc-1/remind")

            details = await adapter.cancel("doc-1")
            assert mock_request.call_args.args == ("DELETE", f"{API_URL}/documents/doc-1")

        assert details.status is SessionStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_validation_errors_are_kept(self, adapter, signer):
        body = json.dumps({"errors": {"recipients": ["email is invalid"]}})

        with patch("aiohttp.ClientSession.request") as mock_request:
            mock_response(mock_request, status=422, text=body)

            with pytest.raises(ProviderApiError) as exc_info:
                await adapter.create_envelope("Test", [DocumentInfo(name="a.pdf", content=b"x")], [signer], [])

        assert "email is invalid" in exc_info.value.error_message
        assert exc_info.value.raw_body == body

    @pytest.mark.asyncio
    async def test_download_completed_splits_files(self, adapter):
        document = {
            "id": "doc-1",
            "name": "SLIM Subsidie Aanvraag",
            "files": [{"name": "De-minimisverklaring.pdf", "pages_number": 1}, {"name": "MKB-verklaring.pdf", "pages_number": 2}],
        }

        with patch("aiohttp.ClientSession.request") as mock_request, patch("aiohttp.ClientSession.get") as mock_get:
            mock_response(mock_request, json_data=document)
            mock_response(mock_get, content=make_pdf(4))

            documents = await adapter.download_completed("doc-1")

        assert mock_get.call_args.args[0] == f"{API_URL}/documents/doc-1/completed_pdf"
        assert [doc.name for doc in documents] == ["De-minimisverklaring.pdf", "MKB-verklaring.pdf"]
        assert page_texts(documents[1].content) == ["Pagina 2", "Pagina 3"]


class TestSplitCompletedPdf:
    def test_audit_trail_pages_are_dropped(self):
        files = [{"name": "a.pdf", "pages_number": 2}, {"name": "b.pdf", "pages_number": 1}]

        documents = split_completed_pdf(make_pdf(5), files, "fallback")

        assert [len(PdfReader(io.BytesIO(doc.content)).pages) for doc in documents] == [2, 1]
        assert page_texts(documents[0].content) == ["Pagina 1", "Pagina 2"]
        assert [doc.document_id for doc in documents] == ["1", "2"]

    def test_page_counts_that_do_not_fit(self):
        content = make_pdf(2)

        documents = split_completed_pdf(content, [{"name": "a.pdf", "pages_number": 3}], "SLIM Subsidie Aanvraag")

        assert len(documents) == 1
        assert documents[0].name == "SLIM Subsidie Aanvraag.pdf"
        assert documents[0].content == content

    def test_missing_page_counts(self):
        documents = split_completed_pdf(make_pdf(2), [{"name": "a.pdf"}], "doc.pdf")

        assert [doc.name for doc in documents] == ["doc.pdf"]


class TestSignWellWebhook:
    def test_completed_event(self, adapter):
        body = json.dumps({
            "event": {"type": "document_completed", "time": 1715941800},
            "data": {"object": {"id": "doc-1", "status": "Completed", "metadata": {"applicationId": "APP-1"}}},
        }).encode()

        event = adapter.parse_webhook(body, {})

        assert event.event_type is CanonicalEventType.COMPLETED
        assert event.envelope_id == "doc-1"
        assert event.metadata == {"applicationId": "APP-1"}

    def test_last_signature_counts_as_completion(self, adapter):
        body = json.dumps({
            "event": {"type": "document_signed"},
            "data": {"object": {"id": "doc-1", "status": "Completed"}},
        }).encode()

        assert adapter.parse_webhook(body, {}).is_completion

    def test_first_signature_is_not_completion(self, adapter):
        body = json.dumps({
            "event": {"type": "document_signed"},
            "data": {"object": {"id": "doc-1", "status": "Pending"}},
        }).encode()

        assert adapter.parse_webhook(body, {}).event_type is CanonicalEventType.SIGNED

    def test_header_signature(self, adapter):
        body = b'{"event": {"type": "document_completed"}}'
        signature = hmac.new(b"app-id", body, hashlib.sha256).hexdigest()

        assert adapter.verify_webhook_signature(body, {"X-Signwell-Signature": signature})
        assert not adapter.verify_webhook_signature(body, {"X-Signwell-Signature": "0" * 64})

    def test_event_hash_signature(self, adapter):
        event_hash = hmac.new(b"app-id", b"document_completed@1715941800", hashlib.sha256).hexdigest()
        body = json.dumps({"event": {"type": "document_completed", "time": 1715941800, "hash": event_hash}}).encode()

        assert adapter.verify_webhook_signature(body, {})

    def test_missing_signature(self, adapter):
        body = json.dumps({"event": {"type": "document_completed", "time": 1715941800}}).encode()

        assert not adapter.verify_webhook_signature(body, {})
