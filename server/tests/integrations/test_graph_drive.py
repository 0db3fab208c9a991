"""
Graph drive tests: folder resolution, uploads, retries and audit entries.
"""

import asyncio
import json
import re
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio

from subsidy_signing.core.errors import AuthError, StorageError
from subsidy_signing.integrations.credentials import StaticCredentialProvider
from subsidy_signing.integrations.storage.graph_drive import (
    CHUNK_SIZE,
    SIMPLE_UPLOAD_LIMIT,
    GraphDriveService,
    StoredArtifact,
    sanitize_name,
)

DRIVE = "/sites/site-1/drive"


def mock_response(mock_call, status=200, json_data=None, text=""):
    response = mock_call.return_value.__aenter__.return_value
    response.status = status
    response.json = AsyncMock(return_value=json_data or {})
    response.text = AsyncMock(return_value=text)
    return response


@pytest_asyncio.fixture
async def drive(tenants):
    drive = GraphDriveService(
        StaticCredentialProvider("graph-token"),
        site_id="site-1",
        tenants=tenants,
        retry_base_delay_seconds=1.0,
        retry_multiplier=2.0,
    )
    yield drive
    await drive.close()


class TestPaths:
    def test_sanitize_name(self):
        assert sanitize_name('Acme: "B/V"?') == "Acme_ _B_V__"

    def test_application_path_for_default_tenant(self, tenants):
        drive = GraphDriveService(StaticCredentialProvider("t"), site_id="s", tenants=tenants)

        assert drive.build_application_path("APP-1", None, 2024) == "SLIM Subsidies 2024/APP-1"

    def test_application_path_for_tenant_root(self, tenants):
        drive = GraphDriveService(StaticCredentialProvider("t"), site_id="s", tenants=tenants)

        assert drive.build_application_path("APP/1", "Ignite", 2024) == "SLIM Subsidies Ignite 2024/APP_1"

    def test_application_path_without_registry(self):
        drive = GraphDriveService(StaticCredentialProvider("t"), site_id="s", root_folder="Klanten:Archief")

        assert drive.build_application_path("APP-1", year=2025) == "Klanten_Archief 2025/APP-1"

    def test_drive_needs_site_or_user(self):
        assert GraphDriveService(StaticCredentialProvider("t"), user_id="u-1").base_path == "/users/u-1/drive"
        with pytest.raises(StorageError):
            GraphDriveService(StaticCredentialProvider("t")).base_path


class TestRequest:
    @pytest.mark.asyncio
    async def test_bearer_token_and_json(self, drive):
        with patch("aiohttp.ClientSession.request") as mock_request:
            mock_response(mock_request, json_data={"id": "item-1"})

            status, body = await drive._request("GET", f"{DRIVE}/items/item-1", "get_item")

        assert (status, body) == (200, {"id": "item-1"})
        assert mock_request.call_args.args == ("GET", f"https://graph.microsoft.com/v1.0{DRIVE}/items/item-1")
        assert mock_request.call_args.kwargs["headers"]["Authorization"] == "Bearer graph-token"

    @pytest.mark.asyncio
    async def test_allowed_status_is_returned(self, drive):
        with patch("aiohttp.ClientSession.request") as mock_request:
            mock_response(mock_request, status=404)

            status, body = await drive._request("GET", f"{DRIVE}/root:/missing", "get_folder", allowed=(404,))

        assert (status, body) == (404, {})

    @pytest.mark.asyncio
    async def test_unauthorized_invalidates_token(self, drive):
        with patch("aiohttp.ClientSession.request") as mock_request:
            mock_response(mock_request, status=401, text="InvalidAuthenticationToken")

            with pytest.raises(AuthError):
                await drive._request("GET", f"{DRIVE}/items/item-1", "get_item")

        assert drive.credentials.cache is None

    @pytest.mark.asyncio
    async def test_throttling_is_retryable(self, drive):
        with patch("aiohttp.ClientSession.request") as mock_request:
            mock_response(mock_request, status=503, text="Service Unavailable")

            with pytest.raises(StorageError) as exc_info:
                await drive._request("PUT", f"{DRIVE}/items/x:/a.pdf:/content", "simple_upload")

        assert exc_info.value.retryable is True
        assert exc_info.value.status == 503

    @pytest.mark.asyncio
    async def test_graph_error_message(self, drive):
        body = json.dumps({"error": {"code": "nameAlreadyExists", "message": "Name already exists"}})
        with patch("aiohttp.ClientSession.request") as mock_request:
            mock_response(mock_request, status=409, text=body)

            with pytest.raises(StorageError) as exc_info:
                await drive._request("PUT", f"{DRIVE}/items/x:/a.json:/content", "simple_upload")

        assert exc_info.value.retryable is False
        assert "nameAlreadyExists" in exc_info.value.error_message


    @pytest.mark.asyncio
    async def test_timeout_is_retryable(self, drive):
        with patch("aiohttp.ClientSession.request", side_effect=asyncio.TimeoutError()):
            with pytest.raises(StorageError) as exc_info:
                await drive._request("GET", f"{DRIVE}/items/item-1", "get_item")

        assert exc_info.value.retryable is True


class TestEnsureFolder:
    @pytest.mark.asyncio
    async def test_existing_folders(self, drive):
        responses = [(200, {"id": "year-1"}), (200, {"id": "app-1"})]
        with patch.object(drive, "_request", new=AsyncMock(side_effect=responses)) as mock_request:
            folder_id = await drive.ensure_folder("SLIM Subsidies 2024/APP 1")

        assert folder_id == "app-1"
        lookups = [call.args[1] for call in mock_request.call_args_list]
        assert lookups == [
            f"{DRIVE}/root:/SLIM%20Subsidies%202024",
            f"{DRIVE}/root:/SLIM%20Subsidies%202024/APP%201",
        ]

    @pytest.mark.asyncio
    async def test_missing_folder_is_created(self, drive):
        responses = [(200, {"id": "year-1"}), (404, {}), (201, {"id": "app-1"})]
        with patch.object(drive, "_request", new=AsyncMock(side_effect=responses)) as mock_request:
            folder_id = await drive.ensure_folder("SLIM Subsidies 2024/APP-1")

        assert folder_id == "app-1"
        create = mock_request.call_args_list[2]
        assert create.args[:2] == ("POST", f"{DRIVE}/items/year-1/children")
        assert create.kwargs["json_body"] == {"name": "APP-1", "folder": {}, "@microsoft.graph.conflictBehavior": "fail"}

    @pytest.mark.asyncio
    async def test_concurrent_create_looks_up_again(self, drive):
        responses = [(404, {}), (409, {}), (200, {"id": "raced-1"})]
        with patch.object(drive, "_request", new=AsyncMock(side_effect=responses)) as mock_request:
            folder_id = await drive.ensure_folder("Archief")

        assert folder_id == "raced-1"
        assert [call.args[0] for call in mock_request.call_args_list] == ["GET", "POST", "GET"]

    @pytest.mark.asyncio
    async def test_empty_path(self, drive):
        with pytest.raises(StorageError):
            await drive.ensure_folder("//")

    @pytest.mark.asyncio
    async def test_same_path_twice_gives_same_folder(self, drive):
        responses = [
            (200, {"id": "year-1"}), (404, {}), (201, {"id": "app-1"}),
            (200, {"id": "year-1"}), (200, {"id": "app-1"}),
        ]
        with patch.object(drive, "_request", new=AsyncMock(side_effect=responses)) as mock_request:
            first = await drive.ensure_folder("SLIM Subsidies 2024/APP-1")
            second = await drive.ensure_folder("SLIM Subsidies 2024/APP-1")

        assert first == second == "app-1"
        assert [call.args[0] for call in mock_request.call_args_list].count("POST") == 1

    @pytest.mark.asyncio
    async def test_folder_without_id(self, drive):
        with patch.object(drive, "_request", new=AsyncMock(return_value=(200, {}))):
            with pytest.raises(StorageError):
                await drive.ensure_folder("Archief")

    @pytest.mark.asyncio
    async def test_application_folder(self, drive):
        responses = [(200, {"id": "year-1"}), (200, {"id": "app-1"})]
        with patch.object(drive, "_request", new=AsyncMock(side_effect=responses)):
            folder_id, folder_path = await drive.create_application_folder("APP-1", "ignite", 2024)

        assert (folder_id, folder_path) == ("app-1", "SLIM Subsidies Ignite 2024/APP-1")


class TestUpload:
    @pytest.mark.asyncio
    async def test_small_file_single_put(self, drive):
        item = {"id": "item-1", "name": "MKB-verklaring-signed.pdf", "webUrl": "https://drive/item-1"}
        with patch.object(drive, "_request", new=AsyncMock(return_value=(201, item))) as mock_request:
            artifact = await drive.upload("folder-1", b"%PDF-1.4", "MKB-verklaring-signed.pdf")

        method, url, operation = mock_request.call_args.args
        assert method == "PUT"
        assert url == f"{DRIVE}/items/folder-1:/MKB-verklaring-signed.pdf:/content?@microsoft.graph.conflictBehavior=replace"
        assert mock_request.call_args.kwargs["data"] == b"%PDF-1.4"
        assert artifact.item_id == "item-1"
        assert artifact.web_url == "https://drive/item-1"
        assert artifact.size_bytes == 8

    @pytest.mark.asyncio
    async def test_large_file_uses_upload_session(self, drive):
        data = b"x" * (SIMPLE_UPLOAD_LIMIT + 100)
        chunk_count = -(-len(data) // CHUNK_SIZE)
        responses = [(200, {"uploadUrl": "https://upload.example.com/session-1"})]
        responses += [(202, {"nextExpectedRanges": []})] * (chunk_count - 1)
        responses.append((201, {"id": "item-9", "name": "big.pdf"}))

        with patch.object(drive, "_request", new=AsyncMock(side_effect=responses)) as mock_request:
            artifact = await drive.upload("folder-1", data, "big.pdf")

        assert chunk_count == 13
        assert artifact.item_id == "item-9"
        session_call, *chunk_calls = mock_request.call_args_list
        assert session_call.args[1] == f"{DRIVE}/items/folder-1:/big.pdf:/createUploadSession"

        ranges = []
        for call in chunk_calls:
            assert call.args[:2] == ("PUT", "https://upload.example.com/session-1")
            assert call.kwargs["authenticated"] is False
            match = re.fullmatch(r"bytes (\d+)-(\d+)/(\d+)", call.kwargs["headers"]["Content-Range"])
            ranges.append(tuple(int(part) for part in match.groups()))
        assert ranges[0][0] == 0
        assert ranges[-1][1] == len(data) - 1
        assert all(total == len(data) for _, _, total in ranges)
        assert all(previous[1] + 1 == current[0] for previous, current in zip(ranges, ranges[1:]))

    @pytest.mark.asyncio
    async def test_upload_session_without_item(self, drive):
        data = b"x" * SIMPLE_UPLOAD_LIMIT
        responses = [(200, {"uploadUrl": "https://upload.example.com/s"})] + [(202, {})] * 13
        with patch.object(drive, "_request", new=AsyncMock(side_effect=responses)):
            with pytest.raises(StorageError):
                await drive.upload("folder-1", data, "big.pdf")

    @pytest.mark.asyncio
    async def test_failed_chunk_is_retried_in_place(self, drive):
        data = b"x" * (SIMPLE_UPLOAD_LIMIT + 1)
        responses = [(200, {"uploadUrl": "https://upload.example.com/s"})]
        responses += [StorageError("busy", status=503, retryable=True), (202, {})]
        responses += [(202, {})] * 11 + [(201, {"id": "item-9"})]
        with patch.object(drive, "_request", new=AsyncMock(side_effect=responses)) as mock_request, \
                patch("subsidy_signing.integrations.storage.graph_drive.asyncio.sleep", new=AsyncMock()) as mock_sleep:
            artifact = await drive.upload_with_retry("folder-1", data, "big.pdf")

        operations = [call.args[2] for call in mock_request.call_args_list]
        assert artifact.item_id == "item-9"
        assert operations.count("create_upload_session") == 1
        assert mock_request.call_args_list[1].kwargs["headers"] == mock_request.call_args_list[2].kwargs["headers"]
        assert [call.args[0] for call in mock_sleep.call_args_list] == [1.0]

    @pytest.mark.asyncio
    async def test_exhausted_chunk_does_not_reopen_session(self, drive):
        data = b"x" * (SIMPLE_UPLOAD_LIMIT + 1)
        responses = [(200, {"uploadUrl": "https://upload.example.com/s"})]
        responses += [StorageError("busy", status=503, retryable=True)] * 3
        with patch.object(drive, "_request", new=AsyncMock(side_effect=responses)) as mock_request, \
                patch("subsidy_signing.integrations.storage.graph_drive.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(StorageError):
                await drive.upload_with_retry("folder-1", data, "big.pdf")

        operations = [call.args[2] for call in mock_request.call_args_list]
        assert operations == ["create_upload_session"] + ["upload_chunk"] * 3


class TestRetry:
    @pytest.mark.asyncio
    async def test_backoff_between_attempts(self, drive):
        artifact = StoredArtifact(folder_id="f", file_name="a.pdf", size_bytes=1, uploaded_at=None)
        failures = [StorageError("busy", status=503, retryable=True), StorageError("busy", status=429, retryable=True)]
        with patch.object(drive, "upload", new=AsyncMock(side_effect=[*failures, artifact])) as mock_upload, \
                patch("subsidy_signing.integrations.storage.graph_drive.asyncio.sleep", new=AsyncMock()) as mock_sleep:
            result = await drive.upload_with_retry("f", b"x", "a.pdf")

        assert result is artifact
        assert mock_upload.await_count == 3
        assert [call.args[0] for call in mock_sleep.call_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_gives_up_after_last_attempt(self, drive):
        failures = [StorageError("busy", status=503, retryable=True)] * 3
        with patch.object(drive, "upload", new=AsyncMock(side_effect=failures)) as mock_upload, \
                patch("subsidy_signing.integrations.storage.graph_drive.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(StorageError):
                await drive.upload_with_retry("f", b"x", "a.pdf")

        assert mock_upload.await_count == 3

    @pytest.mark.asyncio
    async def test_client_errors_are_not_retried(self, drive):
        with patch.object(drive, "upload", new=AsyncMock(side_effect=StorageError("bad", status=400))) as mock_upload, \
                patch("subsidy_signing.integrations.storage.graph_drive.asyncio.sleep", new=AsyncMock()) as mock_sleep:
            with pytest.raises(StorageError):
                await drive.upload_with_retry("f", b"x", "a.pdf")

        assert mock_upload.await_count == 1
        mock_sleep.assert_not_called()


class TestAudit:
    @pytest.mark.asyncio
    async def test_entry_is_written_to_logs_folder(self, drive):
        responses = [(200, {"id": "logs-1"}), (201, {"id": "entry-1"})]
        with patch.object(drive, "_request", new=AsyncMock(side_effect=responses)) as mock_request:
            artifact = await drive.record_audit("folder-1", "envelope_completed", {"envelopeId": "env-1"})

        lookup, put = mock_request.call_args_list
        assert lookup.args[1] == f"{DRIVE}/items/folder-1:/logs"
        assert put.args[1].startswith(f"{DRIVE}/items/logs-1:/")
        assert put.args[1].endswith("conflictBehavior=fail")
        assert re.fullmatch(r"\d{8}T\d{12}Z-envelope_completed-[0-9a-f]{8}\.json", artifact.file_name)
        entry = json.loads(put.kwargs["data"])
        assert entry["kind"] == "envelope_completed"
        assert entry["payload"] == {"envelopeId": "env-1"}
        assert put.kwargs["headers"]["Content-Type"] == "application/json"

    @pytest.mark.asyncio
    async def test_conflict_on_generated_name_returns_stored_entry(self, drive):
        responses = [
            (200, {"id": "logs-1"}),
            StorageError("nameAlreadyExists", status=409),
            (200, {"id": "entry-1", "name": "entry.json", "webUrl": "https://drive/entry-1"}),
        ]
        with patch.object(drive, "_request", new=AsyncMock(side_effect=responses)) as mock_request:
            artifact = await drive.record_audit("folder-1", "envelope_completed", {"envelopeId": "env-1"})

        lookup = mock_request.call_args_list[-1]
        assert lookup.args[0] == "GET"
        assert lookup.args[1].startswith(f"{DRIVE}/items/logs-1:/")
        assert (artifact.item_id, artifact.folder_id) == ("entry-1", "logs-1")

    @pytest.mark.asyncio
    async def test_other_failures_still_raise(self, drive):
        responses = [(200, {"id": "logs-1"}), StorageError("Access denied", status=403)]
        with patch.object(drive, "_request", new=AsyncMock(side_effect=responses)):
            with pytest.raises(StorageError):
                await drive.record_audit("folder-1", "envelope_completed", {})
