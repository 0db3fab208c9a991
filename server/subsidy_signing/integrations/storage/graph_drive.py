"""
Microsoft Graph drive storage.

Stores signed documents and application files in a OneDrive or SharePoint
document library. Folders are resolved by path and created idempotently,
uploads switch from a single PUT to a chunked upload session at 4 MB, and
failed uploads are retried with exponential backoff. Folder resolution is
never retried: a failure there is a configuration or permission problem.
"""

import asyncio
import json
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple
from urllib.parse import quote

import aiohttp
from aiohttp import ClientTimeout

from subsidy_signing.core.errors import AuthError, StorageError
from subsidy_signing.core.logging import get_logger
from subsidy_signing.core.tenants import TenantRegistry
from subsidy_signing.integrations.credentials import CredentialProvider

logger = get_logger(__name__)

GRAPH_API_BASE_URL = "https://graph.microsoft.com/v1.0"
SIMPLE_UPLOAD_LIMIT = 4 * 1024 * 1024
CHUNK_SIZE = 320 * 1024
LOGS_FOLDER = "logs"
CONFLICT_KEY = "@microsoft.graph.conflictBehavior"

_UNSAFE_NAME_CHARS = re.compile(r'[<>:"/\\|?*]')


def sanitize_name(name: str) -> str:
    """Replace characters OneDrive does not allow in item names."""
    return _UNSAFE_NAME_CHARS.sub("_", name)


@dataclass
class StoredArtifact:
    folder_id: str
    file_name: str
    size_bytes: int
    uploaded_at: datetime
    item_id: Optional[str] = None
    web_url: Optional[str] = None


class GraphDriveService:
    """Folder and upload operations against one Graph drive."""

    def __init__(
        self,
        credentials: CredentialProvider,
        site_id: Optional[str] = None,
        user_id: Optional[str] = None,
        root_folder: str = "SLIM Subsidies",
        tenants: Optional[TenantRegistry] = None,
        retry_attempts: int = 3,
        retry_base_delay_seconds: float = 1.0,
        retry_multiplier: float = 2.0,
        graph_url: str = GRAPH_API_BASE_URL,
    ):
        self.credentials = credentials
        self.site_id = site_id
        self.user_id = user_id
        self.root_folder = root_folder
        self.tenants = tenants
        self.retry_attempts = max(1, retry_attempts)
        self.retry_base_delay_seconds = retry_base_delay_seconds
        self.retry_multiplier = retry_multiplier
        self.graph_url = graph_url.rstrip("/")

        self._session: Optional[aiohttp.ClientSession] = None
        self._timeout = ClientTimeout(total=120, connect=10)

    @property
    def session(self) -> aiohttp.ClientSession:
        """Get or create the HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    @property
    def base_path(self) -> str:
        if self.site_id:
            return f"/sites/{self.site_id}/drive"
        if self.user_id:
            return f"/users/{self.user_id}/drive"
        raise StorageError("Either graph_site_id or graph_user_id must be configured for app-only access")

    async def _headers(self) -> Dict[str, str]:
        token = await self.credentials.get_access_token()
        return {"Authorization": f"Bearer {token}"}

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        json_body: Optional[Dict[str, Any]] = None,
        data: Optional[bytes] = None,
        headers: Optional[Dict[str, str]] = None,
        authenticated: bool = True,
        allowed: Tuple[int, ...] = (),
    ) -> Tuple[int, Dict[str, Any]]:
        """
        Send one Graph request and return ``(status, json_body)``.

        Statuses listed in ``allowed`` are returned to the caller instead of
        raising, so folder resolution can branch on 404 and 409.
        """
        url = path if path.startswith("https://") else f"{self.graph_url}{path}"
        request_headers = await self._headers() if authenticated else {}
        request_headers.update(headers or {})
        try:
            async with self.session.request(method, url, json=json_body, data=data, headers=request_headers) as response:
                status = response.status
                if 200 <= status < 300 or status in allowed:
                    if status == 204:
                        return status, {}
                    try:
                        return status, await response.json()
                    except (aiohttp.ContentTypeError, json.JSONDecodeError):
                        return status, {}
                raw_body = await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("storage.transport_error", operation=operation, error=str(e))
            raise StorageError(f"Graph request failed in {operation}: {e}", path=path, retryable=True) from e

        logger.error("storage.request_failed", operation=operation, status=status, path=path)
        if status == 401 and authenticated:
            self.credentials.invalidate()
            raise AuthError(f"Graph rejected credentials in {operation}", provider="graph", status=status, raw_body=raw_body)
        raise StorageError(
            f"Graph {operation} failed with status {status}: {self._format_error(raw_body)}",
            status=status,
            path=path,
            raw_body=raw_body,
            retryable=status == 429 or status >= 500,
        )

    @staticmethod
    def _format_error(raw_body: str) -> str:
        try:
            error = json.loads(raw_body).get("error")
        except (json.JSONDecodeError, AttributeError):
            return raw_body[:200]
        if isinstance(error, dict) and error.get("code"):
            return f"{error['code']}: {error.get('message', '')}"
        return raw_body[:200]

    def build_application_path(
        self,
        application_id: str,
        tenant_id: Optional[str] = None,
        year: Optional[int] = None,
    ) -> str:
        """``<Root> <Year>/<SanitizedApplicationId>`` with the tenant's root folder."""
        root = self.tenants.root_folder(tenant_id) if self.tenants is not None else self.root_folder
        year = year or datetime.now(timezone.utc).year
        return f"{sanitize_name(root)} {year}/{sanitize_name(application_id)}"

    async def ensure_folder(self, path: str) -> str:
        """
        Resolve ``path`` segment by segment, creating missing folders.

        Creation uses ``conflictBehavior=fail``; a 409 means another request
        created the folder first and the path is looked up again. Calling this
        twice with the same path yields the same folder id.
        """
        segments = [segment for segment in path.split("/") if segment]
        if not segments:
            raise StorageError("Folder path is empty", path=path)

        parent_id = "root"
        current_path = ""
        for segment in segments:
            current_path = f"{current_path}/{segment}" if current_path else segment
            parent_id = await self._ensure_child_folder(parent_id, segment, f"{self.base_path}/root:/{quote(current_path)}")

        logger.info("storage.folder_resolved", path=path, folder_id=parent_id)
        return parent_id

    @staticmethod
    def _item_id(item: Dict[str, Any], path: str) -> str:
        item_id = item.get("id")
        if not item_id:
            raise StorageError("Graph response has no item id", path=path)
        return item_id

    async def _ensure_child_folder(self, parent_id: str, name: str, lookup_path: str) -> str:
        status, item = await self._request("GET", lookup_path, "get_folder", allowed=(404,))
        if status != 404:
            return self._item_id(item, lookup_path)

        status, item = await self._request(
            "POST",
            f"{self.base_path}/items/{parent_id}/children",
            "create_folder",
            json_body={"name": name, "folder": {}, CONFLICT_KEY: "fail"},
            allowed=(409,),
        )
        if status != 409:
            folder_id = self._item_id(item, lookup_path)
            logger.info("storage.folder_created", name=name, folder_id=folder_id)
            return folder_id

        _, item = await self._request("GET", lookup_path, "get_folder")
        return self._item_id(item, lookup_path)

    async def create_application_folder(
        self,
        application_id: str,
        tenant_id: Optional[str] = None,
        year: Optional[int] = None,
    ) -> Tuple[str, str]:
        """Create (or find) the application folder. Returns ``(folder_id, folder_path)``."""
        folder_path = self.build_application_path(application_id, tenant_id, year)
        folder_id = await self.ensure_folder(folder_path)
        return folder_id, folder_path

    async def get_item(self, item_id: str) -> Dict[str, Any]:
        _, item = await self._request("GET", f"{self.base_path}/items/{item_id}", "get_item")
        return item

    async def rename_folder(self, folder_id: str, new_name: str) -> None:
        await self._request(
            "PATCH",
            f"{self.base_path}/items/{folder_id}",
            "rename_folder",
            json_body={"name": sanitize_name(new_name)},
        )
        logger.info("storage.folder_renamed", folder_id=folder_id, name=new_name)

    async def upload(
        self,
        folder_id: str,
        data: bytes,
        file_name: str,
        content_type: str = "application/pdf",
        conflict_behavior: str = "replace",
    ) -> StoredArtifact:
        """
        Upload ``data`` as ``file_name`` into ``folder_id``.

        Files below 4 MB are sent with a single PUT; larger files go through
        an upload session in 320 KiB chunks. Only session chunks are retried
        here.
        """
        name = sanitize_name(file_name)
        if len(data) < SIMPLE_UPLOAD_LIMIT:
            _, item = await self._request(
                "PUT",
                f"{self.base_path}/items/{folder_id}:/{quote(name)}:/content?{CONFLICT_KEY}={conflict_behavior}",
                "simple_upload",
                data=data,
                headers={"Content-Type": content_type},
            )
        else:
            item = await self._chunked_upload(folder_id, data, name, conflict_behavior)

        logger.info("storage.uploaded", folder_id=folder_id, file_name=name, size_bytes=len(data))
        return StoredArtifact(
            folder_id=folder_id,
            file_name=item.get("name", name),
            size_bytes=len(data),
            uploaded_at=datetime.now(timezone.utc),
            item_id=item.get("id"),
            web_url=item.get("webUrl"),
        )

    async def _chunked_upload(self, folder_id: str, data: bytes, name: str, conflict_behavior: str) -> Dict[str, Any]:
        _, upload_session = await self._request(
            "POST",
            f"{self.base_path}/items/{folder_id}:/{quote(name)}:/createUploadSession",
            "create_upload_session",
            json_body={"item": {CONFLICT_KEY: conflict_behavior, "name": name}},
        )
        upload_url = upload_session["uploadUrl"]
        total = len(data)
        offset = 0
        item: Dict[str, Any] = {}
        while offset < total:
            chunk = data[offset:offset + CHUNK_SIZE]
            end = offset + len(chunk) - 1
            item = await self._with_retry(
                self._upload_chunk, upload_url, chunk, offset, end, total, operation="upload_chunk"
            )
            offset = end + 1
        if not item.get("id"):
            raise StorageError("Upload session finished without returning the item", path=name)
        return item

    async def _upload_chunk(self, upload_url: str, chunk: bytes, start: int, end: int, total: int) -> Dict[str, Any]:
        # upload URLs are pre-authorised and reject a bearer token
        _, body = await self._request(
            "PUT",
            upload_url,
            "upload_chunk",
            data=chunk,
            headers={"Content-Length": str(len(chunk)), "Content-Range": f"bytes {start}-{end}/{total}"},
            authenticated=False,
        )
        return body

    async def upload_with_retry(
        self,
        folder_id: str,
        data: bytes,
        file_name: str,
        content_type: str = "application/pdf",
        conflict_behavior: str = "replace",
    ) -> StoredArtifact:
        """
        Upload with backoff on transient failures.

        Only the single-PUT path is retried as a whole; upload sessions retry
        each chunk and are never reopened from the first byte.
        """
        if len(data) >= SIMPLE_UPLOAD_LIMIT:
            return await self.upload(folder_id, data, file_name, content_type, conflict_behavior)
        return await self._with_retry(
            self.upload, folder_id, data, file_name, content_type, conflict_behavior, operation="upload"
        )

    async def replace_file(self, folder_id: str, file_name: str, data: bytes, content_type: str = "application/pdf") -> StoredArtifact:
        """Overwrite ``file_name`` in place, creating it when absent."""
        return await self.upload_with_retry(folder_id, data, file_name, content_type, conflict_behavior="replace")

    async def _with_retry(self, func, *args, operation: str):
        for attempt in range(1, self.retry_attempts + 1):
            try:
                return await func(*args)
            except StorageError as e:
                if not e.retryable or attempt == self.retry_attempts:
                    raise
                delay = self.retry_base_delay_seconds * (self.retry_multiplier ** (attempt - 1))
                logger.warning(
                    "storage.retrying",
                    operation=operation,
                    attempt=attempt,
                    delay_seconds=delay,
                    error=e.error_message,
                )
                await asyncio.sleep(delay)

    async def record_audit(self, folder_id: str, kind: str, payload: Dict[str, Any]) -> StoredArtifact:
        """
        Append an audit entry as a JSON file under ``logs/``.

        Names are unique (timestamp plus random suffix) and written with
        ``conflictBehavior=fail``, so existing entries are never overwritten.
        A 409 on that generated name can only come from an earlier attempt of
        this same write, so the stored item is returned.
        """
        logs_id = await self._ensure_child_folder(
            folder_id, LOGS_FOLDER, f"{self.base_path}/items/{folder_id}:/{LOGS_FOLDER}"
        )
        now = datetime.now(timezone.utc)
        file_name = f"{now.strftime('%Y%m%dT%H%M%S%fZ')}-{sanitize_name(kind)}-{uuid.uuid4().hex[:8]}.json"
        entry = {"kind": kind, "recorded_at": now.isoformat(), "payload": payload}
        body = json.dumps(entry, indent=2, default=str, ensure_ascii=False).encode("utf-8")
        try:
            return await self.upload_with_retry(
                logs_id, body, file_name, content_type="application/json", conflict_behavior="fail"
            )
        except StorageError as e:
            if e.status != 409:
                raise
        logger.info("storage.audit_already_written", folder_id=logs_id, file_name=file_name)
        _, item = await self._request(
            "GET", f"{self.base_path}/items/{logs_id}:/{quote(file_name)}", "get_audit_entry"
        )
        return StoredArtifact(
            folder_id=logs_id,
            file_name=item.get("name", file_name),
            size_bytes=len(body),
            uploaded_at=now,
            item_id=item.get("id"),
            web_url=item.get("webUrl"),
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()
