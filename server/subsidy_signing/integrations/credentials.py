"""
Credential providers for the outbound APIs.

Each provider owns one cached access token. The cache is a plain value
object so tests can hand in pre-expired or fake tokens, and token refresh is
serialised with an ``asyncio.Lock`` so concurrent requests share a single
token request.
"""

import asyncio
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

import aiohttp
from aiohttp import ClientTimeout
from jose import jwt
from jose.exceptions import JOSEError

from subsidy_signing.core.errors import AuthError
from subsidy_signing.core.logging import get_logger

logger = get_logger(__name__)

REFRESH_MARGIN_SECONDS = 300
DOCUSIGN_JWT_LIFETIME_SECONDS = 3600
DOCUSIGN_SCOPES = "signature impersonation"
JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"
GRAPH_SCOPE = "https://graph.microsoft.com/.default"

_PEM_PATTERN = re.compile(r"-----BEGIN ([A-Z ]+)-----\s*(.+?)\s*-----END \1-----", re.DOTALL)


@dataclass(frozen=True)
class TokenCache:
    """An access token with its absolute expiry (epoch seconds)."""
    access_token: str
    expires_at: float
    account_id: Optional[str] = None
    base_uri: Optional[str] = None

    def is_valid(self, now: Optional[float] = None, margin: float = REFRESH_MARGIN_SECONDS) -> bool:
        now = time.time() if now is None else now
        return bool(self.access_token) and now < self.expires_at - margin


class CredentialProvider(ABC):
    """Hands out a cached token, fetching a new one when it is about to expire."""

    provider_name = "unknown"

    def __init__(self, cache: Optional[TokenCache] = None):
        self._cache = cache
        self._lock = asyncio.Lock()
        self._timeout = ClientTimeout(total=30, connect=10)

    @property
    def cache(self) -> Optional[TokenCache]:
        return self._cache

    async def get_token(self) -> TokenCache:
        if self._cache is not None and self._cache.is_valid():
            return self._cache
        async with self._lock:
            # another task may have refreshed while we waited
            if self._cache is not None and self._cache.is_valid():
                return self._cache
            try:
                self._cache = await self._fetch_token()
            except AuthError:
                self._cache = None
                raise
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                self._cache = None
                logger.error("auth.token_request_failed", provider=self.provider_name, error=str(e))
                raise AuthError(f"Token request failed: {e}", provider=self.provider_name) from e
            logger.info("auth.token_refreshed", provider=self.provider_name, expires_at=self._cache.expires_at)
            return self._cache

    async def get_access_token(self) -> str:
        return (await self.get_token()).access_token

    def invalidate(self) -> None:
        """Drop the cached token, e.g. after the API answered 401."""
        self._cache = None

    @abstractmethod
    async def _fetch_token(self) -> TokenCache:
        pass

    async def _raise_auth_error(self, response: aiohttp.ClientResponse, operation: str) -> None:
        raw_body = await response.text()
        logger.error(
            "auth.request_rejected",
            provider=self.provider_name,
            operation=operation,
            status=response.status,
        )
        raise AuthError(
            f"{self.provider_name} {operation} failed with status {response.status}",
            provider=self.provider_name,
            status=response.status,
            raw_body=raw_body,
        )


class StaticCredentialProvider(CredentialProvider):
    """A fixed token (API keys, tests)."""

    provider_name = "static"

    def __init__(self, access_token: str, expires_in: float = 3600, **extra: Any):
        super().__init__(TokenCache(access_token, time.time() + expires_in, **extra))
        self._access_token = access_token
        self._expires_in = expires_in
        self._extra = extra

    async def _fetch_token(self) -> TokenCache:
        return TokenCache(self._access_token, time.time() + self._expires_in, **self._extra)


def normalize_private_key(private_key: str) -> str:
    """
    Repair PEM keys mangled by environment variable stores.

    Literal ``\\n`` sequences become newlines and keys collapsed onto one line
    are re-wrapped at 64 columns between their BEGIN and END markers.
    """
    key = private_key.strip()
    if "\\n" in key:
        key = key.replace("\\n", "\n")
    if "BEGIN" in key and len(key.split("\n")) < 3:
        match = _PEM_PATTERN.search(key)
        if match:
            label = match.group(1)
            body = re.sub(r"\s+", "", match.group(2))
            lines = [body[i:i + 64] for i in range(0, len(body), 64)]
            key = f"-----BEGIN {label}-----\n" + "\n".join(lines) + f"\n-----END {label}-----"
    return key


class DocuSignJWTCredentialProvider(CredentialProvider):
    """
    DocuSign OAuth JWT grant with user impersonation.

    After the token request the userinfo endpoint is queried for the default
    account, whose id and base URI are carried on the token cache.
    """

    provider_name = "docusign"

    def __init__(
        self,
        integration_key: str,
        user_id: str,
        private_key: str,
        auth_server: str = "account-d.docusign.com",
        account_id: Optional[str] = None,
        cache: Optional[TokenCache] = None,
    ):
        super().__init__(cache)
        self.integration_key = integration_key
        self.user_id = user_id
        self.private_key = normalize_private_key(private_key)
        self.auth_server = auth_server.replace("https://", "").rstrip("/")
        self.account_id = account_id

    def build_assertion(self, now: Optional[int] = None) -> str:
        issued_at = int(time.time() if now is None else now)
        claims = {
            "iss": self.integration_key,
            "sub": self.user_id,
            "aud": self.auth_server,
            "iat": issued_at,
            "exp": issued_at + DOCUSIGN_JWT_LIFETIME_SECONDS,
            "scope": DOCUSIGN_SCOPES,
        }
        try:
            return jwt.encode(claims, self.private_key, algorithm="RS256")
        except JOSEError as e:
            raise AuthError(f"Could not sign JWT assertion: {e}", provider=self.provider_name) from e

    async def _fetch_token(self) -> TokenCache:
        assertion = self.build_assertion()
        async with aiohttp.ClientSession(timeout=self._timeout) as session:
            async with session.post(
                f"https://{self.auth_server}/oauth/token",
                data={"grant_type": JWT_BEARER_GRANT, "assertion": assertion},
            ) as response:
                if response.status != 200:
                    await self._raise_auth_error(response, "token request")
                token_data = await response.json()

            access_token = token_data["access_token"]
            async with session.get(
                f"https://{self.auth_server}/oauth/userinfo",
                headers={"Authorization": f"Bearer {access_token}"},
            ) as response:
                if response.status != 200:
                    await self._raise_auth_error(response, "userinfo request")
                user_info = await response.json()

        account = self._select_account(user_info)
        return TokenCache(
            access_token=access_token,
            expires_at=time.time() + float(token_data.get("expires_in", DOCUSIGN_JWT_LIFETIME_SECONDS)),
            account_id=account.get("account_id"),
            base_uri=account.get("base_uri"),
        )

    def _select_account(self, user_info: Dict[str, Any]) -> Dict[str, Any]:
        accounts = user_info.get("accounts") or []
        if not accounts:
            raise AuthError("DocuSign user has no accounts", provider=self.provider_name)
        if self.account_id:
            for account in accounts:
                if account.get("account_id") == self.account_id:
                    return account
        for account in accounts:
            if account.get("is_default"):
                return account
        return accounts[0]


class GraphClientCredentialProvider(CredentialProvider):
    """Microsoft identity platform client-credentials grant for Graph."""

    provider_name = "graph"

    def __init__(
        self,
        tenant_id: str,
        client_id: str,
        client_secret: str,
        cache: Optional[TokenCache] = None,
    ):
        super().__init__(cache)
        self.tenant_id = tenant_id
        self.client_id = client_id
        self.client_secret = client_secret

    @property
    def token_url(self) -> str:
        return f"https://login.microsoftonline.com/{self.tenant_id}/oauth2/v2.0/token"

    async def _fetch_token(self) -> TokenCache:
        async with aiohttp.ClientSession(timeout=self._timeout) as session:
            async with session.post(
                self.token_url,
                data={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "scope": GRAPH_SCOPE,
                    "grant_type": "client_credentials",
                },
            ) as response:
                if response.status != 200:
                    await self._raise_auth_error(response, "token request")
                token_data = await response.json()

        return TokenCache(
            access_token=token_data["access_token"],
            expires_at=time.time() + float(token_data.get("expires_in", 3600)),
        )
