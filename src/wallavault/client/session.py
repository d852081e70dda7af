"""Authenticated session against a wallabag server.

Every REST call first obtains a valid access token::

    NeedToken -> TokenValid             (cached token outside the expiry margin)
              -> NeedRefresh -> ok      (refresh grant)
                             -> NeedAuth (refresh rejected; tokens cleared)
              -> NeedAuth -> ok | AuthError (password grant)

Concurrent callers share one in-flight renewal so a burst of requests with
an expired token produces a single token request.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

import httpx
import pydantic

from wallavault import lifecycle
from wallavault.client.http import HttpExecutor, RetryPolicy
from wallavault.config import Settings, get_settings
from wallavault.credentials import CredentialManager
from wallavault.exceptions import (
    ApiError,
    ApiFormatError,
    AuthError,
    HttpStatusError,
    InvalidServerUrlError,
    PersistenceError,
    TransportError,
    ValidationError,
    WallabagError,
    describe_cause,
)
from wallavault.models import (
    AuthResponse,
    CreateEntryRequest,
    CredentialRecord,
    EntriesPage,
    Entry,
    PasswordGrant,
    RefreshGrant,
)

logger = logging.getLogger(__name__)

TOKEN_PATH = "/oauth/v2/token"
ENTRIES_PATH = "/api/entries.json"


def _flag(value: bool | None) -> int | None:
    # wallabag reads boolean parameters as 1 / 0
    return None if value is None else int(value)


def _join_tags(tags: str | Iterable[str] | None) -> str | None:
    if tags is None or isinstance(tags, str):
        return tags or None
    joined = ",".join(t.strip() for t in tags if t and t.strip())
    return joined or None


def _retrieve_renewal_error(task: asyncio.Task) -> None:
    # Every waiter may have been cancelled before a failed renewal finished
    if not task.cancelled() and task.exception() is not None:
        logger.debug("Token renewal failed: %s", task.exception())


@dataclass
class ConnectionReport:
    """Outcome of ``test_connection()``.

    ``reason`` is one of ``ok``, ``missing_credentials``,
    ``invalid_credentials``, ``unreachable``, ``invalid_url`` or
    ``server_error``.
    """

    ok: bool
    reason: str
    message: str = ""
    reconnected: bool = False

    def __bool__(self) -> bool:
        return self.ok


def classify_failure(exc: BaseException) -> str:
    """Map a failed call to an actionable ``ConnectionReport`` reason.

    The innermost recognisable error in the cause chain wins, so an
    ``AuthError`` caused by a refused connection reports ``unreachable``.
    """
    chain: list[BaseException] = []
    current: BaseException | None = exc
    while current is not None and current not in chain:
        chain.append(current)
        current = current.__cause__

    for err in reversed(chain):
        if isinstance(err, (InvalidServerUrlError, ApiFormatError)):
            return "invalid_url"
        if isinstance(err, TransportError):
            return "unreachable"
        if isinstance(err, HttpStatusError):
            if err.status >= 500 or err.status == 429:
                return "server_error"
            if err.status == 404:
                return "invalid_url"
            return "invalid_credentials"
        if isinstance(err, AuthError):
            return "invalid_credentials"
    return "server_error"


class WallabagClient:
    """OAuth2 session and entry API for one wallabag server.

    Args:
        base_url: Server root, e.g. ``https://app.wallabag.it``.
        credentials: Credential manager holding identity and tokens.
        timeout: Per-request timeout in seconds.
        retry_policy: Backoff for transient failures.
        user_agent: Sent with every request.
        http_client: Shared client to use; the caller keeps ownership.
        transport: Transport for a client created here (tests pass
            ``httpx.MockTransport``).
    """

    def __init__(
        self,
        base_url: str,
        credentials: CredentialManager,
        *,
        timeout: float = 30.0,
        retry_policy: RetryPolicy | None = None,
        user_agent: str = "wallavault",
        http_client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url[:-1] if base_url.endswith("/") else base_url
        self.credentials = credentials
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(transport=transport, timeout=timeout)
        self._executor = HttpExecutor(
            self._http,
            timeout=timeout,
            policy=retry_policy,
            user_agent=user_agent,
        )
        self._renewal: asyncio.Task[str] | None = None
        self._lifecycle_name: str | None = None

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    async def aclose(self) -> None:
        if self._lifecycle_name is not None:
            lifecycle.unregister(self._lifecycle_name)
            self._lifecycle_name = None
        if self._renewal is not None and not self._renewal.done():
            self._renewal.cancel()
        if self._owns_client:
            await self._http.aclose()

    async def __aenter__(self) -> WallabagClient:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    # =========================================================================
    # OAuth2
    # =========================================================================

    async def _token_request(self, grant: PasswordGrant | RefreshGrant) -> AuthResponse:
        payload = await self._executor.request_json(
            "POST", self._url(TOKEN_PATH), data=grant.model_dump()
        )
        try:
            return AuthResponse.model_validate(payload)
        except pydantic.ValidationError as e:
            raise ApiFormatError(f"Unexpected token response: {e.error_count()} errors") from e

    async def authenticate(self, grant: PasswordGrant) -> AuthResponse:
        """Run the password grant and persist the resulting tokens.

        Raises:
            AuthError: any failure, with the original error as the cause.
        """
        try:
            response = await self._token_request(grant)
        except WallabagError as e:
            raise AuthError(
                f"Authentication failed: {describe_cause(e)}",
                status=getattr(e, "status", None),
            ) from e

        await self.credentials.save_tokens(
            response.access_token, response.expires_in, response.refresh_token
        )
        logger.info("Authenticated against %s", self.base_url)
        return response

    async def refresh_token(self, grant: RefreshGrant) -> AuthResponse:
        """Exchange the refresh token for a new access token.

        On failure the stored tokens are cleared before ``AuthError`` is
        raised, so the next call goes straight to the password grant.
        """
        try:
            response = await self._token_request(grant)
        except WallabagError as e:
            try:
                await self.credentials.clear_tokens()
            except PersistenceError:
                logger.warning("Could not clear rejected tokens", exc_info=True)
            raise AuthError(
                f"Token refresh failed: {describe_cause(e)}",
                status=getattr(e, "status", None),
            ) from e

        await self.credentials.save_tokens(
            response.access_token, response.expires_in, response.refresh_token
        )
        logger.debug("Access token refreshed")
        return response

    async def get_valid_access_token(self) -> str:
        """Return a usable access token, refreshing or re-authenticating as needed.

        Raises:
            AuthError: no token can be obtained.
        """
        record = await self.credentials.get_config()
        if self.credentials.token_valid_in(record) and record.access_token:
            return record.access_token

        if self._renewal is None or self._renewal.done():
            self._renewal = asyncio.create_task(self._renew_token())
            self._renewal.add_done_callback(_retrieve_renewal_error)
        # shield: one caller being cancelled must not cancel the shared renewal
        return await asyncio.shield(self._renewal)

    async def _renew_token(self) -> str:
        record = await self.credentials.get_config()

        if record.refresh_token and record.client_id and record.client_secret:
            try:
                response = await self.refresh_token(
                    RefreshGrant(
                        refresh_token=record.refresh_token,
                        client_id=record.client_id,
                        client_secret=record.client_secret,
                    )
                )
                return response.access_token
            except AuthError as e:
                logger.info("Refresh rejected (%s); falling back to password grant", e)

        if (
            record.client_id
            and record.client_secret
            and record.username
            and record.password
        ):
            response = await self.authenticate(
                PasswordGrant(
                    client_id=record.client_id,
                    client_secret=record.client_secret,
                    username=record.username,
                    password=record.password,
                )
            )
            return response.access_token

        raise AuthError("No valid token and no stored credentials to obtain one")

    # =========================================================================
    # Entries API
    # =========================================================================

    async def _authorized_json(self, method: str, path: str, **kwargs: Any) -> Any:
        token = await self.get_valid_access_token()
        try:
            return await self._executor.request_json(
                method,
                self._url(path),
                headers={"Authorization": f"Bearer {token}"},
                **kwargs,
            )
        except HttpStatusError as e:
            if e.status == 401:
                # Force a renewal on the next call
                await self.credentials.update_config(CredentialRecord(token_expires_at=0))
                raise AuthError(f"Access token rejected: {e}", status=401) from e
            raise ApiError(str(e), status=e.status) from e
        except WallabagError as e:
            raise ApiError(str(e), error_type=e.error_type) from e

    async def create_entry(self, request: CreateEntryRequest) -> Entry:
        body = request.model_dump(exclude_none=True)
        for name in ("starred", "archive"):
            if name in body:
                body[name] = _flag(body[name])
        data = await self._authorized_json("POST", ENTRIES_PATH, json=body)
        return self._parse(Entry, data)

    async def get_entries(
        self,
        archive: bool | None = None,
        starred: bool | None = None,
        page: int = 1,
        per_page: int = 30,
        tags: str | Iterable[str] | None = None,
    ) -> EntriesPage:
        params: dict[str, Any] = {"page": page, "perPage": per_page}
        if archive is not None:
            params["archive"] = _flag(archive)
        if starred is not None:
            params["starred"] = _flag(starred)
        joined = _join_tags(tags)
        if joined:
            params["tags"] = joined
        data = await self._authorized_json("GET", ENTRIES_PATH, params=params)
        return self._parse(EntriesPage, data)

    async def get_entry(self, entry_id: int) -> Entry:
        data = await self._authorized_json("GET", f"/api/entries/{int(entry_id)}.json")
        return self._parse(Entry, data)

    async def save_page(
        self,
        url: str,
        title: str | None = None,
        tags: str | Iterable[str] | None = None,
    ) -> Entry:
        entry = await self.create_entry(
            CreateEntryRequest(url=url, title=title or None, tags=_join_tags(tags))
        )
        logger.info("Saved %s as entry %s", url, entry.id)
        return entry

    @staticmethod
    def _parse(model: type[pydantic.BaseModel], data: Any) -> Any:
        try:
            return model.model_validate(data)
        except pydantic.ValidationError as e:
            raise ApiError(
                f"Unexpected {model.__name__} payload from server", error_type="api_error"
            ) from e

    # =========================================================================
    # Diagnostics
    # =========================================================================

    async def test_connection(self) -> ConnectionReport:
        """Authenticate with the stored credentials and read one entry page."""
        record = await self.credentials.get_config()
        if not (
            record.client_id
            and record.client_secret
            and record.username
            and record.password
        ):
            return ConnectionReport(
                ok=False,
                reason="missing_credentials",
                message="Client ID, client secret, username and password must all be set",
            )

        try:
            await self.authenticate(
                PasswordGrant(
                    client_id=record.client_id,
                    client_secret=record.client_secret,
                    username=record.username,
                    password=record.password,
                )
            )
            await self.get_entries(per_page=1)
        except WallabagError as e:
            reason = classify_failure(e)
            logger.info("Connection test against %s failed: %s", self.base_url, reason)
            return ConnectionReport(ok=False, reason=reason, message=describe_cause(e))

        return ConnectionReport(ok=True, reason="ok", message=f"Connected to {self.base_url}")


async def create_client(
    credentials: CredentialManager,
    settings: Settings | None = None,
    **kwargs: Any,
) -> WallabagClient:
    """Build a client for the stored server URL.

    Raises:
        ValidationError: no server URL is configured.
    """
    settings = settings or get_settings()
    record = await credentials.get_config()
    if not record.server_url:
        raise ValidationError("Server URL is not configured", errors=["Server URL is required"])

    client = WallabagClient(
        record.server_url,
        credentials,
        timeout=settings.request_timeout,
        retry_policy=RetryPolicy(
            max_attempts=settings.max_attempts,
            base_delay=settings.backoff_base,
            jitter=settings.backoff_jitter,
        ),
        user_agent=settings.user_agent,
        **kwargs,
    )
    client._lifecycle_name = f"http_client-{id(client)}"
    lifecycle.register(client._lifecycle_name, shutdown=client.aclose)
    return client
