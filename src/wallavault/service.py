"""Message-passing front for the popup, options page and content script.

Each request message gets exactly one response message. ``dispatch()`` is
the boundary used by callers: anything ``handle_message()`` raises comes
back as an ``ERROR_NOTIFICATION`` instead of an exception.

Changes:
  - 2026-10-14: TEST_CONNECTION re-authenticates once before reporting failure.
  - 2026-10-12: GET_CONFIG returns the record without its sensitive fields.
  - 2026-10-09: Initial service.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

import pydantic
from pydantic import BaseModel, ConfigDict, Field

from wallavault import lifecycle
from wallavault.client.session import WallabagClient, classify_failure, create_client
from wallavault.config import KeyBackend, Settings, get_settings
from wallavault.credentials import CredentialManager
from wallavault.exceptions import (
    AuthError,
    ValidationError,
    WallabagError,
    WallavaultError,
    describe_cause,
)
from wallavault.migration import MigrationEngine
from wallavault.models import CredentialRecord, PasswordGrant, RefreshGrant
from wallavault.security.crypto import EncryptedStore
from wallavault.security.keys import KeyProvider, KeyringKeyProvider, StoreKeyProvider
from wallavault.storage.file_store import FileKeyValueStore
from wallavault.storage.protocol import KeyValueStoreProtocol, StorageChange

logger = logging.getLogger(__name__)


class MessageType(str, Enum):
    SAVE_PAGE = "SAVE_PAGE"
    SAVE_PAGE_RESPONSE = "SAVE_PAGE_RESPONSE"
    GET_CONFIG = "GET_CONFIG"
    SET_CONFIG = "SET_CONFIG"
    CONFIG_RESPONSE = "CONFIG_RESPONSE"
    CHECK_AUTH = "CHECK_AUTH"
    AUTH_RESPONSE = "AUTH_RESPONSE"
    REFRESH_TOKEN = "REFRESH_TOKEN"
    TEST_CONNECTION = "TEST_CONNECTION"
    STATUS_UPDATE = "STATUS_UPDATE"
    ERROR_NOTIFICATION = "ERROR_NOTIFICATION"


class Message(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: MessageType
    payload: Any = None
    request_id: str | None = Field(default=None, alias="requestId")


class PageInfo(BaseModel):
    """Payload of ``SAVE_PAGE``."""

    url: str = Field(min_length=1)
    title: str | None = None
    tags: list[str] | None = None


_CONFIG_KEYS = {
    "server_url",
    "serverUrl",
    "client_id",
    "clientId",
    "client_secret",
    "clientSecret",
    "username",
    "password",
}


def _coerce(message: Message | dict[str, Any]) -> Message:
    if isinstance(message, Message):
        return message
    if not isinstance(message, dict):
        raise ValidationError(f"Message must be a mapping, got {type(message).__name__}")
    raw_type = message.get("type")
    try:
        MessageType(raw_type)
    except ValueError:
        raise ValueError(f"Unknown message type: {raw_type!r}") from None
    return Message.model_validate(message)


def _client_identity(record: CredentialRecord) -> tuple[str | None, ...]:
    return (record.server_url, record.client_id, record.client_secret)


class WallabagService:
    """Routes messages to the credential manager and the session client.

    Args:
        credentials: Credential manager for the stored record.
        migration: Migration engine run once by ``initialize()``.
        settings: Settings used when building the session client.
        client_factory: Builds a ``WallabagClient``; defaults to
            ``create_client``.
    """

    def __init__(
        self,
        credentials: CredentialManager,
        migration: MigrationEngine,
        settings: Settings | None = None,
        *,
        client_factory: Callable[..., Awaitable[WallabagClient]] | None = None,
        **client_kwargs: Any,
    ):
        self.credentials = credentials
        self.migration = migration
        self.settings = settings or get_settings()
        self._client_factory = client_factory or create_client
        self._client_kwargs = client_kwargs
        self._client: WallabagClient | None = None
        self._client_identity: tuple[str | None, ...] | None = None
        self._unsubscribe: Callable[[], None] | None = None
        self._initialized = False

        self._handlers: dict[MessageType, Callable[[Message], Awaitable[Message]]] = {
            MessageType.SAVE_PAGE: self._handle_save_page,
            MessageType.GET_CONFIG: self._handle_get_config,
            MessageType.SET_CONFIG: self._handle_set_config,
            MessageType.CHECK_AUTH: self._handle_check_auth,
            MessageType.TEST_CONNECTION: self._handle_test_connection,
            MessageType.REFRESH_TOKEN: self._handle_refresh_token,
        }

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def initialize(self) -> None:
        """Run the startup migration gate and start watching the record."""
        if self._initialized:
            return
        await self.migration.auto_migrate()
        self._unsubscribe = self.credentials.on_change(self._on_credentials_changed)
        self._initialized = True
        logger.info("Wallabag service initialized")

    async def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        await self._drop_client()
        self._initialized = False

    async def _on_credentials_changed(self, change: StorageChange) -> None:
        # Token writes happen mid-request; only a new server or client identity
        # invalidates the open client.
        if self._client is None:
            return
        record = await self.credentials.get_config()
        if _client_identity(record) == self._client_identity:
            return
        logger.debug("Server URL or client identity changed; dropping session client")
        await self._drop_client()

    async def _drop_client(self) -> None:
        client, self._client = self._client, None
        self._client_identity = None
        if client is not None:
            await client.aclose()

    async def _get_client(self) -> WallabagClient:
        if self._client is None:
            identity = _client_identity(await self.credentials.get_config())
            self._client = await self._client_factory(
                self.credentials, self.settings, **self._client_kwargs
            )
            self._client_identity = identity
        return self._client

    # =========================================================================
    # Dispatch
    # =========================================================================

    async def handle_message(self, message: Message | dict[str, Any]) -> Message:
        """Route *message* to its handler.

        Raises:
            ValidationError: the payload does not fit the message type.
            ValueError: unknown or response-only message type.
        """
        msg = _coerce(message)
        handler = self._handlers.get(msg.type)
        if handler is None:
            raise ValueError(f"{msg.type.value} is not a request message")
        logger.debug("Handling %s", msg.type.value)
        response = await handler(msg)
        response.request_id = msg.request_id
        return response

    async def dispatch(self, message: Message | dict[str, Any]) -> Message:
        """Like ``handle_message()`` but failures become ``ERROR_NOTIFICATION``."""
        try:
            return await self.handle_message(message)
        except Exception as e:
            logger.error("Message handling failed: %s", e)
            request_id = None
            if isinstance(message, Message):
                request_id = message.request_id
            elif isinstance(message, dict):
                request_id = message.get("requestId") or message.get("request_id")
            return Message(
                type=MessageType.ERROR_NOTIFICATION,
                payload={"error": str(e), "type": getattr(e, "error_type", "unknown_error")},
                request_id=request_id,
            )

    # =========================================================================
    # Handlers
    # =========================================================================

    async def _handle_save_page(self, msg: Message) -> Message:
        try:
            page = PageInfo.model_validate(msg.payload)
        except pydantic.ValidationError as e:
            raise ValidationError(
                "Invalid payload for SAVE_PAGE",
                errors=[err["msg"] for err in e.errors()],
            ) from e

        def response(payload: dict[str, Any]) -> Message:
            return Message(type=MessageType.SAVE_PAGE_RESPONSE, payload=payload)

        if not await self.credentials.is_configured():
            return response(
                {
                    "success": False,
                    "message": "wallavault is not configured; run 'wallavault configure'",
                    "error": "not_configured",
                }
            )

        try:
            client = await self._get_client()
            entry = await client.save_page(page.url, page.title, page.tags)
        except WallavaultError as e:
            logger.warning("Saving %s failed: %s", page.url, e)
            return response(
                {"success": False, "message": describe_cause(e), "error": e.error_type}
            )
        return response({"success": True, "message": "Page saved", "entry_id": entry.id})

    async def _handle_get_config(self, msg: Message) -> Message:
        exported = await self.credentials.export_config()
        return Message(type=MessageType.CONFIG_RESPONSE, payload=exported.to_dict())

    async def _handle_set_config(self, msg: Message) -> Message:
        payload = msg.payload
        if not isinstance(payload, dict) or not set(payload) <= _CONFIG_KEYS:
            raise ValidationError("Invalid payload for SET_CONFIG")
        try:
            await self.credentials.update_config(CredentialRecord.from_dict(payload))
        except WallavaultError as e:
            return Message(
                type=MessageType.CONFIG_RESPONSE,
                payload={"success": False, "error": str(e)},
            )
        return Message(type=MessageType.CONFIG_RESPONSE, payload={"success": True})

    async def _handle_check_auth(self, msg: Message) -> Message:
        try:
            configured = await self.credentials.is_configured()
            has_credentials = await self.credentials.has_auth_credentials()
            token_valid = await self.credentials.is_token_valid()
        except WallavaultError as e:
            return Message(
                type=MessageType.AUTH_RESPONSE,
                payload={
                    "is_configured": False,
                    "has_credentials": False,
                    "is_token_valid": False,
                    "is_authenticated": False,
                    "error": str(e),
                },
            )
        return Message(
            type=MessageType.AUTH_RESPONSE,
            payload={
                "is_configured": configured,
                "has_credentials": has_credentials,
                "is_token_valid": token_valid,
                "is_authenticated": configured and has_credentials and token_valid,
            },
        )

    async def _handle_test_connection(self, msg: Message) -> Message:
        def response(**payload: Any) -> Message:
            payload.setdefault("connection_tested", True)
            return Message(type=MessageType.AUTH_RESPONSE, payload=payload)

        try:
            client = await self._get_client()
            await client.get_entries(per_page=1)
            return response(is_authenticated=True, is_token_valid=True, reconnected=False)
        except WallavaultError as first:
            logger.warning("Connection test failed (%s); re-authenticating", first)

        record = await self.credentials.get_config()
        if not (
            record.server_url
            and record.client_id
            and record.client_secret
            and record.username
            and record.password
        ):
            return response(
                is_authenticated=False,
                is_token_valid=False,
                is_configured=False,
                has_credentials=await self.credentials.has_auth_credentials(),
                reason="missing_credentials",
                error="Credentials are incomplete; cannot re-authenticate",
            )

        try:
            client = await self._get_client()
            await client.authenticate(
                PasswordGrant(
                    client_id=record.client_id,
                    client_secret=record.client_secret,
                    username=record.username,
                    password=record.password,
                )
            )
            await client.get_entries(per_page=1)
        except WallavaultError as e:
            logger.error("Reconnect failed: %s", e)
            reason = classify_failure(e) if isinstance(e, WallabagError) else e.error_type
            return response(
                is_authenticated=False,
                is_token_valid=False,
                is_configured=await self.credentials.is_configured(),
                has_credentials=await self.credentials.has_auth_credentials(),
                reason=reason,
                error=describe_cause(e),
            )
        logger.info("Reconnected to wallabag")
        return response(is_authenticated=True, is_token_valid=True, reconnected=True)

    async def _handle_refresh_token(self, msg: Message) -> Message:
        record = await self.credentials.get_config()
        try:
            if not (record.refresh_token and record.client_id and record.client_secret):
                raise AuthError("Refresh token or client credentials are missing")
            client = await self._get_client()
            await client.refresh_token(
                RefreshGrant(
                    refresh_token=record.refresh_token,
                    client_id=record.client_id,
                    client_secret=record.client_secret,
                )
            )
        except WallavaultError as e:
            return Message(
                type=MessageType.AUTH_RESPONSE,
                payload={"success": False, "error": str(e), "type": e.error_type},
            )
        return Message(type=MessageType.AUTH_RESPONSE, payload={"success": True})


def build_key_provider(settings: Settings, store: KeyValueStoreProtocol) -> KeyProvider:
    if settings.key_backend is KeyBackend.KEYRING:
        return KeyringKeyProvider(service=settings.keyring_service)
    return StoreKeyProvider(store, namespace=settings.key_namespace)


def create_service(
    settings: Settings | None = None,
    *,
    store: KeyValueStoreProtocol | None = None,
    **client_kwargs: Any,
) -> WallabagService:
    """Wire store, crypto, credential manager and migration engine together."""
    settings = settings or get_settings()
    store = store or FileKeyValueStore(settings.config_dir, area=settings.storage_area)
    crypto = EncryptedStore(build_key_provider(settings, store))
    lifecycle.register("key_cache", reset=crypto.clear_key_cache)

    credentials = CredentialManager(
        store,
        crypto,
        transport_policy=settings.transport_policy,
        namespace=settings.key_namespace,
    )
    migration = MigrationEngine(store, crypto, credentials, namespace=settings.key_namespace)
    service = WallabagService(credentials, migration, settings, **client_kwargs)
    lifecycle.register("service", shutdown=service.close)
    return service
