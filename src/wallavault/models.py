# Data models: credential record, migration marker, wallabag wire schemas.
# Created: 2026-10-02
#
# Durable records are dataclasses (stored as plain dicts); wire payloads
# exchanged with the wallabag server are pydantic models.

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

SENSITIVE_FIELDS: tuple[str, ...] = (
    "client_secret",
    "password",
    "access_token",
    "refresh_token",
)

REQUIRED_FIELDS: tuple[str, ...] = (
    "server_url",
    "client_id",
    "client_secret",
    "username",
    "password",
)

TOKEN_FIELDS: tuple[str, ...] = ("access_token", "refresh_token", "token_expires_at")

# Keys written by the browser-extension export
_CAMEL_ALIASES = {
    "serverUrl": "server_url",
    "clientId": "client_id",
    "clientSecret": "client_secret",
    "accessToken": "access_token",
    "refreshToken": "refresh_token",
    "tokenExpiresAt": "token_expires_at",
}


def now_iso() -> str:
    return datetime.now(tz=UTC).isoformat()


@dataclass
class CredentialRecord:
    """Server identity, resource-owner credentials and OAuth2 session.

    All fields are optional so the same type serves as a partial record.
    """

    server_url: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    username: str | None = None
    password: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    token_expires_at: int | None = None  # Unix seconds

    def to_dict(self) -> dict[str, Any]:
        """Serialize, omitting unset fields."""
        return {k: v for k, v in asdict(self).items() if v is not None}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> CredentialRecord:
        if not data:
            return cls()
        known = {f.name for f in fields(cls)}
        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            name = _CAMEL_ALIASES.get(key, key)
            if name in known:
                kwargs[name] = value
        return cls(**kwargs)

    def merged(self, updates: CredentialRecord) -> CredentialRecord:
        """Return a copy with every set field of *updates* applied."""
        data = self.to_dict()
        data.update(updates.to_dict())
        return CredentialRecord.from_dict(data)

    def without_tokens(self) -> CredentialRecord:
        data = self.to_dict()
        for name in TOKEN_FIELDS:
            data.pop(name, None)
        return CredentialRecord.from_dict(data)

    def without_secrets(self) -> CredentialRecord:
        data = self.to_dict()
        for name in SENSITIVE_FIELDS:
            data.pop(name, None)
        return CredentialRecord.from_dict(data)

    def is_empty(self) -> bool:
        return not self.to_dict()

    def masked(self) -> dict[str, Any]:
        """Loggable view with secrets obscured."""
        data = self.to_dict()
        if self.password:
            data["password"] = "*" * len(self.password)
        if self.client_secret:
            data["client_secret"] = "*" * 8 + self.client_secret[-4:]
        if self.access_token:
            data["access_token"] = self.access_token[:8] + "..."
        if self.refresh_token:
            data["refresh_token"] = self.refresh_token[:8] + "..."
        return data


class MigrationStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass
class MigrationMarker:
    """Persisted outcome of the last migration run."""

    version: str
    status: MigrationStatus
    timestamp: str | None = None
    method: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return {k: v for k, v in data.items() if v is not None}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MigrationMarker:
        # Older markers used completedAt / errorAt instead of timestamp
        timestamp = data.get("timestamp") or data.get("completedAt") or data.get("errorAt")
        try:
            status = MigrationStatus(data.get("status", "pending"))
        except ValueError:
            status = MigrationStatus.PENDING
        return cls(
            version=data.get("version", "unknown"),
            status=status,
            timestamp=timestamp,
            method=data.get("method"),
            error=data.get("error"),
        )


@dataclass
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


class CompatibilityStatus(str, Enum):
    READY = "ready"
    NEEDS_MIGRATION = "needs_migration"
    ERROR = "error"


@dataclass
class CompatibilityReport:
    """Startup prerequisites for migration."""

    crypto_available: bool = False
    legacy_detection_available: bool = False
    encryption_healthy: bool = False
    status: CompatibilityStatus = CompatibilityStatus.ERROR


@dataclass
class MigrationReport:
    """What a single ``migrate()`` run did to each sensitive field."""

    migrated: list[str] = field(default_factory=list)  # legacy base64 -> AES-GCM
    retagged: list[str] = field(default_factory=list)  # untagged AES-GCM -> wv1$
    blanked: list[str] = field(default_factory=list)  # unrecognised, cleared
    written: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.migrated or self.retagged or self.blanked)


# ---------------------------------------------------------------------------
# Wallabag wire schemas
# ---------------------------------------------------------------------------


class PasswordGrant(BaseModel):
    """OAuth2 resource-owner password grant."""

    grant_type: Literal["password"] = "password"
    client_id: str
    client_secret: str
    username: str
    password: str


class RefreshGrant(BaseModel):
    """OAuth2 refresh-token grant."""

    grant_type: Literal["refresh_token"] = "refresh_token"
    refresh_token: str
    client_id: str
    client_secret: str


class AuthResponse(BaseModel):
    """Response of ``POST /oauth/v2/token``."""

    model_config = ConfigDict(extra="allow")

    access_token: str
    expires_in: int = 3600
    token_type: str = "bearer"
    scope: str | None = None
    refresh_token: str | None = None


class Tag(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: int
    label: str
    slug: str | None = None


class Entry(BaseModel):
    """A saved wallabag entry."""

    model_config = ConfigDict(extra="allow")

    id: int
    url: str | None = None
    title: str | None = None
    content: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    starred: bool = Field(default=False, validation_alias=AliasChoices("is_starred", "starred"))
    archived: bool = Field(default=False, validation_alias=AliasChoices("is_archived", "archived"))
    tags: list[Tag] = Field(default_factory=list)
    preview_picture: str | None = None
    reading_time: int | None = None
    domain_name: str | None = None


class EntriesPage(BaseModel):
    """Paginated response of ``GET /api/entries.json``."""

    model_config = ConfigDict(extra="allow")

    page: int = 1
    limit: int = 30
    pages: int = 1
    total: int = 0
    embedded: dict[str, list[Entry]] = Field(default_factory=dict, alias="_embedded")

    @property
    def items(self) -> list[Entry]:
        return self.embedded.get("items", [])


class CreateEntryRequest(BaseModel):
    """Body of ``POST /api/entries.json``."""

    url: str
    title: str | None = None
    tags: str | None = None  # comma separated
    starred: bool | None = None
    archive: bool | None = None


class ApiErrorBody(BaseModel):
    model_config = ConfigDict(extra="allow")

    error: str | None = None
    error_description: str | None = None
