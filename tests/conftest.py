# Shared fixtures: in-memory store, crypto, credential manager, frozen clock,
# and a fake wallabag server for httpx.MockTransport.
# Created: 2026-10-06

import asyncio
import json
import re
from urllib.parse import parse_qs

import httpx
import pytest

from wallavault import lifecycle
from wallavault.config import Settings
from wallavault.credentials import CredentialManager
from wallavault.migration import MigrationEngine
from wallavault.security.crypto import EncryptedStore
from wallavault.security.keys import StoreKeyProvider
from wallavault.storage.memory_store import MemoryKeyValueStore

NOW = 1_760_000_000.0

FULL_RECORD = {
    "server_url": "https://wallabag.example.com",
    "client_id": "1_abcdefghij",
    "client_secret": "s3cr3t-client-secret",
    "username": "reader",
    "password": "correct horse",
}


class FrozenClock:
    """Callable clock returning a settable Unix time in seconds."""

    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def _clean_lifecycle():
    yield
    lifecycle.reset_all()


@pytest.fixture
def kv():
    return MemoryKeyValueStore()


@pytest.fixture
def crypto(kv):
    return EncryptedStore(StoreKeyProvider(kv))


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def manager(kv, crypto, clock):
    return CredentialManager(kv, crypto, clock=clock)


@pytest.fixture
def engine(kv, crypto, manager):
    return MigrationEngine(kv, crypto, manager)


@pytest.fixture
def settings(tmp_path):
    return Settings(config_dir=tmp_path, backoff_base=0.0, request_timeout=5.0)


@pytest.fixture
def full_record():
    return dict(FULL_RECORD)


class FakeWallabag:
    """Just enough of the wallabag OAuth2 + entries API."""

    def __init__(self, record):
        self.client_id = record["client_id"]
        self.client_secret = record["client_secret"]
        self.username = record["username"]
        self.password = record["password"]
        self.issued = 0
        self.valid_access: str | None = None
        self.valid_refresh: str | None = None
        self.refresh_status = 200
        self.entries_status = 200
        self.token_delay = 0.0
        self.requests: list[httpx.Request] = []

    @property
    def token_requests(self):
        return [r for r in self.requests if r.url.path == "/oauth/v2/token"]

    def grants(self):
        return [parse_qs(r.content.decode())["grant_type"][0] for r in self.token_requests]

    def _issue(self):
        self.issued += 1
        self.valid_access = f"access-{self.issued}"
        self.valid_refresh = f"refresh-{self.issued}"
        return httpx.Response(
            200,
            json={
                "access_token": self.valid_access,
                "expires_in": 3600,
                "token_type": "bearer",
                "scope": None,
                "refresh_token": self.valid_refresh,
            },
        )

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == "/oauth/v2/token":
            if self.token_delay:
                await asyncio.sleep(self.token_delay)
            form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
            if (form.get("client_id"), form.get("client_secret")) != (
                self.client_id,
                self.client_secret,
            ):
                return httpx.Response(400, json={"error": "invalid_client"})
            if form["grant_type"] == "refresh_token":
                if self.refresh_status != 200 or form["refresh_token"] != self.valid_refresh:
                    return httpx.Response(
                        self.refresh_status if self.refresh_status != 200 else 400,
                        json={"error": "invalid_grant", "error_description": "Refresh denied"},
                    )
                return self._issue()
            if (form.get("username"), form.get("password")) != (self.username, self.password):
                return httpx.Response(
                    400,
                    json={
                        "error": "invalid_grant",
                        "error_description": "Invalid username and password combination",
                    },
                )
            return self._issue()

        if request.headers.get("Authorization") != f"Bearer {self.valid_access}":
            return httpx.Response(401, json={"error": "invalid_grant"})
        if self.entries_status != 200:
            return httpx.Response(self.entries_status)

        if path == "/api/entries.json" and request.method == "GET":
            return httpx.Response(
                200,
                json={
                    "page": 1,
                    "limit": 1,
                    "pages": 1,
                    "total": 1,
                    "_embedded": {
                        "items": [{"id": 7, "url": "https://a.example", "is_starred": 1}]
                    },
                },
            )
        if path == "/api/entries.json" and request.method == "POST":
            body = json.loads(request.content)
            tags = [
                {"id": i, "label": label, "slug": label}
                for i, label in enumerate((body.get("tags") or "").split(","), 1)
                if label
            ]
            return httpx.Response(
                200,
                json={"id": 42, "url": body["url"], "title": body.get("title"), "tags": tags},
            )
        match = re.fullmatch(r"/api/entries/(\d+)\.json", path)
        if match:
            if match.group(1) != "7":
                return httpx.Response(
                    404, json={"error": "not_found", "error_description": "Entry not found"}
                )
            return httpx.Response(200, json={"id": 7, "title": "Seven", "is_archived": 1})
        return httpx.Response(404)


@pytest.fixture
def server(full_record):
    return FakeWallabag(full_record)


