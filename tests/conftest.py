"""
Shared pytest fixtures for the iforgotpassword test suite.

Autouse fixtures below isolate tests from real application data:
  - Audit logger -> temp directory (no events land in ./data/audit_logs)
  - IFP_* environment -> cleared (a developer's .env cannot leak in)
"""

import json
import os
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from iforgotpassword.core.audit_log import AuditLogger, set_audit_logger
from iforgotpassword.crypto.envelope import encrypt
from iforgotpassword.sync.api_client import ApiClient
from iforgotpassword.vault.local_store import LocalStore
from iforgotpassword.vault.models import LoginPayload, VaultItem

from fake_server import API_ROOT, FakeVaultServer


@pytest.fixture(autouse=True)
def _isolate_audit_logs(tmp_path):
    """Point the global AuditLogger at a temp directory for every test."""
    audit = AuditLogger(tmp_path / "audit_logs")
    set_audit_logger(audit)
    yield audit
    audit.close()
    set_audit_logger(None)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in list(os.environ):
        if name.startswith("IFP_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def audit_dir(tmp_path):
    return tmp_path / "audit_logs"


@pytest.fixture
def key():
    return os.urandom(32)


@pytest.fixture
def store(tmp_path):
    return LocalStore(tmp_path / "vault.db")


@pytest.fixture
def server():
    return FakeVaultServer()


@pytest_asyncio.fixture
async def api(server):
    """ApiClient logged in as alice@example.com on the fake server."""
    server.add_user("alice@example.com")
    client = ApiClient(API_ROOT, transport=server.transport())
    tokens = server.issue_tokens("alice@example.com")
    client.set_tokens(tokens["token"], tokens["refreshToken"])
    yield client
    await client.aclose()


def ts(seconds: float = 0) -> datetime:
    """A fixed UTC instant, offset by ``seconds``."""
    return datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc) + timedelta(seconds=seconds)


def make_item(
    key: bytes,
    item_id: str = "item-1",
    *,
    title: str = "Example",
    password: str = "hunter2",
    url: str = "https://example.com/login",
    version: int = 1,
    modified: datetime = None,
    url_domain: str = "example.com",
) -> VaultItem:
    """Encrypted login item as the store and server hold it."""
    payload = LoginPayload(title=title, username="alice", password=password, url=url)
    blob = encrypt(payload.to_dict(), key).to_wire()
    when = modified or ts()
    return VaultItem(
        id=item_id,
        encrypted_data=blob["encryptedData"],
        iv=blob["iv"],
        auth_tag=blob["authTag"],
        url_domain=url_domain,
        version=version,
        last_modified_at=when,
        last_modified_by="device-test",
        created_at=when,
        updated_at=when,
    )


def read_audit_events(audit_dir) -> list:
    """Parsed audit records written under ``audit_dir``, oldest first."""
    events = []
    for path in sorted(audit_dir.glob("audit_*.log")):
        for line in path.read_text(encoding="utf-8").splitlines():
            if line.strip():
                events.append(json.loads(line))
    return events


def audit_event_types(audit_dir) -> list:
    return [e["event_type"] for e in read_audit_events(audit_dir)]
