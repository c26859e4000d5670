"""Tests for registration, unlock, lock and logout."""

import pytest
import pytest_asyncio

from iforgotpassword.auth import AuthService, SessionHolder
from iforgotpassword.core.errors import (
    AccountLockedError,
    ApiError,
    AuthenticationError,
    ValidationError,
)
from iforgotpassword.crypto.keys import export_key
from iforgotpassword.sync.api_client import ApiClient
from iforgotpassword.vault.local_store import KV_KDF_ITERATIONS, KV_SALT, KV_USER_EMAIL, LocalStore
from iforgotpassword.vault.models import SyncAction

from conftest import audit_event_types, make_item
from fake_server import API_ROOT

EMAIL = "bob@example.com"
PASSWORD = "Correct-Horse-9"


@pytest_asyncio.fixture
async def client(server):
    api = ApiClient(API_ROOT, transport=server.transport())
    yield api
    await api.aclose()


@pytest.fixture
def session():
    return SessionHolder()


@pytest.fixture
def auth(store, client, session):
    return AuthService(store, client, session)


class TestRegister:

    @pytest.mark.asyncio
    async def test_register_unlocks_and_caches_salt(self, auth, store, server, session, client):
        data = await auth.register(EMAIL, PASSWORD)

        assert data["userId"] == server.users[EMAIL]["userId"]
        assert session.is_unlocked
        assert session.email == EMAIL
        assert client.is_authenticated
        assert auth.has_registered()
        assert store.get_value(KV_USER_EMAIL) == EMAIL
        assert store.get_value(KV_SALT) == server.users[EMAIL]["salt"]
        assert store.get_value(KV_KDF_ITERATIONS) == "100000"
        assert server.requests == ["POST /auth/register", "POST /auth/login"]

    @pytest.mark.asyncio
    async def test_server_never_sees_key_material(self, auth, server, session):
        await auth.register(EMAIL, PASSWORD)
        record = server.users[EMAIL]
        assert PASSWORD not in record.values()
        assert export_key(session.encryption_key) not in record.values()

    @pytest.mark.asyncio
    async def test_email_is_trimmed(self, auth, server):
        await auth.register("  " + EMAIL + " ", PASSWORD)
        assert EMAIL in server.users

    @pytest.mark.asyncio
    @pytest.mark.parametrize("email,password", [
        ("not-an-email", PASSWORD),
        (EMAIL, "weak"),
        (EMAIL, "Password123"),
    ])
    async def test_rejected_before_any_request(self, auth, server, email, password):
        with pytest.raises(ValidationError):
            await auth.register(email, password)
        assert server.requests == []

    @pytest.mark.asyncio
    async def test_duplicate_account(self, auth, server):
        server.add_user(EMAIL)
        with pytest.raises(ApiError) as exc_info:
            await auth.register(EMAIL, PASSWORD)
        assert exc_info.value.status_code == 409
        assert not auth.has_registered()


class TestUnlock:

    @pytest.mark.asyncio
    async def test_lock_then_unlock_restores_same_key(self, auth, session, client, audit_dir):
        await auth.register(EMAIL, PASSWORD)
        key = session.encryption_key

        auth.lock()
        assert not session.is_unlocked
        assert not client.is_authenticated

        await auth.unlock(EMAIL, PASSWORD)
        assert session.encryption_key == key
        assert session.access_token == client.access_token
        assert audit_event_types(audit_dir).count("user.login") == 2

    @pytest.mark.asyncio
    async def test_wrong_password(self, auth, session, audit_dir):
        await auth.register(EMAIL, PASSWORD)
        auth.lock()
        with pytest.raises(AuthenticationError) as exc_info:
            await auth.unlock(EMAIL, "Correct-Horse-8")
        assert str(exc_info.value) == "Invalid email or password"
        assert not session.is_unlocked
        assert "user.login.failed" in audit_event_types(audit_dir)

    @pytest.mark.asyncio
    async def test_lockout_after_repeated_failures(self, auth, session, audit_dir):
        await auth.register(EMAIL, PASSWORD)
        auth.lock()
        for _ in range(5):
            with pytest.raises(AuthenticationError):
                await auth.unlock(EMAIL, "Wrong-Horse-1")

        with pytest.raises(AccountLockedError):
            await auth.unlock(EMAIL, PASSWORD)
        assert not session.is_unlocked
        assert "user.locked_out" in audit_event_types(audit_dir)

    @pytest.mark.asyncio
    async def test_no_cached_salt(self, auth, server):
        with pytest.raises(AuthenticationError) as exc_info:
            await auth.unlock(EMAIL, PASSWORD)
        assert "No stored credentials" in str(exc_info.value)
        assert server.requests == []

    @pytest.mark.asyncio
    async def test_other_account_on_this_device(self, auth):
        await auth.register(EMAIL, PASSWORD)
        auth.lock()
        with pytest.raises(AuthenticationError):
            await auth.unlock("carol@example.com", PASSWORD)

    @pytest.mark.asyncio
    async def test_new_device_with_explicit_salt(self, auth, session, server, client, tmp_path):
        await auth.register(EMAIL, PASSWORD)
        key = session.encryption_key

        other_store = LocalStore(tmp_path / "device-b.db")
        other_session = SessionHolder()
        other = AuthService(other_store, client, other_session)
        record = server.users[EMAIL]
        await other.unlock(EMAIL, PASSWORD, salt=record["salt"], iterations=record["kdfIterations"])

        assert other_session.encryption_key == key
        assert other.stored_email() == EMAIL
        assert other.has_registered()


class TestLogout:

    @pytest.mark.asyncio
    async def test_logout_wipes_local_data(self, auth, store, session, client, key, audit_dir):
        await auth.register(EMAIL, PASSWORD)
        device_id = store.get_device_id()
        store.upsert(make_item(key, "a"))
        store.enqueue(SyncAction.UPDATE, "a")

        auth.logout()

        assert not session.is_unlocked
        assert not client.is_authenticated
        assert store.count(include_deleted=True) == 0
        assert store.queue_length() == 0
        assert not auth.has_registered()
        assert auth.stored_email() is None
        assert store.get_device_id() == device_id
        assert audit_event_types(audit_dir)[-1] == "user.logout"
