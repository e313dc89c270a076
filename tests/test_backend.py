"""
Unit tests for the Supabase backend and key reconciliation.

The supabase client is a MagicMock; query builders chain through return_value.
"""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, Mock, patch

import pytest

from bubble.backend.supabase_backend import (
    FeedbackType,
    SupabaseBackend,
    User,
    create_backend,
)
from bubble.backend.sync import reconcile_keys, run_deep_system_check
from bubble.core.errors import (
    AuthenticationError,
    BubbleError,
    TransientServiceError,
    classify_backend_error,
)
from bubble.core.orchestrator import RequestOrchestrator
from bubble.core.usage import InMemoryStore
from bubble.sdk.gemini_client import CredentialStore

REMOTE_KEY = "AIzaSyRemoteKey42"
LOCAL_KEY = "AIzaSyLocalKey999"


async def _no_sleep(seconds):
    return None


class PostgrestFailure(Exception):
    def __init__(self, message, code):
        super().__init__(message)
        self.message = message
        self.code = code


def _auth_user(user_id="u1", email="ada@example.com", **metadata):
    return SimpleNamespace(id=user_id, email=email, user_metadata=metadata)


def _backend(client):
    orchestrator = RequestOrchestrator(sleep=_no_sleep, classifier=classify_backend_error)
    return SupabaseBackend(client, orchestrator)


class TestAuth:
    """Test session auth calls."""

    def setup_method(self):
        self.client = MagicMock()
        self.backend = _backend(self.client)

    def test_login(self):
        self.client.auth.sign_in_with_password.return_value = SimpleNamespace(
            user=_auth_user(full_name="Ada Lovelace", hasOnboarded=True)
        )

        user = asyncio.run(self.backend.login("ada@example.com", "secret"))

        assert user == User(id="u1", name="Ada Lovelace", email="ada@example.com", has_onboarded=True)
        self.client.auth.sign_in_with_password.assert_called_once_with(
            {"email": "ada@example.com", "password": "secret"}
        )

    def test_login_name_fallback(self):
        self.client.auth.sign_in_with_password.return_value = SimpleNamespace(user=_auth_user())
        user = asyncio.run(self.backend.login("ada@example.com", "secret"))
        assert user.name == "ada"

    def test_login_failure_not_retried(self):
        """Test a rejected login surfaces once as an auth error."""
        self.client.auth.sign_in_with_password.side_effect = RuntimeError("Invalid login credentials")

        with pytest.raises(AuthenticationError, match="Invalid login credentials"):
            asyncio.run(self.backend.login("ada@example.com", "wrong"))

        assert self.client.auth.sign_in_with_password.call_count == 1

    def test_signup_passes_metadata(self):
        self.client.auth.sign_up.return_value = SimpleNamespace(user=_auth_user(user_id="u2"))

        user = asyncio.run(self.backend.signup("Ada", "ada@example.com", "secret", captcha_token="tok"))

        assert user.id == "u2"
        assert user.name == "Ada"
        payload = self.client.auth.sign_up.call_args.args[0]
        assert payload["options"]["data"] == {"full_name": "Ada", "hasOnboarded": False}
        assert payload["options"]["captcha_token"] == "tok"

    def test_current_user_none_without_session(self):
        self.client.auth.get_session.return_value = None
        assert asyncio.run(self.backend.get_current_user()) is None

    def test_current_user_error_is_none(self):
        self.client.auth.get_session.side_effect = RuntimeError("network down")
        assert asyncio.run(self.backend.get_current_user()) is None

    def test_logout_swallows_failure(self):
        self.client.auth.sign_out.side_effect = RuntimeError("fetch failed")
        asyncio.run(self.backend.logout())

    def test_session_tokens(self):
        self.client.auth.get_session.return_value = SimpleNamespace(
            access_token="access-1", refresh_token="refresh-1", user=_auth_user()
        )
        assert asyncio.run(self.backend.session_tokens()) == ("access-1", "refresh-1")

    def test_session_tokens_without_session(self):
        self.client.auth.get_session.return_value = None
        assert asyncio.run(self.backend.session_tokens()) is None

    def test_restore_session(self):
        """Test persisted tokens are handed to set_session."""
        self.client.auth.set_session.return_value = SimpleNamespace(user=_auth_user(full_name="Ada"))

        user = asyncio.run(self.backend.restore_session("access-1", "refresh-1"))

        assert user.name == "Ada"
        self.client.auth.set_session.assert_called_once_with("access-1", "refresh-1")

    def test_restore_session_rejected(self):
        self.client.auth.set_session.side_effect = RuntimeError("Invalid Refresh Token")
        assert asyncio.run(self.backend.restore_session("access-1", "stale")) is None
        assert self.client.auth.set_session.call_count == 1

    def test_oauth_url(self):
        self.client.auth.sign_in_with_oauth.return_value = SimpleNamespace(url="https://auth.example/authorize")

        url = asyncio.run(self.backend.oauth_url("http://localhost:3000/"))

        assert url == "https://auth.example/authorize"
        args = self.client.auth.sign_in_with_oauth.call_args.args[0]
        assert args["options"]["redirect_to"] == "http://localhost:3000"

    def test_complete_onboarding(self):
        asyncio.run(self.backend.complete_onboarding())
        self.client.auth.update_user.assert_called_once_with({"data": {"hasOnboarded": True}})

    def test_complete_onboarding_failure_logged(self):
        self.client.auth.update_user.side_effect = RuntimeError("network down")
        asyncio.run(self.backend.complete_onboarding())

    def test_guest_user(self):
        assert User(id="guest-123", name="Guest", email="").is_guest


class TestApiKeys:
    """Test the user_api_keys table."""

    def setup_method(self):
        self.client = MagicMock()
        self.backend = _backend(self.client)
        table = self.client.table.return_value
        self.key_query = table.select.return_value.eq.return_value.eq.return_value.maybe_single.return_value
        self.client.auth.get_session.return_value = SimpleNamespace(user=_auth_user())

    def test_get_key(self):
        self.key_query.execute.return_value = SimpleNamespace(data={"encrypted_key": REMOTE_KEY})

        assert asyncio.run(self.backend.get_gemini_key("u1")) == REMOTE_KEY
        self.client.table.assert_called_with("user_api_keys")

    def test_get_key_absent(self):
        self.key_query.execute.return_value = None
        assert asyncio.run(self.backend.get_gemini_key("u1")) is None

    def test_get_key_retries_then_gives_up(self):
        """Test transient DB failures are retried and then reported as no key."""
        self.key_query.execute.side_effect = RuntimeError("upstream connect error")

        assert asyncio.run(self.backend.get_gemini_key("u1")) is None
        assert self.key_query.execute.call_count == 4

    def test_get_key_strict_raises(self):
        self.key_query.execute.side_effect = RuntimeError("upstream connect error")
        with pytest.raises(TransientServiceError):
            asyncio.run(self.backend.get_gemini_key("u1", strict=True))

    def test_jwt_rejection_not_retried(self):
        self.key_query.execute.side_effect = PostgrestFailure("JWT expired", "PGRST301")

        with pytest.raises(AuthenticationError, match="JWT expired"):
            asyncio.run(self.backend.get_gemini_key("u1", strict=True))

        assert self.key_query.execute.call_count == 1

    def test_save_key_upserts(self):
        asyncio.run(self.backend.save_gemini_key("u1", REMOTE_KEY))

        self.client.table.return_value.upsert.assert_called_once_with(
            {
                "user_id": "u1",
                "provider": "gemini",
                "encrypted_key": REMOTE_KEY,
                "is_valid": True,
                "last_error": None,
            },
            on_conflict="user_id,provider",
        )

    def test_save_key_requires_session(self):
        self.client.auth.get_session.return_value = None
        with pytest.raises(AuthenticationError, match="No active session"):
            asyncio.run(self.backend.save_gemini_key("u1", REMOTE_KEY))

    def test_save_key_user_mismatch(self):
        with pytest.raises(AuthenticationError, match="User mismatch"):
            asyncio.run(self.backend.save_gemini_key("someone-else", REMOTE_KEY))
        self.client.table.return_value.upsert.assert_not_called()

    def test_remove_key(self):
        asyncio.run(self.backend.remove_gemini_key())
        delete = self.client.table.return_value.delete.return_value
        delete.eq.assert_called_once_with("user_id", "u1")


class TestUsageAndFeedback:
    """Test usage_logs and feedback_v2."""

    def setup_method(self):
        self.client = MagicMock()
        self.backend = _backend(self.client)

    def test_usage_logger_for_signed_in_user(self):
        log = self.backend.usage_logger(User(id="u1", name="Ada", email="ada@example.com"))

        asyncio.run(log("gemini-2.5-flash", "DRILL"))

        payload = self.client.table.return_value.insert.call_args.args[0]
        assert payload["user_id"] == "u1"
        assert payload["model"] == "gemini-2.5-flash"
        assert payload["mode"] == "DRILL"
        assert "created_at" in payload

    def test_usage_logger_skips_guests(self):
        assert self.backend.usage_logger(None) is None
        assert self.backend.usage_logger(User(id="guest-1", name="Guest", email="")) is None

    def test_submit_feedback(self):
        asyncio.run(self.backend.submit_feedback("u1", FeedbackType.BUG, "Graph is blank", title="Graph"))

        self.client.table.assert_called_with("feedback_v2")
        payload = self.client.table.return_value.insert.call_args.args[0]
        assert payload["type"] == "bug"
        assert payload["resolved"] is False
        assert payload["metadata"] == {}

    def test_submit_feedback_empty_body(self):
        with pytest.raises(ValueError, match="cannot be empty"):
            asyncio.run(self.backend.submit_feedback("u1", FeedbackType.GENERAL, "   "))

    def test_submit_feedback_failure(self):
        self.client.table.return_value.insert.return_value.execute.side_effect = PostgrestFailure(
            "duplicate key value", "23505"
        )

        with pytest.raises(BubbleError, match="Feedback submission failed: duplicate key value"):
            asyncio.run(self.backend.submit_feedback("u1", FeedbackType.GENERAL, "hello"))

    def test_fetch_all_feedback(self):
        query = self.client.table.return_value.select.return_value.order.return_value
        query.execute.return_value = SimpleNamespace(data=[
            {"id": 7, "created_at": "2026-01-02", "user_id": "u1", "type": "feature", "body": "Dark mode"},
        ])

        items = asyncio.run(self.backend.fetch_all_feedback())

        assert len(items) == 1
        assert items[0].id == "7"
        assert items[0].type == FeedbackType.FEATURE
        assert not items[0].resolved
        self.client.table.return_value.select.return_value.order.assert_called_once_with("created_at", desc=True)

    def test_resolve_feedback(self):
        asyncio.run(self.backend.resolve_feedback("7", True, "admin-1"))

        updates = self.client.table.return_value.update.call_args.args[0]
        assert updates["resolved"] is True
        assert updates["resolved_by"] == "admin-1"
        assert updates["resolved_at"] is not None

    def test_unresolve_feedback_clears_fields(self):
        asyncio.run(self.backend.resolve_feedback("7", False, "admin-1"))

        updates = self.client.table.return_value.update.call_args.args[0]
        assert updates == {"resolved": False, "resolved_at": None, "resolved_by": None}


class TestCreateBackend:
    """Test backend construction."""

    def test_missing_settings(self):
        with pytest.raises(ValueError, match="url and key are required"):
            create_backend("", "key")

    @patch('bubble.backend.supabase_backend.create_client')
    def test_connects(self, mock_create_client):
        mock_create_client.return_value = MagicMock()

        backend = create_backend("https://example.supabase.co", "anon")

        mock_create_client.assert_called_once_with("https://example.supabase.co", "anon")
        assert backend.orchestrator.classifier is classify_backend_error


class TestReconcileKeys:
    """Test local/remote key reconciliation."""

    def setup_method(self):
        self.store = InMemoryStore()
        self.credentials = CredentialStore(self.store)
        self.backend = Mock()
        self.backend.get_gemini_key = AsyncMock(return_value=None)
        self.backend.save_gemini_key = AsyncMock()

    def test_remote_key_wins(self):
        self.credentials.save_local(LOCAL_KEY)
        self.backend.get_gemini_key.return_value = REMOTE_KEY

        assert asyncio.run(reconcile_keys(self.credentials, self.backend, "u1"))

        assert self.credentials.resolve() == REMOTE_KEY
        assert self.credentials.local_key() == REMOTE_KEY
        self.backend.save_gemini_key.assert_not_awaited()

    def test_local_key_pushed(self):
        self.credentials.save_local(LOCAL_KEY)

        assert asyncio.run(reconcile_keys(self.credentials, self.backend, "u1"))
        self.backend.save_gemini_key.assert_awaited_once_with("u1", LOCAL_KEY)

    def test_no_key_anywhere(self):
        assert not asyncio.run(reconcile_keys(self.credentials, self.backend, "u1"))

    def test_push_failure_reported(self):
        self.credentials.save_local(LOCAL_KEY)
        self.backend.save_gemini_key.side_effect = AuthenticationError("No active session. Please log in again.")

        assert not asyncio.run(reconcile_keys(self.credentials, self.backend, "u1"))

    def test_short_remote_key_treated_as_absent(self):
        """Test an invalid stored key does not raise and the local key is pushed."""
        self.credentials.save_local(LOCAL_KEY)
        self.backend.get_gemini_key.return_value = "short-key"

        assert asyncio.run(reconcile_keys(self.credentials, self.backend, "u1"))

        assert self.credentials.resolve() == LOCAL_KEY
        self.backend.save_gemini_key.assert_awaited_once_with("u1", LOCAL_KEY)


class TestDeepSystemCheck:
    """Test the diagnostics report."""

    def setup_method(self):
        self.credentials = CredentialStore(InMemoryStore())
        self.backend = Mock()
        self.backend.get_current_user = AsyncMock(return_value=User(id="u1", name="Ada", email="a@b.c"))
        self.backend.get_gemini_key = AsyncMock(return_value=REMOTE_KEY)
        self.client = Mock()
        self.client.ping = AsyncMock(return_value=True)

    def test_healthy_with_mismatch(self):
        self.credentials.save_local(LOCAL_KEY)

        report = asyncio.run(run_deep_system_check(self.credentials, self.client, self.backend))

        assert report.user_id == "u1"
        assert report.key_mode == "CUSTOM"
        assert report.checks.local_storage
        assert report.checks.database
        assert report.checks.db_key_found
        assert report.checks.key_mismatch
        assert report.checks.api_key
        self.backend.get_gemini_key.assert_awaited_once_with("u1", strict=True)

    def test_database_failure(self):
        self.backend.get_gemini_key.side_effect = TransientServiceError("upstream")

        report = asyncio.run(run_deep_system_check(self.credentials, self.client, self.backend))

        assert not report.checks.database
        assert not report.checks.db_key_found

    def test_no_key(self):
        report = asyncio.run(run_deep_system_check(self.credentials, self.client))

        assert report.key_mode == "NONE"
        assert not report.checks.api_key
        self.client.ping.assert_not_awaited()

    def test_ping_failure(self):
        self.credentials.set_session_key(LOCAL_KEY)
        self.client.ping.side_effect = AuthenticationError("Unauthorized (401).", status=401)

        report = asyncio.run(run_deep_system_check(self.credentials, self.client))

        assert report.key_mode == "CUSTOM"
        assert not report.checks.api_key
