"""
Supabase backend.

Session auth, the user_api_keys table (BYOK), usage_logs and feedback_v2.
The supabase client is synchronous; calls run in a worker thread under a
RequestOrchestrator that uses the backend retry policy.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from supabase import Client, create_client

from ..core.errors import AuthenticationError, BubbleError, classify_backend_error
from ..core.orchestrator import RequestOrchestrator

logger = logging.getLogger(__name__)

AUTH_TIMEOUT_MS = 20000
SESSION_TIMEOUT_MS = 5000
USAGE_LOG_TIMEOUT_MS = 5000
DB_TIMEOUT_MS = 15000
PROVIDER = "gemini"


class FeedbackType(Enum):
    GENERAL = "general"
    BUG = "bug"
    FEATURE = "feature"
    HELP = "help"


@dataclass(frozen=True)
class User:
    id: str
    name: str
    email: str
    avatar_url: Optional[str] = None
    has_onboarded: bool = False

    @property
    def is_guest(self) -> bool:
        return self.id.startswith("guest-")


@dataclass(frozen=True)
class Feedback:
    id: str
    created_at: str
    user_id: str
    type: FeedbackType
    body: str
    title: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    resolved: bool = False
    resolved_at: Optional[str] = None
    resolved_by: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Feedback":
        return cls(
            id=str(row["id"]),
            created_at=row.get("created_at", ""),
            user_id=row.get("user_id", ""),
            type=FeedbackType(row.get("type", "general")),
            body=row.get("body", ""),
            title=row.get("title"),
            metadata=row.get("metadata") or {},
            resolved=bool(row.get("resolved", False)),
            resolved_at=row.get("resolved_at"),
            resolved_by=row.get("resolved_by"),
        )


def _user_from_auth(auth_user: Any, fallback_name: Optional[str] = None) -> User:
    metadata = getattr(auth_user, "user_metadata", None) or {}
    email = getattr(auth_user, "email", None) or ""
    return User(
        id=auth_user.id,
        name=metadata.get("full_name") or fallback_name or (email.split("@")[0] if email else "User"),
        email=email,
        avatar_url=metadata.get("avatar_url"),
        has_onboarded=bool(metadata.get("hasOnboarded", False)),
    )


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SupabaseBackend:
    """Async facade over a supabase Client.

    Args:
        client: supabase Client
        orchestrator: Retry/timeout policy for database calls
    """

    def __init__(self, client: Client, orchestrator: Optional[RequestOrchestrator] = None):
        self.client = client
        self.orchestrator = orchestrator or RequestOrchestrator(
            classifier=classify_backend_error, timeout_ms=DB_TIMEOUT_MS
        )

    async def _run(self, fn: Callable[[], Any], max_retries: Optional[int] = None, timeout_ms: Optional[int] = None) -> Any:
        return await self.orchestrator.invoke(
            lambda: asyncio.to_thread(fn), max_retries=max_retries, timeout_ms=timeout_ms
        )

    # --- Auth ---

    async def login(self, email: str, password: str, captcha_token: Optional[str] = None) -> User:
        credentials: Dict[str, Any] = {"email": email, "password": password}
        if captcha_token:
            credentials["options"] = {"captcha_token": captcha_token}
        try:
            response = await self._run(
                lambda: self.client.auth.sign_in_with_password(credentials),
                max_retries=0, timeout_ms=AUTH_TIMEOUT_MS,
            )
        except BubbleError as e:
            raise AuthenticationError(e.message or "Login failed due to timeout or network error.") from e
        if response.user is None:
            raise AuthenticationError("No user data returned")
        return _user_from_auth(response.user, fallback_name=email.split("@")[0])

    async def signup(self, name: str, email: str, password: str, captcha_token: Optional[str] = None) -> User:
        options: Dict[str, Any] = {"data": {"full_name": name, "hasOnboarded": False}}
        if captcha_token:
            options["captcha_token"] = captcha_token
        try:
            response = await self._run(
                lambda: self.client.auth.sign_up({"email": email, "password": password, "options": options}),
                max_retries=0, timeout_ms=AUTH_TIMEOUT_MS,
            )
        except BubbleError as e:
            raise AuthenticationError(e.message or "Signup failed due to timeout or network error.") from e
        if response.user is None:
            raise AuthenticationError("Signup failed")
        return User(id=response.user.id, name=name, email=response.user.email or email)

    async def oauth_url(self, redirect_to: str, provider: str = "google") -> str:
        """URL the user opens to complete the OAuth redirect flow."""
        response = await self._run(
            lambda: self.client.auth.sign_in_with_oauth(
                {"provider": provider, "options": {"redirect_to": redirect_to.rstrip("/")}}
            ),
            max_retries=0,
        )
        return response.url

    async def logout(self) -> None:
        try:
            await self._run(self.client.auth.sign_out, max_retries=0, timeout_ms=SESSION_TIMEOUT_MS)
        except BubbleError as e:
            logger.warning("Logout timed out or failed locally: %s", e)

    async def _session(self) -> Any:
        return await self._run(self.client.auth.get_session, max_retries=0, timeout_ms=SESSION_TIMEOUT_MS)

    async def get_current_user(self) -> Optional[User]:
        try:
            session = await self._session()
        except BubbleError as e:
            logger.error("Error getting current user: %s", e)
            return None
        if session is None or session.user is None:
            return None
        return _user_from_auth(session.user)

    async def session_tokens(self) -> Optional[Tuple[str, str]]:
        """(access_token, refresh_token) of the active session, if any."""
        try:
            session = await self._session()
        except BubbleError as e:
            logger.warning("Could not read session: %s", e)
            return None
        if session is None or not session.access_token:
            return None
        return session.access_token, session.refresh_token

    async def restore_session(self, access_token: str, refresh_token: str) -> Optional[User]:
        """Re-establish a persisted session; None when the tokens no longer work."""
        try:
            response = await self._run(
                lambda: self.client.auth.set_session(access_token, refresh_token),
                max_retries=0, timeout_ms=SESSION_TIMEOUT_MS,
            )
        except BubbleError as e:
            logger.warning("Stored session could not be restored: %s", e)
            return None
        if response is None or response.user is None:
            return None
        return _user_from_auth(response.user)

    async def complete_onboarding(self) -> None:
        try:
            await self._run(
                lambda: self.client.auth.update_user({"data": {"hasOnboarded": True}}),
                max_retries=0, timeout_ms=10000,
            )
        except BubbleError as e:
            logger.warning("Failed to sync onboarding: %s", e)

    # --- API keys (user_api_keys) ---

    async def get_gemini_key(self, user_id: str, strict: bool = False) -> Optional[str]:
        """Stored key for the user, or None when absent.

        Database failures also yield None unless ``strict`` is set.
        """
        try:
            response = await self._run(
                lambda: self.client.table("user_api_keys")
                .select("encrypted_key")
                .eq("user_id", user_id)
                .eq("provider", PROVIDER)
                .maybe_single()
                .execute()
            )
        except BubbleError as e:
            if strict:
                raise
            logger.warning("Failed to fetch key from DB: %s", e)
            return None
        # maybe_single() yields no response at all on zero rows in some client versions
        data = getattr(response, "data", None)
        if not data:
            return None
        return data.get("encrypted_key")

    async def save_gemini_key(self, user_id: str, key: str) -> None:
        """Upsert the user's key.

        Raises:
            AuthenticationError: No session, or the session belongs to another user
            BubbleError: Database failure after retries
        """
        session = await self._session()
        if session is None or session.user is None:
            raise AuthenticationError("No active session. Please log in again.")
        if session.user.id != user_id:
            raise AuthenticationError("User mismatch. Security block.")

        payload = {
            "user_id": user_id,
            "provider": PROVIDER,
            "encrypted_key": key,
            "is_valid": True,
            "last_error": None,
        }
        await self._run(
            lambda: self.client.table("user_api_keys")
            .upsert(payload, on_conflict="user_id,provider")
            .execute()
        )
        logger.info("API key synced to cloud for %s", user_id)

    async def remove_gemini_key(self) -> None:
        session = await self._session()
        if session is None or session.user is None:
            return
        user_id = session.user.id
        try:
            await self._run(
                lambda: self.client.table("user_api_keys")
                .delete()
                .eq("user_id", user_id)
                .eq("provider", PROVIDER)
                .execute()
            )
        except BubbleError as e:
            logger.error("Failed to remove key: %s", e)

    # --- Usage logs ---

    async def insert_usage_log(self, user_id: str, model: str, mode: str) -> None:
        payload = {"user_id": user_id, "model": model, "mode": mode, "created_at": _now()}
        await self._run(
            lambda: self.client.table("usage_logs").insert(payload).execute(),
            max_retries=0, timeout_ms=USAGE_LOG_TIMEOUT_MS,
        )

    def usage_logger(self, user: Optional[User]) -> Optional[Callable[[str, str], Any]]:
        """Remote logger for GeminiClient; None for anonymous or guest users."""
        if user is None or user.is_guest:
            return None

        async def log(model: str, mode: str) -> None:
            await self.insert_usage_log(user.id, model, mode)

        return log

    # --- Feedback (feedback_v2) ---

    async def submit_feedback(
        self,
        user_id: str,
        feedback_type: FeedbackType,
        body: str,
        title: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        if not body or not body.strip():
            raise ValueError("feedback body cannot be empty")
        payload = {
            "user_id": user_id,
            "type": feedback_type.value,
            "title": title or None,
            "body": body,
            "metadata": metadata or {},
            "resolved": False,
        }
        try:
            await self._run(lambda: self.client.table("feedback_v2").insert(payload).execute())
        except BubbleError as e:
            raise BubbleError(f"Feedback submission failed: {e.message}", status=e.status) from e
        logger.info("Feedback submitted by %s", user_id)

    async def fetch_all_feedback(self) -> List[Feedback]:
        response = await self._run(
            lambda: self.client.table("feedback_v2")
            .select("*")
            .order("created_at", desc=True)
            .execute()
        )
        return [Feedback.from_row(row) for row in response.data or []]

    async def resolve_feedback(self, feedback_id: str, resolved: bool, admin_id: str) -> None:
        updates = {
            "resolved": resolved,
            "resolved_at": _now() if resolved else None,
            "resolved_by": admin_id if resolved else None,
        }
        await self._run(
            lambda: self.client.table("feedback_v2").update(updates).eq("id", feedback_id).execute()
        )


def create_backend(url: str, key: str, orchestrator: Optional[RequestOrchestrator] = None) -> SupabaseBackend:
    """Connect to Supabase.

    Raises:
        ValueError: If url or key is missing
    """
    if not url or not key:
        raise ValueError("Supabase url and key are required")
    return SupabaseBackend(create_client(url, key), orchestrator)
