"""
Guarded Gemini client wrapper.

Resolves the user's credential, builds generate_content requests and
records one request-log entry per attempt. Retry and timeout policy is
delegated to RequestOrchestrator.
"""

import asyncio
import json
import logging
import time
import uuid
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from google import genai
from google.genai import types

from ..core.errors import AuthenticationError, BubbleError, MISSING_KEY_MESSAGE, ValidationError, map_error_message
from ..core.orchestrator import RequestOrchestrator
from ..core.usage import KeyValueStore
from ..storage.models import RequestLogEntry, RequestStatus, RequestType
from ..storage.repository import RequestLogRepository

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gemini-2.5-flash"
PING_TIMEOUT_MS = 10000
MIN_KEY_LENGTH = 11

KEY_USER_API_KEY = "bubble_user_api_key"
DB_ERROR_SUFFIX = ":db"

PartLike = Union[str, types.Part]


def normalize_key(key: Optional[str]) -> Optional[str]:
    if key and len(key.strip()) >= MIN_KEY_LENGTH:
        return key.strip()
    return None


class CredentialStore:
    """BYOK credential resolution.

    Priority: explicit session key, then the key persisted locally.
    Keys shorter than 11 characters are treated as absent.
    """

    def __init__(self, store: KeyValueStore, session_key: Optional[str] = None):
        self.store = store
        self.session_key = normalize_key(session_key)

    def set_session_key(self, key: Optional[str]) -> None:
        self.session_key = normalize_key(key)

    def local_key(self) -> Optional[str]:
        return normalize_key(self.store.get(KEY_USER_API_KEY))

    def save_local(self, key: str) -> None:
        cleaned = normalize_key(key)
        if cleaned is None:
            raise ValueError("API key is too short")
        self.store.set(KEY_USER_API_KEY, cleaned)

    def clear_local(self) -> None:
        self.store.set(KEY_USER_API_KEY, "")

    def resolve(self) -> Optional[str]:
        return self.session_key or self.local_key()

    def require(self) -> str:
        key = self.resolve()
        if key is None:
            raise AuthenticationError(MISSING_KEY_MESSAGE)
        return key

    def fingerprint(self) -> str:
        key = self.resolve()
        if not key:
            return "None"
        return "..." + key[-4:]

    def diagnostics(self) -> Dict[str, Any]:
        key = self.resolve()
        return {
            "has_api_key": key is not None,
            "key_length": len(key) if key else 0,
            "key_prefix": key[:4] + "..." if key else "N/A",
            "session_key": self.session_key is not None,
            "local_key": self.local_key() is not None,
        }


def to_part(part: PartLike) -> types.Part:
    if isinstance(part, types.Part):
        return part
    return types.Part.from_text(text=part)


def build_config(
    schema: Optional[Any] = None,
    mime_type: Optional[str] = None,
    temperature: Optional[float] = None,
    thinking_budget: Optional[int] = None,
    system_instruction: Optional[str] = None,
) -> Optional[types.GenerateContentConfig]:
    """GenerateContentConfig for the given options, or None when all are unset."""
    kwargs: Dict[str, Any] = {}
    if schema is not None:
        kwargs["response_mime_type"] = "application/json"
        kwargs["response_schema"] = schema
    elif mime_type is not None:
        kwargs["response_mime_type"] = mime_type
    if temperature is not None:
        kwargs["temperature"] = temperature
    if thinking_budget is not None:
        kwargs["thinking_config"] = types.ThinkingConfig(thinking_budget=thinking_budget)
    if system_instruction is not None:
        kwargs["system_instruction"] = system_instruction
    if not kwargs:
        return None
    return types.GenerateContentConfig(**kwargs)


class GeminiClient:
    """Gemini wrapper that records an audit entry for every attempt.

    Args:
        credentials: Resolves the API key for each attempt
        orchestrator: Timeout/retry policy (a default one when omitted)
        model: Gemini model identifier
        log_repository: Local request log; nothing is recorded when None
        remote_logger: Optional async callable (model, mode) fired in the
            background per attempt, e.g. the Supabase usage_logs insert
        client_factory: Builds the SDK client from an API key
    """

    def __init__(
        self,
        credentials: CredentialStore,
        orchestrator: Optional[RequestOrchestrator] = None,
        model: str = DEFAULT_MODEL,
        log_repository: Optional[RequestLogRepository] = None,
        remote_logger: Optional[Callable[[str, str], Awaitable[None]]] = None,
        client_factory: Optional[Callable[[str], Any]] = None,
    ):
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")

        self.credentials = credentials
        self.orchestrator = orchestrator or RequestOrchestrator()
        self.model = model.strip()
        self.log_repository = log_repository
        self.remote_logger = remote_logger
        self.client_factory = client_factory or (lambda api_key: genai.Client(api_key=api_key))
        self._sdk_key: Optional[str] = None
        self._sdk_client: Any = None
        self._background: Set[asyncio.Task] = set()

    def _client(self) -> Any:
        key = self.credentials.require()
        if key != self._sdk_key:
            self._sdk_client = self.client_factory(key)
            self._sdk_key = key
        return self._sdk_client

    async def generate(
        self,
        parts: List[PartLike],
        mode: str,
        schema: Optional[Any] = None,
        mime_type: Optional[str] = None,
        temperature: Optional[float] = None,
        thinking_budget: Optional[int] = None,
        system_instruction: Optional[str] = None,
        timeout_ms: Optional[int] = None,
        retry: bool = True,
        request_type: RequestType = RequestType.GENERATE,
    ) -> str:
        """Generate content and return the response text.

        Args:
            parts: Text prompts and/or SDK parts (inline images, PDFs)
            mode: App mode recorded in the log (SOLVER, EXAM, DRILL, CONCEPT, ...)
            schema: Structured-output schema; forces a JSON response
            mime_type: Response MIME type when no schema is given
            temperature: Sampling temperature
            thinking_budget: Thinking token budget for models that support it
            system_instruction: System prompt
            timeout_ms: Per-attempt deadline override
            retry: False runs a single attempt
            request_type: GENERATE, CHAT or TEST

        Raises:
            ValueError: If parts is empty
            BubbleError: Classified failure of the last attempt
        """
        if not parts:
            raise ValueError("parts is required and cannot be empty")

        contents = [to_part(p) for p in parts]
        config = build_config(schema, mime_type, temperature, thinking_budget, system_instruction)

        async def attempt() -> str:
            return await self._attempt(
                lambda client: client.aio.models.generate_content(
                    model=self.model, contents=contents, config=config
                ),
                mode,
                request_type,
            )

        return await self.orchestrator.invoke(
            attempt,
            max_retries=None if retry else 0,
            timeout_ms=timeout_ms,
        )

    async def generate_json(self, parts: List[PartLike], mode: str, schema: Any, **kwargs: Any) -> Any:
        """Generate against a schema and parse the JSON response.

        Raises:
            ValidationError: If the response is not valid JSON
        """
        text = await self.generate(parts, mode, schema=schema, **kwargs)
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Validation Failed: malformed JSON response ({e.msg})") from e

    async def ping(self) -> bool:
        """Single-attempt connectivity test against the configured model."""
        await self.generate(
            ["Ping"], mode="TEST", request_type=RequestType.TEST,
            retry=False, timeout_ms=PING_TIMEOUT_MS,
        )
        return True

    def chat(self, system_instruction: str) -> "ChatSession":
        """Open a multi-turn chat. Each message is one orchestrated request."""
        client = self._client()
        session = client.aio.chats.create(
            model=self.model,
            config=types.GenerateContentConfig(system_instruction=system_instruction),
        )
        return ChatSession(self, session)

    async def _attempt(self, call: Callable[[Any], Awaitable[Any]], mode: str, request_type: RequestType) -> str:
        start = time.monotonic()
        entry_id = str(uuid.uuid4())
        fingerprint = self.credentials.fingerprint()
        self._fire_remote_log(entry_id, mode, request_type, fingerprint)
        try:
            client = self._client()
            response = await call(client)
            text = response.text
            if not text:
                raise ValidationError("Empty response from AI service.")
        except asyncio.CancelledError:
            self._record(entry_id, mode, request_type, fingerprint, RequestStatus.ERROR, start, "Cancelled")
            raise
        except Exception as exc:
            self._record(entry_id, mode, request_type, fingerprint, RequestStatus.ERROR, start, map_error_message(exc))
            raise
        self._record(entry_id, mode, request_type, fingerprint, RequestStatus.SUCCESS, start)
        return text

    def _record(
        self,
        entry_id: str,
        mode: str,
        request_type: RequestType,
        fingerprint: str,
        status: RequestStatus,
        start: float,
        error_message: Optional[str] = None,
    ) -> None:
        if self.log_repository is None:
            return
        self.log_repository.insert(RequestLogEntry(
            id=entry_id,
            timestamp=datetime.now(),
            model=self.model,
            key_fingerprint=fingerprint,
            request_type=request_type,
            mode=mode,
            status=status,
            latency_ms=int((time.monotonic() - start) * 1000),
            error_message=error_message,
        ))

    def _fire_remote_log(self, entry_id: str, mode: str, request_type: RequestType, fingerprint: str) -> None:
        if self.remote_logger is None:
            return
        task = asyncio.create_task(self._remote_log(entry_id, mode, request_type, fingerprint))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _remote_log(self, entry_id: str, mode: str, request_type: RequestType, fingerprint: str) -> None:
        try:
            await self.remote_logger(self.model, mode)
        except BubbleError as exc:
            self._record_db_error(entry_id, mode, request_type, fingerprint, f"DB_ERROR: {exc}")
        except Exception as exc:
            self._record_db_error(entry_id, mode, request_type, fingerprint, f"DB_EXCEPTION: {exc}")

    def _record_db_error(
        self, entry_id: str, mode: str, request_type: RequestType, fingerprint: str, db_error: str
    ) -> None:
        """Append the remote usage-log failure as a companion row of attempt ``entry_id``."""
        logger.warning("Remote usage log failed: %s", db_error)
        if self.log_repository is None:
            return
        self.log_repository.insert(RequestLogEntry(
            id=f"{entry_id}{DB_ERROR_SUFFIX}",
            timestamp=datetime.now(),
            model=self.model,
            key_fingerprint=fingerprint,
            request_type=request_type,
            mode=mode,
            status=RequestStatus.ERROR,
            db_error=db_error,
        ))

    async def drain(self) -> None:
        """Wait for pending background usage logs."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)


class ChatSession:
    """Thin wrapper over an SDK chat that routes messages through the orchestrator."""

    def __init__(self, client: GeminiClient, session: Any):
        self.client = client
        self.session = session

    async def send(self, message: str, timeout_ms: Optional[int] = None) -> str:
        async def attempt() -> str:
            return await self.client._attempt(
                lambda _: self.session.send_message(message), "CHAT", RequestType.CHAT
            )

        return await self.client.orchestrator.invoke(attempt, timeout_ms=timeout_ms)
