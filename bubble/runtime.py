"""
Wiring of the application objects from configuration.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from .backend.supabase_backend import SupabaseBackend, User, create_backend
from .backend.sync import reconcile_keys
from .config.loader import BubbleConfig, load_config
from .core.errors import BubbleError
from .core.orchestrator import RequestOrchestrator
from .core.usage import UsageCounters
from .sdk.gemini_client import CredentialStore, GeminiClient
from .storage.repository import LocalStateRepository, RequestLogRepository, initialize_schema
from .tutor.service import TutorService

logger = logging.getLogger(__name__)

KEY_ACCESS_TOKEN = "bubble_session_access_token"
KEY_REFRESH_TOKEN = "bubble_session_refresh_token"


@dataclass
class Runtime:
    config: BubbleConfig
    state: LocalStateRepository
    logs: RequestLogRepository
    usage: UsageCounters
    orchestrator: RequestOrchestrator
    credentials: CredentialStore
    client: GeminiClient
    tutor: TutorService
    backend: Optional[SupabaseBackend] = None


def _soft_limit_warning(warning: BubbleError) -> None:
    logger.warning("%s Requests continue, but consider slowing down.", warning)


def build_runtime(config_path: Optional[str] = None, config: Optional[BubbleConfig] = None) -> Runtime:
    """Create every collaborator from a config file (or an explicit config)."""
    if config is None:
        config = load_config(config_path)

    initialize_schema(config.db_path)
    state = LocalStateRepository(config.db_path)
    logs = RequestLogRepository(config.db_path)
    usage = UsageCounters(state, default_limit=config.usage.daily_limit).load()

    orchestrator = RequestOrchestrator(
        usage=usage,
        max_retries=config.retry.max_retries,
        initial_delay_ms=config.retry.initial_delay_ms,
        timeout_ms=config.retry.timeout_ms,
        on_warning=_soft_limit_warning,
    )
    credentials = CredentialStore(state, session_key=config.api_key)
    client = GeminiClient(credentials, orchestrator, model=config.model, log_repository=logs)

    backend = None
    if config.supabase.enabled:
        backend = create_backend(config.supabase.url, config.supabase.key)

    return Runtime(
        config=config,
        state=state,
        logs=logs,
        usage=usage,
        orchestrator=orchestrator,
        credentials=credentials,
        client=client,
        tutor=TutorService(client),
        backend=backend,
    )


async def attach_user(runtime: Runtime, user: User) -> bool:
    """Sync the user's key with the cloud copy and start remote usage logging.

    Returns:
        True when local and remote keys agree afterwards
    """
    if runtime.backend is None:
        return False
    synced = await reconcile_keys(runtime.credentials, runtime.backend, user.id)
    runtime.client.remote_logger = runtime.backend.usage_logger(user)
    return synced


async def persist_session(runtime: Runtime) -> bool:
    """Store the active session tokens so later runs can restore them."""
    if runtime.backend is None:
        return False
    tokens = await runtime.backend.session_tokens()
    if tokens is None:
        return False
    access_token, refresh_token = tokens
    runtime.state.set(KEY_ACCESS_TOKEN, access_token)
    runtime.state.set(KEY_REFRESH_TOKEN, refresh_token)
    return True


def forget_session(runtime: Runtime) -> None:
    runtime.state.delete(KEY_ACCESS_TOKEN)
    runtime.state.delete(KEY_REFRESH_TOKEN)
    runtime.client.remote_logger = None


async def restore_user(runtime: Runtime) -> Optional[User]:
    """Resume the persisted session, if any, and attach the user.

    Tokens that no longer work are forgotten. Refreshed tokens are stored
    again.
    """
    if runtime.backend is None:
        return None
    access_token = runtime.state.get(KEY_ACCESS_TOKEN)
    refresh_token = runtime.state.get(KEY_REFRESH_TOKEN)
    if not access_token or not refresh_token:
        return None

    user = await runtime.backend.restore_session(access_token, refresh_token)
    if user is None:
        forget_session(runtime)
        return None
    await attach_user(runtime, user)
    await persist_session(runtime)
    return user
