"""
Credential reconciliation and system health checks.

The BYOK key lives in two places: the local state database and the
user_api_keys table. These helpers keep the copies consistent on a
best-effort basis and report on their state.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Optional

from ..core.errors import BubbleError
from ..core.usage import KEY_USAGE_DATE
from ..sdk.gemini_client import CredentialStore, GeminiClient, normalize_key
from .supabase_backend import SupabaseBackend

logger = logging.getLogger(__name__)


async def reconcile_keys(credentials: CredentialStore, backend: SupabaseBackend, user_id: str) -> bool:
    """Bring the local and remote key copies in line.

    A key stored remotely wins and becomes the session key. Otherwise a
    local key is pushed up. A remote key too short to be valid counts
    as absent. Failures are logged, never raised.

    Returns:
        True when both copies are known to hold the same key
    """
    remote_key = normalize_key(await backend.get_gemini_key(user_id))
    if remote_key:
        credentials.set_session_key(remote_key)
        if credentials.local_key() != remote_key:
            credentials.save_local(remote_key)
        return True

    local_key = credentials.local_key()
    if local_key is None:
        return False
    try:
        await backend.save_gemini_key(user_id, local_key)
    except BubbleError as e:
        logger.warning("Key sync failed: %s", e)
        return False
    return True


@dataclass
class HealthChecks:
    database: bool = False
    api_key: bool = False
    local_storage: bool = False
    db_key_found: bool = False
    key_mismatch: bool = False


@dataclass
class SystemHealthReport:
    timestamp: float
    checks: HealthChecks = field(default_factory=HealthChecks)
    user_id: Optional[str] = None
    key_mode: str = "NONE"
    latency_ms: int = 0


async def run_deep_system_check(
    credentials: CredentialStore,
    client: Optional[GeminiClient] = None,
    backend: Optional[SupabaseBackend] = None,
) -> SystemHealthReport:
    """Probe local storage, the database copy of the key and the model API."""
    report = SystemHealthReport(timestamp=time.time())

    try:
        credentials.store.get(KEY_USAGE_DATE)
        report.checks.local_storage = True
    except Exception as e:
        logger.error("Diagnostic: local storage check failed: %s", e)

    local_key = credentials.local_key()
    if backend is not None:
        user = await backend.get_current_user()
        if user is not None:
            report.user_id = user.id
            try:
                remote_key = await backend.get_gemini_key(user.id, strict=True)
                report.checks.database = True
                if remote_key:
                    report.checks.db_key_found = True
                    report.checks.key_mismatch = bool(local_key and local_key != remote_key)
            except BubbleError as e:
                logger.error("Diagnostic: DB check failed: %s", e)

    if credentials.resolve() is not None:
        report.key_mode = "CUSTOM"
        if client is not None:
            start = time.monotonic()
            try:
                await client.ping()
                report.latency_ms = int((time.monotonic() - start) * 1000)
                report.checks.api_key = True
            except BubbleError as e:
                logger.error("Diagnostic: API ping failed: %s", e)

    return report
