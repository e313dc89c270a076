"""
Data models for storage layer.

Defines the records persisted to the local database.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class RequestType(Enum):
    GENERATE = "GENERATE"
    CHAT = "CHAT"
    TEST = "TEST"


class RequestStatus(Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"


@dataclass(frozen=True)
class RequestLogEntry:
    """Immutable record of one attempt against the generative-content API.

    One entry is appended per attempt, so a call retried twice leaves
    three entries.
    """
    id: str
    timestamp: datetime
    model: str
    key_fingerprint: str
    request_type: RequestType
    mode: str
    status: RequestStatus
    latency_ms: Optional[int] = None
    error_message: Optional[str] = None
    db_error: Optional[str] = None
