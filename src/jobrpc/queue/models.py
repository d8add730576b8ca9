"""Domain models for the RPC job queue."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any


class RpcJobStatus(str, Enum):
    """Durable job lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


REUSABLE_STATUSES = frozenset(
    {RpcJobStatus.PENDING, RpcJobStatus.PROCESSING, RpcJobStatus.COMPLETED},
)
TERMINAL_STATUSES = frozenset({RpcJobStatus.COMPLETED, RpcJobStatus.FAILED})


@dataclass(slots=True)
class RpcJobView:
    """Readable job view for the caller, daemon, and CLI."""

    job_id: str
    handler_path: str
    args: dict[str, Any]
    secret: str
    status: RpcJobStatus
    result: Any
    error: str | None
    attempt: int
    worker_id: str | None
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    expires_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


def canonical_json(value: Any) -> str:
    """Serialize to a stable JSON string so equal arguments compare equal."""

    return json.dumps(value, ensure_ascii=False, sort_keys=True, separators=(",", ":"))


def args_fingerprint(handler_path: str, args_json: str) -> str:
    """Dedup key for a handler invocation with canonical arguments."""

    digest = hashlib.sha256()
    digest.update(handler_path.encode("utf-8"))
    digest.update(b"\x00")
    digest.update(args_json.encode("utf-8"))
    return digest.hexdigest()
