from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


# =========================
# Enums
# =========================
class SkillStatus(str, Enum):
    SUCCESS = "success"
    REJECTED = "rejected"
    ERROR = "error"


class AuditEvent(str, Enum):
    EXECUTION_START = "execution_start"
    EXECUTION_END = "execution_end"
    CACHE_HIT = "cache_hit"
    REJECTED = "rejected"
    TOPOLOGY_ERROR = "topology_error"
    EXECUTION_ERROR = "execution_error"
    SUCCESS = "success"


# =========================
# SKILL RESULT
# =========================
class SkillResult(BaseModel):
    """
    Outcome of one skill execution.

    `result` is the opaque encoded row stream, `meta` is either JSON metadata
    (success) or a plain-text reason/cause (rejected, error).
    """

    query_id: str
    result: bytes = b""
    meta: bytes = b""
    timestamp: datetime
    status: SkillStatus

    model_config = ConfigDict(frozen=True)


# =========================
# AUDIT
# =========================
class AuditEntry(BaseModel):
    timestamp: datetime
    query_id: str
    event_type: str
    data: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


# =========================
# HTTP ADAPTER
# =========================
class ExecuteRequest(BaseModel):
    query: str
    timeout_seconds: float = Field(default=30.0, gt=0, le=300)


class ExecuteResponse(BaseModel):
    query_id: str
    status: SkillStatus
    timestamp: datetime
    duration_ms: int
    result_size: int
    metadata: Optional[Dict[str, Any]] = None
    detail: Optional[str] = None
    # base64, only inlined for small results
    result: Optional[str] = None
