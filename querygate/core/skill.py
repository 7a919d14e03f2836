# querygate/core/skill.py
"""
GUARDED QUERY SKILL - Per-request orchestration

Flow of one execute() call:

    closed? → audit start → cache hit? ──────────────────────────────┐
                              ↓ miss                                  │
                        guard pipeline (L1..L5) ── rejected ─────────┤
                              ↓ allowed                               │
                        topology → fingerprint → template             │
                              ↓                                       │
                        isolated execution ── ExecutionError ────────┤
                              ↓                                       │
                        decode rows → encode/compress → cache         │
                              ↓                                       ↓
                        audit success ─────────────────────→ audit end (always)

Rejections and execution failures are ordinary results; only a closed skill
raises.
"""

import json
import logging
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from querygate.core.audit import AuditLogger
from querygate.core.cache import QueryCache
from querygate.core.config import Settings
from querygate.core.context import RequestContext
from querygate.core.encoding import encrypt_result
from querygate.core.exceptions import ExecutionError, SkillClosedError
from querygate.core.executor import QueryExecutor, bind_parameters, decode_rows
from querygate.core.guard.execution import ExecutionController
from querygate.core.guard.permission import PermissionController
from querygate.core.guard.pipeline import GuardSystem
from querygate.core.interfaces import Skill
from querygate.core.schemas import AuditEvent, SkillResult, SkillStatus
from querygate.core.semantic.evolver import SchemaEvolver
from querygate.core.semantic.topology import SemanticTopology

logger = logging.getLogger(__name__)


def generate_query_id() -> str:
    return uuid.uuid4().hex[:24]


class GuardedQuerySkill(Skill):
    def __init__(self, settings: Settings, engine: AsyncEngine):
        self.settings = settings
        self.engine = engine

        self.permission_ctrl = PermissionController(settings.security)
        self.execution_ctrl = ExecutionController(settings)
        self.guard_system = GuardSystem(settings, self.permission_ctrl, self.execution_ctrl)
        self.topology = SemanticTopology()
        self.evolver = SchemaEvolver(settings.templates.max_patterns)
        self.cache = QueryCache(settings.cache)
        self.audit_logger = AuditLogger(settings.audit, settings.performance.async_processing)
        self.executor = QueryExecutor(
            engine,
            isolation_level=self.execution_ctrl.isolation_level,
            total_timeout=self.execution_ctrl.total_timeout,
            max_rows=settings.security.resource_limits.max_rows,
        )

        self._lock = threading.Lock()
        self._closed = False

    def capability_id(self) -> str:
        return f"{self.settings.app.name}-{self.settings.app.version}"

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    async def execute(
        self, input_text: str, ctx: Optional[RequestContext] = None
    ) -> SkillResult:
        if self.closed:
            raise SkillClosedError()

        ctx = ctx or RequestContext.background()
        query_id = generate_query_id()
        started = time.monotonic()

        self.audit_logger.log_event(query_id, AuditEvent.EXECUTION_START, {"input": input_text})
        try:
            return await self._run(query_id, input_text, ctx, started)
        finally:
            self.audit_logger.log_event(
                query_id,
                AuditEvent.EXECUTION_END,
                {"duration_ms": _elapsed_ms(started)},
            )

    async def safe_shutdown(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True

        logger.info("Shutting down %s", self.capability_id())
        await self.audit_logger.close()
        await self.cache.close()
        await self.engine.dispose()

    async def _run(
        self, query_id: str, input_text: str, ctx: RequestContext, started: float
    ) -> SkillResult:
        # Cache first: a hit skips guards and execution entirely
        if self.settings.cache.enabled:
            cached = self.cache.get(input_text)
            if cached is not None:
                self.audit_logger.log_event(query_id, AuditEvent.CACHE_HIT, {"input": input_text})
                return cached

        # Five layer guard check
        decision = self.guard_system.check_all_guards(ctx, input_text)
        if not decision.allowed:
            self.audit_logger.log_event(
                query_id, AuditEvent.REJECTED, {"input": input_text, "reason": decision.reason}
            )
            return self._build_result(query_id, SkillStatus.REJECTED, meta=decision.reason)

        topology = self.topology.build_topology(input_text)
        if topology is None:
            self.audit_logger.log_event(query_id, AuditEvent.TOPOLOGY_ERROR, {"input": input_text})
            return self._build_result(query_id, SkillStatus.ERROR, meta="topology_build_failed")

        fingerprint = self.topology.generate_topology_fingerprint(topology)
        template = self.evolver.resolve(fingerprint)
        max_rows = self.settings.security.resource_limits.max_rows

        exec_ctx = self.execution_ctrl.get_execution_context(ctx)
        compression = self.settings.performance.compression
        try:
            fetched = await self.executor.execute(
                exec_ctx, template, bind_parameters(template, max_rows)
            )
            rows = decode_rows(fetched, max_rows)
            encoded = encrypt_result(rows, compression.enabled, compression.algorithm)
        except ExecutionError as e:
            logger.warning("Query %s failed: %s", query_id, e)
            self.audit_logger.log_event(
                query_id,
                AuditEvent.EXECUTION_ERROR,
                {
                    "input": input_text,
                    "error": str(e),
                    "timeout": self.settings.execution.timeout.total,
                },
            )
            return self._build_result(query_id, SkillStatus.ERROR, meta=f"execution_failed: {e}")

        result = self._build_result(
            query_id,
            SkillStatus.SUCCESS,
            result=encoded,
            meta=self._generate_metadata(input_text, template, len(rows)),
        )

        if self.settings.cache.enabled:
            self.cache.set(input_text, result)

        self.audit_logger.log_event(
            query_id,
            AuditEvent.SUCCESS,
            {
                "input": input_text,
                "template": template,
                "row_count": len(rows),
                "duration_ms": _elapsed_ms(started),
            },
        )
        return result

    @staticmethod
    def _build_result(
        query_id: str, status: SkillStatus, result: bytes = b"", meta: Any = b""
    ) -> SkillResult:
        if isinstance(meta, str):
            meta = meta.encode("utf-8")
        return SkillResult(
            query_id=query_id,
            result=result,
            meta=meta,
            timestamp=datetime.now(timezone.utc),
            status=status,
        )

    @staticmethod
    def _generate_metadata(input_text: str, template: str, row_count: int) -> bytes:
        metadata: Dict[str, Any] = {
            "input_length": len(input_text.encode("utf-8")),
            "template_used": template,
            "row_count": row_count,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        return json.dumps(metadata, ensure_ascii=False).encode("utf-8")


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
