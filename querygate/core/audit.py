# querygate/core/audit.py
"""
AUDIT LOGGER - Append-only trail of what the skill did with every request

Two ways of running:
    - async (performance.async_processing): log_event() does a non-blocking
      put on a bounded queue and a single consumer task writes entries out.
      A full queue drops the entry; the request never waits on auditing.
    - sync: the entry is written inline.

Sinks:
    - "file":    JSON lines in <path>/audit_YYYY-MM-DD.log (UTC day)
    - "console": JSON lines through the "querygate.audit" logger

Audit failures are logged and swallowed; they never change a query result.
"""

import asyncio
import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic_core import PydanticSerializationError

from querygate.core.config import AuditSettings
from querygate.core.schemas import AuditEntry

logger = logging.getLogger(__name__)
audit_trail = logging.getLogger("querygate.audit")


class AuditLogger:
    def __init__(self, audit_settings: AuditSettings, async_processing: bool):
        self.settings = audit_settings
        self.enabled = audit_settings.enabled and audit_settings.level != "none"
        self.async_processing = async_processing
        self.path = Path(audit_settings.storage.path)

        self._queue: "asyncio.Queue[AuditEntry]" = asyncio.Queue(
            maxsize=audit_settings.queue_size
        )
        self._consumer: Optional[asyncio.Task] = None
        self._write_lock = threading.Lock()
        self._closed = False
        self.dropped = 0

        if self.enabled and audit_settings.storage.type == "file":
            self.path.mkdir(parents=True, exist_ok=True)

    def log_event(
        self, query_id: str, event_type: str, data: Optional[Dict[str, Any]] = None
    ) -> None:
        if not self.enabled or self._closed:
            return

        entry = AuditEntry(
            timestamp=datetime.now(timezone.utc),
            query_id=query_id,
            event_type=str(getattr(event_type, "value", event_type)),
            data=self._filter_payload(data or {}),
        )

        if not self.async_processing:
            self._write(entry)
            return

        self._ensure_consumer()
        try:
            self._queue.put_nowait(entry)
        except asyncio.QueueFull:
            # Dropping beats blocking the request
            self.dropped += 1

    async def close(self) -> None:
        """Stop accepting events; in async mode wait for the queue to drain."""
        if self._closed:
            return
        self._closed = True

        if self._consumer is None:
            return

        await self._queue.join()
        self._consumer.cancel()
        try:
            await self._consumer
        except asyncio.CancelledError:
            pass
        if self.dropped:
            logger.warning("Audit queue overflowed, %d entries were dropped", self.dropped)

    def partition_for(self, entry: AuditEntry) -> Path:
        return self.path / f"audit_{entry.timestamp:%Y-%m-%d}.log"

    def _filter_payload(self, data: Dict[str, Any]) -> Dict[str, Any]:
        if self.settings.level == "basic":
            return {key: value for key, value in data.items() if key != "input"}
        return dict(data)

    def _ensure_consumer(self) -> None:
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.get_running_loop().create_task(self._consume())

    async def _consume(self) -> None:
        while True:
            entry = await self._queue.get()
            try:
                await asyncio.to_thread(self._write, entry)
            except Exception as e:
                # One bad entry must not take the consumer (and shutdown) down with it
                logger.warning("Audit write failed for %s: %r", entry.query_id, e)
            finally:
                self._queue.task_done()

    def _write(self, entry: AuditEntry) -> None:
        line = serialize_entry(entry)

        if self.settings.storage.type == "console":
            audit_trail.info(line)
            return

        try:
            with self._write_lock:
                with open(self.partition_for(entry), "a", encoding="utf-8") as fh:
                    fh.write(line + "\n")
        except OSError as e:
            logger.warning("Audit write failed for %s: %s", entry.query_id, e)


def serialize_entry(entry: AuditEntry) -> str:
    """JSON line for an entry; payload values JSON can't express are stringified."""
    try:
        return entry.model_dump_json()
    except PydanticSerializationError:
        return json.dumps(entry.model_dump(), default=_json_fallback, ensure_ascii=False)


def _json_fallback(value: Any) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)
