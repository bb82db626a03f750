"""
Structured audit trail: every sync pass, recovery attempt and session
rejection is written to a JSON Lines file and to the ``audit_log`` table.

Writes are queued and flushed by a background task so a slow database
never stalls a sync pass.  Audit failures are logged, never raised.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import asyncpg

logger = logging.getLogger("shared.audit")

_DEFAULT_LOG_PATH = Path("/var/log/tg-mirror/audit.log")
_INSERT_AUDIT_SQL = (
    "INSERT INTO audit_log (service, action, user_id, details, success) "
    "VALUES ($1, $2, $3, $4::jsonb, $5)"
)


@dataclass(slots=True)
class _AuditRecord:
    json_line: str
    action: str
    user_id: Optional[int]
    details_json: str
    success: bool


class AuditLogger:
    """Buffered audit logger that writes to both file and database.

    Args:
        pool: ``asyncpg`` connection pool (needs INSERT on ``audit_log``).
        log_path: Path to the JSON Lines audit log file.
        service: Service name stamped on every record.
        queue_size: Max queued events before producers backpressure.
        flush_batch_size: Max queued events written per round-trip.
    """

    def __init__(
        self,
        pool: asyncpg.Pool,
        log_path: Path = _DEFAULT_LOG_PATH,
        service: str = "mirror",
        queue_size: int = 1024,
        flush_batch_size: int = 64,
    ) -> None:
        self._pool = pool
        self._log_path = log_path
        self._service = service
        self._flush_batch_size = max(1, flush_batch_size)
        self._queue: asyncio.Queue[_AuditRecord | None] = asyncio.Queue(
            maxsize=max(1, queue_size)
        )
        self._worker_task: asyncio.Task[None] | None = None
        self._closed = False

    def _ensure_worker(self) -> None:
        if self._worker_task is None:
            self._worker_task = asyncio.get_running_loop().create_task(
                self._worker(),
                name="tg-mirror-audit-writer",
            )

    async def _write_batch(self, batch: list[_AuditRecord]) -> None:
        try:
            self._log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._log_path, "a", encoding="utf-8") as handle:
                handle.write("".join(item.json_line for item in batch))
        except OSError:
            logger.exception("Failed to write audit log file")

        try:
            async with self._pool.acquire() as conn:
                await conn.executemany(
                    _INSERT_AUDIT_SQL,
                    [
                        (self._service, item.action, item.user_id, item.details_json, item.success)
                        for item in batch
                    ],
                )
        except Exception:
            logger.exception("Failed to write audit log to database")

    async def _worker(self) -> None:
        while True:
            record = await self._queue.get()
            if record is None:
                return

            batch = [record]
            stop = False
            while len(batch) < self._flush_batch_size:
                try:
                    pending = self._queue.get_nowait()
                except asyncio.QueueEmpty:
                    break
                if pending is None:
                    stop = True
                    break
                batch.append(pending)

            await self._write_batch(batch)
            if stop:
                return

    async def log(
        self,
        action: str,
        details: Optional[Dict[str, Any]] = None,
        *,
        user_id: Optional[int] = None,
        success: bool = True,
    ) -> None:
        """Queue an audit event.

        Args:
            action: Action identifier (``"sync_pass"``, ``"startup_recovery"``,
                    ``"session_rejected"``, ...).
            details: JSON-serialisable metadata.
            user_id: Mirrored user the event concerns, if any.
            success: Whether the action succeeded.
        """
        if self._closed:
            logger.debug("Dropping audit event after close: action=%s", action)
            return

        payload = details or {}
        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "service": self._service,
            "action": action,
            "user_id": user_id,
            "details": payload,
            "success": success,
        }
        self._ensure_worker()
        await self._queue.put(
            _AuditRecord(
                json_line=json.dumps(event, default=str) + "\n",
                action=action,
                user_id=user_id,
                details_json=json.dumps(payload, default=str),
                success=success,
            )
        )

    async def close(self) -> None:
        """Flush queued events and stop the background writer."""
        if self._closed:
            return
        self._closed = True
        worker = self._worker_task
        if worker is not None:
            await self._queue.put(None)
            await worker
