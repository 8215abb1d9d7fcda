"""
PlayGuard — Anomaly Logger

Fire-and-forget recorder of rejected and suspicious submissions. `log()`
never blocks and never raises: records go onto a bounded queue and a
background task writes them to the store. When the store is down the
queue fills up and the oldest records are dropped; every record is also
written to the local log so nothing is lost silently.
"""
import asyncio
import logging
from datetime import timedelta
from typing import Optional

from playguard.config import config
from playguard.models import utcnow
from playguard.store import AnomalyRecord, Store

logger = logging.getLogger(__name__)


class AnomalyLogger:

    def __init__(self, store: Store, max_queue: int = None):
        self.store = store
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue or config.ANOMALY_QUEUE_SIZE)
        self.dropped = 0
        self.write_failures = 0
        self._task: Optional[asyncio.Task] = None

    # ───────── Producer ─────────

    def log(
        self,
        wallet: str,
        reason: str,
        details: dict = None,
        ip_address: str = None,
        user_agent: str = None,
    ) -> AnomalyRecord:
        record = AnomalyRecord(
            wallet=wallet,
            reason=reason,
            details=dict(details or {}),
            ip_address=ip_address,
            user_agent=user_agent,
        )
        logger.warning(f"[ANTI-CHEAT] wallet={wallet} reason={reason} details={record.details}")

        if self.queue.full():
            try:
                oldest = self.queue.get_nowait()
                self.queue.task_done()
                self.dropped += 1
                logger.warning(f"Anomaly queue full, dropped record for {oldest.wallet} ({oldest.reason})")
            except asyncio.QueueEmpty:
                pass
        self.queue.put_nowait(record)
        return record

    # ───────── Consumer ─────────

    async def _write(self, record: AnomalyRecord):
        try:
            await self.store.append_anomaly(record)
        except Exception as e:
            self.write_failures += 1
            logger.error(f"Anomaly write failed for {record.wallet} ({record.reason}): {e}")

    async def _worker(self):
        while True:
            record = await self.queue.get()
            try:
                await self._write(record)
            finally:
                self.queue.task_done()

    def start(self):
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._worker())
            logger.info("Anomaly writer started")

    async def flush(self):
        """Wait until every queued record has been written (or failed)."""
        if self._task is not None and not self._task.done():
            await self.queue.join()
            return
        while not self.queue.empty():
            record = self.queue.get_nowait()
            try:
                await self._write(record)
            finally:
                self.queue.task_done()

    async def stop(self):
        await self.flush()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    # ───────── Offline review ─────────

    async def suspicious_wallets(self, days: int = None, min_incidents: int = None) -> list[dict]:
        since = utcnow() - timedelta(days=days or config.SUSPICIOUS_WINDOW_DAYS)
        return await self.store.suspicious_wallets(
            since, min_incidents or config.SUSPICIOUS_MIN_INCIDENTS,
        )
