"""Transactional email outbox.

Account flows enqueue notification jobs in the primary store during the
request. A background worker drains pending jobs and delivers them through
the EmailService so request latency never depends on SMTP. The worker also
purges expired revocation records.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Dict, Optional

from murmur.logging import get_logger
from murmur.service.email import EmailService
from murmur.storage.models import Notification, utcnow

if TYPE_CHECKING:
    from murmur.storage.memory import MemoryStore
    from murmur.storage.postgres import PostgresStore

logger = get_logger(__name__)

KIND_CONFIRM_EMAIL = "confirm_email"
KIND_RESET_PASSWORD = "reset_password"
NOTIFICATION_KINDS = (KIND_CONFIRM_EMAIL, KIND_RESET_PASSWORD)

DEFAULT_POLL_INTERVAL_SECONDS = 5
DEFAULT_BATCH_SIZE = 20
DEFAULT_STALE_AFTER_SECONDS = 300


class NotificationOutbox:
    """Writes notification jobs for later delivery."""

    def __init__(self, store: "PostgresStore | MemoryStore") -> None:
        self.store = store

    def enqueue(
        self, kind: str, to_email: str, payload: Optional[Dict[str, Any]] = None
    ) -> Notification:
        if kind not in NOTIFICATION_KINDS:
            raise ValueError(f"unknown notification kind: {kind}")
        job = self.store.enqueue_notification(kind, to_email, payload or {})
        logger.info("notification_enqueued", job_id=job.id, kind=kind)
        return job


class OutboxWorker:
    """Background worker delivering pending notification jobs.

    Delivery failures are terminal: the job is marked ``failed`` with the
    error and never retried automatically.
    Jobs left in ``sending`` for longer than ``stale_after`` seconds, e.g.
    because a worker died mid-delivery, are failed and their code dropped.
    """

    def __init__(
        self,
        store: "PostgresStore | MemoryStore",
        email: EmailService,
        *,
        poll_interval: int = DEFAULT_POLL_INTERVAL_SECONDS,
        batch_size: int = DEFAULT_BATCH_SIZE,
        stale_after: int = DEFAULT_STALE_AFTER_SECONDS,
    ) -> None:
        self.store = store
        self.email = email
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self.stale_after = stale_after
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the background worker."""
        if self._running:
            logger.warning("outbox_worker_already_running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("outbox_worker_started", poll_interval=self.poll_interval)

    async def stop(self) -> None:
        """Stop the background worker."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("outbox_worker_stopped")

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            try:
                self._expire_stale_claims()
                await self.process_pending()
                self._purge_revoked_tokens()
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "outbox_worker_loop_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                # Exponential backoff on repeated errors
                if consecutive_errors > 3:
                    backoff = min(300, self.poll_interval * (2 ** (consecutive_errors - 3)))
                    logger.warning(
                        "outbox_worker_backoff",
                        backoff_seconds=backoff,
                        consecutive_errors=consecutive_errors,
                    )
                    await asyncio.sleep(backoff)
                    continue

            await asyncio.sleep(self.poll_interval)

    def _expire_stale_claims(self) -> int:
        claimed_before = utcnow() - timedelta(seconds=self.stale_after)
        expired = self.store.expire_stale_notifications(claimed_before)
        if expired:
            logger.warning("stale_notifications_expired", count=expired)
        return expired

    def _purge_revoked_tokens(self) -> int:
        purged = self.store.purge_revoked_tokens()
        if purged:
            logger.info("revoked_tokens_purged", count=purged)
        return purged

    async def process_pending(self) -> int:
        """Deliver one batch of pending jobs.

        Returns:
            Number of jobs delivered successfully
        """
        jobs = self.store.claim_notifications(self.batch_size)
        delivered = 0
        for job in jobs:
            if await self._deliver(job):
                delivered += 1
        if jobs:
            logger.info(
                "outbox_batch_processed", claimed=len(jobs), delivered=delivered
            )
        return delivered

    async def _deliver(self, job: Notification) -> bool:
        code = job.payload.get("code")
        if not code:
            self.store.complete_notification(
                job.id, success=False, error="payload missing code"
            )
            logger.error("notification_invalid_payload", job_id=job.id, kind=job.kind)
            return False

        if job.kind == KIND_CONFIRM_EMAIL:
            sent = await asyncio.to_thread(
                self.email.send_confirmation_code, job.to_email, code
            )
        elif job.kind == KIND_RESET_PASSWORD:
            sent = await asyncio.to_thread(
                self.email.send_password_reset_code,
                job.to_email,
                code,
                expires_minutes=int(job.payload.get("expires_minutes", 10)),
            )
        else:
            self.store.complete_notification(
                job.id, success=False, error=f"unknown kind {job.kind}"
            )
            logger.error("notification_unknown_kind", job_id=job.id, kind=job.kind)
            return False

        if sent:
            self.store.complete_notification(job.id, success=True)
            logger.info("notification_sent", job_id=job.id, kind=job.kind)
        else:
            self.store.complete_notification(
                job.id, success=False, error="email delivery failed"
            )
            logger.warning("notification_failed", job_id=job.id, kind=job.kind)
        return sent
