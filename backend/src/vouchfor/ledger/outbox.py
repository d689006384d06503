"""Outbox worker driving deferred attribution, commission and refund work.

Tasks are written in the same transaction as the state change that needs
them. Any number of workers may run; a task is leased through a
conditional update before it executes, and every handler is idempotent, so
a task that runs twice after a lease expiry does no harm.
"""

import threading
from collections.abc import Callable
from datetime import timedelta

from sqlalchemy.exc import SQLAlchemyError

from vouchfor.ledger.attribution import AttributionResolver
from vouchfor.ledger.commission import CommissionEngine
from vouchfor.ledger.exceptions import NotAttributedError
from vouchfor.ledger.refunds import RefundProcessor
from vouchfor.logging_config import get_logger
from vouchfor.settings import settings
from vouchfor.storage.db import Database
from vouchfor.storage.models import ConversionStatus, OutboxKind, OutboxTask
from vouchfor.storage.repo import OutboxRepository
from vouchfor.utils import utcnow

logger = get_logger(__name__)


class OutboxWorker:
    """Executes due outbox tasks with retry and dead-lettering."""

    def __init__(
        self,
        db: Database,
        resolver: AttributionResolver | None = None,
        commission_engine: CommissionEngine | None = None,
        refunds: RefundProcessor | None = None,
        max_attempts: int | None = None,
        backoff_seconds: float | None = None,
        max_backoff_seconds: float | None = None,
        lease_seconds: int | None = None,
        batch_size: int | None = None,
    ):
        self.db = db
        # Commission work runs as its own task here, not inline after attribution
        self.resolver = resolver or AttributionResolver(db)
        self.commission_engine = commission_engine or CommissionEngine(db)
        self.refunds = refunds or RefundProcessor(db)

        self.max_attempts = max_attempts or settings.outbox_max_attempts
        self.backoff_seconds = settings.outbox_backoff_seconds if backoff_seconds is None else backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds or settings.outbox_max_backoff_seconds
        self.lease_seconds = lease_seconds or settings.outbox_lease_seconds
        self.batch_size = batch_size or settings.outbox_batch_size

        self.handlers: dict[OutboxKind, Callable[[str], object]] = {
            OutboxKind.ATTRIBUTE: self.resolver.attribute,
            OutboxKind.COMMISSION: self._calculate_commission,
            OutboxKind.REFUND: self.refunds.refund_conversion,
        }

    def _calculate_commission(self, conversion_id: str) -> None:
        try:
            self.commission_engine.calculate_commission(conversion_id)
        except NotAttributedError as e:
            if e.status != ConversionStatus.REFUNDED.value:
                raise
            # Refund overtook the commission task; nothing is owed
            logger.info("commission_skipped_refunded", conversion_id=conversion_id)

    def backoff_for(self, attempts: int) -> float:
        """Delay before retry number ``attempts`` (1-based)."""
        delay = self.backoff_seconds * (2 ** max(attempts - 1, 0))
        return min(delay, self.max_backoff_seconds)

    def run_once(self, limit: int | None = None, conversion_id: str | None = None) -> int:
        """Run the tasks that are due now.

        Args:
            limit: Maximum tasks to claim (defaults to batch size)
            conversion_id: Only run tasks belonging to this conversion

        Returns:
            Number of tasks executed
        """
        now = utcnow()
        with self.db.session() as session:
            due_ids = OutboxRepository(session).list_due_ids(
                now, limit or self.batch_size, conversion_id=conversion_id
            )

        executed = 0
        for task_id in due_ids:
            with self.db.session() as session:
                repo = OutboxRepository(session)
                if not repo.claim(task_id, utcnow(), self.lease_seconds):
                    continue
                task = repo.get_by_id(task_id)

            self._execute(task)
            executed += 1

        return executed

    def drain(self, conversion_id: str, max_rounds: int = 5) -> int:
        """Run due tasks for one conversion until none are left.

        Tasks enqueued by earlier tasks (commission after attribution) are
        picked up in the following round.
        """
        total = 0
        for _ in range(max_rounds):
            executed = self.run_once(conversion_id=conversion_id)
            if not executed:
                break
            total += executed
        return total

    def run_forever(
        self,
        poll_interval: float | None = None,
        stop_event: threading.Event | None = None,
    ) -> None:
        """Poll for due tasks until ``stop_event`` is set."""
        poll_interval = settings.worker_poll_interval if poll_interval is None else poll_interval
        stop_event = stop_event or threading.Event()
        logger.info("outbox_worker_started", poll_interval=poll_interval)

        while not stop_event.is_set():
            try:
                executed = self.run_once()
            except SQLAlchemyError as e:
                # Store outages are retried on the next poll
                logger.error("outbox_poll_failed", error=str(e), exc_info=True)
                executed = 0
            if executed == 0:
                stop_event.wait(poll_interval)

        logger.info("outbox_worker_stopped")

    def _execute(self, task: OutboxTask) -> bool:
        handler = self.handlers[task.kind]
        log = logger.bind(
            task_id=task.id,
            kind=task.kind.value,
            conversion_id=task.conversion_id,
            attempt=task.attempts + 1,
        )

        try:
            handler(task.conversion_id)
        except Exception as e:
            self._record_failure(task, e)
            return False

        with self.db.session() as session:
            OutboxRepository(session).mark_done(task.id)
        log.info("outbox_task_done")
        return True

    def _record_failure(self, task: OutboxTask, error: Exception) -> None:
        attempts = task.attempts + 1
        retryable = getattr(error, "retryable", True)
        message = f"{type(error).__name__}: {error}"

        if not retryable or attempts >= self.max_attempts:
            next_attempt_at = None
            logger.error(
                "outbox_task_dead",
                task_id=task.id,
                kind=task.kind.value,
                conversion_id=task.conversion_id,
                attempts=attempts,
                error=message,
            )
        else:
            delay = self.backoff_for(attempts)
            next_attempt_at = utcnow() + timedelta(seconds=delay)
            logger.warning(
                "outbox_task_retry",
                task_id=task.id,
                kind=task.kind.value,
                conversion_id=task.conversion_id,
                attempts=attempts,
                retry_in_seconds=delay,
                error=message,
            )

        with self.db.session() as session:
            OutboxRepository(session).mark_failed(task.id, message, next_attempt_at)
