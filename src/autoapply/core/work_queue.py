from __future__ import annotations

import logging
import os
import socket
import threading
import time
from collections import deque
from collections.abc import Callable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from autoapply.config import Settings
from autoapply.db.models import WorkItem
from autoapply.db.session import SessionLocal

logger = logging.getLogger(__name__)

APPLY_QUEUE = "apply"
DISCOVERY_QUEUE = "discovery"


@dataclass(slots=True)
class ClaimedItem:
    id: int
    queue_name: str
    idempotency_key: str
    payload: dict[str, Any]
    attempt: int
    max_attempts: int

    @property
    def is_last_attempt(self) -> bool:
        return self.attempt >= self.max_attempts


class WorkQueue:
    """Durable at-least-once queue backed by the ``work_items`` table.

    An idempotency key maps to exactly one item per queue. Claims are conditional updates, so an
    item is ACTIVE for at most one worker at a time. Failed items are retried with exponential
    backoff until ``max_attempts`` is spent, then parked as DEAD.
    """

    def __init__(
        self,
        name: str,
        *,
        session_factory: Callable[[], Session] = SessionLocal,
        max_attempts: int = 3,
        backoff_base_sec: float = 5.0,
    ):
        self.name = name
        self.session_factory = session_factory
        self.max_attempts = max_attempts
        self.backoff_base_sec = backoff_base_sec

    def enqueue(
        self,
        payload: dict[str, Any],
        *,
        idempotency_key: str,
        max_attempts: int | None = None,
        delay_sec: float = 0.0,
    ) -> tuple[int, bool]:
        with self.session_factory() as session:
            existing = self._find(session, idempotency_key)
            if existing is not None:
                return existing.id, False

            item = WorkItem(
                queue_name=self.name,
                idempotency_key=idempotency_key,
                payload_json=payload,
                status="PENDING",
                attempts=0,
                max_attempts=max_attempts or self.max_attempts,
                available_at=datetime.now(UTC) + timedelta(seconds=delay_sec),
            )
            session.add(item)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                existing = self._find(session, idempotency_key)
                if existing is None:
                    raise
                return existing.id, False
            logger.debug("Enqueued queue=%s key=%s item_id=%s", self.name, idempotency_key, item.id)
            return item.id, True

    def claim(self, worker_id: str) -> ClaimedItem | None:
        now = datetime.now(UTC)
        with self.session_factory() as session:
            candidates = session.scalars(
                select(WorkItem.id)
                .where(
                    and_(
                        WorkItem.queue_name == self.name,
                        WorkItem.status == "PENDING",
                        WorkItem.available_at <= now,
                    )
                )
                .order_by(WorkItem.available_at, WorkItem.id)
                .limit(10)
            ).all()

            for item_id in candidates:
                result = session.execute(
                    update(WorkItem)
                    .where(and_(WorkItem.id == item_id, WorkItem.status == "PENDING"))
                    .values(status="ACTIVE", worker_id=worker_id, locked_at=now, attempts=WorkItem.attempts + 1)
                )
                session.commit()
                if result.rowcount != 1:
                    continue

                item = session.get(WorkItem, item_id)
                return ClaimedItem(
                    id=item.id,
                    queue_name=item.queue_name,
                    idempotency_key=item.idempotency_key,
                    payload=dict(item.payload_json or {}),
                    attempt=item.attempts,
                    max_attempts=item.max_attempts,
                )
        return None

    def complete(self, item_id: int) -> None:
        with self.session_factory() as session:
            session.execute(
                update(WorkItem)
                .where(WorkItem.id == item_id)
                .values(status="DONE", worker_id=None, locked_at=None, last_error=None)
            )
            session.commit()

    def fail(self, item_id: int, error: str) -> str:
        """Record a failed attempt. Returns the item's new status, PENDING or DEAD."""
        with self.session_factory() as session:
            item = session.get(WorkItem, item_id)
            if item is None:
                raise ValueError(f"work item {item_id} not found")

            item.last_error = error[:4000]
            item.worker_id = None
            item.locked_at = None
            if item.attempts >= item.max_attempts:
                item.status = "DEAD"
                logger.error(
                    "Dead-lettered queue=%s key=%s after %s attempts: %s",
                    self.name,
                    item.idempotency_key,
                    item.attempts,
                    error,
                )
            else:
                delay = self.backoff_delay(item.attempts)
                item.status = "PENDING"
                item.available_at = datetime.now(UTC) + timedelta(seconds=delay)
                logger.warning(
                    "Retrying queue=%s key=%s attempt=%s/%s in %.1fs: %s",
                    self.name,
                    item.idempotency_key,
                    item.attempts,
                    item.max_attempts,
                    delay,
                    error,
                )
            session.commit()
            return item.status

    def backoff_delay(self, attempts_made: int) -> float:
        return self.backoff_base_sec * (2 ** max(0, attempts_made - 1))

    def recover_stale(self, older_than_sec: float) -> int:
        """Return ACTIVE items abandoned by a dead worker to PENDING."""
        cutoff = datetime.now(UTC) - timedelta(seconds=older_than_sec)
        with self.session_factory() as session:
            result = session.execute(
                update(WorkItem)
                .where(
                    and_(
                        WorkItem.queue_name == self.name,
                        WorkItem.status == "ACTIVE",
                        WorkItem.locked_at < cutoff,
                    )
                )
                .values(status="PENDING", worker_id=None, locked_at=None, available_at=datetime.now(UTC))
            )
            session.commit()
            if result.rowcount:
                logger.warning("Recovered %s stale items on queue=%s", result.rowcount, self.name)
            return result.rowcount

    def get(self, item_id: int) -> WorkItem | None:
        with self.session_factory() as session:
            item = session.get(WorkItem, item_id)
            if item is not None:
                session.expunge(item)
            return item

    def metrics(self) -> dict[str, Any]:
        with self.session_factory() as session:
            rows = session.execute(
                select(WorkItem.status, func.count(WorkItem.id))
                .where(WorkItem.queue_name == self.name)
                .group_by(WorkItem.status)
            ).all()
        counts = {status: 0 for status in ("PENDING", "ACTIVE", "DONE", "DEAD")}
        counts.update({status: int(count) for status, count in rows})
        return {"queue": self.name, **counts, "total": sum(counts.values())}

    def _find(self, session: Session, idempotency_key: str) -> WorkItem | None:
        return session.scalar(
            select(WorkItem).where(
                and_(WorkItem.queue_name == self.name, WorkItem.idempotency_key == idempotency_key)
            )
        )


class RateLimiter:
    """Sliding-window limiter: at most ``max_items`` starts per ``window_sec``."""

    def __init__(self, max_items: int, window_sec: float, *, clock: Callable[[], float] = time.monotonic):
        if max_items < 1:
            raise ValueError("max_items must be at least 1")
        self.max_items = max_items
        self.window_sec = window_sec
        self.clock = clock
        self._starts: deque[float] = deque()
        self._lock = threading.Lock()

    def wait_time(self) -> float:
        with self._lock:
            now = self.clock()
            self._evict(now)
            if len(self._starts) < self.max_items:
                return 0.0
            return max(0.0, self._starts[0] + self.window_sec - now)

    def record(self) -> None:
        with self._lock:
            now = self.clock()
            self._evict(now)
            self._starts.append(now)

    def _evict(self, now: float) -> None:
        while self._starts and now - self._starts[0] >= self.window_sec:
            self._starts.popleft()


Handler = Callable[[ClaimedItem], None]
DeadLetterHook = Callable[[ClaimedItem, Exception], None]


class QueueWorker:
    """Bounded worker pool draining one WorkQueue."""

    def __init__(
        self,
        queue: WorkQueue,
        handler: Handler,
        *,
        concurrency: int = 1,
        rate_limiter: RateLimiter | None = None,
        on_dead_letter: DeadLetterHook | None = None,
        poll_interval_sec: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.queue = queue
        self.handler = handler
        self.concurrency = max(1, concurrency)
        self.rate_limiter = rate_limiter
        self.on_dead_letter = on_dead_letter
        self.poll_interval_sec = poll_interval_sec
        self.sleep = sleep
        self.worker_id = f"{socket.gethostname()}:{os.getpid()}:{queue.name}"
        self._lock = threading.Lock()
        self._stats = {"claimed": 0, "completed": 0, "retried": 0, "dead_lettered": 0}

    @property
    def stats(self) -> dict[str, int]:
        with self._lock:
            return dict(self._stats)

    def drain(self, *, max_items: int | None = None) -> dict[str, int]:
        """Process items until nothing is claimable right now, then return counters."""
        return self._loop(stop_event=None, until_idle=True, max_items=max_items)

    def run_forever(self, stop_event: threading.Event) -> dict[str, int]:
        return self._loop(stop_event=stop_event, until_idle=False, max_items=None)

    def _loop(self, *, stop_event: threading.Event | None, until_idle: bool, max_items: int | None) -> dict[str, int]:
        dispatched = 0
        in_flight: dict[Future, ClaimedItem] = {}
        with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix=f"{self.queue.name}-worker") as executor:
            while True:
                stopping = stop_event is not None and stop_event.is_set()
                idle = False
                throttle = 0.0

                while not stopping and len(in_flight) < self.concurrency:
                    if max_items is not None and dispatched >= max_items:
                        idle = True
                        break
                    if self.rate_limiter is not None:
                        throttle = self.rate_limiter.wait_time()
                        if throttle > 0:
                            break
                    item = self.queue.claim(self.worker_id)
                    if item is None:
                        idle = True
                        break
                    if self.rate_limiter is not None:
                        self.rate_limiter.record()
                    self._bump("claimed")
                    dispatched += 1
                    in_flight[executor.submit(self._process, item)] = item

                if not in_flight:
                    if stopping or (until_idle and idle):
                        break
                    self.sleep(throttle if throttle > 0 else self.poll_interval_sec)
                    continue

                done, _ = wait(list(in_flight), timeout=self.poll_interval_sec, return_when=FIRST_COMPLETED)
                for future in done:
                    in_flight.pop(future)
                    future.result()
        return self.stats

    def _process(self, item: ClaimedItem) -> None:
        try:
            self.handler(item)
        except Exception as exc:
            logger.exception(
                "Work item failed queue=%s key=%s attempt=%s/%s",
                item.queue_name,
                item.idempotency_key,
                item.attempt,
                item.max_attempts,
            )
            status = self.queue.fail(item.id, str(exc) or exc.__class__.__name__)
            if status == "DEAD":
                self._bump("dead_lettered")
                if self.on_dead_letter is not None:
                    try:
                        self.on_dead_letter(item, exc)
                    except Exception:
                        logger.exception("Dead-letter hook failed key=%s", item.idempotency_key)
            else:
                self._bump("retried")
            return

        self.queue.complete(item.id)
        self._bump("completed")

    def _bump(self, counter: str) -> None:
        with self._lock:
            self._stats[counter] += 1


def build_apply_queue(settings: Settings, *, session_factory: Callable[[], Session] = SessionLocal) -> WorkQueue:
    return WorkQueue(
        APPLY_QUEUE,
        session_factory=session_factory,
        max_attempts=settings.apply_queue_max_attempts,
        backoff_base_sec=settings.apply_queue_backoff_sec,
    )


def build_discovery_queue(settings: Settings, *, session_factory: Callable[[], Session] = SessionLocal) -> WorkQueue:
    return WorkQueue(
        DISCOVERY_QUEUE,
        session_factory=session_factory,
        max_attempts=settings.discovery_queue_max_attempts,
        backoff_base_sec=settings.apply_queue_backoff_sec,
    )
