from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from sqlalchemy.orm import Session

from autoapply.config import Settings, get_settings
from autoapply.core.audit import AuditLogger
from autoapply.core.controller import RunController
from autoapply.core.submitter import SubmissionClient
from autoapply.core.work_queue import (
    ClaimedItem,
    QueueWorker,
    RateLimiter,
    build_apply_queue,
    build_discovery_queue,
)
from autoapply.db.session import SessionLocal
from autoapply.llm.router import GenerationClient

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerSet:
    discovery: QueueWorker
    apply: QueueWorker

    def drain(self, *, max_rounds: int = 10) -> dict[str, dict[str, int]]:
        """Alternate between both pools until neither has claimable work."""
        for _ in range(max_rounds):
            before = (self.discovery.stats["claimed"], self.apply.stats["claimed"])
            self.discovery.drain()
            self.apply.drain()
            if (self.discovery.stats["claimed"], self.apply.stats["claimed"]) == before:
                break
        return {"discovery": self.discovery.stats, "apply": self.apply.stats}

    def run_forever(self, stop_event: threading.Event) -> None:
        threads = [
            threading.Thread(target=worker.run_forever, args=(stop_event,), name=f"{worker.queue.name}-dispatcher")
            for worker in (self.discovery, self.apply)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()


def build_workers(
    settings: Settings | None = None,
    *,
    session_factory: Callable[[], Session] = SessionLocal,
    generation: GenerationClient | None = None,
    submission: SubmissionClient | None = None,
    audit: AuditLogger | None = None,
    sleep: Callable[[float], None] = time.sleep,
    rate_limited: bool = True,
) -> WorkerSet:
    settings = settings or get_settings()
    audit = audit or AuditLogger(session_factory)
    discovery_queue = build_discovery_queue(settings, session_factory=session_factory)
    apply_queue = build_apply_queue(settings, session_factory=session_factory)

    def make_controller(session: Session) -> RunController:
        return RunController(
            session,
            settings=settings,
            generation=generation,
            submission=submission,
            audit=audit,
            discovery_queue=discovery_queue,
            apply_queue=apply_queue,
            sleep=sleep,
        )

    def handle_discovery(item: ClaimedItem) -> None:
        with session_factory() as session:
            make_controller(session).process_discovery_item(item)

    def handle_apply(item: ClaimedItem) -> None:
        with session_factory() as session:
            make_controller(session).process_apply_item(item)

    def discovery_dead_lettered(item: ClaimedItem, exc: Exception) -> None:
        with session_factory() as session:
            make_controller(session).discovery_dead_lettered(item, exc)

    def apply_dead_lettered(item: ClaimedItem, exc: Exception) -> None:
        with session_factory() as session:
            make_controller(session).apply_dead_lettered(item, exc)

    rate_limiter = None
    if rate_limited:
        rate_limiter = RateLimiter(settings.apply_rate_limit_max, settings.apply_rate_limit_window_sec)

    discovery = QueueWorker(
        discovery_queue,
        handle_discovery,
        concurrency=settings.discovery_worker_concurrency,
        on_dead_letter=discovery_dead_lettered,
        poll_interval_sec=settings.queue_poll_interval_sec,
        sleep=sleep,
    )
    apply = QueueWorker(
        apply_queue,
        handle_apply,
        concurrency=settings.apply_worker_concurrency,
        rate_limiter=rate_limiter,
        on_dead_letter=apply_dead_lettered,
        poll_interval_sec=settings.queue_poll_interval_sec,
        sleep=sleep,
    )
    logger.info(
        "Workers ready discovery_concurrency=%s apply_concurrency=%s rate_limit=%s/%ss",
        discovery.concurrency,
        apply.concurrency,
        settings.apply_rate_limit_max if rate_limited else "off",
        settings.apply_rate_limit_window_sec,
    )
    return WorkerSet(discovery=discovery, apply=apply)
