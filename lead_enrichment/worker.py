"""
Enrichment worker - drains the enrichment queue.

Message kinds:
- collect: check a deep-scrape run and ingest its delivery
- lookup:  run lookup-provider enrichment for a job
- qualify: score an enriched job

Each message is acked, retried with backoff, or (after its last attempt)
dead-lettered with the job failed. Messages that are only waiting (a scrape
still running, a job held by another worker) are deferred without using up
attempts; the scrape timeout and the qualify lease bound that wait.
Stale-state conflicts mean another writer already moved the job, so the
message is simply dropped.

Run with:  python -m lead_enrichment.worker [--once]
"""

import argparse
import asyncio
import logging
import os
import signal
import socket
import time
from typing import Optional

from .config import load_settings
from .errors import (
    DeliveryPendingError,
    JobBusyError,
    JobNotFoundError,
    ProviderError,
    StaleStateError,
    ValidationError,
)
from .logging_setup import configure_logging
from .models import MessageKind, QueueMessage
from .services import Services, build_services

logger = logging.getLogger(__name__)

# How often to fail scraping jobs that never got a delivery
SWEEP_INTERVAL_SECONDS = 300

# Outcomes of handle()
ACKED = "acked"
DISCARDED = "discarded"
RETRIED = "retried"
DEFERRED = "deferred"
FAILED = "failed"
DEAD = "dead"


class EnrichmentWorker:
    """Polls the queue and runs one message at a time."""

    def __init__(
        self,
        services: Services,
        worker_id: Optional[str] = None,
        poll_interval: float = 5.0,
        sweep_interval: float = SWEEP_INTERVAL_SECONDS,
    ):
        self.services = services
        self.worker_id = worker_id or f"{socket.gethostname()}-{os.getpid()}"
        self.poll_interval = poll_interval
        self.sweep_interval = sweep_interval
        self.shutdown_event = asyncio.Event()
        self._last_sweep = 0.0

    def setup_signal_handlers(self) -> None:
        def signal_handler(signum, frame):
            logger.info("[Worker] %s received signal %s, shutting down", self.worker_id, signum)
            self.shutdown_event.set()

        signal.signal(signal.SIGTERM, signal_handler)
        signal.signal(signal.SIGINT, signal_handler)

    async def _dispatch(self, message: QueueMessage) -> None:
        if message.kind == MessageKind.COLLECT:
            if not message.snapshot_id:
                raise ValidationError("collect message without snapshot id", message.job_id)
            await self.services.ingestor.collect(message.snapshot_id)
            return

        if message.kind == MessageKind.LOOKUP:
            job = self.services.jobs.get(message.job_id)
            if job is None:
                raise JobNotFoundError(f"Job {message.job_id} not found", message.job_id)
            await self.services.ingestor.ingest_lookup(job)
            return

        if message.kind == MessageKind.QUALIFY:
            await self.services.engine.qualify_job(message.job_id)
            return

        raise ValidationError(f"Unknown message kind: {message.kind}", message.job_id)

    def _fail_job(self, message: QueueMessage, error: str) -> None:
        try:
            self.services.jobs.fail(message.job_id, error)
        except (StaleStateError, JobNotFoundError) as e:
            logger.info("[Worker] Job %s not failed: %s", message.job_id, e.message)

    def _retry(self, message: QueueMessage, error: str) -> str:
        if self.services.queue.retry(message, error):
            return RETRIED
        self._fail_job(message, f"Gave up after {message.attempts} attempts: {error}")
        return DEAD

    async def handle(self, message: QueueMessage) -> str:
        """Process one message and settle it in the queue."""
        logger.info(
            "[Worker] Processing %s message %s for job %s (attempt %d)",
            message.kind.value, message.id, message.job_id, message.attempts,
        )

        try:
            await self._dispatch(message)
        except (StaleStateError, JobNotFoundError) as e:
            logger.info("[Worker] Dropping %s message for job %s: %s", message.kind.value, message.job_id, e.message)
            self.services.queue.ack(message)
            return DISCARDED
        except (DeliveryPendingError, JobBusyError) as e:
            logger.info("[Worker] %s", e)
            self.services.queue.defer(message, e.message, self.services.settings.delivery_check_interval)
            return DEFERRED
        except ProviderError as e:
            if e.retryable:
                logger.warning("[Worker] Retryable provider error for job %s: %s", message.job_id, e.message)
                return self._retry(message, e.message)
            self._fail_job(message, e.message)
            self.services.queue.ack(message)
            return FAILED
        except ValidationError as e:
            self._fail_job(message, e.message)
            self.services.queue.ack(message)
            return FAILED
        except Exception as e:
            logger.exception("[Worker] Unexpected error on message %s for job %s", message.id, message.job_id)
            return self._retry(message, f"{type(e).__name__}: {e}")

        self.services.queue.ack(message)
        return ACKED

    def sweep(self, force: bool = False) -> None:
        now = time.monotonic()
        if not force and now - self._last_sweep < self.sweep_interval:
            return
        self._last_sweep = now
        self.services.ingestor.expire_stale_jobs()

    async def run_once(self) -> bool:
        """Take and process one message. Returns False when the queue was empty."""
        self.sweep()
        messages = self.services.queue.receive(max_messages=1)
        if not messages:
            return False
        await self.handle(messages[0])
        return True

    async def poll_and_process(self) -> None:
        logger.info("[Worker] %s polling (interval: %ss)", self.worker_id, self.poll_interval)

        while not self.shutdown_event.is_set():
            try:
                if await self.run_once():
                    continue
            except Exception:
                logger.exception("[Worker] Loop error")

            try:
                await asyncio.wait_for(self.shutdown_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

        logger.info("[Worker] %s stopped", self.worker_id)

    async def run(self, once: bool = False) -> None:
        if once:
            self.sweep(force=True)
            while await self.run_once():
                pass
            return

        self.setup_signal_handlers()
        await self.poll_and_process()


def main(argv: Optional[list] = None) -> None:
    parser = argparse.ArgumentParser(description="Drain the lead enrichment queue")
    parser.add_argument("--once", action="store_true", help="Process everything visible, then exit")
    parser.add_argument("--poll-interval", type=float, default=None, help="Seconds between empty polls")
    args = parser.parse_args(argv)

    settings = load_settings()
    configure_logging(settings.log_level)

    services = build_services(settings)
    worker = EnrichmentWorker(
        services,
        poll_interval=args.poll_interval or settings.worker_poll_interval,
    )

    logger.info("[Worker] Starting %s", worker.worker_id)
    try:
        asyncio.run(worker.run(once=args.once))
    finally:
        services.close()


if __name__ == "__main__":
    main()
