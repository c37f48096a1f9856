"""
Background worker threads.

Runs the delivery and ledger purge loops in-process:
- DeliveryWorker: one thread looping run_worker_iteration
- LedgerPurgeWorker: one thread looping run_purge_cycle
- DeliveryWorkerPool: N delivery workers + 1 purge worker with an
  explicit start / stop / join lifecycle

Loops sleep on a shared threading.Event, so stop() takes effect at the
next sleep point. A task in progress always runs to commit or rollback.
"""

from __future__ import annotations

import logging
import threading

from src.components.delivery import (
    DeliveryConfig,
    DeliveryDatabasePort,
    drain_queue,
    run_worker_iteration,
)
from src.components.ledger_purge import PurgeConfig, next_delay, run_purge_cycle
from src.components.ledger_purge.ports import LedgerDatabasePort
from src.core.ports.email import EmailTransportPort
from src.core.ports.time import TimePort

logger = logging.getLogger(__name__)


class _LoopThread:
    """Thread that runs step() until the stop event is set."""

    def __init__(self, name: str, stop_event: threading.Event) -> None:
        self.name = name
        self._stop_event = stop_event
        self._thread: threading.Thread | None = None
        self.iterations = 0

    def step(self) -> float:
        raise NotImplementedError

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    @property
    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        logger.info("%s started", self.name)
        while not self._stop_event.is_set():
            try:
                delay = self.step()
            except Exception:
                logger.exception("Error in %s loop", self.name)
                delay = 1.0
            self.iterations += 1
            if delay > 0 and self._stop_event.wait(timeout=delay):
                break
        logger.info("%s stopped", self.name)


class DeliveryWorker(_LoopThread):
    """Drains the delivery queue, one task per iteration."""

    def __init__(
        self,
        name: str,
        stop_event: threading.Event,
        db: DeliveryDatabasePort,
        transport: EmailTransportPort,
        clock: TimePort,
        config: DeliveryConfig,
    ) -> None:
        super().__init__(name, stop_event)
        self._db = db
        self._transport = transport
        self._clock = clock
        self._config = config

    def step(self) -> float:
        return run_worker_iteration(
            self._db, self._transport, clock=self._clock, config=self._config
        )


class LedgerPurgeWorker(_LoopThread):
    """Deletes expired idempotency ledger rows."""

    def __init__(
        self,
        name: str,
        stop_event: threading.Event,
        db: LedgerDatabasePort,
        clock: TimePort,
        config: PurgeConfig,
    ) -> None:
        super().__init__(name, stop_event)
        self._db = db
        self._clock = clock
        self._config = config

    def step(self) -> float:
        outcome = run_purge_cycle(
            self._db, clock=self._clock, retention_minutes=self._config.retention_minutes
        )
        return next_delay(outcome, self._config)


class DeliveryWorkerPool:
    """
    Delivery workers plus the ledger purge worker.

    Each worker opens its own unit of work per iteration; the pool holds
    no connections of its own.
    """

    def __init__(
        self,
        db: DeliveryDatabasePort,
        transport: EmailTransportPort,
        clock: TimePort,
        delivery_config: DeliveryConfig | None = None,
        purge_config: PurgeConfig | None = None,
        workers: int = 1,
        run_purge: bool = True,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be at least 1")
        self._db = db
        self._transport = transport
        self._clock = clock
        self._delivery_config = delivery_config or DeliveryConfig()
        self._purge_config = purge_config or PurgeConfig()
        self._stop_event = threading.Event()
        self._running = False

        self.delivery_workers = [
            DeliveryWorker(
                f"delivery-worker-{i}",
                self._stop_event,
                db,
                transport,
                clock,
                self._delivery_config,
            )
            for i in range(workers)
        ]
        self.purge_worker: LedgerPurgeWorker | None = (
            LedgerPurgeWorker(
                "ledger-purge-worker", self._stop_event, db, clock, self._purge_config
            )
            if run_purge
            else None
        )

    def _threads(self) -> list[_LoopThread]:
        threads: list[_LoopThread] = list(self.delivery_workers)
        if self.purge_worker is not None:
            threads.append(self.purge_worker)
        return threads

    def start(self) -> None:
        """Start all worker threads."""
        if self._running:
            return
        self._stop_event.clear()
        for thread in self._threads():
            thread.start()
        self._running = True
        logger.info(
            "Worker pool started (%d delivery workers, purge=%s)",
            len(self.delivery_workers),
            self.purge_worker is not None,
        )

    def stop(self) -> None:
        """Ask every loop to exit at its next sleep point."""
        self._stop_event.set()

    def join(self, timeout: float | None = None) -> None:
        """Wait for all threads to exit."""
        for thread in self._threads():
            thread.join(timeout)
        if not any(t.is_alive for t in self._threads()):
            self._running = False
            logger.info("Worker pool stopped")

    def shutdown(self, timeout: float | None = 5.0) -> None:
        self.stop()
        self.join(timeout)

    @property
    def is_running(self) -> bool:
        return self._running and any(t.is_alive for t in self._threads())

    def drain(self, max_iterations: int = 10_000) -> int:
        """Deliver synchronously on the calling thread until the queue is empty."""
        return drain_queue(
            self._db,
            self._transport,
            clock=self._clock,
            config=self._delivery_config,
            max_iterations=max_iterations,
        )

    def __enter__(self) -> DeliveryWorkerPool:
        self.start()
        return self

    def __exit__(self, *exc: object) -> None:
        self.shutdown()
