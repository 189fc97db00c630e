"""Queue worker for festpass.

Runs as a **separate process** from the API server; both share the store.
A pool of consumer threads claims due jobs, runs the credential pipeline
and writes the outcome.

Usage:
    python -m festpass.worker            # uses env vars
    festpass worker                      # via CLI

Configuration (env vars):
    FESTPASS_WORKER_POLL_INTERVAL      - seconds between polls when idle (default 2)
    FESTPASS_WORKER_CONCURRENCY        - consumer threads (default 2)
    FESTPASS_WORKER_MAX_ATTEMPTS       - attempts per job, first included (default 3)
    FESTPASS_WORKER_BACKOFF_BASE       - first retry delay in seconds (default 2)
    FESTPASS_WORKER_BACKOFF_MULTIPLIER - growth per retry (default 2)
    FESTPASS_JOB_RETENTION             - finished jobs kept after pruning (default 50)
    FESTPASS_WORKER_JOB_LEASE          - seconds before a silent running job is reclaimed (default 300)
    FESTPASS_TEMPLATE_PATH             - base credential template
"""

from __future__ import annotations

import logging
import os
import signal
import threading
from typing import Any

from festpass import event_log, jobs, registrations
from festpass.adapters.object_storage import LocalObjectStorage
from festpass.compositor import load_template
from festpass.defaults import (
    AI_TIMEOUT_SECONDS,
    BACKOFF_BASE_SECONDS,
    BACKOFF_MULTIPLIER,
    DEFAULT_TEMPLATE_PATH,
    JOB_LEASE_SECONDS,
    JOB_RETENTION,
    MAX_ATTEMPTS,
    WORKER_CONCURRENCY,
    WORKER_POLL_INTERVAL,
)
from festpass.enhance.port import EnhancerResolution
from festpass.enhance.registry import resolve_enhancer
from festpass.errors import FatalAssetError, TransientIOError
from festpass.models import EventType, Job, RegistrationStatus
from festpass.pipeline import CredentialPipeline
from festpass.ports import ObjectStoragePort

log = logging.getLogger("festpass.worker")


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class WorkerConfig:
    """Worker runtime configuration from environment."""

    def __init__(self) -> None:
        self.poll_interval = float(os.environ.get("FESTPASS_WORKER_POLL_INTERVAL", str(WORKER_POLL_INTERVAL)))
        self.concurrency = int(os.environ.get("FESTPASS_WORKER_CONCURRENCY", str(WORKER_CONCURRENCY)))
        self.max_attempts = int(os.environ.get("FESTPASS_WORKER_MAX_ATTEMPTS", str(MAX_ATTEMPTS)))
        self.backoff_base = float(os.environ.get("FESTPASS_WORKER_BACKOFF_BASE", str(BACKOFF_BASE_SECONDS)))
        self.backoff_multiplier = float(
            os.environ.get("FESTPASS_WORKER_BACKOFF_MULTIPLIER", str(BACKOFF_MULTIPLIER))
        )
        self.job_retention = int(os.environ.get("FESTPASS_JOB_RETENTION", str(JOB_RETENTION)))
        self.job_lease = float(os.environ.get("FESTPASS_WORKER_JOB_LEASE", str(JOB_LEASE_SECONDS)))
        self.template_path = os.environ.get("FESTPASS_TEMPLATE_PATH", DEFAULT_TEMPLATE_PATH)
        self.ai_timeout = float(os.environ.get("FESTPASS_AI_TIMEOUT", str(AI_TIMEOUT_SECONDS)))
        self.db_path = os.environ.get("FESTPASS_DB_PATH", "")


# ---------------------------------------------------------------------------
# Worker
# ---------------------------------------------------------------------------

class QueueWorker:
    """Threaded queue consumer with graceful shutdown."""

    def __init__(
        self,
        config: WorkerConfig | None = None,
        *,
        storage: ObjectStoragePort | None = None,
        resolution: EnhancerResolution | None = None,
    ) -> None:
        self.config = config or WorkerConfig()
        self.storage = storage
        self.resolution = resolution
        self.pipeline: CredentialPipeline | None = None
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()
        self._running = False
        self._cycles = 0
        self._total_processed = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def prepare(self) -> CredentialPipeline:
        """Open the store, load the template and resolve the enhancer.

        A missing template does not stop the worker: jobs keep being claimed
        and each one fails fast with ``FatalAssetError``.
        """
        if event_log.get_store() is None:
            event_log.init(self.config.db_path or None)
        if self.storage is None:
            self.storage = LocalObjectStorage.from_env()

        template = None
        template_error = None
        try:
            template = load_template(self.config.template_path)
        except FatalAssetError as exc:
            template_error = exc.message
            log.critical("%s; every credential job will fail until it is restored", exc.message)
            event_log.record(EventType.TEMPLATE_MISSING, None, path=self.config.template_path)

        if self.resolution is None:
            self.resolution = resolve_enhancer()

        self.pipeline = CredentialPipeline(
            self.storage,
            template,
            template_error=template_error,
            enhancer=self.resolution.enhancer,
            ai_timeout=self.config.ai_timeout,
        )
        return self.pipeline

    def start(self) -> None:
        """Start the consumer threads and block until stopped."""
        if self.pipeline is None:
            self.prepare()
        self._running = True
        self._stop.clear()
        self._install_signal_handlers()

        log.info(
            "Worker starting: threads=%d poll=%.1fs max_attempts=%d enhancer=%s",
            self.config.concurrency,
            self.config.poll_interval,
            self.config.max_attempts,
            self.resolution.model or "local",
        )
        event_log.record(
            EventType.WORKER_STARTED, None,
            concurrency=self.config.concurrency,
            poll_interval=self.config.poll_interval,
            enhancer=self.resolution.to_dict(),
            pid=os.getpid(),
        )

        self._threads = [
            threading.Thread(target=self._consume, name=f"festpass-worker-{i}", daemon=True)
            for i in range(self.config.concurrency)
        ]
        for thread in self._threads:
            thread.start()
        try:
            while not self._stop.is_set():
                self._stop.wait(self.config.poll_interval)
        finally:
            self._shutdown()

    def stop(self) -> None:
        """Signal the worker to stop after the jobs currently in hand."""
        log.info("Worker stop requested; finishing in-hand jobs")
        self._running = False
        self._stop.set()

    def _install_signal_handlers(self) -> None:
        """Capture SIGTERM and SIGINT for graceful shutdown.

        Only works from the main thread; silently skips otherwise
        (e.g. when run inside a test thread).
        """
        if threading.current_thread() is not threading.main_thread():
            log.debug("Not main thread; skipping signal handler installation")
            return

        def _handler(signum: int, frame: Any) -> None:
            log.info("Received %s; initiating graceful shutdown", signal.Signals(signum).name)
            self.stop()

        signal.signal(signal.SIGTERM, _handler)
        signal.signal(signal.SIGINT, _handler)

    def _consume(self) -> None:
        while not self._stop.is_set():
            handled = self._poll_once()
            if not handled:
                self._stop.wait(self.config.poll_interval)

    def _shutdown(self) -> None:
        for thread in self._threads:
            thread.join()
        self._threads = []
        self._running = False
        log.info("Worker shutting down: cycles=%d total_processed=%d",
                 self._cycles, self._total_processed)
        event_log.record(
            EventType.WORKER_STOPPED, None,
            cycles=self._cycles, total_processed=self._total_processed, pid=os.getpid(),
        )

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def run_once(self) -> int:
        """Drain every job that is due right now on the calling thread."""
        if self.pipeline is None:
            self.prepare()
        processed = 0
        while self._poll_once():
            processed += 1
        return processed

    def _poll_once(self) -> bool:
        """Claim and process one job.  Returns False when nothing was due."""
        with self._lock:
            self._cycles += 1
        try:
            job = jobs.claim_next(self.config.job_lease)
        except Exception:
            log.exception("Error claiming job (cycle %d)", self._cycles)
            return False
        if job is None:
            return False

        try:
            self._process(job)
        except Exception:
            # The job row stays running; claim_next picks it up once its lease expires.
            log.exception("Could not record the outcome of job %s", job.id,
                          extra={"registration_id": job.job_key, "job_id": job.id})
        with self._lock:
            self._total_processed += 1
        try:
            jobs.prune_finished(self.config.job_retention)
        except Exception:
            log.exception("Pruning finished jobs failed")
        return True

    def _process(self, job: Job) -> None:
        extra = {"registration_id": job.job_key, "job_id": job.id, "attempt": job.attempt_count}
        if job.reclaimed and self._settle_reclaimed(job):
            return
        log.info("Processing %s attempt %d", job.job_type.value, job.attempt_count, extra=extra)
        try:
            result = self.pipeline.run(job)
        except TransientIOError as exc:
            if job.attempt_count < self.config.max_attempts:
                jobs.schedule_retry(
                    job, exc.message,
                    base=self.config.backoff_base,
                    multiplier=self.config.backoff_multiplier,
                )
                return
            log.error("Job %s gave up after %d attempts: %s",
                      job.id, job.attempt_count, exc.message, extra=extra)
            self._fail(job, f"Gave up after {job.attempt_count} attempts: {exc.message}")
        except FatalAssetError as exc:
            log.critical("Job %s failed on missing asset: %s", job.id, exc.message, extra=extra)
            self._fail(job, exc.message)
        except Exception as exc:
            log.exception("Job %s failed", job.id, extra=extra)
            self._fail(job, str(exc) or type(exc).__name__)
        else:
            # Registration first: if this write fails the job is still running
            # and gets reclaimed, instead of finishing over a PROCESSING record.
            registrations.mark_terminal(
                job.registration_id,
                result.status,
                credentials=result.credentials,
                error_message=result.error_message,
                enhanced_photo_key=result.enhanced_photo_key,
            )
            jobs.complete(job)

    def _settle_reclaimed(self, job: Job) -> bool:
        """Finish a reclaimed job without rerunning it when that is all it needs."""
        current = event_log.get_registration(job.registration_id)
        if current is not None and current.status != RegistrationStatus.PROCESSING:
            # Outcome was written; only finishing the job row was lost.
            if current.status == RegistrationStatus.FAILED:
                jobs.fail(job, current.error_message or "failed")
            else:
                jobs.complete(job)
            return True
        if job.attempt_count > self.config.max_attempts:
            attempts = job.attempt_count - 1
            log.error("Job %s abandoned after %d attempts", job.id, attempts,
                      extra={"registration_id": job.job_key, "job_id": job.id})
            self._fail(job, f"Gave up after {attempts} attempts: "
                            f"{job.last_error or 'worker stopped responding'}")
            return True
        return False

    def _fail(self, job: Job, error: str) -> None:
        registrations.mark_terminal(job.registration_id, RegistrationStatus.FAILED, error_message=error)
        jobs.fail(job, error)

    # Public read-only state for tests / monitoring
    @property
    def cycles(self) -> int:
        return self._cycles

    @property
    def total_processed(self) -> int:
        return self._total_processed

    @property
    def is_running(self) -> bool:
        return self._running


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def run_worker(db_path: str | None = None) -> None:
    """Start the worker (blocking). For CLI / __main__."""
    from festpass.observability import setup_logging
    setup_logging(os.environ.get("FESTPASS_LOG_LEVEL", "INFO"))
    config = WorkerConfig()
    if db_path:
        config.db_path = db_path
    QueueWorker(config).start()


if __name__ == "__main__":
    run_worker()
