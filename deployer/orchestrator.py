"""Per-loan deployment and recovery state machine.

Events from the observer arrive through :meth:`Orchestrator.submit` and are
handled one at a time by a single worker thread. Every status change is
persisted before the next step starts, so a restart can always tell where a
loan stopped.
"""
from __future__ import annotations

import queue
import threading
import weakref
from typing import Any, Callable, Optional

from .binaries import BinarySource, BinaryStore
from .chain import ProgramDeployer
from .context import ServiceContext
from .errors import BinaryValidationError, ChainError, DeploymentNotFound, InvalidTransition
from .models import (
    PHASE_DEPLOY,
    PHASE_RECOVERY,
    DeploymentRecord,
    DeploymentStatus,
    LoanEvent,
    LoanExpired,
    LoanRecovered,
    LoanRequested,
)
from .store import DeploymentStore

SUBMIT_TIMEOUT = 5.0


class Orchestrator:
    def __init__(
        self,
        context: ServiceContext,
        *,
        store: DeploymentStore,
        binary_source: BinarySource,
        binary_store: BinaryStore,
        deployer: ProgramDeployer,
        sleep: Optional[Callable[[float], Any]] = None,
        submit_timeout: float = SUBMIT_TIMEOUT,
    ) -> None:
        self.store = store
        self.binary_source = binary_source
        self.binary_store = binary_store
        self.deployer = deployer
        self.metrics = context.metrics
        self.logger = context.child_logger("orchestrator")
        self.max_retries = max(1, context.config.max_retries)
        self.retry_delay = context.config.retry_delay_ms / 1000.0
        self.submit_timeout = submit_timeout
        self._queue: "queue.Queue[LoanEvent]" = queue.Queue(maxsize=context.config.event_queue_size)
        self._stop_event = threading.Event()
        self._sleep = sleep or self._stop_event.wait
        # Entries vanish once no handler holds the lock.
        self._locks: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()
        self._worker: Optional[threading.Thread] = None

    # -- event intake -------------------------------------------------------

    def submit(self, event: LoanEvent) -> bool:
        """Queue ``event`` for the worker; returns False if it had to be dropped."""
        try:
            self._queue.put(event, timeout=self.submit_timeout)
        except queue.Full:
            self.logger.error(
                "Event queue full, dropping %s for loan %s",
                event.name,
                event.loan_id,
            )
            self.metrics.events_dropped.labels(event=event.name).inc()
            return False
        return True

    @property
    def pending_events(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if self._worker is not None and self._worker.is_alive():
            return
        self._stop_event.clear()
        self._worker = threading.Thread(target=self._run, name="orchestrator-worker", daemon=True)
        self._worker.start()
        self.logger.info("Orchestrator worker started")

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop the worker after the handler in flight (if any) returns."""
        self._stop_event.set()
        worker, self._worker = self._worker, None
        if worker is not None and worker.is_alive():
            worker.join(timeout=timeout)
        self.logger.info("Orchestrator worker stopped")

    def _run(self) -> None:  # pragma: no cover - background worker
        while not self._stop_event.is_set():
            try:
                event = self._queue.get(timeout=1.0)
            except queue.Empty:
                continue
            try:
                self.handle(event)
            except Exception as exc:
                self.logger.exception("Handler for %s (loan %s) failed: %s", event.name, event.loan_id, exc)
            finally:
                self._queue.task_done()

    def handle(self, event: LoanEvent) -> Optional[DeploymentRecord]:
        if isinstance(event, LoanRequested):
            return self.handle_loan_requested(event)
        if isinstance(event, (LoanRecovered, LoanExpired)):
            return self.process_recovery(event.loan_id)
        raise TypeError(f"Unsupported event {event!r}")

    def _loan_lock(self, loan_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(loan_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[loan_id] = lock
            return lock

    # -- deployment path ----------------------------------------------------

    def handle_loan_requested(self, event: LoanRequested) -> DeploymentRecord:
        loan_id = str(event.loan_id)
        with self._loan_lock(loan_id):
            existing = self.store.get(loan_id)
            if existing is not None and existing.status != DeploymentStatus.FAILED:
                self.logger.info("Deployment already exists for loan %s (status=%s)", loan_id, existing.status)
                return existing
            if existing is not None and existing.failed_phase == PHASE_RECOVERY:
                self.logger.warning(
                    "Loan %s failed during recovery, not redeploying (use retry-recovery)", loan_id
                )
                return existing

            self.logger.info(
                "Processing loan request %s (borrower=%s, principal=%s)", loan_id, event.borrower, event.principal
            )
            record = DeploymentRecord(
                loan_id=loan_id,
                borrower=event.borrower,
                principal=str(event.principal),
                duration=str(event.duration),
                interest_rate_bps=int(event.interest_rate_bps),
                admin_fee=str(event.admin_fee),
            )
            if existing is not None:
                record.created_at = existing.created_at
                if existing.deploy_landed:
                    record.program_id = existing.program_id
                    record.buffer_account = existing.buffer_account
                    record.deploy_tx_signature = existing.deploy_tx_signature
                    record.binary_hash = existing.binary_hash
            self._persist(record, DeploymentStatus.PENDING)
            return self._deploy_with_retries(record)

    def _deploy_with_retries(self, record: DeploymentRecord) -> DeploymentRecord:
        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_retries + 1):
            try:
                self._attempt_deployment(record)
                return record
            except BinaryValidationError as exc:
                self.logger.error("Binary for loan %s rejected: %s", record.loan_id, exc.reason)
                last_error = exc
                break
            except Exception as exc:
                last_error = exc
                if attempt >= self.max_retries:
                    self.logger.error(
                        "Deployment for loan %s failed on final attempt %s/%s: %s",
                        record.loan_id,
                        attempt,
                        self.max_retries,
                        exc,
                    )
                    break
                delay = self.retry_delay * 2 ** (attempt - 1)
                self.logger.warning(
                    "Deployment for loan %s failed (%s), retrying in %.1fs (attempt %s/%s)",
                    record.loan_id,
                    exc,
                    delay,
                    attempt,
                    self.max_retries,
                )
                self._sleep(delay)
                if self._stop_event.is_set():
                    self.logger.warning("Shutdown during backoff, leaving loan %s in %s", record.loan_id, record.status)
                    return record
        self._fail(record, last_error, PHASE_DEPLOY)
        self.metrics.deployments_total.labels(status="failed").inc()
        return record

    def _attempt_deployment(self, record: DeploymentRecord) -> None:
        loan_id = record.loan_id
        self._persist(record, DeploymentStatus.DEPLOYING)

        if record.deploy_landed:
            self.logger.info(
                "Program %s already deployed for loan %s, registering only", record.program_id, loan_id
            )
        else:
            binary = self.binary_source.fetch(loan_id, record.borrower)
            validation = self.binary_store.validate(binary)
            if not validation.valid:
                raise BinaryValidationError(validation.reason or "invalid binary")
            record.binary_hash = self.binary_store.store(loan_id, binary)
            self._persist(record)

            result = self.deployer.deploy_program(loan_id, binary)
            record.program_id = result.program_id
            record.buffer_account = result.buffer_account
            record.deploy_tx_signature = result.signature
            self._persist(record)

        if record.program_id is None:
            raise ChainError(f"No program recorded for loan {loan_id}")
        record.set_deployed_tx_signature = self.deployer.set_deployed_program(loan_id, record.program_id)
        record.error = None
        record.failed_phase = None
        self._persist(record, DeploymentStatus.DEPLOYED)
        self.logger.info("Loan %s deployed (programId=%s)", loan_id, record.program_id)

    # -- recovery path ------------------------------------------------------

    def process_recovery(self, loan_id: str) -> Optional[DeploymentRecord]:
        loan_id = str(loan_id)
        with self._loan_lock(loan_id):
            record = self.store.get(loan_id)
            if record is None:
                self.logger.warning("No deployment found for loan %s, skipping recovery", loan_id)
                return None
            if record.status != DeploymentStatus.DEPLOYED:
                self.logger.info("Loan %s not in deployed state (status=%s), skipping recovery", loan_id, record.status)
                return record
            return self._recover(record)

    def _recover(self, record: DeploymentRecord) -> DeploymentRecord:
        loan_id = record.loan_id
        try:
            self.logger.info("Processing recovery for loan %s", loan_id)
            self._persist(record, DeploymentStatus.RECOVERING)
            if record.recovery_tx_signature is None:
                if record.program_id is None:
                    raise InvalidTransition(f"Loan {loan_id} has no deployed program to close")
                closed = self.deployer.close_program(loan_id, record.program_id)
                record.recovery_tx_signature = closed.signature
                record.reclaimed_lamports = closed.reclaimed_lamports
                self._persist(record)
            else:
                self.logger.info("Program for loan %s already closed, returning reclaimed balance", loan_id)
            record.return_tx_signature = self.deployer.return_reclaimed_sol(loan_id, record.reclaimed_lamports or 0)
            record.error = None
            record.failed_phase = None
            self._persist(record, DeploymentStatus.RECOVERED)
            self.logger.info("Recovery completed for loan %s", loan_id)
        except Exception as exc:
            self.logger.error("Failed to recover program for loan %s: %s", loan_id, exc)
            self._fail(record, exc, PHASE_RECOVERY)
            self.metrics.recovery_total.labels(status="failure").inc()
        else:
            self.metrics.recovery_total.labels(status="success").inc()
        return record

    # -- operator re-triggers and restart -----------------------------------

    def retry_deployment(self, loan_id: str) -> bool:
        """Re-queue a failed deployment. Returns False if the queue dropped it."""
        loan_id = str(loan_id)
        with self._loan_lock(loan_id):
            record = self.store.get(loan_id)
            if record is None:
                raise DeploymentNotFound(loan_id)
            if record.status != DeploymentStatus.FAILED or record.failed_phase == PHASE_RECOVERY:
                raise InvalidTransition(
                    f"Loan {loan_id} is {record.status} (phase={record.failed_phase}), deployment retry not allowed"
                )
            event = LoanRequested.from_record(record)
        self.logger.info("Operator re-triggered deployment for loan %s", loan_id)
        return self.submit(event)

    def retry_recovery(self, loan_id: str) -> bool:
        """Return a recovery-phase failure to ``deployed`` and queue recovery again."""
        loan_id = str(loan_id)
        with self._loan_lock(loan_id):
            record = self.store.get(loan_id)
            if record is None:
                raise DeploymentNotFound(loan_id)
            if record.status != DeploymentStatus.FAILED or record.failed_phase != PHASE_RECOVERY:
                raise InvalidTransition(
                    f"Loan {loan_id} is {record.status} (phase={record.failed_phase}), recovery retry not allowed"
                )
            record.error = None
            record.failed_phase = None
            self._persist(record, DeploymentStatus.DEPLOYED)
        self.logger.info("Operator re-triggered recovery for loan %s", loan_id)
        return self.submit(LoanRecovered(loan_id=loan_id))

    def resume_interrupted(self) -> int:
        """Settle records a crash left mid-flight; returns how many deployments were re-queued."""

        requeued = 0
        for record in self.store.list_all():
            if record.status in (DeploymentStatus.PENDING, DeploymentStatus.DEPLOYING):
                self.logger.warning("Loan %s interrupted while %s, re-queueing deployment", record.loan_id, record.status)
                self._fail(record, "interrupted", PHASE_DEPLOY)
                if self.submit(LoanRequested.from_record(record)):
                    requeued += 1
            elif record.status == DeploymentStatus.RECOVERING:
                self.logger.warning("Loan %s interrupted during recovery, operator retry required", record.loan_id)
                self._fail(record, "interrupted during recovery", PHASE_RECOVERY)
        return requeued

    # -- persistence helpers ------------------------------------------------

    def _persist(self, record: DeploymentRecord, status: Optional[str] = None) -> None:
        if status is not None:
            record.status = status
        record.touch()
        self.store.put(record)

    def _fail(self, record: DeploymentRecord, error: Any, phase: str) -> None:
        record.error = str(error) if error is not None else "unknown error"
        record.failed_phase = phase
        self._persist(record, DeploymentStatus.FAILED)


__all__ = ["Orchestrator", "SUBMIT_TIMEOUT"]
