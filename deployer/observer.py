"""Event observer: a log subscription plus a periodic reconciliation sweep.

Both paths only detect. They hand normalized events to a sink (the
orchestrator's ``submit``) and never touch deployment state themselves.
"""
from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from solana.rpc.commitment import Confirmed
from solana.rpc.websocket_api import connect
from solders.pubkey import Pubkey
from solders.rpc.config import RpcTransactionLogsFilterMentions

from .chain import ProgramDeployer, SolanaChainClient
from .layouts import LoanRecoveredEvent, LoanRequestedEvent, ProtocolEvent, parse_events
from .metrics import DeployerMetrics
from .models import DeploymentStatus, LoanEvent, LoanExpired, LoanRecovered, LoanRequested
from .store import DeploymentStore

EVENT_MARKERS = ("Program log: LoanRequested", "Program log: LoanRecovered")
BACKFILL_SIGNATURE_LIMIT = 100

EventSink = Callable[[LoanEvent], None]


def has_event_marker(logs: Iterable[str]) -> bool:
    return any(marker in line for line in logs or [] for marker in EVENT_MARKERS)


def normalize_event(event: ProtocolEvent) -> LoanEvent:
    if isinstance(event, LoanRequestedEvent):
        return LoanRequested(
            loan_id=str(event.loan_id),
            borrower=str(event.borrower),
            principal=str(event.principal),
            duration=str(event.duration),
            interest_rate_bps=event.interest_rate_bps,
            admin_fee=str(event.admin_fee),
        )
    if isinstance(event, LoanRecoveredEvent):
        return LoanRecovered(loan_id=str(event.loan_id))
    raise TypeError(f"Unsupported protocol event {event!r}")


class TransactionEventReader:
    """Fetches a transaction by signature and turns its protocol events into loan events."""

    def __init__(self, chain: SolanaChainClient, logger: Optional[logging.Logger] = None) -> None:
        self.chain = chain
        self.logger = logger or logging.getLogger(__name__)

    def read(self, signature: str) -> List[LoanEvent]:
        logs = self.chain.get_transaction_logs(signature)
        if logs is None:
            self.logger.warning("Transaction %s not found while decoding events", signature)
            return []
        events = [normalize_event(event) for event in parse_events(logs)]
        if not events:
            self.logger.warning("No matching event in transaction %s", signature)
        return events

    def dispatch(self, signature: str, sink: EventSink) -> int:
        """Read ``signature`` and push its events into ``sink``; failures are logged, not raised."""
        try:
            events = self.read(signature)
        except Exception as exc:
            self.logger.error("Failed to decode events from transaction %s: %s", signature, exc)
            return 0
        for event in events:
            self.logger.info("%s detected for loan %s (tx=%s)", event.name, event.loan_id, signature)
            sink(event)
        return len(events)


class LogSubscription(threading.Thread):
    """Push path: websocket subscription to logs mentioning the protocol program."""

    def __init__(
        self,
        *,
        ws_url: str,
        program_id: Pubkey,
        reader: TransactionEventReader,
        sink: EventSink,
        logger: Optional[logging.Logger] = None,
        reconnect_delay: float = 5.0,
    ) -> None:
        super().__init__(daemon=True, name="log-subscription")
        self.ws_url = ws_url
        self.program_id = program_id
        self.reader = reader
        self.sink = sink
        self.logger = logger or logging.getLogger(__name__)
        self.reconnect_delay = reconnect_delay
        self._stop_event = threading.Event()

    def stop(self) -> None:
        self._stop_event.set()

    def handle_notification(self, signature: str, logs: Sequence[str]) -> None:
        # Only the sweep moves the watermark.
        if not has_event_marker(logs):
            return
        self.reader.dispatch(signature, self.sink)

    def run(self) -> None:  # pragma: no cover - network loop
        self.logger.info("Log subscription started for program %s", self.program_id)
        while not self._stop_event.is_set():
            try:
                asyncio.run(self._listen())
            except Exception as exc:
                self.logger.error("Log subscription error: %s", exc)
            if not self._stop_event.is_set():
                self.logger.info("Reconnecting log subscription in %.1fs", self.reconnect_delay)
                self._stop_event.wait(self.reconnect_delay)
        self.logger.info("Log subscription stopped")

    async def _listen(self) -> None:  # pragma: no cover - network loop
        async with connect(self.ws_url) as websocket:
            await websocket.logs_subscribe(RpcTransactionLogsFilterMentions(self.program_id), commitment=Confirmed)
            first = await websocket.recv()
            subscription_id = first[0].result
            self.logger.info("Subscribed to program logs (subscription=%s)", subscription_id)
            try:
                while not self._stop_event.is_set():
                    try:
                        messages = await asyncio.wait_for(websocket.recv(), timeout=1.0)
                    except asyncio.TimeoutError:
                        continue
                    for message in messages:
                        result = getattr(message, "result", None)
                        value = getattr(result, "value", None)
                        if value is None or value.err is not None:
                            continue
                        # The reader issues blocking RPC calls; keep them off the event loop.
                        await asyncio.to_thread(
                            self.handle_notification,
                            str(value.signature),
                            list(value.logs),
                        )
            finally:
                await websocket.logs_unsubscribe(subscription_id)


class ReconciliationSweep(threading.Thread):
    """Timer path: backfills missed transactions and detects expired loans."""

    def __init__(
        self,
        *,
        chain: SolanaChainClient,
        deployer: ProgramDeployer,
        store: DeploymentStore,
        reader: TransactionEventReader,
        sink: EventSink,
        metrics: DeployerMetrics,
        interval: float = 30.0,
        logger: Optional[logging.Logger] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(daemon=True, name="reconciliation-sweep")
        self.chain = chain
        self.deployer = deployer
        self.store = store
        self.reader = reader
        self.sink = sink
        self.metrics = metrics
        self.interval = interval
        self.logger = logger or logging.getLogger(__name__)
        self.clock = clock
        self._stop_event = threading.Event()

    def stop(self) -> None:
        self._stop_event.set()

    def run(self) -> None:  # pragma: no cover - background loop
        self.logger.info("Reconciliation sweep started (interval=%.1fs)", self.interval)
        while not self._stop_event.wait(self.interval):
            try:
                self.sweep()
            except Exception as exc:
                self.logger.exception("Reconciliation sweep failed: %s", exc)
        self.logger.info("Reconciliation sweep stopped")

    def sweep(self) -> None:
        try:
            self.backfill()
        except Exception as exc:
            self.logger.error("Watermark backfill failed: %s", exc)
        self.check_expiries()

    def backfill(self) -> int:
        """Replay protocol transactions newer than the watermark, oldest first."""

        watermark = self.store.get_watermark()
        if watermark is None:
            slot = self.chain.get_slot()
            self.store.set_watermark(slot)
            self.logger.info("Initialised watermark at slot %s", slot)
            return 0
        signatures = self.chain.get_signatures(self.deployer.program_id, limit=BACKFILL_SIGNATURE_LIMIT)
        fresh = sorted(
            (info for info in signatures if info.slot > watermark and not info.failed),
            key=lambda info: info.slot,
        )
        emitted = 0
        for info in fresh:
            emitted += self.reader.dispatch(info.signature, self.sink)
        highest = max((info.slot for info in signatures), default=watermark)
        if highest > watermark:
            self.store.set_watermark(highest)
        if fresh:
            self.logger.info("Backfilled %s transaction(s) above slot %s", len(fresh), watermark)
        return emitted

    def check_expiries(self) -> int:
        deployed = [record for record in self.store.list_all() if record.status == DeploymentStatus.DEPLOYED]
        now = self.clock()
        expired = 0
        for record in deployed:
            try:
                loan = self.deployer.fetch_loan(record.loan_id)
            except Exception as exc:
                self.logger.error("Error checking loan %s: %s", record.loan_id, exc)
                continue
            if loan.is_expired(now):
                self.logger.info("Loan %s has expired", record.loan_id)
                self.sink(LoanExpired(loan_id=record.loan_id))
                expired += 1
        self.metrics.active_loans.set(len(deployed))
        return expired


class EventObserver:
    """Owns both detection paths and their lifecycle."""

    def __init__(
        self,
        *,
        chain: SolanaChainClient,
        deployer: ProgramDeployer,
        store: DeploymentStore,
        sink: EventSink,
        metrics: DeployerMetrics,
        ws_url: str,
        poll_interval: float,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.chain = chain
        self.deployer = deployer
        self.store = store
        self.sink = sink
        self.metrics = metrics
        self.ws_url = ws_url
        self.poll_interval = poll_interval
        self.logger = logger or logging.getLogger(__name__)
        self.reader = TransactionEventReader(chain, self.logger)
        self._lock = threading.Lock()
        self.subscription: Optional[LogSubscription] = None
        self.sweeper: Optional[ReconciliationSweep] = None

    @property
    def running(self) -> bool:
        return self.subscription is not None

    def _build(self) -> Tuple[LogSubscription, ReconciliationSweep]:
        subscription = LogSubscription(
            ws_url=self.ws_url,
            program_id=self.deployer.program_id,
            reader=self.reader,
            sink=self.sink,
            logger=self.logger.getChild("subscription"),
        )
        sweeper = ReconciliationSweep(
            chain=self.chain,
            deployer=self.deployer,
            store=self.store,
            reader=self.reader,
            sink=self.sink,
            metrics=self.metrics,
            interval=self.poll_interval,
            logger=self.logger.getChild("sweep"),
        )
        return subscription, sweeper

    def start(self) -> None:
        with self._lock:
            if self.running:
                return
            subscription, sweeper = self._build()
            subscription.start()
            sweeper.start()
            self.subscription, self.sweeper = subscription, sweeper
            self.logger.info("Event observer started")

    def stop(self, timeout: float = 5.0) -> None:
        with self._lock:
            subscription, sweeper = self.subscription, self.sweeper
            self.subscription = None
            self.sweeper = None
        if subscription is None or sweeper is None:
            return
        subscription.stop()
        sweeper.stop()
        for worker in (subscription, sweeper):
            if worker.is_alive():
                worker.join(timeout=timeout)
        self.logger.info("Event observer stopped")


__all__ = [
    "EVENT_MARKERS",
    "EventObserver",
    "LogSubscription",
    "ReconciliationSweep",
    "TransactionEventReader",
    "has_event_marker",
    "normalize_event",
]
