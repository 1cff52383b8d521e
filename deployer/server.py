"""Operational HTTP surface and process entry point for the program deployer."""
from __future__ import annotations

import datetime as dt
import hmac
import json
import logging
import signal
import sys
import threading
import time
import urllib.parse
from collections import deque
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Deque, Dict, Optional, Tuple

from .binaries import BinaryStore, DirectoryBinarySource
from .chain import ProgramDeployer, SolanaChainClient
from .config import DeployerConfig, load_keypair
from .context import LOGGER_NAME, ServiceContext, configure_logging
from .errors import ConfigurationError, DeployerError, DeploymentNotFound, InvalidTransition
from .metrics import DeployerMetrics
from .models import DeploymentStatus
from .observer import EventObserver
from .orchestrator import Orchestrator
from .store import DeploymentStore

LOGGER = logging.getLogger(LOGGER_NAME)


class APIError(Exception):
    def __init__(self, status: int, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.status = status
        self.message = message
        self.details = details or {}


class RateLimiter:
    """Sliding-window request limit per client address.

    Addresses idle for a whole window are forgotten, at most once per window.
    """

    def __init__(self, limit: int = 120, window: int = 60, clock: Callable[[], float] = time.monotonic) -> None:
        self.limit = limit
        self.window = window
        self.clock = clock
        self._hits: Dict[str, Deque[float]] = {}
        self._last_prune = clock()
        self._lock = threading.Lock()

    @property
    def tracked_clients(self) -> int:
        with self._lock:
            return len(self._hits)

    def allow(self, client: str) -> bool:
        now = self.clock()
        cutoff = now - self.window
        with self._lock:
            if now - self._last_prune >= self.window:
                self._hits = {key: hits for key, hits in self._hits.items() if hits and hits[-1] > cutoff}
                self._last_prune = now
            hits = self._hits.setdefault(client, deque())
            while hits and hits[0] <= cutoff:
                hits.popleft()
            if len(hits) >= self.limit:
                return False
            hits.append(now)
            return True


def _utc_now_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat().replace("+00:00", "Z")


class OperationsServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(
        self,
        address: Tuple[str, int],
        *,
        store: DeploymentStore,
        metrics: DeployerMetrics,
        orchestrator: Optional[Orchestrator] = None,
        api_key: Optional[str] = None,
        rate_limiter: Optional[RateLimiter] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.store = store
        self.metrics = metrics
        self.orchestrator = orchestrator
        self.api_key = api_key
        self.rate_limiter = rate_limiter or RateLimiter()
        self.logger = logger or LOGGER
        super().__init__(address, Handler)


class Handler(BaseHTTPRequestHandler):
    server_version = "ProgramDeployer/1.0"
    server: OperationsServer

    def log_message(self, format: str, *args: Any) -> None:  # pragma: no cover - logging override
        self.server.logger.debug("%s - %s", self.address_string(), format % args)

    def _json(self, status: int, payload: Dict[str, Any]) -> None:
        body = json.dumps(payload).encode("utf-8")
        self._send(status, body, "application/json")

    def _send(self, status: int, body: bytes, content_type: str) -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _ensure_authorized(self) -> bool:
        api_key = self.server.api_key
        if not api_key:
            return True
        provided = self.headers.get("X-API-Key", "")
        if not provided or not hmac.compare_digest(api_key, provided):
            self._json(HTTPStatus.UNAUTHORIZED, {"error": "unauthorized"})
            return False
        return True

    def _rate_limit(self) -> bool:
        limiter = self.server.rate_limiter
        if not limiter.allow(self.client_address[0]):
            self._json(HTTPStatus.TOO_MANY_REQUESTS, {"error": "rate-limit", "retryIn": limiter.window})
            return False
        return True

    def _guard(self) -> bool:
        return self._rate_limit() and self._ensure_authorized()

    def _dispatch(self, route: Any) -> None:
        try:
            route()
        except APIError as exc:
            payload: Dict[str, Any] = {"error": exc.message}
            if exc.details:
                payload["details"] = exc.details
            self._json(exc.status, payload)
        except DeployerError as exc:
            self.server.logger.error("Request %s %s failed: %s", self.command, self.path, exc)
            self._json(HTTPStatus.INTERNAL_SERVER_ERROR, {"error": str(exc)})
        except Exception as exc:
            self.server.logger.exception("Unhandled error on %s %s: %s", self.command, self.path, exc)
            self._json(HTTPStatus.INTERNAL_SERVER_ERROR, {"error": "internal error"})

    def do_GET(self) -> None:  # noqa: N802
        parsed = urllib.parse.urlparse(self.path)
        if parsed.path == "/health":
            self._health()
            return
        if not self._guard():
            return
        parts = [part for part in parsed.path.split("/") if part]
        if parts == ["metrics"]:
            self._dispatch(self._metrics)
            return
        if parts == ["deployments"]:
            self._dispatch(self._list_deployments)
            return
        if len(parts) == 2 and parts[0] == "deployments":
            self._dispatch(lambda: self._get_deployment(parts[1]))
            return
        if len(parts) == 3 and parts[0] == "deployments" and parts[2] == "history":
            self._dispatch(lambda: self._history(parts[1]))
            return
        self._json(HTTPStatus.NOT_FOUND, {"error": "not found"})

    def do_POST(self) -> None:  # noqa: N802
        parsed = urllib.parse.urlparse(self.path)
        if not self._guard():
            return
        parts = [part for part in parsed.path.split("/") if part]
        if len(parts) == 3 and parts[0] == "deployments" and parts[2] in {"retry-deploy", "retry-recovery"}:
            self._dispatch(lambda: self._retry(parts[1], parts[2]))
            return
        self._json(HTTPStatus.NOT_FOUND, {"error": "not found"})

    def _health(self) -> None:
        try:
            records = self.server.store.list_all()
        except Exception as exc:
            self.server.logger.error("Health check failed: %s", exc)
            self._json(HTTPStatus.INTERNAL_SERVER_ERROR, {"status": "unhealthy", "error": str(exc)})
            return
        active = sum(1 for record in records if record.status == DeploymentStatus.DEPLOYED)
        self._json(
            HTTPStatus.OK,
            {
                "status": "healthy",
                "activeLoans": active,
                "totalDeployments": len(records),
                "timestamp": _utc_now_iso(),
            },
        )

    def _metrics(self) -> None:
        metrics = self.server.metrics
        self._send(HTTPStatus.OK, metrics.exposition(), metrics.content_type)

    def _list_deployments(self) -> None:
        records = self.server.store.list_all()
        self._json(HTTPStatus.OK, {"data": [record.to_dict() for record in records]})

    def _get_deployment(self, loan_id: str) -> None:
        record = self.server.store.get(loan_id)
        if record is None:
            raise APIError(HTTPStatus.NOT_FOUND, "Deployment not found")
        self._json(HTTPStatus.OK, record.to_dict())

    def _history(self, loan_id: str) -> None:
        if self.server.store.get(loan_id) is None:
            raise APIError(HTTPStatus.NOT_FOUND, "Deployment not found")
        self._json(HTTPStatus.OK, {"data": self.server.store.history(loan_id)})

    def _retry(self, loan_id: str, action: str) -> None:
        orchestrator = self.server.orchestrator
        if orchestrator is None:
            raise APIError(HTTPStatus.SERVICE_UNAVAILABLE, "orchestrator unavailable")
        try:
            if action == "retry-deploy":
                queued = orchestrator.retry_deployment(loan_id)
            else:
                queued = orchestrator.retry_recovery(loan_id)
        except DeploymentNotFound:
            raise APIError(HTTPStatus.NOT_FOUND, "Deployment not found")
        except InvalidTransition as exc:
            raise APIError(HTTPStatus.CONFLICT, str(exc))
        if not queued:
            raise APIError(HTTPStatus.SERVICE_UNAVAILABLE, "event queue full, try again later")
        self._json(HTTPStatus.ACCEPTED, {"loanId": loan_id, "action": action, "queued": True})


class DeployerService:
    """Wires the components together and owns their start/stop order."""

    def __init__(
        self,
        context: ServiceContext,
        *,
        store: DeploymentStore,
        orchestrator: Orchestrator,
        observer: EventObserver,
        http: OperationsServer,
    ) -> None:
        self.context = context
        self.store = store
        self.orchestrator = orchestrator
        self.observer = observer
        self.http = http
        self.logger = context.logger
        self._http_thread: Optional[threading.Thread] = None
        self._stopped = False

    @classmethod
    def build(cls, context: ServiceContext, host: str = "0.0.0.0") -> "DeployerService":
        config = context.config
        logger = context.logger
        logger.info("Starting program deployer: %s", json.dumps(config.redacted()))

        deployer_keypair = load_keypair(config.deployer_keypair_path)
        admin_keypair = load_keypair(config.admin_keypair_path) if config.admin_keypair_path else None
        if admin_keypair is None:
            logger.warning("ADMIN_KEYPAIR_PATH not set; registering and recovering programs will fail")

        chain = SolanaChainClient(
            config.rpc_url,
            timeout=config.rpc_timeout,
            metrics=context.metrics,
            logger=context.child_logger("rpc"),
        )
        try:
            version = chain.get_version()
        except Exception as exc:
            raise ConfigurationError(f"RPC endpoint {config.rpc_url} unreachable: {exc}") from exc
        logger.info("Connected to Solana cluster %s (version %s)", config.cluster, version)

        store = DeploymentStore(config.db_path)
        try:
            deployer = ProgramDeployer(
                chain,
                config.program_pubkey(),
                deployer_keypair,
                admin_keypair,
                metrics=context.metrics,
                logger=context.child_logger("deployer"),
            )
            deployer.init()
            orchestrator = Orchestrator(
                context,
                store=store,
                binary_source=DirectoryBinarySource(config.binary_source_path),
                binary_store=BinaryStore(config.binary_storage_path, logger=context.child_logger("binaries")),
                deployer=deployer,
            )
            observer = EventObserver(
                chain=chain,
                deployer=deployer,
                store=store,
                sink=orchestrator.submit,
                metrics=context.metrics,
                ws_url=config.ws_url,
                poll_interval=config.poll_interval_ms / 1000.0,
                logger=context.child_logger("observer"),
            )
            http = OperationsServer(
                (host, config.port),
                store=store,
                metrics=context.metrics,
                orchestrator=orchestrator,
                api_key=config.api_key,
                rate_limiter=RateLimiter(limit=config.rate_limit, window=config.rate_limit_window),
                logger=context.child_logger("http"),
            )
        except Exception:
            store.close()
            raise
        return cls(context, store=store, orchestrator=orchestrator, observer=observer, http=http)

    def start(self) -> None:
        requeued = self.orchestrator.resume_interrupted()
        if requeued:
            self.logger.info("Re-queued %s interrupted deployment(s)", requeued)
        self.orchestrator.start()
        self.observer.start()
        self._http_thread = threading.Thread(target=self.http.serve_forever, name="http", daemon=True)
        self._http_thread.start()
        host, port = self.http.server_address[:2]
        self.logger.info("Health server listening on http://%s:%s", host, port)

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        self.logger.info("Shutting down program deployer")
        self.observer.stop()
        self.orchestrator.stop()
        self.http.shutdown()
        self.http.server_close()
        if self._http_thread is not None:
            self._http_thread.join(timeout=5)
        self.store.close()
        self.logger.info("Program deployer stopped")


def run(context: ServiceContext) -> int:
    try:
        service = DeployerService.build(context)
    except DeployerError as exc:
        context.logger.error("Failed to start program deployer: %s", exc)
        return 1

    shutdown = threading.Event()

    def _request_shutdown(signum: int, _frame: Any) -> None:
        context.logger.info("Received signal %s", signal.Signals(signum).name)
        shutdown.set()

    signal.signal(signal.SIGINT, _request_shutdown)
    signal.signal(signal.SIGTERM, _request_shutdown)
    try:
        service.start()
        while not shutdown.wait(1.0):
            pass
    finally:
        service.stop()
    return 0


def main() -> int:
    try:
        config = DeployerConfig.from_env()
    except ConfigurationError as exc:
        configure_logging()
        LOGGER.error("Invalid configuration: %s", exc)
        return 1
    configure_logging(config.log_level)
    return run(ServiceContext.create(config))


if __name__ == "__main__":
    sys.exit(main())
