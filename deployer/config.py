"""Service configuration loaded once from the environment."""
from __future__ import annotations

import json
import os
import urllib.parse
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from solders.keypair import Keypair
from solders.pubkey import Pubkey

from .errors import ConfigurationError

DEFAULT_PROGRAM_ID = "4dWBvsjopo5Z145Xmse3Lx41G1GKpMyWMLc6p4a52T4N"


def _int_env(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")
    if value < 0:
        raise ConfigurationError(f"{name} must not be negative")
    return value


def derive_ws_url(rpc_url: str) -> str:
    parsed = urllib.parse.urlparse(rpc_url)
    scheme = "wss" if parsed.scheme == "https" else "ws"
    netloc = parsed.netloc
    if parsed.port == 8899:
        netloc = netloc.replace(":8899", ":8900")
    return urllib.parse.urlunparse(parsed._replace(scheme=scheme, netloc=netloc))


@dataclass(frozen=True)
class DeployerConfig:
    rpc_url: str = "http://127.0.0.1:8899"
    ws_url: str = "ws://127.0.0.1:8900"
    program_id: str = DEFAULT_PROGRAM_ID
    deployer_keypair_path: str = "./keys/deployer-keypair.json"
    admin_keypair_path: Optional[str] = None
    binary_storage_path: str = "./binaries"
    binary_source_path: str = "./binaries/incoming"
    db_path: str = "./data/deployer.db"
    port: int = 3000
    max_retries: int = 3
    retry_delay_ms: int = 5000
    poll_interval_ms: int = 30000
    event_queue_size: int = 1000
    rpc_timeout: int = 30
    cluster: str = "localnet"
    api_key: Optional[str] = None
    rate_limit: int = 120
    rate_limit_window: int = 60
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "DeployerConfig":
        env = os.environ if env is None else env
        rpc_url = env.get("RPC_URL") or cls.rpc_url
        storage = env.get("BINARY_STORAGE_PATH") or cls.binary_storage_path
        config = cls(
            rpc_url=rpc_url,
            ws_url=env.get("WS_URL") or derive_ws_url(rpc_url),
            program_id=env.get("PROGRAM_ID") or DEFAULT_PROGRAM_ID,
            deployer_keypair_path=env.get("DEPLOYER_KEYPAIR_PATH") or cls.deployer_keypair_path,
            admin_keypair_path=env.get("ADMIN_KEYPAIR_PATH") or None,
            binary_storage_path=storage,
            binary_source_path=env.get("BINARY_SOURCE_PATH") or os.path.join(storage, "incoming"),
            db_path=env.get("DB_PATH") or cls.db_path,
            port=_int_env(env, "PORT", cls.port),
            max_retries=_int_env(env, "MAX_RETRIES", cls.max_retries),
            retry_delay_ms=_int_env(env, "RETRY_DELAY_MS", cls.retry_delay_ms),
            poll_interval_ms=_int_env(env, "POLL_INTERVAL_MS", cls.poll_interval_ms),
            event_queue_size=_int_env(env, "EVENT_QUEUE_SIZE", cls.event_queue_size),
            rpc_timeout=_int_env(env, "RPC_TIMEOUT", cls.rpc_timeout),
            cluster=env.get("CLUSTER") or cls.cluster,
            api_key=env.get("API_KEY") or None,
            rate_limit=_int_env(env, "RATE_LIMIT", cls.rate_limit),
            rate_limit_window=_int_env(env, "RATE_LIMIT_WINDOW", cls.rate_limit_window),
            log_level=(env.get("LOG_LEVEL") or cls.log_level).upper(),
        )
        if config.max_retries < 1:
            raise ConfigurationError("MAX_RETRIES must be at least 1")
        config.program_pubkey()
        return config

    def program_pubkey(self) -> Pubkey:
        try:
            return Pubkey.from_string(self.program_id)
        except ValueError as exc:
            raise ConfigurationError(f"Invalid PROGRAM_ID {self.program_id!r}: {exc}")

    def redacted(self) -> dict:
        """Configuration safe to log at startup."""
        return {
            "rpcUrl": self.rpc_url,
            "wsUrl": self.ws_url,
            "programId": self.program_id,
            "cluster": self.cluster,
            "dbPath": self.db_path,
            "binaryStoragePath": self.binary_storage_path,
            "maxRetries": self.max_retries,
            "retryDelayMs": self.retry_delay_ms,
            "pollIntervalMs": self.poll_interval_ms,
            "port": self.port,
        }


def load_keypair(path: str) -> Keypair:
    """Load a keypair stored in the Solana CLI format (JSON array of 64 bytes)."""

    candidate = Path(path)
    if not candidate.exists():
        raise ConfigurationError(f"Keypair not found at: {path}")
    try:
        with candidate.open("r", encoding="utf-8") as handle:
            secret = json.load(handle)
        return Keypair.from_bytes(bytes(secret))
    except (OSError, ValueError, TypeError) as exc:
        raise ConfigurationError(f"Unable to load keypair {path}: {exc}")


__all__ = ["DeployerConfig", "derive_ws_url", "load_keypair"]
