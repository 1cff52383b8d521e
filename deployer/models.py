"""Deployment records and the normalized events flowing into the orchestrator."""
from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, Optional, Union


class DeploymentStatus:
    PENDING = "pending"
    DEPLOYING = "deploying"
    DEPLOYED = "deployed"
    RECOVERING = "recovering"
    RECOVERED = "recovered"
    FAILED = "failed"

    ALL = (PENDING, DEPLOYING, DEPLOYED, RECOVERING, RECOVERED, FAILED)


PHASE_DEPLOY = "deploy"
PHASE_RECOVERY = "recovery"


def now_ms() -> int:
    return int(time.time() * 1000)


# Python attribute -> JSON key, matching what ops tooling reads from /deployments.
_JSON_KEYS = {
    "loan_id": "loanId",
    "borrower": "borrower",
    "principal": "principal",
    "status": "status",
    "program_id": "programId",
    "buffer_account": "bufferAccount",
    "deploy_tx_signature": "deployTxSignature",
    "set_deployed_tx_signature": "setDeployedTxSignature",
    "recovery_tx_signature": "recoveryTxSignature",
    "return_tx_signature": "returnTxSignature",
    "reclaimed_lamports": "reclaimedLamports",
    "binary_hash": "binaryHash",
    "error": "error",
    "failed_phase": "failedPhase",
    "duration": "duration",
    "interest_rate_bps": "interestRateBps",
    "admin_fee": "adminFee",
    "created_at": "createdAt",
    "updated_at": "updatedAt",
}


@dataclass
class DeploymentRecord:
    """Per-loan deployment state. ``loan_id`` is the idempotency key."""

    loan_id: str
    borrower: str
    principal: str
    status: str = DeploymentStatus.PENDING
    program_id: Optional[str] = None
    buffer_account: Optional[str] = None
    deploy_tx_signature: Optional[str] = None
    set_deployed_tx_signature: Optional[str] = None
    recovery_tx_signature: Optional[str] = None
    return_tx_signature: Optional[str] = None
    reclaimed_lamports: Optional[int] = None
    binary_hash: Optional[str] = None
    error: Optional[str] = None
    failed_phase: Optional[str] = None
    duration: Optional[str] = None
    interest_rate_bps: Optional[int] = None
    admin_fee: Optional[str] = None
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {_JSON_KEYS[key]: value for key, value in asdict(self).items()}

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "DeploymentRecord":
        known = {f.name for f in fields(cls)}
        kwargs: Dict[str, Any] = {}
        for attr, key in _JSON_KEYS.items():
            if attr in known and key in payload:
                kwargs[attr] = payload[key]
        return cls(**kwargs)

    def touch(self) -> None:
        self.updated_at = now_ms()

    @property
    def deploy_landed(self) -> bool:
        return bool(self.program_id and self.deploy_tx_signature)


@dataclass(frozen=True)
class LoanRequested:
    loan_id: str
    borrower: str
    principal: str
    duration: str = "0"
    interest_rate_bps: int = 0
    admin_fee: str = "0"

    name = "loanRequested"

    @classmethod
    def from_record(cls, record: DeploymentRecord) -> "LoanRequested":
        return cls(
            loan_id=record.loan_id,
            borrower=record.borrower,
            principal=record.principal,
            duration=record.duration or "0",
            interest_rate_bps=int(record.interest_rate_bps or 0),
            admin_fee=record.admin_fee or "0",
        )


@dataclass(frozen=True)
class LoanRecovered:
    loan_id: str

    name = "loanRecovered"


@dataclass(frozen=True)
class LoanExpired:
    loan_id: str

    name = "loanExpired"


LoanEvent = Union[LoanRequested, LoanRecovered, LoanExpired]


__all__ = [
    "DeploymentRecord",
    "DeploymentStatus",
    "LoanEvent",
    "LoanExpired",
    "LoanRecovered",
    "LoanRequested",
    "PHASE_DEPLOY",
    "PHASE_RECOVERY",
    "now_ms",
]
