"""Error taxonomy shared by the deployer components."""
from __future__ import annotations

from typing import Optional


class DeployerError(Exception):
    """Base class for every error raised by the deployer service."""


class ConfigurationError(DeployerError):
    """Missing or malformed configuration; fatal at startup."""


class StorageError(DeployerError):
    """The durable state store failed to read or write."""


class BinaryNotFound(DeployerError):
    def __init__(self, loan_id: str, detail: Optional[str] = None) -> None:
        message = f"Binary not found for loan {loan_id}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.loan_id = loan_id


class BinaryValidationError(DeployerError):
    def __init__(self, reason: str) -> None:
        super().__init__(f"Binary validation failed: {reason}")
        self.reason = reason


class DeploymentNotFound(DeployerError):
    def __init__(self, loan_id: str) -> None:
        super().__init__(f"No deployment record for loan {loan_id}")
        self.loan_id = loan_id


class InvalidTransition(DeployerError):
    """An operator re-trigger does not apply to the record's current status."""


class AccountDecodeError(DeployerError):
    """On-chain bytes do not match the expected account or event layout."""


class ChainError(DeployerError):
    """A chain read returned no usable value."""


__all__ = [
    "AccountDecodeError",
    "BinaryNotFound",
    "BinaryValidationError",
    "ChainError",
    "ConfigurationError",
    "DeployerError",
    "DeploymentNotFound",
    "InvalidTransition",
    "StorageError",
]
