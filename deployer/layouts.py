"""Fixed binary layouts of the lending protocol's accounts, events and instructions.

The protocol is an Anchor program: every account and event starts with an
8-byte discriminator (a sha256 prefix of ``account:<Name>`` or
``event:<Name>``) followed by little-endian Borsh fields.
"""
from __future__ import annotations

import base64
import binascii
import enum
import hashlib
import logging
import struct
from dataclasses import dataclass
from typing import Iterable, List, Optional, Union

from solders.pubkey import Pubkey

from .errors import AccountDecodeError

LOGGER = logging.getLogger(__name__)

PROGRAM_DATA_PREFIX = "Program data: "
U64_MAX = 2**64 - 1


def _discriminator(namespace: str, name: str) -> bytes:
    return hashlib.sha256(f"{namespace}:{name}".encode("utf-8")).digest()[:8]


def account_discriminator(name: str) -> bytes:
    return _discriminator("account", name)


def event_discriminator(name: str) -> bytes:
    return _discriminator("event", name)


def instruction_discriminator(name: str) -> bytes:
    return _discriminator("global", name)


def loan_id_to_int(loan_id: Union[str, int]) -> int:
    try:
        value = int(str(loan_id).strip())
    except ValueError:
        raise ValueError(f"loan id must be an unsigned integer, got {loan_id!r}")
    if value < 0 or value > U64_MAX:
        raise ValueError(f"loan id {loan_id} out of u64 range")
    return value


def loan_id_seed(loan_id: Union[str, int]) -> bytes:
    return struct.pack("<Q", loan_id_to_int(loan_id))


class _Reader:
    def __init__(self, data: bytes, offset: int = 0, *, what: str) -> None:
        self.data = bytes(data)
        self.offset = offset
        self.what = what

    def _take(self, size: int) -> bytes:
        end = self.offset + size
        if end > len(self.data):
            raise AccountDecodeError(
                f"{self.what}: expected at least {end} bytes, got {len(self.data)}"
            )
        chunk = self.data[self.offset:end]
        self.offset = end
        return chunk

    def unpack(self, fmt: str) -> int:
        return struct.unpack(fmt, self._take(struct.calcsize(fmt)))[0]

    def u8(self) -> int:
        return self.unpack("<B")

    def u16(self) -> int:
        return self.unpack("<H")

    def u64(self) -> int:
        return self.unpack("<Q")

    def i64(self) -> int:
        return self.unpack("<q")

    def boolean(self) -> bool:
        return self.u8() != 0

    def pubkey(self) -> Pubkey:
        return Pubkey.from_bytes(self._take(32))

    def option_pubkey(self) -> Optional[Pubkey]:
        tag = self.u8()
        if tag == 0:
            return None
        if tag != 1:
            raise AccountDecodeError(f"{self.what}: invalid Option tag {tag}")
        return self.pubkey()


def _reader_for(data: bytes, name: str, discriminator: bytes) -> _Reader:
    if len(data) < 8 or bytes(data[:8]) != discriminator:
        raise AccountDecodeError(f"{name}: discriminator mismatch")
    return _Reader(data, 8, what=name)


class LoanState(enum.IntEnum):
    ACTIVE = 0
    REPAID = 1
    RECOVERED = 2


@dataclass(frozen=True)
class ProtocolConfig:
    admin: Pubkey
    treasury: Pubkey
    deployer: Pubkey
    admin_fee_split_bps: int
    default_interest_rate_bps: int
    default_admin_fee_bps: int
    loan_counter: int
    total_deposits: int
    total_loans_outstanding: int
    is_paused: bool
    bump: int

    DISCRIMINATOR = account_discriminator("ProtocolConfig")

    @classmethod
    def decode(cls, data: bytes) -> "ProtocolConfig":
        reader = _reader_for(data, "ProtocolConfig", cls.DISCRIMINATOR)
        return cls(
            admin=reader.pubkey(),
            treasury=reader.pubkey(),
            deployer=reader.pubkey(),
            admin_fee_split_bps=reader.u16(),
            default_interest_rate_bps=reader.u16(),
            default_admin_fee_bps=reader.u16(),
            loan_counter=reader.u64(),
            total_deposits=reader.u64(),
            total_loans_outstanding=reader.u64(),
            is_paused=reader.boolean(),
            bump=reader.u8(),
        )


@dataclass(frozen=True)
class Loan:
    loan_id: int
    borrower: Pubkey
    principal: int
    duration: int
    interest_rate_bps: int
    admin_fee: int
    start_ts: int
    state: LoanState
    deployed_program: Optional[Pubkey]
    bump: int

    DISCRIMINATOR = account_discriminator("Loan")

    @property
    def expires_at(self) -> int:
        return self.start_ts + self.duration

    def is_expired(self, now: float) -> bool:
        return self.state == LoanState.ACTIVE and now >= self.expires_at

    @classmethod
    def decode(cls, data: bytes) -> "Loan":
        reader = _reader_for(data, "Loan", cls.DISCRIMINATOR)
        loan_id = reader.u64()
        borrower = reader.pubkey()
        principal = reader.u64()
        duration = reader.i64()
        interest_rate_bps = reader.u16()
        admin_fee = reader.u64()
        start_ts = reader.i64()
        raw_state = reader.u8()
        try:
            state = LoanState(raw_state)
        except ValueError:
            raise AccountDecodeError(f"Loan: unknown state {raw_state}")
        return cls(
            loan_id=loan_id,
            borrower=borrower,
            principal=principal,
            duration=duration,
            interest_rate_bps=interest_rate_bps,
            admin_fee=admin_fee,
            start_ts=start_ts,
            state=state,
            deployed_program=reader.option_pubkey(),
            bump=reader.u8(),
        )


@dataclass(frozen=True)
class DepositorRecord:
    owner: Pubkey
    deposited_amount: int
    share_amount: int
    bump: int

    DISCRIMINATOR = account_discriminator("DepositorRecord")

    @classmethod
    def decode(cls, data: bytes) -> "DepositorRecord":
        reader = _reader_for(data, "DepositorRecord", cls.DISCRIMINATOR)
        return cls(
            owner=reader.pubkey(),
            deposited_amount=reader.u64(),
            share_amount=reader.u64(),
            bump=reader.u8(),
        )


@dataclass(frozen=True)
class LoanRequestedEvent:
    borrower: Pubkey
    loan_id: int
    principal: int
    duration: int
    interest_rate_bps: int
    admin_fee: int

    NAME = "LoanRequested"
    DISCRIMINATOR = event_discriminator("LoanRequested")

    @classmethod
    def decode(cls, data: bytes) -> "LoanRequestedEvent":
        reader = _reader_for(data, cls.NAME, cls.DISCRIMINATOR)
        return cls(
            borrower=reader.pubkey(),
            loan_id=reader.u64(),
            principal=reader.u64(),
            duration=reader.i64(),
            interest_rate_bps=reader.u16(),
            admin_fee=reader.u64(),
        )


@dataclass(frozen=True)
class LoanRecoveredEvent:
    loan_id: int
    admin_fee_distributed: int
    depositor_share: int
    treasury_share: int

    NAME = "LoanRecovered"
    DISCRIMINATOR = event_discriminator("LoanRecovered")

    @classmethod
    def decode(cls, data: bytes) -> "LoanRecoveredEvent":
        reader = _reader_for(data, cls.NAME, cls.DISCRIMINATOR)
        return cls(
            loan_id=reader.u64(),
            admin_fee_distributed=reader.u64(),
            depositor_share=reader.u64(),
            treasury_share=reader.u64(),
        )


ProtocolEvent = Union[LoanRequestedEvent, LoanRecoveredEvent]
_EVENT_TYPES = {cls.DISCRIMINATOR: cls for cls in (LoanRequestedEvent, LoanRecoveredEvent)}


def parse_events(log_messages: Iterable[str]) -> List[ProtocolEvent]:
    """Decode every known protocol event carried in ``Program data:`` log lines.

    Lines that are not base64, or whose discriminator is not a known event, are
    skipped: other programs in the same transaction emit data lines too. A
    known event that fails to decode is logged and skipped.
    """

    events: List[ProtocolEvent] = []
    for line in log_messages or []:
        if not line.startswith(PROGRAM_DATA_PREFIX):
            continue
        try:
            payload = base64.b64decode(line[len(PROGRAM_DATA_PREFIX):].strip(), validate=True)
        except (binascii.Error, ValueError):
            continue
        event_type = _EVENT_TYPES.get(payload[:8])
        if event_type is None:
            continue
        try:
            events.append(event_type.decode(payload))
        except AccountDecodeError as exc:
            LOGGER.warning("Skipping undecodable %s event: %s", event_type.NAME, exc)
    return events


def encode_set_deployed_program(loan_id: Union[str, int], program: Pubkey) -> bytes:
    return instruction_discriminator("set_deployed_program") + loan_id_seed(loan_id) + bytes(program)


def encode_return_reclaimed_sol(amount: int) -> bytes:
    if amount < 0 or amount > U64_MAX:
        raise ValueError(f"amount {amount} out of u64 range")
    return instruction_discriminator("return_reclaimed_sol") + struct.pack("<Q", amount)


def encode_reclaim_program_authority() -> bytes:
    return instruction_discriminator("reclaim_program_authority")


__all__ = [
    "DepositorRecord",
    "Loan",
    "LoanRecoveredEvent",
    "LoanRequestedEvent",
    "LoanState",
    "ProtocolConfig",
    "ProtocolEvent",
    "account_discriminator",
    "encode_reclaim_program_authority",
    "encode_return_reclaimed_sol",
    "encode_set_deployed_program",
    "event_discriminator",
    "instruction_discriminator",
    "loan_id_seed",
    "loan_id_to_int",
    "parse_events",
]
