import base64
import struct
import unittest

from solders.pubkey import Pubkey

from deployer.errors import AccountDecodeError
from deployer.layouts import (
    DepositorRecord,
    Loan,
    LoanRecoveredEvent,
    LoanRequestedEvent,
    LoanState,
    ProtocolConfig,
    encode_return_reclaimed_sol,
    encode_set_deployed_program,
    instruction_discriminator,
    loan_id_seed,
    parse_events,
)

BORROWER = Pubkey.new_unique()


def loan_bytes(*, state: int = 0, deployed_program=None, start_ts: int = 1_700_000_000, duration: int = 86_400) -> bytes:
    body = struct.pack("<Q", 42) + bytes(BORROWER) + struct.pack("<QqHQqB", 5_000_000_000, duration, 500, 1_000, start_ts, state)
    if deployed_program is None:
        body += b"\x00"
    else:
        body += b"\x01" + bytes(deployed_program)
    return Loan.DISCRIMINATOR + body + b"\xfe"


def requested_event_bytes() -> bytes:
    return LoanRequestedEvent.DISCRIMINATOR + bytes(BORROWER) + struct.pack("<QQqHQ", 42, 5_000_000_000, 3600, 750, 25_000)


def data_line(payload: bytes) -> str:
    return "Program data: " + base64.b64encode(payload).decode("ascii")


class AccountLayoutTests(unittest.TestCase):
    def test_decode_protocol_config(self) -> None:
        admin, treasury, deployer = Pubkey.new_unique(), Pubkey.new_unique(), Pubkey.new_unique()
        data = (
            ProtocolConfig.DISCRIMINATOR
            + bytes(admin)
            + bytes(treasury)
            + bytes(deployer)
            + struct.pack("<HHHQQQ?B", 2000, 500, 100, 7, 10**10, 10**9, False, 254)
        )
        config = ProtocolConfig.decode(data)
        self.assertEqual(config.deployer, deployer)
        self.assertEqual(config.admin_fee_split_bps, 2000)
        self.assertEqual(config.loan_counter, 7)
        self.assertFalse(config.is_paused)
        self.assertEqual(config.bump, 254)

    def test_decode_loan_without_program(self) -> None:
        loan = Loan.decode(loan_bytes())
        self.assertEqual(loan.loan_id, 42)
        self.assertEqual(loan.borrower, BORROWER)
        self.assertEqual(loan.principal, 5_000_000_000)
        self.assertEqual(loan.state, LoanState.ACTIVE)
        self.assertIsNone(loan.deployed_program)
        self.assertEqual(loan.bump, 0xFE)

    def test_decode_loan_with_program(self) -> None:
        program = Pubkey.new_unique()
        loan = Loan.decode(loan_bytes(state=1, deployed_program=program))
        self.assertEqual(loan.deployed_program, program)
        self.assertEqual(loan.state, LoanState.REPAID)

    def test_expiry(self) -> None:
        loan = Loan.decode(loan_bytes(start_ts=1000, duration=100))
        self.assertEqual(loan.expires_at, 1100)
        self.assertFalse(loan.is_expired(1099))
        self.assertTrue(loan.is_expired(1100))
        repaid = Loan.decode(loan_bytes(state=1, start_ts=1000, duration=100))
        self.assertFalse(repaid.is_expired(5000))

    def test_decode_depositor_record(self) -> None:
        owner = Pubkey.new_unique()
        data = DepositorRecord.DISCRIMINATOR + bytes(owner) + struct.pack("<QQB", 3_000_000_000, 2_900_000_000, 253)
        record = DepositorRecord.decode(data)
        self.assertEqual(record.owner, owner)
        self.assertEqual(record.deposited_amount, 3_000_000_000)
        self.assertEqual(record.share_amount, 2_900_000_000)
        self.assertEqual(record.bump, 253)

    def test_wrong_discriminator(self) -> None:
        with self.assertRaises(AccountDecodeError):
            Loan.decode(b"\x00" * 8 + loan_bytes()[8:])

    def test_truncated_account(self) -> None:
        with self.assertRaises(AccountDecodeError):
            Loan.decode(loan_bytes()[:40])

    def test_unknown_state(self) -> None:
        with self.assertRaises(AccountDecodeError):
            Loan.decode(loan_bytes(state=9))


class EventParsingTests(unittest.TestCase):
    def test_parses_requested_event(self) -> None:
        events = parse_events(
            [
                "Program 4dWB invoke [1]",
                "Program log: LoanRequested",
                data_line(requested_event_bytes()),
                "Program 4dWB success",
            ]
        )
        self.assertEqual(len(events), 1)
        event = events[0]
        self.assertIsInstance(event, LoanRequestedEvent)
        self.assertEqual(event.loan_id, 42)
        self.assertEqual(event.borrower, BORROWER)
        self.assertEqual(event.duration, 3600)
        self.assertEqual(event.interest_rate_bps, 750)
        self.assertEqual(event.admin_fee, 25_000)

    def test_parses_recovered_event(self) -> None:
        payload = LoanRecoveredEvent.DISCRIMINATOR + struct.pack("<QQQQ", 42, 100, 80, 20)
        (event,) = parse_events([data_line(payload)])
        self.assertEqual(event.loan_id, 42)
        self.assertEqual(event.treasury_share, 20)

    def test_truncated_event_does_not_hide_later_events(self) -> None:
        truncated = LoanRequestedEvent.DISCRIMINATOR + bytes(BORROWER)[:10]
        recovered = LoanRecoveredEvent.DISCRIMINATOR + struct.pack("<QQQQ", 7, 100, 80, 20)

        with self.assertLogs("deployer.layouts", level="WARNING"):
            events = parse_events([data_line(truncated), data_line(requested_event_bytes()), data_line(recovered)])

        self.assertEqual([type(event) for event in events], [LoanRequestedEvent, LoanRecoveredEvent])
        self.assertEqual([event.loan_id for event in events], [42, 7])

    def test_skips_foreign_and_garbage_lines(self) -> None:
        events = parse_events(
            [
                data_line(b"\x01" * 16),
                "Program data: ***not-base64***",
                "Program log: something else",
            ]
        )
        self.assertEqual(events, [])


class InstructionEncodingTests(unittest.TestCase):
    def test_loan_id_seed_is_u64_le(self) -> None:
        self.assertEqual(loan_id_seed("42"), struct.pack("<Q", 42))
        self.assertEqual(loan_id_seed(2**64 - 1), b"\xff" * 8)

    def test_loan_id_out_of_range(self) -> None:
        for bad in ("-1", str(2**64), "abc"):
            with self.subTest(bad=bad):
                with self.assertRaises(ValueError):
                    loan_id_seed(bad)

    def test_set_deployed_program_args(self) -> None:
        program = Pubkey.new_unique()
        data = encode_set_deployed_program("42", program)
        self.assertEqual(data[:8], instruction_discriminator("set_deployed_program"))
        self.assertEqual(data[8:16], struct.pack("<Q", 42))
        self.assertEqual(data[16:], bytes(program))

    def test_return_reclaimed_sol_rejects_negative(self) -> None:
        with self.assertRaises(ValueError):
            encode_return_reclaimed_sol(-1)


if __name__ == "__main__":
    unittest.main()
