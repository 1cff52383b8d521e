"""Chain access: RPC wrapper plus the program deployer built on top of it."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence, Tuple

from solana.rpc.api import Client
from solana.rpc.commitment import Commitment, Confirmed
from solana.rpc.types import TxOpts
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import Transaction

from .errors import ChainError, ConfigurationError
from .layouts import DepositorRecord, Loan, ProtocolConfig, loan_id_seed
from .metrics import DeployerMetrics
from .transactions import (
    DeploymentTransactionBuilder,
    PROGRAM_ACCOUNT_SIZE,
    buffer_account_size,
    reclaim_program_authority_instruction,
    return_reclaimed_sol_instruction,
    set_deployed_program_instruction,
    unique_signers,
)

VAULT_SEED = b"vault"
AUTHORITY_SEED = b"authority"
LOAN_SEED = b"loan"
DEPOSITOR_SEED = b"depositor"
PROTOCOL_CONFIG_SEED = b"config"

LAMPORTS_PER_SOL = 1_000_000_000

# UpgradeableLoaderState::Program is a u32 tag (2) followed by the program data address.
_PROGRAM_STATE_TAG = b"\x02\x00\x00\x00"


@dataclass(frozen=True)
class SignatureInfo:
    signature: str
    slot: int
    failed: bool


class SolanaChainClient:
    """Thin helper around the RPC client; every failed call is counted."""

    def __init__(
        self,
        rpc_url: str,
        *,
        timeout: float = 30,
        commitment: Commitment = Confirmed,
        metrics: Optional[DeployerMetrics] = None,
        logger: Optional[logging.Logger] = None,
        client: Optional[Client] = None,
    ) -> None:
        self.rpc_url = rpc_url
        self.commitment = commitment
        self.client = client or Client(rpc_url, commitment=commitment, timeout=timeout)
        self.metrics = metrics
        self.logger = logger or logging.getLogger(__name__)

    def _call(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return fn(*args, **kwargs)
        except Exception as exc:
            if self.metrics:
                self.metrics.rpc_errors.inc()
            self.logger.debug("RPC %s failed: %s", name, exc)
            raise

    def get_version(self) -> Any:
        return self._call("getVersion", self.client.get_version).value

    def get_slot(self) -> int:
        return int(self._call("getSlot", self.client.get_slot, commitment=self.commitment).value)

    def get_account_data(self, address: Pubkey) -> Optional[Tuple[bytes, int]]:
        """Return ``(data, lamports)`` or ``None`` if the account does not exist."""
        response = self._call("getAccountInfo", self.client.get_account_info, address, commitment=self.commitment)
        account = response.value
        if account is None:
            return None
        return bytes(account.data), int(account.lamports)

    def get_balance(self, address: Pubkey) -> int:
        return int(self._call("getBalance", self.client.get_balance, address, commitment=self.commitment).value)

    def minimum_balance_for_rent_exemption(self, size: int) -> int:
        response = self._call(
            "getMinimumBalanceForRentExemption",
            self.client.get_minimum_balance_for_rent_exemption,
            size,
            commitment=self.commitment,
        )
        return int(response.value)

    def send_instructions(
        self,
        instructions: Sequence[Instruction],
        payer: Keypair,
        signers: Sequence[Keypair] = (),
    ) -> str:
        """Sign, submit and confirm one transaction; returns its signature.

        Submission errors (simulation rejection, expired blockhash, timeouts)
        propagate unchanged.
        """

        latest = self._call("getLatestBlockhash", self.client.get_latest_blockhash, commitment=self.commitment).value
        message = Message.new_with_blockhash(list(instructions), payer.pubkey(), latest.blockhash)
        transaction = Transaction(unique_signers([payer, *signers]), message, latest.blockhash)
        opts = TxOpts(
            skip_confirmation=False,
            preflight_commitment=self.commitment,
            last_valid_block_height=latest.last_valid_block_height,
        )
        response = self._call("sendTransaction", self.client.send_transaction, transaction, opts=opts)
        return str(response.value)

    def get_transaction_logs(self, signature: str) -> Optional[List[str]]:
        response = self._call(
            "getTransaction",
            self.client.get_transaction,
            Signature.from_string(signature),
            encoding="json",
            commitment=self.commitment,
            max_supported_transaction_version=0,
        )
        transaction = response.value
        if transaction is None or transaction.transaction.meta is None:
            return None
        return list(transaction.transaction.meta.log_messages or [])

    def get_signatures(self, address: Pubkey, *, limit: int = 100) -> List[SignatureInfo]:
        """Recent signatures mentioning ``address``, newest first."""
        response = self._call(
            "getSignaturesForAddress",
            self.client.get_signatures_for_address,
            address,
            limit=limit,
            commitment=self.commitment,
        )
        return [
            SignatureInfo(signature=str(entry.signature), slot=int(entry.slot), failed=entry.err is not None)
            for entry in response.value
        ]


@dataclass(frozen=True)
class DeployResult:
    program_id: str
    buffer_account: str
    signature: str


@dataclass(frozen=True)
class CloseResult:
    reclaimed_lamports: int
    signature: str


class ProgramDeployer:
    """Deploys borrower programs and reclaims them through the lending protocol."""

    def __init__(
        self,
        chain: SolanaChainClient,
        program_id: Pubkey,
        deployer_keypair: Keypair,
        admin_keypair: Optional[Keypair] = None,
        *,
        builder: Optional[DeploymentTransactionBuilder] = None,
        metrics: Optional[DeployerMetrics] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.chain = chain
        self.program_id = program_id
        self.deployer_wallet = deployer_keypair
        self.admin_wallet = admin_keypair
        self.builder = builder or DeploymentTransactionBuilder()
        self.metrics = metrics or DeployerMetrics()
        self.logger = logger or logging.getLogger(__name__)
        self.authority_pda = self._pda(AUTHORITY_SEED)
        self.vault_pda = self._pda(VAULT_SEED)
        self.config_pda = self._pda(PROTOCOL_CONFIG_SEED)
        self.deployer_pda: Optional[Pubkey] = None

    def _pda(self, *seeds: bytes) -> Pubkey:
        address, _bump = Pubkey.find_program_address(list(seeds), self.program_id)
        return address

    def loan_pda(self, loan_id: str) -> Pubkey:
        return self._pda(LOAN_SEED, loan_id_seed(loan_id))

    def init(self) -> ProtocolConfig:
        protocol_config = self.fetch_protocol_config()
        self.deployer_pda = protocol_config.deployer
        self.logger.info(
            "Program deployer initialized (authorityPda=%s, deployerPda=%s, vaultPda=%s)",
            self.authority_pda,
            self.deployer_pda,
            self.vault_pda,
        )
        return protocol_config

    def fetch_protocol_config(self) -> ProtocolConfig:
        account = self.chain.get_account_data(self.config_pda)
        if account is None:
            raise ChainError(f"Protocol config account {self.config_pda} not found")
        return ProtocolConfig.decode(account[0])

    def fetch_loan(self, loan_id: str) -> Loan:
        address = self.loan_pda(loan_id)
        account = self.chain.get_account_data(address)
        if account is None:
            raise ChainError(f"Loan account {address} for loan {loan_id} not found")
        return Loan.decode(account[0])

    def depositor_pda(self, owner: Pubkey) -> Pubkey:
        return self._pda(DEPOSITOR_SEED, bytes(owner))

    def fetch_depositor_record(self, owner: Pubkey) -> Optional[DepositorRecord]:
        account = self.chain.get_account_data(self.depositor_pda(owner))
        return DepositorRecord.decode(account[0]) if account is not None else None

    def _require_admin(self, operation: str) -> Keypair:
        if self.admin_wallet is None:
            raise ConfigurationError(f"Admin wallet not configured for {operation}")
        return self.admin_wallet

    def _require_deployer_pda(self) -> Pubkey:
        if self.deployer_pda is None:
            raise ChainError("Program deployer not initialized: deployer PDA unknown")
        return self.deployer_pda

    def deploy_program(self, loan_id: str, binary: bytes) -> DeployResult:
        started = time.monotonic()
        try:
            self.logger.info("Starting deployment for loan %s", loan_id)
            if self.deployer_pda is not None:
                balance = self.chain.get_balance(self.deployer_pda)
                self.logger.info("Deployer PDA balance: %.4f SOL", balance / LAMPORTS_PER_SOL)
            buffer_lamports = self.chain.minimum_balance_for_rent_exemption(buffer_account_size(len(binary)))
            program_lamports = self.chain.minimum_balance_for_rent_exemption(PROGRAM_ACCOUNT_SIZE)
            plan = self.builder.build_deploy(
                self.deployer_wallet.pubkey(),
                binary,
                self.authority_pda,
                buffer_lamports=buffer_lamports,
                program_lamports=program_lamports,
            )
            signature = self.chain.send_instructions(plan.instructions, self.deployer_wallet, plan.signers)
        except Exception as exc:
            self.logger.error("Failed to deploy program for loan %s: %s", loan_id, exc)
            self.metrics.deployments_total.labels(status="failure").inc()
            raise
        finally:
            self.metrics.deployment_duration.observe(time.monotonic() - started)
        self.logger.info(
            "Program deployed successfully (loan=%s, programId=%s, bufferAccount=%s, signature=%s)",
            loan_id,
            plan.program_id,
            plan.buffer_address,
            signature,
        )
        self.metrics.deployments_total.labels(status="success").inc()
        return DeployResult(
            program_id=str(plan.program_id),
            buffer_account=str(plan.buffer_address),
            signature=signature,
        )

    def set_deployed_program(self, loan_id: str, program_id: str) -> str:
        admin = self._require_admin("set_deployed_program")
        instruction = set_deployed_program_instruction(
            self.program_id,
            admin=admin.pubkey(),
            protocol_config=self.config_pda,
            loan=self.loan_pda(loan_id),
            loan_id=loan_id,
            deployed_program=Pubkey.from_string(program_id),
        )
        try:
            signature = self.chain.send_instructions([instruction], admin)
        except Exception as exc:
            self.logger.error("Failed to set deployed program for loan %s: %s", loan_id, exc)
            raise
        self.logger.info("Set deployed program (loan=%s, program=%s, tx=%s)", loan_id, program_id, signature)
        return signature

    def _programdata_of(self, program: Pubkey) -> Pubkey:
        account = self.chain.get_account_data(program)
        if account is None:
            raise ChainError(f"Program account {program} not found")
        data = account[0]
        if len(data) < PROGRAM_ACCOUNT_SIZE or data[:4] != _PROGRAM_STATE_TAG:
            raise ChainError(f"Account {program} is not an upgradeable program")
        return Pubkey.from_bytes(data[4:36])

    def close_program(self, loan_id: str, program_id: str) -> CloseResult:
        """Take upgrade authority back from the protocol and close the program.

        Both instructions travel in one transaction; the reclaimed balance is
        what the program data account held just before closing.
        """

        program = Pubkey.from_string(program_id)
        try:
            self.logger.info("Closing program for loan %s (programId=%s)", loan_id, program_id)
            admin = self._require_admin("reclaim_program_authority")
            recipient = self._require_deployer_pda()
            programdata = self._programdata_of(program)
            programdata_account = self.chain.get_account_data(programdata)
            if programdata_account is None:
                raise ChainError(f"Program data account {programdata} not found")
            reclaimed = programdata_account[1]
            instructions = [
                reclaim_program_authority_instruction(
                    self.program_id,
                    admin=admin.pubkey(),
                    protocol_config=self.config_pda,
                    loan=self.loan_pda(loan_id),
                    authority_pda=self.authority_pda,
                    deployed_program=program,
                    new_authority=self.deployer_wallet.pubkey(),
                ),
                *self.builder.build_close(program, recipient, self.deployer_wallet.pubkey()),
            ]
            signature = self.chain.send_instructions(instructions, self.deployer_wallet, [admin])
        except Exception as exc:
            self.logger.error("Failed to close program for loan %s: %s", loan_id, exc)
            raise
        self.logger.info(
            "Program closed successfully (loan=%s, programId=%s, signature=%s, reclaimedSol=%.4f)",
            loan_id,
            program_id,
            signature,
            reclaimed / LAMPORTS_PER_SOL,
        )
        return CloseResult(reclaimed_lamports=reclaimed, signature=signature)

    def return_reclaimed_sol(self, loan_id: str, amount_lamports: int) -> str:
        instruction = return_reclaimed_sol_instruction(
            self.program_id,
            caller=self.deployer_wallet.pubkey(),
            protocol_config=self.config_pda,
            loan=self.loan_pda(loan_id),
            vault=self.vault_pda,
            deployer_pda=self._require_deployer_pda(),
            amount=amount_lamports,
        )
        try:
            signature = self.chain.send_instructions([instruction], self.deployer_wallet)
        except Exception as exc:
            self.logger.error("Failed to return reclaimed SOL for loan %s: %s", loan_id, exc)
            raise
        self.logger.info("Returned reclaimed SOL to vault (loan=%s, lamports=%s, tx=%s)", loan_id, amount_lamports, signature)
        return signature


__all__ = [
    "CloseResult",
    "DeployResult",
    "LAMPORTS_PER_SOL",
    "ProgramDeployer",
    "SignatureInfo",
    "SolanaChainClient",
]
