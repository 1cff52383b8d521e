"""Instruction sequences for deploying and closing programs.

Nothing here talks to the network: callers supply rent figures and addresses,
submit the returned instructions and deal with failures.
"""
from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import List, Sequence

from solders.compute_budget import set_compute_unit_limit
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.system_program import CreateAccountParams, create_account

from .layouts import (
    encode_reclaim_program_authority,
    encode_return_reclaimed_sol,
    encode_set_deployed_program,
)

BPF_LOADER_UPGRADEABLE_ID = Pubkey.from_string("BPFLoaderUpgradeab1e11111111111111111111111")
SYSVAR_RENT_ID = Pubkey.from_string("SysvarRent111111111111111111111111111111111")
SYSVAR_CLOCK_ID = Pubkey.from_string("SysvarC1ock11111111111111111111111111111111")

# Upgradeable loader account header sizes.
BUFFER_METADATA_SIZE = 37
PROGRAM_ACCOUNT_SIZE = 36

DEFAULT_CHUNK_SIZE = 900
DEFAULT_COMPUTE_UNIT_LIMIT = 400_000

# Upgradeable loader instruction tags (bincode u32).
_INITIALIZE_BUFFER = 0
_WRITE = 1
_DEPLOY_WITH_MAX_DATA_LEN = 2
_SET_AUTHORITY = 4
_CLOSE = 5


def programdata_address(program_id: Pubkey, loader_id: Pubkey = BPF_LOADER_UPGRADEABLE_ID) -> Pubkey:
    address, _bump = Pubkey.find_program_address([bytes(program_id)], loader_id)
    return address


def buffer_account_size(binary_length: int) -> int:
    return BUFFER_METADATA_SIZE + binary_length


def initialize_buffer_instruction(buffer: Pubkey, authority: Pubkey) -> Instruction:
    return Instruction(
        BPF_LOADER_UPGRADEABLE_ID,
        struct.pack("<I", _INITIALIZE_BUFFER),
        [
            AccountMeta(buffer, is_signer=False, is_writable=True),
            AccountMeta(authority, is_signer=False, is_writable=False),
        ],
    )


def write_instructions(
    buffer: Pubkey,
    authority: Pubkey,
    data: bytes,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> List[Instruction]:
    """One ``Write`` per chunk, each tagged with the chunk's byte offset."""

    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    instructions = []
    for offset in range(0, len(data), chunk_size):
        chunk = bytes(data[offset:offset + chunk_size])
        payload = struct.pack("<IIQ", _WRITE, offset, len(chunk)) + chunk
        instructions.append(
            Instruction(
                BPF_LOADER_UPGRADEABLE_ID,
                payload,
                [
                    AccountMeta(buffer, is_signer=False, is_writable=True),
                    AccountMeta(authority, is_signer=True, is_writable=False),
                ],
            )
        )
    return instructions


def deploy_with_max_data_len_instruction(
    payer: Pubkey,
    program_id: Pubkey,
    buffer: Pubkey,
    buffer_authority: Pubkey,
    max_data_len: int,
) -> Instruction:
    return Instruction(
        BPF_LOADER_UPGRADEABLE_ID,
        struct.pack("<IQ", _DEPLOY_WITH_MAX_DATA_LEN, max_data_len),
        [
            AccountMeta(payer, is_signer=True, is_writable=True),
            AccountMeta(programdata_address(program_id), is_signer=False, is_writable=True),
            AccountMeta(program_id, is_signer=False, is_writable=True),
            AccountMeta(buffer, is_signer=False, is_writable=True),
            AccountMeta(SYSVAR_RENT_ID, is_signer=False, is_writable=False),
            AccountMeta(SYSVAR_CLOCK_ID, is_signer=False, is_writable=False),
            AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
            AccountMeta(buffer_authority, is_signer=True, is_writable=False),
        ],
    )


def set_upgrade_authority_instruction(
    program_id: Pubkey,
    current_authority: Pubkey,
    new_authority: Pubkey,
) -> Instruction:
    return Instruction(
        BPF_LOADER_UPGRADEABLE_ID,
        struct.pack("<I", _SET_AUTHORITY),
        [
            AccountMeta(programdata_address(program_id), is_signer=False, is_writable=True),
            AccountMeta(current_authority, is_signer=True, is_writable=False),
            AccountMeta(new_authority, is_signer=False, is_writable=False),
        ],
    )


def close_program_instruction(
    program_id: Pubkey,
    recipient: Pubkey,
    authority: Pubkey,
) -> Instruction:
    return Instruction(
        BPF_LOADER_UPGRADEABLE_ID,
        struct.pack("<I", _CLOSE),
        [
            AccountMeta(programdata_address(program_id), is_signer=False, is_writable=True),
            AccountMeta(recipient, is_signer=False, is_writable=True),
            AccountMeta(authority, is_signer=True, is_writable=False),
            AccountMeta(program_id, is_signer=False, is_writable=True),
        ],
    )


@dataclass
class DeployPlan:
    """Everything needed to submit one deployment attempt."""

    instructions: List[Instruction]
    buffer: Keypair
    program: Keypair
    programdata: Pubkey

    @property
    def program_id(self) -> Pubkey:
        return self.program.pubkey()

    @property
    def buffer_address(self) -> Pubkey:
        return self.buffer.pubkey()

    @property
    def signers(self) -> List[Keypair]:
        return [self.buffer, self.program]


class DeploymentTransactionBuilder:
    def __init__(
        self,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        compute_unit_limit: int = DEFAULT_COMPUTE_UNIT_LIMIT,
    ) -> None:
        self.chunk_size = chunk_size
        self.compute_unit_limit = compute_unit_limit

    def build_deploy(
        self,
        payer: Pubkey,
        binary: bytes,
        upgrade_authority: Pubkey,
        *,
        buffer_lamports: int,
        program_lamports: int,
    ) -> DeployPlan:
        """Build the full deploy sequence for one attempt.

        Fresh buffer and program keypairs are generated on every call; a
        half-initialized buffer from an earlier attempt is never reused. The
        service wallet (``payer``) is the buffer authority while writing and
        hands upgrade authority to ``upgrade_authority`` in the same
        transaction that deploys.
        """

        if upgrade_authority == payer:
            raise ValueError("upgrade authority must not be the service wallet")
        buffer = Keypair()
        program = Keypair()
        instructions: List[Instruction] = [
            set_compute_unit_limit(self.compute_unit_limit),
            create_account(
                CreateAccountParams(
                    from_pubkey=payer,
                    to_pubkey=buffer.pubkey(),
                    lamports=buffer_lamports,
                    space=buffer_account_size(len(binary)),
                    owner=BPF_LOADER_UPGRADEABLE_ID,
                )
            ),
            initialize_buffer_instruction(buffer.pubkey(), payer),
            *write_instructions(buffer.pubkey(), payer, binary, self.chunk_size),
            create_account(
                CreateAccountParams(
                    from_pubkey=payer,
                    to_pubkey=program.pubkey(),
                    lamports=program_lamports,
                    space=PROGRAM_ACCOUNT_SIZE,
                    owner=BPF_LOADER_UPGRADEABLE_ID,
                )
            ),
            deploy_with_max_data_len_instruction(payer, program.pubkey(), buffer.pubkey(), payer, len(binary)),
            set_upgrade_authority_instruction(program.pubkey(), payer, upgrade_authority),
        ]
        return DeployPlan(
            instructions=instructions,
            buffer=buffer,
            program=program,
            programdata=programdata_address(program.pubkey()),
        )

    def build_close(self, program_id: Pubkey, recipient: Pubkey, authority: Pubkey) -> List[Instruction]:
        return [close_program_instruction(program_id, recipient, authority)]


def set_deployed_program_instruction(
    protocol_program: Pubkey,
    *,
    admin: Pubkey,
    protocol_config: Pubkey,
    loan: Pubkey,
    loan_id: str,
    deployed_program: Pubkey,
) -> Instruction:
    return Instruction(
        protocol_program,
        encode_set_deployed_program(loan_id, deployed_program),
        [
            AccountMeta(admin, is_signer=True, is_writable=True),
            AccountMeta(protocol_config, is_signer=False, is_writable=False),
            AccountMeta(loan, is_signer=False, is_writable=True),
        ],
    )


def return_reclaimed_sol_instruction(
    protocol_program: Pubkey,
    *,
    caller: Pubkey,
    protocol_config: Pubkey,
    loan: Pubkey,
    vault: Pubkey,
    deployer_pda: Pubkey,
    amount: int,
) -> Instruction:
    return Instruction(
        protocol_program,
        encode_return_reclaimed_sol(amount),
        [
            AccountMeta(caller, is_signer=True, is_writable=True),
            AccountMeta(protocol_config, is_signer=False, is_writable=True),
            AccountMeta(loan, is_signer=False, is_writable=True),
            AccountMeta(vault, is_signer=False, is_writable=True),
            AccountMeta(deployer_pda, is_signer=False, is_writable=True),
            AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
        ],
    )


def reclaim_program_authority_instruction(
    protocol_program: Pubkey,
    *,
    admin: Pubkey,
    protocol_config: Pubkey,
    loan: Pubkey,
    authority_pda: Pubkey,
    deployed_program: Pubkey,
    new_authority: Pubkey,
) -> Instruction:
    return Instruction(
        protocol_program,
        encode_reclaim_program_authority(),
        [
            AccountMeta(admin, is_signer=True, is_writable=True),
            AccountMeta(protocol_config, is_signer=False, is_writable=False),
            AccountMeta(loan, is_signer=False, is_writable=True),
            AccountMeta(authority_pda, is_signer=False, is_writable=False),
            AccountMeta(deployed_program, is_signer=False, is_writable=False),
            AccountMeta(programdata_address(deployed_program), is_signer=False, is_writable=True),
            AccountMeta(new_authority, is_signer=False, is_writable=False),
            AccountMeta(BPF_LOADER_UPGRADEABLE_ID, is_signer=False, is_writable=False),
        ],
    )


def unique_signers(signers: Sequence[Keypair]) -> List[Keypair]:
    seen = set()
    result = []
    for signer in signers:
        key = signer.pubkey()
        if key in seen:
            continue
        seen.add(key)
        result.append(signer)
    return result


__all__ = [
    "BPF_LOADER_UPGRADEABLE_ID",
    "BUFFER_METADATA_SIZE",
    "DEFAULT_CHUNK_SIZE",
    "DeployPlan",
    "DeploymentTransactionBuilder",
    "PROGRAM_ACCOUNT_SIZE",
    "buffer_account_size",
    "close_program_instruction",
    "deploy_with_max_data_len_instruction",
    "initialize_buffer_instruction",
    "programdata_address",
    "reclaim_program_authority_instruction",
    "return_reclaimed_sol_instruction",
    "set_deployed_program_instruction",
    "set_upgrade_authority_instruction",
    "unique_signers",
    "write_instructions",
]
