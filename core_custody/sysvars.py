"""
Sysvar Module

Clock, rent and the instructions sysvar. The instructions sysvar exposes the
full instruction list of the executing transaction to programs, which is
what lets a program validate its sibling instructions.

Instructions sysvar wire format (all integers little-endian):

    u16 count
    u16 offset[count]
    per instruction, at its offset:
        u16 n_accounts
        n_accounts * (u8 flags, [32] pubkey)   flags: bit0 signer, bit1 writable
        [32] program_id
        u16 data_len
        data
    u16 current_index                          (always the last two bytes)
"""

import math
from dataclasses import dataclass
from typing import Sequence

from solders.instruction import AccountMeta, Instruction

from .codec import FieldReader, FieldWriter
from .derivation import INSTRUCTIONS_SYSVAR_ID
from .errors import ProgramError, ProgramErrorCode
from .storage import AccountInfo


IS_SIGNER_FLAG = 0b01
IS_WRITABLE_FLAG = 0b10


@dataclass
class Clock:
    """Ledger clock as seen by programs"""
    slot: int
    unix_timestamp: int


@dataclass(frozen=True)
class Rent:
    """Rent-exemption parameters"""
    lamports_per_byte_year: int = 3480
    exemption_threshold: float = 2.0
    storage_overhead: int = 128

    def minimum_balance(self, space: int) -> int:
        """Lamports an account of `space` data bytes needs to be rent exempt"""
        return math.floor(
            (space + self.storage_overhead) * self.lamports_per_byte_year * self.exemption_threshold
        )


def serialize_instructions(instructions: Sequence[Instruction], current_index: int = 0) -> bytes:
    """Encode a transaction's instruction list in sysvar format"""
    bodies = []
    for ix in instructions:
        writer = FieldWriter().u16(len(ix.accounts))
        for meta in ix.accounts:
            flags = (IS_SIGNER_FLAG if meta.is_signer else 0) | (IS_WRITABLE_FLAG if meta.is_writable else 0)
            writer.u8(flags).pubkey(meta.pubkey)
        data = bytes(ix.data)
        writer.pubkey(ix.program_id).u16(len(data)).raw(data)
        bodies.append(writer.to_bytes())

    header = FieldWriter().u16(len(instructions))
    offset = 2 + 2 * len(instructions)
    for body in bodies:
        header.u16(offset)
        offset += len(body)
    return header.to_bytes() + b"".join(bodies) + FieldWriter().u16(current_index).to_bytes()


def _require_sysvar(account: AccountInfo) -> bytes:
    if account.key != INSTRUCTIONS_SYSVAR_ID:
        raise ProgramError(ProgramErrorCode.UNSUPPORTED_SYSVAR, f"{account.key} is not the instructions sysvar")
    return bytes(account.data)


def instruction_count(account: AccountInfo) -> int:
    data = _require_sysvar(account)
    return FieldReader(data, ProgramErrorCode.INVALID_ARGUMENT).u16()


def load_current_index_checked(account: AccountInfo) -> int:
    """Index of the instruction currently executing"""
    data = _require_sysvar(account)
    if len(data) < 2:
        raise ProgramError(ProgramErrorCode.INVALID_ARGUMENT, "instructions sysvar is empty")
    return FieldReader(data[-2:], ProgramErrorCode.INVALID_ARGUMENT).u16()


def load_instruction_at_checked(index: int, account: AccountInfo) -> Instruction:
    """
    Decode one sibling instruction of the executing transaction.

    Raises:
        ProgramError(UNSUPPORTED_SYSVAR): account is not the instructions sysvar
        ProgramError(INVALID_ARGUMENT): index out of range or malformed data
    """
    data = _require_sysvar(account)
    header = FieldReader(data, ProgramErrorCode.INVALID_ARGUMENT)
    count = header.u16()
    if not 0 <= index < count:
        raise ProgramError(ProgramErrorCode.INVALID_ARGUMENT, f"instruction index {index} out of range")
    header.raw(2 * index)
    offset = header.u16()

    reader = FieldReader(data[offset:], ProgramErrorCode.INVALID_ARGUMENT)
    metas = []
    for _ in range(reader.u16()):
        flags = reader.u8()
        metas.append(AccountMeta(
            pubkey=reader.pubkey(),
            is_signer=bool(flags & IS_SIGNER_FLAG),
            is_writable=bool(flags & IS_WRITABLE_FLAG)
        ))
    program_id = reader.pubkey()
    payload = reader.raw(reader.u16())
    return Instruction(program_id, payload, metas)
