"""
System Program Module

Account creation and lamport transfers for the host ledger. Only system-owned
accounts can be funded from or created; an address that already holds
lamports cannot be created again.
"""

from typing import TYPE_CHECKING, List

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from .codec import FieldReader, FieldWriter, U64_MAX
from .derivation import SYSTEM_PROGRAM_ID
from .errors import ProgramError, ProgramErrorCode
from .logging_config import get_logger, log_action
from .storage import AccountInfo

if TYPE_CHECKING:
    from .ledger import InvocationContext


CREATE_ACCOUNT = 0
TRANSFER = 2

MAX_PERMITTED_DATA_LENGTH = 10 * 1024 * 1024

logger = get_logger("custody.system_program")


def create_account(from_pubkey: Pubkey, to_pubkey: Pubkey, lamports: int,
                   space: int, owner: Pubkey) -> Instruction:
    """Build a CreateAccount instruction"""
    data = (FieldWriter()
            .u32(CREATE_ACCOUNT)
            .u64(lamports)
            .u64(space)
            .pubkey(owner)
            .to_bytes())
    return Instruction(SYSTEM_PROGRAM_ID, data, [
        AccountMeta(from_pubkey, True, True),
        AccountMeta(to_pubkey, True, True),
    ])


def transfer(from_pubkey: Pubkey, to_pubkey: Pubkey, lamports: int) -> Instruction:
    """Build a lamport Transfer instruction"""
    data = FieldWriter().u32(TRANSFER).u64(lamports).to_bytes()
    return Instruction(SYSTEM_PROGRAM_ID, data, [
        AccountMeta(from_pubkey, True, True),
        AccountMeta(to_pubkey, False, True),
    ])


def _debit(payer: AccountInfo, lamports: int) -> None:
    if not payer.is_signer:
        raise ProgramError(ProgramErrorCode.MISSING_REQUIRED_SIGNATURE, f"{payer.key} must sign")
    if payer.owner != SYSTEM_PROGRAM_ID or payer.data_len:
        raise ProgramError(ProgramErrorCode.INVALID_ACCOUNT_OWNER, "payer must be a plain system account")
    if payer.lamports < lamports:
        raise ProgramError(
            ProgramErrorCode.INSUFFICIENT_FUNDS,
            f"{payer.key} has {payer.lamports} lamports, needs {lamports}"
        )
    payer.lamports = payer.lamports - lamports


def process_system_instruction(ctx: 'InvocationContext', accounts: List[AccountInfo], data: bytes) -> None:
    reader = FieldReader(data, ProgramErrorCode.INVALID_INSTRUCTION_DATA)
    tag = reader.u32()

    if tag == CREATE_ACCOUNT:
        lamports = reader.u64()
        space = reader.u64()
        owner = reader.pubkey()
        reader.finish()
        if len(accounts) < 2:
            raise ProgramError(ProgramErrorCode.NOT_ENOUGH_ACCOUNT_KEYS)
        payer, new_account = accounts[0], accounts[1]

        if new_account.lamports or new_account.data_len or new_account.owner != SYSTEM_PROGRAM_ID:
            raise ProgramError(
                ProgramErrorCode.ACCOUNT_ALREADY_IN_USE,
                f"{new_account.key} already exists"
            )
        if not new_account.is_signer:
            raise ProgramError(ProgramErrorCode.MISSING_REQUIRED_SIGNATURE, f"{new_account.key} must sign")
        if space > MAX_PERMITTED_DATA_LENGTH:
            raise ProgramError(ProgramErrorCode.INVALID_ARGUMENT, f"space {space} too large")

        _debit(payer, lamports)
        new_account.lamports = lamports
        new_account.resize(space)
        new_account.assign(owner)
        log_action(
            logger, "debug", "Account created",
            action="create_account", account=str(new_account.key),
            transaction_id=ctx.transaction_id,
            extra={"space": space, "owner": str(owner), "lamports": lamports}
        )

    elif tag == TRANSFER:
        lamports = reader.u64()
        reader.finish()
        if len(accounts) < 2:
            raise ProgramError(ProgramErrorCode.NOT_ENOUGH_ACCOUNT_KEYS)
        source, destination = accounts[0], accounts[1]
        if source.key != destination.key and destination.lamports + lamports > U64_MAX:
            raise ProgramError(ProgramErrorCode.ARITHMETIC_OVERFLOW, f"{destination.key} balance overflows")
        _debit(source, lamports)
        destination.lamports = destination.lamports + lamports

    else:
        raise ProgramError(ProgramErrorCode.INVALID_INSTRUCTION_DATA, f"unknown system instruction {tag}")
