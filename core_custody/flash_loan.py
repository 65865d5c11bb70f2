"""
Flash-Loan Program Module

Uncollateralized single-transaction loans. Borrow must be the first
instruction of its transaction. It pays out of the protocol vault and then
reads the enclosing transaction through the instructions sysvar: the last
instruction must be this program's Repay, wired to the
same borrower and protocol token accounts. Repay reads the principal back
out of the Borrow at index 0 and returns it with a fixed fee. No loan
record is ever stored; if the repayment fails the ledger unwinds the
borrow along with everything else.

Instruction data: an 8-byte discriminator (first bytes of
sha256("global:<name>")), followed by `amount u64` for Borrow.
"""

import hashlib
from dataclasses import dataclass
from typing import List

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from .checks import (
    AssociatedAccountCheck, MintInterfaceCheck, OwnerCheck, SignerCheck,
    init_if_needed, require, require_token_program, token_amount
)
from .codec import FieldReader, FieldWriter, U64_MAX, U128_MAX
from .derivation import (
    ASSOCIATED_TOKEN_PROGRAM_ID, INSTRUCTIONS_SYSVAR_ID, SYSTEM_PROGRAM_ID, TOKEN_PROGRAM_ID,
    SignerSeeds, associated_token_address, derive_authority
)
from .errors import CustodyError, FlashLoanError, ProgramError, ProgramErrorCode
from .ledger import InvocationContext
from .logging_config import get_logger, log_action
from .storage import AccountInfo
from .sysvars import instruction_count, load_current_index_checked, load_instruction_at_checked
from .token_program import transfer


PROGRAM_ID = Pubkey.from_string("22222222222222222222222222222222222222222222")

PROTOCOL_SEED = b"protocol"

# Protocol constant, not configurable per deployment
FEE_BPS = 500
BASIS_POINTS = 10_000

BORROW_DISCRIMINATOR = hashlib.sha256(b"global:borrow").digest()[:8]
REPAY_DISCRIMINATOR = hashlib.sha256(b"global:repay").digest()[:8]

# Positions of the token accounts inside the shared account list
BORROWER_ATA_INDEX = 3
PROTOCOL_ATA_INDEX = 4

logger = get_logger("custody.flash_loan")


def protocol_authority(program_id: Pubkey = PROGRAM_ID) -> SignerSeeds:
    return derive_authority(PROTOCOL_SEED, program_id=program_id)


def repay_amount(principal: int) -> int:
    """
    Principal plus the protocol fee, floor(principal * 500 / 10000).

    Raises:
        ProgramError(OVERFLOW): If the product or the total leaves its range
    """
    product = principal * FEE_BPS
    if product > U128_MAX:
        raise ProgramError(FlashLoanError.OVERFLOW, "fee computation overflows")
    total = principal + product // BASIS_POINTS
    if total > U64_MAX:
        raise ProgramError(FlashLoanError.OVERFLOW, "repayment overflows")
    return total


# ----------------------------------------------------------------------
# Instruction builders
# ----------------------------------------------------------------------

def _loan_accounts(borrower: Pubkey, mint: Pubkey, token_program_id: Pubkey,
                   program_id: Pubkey) -> List[AccountMeta]:
    protocol = protocol_authority(program_id).address
    return [
        AccountMeta(borrower, True, True),
        AccountMeta(protocol, False, False),
        AccountMeta(mint, False, False),
        AccountMeta(associated_token_address(borrower, mint, token_program_id), False, True),
        AccountMeta(associated_token_address(protocol, mint, token_program_id), False, True),
        AccountMeta(INSTRUCTIONS_SYSVAR_ID, False, False),
        AccountMeta(token_program_id, False, False),
        AccountMeta(ASSOCIATED_TOKEN_PROGRAM_ID, False, False),
        AccountMeta(SYSTEM_PROGRAM_ID, False, False),
    ]


def borrow(borrower: Pubkey, mint: Pubkey, amount: int, token_program_id: Pubkey = TOKEN_PROGRAM_ID,
           program_id: Pubkey = PROGRAM_ID) -> Instruction:
    data = FieldWriter().raw(BORROW_DISCRIMINATOR).u64(amount).to_bytes()
    return Instruction(program_id, data, _loan_accounts(borrower, mint, token_program_id, program_id))


def repay(borrower: Pubkey, mint: Pubkey, token_program_id: Pubkey = TOKEN_PROGRAM_ID,
          program_id: Pubkey = PROGRAM_ID) -> Instruction:
    return Instruction(program_id, REPAY_DISCRIMINATOR, _loan_accounts(borrower, mint, token_program_id, program_id))


# ----------------------------------------------------------------------
# Processor
# ----------------------------------------------------------------------

@dataclass
class LoanAccounts:
    borrower: AccountInfo
    protocol: AccountInfo
    mint: AccountInfo
    borrower_ata: AccountInfo
    protocol_ata: AccountInfo
    instructions: AccountInfo
    token_program: AccountInfo
    signer: SignerSeeds


def _load_accounts(ctx: InvocationContext, accounts: List[AccountInfo]) -> LoanAccounts:
    if len(accounts) < 9:
        raise ProgramError(ProgramErrorCode.NOT_ENOUGH_ACCOUNT_KEYS)
    borrower, protocol, mint, borrower_ata, protocol_ata, instructions, token_program = accounts[:7]

    require(borrower, SignerCheck())
    signer = protocol_authority(ctx.program_id)
    if signer.address != protocol.key:
        raise ProgramError(CustodyError.INVALID_PDA, f"{protocol.key} is not the protocol authority")
    require(protocol, OwnerCheck(SYSTEM_PROGRAM_ID))
    require(mint, MintInterfaceCheck())
    require_token_program(token_program)
    init_if_needed(ctx, borrower_ata, mint, borrower, borrower, token_program)
    require(protocol_ata, AssociatedAccountCheck(protocol.key, mint.key))
    if instructions.key != INSTRUCTIONS_SYSVAR_ID:
        raise ProgramError(CustodyError.INVALID_ADDRESS, f"{instructions.key} is not the instructions sysvar")

    return LoanAccounts(
        borrower=borrower,
        protocol=protocol,
        mint=mint,
        borrower_ata=borrower_ata,
        protocol_ata=protocol_ata,
        instructions=instructions,
        token_program=token_program,
        signer=signer
    )


def _reject(ctx: InvocationContext, code: FlashLoanError, message: str) -> ProgramError:
    log_action(
        logger, "warning", message,
        action="introspect", program_id=str(ctx.program_id), transaction_id=ctx.transaction_id,
        extra={"code": code.code}
    )
    return ProgramError(code, message)


def _check_sibling_accounts(ctx: InvocationContext, sibling: Instruction, loan: LoanAccounts) -> None:
    metas = sibling.accounts
    if len(metas) <= BORROWER_ATA_INDEX or metas[BORROWER_ATA_INDEX].pubkey != loan.borrower_ata.key:
        raise _reject(ctx, FlashLoanError.INVALID_BORROWER_ATA, "borrower token account differs")
    if len(metas) <= PROTOCOL_ATA_INDEX or metas[PROTOCOL_ATA_INDEX].pubkey != loan.protocol_ata.key:
        raise _reject(ctx, FlashLoanError.INVALID_PROTOCOL_ATA, "protocol token account differs")


def _borrow(ctx: InvocationContext, loan: LoanAccounts, amount: int) -> None:
    if amount == 0:
        raise ProgramError(FlashLoanError.INVALID_AMOUNT, "borrow amount must be positive")
    # Repay prices the loan from instruction 0, so that is the only place a borrow may sit
    current = load_current_index_checked(loan.instructions)
    if current != 0:
        raise _reject(
            ctx, FlashLoanError.INVALID_INSTRUCTION_INDEX, f"borrow must open the transaction, found at {current}"
        )
    available = token_amount(loan.protocol_ata)
    if available < amount:
        raise ProgramError(FlashLoanError.NOT_ENOUGH_FUNDS, f"vault holds {available}, requested {amount}")

    ctx.invoke(
        transfer(loan.protocol_ata.key, loan.borrower_ata.key, loan.protocol.key, amount,
                 program_id=loan.token_program.key),
        signer_seeds=[loan.signer]
    )

    count = instruction_count(loan.instructions)
    if count < 2:
        raise _reject(ctx, FlashLoanError.MISSING_REPAY_IX, "borrow is not followed by a repay")

    last = load_instruction_at_checked(count - 1, loan.instructions)
    if last.program_id != ctx.program_id:
        raise _reject(ctx, FlashLoanError.INVALID_PROGRAM, f"last instruction targets {last.program_id}")
    if bytes(last.data)[:8] != REPAY_DISCRIMINATOR:
        raise _reject(ctx, FlashLoanError.INVALID_IX, "last instruction is not a repay")
    _check_sibling_accounts(ctx, last, loan)

    log_action(
        logger, "info", "Flash loan issued",
        action="borrow", account=str(loan.borrower_ata.key), program_id=str(ctx.program_id),
        transaction_id=ctx.transaction_id, extra={"amount": amount}
    )


def _repay(ctx: InvocationContext, loan: LoanAccounts) -> None:
    if load_current_index_checked(loan.instructions) == 0:
        raise _reject(ctx, FlashLoanError.INVALID_INSTRUCTION_INDEX, "repay cannot open the transaction")

    first = load_instruction_at_checked(0, loan.instructions)
    if first.program_id != ctx.program_id:
        raise _reject(ctx, FlashLoanError.PROGRAM_MISMATCH, f"first instruction targets {first.program_id}")
    data = bytes(first.data)
    if len(data) != 16 or data[:8] != BORROW_DISCRIMINATOR:
        raise _reject(ctx, FlashLoanError.MISSING_BORROW_IX, "first instruction is not a borrow")
    _check_sibling_accounts(ctx, first, loan)

    principal = FieldReader(data[8:16], ProgramErrorCode.INVALID_INSTRUCTION_DATA).u64()
    total = repay_amount(principal)
    ctx.invoke(transfer(
        loan.borrower_ata.key, loan.protocol_ata.key, loan.borrower.key, total,
        program_id=loan.token_program.key
    ))

    log_action(
        logger, "info", "Flash loan repaid",
        action="repay", account=str(loan.borrower_ata.key), program_id=str(ctx.program_id),
        transaction_id=ctx.transaction_id, extra={"principal": principal, "fee": total - principal}
    )


def process_instruction(ctx: InvocationContext, accounts: List[AccountInfo], data: bytes) -> None:
    discriminator = bytes(data[:8])
    log_action(
        logger, "debug", "Processing flash loan instruction",
        action="dispatch", program_id=str(ctx.program_id), transaction_id=ctx.transaction_id,
        extra={"discriminator": discriminator.hex()}
    )
    if discriminator == BORROW_DISCRIMINATOR:
        if len(data) != 16:
            raise ProgramError(ProgramErrorCode.INVALID_INSTRUCTION_DATA, "borrow expects an 8-byte amount")
        amount = FieldReader(data[8:], ProgramErrorCode.INVALID_INSTRUCTION_DATA).u64()
        _borrow(ctx, _load_accounts(ctx, accounts), amount)
    elif discriminator == REPAY_DISCRIMINATOR:
        if len(data) != 8:
            raise ProgramError(ProgramErrorCode.INVALID_INSTRUCTION_DATA, "repay takes no payload")
        _repay(ctx, _load_accounts(ctx, accounts))
    else:
        raise ProgramError(ProgramErrorCode.INVALID_INSTRUCTION_DATA, "unknown flash loan instruction")
