"""
Escrow Program Module

Atomic bilateral swap. A maker locks `mint_a` tokens in a vault owned by a
program-derived escrow authority and names the amount of `mint_b` they want
in return. A taker settles the offer (Take) or the maker cancels it
(Refund). Either way the vault and the escrow record are closed, so an offer
can be consumed exactly once.

Instruction data: one discriminator byte, then for Make
`seed u64 | receive u64 | amount u64`. Take and Refund carry no payload.
"""

from dataclasses import dataclass
from enum import IntEnum
from typing import List

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from .checks import (
    AssociatedAccountCheck, MintInterfaceCheck, ProgramAccountCheck, SignerCheck,
    close_program_account, create_program_account, init_if_needed, require,
    require_token_program, token_amount
)
from .codec import Escrow, FieldReader, FieldWriter, u64_bytes
from .derivation import (
    ASSOCIATED_TOKEN_PROGRAM_ID, SYSTEM_PROGRAM_ID, TOKEN_PROGRAM_ID,
    associated_token_address, authority_from_bump, derive_authority
)
from .errors import CustodyError, ProgramError, ProgramErrorCode
from .ledger import InvocationContext
from .logging_config import get_logger, log_action
from .storage import AccountInfo
from .token_program import close_account, create_associated_token_account, transfer


PROGRAM_ID = Pubkey.from_string("33333333333333333333333333333333333333333333")

ESCROW_SEED = b"escrow"

logger = get_logger("custody.escrow")


class EscrowInstruction(IntEnum):
    MAKE = 0
    TAKE = 1
    REFUND = 2


@dataclass
class MakeArgs:
    seed: int
    receive: int
    amount: int

    LEN = 24

    @classmethod
    def decode(cls, data: bytes) -> 'MakeArgs':
        if len(data) != cls.LEN:
            raise ProgramError(ProgramErrorCode.INVALID_INSTRUCTION_DATA, f"make expects {cls.LEN} bytes")
        reader = FieldReader(data, ProgramErrorCode.INVALID_INSTRUCTION_DATA)
        args = cls(seed=reader.u64(), receive=reader.u64(), amount=reader.u64())
        if args.receive == 0 or args.amount == 0:
            raise ProgramError(ProgramErrorCode.INVALID_INSTRUCTION_DATA, "receive and amount must be positive")
        return args

    def encode(self) -> bytes:
        return FieldWriter().u64(self.seed).u64(self.receive).u64(self.amount).to_bytes()


def escrow_address(maker: Pubkey, seed: int, program_id: Pubkey = PROGRAM_ID) -> Pubkey:
    """Address of the escrow record `maker` opens with `seed`"""
    return derive_authority(ESCROW_SEED, bytes(maker), u64_bytes(seed), program_id=program_id).address


# ----------------------------------------------------------------------
# Instruction builders
# ----------------------------------------------------------------------

def make(maker: Pubkey, mint_a: Pubkey, mint_b: Pubkey, seed: int, receive: int, amount: int,
         token_program_id: Pubkey = TOKEN_PROGRAM_ID, program_id: Pubkey = PROGRAM_ID) -> Instruction:
    escrow = escrow_address(maker, seed, program_id)
    data = bytes([EscrowInstruction.MAKE]) + MakeArgs(seed, receive, amount).encode()
    return Instruction(program_id, data, [
        AccountMeta(maker, True, True),
        AccountMeta(escrow, False, True),
        AccountMeta(mint_a, False, False),
        AccountMeta(mint_b, False, False),
        AccountMeta(associated_token_address(maker, mint_a, token_program_id), False, True),
        AccountMeta(associated_token_address(escrow, mint_a, token_program_id), False, True),
        AccountMeta(SYSTEM_PROGRAM_ID, False, False),
        AccountMeta(token_program_id, False, False),
        AccountMeta(ASSOCIATED_TOKEN_PROGRAM_ID, False, False),
    ])


def take(taker: Pubkey, maker: Pubkey, mint_a: Pubkey, mint_b: Pubkey, seed: int,
         token_program_id: Pubkey = TOKEN_PROGRAM_ID, program_id: Pubkey = PROGRAM_ID) -> Instruction:
    escrow = escrow_address(maker, seed, program_id)
    return Instruction(program_id, bytes([EscrowInstruction.TAKE]), [
        AccountMeta(taker, True, True),
        AccountMeta(maker, False, True),
        AccountMeta(escrow, False, True),
        AccountMeta(mint_a, False, False),
        AccountMeta(mint_b, False, False),
        AccountMeta(associated_token_address(escrow, mint_a, token_program_id), False, True),
        AccountMeta(associated_token_address(taker, mint_a, token_program_id), False, True),
        AccountMeta(associated_token_address(taker, mint_b, token_program_id), False, True),
        AccountMeta(associated_token_address(maker, mint_b, token_program_id), False, True),
        AccountMeta(SYSTEM_PROGRAM_ID, False, False),
        AccountMeta(token_program_id, False, False),
        AccountMeta(ASSOCIATED_TOKEN_PROGRAM_ID, False, False),
    ])


def refund(maker: Pubkey, mint_a: Pubkey, seed: int,
           token_program_id: Pubkey = TOKEN_PROGRAM_ID, program_id: Pubkey = PROGRAM_ID) -> Instruction:
    escrow = escrow_address(maker, seed, program_id)
    return Instruction(program_id, bytes([EscrowInstruction.REFUND]), [
        AccountMeta(maker, True, True),
        AccountMeta(escrow, False, True),
        AccountMeta(mint_a, False, False),
        AccountMeta(associated_token_address(escrow, mint_a, token_program_id), False, True),
        AccountMeta(associated_token_address(maker, mint_a, token_program_id), False, True),
        AccountMeta(SYSTEM_PROGRAM_ID, False, False),
        AccountMeta(token_program_id, False, False),
        AccountMeta(ASSOCIATED_TOKEN_PROGRAM_ID, False, False),
    ])


# ----------------------------------------------------------------------
# Processor
# ----------------------------------------------------------------------

def _accounts(accounts: List[AccountInfo], count: int) -> List[AccountInfo]:
    if len(accounts) < count:
        raise ProgramError(ProgramErrorCode.NOT_ENOUGH_ACCOUNT_KEYS)
    return accounts[:count]


def _load_escrow(ctx: InvocationContext, escrow: AccountInfo, maker: AccountInfo):
    """
    Decode the escrow record and prove it lives at the address derived from
    its own seed, its bump and the supplied maker.
    """
    state = Escrow.decode(bytes(escrow.data))
    try:
        signer = authority_from_bump(
            ESCROW_SEED, bytes(maker.key), u64_bytes(state.seed),
            bump=state.bump, program_id=ctx.program_id
        )
        valid = signer.address == escrow.key
    except ProgramError:
        valid = False
    if not valid:
        log_action(
            logger, "warning", "Escrow derivation mismatch",
            action="verify_escrow", account=str(escrow.key),
            transaction_id=ctx.transaction_id, extra={"maker": str(maker.key)}
        )
        raise ProgramError(CustodyError.INVALID_PDA, f"{escrow.key} is not the escrow of {maker.key}")
    return state, signer


def _check_mint(recorded: Pubkey, supplied: AccountInfo) -> None:
    if recorded != supplied.key:
        raise ProgramError(CustodyError.MINT_CHECK_FAILED, f"escrow was opened for {recorded}, got {supplied.key}")


def _check_token_program(vault: AccountInfo, token_program: AccountInfo) -> None:
    """The program moving funds under the escrow signature must be the one that owns the vault"""
    require_token_program(token_program)
    if vault.owner != token_program.key:
        raise ProgramError(CustodyError.INVALID_OWNER, f"{vault.key} is not owned by {token_program.key}")


def _make(ctx: InvocationContext, accounts: List[AccountInfo], args: MakeArgs) -> None:
    (maker, escrow, mint_a, mint_b, maker_ata_a, vault,
     _system_program, token_program, _ata_program) = _accounts(accounts, 9)

    require(maker, SignerCheck())
    require(mint_a, MintInterfaceCheck())
    require(mint_b, MintInterfaceCheck())
    require(maker_ata_a, AssociatedAccountCheck(maker.key, mint_a.key))
    require_token_program(token_program)

    signer = derive_authority(ESCROW_SEED, bytes(maker.key), u64_bytes(args.seed), program_id=ctx.program_id)
    create_program_account(ctx, maker, escrow, signer, Escrow.LEN)
    Escrow(
        seed=args.seed,
        maker=maker.key,
        mint_a=mint_a.key,
        mint_b=mint_b.key,
        receive=args.receive,
        bump=signer.bump
    ).store(escrow.data)

    if associated_token_address(escrow.key, mint_a.key, token_program.key) != vault.key:
        raise ProgramError(CustodyError.INVALID_ADDRESS, f"{vault.key} is not the escrow vault")
    ctx.invoke(create_associated_token_account(maker.key, escrow.key, mint_a.key, token_program.key))
    ctx.invoke(transfer(maker_ata_a.key, vault.key, maker.key, args.amount, program_id=token_program.key))

    log_action(
        logger, "info", "Escrow opened",
        action="make", account=str(escrow.key), program_id=str(ctx.program_id),
        transaction_id=ctx.transaction_id,
        extra={"seed": args.seed, "receive": args.receive, "amount": args.amount}
    )


def _take(ctx: InvocationContext, accounts: List[AccountInfo]) -> None:
    (taker, maker, escrow, mint_a, mint_b, vault, taker_ata_a, taker_ata_b, maker_ata_b,
     _system_program, token_program, _ata_program) = _accounts(accounts, 12)

    require(taker, SignerCheck())
    require(escrow, ProgramAccountCheck(ctx.program_id, Escrow.LEN))
    require(mint_a, MintInterfaceCheck())
    require(mint_b, MintInterfaceCheck())
    require(taker_ata_b, AssociatedAccountCheck(taker.key, mint_b.key))
    require(vault, AssociatedAccountCheck(escrow.key, mint_a.key))
    _check_token_program(vault, token_program)

    state, signer = _load_escrow(ctx, escrow, maker)
    _check_mint(state.mint_a, mint_a)
    _check_mint(state.mint_b, mint_b)

    init_if_needed(ctx, taker_ata_a, mint_a, taker, taker, token_program)
    init_if_needed(ctx, maker_ata_b, mint_b, taker, maker, token_program)

    amount = token_amount(vault)
    ctx.invoke(
        transfer(vault.key, taker_ata_a.key, escrow.key, amount, program_id=token_program.key),
        signer_seeds=[signer]
    )
    ctx.invoke(transfer(taker_ata_b.key, maker_ata_b.key, taker.key, state.receive, program_id=token_program.key))

    ctx.invoke(
        close_account(vault.key, maker.key, escrow.key, program_id=token_program.key),
        signer_seeds=[signer]
    )
    close_program_account(escrow, taker)

    log_action(
        logger, "info", "Escrow taken",
        action="take", account=str(escrow.key), program_id=str(ctx.program_id),
        transaction_id=ctx.transaction_id,
        extra={"taker": str(taker.key), "amount": amount, "receive": state.receive}
    )


def _refund(ctx: InvocationContext, accounts: List[AccountInfo]) -> None:
    (maker, escrow, mint_a, vault, maker_ata_a,
     _system_program, token_program, _ata_program) = _accounts(accounts, 8)

    require(maker, SignerCheck())
    require(escrow, ProgramAccountCheck(ctx.program_id, Escrow.LEN))
    require(mint_a, MintInterfaceCheck())
    require(vault, AssociatedAccountCheck(escrow.key, mint_a.key))
    _check_token_program(vault, token_program)

    state, signer = _load_escrow(ctx, escrow, maker)
    _check_mint(state.mint_a, mint_a)

    init_if_needed(ctx, maker_ata_a, mint_a, maker, maker, token_program)

    amount = token_amount(vault)
    ctx.invoke(
        transfer(vault.key, maker_ata_a.key, escrow.key, amount, program_id=token_program.key),
        signer_seeds=[signer]
    )

    ctx.invoke(
        close_account(vault.key, maker.key, escrow.key, program_id=token_program.key),
        signer_seeds=[signer]
    )
    close_program_account(escrow, maker)

    log_action(
        logger, "info", "Escrow refunded",
        action="refund", account=str(escrow.key), program_id=str(ctx.program_id),
        transaction_id=ctx.transaction_id, extra={"amount": amount}
    )


def process_instruction(ctx: InvocationContext, accounts: List[AccountInfo], data: bytes) -> None:
    if not data:
        raise ProgramError(ProgramErrorCode.INVALID_INSTRUCTION_DATA, "missing discriminator")
    try:
        instruction = EscrowInstruction(data[0])
    except ValueError:
        raise ProgramError(ProgramErrorCode.INVALID_INSTRUCTION_DATA, f"unknown escrow instruction {data[0]}")

    log_action(
        logger, "debug", "Processing escrow instruction",
        action=instruction.name.lower(), program_id=str(ctx.program_id),
        transaction_id=ctx.transaction_id
    )

    if instruction == EscrowInstruction.MAKE:
        _make(ctx, accounts, MakeArgs.decode(data[1:]))
        return

    if len(data) != 1:
        raise ProgramError(ProgramErrorCode.INVALID_INSTRUCTION_DATA, f"{instruction.name.lower()} takes no payload")
    if instruction == EscrowInstruction.TAKE:
        _take(ctx, accounts)
    else:
        _refund(ctx, accounts)
