"""
Token Program Module

Fungible-token ledger updates (mint initialization, account initialization,
transfer, mint-to, burn, close) and the associated-token-account program that
creates token accounts at their deterministic (owner, mint) address. The same
processor serves the legacy and the 2022 token program ids; only the base
layouts are supported.
"""

from typing import TYPE_CHECKING, List, Optional

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from .codec import FieldReader, FieldWriter, Mint, TokenAccount, TokenAccountState, U64_MAX
from .derivation import (
    ASSOCIATED_TOKEN_PROGRAM_ID, SYSTEM_PROGRAM_ID, TOKEN_PROGRAM_ID, TOKEN_PROGRAM_IDS,
    SignerSeeds, associated_token_address, find_program_address
)
from .errors import ProgramError, ProgramErrorCode, TokenError
from .logging_config import get_logger, log_action
from .storage import AccountInfo
from . import system_program

if TYPE_CHECKING:
    from .ledger import InvocationContext


# Token instruction tags
TRANSFER = 3
MINT_TO = 7
BURN = 8
CLOSE_ACCOUNT = 9
INITIALIZE_ACCOUNT3 = 18
INITIALIZE_MINT2 = 20

# Associated-token instruction tags
ATA_CREATE = 0
ATA_CREATE_IDEMPOTENT = 1

logger = get_logger("custody.token_program")


# ----------------------------------------------------------------------
# Instruction builders
# ----------------------------------------------------------------------

def initialize_mint2(mint: Pubkey, decimals: int, mint_authority: Pubkey,
                     freeze_authority: Optional[Pubkey] = None,
                     program_id: Pubkey = TOKEN_PROGRAM_ID) -> Instruction:
    writer = FieldWriter().u8(INITIALIZE_MINT2).u8(decimals).pubkey(mint_authority)
    if freeze_authority is None:
        writer.u8(0)
    else:
        writer.u8(1).pubkey(freeze_authority)
    return Instruction(program_id, writer.to_bytes(), [AccountMeta(mint, False, True)])


def initialize_account3(account: Pubkey, mint: Pubkey, owner: Pubkey,
                        program_id: Pubkey = TOKEN_PROGRAM_ID) -> Instruction:
    data = FieldWriter().u8(INITIALIZE_ACCOUNT3).pubkey(owner).to_bytes()
    return Instruction(program_id, data, [
        AccountMeta(account, False, True),
        AccountMeta(mint, False, False),
    ])


def transfer(source: Pubkey, destination: Pubkey, authority: Pubkey, amount: int,
             program_id: Pubkey = TOKEN_PROGRAM_ID) -> Instruction:
    data = FieldWriter().u8(TRANSFER).u64(amount).to_bytes()
    return Instruction(program_id, data, [
        AccountMeta(source, False, True),
        AccountMeta(destination, False, True),
        AccountMeta(authority, True, False),
    ])


def mint_to(mint: Pubkey, destination: Pubkey, authority: Pubkey, amount: int,
            program_id: Pubkey = TOKEN_PROGRAM_ID) -> Instruction:
    data = FieldWriter().u8(MINT_TO).u64(amount).to_bytes()
    return Instruction(program_id, data, [
        AccountMeta(mint, False, True),
        AccountMeta(destination, False, True),
        AccountMeta(authority, True, False),
    ])


def burn(account: Pubkey, mint: Pubkey, authority: Pubkey, amount: int,
         program_id: Pubkey = TOKEN_PROGRAM_ID) -> Instruction:
    data = FieldWriter().u8(BURN).u64(amount).to_bytes()
    return Instruction(program_id, data, [
        AccountMeta(account, False, True),
        AccountMeta(mint, False, True),
        AccountMeta(authority, True, False),
    ])


def close_account(account: Pubkey, destination: Pubkey, authority: Pubkey,
                  program_id: Pubkey = TOKEN_PROGRAM_ID) -> Instruction:
    data = FieldWriter().u8(CLOSE_ACCOUNT).to_bytes()
    return Instruction(program_id, data, [
        AccountMeta(account, False, True),
        AccountMeta(destination, False, True),
        AccountMeta(authority, True, False),
    ])


def create_associated_token_account(payer: Pubkey, wallet: Pubkey, mint: Pubkey,
                                    token_program_id: Pubkey = TOKEN_PROGRAM_ID,
                                    idempotent: bool = False) -> Instruction:
    ata = associated_token_address(wallet, mint, token_program_id)
    data = bytes([ATA_CREATE_IDEMPOTENT if idempotent else ATA_CREATE])
    return Instruction(ASSOCIATED_TOKEN_PROGRAM_ID, data, [
        AccountMeta(payer, True, True),
        AccountMeta(ata, False, True),
        AccountMeta(wallet, False, False),
        AccountMeta(mint, False, False),
        AccountMeta(SYSTEM_PROGRAM_ID, False, False),
        AccountMeta(token_program_id, False, False),
    ])


# ----------------------------------------------------------------------
# Token program
# ----------------------------------------------------------------------

def _require(accounts: List[AccountInfo], count: int) -> None:
    if len(accounts) < count:
        raise ProgramError(ProgramErrorCode.NOT_ENOUGH_ACCOUNT_KEYS)


def _load_token_account(ctx: 'InvocationContext', info: AccountInfo) -> TokenAccount:
    if not info.is_owned_by(ctx.program_id):
        raise ProgramError(ProgramErrorCode.INVALID_ACCOUNT_OWNER, f"{info.key} is not a token account")
    account = TokenAccount.decode(bytes(info.data))
    if not account.is_initialized:
        raise ProgramError(TokenError.UNINITIALIZED_STATE, f"{info.key} is not initialized")
    if account.state == TokenAccountState.FROZEN:
        raise ProgramError(TokenError.ACCOUNT_FROZEN, f"{info.key} is frozen")
    return account


def _load_mint(ctx: 'InvocationContext', info: AccountInfo) -> Mint:
    if not info.is_owned_by(ctx.program_id):
        raise ProgramError(ProgramErrorCode.INVALID_ACCOUNT_OWNER, f"{info.key} is not a mint")
    mint = Mint.decode(bytes(info.data))
    if not mint.is_initialized:
        raise ProgramError(TokenError.UNINITIALIZED_STATE, f"mint {info.key} is not initialized")
    return mint


def _check_authority(expected: Optional[Pubkey], authority: AccountInfo) -> None:
    if expected is None or authority.key != expected:
        raise ProgramError(TokenError.OWNER_MISMATCH, f"{authority.key} is not the authority")
    if not authority.is_signer:
        raise ProgramError(ProgramErrorCode.MISSING_REQUIRED_SIGNATURE, f"{authority.key} must sign")


def process_token_instruction(ctx: 'InvocationContext', accounts: List[AccountInfo], data: bytes) -> None:
    reader = FieldReader(data, ProgramErrorCode.INVALID_INSTRUCTION_DATA)
    tag = reader.u8()

    if tag == INITIALIZE_MINT2:
        decimals = reader.u8()
        mint_authority = reader.pubkey()
        freeze_authority = reader.pubkey() if reader.u8() == 1 else None
        reader.finish()
        _require(accounts, 1)
        mint_info = accounts[0]
        if not mint_info.is_owned_by(ctx.program_id):
            raise ProgramError(ProgramErrorCode.INVALID_ACCOUNT_OWNER, f"{mint_info.key} is not a mint")
        if Mint.decode(bytes(mint_info.data)).is_initialized:
            raise ProgramError(TokenError.ALREADY_IN_USE, f"mint {mint_info.key} already initialized")
        Mint(
            mint_authority=mint_authority,
            supply=0,
            decimals=decimals,
            is_initialized=True,
            freeze_authority=freeze_authority
        ).store(mint_info.data)

    elif tag == INITIALIZE_ACCOUNT3:
        owner = reader.pubkey()
        reader.finish()
        _require(accounts, 2)
        account_info, mint_info = accounts[0], accounts[1]
        if not account_info.is_owned_by(ctx.program_id):
            raise ProgramError(ProgramErrorCode.INVALID_ACCOUNT_OWNER, f"{account_info.key} is not a token account")
        if TokenAccount.decode(bytes(account_info.data)).is_initialized:
            raise ProgramError(TokenError.ALREADY_IN_USE, f"{account_info.key} already initialized")
        _load_mint(ctx, mint_info)
        TokenAccount(mint=mint_info.key, owner=owner, amount=0).store(account_info.data)

    elif tag == TRANSFER:
        amount = reader.u64()
        reader.finish()
        _require(accounts, 3)
        source_info, destination_info, authority = accounts[0], accounts[1], accounts[2]
        source = _load_token_account(ctx, source_info)
        destination = _load_token_account(ctx, destination_info)
        if source.mint != destination.mint:
            raise ProgramError(TokenError.MINT_MISMATCH, "source and destination mints differ")
        _check_authority(source.owner, authority)
        if source.amount < amount:
            raise ProgramError(
                TokenError.INSUFFICIENT_FUNDS,
                f"{source_info.key} holds {source.amount}, transfer needs {amount}"
            )
        if source_info.key == destination_info.key:
            return
        if destination.amount + amount > U64_MAX:
            raise ProgramError(TokenError.OVERFLOW)
        source.amount -= amount
        destination.amount += amount
        source.store(source_info.data)
        destination.store(destination_info.data)

    elif tag == MINT_TO:
        amount = reader.u64()
        reader.finish()
        _require(accounts, 3)
        mint_info, destination_info, authority = accounts[0], accounts[1], accounts[2]
        mint = _load_mint(ctx, mint_info)
        destination = _load_token_account(ctx, destination_info)
        if destination.mint != mint_info.key:
            raise ProgramError(TokenError.MINT_MISMATCH, "destination holds another mint")
        _check_authority(mint.mint_authority, authority)
        if mint.supply + amount > U64_MAX:
            raise ProgramError(TokenError.OVERFLOW)
        mint.supply += amount
        destination.amount += amount
        mint.store(mint_info.data)
        destination.store(destination_info.data)

    elif tag == BURN:
        amount = reader.u64()
        reader.finish()
        _require(accounts, 3)
        account_info, mint_info, authority = accounts[0], accounts[1], accounts[2]
        account = _load_token_account(ctx, account_info)
        mint = _load_mint(ctx, mint_info)
        if account.mint != mint_info.key:
            raise ProgramError(TokenError.MINT_MISMATCH, "account holds another mint")
        _check_authority(account.owner, authority)
        if account.amount < amount:
            raise ProgramError(TokenError.INSUFFICIENT_FUNDS, f"cannot burn {amount}, holds {account.amount}")
        account.amount -= amount
        mint.supply -= amount
        account.store(account_info.data)
        mint.store(mint_info.data)

    elif tag == CLOSE_ACCOUNT:
        reader.finish()
        _require(accounts, 3)
        account_info, destination, authority = accounts[0], accounts[1], accounts[2]
        if account_info.key == destination.key:
            raise ProgramError(ProgramErrorCode.INVALID_ACCOUNT_DATA, "cannot close into itself")
        account = _load_token_account(ctx, account_info)
        if account.amount != 0:
            raise ProgramError(TokenError.NON_NATIVE_HAS_BALANCE, f"{account_info.key} still holds {account.amount}")
        _check_authority(account.close_authority or account.owner, authority)
        destination.lamports = destination.lamports + account_info.lamports
        account_info.lamports = 0
        account_info.resize(0)
        account_info.assign(SYSTEM_PROGRAM_ID)

    else:
        raise ProgramError(ProgramErrorCode.INVALID_INSTRUCTION_DATA, f"unknown token instruction {tag}")

    log_action(
        logger, "debug", "Token instruction processed",
        action=f"token_{tag}", program_id=str(ctx.program_id),
        transaction_id=ctx.transaction_id
    )


# ----------------------------------------------------------------------
# Associated token account program
# ----------------------------------------------------------------------

def process_associated_token_instruction(ctx: 'InvocationContext', accounts: List[AccountInfo],
                                         data: bytes) -> None:
    if data not in (b"", bytes([ATA_CREATE]), bytes([ATA_CREATE_IDEMPOTENT])):
        raise ProgramError(ProgramErrorCode.INVALID_INSTRUCTION_DATA, "unknown associated token instruction")
    idempotent = data == bytes([ATA_CREATE_IDEMPOTENT])
    _require(accounts, 6)
    payer, ata, wallet, mint, _, token_program = accounts[:6]

    if token_program.key not in TOKEN_PROGRAM_IDS:
        raise ProgramError(ProgramErrorCode.UNSUPPORTED_PROGRAM_ID, f"{token_program.key} is not a token program")

    seeds = (bytes(wallet.key), bytes(token_program.key), bytes(mint.key))
    expected, bump = find_program_address(seeds, ASSOCIATED_TOKEN_PROGRAM_ID)
    if expected != ata.key:
        raise ProgramError(ProgramErrorCode.INVALID_SEEDS, f"{ata.key} is not the associated account")

    if ata.is_owned_by(token_program.key):
        existing = TokenAccount.decode(bytes(ata.data))
        if idempotent and existing.owner == wallet.key and existing.mint == mint.key:
            return
        raise ProgramError(ProgramErrorCode.ACCOUNT_ALREADY_IN_USE, f"{ata.key} already exists")

    if not mint.is_owned_by(token_program.key):
        raise ProgramError(ProgramErrorCode.INVALID_ACCOUNT_OWNER, f"{mint.key} is not a mint")

    proof = SignerSeeds(
        program_id=ASSOCIATED_TOKEN_PROGRAM_ID,
        seeds=seeds + (bytes([bump]),),
        address=expected
    )
    ctx.invoke(
        system_program.create_account(
            payer.key, ata.key, ctx.rent.minimum_balance(TokenAccount.LEN),
            TokenAccount.LEN, token_program.key
        ),
        signer_seeds=[proof]
    )
    ctx.invoke(initialize_account3(ata.key, mint.key, wallet.key, program_id=token_program.key))
    log_action(
        logger, "debug", "Associated token account created",
        action="create_associated_token_account", account=str(ata.key),
        transaction_id=ctx.transaction_id,
        extra={"wallet": str(wallet.key), "mint": str(mint.key)}
    )
