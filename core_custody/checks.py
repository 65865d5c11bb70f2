"""
Account Validation Module

Every account reference handed to a custody program is untrusted until it
passes the checks below. A check is a small frozen record naming what is
expected of the account; `check_account` evaluates one, `require` evaluates
several in order and stops at the first failure. All checks are pure
predicates over the account snapshot and fail closed.

Also hosts the account lifecycle helpers the programs share: idempotent
associated-account creation, program-owned account creation and the
irreversible close.
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional, Union

from solders.pubkey import Pubkey

from .codec import (
    Mint, TokenAccount, TOKEN_2022_ACCOUNT_TYPE_OFFSET, TOKEN_2022_MINT_DISCRIMINATOR,
    TOKEN_2022_TOKEN_ACCOUNT_DISCRIMINATOR
)
from .derivation import (
    SYSTEM_PROGRAM_ID, TOKEN_2022_PROGRAM_ID, TOKEN_PROGRAM_IDS,
    SignerSeeds, associated_token_address
)
from .errors import CustodyError, ProgramError, ProgramErrorCode
from .logging_config import get_logger, log_action
from .storage import AccountInfo
from . import system_program
from .token_program import create_associated_token_account

if TYPE_CHECKING:
    from .ledger import InvocationContext


logger = get_logger("custody.checks")


@dataclass(frozen=True)
class SignerCheck:
    """Account must have signed the instruction"""


@dataclass(frozen=True)
class OwnerCheck:
    """Account must be owned by `program_id`"""
    program_id: Pubkey


@dataclass(frozen=True)
class LayoutCheck:
    """Account data must be exactly `length` bytes"""
    length: int


@dataclass(frozen=True)
class ProgramAccountCheck:
    """Account must be a live state record of `program_id` with the given size"""
    program_id: Pubkey
    length: int


@dataclass(frozen=True)
class MintInterfaceCheck:
    """Account must be a mint of either token program"""


@dataclass(frozen=True)
class TokenAccountCheck:
    """Account must be a token account of either token program"""


@dataclass(frozen=True)
class AssociatedAccountCheck:
    """Account must sit at the associated address of (authority, mint)"""
    authority: Pubkey
    mint: Pubkey


AccountCheck = Union[
    SignerCheck, OwnerCheck, LayoutCheck, ProgramAccountCheck,
    MintInterfaceCheck, TokenAccountCheck, AssociatedAccountCheck
]


def _token_layout(account: AccountInfo, base_len: int, discriminator: int, what: str) -> None:
    if account.owner not in TOKEN_PROGRAM_IDS:
        raise ProgramError(CustodyError.INVALID_OWNER, f"{account.key} is not owned by a token program")
    if account.data_len == base_len:
        return
    # Legacy token accounts have exactly the base size; 2022 accounts with
    # extensions carry an account-type byte after the base layout
    if (account.owner == TOKEN_2022_PROGRAM_ID
            and account.data_len > TOKEN_2022_ACCOUNT_TYPE_OFFSET
            and account.data[TOKEN_2022_ACCOUNT_TYPE_OFFSET] == discriminator):
        return
    raise ProgramError(ProgramErrorCode.INVALID_ACCOUNT_DATA, f"{account.key} is not a {what}")


def check_account(account: AccountInfo, check: AccountCheck) -> None:
    """
    Evaluate a single check against an account.

    Raises:
        ProgramError: with the code matching the failed check
    """
    if isinstance(check, SignerCheck):
        if not account.is_signer:
            raise ProgramError(ProgramErrorCode.MISSING_REQUIRED_SIGNATURE, f"{account.key} must sign")

    elif isinstance(check, OwnerCheck):
        if not account.is_owned_by(check.program_id):
            raise ProgramError(CustodyError.INVALID_OWNER, f"{account.key} is not owned by {check.program_id}")

    elif isinstance(check, LayoutCheck):
        if account.data_len != check.length:
            raise ProgramError(
                ProgramErrorCode.INVALID_ACCOUNT_DATA,
                f"{account.key} holds {account.data_len} bytes, expected {check.length}"
            )

    elif isinstance(check, ProgramAccountCheck):
        check_account(account, OwnerCheck(check.program_id))
        check_account(account, LayoutCheck(check.length))

    elif isinstance(check, MintInterfaceCheck):
        _token_layout(account, Mint.LEN, TOKEN_2022_MINT_DISCRIMINATOR, "mint")

    elif isinstance(check, TokenAccountCheck):
        _token_layout(account, TokenAccount.LEN, TOKEN_2022_TOKEN_ACCOUNT_DISCRIMINATOR, "token account")

    elif isinstance(check, AssociatedAccountCheck):
        check_account(account, TokenAccountCheck())
        expected = associated_token_address(check.authority, check.mint, account.owner)
        if expected != account.key:
            raise ProgramError(
                CustodyError.INVALID_ADDRESS,
                f"{account.key} is not the associated account of {check.authority}"
            )

    else:
        raise TypeError(f"Unknown account check {check!r}")


def require(account: AccountInfo, *checks: AccountCheck) -> None:
    """Apply checks in order; the first failure aborts"""
    for check in checks:
        try:
            check_account(account, check)
        except ProgramError as e:
            log_action(
                logger, "warning", f"Account check failed: {e.message}",
                action=type(check).__name__, account=str(account.key),
                extra={"code": e.code.code}
            )
            raise


def require_token_program(account: AccountInfo) -> None:
    """Account must be one of the two token programs"""
    if account.key not in TOKEN_PROGRAM_IDS:
        raise ProgramError(ProgramErrorCode.UNSUPPORTED_PROGRAM_ID, f"{account.key} is not a token program")


def token_amount(account: AccountInfo) -> int:
    """Balance of a validated, initialized token account"""
    require(account, TokenAccountCheck())
    state = TokenAccount.decode(bytes(account.data))
    if not state.is_initialized:
        raise ProgramError(CustodyError.UNINITIALIZED_ACCOUNT, f"{account.key} is not initialized")
    return state.amount


def init_if_needed(
    ctx: 'InvocationContext',
    account: AccountInfo,
    mint: AccountInfo,
    payer: AccountInfo,
    owner: AccountInfo,
    token_program: AccountInfo
) -> None:
    """
    Make sure `account` is the associated account of (owner, mint),
    creating it when the derivation check does not pass yet. Creation is
    delegated to the associated-token program, which itself rejects an
    address that is not the derived one.
    """
    try:
        check_account(account, AssociatedAccountCheck(owner.key, mint.key))
        return
    except ProgramError:
        pass

    require_token_program(token_program)
    if associated_token_address(owner.key, mint.key, token_program.key) != account.key:
        raise ProgramError(
            CustodyError.INVALID_ADDRESS,
            f"{account.key} is not the associated account of {owner.key}"
        )
    ctx.invoke(create_associated_token_account(payer.key, owner.key, mint.key, token_program.key))
    log_action(
        logger, "debug", "Associated account created on demand",
        action="init_if_needed", account=str(account.key),
        program_id=str(ctx.program_id), transaction_id=ctx.transaction_id
    )


def create_program_account(
    ctx: 'InvocationContext',
    payer: AccountInfo,
    account: AccountInfo,
    signer: SignerSeeds,
    space: int,
    owner: Optional[Pubkey] = None
) -> None:
    """Allocate a rent-exempt account at a derived address, owned by the calling program unless `owner` is given"""
    if signer.address != account.key:
        raise ProgramError(CustodyError.INVALID_PDA, f"{account.key} does not match its derivation")
    ctx.invoke(
        system_program.create_account(
            payer.key, account.key, ctx.rent.minimum_balance(space), space,
            owner or ctx.program_id
        ),
        signer_seeds=[signer]
    )


def close_program_account(account: AccountInfo, destination: AccountInfo) -> None:
    """
    Zero a state record, hand its lamports to `destination` and return it to
    the system program. Any later use of the address fails validation.
    """
    account.data[:] = bytes(account.data_len)
    destination.lamports = destination.lamports + account.lamports
    account.lamports = 0
    account.resize(0)
    account.assign(SYSTEM_PROGRAM_ID)
