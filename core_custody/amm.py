"""
Constant-Product Pool Program Module

A two-token pool whose reserves sit in associated token accounts of the
pool config address. Liquidity providers receive LP tokens from a mint the
config controls; traders swap one side for the other along x * y = k.

Every operation reloads the config, checks it is Initialized and
re-derives the vault and LP-mint addresses from the config before moving
anything. Instruction data is one discriminator byte followed by a fixed
little-endian payload whose length must match exactly.
"""

from dataclasses import dataclass
from enum import IntEnum
from typing import List, Optional

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from .checks import (
    MintInterfaceCheck, ProgramAccountCheck, SignerCheck, create_program_account,
    init_if_needed, require, require_token_program, token_amount
)
from .codec import FieldReader, FieldWriter, Mint, PoolConfig, PoolState, u64_bytes
from .curve import ConstantProduct, CurveError, LiquidityPair, SlippageExceeded
from .derivation import (
    ASSOCIATED_TOKEN_PROGRAM_ID, SYSTEM_PROGRAM_ID, TOKEN_PROGRAM_ID,
    SignerSeeds, associated_token_address, authority_from_bump, derive_authority
)
from .errors import AmmError, CustodyError, ProgramError, ProgramErrorCode
from .ledger import InvocationContext
from .logging_config import get_logger, log_action
from .storage import AccountInfo
from .token_program import burn, initialize_mint2, mint_to, transfer


PROGRAM_ID = Pubkey.from_string("44444444444444444444444444444444444444444444")

CONFIG_SEED = b"config"
LP_MINT_SEED = b"mint_lp"

logger = get_logger("custody.amm")


class AmmInstruction(IntEnum):
    INITIALIZE = 0
    DEPOSIT = 1
    WITHDRAW = 2
    SWAP = 3


def _reader(data: bytes, length: int, what: str) -> FieldReader:
    if len(data) != length:
        raise ProgramError(
            ProgramErrorCode.INVALID_INSTRUCTION_DATA,
            f"{what} expects {length} bytes, got {len(data)}"
        )
    return FieldReader(data, ProgramErrorCode.INVALID_INSTRUCTION_DATA)


def _check_window(ctx: InvocationContext, expiration: int) -> None:
    if expiration < ctx.clock.unix_timestamp:
        raise ProgramError(AmmError.EXPIRED, f"expired at {expiration}, now {ctx.clock.unix_timestamp}")


@dataclass
class InitializeArgs:
    """
    seed u64 | fee u16 | mint_x [32] | mint_y [32] | config_bump u8 | lp_bump u8
    | authority [32] (optional)
    """
    seed: int
    fee: int
    mint_x: Pubkey
    mint_y: Pubkey
    config_bump: int
    lp_bump: int
    authority: Optional[Pubkey] = None

    LEN = 8 + 2 + 32 + 32 + 1 + 1
    LEN_WITH_AUTHORITY = LEN + 32

    @classmethod
    def decode(cls, data: bytes) -> 'InitializeArgs':
        if len(data) not in (cls.LEN, cls.LEN_WITH_AUTHORITY):
            raise ProgramError(ProgramErrorCode.INVALID_INSTRUCTION_DATA, f"initialize payload of {len(data)} bytes")
        reader = FieldReader(data, ProgramErrorCode.INVALID_INSTRUCTION_DATA)
        args = cls(
            seed=reader.u64(),
            fee=reader.u16(),
            mint_x=reader.pubkey(),
            mint_y=reader.pubkey(),
            config_bump=reader.u8(),
            lp_bump=reader.u8()
        )
        if reader.remaining:
            authority = reader.pubkey()
            args.authority = None if authority == Pubkey.default() else authority
        reader.finish()
        return args

    def encode(self) -> bytes:
        writer = (FieldWriter()
                  .u64(self.seed)
                  .u16(self.fee)
                  .pubkey(self.mint_x)
                  .pubkey(self.mint_y)
                  .u8(self.config_bump)
                  .u8(self.lp_bump))
        if self.authority is not None:
            writer.pubkey(self.authority)
        return writer.to_bytes()


@dataclass
class DepositArgs:
    amount: int
    max_x: int
    max_y: int
    expiration: int

    LEN = 32

    @classmethod
    def decode(cls, data: bytes) -> 'DepositArgs':
        reader = _reader(data, cls.LEN, "deposit")
        args = cls(amount=reader.u64(), max_x=reader.u64(), max_y=reader.u64(), expiration=reader.i64())
        if args.amount == 0 or args.max_x == 0 or args.max_y == 0:
            raise ProgramError(AmmError.INVALID_AMOUNT, "amount, max_x and max_y must be positive")
        return args

    def encode(self) -> bytes:
        return FieldWriter().u64(self.amount).u64(self.max_x).u64(self.max_y).i64(self.expiration).to_bytes()


@dataclass
class WithdrawArgs:
    amount: int
    min_x: int
    min_y: int
    expiration: int

    LEN = 32

    @classmethod
    def decode(cls, data: bytes) -> 'WithdrawArgs':
        reader = _reader(data, cls.LEN, "withdraw")
        args = cls(amount=reader.u64(), min_x=reader.u64(), min_y=reader.u64(), expiration=reader.i64())
        if args.amount == 0 or args.min_x == 0 or args.min_y == 0:
            raise ProgramError(AmmError.INVALID_AMOUNT, "amount, min_x and min_y must be positive")
        return args

    def encode(self) -> bytes:
        return FieldWriter().u64(self.amount).u64(self.min_x).u64(self.min_y).i64(self.expiration).to_bytes()


@dataclass
class SwapArgs:
    is_x: bool
    amount: int
    min: int
    expiration: int

    LEN = 25

    @classmethod
    def decode(cls, data: bytes) -> 'SwapArgs':
        reader = _reader(data, cls.LEN, "swap")
        args = cls(is_x=reader.bool(), amount=reader.u64(), min=reader.u64(), expiration=reader.i64())
        if args.amount == 0 or args.min == 0:
            raise ProgramError(AmmError.INVALID_AMOUNT, "amount and min must be positive")
        return args

    def encode(self) -> bytes:
        return FieldWriter().bool(self.is_x).u64(self.amount).u64(self.min).i64(self.expiration).to_bytes()


# ----------------------------------------------------------------------
# Derivations
# ----------------------------------------------------------------------

def pool_authority(seed: int, mint_x: Pubkey, mint_y: Pubkey, program_id: Pubkey = PROGRAM_ID) -> SignerSeeds:
    """Canonical config address (and signing proof) for a pool"""
    return derive_authority(CONFIG_SEED, u64_bytes(seed), bytes(mint_x), bytes(mint_y), program_id=program_id)


def lp_mint_authority(config: Pubkey, program_id: Pubkey = PROGRAM_ID) -> SignerSeeds:
    return derive_authority(LP_MINT_SEED, bytes(config), program_id=program_id)


def _config_signer(ctx: InvocationContext, config_info: AccountInfo, config: PoolConfig) -> SignerSeeds:
    signer = authority_from_bump(
        CONFIG_SEED, u64_bytes(config.seed), bytes(config.mint_x), bytes(config.mint_y),
        bump=config.config_bump, program_id=ctx.program_id
    )
    if signer.address != config_info.key:
        raise ProgramError(CustodyError.INVALID_PDA, f"{config_info.key} is not a pool config")
    return signer


def _load_config(ctx: InvocationContext, config_info: AccountInfo) -> PoolConfig:
    require(config_info, ProgramAccountCheck(ctx.program_id, PoolConfig.LEN))
    config = PoolConfig.decode(bytes(config_info.data))
    if config.state != PoolState.INITIALIZED:
        raise ProgramError(AmmError.INVALID_STATE, f"pool is {config.state.name.lower()}")
    return config


def _check_vaults(config_info: AccountInfo, config: PoolConfig, token_program: AccountInfo,
                  vault_x: AccountInfo, vault_y: AccountInfo) -> None:
    require_token_program(token_program)
    for vault, mint in ((vault_x, config.mint_x), (vault_y, config.mint_y)):
        if associated_token_address(config_info.key, mint, token_program.key) != vault.key:
            log_action(
                logger, "warning", "Vault derivation mismatch",
                action="verify_vault", account=str(vault.key),
                extra={"config": str(config_info.key), "mint": str(mint)}
            )
            raise ProgramError(AmmError.INVALID_VAULT, f"{vault.key} is not a vault of {config_info.key}")


def _check_lp_mint(ctx: InvocationContext, config_info: AccountInfo, mint_lp: AccountInfo) -> Mint:
    if lp_mint_authority(config_info.key, ctx.program_id).address != mint_lp.key:
        raise ProgramError(AmmError.INVALID_LP_MINT, f"{mint_lp.key} is not the pool's LP mint")
    require(mint_lp, MintInterfaceCheck())
    return Mint.decode(bytes(mint_lp.data))


# ----------------------------------------------------------------------
# Instruction builders
# ----------------------------------------------------------------------

def initialize(initializer: Pubkey, mint_x: Pubkey, mint_y: Pubkey, seed: int, fee: int,
               authority: Optional[Pubkey] = None, token_program_id: Pubkey = TOKEN_PROGRAM_ID,
               program_id: Pubkey = PROGRAM_ID) -> Instruction:
    config = pool_authority(seed, mint_x, mint_y, program_id)
    mint_lp = lp_mint_authority(config.address, program_id)
    args = InitializeArgs(seed, fee, mint_x, mint_y, config.bump, mint_lp.bump, authority)
    return Instruction(program_id, bytes([AmmInstruction.INITIALIZE]) + args.encode(), [
        AccountMeta(initializer, True, True),
        AccountMeta(mint_lp.address, False, True),
        AccountMeta(config.address, False, True),
        AccountMeta(SYSTEM_PROGRAM_ID, False, False),
        AccountMeta(token_program_id, False, False),
    ])


def deposit(user: Pubkey, mint_x: Pubkey, mint_y: Pubkey, seed: int, amount: int, max_x: int,
            max_y: int, expiration: int, token_program_id: Pubkey = TOKEN_PROGRAM_ID,
            program_id: Pubkey = PROGRAM_ID) -> Instruction:
    config = pool_authority(seed, mint_x, mint_y, program_id).address
    mint_lp = lp_mint_authority(config, program_id).address
    data = bytes([AmmInstruction.DEPOSIT]) + DepositArgs(amount, max_x, max_y, expiration).encode()
    return Instruction(program_id, data, [
        AccountMeta(user, True, True),
        AccountMeta(mint_lp, False, True),
        AccountMeta(associated_token_address(config, mint_x, token_program_id), False, True),
        AccountMeta(associated_token_address(config, mint_y, token_program_id), False, True),
        AccountMeta(associated_token_address(user, mint_x, token_program_id), False, True),
        AccountMeta(associated_token_address(user, mint_y, token_program_id), False, True),
        AccountMeta(associated_token_address(user, mint_lp, token_program_id), False, True),
        AccountMeta(config, False, False),
        AccountMeta(token_program_id, False, False),
        AccountMeta(mint_x, False, False),
        AccountMeta(mint_y, False, False),
        AccountMeta(SYSTEM_PROGRAM_ID, False, False),
        AccountMeta(ASSOCIATED_TOKEN_PROGRAM_ID, False, False),
    ])


def withdraw(user: Pubkey, mint_x: Pubkey, mint_y: Pubkey, seed: int, amount: int, min_x: int,
             min_y: int, expiration: int, token_program_id: Pubkey = TOKEN_PROGRAM_ID,
             program_id: Pubkey = PROGRAM_ID) -> Instruction:
    config = pool_authority(seed, mint_x, mint_y, program_id).address
    mint_lp = lp_mint_authority(config, program_id).address
    data = bytes([AmmInstruction.WITHDRAW]) + WithdrawArgs(amount, min_x, min_y, expiration).encode()
    return Instruction(program_id, data, [
        AccountMeta(user, True, True),
        AccountMeta(mint_lp, False, True),
        AccountMeta(associated_token_address(config, mint_x, token_program_id), False, True),
        AccountMeta(associated_token_address(config, mint_y, token_program_id), False, True),
        AccountMeta(associated_token_address(user, mint_x, token_program_id), False, True),
        AccountMeta(associated_token_address(user, mint_y, token_program_id), False, True),
        AccountMeta(associated_token_address(user, mint_lp, token_program_id), False, True),
        AccountMeta(config, False, False),
        AccountMeta(token_program_id, False, False),
    ])


def swap(user: Pubkey, mint_x: Pubkey, mint_y: Pubkey, seed: int, is_x: bool, amount: int, min_out: int,
         expiration: int, token_program_id: Pubkey = TOKEN_PROGRAM_ID,
         program_id: Pubkey = PROGRAM_ID) -> Instruction:
    config = pool_authority(seed, mint_x, mint_y, program_id).address
    data = bytes([AmmInstruction.SWAP]) + SwapArgs(is_x, amount, min_out, expiration).encode()
    return Instruction(program_id, data, [
        AccountMeta(user, True, True),
        AccountMeta(associated_token_address(user, mint_x, token_program_id), False, True),
        AccountMeta(associated_token_address(user, mint_y, token_program_id), False, True),
        AccountMeta(associated_token_address(config, mint_x, token_program_id), False, True),
        AccountMeta(associated_token_address(config, mint_y, token_program_id), False, True),
        AccountMeta(config, False, False),
        AccountMeta(token_program_id, False, False),
    ])


# ----------------------------------------------------------------------
# Processor
# ----------------------------------------------------------------------

def _accounts(accounts: List[AccountInfo], count: int) -> List[AccountInfo]:
    if len(accounts) < count:
        raise ProgramError(ProgramErrorCode.NOT_ENOUGH_ACCOUNT_KEYS)
    return accounts[:count]


def _initialize(ctx: InvocationContext, accounts: List[AccountInfo], args: InitializeArgs) -> None:
    initializer, mint_lp, config_info, _system_program, token_program = _accounts(accounts, 5)

    require(initializer, SignerCheck())
    require_token_program(token_program)
    if args.fee >= PoolConfig.MAX_FEE_BPS:
        raise ProgramError(AmmError.INVALID_FEE, f"fee {args.fee} must be below {PoolConfig.MAX_FEE_BPS}")
    if args.mint_x == args.mint_y:
        raise ProgramError(ProgramErrorCode.INVALID_INSTRUCTION_DATA, "pool mints must differ")

    try:
        config_signer = authority_from_bump(
            CONFIG_SEED, u64_bytes(args.seed), bytes(args.mint_x), bytes(args.mint_y),
            bump=args.config_bump, program_id=ctx.program_id
        )
        lp_signer = authority_from_bump(
            LP_MINT_SEED, bytes(config_info.key), bump=args.lp_bump, program_id=ctx.program_id
        )
    except ProgramError as e:
        raise ProgramError(CustodyError.INVALID_PDA, e.message) from e

    create_program_account(ctx, initializer, config_info, config_signer, PoolConfig.LEN)
    PoolConfig(
        state=PoolState.INITIALIZED,
        seed=args.seed,
        authority=args.authority,
        mint_x=args.mint_x,
        mint_y=args.mint_y,
        fee=args.fee,
        config_bump=args.config_bump
    ).store(config_info.data)

    create_program_account(ctx, initializer, mint_lp, lp_signer, Mint.LEN, owner=token_program.key)
    ctx.invoke(initialize_mint2(
        mint_lp.key, ctx.ledger.config.lp_mint_decimals, config_info.key,
        program_id=token_program.key
    ))

    log_action(
        logger, "info", "Pool initialized",
        action="initialize", account=str(config_info.key), program_id=str(ctx.program_id),
        transaction_id=ctx.transaction_id,
        extra={"seed": args.seed, "fee": args.fee, "has_authority": args.authority is not None}
    )


def _deposit(ctx: InvocationContext, accounts: List[AccountInfo], args: DepositArgs) -> None:
    (user, mint_lp, vault_x, vault_y, user_x, user_y, user_lp, config_info, token_program,
     mint_x, mint_y, _system_program, _ata_program) = _accounts(accounts, 13)

    require(user, SignerCheck())
    _check_window(ctx, args.expiration)
    config = _load_config(ctx, config_info)
    signer = _config_signer(ctx, config_info, config)
    if mint_x.key != config.mint_x or mint_y.key != config.mint_y:
        raise ProgramError(CustodyError.MINT_CHECK_FAILED, "mints do not match the pool")
    _check_vaults(config_info, config, token_program, vault_x, vault_y)
    lp = _check_lp_mint(ctx, config_info, mint_lp)

    init_if_needed(ctx, vault_x, mint_x, user, config_info, token_program)
    init_if_needed(ctx, vault_y, mint_y, user, config_info, token_program)
    init_if_needed(ctx, user_lp, mint_lp, user, user, token_program)

    reserve_x = token_amount(vault_x)
    reserve_y = token_amount(vault_y)
    if lp.supply == 0:
        x, y = args.max_x, args.max_y
    else:
        try:
            amounts = ConstantProduct.xy_deposit_amounts_from_l(
                reserve_x, reserve_y, lp.supply, args.amount, lp.decimals
            )
        except CurveError as e:
            raise ProgramError(AmmError.CURVE_ERROR, str(e)) from e
        x, y = amounts.x, amounts.y

    if not (x <= args.max_x and y <= args.max_y):
        raise ProgramError(AmmError.SLIPPAGE_EXCEEDED, f"deposit needs ({x}, {y})")

    ctx.invoke(transfer(user_x.key, vault_x.key, user.key, x, program_id=token_program.key))
    ctx.invoke(transfer(user_y.key, vault_y.key, user.key, y, program_id=token_program.key))
    ctx.invoke(
        mint_to(mint_lp.key, user_lp.key, config_info.key, args.amount, program_id=token_program.key),
        signer_seeds=[signer]
    )

    log_action(
        logger, "info", "Liquidity deposited",
        action="deposit", account=str(config_info.key), program_id=str(ctx.program_id),
        transaction_id=ctx.transaction_id, extra={"lp": args.amount, "x": x, "y": y}
    )


def _withdraw(ctx: InvocationContext, accounts: List[AccountInfo], args: WithdrawArgs) -> None:
    (user, mint_lp, vault_x, vault_y, user_x, user_y, user_lp,
     config_info, token_program) = _accounts(accounts, 9)

    require(user, SignerCheck())
    _check_window(ctx, args.expiration)
    config = _load_config(ctx, config_info)
    signer = _config_signer(ctx, config_info, config)
    _check_vaults(config_info, config, token_program, vault_x, vault_y)
    lp = _check_lp_mint(ctx, config_info, mint_lp)

    reserve_x = token_amount(vault_x)
    reserve_y = token_amount(vault_y)
    if lp.supply == args.amount:
        x, y = reserve_x, reserve_y
    else:
        try:
            amounts = ConstantProduct.xy_withdraw_amounts_from_l(
                reserve_x, reserve_y, lp.supply, args.amount, lp.decimals
            )
        except CurveError as e:
            raise ProgramError(AmmError.CURVE_ERROR, str(e)) from e
        x, y = amounts.x, amounts.y

    # Upper bound on what leaves the pool
    if not (x <= args.min_x and y <= args.min_y):
        raise ProgramError(AmmError.SLIPPAGE_EXCEEDED, f"withdrawal of ({x}, {y}) exceeds the accepted bound")

    ctx.invoke(
        transfer(vault_x.key, user_x.key, config_info.key, x, program_id=token_program.key),
        signer_seeds=[signer]
    )
    ctx.invoke(
        transfer(vault_y.key, user_y.key, config_info.key, y, program_id=token_program.key),
        signer_seeds=[signer]
    )
    ctx.invoke(burn(user_lp.key, mint_lp.key, user.key, args.amount, program_id=token_program.key))

    log_action(
        logger, "info", "Liquidity withdrawn",
        action="withdraw", account=str(config_info.key), program_id=str(ctx.program_id),
        transaction_id=ctx.transaction_id, extra={"lp": args.amount, "x": x, "y": y}
    )


def _swap(ctx: InvocationContext, accounts: List[AccountInfo], args: SwapArgs) -> None:
    user, user_x, user_y, vault_x, vault_y, config_info, token_program = _accounts(accounts, 7)

    require(user, SignerCheck())
    _check_window(ctx, args.expiration)
    config = _load_config(ctx, config_info)
    signer = _config_signer(ctx, config_info, config)
    _check_vaults(config_info, config, token_program, vault_x, vault_y)

    reserve_x = token_amount(vault_x)
    reserve_y = token_amount(vault_y)
    if reserve_x == 0 or reserve_y == 0:
        raise ProgramError(AmmError.ZERO_BALANCE, f"pool holds ({reserve_x}, {reserve_y}), nothing to trade against")
    pair = LiquidityPair.X if args.is_x else LiquidityPair.Y
    try:
        # Vault X balance stands in for the LP supply
        curve = ConstantProduct(reserve_x, reserve_y, reserve_x, config.fee)
        result = curve.swap(pair, args.amount, args.min)
    except SlippageExceeded as e:
        raise ProgramError(AmmError.SLIPPAGE_EXCEEDED, str(e)) from e
    except CurveError as e:
        raise ProgramError(AmmError.CURVE_ERROR, str(e)) from e

    if args.is_x:
        source, vault_in, vault_out, destination = user_x, vault_x, vault_y, user_y
    else:
        source, vault_in, vault_out, destination = user_y, vault_y, vault_x, user_x

    ctx.invoke(transfer(source.key, vault_in.key, user.key, result.deposit, program_id=token_program.key))
    ctx.invoke(
        transfer(vault_out.key, destination.key, config_info.key, result.withdraw, program_id=token_program.key),
        signer_seeds=[signer]
    )

    log_action(
        logger, "info", "Swap executed",
        action="swap", account=str(config_info.key), program_id=str(ctx.program_id),
        transaction_id=ctx.transaction_id,
        extra={"pair": pair.value, "deposit": result.deposit, "withdraw": result.withdraw, "fee": result.fee}
    )


def process_instruction(ctx: InvocationContext, accounts: List[AccountInfo], data: bytes) -> None:
    if not data:
        raise ProgramError(ProgramErrorCode.INVALID_INSTRUCTION_DATA, "missing discriminator")
    try:
        instruction = AmmInstruction(data[0])
    except ValueError:
        raise ProgramError(ProgramErrorCode.INVALID_INSTRUCTION_DATA, f"unknown pool instruction {data[0]}")

    log_action(
        logger, "debug", "Processing pool instruction",
        action=instruction.name.lower(), program_id=str(ctx.program_id),
        transaction_id=ctx.transaction_id
    )

    payload = data[1:]
    if instruction == AmmInstruction.INITIALIZE:
        _initialize(ctx, accounts, InitializeArgs.decode(payload))
    elif instruction == AmmInstruction.DEPOSIT:
        _deposit(ctx, accounts, DepositArgs.decode(payload))
    elif instruction == AmmInstruction.WITHDRAW:
        _withdraw(ctx, accounts, WithdrawArgs.decode(payload))
    else:
        _swap(ctx, accounts, SwapArgs.decode(payload))
