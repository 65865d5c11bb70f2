"""
Binary Account Codec Module

Fixed-layout encode/decode for every persisted structure and instruction
payload. Layouts are little-endian and unpadded. A decode never aliases the
raw buffer: each field is read through a bounds-checked cursor and range
checked, and any length mismatch is a hard failure rather than a partial
read.
"""

import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional

from solders.pubkey import Pubkey

from .errors import ProgramError, ProgramErrorCode


PUBKEY_LEN = 32
U64_MAX = 2 ** 64 - 1
U128_MAX = 2 ** 128 - 1

_U8 = struct.Struct("<B")
_U16 = struct.Struct("<H")
_U32 = struct.Struct("<I")
_U64 = struct.Struct("<Q")
_I64 = struct.Struct("<q")

# Token-2022 appends an account-type byte right after the base account layout
TOKEN_2022_ACCOUNT_TYPE_OFFSET = 165
TOKEN_2022_MINT_DISCRIMINATOR = 0x01
TOKEN_2022_TOKEN_ACCOUNT_DISCRIMINATOR = 0x02


class FieldReader:
    """Sequential, bounds-checked reader over an immutable byte buffer"""

    def __init__(self, data: bytes, error: ProgramErrorCode = ProgramErrorCode.INVALID_ACCOUNT_DATA):
        self._data = bytes(data)
        self._offset = 0
        self._error = error

    @property
    def remaining(self) -> int:
        return len(self._data) - self._offset

    def _take(self, size: int) -> bytes:
        if size > self.remaining:
            raise ProgramError(
                self._error,
                f"need {size} bytes at offset {self._offset}, have {self.remaining}"
            )
        chunk = self._data[self._offset:self._offset + size]
        self._offset += size
        return chunk

    def u8(self) -> int:
        return _U8.unpack(self._take(1))[0]

    def u16(self) -> int:
        return _U16.unpack(self._take(2))[0]

    def u32(self) -> int:
        return _U32.unpack(self._take(4))[0]

    def u64(self) -> int:
        return _U64.unpack(self._take(8))[0]

    def i64(self) -> int:
        return _I64.unpack(self._take(8))[0]

    def bool(self) -> bool:
        value = self.u8()
        if value not in (0, 1):
            raise ProgramError(self._error, f"invalid bool byte {value}")
        return value == 1

    def pubkey(self) -> Pubkey:
        return Pubkey.from_bytes(self._take(PUBKEY_LEN))

    def raw(self, size: int) -> bytes:
        return self._take(size)

    def option_pubkey(self) -> Optional[Pubkey]:
        """COption<Pubkey>: u32 tag followed by a always-present 32-byte body"""
        tag = self.u32()
        body = self._take(PUBKEY_LEN)
        if tag == 0:
            return None
        if tag != 1:
            raise ProgramError(self._error, f"invalid option tag {tag}")
        return Pubkey.from_bytes(body)

    def option_u64(self) -> Optional[int]:
        tag = self.u32()
        body = self.u64()
        if tag == 0:
            return None
        if tag != 1:
            raise ProgramError(self._error, f"invalid option tag {tag}")
        return body

    def finish(self) -> None:
        """Assert the buffer has been consumed exactly"""
        if self.remaining:
            raise ProgramError(self._error, f"{self.remaining} trailing bytes")


class FieldWriter:
    """Sequential writer producing a fixed-layout byte string"""

    def __init__(self):
        self._parts = []

    def u8(self, value: int) -> 'FieldWriter':
        self._parts.append(_U8.pack(value))
        return self

    def u16(self, value: int) -> 'FieldWriter':
        self._parts.append(_U16.pack(value))
        return self

    def u32(self, value: int) -> 'FieldWriter':
        self._parts.append(_U32.pack(value))
        return self

    def u64(self, value: int) -> 'FieldWriter':
        self._parts.append(_U64.pack(value))
        return self

    def i64(self, value: int) -> 'FieldWriter':
        self._parts.append(_I64.pack(value))
        return self

    def bool(self, value: bool) -> 'FieldWriter':
        return self.u8(1 if value else 0)

    def pubkey(self, value: Pubkey) -> 'FieldWriter':
        self._parts.append(bytes(value))
        return self

    def raw(self, value: bytes) -> 'FieldWriter':
        self._parts.append(bytes(value))
        return self

    def option_pubkey(self, value: Optional[Pubkey]) -> 'FieldWriter':
        if value is None:
            return self.u32(0).raw(bytes(PUBKEY_LEN))
        return self.u32(1).pubkey(value)

    def option_u64(self, value: Optional[int]) -> 'FieldWriter':
        if value is None:
            return self.u32(0).u64(0)
        return self.u32(1).u64(value)

    def to_bytes(self) -> bytes:
        return b"".join(self._parts)


def u64_bytes(value: int) -> bytes:
    """Little-endian u64, as used in derivation seeds"""
    if not 0 <= value <= U64_MAX:
        raise ValueError(f"{value} does not fit in u64")
    return _U64.pack(value)


def _exact(data: bytes, length: int, what: str) -> None:
    if len(data) != length:
        raise ProgramError(
            ProgramErrorCode.INVALID_ACCOUNT_DATA,
            f"{what} must be {length} bytes, got {len(data)}"
        )


def _store(target: bytearray, encoded: bytes) -> None:
    if len(target) != len(encoded):
        raise ProgramError(
            ProgramErrorCode.INVALID_ACCOUNT_DATA,
            f"buffer is {len(target)} bytes, layout needs {len(encoded)}"
        )
    target[:] = encoded


@dataclass
class Escrow:
    """
    Escrow offer record.

    Layout: seed u64 | maker [32] | mint_a [32] | mint_b [32] | receive u64 | bump u8
    """
    seed: int
    maker: Pubkey
    mint_a: Pubkey
    mint_b: Pubkey
    receive: int
    bump: int

    LEN = 8 + PUBKEY_LEN * 3 + 8 + 1

    @classmethod
    def decode(cls, data: bytes) -> 'Escrow':
        _exact(data, cls.LEN, "escrow")
        reader = FieldReader(data)
        escrow = cls(
            seed=reader.u64(),
            maker=reader.pubkey(),
            mint_a=reader.pubkey(),
            mint_b=reader.pubkey(),
            receive=reader.u64(),
            bump=reader.u8()
        )
        reader.finish()
        return escrow

    def encode(self) -> bytes:
        return (FieldWriter()
                .u64(self.seed)
                .pubkey(self.maker)
                .pubkey(self.mint_a)
                .pubkey(self.mint_b)
                .u64(self.receive)
                .u8(self.bump)
                .to_bytes())

    def store(self, target: bytearray) -> None:
        _store(target, self.encode())


class PoolState(IntEnum):
    """Pool lifecycle; every pool operation checks it"""
    UNINITIALIZED = 0
    INITIALIZED = 1
    DISABLED = 2


@dataclass
class PoolConfig:
    """
    Constant-product pool configuration.

    Layout: state u8 | seed u64 | authority [32] | mint_x [32] | mint_y [32]
            | fee u16 | config_bump u8

    An all-zero authority means the pool has no upgrade authority.
    """
    state: PoolState
    seed: int
    authority: Optional[Pubkey]
    mint_x: Pubkey
    mint_y: Pubkey
    fee: int
    config_bump: int

    LEN = 1 + 8 + PUBKEY_LEN * 3 + 2 + 1
    MAX_FEE_BPS = 10_000

    @classmethod
    def decode(cls, data: bytes) -> 'PoolConfig':
        _exact(data, cls.LEN, "pool config")
        reader = FieldReader(data)
        raw_state = reader.u8()
        try:
            state = PoolState(raw_state)
        except ValueError:
            raise ProgramError(ProgramErrorCode.INVALID_ACCOUNT_DATA, f"unknown pool state {raw_state}")
        seed = reader.u64()
        authority = reader.pubkey()
        config = cls(
            state=state,
            seed=seed,
            authority=None if authority == Pubkey.default() else authority,
            mint_x=reader.pubkey(),
            mint_y=reader.pubkey(),
            fee=reader.u16(),
            config_bump=reader.u8()
        )
        reader.finish()
        if config.fee >= cls.MAX_FEE_BPS:
            raise ProgramError(ProgramErrorCode.INVALID_ACCOUNT_DATA, f"fee {config.fee} out of range")
        return config

    def encode(self) -> bytes:
        return (FieldWriter()
                .u8(int(self.state))
                .u64(self.seed)
                .pubkey(self.authority or Pubkey.default())
                .pubkey(self.mint_x)
                .pubkey(self.mint_y)
                .u16(self.fee)
                .u8(self.config_bump)
                .to_bytes())

    def store(self, target: bytearray) -> None:
        _store(target, self.encode())


class TokenAccountState(IntEnum):
    UNINITIALIZED = 0
    INITIALIZED = 1
    FROZEN = 2


@dataclass
class TokenAccount:
    """Token balance account (base layout shared by both token programs)"""
    mint: Pubkey
    owner: Pubkey
    amount: int
    delegate: Optional[Pubkey] = None
    state: TokenAccountState = TokenAccountState.INITIALIZED
    is_native: Optional[int] = None
    delegated_amount: int = 0
    close_authority: Optional[Pubkey] = None

    LEN = 165

    @classmethod
    def decode(cls, data: bytes) -> 'TokenAccount':
        """Decode the base layout; Token-2022 extension bytes after it are ignored"""
        if len(data) < cls.LEN:
            raise ProgramError(
                ProgramErrorCode.INVALID_ACCOUNT_DATA,
                f"token account must be at least {cls.LEN} bytes, got {len(data)}"
            )
        reader = FieldReader(bytes(data[:cls.LEN]))
        mint = reader.pubkey()
        owner = reader.pubkey()
        amount = reader.u64()
        delegate = reader.option_pubkey()
        raw_state = reader.u8()
        try:
            state = TokenAccountState(raw_state)
        except ValueError:
            raise ProgramError(ProgramErrorCode.INVALID_ACCOUNT_DATA, f"unknown account state {raw_state}")
        account = cls(
            mint=mint,
            owner=owner,
            amount=amount,
            delegate=delegate,
            state=state,
            is_native=reader.option_u64(),
            delegated_amount=reader.u64(),
            close_authority=reader.option_pubkey()
        )
        reader.finish()
        return account

    @property
    def is_initialized(self) -> bool:
        return self.state != TokenAccountState.UNINITIALIZED

    def encode(self) -> bytes:
        return (FieldWriter()
                .pubkey(self.mint)
                .pubkey(self.owner)
                .u64(self.amount)
                .option_pubkey(self.delegate)
                .u8(int(self.state))
                .option_u64(self.is_native)
                .u64(self.delegated_amount)
                .option_pubkey(self.close_authority)
                .to_bytes())

    def store(self, target: bytearray) -> None:
        encoded = self.encode()
        if len(target) < self.LEN:
            raise ProgramError(ProgramErrorCode.INVALID_ACCOUNT_DATA, "token account buffer too small")
        target[:self.LEN] = encoded


@dataclass
class Mint:
    """Token mint (base layout shared by both token programs)"""
    mint_authority: Optional[Pubkey]
    supply: int
    decimals: int
    is_initialized: bool
    freeze_authority: Optional[Pubkey] = None

    LEN = 82

    @classmethod
    def decode(cls, data: bytes) -> 'Mint':
        """Decode the base layout; Token-2022 extension bytes after it are ignored"""
        if len(data) < cls.LEN:
            raise ProgramError(
                ProgramErrorCode.INVALID_ACCOUNT_DATA,
                f"mint must be at least {cls.LEN} bytes, got {len(data)}"
            )
        reader = FieldReader(bytes(data[:cls.LEN]))
        mint = cls(
            mint_authority=reader.option_pubkey(),
            supply=reader.u64(),
            decimals=reader.u8(),
            is_initialized=reader.bool(),
            freeze_authority=reader.option_pubkey()
        )
        reader.finish()
        return mint

    def encode(self) -> bytes:
        return (FieldWriter()
                .option_pubkey(self.mint_authority)
                .u64(self.supply)
                .u8(self.decimals)
                .bool(self.is_initialized)
                .option_pubkey(self.freeze_authority)
                .to_bytes())

    def store(self, target: bytearray) -> None:
        encoded = self.encode()
        if len(target) < self.LEN:
            raise ProgramError(ProgramErrorCode.INVALID_ACCOUNT_DATA, "mint buffer too small")
        target[:self.LEN] = encoded
