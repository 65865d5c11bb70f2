"""
Authority Derivation Module

Program-derived addresses: deterministic, keyless addresses computed from a
domain tag, structural seeds and a one-byte bump under a program id. The
`SignerSeeds` proof lets the deriving program authorize transfers from such
an address during a cross-program invocation. Nothing here caches: every
caller re-derives from first principles on every use.
"""

import hashlib
from dataclasses import dataclass
from typing import Sequence, Tuple

from solders.pubkey import Pubkey

from .errors import ProgramError, ProgramErrorCode


# Well-known program and sysvar addresses of the host ledger
SYSTEM_PROGRAM_ID = Pubkey.from_string("11111111111111111111111111111111")
TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
TOKEN_2022_PROGRAM_ID = Pubkey.from_string("TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb")
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL")
SYSVAR_PROGRAM_ID = Pubkey.from_string("Sysvar1111111111111111111111111111111111111")
NATIVE_LOADER_ID = Pubkey.from_string("NativeLoader1111111111111111111111111111111")
INSTRUCTIONS_SYSVAR_ID = Pubkey.from_string("Sysvar1nstructions1111111111111111111111111")

TOKEN_PROGRAM_IDS = (TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID)

PDA_MARKER = b"ProgramDerivedAddress"
MAX_SEEDS = 16
MAX_SEED_LEN = 32


@dataclass(frozen=True)
class SignerSeeds:
    """
    Signing proof for a program-derived address: the full seed list
    (bump included) and the program it was derived under.
    """
    program_id: Pubkey
    seeds: Tuple[bytes, ...]
    address: Pubkey

    @property
    def bump(self) -> int:
        return self.seeds[-1][0]


def _check_seeds(seeds: Sequence[bytes]) -> None:
    if len(seeds) > MAX_SEEDS:
        raise ProgramError(ProgramErrorCode.INVALID_SEEDS, f"too many seeds ({len(seeds)})")
    for seed in seeds:
        if len(seed) > MAX_SEED_LEN:
            raise ProgramError(ProgramErrorCode.INVALID_SEEDS, f"seed longer than {MAX_SEED_LEN} bytes")


def create_program_address(seeds: Sequence[bytes], program_id: Pubkey) -> Pubkey:
    """
    Hash an exact seed list (bump included) into an address.

    Raises:
        ProgramError(INVALID_SEEDS): seeds too long, or the hash lands on
            the ed25519 curve and therefore could have a private key
    """
    _check_seeds(seeds)
    hasher = hashlib.sha256()
    for seed in seeds:
        hasher.update(bytes(seed))
    hasher.update(bytes(program_id))
    hasher.update(PDA_MARKER)
    candidate = Pubkey.from_bytes(hasher.digest())
    if candidate.is_on_curve():
        raise ProgramError(ProgramErrorCode.INVALID_SEEDS, "derived address is on curve")
    return candidate


def find_program_address(seeds: Sequence[bytes], program_id: Pubkey) -> Tuple[Pubkey, int]:
    """Search bumps from 255 down for the canonical off-curve address"""
    _check_seeds(list(seeds) + [b"\x00"])
    return Pubkey.find_program_address([bytes(seed) for seed in seeds], program_id)


def derive_authority(tag: bytes, *seeds: bytes, program_id: Pubkey) -> SignerSeeds:
    """
    Derive a vault authority with its canonical bump.

    Args:
        tag: Domain-separating tag (e.g. b"escrow")
        seeds: Structural seeds, in order
        program_id: Deriving program

    Returns:
        SignerSeeds whose seed list ends with the bump byte
    """
    base = (tag,) + tuple(seeds)
    address, bump = find_program_address(base, program_id)
    return SignerSeeds(program_id=program_id, seeds=base + (bytes([bump]),), address=address)


def authority_from_bump(tag: bytes, *seeds: bytes, bump: int, program_id: Pubkey) -> SignerSeeds:
    """Re-derive a vault authority from a stored bump"""
    if not 0 <= bump <= 255:
        raise ProgramError(ProgramErrorCode.INVALID_SEEDS, f"bump {bump} out of range")
    full = (tag,) + tuple(seeds) + (bytes([bump]),)
    address = create_program_address(full, program_id)
    return SignerSeeds(program_id=program_id, seeds=full, address=address)


def associated_token_address(
    owner: Pubkey,
    mint: Pubkey,
    token_program_id: Pubkey = TOKEN_PROGRAM_ID
) -> Pubkey:
    """Deterministic token-account address for (owner authority, mint)"""
    address, _ = find_program_address(
        [bytes(owner), bytes(token_program_id), bytes(mint)],
        ASSOCIATED_TOKEN_PROGRAM_ID
    )
    return address
