"""
Program Error Module

Closed error enumerations for the host runtime, the token program and each
custody program, plus the exceptions that carry them. Every failure is
terminal for the enclosing transaction: the ledger discards all account
mutations the transaction attempted.
"""

from enum import Enum
from typing import Optional

from solders.pubkey import Pubkey


class ErrorCategory(Enum):
    """Coarse classification so callers can tell failures apart"""
    INPUT = "input"          # Amount, slippage, expiration, malformed data
    ACCOUNT = "account"      # Ownership, derivation, signature, layout
    PROTOCOL = "protocol"    # Sibling-instruction or sequencing violations
    RUNTIME = "runtime"      # Host ledger limits


class ProgramErrorCode(Enum):
    """Errors raised by the host runtime and the built-in programs"""
    INVALID_ARGUMENT = ("invalid_argument", ErrorCategory.INPUT)
    INVALID_INSTRUCTION_DATA = ("invalid_instruction_data", ErrorCategory.INPUT)
    INVALID_ACCOUNT_DATA = ("invalid_account_data", ErrorCategory.ACCOUNT)
    INVALID_ACCOUNT_OWNER = ("invalid_account_owner", ErrorCategory.ACCOUNT)
    NOT_ENOUGH_ACCOUNT_KEYS = ("not_enough_account_keys", ErrorCategory.ACCOUNT)
    MISSING_REQUIRED_SIGNATURE = ("missing_required_signature", ErrorCategory.ACCOUNT)
    ACCOUNT_ALREADY_IN_USE = ("account_already_in_use", ErrorCategory.ACCOUNT)
    INSUFFICIENT_FUNDS = ("insufficient_funds", ErrorCategory.INPUT)
    INVALID_SEEDS = ("invalid_seeds", ErrorCategory.ACCOUNT)
    UNSUPPORTED_SYSVAR = ("unsupported_sysvar", ErrorCategory.ACCOUNT)
    UNSUPPORTED_PROGRAM_ID = ("unsupported_program_id", ErrorCategory.ACCOUNT)
    ARITHMETIC_OVERFLOW = ("arithmetic_overflow", ErrorCategory.INPUT)
    CALL_DEPTH = ("call_depth", ErrorCategory.RUNTIME)
    PRIVILEGE_ESCALATION = ("privilege_escalation", ErrorCategory.ACCOUNT)
    READONLY_DATA_MODIFIED = ("readonly_data_modified", ErrorCategory.ACCOUNT)
    READONLY_LAMPORT_CHANGE = ("readonly_lamport_change", ErrorCategory.ACCOUNT)
    EXTERNAL_ACCOUNT_DATA_MODIFIED = ("external_account_data_modified", ErrorCategory.ACCOUNT)
    EXTERNAL_ACCOUNT_LAMPORT_SPEND = ("external_account_lamport_spend", ErrorCategory.ACCOUNT)
    MODIFIED_PROGRAM_ID = ("modified_program_id", ErrorCategory.ACCOUNT)

    def __init__(self, code: str, category: ErrorCategory):
        self.code = code
        self.category = category


class TokenError(Enum):
    """Errors raised by the token program"""
    INSUFFICIENT_FUNDS = ("token_insufficient_funds", ErrorCategory.INPUT)
    MINT_MISMATCH = ("token_mint_mismatch", ErrorCategory.ACCOUNT)
    OWNER_MISMATCH = ("token_owner_mismatch", ErrorCategory.ACCOUNT)
    NON_NATIVE_HAS_BALANCE = ("token_non_native_has_balance", ErrorCategory.INPUT)
    ALREADY_IN_USE = ("token_already_in_use", ErrorCategory.ACCOUNT)
    UNINITIALIZED_STATE = ("token_uninitialized_state", ErrorCategory.ACCOUNT)
    ACCOUNT_FROZEN = ("token_account_frozen", ErrorCategory.ACCOUNT)
    OVERFLOW = ("token_overflow", ErrorCategory.INPUT)

    def __init__(self, code: str, category: ErrorCategory):
        self.code = code
        self.category = category


class CustodyError(Enum):
    """Account validation failures shared by every custody program"""
    INVALID_OWNER = ("invalid_owner", ErrorCategory.ACCOUNT)
    UNINITIALIZED_ACCOUNT = ("uninitialized_account", ErrorCategory.ACCOUNT)
    MINT_CHECK_FAILED = ("mint_check_failed", ErrorCategory.ACCOUNT)
    INVALID_PDA = ("invalid_pda", ErrorCategory.ACCOUNT)
    INVALID_ADDRESS = ("invalid_address", ErrorCategory.ACCOUNT)

    def __init__(self, code: str, category: ErrorCategory):
        self.code = code
        self.category = category


class AmmError(Enum):
    """Constant-product pool failures"""
    INVALID_STATE = ("pool_invalid_state", ErrorCategory.ACCOUNT)
    INVALID_FEE = ("pool_invalid_fee", ErrorCategory.INPUT)
    INVALID_VAULT = ("pool_invalid_vault", ErrorCategory.ACCOUNT)
    INVALID_LP_MINT = ("pool_invalid_lp_mint", ErrorCategory.ACCOUNT)
    INVALID_AMOUNT = ("pool_invalid_amount", ErrorCategory.INPUT)
    EXPIRED = ("pool_expired", ErrorCategory.INPUT)
    SLIPPAGE_EXCEEDED = ("pool_slippage_exceeded", ErrorCategory.INPUT)
    ZERO_BALANCE = ("pool_zero_balance", ErrorCategory.INPUT)
    CURVE_ERROR = ("pool_curve_error", ErrorCategory.INPUT)

    def __init__(self, code: str, category: ErrorCategory):
        self.code = code
        self.category = category


class FlashLoanError(Enum):
    """Flash-loan protocol failures"""
    INVALID_IX = ("invalid_ix", ErrorCategory.PROTOCOL)
    INVALID_INSTRUCTION_INDEX = ("invalid_instruction_index", ErrorCategory.PROTOCOL)
    INVALID_AMOUNT = ("invalid_amount", ErrorCategory.INPUT)
    NOT_ENOUGH_FUNDS = ("not_enough_funds", ErrorCategory.INPUT)
    PROGRAM_MISMATCH = ("program_mismatch", ErrorCategory.PROTOCOL)
    INVALID_PROGRAM = ("invalid_program", ErrorCategory.PROTOCOL)
    INVALID_BORROWER_ATA = ("invalid_borrower_ata", ErrorCategory.PROTOCOL)
    INVALID_PROTOCOL_ATA = ("invalid_protocol_ata", ErrorCategory.PROTOCOL)
    MISSING_REPAY_IX = ("missing_repay_ix", ErrorCategory.PROTOCOL)
    MISSING_BORROW_IX = ("missing_borrow_ix", ErrorCategory.PROTOCOL)
    OVERFLOW = ("overflow", ErrorCategory.INPUT)

    def __init__(self, code: str, category: ErrorCategory):
        self.code = code
        self.category = category


class ProgramError(Exception):
    """
    Raised by a program (or the runtime on its behalf) to abort the
    current instruction. `code` is a member of one of the closed
    enumerations above.
    """

    def __init__(self, code: Enum, message: Optional[str] = None):
        self.code = code
        self.message = message or code.code
        super().__init__(self.message)

    @property
    def category(self) -> ErrorCategory:
        return self.code.category

    def __repr__(self) -> str:
        return f"ProgramError({self.code.name}: {self.message})"


class TransactionError(Exception):
    """
    Raised by the ledger when a transaction aborts. No account change made
    by any of its instructions has been persisted.
    """

    def __init__(
        self,
        code: Enum,
        instruction_index: int,
        program_id: Optional[Pubkey] = None,
        message: Optional[str] = None
    ):
        self.code = code
        self.instruction_index = instruction_index
        self.program_id = program_id
        self.message = message or code.code
        super().__init__(
            f"Transaction failed at instruction {instruction_index}: {self.message}"
        )

    @property
    def category(self) -> ErrorCategory:
        return self.code.category
