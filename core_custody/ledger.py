"""
Ledger Runtime Module

In-process host ledger: executes transactions of instructions against the
account store with all-or-nothing semantics, routes cross-program
invocations and verifies program-derived signing proofs. Accounts are loaded
into a per-transaction working set; the store is only written when every
instruction succeeded, so an aborted transaction leaves no trace.
"""

import hashlib
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set

from solders.instruction import Instruction
from solders.pubkey import Pubkey

from .audit import AuditTrail, AuditEventType
from .codec import Mint, TokenAccount
from .config import CustodyConfig, get_config
from .derivation import (
    ASSOCIATED_TOKEN_PROGRAM_ID, INSTRUCTIONS_SYSVAR_ID, NATIVE_LOADER_ID, SYSTEM_PROGRAM_ID,
    SYSVAR_PROGRAM_ID, TOKEN_2022_PROGRAM_ID, TOKEN_PROGRAM_ID,
    SignerSeeds, associated_token_address, create_program_address
)
from .errors import ProgramError, ProgramErrorCode, TransactionError
from .logging_config import get_logger, log_action
from .storage import Account, AccountInfo, AccountStoreInterface, InMemoryAccountStore
from .sysvars import Clock, Rent, serialize_instructions


Processor = Callable[['InvocationContext', List[AccountInfo], bytes], None]


@dataclass(frozen=True)
class AccountSnapshot:
    """Account state a program started from, plus whether it may write it"""
    owner: Pubkey
    lamports: int
    data: bytes
    is_writable: bool


@dataclass
class TransactionReceipt:
    """Result of a committed transaction"""
    transaction_id: str
    slot: int
    instruction_count: int
    committed_at: datetime
    closed_accounts: List[Pubkey] = field(default_factory=list)


class InvocationContext:
    """
    Everything a program may touch while processing one instruction: its
    own id, the clock and rent sysvars, and the ability to invoke another
    program.
    """

    def __init__(self, ledger: 'Ledger', program_id: Pubkey, accounts: List[AccountInfo],
                 working_set: Dict[Pubkey, Account], depth: int, transaction_id: str):
        self.ledger = ledger
        self.program_id = program_id
        self.accounts = accounts
        self.depth = depth
        self.transaction_id = transaction_id
        self._working_set = working_set
        self._snapshots = self._capture()

    def _capture(self) -> Dict[Pubkey, AccountSnapshot]:
        snapshots: Dict[Pubkey, AccountSnapshot] = {}
        for info in self.accounts:
            previous = snapshots.get(info.key)
            snapshots[info.key] = AccountSnapshot(
                owner=info.owner,
                lamports=info.lamports,
                data=bytes(info.data),
                is_writable=info.is_writable or (previous is not None and previous.is_writable)
            )
        return snapshots

    def verify_account_changes(self) -> None:
        """
        Check every change this program made since its accounts were last
        captured. Only the owning program may modify data, debit lamports or
        reassign an account, and only through a writable reference; anyone
        may credit a writable account.

        Raises:
            ProgramError: naming the first rule broken
        """
        for info in self.accounts:
            before = self._snapshots[info.key]
            owner_changed = info.owner != before.owner
            data_changed = bytes(info.data) != before.data
            lamports_changed = info.lamports != before.lamports
            if not (owner_changed or data_changed or lamports_changed):
                continue

            if owner_changed and (before.owner != self.program_id or not before.is_writable
                                  or any(info.data)):
                code = ProgramErrorCode.MODIFIED_PROGRAM_ID
            elif data_changed and not before.is_writable:
                code = ProgramErrorCode.READONLY_DATA_MODIFIED
            elif data_changed and before.owner != self.program_id:
                code = ProgramErrorCode.EXTERNAL_ACCOUNT_DATA_MODIFIED
            elif lamports_changed and not before.is_writable:
                code = ProgramErrorCode.READONLY_LAMPORT_CHANGE
            elif info.lamports < before.lamports and before.owner != self.program_id:
                code = ProgramErrorCode.EXTERNAL_ACCOUNT_LAMPORT_SPEND
            else:
                continue

            log_action(
                self.ledger.logger, "warning", "Illegal account modification",
                action="verify_account_changes", account=str(info.key),
                program_id=str(self.program_id), transaction_id=self.transaction_id,
                extra={"code": code.code}
            )
            raise ProgramError(code, f"{self.program_id} may not modify {info.key} this way")

    @property
    def clock(self) -> Clock:
        return self.ledger.clock

    @property
    def rent(self) -> Rent:
        return self.ledger.rent

    def invoke(self, instruction: Instruction, signer_seeds: Sequence[SignerSeeds] = ()) -> None:
        """
        Cross-program invocation.

        A callee account flagged as signer must either be a signer of this
        instruction or the address one of `signer_seeds` derives under this
        program's id.

        A callee account flagged as writable must be writable here too.

        Raises:
            ProgramError(MISSING_REQUIRED_SIGNATURE): signer privilege escalation
            ProgramError(PRIVILEGE_ESCALATION): writable privilege escalation
            ProgramError(CALL_DEPTH): invocation nested too deeply
        """
        if self.depth + 1 > self.ledger.config.max_invoke_depth:
            raise ProgramError(ProgramErrorCode.CALL_DEPTH)

        caller_signers = {info.key for info in self.accounts if info.is_signer}
        for seeds in signer_seeds:
            if seeds.program_id != self.program_id:
                raise ProgramError(
                    ProgramErrorCode.MISSING_REQUIRED_SIGNATURE,
                    "signer seeds belong to another program"
                )
            caller_signers.add(create_program_address(seeds.seeds, self.program_id))

        for meta in instruction.accounts:
            if meta.is_signer and meta.pubkey not in caller_signers:
                raise ProgramError(
                    ProgramErrorCode.MISSING_REQUIRED_SIGNATURE,
                    f"{meta.pubkey} must sign {instruction.program_id}"
                )

        caller_writable = {info.key for info in self.accounts if info.is_writable}
        for meta in instruction.accounts:
            if meta.is_writable and meta.pubkey not in caller_writable:
                raise ProgramError(
                    ProgramErrorCode.PRIVILEGE_ESCALATION,
                    f"{meta.pubkey} is not writable in {self.program_id}"
                )

        # The callee starts from whatever this program has written so far
        self.verify_account_changes()
        self.ledger._execute_instruction(
            instruction, self._working_set, self.depth + 1, self.transaction_id
        )
        self._snapshots = self._capture()


class Ledger:
    """
    Host ledger simulation with atomic transactions
    """

    def __init__(
        self,
        store: Optional[AccountStoreInterface] = None,
        config: Optional[CustodyConfig] = None,
        audit_trail: Optional[AuditTrail] = None
    ):
        self.config = config or get_config()
        self.store = store or InMemoryAccountStore()
        self.audit_trail = audit_trail if audit_trail is not None else AuditTrail()
        self.logger = get_logger("custody.ledger")
        self.rent = Rent(
            lamports_per_byte_year=self.config.rent_lamports_per_byte_year,
            exemption_threshold=self.config.rent_exemption_threshold,
            storage_overhead=self.config.account_storage_overhead
        )
        self.clock = Clock(
            slot=self.config.genesis_slot,
            unix_timestamp=self.config.genesis_unix_timestamp
        )
        self._programs: Dict[Pubkey, Processor] = {}
        self._transaction_counter = 0

        # Built-in programs; imported here since they build on this module's context
        from .system_program import process_system_instruction
        from .token_program import process_token_instruction, process_associated_token_instruction

        self.register_program(SYSTEM_PROGRAM_ID, process_system_instruction)
        self.register_program(TOKEN_PROGRAM_ID, process_token_instruction)
        self.register_program(TOKEN_2022_PROGRAM_ID, process_token_instruction)
        self.register_program(ASSOCIATED_TOKEN_PROGRAM_ID, process_associated_token_instruction)

    # ------------------------------------------------------------------
    # Genesis and inspection helpers
    # ------------------------------------------------------------------

    def register_program(self, program_id: Pubkey, processor: Processor) -> None:
        """Deploy a program under `program_id`"""
        self._programs[program_id] = processor
        self.store.save(program_id, Account(lamports=1, owner=NATIVE_LOADER_ID, executable=True))
        if self.config.enable_audit_logging:
            self.audit_trail.log_event(
                AuditEventType.PROGRAM_REGISTERED, str(program_id),
                metadata={"processor": getattr(processor, "__name__", repr(processor))}
            )

    def airdrop(self, key: Pubkey, lamports: int) -> None:
        """Credit lamports to a system-owned account, creating it if needed"""
        if lamports <= 0:
            raise ValueError("Airdrop amount must be positive")
        account = self.store.load(key) or Account()
        account.lamports += lamports
        self.store.save(key, account)

    def set_account(self, key: Pubkey, account: Account) -> None:
        """Write an account directly (genesis state and tests)"""
        self.store.save(key, account)

    def get_account(self, key: Pubkey) -> Optional[Account]:
        return self.store.load(key)

    def account_exists(self, key: Pubkey) -> bool:
        return self.store.exists(key)

    def create_mint(
        self,
        mint: Pubkey,
        authority: Pubkey,
        decimals: int = 6,
        token_program_id: Pubkey = TOKEN_PROGRAM_ID
    ) -> None:
        """Write an initialized, zero-supply mint (genesis state and tests)"""
        data = bytearray(Mint.LEN)
        Mint(mint_authority=authority, supply=0, decimals=decimals, is_initialized=True).store(data)
        self.store.save(mint, Account(
            lamports=self.rent.minimum_balance(Mint.LEN),
            data=data,
            owner=token_program_id
        ))

    def create_token_account(
        self,
        owner: Pubkey,
        mint: Pubkey,
        amount: int = 0,
        address: Optional[Pubkey] = None
    ) -> Pubkey:
        """
        Write an initialized token account holding `amount` and raise the
        mint's supply to match (genesis state and tests)

        Args:
            owner: Token account authority
            mint: Existing mint
            amount: Initial balance
            address: Account address; the associated address when omitted

        Returns:
            Address of the token account
        """
        mint_account = self.store.load(mint)
        if mint_account is None:
            raise ValueError(f"Mint {mint} does not exist")
        token_program_id = mint_account.owner
        key = address or associated_token_address(owner, mint, token_program_id)

        state = Mint.decode(bytes(mint_account.data))
        state.supply += amount
        state.store(mint_account.data)
        self.store.save(mint, mint_account)

        data = bytearray(TokenAccount.LEN)
        TokenAccount(mint=mint, owner=owner, amount=amount).store(data)
        self.store.save(key, Account(
            lamports=self.rent.minimum_balance(TokenAccount.LEN),
            data=data,
            owner=token_program_id
        ))
        return key

    def token_balance(self, key: Pubkey) -> int:
        """Amount held by a token account (0 if it does not exist)"""
        account = self.store.load(key)
        if account is None or account.owner not in (TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID):
            return 0
        return TokenAccount.decode(bytes(account.data)).amount

    def set_clock(self, unix_timestamp: int, slot: Optional[int] = None) -> None:
        self.clock = Clock(
            slot=self.clock.slot if slot is None else slot,
            unix_timestamp=unix_timestamp
        )

    def advance_clock(self, seconds: int, slots: int = 0) -> None:
        self.set_clock(self.clock.unix_timestamp + seconds, self.clock.slot + slots)

    # ------------------------------------------------------------------
    # Transaction processing
    # ------------------------------------------------------------------

    def _transaction_id(self, instructions: Sequence[Instruction]) -> str:
        self._transaction_counter += 1
        hasher = hashlib.sha256()
        hasher.update(str(self._transaction_counter).encode())
        for ix in instructions:
            hasher.update(bytes(ix.program_id))
            hasher.update(bytes(ix.data))
            for meta in ix.accounts:
                hasher.update(bytes(meta.pubkey))
        return hasher.hexdigest()[:32]

    def _load(self, working_set: Dict[Pubkey, Account], key: Pubkey) -> Account:
        account = working_set.get(key)
        if account is None:
            account = self.store.load(key) or Account()
            working_set[key] = account
        return account

    def _execute_instruction(
        self,
        instruction: Instruction,
        working_set: Dict[Pubkey, Account],
        depth: int,
        transaction_id: str
    ) -> None:
        processor = self._programs.get(instruction.program_id)
        if processor is None:
            raise ProgramError(
                ProgramErrorCode.UNSUPPORTED_PROGRAM_ID,
                f"no program deployed at {instruction.program_id}"
            )

        infos = [
            AccountInfo(
                key=meta.pubkey,
                account=self._load(working_set, meta.pubkey),
                is_signer=meta.is_signer,
                is_writable=meta.is_writable
            )
            for meta in instruction.accounts
        ]
        ctx = InvocationContext(self, instruction.program_id, infos, working_set, depth, transaction_id)
        processor(ctx, infos, bytes(instruction.data))
        ctx.verify_account_changes()

    def process_transaction(
        self,
        instructions: Sequence[Instruction],
        signers: Iterable[Pubkey] = ()
    ) -> TransactionReceipt:
        """
        Execute instructions in order as one atomic unit

        Args:
            instructions: Instructions to execute
            signers: Addresses that signed the transaction

        Returns:
            TransactionReceipt for the committed transaction

        Raises:
            TransactionError: If any instruction fails; nothing is persisted
            ValueError: If the transaction is empty or too long
        """
        if not instructions:
            raise ValueError("Transaction must contain at least one instruction")
        if len(instructions) > self.config.max_instructions_per_transaction:
            raise ValueError(
                f"Transaction exceeds {self.config.max_instructions_per_transaction} instructions"
            )

        transaction_id = self._transaction_id(instructions)
        signer_set: Set[Pubkey] = set(signers)
        working_set: Dict[Pubkey, Account] = {}
        index = 0

        try:
            for index, ix in enumerate(instructions):
                for meta in ix.accounts:
                    if meta.is_signer and meta.pubkey not in signer_set:
                        raise ProgramError(
                            ProgramErrorCode.MISSING_REQUIRED_SIGNATURE,
                            f"{meta.pubkey} did not sign the transaction"
                        )
            index = 0

            sysvar = self._load(working_set, INSTRUCTIONS_SYSVAR_ID)
            sysvar.owner = SYSVAR_PROGRAM_ID
            sysvar.lamports = max(sysvar.lamports, 1)
            for index, ix in enumerate(instructions):
                sysvar.data = bytearray(serialize_instructions(instructions, index))
                log_action(
                    self.logger, "debug", "Executing instruction",
                    action="execute_instruction", program_id=str(ix.program_id),
                    transaction_id=transaction_id, extra={"index": index}
                )
                self._execute_instruction(ix, working_set, 1, transaction_id)
        except ProgramError as e:
            log_action(
                self.logger, "warning", f"Transaction aborted: {e.message}",
                action="abort_transaction", program_id=str(instructions[index].program_id),
                transaction_id=transaction_id,
                extra={"index": index, "code": e.code.code, "category": e.category.value}
            )
            if self.config.enable_audit_logging:
                self.audit_trail.log_event(
                    AuditEventType.TRANSACTION_FAILED, transaction_id,
                    metadata={"index": index, "code": e.code.code, "message": e.message}
                )
            raise TransactionError(e.code, index, instructions[index].program_id, e.message) from e

        closed: List[Pubkey] = []
        with self.store.atomic():
            for key, account in working_set.items():
                if account.exists:
                    self.store.save(key, account)
                elif self.store.delete(key):
                    closed.append(key)

        receipt = TransactionReceipt(
            transaction_id=transaction_id,
            slot=self.clock.slot,
            instruction_count=len(instructions),
            committed_at=datetime.now(timezone.utc),
            closed_accounts=closed
        )
        log_action(
            self.logger, "info", "Transaction committed",
            action="commit_transaction", transaction_id=transaction_id,
            extra={"instructions": len(instructions), "closed_accounts": [str(k) for k in closed]}
        )
        if self.config.enable_audit_logging:
            self.audit_trail.log_event(
                AuditEventType.TRANSACTION_COMMITTED, transaction_id,
                metadata={
                    "instructions": len(instructions),
                    "programs": sorted({str(ix.program_id) for ix in instructions}),
                    "closed_accounts": [str(k) for k in closed]
                }
            )
        return receipt
