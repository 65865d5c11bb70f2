"""
Tests for the flash-loan program and its sibling-instruction checks
"""

import hashlib

import pytest
from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from core_custody import flash_loan, system_program, token_program
from core_custody.codec import U64_MAX
from core_custody.config import CustodyConfig
from core_custody.derivation import associated_token_address
from core_custody.errors import (
    CustodyError, FlashLoanError, ProgramError, TokenError, TransactionError
)
from core_custody.ledger import Ledger


SOL = 1_000_000_000
VAULT_BALANCE = 10_000_000
BORROWER_BALANCE = 100_000


def replace_account(ix, index, pubkey):
    metas = list(ix.accounts)
    old = metas[index]
    metas[index] = AccountMeta(pubkey, old.is_signer, old.is_writable)
    return Instruction(ix.program_id, bytes(ix.data), metas)


class TestRepayAmount:
    """Test fee arithmetic"""

    def test_fee_is_five_percent(self):
        assert flash_loan.repay_amount(1_000_000) == 1_050_000
        assert flash_loan.repay_amount(19) == 19
        assert flash_loan.repay_amount(20) == 21

    def test_overflow(self):
        with pytest.raises(ProgramError) as exc_info:
            flash_loan.repay_amount(U64_MAX)
        assert exc_info.value.code == FlashLoanError.OVERFLOW

    def test_discriminators(self):
        assert flash_loan.BORROW_DISCRIMINATOR == hashlib.sha256(b"global:borrow").digest()[:8]
        assert flash_loan.REPAY_DISCRIMINATOR == hashlib.sha256(b"global:repay").digest()[:8]

    def test_instruction_data(self):
        mint = Pubkey.new_unique()
        borrower = Pubkey.new_unique()
        ix = flash_loan.borrow(borrower, mint, 5)
        assert bytes(ix.data) == flash_loan.BORROW_DISCRIMINATOR + (5).to_bytes(8, "little")
        assert bytes(flash_loan.repay(borrower, mint).data) == flash_loan.REPAY_DISCRIMINATOR


class TestFlashLoan:
    """Test borrow/repay transactions"""

    def setup_method(self):
        self.ledger = Ledger(config=CustodyConfig())
        self.ledger.register_program(flash_loan.PROGRAM_ID, flash_loan.process_instruction)

        self.mint = Pubkey.new_unique()
        self.ledger.create_mint(self.mint, Pubkey.new_unique())
        self.protocol = flash_loan.protocol_authority().address
        self.protocol_ata = self.ledger.create_token_account(self.protocol, self.mint, VAULT_BALANCE)

        self.borrower = Pubkey.new_unique()
        self.ledger.airdrop(self.borrower, SOL)
        self.borrower_ata = self.ledger.create_token_account(self.borrower, self.mint, BORROWER_BALANCE)

    def borrow_ix(self, amount):
        return flash_loan.borrow(self.borrower, self.mint, amount)

    def repay_ix(self):
        return flash_loan.repay(self.borrower, self.mint)

    def run(self, instructions, signers=None):
        return self.ledger.process_transaction(instructions, signers=signers or [self.borrower])

    def assert_untouched(self):
        assert self.ledger.token_balance(self.protocol_ata) == VAULT_BALANCE
        assert self.ledger.token_balance(self.borrower_ata) == BORROWER_BALANCE

    def test_borrow_and_repay(self):
        self.run([self.borrow_ix(1_000_000), self.repay_ix()])

        assert self.ledger.token_balance(self.protocol_ata) == VAULT_BALANCE + 50_000
        assert self.ledger.token_balance(self.borrower_ata) == BORROWER_BALANCE - 50_000

    def test_borrower_account_created_on_demand(self):
        newcomer = Pubkey.new_unique()
        funder = Pubkey.new_unique()
        self.ledger.airdrop(newcomer, SOL)
        funder_ata = self.ledger.create_token_account(funder, self.mint, 10_000)
        newcomer_ata = associated_token_address(newcomer, self.mint)

        self.run([
            flash_loan.borrow(newcomer, self.mint, 100_000),
            token_program.transfer(funder_ata, newcomer_ata, funder, 5_000),
            flash_loan.repay(newcomer, self.mint),
        ], signers=[newcomer, funder])

        assert self.ledger.token_balance(newcomer_ata) == 0
        assert self.ledger.token_balance(self.protocol_ata) == VAULT_BALANCE + 5_000

    def test_missing_repay(self):
        with pytest.raises(TransactionError) as exc_info:
            self.run([self.borrow_ix(1_000)])
        assert exc_info.value.code == FlashLoanError.MISSING_REPAY_IX
        self.assert_untouched()

    def test_last_instruction_other_program(self):
        with pytest.raises(TransactionError) as exc_info:
            self.run([
                self.borrow_ix(1_000),
                self.repay_ix(),
                system_program.transfer(self.borrower, Pubkey.new_unique(), 1),
            ])
        assert exc_info.value.code == FlashLoanError.INVALID_PROGRAM
        assert exc_info.value.instruction_index == 0

    def test_last_instruction_not_repay(self):
        with pytest.raises(TransactionError) as exc_info:
            self.run([self.borrow_ix(1_000), self.borrow_ix(1_000)])
        assert exc_info.value.code == FlashLoanError.INVALID_IX

    def test_repay_to_other_borrower_account(self):
        with pytest.raises(TransactionError) as exc_info:
            self.run([self.borrow_ix(1_000), replace_account(self.repay_ix(), 3, Pubkey.new_unique())])
        assert exc_info.value.code == FlashLoanError.INVALID_BORROWER_ATA
        self.assert_untouched()

    def test_repay_to_other_protocol_account(self):
        with pytest.raises(TransactionError) as exc_info:
            self.run([self.borrow_ix(1_000), replace_account(self.repay_ix(), 4, Pubkey.new_unique())])
        assert exc_info.value.code == FlashLoanError.INVALID_PROTOCOL_ATA

    def test_zero_amount(self):
        with pytest.raises(TransactionError) as exc_info:
            self.run([self.borrow_ix(0), self.repay_ix()])
        assert exc_info.value.code == FlashLoanError.INVALID_AMOUNT

    def test_more_than_vault_holds(self):
        with pytest.raises(TransactionError) as exc_info:
            self.run([self.borrow_ix(VAULT_BALANCE + 1), self.repay_ix()])
        assert exc_info.value.code == FlashLoanError.NOT_ENOUGH_FUNDS

    def test_repay_alone(self):
        with pytest.raises(TransactionError) as exc_info:
            self.run([self.repay_ix()])
        assert exc_info.value.code == FlashLoanError.INVALID_INSTRUCTION_INDEX

    def test_repay_without_borrow_first(self):
        with pytest.raises(TransactionError) as exc_info:
            self.run([system_program.transfer(self.borrower, Pubkey.new_unique(), 1), self.repay_ix()])
        assert exc_info.value.code == FlashLoanError.PROGRAM_MISMATCH
        assert exc_info.value.instruction_index == 1

    def test_back_to_back_repays(self):
        with pytest.raises(TransactionError) as exc_info:
            self.run([self.repay_ix(), self.repay_ix()])
        assert exc_info.value.code == FlashLoanError.INVALID_INSTRUCTION_INDEX

    def test_second_borrow_is_rejected(self):
        # Repay only prices the borrow at index 0; a later borrow would go unpaid
        with pytest.raises(TransactionError) as exc_info:
            self.run([self.borrow_ix(1), self.borrow_ix(9_000_000), self.repay_ix()])
        assert exc_info.value.code == FlashLoanError.INVALID_INSTRUCTION_INDEX
        assert exc_info.value.instruction_index == 1
        self.assert_untouched()

    def test_borrow_after_other_instruction_is_rejected(self):
        with pytest.raises(TransactionError) as exc_info:
            self.run([
                system_program.transfer(self.borrower, Pubkey.new_unique(), 1),
                self.borrow_ix(1_000),
                self.repay_ix(),
            ])
        assert exc_info.value.code == FlashLoanError.INVALID_INSTRUCTION_INDEX
        self.assert_untouched()

    def test_unpaid_fee_rolls_back_the_loan(self):
        with pytest.raises(TransactionError) as exc_info:
            self.run([self.borrow_ix(3_000_000), self.repay_ix()])
        assert exc_info.value.code == TokenError.INSUFFICIENT_FUNDS
        assert exc_info.value.instruction_index == 1
        self.assert_untouched()

    def test_wrong_instructions_sysvar(self):
        ix = replace_account(self.borrow_ix(1_000), 5, Pubkey.new_unique())
        with pytest.raises(TransactionError) as exc_info:
            self.run([ix, self.repay_ix()])
        assert exc_info.value.code == CustodyError.INVALID_ADDRESS

    def test_wrong_protocol_authority(self):
        ix = replace_account(self.borrow_ix(1_000), 1, Pubkey.new_unique())
        with pytest.raises(TransactionError) as exc_info:
            self.run([ix, self.repay_ix()])
        assert exc_info.value.code == CustodyError.INVALID_PDA

    def test_borrower_must_sign(self):
        with pytest.raises(TransactionError):
            self.ledger.process_transaction([self.borrow_ix(1_000), self.repay_ix()])
