"""
Tests for the token program and associated token accounts
"""

import pytest
from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from core_custody.codec import Mint, TokenAccount
from core_custody.config import CustodyConfig
from core_custody.derivation import TOKEN_2022_PROGRAM_ID, TOKEN_PROGRAM_ID, associated_token_address
from core_custody.errors import ProgramErrorCode, TokenError, TransactionError
from core_custody.ledger import Ledger
from core_custody import system_program, token_program


SOL = 1_000_000_000


class TestTokenTransfers:
    """Test transfer, mint-to and burn"""

    def setup_method(self):
        self.ledger = Ledger(config=CustodyConfig())
        self.alice = Pubkey.new_unique()
        self.bob = Pubkey.new_unique()
        self.authority = Pubkey.new_unique()
        self.mint = Pubkey.new_unique()
        self.ledger.airdrop(self.alice, SOL)
        self.ledger.create_mint(self.mint, self.authority)
        self.alice_ata = self.ledger.create_token_account(self.alice, self.mint, 1_000)
        self.bob_ata = self.ledger.create_token_account(self.bob, self.mint)

    def supply(self):
        return Mint.decode(bytes(self.ledger.get_account(self.mint).data)).supply

    def test_transfer(self):
        self.ledger.process_transaction(
            [token_program.transfer(self.alice_ata, self.bob_ata, self.alice, 400)],
            signers=[self.alice]
        )
        assert self.ledger.token_balance(self.alice_ata) == 600
        assert self.ledger.token_balance(self.bob_ata) == 400

    def test_transfer_more_than_balance(self):
        with pytest.raises(TransactionError) as exc_info:
            self.ledger.process_transaction(
                [token_program.transfer(self.alice_ata, self.bob_ata, self.alice, 1_001)],
                signers=[self.alice]
            )
        assert exc_info.value.code == TokenError.INSUFFICIENT_FUNDS

    def test_transfer_by_non_owner(self):
        with pytest.raises(TransactionError) as exc_info:
            self.ledger.process_transaction(
                [token_program.transfer(self.alice_ata, self.bob_ata, self.bob, 1)],
                signers=[self.bob]
            )
        assert exc_info.value.code == TokenError.OWNER_MISMATCH

    def test_transfer_across_mints(self):
        other_mint = Pubkey.new_unique()
        self.ledger.create_mint(other_mint, self.authority)
        other_ata = self.ledger.create_token_account(self.bob, other_mint)

        with pytest.raises(TransactionError) as exc_info:
            self.ledger.process_transaction(
                [token_program.transfer(self.alice_ata, other_ata, self.alice, 1)],
                signers=[self.alice]
            )
        assert exc_info.value.code == TokenError.MINT_MISMATCH

    def test_transfer_to_self_is_noop(self):
        self.ledger.process_transaction(
            [token_program.transfer(self.alice_ata, self.alice_ata, self.alice, 1_000)],
            signers=[self.alice]
        )
        assert self.ledger.token_balance(self.alice_ata) == 1_000

    def test_mint_to_raises_supply(self):
        self.ledger.process_transaction(
            [token_program.mint_to(self.mint, self.bob_ata, self.authority, 250)],
            signers=[self.authority]
        )
        assert self.ledger.token_balance(self.bob_ata) == 250
        assert self.supply() == 1_250

    def test_mint_to_requires_mint_authority(self):
        with pytest.raises(TransactionError) as exc_info:
            self.ledger.process_transaction(
                [token_program.mint_to(self.mint, self.bob_ata, self.alice, 250)],
                signers=[self.alice]
            )
        assert exc_info.value.code == TokenError.OWNER_MISMATCH

    def test_burn_lowers_supply(self):
        self.ledger.process_transaction(
            [token_program.burn(self.alice_ata, self.mint, self.alice, 300)],
            signers=[self.alice]
        )
        assert self.ledger.token_balance(self.alice_ata) == 700
        assert self.supply() == 700


class TestCloseAccount:
    """Test closing token accounts"""

    def setup_method(self):
        self.ledger = Ledger(config=CustodyConfig())
        self.owner = Pubkey.new_unique()
        self.mint = Pubkey.new_unique()
        self.ledger.airdrop(self.owner, SOL)
        self.ledger.create_mint(self.mint, Pubkey.new_unique())

    def test_close_with_balance_fails(self):
        ata = self.ledger.create_token_account(self.owner, self.mint, 5)
        with pytest.raises(TransactionError) as exc_info:
            self.ledger.process_transaction(
                [token_program.close_account(ata, self.owner, self.owner)], signers=[self.owner]
            )
        assert exc_info.value.code == TokenError.NON_NATIVE_HAS_BALANCE

    def test_close_returns_rent(self):
        ata = self.ledger.create_token_account(self.owner, self.mint)
        rent = self.ledger.get_account(ata).lamports

        receipt = self.ledger.process_transaction(
            [token_program.close_account(ata, self.owner, self.owner)], signers=[self.owner]
        )

        assert not self.ledger.account_exists(ata)
        assert ata in receipt.closed_accounts
        assert self.ledger.get_account(self.owner).lamports == SOL + rent


class TestAssociatedTokenAccounts:
    """Test the associated token account program"""

    def setup_method(self):
        self.ledger = Ledger(config=CustodyConfig())
        self.payer = Pubkey.new_unique()
        self.wallet = Pubkey.new_unique()
        self.mint = Pubkey.new_unique()
        self.ledger.airdrop(self.payer, SOL)
        self.ledger.create_mint(self.mint, Pubkey.new_unique())

    def create(self, idempotent=False, token_program_id=TOKEN_PROGRAM_ID):
        ix = token_program.create_associated_token_account(
            self.payer, self.wallet, self.mint, token_program_id, idempotent=idempotent
        )
        return self.ledger.process_transaction([ix], signers=[self.payer])

    def test_create(self):
        self.create()

        ata = associated_token_address(self.wallet, self.mint)
        account = self.ledger.get_account(ata)
        assert account.owner == TOKEN_PROGRAM_ID
        assert account.lamports == self.ledger.rent.minimum_balance(TokenAccount.LEN)
        state = TokenAccount.decode(bytes(account.data))
        assert state.owner == self.wallet
        assert state.mint == self.mint
        assert self.ledger.get_account(self.payer).lamports == SOL - account.lamports

    def test_create_twice_fails(self):
        self.create()
        with pytest.raises(TransactionError) as exc_info:
            self.create()
        assert exc_info.value.code == ProgramErrorCode.ACCOUNT_ALREADY_IN_USE

    def test_idempotent_create(self):
        self.create()
        self.create(idempotent=True)
        assert self.ledger.token_balance(associated_token_address(self.wallet, self.mint)) == 0

    def test_wrong_address_is_rejected(self):
        ix = token_program.create_associated_token_account(self.payer, self.wallet, self.mint)
        metas = list(ix.accounts)
        metas[1] = AccountMeta(Pubkey.new_unique(), False, True)
        forged = Instruction(ix.program_id, bytes(ix.data), metas)

        with pytest.raises(TransactionError) as exc_info:
            self.ledger.process_transaction([forged], signers=[self.payer])
        assert exc_info.value.code == ProgramErrorCode.INVALID_SEEDS

    def test_mint_must_belong_to_token_program(self):
        with pytest.raises(TransactionError) as exc_info:
            self.create(token_program_id=TOKEN_2022_PROGRAM_ID)
        assert exc_info.value.code == ProgramErrorCode.INVALID_ACCOUNT_OWNER


class TestMintInitialization:
    """Test creating a mint from scratch"""

    def test_create_and_initialize_mint(self):
        ledger = Ledger(config=CustodyConfig())
        payer, mint, authority = Pubkey.new_unique(), Pubkey.new_unique(), Pubkey.new_unique()
        ledger.airdrop(payer, SOL)

        ledger.process_transaction([
            system_program.create_account(
                payer, mint, ledger.rent.minimum_balance(Mint.LEN), Mint.LEN, TOKEN_PROGRAM_ID
            ),
            token_program.initialize_mint2(mint, 9, authority),
        ], signers=[payer, mint])

        state = Mint.decode(bytes(ledger.get_account(mint).data))
        assert state.is_initialized
        assert state.decimals == 9
        assert state.mint_authority == authority

        with pytest.raises(TransactionError) as exc_info:
            ledger.process_transaction([token_program.initialize_mint2(mint, 9, authority)])
        assert exc_info.value.code == TokenError.ALREADY_IN_USE
