"""
Tests for the constant-product pool program
"""

import pytest
from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from core_custody import amm
from core_custody.codec import Mint, PoolConfig, PoolState
from core_custody.config import CustodyConfig
from core_custody.curve import ConstantProduct, LiquidityPair
from core_custody.derivation import TOKEN_PROGRAM_ID, associated_token_address
from core_custody.errors import AmmError, CustodyError, ProgramErrorCode, TransactionError
from core_custody.ledger import Ledger


SOL = 1_000_000_000
SEED = 7
FEE = 30


def replace_account(ix, index, pubkey):
    metas = list(ix.accounts)
    old = metas[index]
    metas[index] = AccountMeta(pubkey, old.is_signer, old.is_writable)
    return Instruction(ix.program_id, bytes(ix.data), metas)


class PoolFixture:
    """Ledger with two mints and a user holding both"""

    def setup_method(self):
        self.ledger = Ledger(config=CustodyConfig())
        self.ledger.register_program(amm.PROGRAM_ID, amm.process_instruction)

        self.user = Pubkey.new_unique()
        self.mint_x = Pubkey.new_unique()
        self.mint_y = Pubkey.new_unique()
        self.ledger.airdrop(self.user, 10 * SOL)
        self.ledger.create_mint(self.mint_x, Pubkey.new_unique())
        self.ledger.create_mint(self.mint_y, Pubkey.new_unique())
        self.user_x = self.ledger.create_token_account(self.user, self.mint_x, 100_000)
        self.user_y = self.ledger.create_token_account(self.user, self.mint_y, 100_000)

        self.config = amm.pool_authority(SEED, self.mint_x, self.mint_y).address
        self.mint_lp = amm.lp_mint_authority(self.config).address
        self.vault_x = associated_token_address(self.config, self.mint_x)
        self.vault_y = associated_token_address(self.config, self.mint_y)
        self.user_lp = associated_token_address(self.user, self.mint_lp)

    @property
    def deadline(self):
        return self.ledger.clock.unix_timestamp + 60

    def run(self, ix):
        return self.ledger.process_transaction([ix], signers=[self.user])

    def initialize(self, fee=FEE, authority=None):
        return self.run(amm.initialize(self.user, self.mint_x, self.mint_y, SEED, fee, authority=authority))

    def deposit_ix(self, amount, max_x, max_y, expiration=None):
        return amm.deposit(self.user, self.mint_x, self.mint_y, SEED, amount, max_x, max_y,
                           self.deadline if expiration is None else expiration)

    def withdraw_ix(self, amount, min_x, min_y, expiration=None):
        return amm.withdraw(self.user, self.mint_x, self.mint_y, SEED, amount, min_x, min_y,
                            self.deadline if expiration is None else expiration)

    def swap_ix(self, is_x, amount, min_out, expiration=None):
        return amm.swap(self.user, self.mint_x, self.mint_y, SEED, is_x, amount, min_out,
                        self.deadline if expiration is None else expiration)

    def pool_config(self):
        return PoolConfig.decode(bytes(self.ledger.get_account(self.config).data))

    def lp_supply(self):
        return Mint.decode(bytes(self.ledger.get_account(self.mint_lp).data)).supply


class TestInitialize(PoolFixture):
    """Test pool creation"""

    def test_initialize(self):
        self.initialize()

        config = self.pool_config()
        assert config.state == PoolState.INITIALIZED
        assert config.seed == SEED
        assert config.fee == FEE
        assert config.authority is None
        assert config.mint_x == self.mint_x
        assert config.mint_y == self.mint_y
        assert self.ledger.get_account(self.config).owner == amm.PROGRAM_ID

        lp = self.ledger.get_account(self.mint_lp)
        assert lp.owner == TOKEN_PROGRAM_ID
        state = Mint.decode(bytes(lp.data))
        assert state.mint_authority == self.config
        assert state.decimals == 6
        assert state.supply == 0

    def test_initialize_with_authority(self):
        admin = Pubkey.new_unique()
        self.initialize(authority=admin)
        assert self.pool_config().authority == admin

    def test_initialize_twice_fails(self):
        self.initialize()
        with pytest.raises(TransactionError) as exc_info:
            self.initialize()
        assert exc_info.value.code == ProgramErrorCode.ACCOUNT_ALREADY_IN_USE

    def test_fee_out_of_range(self):
        with pytest.raises(TransactionError) as exc_info:
            self.initialize(fee=10_000)
        assert exc_info.value.code == AmmError.INVALID_FEE

    def test_identical_mints(self):
        ix = amm.initialize(self.user, self.mint_x, self.mint_x, SEED, FEE)
        with pytest.raises(TransactionError) as exc_info:
            self.run(ix)
        assert exc_info.value.code == ProgramErrorCode.INVALID_INSTRUCTION_DATA

    def test_substituted_lp_mint(self):
        ix = replace_account(amm.initialize(self.user, self.mint_x, self.mint_y, SEED, FEE), 1, Pubkey.new_unique())
        with pytest.raises(TransactionError) as exc_info:
            self.run(ix)
        assert exc_info.value.code == CustodyError.INVALID_PDA
        assert not self.ledger.account_exists(self.config)

    def test_lp_decimals_follow_configuration(self):
        self.ledger.config = CustodyConfig(lp_mint_decimals=9)
        self.initialize()
        assert Mint.decode(bytes(self.ledger.get_account(self.mint_lp).data)).decimals == 9


class TestDeposit(PoolFixture):
    """Test liquidity deposits"""

    def setup_method(self):
        super().setup_method()
        self.initialize()

    def test_first_deposit_sets_price(self):
        self.run(self.deposit_ix(1_000, 10_000, 20_000))

        assert self.ledger.token_balance(self.vault_x) == 10_000
        assert self.ledger.token_balance(self.vault_y) == 20_000
        assert self.ledger.token_balance(self.user_lp) == 1_000
        assert self.ledger.token_balance(self.user_x) == 90_000
        assert self.lp_supply() == 1_000

    def test_second_deposit_is_pro_rata(self):
        self.run(self.deposit_ix(1_000, 10_000, 20_000))
        self.run(self.deposit_ix(500, 5_000, 10_000))

        assert self.ledger.token_balance(self.vault_x) == 15_000
        assert self.ledger.token_balance(self.vault_y) == 30_000
        assert self.ledger.token_balance(self.user_lp) == 1_500

    def test_deposit_slippage(self):
        self.run(self.deposit_ix(1_000, 10_000, 20_000))
        with pytest.raises(TransactionError) as exc_info:
            self.run(self.deposit_ix(500, 4_999, 10_000))
        assert exc_info.value.code == AmmError.SLIPPAGE_EXCEEDED
        assert self.lp_supply() == 1_000

    def test_zero_amount(self):
        with pytest.raises(TransactionError) as exc_info:
            self.run(self.deposit_ix(0, 10_000, 20_000))
        assert exc_info.value.code == AmmError.INVALID_AMOUNT

    def test_expired(self):
        with pytest.raises(TransactionError) as exc_info:
            self.run(self.deposit_ix(1_000, 10_000, 20_000, expiration=self.ledger.clock.unix_timestamp - 1))
        assert exc_info.value.code == AmmError.EXPIRED

    def test_substituted_mint(self):
        other = Pubkey.new_unique()
        self.ledger.create_mint(other, Pubkey.new_unique())
        ix = replace_account(self.deposit_ix(1_000, 10_000, 20_000), 9, other)
        with pytest.raises(TransactionError) as exc_info:
            self.run(ix)
        assert exc_info.value.code == CustodyError.MINT_CHECK_FAILED


class TestSwap(PoolFixture):
    """Test swaps against the pool"""

    def setup_method(self):
        super().setup_method()
        self.initialize()
        self.run(self.deposit_ix(1_000, 10_000, 20_000))

    def expected(self, pair, amount):
        reserves = (self.ledger.token_balance(self.vault_x), self.ledger.token_balance(self.vault_y))
        return ConstantProduct(reserves[0], reserves[1], reserves[0], FEE).swap(pair, amount, 0).withdraw

    def test_swap_x_for_y(self):
        out = self.expected(LiquidityPair.X, 1_000)
        self.run(self.swap_ix(True, 1_000, out))

        assert out == 1_813
        assert self.ledger.token_balance(self.vault_x) == 11_000
        assert self.ledger.token_balance(self.vault_y) == 20_000 - out
        assert self.ledger.token_balance(self.user_y) == 80_000 + out

    def test_swap_y_for_x(self):
        out = self.expected(LiquidityPair.Y, 2_000)
        self.run(self.swap_ix(False, 2_000, 1))

        assert self.ledger.token_balance(self.vault_y) == 22_000
        assert self.ledger.token_balance(self.user_x) == 90_000 + out

    def test_invariant_holds(self):
        k = self.ledger.token_balance(self.vault_x) * self.ledger.token_balance(self.vault_y)
        self.run(self.swap_ix(True, 3_333, 1))
        self.run(self.swap_ix(False, 777, 1))
        assert self.ledger.token_balance(self.vault_x) * self.ledger.token_balance(self.vault_y) >= k

    def test_slippage(self):
        out = self.expected(LiquidityPair.X, 1_000)
        with pytest.raises(TransactionError) as exc_info:
            self.run(self.swap_ix(True, 1_000, out + 1))
        assert exc_info.value.code == AmmError.SLIPPAGE_EXCEEDED
        assert self.ledger.token_balance(self.vault_x) == 10_000

    def test_expired(self):
        with pytest.raises(TransactionError) as exc_info:
            self.run(self.swap_ix(True, 1_000, 1, expiration=self.ledger.clock.unix_timestamp - 1))
        assert exc_info.value.code == AmmError.EXPIRED

    def test_expiration_boundary_is_inclusive(self):
        self.run(self.swap_ix(True, 1_000, 1, expiration=self.ledger.clock.unix_timestamp))

    def test_forged_vault(self):
        decoy = self.ledger.create_token_account(self.user, self.mint_x, 0, address=Pubkey.new_unique())
        with pytest.raises(TransactionError) as exc_info:
            self.run(replace_account(self.swap_ix(True, 1_000, 1), 3, decoy))
        assert exc_info.value.code == AmmError.INVALID_VAULT

    def test_zero_amount(self):
        with pytest.raises(TransactionError) as exc_info:
            self.run(self.swap_ix(True, 0, 1))
        assert exc_info.value.code == AmmError.INVALID_AMOUNT

    def test_malformed_direction_byte(self):
        ix = self.swap_ix(True, 1_000, 1)
        data = bytearray(ix.data)
        data[1] = 2
        with pytest.raises(TransactionError) as exc_info:
            self.run(Instruction(ix.program_id, bytes(data), list(ix.accounts)))
        assert exc_info.value.code == ProgramErrorCode.INVALID_INSTRUCTION_DATA

    def test_disabled_pool(self):
        account = self.ledger.get_account(self.config)
        config = PoolConfig.decode(bytes(account.data))
        config.state = PoolState.DISABLED
        config.store(account.data)
        self.ledger.set_account(self.config, account)

        with pytest.raises(TransactionError) as exc_info:
            self.run(self.swap_ix(True, 1_000, 1))
        assert exc_info.value.code == AmmError.INVALID_STATE


class TestWithdraw(PoolFixture):
    """Test liquidity withdrawals"""

    def setup_method(self):
        super().setup_method()
        self.initialize()
        self.run(self.deposit_ix(1_000, 10_000, 20_000))

    def test_full_withdraw_empties_pool(self):
        self.run(self.withdraw_ix(1_000, 10_000, 20_000))

        assert self.ledger.token_balance(self.vault_x) == 0
        assert self.ledger.token_balance(self.vault_y) == 0
        assert self.ledger.token_balance(self.user_x) == 100_000
        assert self.ledger.token_balance(self.user_y) == 100_000
        assert self.ledger.token_balance(self.user_lp) == 0
        assert self.lp_supply() == 0

    def test_swap_against_emptied_pool(self):
        self.run(self.withdraw_ix(1_000, 10_000, 20_000))
        with pytest.raises(TransactionError) as exc_info:
            self.run(self.swap_ix(True, 1_000, 1))
        assert exc_info.value.code == AmmError.ZERO_BALANCE
        assert self.ledger.token_balance(self.user_x) == 100_000

    def test_partial_withdraw(self):
        self.run(self.withdraw_ix(250, 2_500, 5_000))

        assert self.ledger.token_balance(self.vault_x) == 7_500
        assert self.ledger.token_balance(self.vault_y) == 15_000
        assert self.ledger.token_balance(self.user_lp) == 750

    def test_withdraw_bound(self):
        with pytest.raises(TransactionError) as exc_info:
            self.run(self.withdraw_ix(250, 2_499, 5_000))
        assert exc_info.value.code == AmmError.SLIPPAGE_EXCEEDED

    def test_withdraw_more_than_supply(self):
        with pytest.raises(TransactionError) as exc_info:
            self.run(self.withdraw_ix(1_001, 20_000, 40_000))
        assert exc_info.value.code == AmmError.CURVE_ERROR

    def test_wrong_lp_mint(self):
        other = Pubkey.new_unique()
        self.ledger.create_mint(other, Pubkey.new_unique())
        with pytest.raises(TransactionError) as exc_info:
            self.run(replace_account(self.withdraw_ix(250, 2_500, 5_000), 1, other))
        assert exc_info.value.code == AmmError.INVALID_LP_MINT

    def test_zero_amount(self):
        with pytest.raises(TransactionError) as exc_info:
            self.run(self.withdraw_ix(0, 1, 1))
        assert exc_info.value.code == AmmError.INVALID_AMOUNT

    def test_expired(self):
        with pytest.raises(TransactionError) as exc_info:
            self.run(self.withdraw_ix(250, 2_500, 5_000, expiration=self.ledger.clock.unix_timestamp - 1))
        assert exc_info.value.code == AmmError.EXPIRED

    def test_withdraw_requires_lp_tokens(self):
        outsider = Pubkey.new_unique()
        self.ledger.airdrop(outsider, SOL)
        self.ledger.create_token_account(outsider, self.mint_x)
        self.ledger.create_token_account(outsider, self.mint_y)
        ix = amm.withdraw(outsider, self.mint_x, self.mint_y, SEED, 250, 2_500, 5_000, self.deadline)
        with pytest.raises(TransactionError):
            self.ledger.process_transaction([ix], signers=[outsider])
        assert self.ledger.token_balance(self.vault_x) == 10_000
