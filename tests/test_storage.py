"""
Tests for account storage backends
"""

import pytest
from solders.pubkey import Pubkey

from core_custody.codec import U64_MAX
from core_custody.derivation import SYSTEM_PROGRAM_ID, TOKEN_PROGRAM_ID
from core_custody.storage import Account, AccountInfo, InMemoryAccountStore, SQLiteAccountStore


class TestAccount:
    """Test the raw account record and the program view of it"""

    def test_negative_lamports_are_rejected(self):
        with pytest.raises(ValueError):
            Account(lamports=-1)

    def test_data_is_coerced_to_bytearray(self):
        account = Account(lamports=1, data=b"\x01\x02")
        assert isinstance(account.data, bytearray)

    def test_exists_tracks_lamports(self):
        assert not Account().exists
        assert Account(lamports=1).exists

    def test_copy_is_independent(self):
        account = Account(lamports=5, data=bytearray(b"\x00"))
        clone = account.copy()
        clone.data[0] = 9
        clone.lamports = 1
        assert account.data == bytearray(b"\x00")
        assert account.lamports == 5

    def test_account_info_resize_and_assign(self):
        info = AccountInfo(key=Pubkey.new_unique(), account=Account(lamports=1, data=bytearray(b"\x07" * 4)))

        info.resize(6)
        assert bytes(info.data) == b"\x07" * 4 + b"\x00\x00"
        info.resize(2)
        assert info.data_len == 2

        info.assign(TOKEN_PROGRAM_ID)
        assert info.is_owned_by(TOKEN_PROGRAM_ID)

        with pytest.raises(ValueError):
            info.lamports = -5


class TestInMemoryAccountStore:
    """Test the in-memory store"""

    def setup_method(self):
        self.store = InMemoryAccountStore()
        self.key = Pubkey.new_unique()

    def test_save_and_load(self):
        self.store.save(self.key, Account(lamports=U64_MAX, data=bytearray(b"abc"), owner=TOKEN_PROGRAM_ID))

        loaded = self.store.load(self.key)
        assert loaded.lamports == U64_MAX
        assert loaded.data == bytearray(b"abc")
        assert loaded.owner == TOKEN_PROGRAM_ID
        assert self.store.exists(self.key)
        assert self.store.count() == 1
        assert self.store.keys() == [self.key]

    def test_load_returns_copy(self):
        self.store.save(self.key, Account(lamports=10))
        loaded = self.store.load(self.key)
        loaded.lamports = 0
        assert self.store.load(self.key).lamports == 10

    def test_delete(self):
        self.store.save(self.key, Account(lamports=10))
        assert self.store.delete(self.key)
        assert not self.store.delete(self.key)
        assert self.store.load(self.key) is None

    def test_atomic_rollback(self):
        self.store.save(self.key, Account(lamports=10))

        with pytest.raises(RuntimeError):
            with self.store.atomic():
                self.store.save(self.key, Account(lamports=99))
                self.store.save(Pubkey.new_unique(), Account(lamports=1))
                raise RuntimeError("abort")

        assert self.store.load(self.key).lamports == 10
        assert self.store.count() == 1


class TestSQLiteAccountStore:
    """Test the SQLite store"""

    def setup_method(self):
        self.store = SQLiteAccountStore()
        self.key = Pubkey.new_unique()

    def teardown_method(self):
        self.store.close()

    def test_save_and_load_u64_lamports(self):
        self.store.save(self.key, Account(lamports=U64_MAX, data=bytearray(b"\x00\xff"), executable=True))

        loaded = self.store.load(self.key)
        assert loaded.lamports == U64_MAX
        assert loaded.data == bytearray(b"\x00\xff")
        assert loaded.owner == SYSTEM_PROGRAM_ID
        assert loaded.executable

    def test_replace_and_delete(self):
        self.store.save(self.key, Account(lamports=1))
        self.store.save(self.key, Account(lamports=2))
        assert self.store.count() == 1
        assert self.store.load(self.key).lamports == 2

        assert self.store.delete(self.key)
        assert not self.store.exists(self.key)

    def test_atomic_rollback(self):
        self.store.save(self.key, Account(lamports=10))

        with pytest.raises(RuntimeError):
            with self.store.atomic():
                self.store.save(self.key, Account(lamports=99))
                raise RuntimeError("abort")

        assert self.store.load(self.key).lamports == 10

    def test_file_backed_store(self, tmp_path):
        path = tmp_path / "accounts.db"
        store = SQLiteAccountStore(path)
        store.save(self.key, Account(lamports=7, owner=TOKEN_PROGRAM_ID))
        store.close()

        reopened = SQLiteAccountStore(path)
        try:
            assert reopened.load(self.key).owner == TOKEN_PROGRAM_ID
            assert reopened.keys() == [self.key]
        finally:
            reopened.close()
