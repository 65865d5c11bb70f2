"""
Account Storage Module

Provides the abstract account store and implementations for in-memory
(testing) and SQLite (persistence). An account is a lamport balance, an
owning program and a raw data buffer; programs see it through AccountInfo.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Union
import sqlite3
import threading
from dataclasses import dataclass, field
from pathlib import Path
from contextlib import contextmanager

from solders.pubkey import Pubkey

from .derivation import SYSTEM_PROGRAM_ID


@dataclass
class Account:
    """Raw ledger account"""
    lamports: int = 0
    data: bytearray = field(default_factory=bytearray)
    owner: Pubkey = SYSTEM_PROGRAM_ID
    executable: bool = False

    def __post_init__(self):
        if self.lamports < 0:
            raise ValueError("Lamports cannot be negative")
        if not isinstance(self.data, bytearray):
            self.data = bytearray(self.data)

    @property
    def exists(self) -> bool:
        """An account with no lamports is garbage collected at commit"""
        return self.lamports > 0

    def copy(self) -> 'Account':
        """Create a deep copy of this account"""
        return Account(
            lamports=self.lamports,
            data=bytearray(self.data),
            owner=self.owner,
            executable=self.executable
        )


@dataclass
class AccountInfo:
    """
    A program's view of one account reference in an instruction: the live
    account plus the signer/writable flags the caller granted.
    """
    key: Pubkey
    account: Account
    is_signer: bool = False
    is_writable: bool = False

    @property
    def owner(self) -> Pubkey:
        return self.account.owner

    @property
    def lamports(self) -> int:
        return self.account.lamports

    @lamports.setter
    def lamports(self, value: int) -> None:
        if value < 0:
            raise ValueError("Lamports cannot be negative")
        self.account.lamports = value

    @property
    def data(self) -> bytearray:
        return self.account.data

    @property
    def data_len(self) -> int:
        return len(self.account.data)

    def is_owned_by(self, program_id: Pubkey) -> bool:
        return self.account.owner == program_id

    def assign(self, owner: Pubkey) -> None:
        self.account.owner = owner

    def resize(self, new_len: int) -> None:
        """Resize in place, zero-filling any new bytes"""
        current = len(self.account.data)
        if new_len < current:
            del self.account.data[new_len:]
        else:
            self.account.data.extend(bytes(new_len - current))


class AccountStoreInterface(ABC):
    """Abstract interface for account store backends"""

    @abstractmethod
    def load(self, key: Pubkey) -> Optional[Account]:
        """Load a copy of an account"""
        pass

    @abstractmethod
    def save(self, key: Pubkey, account: Account) -> None:
        """Save an account"""
        pass

    @abstractmethod
    def delete(self, key: Pubkey) -> bool:
        """Delete an account"""
        pass

    @abstractmethod
    def exists(self, key: Pubkey) -> bool:
        """Check if an account exists"""
        pass

    @abstractmethod
    def keys(self) -> List[Pubkey]:
        """List every stored account address"""
        pass

    @abstractmethod
    def count(self) -> int:
        """Count stored accounts"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close store connection"""
        pass

    def begin_transaction(self) -> None:
        """Start a store transaction (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations"""
        self.begin_transaction()
        try:
            yield
            self.commit()
        except Exception:
            self.rollback()
            raise


class InMemoryAccountStore(AccountStoreInterface):
    """In-memory account store for testing"""

    def __init__(self):
        self._accounts: Dict[Pubkey, Account] = {}
        self._lock = threading.RLock()
        self._snapshots: List[Dict[Pubkey, Account]] = []

    def load(self, key: Pubkey) -> Optional[Account]:
        """Load a copy of an account"""
        with self._lock:
            account = self._accounts.get(key)
            if account:
                # Copy to prevent external mutation
                return account.copy()
            return None

    def save(self, key: Pubkey, account: Account) -> None:
        """Save a copy of an account"""
        with self._lock:
            self._accounts[key] = account.copy()

    def delete(self, key: Pubkey) -> bool:
        """Delete an account"""
        with self._lock:
            if key in self._accounts:
                del self._accounts[key]
                return True
            return False

    def exists(self, key: Pubkey) -> bool:
        """Check if an account exists"""
        with self._lock:
            return key in self._accounts

    def keys(self) -> List[Pubkey]:
        with self._lock:
            return list(self._accounts.keys())

    def count(self) -> int:
        with self._lock:
            return len(self._accounts)

    def begin_transaction(self) -> None:
        """Snapshot every account so rollback can restore them"""
        self._lock.acquire()
        self._snapshots.append({k: v.copy() for k, v in self._accounts.items()})

    def commit(self) -> None:
        self._snapshots.pop()
        self._lock.release()

    def rollback(self) -> None:
        self._accounts = self._snapshots.pop()
        self._lock.release()

    def close(self) -> None:
        """Close store (no-op for in-memory)"""
        pass


class SQLiteAccountStore(AccountStoreInterface):
    """SQLite account store for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        # Set isolation_level to 'DEFERRED' to enable manual transaction control
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._in_transaction = False

        with self._lock:
            # Enable WAL mode for better concurrent access
            if self.db_path != ":memory:":
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
            self._connection.execute("""
                CREATE TABLE IF NOT EXISTS accounts (
                    pubkey TEXT PRIMARY KEY,
                    lamports TEXT NOT NULL,
                    owner TEXT NOT NULL,
                    executable INTEGER NOT NULL,
                    data BLOB NOT NULL
                )
            """)
            self._connection.commit()

    def load(self, key: Pubkey) -> Optional[Account]:
        """Load an account from SQLite"""
        with self._lock:
            cursor = self._connection.execute(
                "SELECT lamports, owner, executable, data FROM accounts WHERE pubkey = ?",
                (str(key),)
            )
            row = cursor.fetchone()
            if row:
                return Account(
                    lamports=int(row['lamports']),
                    data=bytearray(row['data']),
                    owner=Pubkey.from_string(row['owner']),
                    executable=bool(row['executable'])
                )
            return None

    def save(self, key: Pubkey, account: Account) -> None:
        """Save an account to SQLite"""
        with self._lock:
            # Lamports are u64; stored as TEXT since SQLite INTEGER is signed 64-bit
            self._connection.execute("""
                INSERT OR REPLACE INTO accounts (pubkey, lamports, owner, executable, data)
                VALUES (?, ?, ?, ?, ?)
            """, (str(key), str(account.lamports), str(account.owner),
                  int(account.executable), bytes(account.data)))

            # Only commit if not in transaction
            if not self._in_transaction:
                self._connection.commit()

    def delete(self, key: Pubkey) -> bool:
        """Delete an account from SQLite"""
        with self._lock:
            cursor = self._connection.execute(
                "DELETE FROM accounts WHERE pubkey = ?", (str(key),)
            )

            # Only commit if not in transaction
            if not self._in_transaction:
                self._connection.commit()

            return cursor.rowcount > 0

    def exists(self, key: Pubkey) -> bool:
        with self._lock:
            cursor = self._connection.execute(
                "SELECT 1 FROM accounts WHERE pubkey = ? LIMIT 1", (str(key),)
            )
            return cursor.fetchone() is not None

    def keys(self) -> List[Pubkey]:
        with self._lock:
            cursor = self._connection.execute("SELECT pubkey FROM accounts")
            return [Pubkey.from_string(row['pubkey']) for row in cursor.fetchall()]

    def count(self) -> int:
        with self._lock:
            cursor = self._connection.execute("SELECT COUNT(*) AS n FROM accounts")
            return cursor.fetchone()['n']

    def begin_transaction(self) -> None:
        """Start a database transaction"""
        with self._lock:
            if not self._in_transaction:
                # SQLite with isolation_level='DEFERRED' automatically starts transactions
                # We just need to track the state
                self._in_transaction = True

    def commit(self) -> None:
        """Commit current transaction"""
        with self._lock:
            if self._in_transaction:
                self._connection.commit()
                self._in_transaction = False

    def rollback(self) -> None:
        """Rollback current transaction"""
        with self._lock:
            if self._in_transaction:
                self._connection.rollback()
                self._in_transaction = False

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            self._connection.close()
