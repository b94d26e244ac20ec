import copy
import threading
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Iterator, Optional
from uuid import UUID

from .errors import DuplicateKeyError

Path = tuple[str, ...]


def _parent(doc: dict, path: Path) -> tuple[dict, str]:
    node = doc
    for part in path[:-1]:
        node = node[part]
    return node, path[-1]


class InMemoryStorage:
    """Process-local document store.

    Every mutation runs under one re-entrant lock, so each public method is an
    atomic operation and ``atomic()`` groups several of them into a single
    unit. Reads hand out deep copies.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self.accounts: dict[UUID, dict] = {}
        self.referral_codes: dict[str, UUID] = {}
        self.ledger_entries: dict[UUID, dict] = {}
        self.orders: dict[UUID, dict] = {}
        self.pending_transactions: dict[str, dict] = {}
        self.transactions: dict[str, dict] = {}

    @contextmanager
    def atomic(self) -> Iterator["InMemoryStorage"]:
        with self._lock:
            yield self

    # accounts

    def insert_account(self, doc: dict) -> dict:
        with self._lock:
            if doc["id"] in self.accounts:
                raise DuplicateKeyError("accounts", str(doc["id"]))
            self.accounts[doc["id"]] = copy.deepcopy(doc)
            return copy.deepcopy(doc)

    def get_account(self, account_id: UUID) -> Optional[dict]:
        with self._lock:
            doc = self.accounts.get(account_id)
            return copy.deepcopy(doc) if doc is not None else None

    def find_accounts(self, predicate: Callable[[dict], bool]) -> list[dict]:
        with self._lock:
            return [copy.deepcopy(d) for d in self.accounts.values() if predicate(d)]

    def update_account(self, account_id: UUID, mutator: Callable[[dict], Any]) -> Optional[dict]:
        with self._lock:
            doc = self.accounts.get(account_id)
            if doc is None:
                return None
            working = copy.deepcopy(doc)
            mutator(working)
            self.accounts[account_id] = working
            return copy.deepcopy(working)

    def increment_account(self, account_id: UUID, deltas: dict[Path, Decimal]) -> Optional[dict]:
        def apply(doc: dict) -> None:
            for path, delta in deltas.items():
                node, key = _parent(doc, path)
                node[key] = node.get(key, Decimal("0")) + delta

        return self.update_account(account_id, apply)

    def add_to_set(self, account_id: UUID, path: Path, value: Any) -> bool:
        with self._lock:
            doc = self.accounts.get(account_id)
            if doc is None:
                return False
            node, key = _parent(doc, path)
            members = node.setdefault(key, [])
            if value in members:
                return False
            members.append(value)
            return True

    def set_if_unset(self, account_id: UUID, path: Path, value: Any) -> Any:
        """Write ``value`` only when the field is empty; return the stored value."""
        with self._lock:
            doc = self.accounts.get(account_id)
            if doc is None:
                return None
            node, key = _parent(doc, path)
            if node.get(key) is None:
                node[key] = value
            return node[key]

    # referral codes

    def assign_referral_code(self, account_id: UUID, code: str) -> Optional[str]:
        with self._lock:
            doc = self.accounts.get(account_id)
            if doc is None:
                return None
            if doc.get("referral_code"):
                return doc["referral_code"]
            key = code.upper()
            if key in self.referral_codes:
                raise DuplicateKeyError("referral_codes", key)
            self.referral_codes[key] = account_id
            doc["referral_code"] = code
            return code

    def find_account_by_referral_code(self, code: str) -> Optional[dict]:
        with self._lock:
            account_id = self.referral_codes.get(code.strip().upper())
            return self.get_account(account_id) if account_id else None

    # ledger entries

    def append_entry(self, entry: dict) -> dict:
        with self._lock:
            self.ledger_entries[entry["id"]] = copy.deepcopy(entry)
            return copy.deepcopy(entry)

    def entries_for(self, account_id: UUID) -> list[dict]:
        with self._lock:
            return [copy.deepcopy(e) for e in self.ledger_entries.values() if e["account_id"] == account_id]

    # orders

    def insert_order(self, doc: dict) -> dict:
        with self._lock:
            if doc["id"] in self.orders:
                raise DuplicateKeyError("orders", str(doc["id"]))
            self.orders[doc["id"]] = copy.deepcopy(doc)
            return copy.deepcopy(doc)

    def get_order(self, order_id: UUID) -> Optional[dict]:
        with self._lock:
            doc = self.orders.get(order_id)
            return copy.deepcopy(doc) if doc is not None else None

    def update_order(self, order_id: UUID, mutator: Callable[[dict], Any]) -> Optional[dict]:
        with self._lock:
            doc = self.orders.get(order_id)
            if doc is None:
                return None
            working = copy.deepcopy(doc)
            mutator(working)
            self.orders[order_id] = working
            return copy.deepcopy(working)

    # pending transactions

    def insert_pending(self, doc: dict) -> dict:
        with self._lock:
            ref = doc["txn_ref"]
            if ref in self.pending_transactions or ref in self.transactions:
                raise DuplicateKeyError("pending_transactions", ref)
            self.pending_transactions[ref] = copy.deepcopy(doc)
            return copy.deepcopy(doc)

    def get_pending(self, txn_ref: str) -> Optional[dict]:
        with self._lock:
            doc = self.pending_transactions.get(txn_ref)
            return copy.deepcopy(doc) if doc is not None else None

    def due_pending(self, now: datetime) -> list[dict]:
        with self._lock:
            due = [
                copy.deepcopy(d) for d in self.pending_transactions.values()
                if d["status_inquiry_scheduled_for"] <= now
            ]
        due.sort(key=lambda d: d["status_inquiry_scheduled_for"])
        return due

    def claim_pending(self, txn_ref: str, now: datetime, next_inquiry_at: datetime) -> Optional[dict]:
        """Reserve a due record for one inquiry by pushing its schedule forward.

        Returns None when the record is gone or another caller already claimed
        it for this window.
        """
        with self._lock:
            doc = self.pending_transactions.get(txn_ref)
            if doc is None or doc["status_inquiry_scheduled_for"] > now:
                return None
            doc["status_inquiry_scheduled_for"] = next_inquiry_at
            doc["inquiry_attempts"] = doc.get("inquiry_attempts", 0) + 1
            doc["last_checked"] = now
            return copy.deepcopy(doc)

    def update_pending(self, txn_ref: str, **fields: Any) -> bool:
        with self._lock:
            doc = self.pending_transactions.get(txn_ref)
            if doc is None:
                return False
            doc.update(fields)
            return True

    # transactions

    def get_transaction(self, txn_ref: str) -> Optional[dict]:
        with self._lock:
            doc = self.transactions.get(txn_ref)
            return copy.deepcopy(doc) if doc is not None else None

    def list_transactions(self, account_id: Optional[UUID] = None) -> list[dict]:
        with self._lock:
            return [
                copy.deepcopy(t) for t in self.transactions.values()
                if account_id is None or t.get("account_id") == account_id
            ]

    def update_transaction(self, txn_ref: str, **fields: Any) -> bool:
        with self._lock:
            doc = self.transactions.get(txn_ref)
            if doc is None:
                return False
            doc.update(fields)
            return True

    def unfulfilled_transactions(self, status: str, now: datetime) -> list[dict]:
        """Transactions in ``status`` still owing fulfilment whose claim has lapsed."""
        with self._lock:
            return [
                copy.deepcopy(t) for t in self.transactions.values()
                if t.get("status") == status
                and not t.get("fulfilled")
                and t.get("account_id") is not None
                and (t.get("fulfilment_claimed_until") is None or t["fulfilment_claimed_until"] <= now)
            ]

    def claim_fulfilment(self, txn_ref: str, now: datetime, claimed_until: datetime) -> Optional[dict]:
        """Reserve an unfulfilled transaction for one fulfilment attempt.

        Returns None when it is already fulfilled or another caller holds an
        unexpired claim.
        """
        with self._lock:
            doc = self.transactions.get(txn_ref)
            if doc is None or doc.get("fulfilled"):
                return None
            held_until = doc.get("fulfilment_claimed_until")
            if held_until is not None and held_until > now:
                return None
            doc["fulfilment_claimed_until"] = claimed_until
            doc["fulfilment_attempts"] = doc.get("fulfilment_attempts", 0) + 1
            return copy.deepcopy(doc)

    def promote_pending(self, txn_ref: str, transaction: dict) -> bool:
        """Move a pending record to the transaction collection.

        Returns True only for the caller that created the transaction. A
        leftover pending record for an already-settled reference is dropped.
        """
        with self._lock:
            if txn_ref in self.transactions:
                self.pending_transactions.pop(txn_ref, None)
                return False
            self.transactions[txn_ref] = copy.deepcopy(transaction)
            self.pending_transactions.pop(txn_ref, None)
            return True
