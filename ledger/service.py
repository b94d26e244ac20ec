from datetime import datetime, timezone
from decimal import Decimal, ROUND_FLOOR
from typing import Optional
from uuid import UUID, uuid4

from core.config import Settings, get_settings
from core.errors import MarketplaceError
from core.logging_core import get_logger
from core.storage import InMemoryStorage

from .models import (
    LEVELS,
    ZERO,
    EntryType,
    WithdrawalStatus,
    Account,
    AccountBalance,
    BankDetailsRequest,
    CreateAccountRequest,
    LedgerEntry,
    LedgerHistoryResponse,
    WithdrawalRecord,
    level_key,
    quantize_money,
)

logger = get_logger(__name__)


class LedgerServiceError(MarketplaceError):
    pass


class AccountNotFoundError(LedgerServiceError):
    pass


class InvalidAmountError(LedgerServiceError):
    pass


class InsufficientBalanceError(LedgerServiceError):
    pass


class WithdrawalStateError(LedgerServiceError):
    pass


def new_account_doc(request: CreateAccountRequest, account_id: UUID, now: datetime) -> dict:
    return {
        "id": account_id,
        "name": request.name,
        "username": request.username.lower(),
        "email": request.email.lower(),
        "referral_code": None,
        "subscription": {
            "is_active": False, "purchase_date": None, "expiry_date": None,
            "amount_paid": ZERO, "subscription_id": None,
        },
        "referral": {
            "referrer": None,
            "levels": {level_key(n): [] for n in LEVELS},
            "earnings_by_level": {level_key(n): ZERO for n in LEVELS},
            "total_earnings": ZERO,
            "wallet_credits": ZERO,
        },
        "withdrawals": {
            "bank_account": {"account_number": None, "bank_name": None, "account_holder": None},
            "pending_request": False,
            "last_withdrawal_date": None,
            "total_withdrawn": ZERO,
            "history": [],
        },
        "created_at": now,
    }


class LedgerService:
    def __init__(self, storage: Optional[InMemoryStorage] = None, settings: Optional[Settings] = None):
        self.storage = storage or InMemoryStorage()
        self.settings = settings or get_settings()

    def create_account(
        self, request: CreateAccountRequest, account_id: Optional[UUID] = None, now: Optional[datetime] = None
    ) -> Account:
        username = request.username.lower()
        email = request.email.lower()
        with self.storage.atomic():
            clash = self.storage.find_accounts(lambda d: d["username"] == username or d["email"] == email)
            if clash:
                raise LedgerServiceError("An account with this username or email already exists")
            doc = new_account_doc(request, account_id or uuid4(), now or datetime.now(timezone.utc))
            self.storage.insert_account(doc)
        logger.info("Account %s created (%s)", doc["id"], username)
        return Account(**doc)

    def get_account(self, account_id: UUID) -> Account:
        doc = self.storage.get_account(account_id)
        if doc is None:
            raise AccountNotFoundError(f"Account {account_id} not found")
        return Account(**doc)

    def credit(
        self,
        account_id: UUID,
        amount: Decimal,
        entry_type: EntryType,
        bucket: Optional[str] = None,
        reference: Optional[str] = None,
        description: str = "",
        now: Optional[datetime] = None,
    ) -> LedgerEntry:
        """Atomically add ``amount`` to the account balance and its bucket.

        Commission credits land in ``earnings_by_level[bucket]``; wallet
        credits in ``wallet_credits``. Both raise ``total_earnings``.
        """
        amount = quantize_money(amount)
        if amount <= 0:
            raise InvalidAmountError(f"Credit amount must be positive, got {amount}")

        deltas = {("referral", "total_earnings"): amount}
        if entry_type == EntryType.COMMISSION:
            if bucket is None:
                raise LedgerServiceError("Commission credits need a level bucket")
            deltas[("referral", "earnings_by_level", bucket)] = amount
        elif entry_type == EntryType.WALLET_CREDIT:
            deltas[("referral", "wallet_credits")] = amount
        else:
            raise LedgerServiceError(f"{entry_type.value} is not a credit entry type")

        with self.storage.atomic():
            updated = self.storage.increment_account(account_id, deltas)
            if updated is None:
                raise AccountNotFoundError(f"Account {account_id} not found")
            entry = self.storage.append_entry({
                "id": uuid4(),
                "account_id": account_id,
                "entry_type": entry_type,
                "amount": amount,
                "balance_after": updated["referral"]["total_earnings"],
                "bucket": bucket,
                "reference": reference,
                "description": description or f"{entry_type.value.lower()} credit",
                "created_at": now or datetime.now(timezone.utc),
                "metadata": {},
            })

        logger.info(
            "Credited %s to account %s (%s %s, ref=%s)",
            amount, account_id, entry_type.value, bucket or "-", reference or "-",
        )
        return LedgerEntry(**entry)

    def get_balance(self, account_id: UUID) -> AccountBalance:
        account = self.get_account(account_id)
        entries = self.storage.entries_for(account_id)
        last_entry = max(entries, key=lambda e: e["created_at"]) if entries else None

        return AccountBalance(
            account_id=account_id,
            total_earnings=account.referral.total_earnings,
            earnings_by_level=account.referral.earnings_by_level,
            wallet_credits=account.referral.wallet_credits,
            total_withdrawn=account.withdrawals.total_withdrawn,
            total_entries=len(entries),
            last_transaction_at=last_entry["created_at"] if last_entry else None,
        )

    def get_ledger_history(self, account_id: UUID, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        balance = self.get_balance(account_id)
        all_entries = [LedgerEntry(**e) for e in self.storage.entries_for(account_id)]
        all_entries.sort(key=lambda e: e.created_at, reverse=True)

        return LedgerHistoryResponse(
            account_id=account_id,
            entries=all_entries[offset:offset + limit],
            total_count=len(all_entries),
            current_balance=balance.total_earnings,
        )

    def update_bank_details(self, account_id: UUID, request: BankDetailsRequest) -> Account:
        def apply(doc: dict) -> None:
            doc["withdrawals"]["bank_account"] = request.model_dump()

        updated = self.storage.update_account(account_id, apply)
        if updated is None:
            raise AccountNotFoundError(f"Account {account_id} not found")
        return Account(**updated)

    def request_withdrawal(self, account_id: UUID, now: Optional[datetime] = None) -> WithdrawalRecord:
        now = now or datetime.now(timezone.utc)
        weekday = self.settings.withdrawal_weekday
        if weekday is not None and now.weekday() != weekday:
            raise WithdrawalStateError("Withdrawals are not open today")

        with self.storage.atomic():
            account = self.get_account(account_id)
            if not account.withdrawals.bank_account.is_complete():
                raise WithdrawalStateError("Bank details are required before requesting a withdrawal")
            if account.withdrawals.pending_request:
                raise WithdrawalStateError("A withdrawal request is already pending")
            requested = account.referral.total_earnings
            if requested <= 0:
                raise InsufficientBalanceError("No earnings to withdraw")

            paid = (requested * self.settings.withdrawal_payout_ratio).to_integral_value(rounding=ROUND_FLOOR)
            record = WithdrawalRecord(
                id=uuid4(),
                amount_requested=requested,
                amount_paid=quantize_money(paid),
                status=WithdrawalStatus.PENDING,
                requested_at=now,
            )

            def apply(doc: dict) -> None:
                doc["withdrawals"]["history"].append(record.model_dump())
                doc["withdrawals"]["pending_request"] = True

            self.storage.update_account(account_id, apply)

        logger.info("Withdrawal %s requested by %s for %s", record.id, account_id, requested)
        return record

    def approve_withdrawal(
        self, account_id: UUID, withdrawal_id: UUID, now: Optional[datetime] = None
    ) -> WithdrawalRecord:
        now = now or datetime.now(timezone.utc)
        with self.storage.atomic():
            account = self.get_account(account_id)
            record = self._pending_withdrawal(account, withdrawal_id)
            if record.amount_requested > account.referral.total_earnings:
                raise InsufficientBalanceError(
                    f"Withdrawal of {record.amount_requested} exceeds balance {account.referral.total_earnings}"
                )

            def apply(doc: dict) -> None:
                doc["referral"]["total_earnings"] -= record.amount_requested
                doc["withdrawals"]["total_withdrawn"] += record.amount_requested
                doc["withdrawals"]["pending_request"] = False
                doc["withdrawals"]["last_withdrawal_date"] = now
                for item in doc["withdrawals"]["history"]:
                    if item["id"] == withdrawal_id:
                        item["status"] = WithdrawalStatus.APPROVED
                        item["processed_at"] = now

            updated = self.storage.update_account(account_id, apply)
            self.storage.append_entry({
                "id": uuid4(),
                "account_id": account_id,
                "entry_type": EntryType.WITHDRAWAL,
                "amount": -record.amount_requested,
                "balance_after": updated["referral"]["total_earnings"],
                "bucket": None,
                "reference": str(withdrawal_id),
                "description": f"Withdrawal approved, {record.amount_paid} paid out",
                "created_at": now,
                "metadata": {"amount_paid": str(record.amount_paid)},
            })

        logger.info("Withdrawal %s approved for %s (%s)", withdrawal_id, account_id, record.amount_requested)
        return record.model_copy(update={"status": WithdrawalStatus.APPROVED, "processed_at": now})

    def reject_withdrawal(
        self, account_id: UUID, withdrawal_id: UUID, reason: str, now: Optional[datetime] = None
    ) -> WithdrawalRecord:
        now = now or datetime.now(timezone.utc)
        with self.storage.atomic():
            account = self.get_account(account_id)
            record = self._pending_withdrawal(account, withdrawal_id)

            def apply(doc: dict) -> None:
                doc["withdrawals"]["pending_request"] = False
                for item in doc["withdrawals"]["history"]:
                    if item["id"] == withdrawal_id:
                        item["status"] = WithdrawalStatus.REJECTED
                        item["processed_at"] = now
                        item["rejection_reason"] = reason

            self.storage.update_account(account_id, apply)

        logger.info("Withdrawal %s rejected for %s: %s", withdrawal_id, account_id, reason)
        return record.model_copy(update={
            "status": WithdrawalStatus.REJECTED, "processed_at": now, "rejection_reason": reason,
        })

    def _pending_withdrawal(self, account: Account, withdrawal_id: UUID) -> WithdrawalRecord:
        for record in account.withdrawals.history:
            if record.id == withdrawal_id:
                if record.status != WithdrawalStatus.PENDING:
                    raise WithdrawalStateError(f"Withdrawal {withdrawal_id} is already {record.status.value}")
                return record
        raise WithdrawalStateError(f"Withdrawal {withdrawal_id} not found")
