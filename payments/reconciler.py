from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional
from uuid import UUID

from core.config import Settings, get_settings
from core.errors import DuplicateKeyError
from core.logging_core import get_logger
from core.storage import InMemoryStorage
from ledger.service import AccountNotFoundError
from ledger.subscriptions import SubscriptionService
from referrals.commission import CommissionDistributor

from .gateway import (
    GatewayError,
    InvalidSignatureError,
    JazzCashClient,
    PaymentError,
    build_payment_payload,
    from_minor_units,
    interpret_inquiry_response,
    interpret_response_code,
    make_txn_ref,
    verify_secure_hash,
)
from .models import (
    InitiatePaymentRequest,
    InitiatePaymentResult,
    InquiryStatus,
    PendingTransaction,
    SettlementSource,
    StatusInquiryResult,
    Transaction,
    TransactionStatus,
)

logger = get_logger(__name__)


class PendingTransactionNotFoundError(PaymentError):
    pass


def _account_id_from(value: Any) -> Optional[UUID]:
    if not value:
        return None
    try:
        return UUID(str(value))
    except ValueError:
        return None


class SettlementReconciler:
    """Holds submitted payments until the gateway reports a terminal status.

    The background scan (``process_due``), the client "check now" path
    (``check_now``) and gateway callbacks (``handle_callback``) all settle
    through ``_promote``, whose Pending -> Transaction move is the single
    de-duplication point. Subscription activation and commission
    distribution run only for the caller that performed that move.
    """

    def __init__(
        self,
        storage: InMemoryStorage,
        gateway: JazzCashClient,
        subscriptions: SubscriptionService,
        distributor: CommissionDistributor,
        settings: Optional[Settings] = None,
    ):
        self.storage = storage
        self.gateway = gateway
        self.subscriptions = subscriptions
        self.distributor = distributor
        self.settings = settings or get_settings()

    @property
    def initial_poll_delay(self) -> timedelta:
        return timedelta(seconds=self.settings.initial_poll_delay_seconds)

    @property
    def retry_delay(self) -> timedelta:
        return timedelta(seconds=self.settings.retry_delay_seconds)

    def initiate_payment(self, request: InitiatePaymentRequest, now: Optional[datetime] = None) -> InitiatePaymentResult:
        now = now or datetime.now(timezone.utc)
        if self.storage.get_account(request.account_id) is None:
            raise AccountNotFoundError(f"Account {request.account_id} not found")

        payload = build_payment_payload(
            self.settings,
            request.amount,
            make_txn_ref(now),
            now,
            account_id=request.account_id,
            mobile_number=request.mobile_number,
            cnic_last_six=request.cnic_last_six,
        )
        try:
            response = self.gateway.submit_payment(payload)
        except GatewayError as e:
            # The request may still have reached the gateway; the poller finds out.
            logger.warning("Submission of %s failed: %s", payload["pp_TxnRefNo"], e)
            response = {"error": str(e)}

        pending = self.record_submission(payload, response, account_id=request.account_id, now=now)
        return InitiatePaymentResult(
            txn_ref=pending.txn_ref,
            status_inquiry_scheduled_for=pending.status_inquiry_scheduled_for,
            response_code=response.get("pp_ResponseCode"),
            response_message=response.get("pp_ResponseMessage"),
        )

    def record_submission(
        self,
        payload: Mapping[str, Any],
        response: Optional[Mapping[str, Any]] = None,
        account_id: Optional[UUID] = None,
        now: Optional[datetime] = None,
    ) -> PendingTransaction:
        now = now or datetime.now(timezone.utc)
        response = dict(response or {})
        txn_ref = payload.get("pp_TxnRefNo")
        if not txn_ref:
            raise PaymentError("Payment payload has no pp_TxnRefNo")

        doc = {
            "txn_ref": txn_ref,
            "account_id": account_id or _account_id_from(payload.get("ppmpf_1")),
            "amount_minor": int(payload.get("pp_Amount") or 0),
            "currency": payload.get("pp_TxnCurrency") or self.settings.jazzcash_currency,
            "txn_datetime": payload.get("pp_TxnDateTime"),
            "response_code": response.get("pp_ResponseCode"),
            "request_payload": dict(payload),
            "response_payload": response,
            "created_at": now,
            "status_inquiry_scheduled_for": now + self.initial_poll_delay,
            "last_checked": None,
            "inquiry_attempts": 0,
            "last_error": response.get("error"),
        }
        try:
            self.storage.insert_pending(doc)
        except DuplicateKeyError as e:
            raise PaymentError(f"Transaction {txn_ref} is already recorded") from e

        logger.info("Pending transaction %s recorded, first inquiry at %s",
                    txn_ref, doc["status_inquiry_scheduled_for"].isoformat())
        return PendingTransaction(**doc)

    def check_now(self, txn_ref: str, now: Optional[datetime] = None) -> StatusInquiryResult:
        now = now or datetime.now(timezone.utc)
        settled = self._settled_result(txn_ref)
        if settled is not None:
            return settled

        pending = self.storage.get_pending(txn_ref)
        if pending is None:
            settled = self._settled_result(txn_ref)
            if settled is not None:
                return settled
            raise PendingTransactionNotFoundError(f"Transaction {txn_ref} not found")

        if now < pending["status_inquiry_scheduled_for"]:
            return self._waiting(txn_ref, pending, now)
        return self._settle(txn_ref, now)

    def process_due(self, now: Optional[datetime] = None) -> list[StatusInquiryResult]:
        now = now or datetime.now(timezone.utc)
        results = []
        due = self.storage.due_pending(now)
        if due:
            logger.info("Found %d pending transaction(s) due for inquiry", len(due))
        for pending in due:
            try:
                results.append(self._settle(pending["txn_ref"], now))
            except Exception:
                logger.exception("Error checking transaction %s", pending["txn_ref"])

        self.retry_fulfilment(now)
        return results

    def retry_fulfilment(self, now: Optional[datetime] = None) -> list[str]:
        """Re-run activation and commission for successful payments left unfulfilled."""
        now = now or datetime.now(timezone.utc)
        fulfilled = []
        for doc in self.storage.unfulfilled_transactions(TransactionStatus.SUCCESS, now):
            claimed = self.storage.claim_fulfilment(doc["txn_ref"], now, now + self.retry_delay)
            if claimed is None:
                continue
            logger.info("Retrying fulfilment of %s (attempt %d)", claimed["txn_ref"], claimed["fulfilment_attempts"])
            if self._on_payment_confirmed(Transaction(**claimed), now):
                fulfilled.append(claimed["txn_ref"])
        return fulfilled

    def handle_callback(self, payload: Mapping[str, Any], now: Optional[datetime] = None) -> StatusInquiryResult:
        now = now or datetime.now(timezone.utc)
        txn_ref = payload.get("pp_TxnRefNo")
        if not txn_ref:
            raise PaymentError("Callback has no pp_TxnRefNo")

        salt = self.settings.jazzcash_integrity_salt
        if not salt:
            logger.error("Rejected callback for %s: no integrity salt configured to verify it", txn_ref)
            raise InvalidSignatureError(f"Cannot verify callback for {txn_ref}")
        if not verify_secure_hash(payload, salt):
            logger.warning("Rejected callback for %s: secure hash mismatch", txn_ref)
            raise InvalidSignatureError(f"Invalid secure hash for {txn_ref}")

        code = payload.get("pp_ResponseCode")
        if not code:
            raise PaymentError(f"Callback for {txn_ref} has no pp_ResponseCode")

        settled = self._settled_result(txn_ref)
        if settled is not None:
            logger.info("Callback replay for settled transaction %s ignored", txn_ref)
            return settled

        status = interpret_response_code(str(code))
        pending = self.storage.get_pending(txn_ref)
        if status == TransactionStatus.PENDING:
            if pending is None:
                try:
                    self.record_submission(payload, payload, now=now)
                except PaymentError:
                    settled = self._settled_result(txn_ref)
                    if settled is not None:
                        return settled
            return StatusInquiryResult(txn_ref=txn_ref, status=InquiryStatus.PENDING)

        if pending is None:
            pending = self._pending_from_callback(payload, now)
        return self._promote(pending, status, payload, now, SettlementSource.CALLBACK)

    def _settle(self, txn_ref: str, now: datetime) -> StatusInquiryResult:
        claimed = self.storage.claim_pending(txn_ref, now, now + self.retry_delay)
        if claimed is None:
            settled = self._settled_result(txn_ref)
            if settled is not None:
                return settled
            pending = self.storage.get_pending(txn_ref)
            if pending is None:
                raise PendingTransactionNotFoundError(f"Transaction {txn_ref} not found")
            return self._waiting(txn_ref, pending, now)

        try:
            body = self.gateway.inquire_status(txn_ref)
            status = interpret_inquiry_response(body)
        except GatewayError as e:
            logger.warning("Inquiry for %s failed, retry at %s: %s",
                           txn_ref, claimed["status_inquiry_scheduled_for"].isoformat(), e)
            self.storage.update_pending(txn_ref, last_error=str(e))
            if self._should_abandon(claimed, now):
                return self._abandon(claimed, now, str(e))
            return StatusInquiryResult(txn_ref=txn_ref, status=InquiryStatus.PENDING)

        if status == TransactionStatus.PENDING:
            self.storage.update_pending(
                txn_ref, response_code=body.get("pp_ResponseCode"), response_payload=body, last_error=None,
            )
            if self._should_abandon(claimed, now):
                return self._abandon(claimed, now, "still pending at gateway")
            logger.info("Transaction %s still pending, next inquiry at %s",
                        txn_ref, claimed["status_inquiry_scheduled_for"].isoformat())
            return StatusInquiryResult(txn_ref=txn_ref, status=InquiryStatus.PENDING)

        return self._promote(claimed, status, body, now, SettlementSource.INQUIRY)

    def _promote(
        self,
        pending: Mapping[str, Any],
        status: TransactionStatus,
        body: Mapping[str, Any],
        now: datetime,
        source: SettlementSource,
    ) -> StatusInquiryResult:
        txn_ref = pending["txn_ref"]
        request = pending.get("request_payload") or {}
        amount_minor = int(pending.get("amount_minor") or body.get("pp_Amount") or 0)
        doc = {
            "txn_ref": txn_ref,
            "account_id": pending.get("account_id"),
            "amount": from_minor_units(amount_minor),
            "amount_minor": amount_minor,
            "currency": pending.get("currency") or self.settings.jazzcash_currency,
            "status": status,
            "source": source,
            "bill_reference": body.get("pp_BillReference") or request.get("pp_BillReference"),
            "description": body.get("pp_Description") or request.get("pp_Description"),
            "response_code": body.get("pp_ResponseCode"),
            "response_message": body.get("pp_ResponseMessage"),
            "payment_response_code": body.get("pp_PaymentResponseCode"),
            "secure_hash": body.get("pp_SecureHash"),
            "raw": dict(body),
            "created_at": now,
            "fulfilled": False,
            "fulfilled_at": None,
            "commission_distributed_at": None,
            "fulfilment_error": None,
        }
        if status == TransactionStatus.SUCCESS:
            # The promoting caller holds the first fulfilment claim.
            doc["fulfilment_attempts"] = 1
            doc["fulfilment_claimed_until"] = now + self.retry_delay

        if self.storage.promote_pending(txn_ref, doc):
            logger.info("Transaction %s settled as %s via %s", txn_ref, status.value, source.value)
            if status == TransactionStatus.SUCCESS:
                self._on_payment_confirmed(Transaction(**doc), now)
        else:
            logger.info("Transaction %s was already settled, promotion skipped", txn_ref)

        return self._settled_result(txn_ref)

    def _on_payment_confirmed(self, txn: Transaction, now: datetime) -> bool:
        """Activate the buyer and pay the chain; True once both are done.

        Activation is a no-op while a subscription is current, so a retry may
        repeat it. Commission is guarded by ``commission_distributed_at``.
        """
        if txn.account_id is None:
            logger.warning("Successful transaction %s carries no account id, nothing to activate", txn.txn_ref)
            return False
        try:
            self.subscriptions.activate(txn.account_id, txn.amount, txn.txn_ref, now)
            if txn.amount > 0:
                self._distribute_once(txn, now)
        except Exception as e:
            logger.exception("Fulfilment of %s failed, the settlement scan will retry it", txn.txn_ref)
            self.storage.update_transaction(txn.txn_ref, fulfilment_error=str(e))
            return False
        self.storage.update_transaction(
            txn.txn_ref, fulfilled=True, fulfilled_at=now, fulfilment_claimed_until=None, fulfilment_error=None,
        )
        return True

    def _distribute_once(self, txn: Transaction, now: datetime) -> None:
        with self.storage.atomic():
            current = self.storage.get_transaction(txn.txn_ref)
            if current is not None and current.get("commission_distributed_at") is not None:
                logger.info("Commission for %s already distributed", txn.txn_ref)
                return
            self.distributor.distribute(txn.account_id, txn.amount, reference=txn.txn_ref, now=now)
            self.storage.update_transaction(txn.txn_ref, commission_distributed_at=now)

    def _should_abandon(self, pending: Mapping[str, Any], now: datetime) -> bool:
        max_attempts = self.settings.max_inquiry_attempts
        if max_attempts is not None and pending.get("inquiry_attempts", 0) >= max_attempts:
            return True
        max_age = self.settings.max_pending_age_hours
        if max_age is not None and now - pending["created_at"] >= timedelta(hours=max_age):
            return True
        return False

    def _abandon(self, pending: Mapping[str, Any], now: datetime, reason: str) -> StatusInquiryResult:
        logger.warning("Abandoning transaction %s after %d inquiries: %s",
                       pending["txn_ref"], pending.get("inquiry_attempts", 0), reason)
        body = dict(pending.get("response_payload") or {})
        body.setdefault("pp_ResponseMessage", reason)
        return self._promote(pending, TransactionStatus.ABANDONED, body, now, SettlementSource.EXPIRY)

    def _pending_from_callback(self, payload: Mapping[str, Any], now: datetime) -> dict:
        return {
            "txn_ref": payload["pp_TxnRefNo"],
            "account_id": _account_id_from(payload.get("ppmpf_1")),
            "amount_minor": int(payload.get("pp_Amount") or 0),
            "currency": payload.get("pp_TxnCurrency") or self.settings.jazzcash_currency,
            "request_payload": {},
            "created_at": now,
        }

    def _settled_result(self, txn_ref: str) -> Optional[StatusInquiryResult]:
        doc = self.storage.get_transaction(txn_ref)
        if doc is None:
            return None
        txn = Transaction(**doc)
        return StatusInquiryResult(txn_ref=txn_ref, status=InquiryStatus(txn.status.value), transaction=txn)

    def _waiting(self, txn_ref: str, pending: Mapping[str, Any], now: datetime) -> StatusInquiryResult:
        remaining = pending["status_inquiry_scheduled_for"] - now
        return StatusInquiryResult(
            txn_ref=txn_ref,
            status=InquiryStatus.WAITING,
            remaining_time_ms=max(0, int(remaining.total_seconds() * 1000)),
        )
