import hashlib
import hmac
import secrets
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Mapping, Optional
from uuid import UUID

import httpx

from core.config import Settings, get_settings
from core.errors import MarketplaceError
from core.logging_core import get_logger

from .models import TransactionStatus

logger = get_logger(__name__)

FIELD_PREFIX = "pp"
SECURE_HASH_FIELD = "pp_SecureHash"
SUCCESS_CODE = "000"
PENDING_CODES = frozenset({"124", "125"})
GATEWAY_DATETIME_FORMAT = "%Y%m%d%H%M%S"


class PaymentError(MarketplaceError):
    pass


class GatewayError(PaymentError):
    pass


class InvalidSignatureError(PaymentError):
    pass


def compute_secure_hash(fields: Mapping[str, Any], salt: str) -> str:
    """HMAC-SHA256 over ``salt&v1&v2...`` keyed by the salt.

    Values are taken from every ``pp``-prefixed field except the hash itself,
    skipping empty ones, in sorted key order.
    """
    values = [
        str(fields[key]) for key in sorted(fields)
        if key.startswith(FIELD_PREFIX) and key != SECURE_HASH_FIELD and fields[key] not in ("", None)
    ]
    message = "&".join([salt, *values])
    return hmac.new(salt.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest().upper()


def verify_secure_hash(fields: Mapping[str, Any], salt: str) -> bool:
    received = str(fields.get(SECURE_HASH_FIELD) or "")
    return hmac.compare_digest(received.upper(), compute_secure_hash(fields, salt))


def format_gateway_datetime(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime(GATEWAY_DATETIME_FORMAT)


def make_txn_ref(now: datetime) -> str:
    return f"T{format_gateway_datetime(now)}{secrets.randbelow(100000):05d}"


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(value: Any) -> Decimal:
    return (Decimal(str(value)) / 100).quantize(Decimal("0.01"))


def interpret_response_code(code: Optional[str]) -> TransactionStatus:
    if code == SUCCESS_CODE:
        return TransactionStatus.SUCCESS
    if code in PENDING_CODES:
        return TransactionStatus.PENDING
    return TransactionStatus.FAILED


def interpret_inquiry_response(body: Mapping[str, Any]) -> TransactionStatus:
    """Resolve a status-inquiry body to success, failed or pending.

    A ``000`` response code only says the inquiry went through; the payment
    outcome comes from ``pp_PaymentResponseCode`` or ``pp_Status`` when the
    gateway sends them.
    """
    code = body.get("pp_ResponseCode")
    if not code:
        raise GatewayError("Malformed inquiry response: missing pp_ResponseCode")

    status = interpret_response_code(str(code))
    if status != TransactionStatus.SUCCESS:
        return status

    payment_code = body.get("pp_PaymentResponseCode")
    if payment_code:
        return interpret_response_code(str(payment_code))

    payment_status = str(body.get("pp_Status") or "").strip().lower()
    if payment_status == "completed":
        return TransactionStatus.SUCCESS
    if payment_status == "pending":
        return TransactionStatus.PENDING
    if payment_status:
        return TransactionStatus.FAILED
    return TransactionStatus.SUCCESS


def build_payment_payload(
    settings: Settings,
    amount: Decimal,
    txn_ref: str,
    now: datetime,
    account_id: Optional[UUID] = None,
    mobile_number: str = "",
    cnic_last_six: Optional[str] = None,
    description: str = "Peace Market Subscription",
) -> dict:
    expiry = now + timedelta(minutes=settings.jazzcash_txn_expiry_minutes)
    amount_minor = to_minor_units(amount)
    payload = {
        "pp_Version": settings.jazzcash_version,
        "pp_TxnType": "MWALLET",
        "pp_Language": "EN",
        "pp_MerchantID": settings.jazzcash_merchant_id,
        "pp_SubMerchantID": "",
        "pp_Password": settings.jazzcash_password,
        "pp_BankID": "TBANK",
        "pp_ProductID": "RETL",
        "pp_TxnRefNo": txn_ref,
        "pp_Amount": str(amount_minor),
        "pp_TxnCurrency": settings.jazzcash_currency,
        "pp_TxnDateTime": format_gateway_datetime(now),
        "pp_BillReference": f"PM-SUB-{amount_minor}",
        "pp_Description": description,
        "pp_TxnExpiryDateTime": format_gateway_datetime(expiry),
        "pp_ReturnURL": settings.jazzcash_return_url,
        "pp_MobileNumber": mobile_number,
        "pp_CNIC": cnic_last_six or "",
        "pp_SecureHash": "",
        "ppmpf_1": str(account_id) if account_id else "",
        "ppmpf_2": "",
        "ppmpf_3": "",
        "ppmpf_4": "",
        "ppmpf_5": "",
    }
    payload[SECURE_HASH_FIELD] = compute_secure_hash(payload, settings.jazzcash_integrity_salt)
    return payload


def build_inquiry_payload(settings: Settings, txn_ref: str) -> dict:
    payload = {
        "pp_TxnRefNo": txn_ref,
        "pp_MerchantID": settings.jazzcash_merchant_id,
        "pp_Password": settings.jazzcash_password,
        "pp_SecureHash": "",
    }
    payload[SECURE_HASH_FIELD] = compute_secure_hash(payload, settings.jazzcash_integrity_salt)
    return payload


class JazzCashClient:
    """Thin JSON client for the mobile-wallet and status-inquiry endpoints.

    Every transport, HTTP-status or decoding problem surfaces as
    ``GatewayError`` so callers can leave pending records untouched.
    """

    def __init__(self, settings: Optional[Settings] = None, http_client: Optional[httpx.Client] = None):
        self.settings = settings or get_settings()
        self._client = http_client or httpx.Client(timeout=self.settings.gateway_timeout_seconds)

    def submit_payment(self, payload: dict) -> dict:
        logger.info("Submitting payment %s (%s minor units)", payload.get("pp_TxnRefNo"), payload.get("pp_Amount"))
        return self._post(self.settings.jazzcash_payment_url, payload)

    def inquire_status(self, txn_ref: str) -> dict:
        logger.debug("Status inquiry for %s", txn_ref)
        return self._post(self.settings.jazzcash_inquiry_url, build_inquiry_payload(self.settings, txn_ref))

    def close(self) -> None:
        self._client.close()

    def _post(self, url: str, payload: dict) -> dict:
        ref = payload.get("pp_TxnRefNo")
        try:
            response = self._client.post(url, json=payload, timeout=self.settings.gateway_timeout_seconds)
            response.raise_for_status()
            body = response.json()
        except httpx.TimeoutException as e:
            raise GatewayError(f"Gateway timed out for {ref}") from e
        except httpx.HTTPStatusError as e:
            raise GatewayError(f"Gateway returned HTTP {e.response.status_code} for {ref}") from e
        except httpx.HTTPError as e:
            raise GatewayError(f"Gateway request failed for {ref}: {e}") from e
        except ValueError as e:
            raise GatewayError(f"Gateway returned a non-JSON body for {ref}") from e

        if not isinstance(body, dict):
            raise GatewayError(f"Gateway returned an unexpected body for {ref}")
        return body
