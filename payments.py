"""
Paystack client used to initialise and verify payments.

Every gateway call carries a bounded timeout; a timeout or transport error
is reported as a failed verification, never retried.
"""
import os
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol

import requests
from pydantic import BaseModel

from errors import PaymentVerificationFailed, ShopError

logger = logging.getLogger(__name__)

PAYSTACK_SECRET_KEY = os.getenv("PAYSTACK_SECRET_KEY")
PAYSTACK_BASE_URL = os.getenv("PAYSTACK_BASE_URL", "https://api.paystack.co")
PAYMENT_TIMEOUT_SECONDS = float(os.getenv("PAYMENT_TIMEOUT_SECONDS", 15))


class PaymentVerification(BaseModel):
    status: str
    reference: str
    transaction_id: Optional[str] = None
    amount: float = 0.0
    paid_at: Optional[datetime] = None
    channel: Optional[str] = None

    @property
    def successful(self) -> bool:
        return self.status == "success"


class PaymentVerifier(Protocol):
    def verify(self, reference: str) -> PaymentVerification:
        ...


class PaymentInitFailed(ShopError):
    kind = "PaymentInitFailed"
    status_code = 502


def _parse_paid_at(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Unparseable paid_at from gateway: %r", value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class PaystackClient:
    def __init__(self, secret_key: Optional[str] = None, base_url: str = PAYSTACK_BASE_URL,
                 timeout: float = PAYMENT_TIMEOUT_SECONDS, session: Optional[requests.Session] = None):
        self.secret_key = secret_key or PAYSTACK_SECRET_KEY
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        if not self.secret_key:
            raise PaymentVerificationFailed("PAYSTACK_SECRET_KEY not configured")
        return {"Authorization": f"Bearer {self.secret_key}", "Content-Type": "application/json"}

    def verify(self, reference: str) -> PaymentVerification:
        url = f"{self.base_url}/transaction/verify/{reference}"
        logger.info("Verifying payment %s", reference)
        try:
            resp = self.session.get(url, headers=self._headers(), timeout=self.timeout)
            body = resp.json()
        except requests.Timeout:
            logger.warning("Payment verification timed out for %s", reference)
            raise PaymentVerificationFailed("Payment verification timed out")
        except (requests.RequestException, ValueError) as e:
            logger.warning("Payment verification failed for %s: %s", reference, e)
            raise PaymentVerificationFailed("Payment verification failed")

        if resp.status_code >= 300 or not body.get("status"):
            logger.warning("Gateway rejected reference %s (%s): %s", reference, resp.status_code, body.get("message"))
            raise PaymentVerificationFailed("Payment verification failed")

        data = body.get("data") or {}
        transaction_id = data.get("id")
        return PaymentVerification(
            status=data.get("status") or "unknown",
            reference=data.get("reference") or reference,
            transaction_id=str(transaction_id) if transaction_id is not None else None,
            amount=(data.get("amount") or 0) / 100.0,
            paid_at=_parse_paid_at(data.get("paid_at") or data.get("paidAt")),
            channel=data.get("channel"),
        )

    def initialize(self, email: str, amount: float, reference: str,
                   metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        payload = {
            "email": email,
            "amount": int(round(amount * 100)),  # kobo
            "reference": reference,
            "metadata": metadata or {},
        }
        try:
            resp = self.session.post(f"{self.base_url}/transaction/initialize", json=payload,
                                     headers=self._headers(), timeout=self.timeout)
            body = resp.json()
        except (requests.RequestException, ValueError) as e:
            logger.warning("Payment initialisation failed for %s: %s", reference, e)
            raise PaymentInitFailed("Error initializing payment")
        if resp.status_code >= 300 or not body.get("status"):
            raise PaymentInitFailed("Failed to initialize payment")
        data = body.get("data") or {}
        return {
            "authorization_url": data.get("authorization_url"),
            "access_code": data.get("access_code"),
            "reference": data.get("reference") or reference,
        }


def get_payment_verifier() -> PaystackClient:
    return PaystackClient()
