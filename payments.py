"""
Payment reconciliation.

Checkout happens on Stripe's hosted page. When the client comes back with the
session id, `reconcile` turns the paid session into exactly one payment
record (keyed by the payment intent id) and marks the tuition paid. Calling
it again for the same session is harmless.
"""
import logging
from typing import Any, Dict, List, Optional

import stripe
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from accounts import AccountService
from config import Settings
from database import PAYMENTS, get_documents, now, oid, serialize
from errors import ExternalServiceError, NotFound, ValidationError
from listings import ListingService
from schemas import CheckoutSession, Payment, parse

logger = logging.getLogger(__name__)


def to_minor_units(amount: float) -> int:
    return int(round(float(amount) * 100))


class StripeGateway:
    """Thin wrapper around a StripeClient; the only place that talks to Stripe."""

    def __init__(self, client: stripe.StripeClient):
        self.client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> "StripeGateway":
        if not settings.stripe_secret_key:
            raise RuntimeError("STRIPE_SECRET_KEY is not set")
        client = stripe.StripeClient(
            settings.stripe_secret_key,
            http_client=stripe.RequestsClient(timeout=settings.http_timeout_seconds),
            max_network_retries=0,
        )
        return cls(client)

    def create_session(
        self,
        line_item: Dict[str, Any],
        customer_email: str,
        metadata: Dict[str, str],
        success_url: str,
        cancel_url: str,
    ) -> str:
        try:
            session = self.client.checkout.sessions.create(params={
                "mode": "payment",
                "line_items": [line_item],
                "customer_email": customer_email,
                "metadata": metadata,
                "success_url": success_url,
                "cancel_url": cancel_url,
            })
        except stripe.StripeError as e:
            logger.exception("Stripe checkout session creation failed")
            raise ExternalServiceError(f"Payment provider error: {e.user_message or 'unavailable'}") from e
        return session.url

    def retrieve_session(self, session_id: str) -> CheckoutSession:
        try:
            session = self.client.checkout.sessions.retrieve(session_id)
        except stripe.InvalidRequestError as e:
            raise NotFound("Checkout session not found") from e
        except stripe.StripeError as e:
            logger.exception(f"Stripe session lookup failed for {session_id}")
            raise ExternalServiceError("Payment provider unavailable") from e
        return CheckoutSession(
            id=session.id,
            payment_intent=session.payment_intent if isinstance(session.payment_intent, str) else getattr(session.payment_intent, "id", None),
            payment_status=session.payment_status,
            amount_total=session.amount_total,
            currency=session.currency,
            customer_email=session.customer_email or getattr(session.customer_details, "email", None),
            metadata=dict(session.metadata or {}),
        )


class PaymentService:
    def __init__(self, db: Database, gateway, listings: ListingService, accounts: AccountService, settings: Settings):
        self.db = db
        self.gateway = gateway
        self.listings = listings
        self.accounts = accounts
        self.settings = settings
        self.payments = db[PAYMENTS]

    def create_checkout_session(self, payer_email: str, tuition_id: str, subject: str, amount: float) -> Dict[str, str]:
        if amount is None or float(amount) <= 0:
            raise ValidationError("Amount must be positive")
        tuition = self.listings.fetch(tuition_id)
        tuition_id = str(tuition["_id"])
        line_item = {
            "price_data": {
                "currency": self.settings.payment_currency,
                "product_data": {"name": f"Tuition payment: {subject}"},
                "unit_amount": to_minor_units(amount),
            },
            "quantity": 1,
        }
        metadata = {"tuitionId": tuition_id, "subject": subject, "amountMajorUnits": str(amount)}
        base = self.settings.client_url
        url = self.gateway.create_session(
            line_item,
            payer_email,
            metadata,
            success_url=f"{base}/payment-success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{base}/payment-cancelled",
        )
        logger.info(f"Checkout session opened by {payer_email} for tuition {tuition_id}")
        return {"url": url}

    def reconcile(self, session_id: str) -> Dict[str, Any]:
        if not session_id:
            raise ValidationError("session_id is required")
        session = self.gateway.retrieve_session(session_id)
        transaction_id = session.payment_intent
        if not transaction_id:
            return {"success": False, "message": "Payment not completed", "paymentStatus": session.payment_status}

        existing = self.payments.find_one({"transaction_id": transaction_id})
        if existing:
            return {"success": True, "message": "Already Exists", "payment": serialize(existing)}

        if session.payment_status != "paid":
            return {"success": False, "message": "Payment not completed", "paymentStatus": session.payment_status}

        tuition_id = session.metadata.get("tuitionId")
        if not tuition_id:
            raise ValidationError("Checkout session carries no tuition id")
        tuition_id = str(oid(tuition_id))

        # Repeatable step first; the insert below is the commit point
        if not self.listings.mark_paid(tuition_id):
            logger.warning(f"Payment {transaction_id} is for tuition {tuition_id}, which was not found")

        payment = parse(Payment, {
            "transaction_id": transaction_id,
            "amount": (session.amount_total or 0) / 100,
            "currency": session.currency or self.settings.payment_currency,
            "customer_email": session.customer_email,
            "tuition_id": tuition_id,
            "subject": session.metadata.get("subject"),
            "payment_status": session.payment_status,
            "paid_at": now(),
        })
        doc = payment.model_dump()
        doc["created_at"] = doc["paid_at"]

        # Unique index on transaction_id makes the insert the point of no return
        try:
            self.payments.insert_one(doc)
        except DuplicateKeyError:
            existing = self.payments.find_one({"transaction_id": transaction_id})
            return {"success": True, "message": "Already Exists", "payment": serialize(existing)}

        logger.info(f"Payment {transaction_id} recorded for tuition {tuition_id}")
        return {"success": True, "message": "Payment recorded", "payment": serialize(doc)}

    def list_payments(self, actor_email: str) -> List[Dict[str, Any]]:
        query: Optional[Dict[str, Any]] = None
        if not self.accounts.is_admin(actor_email):
            query = {"customer_email": actor_email.lower()}
        return get_documents(self.db, PAYMENTS, query, sort=[("paid_at", -1)])
