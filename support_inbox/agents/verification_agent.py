import asyncio
import logging
from typing import Optional

from config.settings import settings
from support_inbox.models.schemas import (
    Customer, CustomerSnapshot, Order, OrderSnapshot, VerificationRecord,
    VerificationResult, VerificationStatus, utc_now
)
from support_inbox.services.flag_checker import NegativeFlagChecker, flag_checker
from support_inbox.services.order_lookup import OrderLookupClient, order_client
from support_inbox.services.store import SupportStore, new_id, support_store
from support_inbox.services.text_patterns import IdentifierExtractor, identifier_extractor

logger = logging.getLogger(__name__)


class VerificationGate:
    """Gates protected intents behind a customer identity check.

    Once a thread holds a ``verified`` record the result is served from the
    store and the order lookup is never called again for that thread.
    """

    def __init__(self,
                 store: Optional[SupportStore] = None,
                 order_lookup: Optional[OrderLookupClient] = None,
                 extractor: Optional[IdentifierExtractor] = None,
                 checker: Optional[NegativeFlagChecker] = None,
                 auto_verify_without_lookup: Optional[bool] = None):
        self.name = "Verification Gate"
        self.store = store or support_store
        self.order_lookup = order_lookup or order_client
        self.extractor = extractor or identifier_extractor
        self.checker = checker or flag_checker
        self.auto_verify_without_lookup = (
            settings.AUTO_VERIFY_WITHOUT_ORDER_LOOKUP
            if auto_verify_without_lookup is None else auto_verify_without_lookup
        )
        self.timeout = settings.EXTERNAL_CALL_TIMEOUT_SECONDS

    def requires_verification(self, intent: Optional[str]) -> bool:
        return bool(intent) and intent in settings.PROTECTED_INTENTS

    def get_thread_verification(self, thread_id: str) -> Optional[VerificationResult]:
        verified = self.store.get_verified_record(thread_id)
        if verified:
            return verified.to_result(cached=True)
        latest = self.store.get_latest_verification(thread_id)
        return latest.to_result(cached=True) if latest else None

    def is_thread_verified(self, thread_id: str) -> bool:
        return self.store.get_verified_record(thread_id) is not None

    async def verify(self, thread_id: str,
                     email: Optional[str] = None,
                     order_number: Optional[str] = None,
                     message_text: Optional[str] = None) -> VerificationResult:
        cached = self.store.get_verified_record(thread_id)
        if cached:
            logger.info("Thread %s already verified, serving cached result", thread_id)
            return cached.to_result(cached=True)

        extracted = self.extractor.extract(message_text or "")
        email = (email or extracted.email or "").strip().lower() or None
        order_number = order_number or extracted.order_number

        if not order_number:
            return self._record(thread_id, VerificationResult(
                status=VerificationStatus.PENDING,
                message="No order number provided"
            ), email=email)

        if not self.order_lookup.is_configured():
            if self.auto_verify_without_lookup:
                logger.warning("Order lookup not configured, auto-verifying thread %s", thread_id)
                return self._record(thread_id, VerificationResult(
                    status=VerificationStatus.VERIFIED,
                    message="Order lookup not configured; auto-verified"
                ), email=email, order_number=order_number)
            return self._record(thread_id, VerificationResult(
                status=VerificationStatus.PENDING,
                message="Order lookup not configured",
                error="Order lookup is not configured"
            ), email=email, order_number=order_number)

        try:
            order = await asyncio.wait_for(
                self.order_lookup.get_order_by_number(order_number),
                timeout=self.timeout
            )
        except asyncio.TimeoutError:
            logger.error("Order lookup timed out for thread %s", thread_id)
            return self._record(thread_id, VerificationResult(
                status=VerificationStatus.PENDING,
                message="Order lookup failed",
                error="Order lookup timed out"
            ), email=email, order_number=order_number)
        except Exception as e:
            logger.error("Order lookup failed for thread %s: %s", thread_id, e)
            return self._record(thread_id, VerificationResult(
                status=VerificationStatus.PENDING,
                message="Order lookup failed",
                error=str(e)
            ), email=email, order_number=order_number)

        if order is None:
            logger.info("Order %s not found for thread %s", order_number, thread_id)
            return self._record(thread_id, VerificationResult(
                status=VerificationStatus.NOT_FOUND,
                message=f"Order {order_number} not found"
            ), email=email, order_number=order_number)

        order_snapshot = self._order_snapshot(order)

        # Flags win over a matching email
        flags = self.checker.check(customer=order.customer, order=order)
        if flags:
            customer_snapshot = self._customer_snapshot(order.customer, order, email)
            logger.warning("Thread %s flagged: %s", thread_id, ", ".join(flags))
            return self._record(thread_id, VerificationResult(
                status=VerificationStatus.FLAGGED,
                flags=flags,
                customer=customer_snapshot,
                order=order_snapshot,
                message="Customer has negative flags"
            ), email=email, order_number=order_number, customer_id=customer_snapshot.customer_id,
                order_id=order.id)

        message = "Customer verified"
        order_email = (order.email or (order.customer.email if order.customer else None) or "").lower()
        if email and order_email and email != order_email:
            # Soft check: recorded for operators, never blocks
            logger.warning("Thread %s: sender email differs from order email", thread_id)
            message = "Customer verified; sender email differs from order email"
            self.store.add_event(thread_id, "VERIFICATION_EMAIL_MISMATCH",
                                 {"order_number": order_number})

        customer = await self._enrich_customer(order, email)
        customer_snapshot = self._customer_snapshot(customer, order, email)

        return self._record(thread_id, VerificationResult(
            status=VerificationStatus.VERIFIED,
            customer=customer_snapshot,
            order=order_snapshot,
            message=message
        ), email=email, order_number=order_number, customer_id=customer_snapshot.customer_id,
            order_id=order.id)

    async def _enrich_customer(self, order: Order, email: Optional[str]) -> Optional[Customer]:
        """Best-effort fetch of order count and spend for the order's customer"""
        lookup_email = (order.customer.email if order.customer else None) or order.email or email
        if not lookup_email:
            return order.customer
        try:
            enriched = await asyncio.wait_for(
                self.order_lookup.get_customer_by_email(lookup_email),
                timeout=self.timeout
            )
        except Exception as e:
            logger.warning("Customer enrichment failed for order %s: %s", order.name, e)
            return order.customer
        return enriched or order.customer

    @staticmethod
    def _customer_snapshot(customer: Optional[Customer], order: Order,
                           email: Optional[str]) -> CustomerSnapshot:
        if customer is None:
            return CustomerSnapshot(email=order.email or email or "")
        return CustomerSnapshot(
            customer_id=customer.id,
            email=customer.email or order.email or email or "",
            name=customer.display_name,
            total_orders=customer.orders_count or 0,
            total_spent=customer.total_spent or 0.0
        )

    @staticmethod
    def _order_snapshot(order: Order) -> OrderSnapshot:
        return OrderSnapshot(
            order_id=order.id,
            number=order.name,
            status=order.financial_status,
            fulfillment_status=order.fulfillment_status,
            created_at=order.created_at,
            tracking=[t for f in order.fulfillments for t in f.tracking_info],
            line_items=order.line_items
        )

    def _record(self, thread_id: str, result: VerificationResult,
                email: Optional[str] = None,
                order_number: Optional[str] = None,
                customer_id: Optional[str] = None,
                order_id: Optional[str] = None) -> VerificationResult:
        """Persist the outcome, mirror it onto the thread and log an event"""
        record = VerificationRecord(
            id=new_id(),
            thread_id=thread_id,
            email=email,
            order_number=order_number,
            customer_id=customer_id,
            order_id=order_id,
            status=result.status,
            flags=result.flags,
            customer=result.customer,
            order=result.order,
            message=result.message,
            error=result.error
        )
        if not self.store.insert_verification(record):
            # Lost the race for the single verified slot
            winner = self.store.get_verified_record(thread_id)
            if winner:
                return winner.to_result(cached=True)

        fields = {"verification_status": result.status}
        if result.status == VerificationStatus.VERIFIED:
            fields["verified_at"] = utc_now()
        self.store.update_thread(thread_id, **fields)

        self.store.add_event(thread_id, "VERIFICATION_COMPLETED", {
            "status": result.status.value,
            "flags": result.flags,
            "order_number": order_number,
            "error": result.error
        })
        logger.info("Verification for thread %s: %s", thread_id, result.status.value)
        return result


# Global verification gate instance
verification_gate = VerificationGate()
