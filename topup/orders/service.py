"""
Order Service

Creates orders, opens checkout sessions, cancels, expires and reconciles.
Every status change goes through OrderStore.compare_and_transition; a
ConflictError from it means another actor already moved the order and is
treated as an idempotent no-op.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from topup.catalog import Catalog
from topup.errors import (
    ConflictError,
    DuplicateIdempotencyKeyError,
    GatewayError,
    InvalidRequestError,
    ERROR_IDEMPOTENCY_KEY_REUSED,
    ERROR_ORDER_CLOSED_DURING_CREATION,
    ERROR_ORDER_STILL_CREATING,
    ERROR_MISSING_FIELDS,
    ERROR_PRODUCT_NOT_FOUND,
)
from topup.logging import get_logger, sanitize_id_for_logging, sanitize_string_for_logging
from topup.notifications.dispatcher import NotificationDispatcher
from topup.orders.ids import OrderIdGenerator
from topup.orders.models import (
    OPEN_STATES,
    CreatedOrder,
    Order,
    OrderStatus,
    SweepReport,
    utcnow,
)
from topup.orders.store import OrderStore
from topup.payments.gateway import CheckoutSession, PaymentGateway, PaymentOutcome

logger = get_logger(__name__)

# Gateway outcomes that settle an awaiting order
SETTLING_OUTCOMES: dict[PaymentOutcome, OrderStatus] = {
    PaymentOutcome.PAID: OrderStatus.PAID,
    PaymentOutcome.FAILED: OrderStatus.FAILED,
}


def _is_retryable_gateway_error(error: BaseException) -> bool:
    return isinstance(error, GatewayError) and error.retryable


class OrderService:
    """Order lifecycle operations."""

    def __init__(
        self,
        store: OrderStore,
        catalog: Catalog,
        gateway: PaymentGateway,
        dispatcher: NotificationDispatcher,
        id_generator: OrderIdGenerator,
        awaiting_payment_timeout: timedelta = timedelta(minutes=15),
        gateway_max_attempts: int = 3,
        gateway_backoff_seconds: float = 0.5,
        reconcile_before_expiry: bool = True,
    ):
        self.store = store
        self.catalog = catalog
        self.gateway = gateway
        self.dispatcher = dispatcher
        self.id_generator = id_generator
        self.awaiting_payment_timeout = awaiting_payment_timeout
        self.gateway_max_attempts = gateway_max_attempts
        self.gateway_backoff_seconds = gateway_backoff_seconds
        self.reconcile_before_expiry = reconcile_before_expiry

    # ==================== CREATE ====================

    async def create_order(
        self,
        product_id: str,
        user_id: str,
        idempotency_key: Optional[str] = None,
    ) -> CreatedOrder:
        """
        Create an order and open its checkout session.

        Args:
            product_id: Catalog product id
            user_id: Player ID / UID in the game
            idempotency_key: Optional client key; repeats return the first order

        Returns:
            CreatedOrder with order_id and pay_url

        Raises:
            InvalidRequestError: Unknown product, empty user id, reused key
            GatewayError: Gateway unavailable after retries (order is failed)
            ConflictError: Order closed while its checkout was being opened,
                or a replay of a request still in progress
        """
        product_id = (product_id or "").strip()
        user_id = (user_id or "").strip()
        if not product_id or not user_id:
            raise InvalidRequestError(ERROR_MISSING_FIELDS)

        product = self.catalog.get_product(product_id)
        if product is None:
            raise InvalidRequestError(ERROR_PRODUCT_NOT_FOUND)

        if idempotency_key:
            existing = await self.store.get_by_idempotency_key(idempotency_key)
            if existing is not None:
                return self._replay(existing, product_id, user_id)

        order = self._new_order(product_id, user_id, product.price, idempotency_key)
        try:
            await self.store.put(order)
        except DuplicateIdempotencyKeyError:
            # A concurrent request with the same key stored its order first
            existing = await self.store.get_by_idempotency_key(idempotency_key)
            if existing is None:
                raise
            return self._replay(existing, product_id, user_id)

        logger.info(
            "Order %s created: product=%s user=%s amount=%s",
            sanitize_id_for_logging(order.order_id),
            product_id,
            sanitize_string_for_logging(user_id, 32),
            order.amount,
        )

        try:
            session = await self._open_checkout_session(order, product.name)
        except GatewayError as e:
            logger.error(
                "Gateway failed for order %s: %s",
                sanitize_id_for_logging(order.order_id),
                e.message,
            )
            await self._transition_quietly(order.order_id, OrderStatus.PENDING, OrderStatus.FAILED)
            raise

        def bind_session(draft: Order) -> None:
            draft.payment_reference = session.reference
            draft.pay_url = session.pay_url

        try:
            await self.store.compare_and_transition(
                order.order_id,
                OrderStatus.PENDING,
                OrderStatus.AWAITING_PAYMENT,
                bind_session,
            )
        except ConflictError as e:
            # Cancelled or expired while the gateway call was in flight
            logger.warning(
                "Order %s moved to '%s' during checkout, gateway session %s left unused",
                sanitize_id_for_logging(order.order_id),
                e.current_status,
                sanitize_string_for_logging(session.reference, 64),
            )
            raise ConflictError(
                ERROR_ORDER_CLOSED_DURING_CREATION, current_status=e.current_status
            ) from e
        return CreatedOrder(order_id=order.order_id, pay_url=session.pay_url)

    def _new_order(
        self,
        product_id: str,
        user_id: str,
        amount: int,
        idempotency_key: Optional[str] = None,
    ) -> Order:
        # Amount is snapshotted here and never recomputed
        return Order(
            order_id=self.id_generator.new_id(),
            product_id=product_id,
            user_id=user_id,
            amount=amount,
            status=OrderStatus.PENDING,
            idempotency_key=idempotency_key or None,
        )

    def _replay(self, existing: Order, product_id: str, user_id: str) -> CreatedOrder:
        """Answer a repeated create request from the stored order."""
        if existing.product_id != product_id or existing.user_id != user_id:
            raise InvalidRequestError(ERROR_IDEMPOTENCY_KEY_REUSED)
        if existing.status == OrderStatus.FAILED:
            raise GatewayError()
        if existing.pay_url is None:
            if existing.is_terminal:
                raise ConflictError(
                    ERROR_ORDER_CLOSED_DURING_CREATION, current_status=existing.status.value
                )
            # First request still talking to the gateway
            raise ConflictError(ERROR_ORDER_STILL_CREATING, current_status=existing.status.value)
        logger.info("Idempotent replay for order %s", sanitize_id_for_logging(existing.order_id))
        return CreatedOrder(order_id=existing.order_id, pay_url=existing.pay_url)

    async def _open_checkout_session(self, order: Order, description: str) -> CheckoutSession:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.gateway_max_attempts),
            wait=wait_exponential(multiplier=self.gateway_backoff_seconds, max=5),
            retry=retry_if_exception(_is_retryable_gateway_error),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self.gateway.create_checkout_session(
                    order.order_id, order.amount, description
                )
        raise GatewayError()  # pragma: no cover - AsyncRetrying either returns or reraises

    # ==================== QUERY ====================

    async def get_order(self, order_id: str) -> Order:
        return await self.store.get(order_id)

    # ==================== CANCEL ====================

    async def cancel_order(self, order_id: str) -> Order:
        """
        Cancel an open order. A no-op on terminal orders.

        Returns:
            The order after the attempt
        """
        order = await self.store.get(order_id)
        if order.status not in OPEN_STATES:
            logger.info(
                "Cancel ignored for order %s in '%s'",
                sanitize_id_for_logging(order_id),
                order.status.value,
            )
            return order

        try:
            updated = await self.store.compare_and_transition(
                order_id, order.status, OrderStatus.CANCELLED
            )
        except ConflictError:
            # Moved on between read and write; report where it landed
            return await self.store.get(order_id)

        self.dispatcher.enqueue(order_id, OrderStatus.CANCELLED)
        return updated

    # ==================== PAYMENT OUTCOMES ====================

    async def apply_payment_outcome(self, order: Order, target: OrderStatus) -> tuple[Order, bool]:
        """
        Move an awaiting order to paid/failed.

        Returns:
            (order after the attempt, whether this call performed the transition)
        """
        try:
            updated = await self.store.compare_and_transition(
                order.order_id, OrderStatus.AWAITING_PAYMENT, target
            )
        except ConflictError:
            return await self.store.get(order.order_id), False

        self.dispatcher.enqueue(order.order_id, target)
        return updated, True

    async def reconcile_order(self, order_id: str) -> Order:
        """
        Ask the gateway for the outcome of an awaiting order and apply it.

        Pending/unknown answers leave the order untouched.

        Raises:
            GatewayError: Gateway could not be reached
        """
        order = await self.store.get(order_id)
        if order.status != OrderStatus.AWAITING_PAYMENT or not order.payment_reference:
            return order

        outcome = await self.gateway.get_payment_status(order.payment_reference)
        target = SETTLING_OUTCOMES.get(outcome)
        if target is None:
            logger.debug(
                "Reconcile: order %s still '%s' at gateway",
                sanitize_id_for_logging(order_id),
                outcome.value,
            )
            return order

        logger.info(
            "Reconcile: gateway reports '%s' for order %s",
            outcome.value,
            sanitize_id_for_logging(order_id),
        )
        updated, _ = await self.apply_payment_outcome(order, target)
        return updated

    # ==================== EXPIRY ====================

    async def expire_stale_orders(self, now: Optional[datetime] = None) -> SweepReport:
        """
        Expire open orders with no progress within the payment window.

        Awaiting orders are reconciled with the gateway first, so a payment
        the webhook never delivered is not lost. When the gateway cannot be
        reached the order is left for the next sweep.
        """
        now = now or utcnow()
        cutoff = now - self.awaiting_payment_timeout
        stale = await self.store.list_by_status(OPEN_STATES, updated_before=cutoff)
        report = SweepReport(checked=len(stale))

        for order in stale:
            if order.status == OrderStatus.AWAITING_PAYMENT and self.reconcile_before_expiry:
                try:
                    reconciled = await self.reconcile_order(order.order_id)
                except GatewayError as e:
                    logger.warning(
                        "Sweep: cannot reconcile order %s, retrying next sweep: %s",
                        sanitize_id_for_logging(order.order_id),
                        e.message,
                    )
                    report.skipped += 1
                    continue
                if reconciled.status != OrderStatus.AWAITING_PAYMENT:
                    report.reconciled += 1
                    continue

            try:
                await self.store.compare_and_transition(
                    order.order_id, order.status, OrderStatus.EXPIRED
                )
            except ConflictError:
                # A webhook or cancel won the race
                report.skipped += 1
                continue

            self.dispatcher.enqueue(order.order_id, OrderStatus.EXPIRED)
            report.expired += 1

        if report.checked:
            logger.info(
                "Expiry sweep: checked=%s expired=%s reconciled=%s skipped=%s",
                report.checked, report.expired, report.reconciled, report.skipped,
            )
        return report

    # ==================== HELPERS ====================

    async def _transition_quietly(
        self, order_id: str, expected: OrderStatus, target: OrderStatus
    ) -> None:
        """Transition and notify; a lost race is only logged."""
        try:
            await self.store.compare_and_transition(order_id, expected, target)
        except ConflictError as e:
            logger.info(
                "Order %s already moved to '%s'",
                sanitize_id_for_logging(order_id),
                e.current_status,
            )
            return
        self.dispatcher.enqueue(order_id, target)
