"""
Checkout orchestrator — sequences eligibility, discount, ledger creation,
payment and settlement for one checkout session, and always leaves the
session in a terminal, user-visible state.

One attempt runs as a single task; stages never overlap. Each suspending
call has a deadline, and ``cancel_checkout`` interrupts the attempt at the
next safe point (an in-flight ledger create is allowed to finish so the
order it produced can be marked failed).
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Union

from storefront_checkout.config import CheckoutConfig
from storefront_checkout.coupons import DiscountCalculator
from storefront_checkout.eligibility import EligibilityVerifier, shorten_address
from storefront_checkout.errors import (
    CheckoutCancelled,
    CheckoutError,
    ConfirmationTimeout,
    EligibilityError,
    LedgerError,
    RailError,
    ReconciliationMismatch,
    SettlementFailed,
    TransportError,
    ValidationError,
)
from storefront_checkout.ledger import OrderLedgerClient, free_order_reference
from storefront_checkout.models.cart import CartLine, ShippingInfo, cart_total, collection_ids
from storefront_checkout.models.order import (
    BatchOrder,
    BatchOrderStatus,
    CheckoutRequest,
    CheckoutSession,
    OrderProgress,
    ProgressState,
)
from storefront_checkout.models.payment import PaymentSubmission, requires_wallet
from storefront_checkout.models.settlement import ExpectedSettlement
from storefront_checkout.rails.dispatcher import PaymentRailDispatcher
from storefront_checkout.settlement import SettlementMonitor

logger = logging.getLogger(__name__)

CartClearedHook = Callable[[CheckoutSession], Union[None, Awaitable[None]]]

CANCELLABLE = (ProgressState.CREATING_ORDER, ProgressState.PROCESSING_PAYMENT)
# Errors after which a retry re-watches the submitted payment instead of paying again.
RESUME_WATCH_CODES = ("confirmation_timeout", "finalize_failed")
BUYER_CHECKED_RAILS = ("default", "spl_token")


class CheckoutOrchestrator:
    def __init__(
        self,
        verifier: EligibilityVerifier,
        discounts: DiscountCalculator,
        ledger: OrderLedgerClient,
        dispatcher: PaymentRailDispatcher,
        monitor: SettlementMonitor,
        config: Optional[CheckoutConfig] = None,
        on_cart_cleared: Optional[CartClearedHook] = None,
    ):
        self._verifier = verifier
        self._discounts = discounts
        self._ledger = ledger
        self._dispatcher = dispatcher
        self._monitor = monitor
        self._config = config or CheckoutConfig()
        self._on_cart_cleared = on_cart_cleared
        self._sessions: dict[str, CheckoutSession] = {}
        self._cancel_events: dict[str, asyncio.Event] = {}
        self._running: dict[str, asyncio.Task] = {}

    # ── public surface ──────────────────────────────────────────────────────

    def open_session(
        self,
        cart: list[CartLine],
        shipping: ShippingInfo,
        payment_method: Any,
        coupon_code: Optional[str] = None,
        wallet_address: Optional[str] = None,
    ) -> CheckoutSession:
        """Validate preconditions and register a session. No side effects."""
        if not cart:
            raise ValidationError("Your cart is empty", code="empty_cart")
        missing = shipping.missing_fields()
        if missing:
            raise ValidationError(
                f"Please fill in all required shipping fields: {', '.join(missing)}",
                code="missing_shipping_fields",
                details={"fields": missing},
            )
        if requires_wallet(payment_method) and not wallet_address:
            raise ValidationError("Please connect your wallet to pay with crypto", code="wallet_required")

        session = CheckoutSession(request=CheckoutRequest(
            cart=cart,
            shipping=shipping,
            payment_method=payment_method,
            coupon_code=coupon_code,
            wallet_address=wallet_address,
        ))
        self._sessions[session.session_id] = session
        return session

    def resume_session(self, session: CheckoutSession) -> CheckoutSession:
        """Register a session restored from storage (e.g. after a restart)."""
        self._sessions[session.session_id] = session
        return session

    async def start_checkout(
        self,
        cart: list[CartLine],
        shipping: ShippingInfo,
        payment_method: Any,
        coupon_code: Optional[str] = None,
        wallet_address: Optional[str] = None,
    ) -> CheckoutSession:
        session = self.open_session(cart, shipping, payment_method, coupon_code, wallet_address)
        return await self.run(session.session_id)

    async def run(self, session_id: str) -> CheckoutSession:
        """Run the session's current attempt to a terminal state."""
        session = self.session(session_id)
        if session.state != ProgressState.INITIAL:
            raise ValidationError(f"Checkout is already {session.state.value}", code="already_started")
        task = asyncio.ensure_future(self._run_attempt(session))
        self._running[session_id] = task
        try:
            await task
        finally:
            self._running.pop(session_id, None)
        return session

    async def retry_checkout(self, session_id: str) -> CheckoutSession:
        """Start a new attempt after an error.

        With a batch order already created the attempt re-enters at payment
        and reuses the order; otherwise it starts over with a new token.
        """
        session = self.session(session_id)
        if session.state != ProgressState.ERROR:
            raise ValidationError(f"Checkout cannot be retried from {session.state.value}", code="not_retryable")
        previous = session.progress
        if previous.error_code == "reconciliation_mismatch":
            raise ValidationError(previous.message or "This checkout needs manual review", code="not_retryable")

        resume_submission = session.submission if previous.error_code in RESUME_WATCH_CODES else None
        if session.batch_order is not None and session.batch_order.status == BatchOrderStatus.FAILED:
            session.progress.batch_order = None
        session.next_attempt()
        session.submission = resume_submission
        logger.info("Retrying checkout %s (attempt %d)", session.session_id, session.attempt)
        return await self.run(session_id)

    async def cancel_checkout(self, session_id: str) -> CheckoutSession:
        session = self.session(session_id)
        if session.state not in CANCELLABLE or session.submission is not None:
            raise ValidationError(
                f"Checkout cannot be cancelled while {session.state.value}", code="not_cancellable",
            )
        self._cancel_events.setdefault(session_id, asyncio.Event()).set()
        logger.info("Cancellation requested for checkout %s", session_id)
        task = self._running.get(session_id)
        if task is not None:
            await asyncio.wait({task})
        return session

    def get_progress(self, session_id: str) -> OrderProgress:
        return self.session(session_id).progress.model_copy(deep=True)

    def session(self, session_id: str) -> CheckoutSession:
        try:
            return self._sessions[session_id]
        except KeyError:
            raise ValidationError(f"Unknown checkout session {session_id}", code="unknown_session") from None

    # ── attempt ─────────────────────────────────────────────────────────────

    def _advance(self, session: CheckoutSession, state: ProgressState) -> None:
        session.progress.advance(state)
        logger.info("Checkout %s -> %s", session.session_id, state.value)

    async def _run_attempt(self, session: CheckoutSession) -> None:
        self._cancel_events[session.session_id] = asyncio.Event()
        try:
            if session.batch_order is None:
                await self._create_order(session)
                if session.state.terminal:
                    return
            else:
                self._advance(session, ProgressState.PROCESSING_PAYMENT)
                if await self._reload_order(session):
                    return
            if session.submission is None:
                await self._pay(session)
            else:
                logger.info("Resuming confirmation of %s", session.submission.reference)
            await self._confirm(session)
        except CheckoutCancelled as e:
            await self._handle_cancel(session, e)
        except CheckoutError as e:
            self._fail(session, e)
        except Exception as e:
            logger.exception("Unexpected error in checkout %s", session.session_id)
            self._fail(session, CheckoutError("internal_error", str(e)))
        finally:
            self._cancel_events.pop(session.session_id, None)

    async def _stage(self, session: CheckoutSession, coro: Awaitable[Any], timeout: Optional[float]) -> Any:
        """Await ``coro`` with a deadline, abandoning it if the session is cancelled."""
        cancel = self._cancel_events[session.session_id]
        if cancel.is_set():
            if inspect.iscoroutine(coro):
                coro.close()
            raise CheckoutCancelled()
        work = asyncio.ensure_future(asyncio.wait_for(coro, timeout=timeout))
        waiter = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
            if work.done():
                return work.result()
            raise CheckoutCancelled()
        finally:
            for pending in (work, waiter):
                if not pending.done():
                    pending.cancel()
            await asyncio.gather(work, waiter, return_exceptions=True)

    def _check_cancelled(self, session: CheckoutSession) -> None:
        if self._cancel_events[session.session_id].is_set():
            raise CheckoutCancelled()

    async def _create_order(self, session: CheckoutSession) -> None:
        request = session.request
        self._advance(session, ProgressState.CREATING_ORDER)
        timeout = self._config.verification_timeout

        try:
            await self._stage(session, self._verifier.ensure_eligible(request.cart, request.wallet_address), timeout)
            total = cart_total(request.cart)
            discount = await self._stage(session, self._discounts.calculate(
                total, request.coupon_code, request.wallet_address, collection_ids(request.cart),
            ), timeout)
        except asyncio.TimeoutError:
            raise TransportError(
                f"Eligibility and coupon checks did not finish within {timeout:.0f}s", retryable=True,
            ) from None
        session.discount = discount
        self._check_cancelled(session)

        metadata = {
            "paymentMethod": request.payment_method.kind,
            "couponCode": discount.code,
            "couponDiscount": str(discount.discount),
            "originalPrice": str(discount.pre_discount_total),
            "isFreeOrder": discount.is_free,
        }
        # Not interruptible: a create that may have reached the ledger must
        # report its batch id so a cancellation can fail the order.
        try:
            batch_order = await self._ledger.create_batch_order(
                session.idempotency_token, request.cart, request.shipping, metadata, request.wallet_address,
            )
        except CheckoutError as e:
            if isinstance(e, LedgerError) and self._cancel_events[session.session_id].is_set():
                raise CheckoutCancelled() from e
            raise
        session.progress.batch_order = batch_order
        self._check_cancelled(session)

        if batch_order.total_payment_amount <= 0:
            await self._finalize_free(session, batch_order)
            return
        if discount.is_free:
            logger.warning(
                "Ledger charged %s for batch %s although the discount covers the cart",
                batch_order.total_payment_amount, batch_order.batch_order_id,
            )
        self._advance(session, ProgressState.PROCESSING_PAYMENT)

    async def _finalize_free(self, session: CheckoutSession, batch_order: BatchOrder) -> None:
        reference = free_order_reference(batch_order.batch_order_id)
        await self._ledger.attach_reference(batch_order.batch_order_id, reference, batch_order.total_payment_amount)
        await self._ledger.finalize(batch_order.batch_order_id)
        session.progress.batch_order = batch_order.model_copy(update={
            "status": BatchOrderStatus.CONFIRMED, "transaction_ref": reference,
        })
        logger.info("Free order %s finalized with %s", batch_order.batch_order_id, reference)
        await self._succeed(session)

    async def _reload_order(self, session: CheckoutSession) -> bool:
        """Refresh the batch order from the ledger. True if that ended the attempt."""
        batch_order = await self._ledger.get(session.batch_order.batch_order_id)  # type: ignore[union-attr]
        if batch_order is None:
            raise LedgerError(f"Batch order {session.batch_order.batch_order_id} not found")  # type: ignore[union-attr]
        session.progress.batch_order = batch_order
        if batch_order.status == BatchOrderStatus.CONFIRMED:
            logger.info("Batch order %s already confirmed", batch_order.batch_order_id)
            self._advance(session, ProgressState.CONFIRMING_TRANSACTION)
            await self._succeed(session)
            return True
        if batch_order.status == BatchOrderStatus.FAILED:
            raise LedgerError(
                f"Batch order {batch_order.batch_order_id} has failed",
                code="order_failed",
            )
        return False

    async def _pay(self, session: CheckoutSession) -> None:
        request = session.request
        batch_order = session.batch_order
        assert batch_order is not None
        timing = self._config.timing_for(request.payment_method.kind)
        retries = self._config.max_rail_retries
        attempt = 0
        while True:
            attempt += 1
            try:
                submission = await self._stage(
                    session,
                    self._dispatcher.submit_payment(batch_order, request.payment_method, request.wallet_address),
                    timing.submit_timeout,
                )
                break
            except asyncio.TimeoutError as e:
                error = RailError(RailError.TRANSIENT, f"Payment submission timed out after {timing.submit_timeout:.0f}s")
                error.__cause__ = e
            except RailError as e:
                error = e
            if not error.retryable or attempt > retries:
                raise error
            logger.warning(
                "Payment attempt %d for batch %s failed (%s); retrying",
                attempt, batch_order.batch_order_id, error.kind,
            )
            if self._config.rail_retry_delay:
                await self._stage(session, asyncio.sleep(self._config.rail_retry_delay * attempt), None)

        session.submission = submission
        try:
            await self._ledger.attach_reference(batch_order.batch_order_id, submission.reference, submission.amount)
        except LedgerError:
            logger.error(
                "Payment %s submitted but not recorded on batch %s",
                submission.reference, batch_order.batch_order_id,
            )
            raise
        session.progress.batch_order = batch_order.model_copy(update={
            "status": BatchOrderStatus.AWAITING_PAYMENT, "transaction_ref": submission.reference,
        })

    async def _confirm(self, session: CheckoutSession) -> None:
        batch_order = session.batch_order
        submission: PaymentSubmission = session.submission  # type: ignore[assignment]
        assert batch_order is not None and submission is not None
        self._advance(session, ProgressState.CONFIRMING_TRANSACTION)

        expected = ExpectedSettlement(
            amount=submission.amount,
            buyer=submission.payer if submission.rail in BUYER_CHECKED_RAILS else None,
            recipient=submission.recipient,
        )
        timing = self._config.timing_for(submission.rail)
        deadline = timing.initial_delay + timing.timeout + self._config.ledger_timeout
        try:
            result = await asyncio.wait_for(
                self._monitor.watch(submission.reference, expected, batch_order.batch_order_id, submission.rail),
                timeout=deadline,
            )
        except asyncio.TimeoutError:
            raise ConfirmationTimeout(submission.reference, deadline) from None

        if result.status == "timed_out":
            # Soft failure: the order stays awaiting_payment for reconciliation.
            raise ConfirmationTimeout(submission.reference, timing.timeout)
        if result.status == "failed":
            # A failed or mismatched payment closes the order; it is never confirmed later.
            await self._close_order(session, result.reason or "settlement failed")
            if result.mismatch:
                raise ReconciliationMismatch(submission.reference, result.reason or "mismatch")
            raise SettlementFailed(submission.reference, result.reason or "transaction failed")

        try:
            await self._ledger.finalize(batch_order.batch_order_id)
        except LedgerError as e:
            raise LedgerError(str(e), code="finalize_failed") from e
        session.progress.batch_order = batch_order.model_copy(update={"status": BatchOrderStatus.CONFIRMED})
        await self._succeed(session)

    async def _succeed(self, session: CheckoutSession) -> None:
        self._advance(session, ProgressState.SUCCESS)
        order = session.batch_order
        session.progress.message = f"Order {order.order_number or order.batch_order_id} confirmed" if order else None
        if self._on_cart_cleared is not None and not session.cart_cleared:
            result = self._on_cart_cleared(session)
            if inspect.isawaitable(result):
                await result
        session.cart_cleared = True

    async def _close_order(self, session: CheckoutSession, reason: str) -> None:
        batch_order = session.batch_order
        if batch_order is None or batch_order.status == BatchOrderStatus.CONFIRMED:
            return
        try:
            if await self._ledger.mark_failed(batch_order.batch_order_id, reason):
                session.progress.batch_order = batch_order.model_copy(update={"status": BatchOrderStatus.FAILED})
        except LedgerError:
            logger.error("Could not mark batch order %s failed", batch_order.batch_order_id)

    async def _handle_cancel(self, session: CheckoutSession, error: CheckoutCancelled) -> None:
        await self._close_order(session, "Cancelled by user")
        self._fail(session, error)

    def _fail(self, session: CheckoutSession, error: CheckoutError) -> None:
        recoverable = not isinstance(error, (EligibilityError, ReconciliationMismatch))
        if isinstance(error, (ConfirmationTimeout, ReconciliationMismatch)):
            log = logger.warning if isinstance(error, ConfirmationTimeout) else logger.error
        elif isinstance(error, (CheckoutCancelled, ValidationError, EligibilityError, RailError)):
            log = logger.info
        else:
            log = logger.error
        log(
            "Checkout %s failed in %s: %s (%s), wallet %s",
            session.session_id, session.state.value, error, error.code,
            shorten_address(session.request.wallet_address),
        )
        if session.state.terminal:
            return
        session.progress.fail(error.code, str(error), error.user_message, recoverable)
