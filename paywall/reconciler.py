"""
Confirmation reconciler.

Widget callbacks only say that *something* happened; whether an order is paid
is decided by asking the backend. Each advisory signal schedules one delayed
authoritative check:

    on_success  -> check after success_check_delay (3s)
    on_pending  -> check after pending_check_delay (5s, slow payment methods)
    on_close    -> check after close_check_delay   (2s, may have paid then closed)
    on_error    -> no check, FatalPaymentError reported to listeners

When the widget is unavailable the gateway session calls on_fallback(), which
starts a bounded poll (poll_interval, stopped after max_poll_duration). Running
out of time leaves the order unresolved; it is never forced to paid or failed.

Observing `paid`, `expired` or `failed` cancels every scheduled check and poll
timer at once. Overlapping triggers share the in-flight check, so there is at
most one status request per order at any time.
"""
import asyncio
from collections.abc import Callable
from dataclasses import dataclass

import structlog

from paywall.client import BackendClient
from paywall.config import Settings, get_settings
from paywall.errors import FatalPaymentError, PaywallError, TransientNetworkError
from paywall.models import ConfirmationAttempt, OrderStatus, Trigger
from paywall.scheduler import AsyncioScheduler, Handle, Scheduler
from paywall.unlock import ResultUnlockState

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Resolution:
    """What the UI should show after a decision-changing event."""

    order_id: str
    reason: str  # paid | expired | failed | payment_error | poll_window_elapsed
    status: OrderStatus | None
    unlocked: bool
    error: PaywallError | None = None

    @property
    def resolved(self) -> bool:
        return self.status is not None and self.status.is_terminal


class ConfirmationReconciler:
    def __init__(
        self,
        order_id: str,
        client: BackendClient,
        unlock_state: ResultUnlockState,
        scheduler: Scheduler | None = None,
        settings: Settings | None = None,
    ):
        self.order_id = order_id
        self.client = client
        self.unlock_state = unlock_state
        self.scheduler = scheduler or AsyncioScheduler()
        self.settings = settings or get_settings()

        self._handles: set[Handle] = set()
        self._inflight: asyncio.Future | None = None
        self._attempts: list[ConfirmationAttempt] = []
        self._listeners: list[Callable[[Resolution], None]] = []
        self._last_status: OrderStatus | None = None
        self._last_error: PaywallError | None = None
        self._resolved = False
        self._torn_down = False
        self._polling = False

        self.log = logger.bind(order_id=order_id)

    # ── state ────────────────────────────────────────────────────────────────

    @property
    def done(self) -> bool:
        return self._resolved or self._torn_down or self.unlock_state.unlocked

    @property
    def polling(self) -> bool:
        return self._polling

    @property
    def last_status(self) -> OrderStatus | None:
        return self._last_status

    @property
    def last_error(self) -> PaywallError | None:
        return self._last_error

    @property
    def attempts(self) -> tuple[ConfirmationAttempt, ...]:
        return tuple(self._attempts)

    @property
    def pending_timers(self) -> list[Handle]:
        return [h for h in self._handles if h.active]

    def subscribe(self, callback: Callable[[Resolution], None]) -> None:
        self._listeners.append(callback)

    def _notify(self, resolution: Resolution) -> None:
        for callback in list(self._listeners):
            try:
                callback(resolution)
            except Exception:
                self.log.exception("resolution_listener_failed", reason=resolution.reason)

    # ── advisory signals ────────────────────────────────────────────────────

    def on_success(self, result=None) -> None:
        self._signal(Trigger.SUCCESS, self.settings.success_check_delay, result)

    def on_pending(self, result=None) -> None:
        self._signal(Trigger.PENDING, self.settings.pending_check_delay, result)

    def on_close(self, result=None) -> None:
        self._signal(Trigger.CLOSE, self.settings.close_check_delay, result)

    def on_error(self, result=None) -> None:
        error = FatalPaymentError(detail=result)
        self._last_error = error
        self.log.warning("payment_error_reported", detail=result)
        self._notify(
            Resolution(
                order_id=self.order_id,
                reason="payment_error",
                status=self._last_status,
                unlocked=self.unlock_state.unlocked,
                error=error,
            )
        )

    def on_fallback(self) -> None:
        self.start_polling()

    def _signal(self, trigger: Trigger, delay: float, result) -> None:
        if self.done:
            self.log.info("signal_ignored", trigger=trigger.value)
            return
        self.log.info("confirmation_check_scheduled", trigger=trigger.value, delay=delay)
        self._later(delay, lambda: self.check(trigger), f"check:{trigger.value}")

    def _later(self, delay: float, fn: Callable, label: str) -> Handle:
        handle: Handle | None = None

        async def fire() -> None:
            self._handles.discard(handle)
            await fn()

        handle = self.scheduler.call_later(delay, fire, label)
        self._handles.add(handle)
        return handle

    # ── authoritative check ─────────────────────────────────────────────────

    async def check(self, trigger: Trigger = Trigger.MANUAL_POLL) -> OrderStatus | None:
        """
        Ask the backend for the order status and act on it.

        Returns the observed status, or None when the request failed. Joins
        the in-flight check if there is one; does nothing once resolved.
        """
        if self.done:
            return self._last_status
        if self._inflight is not None and not self._inflight.done():
            self.log.debug("confirmation_check_joined", trigger=trigger.value)
            return await asyncio.shield(self._inflight)

        self._inflight = asyncio.ensure_future(self._check(trigger))
        return await asyncio.shield(self._inflight)

    async def check_now(self) -> OrderStatus | None:
        return await self.check(Trigger.MANUAL_POLL)

    async def _check(self, trigger: Trigger) -> OrderStatus | None:
        started = self.scheduler.now()
        try:
            status = await self.client.get_order_status(self.order_id)
        except PaywallError as e:
            self._last_error = e
            self._attempts.append(ConfirmationAttempt(trigger, started, None, str(e)))
            self.log.warning(
                "confirmation_check_failed",
                trigger=trigger.value,
                error=str(e),
                transient=isinstance(e, TransientNetworkError),
            )
            return None

        self._attempts.append(ConfirmationAttempt(trigger, started, status))
        self._last_status = status
        self.log.info("confirmation_checked", trigger=trigger.value, status=status.value)

        if self._torn_down:
            return status
        if status is OrderStatus.PAID:
            self._finish()
            self.unlock_state._latch(self.order_id)
            self.log.info("payment_confirmed", trigger=trigger.value)
            self._notify(Resolution(self.order_id, "paid", status, unlocked=True))
        elif status.is_terminal:
            self._finish()
            self.log.info("order_closed_unpaid", status=status.value)
            self._notify(
                Resolution(self.order_id, status.value, status, unlocked=self.unlock_state.unlocked)
            )
        return status

    # ── bounded poll ────────────────────────────────────────────────────────

    def start_polling(self) -> None:
        if self.done or self._polling:
            return
        self._polling = True
        window = self.settings.max_poll_duration
        self.log.info("polling_started", interval=self.settings.poll_interval, window=window)
        if window is not None:
            self._later(window, self._poll_window_elapsed, "poll-deadline")
        self._later(self.settings.poll_interval, self._poll_tick, "poll")

    async def _poll_tick(self) -> None:
        if not self._polling or self.done:
            return
        await self.check(Trigger.MANUAL_POLL)
        if self._polling and not self.done:
            self._later(self.settings.poll_interval, self._poll_tick, "poll")

    async def _poll_window_elapsed(self) -> None:
        if not self._polling:
            return
        self.stop_polling()
        self.log.info(
            "poll_window_elapsed",
            last_status=self._last_status.value if self._last_status else None,
        )
        self._notify(
            Resolution(
                order_id=self.order_id,
                reason="poll_window_elapsed",
                status=self._last_status,
                unlocked=self.unlock_state.unlocked,
                error=TransientNetworkError("Payment not confirmed yet, check again later"),
            )
        )

    def stop_polling(self) -> None:
        self._polling = False
        for handle in list(self._handles):
            if handle.label.startswith("poll"):
                handle.cancel()
                self._handles.discard(handle)

    # ── shutdown ────────────────────────────────────────────────────────────

    def _cancel_all(self) -> None:
        self._polling = False
        for handle in self._handles:
            handle.cancel()
        self._handles.clear()

    def _finish(self) -> None:
        self._resolved = True
        self._cancel_all()

    def teardown(self) -> None:
        """Cancel every timer; later signals become no-ops."""
        if self._torn_down:
            return
        self._torn_down = True
        self._cancel_all()
        self.log.info("reconciler_torn_down")
