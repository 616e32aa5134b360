"""
Hosted payment widget session (Midtrans Snap).

The widget is an external black box: `pay(session_token, callbacks)` with four
advisory callbacks. When it cannot be loaded the session opens the gateway's
hosted redirect page instead and hands over to the reconciler's poll.
"""
import inspect
import webbrowser
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

import structlog

from paywall.config import Settings, get_settings
from paywall.errors import GatewayUnavailable
from paywall.models import PaymentToken

logger = structlog.get_logger(__name__)

CALLBACK_NAMES = ("on_success", "on_pending", "on_error", "on_close")


class Widget(Protocol):
    def pay(self, session_token: str, callbacks: dict[str, Callable[..., None]]) -> None: ...


WidgetLoader = Callable[[str, str], Widget | Awaitable[Widget]]
RedirectOpener = Callable[[str], Any]


class GatewayMode(str, Enum):
    WIDGET = "widget"
    REDIRECT = "redirect"


@dataclass
class GatewayHandlers:
    on_success: Callable[..., None]
    on_pending: Callable[..., None]
    on_error: Callable[..., None]
    on_close: Callable[..., None]
    on_fallback: Callable[[], None]

    @classmethod
    def for_reconciler(cls, reconciler) -> "GatewayHandlers":
        return cls(
            on_success=reconciler.on_success,
            on_pending=reconciler.on_pending,
            on_error=reconciler.on_error,
            on_close=reconciler.on_close,
            on_fallback=reconciler.on_fallback,
        )


def open_in_new_tab(url: str) -> bool:
    return webbrowser.open_new_tab(url)


class PaymentGatewaySession:
    def __init__(
        self,
        widget_loader: WidgetLoader | None = None,
        opener: RedirectOpener = open_in_new_tab,
        settings: Settings | None = None,
    ):
        self.settings = settings or get_settings()
        self._loader = widget_loader
        self._opener = opener
        self._widget: Widget | None = None
        self.mode: GatewayMode | None = None

    async def load_widget(self) -> Widget:
        """Load the snap widget once; GatewayUnavailable if that fails."""
        if self._widget is not None:
            return self._widget
        if self._loader is None:
            raise GatewayUnavailable("No payment widget available in this environment")
        try:
            widget = self._loader(self.settings.snap_script_url, self.settings.midtrans_client_key)
            if inspect.isawaitable(widget):
                widget = await widget
        except GatewayUnavailable:
            raise
        except Exception as e:
            logger.error("widget_load_failed", script_url=self.settings.snap_script_url, error=str(e))
            raise GatewayUnavailable("Failed to load payment widget") from e
        if widget is None:
            raise GatewayUnavailable("Failed to load payment widget")
        self._widget = widget
        logger.info("widget_loaded", environment=self.settings.midtrans_environment)
        return widget

    async def open(self, payment_token: PaymentToken, handlers: GatewayHandlers) -> None:
        try:
            widget = await self.load_widget()
        except GatewayUnavailable as e:
            self._open_redirect(payment_token, handlers, reason=str(e))
            return

        self.mode = GatewayMode.WIDGET
        logger.info("widget_opened", order_id=payment_token.order_id)
        widget.pay(payment_token.session_token, _once_per_open(handlers, payment_token.order_id))

    def _open_redirect(self, payment_token: PaymentToken, handlers: GatewayHandlers, reason: str):
        url = payment_token.redirect_url
        if not url:
            raise GatewayUnavailable(f"{reason}; no redirect URL to fall back to")
        self.mode = GatewayMode.REDIRECT
        logger.info("redirect_opened", order_id=payment_token.order_id, reason=reason)
        self._opener(url)
        handlers.on_fallback()


def _once_per_open(handlers: GatewayHandlers, order_id: str) -> dict[str, Callable[..., None]]:
    """Wrap the callbacks so each is delivered at most once."""
    fired: set[str] = set()

    def wrap(name: str) -> Callable[..., None]:
        target = getattr(handlers, name)

        def callback(result=None) -> None:
            if name in fired:
                logger.warning("duplicate_widget_callback", callback=name, order_id=order_id)
                return
            fired.add(name)
            logger.info("widget_callback", callback=name, order_id=order_id)
            target(result)

        return callback

    return {name: wrap(name) for name in CALLBACK_NAMES}
