from collections.abc import Callable
from datetime import datetime

import structlog

from paywall.errors import ContentLocked
from paywall.models import utcnow

logger = structlog.get_logger(__name__)


class ResultUnlockState:
    """
    Whether premium results/certificate are unlocked for one product instance.

    Read-only for the UI. The only writer is ConfirmationReconciler, after an
    authoritative `paid` from the backend; once set it never goes back.
    """

    def __init__(self):
        self._unlocked = False
        self._order_id: str | None = None
        self._unlocked_at: datetime | None = None
        self._listeners: list[Callable[["ResultUnlockState"], None]] = []

    @property
    def unlocked(self) -> bool:
        return self._unlocked

    @property
    def order_id(self) -> str | None:
        return self._order_id

    @property
    def unlocked_at(self) -> datetime | None:
        return self._unlocked_at

    def __bool__(self) -> bool:
        return self._unlocked

    def subscribe(self, callback: Callable[["ResultUnlockState"], None]) -> Callable[[], None]:
        """Call `callback` once the state latches. Returns an unsubscribe function."""
        if self._unlocked:
            callback(self)
            return lambda: None
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def require_unlocked(self) -> None:
        if not self._unlocked:
            raise ContentLocked("Results are locked until payment is confirmed")

    def _latch(self, order_id: str) -> bool:
        if self._unlocked:
            return False
        self._unlocked = True
        self._order_id = order_id
        self._unlocked_at = utcnow()
        logger.info("results_unlocked", order_id=order_id)

        listeners, self._listeners = self._listeners, []
        for callback in listeners:
            try:
                callback(self)
            except Exception:
                logger.exception("unlock_listener_failed")
        return True
