import threading

from schema_sync.domain.exceptions import OperationCancelled


class CancellationToken:
    """Cooperative cancellation, honored only at transaction boundaries."""

    def __init__(self):
        self._event = threading.Event()
        self._reason = "cancelled"

    def cancel(self, reason: str = "cancelled") -> None:
        self._reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, where: str = "") -> None:
        if self._event.is_set():
            suffix = f" at {where}" if where else ""
            raise OperationCancelled(f"Operation {self._reason}{suffix}")
