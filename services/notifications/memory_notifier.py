"""In-process status notifier for development, tests and single-replica runs."""

import threading

from services.notifications.base import StatusNotifier, StatusSubscription


class InMemoryStatusSubscription(StatusSubscription):
    def __init__(self, notifier: "InMemoryStatusNotifier", invoice_id: str) -> None:
        super().__init__(invoice_id)
        self._notifier = notifier
        self._signal = threading.Event()

    def notify(self) -> None:
        self._signal.set()

    def wait(self, timeout: float) -> bool:
        signalled = self._signal.wait(timeout)
        self._signal.clear()
        return signalled

    def close(self) -> None:
        self._notifier.unregister(self)


class InMemoryStatusNotifier(StatusNotifier):
    """Wakes subscribers in the same process."""

    def __init__(self) -> None:
        self._subscribers: dict[str, set[InMemoryStatusSubscription]] = {}
        self._lock = threading.Lock()

    def publish(self, invoice_id: str, event: str) -> None:
        with self._lock:
            subscribers = list(self._subscribers.get(invoice_id, ()))
        for subscription in subscribers:
            subscription.notify()

    def subscribe(self, invoice_id: str) -> StatusSubscription:
        subscription = InMemoryStatusSubscription(self, invoice_id)
        with self._lock:
            self._subscribers.setdefault(invoice_id, set()).add(subscription)
        return subscription

    def unregister(self, subscription: InMemoryStatusSubscription) -> None:
        with self._lock:
            subscribers = self._subscribers.get(subscription.invoice_id)
            if subscribers is None:
                return
            subscribers.discard(subscription)
            if not subscribers:
                del self._subscribers[subscription.invoice_id]
