"""Push-based stream primitives used to wire pipeline stages together."""
from __future__ import annotations

from typing import Any, Callable, Generic, Iterable, List, Optional, Protocol, TypeVar

T = TypeVar("T")
T_contra = TypeVar("T_contra", contravariant=True)


class Observer(Protocol[T_contra]):
    """Receives ordered items followed by at most one terminal signal."""

    def on_next(self, value: T_contra) -> None:
        ...

    def on_completed(self) -> None:
        ...

    def on_error(self, error: BaseException) -> None:
        ...


Operator = Callable[[Observer[Any]], Observer[Any]]


class Subscription:
    """Handle returned by ``Stream.subscribe`` that cancels delivery."""

    def __init__(self) -> None:
        self._disposed = False
        self._teardowns: List[Callable[[], None]] = []

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    def add_teardown(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` on dispose, or now if already disposed."""
        if self._disposed:
            callback()
            return
        self._teardowns.append(callback)

    def dispose(self) -> None:
        """Stop delivery. Safe to call more than once."""
        if self._disposed:
            return
        self._disposed = True
        teardowns, self._teardowns = self._teardowns, []
        for callback in teardowns:
            callback()


class Stream(Generic[T]):
    """Cold stream that pushes to one subscriber when subscribed."""

    def __init__(self, on_subscribe: Callable[[Observer[T], Subscription], None]) -> None:
        self._on_subscribe = on_subscribe

    @classmethod
    def from_iterable(cls, items: Iterable[T]) -> "Stream[T]":
        """Emit every item from ``items`` in order, then complete.

        Errors raised while iterating or delivering an item are sent to the
        observer's ``on_error``. Nothing is pushed once the subscription is
        disposed; an error that can no longer be delivered is re-raised.
        """

        def _drive(observer: Observer[T], subscription: Subscription) -> None:
            try:
                for item in items:
                    if subscription.is_disposed:
                        return
                    observer.on_next(item)
            except Exception as error:
                if subscription.is_disposed:
                    raise
                observer.on_error(error)
                return
            if not subscription.is_disposed:
                observer.on_completed()

        return cls(_drive)

    @classmethod
    def failing(cls, error: BaseException) -> "Stream[T]":
        """Stream that signals ``error`` immediately."""

        def _drive(observer: Observer[T], subscription: Subscription) -> None:
            if not subscription.is_disposed:
                observer.on_error(error)

        return cls(_drive)

    def lift(self, operator: Operator) -> "Stream[Any]":
        """Return a stream whose subscribers are wrapped by ``operator``.

        The wrapped observer gets its own upstream subscription. Disposing it
        cancels everything above the operator and leaves the observers below
        untouched, so an operator can stop its source and still forward a
        terminal signal downstream.
        """
        source = self

        def _drive(observer: Observer[Any], subscription: Subscription) -> None:
            wrapped = operator(observer)
            dispose = getattr(wrapped, "dispose", None)
            if dispose is not None:
                subscription.add_teardown(dispose)
            upstream = Subscription()
            subscription.add_teardown(upstream.dispose)
            on_start = getattr(wrapped, "on_start", None)
            if on_start is not None:
                on_start(upstream)
            source._on_subscribe(wrapped, upstream)

        return Stream(_drive)

    def subscribe(self, observer: Observer[T], *, subscription: Optional[Subscription] = None) -> Subscription:
        """Drive the stream into ``observer`` and return its subscription.

        Delivery is synchronous, so callers that want to cancel mid-stream
        pass in a ``subscription`` they hold a reference to.
        """
        subscription = subscription or Subscription()
        self._on_subscribe(observer, subscription)
        return subscription


class CollectingObserver(Generic[T]):
    """Sink that records everything it receives."""

    def __init__(self) -> None:
        self.items: List[T] = []
        self.completed = False
        self.error: Optional[BaseException] = None
        self.signals: List[str] = []

    def on_next(self, value: T) -> None:
        self.items.append(value)
        self.signals.append("next")

    def on_completed(self) -> None:
        self.completed = True
        self.signals.append("completed")

    def on_error(self, error: BaseException) -> None:
        self.error = error
        self.signals.append("error")

    @property
    def terminated(self) -> bool:
        return self.completed or self.error is not None
