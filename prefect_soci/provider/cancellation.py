import logging
import threading
import time
from typing import Optional, Protocol

from prefect_soci.provider.errors import OperationCancelledError

logger = logging.getLogger(__name__)


class Closeable(Protocol):
    def close(self) -> None: ...


class CancellationScope:
    """
    Abort signal shared by every registry call of one indexing run.

    The scope trips either when ``cancel()`` is called (from any thread) or
    once the optional deadline has passed. Registries check it before and
    after each request and between streamed chunks, cap request timeouts
    with ``remaining()``, and attach sessions and streaming responses so
    cancelling closes whatever is in flight.
    """

    def __init__(self, deadline: Optional[float] = None):
        """
        :param deadline: seconds from now after which the scope counts as cancelled
        """
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._resources: list[Closeable] = []
        self._expires_at = time.monotonic() + deadline if deadline else None
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True

        if self._expires_at is not None and time.monotonic() >= self._expires_at:
            self.cancel("deadline exceeded")
            return True

        return False

    def remaining(self) -> Optional[float]:
        """
        Seconds left before the deadline, or None without one.
        """
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - time.monotonic())

    def cap_timeout(self, timeout: Optional[float]) -> Optional[float]:
        """
        Shorten a request timeout so it never outlives the deadline.
        """
        remaining = self.remaining()
        if remaining is None:
            return timeout
        if timeout is None:
            return remaining
        return min(timeout, remaining)

    def attach(self, resource: Closeable) -> None:
        """
        Close a session or response when the scope is cancelled.

        Attaching to a scope that is already cancelled closes the resource
        right away.
        """
        with self._lock:
            if not self._event.is_set():
                self._resources.append(resource)
                return
        resource.close()

    def detach(self, resource: Closeable) -> None:
        with self._lock:
            if resource in self._resources:
                self._resources.remove(resource)

    def cancel(self, reason: str = "cancelled") -> None:
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self._event.set()
            resources, self._resources = self._resources, []

        logger.info("Cancelling registry operations: %s", reason)
        for resource in resources:
            try:
                resource.close()
            except Exception as e:
                logger.debug("Error closing %r on cancel: %s", resource, e)

    def check(self, operation: Optional[str] = None) -> None:
        """
        Raise OperationCancelledError if the scope has been cancelled.
        """
        if self.cancelled:
            raise OperationCancelledError(
                f"Registry operation aborted: {self.reason}", operation=operation
            )
