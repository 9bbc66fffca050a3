"""
Progress broadcaster.

In-process pub/sub for session status and progress. Each listener owns a
bounded queue; publishing never blocks the pipeline, and a listener that
falls behind simply misses messages (it can always pull the current status).

Channels are closed when a session reaches a terminal status; listeners then
receive CLOSED.
"""

import queue
import threading
import uuid
from typing import Optional, Union
import structlog

from config import settings
from models.import_session import ImportProgress, ProgressMessage, SessionStatus

logger = structlog.get_logger(__name__)


class _Closed:
    def __repr__(self) -> str:
        return "CLOSED"


CLOSED = _Closed()


class Subscription:
    """One listener's view of a session channel."""

    def __init__(self, session_id: str, maxsize: int):
        self.id = str(uuid.uuid4())
        self.session_id = session_id
        self.closed = False
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)

    def offer(self, message: ProgressMessage) -> bool:
        """Enqueue without blocking. False when the listener is full or gone."""
        if self.closed:
            return False
        try:
            self._queue.put_nowait(message)
            return True
        except queue.Full:
            return False

    def get(self, timeout: Optional[float] = None) -> Union[ProgressMessage, _Closed, None]:
        """Next message, CLOSED after the channel ends, or None on timeout."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        # Make room so the sentinel always arrives
        while True:
            try:
                self._queue.put_nowait(CLOSED)
                return
            except queue.Full:
                try:
                    self._queue.get_nowait()
                except queue.Empty:
                    pass


class ProgressBroadcaster:
    """Fan-out of ProgressMessage to every listener of a session."""

    def __init__(self, queue_size: Optional[int] = None):
        self.queue_size = queue_size or settings.listener_queue_size
        self._subscriptions: dict[str, list[Subscription]] = {}
        self._last_published: dict[str, tuple] = {}
        self._lock = threading.Lock()

    def subscribe(self, session_id: str) -> Subscription:
        subscription = Subscription(session_id, self.queue_size)
        with self._lock:
            self._subscriptions.setdefault(session_id, []).append(subscription)
        logger.debug("progress_listener_subscribed", session_id=session_id, subscription_id=subscription.id)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            listeners = self._subscriptions.get(subscription.session_id, [])
            if subscription in listeners:
                listeners.remove(subscription)
            if not listeners:
                self._subscriptions.pop(subscription.session_id, None)
        subscription.closed = True
        logger.debug(
            "progress_listener_unsubscribed",
            session_id=subscription.session_id,
            subscription_id=subscription.id
        )

    def publish(self, session_id: str, status: SessionStatus, progress: ImportProgress) -> bool:
        """
        Push the current state to every listener.

        Returns:
            True if a message was sent, False when nothing changed since the
            last publish
        """
        snapshot = progress.model_copy()
        key = (status, tuple(snapshot.model_dump().values()))

        with self._lock:
            if self._last_published.get(session_id) == key:
                return False
            self._last_published[session_id] = key
            listeners = list(self._subscriptions.get(session_id, []))

        message = ProgressMessage(session_id=session_id, status=status, progress=snapshot)
        for subscription in listeners:
            if not subscription.offer(message):
                logger.debug(
                    "progress_message_dropped",
                    session_id=session_id,
                    subscription_id=subscription.id
                )
        return True

    def close(self, session_id: str) -> None:
        """End the channel; every listener receives CLOSED."""
        with self._lock:
            listeners = self._subscriptions.pop(session_id, [])
            self._last_published.pop(session_id, None)

        for subscription in listeners:
            subscription.close()

        logger.debug("progress_channel_closed", session_id=session_id, listeners=len(listeners))

    def listener_count(self, session_id: str) -> int:
        with self._lock:
            return len(self._subscriptions.get(session_id, []))


# Singleton instance for convenience
_progress_broadcaster: Optional[ProgressBroadcaster] = None

def get_progress_broadcaster() -> ProgressBroadcaster:
    """Get or create ProgressBroadcaster instance."""
    global _progress_broadcaster
    if _progress_broadcaster is None:
        _progress_broadcaster = ProgressBroadcaster()
    return _progress_broadcaster
