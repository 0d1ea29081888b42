"""In-app notifications and fire-and-forget e-mail delivery.

The in-app ``Notification`` record is the authoritative delivery record; it
is written inside the caller's unit of work.  E-mail goes through
``EmailDispatcher`` after the state change has been committed, so a slow or
failing provider can never undo or delay a lending operation.
"""

import logging
import queue
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

from errors import ForbiddenError, NotFoundError
from models import Notification, NotificationType
from permissions import Capability, has_capability
from storage import Storage

logger = logging.getLogger(__name__)

_STOP = object()


class Notifier:
    """Creates and acknowledges in-app notifications."""

    def __init__(self, storage: Storage) -> None:
        self.storage = storage

    def notify(self, user_id: int, title: str, message: str, type: NotificationType,
               related_data: Optional[Dict[str, Any]] = None) -> Notification:
        notification = self.storage.create_notification(Notification(
            user_id=user_id,
            title=title,
            message=message,
            type=NotificationType(type),
            related_data=dict(related_data or {}),
        ))
        logger.debug("Notification %s (%s) created for user %s", notification.id, notification.type.value, user_id)
        return notification

    def list_for(self, user_id: int) -> List[Notification]:
        return self.storage.list_notifications(user_id)

    def unread_count(self, user_id: int) -> int:
        return sum(1 for n in self.list_for(user_id) if not n.read)

    def mark_read(self, notification_id: int, actor_id: int, actor_role) -> Notification:
        notification = self.storage.get_notification(notification_id)
        if notification is None:
            raise NotFoundError("Notification", notification_id)
        if notification.user_id != actor_id and not has_capability(actor_role, Capability.MANAGE_USERS):
            raise ForbiddenError("You can only acknowledge your own notifications")
        if notification.read:
            return notification
        return self.storage.update_notification(notification_id, read=True)


class EmailDispatcher:
    """Runs e-mail jobs off the caller's thread, one attempt each.

    With ``background=False`` jobs run inline, which keeps tests
    deterministic; failures are still logged and swallowed.
    """

    def __init__(self, background: bool = True, enabled: bool = True) -> None:
        self.background = background
        self.enabled = enabled
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._worker: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self.sent = 0
        self.failed = 0

    def submit(self, description: str, job: Callable[..., bool], *args: Any) -> None:
        if not self.enabled:
            logger.debug("E-mail disabled, dropping job: %s", description)
            return
        if not self.background:
            self._run((description, job, args))
            return
        self._ensure_worker()
        self._queue.put((description, job, args))

    def _ensure_worker(self) -> None:
        with self._lock:
            if self._worker is None or not self._worker.is_alive():
                self._worker = threading.Thread(target=self._loop, name="email-dispatcher", daemon=True)
                self._worker.start()

    def _loop(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._run(item)
            finally:
                self._queue.task_done()

    def _run(self, item: Tuple[str, Callable[..., bool], Tuple[Any, ...]]) -> None:
        description, job, args = item
        try:
            delivered = job(*args)
        except Exception:
            self.failed += 1
            logger.exception("E-mail job failed: %s", description)
            return
        if delivered:
            self.sent += 1
        else:
            self.failed += 1
            logger.warning("E-mail not delivered: %s", description)

    def flush(self) -> None:
        """Block until every queued job has been attempted."""
        if self.background:
            self._queue.join()

    def close(self) -> None:
        with self._lock:
            worker = self._worker
            self._worker = None
        if worker is not None and worker.is_alive():
            self._queue.put(_STOP)
            worker.join(timeout=5)
