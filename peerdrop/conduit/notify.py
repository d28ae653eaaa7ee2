from collections import deque

from peerdrop.avails import const
from peerdrop.avails.events import NotifyEvent
from peerdrop.conduit import logger
from peerdrop.conduit.abc import AbstractNotifier

# only these are kept around for a frontend that attaches later
_KEPT_KINDS = frozenset({"file-ready", "incoming-file", "transfer-failed", "connection-lost"})


class LogNotifier(AbstractNotifier):
    """Logs every event and keeps the important ones as pending notifications

    a frontend attaching later drains them with :meth:`take_pending`
    """

    def __init__(self, max_pending=None):
        self.pending = deque(maxlen=max_pending or const.MAX_PENDING_NOTIFICATIONS)

    def notify(self, event: NotifyEvent):
        logger.info(f"[NOTIFY] {event.kind}: {event.message}")
        if event.kind in _KEPT_KINDS:
            self.pending.append(event)

    def take_pending(self):
        pending = list(self.pending)
        self.pending.clear()
        return pending
