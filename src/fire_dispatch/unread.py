from __future__ import annotations

import logging
from typing import Callable, Optional

from fire_dispatch.errors import StoreError
from fire_dispatch.models import ChangeEvent
from fire_dispatch.realtime import FanoutRouter, Filter, Listener
from fire_dispatch.store import INSERT, RowStore

logger = logging.getLogger(__name__)


class UnreadCounter:
    """Unread chat messages on one incident for one viewer."""

    def __init__(
        self,
        store: RowStore,
        incident_id: int,
        viewer_id: str,
        notify: Optional[Callable[[], None]] = None,
    ) -> None:
        self.store = store
        self.incident_id = incident_id
        self.viewer_id = viewer_id
        self.notify = notify
        self.count = 0
        self.chat_open = False
        self.listener: Optional[Listener] = None

    def load(self) -> int:
        self.count = self.store.count_unread(self.incident_id, self.viewer_id)
        return self.count

    def attach(self, router: FanoutRouter) -> None:
        if self.listener is None:
            self.listener = router.listen(
                "chat_messages",
                self.on_message,
                Filter("incident_id", self.incident_id),
                on_resume=self.load,
            )
        self.load()

    def detach(self) -> None:
        if self.listener is not None:
            self.listener.close()
            self.listener = None

    def on_message(self, event: ChangeEvent) -> None:
        if event.kind != INSERT:
            return
        if str(event.new.get("sender_id")) == self.viewer_id or self.chat_open:
            return
        self.count += 1
        self._play_cue()

    def _play_cue(self) -> None:
        if self.notify is None:
            return
        try:
            self.notify()
        except Exception as exc:
            logger.debug("Notification cue failed: %s", exc)

    def open_chat(self) -> None:
        self.chat_open = True
        self.count = 0
        try:
            self.store.mark_all_read(self.incident_id, self.viewer_id)
        except StoreError as exc:
            logger.warning("Mark read failed for incident %s: %s", self.incident_id, exc)

    def close_chat(self) -> None:
        self.chat_open = False
