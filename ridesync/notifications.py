"""Unread chat counter shared by every screen of one authenticated identity."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional, Set

from .core.constants import UNREAD_REFRESH_INTERVAL
from .core.utils import coerce_int
from .event_loop import Scheduler, TimerHandle
from .models import Role, entity_id
from .protocol import inbound_event

logger = logging.getLogger(__name__)

CountListener = Callable[[int], Any]


class NotificationBroker:
    """
    Holds the total unread count and notifies subscribers when it changes.

    One instance is created per identity by the client and handed to whatever
    needs it; ``reset()`` forgets everything on logout.
    """

    def __init__(self, rest_api: Any, scheduler: Scheduler, *, role: Optional[str] = None) -> None:
        self._rest_api = rest_api
        self._scheduler = scheduler
        self._role = role
        self._count = 0
        self._listeners: List[CountListener] = []
        self._focused: Set[str] = set()

    @property
    def count(self) -> int:
        return self._count

    @property
    def role(self) -> Optional[str]:
        return self._role

    def set_role(self, role: Optional[str]) -> None:
        self._role = role

    def subscribe(self, listener: CountListener) -> Callable[[], None]:
        self._listeners.append(listener)
        self._call(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def set_count(self, count: int) -> None:
        count = max(0, int(count))
        if count == self._count:
            return
        self._count = count
        self._notify()

    def increment(self) -> None:
        self.set_count(self._count + 1)

    def decrement(self, amount: int = 1) -> None:
        self.set_count(self._count - amount)

    def refresh(self) -> None:
        """Recompute the count from the conversation list in the background."""
        self._scheduler.submit(
            self._rest_api.fetch_conversations,
            on_result=self._apply_conversations,
            on_error=self._on_refresh_failed,
        )

    def reset(self) -> None:
        self._count = 0
        self._role = None
        self._listeners.clear()
        self._focused.clear()

    # Conversation focus -----------------------------------------------------------
    def focus_conversation(self, chat_id: str) -> None:
        self._focused.add(chat_id)

    def blur_conversation(self, chat_id: str) -> None:
        self._focused.discard(chat_id)

    def is_focused(self, chat_id: Optional[str]) -> bool:
        return chat_id is not None and chat_id in self._focused

    # Internal helpers -------------------------------------------------------------
    def _apply_conversations(self, result: Any) -> None:
        chats, role = result
        if role:
            self._role = role
        role_key = self._role or Role.REQUESTER.value
        total = 0
        for chat in chats:
            unread = chat.get("unreadCount") if isinstance(chat, dict) else None
            if isinstance(unread, dict):
                total += max(0, coerce_int(unread.get(role_key)))
        logger.info("Unread count refreshed: %s", total)
        self.set_count(total)

    def _on_refresh_failed(self, exc: BaseException) -> None:
        logger.error("Error refreshing unread count: %s", exc)

    def _notify(self) -> None:
        logger.debug("Notifying %s listeners of unread count %s", len(self._listeners), self._count)
        for listener in list(self._listeners):
            self._call(listener)

    def _call(self, listener: CountListener) -> None:
        try:
            listener(self._count)
        except Exception:  # noqa: BLE001
            logger.exception("Unread count listener raised")


class UnreadCounterBinding:
    """Feeds push events and a periodic backup refresh into a broker."""

    def __init__(
        self,
        broker: NotificationBroker,
        transport: Any,
        scheduler: Scheduler,
        *,
        own_user_id: Optional[str],
        own_role: Optional[str] = None,
        refresh_interval: float = UNREAD_REFRESH_INTERVAL,
    ) -> None:
        self._broker = broker
        self._transport = transport
        self._scheduler = scheduler
        self._own_user_id = own_user_id
        self._own_role = own_role
        self._refresh_interval = refresh_interval
        self._listeners = None
        self._timer: Optional[TimerHandle] = None

    @property
    def attached(self) -> bool:
        return self._listeners is not None

    def attach(self) -> None:
        if self.attached:
            return
        if self._own_role:
            self._broker.set_role(self._own_role)
        self._listeners = self._transport.listeners()
        self._listeners.on(inbound_event.NEW_MESSAGE, self._on_new_message)
        self._listeners.on(inbound_event.UNREAD_COUNT_UPDATE, self._on_count_update)
        self._listeners.on(inbound_event.MESSAGES_READ, self._on_messages_read)
        self._timer = self._scheduler.call_every(self._refresh_interval, self._broker.refresh)
        self._broker.refresh()

    def detach(self) -> None:
        if self._listeners is not None:
            self._listeners.clear()
            self._listeners = None
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_new_message(self, payload: Any) -> None:
        if not isinstance(payload, dict):
            return
        sender = payload.get("sender") if isinstance(payload.get("sender"), dict) else {}
        if self._own_user_id and entity_id(sender.get("userId")) == self._own_user_id:
            return
        if self._broker.is_focused(entity_id(payload.get("chatId"))):
            return
        self._broker.increment()

    def _on_count_update(self, payload: Dict[str, Any]) -> None:
        if isinstance(payload, dict) and payload.get("unreadCount") is not None:
            self._broker.set_count(coerce_int(payload.get("unreadCount")))

    def _on_messages_read(self, payload: Any) -> None:
        self._broker.refresh()
