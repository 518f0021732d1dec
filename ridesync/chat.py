from __future__ import annotations

import logging
import uuid
from typing import Any, List, Optional

from PyQt6.QtCore import QObject, pyqtSignal

from .core.constants import ECHO_MATCH_WINDOW, MESSAGE_PAGE_SIZE, TYPING_IDLE
from .event_loop import Scheduler, TimerHandle
from .models import ChatMessage, entity_id
from .protocol import connection_state, inbound_event, outbound_event

logger = logging.getLogger(__name__)


class ChatRoomError(RuntimeError):
    """Raised when a chat operation is attempted outside an open room."""


class ChatRoomSession(QObject):
    """
    One open conversation.

    Sent messages appear immediately under a ``temp_<n>`` ID and carry a
    ``clientMessageId`` that the server echoes back on the stored message, so
    the optimistic copy is replaced rather than duplicated.
    """

    messages_changed = pyqtSignal(list)
    typing_changed = pyqtSignal(bool)
    read_receipt = pyqtSignal(dict)
    notice = pyqtSignal(str, str)

    def __init__(
        self,
        transport: Any,
        scheduler: Scheduler,
        *,
        own_user_id: Optional[str],
        own_role: Optional[str] = None,
        broker: Any = None,
        typing_idle: float = TYPING_IDLE,
        echo_window: float = ECHO_MATCH_WINDOW,
        parent: Optional[QObject] = None,
    ) -> None:
        super().__init__(parent)
        self._transport = transport
        self._scheduler = scheduler
        self._own_user_id = own_user_id
        self._own_role = own_role
        self._broker = broker
        self._typing_idle = typing_idle
        self._echo_window = echo_window
        self._chat_id: Optional[str] = None
        self._messages: List[ChatMessage] = []
        self._temp_seq = 0
        self._typing_sent = False
        self._typing_timer: Optional[TimerHandle] = None
        self._counterparty_typing = False
        self._listeners = None
        transport.state_changed.connect(self._on_transport_state)

    @property
    def chat_id(self) -> Optional[str]:
        return self._chat_id

    @property
    def messages(self) -> List[ChatMessage]:
        return list(self._messages)

    @property
    def counterparty_typing(self) -> bool:
        return self._counterparty_typing

    def join(self, chat_id: str) -> None:
        chat_id = str(chat_id)
        if self._chat_id is not None:
            self.leave()
        self._chat_id = chat_id
        self._messages = []
        self._counterparty_typing = False

        listeners = self._transport.listeners()
        listeners.on(inbound_event.MESSAGES_FETCHED, self._on_messages_fetched)
        listeners.on(inbound_event.MESSAGES_ERROR, self._on_messages_error)
        listeners.on(inbound_event.MARK_READ_SUCCESS, self._on_mark_read_success)
        listeners.on(inbound_event.NEW_MESSAGE, self._on_new_message)
        listeners.on(inbound_event.TYPING, self._on_typing)
        listeners.on(inbound_event.MESSAGES_READ, self._on_messages_read)
        self._listeners = listeners
        if self._broker is not None:
            self._broker.focus_conversation(chat_id)

        logger.info("Joined chat room %s", chat_id)
        self._enter_room()

    def leave(self) -> None:
        chat_id = self._chat_id
        if chat_id is None:
            return
        self._cancel_typing_timer()
        if self._typing_sent:
            self._send_typing(False)
        self._transport.emit(outbound_event.LEAVE_CHAT, chat_id)
        if self._listeners is not None:
            self._listeners.clear()
            self._listeners = None
        if self._broker is not None:
            self._broker.blur_conversation(chat_id)
        self._chat_id = None
        self._messages = []
        self._counterparty_typing = False
        logger.info("Left chat room %s", chat_id)

    def send(self, content: str) -> Optional[ChatMessage]:
        if self._chat_id is None:
            raise ChatRoomError("Join a chat before sending messages.")
        text = (content or "").strip()
        if not text:
            return None
        self._temp_seq += 1
        message = ChatMessage(
            id=f"temp_{self._temp_seq}",
            chat_id=self._chat_id,
            sender_id=self._own_user_id,
            sender_role=self._own_role,
            content=text,
            client_message_id=uuid.uuid4().hex,
            pending=True,
            sent_at=self._scheduler.now(),
        )
        self._messages.append(message)
        self._changed()
        self._transport.emit(
            outbound_event.SEND_MESSAGE,
            {"chatId": self._chat_id, "content": text, "clientMessageId": message.client_message_id},
        )
        self._cancel_typing_timer()
        self._send_typing(False)
        return message

    def input_changed(self, text: str) -> None:
        if self._chat_id is None:
            return
        is_typing = bool(text)
        self._send_typing(is_typing)
        self._cancel_typing_timer()
        if is_typing:
            self._typing_timer = self._scheduler.call_later(self._typing_idle, self._typing_stopped)

    # Event handlers -------------------------------------------------------------
    def _on_transport_state(self, state: str) -> None:
        if state == connection_state.CONNECTED.value and self._chat_id is not None:
            logger.info("Connection restored, rejoining chat room %s", self._chat_id)
            self._enter_room()

    def _on_new_message(self, payload: Any) -> None:
        message = ChatMessage.from_payload(payload)
        if message is None or message.chat_id != self._chat_id:
            return
        if any(existing.id == message.id for existing in self._messages):
            logger.debug("Message %s already shown, skipping duplicate", message.id)
            return
        index = self._pending_index_for(message)
        if index is None:
            self._messages.append(message)
        else:
            self._messages[index] = message
        self._changed()
        if message.sender_id != self._own_user_id:
            self._mark_read()

    def _on_messages_fetched(self, payload: Any) -> None:
        if not isinstance(payload, dict):
            return
        if payload.get("chatId") and str(payload.get("chatId")) != self._chat_id:
            return
        history: List[ChatMessage] = []
        for item in payload.get("messages") or []:
            message = ChatMessage.from_payload(item)
            if message is not None and message.chat_id == self._chat_id:
                history.append(message)
        confirmed_keys = {m.client_message_id for m in history if m.client_message_id}
        pending = [
            m for m in self._messages if m.pending and m.client_message_id not in confirmed_keys
        ]
        self._messages = history + pending
        logger.info("Messages fetched for %s: %s", self._chat_id, len(history))
        self._changed()

    def _on_messages_error(self, payload: Any) -> None:
        message = payload.get("message") if isinstance(payload, dict) else payload
        logger.error("Error fetching messages for %s: %s", self._chat_id, message)
        self._messages = []
        self._changed()
        self.notice.emit("Chat error", str(message or "Failed to fetch messages"))

    def _on_mark_read_success(self, payload: Any) -> None:
        count = payload.get("count") if isinstance(payload, dict) else None
        logger.debug("Marked %s messages as read", count)

    def _on_typing(self, payload: Any) -> None:
        if not isinstance(payload, dict) or not self._for_this_chat(payload):
            return
        if entity_id(payload.get("userId")) == self._own_user_id:
            return
        is_typing = bool(payload.get("isTyping"))
        if is_typing != self._counterparty_typing:
            self._counterparty_typing = is_typing
            self.typing_changed.emit(is_typing)

    def _on_messages_read(self, payload: Any) -> None:
        if isinstance(payload, dict) and self._for_this_chat(payload):
            self.read_receipt.emit(payload)

    # Internal helpers -------------------------------------------------------------
    def _pending_index_for(self, message: ChatMessage) -> Optional[int]:
        if message.client_message_id:
            for index, existing in enumerate(self._messages):
                if existing.pending and existing.client_message_id == message.client_message_id:
                    return index
            return None
        if message.sender_id != self._own_user_id:
            return None
        now = self._scheduler.now()
        for index, existing in enumerate(self._messages):
            if (
                existing.pending
                and existing.content == message.content
                and now - existing.sent_at <= self._echo_window
            ):
                return index
        return None

    def _for_this_chat(self, payload: dict) -> bool:
        chat_id = payload.get("chatId")
        return chat_id is None or str(chat_id) == self._chat_id

    def _enter_room(self) -> None:
        self._transport.emit(outbound_event.JOIN_CHAT, self._chat_id)
        self._transport.emit(
            outbound_event.FETCH_MESSAGES,
            {"chatId": self._chat_id, "page": 1, "limit": MESSAGE_PAGE_SIZE},
        )
        self._mark_read()

    def _mark_read(self) -> None:
        self._transport.emit(outbound_event.MARK_READ, {"chatId": self._chat_id})

    def _send_typing(self, is_typing: bool) -> None:
        self._typing_sent = is_typing
        self._transport.emit(outbound_event.TYPING, {"chatId": self._chat_id, "isTyping": is_typing})

    def _typing_stopped(self) -> None:
        self._typing_timer = None
        if self._chat_id is not None:
            self._send_typing(False)

    def _cancel_typing_timer(self) -> None:
        if self._typing_timer is not None:
            self._typing_timer.cancel()
            self._typing_timer = None

    def _changed(self) -> None:
        self.messages_changed.emit(self.messages)
