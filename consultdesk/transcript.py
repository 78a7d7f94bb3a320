"""Conversation transcript and the append/patch message channel.

Producers (research, capture loops, widgets) never touch the transcript
directly: they put typed operations on a ``MessageChannel`` and the
transcript owner applies them in order. Because a placeholder is appended
at trigger time and patched later, transcript order follows trigger order
even when completions arrive out of order.
"""
import asyncio
import logging
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

MessageType = Literal['text', 'insight', 'research', 'analysis', 'system']
MessageStatus = Literal['pending', 'complete', 'failed']


class TranscriptMessage(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    role: Literal['user', 'assistant', 'system'] = 'assistant'
    type: MessageType = 'text'
    content: str = ''
    status: MessageStatus = 'complete'
    citations: List[Dict[str, Any]] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: float = Field(default_factory=time.time)


class AppendMessage(BaseModel):
    op: Literal['append'] = 'append'
    message: TranscriptMessage


class PatchMessage(BaseModel):
    op: Literal['patch'] = 'patch'
    message_id: str
    changes: Dict[str, Any]


class SessionEvent(BaseModel):
    """Non-transcript notifications (capability flags, widget state, device errors)."""
    op: Literal['event'] = 'event'
    type: str
    data: Dict[str, Any] = Field(default_factory=dict)


ChannelItem = Union[AppendMessage, PatchMessage, SessionEvent]


class MessageChannel:
    """Unbounded FIFO of transcript operations for one session."""

    def __init__(self):
        self._queue: 'asyncio.Queue[ChannelItem]' = asyncio.Queue()

    def append(self, message: TranscriptMessage) -> str:
        self._queue.put_nowait(AppendMessage(message=message))
        return message.id

    def patch(self, message_id: str, **changes: Any) -> None:
        self._queue.put_nowait(PatchMessage(message_id=message_id, changes=changes))

    def event(self, type: str, **data: Any) -> None:
        self._queue.put_nowait(SessionEvent(type=type, data=data))

    async def get(self) -> ChannelItem:
        return await self._queue.get()

    def drain(self) -> List[ChannelItem]:
        items = []
        while True:
            try:
                items.append(self._queue.get_nowait())
            except asyncio.QueueEmpty:
                return items

    def pending(self) -> int:
        return self._queue.qsize()


class Transcript:
    """Ordered message list owned by the session; applies channel operations."""

    _PATCHABLE = {'content', 'status', 'citations', 'metadata', 'type'}

    def __init__(self, broadcast: Optional[Callable[[dict], Awaitable[None]]] = None):
        self.messages: List[TranscriptMessage] = []
        self._index: Dict[str, TranscriptMessage] = {}
        self.broadcast = broadcast

    def apply(self, item: ChannelItem) -> Optional[dict]:
        """Apply one operation; return the event to broadcast (None if dropped)."""
        if isinstance(item, AppendMessage):
            msg = item.message
            self.messages.append(msg)
            self._index[msg.id] = msg
            return {'type': 'message_appended', 'message': msg.model_dump()}
        if isinstance(item, PatchMessage):
            msg = self._index.get(item.message_id)
            if msg is None:
                logger.warning('patch for unknown message %s dropped', item.message_id)
                return None
            changes = {k: v for k, v in item.changes.items() if k in self._PATCHABLE}
            updated = msg.model_copy(update=changes)
            self._replace(updated)
            return {'type': 'message_patched', 'message': updated.model_dump()}
        return {'type': item.type, **item.data}

    def _replace(self, updated: TranscriptMessage) -> None:
        for i, m in enumerate(self.messages):
            if m.id == updated.id:
                self.messages[i] = updated
                break
        self._index[updated.id] = updated

    def get(self, message_id: str) -> Optional[TranscriptMessage]:
        return self._index.get(message_id)

    def flush(self, channel: MessageChannel) -> List[dict]:
        """Apply everything currently queued without broadcasting."""
        events = []
        for item in channel.drain():
            ev = self.apply(item)
            if ev is not None:
                events.append(ev)
        return events

    async def consume(self, channel: MessageChannel) -> None:
        """Run forever applying channel items and broadcasting the results."""
        while True:
            item = await channel.get()
            ev = self.apply(item)
            if ev is not None and self.broadcast is not None:
                try:
                    await self.broadcast(ev)
                except Exception:
                    logger.exception('transcript broadcast failed')
