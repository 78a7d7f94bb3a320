"""Per-session wiring of the orchestration components.

A ``SessionContext`` owns everything scoped to one client session: the
consent gate, the deduplicator, research, widgets and their capture loops,
the artifact channel and the transcript fed through one ``MessageChannel``.
``SessionRegistry`` creates contexts on demand and tears them down.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..artifacts.channel import ArtifactStreamChannel
from ..clients import ServiceClients
from ..config import Settings
from ..db.state_store import StateStore
from ..logging_utils import emit_event
from ..research.coordinator import ResearchCoordinator
from ..transcript import MessageChannel, Transcript
from ..widgets.capture_loop import AdaptiveCaptureLoop
from ..widgets.devices import default_sources
from ..widgets.lifecycle import WidgetRegistry
from .consent import ConsentGate
from .dedup import TriggerDeduplicator
from .identity import Session, SessionIdentity

logger = logging.getLogger(__name__)

CAPTURE_WIDGETS = ('screen', 'webcam')

Broadcast = Callable[[str, dict], Awaitable[None]]


class SessionContext:
    def __init__(self, session_id: str, settings: Settings, store: StateStore, clients,
                 sources: Dict[str, tuple], broadcast: Optional[Broadcast] = None):
        self.session_id = session_id
        self.settings = settings
        self.store = store
        self.clients = clients
        self.channel = MessageChannel()
        self.transcript = Transcript(self._broadcast if broadcast else None)
        self._broadcast_fn = broadcast

        self.gate = ConsentGate(session_id, clients)
        self.dedup = TriggerDeduplicator()
        self.research = ResearchCoordinator(session_id, self.gate, self.dedup, clients, store, self.channel, settings)
        self.gate.on_granted(self.research.on_consent_granted)

        self.widgets = WidgetRegistry.from_sources(sources, self.channel, settings)
        self.loops: Dict[str, AdaptiveCaptureLoop] = {
            t: AdaptiveCaptureLoop(self.widgets.get(t), clients, store, self.channel, session_id, settings)
            for t in CAPTURE_WIDGETS if t in self.widgets
        }
        self.artifacts = ArtifactStreamChannel(clients.generate_artifact)
        self._consumer: Optional[asyncio.Task] = None

    async def _broadcast(self, event: dict) -> None:
        await self._broadcast_fn(self.session_id, event)

    def ensure_started(self) -> None:
        """Start the transcript consumer on the running loop (once)."""
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.create_task(self.transcript.consume(self.channel))

    async def sync(self) -> List[dict]:
        """Apply whatever is queued right now, broadcasting like the consumer would."""
        events = self.transcript.flush(self.channel)
        if self._broadcast_fn is not None:
            for ev in events:
                await self._broadcast(ev)
        return events

    def end_browsing(self) -> int:
        """Close every widget and forget session-scope state. Returns rows cleared."""
        self.widgets.close_all()
        self.dedup.reset()
        cleared = self.store.clear_session_scope(self.session_id)
        emit_event('browsing_session_ended', session_id=self.session_id, cleared=cleared)
        return cleared

    async def shutdown(self) -> None:
        self.widgets.close_all()
        await self.gate.join()
        if self._consumer is not None:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None

    def status(self) -> Dict[str, Any]:
        return {
            'session_id': self.session_id,
            'consent': self.gate.get_status().value,
            'capabilities': list(self.research.capabilities),
            'widgets': [w.to_dict() for w in self.widgets.all()],
            'messages': len(self.transcript.messages),
        }


class SessionRegistry:
    """Process-wide map of session id to context."""

    def __init__(self, settings: Settings, store: StateStore,
                 client_factory: Optional[Callable[[str], Any]] = None,
                 sources_factory: Optional[Callable[[], Dict[str, tuple]]] = None,
                 broadcast: Optional[Broadcast] = None):
        self.settings = settings
        self.store = store
        self.identity = SessionIdentity(store)
        self.client_factory = client_factory or (
            lambda sid: ServiceClients(settings.service_url, sid, settings.http_timeout))
        self.sources_factory = sources_factory or (lambda: default_sources(settings))
        self.broadcast = broadcast
        self._sessions: Dict[str, SessionContext] = {}

    def create_session(self) -> Session:
        return self.identity.get_or_create()

    def get(self, session_id: str) -> Optional[SessionContext]:
        return self._sessions.get(session_id)

    def is_issued(self, session_id: str) -> bool:
        """Only the durable id handed out by ``create_session`` gets a context over HTTP."""
        current = self.identity.current()
        return current is not None and current.id == session_id

    def resolve(self, session_id: str) -> Optional[SessionContext]:
        if not self.is_issued(session_id):
            return None
        return self.get_or_create(session_id)

    def get_or_create(self, session_id: str) -> SessionContext:
        ctx = self._sessions.get(session_id)
        if ctx is None:
            ctx = SessionContext(session_id, self.settings, self.store, self.client_factory(session_id),
                                 self.sources_factory(), self.broadcast)
            self._sessions[session_id] = ctx
            logger.info('session context created for %s', session_id)
        return ctx

    def __len__(self) -> int:
        return len(self._sessions)

    async def shutdown(self) -> None:
        for ctx in list(self._sessions.values()):
            await ctx.shutdown()
        self._sessions.clear()
