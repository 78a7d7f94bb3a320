"""Background research driven by consent and by conversation text.

Two entry points share one output contract: results land in the transcript
as messages appended (or patched in place) through the session's
``MessageChannel``. Failures are logged and swallowed; nothing here retries.
"""
import logging
import time
from enum import Enum
from typing import Any, Dict, List, Optional

from .. import metrics
from ..clients import Citation
from ..config import Settings
from ..db.state_store import StateStore
from ..errors import ServiceError
from ..logging_utils import emit_event
from ..session.consent import ConsentGate, ConsentRecord
from ..session.dedup import TriggerDeduplicator
from ..transcript import MessageChannel, TranscriptMessage
from . import intent

logger = logging.getLogger(__name__)

LEAD_RESEARCH_FLAG = 'lead-research-ran'
CAPABILITIES = ('citations', 'web_preview')
MAX_INSIGHT_CITATIONS = 3
PLACEHOLDER_TEXT = 'Researching…'
FAILED_TEXT = 'Could not complete research.'


class ResearchOutcome(str, Enum):
    SKIPPED = 'skipped'
    DUPLICATE = 'duplicate'
    ABOUT_ME = 'about_me'
    URL = 'url'
    SEARCH = 'search'
    NONE = 'none'


def _citations(items: List[Citation], limit: Optional[int] = None) -> List[Dict[str, Any]]:
    out = [c.model_dump() for c in items if c.uri]
    return out[:limit] if limit is not None else out


def _describe(entity: Optional[Dict[str, Any]], *fields: str) -> Optional[str]:
    if not entity:
        return None
    for f in fields:
        value = entity.get(f)
        if value:
            return str(value)
    return None


class ResearchCoordinator:
    def __init__(self, session_id: str, gate: ConsentGate, dedup: TriggerDeduplicator, clients,
                 store: StateStore, channel: MessageChannel, settings: Optional[Settings] = None):
        """clients: ServiceClients (or a fake exposing the same coroutines)."""
        self.session_id = session_id
        self.gate = gate
        self.dedup = dedup
        self.clients = clients
        self.store = store
        self.channel = channel
        self.settings = settings or Settings()
        self.capabilities: List[str] = []

    # --- consent-edge path ---
    def _flag_key(self) -> str:
        return f'{LEAD_RESEARCH_FLAG}:{self.session_id}'

    async def on_consent_granted(self, record: ConsentRecord) -> bool:
        """Run lead research once per session. Returns True when the collaborator was called."""
        email = record.email or (f'lead@{record.company_domain}' if record.company_domain else None)
        if not email:
            logger.info('lead research skipped: no email for session %s', self.session_id)
            return False
        name = record.name or 'Prospect'
        if self.store.get_session(self.session_id, self._flag_key()):
            return False
        # set before the call so a second trigger arriving mid-flight sees it
        self.store.set_session(self.session_id, self._flag_key(), True)

        company_url = f'https://{record.company_domain}' if record.company_domain else None
        try:
            result = await self.clients.lead_research(email, name, company_url, self.settings.lead_research_provider)
        except ServiceError as e:
            metrics.research_calls_counter.labels(route='lead', outcome='error').inc()
            logger.warning('lead research failed for session %s: %s', self.session_id, e)
            return True
        metrics.research_calls_counter.labels(route='lead', outcome='ok').inc()

        for cap in CAPABILITIES:
            if cap not in self.capabilities:
                self.capabilities.append(cap)
        self.channel.event('capabilities', capabilities=list(self.capabilities))

        company = _describe(result.company, 'name', 'domain')
        person = _describe(result.person, 'fullName', 'name')
        role = _describe(result.person, 'role', 'title')
        parts = []
        if person:
            parts.append(f'{person}{f" ({role})" if role else ""}')
        if company:
            parts.append(f'at {company}' if person else company)
        summary = ' '.join(parts) or name
        self.channel.append(TranscriptMessage(
            type='insight',
            content=f'Research complete: {summary}.',
            citations=_citations(result.citations, MAX_INSIGHT_CITATIONS),
            metadata={'source': 'lead-research'},
        ))
        emit_event('lead_research_complete', session_id=self.session_id, citations=len(result.citations))
        return True

    # --- auto-trigger path ---
    async def handle_text(self, text: str, selection: Optional[str] = None, source: str = 'user') -> ResearchOutcome:
        if not self.gate.is_granted:
            return ResearchOutcome.SKIPPED
        subject = intent.pick_text(text, selection)
        if not subject:
            return ResearchOutcome.NONE
        if not self.dedup.should_fire(intent.trigger_key(subject), self.settings.research_ttl_ms):
            return ResearchOutcome.DUPLICATE

        if intent.is_about_me(subject):
            await self._about_me()
            return ResearchOutcome.ABOUT_ME

        urls = intent.extract_urls(subject)
        if urls:
            await self._run('url', subject, lambda: self.clients.analyze_urls(urls, subject), source)
            return ResearchOutcome.URL

        if intent.has_search_intent(subject):
            await self._run('search', subject, lambda: self.clients.search(subject), source)
            return ResearchOutcome.SEARCH

        return ResearchOutcome.NONE

    async def _about_me(self) -> None:
        try:
            snap = await self.clients.context_snapshot()
        except ServiceError as e:
            metrics.research_calls_counter.labels(route='about_me', outcome='error').inc()
            logger.warning('context snapshot failed for session %s: %s', self.session_id, e)
            return
        metrics.research_calls_counter.labels(route='about_me', outcome='ok').inc()
        person = _describe(snap.person, 'fullName', 'name')
        company = _describe(snap.company, 'name', 'domain')
        lines = []
        if person:
            lines.append(f'You are {person}' + (f', {snap.role}' if snap.role else '') + '.')
        if company:
            lines.append(f'Company: {company}.')
        self.channel.append(TranscriptMessage(
            type='insight',
            content=' '.join(lines) or 'I do not have any details about you yet.',
            metadata={'source': 'context'},
        ))

    async def _run(self, route: str, query: str, call, source: str) -> None:
        message_id = self.channel.append(TranscriptMessage(
            type='research',
            content=PLACEHOLDER_TEXT,
            status='pending',
            metadata={'route': route, 'query': query, 'source': source},
        ))
        start = time.monotonic()
        try:
            result = await call()
        except ServiceError as e:
            metrics.research_calls_counter.labels(route=route, outcome='error').inc()
            logger.warning('%s research failed for session %s: %s', route, self.session_id, e)
            self.channel.patch(message_id, status='failed', content=FAILED_TEXT)
            return
        metrics.research_calls_counter.labels(route=route, outcome='ok').inc()
        self.channel.patch(
            message_id,
            status='complete',
            content=result.text,
            citations=_citations(result.citations),
        )
        emit_event('research_complete', session_id=self.session_id, route=route,
                   elapsed_ms=int((time.monotonic() - start) * 1000))
