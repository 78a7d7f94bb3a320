"""Consent state machine gating all personalization.

    unknown --submit--> pending --ok--> granted
                           |--4xx--> denied --submit--> pending ...
    unknown --refresh(allow)--> granted

Service outages never move the gate to ``denied``.
"""
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Set

from ..errors import ConsentServiceUnavailable, ServiceError
from ..logging_utils import emit_event

logger = logging.getLogger(__name__)


class ConsentStatus(str, Enum):
    UNKNOWN = 'unknown'
    PENDING = 'pending'
    GRANTED = 'granted'
    DENIED = 'denied'


class SubmitResult(str, Enum):
    GRANTED = 'granted'
    REJECTED = 'rejected'


@dataclass(frozen=True)
class ConsentInput:
    name: str
    email: str
    company_url: str


@dataclass(frozen=True)
class ConsentRecord:
    session_id: str
    allowed: bool
    email: Optional[str] = None
    name: Optional[str] = None
    company_domain: Optional[str] = None
    policy_version: Optional[str] = None


def domain_from_url(company_url: str) -> Optional[str]:
    url = (company_url or '').strip().lower()
    if not url:
        return None
    for prefix in ('https://', 'http://'):
        if url.startswith(prefix):
            url = url[len(prefix):]
    url = url.split('/')[0].split('?')[0]
    if url.startswith('www.'):
        url = url[4:]
    return url or None


GrantedListener = Callable[[ConsentRecord], Awaitable[None]]


class ConsentGate:
    def __init__(self, session_id: str, service):
        """service: object with async get_consent() and post_consent(name, email, company_url)."""
        self.session_id = session_id
        self.service = service
        self._status = ConsentStatus.UNKNOWN
        self._record: Optional[ConsentRecord] = None
        self._granted_fired = False
        self._listeners: List[GrantedListener] = []
        self._tasks: Set[asyncio.Task] = set()

    def get_status(self) -> ConsentStatus:
        return self._status

    @property
    def is_granted(self) -> bool:
        return self._status is ConsentStatus.GRANTED

    @property
    def record(self) -> Optional[ConsentRecord]:
        return self._record

    def on_granted(self, listener: GrantedListener) -> None:
        self._listeners.append(listener)

    async def refresh(self) -> ConsentStatus:
        """Poll the consent service. Unreachable service leaves the status untouched."""
        try:
            status = await self.service.get_consent()
        except ServiceError as e:
            logger.warning('consent check failed, treating as not yet granted: %s', e)
            return self._status
        if status.allow:
            self._grant(ConsentRecord(
                session_id=self.session_id,
                allowed=True,
                email=status.email,
                name=status.name,
                company_domain=status.company_domain,
                policy_version=status.policy_version,
            ))
        return self._status

    async def submit(self, consent: ConsentInput) -> SubmitResult:
        if self._status is ConsentStatus.GRANTED:
            # granted is terminal for the session; a resubmit never reopens it
            logger.debug('consent already granted for %s, ignoring resubmit', self.session_id)
            return SubmitResult.GRANTED
        previous = self._status
        self._status = ConsentStatus.PENDING
        try:
            await self.service.post_consent(consent.name, consent.email, consent.company_url)
        except ServiceError as e:
            if e.is_client_error:
                self._status = ConsentStatus.DENIED
                emit_event('consent_rejected', session_id=self.session_id, status_code=e.status_code)
                return SubmitResult.REJECTED
            self._status = previous
            raise ConsentServiceUnavailable(str(e)) from e
        self._grant(ConsentRecord(
            session_id=self.session_id,
            allowed=True,
            email=consent.email,
            name=consent.name,
            company_domain=domain_from_url(consent.company_url),
        ))
        return SubmitResult.GRANTED

    def _grant(self, record: ConsentRecord) -> None:
        self._status = ConsentStatus.GRANTED
        self._record = record
        if self._granted_fired:
            return
        self._granted_fired = True
        emit_event('consent_granted', session_id=self.session_id)
        for listener in self._listeners:
            task = asyncio.create_task(self._run_listener(listener, record))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _run_listener(self, listener: GrantedListener, record: ConsentRecord) -> None:
        try:
            await listener(record)
        except Exception:
            logger.exception('consent-granted listener failed')

    async def join(self) -> None:
        """Wait for consent-granted listeners scheduled so far."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
