import asyncio
from typing import List, Optional

import numpy as np

from consultdesk.clients import Citation, ConsentStatus, ContextSnapshot, LeadResearchResult, ResearchText
from consultdesk.errors import ServiceError
from consultdesk.widgets.devices import DeviceHandle, DeviceSource


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeClients:
    """Stands in for ServiceClients; records every call."""

    def __init__(self):
        self.calls: List[tuple] = []
        self.consent = ConsentStatus(allow=False)
        self.consent_error: Optional[ServiceError] = None
        self.post_error: Optional[ServiceError] = None
        self.lead_result = LeadResearchResult(
            company={'name': 'Acme'},
            person={'fullName': 'Ada Lovelace', 'role': 'CTO'},
            citations=[Citation(uri=f'https://acme.example/{i}', title=str(i)) for i in range(5)],
        )
        self.research_error: Optional[ServiceError] = None
        self.search_result = ResearchText(text='search results', citations=[Citation(uri='https://news.example')])
        self.url_result = ResearchText(text='page summary')
        self.snapshot = ContextSnapshot(person={'name': 'Ada'}, company={'name': 'Acme'}, role='CTO')
        self.analysis = 'the user is editing a spreadsheet'
        self.analysis_error: Optional[ServiceError] = None
        self.analysis_gate: Optional[asyncio.Event] = None
        self.artifact_chunks: List[dict] = []
        self.artifact_error: Optional[ServiceError] = None

    def count(self, name: str) -> int:
        return sum(1 for c in self.calls if c[0] == name)

    async def get_consent(self):
        self.calls.append(('get_consent',))
        if self.consent_error:
            raise self.consent_error
        return self.consent

    async def post_consent(self, name, email, company_url):
        self.calls.append(('post_consent', name, email, company_url))
        if self.post_error:
            raise self.post_error
        return {'ok': True}

    async def lead_research(self, email, name, company_url, provider):
        self.calls.append(('lead_research', email, name, company_url, provider))
        await asyncio.sleep(0)
        if self.research_error:
            raise self.research_error
        return self.lead_result

    async def search(self, query):
        self.calls.append(('search', query))
        if self.research_error:
            raise self.research_error
        return self.search_result

    async def analyze_urls(self, urls, query):
        self.calls.append(('analyze_urls', urls, query))
        if self.research_error:
            raise self.research_error
        return self.url_result

    async def context_snapshot(self):
        self.calls.append(('context_snapshot',))
        return self.snapshot

    async def analyze_frame(self, image, context, capture_type='screen'):
        self.calls.append(('analyze_frame', capture_type, context))
        if self.analysis_gate is not None:
            await self.analysis_gate.wait()
        if self.analysis_error:
            raise self.analysis_error
        return self.analysis

    async def generate_artifact(self, kind, payload):
        self.calls.append(('generate_artifact', kind, payload))
        for chunk in self.artifact_chunks:
            yield chunk
        if self.artifact_error:
            raise self.artifact_error


class FakeHandle(DeviceHandle):
    def __init__(self, width=1920, height=1080):
        super().__init__(width, height)
        self.stop_calls = 0

    async def read_frame(self):
        if self.stopped:
            return None
        return np.zeros((self.height, self.width, 3), dtype=np.uint8)

    def _release(self):
        self.stop_calls += 1

    def end(self):
        """Simulate the device going away (e.g. the user stops sharing from the OS)."""
        self._fire_ended()


class FakeSource(DeviceSource):
    def __init__(self, widget_type='screen', width=1920, height=1080, error: Optional[Exception] = None):
        self.widget_type = widget_type
        self.width = width
        self.height = height
        self.error = error
        self.acquisitions = 0
        self.gate: Optional[asyncio.Event] = None
        self.handles: List[FakeHandle] = []

    async def acquire(self):
        self.acquisitions += 1
        if self.gate is not None:
            await self.gate.wait()
        else:
            await asyncio.sleep(0)
        if self.error:
            raise self.error
        handle = FakeHandle(self.width, self.height)
        self.handles.append(handle)
        return handle


def fake_sources():
    return {t: (FakeSource(t), None) for t in ('voice', 'webcam', 'screen')}


