import asyncio

import pytest

from consultdesk.clients import ConsentStatus as ServiceConsent
from consultdesk.errors import ServiceError
from consultdesk.research import intent
from consultdesk.research.coordinator import FAILED_TEXT, PLACEHOLDER_TEXT, ResearchCoordinator, ResearchOutcome
from consultdesk.session.consent import ConsentGate, ConsentInput, ConsentRecord
from consultdesk.session.dedup import TriggerDeduplicator
from consultdesk.transcript import MessageChannel, Transcript


def make(clients, store, settings, clock=None, session_id='s1'):
    gate = ConsentGate(session_id, clients)
    dedup = TriggerDeduplicator(clock=clock) if clock else TriggerDeduplicator()
    channel = MessageChannel()
    coord = ResearchCoordinator(session_id, gate, dedup, clients, store, channel, settings)
    gate.on_granted(coord.on_consent_granted)
    return gate, coord, channel


async def grant(gate):
    await gate.submit(ConsentInput(name='Ada', email='ada@acme.example', company_url='acme.example'))
    await gate.join()


# --- intent helpers ---
def test_extract_urls_strips_trailing_punctuation():
    assert intent.extract_urls('see https://example.com/page.') == ['https://example.com/page']
    assert intent.extract_urls('(https://a.example/x), and http://b.example!') == [
        'https://a.example/x', 'http://b.example']
    assert intent.extract_urls('no links here') == []


def test_trigger_key():
    assert intent.trigger_key('Look at https://example.com/page.') == 'url:https://example.com/page'
    assert intent.trigger_key('  Search LATEST news!! ') == 'text:search latest news'


def test_pick_text_prefers_long_selection():
    assert intent.pick_text('message', 'highlighted words') == 'highlighted words'
    assert intent.pick_text('message', 'ab') == 'message'
    assert intent.pick_text('message', None) == 'message'


def test_intent_detection():
    assert intent.is_about_me('What do you know about me?')
    assert not intent.is_about_me('tell me about the market')
    assert intent.has_search_intent('who is the CEO of Acme')
    assert not intent.has_search_intent('hello there')
    assert intent.has_search_intent('I am researching pricing models')
    assert intent.has_search_intent('finding a new CRM vendor')
    assert not intent.has_search_intent('that is unsearchable')


# --- auto-trigger path ---
@pytest.mark.asyncio
async def test_no_consent_no_network(clients, store, settings):
    gate, coord, channel = make(clients, store, settings)
    assert await coord.handle_text('search latest AI regulation news') is ResearchOutcome.SKIPPED
    assert clients.calls == []
    assert channel.pending() == 0


@pytest.mark.asyncio
async def test_search_deduplicated_within_ttl(clients, store, settings, clock):
    gate, coord, channel = make(clients, store, settings, clock)
    await grant(gate)
    text = 'search latest AI regulation news'

    assert await coord.handle_text(text) is ResearchOutcome.SEARCH
    assert clients.count('search') == 1
    clock.advance(10)
    assert await coord.handle_text(text) is ResearchOutcome.DUPLICATE
    assert clients.count('search') == 1
    clock.advance(21)
    assert await coord.handle_text(text) is ResearchOutcome.SEARCH
    assert clients.count('search') == 2


@pytest.mark.asyncio
async def test_url_routed_to_url_analysis(clients, store, settings):
    gate, coord, channel = make(clients, store, settings)
    await grant(gate)
    text = 'Can you search this https://example.com/page.'
    assert await coord.handle_text(text) is ResearchOutcome.URL
    calls = [c for c in clients.calls if c[0] == 'analyze_urls']
    assert calls == [('analyze_urls', ['https://example.com/page'], text)]
    assert clients.count('search') == 0


@pytest.mark.asyncio
async def test_placeholder_is_patched_in_place(clients, store, settings):
    gate, coord, channel = make(clients, store, settings)
    await grant(gate)
    transcript = Transcript()
    transcript.flush(channel)  # consent-edge insight and capability event

    await coord.handle_text('find the latest pricing news')
    events = transcript.flush(channel)
    assert events[0]['type'] == 'message_appended'
    assert events[0]['message']['content'] == PLACEHOLDER_TEXT
    assert events[0]['message']['status'] == 'pending'
    assert events[1]['type'] == 'message_patched'
    msg = transcript.messages[-1]
    assert msg.status == 'complete'
    assert msg.content == 'search results'
    assert msg.citations[0]['uri'] == 'https://news.example'


@pytest.mark.asyncio
async def test_failed_research_patches_failure(clients, store, settings):
    gate, coord, channel = make(clients, store, settings)
    await grant(gate)
    transcript = Transcript()
    transcript.flush(channel)
    clients.research_error = ServiceError('search', 'HTTP 500', status_code=500)

    assert await coord.handle_text('research quantum startups') is ResearchOutcome.SEARCH
    transcript.flush(channel)
    assert transcript.messages[-1].status == 'failed'
    assert transcript.messages[-1].content == FAILED_TEXT


@pytest.mark.asyncio
async def test_about_me_reads_context_only(clients, store, settings):
    gate, coord, channel = make(clients, store, settings)
    await grant(gate)
    transcript = Transcript()
    transcript.flush(channel)

    assert await coord.handle_text('What do you know about me?') is ResearchOutcome.ABOUT_ME
    assert clients.count('context_snapshot') == 1
    assert clients.count('search') == 0
    transcript.flush(channel)
    assert transcript.messages[-1].type == 'insight'
    assert 'Ada' in transcript.messages[-1].content


@pytest.mark.asyncio
async def test_plain_text_routes_nowhere(clients, store, settings):
    gate, coord, channel = make(clients, store, settings)
    await grant(gate)
    before = len(clients.calls)
    assert await coord.handle_text('thanks, that helps') is ResearchOutcome.NONE
    assert len(clients.calls) == before


@pytest.mark.asyncio
async def test_selection_wins_over_text(clients, store, settings):
    gate, coord, channel = make(clients, store, settings)
    await grant(gate)
    await coord.handle_text('ok', selection='latest news on solid state batteries')
    assert ('search', 'latest news on solid state batteries') in clients.calls


# --- consent-edge path ---
@pytest.mark.asyncio
async def test_consent_edge_runs_once_under_polling(clients, store, settings):
    clients.consent = ServiceConsent(allow=True, email='ada@acme.example', name='Ada', companyDomain='acme.example')
    gate, coord, channel = make(clients, store, settings)
    await asyncio.gather(*(gate.refresh() for _ in range(4)))
    await gate.refresh()
    await gate.join()
    assert clients.count('lead_research') == 1
    call = [c for c in clients.calls if c[0] == 'lead_research'][0]
    assert call[1:] == ('ada@acme.example', 'Ada', 'https://acme.example', 'google')


@pytest.mark.asyncio
async def test_consent_edge_flag_survives_new_gate(clients, store, settings):
    _, coord, _ = make(clients, store, settings)
    record = ConsentRecord(session_id='s1', allowed=True, email='ada@acme.example')
    assert await coord.on_consent_granted(record) is True
    _, coord2, _ = make(clients, store, settings)
    assert await coord2.on_consent_granted(record) is False
    assert clients.count('lead_research') == 1


@pytest.mark.asyncio
async def test_concurrent_consent_edge_calls_once(clients, store, settings):
    _, coord, _ = make(clients, store, settings)
    record = ConsentRecord(session_id='s1', allowed=True, email='ada@acme.example')
    await asyncio.gather(coord.on_consent_granted(record), coord.on_consent_granted(record))
    assert clients.count('lead_research') == 1


@pytest.mark.asyncio
async def test_consent_edge_derives_email_and_name(clients, store, settings):
    _, coord, _ = make(clients, store, settings)
    await coord.on_consent_granted(ConsentRecord(session_id='s1', allowed=True, company_domain='acme.example'))
    call = [c for c in clients.calls if c[0] == 'lead_research'][0]
    assert call[1] == 'lead@acme.example'
    assert call[2] == 'Prospect'


@pytest.mark.asyncio
async def test_consent_edge_without_email_aborts(clients, store, settings):
    _, coord, _ = make(clients, store, settings)
    assert await coord.on_consent_granted(ConsentRecord(session_id='s1', allowed=True)) is False
    assert clients.count('lead_research') == 0


@pytest.mark.asyncio
async def test_consent_edge_publishes_capabilities_and_insight(clients, store, settings):
    _, coord, channel = make(clients, store, settings)
    await coord.on_consent_granted(ConsentRecord(session_id='s1', allowed=True, email='ada@acme.example'))
    transcript = Transcript()
    events = transcript.flush(channel)
    assert events[0] == {'type': 'capabilities', 'capabilities': ['citations', 'web_preview']}
    insight = transcript.messages[0]
    assert insight.type == 'insight'
    assert 'Ada Lovelace' in insight.content and 'Acme' in insight.content
    assert len(insight.citations) == 3


@pytest.mark.asyncio
async def test_consent_edge_failure_is_swallowed(clients, store, settings):
    clients.research_error = ServiceError('lead-research', 'HTTP 500', status_code=500)
    _, coord, channel = make(clients, store, settings)
    assert await coord.on_consent_granted(
        ConsentRecord(session_id='s1', allowed=True, email='ada@acme.example')) is True
    assert channel.pending() == 0
    assert coord.capabilities == []
