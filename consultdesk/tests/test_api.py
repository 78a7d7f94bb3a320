import json

import pytest
from fastapi import WebSocketDisconnect
from fastapi.testclient import TestClient

from consultdesk.config import Settings
from consultdesk.db.state_store import StateStore
from consultdesk.errors import DeviceError, DeviceErrorKind, ServiceError
from consultdesk.main import create_app
from consultdesk.session.context import SessionRegistry

from .fakes import FakeClients, FakeSource, fake_sources

FULL_LEAD_CONVERSION = {
    'chart': {
        'title': {'text': 'Funnel'},
        'data': [{'type': 'funnel', 'name': 'Leads', 'dataPoints': [{'y': 100, 'name': 'Visitors'}]}],
    },
    'metrics': {
        'totalLeads': {'label': 'Leads', 'value': 100},
        'conversionRate': {'label': 'Rate', 'value': 12, 'percentage': 12.0},
        'qualifiedLeads': {'label': 'Qualified', 'value': 30},
    },
    'summary': 'Healthy funnel.',
    'timeframe': 'Q1',
}


def build_client(fake=None, sources_factory=fake_sources, db=':memory:'):
    fake = fake or FakeClients()
    settings = Settings(state_db=db)
    registry = SessionRegistry(settings, StateStore(db),
                               client_factory=lambda sid: fake, sources_factory=sources_factory)
    return TestClient(create_app(settings, registry)), fake


def issue_session(client):
    return client.post('/api/sessions').json()['session_id']


@pytest.fixture
def api():
    client, fake = build_client()
    with client:
        yield client, fake


def test_status_and_metrics(api):
    client, _ = api
    r = client.get('/api/status')
    assert r.status_code == 200
    assert r.json()['ok'] is True
    m = client.get('/metrics')
    assert m.status_code == 200
    assert 'consultdesk_research_calls_total' in m.text


def test_session_is_durable(api):
    client, _ = api
    first = client.post('/api/sessions').json()
    second = client.post('/api/sessions').json()
    assert first['session_id'] == second['session_id']


def test_consent_flow_and_research(api):
    client, fake = api
    sid = client.post('/api/sessions').json()['session_id']

    r = client.post(f'/api/sessions/{sid}/messages', json={'text': 'search latest AI regulation news'})
    assert r.json()['research'] == 'skipped'
    assert fake.count('search') == 0

    r = client.post(f'/api/sessions/{sid}/consent',
                    json={'name': 'Ada', 'email': 'ada@acme.example', 'companyUrl': 'acme.example'})
    assert r.status_code == 200
    assert r.json() == {'result': 'granted', 'status': 'granted'}

    r = client.post(f'/api/sessions/{sid}/messages', json={'text': 'search latest AI regulation news'})
    assert r.json()['research'] == 'search'
    r = client.post(f'/api/sessions/{sid}/messages', json={'text': 'Search latest AI regulation news!'})
    assert r.json()['research'] == 'duplicate'
    assert fake.count('search') == 1

    messages = client.get(f'/api/sessions/{sid}/messages').json()['messages']
    research = [m for m in messages if m['type'] == 'research']
    assert research[0]['status'] == 'complete'
    assert research[0]['content'] == 'search results'
    assert messages[0]['role'] == 'user'


def test_consent_rejected_and_unavailable():
    fake = FakeClients()
    client, _ = build_client(fake)
    with client:
        sid = issue_session(client)
        fake.post_error = ServiceError('consent', 'HTTP 400', status_code=400)
        r = client.post(f'/api/sessions/{sid}/consent', json={'name': 'A', 'email': 'bad', 'companyUrl': 'x'})
        assert r.json()['result'] == 'rejected'
        assert client.get(f'/api/sessions/{sid}/consent').json()['status'] == 'denied'

        fake.post_error = ServiceError('consent', 'transport error: refused')
        r = client.post(f'/api/sessions/{sid}/consent',
                        json={'name': 'A', 'email': 'a@b.example', 'companyUrl': 'x'})
        assert r.status_code == 503
        assert client.get(f'/api/sessions/{sid}/consent').json()['status'] == 'denied'


def test_routes_serve_durable_session_after_restart(tmp_path):
    db = str(tmp_path / 'state.db')
    first, _ = build_client(db=db)
    with first:
        sid = issue_session(first)

    # a fresh process: the id is on disk but no context exists in memory yet
    second, _ = build_client(db=db)
    with second:
        r = second.get(f'/api/sessions/{sid}/status')
        assert r.status_code == 200
        assert r.json()['session_id'] == sid
        assert second.get(f'/api/sessions/{sid}/consent').json()['status'] == 'unknown'
        assert second.get(f'/api/sessions/{sid}/widgets').status_code == 200
        assert second.get(f'/api/sessions/{sid}/messages').json()['messages'] == []


def test_unknown_session_is_rejected(api):
    client, _ = api
    sid = issue_session(client)
    assert client.post(f'/api/sessions/{sid}/widgets/webcam/open').json()['state'] == 'active'

    r = client.post('/api/sessions/not-a-real-session/widgets/webcam/open')
    assert r.status_code == 404
    assert client.get('/api/sessions/not-a-real-session/status').status_code == 404
    assert len(client.app.state.registry) == 1

    with client.websocket_connect('/ws/sessions/not-a-real-session') as ws:
        with pytest.raises(WebSocketDisconnect) as exc:
            ws.receive_json()
    assert exc.value.code == 4404


def test_widget_lifecycle_routes(api):
    client, fake = api
    base = f'/api/sessions/{issue_session(client)}/widgets'
    r = client.post(f'{base}/screen/open')
    assert r.status_code == 200
    assert r.json()['state'] == 'active'

    widgets = client.get(base).json()
    assert [w['type'] for w in widgets['active']] == ['screen']

    r = client.post(f'{base}/screen/analyze')
    assert r.status_code == 200
    assert r.json()['analysis'] == fake.analysis

    assert client.post(f'{base}/screen/minimize').json()['state'] == 'minimized'
    assert client.post(f'{base}/screen/analyze').status_code == 409
    assert client.post(f'{base}/screen/expand').json()['state'] == 'active'
    assert client.post(f'{base}/screen/close').json()['state'] == 'closed'
    assert client.post(f'{base}/screen/analyze').status_code == 409

    assert client.post(f'{base}/hologram/open').status_code == 404
    assert client.post(f'{base}/voice/analyze').status_code == 404


def test_analysis_failure_maps_to_502(api):
    client, fake = api
    base = f'/api/sessions/{issue_session(client)}/widgets'
    client.post(f'{base}/webcam/open')
    fake.analysis_error = ServiceError('frame-analysis', 'HTTP 500', status_code=500)
    assert client.post(f'{base}/webcam/analyze').status_code == 502


def test_device_error_maps_to_409():
    def sources():
        s = fake_sources()
        s['webcam'] = (FakeSource('webcam', error=DeviceError(DeviceErrorKind.BUSY, 'in use')), None)
        return s

    client, _ = build_client(sources_factory=sources)
    with client:
        base = f'/api/sessions/{issue_session(client)}/widgets'
        r = client.post(f'{base}/webcam/open')
        assert r.status_code == 409
        assert r.json()['detail'] == {'kind': 'busy', 'message': 'Camera is already in use by another application.'}
        widgets = client.get(base).json()
        assert widgets['active'] == []


def test_end_browsing_closes_widgets(api):
    client, _ = api
    sid = issue_session(client)
    client.post(f'/api/sessions/{sid}/widgets/screen/open')
    r = client.delete(f'/api/sessions/{sid}/browsing')
    assert r.json()['ended'] is True
    assert client.get(f'/api/sessions/{sid}/widgets').json()['active'] == []


def test_artifact_stream_ndjson(api):
    client, fake = api
    sid = issue_session(client)
    fake.artifact_chunks = [{'summary': 'Healthy'}, FULL_LEAD_CONVERSION]
    r = client.post(f'/api/sessions/{sid}/artifacts/lead-conversion', json={'query': 'funnel'})
    assert r.status_code == 200
    lines = [json.loads(line) for line in r.text.splitlines() if line]
    assert [l['is_complete'] for l in lines] == [False, False, True]
    assert lines[-1]['partial_object'] == FULL_LEAD_CONVERSION

    assert client.post(f'/api/sessions/{sid}/artifacts/nope', json={'query': 'x'}).status_code == 404


def test_ws_handshake_ack(api):
    client, _ = api
    sid = issue_session(client)
    with client.websocket_connect(f'/ws/sessions/{sid}') as ws:
        ws.send_text(json.dumps({'type': 'handshake'}))
        msg = ws.receive_json()
        assert msg['type'] == 'handshake_ack'
        assert msg['session_id'] == sid
        assert msg['status']['consent'] == 'unknown'
