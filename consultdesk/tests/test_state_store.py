from consultdesk.db.state_store import StateStore
from consultdesk.session.identity import SESSION_ID_KEY, SessionIdentity


def test_durable_roundtrip_and_upsert(store):
    assert store.get_durable('missing', 'dflt') == 'dflt'
    store.set_durable('k', {'a': 1})
    store.set_durable('k', {'a': 2})
    assert store.get_durable('k') == {'a': 2}


def test_set_durable_if_absent_keeps_first(store):
    assert store.set_durable_if_absent('k', 'first') == 'first'
    assert store.set_durable_if_absent('k', 'second') == 'first'


def test_session_scope_is_per_session_and_clearable(store):
    store.set_session('s1', 'flag', True)
    store.set_session('s1', 'ctx', [1, 2])
    store.set_session('s2', 'flag', False)
    assert store.get_session('s1', 'flag') is True
    assert store.get_session('s2', 'flag') is False
    assert store.clear_session_scope('s1') == 2
    assert store.get_session('s1', 'flag') is None
    assert store.get_session('s2', 'flag') is False
    assert store.delete_session('s2', 'flag') is True
    assert store.delete_session('s2', 'flag') is False


def test_session_scope_does_not_touch_durable(store):
    store.set_durable(SESSION_ID_KEY, {'id': 'x', 'created_at': 1.0})
    store.set_session('x', 'flag', True)
    store.clear_session_scope()
    assert store.get_durable(SESSION_ID_KEY)['id'] == 'x'


def test_identity_is_durable(tmp_path):
    path = str(tmp_path / 'state.db')
    s1 = StateStore(path)
    first = SessionIdentity(s1).get_or_create()
    assert SessionIdentity(s1).get_or_create() == first
    s1.close()

    s2 = StateStore(path)
    identity = SessionIdentity(s2)
    assert identity.current() == first
    assert identity.get_or_create().id == first.id
    s2.close()


def test_identity_current_none_before_creation(store):
    assert SessionIdentity(store).current() is None
