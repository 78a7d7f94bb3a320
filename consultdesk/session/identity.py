import time
import uuid
from dataclasses import dataclass

from ..db.state_store import StateStore

SESSION_ID_KEY = 'intelligence-session-id'


@dataclass(frozen=True)
class Session:
    id: str
    created_at: float


class SessionIdentity:
    """Creates or retrieves the durable per-client session id."""

    def __init__(self, store: StateStore):
        self.store = store

    def get_or_create(self) -> Session:
        existing = self.store.get_durable(SESSION_ID_KEY)
        if existing:
            return Session(id=existing['id'], created_at=existing['created_at'])
        candidate = {'id': str(uuid.uuid4()), 'created_at': time.time()}
        # a concurrent creator may have won; keep whatever is stored
        stored = self.store.set_durable_if_absent(SESSION_ID_KEY, candidate)
        return Session(id=stored['id'], created_at=stored['created_at'])

    def current(self):
        existing = self.store.get_durable(SESSION_ID_KEY)
        if not existing:
            return None
        return Session(id=existing['id'], created_at=existing['created_at'])
