"""Incremental artifact delivery with structural validation.

Each object from the generator is a full snapshot of the artifact so far.
Consumers get either a valid partial snapshot, a terminal ``is_complete``
chunk, or a single terminal chunk carrying an ``error``; never a snapshot
that fails its schema.
"""
import copy
import logging
from typing import Any, AsyncIterator, Callable, Dict, Optional

from pydantic import BaseModel, Field, ValidationError

from .. import metrics
from ..errors import ArtifactStreamError, ServiceError
from .schemas import ARTIFACT_SCHEMAS, SCHEMA_VERSION, partial_model

logger = logging.getLogger(__name__)

SCHEMA_VIOLATION = 'schema_violation'
RETRACTION = 'retraction'
UNKNOWN_KIND = 'unknown_kind'
GENERATION_FAILED = 'generation_failed'
INCOMPLETE = 'incomplete'


class ArtifactError(BaseModel):
    code: str
    message: str


class ArtifactChunk(BaseModel):
    kind: str
    schema_version: str = SCHEMA_VERSION
    partial_object: Dict[str, Any] = Field(default_factory=dict)
    is_complete: bool = False
    error: Optional[ArtifactError] = None


class ArtifactStream:
    """Mutable per-stream state; ``snapshot()`` hands out independent copies."""

    def __init__(self, kind: str):
        self.kind = kind
        self.partial_object: Dict[str, Any] = {}
        self.is_complete = False
        self.error: Optional[ArtifactError] = None

    def snapshot(self) -> ArtifactChunk:
        return ArtifactChunk(
            kind=self.kind,
            partial_object=copy.deepcopy(self.partial_object),
            is_complete=self.is_complete,
            error=self.error,
        )

    def fault(self, code: str, message: str) -> ArtifactChunk:
        self.error = ArtifactError(code=code, message=message)
        metrics.artifact_chunks_counter.labels(kind=self.kind, outcome=code).inc()
        logger.warning('artifact %s stream faulted: %s: %s', self.kind, code, message)
        return self.snapshot()


def find_retraction(previous: Any, current: Any, path: str = '') -> Optional[str]:
    """Return the path of the first value present in ``previous`` but gone from ``current``."""
    if previous is None:
        return None
    if current is None:
        return path or '<root>'
    if isinstance(previous, dict):
        if not isinstance(current, dict):
            return path or '<root>'
        for key, value in previous.items():
            if value is None:
                continue
            found = find_retraction(value, current.get(key), f'{path}.{key}' if path else key)
            if found:
                return found
        return None
    if isinstance(previous, list):
        if not isinstance(current, list) or len(current) < len(previous):
            return path or '<root>'
        for i, value in enumerate(previous):
            found = find_retraction(value, current[i], f'{path}[{i}]')
            if found:
                return found
    return None


class ArtifactStreamChannel:
    def __init__(self, generate: Callable[[str, Dict[str, Any]], AsyncIterator[Dict[str, Any]]]):
        """generate: e.g. ``ServiceClients.generate_artifact``."""
        self.generate = generate

    async def stream(self, kind: str, generator_input: Dict[str, Any]) -> AsyncIterator[ArtifactChunk]:
        state = ArtifactStream(kind)
        model = ARTIFACT_SCHEMAS.get(kind)
        if model is None:
            yield state.fault(UNKNOWN_KIND, f'unknown artifact kind {kind!r}')
            return
        partial = partial_model(model)

        try:
            async for obj in self.generate(kind, generator_input):
                try:
                    self._check(partial, state.partial_object, obj)
                except ArtifactStreamError as e:
                    yield state.fault(e.code, e.message)
                    return
                state.partial_object = copy.deepcopy(obj)
                metrics.artifact_chunks_counter.labels(kind=kind, outcome='partial').inc()
                yield state.snapshot()
        except ServiceError as e:
            yield state.fault(GENERATION_FAILED, str(e))
            return

        try:
            model.model_validate(state.partial_object)
        except ValidationError as e:
            yield state.fault(INCOMPLETE, f'final object does not satisfy the {kind} schema: {e.error_count()} error(s)')
            return
        state.is_complete = True
        metrics.artifact_chunks_counter.labels(kind=kind, outcome='complete').inc()
        yield state.snapshot()

    @staticmethod
    def _check(partial, previous: Dict[str, Any], obj: Any) -> None:
        if not isinstance(obj, dict):
            raise ArtifactStreamError(SCHEMA_VIOLATION, f'chunk is {type(obj).__name__}, expected an object')
        try:
            partial.model_validate(obj)
        except ValidationError as e:
            first = e.errors()[0]
            loc = '.'.join(str(p) for p in first['loc'])
            raise ArtifactStreamError(SCHEMA_VIOLATION, f'{loc}: {first["msg"]}') from e
        path = find_retraction(previous, obj)
        if path:
            raise ArtifactStreamError(RETRACTION, f'field {path} was removed')
