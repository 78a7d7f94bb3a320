from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field
from typing import Any, Dict

from ..artifacts.schemas import ARTIFACT_SCHEMAS
from ..session.context import SessionContext
from .session_routes import get_context

router = APIRouter(prefix='/api/sessions/{session_id}/artifacts')


class ArtifactRequest(BaseModel):
    query: str
    context: Dict[str, Any] = Field(default_factory=dict)


@router.post('/{kind}')
async def stream_artifact(kind: str, payload: ArtifactRequest, ctx: SessionContext = Depends(get_context)):
    """Stream validated artifact chunks as NDJSON; the last line is complete or carries an error."""
    if kind not in ARTIFACT_SCHEMAS:
        raise HTTPException(status_code=404, detail=f'unknown artifact kind {kind}')
    generator_input = {'query': payload.query, 'context': payload.context, 'sessionId': ctx.session_id}

    async def body():
        async for chunk in ctx.artifacts.stream(kind, generator_input):
            yield chunk.model_dump_json() + '\n'

    return StreamingResponse(body(), media_type='application/x-ndjson')
