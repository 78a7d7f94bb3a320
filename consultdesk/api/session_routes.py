from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field
from typing import Dict, Optional

from ..errors import ConsentServiceUnavailable
from ..session.consent import ConsentInput
from ..session.context import SessionContext, SessionRegistry
from ..transcript import TranscriptMessage

router = APIRouter(prefix='/api/sessions')


def get_registry(request: Request) -> SessionRegistry:
    """The app attaches one SessionRegistry at app.state.registry."""
    registry = getattr(request.app.state, 'registry', None)
    if registry is None:
        raise HTTPException(status_code=503, detail='session registry unavailable')
    return registry


async def get_context(session_id: str, registry: SessionRegistry = Depends(get_registry)) -> SessionContext:
    # must run on the event loop: ensure_started creates a task
    ctx = registry.resolve(session_id)
    if ctx is None:
        raise HTTPException(status_code=404, detail=f'unknown session {session_id}')
    ctx.ensure_started()
    return ctx


class ConsentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    email: str
    company_url: str = Field(alias='companyUrl')


class MessageRequest(BaseModel):
    text: str
    selection: Optional[str] = None
    source: str = 'user'


@router.post('')
async def create_session(registry: SessionRegistry = Depends(get_registry)) -> Dict:
    """Create the durable session id, or return the existing one."""
    session = registry.create_session()
    registry.get_or_create(session.id).ensure_started()
    return {'session_id': session.id, 'created_at': session.created_at}


@router.delete('/{session_id}/browsing')
async def end_browsing(ctx: SessionContext = Depends(get_context)) -> Dict:
    cleared = ctx.end_browsing()
    return {'ended': True, 'cleared': cleared}


@router.get('/{session_id}/status')
async def session_status(ctx: SessionContext = Depends(get_context)) -> Dict:
    return ctx.status()


@router.get('/{session_id}/consent')
async def get_consent(ctx: SessionContext = Depends(get_context)) -> Dict:
    status = await ctx.gate.refresh()
    record = ctx.gate.record
    return {
        'status': status.value,
        'record': asdict(record) if record else None,
    }


@router.post('/{session_id}/consent')
async def submit_consent(payload: ConsentRequest, ctx: SessionContext = Depends(get_context)) -> Dict:
    try:
        result = await ctx.gate.submit(ConsentInput(payload.name, payload.email, payload.company_url))
    except ConsentServiceUnavailable as e:
        raise HTTPException(status_code=503, detail=f'consent service unavailable: {e}')
    return {'result': result.value, 'status': ctx.gate.get_status().value}


@router.post('/{session_id}/messages')
async def post_message(payload: MessageRequest, ctx: SessionContext = Depends(get_context)) -> Dict:
    text = payload.text.strip()
    if not text:
        raise HTTPException(status_code=400, detail='text required')
    message_id = ctx.channel.append(TranscriptMessage(role='user', type='text', content=text))
    outcome = await ctx.research.handle_text(text, payload.selection, payload.source)
    await ctx.sync()
    return {'message_id': message_id, 'research': outcome.value}


@router.get('/{session_id}/messages')
async def get_messages(ctx: SessionContext = Depends(get_context)) -> Dict:
    await ctx.sync()
    return {'messages': [m.model_dump() for m in ctx.transcript.messages]}
