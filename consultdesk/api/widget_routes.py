from fastapi import APIRouter, Depends, HTTPException
from typing import Dict

from ..errors import AnalysisFailed, AnalysisInFlight, DeviceError, WidgetNotActive, device_message
from ..session.context import SessionContext
from ..widgets.lifecycle import WidgetLifecycleManager
from .session_routes import get_context

router = APIRouter(prefix='/api/sessions/{session_id}/widgets')


def _manager(ctx: SessionContext, widget_type: str) -> WidgetLifecycleManager:
    if widget_type not in ctx.widgets:
        raise HTTPException(status_code=404, detail=f'unknown widget type {widget_type}')
    return ctx.widgets.get(widget_type)


@router.get('')
async def list_widgets(ctx: SessionContext = Depends(get_context)) -> Dict:
    return {
        'widgets': [w.to_dict() for w in ctx.widgets.all()],
        'active': [w.to_dict() for w in ctx.widgets.active()],
    }


@router.post('/{widget_type}/open')
async def open_widget(widget_type: str, ctx: SessionContext = Depends(get_context)) -> Dict:
    manager = _manager(ctx, widget_type)
    try:
        widget = await manager.open()
    except DeviceError as e:
        raise HTTPException(status_code=409, detail={
            'kind': e.kind.value,
            'message': device_message(widget_type, e.kind),
        })
    return widget.to_dict()


@router.post('/{widget_type}/close')
async def close_widget(widget_type: str, ctx: SessionContext = Depends(get_context)) -> Dict:
    return _manager(ctx, widget_type).close().to_dict()


@router.post('/{widget_type}/minimize')
async def minimize_widget(widget_type: str, ctx: SessionContext = Depends(get_context)) -> Dict:
    return _manager(ctx, widget_type).minimize().to_dict()


@router.post('/{widget_type}/expand')
async def expand_widget(widget_type: str, ctx: SessionContext = Depends(get_context)) -> Dict:
    return _manager(ctx, widget_type).expand().to_dict()


@router.post('/{widget_type}/analyze')
async def analyze_widget(widget_type: str, ctx: SessionContext = Depends(get_context)) -> Dict:
    _manager(ctx, widget_type)
    loop = ctx.loops.get(widget_type)
    if loop is None:
        raise HTTPException(status_code=404, detail=f'{widget_type} does not support frame analysis')
    try:
        message = await loop.analyze_now()
    except AnalysisInFlight as e:
        raise HTTPException(status_code=429, detail=str(e))
    except WidgetNotActive as e:
        raise HTTPException(status_code=409, detail=str(e))
    except AnalysisFailed as e:
        raise HTTPException(status_code=502, detail=f'analysis failed: {e}')
    await ctx.sync()
    if message is None:
        return {'analysis': None, 'discarded': True}
    return {'analysis': message.content, 'message_id': message.id, 'discarded': False}
