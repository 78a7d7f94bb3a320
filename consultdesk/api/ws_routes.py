import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from ..ws_manager import WebSocketManager

logger = logging.getLogger(__name__)

router = APIRouter()

UNKNOWN_SESSION_CLOSE_CODE = 4404

# Expect the app to have a shared ws_manager and registry attached at app.state


@router.websocket('/ws/sessions/{session_id}')
async def session_ws(websocket: WebSocket, session_id: str):
    await websocket.accept()
    app = websocket.app
    manager: WebSocketManager = getattr(app.state, 'ws_manager', None)
    registry = getattr(app.state, 'registry', None)
    if manager is None or registry is None:
        await websocket.close()
        return

    ctx = registry.resolve(session_id)
    if ctx is None:
        await websocket.close(code=UNKNOWN_SESSION_CLOSE_CODE)
        return
    ctx.ensure_started()
    await manager.register(session_id, websocket)
    try:
        while True:
            data = await websocket.receive_text()
            try:
                msg = json.loads(data)
            except ValueError:
                logger.debug('ignoring non-JSON websocket frame for %s', session_id)
                continue
            if not isinstance(msg, dict):
                continue
            if msg.get('type') == 'handshake':
                # acknowledge with a snapshot so a reconnecting client can resync
                await websocket.send_json({'type': 'handshake_ack', 'session_id': session_id,
                                           'status': ctx.status()})
            elif msg.get('type') == 'ping':
                await websocket.send_json({'type': 'pong', 'session_id': session_id})
    except WebSocketDisconnect:
        pass
    finally:
        await manager.unregister(session_id, websocket)
