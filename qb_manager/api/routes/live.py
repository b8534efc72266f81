from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from qb_manager.logger import logger
from qb_manager.notifier import WebSocketConnection

router = APIRouter(tags=["live"])


@router.websocket("/ws")
async def live_updates(websocket: WebSocket):
    """
    Live change notifications.

    Clients may send {"type": "subscribe", "containerId": id} to only receive
    updates for one instance, and {"type": "ping"} to get a pong back.
    """
    notifier = websocket.app.state.notifier
    await websocket.accept()

    conn = WebSocketConnection(websocket)
    await notifier.register(conn)
    try:
        while True:
            raw = await websocket.receive_text()
            await notifier.handle_message(conn, raw)
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"Live connection failed: {e}")
    finally:
        notifier.unregister(conn)
