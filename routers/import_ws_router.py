from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from dependencies import get_import_jobs
from jobs.import_job_manager import ImportJobManager
from jobs.job_events import import_channel

import logging

logger = logging.getLogger(__name__)

TERMINAL_EVENTS = ("import-completed", "import-failed")

router = APIRouter(prefix="/ws/import", tags=["import_ws"])


@router.websocket("/{import_id}")
async def import_ws_status(websocket: WebSocket, import_id: str,
                           import_jobs: ImportJobManager = Depends(get_import_jobs)):
    """
    Streams status events for one import job:
      - the full timeline so far, for late subscribers
      - live import-status-update events
      - a final import-completed / import-failed, after which the socket closes
    """
    await websocket.accept()
    if import_jobs.get_job(import_id) is None:
        await websocket.send_json({"error": "Import job not found"})
        await websocket.close()
        return

    channel = import_channel(import_id)
    queue = import_jobs.events.subscribe(channel)
    try:
        while True:
            event = await queue.get()
            await websocket.send_json(event)
            if event.get("event") in TERMINAL_EVENTS:
                break
        await websocket.close()
    except WebSocketDisconnect:
        logger.debug(f"Client left import channel {channel}")
    finally:
        import_jobs.events.unsubscribe(channel, queue)
