from typing import Optional
from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from signal_router.dependencies import get_rebase_engine
import logging

router = APIRouter(prefix="/rebase", tags=["Rebase"])


@router.get("/status")
async def rebase_status(engine=Depends(get_rebase_engine)):
    return engine.get_queue_status()


@router.get("/results")
async def rebase_results(order_id: Optional[str] = None, engine=Depends(get_rebase_engine)):
    results = engine.get_results_for_order(order_id) if order_id else engine.get_results()
    return {"count": len(results), "results": [r.to_dict() for r in results]}


@router.delete("/results")
async def clear_rebase_results(engine=Depends(get_rebase_engine)):
    cleared = engine.clear_results()
    logging.info("Cleared %d rebase results", cleared)
    return {"status": "ok", "cleared": cleared}


@router.websocket("/ws")
async def rebase_events(websocket: WebSocket):
    broadcaster = websocket.app.state.broadcaster
    await broadcaster.connect(websocket)
    try:
        while True:
            # clients only listen; incoming text is ignored
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        await broadcaster.disconnect(websocket)
