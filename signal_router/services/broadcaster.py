from typing import List, Set
from fastapi import WebSocket
import asyncio
import json
import logging

logger = logging.getLogger(__name__)


class EventBroadcaster:
    """Fans placement and rebase events out to connected websockets."""

    def __init__(self):
        self.connections: Set[WebSocket] = set()
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        async with self._lock:
            self.connections.add(websocket)
            logger.info("WebSocket connected, total connections=%d", len(self.connections))

    async def disconnect(self, websocket: WebSocket):
        async with self._lock:
            self.connections.discard(websocket)
            logger.info("WebSocket disconnected, total connections=%d", len(self.connections))

    async def broadcast(self, message: dict):
        data = json.dumps(message, default=str)
        async with self._lock:
            conns = list(self.connections)
        if not conns:
            return
        logger.info("Broadcasting message type=%s to %d connections", message.get('type'), len(conns))
        stale = []
        for ws in conns:
            try:
                await ws.send_text(data)
            except Exception:
                logger.exception("Failed to send websocket message")
                stale.append(ws)
        for ws in stale:
            await self.disconnect(ws)

    async def publish_placements(self, ticker: str, signal: str, outcomes: List[dict]):
        await self.broadcast({'type': 'orders_placed', 'ticker': ticker, 'signal': signal, 'outcomes': outcomes})

    async def publish_rebase_result(self, result):
        await self.broadcast({'type': 'rebase_result', 'result': result.to_dict()})
