"""
WebSocket transport for order status streaming
"""

from typing import Any, Dict

from starlette.websockets import WebSocket, WebSocketState

from ..execution_engine.status_fanout import StatusTransport


class WebSocketTransport(StatusTransport):
    """Adapts a FastAPI/Starlette WebSocket to the status fan-out"""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self._closed = False

    @property
    def is_open(self) -> bool:
        return (not self._closed
                and self.websocket.client_state == WebSocketState.CONNECTED
                and self.websocket.application_state == WebSocketState.CONNECTED)

    async def send(self, message: Dict[str, Any]) -> None:
        await self.websocket.send_json(message)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if (self.websocket.client_state == WebSocketState.CONNECTED
                and self.websocket.application_state == WebSocketState.CONNECTED):
            await self.websocket.close()

    def mark_closed(self) -> None:
        """Client went away; stop sending without touching the socket"""
        self._closed = True
