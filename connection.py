import asyncio
import uuid
from datetime import datetime
from typing import Optional

from fastapi import WebSocketDisconnect

from constants import SEND_TIMEOUT_SECONDS
from logging_config import get_logger

logger = get_logger(__name__)


class Connection:
    """One accepted client socket.

    `room_id` is written by the ConnectionRegistry only. `send` never raises:
    failures and timeouts come back as False and set `send_failed`, which the
    sweep uses to prune connections an inline leave() missed. Once dropped,
    a connection is closed with `close()` so the client sees it went away.
    """

    def __init__(self, websocket, connection_id: Optional[str] = None,
                 send_timeout: float = SEND_TIMEOUT_SECONDS, display_name: Optional[str] = None):
        self.websocket = websocket
        self.connection_id = connection_id or str(uuid.uuid4())
        self.display_name = display_name or f"User_{self.connection_id[:8]}"
        self.send_timeout = send_timeout
        self.connected_at = datetime.now().isoformat()
        self.room_id: Optional[str] = None
        self.send_failed = False
        self.closed = False

    async def send(self, frame: str) -> bool:
        try:
            await asyncio.wait_for(self.websocket.send_text(frame), timeout=self.send_timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning(f"Send to connection {self.connection_id} timed out after {self.send_timeout}s")
        except (WebSocketDisconnect, RuntimeError, ConnectionError, OSError) as e:
            logger.debug(f"Send to connection {self.connection_id} failed: {e!r}")
        self.send_failed = True
        return False

    async def close(self, code: int = 1011, reason: str = "Send failed"):
        """Close the socket, bounded by send_timeout. Never raises."""
        if self.closed:
            return
        self.closed = True
        try:
            await asyncio.wait_for(self.websocket.close(code=code, reason=reason), timeout=self.send_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Close of connection {self.connection_id} timed out after {self.send_timeout}s")
        except (RuntimeError, ConnectionError, OSError) as e:
            logger.debug(f"Close of connection {self.connection_id} failed: {e!r}")

    def __repr__(self) -> str:
        return f"Connection(id={self.connection_id!r}, room={self.room_id!r})"
