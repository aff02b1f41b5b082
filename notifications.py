import logging
from typing import Any

from fastapi import WebSocket
from starlette.websockets import WebSocketDisconnect, WebSocketState


logger = logging.getLogger(__name__)

TRANSACTIONS_UPDATED = "transactions:updated"
ADMIN_STATS_UPDATED = "admin:stats:updated"
ADMIN_USERS_UPDATED = "admin:users:updated"
ADMIN_TRANSACTIONS_UPDATED = "admin:transactions:updated"


class ConnectionManager:
    """Open WebSocket connections grouped by account.

    Only touched from the event loop, so no locking is needed.
    """

    def __init__(self) -> None:
        self._by_user: dict[int, set[WebSocket]] = {}
        self._admins: set[WebSocket] = set()

    def register(self, websocket: WebSocket, user_id: int, is_admin: bool) -> None:
        self._by_user.setdefault(user_id, set()).add(websocket)
        if is_admin:
            self._admins.add(websocket)
        logger.info(f"ws_connected: user_id={user_id} admin={is_admin}")

    def unregister(self, websocket: WebSocket, user_id: int) -> None:
        sockets = self._by_user.get(user_id)
        if sockets is not None:
            sockets.discard(websocket)
            if not sockets:
                del self._by_user[user_id]
        self._admins.discard(websocket)
        logger.info(f"ws_disconnected: user_id={user_id}")

    def connection_count(self, user_id: int) -> int:
        return len(self._by_user.get(user_id, ()))

    async def _send(self, websocket: WebSocket, event: str, data: Any) -> bool:
        if websocket.application_state != WebSocketState.CONNECTED:
            return False
        try:
            await websocket.send_json({"event": event, "data": data})
        except (WebSocketDisconnect, RuntimeError, OSError) as exc:
            logger.warning(f"ws_send_failed: event={event} error={exc}")
            return False
        return True

    async def send_to_user(self, user_id: int, event: str, data: Any) -> int:
        delivered = 0
        for websocket in list(self._by_user.get(user_id, ())):
            if await self._send(websocket, event, data):
                delivered += 1
            else:
                self.unregister(websocket, user_id)
        return delivered

    async def send_to_admins(self, event: str, data: Any) -> int:
        delivered = 0
        for websocket in list(self._admins):
            if await self._send(websocket, event, data):
                delivered += 1
            else:
                self._admins.discard(websocket)
        return delivered

    async def publish(
        self, user_id: int, transactions: list[dict], admin_snapshot: dict[str, Any]
    ) -> None:
        await self.send_to_user(user_id, TRANSACTIONS_UPDATED, transactions)
        await self.publish_admin(admin_snapshot)

    async def publish_admin(self, admin_snapshot: dict[str, Any]) -> None:
        if not self._admins:
            return
        for event, key in (
            (ADMIN_STATS_UPDATED, "stats"),
            (ADMIN_USERS_UPDATED, "users"),
            (ADMIN_TRANSACTIONS_UPDATED, "transactions"),
        ):
            if key in admin_snapshot:
                await self.send_to_admins(event, admin_snapshot[key])

    def has_admin_listeners(self) -> bool:
        return bool(self._admins)


manager = ConnectionManager()
