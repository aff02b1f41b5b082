import asyncio

from starlette.websockets import WebSocketDisconnect, WebSocketState

from notifications import (
    ADMIN_STATS_UPDATED,
    ADMIN_USERS_UPDATED,
    TRANSACTIONS_UPDATED,
    ConnectionManager,
)


class FakeSocket:
    def __init__(self, fail_with=None) -> None:
        self.application_state = WebSocketState.CONNECTED
        self.fail_with = fail_with
        self.sent: list[dict] = []

    async def send_json(self, data) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append(data)


def test_dead_socket_is_dropped_and_others_still_receive() -> None:
    manager = ConnectionManager()
    dead = FakeSocket(fail_with=WebSocketDisconnect(code=1006))
    live = FakeSocket()
    admin = FakeSocket()
    manager.register(dead, 1, is_admin=True)
    manager.register(live, 1, is_admin=False)
    manager.register(admin, 2, is_admin=True)

    asyncio.run(
        manager.publish(1, [{"id": 5}], {"stats": {"total_users": 2}, "users": []})
    )

    assert live.sent == [{"event": TRANSACTIONS_UPDATED, "data": [{"id": 5}]}]
    assert [message["event"] for message in admin.sent] == [
        ADMIN_STATS_UPDATED,
        ADMIN_USERS_UPDATED,
    ]
    assert manager.connection_count(1) == 1
    assert manager.has_admin_listeners()


def test_send_errors_drop_only_the_failing_socket() -> None:
    manager = ConnectionManager()
    broken = FakeSocket(fail_with=RuntimeError("closed"))
    closed = FakeSocket()
    closed.application_state = WebSocketState.DISCONNECTED
    live = FakeSocket()
    for socket in (broken, closed, live):
        manager.register(socket, 7, is_admin=False)

    delivered = asyncio.run(manager.send_to_user(7, TRANSACTIONS_UPDATED, []))

    assert delivered == 1
    assert manager.connection_count(7) == 1
    assert live.sent == [{"event": TRANSACTIONS_UPDATED, "data": []}]
