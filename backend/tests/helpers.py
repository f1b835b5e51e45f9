"""Test doubles and small async helpers for the chat tests."""
import asyncio
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from chatitnow.chat.schemas import FindPartnerRequest

# Short enough to keep the suite fast, long enough to observe "not yet".
PHASE1 = 0.1
PHASE2 = 0.1
GRACE = 0.2


class FakeWebSocket:
    """Stands in for a FastAPI WebSocket and records every frame sent to it."""

    def __init__(self) -> None:
        self.accepted = False
        self.closed = False
        self.close_code: Optional[int] = None
        self.fail_sends = False
        self.sent: List[Dict[str, Any]] = []
        self.sent_at: List[float] = []

    async def accept(self) -> None:
        self.accepted = True

    async def send_json(self, message: Dict[str, Any]) -> None:
        if self.fail_sends or self.closed:
            raise RuntimeError("socket is closed")
        self.sent.append(message)
        self.sent_at.append(time.monotonic())

    async def close(self, code: int = 1000) -> None:
        self.closed = True
        self.close_code = code

    def types(self) -> List[str]:
        return [m["type"] for m in self.sent]

    def events(self, type_: str) -> List[Dict[str, Any]]:
        return [m for m in self.sent if m["type"] == type_]

    def first(self, type_: str) -> Optional[Dict[str, Any]]:
        found = self.events(type_)
        return found[0] if found else None


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll ``predicate`` on the loop until it holds or ``timeout`` passes."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


async def connect(supervisor, token: str) -> Tuple[FakeWebSocket, str]:
    ws = FakeWebSocket()
    connection_id = await supervisor.connect(ws, token)
    return ws, connection_id


async def search(engine, token: str, username: str = "", field: str = "", **extra):
    return await engine.find_partner(token, FindPartnerRequest(username=username, field=field, **extra))


async def pair(engine, supervisor, token_a: str = "tok-a", token_b: str = "tok-b", field: str = "python"):
    """Connect two sessions and wait until they are matched on ``field``."""
    ws_a, conn_a = await connect(supervisor, token_a)
    ws_b, conn_b = await connect(supervisor, token_b)
    await search(engine, token_a, "Alice", field)
    await search(engine, token_b, "Bob", field)
    await wait_until(lambda: ws_a.first("matched") and ws_b.first("matched"))
    return ws_a, conn_a, ws_b, conn_b
