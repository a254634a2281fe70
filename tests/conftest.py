"""Pytest configuration and shared fixtures.

PHD2 is replaced by small asyncio servers bound to localhost so the clients
exercise real sockets, framing and background tasks.
"""

import asyncio
import json
from typing import Any, Dict, List, Optional, Tuple, Union

import pytest

from phd2.clients.rpc_client import RPCClient
from phd2.clients.socket_client import SocketClient
from phd2.core.config import get_settings

# ==========================================
# Fake PHD2 servers
# ==========================================


class FakeEventServer:
    """Stand-in for the PHD2 event server.

    Records each request line the client sends and lets the test push
    arbitrary bytes (responses, events, garbage) back down the connection.
    """

    def __init__(self):
        self.requests: asyncio.Queue = asyncio.Queue()
        self.address: Optional[Tuple[str, int]] = None
        self._server: Optional[asyncio.AbstractServer] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._client_connected = asyncio.Event()

    async def serve(self) -> Tuple[str, int]:
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.address = self._server.sockets[0].getsockname()[:2]
        return self.address

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._writer = writer
        self._client_connected.set()
        while True:
            line = await reader.readline()
            if not line:
                break
            await self.requests.put(line)

    async def next_raw_request(self, timeout: float = 2.0) -> bytes:
        return await asyncio.wait_for(self.requests.get(), timeout=timeout)

    async def next_request(self, timeout: float = 2.0) -> Dict[str, Any]:
        return json.loads(await self.next_raw_request(timeout))

    async def send(self, data: Union[bytes, str, Dict[str, Any]]) -> None:
        await asyncio.wait_for(self._client_connected.wait(), timeout=2.0)
        if isinstance(data, dict):
            data = json.dumps(data) + "\r\n"
        if isinstance(data, str):
            data = data.encode()
        self._writer.write(data)
        await self._writer.drain()

    async def respond(self, result: Any) -> Dict[str, Any]:
        """Answer the next request with a result and return that request."""
        request = await self.next_request()
        await self.send({"jsonrpc": "2.0", "result": result, "id": request["id"]})
        return request

    async def drop_connection(self) -> None:
        await asyncio.wait_for(self._client_connected.wait(), timeout=2.0)
        self._writer.close()

    async def stop(self) -> None:
        if self._writer:
            self._writer.close()
        self._server.close()
        await self._server.wait_closed()


class FakeSocketServer:
    """Stand-in for the PHD2 socket server.

    ``replies`` maps a command byte to the bytes sent back; unlisted commands
    are acknowledged with 0, and a reply of None closes the connection.
    """

    def __init__(self):
        self.commands: List[int] = []
        self.replies: Dict[int, Optional[bytes]] = {}
        self.address: Optional[Tuple[str, int]] = None
        self._server: Optional[asyncio.AbstractServer] = None
        self._writers: List[asyncio.StreamWriter] = []

    async def serve(self) -> Tuple[str, int]:
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.address = self._server.sockets[0].getsockname()[:2]
        return self.address

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._writers.append(writer)
        while True:
            command = await reader.read(1)
            if not command:
                break
            self.commands.append(command[0])
            reply = self.replies.get(command[0], b"\x00")
            if reply is None:
                writer.close()
                break
            writer.write(reply)
            await writer.drain()

    async def stop(self) -> None:
        for writer in self._writers:
            writer.close()
        self._server.close()
        await self._server.wait_closed()


# ==========================================
# Fixtures
# ==========================================


@pytest.fixture(autouse=True)
def clear_settings_cache():
    """Make every test see the environment it sets up."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
async def event_server():
    server = FakeEventServer()
    await server.serve()

    yield server

    await server.stop()


@pytest.fixture
async def rpc_client(event_server):
    """RPCClient connected to the fake event server."""
    client = RPCClient()
    await client.connect(*event_server.address)

    yield client

    await client.disconnect()


@pytest.fixture
async def socket_server():
    server = FakeSocketServer()
    await server.serve()

    yield server

    await server.stop()


@pytest.fixture
async def socket_client(socket_server):
    """SocketClient connected to the fake socket server."""
    client = SocketClient()
    await client.connect(*socket_server.address)

    yield client

    if client.connected:
        await client.close()
