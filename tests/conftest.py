"""
Shared fixtures: a test mnemonic and an in-process fake Electrum server.
"""

from __future__ import annotations

import asyncio
import inspect
import json
from collections.abc import Callable
from typing import Any

import pytest
import pytest_asyncio

from btcwallet.electrum.client import ElectrumClient


class RpcErrorReply(Exception):
    """Raised by a handler to answer with an error object."""

    def __init__(self, code: int, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


class FakeElectrumServer:
    """
    Line-delimited JSON-RPC server speaking just enough Electrum for tests.

    Each request is answered from its own task, so slow handlers do not
    block later requests and responses can go out of order.
    """

    # Returned by a handler to leave a request unanswered
    NO_REPLY = object()
    ErrorReply = RpcErrorReply

    def __init__(self) -> None:
        self.handlers: dict[str, Callable[[list[Any]], Any]] = {
            "server.ping": lambda params: None,
        }
        self.requests: list[dict[str, Any]] = []
        self.connections = 0
        self.port = 0
        self._server: asyncio.Server | None = None
        self._writers: list[asyncio.StreamWriter] = []
        self._tasks: set[asyncio.Task[None]] = set()

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._handle_client, "127.0.0.1", 0)
        self.port = self._server.sockets[0].getsockname()[1]

    async def stop(self) -> None:
        await self.drop_connections()
        for task in list(self._tasks):
            task.cancel()
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()

    async def drop_connections(self) -> None:
        writers, self._writers = self._writers, []
        for writer in writers:
            writer.close()
        for writer in writers:
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass

    async def write_raw(self, data: bytes) -> None:
        """Write bytes to the most recent client connection."""
        writer = self._writers[-1]
        writer.write(data)
        await writer.drain()

    async def send(self, message: dict[str, Any]) -> None:
        await self.write_raw(json.dumps(message).encode() + b"\n")

    async def wait_for_requests(self, count: int, timeout: float = 2.0) -> None:
        async def _poll() -> None:
            while len(self.requests) < count:
                await asyncio.sleep(0.005)

        await asyncio.wait_for(_poll(), timeout)

    async def _handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        self.connections += 1
        self._writers.append(writer)
        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                request = json.loads(line)
                self.requests.append(request)
                task = asyncio.create_task(self._respond(request, writer))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
        except (ConnectionError, asyncio.IncompleteReadError):
            pass
        finally:
            writer.close()

    async def _respond(self, request: dict[str, Any], writer: asyncio.StreamWriter) -> None:
        method = request["method"]
        handler = self.handlers.get(method)
        if handler is None:
            message: dict[str, Any] = {
                "jsonrpc": "2.0",
                "id": request["id"],
                "error": {"code": -32601, "message": f"unknown method {method}"},
            }
        else:
            try:
                result = handler(request.get("params", []))
                if inspect.isawaitable(result):
                    result = await result
            except RpcErrorReply as e:
                message = {
                    "jsonrpc": "2.0",
                    "id": request["id"],
                    "error": {"code": e.code, "message": e.message},
                }
            else:
                if result is self.NO_REPLY:
                    return
                message = {"jsonrpc": "2.0", "id": request["id"], "result": result}

        try:
            writer.write(json.dumps(message).encode() + b"\n")
            await writer.drain()
        except (ConnectionError, RuntimeError):
            pass


@pytest.fixture
def test_mnemonic() -> str:
    """Test mnemonic (not for production use!)."""
    return (
        "abandon abandon abandon abandon abandon abandon "
        "abandon abandon abandon abandon abandon about"
    )


@pytest_asyncio.fixture
async def electrum_server():
    server = FakeElectrumServer()
    await server.start()
    yield server
    await server.stop()


@pytest_asyncio.fixture
async def electrum_client(electrum_server):
    client = ElectrumClient(host="127.0.0.1", port=electrum_server.port, request_timeout=5.0)
    yield client
    await client.disconnect()
