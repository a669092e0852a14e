"""
Asynchronous Electrum protocol client.

One persistent socket carries every request. Requests are correlated with
responses through an id-keyed table of futures, so any number of coroutines
can call request() concurrently and responses may arrive in any order.
"""

from __future__ import annotations

import asyncio
import itertools
import json
from dataclasses import dataclass
from typing import Any

from loguru import logger

from btcwallet.config import ElectrumConfig, Network
from btcwallet.constants import (
    CLIENT_NAME,
    DEFAULT_ELECTRUM_HOST,
    DEFAULT_ELECTRUM_PORT,
    ELECTRUM_PROTOCOL_VERSION,
)
from btcwallet.electrum.transport import RpcTransport
from btcwallet.errors import (
    ElectrumConnectionError,
    ElectrumProtocolError,
    RequestTimeoutError,
)
from btcwallet.wallet.address import address_to_script_hash

_UNSET: Any = object()


@dataclass(frozen=True)
class Balance:
    """Balance of a script hash in satoshis."""

    confirmed: int
    unconfirmed: int

    @property
    def total(self) -> int:
        return self.confirmed + self.unconfirmed


class ElectrumClient:
    """
    Client for the Electrum server protocol.

    The socket is opened lazily by the first request() and reopened by the
    first request() after it drops. Requests already in flight when the
    connection is lost are failed with ElectrumConnectionError; they are never
    resent.
    """

    def __init__(
        self,
        host: str = DEFAULT_ELECTRUM_HOST,
        port: int = DEFAULT_ELECTRUM_PORT,
        protocol: str = "tcp",
        network: Network | str = Network.MAINNET,
        verify_tls: bool = True,
        connect_timeout: float = 10.0,
        request_timeout: float | None = 30.0,
        max_message_size: int = 16 * 1024 * 1024,
    ):
        if protocol not in ("tcp", "tls"):
            raise ValueError(f"Unsupported protocol: {protocol}")
        self.host = host
        self.port = port
        self.protocol = protocol
        self.network = Network(network)
        self.verify_tls = verify_tls
        self.connect_timeout = connect_timeout
        self.request_timeout = request_timeout
        self.max_message_size = max_message_size

        self._transport: RpcTransport | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._connected = False
        self._connect_lock = asyncio.Lock()
        self._request_ids = itertools.count(1)
        self._pending: dict[int, asyncio.Future[Any]] = {}

    @classmethod
    def from_config(cls, config: ElectrumConfig) -> ElectrumClient:
        return cls(
            host=config.host,
            port=config.port,
            protocol=config.protocol,
            network=config.network,
            verify_tls=config.verify_tls,
            connect_timeout=config.connect_timeout,
            request_timeout=config.request_timeout,
            max_message_size=config.max_message_size,
        )

    @property
    def pending_count(self) -> int:
        """Number of requests waiting for a response."""
        return len(self._pending)

    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> bool:
        """
        Open the socket and start the reader task.

        Raises:
            ElectrumConnectionError: If the transport cannot be opened
        """
        if self._transport is not None:
            await self.disconnect()

        transport = RpcTransport(
            self.host,
            self.port,
            use_tls=self.protocol == "tls",
            verify_tls=self.verify_tls,
            connect_timeout=self.connect_timeout,
            max_message_size=self.max_message_size,
        )
        try:
            await transport.open()
        except ElectrumConnectionError as e:
            self._connected = False
            logger.error(f"Failed to connect to Electrum server {self.host}:{self.port}: {e}")
            raise

        self._transport = transport
        self._connected = True
        self._reader_task = asyncio.create_task(self._read_loop(transport))
        logger.info(f"Connected to Electrum server {self.host}:{self.port} ({self.protocol})")
        return True

    async def _read_loop(self, transport: RpcTransport) -> None:
        """Split the inbound stream into messages until the socket drops."""
        try:
            while True:
                line = await transport.read_line()
                if not line.strip():
                    continue
                try:
                    response = json.loads(line)
                except (ValueError, RecursionError) as e:
                    logger.warning(
                        f"Dropping malformed message from server: {type(e).__name__}: {e!s:.200}"
                    )
                    continue
                self.handle_response(response)
        except ElectrumConnectionError as e:
            if transport is self._transport:
                logger.warning(f"Electrum connection to {self.host}:{self.port} lost: {e}")
                self._connected = False
                self._fail_pending(ElectrumConnectionError(f"Connection lost: {e}"))
        except Exception as e:
            logger.exception(f"Electrum reader for {self.host}:{self.port} failed: {e}")
            if transport is self._transport:
                self._connected = False
                self._fail_pending(ElectrumConnectionError(f"Reader failed: {e}"))
        finally:
            await transport.close()

    def handle_response(self, response: Any) -> None:
        """
        Complete the pending request matching the response id.

        Responses with an unknown id and server notifications are ignored.
        """
        if not isinstance(response, dict):
            logger.warning(f"Ignoring non-object message: {response!r:.200}")
            return

        request_id = response.get("id")
        future = self._pending.pop(request_id, None) if isinstance(request_id, int) else None
        if future is None:
            if "method" in response:
                logger.debug(f"Ignoring server notification {response['method']}")
            else:
                logger.debug(f"Ignoring response with unknown id {request_id!r}")
            return

        if future.done():
            return

        error = response.get("error")
        if error is not None:
            if isinstance(error, dict):
                message = error.get("message") or "Server returned an error"
                future.set_exception(ElectrumProtocolError(str(message), error.get("code")))
            else:
                future.set_exception(ElectrumProtocolError(str(error)))
        else:
            future.set_result(response.get("result"))

    def _fail_pending(self, error: Exception) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(error)
        if pending:
            logger.debug(f"Failed {len(pending)} in-flight request(s): {error}")

    async def _ensure_connected(self) -> None:
        async with self._connect_lock:
            if self._connected:
                return
            try:
                await self.connect()
            except ElectrumConnectionError as e:
                raise ElectrumConnectionError(f"Failed to connect before request: {e}") from e

    async def request(
        self, method: str, params: list[Any] | None = None, timeout: float | None = _UNSET
    ) -> Any:
        """
        Send one request and wait for its correlated response.

        Args:
            method: Electrum method name
            params: Positional parameters
            timeout: Seconds to wait (defaults to request_timeout, None waits forever)

        Raises:
            ElectrumConnectionError: Connection could not be opened or was lost
            RequestTimeoutError: No response before the timeout
            ElectrumProtocolError: The server answered with an error
        """
        if not self._connected:
            await self._ensure_connected()
        transport = self._transport
        if transport is None:
            raise ElectrumConnectionError("Not connected")

        if timeout is _UNSET:
            timeout = self.request_timeout

        request_id = next(self._request_ids)
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future

        payload = json.dumps({"id": request_id, "method": method, "params": params or []})
        logger.debug(f"Electrum request {request_id}: {method}")

        try:
            await transport.send_line(payload.encode("utf-8"))
            return await asyncio.wait_for(future, timeout=timeout)
        except TimeoutError as e:
            raise RequestTimeoutError(f"{method} timed out after {timeout}s") from e
        except ElectrumConnectionError:
            self._connected = False
            raise
        finally:
            self._pending.pop(request_id, None)

    async def disconnect(self) -> None:
        self._connected = False
        transport, self._transport = self._transport, None
        task, self._reader_task = self._reader_task, None
        if task is not None:
            task.cancel()
        if transport is not None:
            await transport.close()
        self._fail_pending(ElectrumConnectionError("Client disconnected"))

    async def __aenter__(self) -> ElectrumClient:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.disconnect()

    def get_script_hash(self, address: str) -> str:
        """Electrum script hash of an address on this client's network."""
        return address_to_script_hash(address, self.network)

    async def get_balance(self, address: str) -> Balance:
        script_hash = self.get_script_hash(address)
        result = await self.request("blockchain.scripthash.get_balance", [script_hash])
        return Balance(confirmed=result["confirmed"], unconfirmed=result["unconfirmed"])

    async def get_history(self, address: str) -> list[dict[str, Any]]:
        script_hash = self.get_script_hash(address)
        return await self.request("blockchain.scripthash.get_history", [script_hash])

    async def get_unspent(self, address: str) -> list[dict[str, Any]]:
        script_hash = self.get_script_hash(address)
        return await self.request("blockchain.scripthash.listunspent", [script_hash])

    async def get_transaction(self, txid: str, verbose: bool = True) -> Any:
        return await self.request("blockchain.transaction.get", [txid, verbose])

    async def broadcast_transaction(self, tx_hex: str) -> str:
        return await self.request("blockchain.transaction.broadcast", [tx_hex])

    async def get_fee_estimate(self, blocks: int = 1) -> float:
        """Fee estimate in BTC/kB (-1 when the server cannot estimate)."""
        return await self.request("blockchain.estimatefee", [blocks])

    async def server_version(self) -> list[str]:
        return await self.request("server.version", [CLIENT_NAME, ELECTRUM_PROTOCOL_VERSION])

    async def ping(self) -> None:
        await self.request("server.ping")
