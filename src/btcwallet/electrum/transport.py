"""
Stream transport for the Electrum line protocol (plain TCP or TLS).
"""

from __future__ import annotations

import asyncio
import ssl

from loguru import logger

from btcwallet.errors import ElectrumConnectionError


class RpcTransport:
    """
    One socket to an Electrum server.

    Messages are newline terminated; send_line() adds the terminator and
    read_line() strips it.
    """

    def __init__(
        self,
        host: str,
        port: int,
        use_tls: bool = False,
        verify_tls: bool = True,
        connect_timeout: float = 10.0,
        max_message_size: int = 16 * 1024 * 1024,
    ):
        self.host = host
        self.port = port
        self.use_tls = use_tls
        self.verify_tls = verify_tls
        self.connect_timeout = connect_timeout
        self.max_message_size = max_message_size

        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._connected = False

    def _ssl_context(self) -> ssl.SSLContext | None:
        if not self.use_tls:
            return None
        context = ssl.create_default_context()
        if not self.verify_tls:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return context

    async def open(self) -> None:
        """Open the stream, raising ElectrumConnectionError on any failure."""
        ssl_context = self._ssl_context()
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(
                    self.host,
                    self.port,
                    ssl=ssl_context,
                    server_hostname=self.host if ssl_context else None,
                    limit=self.max_message_size,
                ),
                timeout=self.connect_timeout,
            )
        except TimeoutError as e:
            self._connected = False
            raise ElectrumConnectionError(
                f"Timed out connecting to {self.host}:{self.port} after {self.connect_timeout}s"
            ) from e
        except (OSError, ssl.SSLError) as e:
            self._connected = False
            raise ElectrumConnectionError(f"Cannot connect to {self.host}:{self.port}: {e}") from e

        self._connected = True
        logger.debug(
            f"{'TLS' if self.use_tls else 'TCP'} connection established to {self.host}:{self.port}"
        )

    async def send_line(self, data: bytes) -> None:
        if not self._connected or self._writer is None:
            raise ElectrumConnectionError("Connection closed")
        try:
            self._writer.write(data + b"\n")
            await self._writer.drain()
        except (OSError, RuntimeError) as e:
            self._connected = False
            raise ElectrumConnectionError(f"Send failed: {e}") from e

    async def read_line(self) -> bytes:
        if not self._connected or self._reader is None:
            raise ElectrumConnectionError("Connection closed")
        try:
            data = await self._reader.readuntil(b"\n")
        except asyncio.LimitOverrunError as e:
            self._connected = False
            raise ElectrumConnectionError(
                f"Message too large (>{self.max_message_size} bytes)"
            ) from e
        except asyncio.IncompleteReadError as e:
            self._connected = False
            raise ElectrumConnectionError("Connection closed by server") from e
        except OSError as e:
            self._connected = False
            raise ElectrumConnectionError(f"Receive failed: {e}") from e
        return data.rstrip(b"\r\n")

    async def close(self) -> None:
        self._connected = False
        writer, self._writer, self._reader = self._writer, None, None
        if writer is None:
            return
        writer.close()
        try:
            await writer.wait_closed()
        except (OSError, ssl.SSLError) as e:
            logger.debug(f"Error while closing connection to {self.host}:{self.port}: {e}")

    def is_connected(self) -> bool:
        return self._connected
