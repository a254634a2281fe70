"""Transport dialing for the PHD2 clients.

Both clients take a ``Connector`` so tests (or callers with special network
needs) can supply their own streams. ``TcpConnector`` is the default.
"""

import asyncio
import logging
from typing import Optional, Protocol, Tuple

from phd2.clients.errors import ConnectionError
from phd2.core.config import get_settings

Streams = Tuple[asyncio.StreamReader, asyncio.StreamWriter]


class Connector(Protocol):
    """Anything that can open a bidirectional byte stream to host:port."""

    async def open_connection(self, host: str, port: int) -> Streams: ...


class TcpConnector:
    """Plain TCP dialer built on asyncio streams."""

    def __init__(
        self,
        timeout: Optional[float] = None,
        limit: Optional[int] = None,
        logger: Optional[logging.Logger] = None,
    ):
        """Initialize TCP connector.

        Args:
            timeout: Dial timeout in seconds. If None, uses config setting.
            limit: StreamReader buffer limit (longest line readline() accepts).
                If None, uses config setting.
            logger: Optional logger instance.
        """
        settings = get_settings()
        self.timeout = timeout if timeout is not None else settings.connection_timeout
        self.limit = limit if limit is not None else settings.stream_limit
        self.logger = logger or logging.getLogger(__name__)

    async def open_connection(self, host: str, port: int) -> Streams:
        """Dial host:port.

        Raises:
            ConnectionError: If the connection cannot be established in time
        """
        self.logger.debug(f"Dialing tcp {host}:{port}")
        try:
            return await asyncio.wait_for(
                asyncio.open_connection(host, port, limit=self.limit), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            raise ConnectionError(f"Connection timeout to {host}:{port}")
        except OSError as e:
            raise ConnectionError(f"Failed to connect to {host}:{port}: {e}") from e
