"""PHD2 legacy socket server client.

The socket server predates the JSON event server: every command is a single
byte and every reply is a single byte. There are no events and no
pipelining, so each operation is one blocking round trip.

Protocol documentation:
https://github.com/OpenPHDGuiding/phd2/wiki/SocketServerInterface
"""

import asyncio
import logging
from enum import IntEnum
from typing import Optional

from phd2.clients.connector import Connector, TcpConnector
from phd2.clients.errors import (
    ConnectionError,
    NotConnectedError,
    NotImplementedError,
    PHD2ClientError,
    UnexpectedResponseError,
)
from phd2.core.config import get_settings


class SocketStatus(IntEnum):
    """Guiding state reported by GetStatus."""

    IDLE = 0  # not paused, looping, or guiding
    STAR_SELECTED = 1  # capture active and star selected
    CALIBRATING = 2
    GUIDING = 3  # guiding and locked onto a star
    STAR_LOST = 4  # guiding but star lost
    PAUSED = 100
    LOOPING = 101  # looping but no star selected


class SocketDitherAmount(IntEnum):
    """Dither amount; each amount has its own command byte."""

    TINY = 3  # +/- 0.5 x dither scale
    SMALL = 4  # +/- 1.0 x dither scale
    NORMAL = 5  # +/- 2.0 x dither scale
    LARGE = 12  # +/- 3.0 x dither scale
    HUGE = 13  # +/- 5.0 x dither scale


class SocketCommand(IntEnum):
    PAUSE = 1
    RESUME = 2
    REQUEST_DISTANCE = 10
    AUTO_FIND_STAR = 14
    FLIP_RA_CALIBRATION_DATA = 16
    GET_STATUS = 17
    STOP = 18
    LOOP = 19
    START_GUIDING = 20
    LOOP_FRAME_COUNT = 21
    CLEAR_CALIBRATION = 22
    DESELECT = 24


class SocketClient:
    """Client for the PHD2 socket server.

    Example usage (select a guide star and start guiding):
        client = SocketClient()
        await client.connect("localhost")
        await client.stop()
        await client.deselect()
        if not await client.loop():
            raise RuntimeError("unable to start looping")
        while await client.get_status() != SocketStatus.LOOPING:
            await asyncio.sleep(0.1)
        while await client.loop_frame_count() < 10:
            await asyncio.sleep(0.1)
        await client.auto_find_star()
        await client.start_guiding()
        await client.close()
    """

    DEFAULT_PORT = 4300

    def __init__(self, connector: Optional[Connector] = None, logger: Optional[logging.Logger] = None):
        """Initialize socket server client.

        Args:
            connector: Optional connector used to dial PHD2. If None, uses a TcpConnector.
            logger: Optional logger instance. If None, creates default logger.
        """
        self.logger = logger or logging.getLogger(__name__)
        self._connector = connector or TcpConnector()

        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        # One command byte and its reply are on the wire at a time
        self._command_lock: Optional[asyncio.Lock] = None

    @property
    def connected(self) -> bool:
        return self._writer is not None

    async def connect(self, host: Optional[str] = None, port: Optional[int] = None) -> bool:
        """Connect to the PHD2 socket server.

        Args:
            host: Hostname or IP address. If None, uses config setting.
            port: TCP port. If None, uses config setting (4300 for instance 1).

        Raises:
            ConnectionError: If connection fails
        """
        if self._writer is not None:
            self.logger.warning("Already connected")
            return True

        settings = get_settings()
        host = host or settings.host
        port = port or settings.socket_port

        self.logger.info(f"Connecting to PHD2 socket server at {host}:{port}")

        try:
            self._reader, self._writer = await self._connector.open_connection(host, port)
        except PHD2ClientError:
            raise
        except Exception as e:
            raise ConnectionError(f"Error connecting to phd2 at {host}:{port}: {e}") from e

        self._command_lock = asyncio.Lock()
        return True

    async def close(self) -> None:
        """Close the underlying connection.

        Raises:
            NotConnectedError: If connect() was never called
        """
        if self._writer is None:
            raise NotConnectedError()

        writer = self._writer
        self._reader = None
        self._writer = None

        writer.close()
        try:
            await writer.wait_closed()
        except OSError as e:
            raise ConnectionError(f"Error closing connection: {e}") from e

        self.logger.info("Disconnected from PHD2 socket server")

    async def _send_command(self, command: int) -> int:
        """Write one command byte and read the one-byte reply.

        Raises:
            NotConnectedError: If connect() was never called
            ConnectionError: If the transport fails
            UnexpectedResponseError: If the reply is not exactly one byte
        """
        if self._writer is None:
            raise NotConnectedError()

        async with self._command_lock:
            if self._writer is None:
                raise NotConnectedError()

            self.logger.debug(f"Sending command {command}")

            try:
                self._writer.write(bytes([command]))
                await self._writer.drain()
            except OSError as e:
                raise ConnectionError(f"Error sending command: {e}") from e

            try:
                resp = await self._reader.read(1)
            except OSError as e:
                raise ConnectionError(f"Error reading response: {e}") from e

        if len(resp) != 1:
            raise UnexpectedResponseError(f"Unexpected response to command {command}: {resp!r}")

        self.logger.debug(f"Command {command} response: {resp[0]}")
        return resp[0]

    async def _send_ack_command(self, command: SocketCommand) -> None:
        resp = await self._send_command(command)
        if resp != 0:
            raise UnexpectedResponseError(f"Unexpected response to {command.name}: {resp}")

    async def pause(self) -> None:
        """Pause guiding. Exposures keep looping if they already were."""
        await self._send_ack_command(SocketCommand.PAUSE)

    async def resume(self) -> None:
        """Resume guiding if it was paused, otherwise no effect."""
        await self._send_ack_command(SocketCommand.RESUME)

    async def stop(self) -> None:
        """Stop looping exposures or guiding.

        Poll get_status() to check that looping/guiding has actually stopped.
        """
        await self._send_ack_command(SocketCommand.STOP)

    async def start_guiding(self) -> None:
        """Start guiding. Poll get_status() to check that guiding has actually started."""
        await self._send_ack_command(SocketCommand.START_GUIDING)

    async def clear_calibration(self) -> None:
        """Clear calibration data (force re-calibration)."""
        await self._send_ack_command(SocketCommand.CLEAR_CALIBRATION)

    async def deselect(self) -> None:
        """De-select the current guide star, switching to full frames if subframes are enabled.

        Send this before auto_find_star() so a full frame is captured.
        """
        await self._send_ack_command(SocketCommand.DESELECT)

    async def loop(self) -> bool:
        """Start looping exposures.

        Returns:
            True if PHD2 accepted the command (reply byte 0). Poll get_status()
            to see if looping actually started.
        """
        return await self._send_command(SocketCommand.LOOP) == 0

    async def auto_find_star(self) -> bool:
        """Auto-select a guide star. Returns True if a star was selected (reply byte 0)."""
        return await self._send_command(SocketCommand.AUTO_FIND_STAR) == 0

    async def flip_ra_calibration_data(self) -> bool:
        """Flip the RA calibration data. Returns True on reply byte 1."""
        return await self._send_command(SocketCommand.FLIP_RA_CALIBRATION_DATA) == 1

    async def get_status(self) -> SocketStatus:
        """Get the current guiding state.

        Raises:
            UnexpectedResponseError: If the reply is not a known status
        """
        resp = await self._send_command(SocketCommand.GET_STATUS)
        try:
            return SocketStatus(resp)
        except ValueError:
            raise UnexpectedResponseError(f"Unknown status: {resp}")

    async def dither(self, amount: SocketDitherAmount) -> int:
        """Dither by a random amount.

        Returns:
            The camera exposure time in seconds, but not less than 1
        """
        return await self._send_command(SocketDitherAmount(amount))

    async def request_distance(self) -> int:
        """Get the current guide error distance in 1/100 pixel (255 means 255 or more)."""
        return await self._send_command(SocketCommand.REQUEST_DISTANCE)

    async def loop_frame_count(self) -> int:
        """Get the frame counter, 0 if not looping or guiding (capped at 255)."""
        return await self._send_command(SocketCommand.LOOP_FRAME_COUNT)

    async def set_lock_position(self, x: int, y: int) -> None:
        raise NotImplementedError("set_lock_position is not implemented")
