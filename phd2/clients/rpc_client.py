"""PHD2 event server client.

This module provides an asyncio client for the PHD2 event server: a
line-delimited JSON-RPC protocol where method responses and unsolicited
event notifications are interleaved on one TCP connection.

Protocol documentation:
https://github.com/OpenPHDGuiding/phd2/wiki/EventMonitoring
"""

import asyncio
import json
import logging
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Type, TypeVar

from pydantic import TypeAdapter, ValidationError
from pydantic_core import to_jsonable_python

from phd2.clients.connector import Connector, TcpConnector
from phd2.clients.errors import (
    CommandError,
    ConnectionError,
    NotConnectedError,
    NotImplementedError,
    PHD2ClientError,
    ProtocolError,
    TimeoutError,
)
from phd2.core.config import get_settings
from phd2.models.events import Event, SettleDone, get_event
from phd2.models.rpc_models import (
    CalibrationData,
    CoolerStatus,
    CurrentEquipment,
    LockShiftParams,
    Profile,
    RPCResponse,
    SavedImage,
    Settle,
)

E = TypeVar("E", bound=Event)
EventCallback = Callable[[Event], None]

# Queued in place of a line once the read side of the connection is gone
_CONNECTION_LOST = None


@lru_cache(maxsize=None)
def _result_adapter(result_type: Any) -> TypeAdapter:
    return TypeAdapter(result_type)


class RPCClient:
    """Client for the PHD2 JSON-RPC event server.

    While connected, two background tasks own the read side of the socket:
    the reader splits the stream into lines, and the dispatcher routes each
    line either to the method call waiting for it or to the event
    subscribers. Only one method call is on the wire at a time; the protocol
    has no multiplexing, so responses are matched to the single outstanding
    request and the id is only used as a sanity check.

    Example usage:
        client = RPCClient()
        client.subscribe_event(GuideStep, lambda step: print(step.snr))
        await client.connect("localhost")
        await client.guide(Settle(pixels=1.5, time=10, timeout=60))
        done = await client.wait_for_settle(timeout=90.0)
        await client.disconnect()
    """

    DEFAULT_PORT = 4400

    def __init__(self, connector: Optional[Connector] = None, logger: Optional[logging.Logger] = None):
        """Initialize event server client.

        Args:
            connector: Optional connector used to dial PHD2. If None, uses a TcpConnector.
            logger: Optional logger instance. If None, creates default logger.
        """
        self.logger = logger or logging.getLogger(__name__)

        settings = get_settings()
        self._connector = connector or TcpConnector()
        self._event_queue_size = settings.event_queue_size
        self._command_timeout = settings.command_timeout

        # Connection state
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._connected = False
        self._connection_lost = False
        self._host: Optional[str] = None
        self._port = self.DEFAULT_PORT

        # Message handling
        self._method_lock: Optional[asyncio.Lock] = None
        self._request_id = 0
        self._timed_out_ids: Set[int] = set()
        self._events: Optional[asyncio.Queue] = None
        self._method_response: Optional[asyncio.Queue] = None
        self._read_task: Optional[asyncio.Task] = None
        self._dispatch_task: Optional[asyncio.Task] = None

        # Event streaming
        self._event_callbacks: Dict[Type[Event], List[EventCallback]] = {}
        self._all_events_callbacks: List[EventCallback] = []

    @property
    def connected(self) -> bool:
        """Check if the session is up (connected and not lost)."""
        return self._connected and not self._connection_lost

    @property
    def host(self) -> Optional[str]:
        return self._host

    @property
    def port(self) -> int:
        return self._port

    def subscribe_event(self, event_type: Type[E], callback: Callable[[E], None]) -> None:
        """Register callback for a specific event type.

        Args:
            event_type: Event record class, e.g. GuideStep
            callback: Function to call with each decoded event of that type
        """
        callbacks = self._event_callbacks.setdefault(event_type, [])
        if callback not in callbacks:
            callbacks.append(callback)
            self.logger.debug(f"Subscribed to {event_type.__name__} events")

    def unsubscribe_event(self, event_type: Type[E], callback: Callable[[E], None]) -> None:
        callbacks = self._event_callbacks.get(event_type, [])
        if callback in callbacks:
            callbacks.remove(callback)
            self.logger.debug(f"Unsubscribed from {event_type.__name__} events")

    def subscribe_all_events(self, callback: EventCallback) -> None:
        """Receive every decoded event, in arrival order."""
        if callback not in self._all_events_callbacks:
            self._all_events_callbacks.append(callback)
            self.logger.debug("Subscribed to all events")

    def unsubscribe_all_events(self, callback: EventCallback) -> None:
        if callback in self._all_events_callbacks:
            self._all_events_callbacks.remove(callback)
            self.logger.debug("Unsubscribed from all events")

    async def connect(self, host: Optional[str] = None, port: Optional[int] = None) -> bool:
        """Connect to the PHD2 event server and start the background tasks.

        Args:
            host: Hostname or IP address. If None, uses config setting.
            port: TCP port. If None, uses config setting (4400 for instance 1).

        Returns:
            True if connection successful

        Raises:
            ConnectionError: If connection fails
        """
        if self.connected:
            self.logger.warning("Already connected")
            return True

        if self._connected:
            # Previous session was lost; release its tasks and socket before redialing
            await self.disconnect()

        settings = get_settings()
        self._host = host or settings.host
        self._port = port or settings.rpc_port

        self.logger.info(f"Connecting to PHD2 event server at {self._host}:{self._port}")

        try:
            self._reader, self._writer = await self._connector.open_connection(self._host, self._port)
        except PHD2ClientError:
            raise
        except Exception as e:
            raise ConnectionError(f"Failed to connect to {self._host}:{self._port}: {e}") from e

        self._method_lock = asyncio.Lock()
        self._timed_out_ids.clear()
        self._events = asyncio.Queue(maxsize=self._event_queue_size)
        self._method_response = asyncio.Queue(maxsize=1)
        self._connected = True
        self._connection_lost = False

        self._dispatch_task = asyncio.create_task(self._dispatch_loop())
        self._read_task = asyncio.create_task(self._read_loop())

        self.logger.info("Connected to PHD2 event server")
        return True

    async def disconnect(self) -> None:
        """Stop the background tasks and close the connection."""
        if not self._connected:
            return

        self.logger.info("Disconnecting from PHD2 event server")

        for task in (self._read_task, self._dispatch_task):
            if task:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        self._read_task = None
        self._dispatch_task = None

        # Wake a call still waiting for its response
        self._mark_connection_lost()

        if self._writer:
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except OSError as e:
                self.logger.debug(f"Error while closing connection: {e}")

        self._connected = False
        self._reader = None
        self._writer = None

        self.logger.info("Disconnected from PHD2 event server")

    async def _read_loop(self) -> None:
        """Background task that splits the stream into lines.

        readline() reassembles lines that arrive across several socket reads.
        """
        try:
            while True:
                line = await self._reader.readline()
                if not line:
                    self.logger.error("Connection closed by PHD2")
                    break

                line = line.rstrip(b"\r\n")
                if not line:
                    continue

                self.logger.debug(f"Received: {line!r}")
                await self._events.put(line)

        except asyncio.CancelledError:
            self.logger.debug("Read loop cancelled")
            raise
        except Exception as e:
            self.logger.error(f"Read loop error: {e}")

        # The dispatcher handles everything queued before this
        await self._events.put(_CONNECTION_LOST)

    async def _dispatch_loop(self) -> None:
        """Background task that routes lines to the waiting call or to subscribers."""
        try:
            while True:
                line = await self._events.get()
                if line is _CONNECTION_LOST:
                    self.logger.warning("PHD2 event server connection lost")
                    self._mark_connection_lost()
                    return

                await self._dispatch_line(line)

        except asyncio.CancelledError:
            self.logger.debug("Dispatch loop cancelled")
            raise

    async def _dispatch_line(self, line: bytes) -> None:
        try:
            envelope = Event.model_validate_json(line)
        except ValidationError as e:
            self.logger.warning(f"Invalid JSON received: {line!r}, error: {e}")
            return

        if not envelope.event:
            # Method response; blocks until the pending call takes it
            await self._method_response.put(line)
            return

        event_type = get_event(envelope.event)
        if event_type is None:
            self.logger.debug(f"Unknown event: {line!r}")
            return

        try:
            event = event_type.model_validate_json(line)
        except ValidationError as e:
            self.logger.warning(f"Invalid {envelope.event} event: {line!r}, error: {e}")
            return

        self._dispatch_event(event)

    def _dispatch_event(self, event: Event) -> None:
        """Dispatch event to registered callbacks."""
        for callback in list(self._all_events_callbacks):
            try:
                callback(event)
            except Exception as e:
                self.logger.error(f"Error in all-events callback: {e}")

        for callback in list(self._event_callbacks.get(type(event), [])):
            try:
                callback(event)
            except Exception as e:
                self.logger.error(f"Error in {event.event} callback: {e}")

    def _mark_connection_lost(self) -> None:
        self._connection_lost = True
        if self._method_response is not None and self._method_response.empty():
            self._method_response.put_nowait(_CONNECTION_LOST)

    async def wait_for_event(
        self,
        event_type: Type[E],
        predicate: Optional[Callable[[E], bool]] = None,
        timeout: Optional[float] = None,
    ) -> E:
        """Wait for the next event of a type, optionally matching a predicate.

        Args:
            event_type: Event record class to wait for
            predicate: Optional filter; the first event it accepts is returned
            timeout: Maximum time to wait in seconds (None waits forever)

        Returns:
            The matching event

        Raises:
            TimeoutError: If no matching event arrives in time
        """
        received = asyncio.Event()
        match: List[E] = []

        def event_callback(event: E):
            if received.is_set():
                return
            if predicate is None or predicate(event):
                match.append(event)
                received.set()

        self.subscribe_event(event_type, event_callback)

        try:
            await asyncio.wait_for(received.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            raise TimeoutError(f"Timed out after {timeout}s waiting for {event_type.__name__}")
        finally:
            self.unsubscribe_event(event_type, event_callback)

        return match[0]

    async def wait_for_settle(self, timeout: Optional[float] = None) -> SettleDone:
        """Wait for the SettleDone that ends a guide or dither operation.

        Call this right after guide() or dither() returns; settling always
        spans at least one frame, so the event cannot arrive first.

        Example:
            await client.dither(5.0, False, Settle(pixels=1.5, time=10, timeout=60))
            done = await client.wait_for_settle(timeout=90.0)
            if not done.succeeded:
                print(f"Settling failed: {done.error}")
        """
        return await self.wait_for_event(SettleDone, timeout=timeout)

    async def call(
        self,
        method: str,
        params: Optional[Sequence[Any]] = None,
        result_type: Any = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """Call a method and wait for its response.

        Args:
            method: Method name, e.g. "get_exposure"
            params: Positional parameters (pydantic models are sent by alias)
            result_type: Optional type the result is validated against
            timeout: Response timeout in seconds (default: config setting, None waits forever)

        Returns:
            The result payload, validated as result_type if given

        Raises:
            NotConnectedError: If connect() was never called
            ConnectionError: If sending fails or the connection was lost
            TimeoutError: If the response does not arrive in time
            ProtocolError: If the response is malformed or answers another request
            CommandError: If PHD2 returns an error object
        """
        if not self._connected:
            raise NotConnectedError()

        if timeout is None:
            timeout = self._command_timeout

        async with self._method_lock:
            if self._connection_lost:
                raise ConnectionError("Connection to PHD2 lost")

            self._request_id += 1
            request_id = self._request_id

            message: Dict[str, Any] = {"method": method, "id": request_id}
            if params:
                message["params"] = to_jsonable_python(list(params), by_alias=True)

            message_json = json.dumps(message)
            self.logger.debug(f"Sending: {message_json}")

            try:
                self._writer.write(message_json.encode() + b"\r\n")
                await self._writer.drain()
            except OSError as e:
                raise ConnectionError(f"Failed to send {method}: {e}") from e

            response = await self._wait_for_response(method, request_id, timeout)

        if response.error is not None and (response.error.code or response.error.message):
            raise CommandError(method, response.error.code, response.error.message)

        if result_type is None:
            return response.result

        try:
            return _result_adapter(result_type).validate_python(response.result)
        except ValidationError as e:
            raise ProtocolError(f"Unexpected result for {method}: {response.result!r}") from e

    async def _wait_for_response(self, method: str, request_id: int, timeout: Optional[float]) -> RPCResponse:
        while True:
            try:
                line = await asyncio.wait_for(self._method_response.get(), timeout=timeout)
            except asyncio.TimeoutError:
                # Its response may still arrive; it must not be taken for the next call's
                self._timed_out_ids.add(request_id)
                raise TimeoutError(f"Command timeout: {method}")

            if line is _CONNECTION_LOST:
                raise ConnectionError(f"Connection to PHD2 lost while waiting for {method}")

            try:
                response = RPCResponse.model_validate_json(line)
            except ValidationError as e:
                raise ProtocolError(f"Error decoding response to {method}: {e}") from e

            if response.id in self._timed_out_ids:
                self._timed_out_ids.discard(response.id)
                self.logger.warning(f"Discarding late response to timed out request {response.id}")
                continue

            if response.id != request_id:
                raise ProtocolError(f"Incorrect response received: expected id {request_id}, got {response.id}")

            # Responses arrive in request order, so older timed out requests will never be answered
            self._timed_out_ids = {i for i in self._timed_out_ids if i > request_id}
            return response

    # ========================================================================
    # Methods
    # https://github.com/OpenPHDGuiding/phd2/wiki/EventMonitoring#available-methods
    # ========================================================================

    async def get_exposure(self) -> int:
        """Get the current exposure duration in milliseconds."""
        return await self.call("get_exposure", result_type=int)

    async def capture_single_frame(self, duration: int, subframe: Optional[Sequence[int]] = None) -> int:
        """Capture a single frame.

        Args:
            duration: Exposure duration in milliseconds
            subframe: Optional [x, y, width, height] region to capture
        """
        params: List[Any] = [duration]
        if subframe is not None:
            params.append(list(subframe))
        return await self.call("capture_single_frame", params, result_type=int)

    async def clear_calibration(self, which: str = "both") -> int:
        """Clear calibration data for "mount", "ao" or "both"."""
        return await self.call("clear_calibration", [which], result_type=int)

    async def dither(self, pixels: float, ra_only: bool, settle: Settle) -> int:
        """Dither the lock position.

        Progress is reported through SettleBegin, Settling and SettleDone
        events; see wait_for_settle().

        Args:
            pixels: Maximum dither amount in pixels
            ra_only: Dither in RA only
            settle: Settling criteria
        """
        return await self.call("dither", [pixels, ra_only, settle], result_type=int)

    async def find_star(self) -> List[float]:
        """Auto-select a star; returns its [x, y] lock position."""
        return await self.call("find_star", result_type=List[float])

    async def flip_calibration(self) -> int:
        return await self.call("flip_calibration", result_type=int)

    async def get_app_state(self) -> str:
        """Get the application state, e.g. "Stopped", "Looping" or "Guiding"."""
        return await self.call("get_app_state", result_type=str)

    async def get_calibrated(self) -> bool:
        return await self.call("get_calibrated", result_type=bool)

    async def get_connected(self) -> bool:
        """Whether all equipment in the profile is connected."""
        return await self.call("get_connected", result_type=bool)

    async def get_algo_param_names(self, axis: str) -> List[str]:
        """List guide algorithm parameter names for "ra", "x", "dec" or "y"."""
        return await self.call("get_algo_param_names", [axis], result_type=List[str])

    async def get_algo_param(self, axis: str, name: str) -> float:
        return await self.call("get_algo_param", [axis, name], result_type=float)

    async def get_calibration_data(self, which: str = "Mount") -> CalibrationData:
        """Get calibration data for "Mount" or "AO"."""
        return await self.call("get_calibration_data", [which], result_type=CalibrationData)

    async def get_cooler_status(self) -> CoolerStatus:
        return await self.call("get_cooler_status", result_type=CoolerStatus)

    async def get_current_equipment(self) -> CurrentEquipment:
        """Get the devices selected in the current profile."""
        return await self.call("get_current_equipment", result_type=CurrentEquipment)

    async def get_dec_guide_mode(self) -> str:
        return await self.call("get_dec_guide_mode", result_type=str)

    async def get_exposure_durations(self) -> List[int]:
        """List the exposure durations (ms) offered by PHD2."""
        return await self.call("get_exposure_durations", result_type=List[int])

    async def get_lock_position(self) -> Optional[List[float]]:
        """Get the current [x, y] lock position, or None if it is not set."""
        return await self.call("get_lock_position", result_type=Optional[List[float]])

    async def get_lock_shift_enabled(self) -> bool:
        return await self.call("get_lock_shift_enabled", result_type=bool)

    async def get_lock_shift_params(self) -> LockShiftParams:
        return await self.call("get_lock_shift_params", result_type=LockShiftParams)

    async def get_paused(self) -> bool:
        return await self.call("get_paused", result_type=bool)

    async def get_pixel_scale(self) -> float:
        """Get the guide camera pixel scale in arc-seconds per pixel."""
        return await self.call("get_pixel_scale", result_type=float)

    async def get_profile(self) -> Profile:
        return await self.call("get_profile", result_type=Profile)

    async def get_profiles(self) -> List[Profile]:
        return await self.call("get_profiles", result_type=List[Profile])

    async def get_search_region(self) -> int:
        """Get the star search region half-size in pixels."""
        return await self.call("get_search_region", result_type=int)

    async def get_sensor_temperature(self) -> float:
        return await self.call("get_sensor_temperature", result_type=float)

    async def get_star_image(self) -> None:
        raise NotImplementedError("get_star_image is not implemented")

    async def get_use_subframes(self) -> bool:
        return await self.call("get_use_subframes", result_type=bool)

    async def guide(self, settle: Settle, recalibrate: bool = False) -> int:
        """Start guiding, calibrating first if needed.

        Progress is reported through SettleBegin, Settling and SettleDone
        events; see wait_for_settle().

        Args:
            settle: Settling criteria
            recalibrate: Force a new calibration before guiding
        """
        return await self.call("guide", [settle, recalibrate], result_type=int)

    async def guide_pulse(self, amount: int, direction: str, which: str = "Mount") -> int:
        """Issue a manual guide pulse.

        Args:
            amount: Pulse duration in milliseconds (or AO step count)
            direction: "N", "S", "E", "W", "Up", "Down", "Left" or "Right"
            which: "Mount" or "AO"
        """
        return await self.call("guide_pulse", [amount, direction, which], result_type=int)

    async def loop(self) -> int:
        """Start looping exposures."""
        return await self.call("loop", result_type=int)

    async def save_image(self) -> str:
        """Save the current guide camera frame; returns the FITS file name."""
        image = await self.call("save_image", result_type=SavedImage)
        return image.filename

    async def set_algo_param(self, axis: str, name: str, value: float) -> int:
        return await self.call("set_algo_param", [axis, name, value], result_type=int)

    async def set_connected(self, connect: bool) -> int:
        """Connect or disconnect all equipment in the current profile."""
        return await self.call("set_connected", [connect], result_type=int)

    async def set_dec_guide_mode(self, mode: str) -> int:
        """Set the declination guide mode: "Off", "Auto", "North" or "South"."""
        return await self.call("set_dec_guide_mode", [mode], result_type=int)

    async def set_exposure(self, length: int) -> int:
        """Set the exposure duration in milliseconds."""
        return await self.call("set_exposure", [length], result_type=int)

    async def set_lock_position(self, x: float, y: float, exact: bool = True) -> int:
        """Set the lock position.

        Args:
            x: Lock position x coordinate
            y: Lock position y coordinate
            exact: If False, PHD2 moves the lock position to the nearest star
        """
        return await self.call("set_lock_position", [x, y, exact], result_type=int)

    async def set_lock_shift_enabled(self, enable: bool) -> int:
        return await self.call("set_lock_shift_enabled", [enable], result_type=int)

    async def set_lock_shift_params(self, params: LockShiftParams) -> int:
        return await self.call("set_lock_shift_params", [params], result_type=int)

    async def set_paused(self, paused: bool, full: bool = False) -> int:
        """Pause or resume guiding.

        Args:
            paused: True to pause, False to resume
            full: Also stop looping exposures while paused
        """
        params: List[Any] = [paused]
        if full:
            params.append("full")
        return await self.call("set_paused", params, result_type=int)

    async def set_profile(self, profile_id: int) -> int:
        return await self.call("set_profile", [profile_id], result_type=int)

    async def shutdown(self) -> int:
        """Close PHD2."""
        return await self.call("shutdown", result_type=int)

    async def stop_capture(self) -> int:
        """Stop looping exposures and guiding."""
        return await self.call("stop_capture", result_type=int)
