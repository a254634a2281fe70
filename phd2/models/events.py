"""Event notification records sent by the PHD2 event server.

Every line PHD2 pushes without being asked carries a common envelope
(``Event``, ``Timestamp``, ``Host``, ``Inst``) plus event-specific fields.
See https://github.com/OpenPHDGuiding/phd2/wiki/EventMonitoring

Decoding happens in two passes: the line is first read as a bare ``Event``
to learn its name, then ``get_event`` selects the full record to decode it
with.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field


class Event(BaseModel):
    """Common envelope of every PHD2 event.

    Method responses carry none of these fields, so an empty ``event``
    name is how the dispatcher tells a response from an event.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    event: str = Field(default="", alias="Event")
    # seconds since the epoch, including fractional seconds
    timestamp: float = Field(default=0.0, alias="Timestamp")
    host: str = Field(default="", alias="Host")
    # PHD2 instance number (1-based)
    inst: int = Field(default=0, alias="Inst")

    @property
    def time(self) -> datetime:
        """Event timestamp as an aware UTC datetime."""
        return datetime.fromtimestamp(self.timestamp, tz=timezone.utc)


class Version(Event):
    """Sent once when a client connects."""

    phd_version: str = Field(alias="PHDVersion")
    phd_subver: str = Field(alias="PHDSubver")
    msg_version: int = Field(alias="MsgVersion")


class CalibrationComplete(Event):
    """Calibration completed successfully."""

    mount: str = Field(alias="Mount")


class Paused(Event):
    """Guiding has been paused."""


class Resumed(Event):
    """PHD2 has been resumed after having been paused."""


class AppState(Event):
    """Current application state, sent on connect."""

    state: str = Field(alias="State")


class LockPositionSet(Event):
    """The lock position has been established."""

    x: float = Field(alias="X")
    y: float = Field(alias="Y")


class Calibrating(Event):
    """Sent on each calibration step."""

    mount: str = Field(alias="Mount")
    direction: str = Field(alias="dir")
    dist: float = Field(alias="dist")
    dx: float = Field(alias="dx")
    dy: float = Field(alias="dy")
    pos: List[float] = Field(alias="pos")
    step: int = Field(alias="step")
    state: str = Field(alias="State")


class StarSelected(Event):
    x: float = Field(alias="X")
    y: float = Field(alias="Y")


class StartGuiding(Event):
    pass


class StartCalibration(Event):
    mount: str = Field(alias="Mount")


class CalibrationFailed(Event):
    reason: str = Field(alias="Reason")


class CalibrationDataFlipped(Event):
    mount: str = Field(alias="Mount")


class LoopingExposures(Event):
    """Sent for each exposure frame while looping exposures."""

    frame: int = Field(alias="Frame")


class LoopingExposuresStopped(Event):
    pass


class SettleBegin(Event):
    """Settling begins after a dither or guide operation."""


class Settling(Event):
    """Sent for each frame after a dither or guide until guiding has settled."""

    distance: float = Field(alias="Distance")
    time_seconds: float = Field(alias="Time")
    settle_time: float = Field(alias="SettleTime")
    star_locked: bool = Field(alias="StarLocked")


class SettleDone(Event):
    """Outcome of settling after a dither or guide operation.

    ``status`` is 0 when settling succeeded; otherwise ``error`` says why.
    """

    status: int = Field(alias="Status")
    error: str = Field(default="", alias="Error")
    total_frames: int = Field(alias="TotalFrames")
    dropped_frames: int = Field(alias="DroppedFrames")

    @property
    def succeeded(self) -> bool:
        return self.status == 0


class StarLost(Event):
    """A frame was dropped because the star was lost."""

    frame: int = Field(alias="Frame")
    time_seconds: float = Field(alias="Time")
    star_mass: float = Field(alias="StarMass")
    snr: float = Field(alias="SNR")
    avg_dist: float = Field(alias="AvgDist")
    error_code: int = Field(default=0, alias="ErrorCode")
    status: str = Field(alias="Status")


class GuidingStopped(Event):
    pass


class GuideStep(Event):
    """One line of the PHD2 guide log, sent for each frame while guiding.

    The pulse fields are only present when a correction was issued on that
    axis, and the limit flags only when a limit was hit.
    """

    # starts at 1 each time guiding starts
    frame: int = Field(alias="Frame")
    # seconds since guiding started
    time_seconds: float = Field(alias="Time")
    mount: str = Field(alias="Mount")
    dx: float = Field(alias="dx")
    dy: float = Field(alias="dy")
    ra_distance_raw: float = Field(alias="RADistanceRaw")
    dec_distance_raw: float = Field(alias="DecDistanceRaw")
    ra_distance_guide: float = Field(alias="RADistanceGuide")
    dec_distance_guide: float = Field(alias="DecDistanceGuide")
    ra_duration: int = Field(default=0, alias="RADuration")
    ra_direction: str = Field(default="", alias="RADirection")
    dec_duration: int = Field(default=0, alias="DECDuration")
    dec_direction: str = Field(default="", alias="DECDirection")
    star_mass: float = Field(alias="StarMass")
    snr: float = Field(alias="SNR")
    avg_dist: float = Field(alias="AvgDist")
    ra_limited: bool = Field(default=False, alias="RALimited")
    dec_limited: bool = Field(default=False, alias="DecLimited")
    error_code: int = Field(default=0, alias="ErrorCode")


class GuidingDithered(Event):
    """The lock position has been dithered."""

    dx: float = Field(alias="dx")
    dy: float = Field(alias="dy")


class LockPositionLost(Event):
    pass


class Alert(Event):
    """An alert message was displayed in PHD2."""

    msg: str = Field(alias="Msg")
    type: str = Field(alias="Type")


class GuideParamChange(Event):
    """A guiding parameter has been changed."""

    name: str = Field(alias="Name")
    value: Any = Field(default=None, alias="Value")


EVENT_TYPES: Dict[str, Type[Event]] = {
    cls.__name__: cls
    for cls in (
        Version,
        CalibrationComplete,
        Paused,
        Resumed,
        AppState,
        LockPositionSet,
        Calibrating,
        StarSelected,
        StartGuiding,
        StartCalibration,
        CalibrationFailed,
        CalibrationDataFlipped,
        LoopingExposures,
        LoopingExposuresStopped,
        SettleBegin,
        Settling,
        SettleDone,
        StarLost,
        GuidingStopped,
        GuideStep,
        GuidingDithered,
        LockPositionLost,
        Alert,
        GuideParamChange,
    )
}


def get_event(name: str) -> Optional[Type[Event]]:
    """Return the record type for an event name, or None if it is not known."""
    return EVENT_TYPES.get(name)
