"""JSON-RPC envelopes and structured method results for the PHD2 event server.

See https://github.com/OpenPHDGuiding/phd2/wiki/EventMonitoring#available-methods
"""

from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class RPCError(BaseModel):
    code: int = 0
    message: str = ""


class RPCResponse(BaseModel):
    """Reply to a single method call."""

    id: int
    error: Optional[RPCError] = None
    result: Any = None


class Settle(BaseModel):
    """Settling criteria for guide and dither.

    Guiding is considered settled once the guide star stays within
    ``pixels`` for ``time`` seconds; PHD2 gives up after ``timeout`` seconds.
    """

    model_config = ConfigDict(populate_by_name=True)

    pixels: float
    time_seconds: int = Field(alias="time")
    timeout_seconds: int = Field(alias="timeout")


class CalibrationData(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    calibrated: bool
    x_angle: float = Field(default=0.0, alias="xAngle")
    x_rate: float = Field(default=0.0, alias="xRate")
    x_parity: str = Field(default="", alias="xParity")
    y_angle: float = Field(default=0.0, alias="yAngle")
    y_rate: float = Field(default=0.0, alias="yRate")
    y_parity: str = Field(default="", alias="yParity")


class CoolerStatus(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    temperature: float = 0.0
    cooler_on: bool = Field(alias="coolerOn")
    # only reported while the cooler is on
    setpoint: float = 0.0
    power: float = 0.0


class Equipment(BaseModel):
    name: str = ""
    connected: bool = False


class CurrentEquipment(BaseModel):
    """Devices selected in the current profile; absent devices stay empty."""

    model_config = ConfigDict(populate_by_name=True)

    camera: Equipment = Field(default_factory=Equipment)
    mount: Equipment = Field(default_factory=Equipment)
    aux_mount: Equipment = Field(default_factory=Equipment)
    ao: Equipment = Field(default_factory=Equipment, alias="AO")
    rotator: Equipment = Field(default_factory=Equipment)


class LockShiftParams(BaseModel):
    enabled: bool = False
    rate: List[float] = Field(default_factory=list)
    units: str = ""
    axes: str = ""


class Profile(BaseModel):
    id: int = 0
    name: str = ""


class SavedImage(BaseModel):
    filename: str
