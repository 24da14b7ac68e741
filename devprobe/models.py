"""
Core data models
"""
from enum import Enum
from ipaddress import ip_address
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class StepType(str, Enum):
    """Kinds of scripted step"""

    SEND = "send"
    RECEIVE = "receive"
    DELAY = "delay"
    CLEAR = "clear"


class ValidationType(str, Enum):
    """Rules applied to the data seen by a receive step"""

    EXISTS = "exists"
    EQUALS = "equals"
    CONTAINS = "contains"


class StepStatus(str, Enum):
    """Per-step outcome reported to observers"""

    PASS = "pass"
    FAIL = "fail"


class ConnectionState(str, Enum):
    """Socket transport connection state"""

    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSED = "closed"


class Validation(BaseModel):
    """
    Validation rule attached to a receive step.

    ``type`` is kept as a plain string so scripts with a rule this version
    does not know still load; such rules always fail when evaluated.
    """

    type: str = ValidationType.EXISTS.value
    value: str = ""


class TestStep(BaseModel):
    """One scripted action, using the field names of the script JSON"""

    __test__ = False  # not a pytest test class

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: Optional[str] = None
    type: str
    name: str = ""
    content: str = ""
    is_hex: bool = Field(default=False, alias="isHex")
    delay_ms: int = Field(default=0, alias="time")
    validation: Optional[Validation] = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value):
        if value is None:
            return None
        return str(value)

    @field_validator("content", "name", mode="before")
    @classmethod
    def _none_to_empty(cls, value):
        return "" if value is None else value

    @property
    def step_type(self) -> Optional[StepType]:
        """Known step type, or None when the script names an unsupported one"""
        try:
            return StepType((self.type or "").lower())
        except ValueError:
            return None


class SerialConfig(BaseModel):
    """Serial line settings"""

    port_name: str
    baud_rate: int = 9600
    data_bits: int = 8
    parity: str = "none"
    stop_bits: str = "1"


class SocketConfig(BaseModel):
    """TCP client target"""

    host: str
    port: int = Field(ge=1, le=65535)

    @field_validator("host")
    @classmethod
    def _check_host(cls, value: str) -> str:
        if value.lower() == "localhost":
            return value
        ip_address(value)
        return value
