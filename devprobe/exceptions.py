"""
Custom Exception Hierarchy for devprobe

Provides structured exceptions for the transports, the script loader and the
step sequencer. All custom exceptions inherit from DevprobeError.

Transports and the sequencer do not let these escape their public methods:
failures there are converted to boolean results and listener/observer
notifications. The exceptions are raised internally and by the script loader.
"""
from typing import Optional


class DevprobeError(Exception):
    """
    Base exception for all devprobe errors.

    Carries an optional ``details`` mapping with structured context that is
    forwarded to the log event when the error is caught.
    """
    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(DevprobeError):
    """
    Invalid connection parameters or settings.

    Examples: malformed IP address, port outside 1-65535, unknown serial
    parity string.
    """
    pass


# Transport Errors

class TransportError(DevprobeError):
    """
    Serial line or TCP socket failure.

    Transient by nature: the socket transport recovers from these by
    re-entering its reconnect supervisor.
    """
    pass


class TransportConnectError(TransportError):
    """Failed to open the serial line or establish the TCP connection."""
    pass


class ConnectionTimeoutError(TransportConnectError):
    """TCP connect attempt did not complete within the connect timeout."""
    pass


class SendError(TransportError):
    """Writing a payload to the line or socket failed."""
    pass


class ReceiveError(TransportError):
    """Reading from the line or socket failed, or the peer closed the link."""
    pass


# Script Errors

class ScriptError(DevprobeError):
    """
    Problems with test script data.

    Base class for script loading and per-step execution errors.
    """
    pass


class ScriptFormatError(ScriptError):
    """Script JSON could not be decoded or does not describe a list of steps."""
    pass


class HexFormatError(ScriptError):
    """Hex content has odd length or characters outside 0-9/A-F."""
    pass


class StepExecutionError(ScriptError):
    """A step could not be executed."""
    def __init__(self, message: str, step_index: int, step_type: Optional[str] = None):
        super().__init__(message, {"step_index": step_index, "step_type": step_type})
        self.step_index = step_index
        self.step_type = step_type
