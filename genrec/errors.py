"""
Status vocabulary and exception hierarchy for the genrec runtime.

Inside the runtime every failure is raised as a GenRecError subclass that
carries its StatusCode. The boundary in genrec.api is the only place these
are turned into booleans, Response.status values or None.
"""

from enum import Enum
from typing import Optional


class StatusCode(str, Enum):
    """Total status vocabulary reported across the boundary."""

    SUCCESS = "kSuccess"
    NOT_INITIALIZED = "kNotInitialized"
    INVALID_REQUEST = "kInvalidRequest"
    TIMEOUT = "kTimeout"

    # Internal codes (initialize failures, resource errors)
    INVALID_DEVICES = "kInvalidDevices"
    INVALID_MODEL_PATH = "kInvalidModelPath"
    MODEL_LOAD_ERROR = "kModelLoadError"
    DEVICE_INIT_ERROR = "kDeviceInitError"
    ALLOCATION_FAILURE = "kAllocationFailure"
    INTERNAL_ERROR = "kInternalError"

    @classmethod
    def from_string(cls, value: Optional[str]) -> Optional["StatusCode"]:
        if value is None:
            return None
        normalized = str(value).strip()
        for member in cls:
            if member.value == normalized or member.name == normalized.upper():
                return member
        return None


class GenRecError(Exception):
    """Base exception for all genrec runtime errors."""

    status = StatusCode.INTERNAL_ERROR

    def __init__(self, message: str, status: Optional[StatusCode] = None):
        self.message = message
        if status is not None:
            self.status = status
        super().__init__(message)


class InvalidDevicesError(GenRecError):
    """Malformed device string or unavailable device ordinals."""

    status = StatusCode.INVALID_DEVICES

    def __init__(self, devices: str, reason: str):
        super().__init__(f"Invalid devices {devices!r}: {reason}")
        self.devices = devices
        self.reason = reason


class InvalidModelPathError(GenRecError):
    """Model path missing, of an unsupported format, or lacking ranking head weights."""

    status = StatusCode.INVALID_MODEL_PATH

    def __init__(self, model_path: str, reason: str):
        super().__init__(f"Invalid model path {model_path!r}: {reason}")
        self.model_path = model_path
        self.reason = reason


class ModelLoadError(GenRecError):
    """Raised when model weights cannot be turned into a binding."""

    status = StatusCode.MODEL_LOAD_ERROR

    def __init__(self, model_path: str, reason: str):
        super().__init__(f"Failed to load model {model_path!r}: {reason}")
        self.model_path = model_path
        self.reason = reason


class DeviceInitError(GenRecError):
    """Device context acquisition failed (driver error, batch-size constraint)."""

    status = StatusCode.DEVICE_INIT_ERROR

    def __init__(self, device: str, reason: str):
        super().__init__(f"Device {device} initialization failed: {reason}")
        self.device = device
        self.reason = reason


class DeviceOutOfMemoryError(DeviceInitError):
    """A device memory pool cannot satisfy an allocation."""

    def __init__(self, device: str, requested: int, available: int):
        super().__init__(
            device,
            f"out of memory (requested {requested} bytes, {available} bytes available)",
        )
        self.requested = requested
        self.available = available


class NotInitializedError(GenRecError):
    status = StatusCode.NOT_INITIALIZED

    def __init__(self, state: str):
        super().__init__(f"Handle is not ready (state={state})")
        self.state = state


class HandleDestroyedError(GenRecError):
    status = StatusCode.NOT_INITIALIZED

    def __init__(self):
        super().__init__("Handle has been destroyed")


class InvalidRequestError(GenRecError):
    status = StatusCode.INVALID_REQUEST


class RequestTimeoutError(GenRecError):
    status = StatusCode.TIMEOUT

    def __init__(self, timeout_ms: int):
        super().__init__(f"Generation exceeded timeout of {timeout_ms}ms")
        self.timeout_ms = timeout_ms


def status_for_exception(exc: BaseException) -> StatusCode:
    """Map any exception onto the status vocabulary."""
    if isinstance(exc, GenRecError):
        return exc.status
    if isinstance(exc, MemoryError):
        return StatusCode.ALLOCATION_FAILURE
    return StatusCode.INTERNAL_ERROR
