"""
genrec runtime components.

- devices: device string parsing, device contexts and memory pools
- loader: model artifact loading and device binding
- generation_cache: per-handle conversational state
- executor: request validation and execution with timeouts
- response_builder: response construction and ownership tracking
- lifecycle: the Handle state machine composing all of the above
"""

from .devices import DeviceContextPool, DeviceSpec, TorchDeviceProbe, parse_device_spec
from .generation_cache import CacheEntry, GenerationCache
from .lifecycle import Handle, HandleState
from .loader import ModelBinding, ModelLoader, write_model
from .response_builder import ResponseBuilder, get_response_builder

__all__ = [
    "CacheEntry",
    "DeviceContextPool",
    "DeviceSpec",
    "GenerationCache",
    "Handle",
    "HandleState",
    "ModelBinding",
    "ModelLoader",
    "ResponseBuilder",
    "TorchDeviceProbe",
    "get_response_builder",
    "parse_device_spec",
    "write_model",
]
