"""
DeviceProbe: Access to the accelerator driver.

The device pool only needs four things from a driver: how many devices of
a kind exist, how much memory one has, how to open an execution stream on
it and which torch.device tensors should be placed on. Keeping these
behind an interface lets the pool be exercised on hosts without
accelerators.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional

import torch


class DeviceProbe(ABC):

    @abstractmethod
    def device_count(self, kind: str) -> int:
        """Number of devices of `kind` ("cuda" or "npu") visible to the process."""
        pass

    @abstractmethod
    def total_memory(self, kind: str, ordinal: int) -> int:
        """Total memory in bytes of one device."""
        pass

    @abstractmethod
    def create_stream(self, kind: str, ordinal: int) -> Optional[Any]:
        """Open an execution stream/queue on the device."""
        pass

    @abstractmethod
    def torch_device(self, kind: str, ordinal: int) -> torch.device:
        pass

    def synchronize(self, stream: Optional[Any]) -> None:
        """Wait for all work queued on `stream`."""
        if stream is not None and hasattr(stream, "synchronize"):
            stream.synchronize()

    def release(self, kind: str, ordinal: int) -> None:
        """Return cached allocator blocks to the driver."""
        return None
