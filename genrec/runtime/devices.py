"""
Device selection and per-device execution contexts.

Device string grammar:
    "<kind>:<ordinal>[,<ordinal>...]"   kind in {cuda, npu}
    "auto"                              placement policy picks the device

parse_device_spec() turns a string into a validated DeviceSpec and reports
every problem it finds in one InvalidDevicesError. DeviceContextPool then
resolves the spec against the devices the driver exposes and acquires one
DeviceContext (stream + memory pool) per device, all-or-nothing.
"""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

import torch

from genrec.errors import DeviceInitError, DeviceOutOfMemoryError, InvalidDevicesError
from genrec.interfaces import DeviceProbe

logger = logging.getLogger(__name__)


class DeviceKind(str, Enum):
    CUDA = "cuda"
    NPU = "npu"
    AUTO = "auto"


@dataclass(frozen=True)
class DeviceDescriptor:
    kind: DeviceKind
    ordinal: int

    @property
    def name(self) -> str:
        return f"{self.kind.value}:{self.ordinal}"


@dataclass(frozen=True)
class DeviceSpec:
    """Parsed device string. `ordinals` is empty exactly when kind is AUTO."""
    kind: DeviceKind
    ordinals: Tuple[int, ...] = ()

    @property
    def is_auto(self) -> bool:
        return self.kind == DeviceKind.AUTO

    def descriptors(self) -> List[DeviceDescriptor]:
        return [DeviceDescriptor(self.kind, o) for o in self.ordinals]


def parse_device_spec(devices: Optional[str]) -> DeviceSpec:
    """
    Parse a device string into a DeviceSpec.

    Duplicate ordinals are dropped (first occurrence wins), so the result is
    an ordered, de-duplicated set.

    Raises:
        InvalidDevicesError: listing every syntax problem found
    """
    if devices is None:
        raise InvalidDevicesError("None", "device string is required")

    text = devices.strip()
    if not text:
        raise InvalidDevicesError(devices, "device string is empty")

    if text.lower() == DeviceKind.AUTO.value:
        return DeviceSpec(DeviceKind.AUTO)

    kind_part, sep, ordinal_part = text.partition(":")
    kind_name = kind_part.strip().lower()
    problems: List[str] = []

    if not sep:
        problems.append("expected '<kind>:<ordinal>[,<ordinal>...]' or 'auto'")
    if kind_name == DeviceKind.AUTO.value:
        problems.append("'auto' cannot be combined with explicit ordinals")
    elif kind_name not in (DeviceKind.CUDA.value, DeviceKind.NPU.value):
        problems.append(f"unknown device kind {kind_part.strip()!r} (expected cuda or npu)")

    ordinals: List[int] = []
    if sep:
        raw_ordinals = ordinal_part.split(",")
        if ordinal_part.strip() == "":
            problems.append("no device ordinals given")
        else:
            for position, raw in enumerate(raw_ordinals):
                token = raw.strip()
                if token == "":
                    problems.append(f"empty ordinal at position {position}")
                elif not (token.isascii() and token.isdigit()):
                    problems.append(f"ordinal {token!r} is not a non-negative integer")
                else:
                    ordinal = int(token)
                    if ordinal in ordinals:
                        logger.debug(f"Dropping duplicate ordinal {ordinal} in {devices!r}")
                        continue
                    ordinals.append(ordinal)

    if problems:
        raise InvalidDevicesError(devices, "; ".join(problems))

    return DeviceSpec(DeviceKind(kind_name), tuple(ordinals))


class TorchDeviceProbe(DeviceProbe):
    """
    DeviceProbe backed by torch.

    CUDA goes through torch.cuda. NPU goes through torch.npu, which exists
    once the Ascend torch_npu extension has been imported; without it no NPU
    devices are reported.
    """

    def _module(self, kind: str) -> Optional[Any]:
        if kind == DeviceKind.CUDA.value:
            return torch.cuda
        return getattr(torch, kind, None)

    def device_count(self, kind: str) -> int:
        module = self._module(kind)
        if module is None or not module.is_available():
            return 0
        return int(module.device_count())

    def total_memory(self, kind: str, ordinal: int) -> int:
        return int(self._module(kind).get_device_properties(ordinal).total_memory)

    def create_stream(self, kind: str, ordinal: int) -> Optional[Any]:
        return self._module(kind).Stream(device=self.torch_device(kind, ordinal))

    def torch_device(self, kind: str, ordinal: int) -> torch.device:
        return torch.device(f"{kind}:{ordinal}")

    def release(self, kind: str, ordinal: int) -> None:
        module = self._module(kind)
        if module is not None and module.is_available():
            with module.device(ordinal):
                module.empty_cache()


class MemoryPool:
    """
    Byte accounting for one device.

    Every device-resident allocation made by the runtime (weights, batch
    workspace, cached attention state) is charged under a tag so that
    release can return exactly what was taken.
    """

    def __init__(self, device_name: str, capacity_bytes: int):
        self.device_name = device_name
        self.capacity_bytes = int(capacity_bytes)
        self._allocations: Dict[str, int] = {}
        self._lock = threading.Lock()

    @property
    def used_bytes(self) -> int:
        with self._lock:
            return sum(self._allocations.values())

    @property
    def available_bytes(self) -> int:
        return self.capacity_bytes - self.used_bytes

    def allocate(self, tag: str, nbytes: int) -> None:
        """
        Charge `nbytes` under `tag` (replacing any previous charge for it).

        Raises:
            DeviceOutOfMemoryError: If the pool cannot hold the allocation
        """
        with self._lock:
            current = self._allocations.get(tag, 0)
            used = sum(self._allocations.values()) - current
            if used + nbytes > self.capacity_bytes:
                raise DeviceOutOfMemoryError(
                    self.device_name, nbytes, self.capacity_bytes - used
                )
            self._allocations[tag] = int(nbytes)

    def free(self, tag: str) -> int:
        with self._lock:
            return self._allocations.pop(tag, 0)

    def tagged_bytes(self, prefix: str) -> int:
        with self._lock:
            return sum(n for t, n in self._allocations.items() if t.startswith(prefix))

    def clear(self) -> int:
        with self._lock:
            freed = sum(self._allocations.values())
            self._allocations.clear()
            return freed


@dataclass
class DeviceContext:
    """A bound execution stream plus memory pool on one device."""
    descriptor: DeviceDescriptor
    device: torch.device
    stream: Optional[Any]
    memory_pool: MemoryPool
    active: bool = True


class CacheMemoryAccount:
    """
    Generation-cache view of the primary device's memory pool.

    Cache bytes are charged under "cache:" tags. pressure() tells the cache
    how many bytes it must give up before `incoming_bytes` more can be held
    without crossing the watermark of its budget or exhausting the pool.
    """

    TAG_PREFIX = "cache:"

    def __init__(self, pool: MemoryPool, budget_bytes: int, watermark: float):
        self.pool = pool
        self.budget_bytes = int(budget_bytes)
        self.watermark = watermark

    def _tag(self, key: Any) -> str:
        return f"{self.TAG_PREFIX}{key}"

    @property
    def used_bytes(self) -> int:
        return self.pool.tagged_bytes(self.TAG_PREFIX)

    def pressure(self, incoming_bytes: int) -> int:
        limit = int(self.budget_bytes * self.watermark)
        over_budget = self.used_bytes + incoming_bytes - limit
        over_pool = incoming_bytes - self.pool.available_bytes
        return max(0, over_budget, over_pool)

    def charge(self, key: Any, nbytes: int) -> None:
        self.pool.allocate(self._tag(key), nbytes)

    def free(self, key: Any) -> int:
        return self.pool.free(self._tag(key))


class DeviceContextPool:
    """
    Owns device selection and the per-device execution contexts of one handle.

    Usage:
        pool = DeviceContextPool(probe)
        pool.acquire(parse_device_spec("cuda:0,1"), memory_budget_bytes=None)
        ...
        pool.release()
    """

    def __init__(
        self,
        probe: Optional[DeviceProbe] = None,
        auto_kinds: Sequence[str] = (DeviceKind.CUDA.value, DeviceKind.NPU.value),
    ):
        self.probe = probe or TorchDeviceProbe()
        self.auto_kinds = [DeviceKind(k) for k in auto_kinds]
        self.contexts: List[DeviceContext] = []
        self._lock = threading.Lock()
        self.stats = {
            "contexts_acquired": 0,
            "contexts_released": 0,
            "rollbacks": 0,
        }

    @property
    def primary(self) -> DeviceContext:
        if not self.contexts:
            raise DeviceInitError("none", "no device contexts acquired")
        return self.contexts[0]

    def resolve(self, spec: DeviceSpec) -> List[DeviceDescriptor]:
        """
        Resolve a spec into concrete descriptors the driver can serve.

        "auto" is first-fit: the first device of the first kind in
        auto_kinds that has any device at all.

        Raises:
            InvalidDevicesError: If a requested ordinal does not exist or
                                 "auto" finds no device
        """
        if spec.is_auto:
            for kind in self.auto_kinds:
                if self.probe.device_count(kind.value) > 0:
                    descriptor = DeviceDescriptor(kind, 0)
                    logger.info(f"Auto placement selected {descriptor.name}")
                    return [descriptor]
            raise InvalidDevicesError(
                "auto",
                f"no devices available for kinds {[k.value for k in self.auto_kinds]}",
            )

        available = self.probe.device_count(spec.kind.value)
        missing = [o for o in spec.ordinals if o >= available]
        if missing:
            names = ", ".join(f"{spec.kind.value}:{o}" for o in missing)
            raise InvalidDevicesError(
                ",".join(d.name for d in spec.descriptors()),
                f"unavailable device(s) {names} ({available} {spec.kind.value} device(s) visible)",
            )
        return spec.descriptors()

    def acquire(self, spec: DeviceSpec, memory_budget_bytes: Optional[int] = None) -> List[DeviceContext]:
        """
        Acquire one context per resolved device (all-or-nothing).

        Args:
            spec: Parsed device spec
            memory_budget_bytes: Per-device pool capacity (None = device total)

        Returns:
            The acquired contexts, primary first

        Raises:
            InvalidDevicesError: Unavailable ordinals
            DeviceInitError: Driver failure while opening a context; contexts
                             acquired before the failure are released
        """
        descriptors = self.resolve(spec)

        with self._lock:
            if self.contexts:
                raise DeviceInitError(
                    self.contexts[0].descriptor.name, "pool already holds device contexts"
                )

            acquired: List[DeviceContext] = []
            try:
                for descriptor in descriptors:
                    acquired.append(self._open_context(descriptor, memory_budget_bytes))
            except Exception as e:
                self.stats["rollbacks"] += 1
                logger.warning(
                    f"Device acquisition failed after {len(acquired)}/{len(descriptors)} "
                    f"contexts, rolling back: {e}"
                )
                for context in acquired:
                    self._close_context(context)
                if isinstance(e, DeviceInitError):
                    raise
                name = descriptors[len(acquired)].name
                raise DeviceInitError(name, f"driver error: {e}") from e

            self.contexts = acquired
            logger.info(f"Acquired device contexts: {[c.descriptor.name for c in acquired]}")
            return list(acquired)

    def _open_context(self, descriptor: DeviceDescriptor, memory_budget_bytes: Optional[int]) -> DeviceContext:
        kind, ordinal = descriptor.kind.value, descriptor.ordinal
        if memory_budget_bytes is not None:
            capacity = int(memory_budget_bytes)
        else:
            capacity = self.probe.total_memory(kind, ordinal)
        stream = self.probe.create_stream(kind, ordinal)
        context = DeviceContext(
            descriptor=descriptor,
            device=self.probe.torch_device(kind, ordinal),
            stream=stream,
            memory_pool=MemoryPool(descriptor.name, capacity),
        )
        self.stats["contexts_acquired"] += 1
        logger.debug(f"Opened context on {descriptor.name} (capacity={capacity / 1024**2:.1f}MB)")
        return context

    def _close_context(self, context: DeviceContext) -> None:
        if not context.active:
            return
        try:
            self.probe.synchronize(context.stream)
        except Exception as e:
            logger.warning(f"Stream synchronize failed on {context.descriptor.name}: {e}")
        context.memory_pool.clear()
        context.stream = None
        context.active = False
        try:
            self.probe.release(context.descriptor.kind.value, context.descriptor.ordinal)
        except Exception as e:
            logger.warning(f"Driver release failed on {context.descriptor.name}: {e}")
        self.stats["contexts_released"] += 1
        logger.debug(f"Closed context on {context.descriptor.name}")

    def cache_memory(self, fraction: float, watermark: float) -> CacheMemoryAccount:
        """Memory account for the generation cache on the primary device."""
        pool = self.primary.memory_pool
        return CacheMemoryAccount(pool, int(pool.capacity_bytes * fraction), watermark)

    def synchronize(self) -> None:
        for context in self.contexts:
            if context.active:
                self.probe.synchronize(context.stream)

    def allocated_bytes(self) -> int:
        """Bytes currently charged across every active context."""
        return sum(c.memory_pool.used_bytes for c in self.contexts if c.active)

    def release(self) -> int:
        """
        Destroy every context and return all device memory. Idempotent.

        Returns:
            Number of contexts closed by this call
        """
        with self._lock:
            contexts, self.contexts = self.contexts, []
            for context in contexts:
                self._close_context(context)
            if contexts:
                logger.info(f"Released {len(contexts)} device context(s)")
            return len(contexts)

    def get_stats(self) -> Dict:
        return {
            **self.stats,
            "active_contexts": len(self.contexts),
            "allocated_bytes": self.allocated_bytes(),
        }
