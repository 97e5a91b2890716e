"""
Tests for device string parsing and the device context pool.
"""

import pytest

from genrec.errors import DeviceInitError, DeviceOutOfMemoryError, InvalidDevicesError
from genrec.runtime.devices import (
    CacheMemoryAccount,
    DeviceContextPool,
    DeviceKind,
    MemoryPool,
    parse_device_spec,
)

from conftest import HostDeviceProbe


# Parser
def test_parse_explicit_ordinals():
    spec = parse_device_spec("cuda:0,1")
    assert spec.kind == DeviceKind.CUDA
    assert spec.ordinals == (0, 1)
    assert [d.name for d in spec.descriptors()] == ["cuda:0", "cuda:1"]


def test_parse_npu_and_whitespace():
    spec = parse_device_spec(" NPU: 3 ")
    assert spec.kind == DeviceKind.NPU
    assert spec.ordinals == (3,)


def test_parse_auto():
    spec = parse_device_spec("auto")
    assert spec.is_auto
    assert spec.ordinals == ()


def test_parse_drops_duplicate_ordinals():
    assert parse_device_spec("cuda:1,0,1").ordinals == (1, 0)


@pytest.mark.parametrize("devices", ["cuda:", "npu:x", "", "tpu:0", "cuda:0,,1", "cuda", "auto:0", "cuda:-1", "cuda:²", "npu:٣"])
def test_parse_malformed(devices):
    with pytest.raises(InvalidDevicesError):
        parse_device_spec(devices)


def test_parse_reports_every_problem():
    with pytest.raises(InvalidDevicesError) as exc_info:
        parse_device_spec("gpu:a,")
    reason = exc_info.value.reason
    assert "unknown device kind" in reason
    assert "'a'" in reason
    assert "empty ordinal" in reason


def test_parse_none():
    with pytest.raises(InvalidDevicesError):
        parse_device_spec(None)


# Memory accounting
def test_memory_pool_allocate_and_free():
    pool = MemoryPool("cuda:0", 1000)
    pool.allocate("weights", 600)
    assert pool.used_bytes == 600
    with pytest.raises(DeviceOutOfMemoryError):
        pool.allocate("workspace", 500)
    # Re-charging a tag replaces its previous charge
    pool.allocate("weights", 900)
    assert pool.used_bytes == 900
    assert pool.free("weights") == 900
    assert pool.free("weights") == 0
    assert pool.available_bytes == 1000


def test_cache_memory_account_pressure():
    pool = MemoryPool("cuda:0", 10_000)
    account = CacheMemoryAccount(pool, budget_bytes=1000, watermark=0.5)
    assert account.pressure(400) == 0
    account.charge(("m", "a"), 400)
    assert account.used_bytes == 400
    assert account.pressure(200) == 100
    account.free(("m", "a"))
    assert account.used_bytes == 0


# Context pool
def test_acquire_and_release():
    probe = HostDeviceProbe(counts={"cuda": 2})
    pool = DeviceContextPool(probe)
    contexts = pool.acquire(parse_device_spec("cuda:0,1"))
    assert [c.descriptor.name for c in contexts] == ["cuda:0", "cuda:1"]
    assert pool.primary.descriptor.ordinal == 0

    contexts[0].memory_pool.allocate("weights", 128)
    assert pool.allocated_bytes() == 128

    assert pool.release() == 2
    assert pool.release() == 0
    assert all(not c.active for c in contexts)
    assert all(c.memory_pool.used_bytes == 0 for c in contexts)
    assert sorted(probe.released) == [("cuda", 0), ("cuda", 1)]
    assert pool.get_stats()["contexts_released"] == 2


def test_acquire_unavailable_ordinal():
    probe = HostDeviceProbe(counts={"cuda": 1})
    pool = DeviceContextPool(probe)
    with pytest.raises(InvalidDevicesError):
        pool.acquire(parse_device_spec("cuda:0,3"))
    assert probe.opened == []
    assert pool.contexts == []


def test_acquire_rolls_back_on_driver_failure():
    probe = HostDeviceProbe(counts={"cuda": 2}, fail_stream_on=("cuda", 1))
    pool = DeviceContextPool(probe)
    with pytest.raises(DeviceInitError) as exc_info:
        pool.acquire(parse_device_spec("cuda:0,1"))
    assert exc_info.value.device == "cuda:1"
    assert probe.opened == [("cuda", 0)]
    assert probe.released == [("cuda", 0)]
    assert pool.contexts == []
    assert pool.get_stats()["rollbacks"] == 1


def test_auto_is_first_fit():
    probe = HostDeviceProbe(counts={"cuda": 0, "npu": 2})
    pool = DeviceContextPool(probe)
    contexts = pool.acquire(parse_device_spec("auto"))
    assert [c.descriptor.name for c in contexts] == ["npu:0"]


def test_auto_without_devices():
    pool = DeviceContextPool(HostDeviceProbe(counts={}))
    with pytest.raises(InvalidDevicesError):
        pool.acquire(parse_device_spec("auto"))


def test_memory_budget_caps_pool():
    pool = DeviceContextPool(HostDeviceProbe())
    contexts = pool.acquire(parse_device_spec("cuda:0"), memory_budget_bytes=4096)
    assert contexts[0].memory_pool.capacity_bytes == 4096
    account = pool.cache_memory(0.5, 1.0)
    assert account.budget_bytes == 2048
    pool.release()
