"""
Shared fixtures: a host-backed device probe, small model directories and a
deliberately slow ranking backend.
"""

import threading
import time
from typing import Any, Dict, List, Optional, Tuple

import pytest
import torch

from genrec.backends import TorchRankingBackend
from genrec.config import GenRecConfig, set_config
from genrec.errors import RequestTimeoutError
from genrec.interfaces import DeviceProbe
from genrec.runtime.lifecycle import Handle
from genrec.runtime.loader import write_model

NUM_ITEMS = 64
HIDDEN_SIZE = 16
MODEL_ID = "rec-test"


class HostDeviceProbe(DeviceProbe):
    """Pretends to be a driver; every device maps onto the CPU."""

    def __init__(
        self,
        counts: Optional[Dict[str, int]] = None,
        memory_bytes: int = 64 * 1024 * 1024,
        fail_stream_on: Optional[Tuple[str, int]] = None,
    ):
        self.counts = counts if counts is not None else {"cuda": 2, "npu": 0}
        self.memory_bytes = memory_bytes
        self.fail_stream_on = fail_stream_on
        self.opened: List[Tuple[str, int]] = []
        self.released: List[Tuple[str, int]] = []

    def device_count(self, kind: str) -> int:
        return self.counts.get(kind, 0)

    def total_memory(self, kind: str, ordinal: int) -> int:
        return self.memory_bytes

    def create_stream(self, kind: str, ordinal: int) -> Optional[Any]:
        if self.fail_stream_on == (kind, ordinal):
            raise RuntimeError(f"driver refused stream on {kind}:{ordinal}")
        self.opened.append((kind, ordinal))
        return None

    def torch_device(self, kind: str, ordinal: int) -> torch.device:
        return torch.device("cpu")

    def release(self, kind: str, ordinal: int) -> None:
        self.released.append((kind, ordinal))


class SlowBackend(TorchRankingBackend):
    """TorchRankingBackend that sleeps `delay` seconds per advance, honoring cancellation."""

    def __init__(self, delay: float = 0.0):
        super().__init__()
        self.delay = delay
        self.cancelled = 0
        self.completed = 0

    def advance(self, binding, attention_state, item_ids, cancel: threading.Event):
        deadline = time.monotonic() + self.delay
        while time.monotonic() < deadline:
            if cancel.is_set():
                self.cancelled += 1
                raise RequestTimeoutError(0)
            time.sleep(0.005)
        state = super().advance(binding, attention_state, item_ids, cancel)
        self.completed += 1
        return state


def make_weights(num_items: int = NUM_ITEMS, hidden: int = HIDDEN_SIZE, seed: int = 0):
    generator = torch.Generator().manual_seed(seed)
    embedding = torch.randn(num_items, hidden, generator=generator)
    head = torch.randn(hidden, hidden, generator=generator)
    bias = torch.randn(hidden, generator=generator)
    return embedding, head, bias


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch):
    """Keep tests independent of GENREC_* variables and of each other."""
    for name in ("GENREC_CONFIG", "GENREC_LOG_LEVEL", "GENREC_WORKER_THREADS", "GENREC_AUTO_DEVICE_KIND"):
        monkeypatch.delenv(name, raising=False)
    set_config(GenRecConfig())
    yield
    set_config(None)


@pytest.fixture
def probe():
    return HostDeviceProbe()


@pytest.fixture
def model_dir(tmp_path):
    embedding, head, bias = make_weights()
    path = tmp_path / "rec-model"
    write_model(str(path), embedding, head, bias, model_id=MODEL_ID, max_batch_size=64)
    return str(path)


@pytest.fixture
def slow_backend():
    return SlowBackend()


@pytest.fixture
def handle(probe):
    h = Handle(device_probe=probe, config=GenRecConfig())
    yield h
    h.destroy()


@pytest.fixture
def ready_handle(probe, model_dir, slow_backend):
    h = Handle(device_probe=probe, backend=slow_backend, config=GenRecConfig())
    assert h.initialize(model_dir, "cuda:0")
    yield h
    h.destroy()
