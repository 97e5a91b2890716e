"""
Handle lifecycle: the state machine that owns every per-handle resource.

    CREATED --initialize(ok)--> READY
    CREATED --initialize(fail)--> FAILED
    FAILED  --initialize--> READY | FAILED          (retry)
    READY   --initialize--> READY | FAILED          (re-bind)
    any     --destroy--> DESTROYED                  (terminal, idempotent)

A handle-scoped reader/writer lock serializes initialize and destroy
against each other and against requests: requests hold it shared, so
requests on one handle run concurrently; initialize/destroy hold it
exclusive, so they wait for in-flight requests to finish and block new
ones until they are done.
"""

import concurrent.futures
import logging
import threading
from contextlib import contextmanager
from dataclasses import replace
from enum import Enum
from typing import Dict, Iterator, List, Optional, Sequence

from genrec.backends import TorchRankingBackend
from genrec.config import GenRecConfig, get_config
from genrec.errors import (
    DeviceInitError,
    GenRecError,
    HandleDestroyedError,
    NotInitializedError,
    StatusCode,
    status_for_exception,
)
from genrec.interfaces import DeviceProbe, EvictionPolicy, RankingBackend
from genrec.policies import LRUPolicy
from genrec.runtime.devices import DeviceContextPool, parse_device_spec
from genrec.runtime.executor import RequestExecutor, format_recommendation
from genrec.runtime.generation_cache import GenerationCache
from genrec.runtime.loader import ModelBinding, ModelLoader, resolve_model_path
from genrec.runtime.response_builder import ResponseBuilder, get_response_builder
from genrec.types import ChatMessage, InitOptions, Request, RequestParams, Response, default_init_options

logger = logging.getLogger(__name__)


class HandleState(str, Enum):
    CREATED = "created"
    INITIALIZING = "initializing"
    READY = "ready"
    FAILED = "failed"
    DESTROYED = "destroyed"


class _HandleLock:
    """Reader/writer lock with writer preference."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def shared(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def exclusive(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()

    @property
    def readers(self) -> int:
        with self._cond:
            return self._readers


class Handle:
    """
    One generative-recommendation runtime instance.

    Composes DeviceContextPool, ModelLoader, GenerationCache and
    RequestExecutor. Callers own the handle and must destroy() it once;
    further destroy() calls are no-ops.

    Args:
        device_probe: Driver access (default: torch)
        backend: Compute backend (default: TorchRankingBackend)
        eviction_policy: Cache eviction policy (default: LRUPolicy)
        config: Process configuration (default: get_config())
        response_builder: Response registry (default: process-wide builder)
    """

    def __init__(
        self,
        device_probe: Optional[DeviceProbe] = None,
        backend: Optional[RankingBackend] = None,
        eviction_policy: Optional[EvictionPolicy] = None,
        config: Optional[GenRecConfig] = None,
        response_builder: Optional[ResponseBuilder] = None,
    ):
        self.config = config or get_config()
        self.device_probe = device_probe
        self.backend = backend or TorchRankingBackend()
        self.eviction_policy = eviction_policy or LRUPolicy()
        self.responses = response_builder or get_response_builder()
        self.loader = ModelLoader()

        self._state = HandleState.CREATED
        self._lock = _HandleLock()
        self._device_pool: Optional[DeviceContextPool] = None
        self._binding: Optional[ModelBinding] = None
        self._cache: Optional[GenerationCache] = None
        self._workers: Optional[concurrent.futures.ThreadPoolExecutor] = None
        self._executor: Optional[RequestExecutor] = None
        self.init_options: Optional[InitOptions] = None

        self.last_status: Optional[StatusCode] = None
        self.last_error: Optional[str] = None
        self.leaked = False
        self.stats = {
            "initialize_calls": 0,
            "initialize_failures": 0,
            "destroy_calls": 0,
        }
        logger.debug(f"Handle {id(self):#x} created")

    @property
    def state(self) -> HandleState:
        return self._state

    @property
    def binding(self) -> Optional[ModelBinding]:
        return self._binding

    @property
    def cache(self) -> Optional[GenerationCache]:
        return self._cache

    @property
    def device_pool(self) -> Optional[DeviceContextPool]:
        return self._device_pool

    @property
    def model_id(self) -> Optional[str]:
        return self._binding.model_id if self._binding is not None else None

    def initialize(
        self,
        model_path: str,
        devices: str,
        init_options: Optional[InitOptions] = None,
    ) -> bool:
        """
        Bind a model and devices to this handle.

        Valid from CREATED, FAILED (retry) and READY (re-bind; the previous
        binding, contexts and cache are released first). Any failure
        leaves the handle FAILED with nothing acquired; the cause is
        recorded in last_status / last_error.

        Returns:
            True when the handle is READY
        """
        with self._lock.exclusive():
            self.stats["initialize_calls"] += 1
            if self._state == HandleState.DESTROYED:
                self._record_failure(HandleDestroyedError())
                return False

            if self._state == HandleState.READY:
                logger.info(f"Re-initializing handle {id(self):#x} (releasing {self.model_id})")
                self._teardown()

            self._state = HandleState.INITIALIZING
            try:
                self._bind(model_path, devices, init_options)
            except Exception as e:
                self._teardown()
                self._state = HandleState.FAILED
                self._record_failure(e)
                return False

            self._state = HandleState.READY
            self.last_status = StatusCode.SUCCESS
            self.last_error = None
            logger.info(
                f"✅ Handle {id(self):#x} ready: model={self.model_id}, "
                f"devices={[c.descriptor.name for c in self._device_pool.contexts]}"
            )
            return True

    def _record_failure(self, exc: BaseException) -> None:
        self.stats["initialize_failures"] += 1
        self.last_status = status_for_exception(exc)
        self.last_error = str(exc)
        if isinstance(exc, GenRecError):
            logger.warning(f"Handle initialize failed ({self.last_status.value}): {exc}")
        else:
            logger.error(f"Handle initialize failed unexpectedly: {exc}", exc_info=exc)

    def _bind(self, model_path: str, devices: str, init_options: Optional[InitOptions]) -> None:
        options = replace(init_options) if init_options is not None else default_init_options()
        try:
            options.validate()
        except (TypeError, ValueError) as e:
            raise DeviceInitError(str(devices), f"invalid init options: {e}") from e

        spec = parse_device_spec(devices)
        resolve_model_path(model_path)

        self._device_pool = DeviceContextPool(self.device_probe, self.config.runtime.auto_device_kinds)
        budget = None
        if options.device_memory_budget_mb is not None:
            budget = int(options.device_memory_budget_mb * 1024 * 1024)
        contexts = self._device_pool.acquire(spec, memory_budget_bytes=budget)

        self._binding = self.loader.load(
            model_path,
            contexts,
            dtype=options.dtype,
            max_batch_size=options.max_batch_size,
        )
        self.backend.prepare(self._binding)

        self._cache = GenerationCache(
            max_entries=options.max_cache_entries,
            memory=self._device_pool.cache_memory(
                options.cache_memory_fraction, self.config.cache.pressure_watermark
            ),
            policy=self.eviction_policy,
            min_entry_bytes=self.config.cache.min_entry_bytes,
        )
        self._workers = concurrent.futures.ThreadPoolExecutor(
            max_workers=options.worker_threads or self.config.runtime.worker_threads,
            thread_name_prefix="genrec-request",
        )
        self._executor = RequestExecutor(
            binding=self._binding,
            cache=self._cache,
            backend=self.backend,
            workers=self._workers,
            use_cache=options.enable_generation_cache,
        )
        self.init_options = options

    def _teardown(self) -> List[str]:
        """
        Release everything acquired by initialize, in order: workers, model
        binding, device contexts, generation cache. Each step runs even if
        an earlier one failed.

        Returns:
            Descriptions of steps that failed
        """
        errors: List[str] = []

        def step(name, fn):
            try:
                fn()
            except Exception as e:
                logger.error(f"Teardown step '{name}' failed: {e}", exc_info=e)
                errors.append(f"{name}: {e}")

        workers, self._workers = self._workers, None
        if workers is not None:
            # Abandoned (timed-out) attempts finish before device memory goes away
            step("workers", lambda: workers.shutdown(wait=True))
        self._executor = None

        binding, self._binding = self._binding, None
        if binding is not None:
            step("binding", binding.release)

        pool, self._device_pool = self._device_pool, None
        if pool is not None:
            step("devices", pool.release)

        cache, self._cache = self._cache, None
        if cache is not None:
            step("cache", cache.clear)

        self.init_options = None
        return errors

    def destroy(self) -> None:
        """
        Release every resource and move to DESTROYED.

        Waits for in-flight requests. Idempotent: later calls are no-ops.
        If a release step fails the handle is still DESTROYED and marked
        leaked; nothing is released twice.
        """
        with self._lock.exclusive():
            if self._state == HandleState.DESTROYED:
                return
            self.stats["destroy_calls"] += 1
            errors = self._teardown()
            self._state = HandleState.DESTROYED
            if errors:
                self.leaked = True
                logger.error(f"Handle {id(self):#x} destroyed with leaked resources: {errors}")
            else:
                logger.info(f"Handle {id(self):#x} destroyed")

    def chat_completions(
        self,
        model_id: str,
        messages: Optional[Sequence[ChatMessage]],
        messages_count: int,
        timeout_ms: int = 0,
        request_params: Optional[RequestParams] = None,
    ) -> Optional[Response]:
        """
        Run one chat-completion request.

        Returns:
            A tracked Response whose status carries the outcome, or None
            only if the response itself could not be allocated
        """
        with self._lock.shared():
            if self._state != HandleState.READY:
                error = NotInitializedError(self._state.value)
                return self.responses.failure(error.status, str(error), model_id=model_id)

            request = Request(
                model_id=model_id,
                messages=messages,
                messages_count=messages_count,
                timeout_ms=timeout_ms,
                params=replace(request_params) if request_params is not None else RequestParams(),
            )
            try:
                result = self._executor.execute(request)
            except GenRecError as e:
                logger.debug(f"Request failed ({e.status.value}): {e}")
                return self.responses.failure(e.status, str(e), model_id=model_id)
            except Exception as e:
                status = status_for_exception(e)
                logger.error(f"Request failed ({status.value}): {e}", exc_info=e)
                return self.responses.failure(status, str(e), model_id=model_id)

            return self.responses.success(model_id, result.choices, format_recommendation)

    def inflight_requests(self) -> int:
        return self._lock.readers

    def get_stats(self) -> Dict:
        stats = {**self.stats, "state": self._state.value, "leaked": self.leaked}
        if self._device_pool is not None:
            stats["devices"] = self._device_pool.get_stats()
        if self._cache is not None:
            stats["cache"] = self._cache.get_stats()
        if self._executor is not None:
            stats["executor"] = self._executor.get_stats()
        return stats
