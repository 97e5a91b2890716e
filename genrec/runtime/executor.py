"""
RequestExecutor: drives one chat-completion request through cache and model.

Pipeline per request:
1. validate the request against the loaded binding
2. derive the cache key and take the key's writer lock
3. snapshot the entry and submit the turn to the worker pool
4. wait for the worker until the deadline; on timeout set the cancel
   event and return without touching the entry
5. on success commit the turn to the cache and hand back the choices

The worker computes from a snapshot and returns new values; only the
calling thread commits, and only on success. A late result from a
cancelled attempt is therefore dropped on the floor.
"""

import concurrent.futures
import hashlib
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Set, Tuple

import torch

from genrec.backends import select_items
from genrec.errors import (
    DeviceOutOfMemoryError,
    GenRecError,
    InvalidRequestError,
    RequestTimeoutError,
    StatusCode,
)
from genrec.interfaces import RankingBackend
from genrec.runtime.generation_cache import CacheEntry, GenerationCache, TurnUpdate, snapshot_entry
from genrec.runtime.loader import ModelBinding
from genrec.types import ALLOWED_ROLES, ChatMessage, Request, RequestParams

logger = logging.getLogger(__name__)


@dataclass
class RankedChoice:
    items: List[int]
    scores: List[float]


@dataclass
class TurnResult:
    """What a worker hands back for one attempt."""
    new_items: List[int]
    candidate_pool: Set[int]
    attention_state: Optional[torch.Tensor]
    messages_absorbed: int
    choices: List[RankedChoice] = field(default_factory=list)


@dataclass
class ExecutionResult:
    key: Tuple[str, str]
    choices: List[RankedChoice]
    behavior_length: int


def derive_session_key(messages: Sequence[ChatMessage], params: RequestParams) -> str:
    """
    Session key of a conversation.

    An explicit params.session_id wins. Otherwise the key is the SHA-256
    of the first message (role and content), which stays the same as the
    conversation grows turn by turn.
    """
    if params.session_id is not None:
        return str(params.session_id)
    if not messages:
        raise InvalidRequestError("no messages and no session_id: request carries no recommendation context")
    anchor = messages[0]
    digest = hashlib.sha256()
    digest.update(anchor.role.encode("utf-8"))
    digest.update(b"\x00")
    digest.update(anchor.content.encode("utf-8"))
    return digest.hexdigest()


def format_recommendation(items: Sequence[int]) -> str:
    if not items:
        return "No recommendations available."
    return "Recommended items: " + ", ".join(str(i) for i in items)


class RequestExecutor:
    """
    Executes requests for one handle.

    Args:
        binding: Loaded model the handle serves
        cache: The handle's generation cache
        backend: Compute backend
        workers: Thread pool that runs the compute of each attempt
        use_cache: When False every request starts from an empty entry and
                   nothing is committed
    """

    def __init__(
        self,
        binding: ModelBinding,
        cache: GenerationCache,
        backend: RankingBackend,
        workers: concurrent.futures.ThreadPoolExecutor,
        use_cache: bool = True,
    ):
        self.binding = binding
        self.cache = cache
        self.backend = backend
        self.workers = workers
        self.use_cache = use_cache
        self._stats_lock = threading.Lock()
        self.stats = {
            "requests": 0,
            "succeeded": 0,
            "invalid": 0,
            "timeouts": 0,
            "failed": 0,
            "cancelled_attempts": 0,
        }

    def _count(self, name: str) -> None:
        with self._stats_lock:
            self.stats[name] += 1

    def validate(self, request: Request) -> List[ChatMessage]:
        """
        Check a request and return the messages it covers.

        Raises:
            InvalidRequestError: describing the first problem found
        """
        count = request.messages_count
        if not isinstance(count, int) or count < 0:
            raise InvalidRequestError(f"messages_count must be >= 0, got {count}")
        if request.messages is None:
            if count > 0:
                raise InvalidRequestError(f"messages is None but messages_count={count}")
            messages: List[ChatMessage] = []
        else:
            if count > len(request.messages):
                raise InvalidRequestError(
                    f"messages_count={count} exceeds the {len(request.messages)} messages supplied"
                )
            messages = list(request.messages[:count])

        for index, message in enumerate(messages):
            if not isinstance(message, ChatMessage):
                raise InvalidRequestError(f"message {index} is not a ChatMessage")
            if not isinstance(message.role, str) or not message.role:
                raise InvalidRequestError(f"message {index} has an empty role")
            if not isinstance(message.content, str) or not message.content:
                raise InvalidRequestError(f"message {index} has empty content")
            if message.role not in ALLOWED_ROLES:
                raise InvalidRequestError(f"message {index} has unknown role {message.role!r}")

        if not request.model_id:
            raise InvalidRequestError("model_id is empty")
        if request.model_id != self.binding.model_id:
            raise InvalidRequestError(
                f"model_id {request.model_id!r} does not match loaded model {self.binding.model_id!r}"
            )

        params = request.params
        try:
            params.validate()
            bad = []
            if params.candidate_items is not None:
                bad = [i for i in params.candidate_items if not 0 <= int(i) < self.binding.num_items]
        except (TypeError, ValueError) as e:
            raise InvalidRequestError(f"invalid request params: {e}") from e
        if bad:
            raise InvalidRequestError(f"candidate_items outside the item vocabulary: {bad[:5]}")

        if not messages and params.session_id is None:
            raise InvalidRequestError("no messages and no session_id: request carries no recommendation context")
        return messages

    def execute(self, request: Request) -> ExecutionResult:
        """
        Run one request to completion, timeout or failure.

        Raises:
            InvalidRequestError: Request failed validation
            RequestTimeoutError: Deadline passed (entry left unmodified)
            GenRecError / Exception: Backend failure (entry left unmodified)
        """
        self._count("requests")
        try:
            messages = self.validate(request)
        except InvalidRequestError:
            self._count("invalid")
            raise

        timeout_ms = int(request.timeout_ms or 0)
        deadline = time.monotonic() + timeout_ms / 1000.0 if timeout_ms > 0 else None
        key = (request.model_id, derive_session_key(messages, request.params))

        try:
            if not self.use_cache:
                entry = CacheEntry(key=key)
                result = self._run_attempt(entry, messages, request.params, deadline, timeout_ms)
                behavior_length = len(entry.behavior_sequence) + len(result.new_items)
            else:
                try:
                    with self.cache.writer(key, timeout=self._remaining(deadline, timeout_ms)) as entry:
                        result = self._run_attempt(entry, messages, request.params, deadline, timeout_ms)
                        committed = self.cache.update(key, TurnUpdate(
                            new_items=result.new_items,
                            candidate_pool=result.candidate_pool,
                            attention_state=result.attention_state,
                            messages_absorbed=result.messages_absorbed,
                        ))
                        behavior_length = len(committed.behavior_sequence)
                except DeviceOutOfMemoryError as e:
                    raise GenRecError(
                        f"generation cache cannot hold session state: {e.reason}",
                        StatusCode.ALLOCATION_FAILURE,
                    ) from e
        except RequestTimeoutError:
            self._count("timeouts")
            logger.warning(f"Request on session {key[1][:12]} timed out after {timeout_ms}ms")
            raise
        except Exception:
            self._count("failed")
            raise

        self._count("succeeded")
        return ExecutionResult(key=key, choices=result.choices, behavior_length=behavior_length)

    def _remaining(self, deadline: Optional[float], timeout_ms: int) -> Optional[float]:
        if deadline is None:
            return None
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise RequestTimeoutError(timeout_ms)
        return remaining

    def _run_attempt(
        self,
        entry: CacheEntry,
        messages: List[ChatMessage],
        params: RequestParams,
        deadline: Optional[float],
        timeout_ms: int,
    ) -> TurnResult:
        behavior, _, state, absorbed = snapshot_entry(entry)
        if len(messages) > absorbed:
            turn_messages = messages[absorbed:]
        else:
            # Conversation does not extend the cached one: the last message is the turn
            turn_messages = messages[-1:]

        cancel = threading.Event()
        future = self.workers.submit(
            self._compute, behavior, state, turn_messages, max(absorbed, len(messages)), params, cancel
        )
        try:
            return future.result(timeout=self._remaining(deadline, timeout_ms))
        except (concurrent.futures.TimeoutError, RequestTimeoutError):
            cancel.set()
            future.cancel()
            self._count("cancelled_attempts")
            raise RequestTimeoutError(timeout_ms)

    def _compute(
        self,
        behavior: List[int],
        state: Optional[torch.Tensor],
        turn_messages: List[ChatMessage],
        messages_total: int,
        params: RequestParams,
        cancel: threading.Event,
    ) -> TurnResult:
        binding = self.binding
        new_items = self.backend.encode(binding, turn_messages)
        new_state = self.backend.advance(binding, state, new_items, cancel)

        if params.candidate_items is not None:
            pool = {int(i) for i in params.candidate_items}
        else:
            pool = set(range(binding.num_items))
        if params.exclude_seen:
            pool.difference_update(behavior)
            pool.difference_update(new_items)

        candidates = sorted(pool)
        choices: List[RankedChoice] = []
        if candidates:
            scores = self.backend.score(binding, new_state, candidates, cancel)
            for index in range(params.n):
                generator = None
                if params.seed is not None:
                    generator = torch.Generator().manual_seed(int(params.seed) + index)
                picked = select_items(
                    scores,
                    candidates,
                    params.max_new_items,
                    temperature=params.temperature,
                    top_k=params.top_k,
                    top_p=params.top_p,
                    generator=generator,
                )
                choices.append(RankedChoice(
                    items=[i for i, _ in picked],
                    scores=[s for _, s in picked],
                ))
        else:
            choices = [RankedChoice(items=[], scores=[]) for _ in range(params.n)]

        return TurnResult(
            new_items=new_items,
            candidate_pool=pool,
            attention_state=new_state,
            messages_absorbed=messages_total,
            choices=choices,
        )

    def get_stats(self) -> dict:
        with self._stats_lock:
            return dict(self.stats)
