"""
Data model shared across the runtime: chat messages, responses and the two
option structs (InitOptions, RequestParams) with their default sets.
"""

import time
import uuid
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional, Sequence

from genrec.errors import StatusCode

ALLOWED_ROLES = ("system", "user", "assistant")
SUPPORTED_DTYPES = ("float32", "float16", "bfloat16")


@dataclass
class ChatMessage:
    role: str
    content: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatMessage":
        return cls(role=data.get("role", ""), content=data.get("content", ""))


@dataclass
class Choice:
    """One generated recommendation: ranked items rendered as a chat message."""
    index: int
    message: ChatMessage
    items: List[int] = field(default_factory=list)
    scores: List[float] = field(default_factory=list)


@dataclass
class Response:
    """
    Result payload of a completion request.

    Owned by the runtime until released with genrec.api.free_response();
    after release `released` is True and `choices` is empty.
    """
    status: StatusCode
    choices: List[Choice] = field(default_factory=list)
    model_id: str = ""
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created: float = field(default_factory=time.time)
    error: Optional[str] = None
    released: bool = False

    @property
    def ok(self) -> bool:
        return self.status == StatusCode.SUCCESS


@dataclass
class InitOptions:
    """Advanced initialization options for a handle."""
    max_batch_size: int = 8
    dtype: str = "float32"
    device_memory_budget_mb: Optional[float] = None
    max_cache_entries: int = 1024
    cache_memory_fraction: float = 0.5
    worker_threads: Optional[int] = None
    enable_generation_cache: bool = True

    def validate(self) -> None:
        """
        Raises:
            ValueError: If any option is out of range
        """
        if self.max_batch_size < 1:
            raise ValueError(f"max_batch_size must be >= 1, got {self.max_batch_size}")
        if self.dtype not in SUPPORTED_DTYPES:
            raise ValueError(f"dtype must be one of {SUPPORTED_DTYPES}, got {self.dtype!r}")
        if self.device_memory_budget_mb is not None and self.device_memory_budget_mb <= 0:
            raise ValueError(
                f"device_memory_budget_mb must be positive, got {self.device_memory_budget_mb}"
            )
        if self.max_cache_entries < 1:
            raise ValueError(f"max_cache_entries must be >= 1, got {self.max_cache_entries}")
        if not 0.0 < self.cache_memory_fraction <= 1.0:
            raise ValueError(
                f"cache_memory_fraction must be in (0, 1], got {self.cache_memory_fraction}"
            )
        if self.worker_threads is not None and self.worker_threads < 1:
            raise ValueError(f"worker_threads must be >= 1, got {self.worker_threads}")


@dataclass
class RequestParams:
    """Generation parameters for one completion request."""
    max_new_items: int = 10
    temperature: float = 0.0
    top_k: int = 0
    top_p: float = 1.0
    n: int = 1
    seed: Optional[int] = None
    session_id: Optional[str] = None
    candidate_items: Optional[Sequence[int]] = None
    exclude_seen: bool = True

    def validate(self) -> None:
        if self.max_new_items < 1:
            raise ValueError(f"max_new_items must be >= 1, got {self.max_new_items}")
        if self.temperature < 0:
            raise ValueError(f"temperature must be >= 0, got {self.temperature}")
        if self.top_k < 0:
            raise ValueError(f"top_k must be >= 0, got {self.top_k}")
        if not 0.0 < self.top_p <= 1.0:
            raise ValueError(f"top_p must be in (0, 1], got {self.top_p}")
        if self.n < 1:
            raise ValueError(f"n must be >= 1, got {self.n}")
        if self.session_id is not None and not str(self.session_id):
            raise ValueError("session_id must be non-empty when set")


def default_init_options() -> InitOptions:
    """Return a fresh InitOptions holding the default set."""
    return InitOptions()


def default_request_params() -> RequestParams:
    """Return a fresh RequestParams holding the default set."""
    return RequestParams()


def copy_defaults_into(target: Any, defaults: Any) -> None:
    """Overwrite every field of `target` with the value from `defaults`."""
    for f in fields(defaults):
        setattr(target, f.name, getattr(defaults, f.name))


@dataclass
class Request:
    """One chat-completion request as it reaches the executor."""
    model_id: str
    messages: Optional[Sequence[Any]]
    messages_count: int
    timeout_ms: int = 0
    params: RequestParams = field(default_factory=RequestParams)
