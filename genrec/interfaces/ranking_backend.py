"""
RankingBackend: Interface for the model compute behind a request.

The runtime owns handles, caches and request lifecycles; the backend owns
the numerics. The split lets tests substitute a slow or failing backend
without touching orchestration code.

Every long-running method receives a `cancel` event. Backends check it
between steps and raise RequestTimeoutError once it is set, so a timed-out
attempt stops as soon as it can. Backends must not mutate their inputs:
the caller commits the returned values only when the attempt succeeds.
"""

import threading
from abc import ABC, abstractmethod
from typing import Any, List, Optional, Sequence

import torch


class RankingBackend(ABC):
    """Abstract interface for generative-recommendation compute."""

    def prepare(self, binding: Any) -> None:
        """Called once after a binding is loaded (warm-up, kernel caches)."""
        return None

    @abstractmethod
    def encode(self, binding: Any, messages: Sequence[Any]) -> List[int]:
        """
        Turn chat messages into item ids of the binding's vocabulary.

        Returns:
            Item ids in conversation order
        """
        pass

    @abstractmethod
    def advance(
        self,
        binding: Any,
        attention_state: Optional[torch.Tensor],
        item_ids: Sequence[int],
        cancel: threading.Event,
    ) -> torch.Tensor:
        """
        Fold new items into the attention state.

        Args:
            binding: ModelBinding the request runs against
            attention_state: Current state (None for a fresh entry)
            item_ids: Items appended by this turn
            cancel: Set when the attempt has been abandoned

        Returns:
            A new attention state tensor (the input is left untouched)
        """
        pass

    @abstractmethod
    def score(
        self,
        binding: Any,
        attention_state: Optional[torch.Tensor],
        candidates: Sequence[int],
        cancel: threading.Event,
    ) -> torch.Tensor:
        """
        Score candidate items with the ranking head.

        Returns:
            1-D float tensor aligned with `candidates`
        """
        pass
