"""
Torch ranking backend: the default compute behind a completion request.

Model:
    h_t   = decay * h_{t-1} + (1 - decay) * E[item_t]      (attention state)
    q     = W h + b                                        (ranking head)
    score = E[candidates] @ q

Messages are mapped onto the item vocabulary by MessageEncoder: integers
that are valid item ids are taken as items; other words in user messages
are hashed into the vocabulary. Assistant messages contribute only their
item ids (they echo earlier recommendations); system messages contribute
nothing.
"""

import hashlib
import logging
import re
import threading
from typing import Any, List, Optional, Sequence

import torch

from genrec.errors import RequestTimeoutError
from genrec.interfaces import RankingBackend

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"[A-Za-z0-9_]+")


class MessageEncoder:
    """Maps chat message text onto item ids of a vocabulary of `num_items`."""

    def __init__(self, num_items: int):
        self.num_items = num_items

    def hash_token(self, token: str) -> int:
        digest = hashlib.blake2b(token.lower().encode("utf-8"), digest_size=8).digest()
        return int.from_bytes(digest, "big") % self.num_items

    def encode_message(self, role: str, content: str) -> List[int]:
        if role == "system":
            return []
        items = []
        for token in _TOKEN_RE.findall(content):
            if token.isdigit() and int(token) < self.num_items:
                items.append(int(token))
            elif role == "user":
                items.append(self.hash_token(token))
        return items


class TorchRankingBackend(RankingBackend):
    """
    Default ranking backend running on the binding's primary device.

    Args:
        chunk_size: Items folded into the state between cancellation checks
    """

    def __init__(self, chunk_size: int = 64):
        self.chunk_size = max(1, chunk_size)
        self.stats = {
            "items_encoded": 0,
            "items_scored": 0,
        }
        self._stats_lock = threading.Lock()

    def _count(self, name: str, amount: int) -> None:
        with self._stats_lock:
            self.stats[name] += amount

    def get_stats(self) -> dict:
        with self._stats_lock:
            return dict(self.stats)

    def _check(self, cancel: threading.Event) -> None:
        if cancel.is_set():
            raise RequestTimeoutError(0)

    def prepare(self, binding: Any) -> None:
        weights = binding.primary
        logger.debug(
            f"TorchRankingBackend prepared for {binding.model_id} on {weights.item_embedding.device}"
        )

    def encode(self, binding: Any, messages: Sequence[Any]) -> List[int]:
        encoder = MessageEncoder(binding.num_items)
        items: List[int] = []
        for message in messages:
            items.extend(encoder.encode_message(message.role, message.content))
        self._count("items_encoded", len(items))
        return items

    def advance(
        self,
        binding: Any,
        attention_state: Optional[torch.Tensor],
        item_ids: Sequence[int],
        cancel: threading.Event,
    ) -> torch.Tensor:
        weights = binding.primary
        device = weights.item_embedding.device
        decay = float(binding.config.attention_decay)

        if attention_state is None:
            state = torch.zeros(binding.hidden_size, dtype=torch.float32, device=device)
        else:
            state = attention_state.to(device=device, dtype=torch.float32).clone()

        with torch.no_grad():
            for start in range(0, len(item_ids), self.chunk_size):
                self._check(cancel)
                chunk = torch.as_tensor(
                    list(item_ids[start:start + self.chunk_size]), dtype=torch.long, device=device
                )
                embedded = weights.item_embedding.index_select(0, chunk).float()
                length = embedded.shape[0]
                # Closed form of `length` recurrence steps
                exponents = torch.arange(length - 1, -1, -1, device=device, dtype=torch.float32)
                coeffs = (1.0 - decay) * torch.pow(torch.tensor(decay, device=device), exponents)
                state = (decay ** length) * state + (coeffs.unsqueeze(1) * embedded).sum(dim=0)

        self._check(cancel)
        return state

    def score(
        self,
        binding: Any,
        attention_state: Optional[torch.Tensor],
        candidates: Sequence[int],
        cancel: threading.Event,
    ) -> torch.Tensor:
        self._check(cancel)
        weights = binding.primary
        device = weights.item_embedding.device
        if attention_state is None:
            state = torch.zeros(binding.hidden_size, dtype=torch.float32, device=device)
        else:
            state = attention_state.to(device=device, dtype=torch.float32)

        with torch.no_grad():
            query = weights.ranking_head.float() @ state
            if weights.ranking_bias is not None:
                query = query + weights.ranking_bias.float()
            index = torch.as_tensor(list(candidates), dtype=torch.long, device=device)
            scores = weights.item_embedding.index_select(0, index).float() @ query

        self._check(cancel)
        self._count("items_scored", len(candidates))
        return scores


def select_items(
    scores: torch.Tensor,
    candidates: Sequence[int],
    k: int,
    temperature: float = 0.0,
    top_k: int = 0,
    top_p: float = 1.0,
    generator: Optional[torch.Generator] = None,
) -> List[tuple]:
    """
    Pick up to `k` items from scored candidates.

    temperature == 0 returns the k best in score order (ties broken by the
    lower item id). Otherwise items are sampled without replacement from
    softmax(scores / temperature), optionally restricted to the top_k best
    and to the top_p probability nucleus.

    Returns:
        [(item_id, score), ...] in recommendation order
    """
    if len(candidates) == 0:
        return []
    scores = scores.detach().to("cpu", torch.float32)
    ids = torch.as_tensor(list(candidates), dtype=torch.long)

    # Stable ordering: by score desc, then id asc
    by_id = torch.argsort(ids)
    ids, scores = ids[by_id], scores[by_id]
    order = torch.argsort(scores, descending=True, stable=True)
    ids, scores = ids[order], scores[order]

    if temperature <= 0.0:
        n = min(k, len(ids))
        return [(int(i), float(s)) for i, s in zip(ids[:n], scores[:n])]

    if top_k > 0:
        ids, scores = ids[:top_k], scores[:top_k]
    probs = torch.softmax(scores / temperature, dim=0)
    if top_p < 1.0:
        cumulative = torch.cumsum(probs, dim=0)
        keep = int((cumulative < top_p).sum().item()) + 1
        ids, scores, probs = ids[:keep], scores[:keep], probs[:keep]

    n = min(k, len(ids))
    picked = torch.multinomial(probs, n, replacement=False, generator=generator)
    return [(int(ids[i]), float(scores[i])) for i in picked]
