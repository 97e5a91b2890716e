"""
Pluggable compute backends.

- torch_ranking: embedding lookup + decayed attention state + ranking head (default)
"""

from .torch_ranking import TorchRankingBackend, select_items

__all__ = [
    "TorchRankingBackend",
    "select_items",
]
