"""
genrec: inference handle runtime for generative-recommendation models.

Conversational requests go in, ranked item recommendations come out; each
handle owns its device contexts, model binding and generation cache.
"""

from .api import (
    achat_completions,
    chat_completions,
    create,
    destroy,
    free_response,
    init_options_default,
    initialize,
    request_params_default,
)
from .errors import GenRecError, StatusCode
from .runtime.lifecycle import Handle, HandleState
from .types import ChatMessage, Choice, InitOptions, RequestParams, Response

__version__ = "0.1.0"

__all__ = [
    "ChatMessage",
    "Choice",
    "GenRecError",
    "Handle",
    "HandleState",
    "InitOptions",
    "RequestParams",
    "Response",
    "StatusCode",
    "achat_completions",
    "chat_completions",
    "create",
    "destroy",
    "free_response",
    "init_options_default",
    "initialize",
    "request_params_default",
]
