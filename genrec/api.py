"""
Boundary surface of the genrec runtime.

Module-level functions mirroring the handle ABI:

    h = create()
    opts = InitOptions(); init_options_default(opts)
    if initialize(h, "/models/rec", "cuda:0,1", opts):
        r = chat_completions(h, "rec", messages, len(messages), 500, None)
        ...
        free_response(r)
    destroy(h)

This is the only layer that converts runtime exceptions into booleans,
Response.status values or None. None is accepted wherever the ABI accepts
a null pointer.
"""

import asyncio
import logging
from typing import Optional, Sequence

from genrec.errors import StatusCode, status_for_exception
from genrec.interfaces import DeviceProbe, RankingBackend
from genrec.runtime.lifecycle import Handle
from genrec.runtime.response_builder import get_response_builder
from genrec.types import (
    ChatMessage,
    InitOptions,
    RequestParams,
    Response,
    copy_defaults_into,
    default_init_options,
    default_request_params,
)

logger = logging.getLogger(__name__)


def create(
    device_probe: Optional[DeviceProbe] = None,
    backend: Optional[RankingBackend] = None,
) -> Optional[Handle]:
    """
    Create a handle in the CREATED state.

    Returns:
        The handle, or None on allocation failure or unusable process
        configuration
    """
    try:
        return Handle(device_probe=device_probe, backend=backend)
    except MemoryError:
        logger.error("Allocation failure while creating handle")
        return None
    except Exception as e:
        logger.error(f"Failed to create handle: {e}")
        return None


def destroy(handle: Optional[Handle]) -> None:
    """Destroy a handle. Idempotent; None is a no-op."""
    if handle is None:
        return
    handle.destroy()


def init_options_default(options: Optional[InitOptions]) -> None:
    """Reset `options` to the default InitOptions set. No-op on None."""
    if options is None:
        return
    copy_defaults_into(options, default_init_options())


def request_params_default(params: Optional[RequestParams]) -> None:
    """Reset `params` to the default RequestParams set. No-op on None."""
    if params is None:
        return
    copy_defaults_into(params, default_request_params())


def initialize(
    handle: Optional[Handle],
    model_path: str,
    devices: str,
    options: Optional[InitOptions] = None,
) -> bool:
    """
    Bind a model and devices to a handle.

    Args:
        handle: Handle from create()
        model_path: Model directory or weight file
        devices: Device string ("cuda:0,1", "npu:3" or "auto")
        options: Advanced options; None uses the defaults

    Returns:
        True if the handle is now ready. On False the handle is FAILED and
        handle.last_status / handle.last_error describe the cause.
    """
    if handle is None:
        logger.warning("initialize called with no handle")
        return False
    try:
        return handle.initialize(model_path, devices, options)
    except Exception as e:
        # Handle.initialize records its own failures; this only guards the boundary
        logger.error(f"initialize failed at the boundary ({status_for_exception(e).value}): {e}", exc_info=e)
        return False


def chat_completions(
    handle: Optional[Handle],
    model_id: str,
    messages: Optional[Sequence[ChatMessage]],
    messages_count: int,
    timeout_ms: int = 0,
    params: Optional[RequestParams] = None,
) -> Optional[Response]:
    """
    Run one chat-completion request.

    Args:
        handle: Ready handle
        model_id: Id of the loaded model
        messages: Conversation so far (may be None when messages_count is 0)
        messages_count: Number of entries of `messages` to use
        timeout_ms: Wall-clock deadline in milliseconds (0 = none)
        params: Generation parameters; None uses the defaults

    Returns:
        A Response whose status encodes every outcome, or None only when the
        response could not be allocated. Release it with free_response().
    """
    responses = get_response_builder()
    try:
        if handle is None:
            return responses.failure(StatusCode.NOT_INITIALIZED, "no handle", model_id=model_id)
        return handle.chat_completions(model_id, messages, messages_count, timeout_ms, params)
    except MemoryError:
        logger.error("Allocation failure during chat_completions")
        return None
    except Exception as e:
        status = status_for_exception(e)
        logger.error(f"chat_completions failed at the boundary ({status.value}): {e}", exc_info=e)
        return responses.failure(status, str(e), model_id=model_id)


async def achat_completions(
    handle: Optional[Handle],
    model_id: str,
    messages: Optional[Sequence[ChatMessage]],
    messages_count: int,
    timeout_ms: int = 0,
    params: Optional[RequestParams] = None,
) -> Optional[Response]:
    """Awaitable chat_completions: runs the blocking call in a worker thread."""
    return await asyncio.to_thread(
        chat_completions, handle, model_id, messages, messages_count, timeout_ms, params
    )


def free_response(response: Optional[Response]) -> None:
    """Release a response and everything it owns. Idempotent; None is a no-op."""
    get_response_builder().release(response)
