"""
ResponseBuilder: assembles Response payloads and tracks their ownership.

Responses are deep copies of the executor's results, so nothing in them
aliases runtime buffers. The builder keeps every live response in a
registry until free_response() releases it; releasing twice, or
releasing None, is a no-op.
"""

import copy
import logging
import threading
from typing import Dict, List, Optional

from genrec.errors import StatusCode
from genrec.types import ChatMessage, Choice, Response

logger = logging.getLogger(__name__)


class ResponseBuilder:

    def __init__(self):
        self._live: Dict[str, Response] = {}
        self._lock = threading.Lock()
        self.stats = {
            "built": 0,
            "released": 0,
            "allocation_failures": 0,
        }

    def build(
        self,
        status: StatusCode,
        choices: Optional[List[Choice]] = None,
        model_id: str = "",
        error: Optional[str] = None,
    ) -> Optional[Response]:
        """
        Construct a tracked Response.

        Returns:
            The response, or None if memory ran out while building it
        """
        try:
            response = Response(
                status=status,
                choices=copy.deepcopy(choices) if choices else [],
                model_id=str(model_id or ""),
                error=error,
            )
            with self._lock:
                self._live[response.request_id] = response
                self.stats["built"] += 1
        except MemoryError:
            with self._lock:
                self.stats["allocation_failures"] += 1
            logger.error("Allocation failure while building response")
            return None
        return response

    def success(self, model_id: str, ranked: List, render) -> Optional[Response]:
        """Build a kSuccess response from ranked choices rendered with `render`."""
        choices = [
            Choice(
                index=index,
                message=ChatMessage(role="assistant", content=render(choice.items)),
                items=list(choice.items),
                scores=list(choice.scores),
            )
            for index, choice in enumerate(ranked)
        ]
        return self.build(StatusCode.SUCCESS, choices, model_id=model_id)

    def failure(self, status: StatusCode, error: str, model_id: str = "") -> Optional[Response]:
        return self.build(status, None, model_id=model_id, error=error)

    def release(self, response: Optional[Response]) -> None:
        """Release a response and every nested payload. Idempotent; None is a no-op."""
        if response is None:
            return
        with self._lock:
            if response.released:
                return
            owned = self._live.pop(response.request_id, None)
            response.released = True
            response.choices = []
            if owned is not None:
                self.stats["released"] += 1

    @property
    def live_count(self) -> int:
        with self._lock:
            return len(self._live)

    def get_stats(self) -> Dict:
        with self._lock:
            return {**self.stats, "live": len(self._live)}


_global_response_builder: Optional[ResponseBuilder] = None
_builder_lock = threading.Lock()


def get_response_builder() -> ResponseBuilder:
    """Get or create the process-wide response builder."""
    global _global_response_builder
    if _global_response_builder is None:
        with _builder_lock:
            if _global_response_builder is None:
                _global_response_builder = ResponseBuilder()
    return _global_response_builder
