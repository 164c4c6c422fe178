import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from mcpeek.protocol.codec import Envelope, RequestId
from mcpeek.protocol.errors import Cancelled
from mcpeek.protocol.initialization import INITIALIZE
from mcpeek.protocol.tools import LIST_TOOLS

logger = logging.getLogger(__name__)


@dataclass
class PendingCall:
    """A request sent to the server that is still waiting for its response."""

    id: RequestId
    method: str
    future: asyncio.Future[Envelope]
    issued_at: float = field(default_factory=time.monotonic)
    result_type: type | None = None


class RequestTracker:
    """Owns the in-flight requests of one session."""

    def __init__(self):
        self._pending: dict[RequestId, PendingCall] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._pending

    def track(
        self, request_id: RequestId, method: str, result_type: type | None = None
    ) -> PendingCall:
        """Track a new request and return its pending call.

        Raises:
            ValueError: If a call with the same id is still pending
        """
        if request_id in self._pending:
            raise ValueError(f"Request id {request_id!r} is already in flight")

        future: asyncio.Future[Envelope] = asyncio.get_running_loop().create_future()
        call = PendingCall(
            id=request_id, method=method, future=future, result_type=result_type
        )
        self._pending[request_id] = call
        return call

    def get(self, request_id: RequestId) -> PendingCall | None:
        return self._pending.get(request_id)

    def untrack(self, request_id: RequestId) -> PendingCall | None:
        """Stop tracking a request without completing it."""
        return self._pending.pop(request_id, None)

    def resolve(self, request_id: RequestId, envelope: Envelope) -> bool:
        """Complete a pending call with its response envelope.

        Returns:
            True if a pending call was completed, False if the id is unknown
        """
        call = self._pending.pop(request_id, None)
        if call is None:
            return False
        if not call.future.done():
            call.future.set_result(envelope)
        return True

    def reject(self, request_id: RequestId, error: BaseException) -> bool:
        """Fail a pending call with ``error``."""
        call = self._pending.pop(request_id, None)
        if call is None:
            return False
        if not call.future.done():
            call.future.set_exception(error)
        return True

    def find_flow_call(self, envelope: Envelope) -> PendingCall | None:
        """Find the handshake call an unmatched response belongs to.

        Some servers echo a different id on the handshake replies. A response
        is attributed to the in-flight ``initialize`` when its result carries
        ``capabilities``, and to the in-flight ``tools/list`` when its result
        carries a ``tools`` list.
        """
        result = envelope.result
        if not isinstance(result, dict):
            return None

        for call in self._pending.values():
            if call.method == INITIALIZE and "capabilities" in result:
                return call
            if call.method == LIST_TOOLS and isinstance(result.get("tools"), list):
                return call
        return None

    def fail_all(self, reason: str = "Session closed") -> int:
        """Fail every pending call with ``Cancelled``.

        Returns:
            Number of calls that were failed
        """
        count = 0
        for call in self._pending.values():
            if not call.future.done():
                call.future.set_exception(
                    Cancelled(f"{reason}: request {call.id!r} ({call.method})")
                )
                count += 1
        self._pending.clear()

        if count:
            logger.debug(f"Cancelled {count} pending requests")
        return count

    def pending_ids(self) -> list[Any]:
        return list(self._pending.keys())
