"""Correlation-token table for commands sent over a shared socket."""

import asyncio
import itertools
import logging
import time
from typing import Any

from trirelay.exceptions import RequestTimeoutError

logger = logging.getLogger(__name__)


class PendingRequests:
    """Maps correlation tokens to futures awaiting a response frame.

    Several tokens may be outstanding at once and each resolves
    independently. Every entry is removed when it resolves, either with the
    response or with the fallback registered alongside it, so the table never
    grows past the number of in-flight commands.
    """

    def __init__(self) -> None:
        self._pending: dict[str, tuple[asyncio.Future, Any]] = {}
        self._counter = itertools.count(1)

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, token: str) -> bool:
        return token in self._pending

    def new_token(self, prefix: str = "req") -> str:
        """Generate a token unique within this process.

        Args:
            prefix: Human-readable prefix (typically the action name)

        Returns:
            Token of the form ``<prefix>_<monotonic ns>_<counter>``
        """
        return f"{prefix}_{time.monotonic_ns()}_{next(self._counter)}"

    def register(self, token: str, fallback: Any = None) -> asyncio.Future:
        """Register a pending request.

        Args:
            token: Correlation token carried by the outbound command
            fallback: Value the request resolves to if no response arrives

        Returns:
            Future resolved with the response

        Raises:
            ValueError: If the token is already pending
        """
        if token in self._pending:
            raise ValueError(f"Request {token} already pending")

        future = asyncio.get_running_loop().create_future()
        self._pending[token] = (future, fallback)
        return future

    def resolve(self, token: str, value: Any) -> bool:
        """Resolve the request for a token and remove it.

        Args:
            token: Correlation token from a response frame
            value: Response to hand to the waiter

        Returns:
            True if a pending request matched the token
        """
        entry = self._pending.pop(token, None)
        if entry is None:
            return False

        future, _ = entry
        if not future.done():
            future.set_result(value)
        return True

    async def wait(self, token: str, timeout: float) -> Any:
        """Wait for the response to a registered request.

        Args:
            token: Correlation token passed to ``register``
            timeout: Maximum seconds to wait

        Returns:
            The response, or the registered fallback on timeout

        Raises:
            KeyError: If the token was never registered
        """
        entry = self._pending.get(token)
        if entry is None:
            raise KeyError(token)

        future, fallback = entry
        try:
            # shield so a timeout does not cancel a future another caller may hold
            return await asyncio.wait_for(asyncio.shield(future), timeout=timeout)
        except asyncio.TimeoutError:
            error = RequestTimeoutError(
                f"No response for {token} within {timeout}s", token=token, timeout=timeout
            )
            logger.warning(f"{error}; using fallback")
            self._pending.pop(token, None)
            if not future.done():
                future.set_result(fallback)
            return fallback

    def resolve_all(self, reason: str = "connection closed") -> int:
        """Resolve every pending request with its fallback.

        Args:
            reason: Why the requests are being abandoned (logged)

        Returns:
            Number of requests resolved
        """
        pending = self._pending
        self._pending = {}
        for future, fallback in pending.values():
            if not future.done():
                future.set_result(fallback)

        if pending:
            logger.info(f"Resolved {len(pending)} pending requests with fallback: {reason}")
        return len(pending)
