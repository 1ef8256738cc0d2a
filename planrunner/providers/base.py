"""Base capability provider — the executor's only way to touch the outside world."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable

from planrunner.models import ExecutionContext, UndoEntry

logger = logging.getLogger(__name__)


class CapabilityProvider(ABC):
    """Carries out tool invocations on behalf of the executor.

    ``invoke`` may be a plain or an async method. Plain methods are run on a
    worker thread by the executor; async ones must not block the loop.
    Failures are signalled by raising. ``supports`` is consulted before every
    invocation.
    """

    @abstractmethod
    def invoke(self, tool: str, args: dict[str, Any], context: ExecutionContext) -> Any | Awaitable[Any]:
        """Run one tool with fully interpolated args and return its result."""

    def supports(self, tool: str) -> bool:
        return True

    def undo(self, entry: UndoEntry) -> bool | Awaitable[bool]:
        """Reverse a journalled mutation. Returns False when not supported."""
        logger.debug(f"{type(self).__name__} cannot undo {entry.operation}")
        return False
