"""Tool registry: known tool names and their argument validators."""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError

from planrunner.models import ToolDef

logger = logging.getLogger(__name__)


class ToolRegistry:
    """Registry of tool definitions, keyed by fully-qualified name."""

    def __init__(self):
        self._tools: dict[str, ToolDef] = {}

    def register(self, tool_def: ToolDef):
        if tool_def.name in self._tools:
            logger.debug(f"Replacing tool definition '{tool_def.name}'")
        self._tools[tool_def.name] = tool_def

    def get_def(self, name: str) -> ToolDef | None:
        return self._tools.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def get_all(self, category: str | None = None) -> list[ToolDef]:
        return [t for t in self._tools.values() if category is None or t.category == category]

    def names(self) -> list[str]:
        return list(self._tools.keys())

    def validate_args(self, name: str, args: dict[str, Any]) -> list[tuple[str, str]]:
        """Check args against the tool's model.

        Returns ``(field_path, message)`` pairs; empty when valid or when the
        tool is unknown (unknown tools are reported separately).
        """
        tool_def = self._tools.get(name)
        if tool_def is None:
            return []
        try:
            tool_def.args_model.model_validate(args)
        except ValidationError as e:
            return [(".".join(str(p) for p in err["loc"]), err["msg"]) for err in e.errors()]
        return []


def create_default_registry() -> ToolRegistry:
    """Registry preloaded with every built-in tool."""
    from planrunner.tools.definitions import ALL_TOOLS

    registry = ToolRegistry()
    for tool_def in ALL_TOOLS:
        registry.register(tool_def)
    return registry
