"""Argument interpolation — substitutes $steps / $vars references into step args."""

from __future__ import annotations

import re
from typing import Any, Mapping, Sequence

from planrunner.errors import InterpolationError
from planrunner.models import ExecutionContext

_WHOLE_REF = re.compile(r"^\$(steps|vars)\.([^\s{}$]+)$")
_EMBEDDED_REF = re.compile(r"\$\{(steps|vars)\.([^}\s]+)\}")

_MISSING = object()


class Interpolator:
    """Resolves references in an argument tree against an ExecutionContext.

    ``$steps.<id>.<path>`` and ``$vars.<name>.<path>`` as a whole string are
    replaced by the referenced value with its type intact. The braced forms
    ``${steps...}`` / ``${vars...}`` may sit inside longer text and are
    substituted as strings.
    """

    def interpolate(self, args: Any, context: ExecutionContext) -> Any:
        if isinstance(args, str):
            return self._interpolate_string(args, context)
        if isinstance(args, Mapping):
            return {key: self.interpolate(value, context) for key, value in args.items()}
        if isinstance(args, list):
            return [self.interpolate(value, context) for value in args]
        return args

    def resolve(self, reference: str, context: ExecutionContext) -> Any:
        """Resolve a single ``$steps.x.y`` / ``$vars.x`` / ``steps.x.y`` reference."""
        ref = reference.lstrip("$")
        root, _, rest = ref.partition(".")
        if root not in ("steps", "vars") or not rest:
            raise InterpolationError(f"Malformed reference: {reference}", reference=reference)

        head, *path = rest.split(".")
        source = context.step_results if root == "steps" else context.variables
        if head not in source:
            kind = "step" if root == "steps" else "variable"
            raise InterpolationError(f"Unresolved reference {reference}: unknown {kind} '{head}'", reference=reference)

        value = source[head]
        for i, segment in enumerate(path):
            value = _step_into(value, segment)
            if value is _MISSING:
                walked = ".".join([root, head, *path[: i + 1]])
                raise InterpolationError(
                    f"Unresolved reference {reference}: no value at '{walked}'", reference=reference
                )
        return value

    def _interpolate_string(self, value: str, context: ExecutionContext) -> Any:
        whole = _WHOLE_REF.match(value)
        if whole:
            return self.resolve(value, context)
        if "${" not in value:
            return value
        return _EMBEDDED_REF.sub(lambda m: _to_text(self.resolve(f"{m.group(1)}.{m.group(2)}", context)), value)


def _step_into(value: Any, segment: str) -> Any:
    if isinstance(value, Mapping):
        return value.get(segment, _MISSING)
    if isinstance(value, Sequence) and not isinstance(value, str):
        if segment.isdigit() and int(segment) < len(value):
            return value[int(segment)]
        return _MISSING
    return _MISSING


def _to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)
