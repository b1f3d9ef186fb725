"""
Client Tool Registry
====================

Tools the conversation engine can call back into during a session. Each
session connection dispatches ``tool-call-request`` frames here by name and
returns the normalised result tagged with the original call id.

Executors may be sync or async and take either ``(args)`` or
``(args, context)``. A single parameter annotated with a pydantic model
receives the validated model instead of the raw dict.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, TypeAlias

from pydantic import BaseModel, ValidationError
from utils.ml_logging import get_logger

logger = get_logger(__name__)

ToolExecutor: TypeAlias = Callable[..., Any]


@dataclass(frozen=True)
class ToolContext:
    """Session the tool call belongs to."""

    session_id: str
    organization_id: str
    lead_id: str | None = None


@dataclass
class ToolDefinition:
    name: str
    executor: ToolExecutor
    description: str = ""
    schema: dict[str, Any] = field(default_factory=dict)


def _signature(fn: ToolExecutor) -> inspect.Signature:
    # Executors defined under ``from __future__ import annotations`` carry string hints
    try:
        return inspect.signature(fn, eval_str=True)
    except (NameError, TypeError):
        return inspect.signature(fn)


def _prepare_args(
    fn: ToolExecutor, raw_args: dict[str, Any], context: ToolContext
) -> list[Any]:
    """Coerce dict arguments into the executor's declared signature."""
    params = list(_signature(fn).parameters.values())
    if not params:
        return []

    first = params[0].annotation
    args: Any = raw_args
    if first is not inspect.Parameter.empty and inspect.isclass(first):
        if issubclass(first, BaseModel):
            args = first.model_validate(raw_args)
    if len(params) == 1:
        return [args]
    return [args, context]


class ToolRegistry:
    def __init__(self) -> None:
        self._tools: dict[str, ToolDefinition] = {}

    def register(
        self,
        name: str,
        executor: ToolExecutor,
        *,
        description: str = "",
        schema: dict[str, Any] | None = None,
        override: bool = False,
    ) -> None:
        if name in self._tools and not override:
            raise ValueError(f"Tool '{name}' is already registered")
        self._tools[name] = ToolDefinition(
            name=name, executor=executor, description=description, schema=schema or {}
        )
        logger.debug("Registered tool: %s", name)

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def names(self) -> list[str]:
        return sorted(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    async def execute(
        self, name: str, arguments: dict[str, Any], context: ToolContext
    ) -> dict[str, Any]:
        """Run tool ``name``; failures come back as ``{"success": False, ...}``."""
        defn = self._tools.get(name)
        if defn is None:
            logger.warning(
                "Unknown tool requested: %s", name, extra={"session_id": context.session_id}
            )
            return {
                "success": False,
                "error": f"Unknown tool: {name}",
            }

        fn = defn.executor
        try:
            positional = _prepare_args(fn, arguments, context)
            if inspect.iscoroutinefunction(fn):
                result = await fn(*positional)
            else:
                result = await asyncio.to_thread(fn, *positional)
        except ValidationError as exc:
            logger.warning("Tool '%s' received invalid arguments: %s", name, exc)
            return {"success": False, "error": f"Invalid arguments for {name}"}
        except Exception as exc:
            logger.exception("Tool '%s' execution failed", name)
            return {"success": False, "error": str(exc)}

        if isinstance(result, dict):
            return {"success": True, **result} if "success" not in result else result
        return {"success": True, "result": result}
