from __future__ import annotations

import inspect
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

import logging

from call_engine.logging.flight_recorder import FlightRecorder
from call_engine.models.realtime import ToolCallRequest, ToolOutcome

logger = logging.getLogger(__name__)

ToolHandler = Callable[[Dict[str, Any]], Union[Any, Awaitable[Any]]]


class ToolDispatcher:
    """Registry of business functions the voice model may call.

    Handlers take the decoded argument dict and may be sync or async. A
    handler failure never propagates: it comes back as an ``error`` outcome
    so the model can be told what went wrong.
    """

    def __init__(self, recorder: Optional[FlightRecorder] = None) -> None:
        self.recorder = recorder
        self.registry: Dict[str, ToolHandler] = {}
        self._tool_schemas: Dict[str, Dict[str, Any]] = {}

    def register(
        self,
        name: str,
        handler: ToolHandler,
        description: str = "",
        parameters: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.registry[name] = self._wrap(name, handler)
        self._tool_schemas[name] = {
            "name": name,
            "type": "function",
            "function": {
                "name": name,
                "description": description,
                "parameters": parameters or {"type": "object", "properties": {}},
            },
        }

    def _wrap(self, name: str, func: ToolHandler) -> Callable[[Dict[str, Any]], Awaitable[Any]]:
        async def wrapped(args: Dict[str, Any]) -> Any:
            logger.info("tool.call name=%s", name)
            result = func(args)
            if inspect.isawaitable(result):
                result = await result
            return result

        return wrapped

    def has_tool(self, name: str) -> bool:
        return name in self.registry

    def get_tool_schemas(self, enabled: Optional[Iterable[str]] = None) -> List[Dict[str, Any]]:
        if enabled is None:
            return list(self._tool_schemas.values())
        wanted = set(enabled)
        return [schema for name, schema in self._tool_schemas.items() if name in wanted]

    async def dispatch(self, tool_name: str, arguments: Dict[str, Any]) -> Any:
        if tool_name not in self.registry:
            raise ValueError(f"Unknown tool: {tool_name}")
        return await self.registry[tool_name](arguments)

    async def execute(self, request: ToolCallRequest) -> ToolOutcome:
        started = time.perf_counter()
        try:
            result = await self.dispatch(request.name, request.arguments)
        except Exception as exc:  # noqa: BLE001
            elapsed_ms = (time.perf_counter() - started) * 1000
            logger.exception("tool.error name=%s call_id=%s", request.name, request.call_id)
            if self.recorder:
                self.recorder.log("TOOL", "failed", level=logging.WARNING, name=request.name, error=str(exc))
            return ToolOutcome(result=None, status="error", execution_time_ms=elapsed_ms, error=str(exc))
        elapsed_ms = (time.perf_counter() - started) * 1000
        if self.recorder:
            self.recorder.log("TOOL", "executed", name=request.name, execution_time_ms=round(elapsed_ms, 2))
        return ToolOutcome(result=result, status="success", execution_time_ms=elapsed_ms)
