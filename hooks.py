from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Protocol, Tuple

from lexer import WSError


EVENTS = (
    "program_start",
    "before_instruction",
    "on_error",
    "program_end",
)


class HookError(WSError):
    pass


@dataclass(frozen=True)
class StepContext:
    step_index: int
    pc: int
    instruction: Any  # parser.Instruction


class TraceObserver(Protocol):
    """Receives every instruction the engine dispatches, then a close()."""

    def instruction_executed(self, ctx: StepContext) -> None:
        ...

    def close(self) -> None:
        ...


@dataclass
class HookRegistry:
    # event -> list[(priority, handler, owner)]
    _events: Dict[str, List[Tuple[int, Callable[..., None], str]]] = field(default_factory=dict)

    def on_event(self, event: str, handler: Callable[..., None], *, priority: int = 0, owner: str = "") -> None:
        if event not in EVENTS:
            raise HookError(f"Unknown hook event '{event}'")
        self._events.setdefault(event, []).append((priority, handler, owner))
        self._events[event].sort(key=lambda t: t[0], reverse=True)

    def emit(self, event: str, *args: Any, **kwargs: Any) -> None:
        for _priority, handler, _owner in self._events.get(event, []):
            handler(*args, **kwargs)

    def has(self, event: str) -> bool:
        return bool(self._events.get(event))
