"""Execution-trace recorder and hot-spot profile.

The recorder is fed from the interpreter's dispatch loop through a small
bounded queue and drained by a background thread. When the queue is full
the interpreter blocks until the thread catches up. ``close()`` stops the
thread and writes the JSON artifact exactly once::

    {"program": [{"kind": "PUSH", "operand": 72}, ...],
     "executions": [{"kind": "PUSH", "operand": 72}, ...]}
"""

from __future__ import annotations
import json
import queue
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
from numpy.typing import NDArray

from hooks import StepContext
from lexer import WSError
from parser import Instruction, Program


DEFAULT_TRACE_PATH = "./wslang-analysis.json"
CHANNEL_CAPACITY = 10

_STOP = object()


class AnalysisError(WSError):
    pass


@dataclass(frozen=True)
class Profile:
    program: Program
    pc_counts: NDArray[np.int64]
    kind_counts: Dict[str, int]

    @property
    def total(self) -> int:
        return int(self.pc_counts.sum())

    def hottest(self, limit: int = 10) -> List[Tuple[int, int]]:
        order = np.argsort(-self.pc_counts, kind="stable")[:limit]
        return [(int(pc), int(self.pc_counts[pc])) for pc in order if self.pc_counts[pc] > 0]

    def format_text(self, limit: int = 10) -> str:
        lines = [f"Executed {self.total} instructions"]
        for kind, count in sorted(self.kind_counts.items(), key=lambda kv: (-kv[1], kv[0])):
            lines.append(f"  {kind:<6} {count}")
        hot = self.hottest(limit)
        if hot:
            lines.append("Hottest instructions:")
            for pc, count in hot:
                lines.append(f"  #{pc:<5} {str(self.program.instructions[pc]):<16} {count}")
        return "\n".join(lines)


class TraceRecorder:
    def __init__(
        self,
        program: Program,
        path: Optional[str] = DEFAULT_TRACE_PATH,
        *,
        capacity: int = CHANNEL_CAPACITY,
    ) -> None:
        self.program = program
        self.path = path
        self._channel: "queue.Queue[Any]" = queue.Queue(maxsize=capacity)
        self._pcs: List[int] = []
        self._closed = False
        self._write_error: Optional[OSError] = None
        self.flush_count = 0
        self._worker = threading.Thread(target=self._watch, name="wslang-trace", daemon=True)
        self._worker.start()

    def instruction_executed(self, ctx: StepContext) -> None:
        if self._closed:
            raise AnalysisError("Trace recorder is already closed")
        # Blocks while the channel is full.
        self._channel.put(ctx.pc)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._channel.put(_STOP)
        self._worker.join()
        if self._write_error is not None:
            raise AnalysisError(f"Failed to write trace to {self.path}: {self._write_error}") from self._write_error

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def executions(self) -> List[Instruction]:
        if not self._closed:
            raise AnalysisError("Trace is incomplete until the recorder is closed")
        instructions = self.program.instructions
        return [instructions[pc] for pc in self._pcs]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "program": self.program.to_list(),
            "executions": [ins.to_dict() for ins in self.executions],
        }

    def profile(self) -> Profile:
        if not self._closed:
            raise AnalysisError("Trace is incomplete until the recorder is closed")
        pcs = np.fromiter(self._pcs, dtype=np.int64, count=len(self._pcs))
        pc_counts = np.bincount(pcs, minlength=len(self.program)).astype(np.int64)
        kinds = np.array([ins.kind for ins in self.program.instructions], dtype=object)
        kind_counts: Dict[str, int] = {}
        for kind in set(kinds.tolist()):
            count = int(pc_counts[kinds == kind].sum())
            if count:
                kind_counts[kind] = count
        return Profile(program=self.program, pc_counts=pc_counts, kind_counts=kind_counts)

    def _watch(self) -> None:
        channel = self._channel
        pcs_append = self._pcs.append
        while True:
            item = channel.get()
            if item is _STOP:
                break
            pcs_append(item)
        if self.path is None:
            return
        try:
            self._flush()
        except OSError as exc:
            self._write_error = exc

    def _flush(self) -> None:
        data = self.to_dict()
        with open(self.path, "w", encoding="utf-8") as handle:
            json.dump(data, handle)
            handle.write("\n")
        self.flush_count += 1
