"""Shared builders for WS-Lang tests.

Sources are written in S/T/L notation: ``S`` is a space, ``T`` a tab and
``L`` a line feed. Every other character is dropped, so spacing can be
used to group instructions for readability.
"""

import io
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from interpreter import Interpreter
from parser import Instruction, Program

_NOTATION = {"S": " ", "T": "\t", "L": "\n"}


def ws(notation):
    return "".join(_NOTATION[ch] for ch in notation if ch in _NOTATION)


def lit(value):
    """S/T/L notation for a signed literal."""
    sign = "T" if value < 0 else "S"
    bits = format(abs(value), "b") if value else ""
    return sign + bits.replace("0", "S").replace("1", "T") + "L"


def program(*items):
    instructions = []
    for item in items:
        if isinstance(item, tuple):
            instructions.append(Instruction(item[0], item[1]))
        else:
            instructions.append(Instruction(item))
    return Program(instructions=instructions, filename="<test>")


class Capture:
    def __init__(self):
        self.writes = []

    def __call__(self, data):
        self.writes.append(data)

    @property
    def data(self):
        return b"".join(self.writes)


def make_interpreter(prog, stdin=b"", **kwargs):
    source = io.BytesIO(stdin)
    sink = Capture()
    interpreter = Interpreter(prog, input_provider=lambda: source.read(1), output_sink=sink, **kwargs)
    return interpreter, sink


def run(prog, stdin=b"", **kwargs):
    interpreter, sink = make_interpreter(prog, stdin, **kwargs)
    interpreter.run()
    return sink.data, interpreter
