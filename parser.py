from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple, Union

from lexer import CHAR_NAMES, LF, SPACE, TAB, Lexer, Token, WSParseError


# Stack
PUSH = "PUSH"
DUP = "DUP"
SWAP = "SWAP"
DROP = "DROP"
# Arithmetic
ADD = "ADD"
SUB = "SUB"
MUL = "MUL"
DIV = "DIV"
MOD = "MOD"
# Heap
STORE = "STORE"
LOAD = "LOAD"
# Flow
LABEL = "LABEL"
CALL = "CALL"
JMP = "JMP"
JZ = "JZ"
JN = "JN"
RET = "RET"
EXIT = "EXIT"
# I/O
PUTC = "PUTC"
PUTN = "PUTN"
GETC = "GETC"
GETN = "GETN"


# Full prefix code -> (kind, reads a literal operand)
OPCODES: Dict[str, Tuple[str, bool]] = {
    SPACE + SPACE: (PUSH, True),
    SPACE + LF + SPACE: (DUP, False),
    SPACE + LF + TAB: (SWAP, False),
    SPACE + LF + LF: (DROP, False),
    TAB + SPACE + SPACE + SPACE: (ADD, False),
    TAB + SPACE + SPACE + TAB: (SUB, False),
    TAB + SPACE + SPACE + LF: (MUL, False),
    TAB + SPACE + TAB + SPACE: (DIV, False),
    TAB + SPACE + TAB + TAB: (MOD, False),
    TAB + TAB + SPACE: (STORE, False),
    TAB + TAB + TAB: (LOAD, False),
    LF + SPACE + SPACE: (LABEL, True),
    LF + SPACE + TAB: (CALL, True),
    LF + SPACE + LF: (JMP, True),
    LF + TAB + SPACE: (JZ, True),
    LF + TAB + TAB: (JN, True),
    LF + TAB + LF: (RET, False),
    LF + LF + LF: (EXIT, False),
    TAB + LF + SPACE + SPACE: (PUTC, False),
    TAB + LF + SPACE + TAB: (PUTN, False),
    TAB + LF + TAB + SPACE: (GETC, False),
    TAB + LF + TAB + TAB: (GETN, False),
}

KIND_CODES: Dict[str, str] = {kind: code for code, (kind, _) in OPCODES.items()}
OPERAND_KINDS: Set[str] = {kind for kind, has_operand in OPCODES.values() if has_operand}
LABEL_KINDS: Set[str] = OPERAND_KINDS - {PUSH}

# Every proper prefix of a code; used to reject a sequence as soon as it
# cannot grow into a known instruction.
_PREFIXES: Set[str] = {code[:i] for code in OPCODES for i in range(1, len(code))}


@dataclass
class SourceLocation:
    file: str
    line: int
    column: int
    offset: int


@dataclass(frozen=True)
class Instruction:
    kind: str
    operand: int = 0
    location: Optional[SourceLocation] = field(default=None, compare=False, repr=False)

    def to_dict(self) -> Dict[str, Union[str, int]]:
        return {"kind": self.kind, "operand": self.operand}

    def __str__(self) -> str:
        if self.kind in OPERAND_KINDS:
            return f"{self.kind} {self.operand}"
        return self.kind


@dataclass
class Program:
    instructions: List[Instruction]
    filename: str = "<string>"

    def __len__(self) -> int:
        return len(self.instructions)

    def to_list(self) -> List[Dict[str, Union[str, int]]]:
        return [ins.to_dict() for ins in self.instructions]

    def dump(self) -> str:
        width = len(str(max(len(self.instructions) - 1, 0)))
        return "\n".join(f"{index:>{width}}  {ins}" for index, ins in enumerate(self.instructions))


class Parser:
    def __init__(
        self,
        tokens: List[Token],
        filename: str,
        *,
        end: Optional[Token] = None,
    ):
        self.tokens = tokens
        self.filename = filename
        self.end = end
        self.index = 0

    def parse(self) -> Program:
        instructions: List[Instruction] = []
        while self.index < len(self.tokens):
            instructions.append(self._parse_instruction())
        return Program(instructions=instructions, filename=self.filename)

    def _parse_instruction(self) -> Instruction:
        start = self._peek()
        location = self._location_from_token(start)
        code = ""
        while True:
            token = self._next(start, "instruction")
            code += token.char
            if code in OPCODES:
                break
            if code not in _PREFIXES:
                raise WSParseError(
                    f"Unexpected {CHAR_NAMES[token.char]} after '{_spell(code[:-1])}' at "
                    f"{self._position(token)}"
                )
        kind, has_operand = OPCODES[code]
        operand = self._parse_literal(start) if has_operand else 0
        return Instruction(kind=kind, operand=operand, location=location)

    def _parse_literal(self, start: Token) -> int:
        """Sign character, then bits MSB first up to a terminating LF."""
        sign = self._next(start, "literal")
        if sign.char == LF:
            return 0
        negative = sign.char == TAB
        value = 0
        while True:
            token = self._next(start, "literal")
            if token.char == LF:
                break
            value = (value << 1) | (1 if token.char == TAB else 0)
        return -value if negative else value

    def _next(self, start: Token, what: str) -> Token:
        if self.index >= len(self.tokens):
            where = f" at {self._position(self.end)}" if self.end is not None else ""
            raise WSParseError(
                f"Unexpected end of input{where} in unterminated {what} started at {self._position(start)}"
            )
        token = self.tokens[self.index]
        self.index += 1
        return token

    def _peek(self) -> Token:
        return self.tokens[self.index]

    def _position(self, token: Token) -> str:
        return f"{self.filename}:{token.line}:{token.column}"

    def _location_from_token(self, token: Token) -> SourceLocation:
        return SourceLocation(file=self.filename, line=token.line, column=token.column, offset=token.offset)


def _spell(code: str) -> str:
    return " ".join(CHAR_NAMES[ch] for ch in code)


def decode(data: Union[bytes, str], filename: str = "<string>") -> Program:
    lexer = Lexer(data, filename)
    tokens = lexer.tokenize()
    parser = Parser(tokens, filename, end=lexer.end_position())
    return parser.parse()
