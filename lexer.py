from __future__ import annotations
from dataclasses import dataclass
from typing import List, Union


class WSError(Exception):
    """Base class for interpreter errors."""


class WSParseError(WSError):
    """Raised when decoding fails."""


SPACE = " "
TAB = "\t"
LF = "\n"

CHAR_NAMES = {
    SPACE: "SPACE",
    TAB: "TAB",
    LF: "LF",
}


@dataclass
class Token:
    char: str
    offset: int
    line: int
    column: int


class Lexer:
    def __init__(self, data: Union[bytes, str], filename: str) -> None:
        if isinstance(data, str):
            data = data.encode("utf-8")
        self.data = data
        self.filename = filename
        self.index = 0
        self.line = 1
        self.column = 1

    def tokenize(self) -> List[Token]:
        tokens: List[Token] = []
        tokens_append = tokens.append
        _advance = self._advance
        data = self.data
        n = len(data)

        while self.index < n:
            ch = chr(data[self.index])
            if ch in CHAR_NAMES:
                tokens_append(Token(ch, self.index, self.line, self.column))
            # Everything else is commentary.
            _advance()
        return tokens

    def end_position(self) -> Token:
        """Pseudo-token marking where the input ran out."""
        return Token("", self.index, self.line, self.column)

    def _advance(self) -> None:
        if self.data[self.index] == 0x0A:
            self.line += 1
            self.column = 1
        else:
            self.column += 1
        self.index += 1
