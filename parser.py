from __future__ import annotations
import re
from typing import Iterable, List

from lexer import MEOW_TOKENS, SEP_TOKEN, Lexer, MeowParseError, Token


_LINE_RE = re.compile(r"[^\r\n]+")
_BREAK_RE = re.compile(r"\r\n|\r|\n")
_WHITESPACE_RE = re.compile(r"\s+")
_NUMBER_RE = re.compile(r"[0-9]+")
_DIGIT_RE = re.compile(r"[0-9]")

# CPython refuses int/str conversions above 4300 digits; stay below that.
_CHUNK_DIGITS = 4000
_CHUNK_BASE = 10 ** _CHUNK_DIGITS


def int_from_digits(digits: str) -> int:
    value = 0
    for start in range(0, len(digits), _CHUNK_DIGITS):
        chunk = digits[start:start + _CHUNK_DIGITS]
        value = value * 10 ** len(chunk) + int(chunk)
    return value


def digits_of(value: int) -> str:
    """Decimal text of a non-negative cell value of any size."""
    if value < _CHUNK_BASE:
        return str(value)
    chunks: List[str] = []
    while value >= _CHUNK_BASE:
        value, low = divmod(value, _CHUNK_BASE)
        chunks.append(f"{low:0{_CHUNK_DIGITS}d}")
    chunks.append(str(value))
    return "".join(reversed(chunks))


def parse_numeric(text: str, filename: str = "<string>") -> List[int]:
    """Parse the numeric form: one non-negative decimal integer per line."""
    cells: List[int] = []
    for match in _LINE_RE.finditer(text):
        token = _WHITESPACE_RE.sub("", match.group())
        if token == "":
            continue
        if not _NUMBER_RE.fullmatch(token):
            line = len(_BREAK_RE.findall(text, 0, match.start())) + 1
            raise MeowParseError(f'Invalid number "{token}" at {filename}:{line}')
        cells.append(int_from_digits(token))
    return cells


class Parser:
    """Groups symbolic-form tokens into a Cell List.

    Grammar: ``(MEOW* SEP)* EOF``. Every group contributes the number of MEOW
    tokens it holds, so a bare separator yields 0.
    """

    def __init__(self, tokens: List[Token], filename: str) -> None:
        self.tokens = tokens
        self.filename = filename
        self.index = 0

    def parse(self) -> List[int]:
        cells: List[int] = []
        count = 0
        while True:
            token = self._peek()
            if token.type == "MEOW":
                count += 1
            elif token.type == "SEP":
                cells.append(count)
                count = 0
            elif token.type == "EOF":
                if count:
                    raise MeowParseError(
                        f"Expected '{SEP_TOKEN}' after {count} meow token(s) at "
                        f"{self.filename}:{token.line}:{token.column}"
                    )
                return cells
            else:
                raise MeowParseError(
                    f"Unexpected token {token.type} at {self.filename}:{token.line}:{token.column}"
                )
            self.index += 1

    def _peek(self) -> Token:
        return self.tokens[self.index]


def parse_symbolic(text: str, filename: str = "<string>") -> List[int]:
    tokens = Lexer(text, filename).tokenize()
    return Parser(tokens, filename).parse()


def parse_source(text: str, filename: str = "<string>") -> List[int]:
    """Compile source text into a Cell List.

    Any ASCII digit anywhere in the text selects the numeric form; otherwise
    the symbolic form is used. A symbolic program containing a digit (in a
    comment, say) is therefore routed to the numeric parser and rejected.
    """
    if _DIGIT_RE.search(text):
        return parse_numeric(text, filename)
    return parse_symbolic(text, filename)


def format_symbolic(cells: Iterable[int], lang: str = "en") -> str:
    """Render a Cell List as symbolic-form source, one group per line."""
    try:
        word = MEOW_TOKENS[lang]
    except KeyError:
        raise MeowParseError(f"Unknown language '{lang}'") from None
    return "\n".join(word * int(value) + SEP_TOKEN for value in cells)
