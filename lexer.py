from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple


class MeowError(Exception):
    """Base class for interpreter errors."""


class MeowParseError(MeowError):
    """Raised when parsing fails."""


@dataclass
class Token:
    type: str
    value: str
    line: int
    column: int


# One spelling of "meow" per language. Any of them is accepted by the
# symbolic-form lexer; the language code only matters when formatting.
MEOW_TOKENS: Dict[str, str] = {
    "en": "Meow",
    "zh": "喵",
    "ja": "ニャー",
    "ko": "야옹",
    "fr": "Miaou",
    "de": "Miau",
    "ru": "Мяу",
    "it": "Miao",
}

SEP_TOKEN = "."

# Longest spelling first so that no word is shadowed by a shorter prefix.
_WORDS: Tuple[str, ...] = tuple(
    sorted({w.casefold() for w in MEOW_TOKENS.values()}, key=len, reverse=True)
)


class Lexer:
    """Tokenizer for the symbolic form.

    Whitespace is removed before scanning, so a word may be split across
    spaces or lines. Positions in errors refer to the original text.
    """

    def __init__(self, text: str, filename: str) -> None:
        self.text = text
        self.filename = filename
        self.index = 0
        chars: List[str] = []
        positions: List[Tuple[int, int]] = []
        line, column = 1, 1
        for ch in text:
            if not ch.isspace():
                chars.append(ch)
                positions.append((line, column))
            if ch == "\n":
                line += 1
                column = 1
            else:
                column += 1
        self.stripped = "".join(chars)
        self.positions = positions
        self._eof_position = (line, column)

    def tokenize(self) -> List[Token]:
        tokens: List[Token] = []
        tokens_append = tokens.append
        stripped = self.stripped
        n = len(stripped)

        while self.index < n:
            line, col = self.positions[self.index]
            if stripped[self.index] == SEP_TOKEN:
                tokens_append(Token("SEP", SEP_TOKEN, line, col))
                self.index += 1
                continue
            word = self._match_word()
            if word is None:
                raise MeowParseError(
                    f"Unexpected character '{stripped[self.index]}' at {self.filename}:{line}:{col}"
                )
            tokens_append(Token("MEOW", word, line, col))
            self.index += len(word)
        line, col = self._eof_position
        tokens_append(Token("EOF", "", line, col))
        return tokens

    def _match_word(self) -> Optional[str]:
        stripped = self.stripped
        for word in _WORDS:
            candidate = stripped[self.index:self.index + len(word)]
            if candidate.casefold() == word:
                return candidate
        return None

