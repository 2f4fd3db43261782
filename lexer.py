from __future__ import annotations
from dataclasses import dataclass
from typing import List, Optional


class FoldrError(Exception):
    """Base class for interpreter errors."""

    def __init__(
        self,
        message: str,
        *,
        line: Optional[int] = None,
        lexeme: Optional[str] = None,
        kind: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.location = None
        self.line = line
        self.lexeme = lexeme
        self.kind = kind

    @classmethod
    def at_token(cls, message: str, token: "Token") -> "FoldrError":
        return cls(message, line=token.line, lexeme=token.value, kind=token.type)

    def diagnostic(self) -> str:
        """Single stderr line: message plus the offending (line, lexeme, kind)."""
        if self.line is None:
            return f"Error: {self.message}"
        return f"Error: {self.message} (line {self.line}, token='{self.lexeme}', type={self.kind})"


class FoldrLexError(FoldrError):
    """Raised when the source contains characters no token can start with."""


class FoldrParseError(FoldrError):
    """Raised when parsing fails."""


@dataclass(frozen=True)
class Token:
    type: str
    value: str
    line: int
    column: int


KEYWORDS = {
    "func": "FUNC",
    "let": "LET",
    "const": "CONST",
    "if": "IF",
    "else": "ELSE",
    "for": "FOR",
    "while": "WHILE",
    "return": "RETURN",
    "in": "IN",
    "break": "BREAK",
    "continue": "CONTINUE",
    "true": "TRUE",
    "false": "FALSE",
}

DIGITS = "0123456789"
WHITESPACE = " \t\n\r\v\f"
# ASCII only; any other letter is an ERROR token.
WORD_START = frozenset("abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ_")

# Primitive type names accepted in annotations. They lex as plain identifiers.
TYPE_NAMES = frozenset({"int", "float", "string", "bool", "array", "void"})

SYMBOLS = {
    "*": "STAR",
    "/": "SLASH",
    "%": "PERCENT",
    "(": "LPAREN",
    ")": "RPAREN",
    "{": "LBRACE",
    "}": "RBRACE",
    "[": "LBRACKET",
    "]": "RBRACKET",
    ";": "SEMICOLON",
    ":": "COLON",
    ",": "COMMA",
    ".": "DOT",
}

# Characters that may start a two-character operator, keyed by the first
# character: (second character, combined type), then the single-character type.
COMPOUND_SYMBOLS = {
    "+": ((("=", "PLUS_ASSIGN"),), "PLUS"),
    "-": ((("=", "MINUS_ASSIGN"), (">", "ARROW")), "MINUS"),
    "=": ((("=", "EQ"),), "ASSIGN"),
    "!": ((("=", "NEQ"),), "NOT"),
    "<": ((("=", "LTE"),), "LT"),
    ">": ((("=", "GTE"),), "GT"),
    "&": ((("&", "AND"),), "ERROR"),
    "|": ((("|", "OR"),), "ERROR"),
}


class Lexer:
    def __init__(self, text: str, filename: str) -> None:
        self.text = text
        self.filename = filename
        self.index = 0
        self.line = 1
        self.column = 1

    def tokenize(self) -> List[Token]:
        """Scan the whole source. Never raises: bad characters become ERROR tokens."""
        tokens: List[Token] = []
        tokens_append = tokens.append
        _advance = self._advance
        symbols = SYMBOLS
        text = self.text
        n = len(text)

        while self.index < n:
            ch: str = text[self.index]
            if ch in WHITESPACE:
                _advance()
                continue
            if ch == "#":
                self._consume_comment()
                continue
            if ch in ('"', "'"):
                tokens_append(self._consume_string())
                continue
            if ch in DIGITS:
                tokens_append(self._consume_number())
                continue
            if ch in WORD_START:
                tokens_append(self._consume_identifier())
                continue
            if ch in COMPOUND_SYMBOLS:
                tokens_append(self._consume_operator())
                continue
            if ch in symbols:
                tokens_append(Token(symbols[ch], ch, self.line, self.column))
                _advance()
                continue
            tokens_append(Token("ERROR", ch, self.line, self.column))
            _advance()
        tokens_append(Token("EOF", "", self.line, self.column))
        return tokens

    def _consume_comment(self) -> None:
        text = self.text
        n = len(text)
        _advance = self._advance
        while self.index < n and text[self.index] != "\n":
            _advance()

    def _consume_string(self) -> Token:
        # No escape sequences; an unterminated literal runs to end of input.
        line, col = self.line, self.column
        opening = self._peek()
        self._advance()
        chars: List[str] = []
        while not self._eof:
            ch = self._peek()
            if ch == opening:
                self._advance()
                break
            chars.append(ch)
            self._advance()
        return Token("STRING", "".join(chars), line, col)

    def _consume_number(self) -> Token:
        # Digits and dots in one run; "1.2.3" is passed on as a single token.
        line, col = self.line, self.column
        chars: List[str] = []
        text = self.text
        n = len(text)
        _advance = self._advance
        while self.index < n:
            ch = text[self.index]
            if ch in DIGITS or ch == ".":
                chars.append(ch)
                _advance()
                continue
            break
        return Token("NUMBER", "".join(chars), line, col)

    def _consume_identifier(self) -> Token:
        line, col = self.line, self.column
        chars: List[str] = []
        text = self.text
        n = len(text)
        _advance = self._advance
        while self.index < n:
            ch = text[self.index]
            if ch in WORD_START or ch in DIGITS:
                chars.append(ch)
                _advance()
                continue
            break
        value = "".join(chars)
        token_type: str = KEYWORDS.get(value, "IDENT")
        return Token(token_type, value, line, col)

    def _consume_operator(self) -> Token:
        line, col = self.line, self.column
        first = self._peek()
        pairs, single = COMPOUND_SYMBOLS[first]
        self._advance()
        if not self._eof:
            second = self._peek()
            for follow, combined in pairs:
                if second == follow:
                    self._advance()
                    return Token(combined, first + second, line, col)
        return Token(single, first, line, col)

    @property
    def _eof(self) -> bool:
        return self.index >= len(self.text)

    def _peek(self) -> str:
        return self.text[self.index]

    def _advance(self) -> None:
        if self.text[self.index] == "\n":
            self.line += 1
            self.column = 1
        else:
            self.column += 1
        self.index += 1


def lexical_errors(tokens: List[Token]) -> List[FoldrLexError]:
    """Every ERROR token in scan order, as diagnostics."""
    errors: List[FoldrLexError] = []
    for token in tokens:
        if token.type == "ERROR":
            errors.append(FoldrLexError(f"Unexpected character '{token.value}'", line=token.line, lexeme=token.value, kind=token.type))
    return errors


def tokenize(text: str, filename: str = "<string>") -> List[Token]:
    """Lex ``text`` and raise the first lexical error before anything parses it."""
    tokens = Lexer(text, filename).tokenize()
    errors = lexical_errors(tokens)
    if errors:
        raise errors[0]
    return tokens
