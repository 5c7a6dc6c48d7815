"""Tokenizer for the function-expression language used in ``<<...>>`` placeholders.

The language is the small JavaScript-flavoured subset tool documents are
written in: arrow functions, literals, template strings, member access,
operators and a handful of statements. Anything outside that subset fails
here or in the parser with ExpressionSyntaxError.
"""

from typing import Any, Optional

from conduit.exceptions import ExpressionSyntaxError

# Token kinds
NUM = "num"
STR = "str"
TEMPLATE = "template"
IDENT = "ident"
KEYWORD = "keyword"
PUNCT = "punct"
EOF = "eof"

KEYWORDS = frozenset({
    "const", "let", "var", "return", "if", "else", "for", "of", "in", "while",
    "break", "continue", "true", "false", "null", "undefined", "typeof",
    "function", "new",
})

# Longest first so greedy matching works.
_PUNCTUATORS = sorted([
    "...", "===", "!==", "**=", "??=", "&&=", "||=",
    "=>", "==", "!=", "<=", ">=", "&&", "||", "??", "?.", "++", "--",
    "+=", "-=", "*=", "/=", "%=", "**",
    "{", "}", "(", ")", "[", "]", ";", ",", "<", ">", "+", "-", "*", "/",
    "%", "!", "?", ":", "=", ".",
], key=len, reverse=True)

_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "b": "\b", "f": "\f", "v": "\v", "0": "\0"}


class Token:
    __slots__ = ("kind", "value", "pos")

    def __init__(self, kind: str, value: Any, pos: int):
        self.kind = kind
        self.value = value
        self.pos = pos

    def is_punct(self, *values: str) -> bool:
        return self.kind == PUNCT and self.value in values

    def is_keyword(self, *values: str) -> bool:
        return self.kind == KEYWORD and self.value in values

    def __repr__(self) -> str:
        return f"Token({self.kind}, {self.value!r}, {self.pos})"


def _is_ident_start(ch: str) -> bool:
    return ch.isalpha() or ch in "_$"


def _is_ident_part(ch: str) -> bool:
    return ch.isalnum() or ch in "_$"


class Lexer:
    """Turns source text into a list of tokens.

    Template literals become a single TEMPLATE token whose value is a list of
    ``("text", str)`` and ``("expr", source, offset)`` parts; the parser
    re-lexes each embedded expression.
    """

    def __init__(self, source: str):
        self.source = source
        self.pos = 0

    def error(self, message: str, pos: Optional[int] = None) -> ExpressionSyntaxError:
        at = self.pos if pos is None else pos
        return ExpressionSyntaxError(
            f"{message} at position {at}",
            expression=self.source,
            position=at,
        )

    def tokenize(self) -> list[Token]:
        tokens: list[Token] = []
        src = self.source
        while True:
            self._skip_trivia()
            if self.pos >= len(src):
                tokens.append(Token(EOF, None, self.pos))
                return tokens
            ch = src[self.pos]
            start = self.pos
            if ch.isdigit() or (ch == "." and self._peek(1).isdigit()):
                tokens.append(Token(NUM, self._read_number(), start))
            elif ch in "'\"":
                tokens.append(Token(STR, self._read_string(ch), start))
            elif ch == "`":
                tokens.append(Token(TEMPLATE, self._read_template(), start))
            elif _is_ident_start(ch):
                word = self._read_word()
                kind = KEYWORD if word in KEYWORDS else IDENT
                tokens.append(Token(kind, word, start))
            else:
                for punct in _PUNCTUATORS:
                    if src.startswith(punct, self.pos):
                        # `a?.5:1` is a ternary, not optional chaining
                        if punct == "?." and self._peek(2).isdigit():
                            continue
                        tokens.append(Token(PUNCT, punct, start))
                        self.pos += len(punct)
                        break
                else:
                    raise self.error(f"Unexpected character {ch!r}")

    # ── helpers ──

    def _peek(self, offset: int = 0) -> str:
        idx = self.pos + offset
        return self.source[idx] if idx < len(self.source) else ""

    def _skip_trivia(self) -> None:
        src = self.source
        while self.pos < len(src):
            ch = src[self.pos]
            if ch.isspace():
                self.pos += 1
            elif src.startswith("//", self.pos):
                end = src.find("\n", self.pos)
                self.pos = len(src) if end == -1 else end + 1
            elif src.startswith("/*", self.pos):
                end = src.find("*/", self.pos + 2)
                if end == -1:
                    raise self.error("Unterminated comment")
                self.pos = end + 2
            else:
                return

    def _read_word(self) -> str:
        start = self.pos
        while self.pos < len(self.source) and _is_ident_part(self.source[self.pos]):
            self.pos += 1
        return self.source[start:self.pos]

    def _read_number(self) -> Any:
        src = self.source
        start = self.pos
        if src.startswith(("0x", "0X"), self.pos):
            self.pos += 2
            while self.pos < len(src) and src[self.pos] in "0123456789abcdefABCDEF_":
                self.pos += 1
            return int(src[start + 2:self.pos].replace("_", ""), 16)
        seen_dot = seen_exp = False
        while self.pos < len(src):
            ch = src[self.pos]
            if ch.isdigit() or ch == "_":
                self.pos += 1
            elif ch == "." and not seen_dot and not seen_exp:
                seen_dot = True
                self.pos += 1
            elif ch in "eE" and not seen_exp:
                seen_exp = True
                self.pos += 1
                if self._peek() in "+-":
                    self.pos += 1
            else:
                break
        text = src[start:self.pos].replace("_", "")
        try:
            if seen_dot or seen_exp:
                value = float(text)
                return int(value) if value.is_integer() and abs(value) < 2 ** 53 else value
            return int(text)
        except ValueError:
            raise self.error(f"Invalid number {text!r}", start)

    def _read_escape(self) -> str:
        # self.pos is on the character after the backslash
        ch = self._peek()
        self.pos += 1
        if ch in _ESCAPES:
            return _ESCAPES[ch]
        if ch == "u":
            if self._peek() == "{":
                end = self.source.find("}", self.pos)
                code = self.source[self.pos + 1:end]
                self.pos = end + 1
            else:
                code = self.source[self.pos:self.pos + 4]
                self.pos += 4
            try:
                return chr(int(code, 16))
            except ValueError:
                raise self.error("Invalid unicode escape")
        if ch == "x":
            code = self.source[self.pos:self.pos + 2]
            self.pos += 2
            try:
                return chr(int(code, 16))
            except ValueError:
                raise self.error("Invalid hex escape")
        if ch == "\n":
            return ""
        return ch

    def _read_string(self, quote: str) -> str:
        start = self.pos
        self.pos += 1
        out: list[str] = []
        src = self.source
        while True:
            if self.pos >= len(src):
                raise self.error("Unterminated string literal", start)
            ch = src[self.pos]
            if ch == quote:
                self.pos += 1
                return "".join(out)
            if ch == "\\":
                self.pos += 1
                out.append(self._read_escape())
            elif ch == "\n":
                raise self.error("Unterminated string literal", start)
            else:
                out.append(ch)
                self.pos += 1

    def _read_template(self) -> list[tuple]:
        start = self.pos
        self.pos += 1
        src = self.source
        parts: list[tuple] = []
        text: list[str] = []
        while True:
            if self.pos >= len(src):
                raise self.error("Unterminated template literal", start)
            ch = src[self.pos]
            if ch == "`":
                self.pos += 1
                if text:
                    parts.append(("text", "".join(text)))
                return parts
            if ch == "\\":
                self.pos += 1
                text.append(self._read_escape())
            elif ch == "$" and self._peek(1) == "{":
                if text:
                    parts.append(("text", "".join(text)))
                    text = []
                self.pos += 2
                expr_start = self.pos
                expr_end = self._find_template_expr_end()
                parts.append(("expr", src[expr_start:expr_end], expr_start))
                self.pos = expr_end + 1
            else:
                text.append(ch)
                self.pos += 1

    def _find_template_expr_end(self) -> int:
        """Index of the ``}`` closing the current ``${`` (nesting-aware)."""
        depth = 0
        src = self.source
        i = self.pos
        while i < len(src):
            ch = src[i]
            if ch in "'\"`":
                # Skip nested literals with a throwaway lexer
                sub = Lexer(src)
                sub.pos = i
                if ch == "`":
                    sub._read_template()
                else:
                    sub._read_string(ch)
                i = sub.pos
                continue
            if ch == "{":
                depth += 1
            elif ch == "}":
                if depth == 0:
                    return i
                depth -= 1
            i += 1
        raise self.error("Unterminated template expression")


def tokenize(source: str) -> list[Token]:
    return Lexer(source).tokenize()
