"""
Table-driven tokenizer for Kestrel source text.

The scanner is one master regular expression built from ``TOKEN_SPEC``; the
parser pulls tokens one at a time with ``next_token()``. Double-quoted strings
that contain ``{expr}`` parts come out as a single ISTRING token whose raw text
is split later by ``interpolation_parts`` (interpolation mode).
"""
import re
from typing import Iterator, List, Tuple, Union

from kestrel.kestrel_tokens import (
    Position, Token, KEYWORDS, VALUE_END, OPERATORS,
    IDENT, INT, UINT, FLOAT, STRING, ISTRING, REGEX, EOF, ILLEGAL,
)

_NUMBER_TAIL = r"(?:[eE][+-]?\d[\d_]*)?"

TOKEN_SPEC = [
    ("NEWLINE", r"\r?\n"),
    ("SPACE", r"[ \t\f\v]+"),
    ("DOC", r"///[^\n]*"),
    ("COMMENT", r"//[^\n]*|#[^\n]*|/\*[\s\S]*?\*/"),
    ("HEX", r"0[xX][0-9a-fA-F_]+u?"),
    ("BIN", r"0[bB][01_]+u?"),
    ("OCT", r"0[oO][0-7_]+u?"),
    # A '.' after digits is a fraction separator only when a digit or an
    # exponent marker follows, so `10.next()` stays a method call.
    ("NUMBER", r"\d[\d_]*(?:\.\d[\d_]*|\.(?=[eE][+-]?\d))?" + _NUMBER_TAIL + r"u?"),
    ("IDENT", r"[A-Za-z_$][A-Za-z0-9_]*"),
    ("DQUOTE", r'"'),
    ("SSTRING", r"'(?:\\[\s\S]|[^'\\])*'"),
    ("RAWSTRING", r"`[^`]*`"),
    ("REGEX", r"/(?:\\.|[^/\n\\])+/[imsx]*"),
    ("OP", "|".join(re.escape(op) for op in OPERATORS)),
    ("MISMATCH", r"[\s\S]"),
]

_ESCAPES = {
    "n": "\n", "t": "\t", "r": "\r", "0": "\0", "a": "\a", "b": "\b",
    "f": "\f", "v": "\v", "\\": "\\", '"': '"', "'": "'", "{": "{", "}": "}",
    "$": "$",
}
_ESCAPE_RE = re.compile(r"\\(u[0-9a-fA-F]{4}|x[0-9a-fA-F]{2}|[\s\S])")


def _compile(with_regex: bool):
    spec = [(n, p) for n, p in TOKEN_SPEC if with_regex or n != "REGEX"]
    return re.compile("|".join(f"(?P<{name}>{pattern})" for name, pattern in spec))


_MASTER = _compile(True)
_MASTER_NO_REGEX = _compile(False)


def decode_escapes(text: str) -> str:
    def repl(m):
        seq = m.group(1)
        if len(seq) > 1 and seq[0] in "ux":
            return chr(int(seq[1:], 16))
        return _ESCAPES.get(seq, "\\" + seq)
    return _ESCAPE_RE.sub(repl, text)


def advance(pos: Position, text: str) -> Position:
    """Position reached after consuming `text` starting at `pos`."""
    lines = text.count("\n")
    if lines:
        col = len(text) - text.rfind("\n")
        return Position(pos.file, pos.line + lines, col, pos.offset + len(text))
    return Position(pos.file, pos.line, pos.col + len(text), pos.offset + len(text))


def _scan_dstring(src: str, i: int) -> int:
    """Index just past the closing quote of a string opened before `i`, or -1."""
    depth = 0
    n = len(src)
    while i < n:
        c = src[i]
        if c == "\\":
            i += 2
            continue
        if depth:
            if c in "\"'":
                # string literal nested in an embedded expression
                j = i + 1
                while j < n and src[j] != c:
                    j += 2 if src[j] == "\\" else 1
                i = j + 1
                continue
            if c == "{":
                depth += 1
            elif c == "}":
                depth -= 1
        elif c == "{":
            depth = 1
        elif c == '"':
            return i + 1
        i += 1
    return -1


def _has_interpolation(inner: str) -> bool:
    i = 0
    while i < len(inner):
        c = inner[i]
        if c == "\\":
            i += 2
            continue
        if c == "{":
            return True
        i += 1
    return False


class Lexer:
    """Pull-based scanner over one source text."""

    def __init__(self, source: str, file: str = "<script>", start: Position = None):
        self.source = source
        self.file = file
        self.pos = start or Position(file, 1, 1, 0)
        self.index = 0
        self.prev_kind = None

    def _match(self):
        master = _MASTER if self.prev_kind not in VALUE_END else _MASTER_NO_REGEX
        return master.match(self.source, self.index)

    def next_token(self) -> Token:
        newline_before = False
        doc_lines: List[str] = []
        while True:
            if self.index >= len(self.source):
                return Token(EOF, "", self.pos, newline_before, doc="\n".join(doc_lines) or None)
            m = self._match()
            kind = m.lastgroup
            text = m.group()
            start = self.pos
            if kind == "DQUOTE":
                end = _scan_dstring(self.source, m.end())
                if end < 0:
                    kind = "MISMATCH"
                    text = self.source[self.index:]
                else:
                    kind = "DSTRING"
                    text = self.source[self.index:end]
            self.index += len(text)
            self.pos = advance(self.pos, text)

            if kind in ("SPACE", "COMMENT", "NEWLINE"):
                if "\n" in text:
                    newline_before = True
                continue
            if kind == "DOC":
                doc_lines.append(text[3:].strip())
                continue

            tok = self._make(kind, text, start)
            tok.newline_before = newline_before
            tok.doc = "\n".join(doc_lines) or None
            self.prev_kind = tok.kind
            return tok

    def _make(self, kind: str, text: str, start: Position) -> Token:
        match kind:
            case "NUMBER":
                clean = text.replace("_", "")
                if clean.endswith("u"):
                    if "." in clean or "e" in clean.lower():
                        return Token(ILLEGAL, text, start, raw=text)
                    return Token(UINT, clean[:-1], start, raw=text)
                if "." in clean or "e" in clean or "E" in clean:
                    return Token(FLOAT, clean, start, raw=text)
                return Token(INT, clean, start, raw=text)
            case "HEX" | "BIN" | "OCT":
                clean = text.replace("_", "").lower()
                if clean.endswith("u"):
                    return Token(UINT, clean[:-1], start, raw=text)
                return Token(INT, clean, start, raw=text)
            case "IDENT":
                if text in KEYWORDS:
                    return Token(text, text, start, raw=text)
                return Token(IDENT, text, start, raw=text)
            case "DSTRING":
                inner = text[1:-1]
                if _has_interpolation(inner):
                    return Token(ISTRING, inner, start, raw=text)
                return Token(STRING, decode_escapes(inner), start, raw=text)
            case "SSTRING":
                return Token(STRING, decode_escapes(text[1:-1]), start, raw=text)
            case "RAWSTRING":
                return Token(STRING, text[1:-1], start, raw=text)
            case "REGEX":
                return Token(REGEX, text, start, raw=text)
            case "OP":
                return Token(text, text, start, raw=text)
            case _:
                return Token(ILLEGAL, text, start, raw=text)

    def __iter__(self) -> Iterator[Token]:
        while True:
            tok = self.next_token()
            yield tok
            if tok.kind == EOF:
                return


def tokenize(source: str, file: str = "<script>") -> List[Token]:
    return list(Lexer(source, file))


Part = Union[Tuple[str, str], Tuple[str, str, Position]]


def interpolation_parts(inner: str, start: Position) -> List[Part]:
    """
    Split the raw body of an interpolated string into ``("text", decoded)`` and
    ``("expr", source, position)`` parts. `start` is the position of the first
    character after the opening quote. Nested braces and strings inside an
    embedded expression are skipped over so ``"{ {"a": 1}["a"] }"`` works.
    """
    parts: List[Part] = []
    buf: List[str] = []
    i = 0
    n = len(inner)
    while i < n:
        c = inner[i]
        if c == "\\" and i + 1 < n:
            buf.append(inner[i:i + 2])
            i += 2
            continue
        if c != "{":
            buf.append(c)
            i += 1
            continue
        if buf:
            parts.append(("text", decode_escapes("".join(buf))))
            buf = []
        depth = 1
        j = i + 1
        quote = None
        while j < n and depth:
            ch = inner[j]
            if quote:
                if ch == "\\":
                    j += 1
                elif ch == quote:
                    quote = None
            elif ch in "\"'":
                quote = ch
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    break
            j += 1
        expr_src = inner[i + 1:j]
        expr_pos = advance(start, inner[:i + 1])
        parts.append(("expr", expr_src, expr_pos))
        i = j + 1
    if buf:
        parts.append(("text", decode_escapes("".join(buf))))
    return parts
