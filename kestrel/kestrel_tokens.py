"""
Token kinds, source positions and the keyword table shared by the lexer and parser.

Punctuation tokens use their own text as kind (``'+'``, ``'=='``, ``'{'``) and
keywords use the keyword itself, so the parser tables read like the grammar.
"""
from dataclasses import dataclass, field
from typing import Optional

# Literal and structural kinds
IDENT = "IDENT"
INT = "INT"
UINT = "UINT"
FLOAT = "FLOAT"
STRING = "STRING"        # plain (no interpolation) string
ISTRING = "ISTRING"      # double-quoted string with {expr} parts
REGEX = "REGEX"
EOF = "EOF"
ILLEGAL = "ILLEGAL"

KEYWORDS = frozenset({
    "let", "const", "fn", "return", "if", "elif", "else", "unless",
    "true", "false", "nil", "and", "or", "do", "while", "for", "in",
    "where", "break", "continue", "grep", "map", "case", "is",
    "try", "catch", "finally", "throw", "defer", "spawn", "struct",
    "class", "new", "property", "get", "set", "default",
    "static", "public", "private", "protected", "enum", "include", "import",
    "using", "qw", "async", "await", "service", "on",
    # query keywords
    "from", "select", "group", "by", "into", "orderby", "join", "equals",
    "ascending", "descending",
})

# Keywords that may still be used as ordinary names (hash keys, members,
# parameters). The parser only treats them as keywords in their own clauses.
SOFT_KEYWORDS = frozenset({
    "get", "set", "default", "on", "from", "select", "group", "by", "into",
    "orderby", "join", "equals", "ascending", "descending", "where", "is",
    "map", "grep", "property",
})

# Tokens after which a '/' is a division rather than the start of a regex.
VALUE_END = frozenset({
    IDENT, INT, UINT, FLOAT, STRING, ISTRING, REGEX,
    ")", "]", "}", "true", "false", "nil", "++", "--",
})

# Keywords that begin a statement; the parser resynchronizes on them.
STATEMENT_KEYWORDS = frozenset({
    "let", "const", "fn", "return", "if", "unless", "do", "while", "for",
    "try", "throw", "defer", "spawn", "class", "enum", "include", "import",
    "using", "async", "service", "break", "continue",
})

OPERATORS = (
    "**=", "<<=", ">>=", "...",
    "=>", "==", "!=", "<=", ">=", "&&", "||", "??", "++", "--",
    "+=", "-=", "*=", "/=", "%=", "&=", "|=", "^=", "**", "<<", ">>",
    "=~", "!~", "|>", "..",
    "+", "-", "*", "/", "%", "=", "<", ">", "!", "~", "&", "|", "^",
    "?", ":", ";", ",", ".", "(", ")", "[", "]", "{", "}", "@",
)


@dataclass(frozen=True)
class Position:
    file: str = "<script>"
    line: int = 1
    col: int = 1
    offset: int = 0

    def __str__(self):
        return f"{self.file}:{self.line}:{self.col}"

    @property
    def sline(self) -> str:
        return f"{self.file}:{self.line}"


@dataclass
class Token:
    kind: str
    literal: str
    pos: Position
    newline_before: bool = False
    raw: Optional[str] = field(default=None, repr=False)
    doc: Optional[str] = field(default=None, repr=False)

    @property
    def end(self) -> Position:
        text = self.raw if self.raw is not None else self.literal
        lines = text.count("\n")
        if lines:
            col = len(text) - text.rfind("\n")
        else:
            col = self.pos.col + len(text)
        return Position(self.pos.file, self.pos.line + lines, col, self.pos.offset + len(text))
