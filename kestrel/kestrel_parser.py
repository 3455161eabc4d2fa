"""
Pratt parser turning a Kestrel token stream into an AST.

Each token kind may register a prefix and/or an infix handler; `PRECEDENCES`
maps the kind to its binding power. `parse_expression(min_prec)` keeps applying
infix handlers while the lookahead binds tighter than `min_prec`.

Errors never abort the parse: a `ParseError` raised inside a statement is
recorded as ``"Syntax Error:<file>:<line>:<col>- <message>"`` and the parser
skips ahead to the next statement boundary.
"""
import os
from collections import deque
from enum import IntEnum
from typing import Callable, Dict, List, Optional, Set, Tuple

from kestrel import kestrel_ast as ast
from kestrel.kestrel_file import resolve_module, read_source, root_dir_from_env
from kestrel.kestrel_lexer import Lexer, interpolation_parts
from kestrel.kestrel_tokens import (
    Token, Position, SOFT_KEYWORDS, STATEMENT_KEYWORDS,
    IDENT, INT, UINT, FLOAT, STRING, ISTRING, REGEX, EOF, ILLEGAL,
)

INT64_MAX = (1 << 63) - 1
UINT64_MAX = (1 << 64) - 1


class KestrelSyntaxError(Exception):
    """Raised by `parse_or_raise` with every accumulated syntax error."""

    def __init__(self, errors: List[str]):
        super().__init__("\n".join(errors))
        self.errors = list(errors)


class ParseError(Exception):
    def __init__(self, message: str, pos: Position):
        super().__init__(message)
        self.message = message
        self.pos = pos

    def format(self) -> str:
        return f"Syntax Error:{self.pos}- {self.message}"


class Precedence(IntEnum):
    LOWEST = 1
    PIPE = 2            # |>
    ASSIGN = 3          # = += -= ...
    FATARROW = 4        # =>
    CONDOR = 5          # || or
    CONDAND = 6         # && and
    NULLCOALESCING = 7  # ??
    TERNARY = 8         # ? :
    EQUALS = 9          # == !=
    LESSGREATER = 10    # < <= > >=
    BITOR = 11          # |
    BITXOR = 12         # ^
    BITAND = 13         # &
    SHIFTS = 14         # << >>
    SLICE = 15          # a[x:y]
    DOTDOT = 16         # ..
    SUM = 17            # + -
    PRODUCT = 18        # * / % **
    PREFIX = 19         # -x !x
    MATCHING = 20       # =~ !~
    CALL = 21           # f(x) obj.x
    INDEX = 22          # a[i]
    INCREMENT = 23      # x++ x--


ASSIGN_OPS = ("=", "+=", "-=", "*=", "/=", "%=", "**=", "&=", "|=", "^=", "<<=", ">>=")

PRECEDENCES: Dict[str, Precedence] = {
    "|>": Precedence.PIPE,
    **{op: Precedence.ASSIGN for op in ASSIGN_OPS},
    "=>": Precedence.FATARROW,
    "||": Precedence.CONDOR, "or": Precedence.CONDOR,
    "&&": Precedence.CONDAND, "and": Precedence.CONDAND,
    "??": Precedence.NULLCOALESCING,
    "?": Precedence.TERNARY,
    "==": Precedence.EQUALS, "!=": Precedence.EQUALS,
    "<": Precedence.LESSGREATER, "<=": Precedence.LESSGREATER,
    ">": Precedence.LESSGREATER, ">=": Precedence.LESSGREATER,
    "|": Precedence.BITOR,
    "^": Precedence.BITXOR,
    "&": Precedence.BITAND,
    "<<": Precedence.SHIFTS, ">>": Precedence.SHIFTS,
    "..": Precedence.DOTDOT,
    "+": Precedence.SUM, "-": Precedence.SUM,
    "*": Precedence.PRODUCT, "/": Precedence.PRODUCT,
    "%": Precedence.PRODUCT, "**": Precedence.PRODUCT,
    "=~": Precedence.MATCHING, "!~": Precedence.MATCHING,
    "(": Precedence.CALL, ".": Precedence.CALL,
    "[": Precedence.INDEX,
    "++": Precedence.INCREMENT, "--": Precedence.INCREMENT,
}

# Infix kinds that do not continue an expression across a line break.
_SAME_LINE_INFIX = frozenset({"(", "[", "++", "--"})

# Tokens usable as an operator-method name: `fn +(other) { ... }`
OPERATOR_METHODS = frozenset({
    "+", "-", "*", "/", "%", "**", "==", "!=", "<", "<=", ">", ">=",
    "!", "&", "|", "^", "<<", ">>", "=~", "!~", "~",
})

_BINARY_OPS = (
    "+", "-", "*", "/", "%", "==", "!=", "<", "<=", ">", ">=", "&&", "||",
    "and", "or", "??", "|", "^", "&", "<<", ">>", "=~", "!~",
)


class Parser:
    """
    Recursive-descent / Pratt parser over one file.

    `class_names` and `includes` are shared with the sub-parsers created for
    included files and interpolated strings so `new` checks and include
    memoization span the whole program.
    """

    def __init__(self, lexer: Lexer, *, root_dir: Optional[str] = None,
                 class_names: Optional[Set[str]] = None,
                 includes: Optional[Dict[str, ast.Program]] = None,
                 including: Tuple[str, ...] = (), base_dir: Optional[str] = None):
        self.lexer = lexer
        self.file = lexer.file
        self.root_dir = root_dir or root_dir_from_env()
        self.errors: List[str] = []
        self.class_names: Set[str] = class_names if class_names is not None else set()
        self.includes: Dict[str, ast.Program] = includes if includes is not None else {}
        self.including = including
        self.base_dir = base_dir
        self.line_index: Dict[str, Dict[int, List[ast.Node]]] = {}
        self.loop_depth = 0
        self._ahead = deque()

        self.prefix_fns: Dict[str, Callable[[], ast.Expression]] = {}
        self.infix_fns: Dict[str, Callable[[ast.Expression], ast.Expression]] = {}
        self._register()

        self.cur: Token = self._pull()
        self.peek: Token = self._la(1)

    # -----------------------------------------------------------------
    # Token plumbing
    # -----------------------------------------------------------------

    def _pull(self) -> Token:
        if self._ahead:
            return self._ahead.popleft()
        return self.lexer.next_token()

    def _la(self, n: int) -> Token:
        """Token `n` positions after the current one (n >= 1)."""
        while len(self._ahead) < n:
            self._ahead.append(self.lexer.next_token())
        return self._ahead[n - 1]

    def next_token(self):
        self.cur = self._pull()
        self.peek = self._la(1)

    def cur_is(self, *kinds: str) -> bool:
        return self.cur.kind in kinds

    def peek_is(self, *kinds: str) -> bool:
        return self.peek.kind in kinds

    def expect_peek(self, kind: str) -> Token:
        if self.peek.kind != kind:
            raise ParseError(
                f"expected next token to be {kind}, got {self._describe(self.peek)} instead",
                self.peek.pos)
        self.next_token()
        return self.cur

    def expect_name(self) -> Token:
        """Advance onto an identifier; soft keywords count as names."""
        if self.peek.kind == IDENT or self.peek.kind in SOFT_KEYWORDS:
            self.next_token()
            return self.cur
        raise ParseError(
            f"expected next token to be IDENT, got {self._describe(self.peek)} instead",
            self.peek.pos)

    @staticmethod
    def _describe(tok: Token) -> str:
        if tok.kind == EOF:
            return "EOF"
        if tok.kind in (IDENT, INT, UINT, FLOAT, STRING, ISTRING, REGEX, ILLEGAL):
            return f"{tok.kind}({tok.literal!r})"
        return tok.kind

    def peek_precedence(self) -> int:
        if self.peek.kind in _SAME_LINE_INFIX and self.peek.newline_before:
            return Precedence.LOWEST
        return PRECEDENCES.get(self.peek.kind, Precedence.LOWEST)

    def cur_precedence(self) -> int:
        return PRECEDENCES.get(self.cur.kind, Precedence.LOWEST)

    def _skip_semicolon(self):
        if self.peek_is(";"):
            self.next_token()

    def _at_statement_end(self) -> bool:
        return self.peek_is(";", "}", EOF) or self.peek.newline_before

    # -----------------------------------------------------------------
    # Registration
    # -----------------------------------------------------------------

    def _register(self):
        p = self.prefix_fns
        p[IDENT] = self.parse_identifier
        p[INT] = self.parse_integer_literal
        p[UINT] = self.parse_uinteger_literal
        p[FLOAT] = self.parse_float_literal
        p[STRING] = self.parse_string_literal
        p[ISTRING] = self.parse_interpolated_string
        p[REGEX] = self.parse_regex_literal
        p["true"] = self.parse_boolean
        p["false"] = self.parse_boolean
        p["nil"] = self.parse_nil
        for op in ("!", "-", "+", "~", "++", "--"):
            p[op] = self.parse_prefix_expression
        p["("] = self.parse_grouped_expression
        p["["] = self.parse_array_expression
        p["{"] = self.parse_hash_expression
        p["struct"] = self.parse_struct_expression
        p["fn"] = self.parse_function_literal
        p["async"] = self.parse_async_literal
        p["if"] = self.parse_if_expression
        p["unless"] = self.parse_unless_expression
        p["do"] = self.parse_do_loop
        p["while"] = self.parse_while_loop
        p["for"] = self.parse_for_loop
        p["grep"] = self.parse_grep_expression
        p["map"] = self.parse_map_expression
        p["case"] = self.parse_case_expression
        p["new"] = self.parse_new_expression
        p["class"] = self.parse_class_literal_expression
        p["enum"] = self.parse_enum_literal
        p["qw"] = self.parse_qw_expression
        p["await"] = self.parse_await_expression
        p["from"] = self.parse_query_or_identifier

        i = self.infix_fns
        for op in _BINARY_OPS:
            i[op] = self.parse_infix_expression
        i["**"] = self.parse_power_expression
        for op in ASSIGN_OPS:
            i[op] = self.parse_assign_expression
        i["?"] = self.parse_ternary_expression
        i["("] = self.parse_call_expression
        i["["] = self.parse_index_expression
        i["."] = self.parse_member_expression
        i[".."] = self.parse_range_expression
        i["++"] = self.parse_postfix_expression
        i["--"] = self.parse_postfix_expression
        i["|>"] = self.parse_pipe_expression
        i["=>"] = self.parse_fat_arrow

    # -----------------------------------------------------------------
    # Program / statements
    # -----------------------------------------------------------------

    def parse_program(self) -> ast.Program:
        program_pos = self.cur.pos
        statements = []
        while not self.cur_is(EOF):
            stmt = self._guarded_statement()
            if stmt is not None:
                statements.append(stmt)
            self.next_token()
        program = ast.Program(program_pos, tuple(statements), self.includes)
        self._index_lines(program)
        return program

    def _guarded_statement(self) -> Optional[ast.Statement]:
        try:
            return self.parse_statement()
        except ParseError as e:
            self.errors.append(e.format())
            self._synchronize()
            return None

    def _synchronize(self):
        while not self.cur_is(";", EOF):
            if self.peek_is("}", EOF):
                return
            if self.peek.kind in STATEMENT_KEYWORDS and self.peek.newline_before:
                return
            self.next_token()

    def _index_lines(self, program: ast.Program):
        index = self.line_index.setdefault(self.file, {})
        for node in ast.walk(program):
            if isinstance(node, ast.STOPPABLE):
                index.setdefault(node.pos.line, []).append(node)

    def parse_statement(self) -> Optional[ast.Statement]:
        kind = self.cur.kind
        match kind:
            case ";":
                return None
            case "let":
                return self.parse_let_statement()
            case "const":
                return self.parse_const_statement()
            case "return":
                return self.parse_return_statement()
            case "defer":
                return self.parse_defer_statement()
            case "spawn":
                return self.parse_spawn_statement()
            case "throw":
                return self.parse_throw_statement()
            case "try":
                return self.parse_try_statement()
            case "include":
                return self.parse_include_statement()
            case "import":
                return self.parse_import_statement()
            case "using":
                return self.parse_using_statement()
            case "service":
                return self.parse_service_statement()
            case "break" | "continue":
                return self.parse_break_continue()
            case "enum" if self.peek_is(IDENT):
                return self.parse_enum_statement()
            case "class" if self.peek_is(IDENT, "@"):
                return self.parse_class_statement()
            case "fn" if self.peek_is(IDENT):
                return self.parse_function_statement()
            case "async" if self.peek_is("fn") and self._la(2).kind == IDENT:
                return self.parse_function_statement()
            case "@":
                return self.parse_annotated_statement()
            case "{" if not self._looks_like_hash():
                return self.parse_block_statement()
        return self.parse_expression_statement()

    def _looks_like_hash(self) -> bool:
        if self.peek_is("}"):
            return False
        return self.peek.kind in (IDENT, STRING, INT, UINT, FLOAT) and self._la(2).kind == ":"

    def parse_expression_statement(self) -> ast.ExpressionStatement:
        pos = self.cur.pos
        expr = self.parse_expression(Precedence.LOWEST)
        self._skip_semicolon()
        return ast.ExpressionStatement(pos, expr)

    def parse_block_statement(self) -> ast.BlockStatement:
        if not self.cur_is("{"):
            raise ParseError(f"expected '{{', got {self._describe(self.cur)} instead", self.cur.pos)
        pos = self.cur.pos
        self.next_token()
        statements = []
        while not self.cur_is("}"):
            if self.cur_is(EOF):
                raise ParseError("expected '}' before end of input", self.cur.pos)
            stmt = self._guarded_statement()
            if stmt is not None:
                statements.append(stmt)
            self.next_token()
        return ast.BlockStatement(pos, tuple(statements))

    def _expect_block(self) -> ast.BlockStatement:
        self.expect_peek("{")
        return self.parse_block_statement()

    def _loop_body(self) -> ast.BlockStatement:
        self.loop_depth += 1
        try:
            return self._expect_block()
        finally:
            self.loop_depth -= 1

    def parse_let_statement(self, modifier: str = "public", static: bool = False,
                            annotations=()) -> ast.LetStatement:
        tok = self.cur
        names = []
        destructure = False
        if self.peek_is("("):
            self.next_token()
            destructure = True
            while True:
                names.append(self._identifier(self.expect_name()))
                if self.peek_is(","):
                    self.next_token()
                    if self.peek_is(")"):
                        break
                    continue
                break
            self.expect_peek(")")
        else:
            names.append(self._identifier(self.expect_name()))
            while self.peek_is(","):
                self.next_token()
                names.append(self._identifier(self.expect_name()))
        values = []
        if self.peek_is("="):
            self.next_token()
            self.next_token()
            values.append(self.parse_expression(Precedence.LOWEST))
            while self.peek_is(","):
                self.next_token()
                self.next_token()
                values.append(self.parse_expression(Precedence.LOWEST))
        if len(names) > 1 and len(values) == 1:
            destructure = True
        for name, value in zip(names, values):
            if isinstance(value, ast.ClassLiteral):
                self.class_names.add(name.name)
        self._skip_semicolon()
        return ast.LetStatement(tok.pos, tuple(names), tuple(values), destructure,
                                modifier, static, tuple(annotations), tok.doc)

    def parse_const_statement(self) -> ast.ConstStatement:
        tok = self.cur
        if self.peek_is("("):
            self.next_token()
            names, values = [], []
            while not self.peek_is(")"):
                names.append(self._identifier(self.expect_name()))
                if self.peek_is("="):
                    self.next_token()
                    self.next_token()
                    values.append(self.parse_expression(Precedence.LOWEST))
                else:
                    values.append(None)
                if self.peek_is(",", ";"):
                    self.next_token()
            self.expect_peek(")")
            self._skip_semicolon()
            return ast.ConstStatement(tok.pos, tuple(names), tuple(values), True, tok.doc)
        name = self._identifier(self.expect_name())
        self.expect_peek("=")
        self.next_token()
        value = self.parse_expression(Precedence.LOWEST)
        self._skip_semicolon()
        return ast.ConstStatement(tok.pos, (name,), (value,), False, tok.doc)

    def parse_return_statement(self) -> ast.ReturnStatement:
        tok = self.cur
        values = []
        if not self._at_statement_end():
            self.next_token()
            values.append(self.parse_expression(Precedence.LOWEST))
            while self.peek_is(","):
                self.next_token()
                self.next_token()
                values.append(self.parse_expression(Precedence.LOWEST))
        self._skip_semicolon()
        return ast.ReturnStatement(tok.pos, tuple(values))

    def _call_operand(self, keyword: str) -> ast.Expression:
        self.next_token()
        pos = self.cur.pos
        expr = self.parse_expression(Precedence.LOWEST)
        if not isinstance(expr, (ast.CallExpression, ast.MethodCallExpression)):
            raise ParseError(f"'{keyword}' must be followed by a function call, got '{expr}'", pos)
        self._skip_semicolon()
        return expr

    def parse_defer_statement(self) -> ast.DeferStatement:
        tok = self.cur
        return ast.DeferStatement(tok.pos, self._call_operand("defer"))

    def parse_spawn_statement(self) -> ast.SpawnStatement:
        tok = self.cur
        return ast.SpawnStatement(tok.pos, self._call_operand("spawn"))

    def parse_throw_statement(self) -> ast.ThrowStatement:
        tok = self.cur
        self.next_token()
        value = self.parse_expression(Precedence.LOWEST)
        self._skip_semicolon()
        return ast.ThrowStatement(tok.pos, value)

    def parse_try_statement(self) -> ast.TryStatement:
        tok = self.cur
        block = self._expect_block()
        catch_var = None
        catch_block = None
        finally_block = None
        if self.peek_is("catch"):
            self.next_token()
            if self.peek_is("("):
                self.next_token()
                catch_var = self.expect_name().literal
                self.expect_peek(")")
            elif not self.peek_is("{"):
                catch_var = self.expect_name().literal
            catch_block = self._expect_block()
        if self.peek_is("finally"):
            self.next_token()
            finally_block = self._expect_block()
        if catch_block is None and finally_block is None:
            raise ParseError("'try' needs a 'catch' or a 'finally' block", tok.pos)
        return ast.TryStatement(tok.pos, block, catch_var, catch_block, finally_block)

    def _module_path(self) -> str:
        if self.peek_is(STRING):
            self.next_token()
            return self.cur.literal
        parts = [self.expect_name().literal]
        while self.peek_is(".") and not self.peek.newline_before:
            self.next_token()
            parts.append(self.expect_name().literal)
        return ".".join(parts)

    def parse_include_statement(self) -> ast.IncludeStatement:
        tok = self.cur
        name = self._module_path()
        self._skip_semicolon()
        if os.path.isfile(self.file):
            base_dir = os.path.dirname(os.path.abspath(self.file))
        else:
            base_dir = self.base_dir or os.getcwd()
        path = resolve_module(name, base_dir, self.root_dir)
        if path is None:
            raise ParseError(f"cannot resolve include '{name}'", tok.pos)
        if path in self.including:
            raise ParseError(f"circular include of '{name}'", tok.pos)
        if path not in self.includes:
            sub = Parser(Lexer(read_source(path), path), root_dir=self.root_dir,
                         class_names=self.class_names, includes=self.includes,
                         including=self.including + (self.file, path))
            program = sub.parse_program()
            self.errors.extend(sub.errors)
            for file, lines in sub.line_index.items():
                self.line_index.setdefault(file, {}).update(lines)
            self.includes[path] = program
        return ast.IncludeStatement(tok.pos, name, path)

    def parse_import_statement(self) -> ast.ImportStatement:
        tok = self.cur
        path = self._module_path()
        self._skip_semicolon()
        stem = path[:-3] if path.endswith(".ks") else path
        name = stem.replace("/", ".").split(".")[-1]
        return ast.ImportStatement(tok.pos, path, name)

    def parse_using_statement(self) -> ast.UsingStatement:
        tok = self.cur
        self.expect_peek("(")
        name = self._identifier(self.expect_name())
        self.expect_peek("=")
        self.next_token()
        value = self.parse_expression(Precedence.LOWEST)
        self.expect_peek(")")
        block = self._expect_block()
        return ast.UsingStatement(tok.pos, name, value, block)

    def parse_break_continue(self) -> ast.Statement:
        tok = self.cur
        if self.loop_depth == 0:
            raise ParseError(f"'{tok.kind}' outside of a loop", tok.pos)
        self._skip_semicolon()
        if tok.kind == "break":
            return ast.BreakStatement(tok.pos)
        return ast.ContinueStatement(tok.pos)

    # -----------------------------------------------------------------
    # Functions
    # -----------------------------------------------------------------

    def _parse_params(self):
        """Parameters after '(' up to and including ')'."""
        params, defaults = [], []
        variadic = False
        while not self.peek_is(")"):
            name = self._identifier(self.expect_name())
            if variadic:
                raise ParseError("variadic parameter must be the last one", name.pos)
            params.append(name)
            if self.peek_is("..."):
                self.next_token()
                variadic = True
            elif self.peek_is("="):
                self.next_token()
                self.next_token()
                defaults.append((name.name, self.parse_expression(Precedence.LOWEST)))
            if not self.peek_is(","):
                break
            self.next_token()
        self.expect_peek(")")
        return tuple(params), tuple(defaults), variadic

    def _function_body(self) -> ast.BlockStatement:
        saved = self.loop_depth
        self.loop_depth = 0
        try:
            return self._expect_block()
        finally:
            self.loop_depth = saved

    def parse_function_literal(self, is_async: bool = False, static: bool = False) -> ast.FunctionLiteral:
        tok = self.cur
        name = ""
        if self.peek.kind == IDENT:
            name = self.expect_name().literal
        self.expect_peek("(")
        params, defaults, variadic = self._parse_params()
        body = self._function_body()
        return ast.FunctionLiteral(tok.pos, params, body, defaults, variadic, is_async, static, name)

    def parse_async_literal(self) -> ast.FunctionLiteral:
        self.expect_peek("fn")
        return self.parse_function_literal(is_async=True)

    def parse_function_statement(self, annotations=(), modifier: str = "public",
                                 static: bool = False, allow_operator: bool = False) -> ast.FunctionStatement:
        tok = self.cur
        is_async = False
        if self.cur_is("async"):
            is_async = True
            self.expect_peek("fn")
        fn_tok = self.cur
        if allow_operator and self.peek.kind in OPERATOR_METHODS:
            self.next_token()
            name = ast.Identifier(self.cur.pos, self.cur.kind)
        else:
            name = self._identifier(self.expect_name())
        self.expect_peek("(")
        params, defaults, variadic = self._parse_params()
        body = self._function_body()
        literal = ast.FunctionLiteral(fn_tok.pos, params, body, defaults, variadic, is_async, static, name.name)
        return ast.FunctionStatement(tok.pos, name, literal, tuple(annotations), modifier, tok.doc or fn_tok.doc)

    # -----------------------------------------------------------------
    # Classes, enums, annotations, services
    # -----------------------------------------------------------------

    def parse_annotations(self) -> List[ast.Annotation]:
        out = []
        while self.cur_is("@"):
            tok = self.cur
            name = self.expect_name().literal
            attrs = []
            if self.peek_is("(") and not self.peek.newline_before:
                self.next_token()
                while not self.peek_is(")"):
                    key = self.expect_name().literal
                    self.expect_peek("=")
                    self.next_token()
                    attrs.append((key, self.parse_expression(Precedence.LOWEST)))
                    if not self.peek_is(","):
                        break
                    self.next_token()
                self.expect_peek(")")
            out.append(ast.Annotation(tok.pos, name, tuple(attrs)))
            self.next_token()
        return out

    def parse_annotated_statement(self) -> ast.Statement:
        annotations = self.parse_annotations()
        if self.cur_is("class"):
            return self.parse_class_statement(annotations)
        if self.cur_is("fn", "async"):
            return self.parse_function_statement(annotations)
        raise ParseError(f"annotations must precede a class or a function, got {self._describe(self.cur)}",
                         self.cur.pos)

    def parse_class_statement(self, annotations=()) -> ast.ClassStatement:
        tok = self.cur
        if self.peek_is("@"):
            self.next_token()
            name = self._identifier(self.expect_name())
            self.class_names.add(name.name)
            literal = self._parse_class_body(tok, name.name, None, annotations, is_annotation=True)
            return ast.ClassStatement(tok.pos, name, literal, None, tok.doc)
        name = self._identifier(self.expect_name())
        parent = None
        category = None
        if self.peek_is(":"):
            self.next_token()
            parent = self.expect_name().literal
        elif self.peek_is("("):
            self.next_token()
            category = self.expect_name().literal
            self.expect_peek(")")
        self.class_names.add(name.name)
        literal = self._parse_class_body(tok, name.name, parent, annotations)
        return ast.ClassStatement(tok.pos, name, literal, category, tok.doc)

    def parse_class_literal_expression(self) -> ast.ClassLiteral:
        tok = self.cur
        name = ""
        if self.peek_is(IDENT):
            name = self.expect_name().literal
            self.class_names.add(name)
        parent = None
        if self.peek_is(":"):
            self.next_token()
            parent = self.expect_name().literal
        return self._parse_class_body(tok, name, parent, ())

    def _parse_class_body(self, tok: Token, name: str, parent: Optional[str], annotations,
                          is_annotation: bool = False) -> ast.ClassLiteral:
        self.expect_peek("{")
        self.next_token()
        members, properties, methods = [], [], []
        while not self.cur_is("}"):
            if self.cur_is(EOF):
                raise ParseError(f"expected '}}' to close class '{name}'", self.cur.pos)
            try:
                self._parse_class_member(members, properties, methods, is_annotation)
            except ParseError as e:
                self.errors.append(e.format())
                self._synchronize()
            self.next_token()
        return ast.ClassLiteral(tok.pos, name, parent, tuple(members), tuple(properties),
                                tuple(methods), tuple(annotations), is_annotation)

    def _parse_class_member(self, members, properties, methods, is_annotation: bool):
        if self.cur_is(";"):
            return
        annotations = self.parse_annotations() if self.cur_is("@") else []
        modifier = "public"
        static = False
        while self.cur_is("public", "private", "protected", "static"):
            if self.cur_is("static"):
                static = True
            else:
                modifier = self.cur.kind
            self.next_token()
        if self.cur_is("let"):
            if is_annotation:
                raise ParseError("annotation classes only declare properties", self.cur.pos)
            members.append(self.parse_let_statement(modifier, static, annotations))
        elif self.cur_is("property"):
            properties.append(self._parse_property(modifier, static, annotations))
        elif self.cur_is("fn", "async"):
            if is_annotation:
                raise ParseError("annotation classes only declare properties", self.cur.pos)
            stmt = self.parse_function_statement(annotations, modifier, static, allow_operator=True)
            if static:
                fl = stmt.function
                stmt = ast.FunctionStatement(
                    stmt.pos, stmt.name,
                    ast.FunctionLiteral(fl.pos, fl.params, fl.body, fl.defaults, fl.variadic,
                                        fl.is_async, True, fl.name),
                    stmt.annotations, modifier, stmt.doc)
            methods.append(stmt)
        else:
            raise ParseError(f"unexpected {self._describe(self.cur)} in class body", self.cur.pos)

    def _parse_property(self, modifier: str, static: bool, annotations) -> ast.PropertyDeclaration:
        tok = self.cur
        index_params: Tuple[ast.Identifier, ...] = ()
        if self.peek_is(IDENT) and self.peek.literal == "this" and self._la(2).kind == "[":
            self.next_token()
            self.next_token()
            params = []
            while not self.peek_is("]"):
                params.append(self._identifier(self.expect_name()))
                if not self.peek_is(","):
                    break
                self.next_token()
            self.expect_peek("]")
            index_params = tuple(params)
            name = f"this{len(index_params)}"
        else:
            name = self.expect_name().literal
        default = None
        if self.peek_is("default"):
            self.next_token()
            self.next_token()
            default = self.parse_expression(Precedence.LOWEST)
        if not self.peek_is("{"):
            self._skip_semicolon()
            return ast.PropertyDeclaration(tok.pos, name, None, None, True, True, index_params,
                                           default, static, modifier, tuple(annotations))
        self.next_token()
        getter = setter = None
        has_getter = has_setter = False
        while not self.peek_is("}"):
            if self.peek_is(";"):
                self.next_token()
                continue
            accessor = self.expect_name().literal
            body = None
            if self.peek_is("{"):
                body = self._function_body()
            else:
                self._skip_semicolon()
            if accessor == "get":
                has_getter, getter = True, body
            elif accessor == "set":
                has_setter, setter = True, body
            else:
                raise ParseError(f"expected 'get' or 'set' in property '{name}', got '{accessor}'", self.cur.pos)
        self.expect_peek("}")
        return ast.PropertyDeclaration(tok.pos, name, getter, setter, has_getter, has_setter,
                                       index_params, default, static, modifier, tuple(annotations))

    def _parse_enum_members(self):
        self.expect_peek("{")
        members = []
        while not self.peek_is("}"):
            name = self._identifier(self.expect_name())
            value = None
            if self.peek_is("="):
                self.next_token()
                self.next_token()
                value = self.parse_expression(Precedence.LOWEST)
            members.append((name, value))
            if self.peek_is(",", ";"):
                self.next_token()
        self.expect_peek("}")
        return tuple(members)

    def parse_enum_statement(self) -> ast.EnumStatement:
        tok = self.cur
        name = self._identifier(self.expect_name())
        literal = ast.EnumLiteral(tok.pos, self._parse_enum_members())
        return ast.EnumStatement(tok.pos, name, literal, tok.doc)

    def parse_enum_literal(self) -> ast.EnumLiteral:
        tok = self.cur
        return ast.EnumLiteral(tok.pos, self._parse_enum_members())

    def parse_service_statement(self) -> ast.ServiceStatement:
        tok = self.cur
        name = self._identifier(self.expect_name())
        self.expect_peek("on")
        addr = self.expect_peek(STRING).literal
        self.expect_peek("{")
        self.next_token()
        handlers = []
        while not self.cur_is("}"):
            if self.cur_is(EOF):
                raise ParseError(f"expected '}}' to close service '{name}'", self.cur.pos)
            if self.cur_is(";"):
                self.next_token()
                continue
            annotations = self.parse_annotations()
            if not annotations:
                raise ParseError("service handlers need a route annotation, e.g. @route(url = \"/\")",
                                 self.cur.pos)
            if not self.cur_is("fn", "async"):
                raise ParseError(f"expected a handler function, got {self._describe(self.cur)}", self.cur.pos)
            handlers.append(self.parse_function_statement(annotations))
            self.next_token()
        return ast.ServiceStatement(tok.pos, name, addr, tuple(handlers))

    # -----------------------------------------------------------------
    # Expressions
    # -----------------------------------------------------------------

    def parse_expression(self, precedence: int) -> ast.Expression:
        prefix = self.prefix_fns.get(self.cur.kind)
        if prefix is None:
            if self.cur.kind in SOFT_KEYWORDS:
                prefix = self.parse_identifier
            elif self.cur.kind == ILLEGAL:
                if self.cur.literal.startswith('"'):
                    raise ParseError("unterminated string", self.cur.pos)
                raise ParseError(f"illegal token {self.cur.literal!r}", self.cur.pos)
            else:
                raise ParseError(f"no prefix parse functions for '{self.cur.kind}' found", self.cur.pos)
        left = prefix()
        while not self.peek_is(";", EOF) and precedence < self.peek_precedence():
            infix = self.infix_fns.get(self.peek.kind)
            if infix is None:
                return left
            self.next_token()
            left = infix(left)
        return left

    def _identifier(self, tok: Token) -> ast.Identifier:
        return ast.Identifier(tok.pos, tok.literal)

    def parse_identifier(self) -> ast.Identifier:
        return ast.Identifier(self.cur.pos, self.cur.literal)

    @staticmethod
    def _int_value(text: str) -> int:
        if text.startswith(("0x", "0X")):
            return int(text[2:], 16)
        if text.startswith(("0b", "0B")):
            return int(text[2:], 2)
        if text.startswith(("0o", "0O")):
            return int(text[2:], 8)
        return int(text, 10)

    def parse_integer_literal(self) -> ast.IntegerLiteral:
        tok = self.cur
        try:
            value = self._int_value(tok.literal)
        except ValueError:
            raise ParseError(f"could not parse {tok.literal!r} as integer", tok.pos)
        if value > INT64_MAX:
            raise ParseError(f"could not parse {tok.literal!r} as integer (out of range)", tok.pos)
        return ast.IntegerLiteral(tok.pos, value)

    def parse_uinteger_literal(self) -> ast.UIntegerLiteral:
        tok = self.cur
        try:
            value = self._int_value(tok.literal)
        except ValueError:
            raise ParseError(f"could not parse {tok.literal!r} as unsigned integer", tok.pos)
        if value > UINT64_MAX:
            raise ParseError(f"could not parse {tok.literal!r} as unsigned integer (out of range)", tok.pos)
        return ast.UIntegerLiteral(tok.pos, value)

    def parse_float_literal(self) -> ast.FloatLiteral:
        tok = self.cur
        try:
            return ast.FloatLiteral(tok.pos, float(tok.literal))
        except ValueError:
            raise ParseError(f"could not parse {tok.literal!r} as float", tok.pos)

    def parse_string_literal(self) -> ast.StringLiteral:
        return ast.StringLiteral(self.cur.pos, self.cur.literal)

    def parse_interpolated_string(self) -> ast.InterpolatedString:
        tok = self.cur
        start = Position(tok.pos.file, tok.pos.line, tok.pos.col + 1, tok.pos.offset + 1)
        parts: List[ast.Expression] = []
        for part in interpolation_parts(tok.literal, start):
            if part[0] == "text":
                parts.append(ast.StringLiteral(tok.pos, part[1]))
                continue
            _, src, pos = part
            if not src.strip():
                raise ParseError("empty expression in interpolated string", pos)
            sub = Parser(Lexer(src, self.file, start=pos), root_dir=self.root_dir, base_dir=self.base_dir,
                         class_names=self.class_names, includes=self.includes)
            try:
                expr = sub.parse_expression(Precedence.LOWEST)
                if not sub.peek_is(EOF):
                    raise ParseError(f"unexpected {self._describe(sub.peek)} in interpolated string", sub.peek.pos)
            except ParseError as e:
                self.errors.append(e.format())
                continue
            self.errors.extend(sub.errors)
            parts.append(expr)
        return ast.InterpolatedString(tok.pos, tuple(parts), tok.literal)

    def parse_regex_literal(self) -> ast.RegexLiteral:
        tok = self.cur
        text = tok.literal
        close = text.rfind("/")
        return ast.RegexLiteral(tok.pos, text[1:close], text[close + 1:])

    def parse_boolean(self) -> ast.BooleanLiteral:
        return ast.BooleanLiteral(self.cur.pos, self.cur_is("true"))

    def parse_nil(self) -> ast.NilLiteral:
        return ast.NilLiteral(self.cur.pos)

    def parse_prefix_expression(self) -> ast.PrefixExpression:
        tok = self.cur
        self.next_token()
        right = self.parse_expression(Precedence.PREFIX)
        if tok.kind in ("++", "--") and not isinstance(right, (ast.Identifier, ast.IndexExpression, ast.MemberExpression)):
            raise ParseError(f"'{tok.kind}' needs a variable, got '{right}'", tok.pos)
        return ast.PrefixExpression(tok.pos, tok.kind, right)

    def parse_infix_expression(self, left: ast.Expression) -> ast.InfixExpression:
        tok = self.cur
        op = {"and": "&&", "or": "||"}.get(tok.kind, tok.kind)
        precedence = self.cur_precedence()
        self.next_token()
        right = self.parse_expression(precedence)
        return ast.InfixExpression(tok.pos, left, op, right)

    def parse_power_expression(self, left: ast.Expression) -> ast.InfixExpression:
        # right-associative: recurse one level lower
        tok = self.cur
        self.next_token()
        right = self.parse_expression(Precedence.PRODUCT - 1)
        return ast.InfixExpression(tok.pos, left, "**", right)

    def parse_assign_expression(self, left: ast.Expression) -> ast.AssignExpression:
        tok = self.cur
        if not isinstance(left, (ast.Identifier, ast.IndexExpression, ast.MemberExpression)):
            raise ParseError(f"cannot assign to '{left}'", tok.pos)
        self.next_token()
        value = self.parse_expression(Precedence.LOWEST)
        if tok.kind == "=" and isinstance(left, ast.Identifier) and isinstance(value, ast.ClassLiteral):
            self.class_names.add(left.name)
        return ast.AssignExpression(tok.pos, left, tok.kind, value)

    def parse_ternary_expression(self, condition: ast.Expression) -> ast.TernaryExpression:
        tok = self.cur
        self.next_token()
        if_true = self.parse_expression(Precedence.LOWEST)
        self.expect_peek(":")
        self.next_token()
        if_false = self.parse_expression(Precedence.TERNARY - 1)
        return ast.TernaryExpression(tok.pos, condition, if_true, if_false)

    def _parse_expression_list(self, end: str) -> Tuple[ast.Expression, ...]:
        """Comma-separated expressions up to `end`; a trailing comma is fine."""
        items = []
        while not self.peek_is(end):
            self.next_token()
            items.append(self.parse_expression(Precedence.LOWEST))
            if not self.peek_is(","):
                break
            self.next_token()
        self.expect_peek(end)
        return tuple(items)

    def parse_call_expression(self, function: ast.Expression) -> ast.CallExpression:
        tok = self.cur
        args = self._parse_expression_list(")")
        return ast.CallExpression(tok.pos, function, args)

    def parse_index_expression(self, left: ast.Expression) -> ast.Expression:
        tok = self.cur
        if self.peek_is(":"):
            self.next_token()
            stop = None
            if not self.peek_is("]"):
                self.next_token()
                stop = self.parse_expression(Precedence.LOWEST)
            self.expect_peek("]")
            return ast.SliceExpression(tok.pos, left, None, stop)
        self.next_token()
        index = self.parse_expression(Precedence.LOWEST)
        if self.peek_is(":"):
            self.next_token()
            stop = None
            if not self.peek_is("]"):
                self.next_token()
                stop = self.parse_expression(Precedence.LOWEST)
            self.expect_peek("]")
            return ast.SliceExpression(tok.pos, left, index, stop)
        self.expect_peek("]")
        return ast.IndexExpression(tok.pos, left, index)

    def parse_member_expression(self, obj: ast.Expression) -> ast.Expression:
        tok = self.cur
        if self.peek.kind == IDENT or self.peek.kind.isalpha():
            self.next_token()
            name = self.cur.literal
        else:
            raise ParseError(f"expected a member name after '.', got {self._describe(self.peek)}", self.peek.pos)
        if self.peek_is("(") and not self.peek.newline_before:
            self.next_token()
            args = self._parse_expression_list(")")
            return ast.MethodCallExpression(tok.pos, obj, name, args)
        return ast.MemberExpression(tok.pos, obj, name)

    def parse_range_expression(self, start: ast.Expression) -> ast.RangeLiteral:
        tok = self.cur
        self.next_token()
        stop = self.parse_expression(Precedence.DOTDOT)
        return ast.RangeLiteral(tok.pos, start, stop)

    def parse_postfix_expression(self, left: ast.Expression) -> ast.PostfixExpression:
        tok = self.cur
        if not isinstance(left, (ast.Identifier, ast.IndexExpression, ast.MemberExpression)):
            raise ParseError(f"'{tok.kind}' needs a variable, got '{left}'", tok.pos)
        return ast.PostfixExpression(tok.pos, left, tok.kind)

    def parse_pipe_expression(self, left: ast.Expression) -> ast.PipeExpression:
        tok = self.cur
        self.next_token()
        right = self.parse_expression(Precedence.PIPE)
        if not isinstance(right, (ast.CallExpression, ast.MethodCallExpression,
                                  ast.Identifier, ast.MemberExpression, ast.FunctionLiteral)):
            raise ParseError(f"right side of '|>' must be a function, got '{right}'", tok.pos)
        return ast.PipeExpression(tok.pos, left, right)

    def parse_fat_arrow(self, left: ast.Expression) -> ast.FunctionLiteral:
        tok = self.cur
        if isinstance(left, ast.Identifier):
            params = (left,)
        elif isinstance(left, ast.TupleLiteral) and all(isinstance(m, ast.Identifier) for m in left.members):
            params = tuple(left.members)
        else:
            raise ParseError(f"invalid parameters for '=>': '{left}'", tok.pos)
        saved = self.loop_depth
        self.loop_depth = 0
        try:
            if self.peek_is("{"):
                self.next_token()
                body = self.parse_block_statement()
            else:
                self.next_token()
                expr = self.parse_expression(Precedence.LOWEST)
                body = ast.BlockStatement(expr.pos, (ast.ExpressionStatement(expr.pos, expr),))
        finally:
            self.loop_depth = saved
        return ast.FunctionLiteral(left.pos, params, body)

    def parse_grouped_expression(self) -> ast.Expression:
        tok = self.cur
        if self.peek_is(")"):
            self.next_token()
            return ast.TupleLiteral(tok.pos, ())
        self.next_token()
        first = self.parse_expression(Precedence.LOWEST)
        if not self.peek_is(","):
            self.expect_peek(")")
            return first
        members = [first]
        while self.peek_is(","):
            self.next_token()
            if self.peek_is(")"):
                break
            self.next_token()
            members.append(self.parse_expression(Precedence.LOWEST))
        self.expect_peek(")")
        return ast.TupleLiteral(tok.pos, tuple(members))

    def _comprehension_source(self):
        """After `for`: returns (key, var, value_expr, condition)."""
        var = self.expect_name().literal
        key = None
        if self.peek_is(","):
            self.next_token()
            key, var = var, self.expect_name().literal
        self.expect_peek("in")
        self.next_token()
        value = self.parse_expression(Precedence.LOWEST)
        condition = None
        if self.peek_is("where"):
            self.next_token()
            self.next_token()
            condition = self.parse_expression(Precedence.LOWEST)
        return key, var, value, condition

    def parse_array_expression(self) -> ast.Expression:
        tok = self.cur
        if self.peek_is("]"):
            self.next_token()
            return ast.ArrayLiteral(tok.pos, ())
        self.next_token()
        first = self.parse_expression(Precedence.LOWEST)
        if self.peek_is("for"):
            self.next_token()
            key, var, value, cond = self._comprehension_source()
            self.expect_peek("]")
            if key is not None:
                return ast.ListMapComprehension(tok.pos, key, var, value, first, cond)
            if isinstance(value, ast.RangeLiteral):
                return ast.ListRangeComprehension(tok.pos, var, value.start, value.stop, first, cond)
            return ast.ListComprehension(tok.pos, var, value, first, cond)
        members = [first]
        while self.peek_is(","):
            self.next_token()
            if self.peek_is("]"):
                break
            self.next_token()
            members.append(self.parse_expression(Precedence.LOWEST))
        self.expect_peek("]")
        return ast.ArrayLiteral(tok.pos, tuple(members))

    def parse_hash_expression(self) -> ast.Expression:
        tok = self.cur
        pairs = []
        if self.peek_is("}"):
            self.next_token()
            return ast.HashLiteral(tok.pos, ())
        while True:
            self.next_token()
            key = self.parse_expression(Precedence.LOWEST)
            self.expect_peek(":")
            self.next_token()
            value = self.parse_expression(Precedence.LOWEST)
            if not pairs and self.peek_is("for"):
                self.next_token()
                k, var, source, cond = self._comprehension_source()
                self.expect_peek("}")
                if k is not None:
                    return ast.HashMapComprehension(tok.pos, k, var, source, key, value, cond)
                if isinstance(source, ast.RangeLiteral):
                    return ast.HashRangeComprehension(tok.pos, var, source.start, source.stop, key, value, cond)
                return ast.HashComprehension(tok.pos, var, source, key, value, cond)
            if isinstance(key, ast.Identifier):
                key = ast.StringLiteral(key.pos, key.name)
            pairs.append((key, value))
            if not self.peek_is(","):
                break
            self.next_token()
            if self.peek_is("}"):
                break
        self.expect_peek("}")
        return ast.HashLiteral(tok.pos, tuple(pairs))

    def parse_struct_expression(self) -> ast.StructLiteral:
        tok = self.cur
        self.expect_peek("{")
        pairs = []
        while not self.peek_is("}"):
            name = self._identifier(self.expect_name())
            self.expect_peek("=>")
            self.next_token()
            pairs.append((name, self.parse_expression(Precedence.LOWEST)))
            if not self.peek_is(","):
                break
            self.next_token()
        self.expect_peek("}")
        return ast.StructLiteral(tok.pos, tuple(pairs))

    def parse_qw_expression(self) -> ast.ArrayLiteral:
        tok = self.cur
        self.expect_peek("(")
        members = []
        while not self.peek_is(")"):
            self.next_token()
            if self.cur_is(","):
                continue
            if self.cur_is(EOF):
                raise ParseError("unterminated qw()", tok.pos)
            members.append(ast.StringLiteral(self.cur.pos, self.cur.literal))
        self.expect_peek(")")
        return ast.ArrayLiteral(tok.pos, tuple(members))

    def _condition(self) -> ast.Expression:
        self.next_token()
        return self.parse_expression(Precedence.LOWEST)

    def parse_if_expression(self) -> ast.IfExpression:
        tok = self.cur
        branches = []
        cond_pos = self.cur.pos
        cond = self._condition()
        branches.append(ast.IfBranch(cond_pos, cond, self._expect_block()))
        alternative = None
        while True:
            if self.peek_is("elif"):
                self.next_token()
                cond_pos = self.cur.pos
                cond = self._condition()
                branches.append(ast.IfBranch(cond_pos, cond, self._expect_block()))
                continue
            if self.peek_is("else"):
                self.next_token()
                if self.peek_is("if"):
                    self.next_token()
                    cond_pos = self.cur.pos
                    cond = self._condition()
                    branches.append(ast.IfBranch(cond_pos, cond, self._expect_block()))
                    continue
                alternative = self._expect_block()
            break
        return ast.IfExpression(tok.pos, tuple(branches), alternative)

    def parse_unless_expression(self) -> ast.UnlessExpression:
        tok = self.cur
        cond = self._condition()
        consequence = self._expect_block()
        alternative = None
        if self.peek_is("else"):
            self.next_token()
            alternative = self._expect_block()
        return ast.UnlessExpression(tok.pos, cond, consequence, alternative)

    def parse_do_loop(self) -> ast.DoLoop:
        tok = self.cur
        return ast.DoLoop(tok.pos, self._loop_body())

    def parse_while_loop(self) -> ast.WhileLoop:
        tok = self.cur
        cond = self._condition()
        return ast.WhileLoop(tok.pos, cond, self._loop_body())

    def parse_for_loop(self) -> ast.Expression:
        tok = self.cur
        if self.peek_is("{"):
            return ast.ForEverLoop(tok.pos, self._loop_body())
        if self.peek_is("("):
            return self._parse_c_for(tok)
        var = self.expect_name().literal
        key = None
        if self.peek_is(","):
            self.next_token()
            key, var = var, self.expect_name().literal
        self.expect_peek("in")
        self.next_token()
        value = self.parse_expression(Precedence.LOWEST)
        condition = None
        if self.peek_is("where"):
            self.next_token()
            self.next_token()
            condition = self.parse_expression(Precedence.LOWEST)
        block = self._loop_body()
        if key is not None:
            return ast.ForEachMapLoop(tok.pos, key, var, value, block, condition)
        if isinstance(value, ast.RangeLiteral):
            return ast.ForEachDotRange(tok.pos, var, value.start, value.stop, block, condition)
        return ast.ForEachArrayLoop(tok.pos, var, value, block, condition)

    def _parse_c_for(self, tok: Token) -> ast.Expression:
        self.next_token()
        parts: List[Optional[ast.Expression]] = []
        for end in (";", ";", ")"):
            if self.peek_is(end):
                self.next_token()
                parts.append(None)
                continue
            self.next_token()
            parts.append(self.parse_expression(Precedence.LOWEST))
            self.expect_peek(end)
        block = self._loop_body()
        init, cond, update = parts
        if init is None and cond is None and update is None:
            return ast.ForEverLoop(tok.pos, block)
        return ast.ForLoop(tok.pos, init, cond, update, block)

    def _grep_or_map(self, node_cls):
        tok = self.cur
        if self.peek_is("{"):
            self.next_token()
            block = self.parse_block_statement()
            self.next_token()
            value = self.parse_expression(Precedence.LOWEST)
            return node_cls(tok.pos, value, block, None)
        if self.peek_is("(", "=", ".", ",", ")", "]", "}", ";", EOF) or self.peek.newline_before:
            return self.parse_identifier()
        self.next_token()
        expr = self.parse_expression(Precedence.LOWEST)
        self.expect_peek(",")
        self.next_token()
        value = self.parse_expression(Precedence.LOWEST)
        return node_cls(tok.pos, value, None, expr)

    def parse_grep_expression(self) -> ast.Expression:
        return self._grep_or_map(ast.GrepExpression)

    def parse_map_expression(self) -> ast.Expression:
        return self._grep_or_map(ast.MapExpression)

    def parse_case_expression(self) -> ast.CaseExpression:
        tok = self.cur
        self.next_token()
        subject = self.parse_expression(Precedence.LOWEST)
        if self.peek_is("is"):
            whole = True
        elif self.peek_is("in"):
            whole = False
        else:
            raise ParseError(f"expected 'in' or 'is' after case subject, got {self._describe(self.peek)}",
                             self.peek.pos)
        self.next_token()
        self.expect_peek("{")
        arms = []
        else_block = None
        while not self.peek_is("}"):
            if self.peek_is(";"):
                self.next_token()
                continue
            if self.peek_is("else"):
                self.next_token()
                else_block = self._expect_block()
                continue
            self.next_token()
            arm_pos = self.cur.pos
            matches = [self.parse_expression(Precedence.LOWEST)]
            while self.peek_is(","):
                self.next_token()
                self.next_token()
                matches.append(self.parse_expression(Precedence.LOWEST))
            arms.append(ast.CaseArm(arm_pos, tuple(matches), self._expect_block()))
        self.expect_peek("}")
        return ast.CaseExpression(tok.pos, subject, tuple(arms), else_block, whole)

    def parse_new_expression(self) -> ast.NewExpression:
        tok = self.cur
        name_tok = self.expect_name()
        cls: ast.Expression = self._identifier(name_tok)
        dotted = False
        while self.peek_is("."):
            self.next_token()
            cls = ast.MemberExpression(self.cur.pos, cls, self.expect_name().literal)
            dotted = True
        if not dotted and name_tok.literal not in self.class_names:
            raise ParseError(f"'{name_tok.literal}' is not a class declared before 'new'", name_tok.pos)
        if not self.peek_is("("):
            raise ParseError(f"expected '(' after 'new {cls}'", self.peek.pos)
        self.next_token()
        args = self._parse_expression_list(")")
        return ast.NewExpression(tok.pos, cls, args)

    def parse_await_expression(self) -> ast.AwaitExpression:
        tok = self.cur
        self.next_token()
        call = self.parse_expression(Precedence.PREFIX)
        if not isinstance(call, (ast.CallExpression, ast.MethodCallExpression)):
            raise ParseError(f"'await' must be followed by a function call, got '{call}'", tok.pos)
        return ast.AwaitExpression(tok.pos, call)

    # -----------------------------------------------------------------
    # Query expressions
    # -----------------------------------------------------------------

    def parse_query_or_identifier(self) -> ast.Expression:
        if not (self.peek_is(IDENT) and self._la(2).kind == "in"):
            return self.parse_identifier()
        tok = self.cur
        source = self._parse_from_clause()
        return ast.QueryExpression(tok.pos, source, self._parse_query_body())

    def _parse_from_clause(self) -> ast.FromClause:
        tok = self.cur
        var = self.expect_name().literal
        self.expect_peek("in")
        self.next_token()
        return ast.FromClause(tok.pos, var, self.parse_expression(Precedence.LOWEST))

    def _parse_query_body(self) -> ast.QueryBody:
        pos = self.peek.pos
        clauses = []
        while True:
            if self.peek_is("where"):
                self.next_token()
                cpos = self.cur.pos
                self.next_token()
                clauses.append(ast.WhereClause(cpos, self.parse_expression(Precedence.LOWEST)))
            elif self.peek_is("let"):
                self.next_token()
                cpos = self.cur.pos
                var = self.expect_name().literal
                self.expect_peek("=")
                self.next_token()
                clauses.append(ast.LetClause(cpos, var, self.parse_expression(Precedence.LOWEST)))
            elif self.peek_is("from"):
                self.next_token()
                clauses.append(self._parse_from_clause())
            elif self.peek_is("join"):
                self.next_token()
                cpos = self.cur.pos
                var = self.expect_name().literal
                self.expect_peek("in")
                self.next_token()
                source = self.parse_expression(Precedence.LOWEST)
                self.expect_peek("on")
                self.next_token()
                left_key = self.parse_expression(Precedence.LOWEST)
                self.expect_peek("equals")
                self.next_token()
                right_key = self.parse_expression(Precedence.LOWEST)
                into = None
                if self.peek_is("into"):
                    self.next_token()
                    into = self.expect_name().literal
                clauses.append(ast.JoinClause(cpos, var, source, left_key, right_key, into))
            elif self.peek_is("orderby"):
                self.next_token()
                cpos = self.cur.pos
                orderings = []
                while True:
                    self.next_token()
                    opos = self.cur.pos
                    expr = self.parse_expression(Precedence.LOWEST)
                    descending = False
                    if self.peek_is("ascending", "descending"):
                        self.next_token()
                        descending = self.cur_is("descending")
                    orderings.append(ast.Ordering(opos, expr, descending))
                    if not self.peek_is(","):
                        break
                    self.next_token()
                clauses.append(ast.OrderByClause(cpos, tuple(orderings)))
            else:
                break
        if self.peek_is("select"):
            self.next_token()
            cpos = self.cur.pos
            self.next_token()
            result = ast.SelectClause(cpos, self.parse_expression(Precedence.LOWEST))
        elif self.peek_is("group"):
            self.next_token()
            cpos = self.cur.pos
            self.next_token()
            element = self.parse_expression(Precedence.LOWEST)
            self.expect_peek("by")
            self.next_token()
            result = ast.GroupClause(cpos, element, self.parse_expression(Precedence.LOWEST))
        else:
            raise ParseError(f"query must end with 'select' or 'group', got {self._describe(self.peek)}",
                             self.peek.pos)
        continuation = None
        if self.peek_is("into"):
            self.next_token()
            cpos = self.cur.pos
            var = self.expect_name().literal
            continuation = ast.QueryContinuation(cpos, var, self._parse_query_body())
        return ast.QueryBody(pos, tuple(clauses), result, continuation)


def parse(source: str, origin: str = "<script>", root_dir: Optional[str] = None,
          base_dir: Optional[str] = None, class_names: Optional[Set[str]] = None):
    """
    Parse `source` and return ``(program, errors)``. `base_dir` is where
    relative includes start when `origin` is not a file on disk. Pass a
    long-lived `class_names` set to let `new` see classes declared by
    earlier parses in the same session.
    """
    parser = Parser(Lexer(source, origin), root_dir=root_dir, base_dir=base_dir,
                    class_names=class_names)
    program = parser.parse_program()
    return program, parser.errors


def parse_or_raise(source: str, origin: str = "<script>", root_dir: Optional[str] = None,
                   base_dir: Optional[str] = None) -> ast.Program:
    program, errors = parse(source, origin, root_dir, base_dir)
    if errors:
        raise KestrelSyntaxError(errors)
    return program
