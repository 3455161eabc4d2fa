"""
AST node classes for Kestrel programs.

Nodes are frozen dataclasses produced once by the parser and read by the
evaluator. Every node carries the `Position` of its first token; `end` is
computed from the node's children.

Three families:
  - `Statement` and `Expression` nodes are evaluated through the evaluator's
    dispatch table, which must cover every concrete class of both families.
  - `Clause` nodes (if-branches, case arms, query clauses, annotations,
    property declarations) only appear inside another node and are handled by
    their parent's handler.
"""
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Iterator, Optional, Tuple

from kestrel.kestrel_tokens import Position
from kestrel.kestrel_lexer import advance


# =================================================================
# Base classes
# =================================================================

def _nodes_in(value) -> Iterator['Node']:
    if isinstance(value, Node):
        yield value
    elif isinstance(value, (tuple, list)):
        for item in value:
            yield from _nodes_in(item)


@dataclass(frozen=True, eq=False)
class Node:
    pos: Position

    def children(self) -> Iterator['Node']:
        for f in fields(self):
            if f.name in ("pos", "doc"):
                continue
            yield from _nodes_in(getattr(self, f.name))

    @property
    def end(self) -> Position:
        best = None
        for child in self.children():
            e = child.end
            if best is None or e.offset > best.offset:
                best = e
        if best is None:
            return advance(self.pos, str(self))
        return best

    @property
    def line(self) -> int:
        return self.pos.line

    def __str__(self):
        return type(self).__name__


class Statement(Node):
    pass


class Expression(Node):
    pass


class Clause(Node):
    pass


def _join(items, sep=", "):
    return sep.join(str(i) for i in items)


# =================================================================
# Program and blocks
# =================================================================

@dataclass(frozen=True, eq=False)
class Program(Node):
    statements: Tuple[Statement, ...] = ()
    includes: Dict[str, 'Program'] = field(default_factory=dict)

    def __str__(self):
        return "\n".join(str(s) for s in self.statements)


@dataclass(frozen=True, eq=False)
class BlockStatement(Statement):
    statements: Tuple[Statement, ...] = ()

    def __str__(self):
        return "{ " + "; ".join(str(s) for s in self.statements) + " }"


@dataclass(frozen=True, eq=False)
class ExpressionStatement(Statement):
    expression: Expression

    def __str__(self):
        return str(self.expression)


# =================================================================
# Declarations
# =================================================================

@dataclass(frozen=True, eq=False)
class LetStatement(Statement):
    names: Tuple['Identifier', ...]
    values: Tuple[Expression, ...]
    destructure: bool = False
    modifier: str = "public"
    static: bool = False
    annotations: Tuple['Annotation', ...] = ()
    doc: Optional[str] = None

    def __str__(self):
        lhs = _join(self.names)
        if self.destructure:
            lhs = f"({lhs})"
        if not self.values:
            return f"let {lhs}"
        return f"let {lhs} = {_join(self.values)}"


@dataclass(frozen=True, eq=False)
class ConstStatement(Statement):
    """`const X = 1` or `const (A, B = 5, C)`; a missing value continues the count."""
    names: Tuple['Identifier', ...]
    values: Tuple[Optional[Expression], ...]
    grouped: bool = False
    doc: Optional[str] = None

    def __str__(self):
        parts = [str(n) if v is None else f"{n} = {v}" for n, v in zip(self.names, self.values)]
        if self.grouped:
            return f"const ({_join(parts)})"
        return f"const {parts[0]}"


@dataclass(frozen=True, eq=False)
class FunctionStatement(Statement):
    name: 'Identifier'
    function: 'FunctionLiteral'
    annotations: Tuple['Annotation', ...] = ()
    modifier: str = "public"
    doc: Optional[str] = None

    def __str__(self):
        return f"fn {self.name}({self.function.params_text()}) {self.function.body}"


@dataclass(frozen=True, eq=False)
class ClassStatement(Statement):
    name: 'Identifier'
    literal: 'ClassLiteral'
    category: Optional[str] = None
    doc: Optional[str] = None

    def __str__(self):
        return f"class {self.name}"


@dataclass(frozen=True, eq=False)
class EnumStatement(Statement):
    name: 'Identifier'
    literal: 'EnumLiteral'
    doc: Optional[str] = None

    def __str__(self):
        return f"enum {self.name} {self.literal}"


@dataclass(frozen=True, eq=False)
class ServiceStatement(Statement):
    name: 'Identifier'
    addr: str
    handlers: Tuple[FunctionStatement, ...] = ()

    def __str__(self):
        return f"service {self.name} on {self.addr!r}"


@dataclass(frozen=True, eq=False)
class IncludeStatement(Statement):
    path: str
    resolved: str = ""

    def __str__(self):
        return f"include {self.path!r}"


@dataclass(frozen=True, eq=False)
class ImportStatement(Statement):
    path: str
    name: str

    def __str__(self):
        return f"import {self.path}"


# =================================================================
# Control statements
# =================================================================

@dataclass(frozen=True, eq=False)
class ReturnStatement(Statement):
    values: Tuple[Expression, ...] = ()

    def __str__(self):
        return f"return {_join(self.values)}".rstrip()


@dataclass(frozen=True, eq=False)
class BreakStatement(Statement):
    def __str__(self):
        return "break"


@dataclass(frozen=True, eq=False)
class ContinueStatement(Statement):
    def __str__(self):
        return "continue"


@dataclass(frozen=True, eq=False)
class DeferStatement(Statement):
    call: Expression

    def __str__(self):
        return f"defer {self.call}"


@dataclass(frozen=True, eq=False)
class SpawnStatement(Statement):
    call: Expression

    def __str__(self):
        return f"spawn {self.call}"


@dataclass(frozen=True, eq=False)
class ThrowStatement(Statement):
    value: Expression

    def __str__(self):
        return f"throw {self.value}"


@dataclass(frozen=True, eq=False)
class TryStatement(Statement):
    block: BlockStatement
    catch_var: Optional[str] = None
    catch_block: Optional[BlockStatement] = None
    finally_block: Optional[BlockStatement] = None

    def __str__(self):
        out = f"try {self.block}"
        if self.catch_block is not None:
            out += f" catch {self.catch_var or ''} {self.catch_block}"
        if self.finally_block is not None:
            out += f" finally {self.finally_block}"
        return out


@dataclass(frozen=True, eq=False)
class UsingStatement(Statement):
    name: 'Identifier'
    value: Expression
    block: BlockStatement

    def __str__(self):
        return f"using ({self.name} = {self.value}) {self.block}"


# =================================================================
# Literals
# =================================================================

@dataclass(frozen=True, eq=False)
class Identifier(Expression):
    name: str

    def __str__(self):
        return self.name


@dataclass(frozen=True, eq=False)
class IntegerLiteral(Expression):
    value: int

    def __str__(self):
        return str(self.value)


@dataclass(frozen=True, eq=False)
class UIntegerLiteral(Expression):
    value: int

    def __str__(self):
        return f"{self.value}u"


@dataclass(frozen=True, eq=False)
class FloatLiteral(Expression):
    value: float

    def __str__(self):
        return repr(self.value)


@dataclass(frozen=True, eq=False)
class StringLiteral(Expression):
    value: str

    def __str__(self):
        return '"' + self.value.replace('"', '\\"') + '"'


@dataclass(frozen=True, eq=False)
class InterpolatedString(Expression):
    parts: Tuple[Expression, ...]
    raw: str = ""

    def __str__(self):
        return '"' + self.raw + '"'


@dataclass(frozen=True, eq=False)
class RegexLiteral(Expression):
    pattern: str
    flags: str = ""

    def __str__(self):
        return f"/{self.pattern}/{self.flags}"


@dataclass(frozen=True, eq=False)
class BooleanLiteral(Expression):
    value: bool

    def __str__(self):
        return "true" if self.value else "false"


@dataclass(frozen=True, eq=False)
class NilLiteral(Expression):
    def __str__(self):
        return "nil"


@dataclass(frozen=True, eq=False)
class ArrayLiteral(Expression):
    members: Tuple[Expression, ...] = ()

    def __str__(self):
        return f"[{_join(self.members)}]"


@dataclass(frozen=True, eq=False)
class HashLiteral(Expression):
    pairs: Tuple[Tuple[Expression, Expression], ...] = ()

    def __str__(self):
        return "{" + ", ".join(f"{k}: {v}" for k, v in self.pairs) + "}"


@dataclass(frozen=True, eq=False)
class StructLiteral(Expression):
    pairs: Tuple[Tuple['Identifier', Expression], ...] = ()

    def __str__(self):
        return "struct {" + ", ".join(f"{k} => {v}" for k, v in self.pairs) + "}"


@dataclass(frozen=True, eq=False)
class TupleLiteral(Expression):
    members: Tuple[Expression, ...] = ()

    def __str__(self):
        if len(self.members) == 1:
            return f"({self.members[0]},)"
        return f"({_join(self.members)})"


@dataclass(frozen=True, eq=False)
class RangeLiteral(Expression):
    start: Expression
    stop: Expression

    def __str__(self):
        return f"{self.start}..{self.stop}"


@dataclass(frozen=True, eq=False)
class FunctionLiteral(Expression):
    params: Tuple['Identifier', ...] = ()
    body: BlockStatement = None
    defaults: Tuple[Tuple[str, Expression], ...] = ()
    variadic: bool = False
    is_async: bool = False
    static: bool = False
    name: str = ""

    def params_text(self):
        names = [str(p) for p in self.params]
        if self.variadic and names:
            names[-1] += "..."
        return ", ".join(names)

    def __str__(self):
        prefix = "async fn" if self.is_async else "fn"
        return f"{prefix}({self.params_text()}) {self.body}"


@dataclass(frozen=True, eq=False)
class ClassLiteral(Expression):
    name: str
    parent: Optional[str] = None
    members: Tuple[LetStatement, ...] = ()
    properties: Tuple['PropertyDeclaration', ...] = ()
    methods: Tuple[FunctionStatement, ...] = ()
    annotations: Tuple['Annotation', ...] = ()
    is_annotation: bool = False

    def __str__(self):
        base = f" : {self.parent}" if self.parent else ""
        return f"class {self.name}{base} {{...}}"


@dataclass(frozen=True, eq=False)
class EnumLiteral(Expression):
    members: Tuple[Tuple['Identifier', Optional[Expression]], ...] = ()

    def __str__(self):
        items = [str(n) if v is None else f"{n} = {v}" for n, v in self.members]
        return "enum {" + ", ".join(items) + "}"


# =================================================================
# Operators and access
# =================================================================

@dataclass(frozen=True, eq=False)
class PrefixExpression(Expression):
    operator: str
    right: Expression

    def __str__(self):
        return f"({self.operator}{self.right})"


@dataclass(frozen=True, eq=False)
class InfixExpression(Expression):
    left: Expression
    operator: str
    right: Expression

    def __str__(self):
        return f"({self.left} {self.operator} {self.right})"


@dataclass(frozen=True, eq=False)
class PostfixExpression(Expression):
    left: Expression
    operator: str

    def __str__(self):
        return f"({self.left}{self.operator})"


@dataclass(frozen=True, eq=False)
class AssignExpression(Expression):
    target: Expression
    operator: str
    value: Expression

    def __str__(self):
        return f"{self.target} {self.operator} {self.value}"


@dataclass(frozen=True, eq=False)
class TernaryExpression(Expression):
    condition: Expression
    if_true: Expression
    if_false: Expression

    def __str__(self):
        return f"({self.condition} ? {self.if_true} : {self.if_false})"


@dataclass(frozen=True, eq=False)
class CallExpression(Expression):
    function: Expression
    arguments: Tuple[Expression, ...] = ()

    def __str__(self):
        return f"{self.function}({_join(self.arguments)})"


@dataclass(frozen=True, eq=False)
class MemberExpression(Expression):
    object: Expression
    name: str

    def __str__(self):
        return f"{self.object}.{self.name}"


@dataclass(frozen=True, eq=False)
class MethodCallExpression(Expression):
    object: Expression
    name: str
    arguments: Tuple[Expression, ...] = ()

    def __str__(self):
        return f"{self.object}.{self.name}({_join(self.arguments)})"


@dataclass(frozen=True, eq=False)
class IndexExpression(Expression):
    left: Expression
    index: Expression

    def __str__(self):
        return f"({self.left}[{self.index}])"


@dataclass(frozen=True, eq=False)
class SliceExpression(Expression):
    left: Expression
    start: Optional[Expression] = None
    stop: Optional[Expression] = None

    def __str__(self):
        return f"({self.left}[{self.start or ''}:{self.stop or ''}])"


@dataclass(frozen=True, eq=False)
class PipeExpression(Expression):
    left: Expression
    right: Expression

    def __str__(self):
        return f"{self.left} |> {self.right}"


@dataclass(frozen=True, eq=False)
class NewExpression(Expression):
    cls: Expression
    arguments: Tuple[Expression, ...] = ()

    def __str__(self):
        return f"new {self.cls}({_join(self.arguments)})"


@dataclass(frozen=True, eq=False)
class AwaitExpression(Expression):
    call: Expression

    def __str__(self):
        return f"await {self.call}"


# =================================================================
# Conditionals and loops
# =================================================================

@dataclass(frozen=True, eq=False)
class IfBranch(Clause):
    condition: Expression
    body: Node

    def __str__(self):
        return f"{self.condition} {self.body}"


@dataclass(frozen=True, eq=False)
class IfExpression(Expression):
    branches: Tuple[IfBranch, ...]
    alternative: Optional[Node] = None

    def __str__(self):
        out = " elif ".join(str(b) for b in self.branches)
        if self.alternative is not None:
            out += f" else {self.alternative}"
        return f"if {out}"


@dataclass(frozen=True, eq=False)
class UnlessExpression(Expression):
    condition: Expression
    consequence: BlockStatement
    alternative: Optional[BlockStatement] = None

    def __str__(self):
        return f"unless {self.condition} {self.consequence}"


@dataclass(frozen=True, eq=False)
class DoLoop(Expression):
    block: BlockStatement

    def __str__(self):
        return f"do {self.block}"


@dataclass(frozen=True, eq=False)
class WhileLoop(Expression):
    condition: Expression
    block: Node

    def __str__(self):
        return f"while {self.condition} {self.block}"


@dataclass(frozen=True, eq=False)
class ForLoop(Expression):
    init: Optional[Expression]
    condition: Optional[Expression]
    update: Optional[Expression]
    block: Node

    def __str__(self):
        return f"for ({self.init or ''}; {self.condition or ''}; {self.update or ''}) {self.block}"


@dataclass(frozen=True, eq=False)
class ForEverLoop(Expression):
    block: Node

    def __str__(self):
        return f"for {self.block}"


@dataclass(frozen=True, eq=False)
class ForEachArrayLoop(Expression):
    var: str
    value: Expression
    block: Node
    condition: Optional[Expression] = None

    def __str__(self):
        return f"for {self.var} in {self.value} {self.block}"


@dataclass(frozen=True, eq=False)
class ForEachMapLoop(Expression):
    key: str
    var: str
    value: Expression
    block: Node
    condition: Optional[Expression] = None

    def __str__(self):
        return f"for {self.key}, {self.var} in {self.value} {self.block}"


@dataclass(frozen=True, eq=False)
class ForEachDotRange(Expression):
    var: str
    start: Expression
    stop: Expression
    block: Node
    condition: Optional[Expression] = None

    def __str__(self):
        return f"for {self.var} in {self.start}..{self.stop} {self.block}"


@dataclass(frozen=True, eq=False)
class GrepExpression(Expression):
    value: Expression
    block: Optional[BlockStatement] = None
    expr: Optional[Expression] = None

    def __str__(self):
        return f"grep {self.block or self.expr}, {self.value}"


@dataclass(frozen=True, eq=False)
class MapExpression(Expression):
    value: Expression
    block: Optional[BlockStatement] = None
    expr: Optional[Expression] = None

    def __str__(self):
        return f"map {self.block or self.expr}, {self.value}"


@dataclass(frozen=True, eq=False)
class CaseArm(Clause):
    matches: Tuple[Expression, ...]
    block: BlockStatement

    def __str__(self):
        return f"{_join(self.matches)} {self.block}"


@dataclass(frozen=True, eq=False)
class CaseExpression(Expression):
    subject: Expression
    arms: Tuple[CaseArm, ...] = ()
    else_block: Optional[BlockStatement] = None
    whole_match: bool = True

    def __str__(self):
        kw = "is" if self.whole_match else "in"
        return f"case {self.subject} {kw} {{ {'; '.join(str(a) for a in self.arms)} }}"


# =================================================================
# Comprehensions
# =================================================================

@dataclass(frozen=True, eq=False)
class ListComprehension(Expression):
    var: str
    value: Expression
    expr: Expression
    condition: Optional[Expression] = None

    def __str__(self):
        return f"[{self.expr} for {self.var} in {self.value}]"


@dataclass(frozen=True, eq=False)
class ListRangeComprehension(Expression):
    var: str
    start: Expression
    stop: Expression
    expr: Expression
    condition: Optional[Expression] = None

    def __str__(self):
        return f"[{self.expr} for {self.var} in {self.start}..{self.stop}]"


@dataclass(frozen=True, eq=False)
class ListMapComprehension(Expression):
    key: str
    var: str
    value: Expression
    expr: Expression
    condition: Optional[Expression] = None

    def __str__(self):
        return f"[{self.expr} for {self.key}, {self.var} in {self.value}]"


@dataclass(frozen=True, eq=False)
class HashComprehension(Expression):
    var: str
    value: Expression
    key_expr: Expression
    value_expr: Expression
    condition: Optional[Expression] = None

    def __str__(self):
        return f"{{{self.key_expr}: {self.value_expr} for {self.var} in {self.value}}}"


@dataclass(frozen=True, eq=False)
class HashRangeComprehension(Expression):
    var: str
    start: Expression
    stop: Expression
    key_expr: Expression
    value_expr: Expression
    condition: Optional[Expression] = None

    def __str__(self):
        return f"{{{self.key_expr}: {self.value_expr} for {self.var} in {self.start}..{self.stop}}}"


@dataclass(frozen=True, eq=False)
class HashMapComprehension(Expression):
    key: str
    var: str
    value: Expression
    key_expr: Expression
    value_expr: Expression
    condition: Optional[Expression] = None

    def __str__(self):
        return f"{{{self.key_expr}: {self.value_expr} for {self.key}, {self.var} in {self.value}}}"


# =================================================================
# Classes: members and annotations
# =================================================================

@dataclass(frozen=True, eq=False)
class Annotation(Clause):
    name: str
    attributes: Tuple[Tuple[str, Expression], ...] = ()

    def __str__(self):
        attrs = ", ".join(f"{k} = {v}" for k, v in self.attributes)
        return f"@{self.name}({attrs})"


@dataclass(frozen=True, eq=False)
class PropertyDeclaration(Clause):
    """
    `property name { get; set; }` and friends. A getter/setter that is present
    with an empty body (`get;`) reads or writes the hidden `_name` field.
    Indexers are stored under the name `this<N>` where N is the number of index
    parameters.
    """
    name: str
    getter: Optional[BlockStatement] = None
    setter: Optional[BlockStatement] = None
    has_getter: bool = False
    has_setter: bool = False
    index_params: Tuple[Identifier, ...] = ()
    default: Optional[Expression] = None
    static: bool = False
    modifier: str = "public"
    annotations: Tuple[Annotation, ...] = ()

    def __str__(self):
        return f"property {self.name}"


# =================================================================
# Query expressions
# =================================================================

@dataclass(frozen=True, eq=False)
class FromClause(Clause):
    var: str
    source: Expression


@dataclass(frozen=True, eq=False)
class WhereClause(Clause):
    condition: Expression


@dataclass(frozen=True, eq=False)
class LetClause(Clause):
    var: str
    value: Expression


@dataclass(frozen=True, eq=False)
class JoinClause(Clause):
    var: str
    source: Expression
    left_key: Expression
    right_key: Expression
    into: Optional[str] = None


@dataclass(frozen=True, eq=False)
class Ordering(Clause):
    expr: Expression
    descending: bool = False


@dataclass(frozen=True, eq=False)
class OrderByClause(Clause):
    orderings: Tuple[Ordering, ...] = ()


@dataclass(frozen=True, eq=False)
class SelectClause(Clause):
    expr: Expression


@dataclass(frozen=True, eq=False)
class GroupClause(Clause):
    element: Expression
    key: Expression


@dataclass(frozen=True, eq=False)
class QueryBody(Clause):
    clauses: Tuple[Clause, ...]
    result: Clause
    continuation: Optional['QueryContinuation'] = None


@dataclass(frozen=True, eq=False)
class QueryContinuation(Clause):
    var: str
    body: QueryBody


@dataclass(frozen=True, eq=False)
class QueryExpression(Expression):
    source: FromClause
    body: QueryBody

    def __str__(self):
        return f"from {self.source.var} in {self.source.source} ..."


# Node kinds the debugger may stop on.
STOPPABLE = (
    LetStatement, ConstStatement, ReturnStatement, ExpressionStatement,
    TryStatement, SpawnStatement, DeferStatement, ThrowStatement,
    IfExpression, UnlessExpression, DoLoop, WhileLoop, ForLoop, ForEverLoop,
    ForEachArrayLoop, ForEachMapLoop, ForEachDotRange, CaseExpression,
    AssignExpression, CallExpression, MethodCallExpression,
)


def concrete_node_classes(base) -> Tuple[type, ...]:
    """Every concrete subclass of `base` defined in this module."""
    out = []
    for obj in list(globals().values()):
        if isinstance(obj, type) and issubclass(obj, base) and obj is not base \
                and obj not in (Statement, Expression, Clause):
            out.append(obj)
    return tuple(out)


def walk(node: Any) -> Iterator[Node]:
    """Depth-first pre-order traversal."""
    if not isinstance(node, Node):
        return
    yield node
    for child in node.children():
        yield from walk(child)
