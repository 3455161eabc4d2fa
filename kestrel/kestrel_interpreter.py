"""
The Kestrel tree-walking evaluator.

`Evaluator.eval(node, scope)` is a coroutine dispatching on the node's class
through a table built once when this module is imported. Every handler returns
a `KestrelObject`; control flow travels as sentinel objects (`ReturnValue`,
`Break`, `Continue`, `Throw`, `Error`) which blocks and loops stop on and pass
upwards.
"""
import contextvars
import functools
import inspect
import math
import os
import re
import sys
from typing import Any, Dict, List, Optional, Tuple as TypingTuple

from kestrel import kestrel_ast as ast
from kestrel.kestrel_builtins import TypeMethods
from kestrel.kestrel_classes import ClassRuntime, ParentRef, CALLABLES
from kestrel.kestrel_datatypes import (
    KestrelObject, KestrelRuntimeError, INT64_MAX,
    Integer, UInteger, Float, String, Boolean, Array, Tuple, Hash, Struct, Enum,
    Regex, Function, Builtin, BoundMethod, Class, ObjectInstance, ImportedModule,
    ReturnValue, Break, Continue, Throw, Error, BREAK, CONTINUE, ABRUPT,
    TRUE, FALSE, NIL, NUMBER_TYPES, native_bool, is_sentinel, is_truthy,
    values_equal, compare_values, to_native,
    Scope, CallFrame, CallStack,
)
from kestrel.kestrel_debug import MessageHandler, MessageKind
from kestrel.kestrel_file import resolve_module, read_source
from kestrel.kestrel_parser import parse
from kestrel.kestrel_service import Service
from kestrel.kestrel_tasks import KestrelHost, TaskRuntime

MAX_CALL_DEPTH = 256
# Nested coroutine frames one script call costs (eval, handler, invoke, block, ...)
PYTHON_FRAMES_PER_CALL = 40

COMPARISON_OPS = ("==", "!=", "<", "<=", ">", ">=")
BITWISE_OPS = ("&", "|", "^", "<<", ">>")

# Import bookkeeping for the current task: nesting depth (the outermost
# import holds the session lock) and the chain of files being imported.
_import_depth: contextvars.ContextVar = contextvars.ContextVar("kestrel_import_depth", default=0)
_import_chain: contextvars.ContextVar = contextvars.ContextVar("kestrel_import_chain", default=())

_MESSAGE_KINDS = {
    ast.CallExpression: MessageKind.CALL,
    ast.MethodCallExpression: MessageKind.METHOD_CALL,
    ast.ReturnStatement: MessageKind.RETURN,
}

_BUILTIN_FAULTS = (ValueError, TypeError, KeyError, IndexError, ZeroDivisionError,
                   OverflowError, OSError, re.error)


def _compare(op: str, a, b) -> bool:
    match op:
        case "==":
            return a == b
        case "!=":
            return a != b
        case "<":
            return a < b
        case "<=":
            return a <= b
        case ">":
            return a > b
        case ">=":
            return a >= b
    raise ValueError(op)


def _int_result(left: KestrelObject, right: KestrelObject, exact: int) -> KestrelObject:
    if isinstance(left, Integer) and isinstance(right, Integer):
        return Integer(exact)
    if isinstance(left, UInteger) and isinstance(right, UInteger):
        return UInteger(exact)
    if exact > INT64_MAX:
        return UInteger(exact)
    return Integer(exact)


def _truncated_mod(a: int, b: int) -> int:
    r = abs(a) % abs(b)
    return -r if a < 0 else r


class Evaluator:
    """The Kestrel execution engine."""

    _dispatch: Dict[type, Any] = {}

    def __init__(self, host: Optional[KestrelHost] = None):
        self.host = host or KestrelHost()
        self.side_effects: List[Dict[str, Any]] = []
        self.messages = MessageHandler()
        self.builtin_scope = Scope()
        self.includes: Dict[str, ast.Program] = {}
        self.current_node = None
        self.classes = ClassRuntime(self)
        self.tasks = TaskRuntime(self)
        self.type_methods = TypeMethods(self)
        budget = MAX_CALL_DEPTH * PYTHON_FRAMES_PER_CALL
        if sys.getrecursionlimit() < budget:
            sys.setrecursionlimit(budget)

    # -----------------------------------------------------------------
    # Plumbing
    # -----------------------------------------------------------------

    def _dbg(self, *parts):
        if os.environ.get("KESTREL_DEBUG"):
            print("[DBG]", *parts, file=sys.stderr)

    def error(self, node, message: str) -> Error:
        pos = getattr(node, "pos", None)
        if pos is None and self.current_node is not None:
            pos = self.current_node.pos
        return Error(message, pos)

    async def eval(self, node: ast.Node, scope: Scope) -> KestrelObject:
        self.current_node = node
        if self.messages and isinstance(node, ast.STOPPABLE):
            await self.messages.send(_MESSAGE_KINDS.get(type(node), MessageKind.EVAL_LINE), node, scope)
        handler = self._dispatch.get(type(node))
        if handler is None:
            return self.error(node, f"cannot evaluate {type(node).__name__}")
        return await handler(self, node, scope)

    async def eval_program(self, program: ast.Program, scope: Scope) -> KestrelObject:
        """
        Run a whole program: defers registered at top level run when it ends,
        an escaping Throw becomes an Error and Python faults are contained.
        """
        self.includes.update(program.includes)
        frame = CallFrame(scope, program, "<main>")
        scope.call_stack.push(frame)
        try:
            result = await self.eval(program, scope)
        except RecursionError:
            result = self.error(self.current_node, "maximum recursion depth exceeded")
        except Exception as e:
            self._dbg("fault in eval_program:", repr(e))
            result = self.error(self.current_node, f"internal error: {e}")
        finally:
            await self._run_defers(frame)
            scope.call_stack.pop()
        if isinstance(result, Throw):
            return Error(f"uncaught exception: {result.value.inspect()}", result.pos)
        return result

    async def _eval_args(self, exprs, scope: Scope):
        args = []
        for expr in exprs:
            value = await self.eval(expr, scope)
            if is_sentinel(value):
                return value
            args.append(value)
        return args

    # -----------------------------------------------------------------
    # Calls
    # -----------------------------------------------------------------

    async def apply_function(self, fn: KestrelObject, args: List[KestrelObject], scope: Scope, node,
                             awaited: bool = False) -> KestrelObject:
        if isinstance(fn, Function):
            if fn.owner is not None:
                return await self.classes.invoke_method(fn.owner, fn, args, node, scope, awaited)
            return await self.invoke(fn, args, node, scope, awaited=awaited)
        if isinstance(fn, Builtin):
            return await self.call_builtin(fn, args, scope, node)
        if isinstance(fn, BoundMethod):
            receiver = fn.receiver
            if isinstance(fn.method, Function):
                if isinstance(receiver, ParentRef):
                    receiver = receiver.instance
                return await self.classes.invoke_method(receiver, fn.method, args, node, scope, awaited)
            if isinstance(fn.method, Builtin):
                return await self.call_builtin(fn.method, [receiver] + list(args), scope, node, offset=1)
            return await self.call_method(receiver, fn.name, args, scope, node, awaited=awaited)
        if isinstance(fn, Class):
            return await self.classes.instantiate(fn, args, node, scope)
        return self.error(node, f"not a function: {fn.type()}")

    async def _bind_params(self, fn: Function, args: List[KestrelObject], call_scope: Scope, node):
        lit = fn.literal
        params = lit.params[:-1] if lit.variadic else lit.params
        defaults = dict(lit.defaults)
        required = sum(1 for p in params if p.name not in defaults)
        if len(args) > len(params) and not lit.variadic:
            return self.error(node, f"wrong number of arguments to {fn.name or 'fn'}: want={len(params)}, got={len(args)}")
        for i, param in enumerate(params):
            if i < len(args):
                call_scope.set(param.name, args[i])
            elif param.name in defaults:
                value = await self.eval(defaults[param.name], call_scope)
                if is_sentinel(value):
                    return value
                call_scope.set(param.name, value)
            else:
                return self.error(node, f"wrong number of arguments to {fn.name or 'fn'}: want={required}, got={len(args)}")
        if lit.variadic:
            call_scope.set(lit.params[-1].name, Array(args[len(params):]))
        return None

    async def invoke(self, fn: Function, args: List[KestrelObject], node, scope: Optional[Scope],
                     call_stack: Optional[CallStack] = None, home: Optional[Scope] = None,
                     bindings: Optional[Dict[str, KestrelObject]] = None,
                     run_async: bool = True, awaited: bool = False) -> KestrelObject:
        """
        Call a script function. Async functions go to a worker unless
        `run_async` is False (the worker itself calls back with False).
        `home` replaces the closure scope for methods running on an instance.
        """
        if fn.is_async and run_async:
            return await self.tasks.call_async(fn, args, node, scope, awaited, home=home, bindings=bindings)
        stack = call_stack or (scope.call_stack if scope is not None else CallStack())
        if len(stack) >= MAX_CALL_DEPTH:
            return self.error(node, f"maximum call depth ({MAX_CALL_DEPTH}) exceeded in {fn.name or 'fn'}")
        call_scope = Scope(parent=home or fn.scope, call_stack=stack)
        for name, value in (bindings or {}).items():
            call_scope.set(name, value)
        err = await self._bind_params(fn, args, call_scope, node)
        if err is not None:
            return err
        frame = CallFrame(call_scope, node, fn.name, fn=fn)
        stack.push(frame)
        try:
            result = await self.eval(fn.literal.body, call_scope)
        finally:
            await self._run_defers(frame)
            stack.pop()
        if isinstance(result, ReturnValue):
            return result.value
        if isinstance(result, (Break, Continue)):
            return NIL
        return result

    async def call_builtin(self, builtin: Builtin, args: List[KestrelObject], scope: Scope, node,
                           offset: int = 0) -> KestrelObject:
        kwargs = {"scope": scope} if builtin.wants_scope else {}
        try:
            builtin.signature.bind(*args, **kwargs)
        except TypeError:
            return self.error(node, f"wrong number of arguments to {builtin.name}: got={len(args) - offset}")
        try:
            result = builtin.fn(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
        except KestrelRuntimeError as e:
            return self.error(node, e.message)
        except _BUILTIN_FAULTS as e:
            return self.error(node, f"{builtin.name}: {e}")
        if result is None:
            return NIL
        return result

    async def call_method(self, receiver: KestrelObject, name: str, args: List[KestrelObject], scope: Scope,
                          node, via_this: bool = False, awaited: bool = False) -> KestrelObject:
        if isinstance(receiver, (ObjectInstance, Class, ParentRef)):
            result = await self.classes.call_method(receiver, name, args, node, scope, via_this, awaited)
            if result is not None:
                return result
        elif isinstance(receiver, ImportedModule):
            if not receiver.exported(name):
                return self.error(node, f"'{name}' is not exported by module '{receiver.name}'")
            target = receiver.scope.store.get(name)
            if target is None:
                return self.error(node, f"module '{receiver.name}' has no member '{name}'")
            return await self.apply_function(target, args, scope, node, awaited)
        elif isinstance(receiver, Hash):
            target = receiver.get_str(name)
            if isinstance(target, CALLABLES):
                return await self.apply_function(target, args, scope, node, awaited)
        elif isinstance(receiver, Struct):
            target = receiver.scope.store.get(name)
            if isinstance(target, CALLABLES):
                return await self.apply_function(target, args, scope, node, awaited)
        method = self.type_methods.lookup(receiver, name)
        if method is None:
            msg = f"unknown method '{name}' for {receiver.type()}"
            suggestion = self.type_methods.suggest(receiver, name)
            if suggestion:
                msg += f". Did you mean '{suggestion}'?"
            return self.error(node, msg)
        return await self.call_builtin(method, [receiver] + list(args), scope, node, offset=1)

    async def _run_defers(self, frame: CallFrame):
        while frame.defers:
            target, name, args, node, scope = frame.defers.pop()
            try:
                if name is None:
                    result = await self.apply_function(target, args, scope, node)
                else:
                    result = await self.call_method(target, name, args, scope, node)
            except Exception as e:
                result = self.error(node, f"deferred call failed: {e}")
            if isinstance(result, (Error, Throw)):
                text = result.inspect()
                self._dbg("deferred call failed:", text)
                self.side_effects.append({"topics": ["stderr"], "message": f"defer: {text}"})

    # -----------------------------------------------------------------
    # Program and statements
    # -----------------------------------------------------------------

    async def _eval_program(self, node: ast.Program, scope: Scope):
        result = NIL
        for stmt in node.statements:
            result = await self.eval(stmt, scope)
            if isinstance(result, ReturnValue):
                return result.value
            if isinstance(result, (Error, Throw)):
                return result
        return result

    async def _eval_block_statement(self, node: ast.BlockStatement, scope: Scope):
        result = NIL
        for stmt in node.statements:
            result = await self.eval(stmt, scope)
            if is_sentinel(result):
                return result
        return result

    async def _eval_expression_statement(self, node: ast.ExpressionStatement, scope: Scope):
        return await self.eval(node.expression, scope)

    @staticmethod
    def _name_value(name: str, value: KestrelObject):
        if isinstance(value, Function) and not value.name:
            value.name = name
        elif isinstance(value, Class) and value.name == "anonymous":
            value.name = name

    async def _eval_let_statement(self, node: ast.LetStatement, scope: Scope):
        values = await self._eval_args(node.values, scope)
        if is_sentinel(values):
            return values
        names = [ident.name for ident in node.names]
        for name in names:
            if scope.is_readonly(name):
                return self.error(node, f"cannot redeclare constant '{name}'")
        if node.destructure and len(values) == 1:
            source = values[0]
            if isinstance(source, (Array, Tuple)):
                items = list(source.members)
            elif isinstance(source, Hash):
                items = [source.get_str(name) or NIL for name in names]
            else:
                return self.error(node, f"cannot destructure {source.type()}")
            for i, name in enumerate(names):
                scope.set(name, items[i] if i < len(items) else NIL)
            return source
        for i, name in enumerate(names):
            value = values[i] if i < len(values) else NIL
            self._name_value(name, value)
            scope.set(name, value)
        return values[-1] if values else NIL

    async def _eval_const_statement(self, node: ast.ConstStatement, scope: Scope):
        previous = None
        value = NIL
        for ident, expr in zip(node.names, node.values):
            if expr is None:
                if previous is None:
                    value = Integer(0)
                elif isinstance(previous, (Integer, UInteger)):
                    value = type(previous)(previous.value + 1)
                else:
                    return self.error(node, f"cannot continue constant sequence after {previous.type()}")
            else:
                value = await self.eval(expr, scope)
                if is_sentinel(value):
                    return value
            if scope.is_readonly(ident.name):
                return self.error(node, f"cannot redeclare constant '{ident.name}'")
            self._name_value(ident.name, value)
            scope.set_const(ident.name, value)
            previous = value
        return value

    async def _eval_function_statement(self, node: ast.FunctionStatement, scope: Scope):
        name = node.name.name
        if scope.is_readonly(name):
            return self.error(node, f"cannot redeclare constant '{name}'")
        annotations = await self.classes.build_annotations(node.annotations, scope)
        if is_sentinel(annotations):
            return annotations
        fn = Function(node.function, scope, name, annotations, modifier=node.modifier)
        return scope.set(name, fn)

    async def _eval_class_statement(self, node: ast.ClassStatement, scope: Scope):
        if node.category:
            return await self.classes.extend_category(node, scope)
        cls = await self.classes.define_class(node.literal, scope, node, node.name.name)
        if is_sentinel(cls):
            return cls
        return scope.set(node.name.name, cls)

    async def _eval_enum_statement(self, node: ast.EnumStatement, scope: Scope):
        enum = await self.eval(node.literal, scope)
        if is_sentinel(enum):
            return enum
        enum.name = node.name.name
        return scope.set(enum.name, enum)

    async def _eval_service_statement(self, node: ast.ServiceStatement, scope: Scope):
        service = Service(node.name.name, node.addr, self, scope, node)
        for handler in node.handlers:
            route = next((a for a in handler.annotations if a.name.lower() == "route"), None)
            if route is None:
                return self.error(handler, f"handler '{handler.name}' has no @route annotation")
            attrs: Dict[str, KestrelObject] = {}
            attr_scope = Scope(parent=scope)
            for key, expr in route.attributes:
                value = await self.eval(expr, attr_scope)
                if is_sentinel(value):
                    return value
                attrs[key] = value
            url = attrs.get("url")
            if not isinstance(url, String):
                return self.error(route, f"@route on handler '{handler.name}' needs a 'url'")
            methods = attrs.get("methods", NIL)
            if isinstance(methods, String):
                methods = [methods.value]
            elif isinstance(methods, (Array, Tuple)):
                methods = [m.inspect() for m in methods.members]
            else:
                methods = ["GET"]
            host = attrs.get("host")
            fn = Function(handler.function, scope, handler.name.name)
            service.add_route(
                url.value, methods, fn,
                host=host.value if isinstance(host, String) else None,
                headers=to_native(attrs["headers"]) if isinstance(attrs.get("headers"), Hash) else None,
                queries=to_native(attrs["queries"]) if isinstance(attrs.get("queries"), Hash) else None,
            )
        self.host.services[service.name] = service
        return scope.set(service.name, service)

    async def _eval_include_statement(self, node: ast.IncludeStatement, scope: Scope):
        program = self.includes.get(node.resolved)
        if program is None:
            return self.error(node, f"include '{node.path}' was not loaded")
        self.includes.update(program.includes)
        result = NIL
        for stmt in program.statements:
            result = await self.eval(stmt, scope)
            if isinstance(result, ABRUPT):
                return result
        return result

    def _base_dir(self, node) -> Optional[str]:
        origin = node.pos.file
        if origin and os.path.isfile(origin):
            return os.path.dirname(os.path.abspath(origin))
        return self.host.source_dir

    async def _eval_import_statement(self, node: ast.ImportStatement, scope: Scope):
        module = await self.import_module(node)
        if is_sentinel(module):
            return module
        return scope.set(node.name, module)

    async def import_module(self, node: ast.ImportStatement) -> KestrelObject:
        """Load `node.path` once per session; the outermost import holds the session lock."""
        path = resolve_module(node.path, self._base_dir(node), self.host.root_dir)
        if path is None:
            return self.error(node, f"cannot resolve import '{node.path}'")
        chain = _import_chain.get()
        if path in chain:
            return self.error(node, f"circular import of '{node.path}'")
        if _import_depth.get() > 0:
            return await self._load_module(path, node, chain)
        async with self.host.import_lock:
            return await self._load_module(path, node, chain)

    async def _load_module(self, path: str, node: ast.ImportStatement, chain) -> KestrelObject:
        cached = self.host.module_cache.get(path)
        if cached is not None:
            return cached
        try:
            source = read_source(path)
        except OSError as e:
            return self.error(node, f"cannot read module '{node.path}': {e}")
        program, errors = parse(source, path, self.host.root_dir)
        if errors:
            return self.error(node, f"import '{node.path}' failed: " + "; ".join(errors))
        module_scope = Scope(parent=self.builtin_scope, call_stack=CallStack())
        depth_token = _import_depth.set(_import_depth.get() + 1)
        chain_token = _import_chain.set(chain + (path,))
        try:
            result = await self.eval_program(program, module_scope)
        finally:
            _import_chain.reset(chain_token)
            _import_depth.reset(depth_token)
        if isinstance(result, Error):
            return self.error(node, f"import '{node.path}' failed: {result.inspect()}")
        module = ImportedModule(node.name, path, module_scope)
        self.host.module_cache[path] = module
        self._dbg("imported", path)
        return module

    async def _eval_return_statement(self, node: ast.ReturnStatement, scope: Scope):
        values = await self._eval_args(node.values, scope)
        if is_sentinel(values):
            return values
        if not values:
            return ReturnValue(NIL)
        if len(values) == 1:
            return ReturnValue(values[0])
        return ReturnValue(Tuple(values))

    async def _eval_break_statement(self, node, scope):
        return BREAK

    async def _eval_continue_statement(self, node, scope):
        return CONTINUE

    async def _eval_defer_statement(self, node: ast.DeferStatement, scope: Scope):
        frame = scope.call_stack.top
        if frame is None:
            return self.error(node, "defer outside of a function")
        call = node.call
        args = await self._eval_args(call.arguments, scope)
        if is_sentinel(args):
            return args
        if isinstance(call, ast.MethodCallExpression):
            receiver = await self.eval(call.object, scope)
            if is_sentinel(receiver):
                return receiver
            frame.defers.append((receiver, call.name, args, call, scope))
        else:
            fn = await self.eval(call.function, scope)
            if is_sentinel(fn):
                return fn
            frame.defers.append((fn, None, args, call, scope))
        return NIL

    async def _eval_spawn_statement(self, node: ast.SpawnStatement, scope: Scope):
        return self.tasks.spawn(node.call, scope)

    async def _eval_throw_statement(self, node: ast.ThrowStatement, scope: Scope):
        value = await self.eval(node.value, scope)
        if is_sentinel(value):
            return value
        return Throw(value, node.pos)

    async def _eval_try_statement(self, node: ast.TryStatement, scope: Scope):
        result: KestrelObject = NIL
        try:
            result = await self.eval(node.block, Scope(parent=scope))
            if isinstance(result, Throw) and node.catch_block is not None:
                catch_scope = Scope(parent=scope)
                if node.catch_var:
                    catch_scope.set(node.catch_var, result.value)
                result = await self.eval(node.catch_block, catch_scope)
        finally:
            if node.finally_block is not None:
                final = await self.eval(node.finally_block, Scope(parent=scope))
                if is_sentinel(final):
                    result = final
        return result

    async def _close_resource(self, value: KestrelObject, node, scope: Scope) -> KestrelObject:
        if isinstance(value, ObjectInstance) and value.cls.get_method("close") is not None:
            return await self.call_method(value, "close", [], scope, node)
        if isinstance(value, Hash) and isinstance(value.get_str("close"), CALLABLES):
            return await self.call_method(value, "close", [], scope, node)
        return NIL

    async def _eval_using_statement(self, node: ast.UsingStatement, scope: Scope):
        value = await self.eval(node.value, scope)
        if is_sentinel(value):
            return value
        inner = Scope(parent=scope)
        inner.set(node.name.name, value)
        try:
            result = await self.eval(node.block, inner)
        finally:
            closed = await self._close_resource(value, node, scope)
        if isinstance(closed, (Error, Throw)) and not isinstance(result, (Error, Throw)):
            return closed
        return result

    # -----------------------------------------------------------------
    # Literals
    # -----------------------------------------------------------------

    async def _eval_identifier(self, node: ast.Identifier, scope: Scope):
        value = scope.get(node.name)
        if value is None:
            if node.name == "this":
                frame = scope.call_stack.top
                fn = frame.fn if frame is not None else None
                if fn is not None and fn.is_static and fn.owner is not None:
                    return self.error(node, f"'this' used in static method '{fn.owner.name}.{fn.name}'")
            msg = f"unknown identifier: '{node.name}'"
            suggestion = scope.suggest(node.name)
            if suggestion:
                msg += f" Did you mean '{suggestion}'?"
            return self.error(node, msg)
        return value

    async def _eval_integer_literal(self, node, scope):
        return Integer(node.value)

    async def _eval_u_integer_literal(self, node, scope):
        return UInteger(node.value)

    async def _eval_float_literal(self, node, scope):
        return Float(node.value)

    async def _eval_string_literal(self, node, scope):
        return String(node.value)

    async def _eval_boolean_literal(self, node, scope):
        return native_bool(node.value)

    async def _eval_nil_literal(self, node, scope):
        return NIL

    async def _eval_interpolated_string(self, node: ast.InterpolatedString, scope: Scope):
        out = []
        for part in node.parts:
            value = await self.eval(part, scope)
            if is_sentinel(value):
                return value
            out.append(value.value if isinstance(value, String) else value.inspect())
        return String("".join(out))

    async def _eval_regex_literal(self, node: ast.RegexLiteral, scope: Scope):
        try:
            return Regex(node.pattern, node.flags)
        except re.error as e:
            return self.error(node, f"invalid regex /{node.pattern}/: {e}")

    async def _eval_array_literal(self, node: ast.ArrayLiteral, scope: Scope):
        members = await self._eval_args(node.members, scope)
        if is_sentinel(members):
            return members
        return Array(members)

    async def _eval_tuple_literal(self, node: ast.TupleLiteral, scope: Scope):
        members = await self._eval_args(node.members, scope)
        if is_sentinel(members):
            return members
        return Tuple(members)

    async def _eval_hash_literal(self, node: ast.HashLiteral, scope: Scope):
        h = Hash()
        for key_expr, value_expr in node.pairs:
            key = await self.eval(key_expr, scope)
            if is_sentinel(key):
                return key
            value = await self.eval(value_expr, scope)
            if is_sentinel(value):
                return value
            try:
                h.push(key, value)
            except KestrelRuntimeError as e:
                return self.error(key_expr, e.message)
        return h

    async def _eval_struct_literal(self, node: ast.StructLiteral, scope: Scope):
        record = Struct(Scope())
        for ident, expr in node.pairs:
            value = await self.eval(expr, scope)
            if is_sentinel(value):
                return value
            record.scope.set(ident.name, value)
        return record

    async def _eval_range_literal(self, node: ast.RangeLiteral, scope: Scope):
        items = await self._range(node.start, node.stop, scope, node)
        if is_sentinel(items):
            return items
        return Array(items)

    async def _range(self, start_expr, stop_expr, scope: Scope, node):
        start = await self.eval(start_expr, scope)
        if is_sentinel(start):
            return start
        stop = await self.eval(stop_expr, scope)
        if is_sentinel(stop):
            return stop
        if isinstance(start, (Integer, UInteger)) and isinstance(stop, (Integer, UInteger)):
            make = UInteger if isinstance(start, UInteger) and isinstance(stop, UInteger) else Integer
            a, b = start.value, stop.value
            step = 1 if a <= b else -1
            return [make(i) for i in range(a, b + step, step)]
        if isinstance(start, String) and isinstance(stop, String) \
                and len(start.value) == 1 and len(stop.value) == 1:
            a, b = ord(start.value), ord(stop.value)
            step = 1 if a <= b else -1
            return [String(chr(i)) for i in range(a, b + step, step)]
        return self.error(node, f"invalid range: {start.type()}..{stop.type()}")

    async def _eval_function_literal(self, node: ast.FunctionLiteral, scope: Scope):
        return Function(node, scope, node.name)

    async def _eval_class_literal(self, node: ast.ClassLiteral, scope: Scope):
        return await self.classes.define_class(node, scope, node, node.name)

    async def _eval_enum_literal(self, node: ast.EnumLiteral, scope: Scope):
        members: Dict[str, KestrelObject] = {}
        counter = 0
        for ident, expr in node.members:
            if expr is not None:
                value = await self.eval(expr, scope)
                if is_sentinel(value):
                    return value
                if not isinstance(value, Integer):
                    return self.error(expr, f"enum value for '{ident.name}' must be an INTEGER, got {value.type()}")
                counter = value.value
            members[ident.name] = Integer(counter)
            counter += 1
        return Enum("", members)

    # -----------------------------------------------------------------
    # Operators
    # -----------------------------------------------------------------

    async def _eval_prefix_expression(self, node: ast.PrefixExpression, scope: Scope):
        op = node.operator
        if op in ("++", "--"):
            return await self._increment(node.right, op, scope, node, prefix=True)
        right = await self.eval(node.right, scope)
        if is_sentinel(right):
            return right
        if isinstance(right, ObjectInstance):
            result = await self.classes.operator(right, op, [], node, scope)
            if result is not None:
                return result
            if op == "!":
                return FALSE
            return self.error(node, f"undefined operator method '{op}' for class '{right.cls.name}'")
        match op:
            case "!":
                return native_bool(not is_truthy(right))
            case "-" if isinstance(right, NUMBER_TYPES):
                return type(right)(-right.value)
            case "+" if isinstance(right, NUMBER_TYPES):
                return right
            case "~" if isinstance(right, (Integer, UInteger)):
                return type(right)(~right.value)
        return self.error(node, f"unknown operator: {op}{right.type()}")

    async def _increment(self, target, op: str, scope: Scope, node, prefix: bool):
        current = await self.eval(target, scope)
        if is_sentinel(current):
            return current
        if not isinstance(current, NUMBER_TYPES):
            return self.error(node, f"unknown operator: {op}{current.type()}")
        delta = 1 if op == "++" else -1
        updated = type(current)(current.value + delta)
        result = await self._assign_to(target, updated, scope, node)
        if is_sentinel(result):
            return result
        return updated if prefix else current

    async def _eval_postfix_expression(self, node: ast.PostfixExpression, scope: Scope):
        return await self._increment(node.left, node.operator, scope, node, prefix=False)

    async def _eval_infix_expression(self, node: ast.InfixExpression, scope: Scope):
        op = node.operator
        left = await self.eval(node.left, scope)
        if is_sentinel(left):
            return left
        if op == "&&":
            if not is_truthy(left):
                return FALSE
            right = await self.eval(node.right, scope)
            return right if is_sentinel(right) else native_bool(is_truthy(right))
        if op == "||":
            if is_truthy(left):
                return TRUE
            right = await self.eval(node.right, scope)
            return right if is_sentinel(right) else native_bool(is_truthy(right))
        if op == "??":
            if left is not NIL:
                return left
            return await self.eval(node.right, scope)
        right = await self.eval(node.right, scope)
        if is_sentinel(right):
            return right
        return await self.infix(op, left, right, node, scope)

    async def infix(self, op: str, left: KestrelObject, right: KestrelObject, node, scope: Scope) -> KestrelObject:
        if isinstance(left, NUMBER_TYPES) and isinstance(right, NUMBER_TYPES):
            return self._numeric(op, left, right, node)
        if isinstance(left, ObjectInstance):
            result = await self.classes.operator(left, op, [right], node, scope)
            if result is not None:
                return result
            if op == "==":
                return native_bool(left is right)
            if op == "!=":
                return native_bool(left is not right)
            return self.error(node, f"undefined operator method '{op}' for class '{left.cls.name}'")
        if isinstance(left, Array):
            if op == "+":
                if isinstance(right, Array):
                    return Array(left.members + right.members)
                return Array(left.members + [right])
            if op == "*" and isinstance(right, Integer):
                return Array(left.members * max(right.value, 0))
        if isinstance(left, Tuple) and isinstance(right, Tuple) and op == "+":
            return Tuple(left.members + right.members)
        if isinstance(left, String):
            result = self._string_op(op, left, right, node)
            if result is not None:
                return result
        if op == "+" and (isinstance(left, String) or isinstance(right, String)):
            return String(left.inspect() + right.inspect())
        if isinstance(left, Hash) and isinstance(right, Hash) and op == "+":
            merged = left.copy()
            for k, v in right.items():
                merged.push(k, v)
            return merged
        if op == "==":
            return native_bool(values_equal(left, right))
        if op == "!=":
            return native_bool(not values_equal(left, right))
        return self.error(node, f"unsupported operator: {left.type()} {op} {right.type()}")

    def _string_op(self, op: str, left: String, right: KestrelObject, node) -> Optional[KestrelObject]:
        if op in ("=~", "!~"):
            try:
                if isinstance(right, Regex):
                    found = right.compiled.search(left.value) is not None
                elif isinstance(right, String):
                    found = re.search(right.value, left.value) is not None
                else:
                    return None
            except re.error as e:
                return self.error(node, f"invalid regex: {e}")
            return native_bool(found if op == "=~" else not found)
        if isinstance(right, String):
            if op == "+":
                return String(left.value + right.value)
            if op in COMPARISON_OPS:
                return native_bool(_compare(op, left.value, right.value))
        if op == "*" and isinstance(right, Integer):
            return String(left.value * max(right.value, 0))
        return None

    def _numeric(self, op: str, left: KestrelObject, right: KestrelObject, node) -> KestrelObject:
        a, b = left.value, right.value
        if op in COMPARISON_OPS:
            return native_bool(_compare(op, a, b))
        if op == "/":
            if b == 0:
                return self.error(node, "division by zero")
            return Float(a / b)
        if isinstance(left, Float) or isinstance(right, Float):
            match op:
                case "+":
                    return Float(a + b)
                case "-":
                    return Float(a - b)
                case "*":
                    return Float(a * b)
                case "%":
                    if b == 0:
                        return self.error(node, "division by zero")
                    return Float(math.fmod(a, b))
                case "**":
                    try:
                        value = a ** b
                    except (OverflowError, ZeroDivisionError) as e:
                        return self.error(node, f"{left.inspect()} ** {right.inspect()}: {e}")
                    if isinstance(value, complex):
                        return self.error(node, f"{left.inspect()} ** {right.inspect()} is not a real number")
                    return Float(value)
            return self.error(node, f"unsupported operator: {left.type()} {op} {right.type()}")
        match op:
            case "+":
                exact = a + b
            case "-":
                exact = a - b
            case "*":
                exact = a * b
            case "%":
                if b == 0:
                    return self.error(node, "division by zero")
                exact = _truncated_mod(a, b)
            case "**":
                if b < 0:
                    if a == 0:
                        return self.error(node, "division by zero")
                    return Float(a ** b)
                if type(left) is type(right):
                    exact = pow(a, b, 1 << 64)
                elif abs(a) < 2 or a.bit_length() * b <= 128:
                    exact = a ** b
                elif a > 0 or b % 2 == 0:
                    # far above the signed range: keep it unsigned
                    exact = pow(a, b, 1 << 64) + (1 << 64)
                else:
                    exact = -pow(-a, b, 1 << 64)
            case "&":
                exact = a & b
            case "|":
                exact = a | b
            case "^":
                exact = a ^ b
            case "<<" | ">>":
                if b < 0:
                    return self.error(node, f"negative shift count: {b}")
                if op == ">>":
                    exact = a >> b
                else:
                    exact = a << b if b < 64 else 0
            case _:
                return self.error(node, f"unsupported operator: {left.type()} {op} {right.type()}")
        return _int_result(left, right, exact)

    async def _eval_ternary_expression(self, node: ast.TernaryExpression, scope: Scope):
        cond = await self.eval(node.condition, scope)
        if is_sentinel(cond):
            return cond
        return await self.eval(node.if_true if is_truthy(cond) else node.if_false, scope)

    async def _eval_pipe_expression(self, node: ast.PipeExpression, scope: Scope):
        value = await self.eval(node.left, scope)
        if is_sentinel(value):
            return value
        right = node.right
        if isinstance(right, ast.CallExpression):
            fn = await self.eval(right.function, scope)
            if is_sentinel(fn):
                return fn
            args = await self._eval_args(right.arguments, scope)
            if is_sentinel(args):
                return args
            return await self.apply_function(fn, [value] + args, scope, right)
        if isinstance(right, ast.MethodCallExpression):
            receiver = await self.eval(right.object, scope)
            if is_sentinel(receiver):
                return receiver
            args = await self._eval_args(right.arguments, scope)
            if is_sentinel(args):
                return args
            return await self.call_method(receiver, right.name, [value] + args, scope, right)
        fn = await self.eval(right, scope)
        if is_sentinel(fn):
            return fn
        return await self.apply_function(fn, [value], scope, right)

    # -----------------------------------------------------------------
    # Assignment
    # -----------------------------------------------------------------

    async def _eval_assign_expression(self, node: ast.AssignExpression, scope: Scope):
        if node.operator == "=":
            value = await self.eval(node.value, scope)
            if is_sentinel(value):
                return value
            if isinstance(node.target, ast.Identifier):
                self._name_value(node.target.name, value)
            return await self._assign_to(node.target, value, scope, node)
        op = node.operator[:-1]
        current = await self.eval(node.target, scope)
        if is_sentinel(current):
            return current
        rhs = await self.eval(node.value, scope)
        if is_sentinel(rhs):
            return rhs
        if isinstance(current, Array) and op == "+":
            if isinstance(rhs, Array):
                current.members.extend(rhs.members)
            else:
                current.members.append(rhs)
            return current
        if isinstance(current, Hash) and op == "+" and isinstance(rhs, Hash):
            for k, v in rhs.items():
                current.push(k, v)
            return current
        if isinstance(current, Hash) and op == "-":
            current.pop(rhs)
            return current
        value = await self.infix(op, current, rhs, node, scope)
        if is_sentinel(value):
            return value
        return await self._assign_to(node.target, value, scope, node)

    async def _assign_to(self, target, value: KestrelObject, scope: Scope, node) -> KestrelObject:
        if isinstance(target, ast.Identifier):
            owner = scope.find_owner(target.name)
            if owner is not None and target.name in owner.readonly:
                return self.error(node, f"cannot assign to constant '{target.name}'")
            return scope.assign(target.name, value)

        if isinstance(target, ast.IndexExpression):
            container = await self.eval(target.left, scope)
            if is_sentinel(container):
                return container
            index = await self.eval(target.index, scope)
            if is_sentinel(index):
                return index
            return await self._set_index(container, index, value, node)

        if isinstance(target, ast.MemberExpression):
            obj = await self.eval(target.object, scope)
            if is_sentinel(obj):
                return obj
            via_this = isinstance(target.object, ast.Identifier) and target.object.name == "this"
            if isinstance(obj, (ObjectInstance, Class)):
                return await self.classes.set_member(obj, target.name, value, node, via_this)
            if isinstance(obj, Hash):
                obj.push(String(target.name), value)
                return value
            if isinstance(obj, Struct):
                obj.scope.set(target.name, value)
                return value
            return self.error(node, f"cannot assign member '{target.name}' of {obj.type()}")

        return self.error(node, f"cannot assign to '{target}'")

    async def _set_index(self, container: KestrelObject, index: KestrelObject, value: KestrelObject,
                         node) -> KestrelObject:
        if isinstance(container, Array):
            if not isinstance(index, (Integer, UInteger)):
                return self.error(node, f"array index must be an INTEGER, got {index.type()}")
            i = index.value
            if i < 0:
                i += len(container.members)
                if i < 0:
                    return self.error(node, f"index out of range: {index.value}")
            if i >= len(container.members):
                container.members.extend([NIL] * (i + 1 - len(container.members)))
            container.members[i] = value
            return value
        if isinstance(container, Hash):
            try:
                container.push(index, value)
            except KestrelRuntimeError as e:
                return self.error(node, e.message)
            return value
        if isinstance(container, ObjectInstance):
            return await self.classes.index_set(container, [index], value, node)
        if isinstance(container, Struct) and isinstance(index, String):
            container.scope.set(index.value, value)
            return value
        if isinstance(container, Tuple):
            return self.error(node, "cannot assign into a TUPLE: tuples are immutable")
        if isinstance(container, String):
            return self.error(node, "cannot assign into a STRING: strings are immutable")
        return self.error(node, f"index assignment not supported: {container.type()}")

    # -----------------------------------------------------------------
    # Calls, members and indexing
    # -----------------------------------------------------------------

    async def _eval_call_expression(self, node: ast.CallExpression, scope: Scope, awaited: bool = False):
        fn = await self.eval(node.function, scope)
        if is_sentinel(fn):
            return fn
        args = await self._eval_args(node.arguments, scope)
        if is_sentinel(args):
            return args
        return await self.apply_function(fn, args, scope, node, awaited)

    async def _eval_method_call_expression(self, node: ast.MethodCallExpression, scope: Scope,
                                           awaited: bool = False):
        receiver = await self.eval(node.object, scope)
        if is_sentinel(receiver):
            return receiver
        args = await self._eval_args(node.arguments, scope)
        if is_sentinel(args):
            return args
        via_this = isinstance(node.object, ast.Identifier) and node.object.name == "this"
        return await self.call_method(receiver, node.name, args, scope, node, via_this, awaited)

    async def _eval_await_expression(self, node: ast.AwaitExpression, scope: Scope):
        if isinstance(node.call, ast.MethodCallExpression):
            return await self._eval_method_call_expression(node.call, scope, awaited=True)
        return await self._eval_call_expression(node.call, scope, awaited=True)

    async def _eval_new_expression(self, node: ast.NewExpression, scope: Scope):
        cls = await self.eval(node.cls, scope)
        if is_sentinel(cls):
            return cls
        if not isinstance(cls, Class):
            return self.error(node, f"'{node.cls}' is not a class (got {cls.type()})")
        args = await self._eval_args(node.arguments, scope)
        if is_sentinel(args):
            return args
        return await self.classes.instantiate(cls, args, node, scope)

    async def _eval_member_expression(self, node: ast.MemberExpression, scope: Scope):
        obj = await self.eval(node.object, scope)
        if is_sentinel(obj):
            return obj
        via_this = isinstance(node.object, ast.Identifier) and node.object.name == "this"
        return await self.get_member(obj, node.name, node, scope, via_this)

    async def get_member(self, obj: KestrelObject, name: str, node, scope: Scope,
                         via_this: bool = False) -> KestrelObject:
        if isinstance(obj, (ObjectInstance, ParentRef)):
            return await self.classes.get_member(obj, name, node, scope, via_this)
        if isinstance(obj, Class):
            result = await self.classes.get_member(obj, name, node, scope, via_this)
            if isinstance(result, Error) and self.type_methods.lookup(obj, name) is not None:
                return await self._type_member(obj, name, node, scope)
            return result
        if isinstance(obj, ImportedModule):
            if not obj.exported(name):
                return self.error(node, f"'{name}' is not exported by module '{obj.name}'")
            value = obj.scope.store.get(name)
            if value is None:
                return self.error(node, f"module '{obj.name}' has no member '{name}'")
            return value
        if isinstance(obj, Hash):
            value = obj.get_str(name)
            if value is not None:
                return value
            if self.type_methods.lookup(obj, name) is not None:
                return await self._type_member(obj, name, node, scope)
            return self.error(node, f"key not found: \"{name}\"")
        if isinstance(obj, Struct):
            value = obj.scope.store.get(name)
            if value is None:
                return self.error(node, f"struct has no field '{name}'")
            return value
        if isinstance(obj, Enum) and name in obj.members:
            return obj.members[name]
        if self.type_methods.lookup(obj, name) is not None:
            return await self._type_member(obj, name, node, scope)
        if isinstance(obj, Enum):
            return self.error(node, f"enum '{obj.name}' has no member '{name}'")
        return self.error(node, f"unknown member '{name}' for {obj.type()}")

    async def _type_member(self, obj: KestrelObject, name: str, node, scope: Scope) -> KestrelObject:
        """`value.name` without a call: zero-argument builtin methods run, others bind."""
        method = self.type_methods.lookup(obj, name)
        kwargs = {"scope": scope} if method.wants_scope else {}
        try:
            method.signature.bind(obj, **kwargs)
        except TypeError:
            return BoundMethod(obj, name, method)
        return await self.call_builtin(method, [obj], scope, node, offset=1)

    def _position(self, index: KestrelObject, length: int, node):
        if not isinstance(index, (Integer, UInteger)):
            return None, self.error(node, f"index must be an INTEGER, got {index.type()}")
        i = index.value
        if i < 0:
            i += length
        if i < 0 or i >= length:
            return None, self.error(node, f"index out of range: {index.value} (length {length})")
        return i, None

    async def _eval_index_expression(self, node: ast.IndexExpression, scope: Scope):
        left = await self.eval(node.left, scope)
        if is_sentinel(left):
            return left
        index = await self.eval(node.index, scope)
        if is_sentinel(index):
            return index
        return await self.index(left, index, node)

    async def index(self, left: KestrelObject, index: KestrelObject, node) -> KestrelObject:
        if isinstance(left, (Array, Tuple)):
            i, err = self._position(index, len(left.members), node)
            return err or left.members[i]
        if isinstance(left, String):
            i, err = self._position(index, len(left.value), node)
            return err or String(left.value[i])
        if isinstance(left, Hash):
            try:
                value = left.get(index)
            except KestrelRuntimeError as e:
                return self.error(node, e.message)
            if value is None:
                return self.error(node, f"key not found: {index.inspect() if not isinstance(index, String) else repr(index.value)}")
            return value
        if isinstance(left, ObjectInstance):
            return await self.classes.index_get(left, [index], node)
        if isinstance(left, Struct) and isinstance(index, String):
            value = left.scope.store.get(index.value)
            if value is None:
                return self.error(node, f"struct has no field '{index.value}'")
            return value
        return self.error(node, f"index operator not supported: {left.type()}")

    async def _eval_slice_expression(self, node: ast.SliceExpression, scope: Scope):
        left = await self.eval(node.left, scope)
        if is_sentinel(left):
            return left
        bounds = []
        for expr in (node.start, node.stop):
            if expr is None:
                bounds.append(None)
                continue
            value = await self.eval(expr, scope)
            if is_sentinel(value):
                return value
            if value is NIL:
                bounds.append(None)
            elif isinstance(value, (Integer, UInteger)):
                bounds.append(value.value)
            else:
                return self.error(node, f"slice bound must be an INTEGER, got {value.type()}")
        start, stop = bounds
        if isinstance(left, Array):
            return Array(left.members[start:stop])
        if isinstance(left, Tuple):
            return Tuple(left.members[start:stop])
        if isinstance(left, String):
            return String(left.value[start:stop])
        return self.error(node, f"slice operator not supported: {left.type()}")

    # -----------------------------------------------------------------
    # Conditionals
    # -----------------------------------------------------------------

    async def _eval_if_expression(self, node: ast.IfExpression, scope: Scope):
        for branch in node.branches:
            cond = await self.eval(branch.condition, scope)
            if is_sentinel(cond):
                return cond
            if is_truthy(cond):
                return await self.eval(branch.body, Scope(parent=scope))
        if node.alternative is not None:
            return await self.eval(node.alternative, Scope(parent=scope))
        return NIL

    async def _eval_unless_expression(self, node: ast.UnlessExpression, scope: Scope):
        cond = await self.eval(node.condition, scope)
        if is_sentinel(cond):
            return cond
        if not is_truthy(cond):
            return await self.eval(node.consequence, Scope(parent=scope))
        if node.alternative is not None:
            return await self.eval(node.alternative, Scope(parent=scope))
        return NIL

    def _case_matches(self, subject: KestrelObject, candidate: KestrelObject, whole: bool) -> bool:
        if isinstance(candidate, Regex) and isinstance(subject, String):
            if whole:
                return candidate.compiled.fullmatch(subject.value) is not None
            return candidate.compiled.search(subject.value) is not None
        if whole:
            return values_equal(subject, candidate)
        if isinstance(candidate, String) and isinstance(subject, String):
            return re.search(candidate.value, subject.value) is not None
        if isinstance(candidate, (Array, Tuple)):
            return any(values_equal(subject, m) for m in candidate.members)
        if isinstance(candidate, Hash):
            return candidate.contains(subject)
        return values_equal(subject, candidate)

    async def _eval_case_expression(self, node: ast.CaseExpression, scope: Scope):
        subject = await self.eval(node.subject, scope)
        if is_sentinel(subject):
            return subject
        for arm in node.arms:
            for expr in arm.matches:
                candidate = await self.eval(expr, scope)
                if is_sentinel(candidate):
                    return candidate
                try:
                    matched = self._case_matches(subject, candidate, node.whole_match)
                except re.error as e:
                    return self.error(expr, f"invalid regex: {e}")
                if matched:
                    return await self.eval(arm.block, Scope(parent=scope))
        if node.else_block is not None:
            return await self.eval(node.else_block, Scope(parent=scope))
        return NIL

    # -----------------------------------------------------------------
    # Loops
    # -----------------------------------------------------------------

    def iter_items(self, value: KestrelObject, node):
        """Values a `for x in ...` loop visits, or an Error."""
        if isinstance(value, (Array, Tuple)):
            return list(value.members)
        if isinstance(value, String):
            return [String(ch) for ch in value.value]
        if isinstance(value, Hash):
            return value.keys()
        if isinstance(value, Enum):
            return [String(k) for k in value.members]
        return self.error(node, f"cannot iterate over {value.type()}")

    def iter_pairs(self, value: KestrelObject, node):
        """(key, value) pairs a `for k, v in ...` loop visits, or an Error."""
        if isinstance(value, Hash):
            return list(value.items())
        if isinstance(value, (Array, Tuple)):
            return [(Integer(i), m) for i, m in enumerate(value.members)]
        if isinstance(value, String):
            return [(Integer(i), String(ch)) for i, ch in enumerate(value.value)]
        if isinstance(value, Enum):
            return [(String(k), v) for k, v in value.members.items()]
        if isinstance(value, Struct):
            return [(String(k), v) for k, v in value.scope.store.items()]
        return self.error(node, f"cannot iterate over {value.type()}")

    async def _loop(self, node, scope: Scope, rows: List[Dict[str, KestrelObject]]):
        results = []
        for row in rows:
            iteration = Scope(parent=scope)
            for k, v in row.items():
                iteration.set(k, v)
            if node.condition is not None:
                cond = await self.eval(node.condition, iteration)
                if is_sentinel(cond):
                    return cond
                if not is_truthy(cond):
                    continue
            result = await self.eval(node.block, iteration)
            if isinstance(result, Break):
                break
            if isinstance(result, Continue):
                continue
            if isinstance(result, ABRUPT):
                return result
            results.append(result)
        return Array(results)

    async def _eval_for_each_array_loop(self, node: ast.ForEachArrayLoop, scope: Scope):
        value = await self.eval(node.value, scope)
        if is_sentinel(value):
            return value
        items = self.iter_items(value, node)
        if is_sentinel(items):
            return items
        return await self._loop(node, scope, [{node.var: item} for item in items])

    async def _eval_for_each_map_loop(self, node: ast.ForEachMapLoop, scope: Scope):
        value = await self.eval(node.value, scope)
        if is_sentinel(value):
            return value
        pairs = self.iter_pairs(value, node)
        if is_sentinel(pairs):
            return pairs
        return await self._loop(node, scope, [{node.key: k, node.var: v} for k, v in pairs])

    async def _eval_for_each_dot_range(self, node: ast.ForEachDotRange, scope: Scope):
        items = await self._range(node.start, node.stop, scope, node)
        if is_sentinel(items):
            return items
        return await self._loop(node, scope, [{node.var: item} for item in items])

    async def _eval_for_loop(self, node: ast.ForLoop, scope: Scope):
        loop_scope = Scope(parent=scope)
        if node.init is not None:
            init = await self.eval(node.init, loop_scope)
            if is_sentinel(init):
                return init
        while True:
            if node.condition is not None:
                cond = await self.eval(node.condition, loop_scope)
                if is_sentinel(cond):
                    return cond
                if not is_truthy(cond):
                    break
            result = await self.eval(node.block, Scope(parent=loop_scope))
            if isinstance(result, Break):
                break
            if isinstance(result, ABRUPT):
                return result
            if node.update is not None:
                update = await self.eval(node.update, loop_scope)
                if is_sentinel(update):
                    return update
        return NIL

    async def _forever(self, block, scope: Scope):
        while True:
            result = await self.eval(block, Scope(parent=scope))
            if isinstance(result, Break):
                return NIL
            if isinstance(result, ABRUPT):
                return result

    async def _eval_for_ever_loop(self, node: ast.ForEverLoop, scope: Scope):
        return await self._forever(node.block, scope)

    async def _eval_do_loop(self, node: ast.DoLoop, scope: Scope):
        return await self._forever(node.block, scope)

    async def _eval_while_loop(self, node: ast.WhileLoop, scope: Scope):
        while True:
            cond = await self.eval(node.condition, scope)
            if is_sentinel(cond):
                return cond
            if not is_truthy(cond):
                return NIL
            result = await self.eval(node.block, Scope(parent=scope))
            if isinstance(result, Break):
                return NIL
            if isinstance(result, ABRUPT):
                return result

    async def _grep_or_map(self, node, scope: Scope, keep_items: bool):
        value = await self.eval(node.value, scope)
        if is_sentinel(value):
            return value
        items = self.iter_items(value, node)
        if is_sentinel(items):
            return items
        body = node.block if node.block is not None else node.expr
        results = []
        for item in items:
            iteration = Scope(parent=scope)
            iteration.set("$_", item)
            result = await self.eval(body, iteration)
            if isinstance(result, Break):
                break
            if isinstance(result, Continue):
                continue
            if isinstance(result, ABRUPT):
                return result
            if keep_items:
                if is_truthy(result):
                    results.append(item)
            else:
                results.append(result)
        return Array(results)

    async def _eval_grep_expression(self, node: ast.GrepExpression, scope: Scope):
        return await self._grep_or_map(node, scope, keep_items=True)

    async def _eval_map_expression(self, node: ast.MapExpression, scope: Scope):
        return await self._grep_or_map(node, scope, keep_items=False)

    # -----------------------------------------------------------------
    # Comprehensions
    # -----------------------------------------------------------------

    async def _comprehension_rows(self, node, scope: Scope):
        if isinstance(node, (ast.ListRangeComprehension, ast.HashRangeComprehension)):
            items = await self._range(node.start, node.stop, scope, node)
            if is_sentinel(items):
                return items
            return [{node.var: item} for item in items]
        value = await self.eval(node.value, scope)
        if is_sentinel(value):
            return value
        if isinstance(node, (ast.ListMapComprehension, ast.HashMapComprehension)):
            pairs = self.iter_pairs(value, node)
            if is_sentinel(pairs):
                return pairs
            return [{node.key: k, node.var: v} for k, v in pairs]
        items = self.iter_items(value, node)
        if is_sentinel(items):
            return items
        return [{node.var: item} for item in items]

    async def _comprehension_scopes(self, node, scope: Scope):
        rows = await self._comprehension_rows(node, scope)
        if is_sentinel(rows):
            return rows
        scopes = []
        for row in rows:
            iteration = Scope(parent=scope)
            for k, v in row.items():
                iteration.set(k, v)
            if node.condition is not None:
                cond = await self.eval(node.condition, iteration)
                if is_sentinel(cond):
                    return cond
                if not is_truthy(cond):
                    continue
            scopes.append(iteration)
        return scopes

    async def _list_comprehension(self, node, scope: Scope):
        scopes = await self._comprehension_scopes(node, scope)
        if is_sentinel(scopes):
            return scopes
        results = []
        for iteration in scopes:
            value = await self.eval(node.expr, iteration)
            if is_sentinel(value):
                return value
            results.append(value)
        return Array(results)

    async def _hash_comprehension(self, node, scope: Scope):
        scopes = await self._comprehension_scopes(node, scope)
        if is_sentinel(scopes):
            return scopes
        h = Hash()
        for iteration in scopes:
            key = await self.eval(node.key_expr, iteration)
            if is_sentinel(key):
                return key
            value = await self.eval(node.value_expr, iteration)
            if is_sentinel(value):
                return value
            try:
                h.push(key, value)
            except KestrelRuntimeError as e:
                return self.error(node, e.message)
        return h

    _eval_list_comprehension = _list_comprehension
    _eval_list_range_comprehension = _list_comprehension
    _eval_list_map_comprehension = _list_comprehension
    _eval_hash_comprehension = _hash_comprehension
    _eval_hash_range_comprehension = _hash_comprehension
    _eval_hash_map_comprehension = _hash_comprehension

    # -----------------------------------------------------------------
    # Query expressions
    # -----------------------------------------------------------------

    async def _eval_query_expression(self, node: ast.QueryExpression, scope: Scope):
        source = await self.eval(node.source.source, scope)
        if is_sentinel(source):
            return source
        items = self.iter_items(source, node.source)
        if is_sentinel(items):
            return items
        return await self._run_query(node.body, [{node.source.var: item} for item in items], scope)

    async def _row_eval(self, expr, row: Dict[str, KestrelObject], scope: Scope) -> KestrelObject:
        row_scope = Scope(parent=scope)
        for k, v in row.items():
            row_scope.set(k, v)
        return await self.eval(expr, row_scope)

    async def _run_query(self, body: ast.QueryBody, rows: List[Dict[str, KestrelObject]], scope: Scope):
        for clause in body.clauses:
            match clause:
                case ast.FromClause():
                    expanded = []
                    for row in rows:
                        source = await self._row_eval(clause.source, row, scope)
                        if is_sentinel(source):
                            return source
                        items = self.iter_items(source, clause)
                        if is_sentinel(items):
                            return items
                        expanded.extend(dict(row, **{clause.var: item}) for item in items)
                    rows = expanded
                case ast.WhereClause():
                    kept = []
                    for row in rows:
                        cond = await self._row_eval(clause.condition, row, scope)
                        if is_sentinel(cond):
                            return cond
                        if is_truthy(cond):
                            kept.append(row)
                    rows = kept
                case ast.LetClause():
                    for row in rows:
                        value = await self._row_eval(clause.value, row, scope)
                        if is_sentinel(value):
                            return value
                        row[clause.var] = value
                case ast.JoinClause():
                    rows = await self._join(clause, rows, scope)
                    if is_sentinel(rows):
                        return rows
                case ast.OrderByClause():
                    rows = await self._order(clause, rows, scope)
                    if is_sentinel(rows):
                        return rows

        if isinstance(body.result, ast.GroupClause):
            values = await self._group(body.result, rows, scope)
        else:
            values = []
            for row in rows:
                value = await self._row_eval(body.result.expr, row, scope)
                if is_sentinel(value):
                    return value
                values.append(value)
        if is_sentinel(values):
            return values
        if body.continuation is not None:
            cont = body.continuation
            return await self._run_query(cont.body, [{cont.var: v} for v in values], scope)
        return Array(values)

    async def _join(self, clause: ast.JoinClause, rows, scope: Scope):
        source = await self.eval(clause.source, scope)
        if is_sentinel(source):
            return source
        inner = self.iter_items(source, clause)
        if is_sentinel(inner):
            return inner
        inner_keys = []
        for item in inner:
            key = await self._row_eval(clause.right_key, {clause.var: item}, scope)
            if is_sentinel(key):
                return key
            inner_keys.append(key)
        joined = []
        for row in rows:
            outer_key = await self._row_eval(clause.left_key, row, scope)
            if is_sentinel(outer_key):
                return outer_key
            matches = [item for item, key in zip(inner, inner_keys) if values_equal(outer_key, key)]
            if clause.into is not None:
                joined.append(dict(row, **{clause.into: Array(matches)}))
            else:
                joined.extend(dict(row, **{clause.var: item}) for item in matches)
        return joined

    async def _order(self, clause: ast.OrderByClause, rows, scope: Scope):
        keyed = []
        for row in rows:
            keys = []
            for ordering in clause.orderings:
                key = await self._row_eval(ordering.expr, row, scope)
                if is_sentinel(key):
                    return key
                keys.append(key)
            keyed.append((keys, row))
        try:
            for i in reversed(range(len(clause.orderings))):
                keyed.sort(key=functools.cmp_to_key(lambda a, b, i=i: compare_values(a[0][i], b[0][i])),
                           reverse=clause.orderings[i].descending)
        except KestrelRuntimeError as e:
            return self.error(clause, f"orderby: {e.message}")
        return [row for _, row in keyed]

    async def _group(self, clause: ast.GroupClause, rows, scope: Scope):
        groups: List[TypingTuple[KestrelObject, List[KestrelObject]]] = []
        for row in rows:
            key = await self._row_eval(clause.key, row, scope)
            if is_sentinel(key):
                return key
            element = await self._row_eval(clause.element, row, scope)
            if is_sentinel(element):
                return element
            for group_key, members in groups:
                if values_equal(group_key, key):
                    members.append(element)
                    break
            else:
                groups.append((key, [element]))
        return [Hash.from_pairs([(String("key"), k), (String("items"), Array(v))]) for k, v in groups]


def _handler_name(cls: type) -> str:
    return "_eval_" + re.sub(r"(?<!^)(?=[A-Z][a-z])", "_", cls.__name__).lower()


def _build_dispatch(evaluator_cls) -> Dict[type, Any]:
    """Map every concrete statement and expression node to its handler; fail on gaps."""
    table = {ast.Program: evaluator_cls._eval_program}
    missing = []
    for base in (ast.Statement, ast.Expression):
        for node_cls in ast.concrete_node_classes(base):
            handler = getattr(evaluator_cls, _handler_name(node_cls), None)
            if handler is None:
                missing.append(node_cls.__name__)
            else:
                table[node_cls] = handler
    if missing:
        raise TypeError(f"Evaluator has no handler for: {', '.join(sorted(missing))}")
    return table


Evaluator._dispatch = _build_dispatch(Evaluator)
