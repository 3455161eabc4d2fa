# kestrel_runtime.py

import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

from kestrel.kestrel_builtins import StdLib
from kestrel.kestrel_datatypes import (
    KestrelObject, KestrelRuntimeError, Error, Throw, Scope, CallStack,
    from_native, to_native,
)
from kestrel.kestrel_interpreter import Evaluator
from kestrel.kestrel_parser import parse
from kestrel.kestrel_tasks import KestrelHost

Token = Dict[str, Any]

_SYNTAX_POS = re.compile(r"^Syntax Error:.*:(\d+):(\d+)- ")


@dataclass
class ExecutionResult:
    """The structured result of a script execution."""
    status: Literal['success', 'error']
    value: Any = None
    obj: Optional[KestrelObject] = None
    error_message: Optional[str] = None
    error_token: Optional[Token] = None
    side_effects: List[Dict] = field(default_factory=list)

    def format_error(self) -> str:
        """Formats an error message with line and column if available."""
        if self.status != 'error':
            return ""
        msg = str(self.error_message or "Unknown error")
        if self.error_token and 'line' in self.error_token:
            line = self.error_token.get('line')
            col = self.error_token.get('col')
            if not msg.startswith("Error on line "):
                col_info = f", col {col}" if col is not None else ""
                return f"Error on line {line}{col_info}: {msg}"
        return msg

    @property
    def stdout(self) -> str:
        return "".join(e["message"] for e in self.side_effects if "stdout" in e["topics"])


class ScriptRunner:
    """
    One interpreter session: parses and evaluates Kestrel source against a
    persistent root scope. Definitions made by one `handle_script` call stay
    visible to the next, and imported modules are evaluated once per session.
    """

    def __init__(self, host_object: Optional[KestrelHost] = None, load_builtins: bool = True,
                 root_dir: Optional[str] = None, source_dir: Optional[str] = None):
        self.host_object = host_object or KestrelHost()
        if root_dir is not None:
            self.host_object.root_dir = root_dir
        self.evaluator = Evaluator(self.host_object)
        self.stdlib = StdLib(self.evaluator)
        if load_builtins:
            self.stdlib.install(self.evaluator.builtin_scope)
        self.root_scope = Scope(parent=self.evaluator.builtin_scope)
        self.source_dir = source_dir
        self.class_names: set = set()

    @property
    def source_dir(self) -> Optional[str]:
        return self.host_object.source_dir

    @source_dir.setter
    def source_dir(self, value: Optional[str]):
        self.host_object.source_dir = value

    @property
    def active_tasks(self) -> set:
        return self.host_object.active_tasks

    @property
    def services(self) -> Dict[str, Any]:
        return self.host_object.services

    async def join_tasks(self, timeout: Optional[float] = None) -> bool:
        return await self.host_object.join_tasks(timeout)

    def cancel_tasks(self) -> int:
        return self.host_object.cancel_tasks()

    def _source_context(self, source: str, line: int, col: Optional[int], radius: int = 2) -> str:
        lines = source.splitlines()
        if not line or line < 1 or line > len(lines):
            return ""
        start = max(1, line - radius)
        end = min(len(lines), line + radius)
        width = len(str(end))
        out = []
        for i in range(start, end + 1):
            prefix = ">" if i == line else " "
            ln = str(i).rjust(width)
            out.append(f"{prefix} {ln} | {lines[i - 1]}")
            if i == line and col is not None:
                caret = " " * max(col - 1, 0)
                out.append(f"  {' ' * width} | {caret}^")
        return "\n".join(out)

    def source_context(self, result: ExecutionResult, source: str) -> str:
        """Excerpt of `source` around the failing position of `result`."""
        token = result.error_token or {}
        if token.get('line') is None:
            return ""
        return self._source_context(source, token['line'], token.get('col'))

    def _fail(self, message: str, token: Optional[Token], obj: Optional[KestrelObject] = None) -> ExecutionResult:
        self.evaluator.side_effects.append({'topics': ['stderr'], 'message': message})
        return ExecutionResult(
            status='error',
            obj=obj,
            error_message=message,
            error_token=token,
            side_effects=self.evaluator.side_effects,
        )

    async def handle_script(self, source_code: str, origin: str = "<script>") -> ExecutionResult:
        """The main entry point to execute a script."""
        self.evaluator.side_effects = []

        # 1. Parse
        program, errors = parse(source_code, origin, self.host_object.root_dir,
                                base_dir=self.source_dir or os.getcwd(),
                                class_names=self.class_names)
        if errors:
            m = _SYNTAX_POS.match(errors[0])
            token = {'line': int(m.group(1)), 'col': int(m.group(2))} if m else None
            return self._fail("\n".join(errors), token)

        # 2. Evaluate
        try:
            result = await self.evaluator.eval_program(program, self.root_scope)
        except Exception as e:
            node = self.evaluator.current_node
            pos = getattr(node, 'pos', None)
            result = Error(f"internal error: {e}", pos)

        if isinstance(result, (Error, Throw)):
            pos = result.pos
            token = {'line': pos.line, 'col': pos.col} if pos is not None else None
            message = result.message if isinstance(result, Error) \
                else f"uncaught exception: {result.value.inspect()}"
            return self._fail(message, token, result)

        return ExecutionResult(
            status='success',
            value=to_native(result),
            obj=result,
            side_effects=self.evaluator.side_effects,
        )

    async def call(self, name: str, *args) -> Any:
        """
        Call the script function `name` with host values and return the
        result as a host value. Script errors raise `KestrelRuntimeError`.
        """
        fn = self.root_scope.get(name)
        if fn is None:
            raise KestrelRuntimeError(f"unknown identifier: '{name}'")
        scope = Scope(parent=self.root_scope, call_stack=CallStack())
        result = await self.evaluator.apply_function(
            fn, [from_native(a) for a in args], scope, None, awaited=True)
        if isinstance(result, Error):
            raise KestrelRuntimeError(result.inspect())
        if isinstance(result, Throw):
            raise KestrelRuntimeError(f"uncaught exception: {result.value.inspect()}")
        return to_native(result)
