"""
Debugger hook: the evaluator reports stoppable nodes to registered listeners.

A listener is any callable taking a `Message`. Coroutine functions are awaited,
so an interactive front end can hold the evaluator at a line until the user
steps on.
"""
import inspect
import sys
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, List


class MessageKind(Enum):
    EVAL_LINE = "eval_line"
    CALL = "call"
    METHOD_CALL = "method_call"
    RETURN = "return"


@dataclass
class Message:
    kind: MessageKind
    node: Any
    scope: Any

    def __str__(self):
        pos = getattr(self.node, "pos", None)
        where = pos.sline if pos is not None else "?"
        return f"[{self.kind.name}] {where} {self.node}"


class MessageHandler:
    """Listener registry. Sending is a no-op while no listener is attached."""

    def __init__(self):
        self.listeners: List[Callable] = []

    def add_listener(self, listener: Callable):
        if listener not in self.listeners:
            self.listeners.append(listener)

    def remove_listener(self, listener: Callable):
        if listener in self.listeners:
            self.listeners.remove(listener)

    def __bool__(self):
        return bool(self.listeners)

    async def send(self, kind: MessageKind, node, scope):
        if not self.listeners:
            return
        msg = Message(kind, node, scope)
        for listener in list(self.listeners):
            result = listener(msg)
            if inspect.isawaitable(result):
                await result


def trace_listener(stream=None) -> Callable[[Message], None]:
    """Listener printing every message; used by the CLI `--trace` flag."""
    def _trace(msg: Message):
        print(str(msg), file=stream or sys.stderr)
    return _trace
