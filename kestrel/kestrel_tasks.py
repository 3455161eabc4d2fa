"""
Concurrency runtime: `spawn` workers and `async fn` calls on asyncio tasks.

Workers evaluate with a child scope of the call site and a fresh call stack.
An awaited async call waits on a one-slot result channel; everything else
is fire-and-forget. Failures inside workers are reported through the
evaluator's debug channel and a ``stderr`` side effect, never re-raised.
"""
import asyncio
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from kestrel.kestrel_datatypes import (
    Scope, CallStack, KestrelObject, Error, Throw, NIL,
)

if TYPE_CHECKING:
    from kestrel.kestrel_interpreter import Evaluator


class KestrelHost:
    """
    Session-level state shared by every evaluation in one interpreter session:
    the running workers, the import cache with its lock, and the services
    declared by scripts.
    """

    def __init__(self, root_dir: Optional[str] = None, source_dir: Optional[str] = None):
        self.active_tasks: set = set()
        self.module_cache: Dict[str, KestrelObject] = {}
        self.import_lock = asyncio.Lock()
        self.services: Dict[str, Any] = {}
        self.root_dir = root_dir
        self.source_dir = source_dir

    def register_task(self, task: asyncio.Task):
        self.active_tasks.add(task)
        # Remove as soon as the task completes
        task.add_done_callback(self.active_tasks.discard)

    def cancel_tasks(self) -> int:
        count = len(self.active_tasks)
        for task in list(self.active_tasks):
            task.cancel()
        self.active_tasks.clear()
        return count

    async def join_tasks(self, timeout: Optional[float] = None) -> bool:
        """Wait for running workers, including ones they spawn. False on timeout."""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self.active_tasks:
            pending = list(self.active_tasks)
            remaining = None if deadline is None else max(deadline - loop.time(), 0)
            done, not_done = await asyncio.wait(pending, timeout=remaining)
            if not_done and deadline is not None and loop.time() >= deadline:
                return False
        return True


class TaskRuntime:
    """Starts workers on behalf of an `Evaluator`."""

    def __init__(self, evaluator: 'Evaluator'):
        self.evaluator = evaluator

    def _start(self, coro, label: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=label)
        self.evaluator.host.register_task(task)
        return task

    def _report(self, label: str, result: Any):
        ev = self.evaluator
        if isinstance(result, Error):
            text = result.inspect()
        elif isinstance(result, Throw):
            text = f"uncaught exception: {result.inspect()}"
        else:
            text = str(result)
        ev._dbg(f"worker {label} failed:", text)
        ev.side_effects.append({"topics": ["stderr"], "message": f"{label}: {text}"})

    def spawn(self, call_node, scope: Scope) -> KestrelObject:
        """Evaluate `call_node` on its own task; the spawner never sees the result."""
        ev = self.evaluator
        worker_scope = Scope(parent=scope, call_stack=CallStack())
        label = f"spawn {call_node}"

        async def _runner():
            try:
                result = await ev.eval(call_node, worker_scope)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._report(label, e)
                return
            if isinstance(result, (Error, Throw)):
                self._report(label, result)

        self._start(_runner(), label)
        return NIL

    async def call_async(self, fn, args: List[KestrelObject], node, scope: Scope,
                         awaited: bool, **invoke_kwargs) -> KestrelObject:
        """
        Run an async function on a worker. When `awaited`, block on the
        worker's one-slot result channel and return its value; otherwise
        return nil at once.
        """
        ev = self.evaluator
        channel: asyncio.Queue = asyncio.Queue(maxsize=1)
        label = f"async {fn.name or 'fn'}"

        async def _runner():
            try:
                result = await ev.invoke(fn, args, node, scope, call_stack=CallStack(),
                                         run_async=False, **invoke_kwargs)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                result = ev.error(node, f"{label} failed: {e}")
            if awaited:
                await channel.put(result)
            elif isinstance(result, (Error, Throw)):
                self._report(label, result)

        self._start(_runner(), label)
        if not awaited:
            return NIL
        return await channel.get()
