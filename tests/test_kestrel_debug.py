import asyncio
import io

import pytest

from kestrel.kestrel_debug import MessageKind, trace_listener
from kestrel.kestrel_runtime import ScriptRunner

SCRIPT = "let x = 1\nfn f(a) { return a }\nf(x)"


@pytest.mark.asyncio
async def test_listener_sees_lines_calls_and_returns():
    runner = ScriptRunner()
    seen = []
    runner.evaluator.messages.add_listener(lambda msg: seen.append((msg.kind, msg.node.pos.line)))
    res = await runner.handle_script(SCRIPT)
    assert res.value == 1
    kinds = [k for k, _ in seen]
    assert (MessageKind.EVAL_LINE, 1) in seen
    assert (MessageKind.CALL, 3) in seen
    assert (MessageKind.RETURN, 2) in seen
    assert kinds.index(MessageKind.CALL) < kinds.index(MessageKind.RETURN)


@pytest.mark.asyncio
async def test_method_calls_are_reported_separately():
    runner = ScriptRunner()
    seen = []
    runner.evaluator.messages.add_listener(lambda msg: seen.append(msg.kind))
    await runner.handle_script('"a".upper()')
    assert MessageKind.METHOD_CALL in seen
    assert MessageKind.CALL not in seen


@pytest.mark.asyncio
async def test_async_listeners_are_awaited():
    runner = ScriptRunner()
    lines = []

    async def stepper(msg):
        await asyncio.sleep(0)
        lines.append(msg.node.pos.line)

    runner.evaluator.messages.add_listener(stepper)
    await runner.handle_script("let a = 1\nlet b = 2")
    assert lines == [1, 2]


@pytest.mark.asyncio
async def test_removed_listener_hears_nothing():
    runner = ScriptRunner()
    seen = []
    listener = seen.append
    runner.evaluator.messages.add_listener(listener)
    runner.evaluator.messages.remove_listener(listener)
    await runner.handle_script(SCRIPT)
    assert seen == []
    assert not runner.evaluator.messages


@pytest.mark.asyncio
async def test_trace_listener_writes_messages():
    stream = io.StringIO()
    runner = ScriptRunner()
    runner.evaluator.messages.add_listener(trace_listener(stream))
    await runner.handle_script(SCRIPT)
    out = stream.getvalue()
    assert "[EVAL_LINE] <script>:1" in out
    assert "[CALL] <script>:3 f(x)" in out


@pytest.mark.asyncio
async def test_debug_env_reports_worker_faults(monkeypatch, capsys):
    monkeypatch.setenv("KESTREL_DEBUG", "1")
    runner = ScriptRunner()
    await runner.handle_script('fn bad() { error("nope") }\nspawn bad()')
    await runner.join_tasks(timeout=2)
    assert "[DBG] worker spawn bad() failed:" in capsys.readouterr().err
