import asyncio

import pytest

from kestrel.kestrel_runtime import ScriptRunner


def assert_ok(res, expected=None):
    assert res.status == 'success', f"expected success, got {res.status}: {res.error_message}"
    if expected is not None:
        assert res.value == expected


@pytest.mark.asyncio
async def test_awaited_async_function_returns_its_value():
    runner = ScriptRunner()
    res = await runner.handle_script("async fn answer() { return 42 }\nawait answer()")
    assert_ok(res, 42)


@pytest.mark.asyncio
async def test_unawaited_async_call_returns_nil():
    runner = ScriptRunner()
    src = """
    let log = []
    async fn work() { log.push("ran"); return 1 }
    work()
    """
    res = await runner.handle_script(src)
    assert_ok(res)
    assert res.value is None
    assert await runner.join_tasks(timeout=2)
    assert_ok(await runner.handle_script("log"), ["ran"])


@pytest.mark.asyncio
async def test_spawned_workers_run_until_joined():
    runner = ScriptRunner()
    src = """
    let results = []
    fn worker(n) {
        sleep(1)
        results.push(n * 10)
    }
    spawn worker(2)
    spawn worker(1)
    len(results)
    """
    res = await runner.handle_script(src)
    assert_ok(res, 0)
    assert await runner.join_tasks(timeout=2)
    assert not runner.active_tasks
    assert_ok(await runner.handle_script("results.sort()"), [10, 20])


@pytest.mark.asyncio
async def test_worker_failure_is_reported_not_raised():
    runner = ScriptRunner()
    src = """
    fn bad() {
        sleep(1)
        error("worker died")
    }
    spawn bad()
    "spawner finished"
    """
    res = await runner.handle_script(src)
    assert_ok(res, "spawner finished")
    await runner.join_tasks(timeout=2)
    errors = [e["message"] for e in res.side_effects if "stderr" in e["topics"]]
    assert len(errors) == 1
    assert "worker died" in errors[0]


@pytest.mark.asyncio
async def test_thrown_value_in_worker_is_reported():
    runner = ScriptRunner()
    res = await runner.handle_script('fn t() { throw "nope" }\nspawn t()')
    assert_ok(res)
    await runner.join_tasks(timeout=2)
    errors = [e["message"] for e in res.side_effects if "stderr" in e["topics"]]
    assert errors and "uncaught exception: nope" in errors[0]


@pytest.mark.asyncio
async def test_cancel_tasks_stops_long_sleepers():
    runner = ScriptRunner()
    res = await runner.handle_script("fn nap() { sleep(60000) }\nspawn nap()\nspawn nap()")
    assert_ok(res)
    await asyncio.sleep(0)
    assert runner.cancel_tasks() == 2
    assert not runner.active_tasks
    await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_join_times_out_on_long_workers():
    runner = ScriptRunner()
    await runner.handle_script("fn nap() { sleep(60000) }\nspawn nap()")
    assert await runner.join_tasks(timeout=0.05) is False
    runner.cancel_tasks()
    await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_await_on_plain_function_just_calls_it():
    runner = ScriptRunner()
    res = await runner.handle_script("fn plain() { return 7 }\nawait plain()")
    assert_ok(res, 7)
