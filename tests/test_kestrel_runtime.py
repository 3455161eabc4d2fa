import pytest

from kestrel.kestrel_datatypes import (
    Integer, UInteger, Float, String, Hash, Tuple, Array, NIL, KestrelRuntimeError,
    values_equal, from_native, to_native,
)
from kestrel.kestrel_printer import Printer
from kestrel.kestrel_runtime import ScriptRunner, ExecutionResult
from kestrel_cli import run_script_file


# --- ExecutionResult ---

def test_format_error_prefixes_position():
    res = ExecutionResult(status='error', error_message="boom", error_token={'line': 3, 'col': 7})
    assert res.format_error() == "Error on line 3, col 7: boom"
    assert ExecutionResult(status='success', value=1).format_error() == ""


@pytest.mark.asyncio
async def test_runtime_error_position_and_source_context():
    runner = ScriptRunner()
    src = "let x = 1\nlet y = x + nope\nlet z = 3"
    res = await runner.handle_script(src)
    assert res.status == 'error'
    assert res.error_token['line'] == 2
    assert res.format_error().startswith("Error on line 2, col ")
    context = runner.source_context(res, src)
    assert "> 2 | let y = x + nope" in context
    assert context.splitlines()[2].rstrip().endswith("^")


@pytest.mark.asyncio
async def test_errors_are_also_stderr_side_effects():
    res = await ScriptRunner().handle_script('println("before")\n1 / 0')
    assert res.stdout == "before\n"
    assert {'topics': ['stderr'], 'message': res.error_message} in res.side_effects


@pytest.mark.asyncio
async def test_runner_without_builtins():
    res = await ScriptRunner(load_builtins=False).handle_script('print("x")')
    assert res.status == 'error'
    assert "unknown identifier: 'print'" in res.error_message


# --- Host calls ---

@pytest.mark.asyncio
async def test_call_script_function_from_host():
    runner = ScriptRunner()
    src = """
    fn add(a, b) { return a + b }
    fn keys_of(h) { return h.keys() }
    fn fails() { throw "bad" }
    """
    await runner.handle_script(src)
    assert await runner.call("add", 2, 3) == 5
    assert await runner.call("keys_of", {"b": 1, "a": 2}) == ["b", "a"]
    with pytest.raises(KestrelRuntimeError, match="uncaught exception: bad"):
        await runner.call("fails")
    with pytest.raises(KestrelRuntimeError, match="unknown identifier: 'nothing'"):
        await runner.call("nothing")


# --- Values ---

def test_values_equal_across_numeric_types_only():
    assert values_equal(Integer(1), Float(1.0))
    assert values_equal(UInteger(2), Integer(2))
    assert not values_equal(String("1"), Integer(1))
    assert values_equal(Array([Integer(1), String("a")]), Array([Integer(1), String("a")]))


def test_native_conversion():
    obj = from_native({"a": (1, None), "big": 2 ** 63, "f": 1.5})
    assert isinstance(obj, Hash)
    assert isinstance(obj.get_str("a"), Tuple)
    assert obj.get_str("a").members[1] is NIL
    assert isinstance(obj.get_str("big"), UInteger)
    assert to_native(obj) == {"a": [1, None], "big": 2 ** 63, "f": 1.5}


def test_printer_formats_literals():
    p = Printer()
    h = from_native({"a": 1, "b": [1, "x"]})
    assert p.pformat(h) == '{"a": 1, "b": [1, "x"]}'
    assert p.pformat(Tuple([Integer(1)])) == "(1,)"
    assert p.pformat(UInteger(4)) == "4u"
    assert p.pformat(String('say "hi"\n')) == '"say \\"hi\\"\\n"'


def test_printer_wraps_long_collections():
    p = Printer(width=20)
    out = p.pformat(Array([String("abcdefgh"), String("ijklmnop"), String("qrstuvwx")]))
    assert out == '[\n  "abcdefgh",\n  "ijklmnop",\n  "qrstuvwx"\n]'


# --- CLI ---

@pytest.mark.asyncio
async def test_cli_runs_script_file(tmp_path, capsys):
    script = tmp_path / "hello.ks"
    script.write_text('fn greet(n) { println("hi " + n) }\nspawn greet("worker")\ngreet("main")')
    await run_script_file(str(script))
    out = capsys.readouterr().out
    assert "hi main\n" in out
    assert "hi worker\n" in out


@pytest.mark.asyncio
async def test_cli_reports_errors_with_context(tmp_path, capsys):
    script = tmp_path / "broken.ks"
    script.write_text("let a = 1\nlet b = a / 0\n")
    with pytest.raises(SystemExit) as info:
        await run_script_file(str(script))
    assert info.value.code == 1
    err = capsys.readouterr().err
    assert "Error on line 2" in err
    assert "division by zero" in err
    assert "> 2 | let b = a / 0" in err


@pytest.mark.asyncio
async def test_cli_missing_file(tmp_path, capsys):
    with pytest.raises(SystemExit):
        await run_script_file(str(tmp_path / "nope.ks"))
    assert "file not found" in capsys.readouterr().err
