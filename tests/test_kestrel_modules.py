import pytest

from kestrel.kestrel_runtime import ScriptRunner


def assert_ok(res, expected=None):
    assert res.status == 'success', f"expected success, got {res.status}: {res.error_message}"
    if expected is not None:
        assert res.value == expected


def assert_error(res, contains: str):
    assert res.status == 'error', f"expected error, got {res.status}: {res.value!r}"
    assert contains in res.error_message, res.error_message


COUNTER_MODULE = """
println("loading")
let Total = 10
let hidden = 1
fn Double(n) { return n * 2 }
"""


@pytest.fixture
def runner(tmp_path):
    (tmp_path / "counter.ks").write_text(COUNTER_MODULE)
    return ScriptRunner(source_dir=str(tmp_path))


# --- import ---

@pytest.mark.asyncio
async def test_import_evaluates_module_once_per_session(runner):
    res = await runner.handle_script("import counter\nimport counter\ncounter.Double(counter.Total)")
    assert_ok(res, 20)
    assert res.stdout == "loading\n"

    res = await runner.handle_script("import counter\ncounter.Total")
    assert_ok(res, 10)
    assert res.stdout == ""


@pytest.mark.asyncio
async def test_separate_sessions_reload_modules(runner, tmp_path):
    other = ScriptRunner(source_dir=str(tmp_path))
    assert (await runner.handle_script("import counter")).stdout == "loading\n"
    assert (await other.handle_script("import counter")).stdout == "loading\n"


@pytest.mark.asyncio
async def test_only_capitalized_names_are_exported(runner):
    res = await runner.handle_script("import counter\ncounter.hidden")
    assert_error(res, "'hidden' is not exported by module 'counter'")


@pytest.mark.asyncio
async def test_dotted_import_binds_last_segment(tmp_path):
    (tmp_path / "lib").mkdir()
    (tmp_path / "lib" / "util.ks").write_text('fn Shout(s) { return s.upper() + "!" }')
    runner = ScriptRunner(source_dir=str(tmp_path))
    assert_ok(await runner.handle_script('import lib.util\nutil.Shout("hey")'), "HEY!")


@pytest.mark.asyncio
async def test_missing_import(tmp_path):
    runner = ScriptRunner(source_dir=str(tmp_path))
    res = await runner.handle_script("import nowhere")
    assert_error(res, "cannot resolve import 'nowhere'")


@pytest.mark.asyncio
async def test_circular_import_is_reported(tmp_path):
    (tmp_path / "a.ks").write_text("import b\nlet A = 1")
    (tmp_path / "b.ks").write_text("import a\nlet B = 2")
    runner = ScriptRunner(source_dir=str(tmp_path))
    res = await runner.handle_script("import a")
    assert_error(res, "circular import of 'a'")


@pytest.mark.asyncio
async def test_modules_resolve_from_root_dir(tmp_path):
    root = tmp_path / "root"
    root.mkdir()
    (root / "shared.ks").write_text("let Name = \"shared\"")
    runner = ScriptRunner(root_dir=str(root), source_dir=str(tmp_path))
    assert_ok(await runner.handle_script("import shared\nshared.Name"), "shared")


# --- include ---

@pytest.mark.asyncio
async def test_include_splices_definitions(tmp_path):
    (tmp_path / "helpers.ks").write_text("fn square(x) { return x * x }")
    runner = ScriptRunner(source_dir=str(tmp_path))
    assert_ok(await runner.handle_script("include helpers\nsquare(3)"), 9)


@pytest.mark.asyncio
async def test_included_classes_are_visible_to_new(tmp_path):
    (tmp_path / "shapes.ks").write_text("class Square { let side = 2\nfn area() { return side * side } }")
    runner = ScriptRunner(source_dir=str(tmp_path))
    assert_ok(await runner.handle_script('include "shapes"\nnew Square().area()'), 4)


@pytest.mark.asyncio
async def test_missing_include_is_a_syntax_error(tmp_path):
    runner = ScriptRunner(source_dir=str(tmp_path))
    res = await runner.handle_script("include nothing_here\n1")
    assert_error(res, "cannot resolve include 'nothing_here'")
    assert res.error_message.startswith("Syntax Error:")
