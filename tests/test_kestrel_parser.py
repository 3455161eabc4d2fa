import pytest

from kestrel import kestrel_ast as ast
from kestrel.kestrel_lexer import tokenize, interpolation_parts
from kestrel.kestrel_parser import parse, parse_or_raise, KestrelSyntaxError
from kestrel.kestrel_runtime import ScriptRunner
from kestrel.kestrel_tokens import Position, INT, UINT, IDENT, REGEX, STRING, ISTRING


async def run(src: str):
    runner = ScriptRunner()
    return await runner.handle_script(src)


def assert_ok(res, expected=None):
    assert res.status == 'success', f"expected success, got {res.status}: {res.error_message}"
    if expected is not None:
        assert res.value == expected


def assert_error(res, contains: str):
    assert res.status == 'error', f"expected error, got {res.status}: {res.value!r}"
    assert contains in res.error_message, res.error_message


def kinds(src):
    return [t.kind for t in tokenize(src)][:-1]


# --- Lexer ---

def test_unsigned_suffix_and_method_call_on_integer():
    assert kinds("5u") == [UINT]
    assert kinds("10.next()") == [INT, ".", IDENT, "(", ")"]
    assert kinds("1..4") == [INT, "..", INT]


def test_slash_after_value_is_division_otherwise_regex():
    assert kinds("a / b") == [IDENT, "/", IDENT]
    assert kinds("x =~ /ab+c/i") == [IDENT, "=~", REGEX]


def test_single_quotes_never_interpolate():
    toks = tokenize("'a {b}' \"a {b}\" `raw\\n`")
    assert [t.kind for t in toks[:3]] == [STRING, ISTRING, STRING]
    assert toks[0].literal == "a {b}"
    assert toks[2].literal == "raw\\n"


def test_comments_are_skipped_and_doc_comments_attach():
    toks = tokenize("// note\n# also\n/// Adds things\nfn add() {}")
    assert toks[0].kind == "fn"
    assert toks[0].doc == "Adds things"
    assert toks[0].newline_before


def test_interpolation_parts_split_text_and_expressions():
    parts = interpolation_parts('n={n + 1}!', Position("<t>", 1, 2, 1))
    assert parts[0] == ("text", "n=")
    assert parts[1][0] == "expr" and parts[1][1] == "n + 1"
    assert parts[1][2].col == 5
    assert parts[2] == ("text", "!")


# --- Parser ---

def test_parse_returns_program_and_errors():
    program, errors = parse("1 + 2 * 3")
    assert errors == []
    assert isinstance(program, ast.Program)
    assert str(program.statements[0]) == "(1 + (2 * 3))"


def test_power_is_right_associative():
    program, _ = parse("2 ** 2 ** 3")
    assert str(program.statements[0]) == "(2 ** (2 ** 3))"


def test_errors_accumulate_across_statements():
    src = "let = 1;\nlet b = 2;\nlet = 3;\nb"
    program, errors = parse(src)
    assert len(errors) == 2
    assert errors[0].startswith("Syntax Error:<script>:1:5- ")
    assert errors[1].startswith("Syntax Error:<script>:3:5- ")
    # the good statement in between still parses
    assert any(isinstance(s, ast.LetStatement) for s in program.statements)


def test_parse_or_raise_carries_all_errors():
    with pytest.raises(KestrelSyntaxError) as info:
        parse_or_raise("let = 1;\nlet = 2;")
    assert len(info.value.errors) == 2


def test_trailing_commas_and_one_element_tuple():
    program, errors = parse("[1, 2,]; {\"a\": 1,}; (1,); f(1, 2,)")
    assert errors == []
    assert isinstance(program.statements[2].expression, ast.TupleLiteral)


def test_new_requires_declared_class():
    _, errors = parse("new Ghost()")
    assert len(errors) == 1
    assert "'Ghost' is not a class declared before 'new'" in errors[0]


def test_break_outside_loop_is_syntax_error():
    _, errors = parse("fn f() { break }")
    assert errors and "'break' outside of a loop" in errors[0]


def test_spawn_and_await_need_a_call():
    _, errors = parse("spawn 42;\nawait x;")
    assert len(errors) == 2
    assert "'spawn' must be followed by a function call" in errors[0]


def test_unterminated_string():
    _, errors = parse('let s = "abc')
    assert errors and "unterminated string" in errors[0]


@pytest.mark.asyncio
async def test_precedence_end_to_end():
    res = await run("1 + 2 * 3")
    assert_ok(res, 7)
    res = await run("2 ** 2 ** 3")
    assert_ok(res, 256)


@pytest.mark.asyncio
async def test_method_call_on_integer_literal():
    res = await run("10.next()")
    assert_ok(res, 11)


@pytest.mark.asyncio
async def test_interpolated_string():
    res = await run('let n = 2; "n={n + 1}"')
    assert_ok(res, "n=3")


@pytest.mark.asyncio
async def test_escaped_brace_is_literal():
    res = await run('"\\{not} {1 + 1}"')
    assert_ok(res, "{not} 2")


@pytest.mark.asyncio
async def test_syntax_error_result_points_at_first_error():
    res = await run("let x = 1\nlet = 2")
    assert_error(res, "Syntax Error:<script>:2:5-")
    assert res.error_token == {'line': 2, 'col': 5}
