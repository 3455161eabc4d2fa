import pytest

from kestrel.kestrel_runtime import ScriptRunner


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


# --- Bindings and scopes ---

@pytest.mark.asyncio
async def test_c_style_for_with_break():
    res = await run("let x = 1; for (i = 0; i < 5; i++) { if (i == 3) { break } x = x + i }; x")
    assert_ok(res, 4)


@pytest.mark.asyncio
async def test_loop_variables_do_not_leak():
    res = await run("for i in [1] { let inner = 5 }\ninner")
    assert_error(res, "unknown identifier: 'inner'")


@pytest.mark.asyncio
async def test_each_iteration_gets_its_own_binding():
    src = """
    let fs = []
    for i in [1, 2, 3] { fs.push(fn() { return i }) }
    [fs[0](), fs[2]()]
    """
    res = await run(src)
    assert_ok(res, [1, 3])


@pytest.mark.asyncio
async def test_unknown_identifier_suggests_close_name():
    res = await run("let counter = 1\ncountr")
    assert_error(res, "unknown identifier: 'countr'")
    assert "Did you mean 'counter'?" in res.error_message


@pytest.mark.asyncio
async def test_for_in_collects_block_values():
    res = await run("for x in [1, 2, 3] where x != 2 { x * 10 }")
    assert_ok(res, [10, 30])


@pytest.mark.asyncio
async def test_while_and_continue():
    src = """
    let n = 0
    let odd = []
    while n < 6 {
        n++
        if n % 2 == 0 { continue }
        odd.push(n)
    }
    odd
    """
    res = await run(src)
    assert_ok(res, [1, 3, 5])


@pytest.mark.asyncio
async def test_definitions_persist_across_runs():
    runner = ScriptRunner()
    assert_ok(await runner.handle_script("fn twice(n) { return n * 2 }"))
    assert_ok(await runner.handle_script("twice(21)"), 42)


# --- Functions ---

@pytest.mark.asyncio
async def test_default_and_variadic_parameters():
    src = """
    fn greet(name, greeting = "hi") { return greeting + " " + name }
    fn total(first, rest...) { return first + rest.sum() }
    [greet("kes"), greet("kes", "yo"), total(1, 2, 3)]
    """
    res = await run(src)
    assert_ok(res, ["hi kes", "yo kes", 6])


@pytest.mark.asyncio
async def test_wrong_argument_count():
    res = await run("fn f(a) { return a }\nf(1, 2)")
    assert_error(res, "wrong number of arguments to f: want=1, got=2")


@pytest.mark.asyncio
async def test_multiple_return_values_make_a_tuple():
    res = await run("fn pair() { return 1, 2 }\nlet (a, b) = pair()\na + b")
    assert_ok(res, 3)


@pytest.mark.asyncio
async def test_pipe_and_fat_arrow():
    res = await run("let double = x => x * 2\n5 |> double")
    assert_ok(res, 10)


# --- Hashes ---

@pytest.mark.asyncio
async def test_hash_keeps_insertion_order_after_pop():
    src = """
    let h = {"a": 1, "b": 2, "c": 3}
    h.pop("a")
    h["a"] = 4
    h.keys()
    """
    res = await run(src)
    assert_ok(res, ["b", "c", "a"])


@pytest.mark.asyncio
async def test_hash_keys_of_different_types_stay_distinct():
    res = await run('let h = {1: "a", 1u: "b", 1.0: "c", "1": "d"}\n[len(h), h[1], h[1u], h["1"]]')
    assert_ok(res, [4, "a", "b", "d"])


@pytest.mark.asyncio
async def test_missing_hash_key_is_an_error():
    res = await run('let h = {"a": 1}\nh["zz"]')
    assert_error(res, "key not found")


# --- Errors, throw and defer ---

@pytest.mark.asyncio
async def test_defers_run_in_reverse_order_even_on_throw():
    runner = ScriptRunner()
    src = """
    let log = []
    fn work() {
        defer log.push(1)
        defer log.push(2)
        throw "boom"
    }
    work()
    """
    res = await runner.handle_script(src)
    assert_error(res, "uncaught exception: boom")
    res = await runner.handle_script("log")
    assert_ok(res, [2, 1])


@pytest.mark.asyncio
async def test_finally_runs_on_return_and_throw():
    runner = ScriptRunner()
    src = """
    let n = 0
    fn f() {
        try { return 1 } finally { n = n + 1 }
    }
    f() + f()
    """
    assert_ok(await runner.handle_script(src), 2)
    res = await runner.handle_script('fn g() { try { throw "y" } finally { n = n + 1 } }\ng()')
    assert_error(res, "uncaught exception: y")
    assert_ok(await runner.handle_script("n"), 3)


@pytest.mark.asyncio
async def test_catch_binds_thrown_value():
    res = await run('try { throw "bad" } catch (e) { "caught " + e }')
    assert_ok(res, "caught bad")


@pytest.mark.asyncio
async def test_caught_throw_still_runs_finally_once():
    runner = ScriptRunner()
    src = """
    let log = []
    fn f() {
        try {
            log.push("try")
            throw "x"
        } catch (e) {
            log.push("catch " + e)
            return "handled"
        } finally {
            log.push("finally")
        }
    }
    [f(), log]
    """
    res = await runner.handle_script(src)
    assert_ok(res, ["handled", ["try", "catch x", "finally"]])


@pytest.mark.asyncio
async def test_runtime_errors_are_not_catchable():
    res = await run('try { 1 / 0 } catch (e) { "caught" }')
    assert_error(res, "division by zero")


@pytest.mark.asyncio
async def test_error_builtin_stops_the_script():
    res = await run('error("stop here")\n"not reached"')
    assert_error(res, "stop here")
    assert res.error_token['line'] == 1


# --- Numbers ---

@pytest.mark.asyncio
async def test_numeric_promotion():
    res = await run("[3 + 2.5, 5 / 2, 7 % 3, -7 % 3]")
    assert_ok(res, [5.5, 2.5, 1, -1])


@pytest.mark.asyncio
async def test_unsigned_arithmetic_stays_unsigned():
    res = await run("[type(5u % 2u), 5u % 2u, type(1 + 1u)]")
    assert_ok(res, ["UINTEGER", 1, "INTEGER"])


@pytest.mark.asyncio
async def test_mixed_sign_results_past_signed_range_are_unsigned():
    res = await run("let big = 9223372036854775807 + 1u\n[type(big), big]")
    assert_ok(res, ["UINTEGER", 9223372036854775808])
    res = await run("[type(3 ** 40u), 3 ** 40u]")
    assert_ok(res, ["UINTEGER", 12157665459056928801])


@pytest.mark.asyncio
async def test_mixed_sign_power_keeps_negative_results_signed():
    res = await run("let p = -2 ** 3u\n[type(p), p, type(2 ** 3u)]")
    assert_ok(res, ["INTEGER", -8, "INTEGER"])


# --- Recursion ---

RECURSIVE = """
fn depth(n) {
    if (n == 0) { return 0 }
    return 1 + depth(n - 1)
}
"""


@pytest.mark.asyncio
async def test_deep_recursion_runs_to_completion():
    res = await run(RECURSIVE + "depth(200)")
    assert_ok(res, 200)


@pytest.mark.asyncio
async def test_runaway_recursion_hits_call_depth_limit():
    res = await run(RECURSIVE + "depth(300)")
    assert_error(res, "maximum call depth (256) exceeded in depth")


@pytest.mark.asyncio
async def test_division_by_zero():
    res = await run("1 / 0")
    assert_error(res, "division by zero")


# --- Assignment ---

@pytest.mark.asyncio
async def test_compound_assignment_on_collections_and_strings():
    src = """
    let a = [1]
    a += 2
    a += [3, 4]
    let s = "ab"
    s += "c"
    s *= 2
    let h = {"x": 1}
    h += {"y": 2}
    h -= "x"
    [a, s, h]
    """
    res = await run(src)
    assert_ok(res, [[1, 2, 3, 4], "abcabc", {"y": 2}])


@pytest.mark.asyncio
async def test_constants_cannot_be_reassigned():
    res = await run("const LIMIT = 3\nLIMIT = 4")
    assert_error(res, "cannot assign to constant 'LIMIT'")


@pytest.mark.asyncio
async def test_constant_sequences_count_on():
    res = await run("const (A, B, C = 10, D)\n[A, B, C, D]")
    assert_ok(res, [0, 1, 10, 11])


@pytest.mark.asyncio
async def test_tuples_are_immutable():
    res = await run("let t = (1, 2)\nt[0] = 5")
    assert_error(res, "tuples are immutable")


# --- Builtins ---

@pytest.mark.asyncio
async def test_sprintf_verbs():
    res = await run('sprintf("%5.2f|%-4d|%s|%x", 3.14159, 7, "k", 255)')
    assert_ok(res, " 3.14|7   |k|ff")


@pytest.mark.asyncio
async def test_print_goes_to_stdout_side_effects():
    res = await run('print("a", 1)\nprintln("b")\nprintf("%d!", 3)')
    assert_ok(res)
    assert res.stdout == "a 1b\n3!"


@pytest.mark.asyncio
async def test_string_and_array_methods():
    src = """
    let words = "b,a,c".split(",")
    [words.sort().join("-"), "Kes".upper(), [1, 2, 3].map(fn(x) { return x * x }), [3, 1, 2].max()]
    """
    res = await run(src)
    assert_ok(res, ["a-b-c", "KES", [1, 4, 9], 3])


@pytest.mark.asyncio
async def test_unknown_method_suggestion():
    res = await run('"abc".uper()')
    assert_error(res, "unknown method 'uper' for STRING")
    assert "Did you mean 'upper'?" in res.error_message


@pytest.mark.asyncio
async def test_optional_values():
    res = await run('[optional(3).map(fn(x) { return x + 1 }).get(), optional().or_else("none")]')
    assert_ok(res, [4, "none"])


@pytest.mark.asyncio
async def test_assert_failure_message():
    res = await run('assert(1 == 2, "math broke")')
    assert_error(res, "assertion failed: math broke")
