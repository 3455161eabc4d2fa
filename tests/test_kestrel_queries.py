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


PEOPLE = """
let people = [
    {"id": 1, "name": "a", "age": 3},
    {"id": 2, "name": "b", "age": 1},
    {"id": 3, "name": "c", "age": 5},
]
let orders = [
    {"pid": 1, "item": "pen"},
    {"pid": 3, "item": "cup"},
    {"pid": 1, "item": "ink"},
]
"""


# --- Comprehensions ---

@pytest.mark.asyncio
async def test_list_comprehension_over_range_with_filter():
    res = await run("[x * x for x in 1..4 where x % 2 == 0]")
    assert_ok(res, [4, 16])


@pytest.mark.asyncio
async def test_list_comprehension_over_hash_pairs():
    res = await run('[k + "=" + str(v) for k, v in {"a": 1, "b": 2}]')
    assert_ok(res, ["a=1", "b=2"])


@pytest.mark.asyncio
async def test_hash_comprehension():
    res = await run("let h = {x: x * 2 for x in [1, 2]}\nh")
    assert_ok(res, {"1": 2, "2": 4})


@pytest.mark.asyncio
async def test_descending_range():
    res = await run("[x for x in 3..1]")
    assert_ok(res, [3, 2, 1])


# --- Queries ---

@pytest.mark.asyncio
async def test_query_where_orderby_select():
    src = PEOPLE + """
    from p in people where p.age > 2 orderby p.name descending select p.name
    """
    res = await run(src)
    assert_ok(res, ["c", "a"])


@pytest.mark.asyncio
async def test_query_group_by():
    res = await run("from w in qw(apple avocado banana) group w by w[0]")
    assert_ok(res, [
        {"key": "a", "items": ["apple", "avocado"]},
        {"key": "b", "items": ["banana"]},
    ])


@pytest.mark.asyncio
async def test_query_join_and_let():
    src = PEOPLE + """
    from p in people
        join o in orders on p.id equals o.pid
        let label = p.name + ":" + o.item
        select label
    """
    res = await run(src)
    assert_ok(res, ["a:pen", "a:ink", "c:cup"])


@pytest.mark.asyncio
async def test_query_group_join_into():
    src = PEOPLE + """
    from p in people
        join o in orders on p.id equals o.pid into bought
        select len(bought)
    """
    res = await run(src)
    assert_ok(res, [2, 0, 1])


@pytest.mark.asyncio
async def test_query_continuation():
    src = """
    from n in [1, 2, 3, 4] select n * 10 into t where t > 15 select t + 1
    """
    res = await run(src)
    assert_ok(res, [21, 31, 41])


@pytest.mark.asyncio
async def test_query_needs_select_or_group():
    res = await run("from x in [1] where x > 0")
    assert_error(res, "query must end with 'select' or 'group'")


# --- case ---

@pytest.mark.asyncio
async def test_case_in_matches_any_listed_value():
    src = """
    fn size(n) {
        return case n in { 1, 2 { "small" } else { "big" } }
    }
    [size(2), size(9)]
    """
    res = await run(src)
    assert_ok(res, ["small", "big"])


@pytest.mark.asyncio
async def test_case_is_uses_whole_regex_match():
    src = """
    let kind = fn(s) { return case s is { /h.*o/ { "greeting" } else { "other" } } }
    [kind("hello"), kind("hello!")]
    """
    res = await run(src)
    assert_ok(res, ["greeting", "other"])


@pytest.mark.asyncio
async def test_case_without_match_or_else_is_nil():
    res = await run("case 3 in { 1 { 1 } }")
    assert_ok(res)
    assert res.value is None


# --- grep / map ---

@pytest.mark.asyncio
async def test_grep_block_form():
    res = await run("grep { $_ > 1 } [1, 2, 3]")
    assert_ok(res, [2, 3])


@pytest.mark.asyncio
async def test_map_expression_form():
    res = await run("map $_ * 2, [1, 2]")
    assert_ok(res, [2, 4])
