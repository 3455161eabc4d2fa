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


# --- Inheritance ---

@pytest.mark.asyncio
async def test_inherited_overridden_and_parent_methods():
    src = """
    class A { fn greet() { return 1 } }
    class B : A { }
    class C : A { fn greet() { return parent.greet() + 10 } }
    class D : A {
        @Override
        fn greet() { return 2 }
    }
    [new B().greet(), new C().greet(), new D().greet()]
    """
    res = await run(src)
    assert_ok(res, [1, 11, 2])


@pytest.mark.asyncio
async def test_override_without_parent_method():
    src = """
    class A { }
    class B : A {
        @Override
        fn missing() { return 1 }
    }
    """
    res = await run(src)
    assert_error(res, "method 'missing' is marked @Override but no parent class declares it")


@pytest.mark.asyncio
async def test_fields_and_init():
    src = """
    class Point {
        let x = 0
        let y = 0
        fn init(x, y) { this.x = x; this.y = y }
        fn sum() { return x + y }
    }
    let p = new Point(2, 3)
    [p.sum(), p.x, new Point(1, 1).sum()]
    """
    res = await run(src)
    assert_ok(res, [5, 2, 2])


@pytest.mark.asyncio
async def test_private_member_access():
    src = """
    class Box {
        private let secret = 42
        fn reveal() { return this.secret }
    }
    let b = new Box()
    b.reveal()
    """
    runner = ScriptRunner()
    assert_ok(await runner.handle_script(src), 42)
    res = await runner.handle_script("b.secret")
    assert_error(res, "'secret' is private in class 'Box'")


# --- Properties ---

@pytest.mark.asyncio
async def test_auto_and_computed_properties():
    src = """
    class Person {
        property name { get; set; }
        property upper { get { return this.name.upper() } }
    }
    let p = new Person()
    p.name = "kes"
    p.upper
    """
    runner = ScriptRunner()
    assert_ok(await runner.handle_script(src), "KES")
    res = await runner.handle_script('p.upper = "x"')
    assert_error(res, "property 'upper' is read-only")


@pytest.mark.asyncio
async def test_indexer_property():
    src = """
    class Grid {
        let cells = {}
        property this[key] {
            get { return cells.get(key, 0) }
            set { cells[key] = value }
        }
    }
    let g = new Grid()
    g["a"] = 7
    [g["a"], g["b"]]
    """
    res = await run(src)
    assert_ok(res, [7, 0])


# --- Operators ---

@pytest.mark.asyncio
async def test_operator_methods():
    src = """
    class Vec {
        let x = 0
        let y = 0
        fn init(x, y) { this.x = x; this.y = y }
        fn +(other) { return new Vec(x + other.x, y + other.y) }
        fn ==(other) { return x == other.x && y == other.y }
    }
    let v = new Vec(1, 2) + new Vec(3, 4)
    [v.x, v.y, v == new Vec(4, 6)]
    """
    runner = ScriptRunner()
    assert_ok(await runner.handle_script(src), [4, 6, True])
    res = await runner.handle_script("new Vec(1, 2) - new Vec(1, 1)")
    assert_error(res, "undefined operator method '-' for class 'Vec'")


# --- Static members ---

@pytest.mark.asyncio
async def test_static_members():
    src = """
    class Counter {
        static let count = 0
        static fn bump() { count = count + 1; return count }
    }
    Counter.bump()
    Counter.bump()
    """
    runner = ScriptRunner()
    assert_ok(await runner.handle_script(src), 2)
    res = await runner.handle_script("let c = new Counter()\nc.bump()")
    assert_error(res, "static method 'bump' called through an instance of 'Counter'")


@pytest.mark.asyncio
async def test_instance_method_through_class():
    src = """
    class Greeter { fn hello(name) { return "hi " + name } }
    Greeter.hello("x")
    """
    res = await run(src)
    assert_error(res, "non-static method 'hello' called through class 'Greeter'")


@pytest.mark.asyncio
async def test_this_in_static_method():
    src = """
    class Counter {
        let n = 1
        static fn peek() { return this.n }
    }
    Counter.peek()
    """
    res = await run(src)
    assert_error(res, "'this' used in static method 'Counter.peek'")


@pytest.mark.asyncio
async def test_method_without_call_is_a_value():
    src = """
    class Point {
        let x = 2
        fn double() { return x * 2 }
    }
    let p = new Point()
    fn apply(g) { return g() }
    let m = p.double
    [type(m), m(), apply(p.double)]
    """
    res = await run(src)
    assert_ok(res, ["METHOD", 4, 4])


# --- Annotations ---

@pytest.mark.asyncio
async def test_annotation_instances_on_functions():
    src = """
    class @Route {
        property url;
        property methods default ["GET"]
    }
    @Route(url = "/a")
    fn handler() { return 1 }
    let a = handler.annotations()[0]
    [a.url, a.methods, handler.name()]
    """
    res = await run(src)
    assert_ok(res, ["/a", ["GET"], "handler"])


@pytest.mark.asyncio
async def test_annotation_must_be_annotation_class():
    src = """
    class Plain { }
    @Plain
    fn f() { }
    """
    res = await run(src)
    assert_error(res, "'Plain' is not an annotation class")


@pytest.mark.asyncio
async def test_unknown_annotation_property():
    src = """
    class @Tag { property label }
    @Tag(colour = "red")
    fn f() { }
    """
    res = await run(src)
    assert_error(res, "annotation 'Tag' has no property 'colour'")


# --- Categories, enums, using ---

@pytest.mark.asyncio
async def test_category_adds_methods_to_existing_class():
    src = """
    class Text { let s = "abc" }
    class Text (Shouting) { fn shout() { return s.upper() } }
    new Text().shout()
    """
    res = await run(src)
    assert_ok(res, "ABC")


@pytest.mark.asyncio
async def test_enum_values_count_on():
    src = """
    enum Color { RED, GREEN = 5, BLUE }
    [Color.RED, Color.GREEN, Color.BLUE, Color.names()]
    """
    res = await run(src)
    assert_ok(res, [0, 5, 6, ["RED", "GREEN", "BLUE"]])


@pytest.mark.asyncio
async def test_using_closes_resource():
    src = """
    let log = []
    class Res { fn close() { log.push("closed") } }
    using (r = new Res()) { log.push("used") }
    log
    """
    res = await run(src)
    assert_ok(res, ["used", "closed"])


@pytest.mark.asyncio
async def test_using_closes_resource_on_throw():
    runner = ScriptRunner()
    src = """
    let log = []
    class Res { fn close() { log.push("closed") } }
    fn risky() { using (r = new Res()) { throw "oops" } }
    risky()
    """
    res = await runner.handle_script(src)
    assert_error(res, "uncaught exception: oops")
    assert_ok(await runner.handle_script("log"), ["closed"])


@pytest.mark.asyncio
async def test_struct_records():
    res = await run('let s = struct { name => "k", age => 3 }\ns.age = 4\n[s.name, s.age]')
    assert_ok(res, ["k", 4])
