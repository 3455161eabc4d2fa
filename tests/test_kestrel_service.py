import httpx
import pytest

from kestrel.kestrel_runtime import ScriptRunner
from kestrel.kestrel_service import compile_pattern


def assert_ok(res, expected=None):
    assert res.status == 'success', f"expected success, got {res.status}: {res.error_message}"
    if expected is not None:
        assert res.value == expected


API = """
let users = {"5": "kes"}

service api on "127.0.0.1:8080" {
    @route(url = '/users/{id:[0-9]+}', methods = ["GET"])
    fn show(req) {
        return {"id": req.vars.id, "name": users.get(req.vars.id, nil), "x": req.query.get("x", nil)}
    }

    @route(url = "/users", methods = ["POST"])
    fn create(req) {
        users[req.body.id] = req.body.name
        return {"created": req.body.name}, 201
    }

    @route(url = "/teapot", methods = ["GET", "POST"])
    fn teapot(req) {
        return {"status": 418, "body": "short and stout", "headers": {"X-Kind": "tea"}}
    }

    @route(url = "/empty")
    fn empty(req) { return 204 }

    @route(url = "/hello")
    fn hello(req) { return "hello " + req.method }

    @route(url = "/boom")
    fn boom(req) { throw "kaput" }
}
"""


async def start_service():
    runner = ScriptRunner()
    assert_ok(await runner.handle_script(API))
    return runner, runner.services["api"]


def client_for(svc):
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=svc.asgi), base_url="http://test")


def test_compile_pattern():
    rx = compile_pattern("/users/{id:[0-9]+}/posts/{slug}")
    assert rx.match("/users/12/posts/hi").groupdict() == {"id": "12", "slug": "hi"}
    assert rx.match("/users/ab/posts/hi") is None
    assert rx.match("/users/12/posts/hi/extra") is None


@pytest.mark.asyncio
async def test_get_with_path_and_query_variables():
    _, svc = await start_service()
    async with client_for(svc) as client:
        resp = await client.get("/users/5", params={"x": "1"})
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("application/json")
    assert resp.json() == {"id": "5", "name": "kes", "x": "1"}


@pytest.mark.asyncio
async def test_post_json_body_and_tuple_status():
    runner, svc = await start_service()
    async with client_for(svc) as client:
        resp = await client.post("/users", json={"id": "9", "name": "new"})
    assert resp.status_code == 201
    assert resp.json() == {"created": "new"}
    assert_ok(await runner.handle_script('users["9"]'), "new")


@pytest.mark.asyncio
async def test_hash_result_sets_status_headers_and_body():
    _, svc = await start_service()
    async with client_for(svc) as client:
        resp = await client.post("/teapot")
    assert resp.status_code == 418
    assert resp.headers["x-kind"] == "tea"
    assert resp.text == "short and stout"


@pytest.mark.asyncio
async def test_integer_and_string_results():
    _, svc = await start_service()
    async with client_for(svc) as client:
        empty = await client.get("/empty")
        hello = await client.get("/hello")
    assert empty.status_code == 204
    assert empty.content == b""
    assert hello.status_code == 200
    assert hello.headers["content-type"].startswith("text/plain")
    assert hello.text == "hello GET"


@pytest.mark.asyncio
async def test_unmatched_path_and_wrong_method():
    _, svc = await start_service()
    async with client_for(svc) as client:
        missing = await client.get("/nowhere")
        wrong = await client.delete("/users/5")
        bad_var = await client.get("/users/abc")
    assert missing.status_code == 404
    assert wrong.status_code == 405
    assert bad_var.status_code == 404


@pytest.mark.asyncio
async def test_handler_throw_is_a_server_error():
    _, svc = await start_service()
    async with client_for(svc) as client:
        resp = await client.get("/boom")
    assert resp.status_code == 500
    assert "kaput" in resp.text


@pytest.mark.asyncio
async def test_service_type_methods():
    runner, _ = await start_service()
    res = await runner.handle_script("[api.name(), api.routes()]")
    assert_ok(res, ["api", [
        "GET /users/{id:[0-9]+}",
        "POST /users",
        "GET,POST /teapot",
        "GET /empty",
        "GET /hello",
        "GET /boom",
    ]])


@pytest.mark.asyncio
async def test_scripts_can_call_services_over_http():
    runner, svc = await start_service()
    runner.stdlib.http_transport = httpx.ASGITransport(app=svc.asgi)
    res = await runner.handle_script('http_get("http://test/users/5").name')
    assert_ok(res, "kes")

    res = await runner.handle_script(
        'http_get("http://test/teapot", {"response_mode": "lite", "retries": 0})')
    assert_ok(res)
    assert res.value["status"] == 418
    assert res.value["body"] == "short and stout"


@pytest.mark.asyncio
async def test_http_errors_surface_as_runtime_errors():
    runner, svc = await start_service()
    runner.stdlib.http_transport = httpx.ASGITransport(app=svc.asgi)
    res = await runner.handle_script('http_get("http://test/nowhere", {"retries": 0})')
    assert res.status == 'error'
    assert "HTTP 404" in res.error_message
