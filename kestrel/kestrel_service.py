"""
Route table behind the `service` statement, served as an ASGI application.

    service api on "127.0.0.1:8080" {
        @route(url = '/users/{id:[0-9]+}', methods = ["GET"])
        fn user(req) { return {"id": req.vars.id} }
    }

The evaluator builds one `Service` per statement and registers it on the
session. Hosts mount `service.asgi` in the server of their choice; tests drive
it through `httpx.ASGITransport`.
"""
import json
import re
from typing import Any, Dict, List, Optional, TYPE_CHECKING
from urllib.parse import parse_qsl

from kestrel.kestrel_datatypes import (
    KestrelObject, Integer, String, Hash, Tuple, Function, Error, Throw,
    NIL, Scope, CallStack, from_native, to_native,
)
from kestrel.kestrel_serialize import marshal_json

if TYPE_CHECKING:
    from kestrel.kestrel_interpreter import Evaluator

_VAR_RE = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)(?::([^{}]+))?\}")


def compile_pattern(url: str) -> re.Pattern:
    """`/a/{id}` and `/a/{id:[0-9]+}` style templates to an anchored regex."""
    out = []
    pos = 0
    for m in _VAR_RE.finditer(url):
        out.append(re.escape(url[pos:m.start()]))
        name, rx = m.group(1), m.group(2) or "[^/]+"
        out.append(f"(?P<{name}>{rx})")
        pos = m.end()
    out.append(re.escape(url[pos:]))
    return re.compile("^" + "".join(out) + "$")


class Route:
    def __init__(self, url: str, methods: List[str], handler: Function, *,
                 host: Optional[str] = None, headers: Optional[Dict[str, Any]] = None,
                 queries: Optional[Dict[str, Any]] = None):
        self.url = url
        self.pattern = compile_pattern(url)
        self.methods = [m.upper() for m in methods] or ["GET"]
        self.handler = handler
        self.host = host
        self.headers = {str(k).lower(): str(v) for k, v in (headers or {}).items()}
        self.queries = {str(k): str(v) for k, v in (queries or {}).items()}

    def describe(self) -> str:
        return f"{','.join(self.methods)} {self.url}"

    def match(self, method: str, path: str, host: str, headers: Dict[str, str],
              query: Dict[str, str]) -> Optional[Dict[str, str]]:
        """Path variables when the request matches everything except the method."""
        m = self.pattern.match(path)
        if m is None:
            return None
        if self.host and host.split(":")[0] != self.host.split(":")[0]:
            return None
        for k, v in self.headers.items():
            if headers.get(k) != v:
                return None
        for k, v in self.queries.items():
            if query.get(k) != v:
                return None
        return m.groupdict()


class Service(KestrelObject):
    TYPE = "SERVICE"

    def __init__(self, name: str, addr: str, evaluator: 'Evaluator', scope: Scope, node=None):
        self.name = name
        self.addr = addr
        self.evaluator = evaluator
        self.scope = scope
        self.node = node
        self.routes: List[Route] = []

    def inspect(self) -> str:
        return f"<service {self.name} on {self.addr}>"

    def add_route(self, url: str, methods: List[str], handler: Function, **options) -> Route:
        route = Route(url, methods, handler, **options)
        self.routes.append(route)
        return route

    def find(self, method: str, path: str, host: str = "", headers: Optional[Dict[str, str]] = None,
             query: Optional[Dict[str, str]] = None):
        """(route, vars, status): status is 404 or 405 when nothing matched."""
        allowed = False
        for route in self.routes:
            found = route.match(method, path, host, headers or {}, query or {})
            if found is None:
                continue
            if method.upper() in route.methods:
                return route, found, 200
            allowed = True
        return None, {}, 405 if allowed else 404

    async def dispatch(self, route: Route, request: Hash) -> KestrelObject:
        ev = self.evaluator
        try:
            return await ev.invoke(route.handler, [request], self.node, self.scope,
                                   call_stack=CallStack(), awaited=True)
        except Exception as e:
            ev._dbg(f"service {self.name}: handler {route.handler.name} failed:", repr(e))
            return Error(f"internal error: {e}", self.node.pos if self.node is not None else None)

    @staticmethod
    def to_response(result: KestrelObject):
        """(status, headers, body bytes) for a handler result."""
        if isinstance(result, (Error, Throw)):
            return 500, {"content-type": "text/plain; charset=utf-8"}, result.inspect().encode("utf-8")
        if isinstance(result, Tuple) and len(result.members) == 2 \
                and isinstance(result.members[1], Integer):
            status = result.members[1].value
            return status, {"content-type": "application/json; charset=utf-8"}, \
                marshal_json(result.members[0]).encode("utf-8")
        if isinstance(result, Integer):
            return result.value, {}, b""
        if isinstance(result, Hash) and result.get_str("status") is not None:
            status = result.get_str("status")
            body = result.get_str("body") or NIL
            headers = {str(k).lower(): str(v) for k, v in (to_native(result.get_str("headers") or Hash())).items()}
            if isinstance(body, String):
                headers.setdefault("content-type", "text/plain; charset=utf-8")
                payload = body.value.encode("utf-8")
            elif body is NIL:
                payload = b""
            else:
                headers.setdefault("content-type", "application/json; charset=utf-8")
                payload = marshal_json(body).encode("utf-8")
            return int(to_native(status)), headers, payload
        if result is NIL:
            return 200, {}, b""
        if isinstance(result, String):
            return 200, {"content-type": "text/plain; charset=utf-8"}, result.value.encode("utf-8")
        return 200, {"content-type": "application/json; charset=utf-8"}, marshal_json(result).encode("utf-8")

    async def asgi(self, scope: Dict[str, Any], receive, send):
        """ASGI entry point."""
        if scope.get("type") != "http":
            return
        body = b""
        more = True
        while more:
            message = await receive()
            body += message.get("body", b"")
            more = message.get("more_body", False)

        headers = {k.decode("latin-1").lower(): v.decode("latin-1") for k, v in scope.get("headers", [])}
        query = dict(parse_qsl(scope.get("query_string", b"").decode("latin-1")))
        method = scope.get("method", "GET")
        path = scope.get("path", "/")
        route, path_vars, status = self.find(method, path, headers.get("host", ""), headers, query)
        if route is None:
            text = "Not Found" if status == 404 else "Method Not Allowed"
            await _send(send, status, {"content-type": "text/plain; charset=utf-8"}, text.encode("utf-8"))
            return

        text = body.decode("utf-8", errors="replace")
        payload: KestrelObject = String(text)
        if "json" in headers.get("content-type", "") and text:
            try:
                payload = from_native(json.loads(text))
            except ValueError:
                pass
        request = Hash.from_pairs([
            (String("method"), String(method)),
            (String("path"), String(path)),
            (String("vars"), from_native(path_vars)),
            (String("query"), from_native(query)),
            (String("headers"), from_native(headers)),
            (String("body"), payload),
        ])
        result = await self.dispatch(route, request)
        status, out_headers, out_body = self.to_response(result)
        await _send(send, status, out_headers, out_body)


async def _send(send, status: int, headers: Dict[str, str], body: bytes):
    raw = [(k.encode("latin-1"), v.encode("latin-1")) for k, v in headers.items()]
    raw.append((b"content-length", str(len(body)).encode("latin-1")))
    await send({"type": "http.response.start", "status": status, "headers": raw})
    await send({"type": "http.response.body", "body": body})
