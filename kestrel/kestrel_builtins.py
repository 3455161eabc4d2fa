"""
Built-in functions and the methods of the builtin types.

`StdLib` holds the global functions: every method named `_name` becomes the
global `name` when the library is installed into a scope. `TypeMethods` holds
the methods callable on builtin values (`"abc".upper()`, `[1, 2].sum()`); a
method named `<prefix>_<name>` is registered for the types its prefix covers.

Both receive and return Kestrel objects. They raise `KestrelRuntimeError` for
bad input; the evaluator turns that into an `Error` at the call site. Methods
taking script callbacks return any Error or Throw the callback produced.
"""
import asyncio
import difflib
import functools
import inspect
import json
import re
from typing import Dict, List, Optional, TYPE_CHECKING

import httpx
import pystache

from kestrel.kestrel_datatypes import (
    KestrelObject, KestrelRuntimeError, Integer, UInteger, Float, String, Boolean,
    Array, Tuple, Hash, Regex, OptionalObject, Builtin, Error,
    NIL, TRUE, FALSE, NUMBER_TYPES, INT64_MAX, UINT64_MAX,
    native_bool, is_truthy, is_sentinel, values_equal, compare_values,
    from_native, to_native,
)
from kestrel.kestrel_file import file_get, file_put
from kestrel.kestrel_http import http_request
from kestrel.kestrel_serialize import marshal_json, unmarshal_json, marshal_yaml, unmarshal_yaml

if TYPE_CHECKING:
    from kestrel.kestrel_interpreter import Evaluator


def text_of(obj: KestrelObject) -> str:
    """Printable text: strings unquoted, everything else as inspected."""
    if isinstance(obj, String):
        return obj.value
    return obj.inspect()


def _expect(obj: KestrelObject, kinds, fn: str, what: str = "argument") -> KestrelObject:
    if not isinstance(obj, kinds):
        names = kinds.TYPE if isinstance(kinds, type) else "|".join(k.TYPE for k in kinds)
        raise KestrelRuntimeError(f"{fn}: {what} must be {names}, got {obj.type()}")
    return obj


def _int_of(obj: KestrelObject, fn: str) -> int:
    return _expect(obj, (Integer, UInteger), fn).value


# =================================================================
# Go-style formatting
# =================================================================

_FMT_RE = re.compile(r"%([-+ 0#]*)(\*|\d+)?(?:\.(\*|\d+))?([a-zA-Z%])")


def _pad(text: str, flags: str, width: Optional[str]) -> str:
    if not width:
        return text
    w = int(width)
    if "-" in flags:
        return text.ljust(w)
    if "0" in flags:
        sign = text[:1] if text[:1] in "+-" else ""
        return sign + text[len(sign):].rjust(w - len(sign), "0")
    return text.rjust(w)


def _format_one(flags: str, width: Optional[str], prec: Optional[str], verb: str, arg: KestrelObject) -> str:
    spec = "%" + flags + (width or "") + (f".{prec}" if prec is not None else "")
    bad = f"%!{verb}({arg.type()}={text_of(arg)})"
    if verb in "vs":
        return (spec + "s") % text_of(arg)
    if verb == "q":
        quoted = json.dumps(arg.value, ensure_ascii=False) if isinstance(arg, String) else arg.inspect()
        return _pad(quoted, flags, width)
    if verb == "t":
        if not isinstance(arg, Boolean):
            return bad
        return _pad(arg.inspect(), flags, width)
    if verb in "dxXoc" or verb == "b":
        if not isinstance(arg, (Integer, UInteger)):
            return bad
        n = arg.value
        if verb == "b":
            digits = format(abs(n), "b")
            return _pad(("-" if n < 0 else "") + digits, flags, width)
        if verb == "c":
            return _pad(chr(n), flags, width)
        return (spec + verb) % n
    if verb in "fFeEgG":
        if not isinstance(arg, NUMBER_TYPES):
            return bad
        return (spec + verb) % float(arg.value)
    return bad


def sprintf(fmt: str, args: List[KestrelObject]) -> str:
    out = []
    pos = 0
    i = 0
    for m in _FMT_RE.finditer(fmt):
        out.append(fmt[pos:m.start()])
        pos = m.end()
        flags, width, prec, verb = m.groups()
        if verb == "%":
            out.append("%")
            continue
        if width == "*" or prec == "*":
            stars = [width == "*", prec == "*"]
            for j, is_star in enumerate(stars):
                if not is_star:
                    continue
                if i >= len(args) or not isinstance(args[i], (Integer, UInteger)):
                    return "".join(out) + "%!(BADWIDTH)"
                if j == 0:
                    width = str(args[i].value)
                else:
                    prec = str(args[i].value)
                i += 1
        if i >= len(args):
            out.append(f"%!{verb}(MISSING)")
            continue
        out.append(_format_one(flags, width, prec, verb, args[i]))
        i += 1
    out.append(fmt[pos:])
    if i < len(args):
        extra = ", ".join(f"{a.type()}={text_of(a)}" for a in args[i:])
        out.append(f"%!(EXTRA {extra})")
    return "".join(out)


# =================================================================
# Global functions
# =================================================================

class StdLib:
    """Python implementations of the Kestrel global functions."""

    def __init__(self, evaluator: 'Evaluator'):
        self.evaluator = evaluator
        # Tests point this at an ASGI app through httpx.ASGITransport
        self.http_transport: Optional[httpx.AsyncBaseTransport] = None

    def install(self, scope):
        for name, member in inspect.getmembers(self, inspect.ismethod):
            if name.startswith('_') and not name.startswith('__'):
                scope.set(name[1:], Builtin(name[1:], member))

    def emit(self, topic: str, message: str):
        self.evaluator.side_effects.append({"topics": [topic], "message": message})

    # --- Output ---
    def _print(self, *args):
        self.emit("stdout", " ".join(text_of(a) for a in args))

    def _println(self, *args):
        self.emit("stdout", " ".join(text_of(a) for a in args) + "\n")

    def _printf(self, fmt, *args):
        self.emit("stdout", sprintf(_expect(fmt, String, "printf", "format").value, list(args)))

    def _sprintf(self, fmt, *args):
        return String(sprintf(_expect(fmt, String, "sprintf", "format").value, list(args)))

    # --- Inspection and conversion ---
    def _len(self, value):
        if isinstance(value, String):
            return Integer(len(value.value))
        if isinstance(value, (Array, Tuple, Hash)):
            return Integer(len(value))
        raise KestrelRuntimeError(f"len: argument not supported, got {value.type()}")

    def _type(self, value):
        return String(value.type())

    def _str(self, value):
        return String(text_of(value))

    def _int(self, value):
        if isinstance(value, (Integer, UInteger, Float)):
            return Integer(int(value.value))
        if isinstance(value, Boolean):
            return Integer(int(value.value))
        if isinstance(value, String):
            try:
                return Integer(int(value.value.strip(), 0))
            except ValueError:
                raise KestrelRuntimeError(f"int: cannot convert {value.value!r}") from None
        raise KestrelRuntimeError(f"int: cannot convert {value.type()}")

    def _uint(self, value):
        if isinstance(value, String):
            try:
                raw = int(value.value.strip(), 0)
            except ValueError:
                raise KestrelRuntimeError(f"uint: cannot convert {value.value!r}") from None
        else:
            raw = self._int(value).value if not isinstance(value, UInteger) else value.value
        if raw < 0 or raw > UINT64_MAX:
            raise KestrelRuntimeError(f"uint: {raw} out of range")
        return UInteger(raw)

    def _float(self, value):
        if isinstance(value, (Integer, UInteger, Float, Boolean)):
            return Float(float(value.value))
        if isinstance(value, String):
            try:
                return Float(float(value.value.strip()))
            except ValueError:
                raise KestrelRuntimeError(f"float: cannot convert {value.value!r}") from None
        raise KestrelRuntimeError(f"float: cannot convert {value.type()}")

    def _bool(self, value):
        return native_bool(is_truthy(value))

    # --- Collections ---
    def _range(self, *args):
        if not 1 <= len(args) <= 3:
            raise KestrelRuntimeError(f"range: want 1 to 3 arguments, got={len(args)}")
        bounds = [_int_of(a, "range") for a in args]
        return Array([Integer(i) for i in range(*bounds)])

    def _keys(self, h):
        return Array(_expect(h, Hash, "keys").keys())

    def _values(self, h):
        return Array(_expect(h, Hash, "values").values())

    def _push(self, arr, *values):
        _expect(arr, Array, "push").members.extend(values)
        return arr

    def _pop(self, arr):
        members = _expect(arr, Array, "pop").members
        return members.pop() if members else NIL

    def _optional(self, value=NIL):
        return OptionalObject(value)

    # --- Control ---
    async def _sleep(self, ms):
        await asyncio.sleep(float(_expect(ms, NUMBER_TYPES, "sleep").value) / 1000)

    def _assert(self, cond, message=NIL):
        if not is_truthy(cond):
            detail = f": {text_of(message)}" if message is not NIL else ""
            raise KestrelRuntimeError(f"assertion failed{detail}")
        return TRUE

    def _error(self, message):
        node = self.evaluator.current_node
        return Error(text_of(message), node.pos if node is not None else None)

    # --- Encoding ---
    def _json_encode(self, value, pretty=FALSE):
        return String(marshal_json(value, pretty=is_truthy(pretty)))

    def _json_decode(self, text):
        return unmarshal_json(_expect(text, String, "json_decode").value)

    def _yaml_encode(self, value):
        return String(marshal_yaml(value))

    def _yaml_decode(self, text):
        return unmarshal_yaml(_expect(text, String, "yaml_decode").value)

    def _render(self, template, context=NIL):
        renderer = pystache.Renderer(escape=lambda u: u, missing_tags='ignore')
        ctx = to_native(context) if context is not NIL else {}
        return String(renderer.render(_expect(template, String, "render", "template").value, ctx))

    # --- Files and network ---
    def _read_file(self, path):
        locator = _expect(path, String, "read_file").value
        return from_native(file_get(locator, base_dir=self.evaluator.host.source_dir))

    def _write_file(self, path, data):
        locator = _expect(path, String, "write_file").value
        payload = data.value if isinstance(data, String) else to_native(data)
        return String(file_put(locator, payload, base_dir=self.evaluator.host.source_dir))

    async def fetch(self, method: str, url, data=None, config=NIL):
        cfg = to_native(config) if isinstance(config, Hash) else {}
        payload = None
        if data is not None:
            payload = data.value if isinstance(data, String) else to_native(data)
        try:
            result = await http_request(method, _expect(url, String, f"http_{method.lower()}", "url").value,
                                        config=cfg, data=payload, transport=self.http_transport)
        except (httpx.HTTPError, RuntimeError) as e:
            raise KestrelRuntimeError(f"http_{method.lower()}: {e}") from e
        if isinstance(result, tuple):
            status, value, headers = result
            return Hash.from_pairs([
                (String("status"), Integer(status)),
                (String("body"), from_native(value)),
                (String("headers"), from_native(headers)),
            ])
        return from_native(result)

    async def _http_get(self, url, config=NIL):
        return await self.fetch("GET", url, config=config)

    async def _http_post(self, url, data, config=NIL):
        return await self.fetch("POST", url, data, config)


# =================================================================
# Methods of builtin types
# =================================================================

_PREFIXES = {
    "num_": ("INTEGER", "UINTEGER", "FLOAT"),
    "str_": ("STRING",),
    "array_": ("ARRAY",),
    "tuple_": ("TUPLE",),
    "hash_": ("HASH",),
    "optional_": ("OPTIONAL",),
    "regex_": ("REGEX",),
    "callable_": ("FUNCTION", "BUILTIN", "CLASS"),
    "enum_": ("ENUM",),
    "service_": ("SERVICE",),
}


class TypeMethods:
    """Registry of builtin-type methods, keyed by type tag then method name."""

    def __init__(self, evaluator: 'Evaluator'):
        self.evaluator = evaluator
        self.methods: Dict[str, Dict[str, Builtin]] = {}
        for attr, member in inspect.getmembers(self, inspect.ismethod):
            for prefix, types in _PREFIXES.items():
                if attr.startswith(prefix):
                    name = attr[len(prefix):]
                    for t in types:
                        self.methods.setdefault(t, {})[name] = Builtin(name, member)

    def lookup(self, obj: KestrelObject, name: str) -> Optional[Builtin]:
        return self.methods.get(obj.type(), {}).get(name)

    def suggest(self, obj: KestrelObject, name: str) -> Optional[str]:
        matches = difflib.get_close_matches(name, list(self.methods.get(obj.type(), {})), n=1)
        return matches[0] if matches else None

    async def _call(self, fn, *args, scope):
        ev = self.evaluator
        return await ev.apply_function(fn, list(args), scope, ev.current_node)

    # --- Numbers ---
    def num_next(self, n):
        return type(n)(n.value + 1)

    def num_prev(self, n):
        return type(n)(n.value - 1)

    def num_abs(self, n):
        if isinstance(n, Integer) and n.value < 0 and -n.value > INT64_MAX:
            raise KestrelRuntimeError("abs: overflow")
        return type(n)(abs(n.value))

    def num_str(self, n):
        return String(n.inspect())

    def num_float(self, n):
        return Float(float(n.value))

    def num_int(self, n):
        return Integer(int(n.value))

    # --- Strings ---
    def str_len(self, s):
        return Integer(len(s.value))

    def str_upper(self, s):
        return String(s.value.upper())

    def str_lower(self, s):
        return String(s.value.lower())

    def str_trim(self, s, chars=NIL):
        if chars is NIL:
            return String(s.value.strip())
        return String(s.value.strip(_expect(chars, String, "trim").value))

    def str_split(self, s, sep=NIL):
        if sep is NIL:
            parts = s.value.split()
        else:
            sep_text = _expect(sep, String, "split", "separator").value
            parts = list(s.value) if sep_text == "" else s.value.split(sep_text)
        return Array([String(p) for p in parts])

    def str_contains(self, s, sub):
        return native_bool(_expect(sub, String, "contains").value in s.value)

    def str_starts_with(self, s, prefix):
        return native_bool(s.value.startswith(_expect(prefix, String, "starts_with").value))

    def str_ends_with(self, s, suffix):
        return native_bool(s.value.endswith(_expect(suffix, String, "ends_with").value))

    def str_replace(self, s, old, new):
        if isinstance(old, Regex):
            return String(old.compiled.sub(_expect(new, String, "replace").value, s.value))
        return String(s.value.replace(_expect(old, String, "replace").value, _expect(new, String, "replace").value))

    def str_find(self, s, sub):
        return Integer(s.value.find(_expect(sub, String, "find").value))

    def str_repeat(self, s, count):
        return String(s.value * max(_int_of(count, "repeat"), 0))

    def str_reverse(self, s):
        return String(s.value[::-1])

    def str_chars(self, s):
        return Array([String(c) for c in s.value])

    # --- Arrays ---
    def array_len(self, arr):
        return Integer(len(arr.members))

    def array_push(self, arr, *values):
        arr.members.extend(values)
        return arr

    def array_pop(self, arr):
        return arr.members.pop() if arr.members else NIL

    def array_shift(self, arr):
        return arr.members.pop(0) if arr.members else NIL

    def array_unshift(self, arr, *values):
        arr.members[0:0] = values
        return arr

    def array_get(self, arr, index, default=NIL):
        i = _int_of(index, "get")
        if -len(arr.members) <= i < len(arr.members):
            return arr.members[i]
        return default

    def array_set(self, arr, index, value):
        i = _int_of(index, "set")
        if i < 0:
            i += len(arr.members)
            if i < 0:
                raise KestrelRuntimeError(f"set: index out of range: {index.value}")
        if i >= len(arr.members):
            arr.members.extend([NIL] * (i + 1 - len(arr.members)))
        arr.members[i] = value
        return arr

    def array_first(self, arr):
        return arr.members[0] if arr.members else NIL

    def array_last(self, arr):
        return arr.members[-1] if arr.members else NIL

    def array_tail(self, arr):
        return Array(arr.members[1:])

    def array_includes(self, arr, value):
        return native_bool(any(values_equal(m, value) for m in arr.members))

    def array_index(self, arr, value):
        for i, m in enumerate(arr.members):
            if values_equal(m, value):
                return Integer(i)
        return Integer(-1)

    def array_count(self, arr, value):
        return Integer(sum(1 for m in arr.members if values_equal(m, value)))

    def array_empty(self, arr):
        return native_bool(not arr.members)

    def array_merge(self, arr, other):
        return Array(arr.members + _expect(other, Array, "merge").members)

    def array_reverse(self, arr):
        return Array(arr.members[::-1])

    def array_join(self, arr, sep=String("")):
        return String(_expect(sep, String, "join", "separator").value.join(text_of(m) for m in arr.members))

    async def array_filter(self, arr, fn, *, scope):
        out = []
        for m in list(arr.members):
            keep = await self._call(fn, m, scope=scope)
            if is_sentinel(keep):
                return keep
            if is_truthy(keep):
                out.append(m)
        return Array(out)

    async def array_map(self, arr, fn, *, scope):
        out = []
        for m in list(arr.members):
            value = await self._call(fn, m, scope=scope)
            if is_sentinel(value):
                return value
            out.append(value)
        return Array(out)

    async def array_reduce(self, arr, fn, initial=None, *, scope):
        items = list(arr.members)
        if initial is None:
            if not items:
                raise KestrelRuntimeError("reduce: empty array with no initial value")
            acc, items = items[0], items[1:]
        else:
            acc = initial
        for m in items:
            acc = await self._call(fn, acc, m, scope=scope)
            if is_sentinel(acc):
                return acc
        return acc

    @staticmethod
    def _numbers(arr, fn: str) -> List[KestrelObject]:
        for m in arr.members:
            _expect(m, NUMBER_TYPES, fn, "element")
        return arr.members

    def array_sum(self, arr):
        nums = self._numbers(arr, "sum")
        total = sum(m.value for m in nums)
        if any(isinstance(m, Float) for m in nums):
            return Float(float(total))
        return Integer(total)

    def array_average(self, arr):
        nums = self._numbers(arr, "average")
        if not nums:
            return NIL
        return Float(sum(m.value for m in nums) / len(nums))

    def _extreme(self, arr, sign: int):
        best = None
        for m in arr.members:
            if best is None or compare_values(m, best) * sign > 0:
                best = m
        return best if best is not None else NIL

    def array_min(self, arr):
        return self._extreme(arr, -1)

    def array_max(self, arr):
        return self._extreme(arr, 1)

    async def array_sort(self, arr, less=NIL, *, scope):
        """Sorted copy; `less(a, b)` orders elements when given, else natural order."""
        items = list(arr.members)
        if less is NIL:
            return Array(sorted(items, key=functools.cmp_to_key(compare_values)))
        return await self._merge_sort(items, less, scope)

    async def _merge_sort(self, items, less, scope):
        if len(items) <= 1:
            return Array(items)
        mid = len(items) // 2
        left = await self._merge_sort(items[:mid], less, scope)
        if is_sentinel(left):
            return left
        right = await self._merge_sort(items[mid:], less, scope)
        if is_sentinel(right):
            return right
        a, b = left.members, right.members
        out = []
        i = j = 0
        while i < len(a) and j < len(b):
            before = await self._call(less, b[j], a[i], scope=scope)
            if is_sentinel(before):
                return before
            if is_truthy(before):
                out.append(b[j])
                j += 1
            else:
                out.append(a[i])
                i += 1
        out.extend(a[i:])
        out.extend(b[j:])
        return Array(out)

    # --- Tuples ---
    def tuple_len(self, t):
        return Integer(len(t.members))

    def tuple_get(self, t, index, default=NIL):
        i = _int_of(index, "get")
        if -len(t.members) <= i < len(t.members):
            return t.members[i]
        return default

    def tuple_to_array(self, t):
        return Array(list(t.members))

    # --- Hashes ---
    def hash_len(self, h):
        return Integer(len(h))

    def hash_keys(self, h):
        return Array(h.keys())

    def hash_values(self, h):
        return Array(h.values())

    def hash_get(self, h, key, default=NIL):
        value = h.get(key)
        return default if value is None else value

    def hash_exists(self, h, key):
        return native_bool(h.contains(key))

    def hash_push(self, h, key, value):
        h.push(key, value)
        return h

    def hash_pop(self, h, key):
        value = h.pop(key)
        return NIL if value is None else value

    def hash_clear(self, h):
        h.clear()
        return h

    def hash_merge(self, h, other):
        merged = h.copy()
        for k, v in _expect(other, Hash, "merge").items():
            merged.push(k, v)
        return merged

    async def hash_filter(self, h, fn, *, scope):
        out = Hash()
        for k, v in list(h.items()):
            keep = await self._call(fn, k, v, scope=scope)
            if is_sentinel(keep):
                return keep
            if is_truthy(keep):
                out.push(k, v)
        return out

    async def hash_map(self, h, fn, *, scope):
        """`fn(k, v)` returns a Hash whose pairs are merged into the result."""
        out = Hash()
        for k, v in list(h.items()):
            part = await self._call(fn, k, v, scope=scope)
            if is_sentinel(part):
                return part
            for pk, pv in _expect(part, Hash, "map", "callback result").items():
                out.push(pk, pv)
        return out

    def hash_get_path(self, h, path, sep=String(".")):
        text = _expect(path, String, "get_path").value
        current: KestrelObject = h
        for part in text.split(_expect(sep, String, "get_path", "separator").value):
            if isinstance(current, Hash) and current.get_str(part) is not None:
                current = current.get_str(part)
            elif isinstance(current, (Array, Tuple)) and part.lstrip("-").isdigit() \
                    and -len(current.members) <= int(part) < len(current.members):
                current = current.members[int(part)]
            else:
                raise KestrelRuntimeError(f"Property '{text}' does not exist")
        return current

    # --- Optional ---
    def optional_is_present(self, opt):
        return native_bool(opt.present)

    def optional_get(self, opt):
        if not opt.present:
            raise KestrelRuntimeError("optional is empty")
        return opt.value

    def optional_or_else(self, opt, other):
        return opt.value if opt.present else other

    async def optional_or_else_get(self, opt, fn, *, scope):
        if opt.present:
            return opt.value
        return await self._call(fn, scope=scope)

    async def optional_map(self, opt, fn, *, scope):
        if not opt.present:
            return opt
        value = await self._call(fn, opt.value, scope=scope)
        if is_sentinel(value):
            return value
        return OptionalObject(value)

    async def optional_filter(self, opt, fn, *, scope):
        if not opt.present:
            return opt
        keep = await self._call(fn, opt.value, scope=scope)
        if is_sentinel(keep):
            return keep
        return opt if is_truthy(keep) else OptionalObject()

    async def optional_if_present(self, opt, fn, *, scope):
        if opt.present:
            result = await self._call(fn, opt.value, scope=scope)
            if is_sentinel(result):
                return result
        return NIL

    # --- Functions and classes ---
    def callable_name(self, fn):
        return String(fn.name)

    def callable_annotations(self, fn):
        return Array(list(getattr(fn, "annotations", None) or []))

    # --- Regular expressions ---
    def regex_match(self, rx, s):
        return native_bool(rx.compiled.search(_expect(s, String, "match").value) is not None)

    def regex_find_all(self, rx, s):
        return Array([String(m.group(0)) for m in rx.compiled.finditer(_expect(s, String, "find_all").value)])

    def regex_replace(self, rx, s, repl):
        return String(rx.compiled.sub(_expect(repl, String, "replace").value, _expect(s, String, "replace").value))

    # --- Enums and services ---
    def enum_names(self, e):
        return Array([String(k) for k in e.members])

    def enum_values(self, e):
        return Array(list(e.members.values()))

    def service_routes(self, svc):
        return Array([String(r.describe()) for r in svc.routes])

    def service_name(self, svc):
        return String(svc.name)
