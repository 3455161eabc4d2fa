"""
Defines the runtime data types for the Kestrel language.

Every evaluation produces a `KestrelObject`. `type()` returns the tag used in
error messages and by the builtin `type()` function; `inspect()` returns the
printable text used by `print`, string interpolation and the REPL.

Control flow is carried by ordinary objects (`ReturnValue`, `Break`,
`Continue`, `Throw`, `Error`), never by Python exceptions.
"""

import difflib
import inspect
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple as TypingTuple

from kestrel.kestrel_tokens import Position

INT64_MIN = -(1 << 63)
INT64_MAX = (1 << 63) - 1
UINT64_MAX = (1 << 64) - 1


class KestrelRuntimeError(Exception):
    """
    Raised by host-facing helpers (and inside builtins) for runtime failures.
    The evaluator turns it into an `Error` object at the call boundary.
    """

    def __init__(self, message: str, pos: Optional[Position] = None):
        super().__init__(message)
        self.message = message
        self.pos = pos


def wrap_int(value: int) -> int:
    """Wrap to signed 64-bit two's complement."""
    value &= UINT64_MAX
    if value > INT64_MAX:
        value -= 1 << 64
    return value


def wrap_uint(value: int) -> int:
    return value & UINT64_MAX


# =================================================================
# Base class
# =================================================================

class KestrelObject:
    TYPE = "OBJECT"

    def type(self) -> str:
        return self.TYPE

    def inspect(self) -> str:
        return f"<{self.TYPE.lower()}>"

    def hash_key(self) -> Optional['HashKey']:
        """Key used when this object indexes a Hash; None when unhashable."""
        return None

    def __repr__(self) -> str:
        return f"<{self.TYPE} {self.inspect()}>"


@dataclass(frozen=True)
class HashKey:
    """
    Structural hash key. Keys of different types never compare equal, so
    `1`, `1u`, `1.0` and `"1"` are four distinct keys.
    """
    type: str
    value: Any


# =================================================================
# Scalars
# =================================================================

class Integer(KestrelObject):
    TYPE = "INTEGER"
    __slots__ = ("value",)

    def __init__(self, value: int):
        self.value = wrap_int(value)

    def inspect(self) -> str:
        return str(self.value)

    def hash_key(self):
        return HashKey(self.TYPE, self.value)

    def __eq__(self, other):
        return isinstance(other, Integer) and other.value == self.value

    def __hash__(self):
        return hash((self.TYPE, self.value))


class UInteger(KestrelObject):
    TYPE = "UINTEGER"
    __slots__ = ("value",)

    def __init__(self, value: int):
        self.value = wrap_uint(value)

    def inspect(self) -> str:
        return str(self.value)

    def hash_key(self):
        return HashKey(self.TYPE, self.value)

    def __eq__(self, other):
        return isinstance(other, UInteger) and other.value == self.value

    def __hash__(self):
        return hash((self.TYPE, self.value))


def format_float(value: float) -> str:
    if value != value:
        return "NaN"
    if value in (float("inf"), float("-inf")):
        return "+Inf" if value > 0 else "-Inf"
    text = repr(value)
    if "e" in text and "." not in text.split("e")[0]:
        mantissa, exp = text.split("e")
        text = f"{mantissa}.0e{exp}"
    return text


class Float(KestrelObject):
    TYPE = "FLOAT"
    __slots__ = ("value",)

    def __init__(self, value: float):
        self.value = float(value)

    def inspect(self) -> str:
        return format_float(self.value)

    def hash_key(self):
        return HashKey(self.TYPE, self.value)

    def __eq__(self, other):
        return isinstance(other, Float) and other.value == self.value

    def __hash__(self):
        return hash((self.TYPE, self.value))


class String(KestrelObject):
    TYPE = "STRING"
    __slots__ = ("value",)

    def __init__(self, value: str):
        self.value = value

    def inspect(self) -> str:
        return self.value

    def hash_key(self):
        return HashKey(self.TYPE, self.value)

    def __eq__(self, other):
        return isinstance(other, String) and other.value == self.value

    def __hash__(self):
        return hash((self.TYPE, self.value))


class Boolean(KestrelObject):
    TYPE = "BOOLEAN"
    __slots__ = ("value",)

    def __init__(self, value: bool):
        self.value = value

    def inspect(self) -> str:
        return "true" if self.value else "false"

    def hash_key(self):
        return HashKey(self.TYPE, self.value)


class Nil(KestrelObject):
    TYPE = "NIL"

    def inspect(self) -> str:
        return "nil"

    def hash_key(self):
        return HashKey(self.TYPE, None)


TRUE = Boolean(True)
FALSE = Boolean(False)
NIL = Nil()


def native_bool(value: bool) -> Boolean:
    return TRUE if value else FALSE


NUMBER_TYPES = (Integer, UInteger, Float)


# =================================================================
# Composites
# =================================================================

def _quoted(obj: KestrelObject) -> str:
    if isinstance(obj, String):
        return '"' + obj.value + '"'
    return obj.inspect()


class Array(KestrelObject):
    TYPE = "ARRAY"

    def __init__(self, members: Optional[List[KestrelObject]] = None):
        self.members: List[KestrelObject] = list(members) if members else []

    def inspect(self) -> str:
        return "[" + ", ".join(_quoted(m) for m in self.members) + "]"

    def __len__(self):
        return len(self.members)

    def __iter__(self):
        return iter(self.members)


class Tuple(KestrelObject):
    TYPE = "TUPLE"

    def __init__(self, members=()):
        self.members: TypingTuple[KestrelObject, ...] = tuple(members)

    def inspect(self) -> str:
        if len(self.members) == 1:
            return "(" + _quoted(self.members[0]) + ",)"
        return "(" + ", ".join(_quoted(m) for m in self.members) + ")"

    def hash_key(self):
        keys = []
        for m in self.members:
            k = m.hash_key()
            if k is None:
                return None
            keys.append(k)
        return HashKey(self.TYPE, tuple(keys))

    def __len__(self):
        return len(self.members)

    def __iter__(self):
        return iter(self.members)


class Hash(KestrelObject):
    """
    Insertion-ordered mapping. `pairs` maps a `HashKey` to its ``(key, value)``
    objects and `order` lists the keys in insertion order; both are updated
    together on every push and pop. Re-inserting a deleted key appends it.
    """
    TYPE = "HASH"

    def __init__(self):
        self.pairs: Dict[HashKey, TypingTuple[KestrelObject, KestrelObject]] = {}
        self.order: List[HashKey] = []

    @classmethod
    def from_pairs(cls, items) -> 'Hash':
        h = cls()
        for k, v in items:
            h.push(k, v)
        return h

    def push(self, key: KestrelObject, value: KestrelObject):
        hk = key.hash_key()
        if hk is None:
            raise KestrelRuntimeError(f"unusable as hash key: {key.type()}")
        if hk not in self.pairs:
            self.order.append(hk)
        self.pairs[hk] = (key, value)

    def get(self, key: KestrelObject) -> Optional[KestrelObject]:
        hk = key.hash_key()
        if hk is None:
            raise KestrelRuntimeError(f"unusable as hash key: {key.type()}")
        pair = self.pairs.get(hk)
        return pair[1] if pair else None

    def get_str(self, name: str) -> Optional[KestrelObject]:
        pair = self.pairs.get(HashKey(String.TYPE, name))
        return pair[1] if pair else None

    def pop(self, key: KestrelObject) -> Optional[KestrelObject]:
        hk = key.hash_key()
        if hk is None or hk not in self.pairs:
            return None
        _, value = self.pairs.pop(hk)
        self.order.remove(hk)
        return value

    def contains(self, key: KestrelObject) -> bool:
        hk = key.hash_key()
        return hk is not None and hk in self.pairs

    def clear(self):
        self.pairs.clear()
        self.order.clear()

    def items(self) -> Iterator[TypingTuple[KestrelObject, KestrelObject]]:
        for hk in list(self.order):
            pair = self.pairs.get(hk)
            if pair is not None:
                yield pair

    def keys(self) -> List[KestrelObject]:
        return [k for k, _ in self.items()]

    def values(self) -> List[KestrelObject]:
        return [v for _, v in self.items()]

    def copy(self) -> 'Hash':
        return Hash.from_pairs(self.items())

    def __len__(self):
        return len(self.order)

    def inspect(self) -> str:
        return "{" + ", ".join(f"{_quoted(k)}: {_quoted(v)}" for k, v in self.items()) + "}"


class Struct(KestrelObject):
    """Ad hoc record: `struct { name => "x", age => 3 }`."""
    TYPE = "STRUCT"

    def __init__(self, scope: 'Scope'):
        self.scope = scope

    def inspect(self) -> str:
        body = ", ".join(f"{k} => {_quoted(v)}" for k, v in self.scope.store.items())
        return f"struct {{ {body} }}"


class Enum(KestrelObject):
    TYPE = "ENUM"

    def __init__(self, name: str, members: Dict[str, KestrelObject]):
        self.name = name
        self.members = members

    def inspect(self) -> str:
        body = ", ".join(f"{k} = {v.inspect()}" for k, v in self.members.items())
        return f"enum {self.name} {{ {body} }}"


class Regex(KestrelObject):
    TYPE = "REGEX"

    _FLAGS = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL, "x": re.VERBOSE}

    def __init__(self, pattern: str, flags: str = ""):
        self.pattern = pattern
        self.flags = flags
        value = 0
        for f in flags:
            value |= self._FLAGS.get(f, 0)
        self.compiled = re.compile(pattern, value)

    def inspect(self) -> str:
        return f"/{self.pattern}/{self.flags}"


class OptionalObject(KestrelObject):
    """Optional value container (`optional(x)`); empty when holding nil."""
    TYPE = "OPTIONAL"

    def __init__(self, value: KestrelObject = NIL):
        self.value = value

    @property
    def present(self) -> bool:
        return self.value is not NIL

    def inspect(self) -> str:
        if self.present:
            return f"Optional[{self.value.inspect()}]"
        return "Optional.empty"


# =================================================================
# Callables
# =================================================================

class Function(KestrelObject):
    """A closure: the function literal plus the Scope it was created in."""
    TYPE = "FUNCTION"

    def __init__(self, literal, scope: 'Scope', name: str = "",
                 annotations: Optional[List['ObjectInstance']] = None,
                 owner: Optional['Class'] = None, modifier: str = "public"):
        self.literal = literal
        self.scope = scope
        self.name = name or literal.name
        self.annotations = annotations or []
        self.owner = owner
        self.modifier = modifier

    @property
    def is_async(self) -> bool:
        return self.literal.is_async

    @property
    def is_static(self) -> bool:
        return self.literal.static

    def inspect(self) -> str:
        prefix = "async fn" if self.is_async else "fn"
        name = f" {self.name}" if self.name else ""
        return f"{prefix}{name}({self.literal.params_text()})"


class Builtin(KestrelObject):
    """
    A Python callable exposed to scripts. `fn` receives evaluated arguments
    and, when it declares a `scope` keyword, the calling scope.
    """
    TYPE = "BUILTIN"

    def __init__(self, name: str, fn: Callable):
        self.name = name
        self.fn = fn
        self.signature = inspect.signature(fn)
        self.wants_scope = "scope" in self.signature.parameters

    def inspect(self) -> str:
        return f"<builtin {self.name}>"


class BoundMethod(KestrelObject):
    """A method looked up on a receiver without being called yet."""
    TYPE = "METHOD"

    def __init__(self, receiver: KestrelObject, name: str, method: Optional[KestrelObject] = None):
        self.receiver = receiver
        self.name = name
        self.method = method

    def inspect(self) -> str:
        return f"<method {self.receiver.type().lower()}.{self.name}>"


# =================================================================
# Classes and instances
# =================================================================

class Class(KestrelObject):
    TYPE = "CLASS"

    def __init__(self, name: str, parent: Optional['Class'], scope: 'Scope', literal=None):
        self.name = name
        self.parent = parent
        self.literal = literal
        # defining scope (closure of methods) and static members
        self.scope = scope
        self.static_scope = Scope(parent=scope)
        self.members: List[Any] = []
        self.properties: Dict[str, Any] = {}
        self.methods: Dict[str, Function] = {}
        self.modifiers: Dict[str, str] = {}
        self.annotations: List['ObjectInstance'] = []
        self.member_annotations: Dict[str, List['ObjectInstance']] = {}
        self.is_annotation = False

    def chain(self) -> List['Class']:
        """This class and its ancestors, leaf first."""
        out = []
        cls = self
        while cls is not None:
            out.append(cls)
            cls = cls.parent
        return out

    def get_method(self, name: str) -> Optional[Function]:
        for cls in self.chain():
            m = cls.methods.get(name)
            if m is not None:
                return m
        return None

    def get_property(self, name: str):
        for cls in self.chain():
            p = cls.properties.get(name)
            if p is not None:
                return cls, p
        return None, None

    def inspect(self) -> str:
        return f"<class {self.name}>"


class ObjectInstance(KestrelObject):
    TYPE = "INSTANCE"

    def __init__(self, cls: Class, scope: 'Scope'):
        self.cls = cls
        self.scope = scope

    def hash_key(self):
        return HashKey(self.TYPE, id(self))

    def inspect(self) -> str:
        fields = [f"{k}={_quoted(v)}" for k, v in self.scope.store.items()
                  if k not in ("this", "parent") and not isinstance(v, (Function, Builtin))]
        return f"{self.cls.name}({', '.join(fields)})"


class ImportedModule(KestrelObject):
    TYPE = "MODULE"

    def __init__(self, name: str, path: str, scope: 'Scope'):
        self.name = name
        self.path = path
        self.scope = scope

    def exported(self, name: str) -> bool:
        return name[:1].isupper()

    def inspect(self) -> str:
        return f"<module {self.name}>"


# =================================================================
# Control-flow sentinels
# =================================================================

class ReturnValue(KestrelObject):
    TYPE = "RETURN_VALUE"

    def __init__(self, value: KestrelObject):
        self.value = value

    def inspect(self) -> str:
        return self.value.inspect()


class Break(KestrelObject):
    TYPE = "BREAK"

    def inspect(self) -> str:
        return "break"


class Continue(KestrelObject):
    TYPE = "CONTINUE"

    def inspect(self) -> str:
        return "continue"


BREAK = Break()
CONTINUE = Continue()


class Throw(KestrelObject):
    TYPE = "THROW"

    def __init__(self, value: KestrelObject, pos: Optional[Position] = None):
        self.value = value
        self.pos = pos

    def inspect(self) -> str:
        return self.value.inspect()


class Error(KestrelObject):
    TYPE = "ERROR"

    def __init__(self, message: str, pos: Optional[Position] = None):
        self.message = message
        self.pos = pos

    @property
    def line(self) -> Optional[int]:
        return self.pos.line if self.pos else None

    def inspect(self) -> str:
        if self.pos is None:
            return self.message
        return f"{self.message} - Line:{self.pos.line}"


SENTINELS = (ReturnValue, Break, Continue, Throw, Error)
ABRUPT = (ReturnValue, Throw, Error)


def is_sentinel(obj) -> bool:
    return isinstance(obj, SENTINELS)


def is_truthy(obj: KestrelObject) -> bool:
    if obj is NIL or obj is FALSE:
        return False
    if obj is TRUE:
        return True
    if isinstance(obj, NUMBER_TYPES):
        return obj.value != 0
    if isinstance(obj, String):
        return obj.value != ""
    if isinstance(obj, (Array, Tuple, Hash)):
        return len(obj) > 0
    if isinstance(obj, OptionalObject):
        return obj.present
    return True


# =================================================================
# Scopes and call frames
# =================================================================

@dataclass
class CallFrame:
    """One active call: its scope, the call node and its deferred actions."""
    scope: 'Scope'
    node: Any = None
    name: str = ""
    defers: List[Any] = field(default_factory=list)
    fn: Any = None


class CallStack:
    def __init__(self):
        self.frames: List[CallFrame] = []

    def push(self, frame: CallFrame):
        self.frames.append(frame)

    def pop(self) -> Optional[CallFrame]:
        if self.frames:
            return self.frames.pop()
        return None

    @property
    def top(self) -> Optional[CallFrame]:
        return self.frames[-1] if self.frames else None

    def __len__(self):
        return len(self.frames)

    def __iter__(self):
        return iter(self.frames)


class Scope:
    """
    Lexical environment: name -> object bindings, a parent link (None at the
    root), the set of readonly (const) names, and the call stack the scope
    belongs to. Child scopes share their parent's call stack unless given one.
    """

    def __init__(self, parent: Optional['Scope'] = None, call_stack: Optional[CallStack] = None):
        self.store: Dict[str, KestrelObject] = {}
        self.parent = parent
        self.readonly: set = set()
        if call_stack is None:
            call_stack = parent.call_stack if parent is not None else CallStack()
        self.call_stack = call_stack

    def find_owner(self, name: str) -> Optional['Scope']:
        s = self
        while s is not None:
            if name in s.store:
                return s
            s = s.parent
        return None

    def get(self, name: str) -> Optional[KestrelObject]:
        owner = self.find_owner(name)
        if owner is None:
            return None
        return owner.store[name]

    def is_readonly(self, name: str) -> bool:
        s = self
        while s is not None:
            if name in s.readonly:
                return True
            s = s.parent
        return False

    def set(self, name: str, value: KestrelObject) -> KestrelObject:
        """Bind in this scope (`let`)."""
        self.store[name] = value
        return value

    def set_const(self, name: str, value: KestrelObject) -> KestrelObject:
        self.store[name] = value
        self.readonly.add(name)
        return value

    def assign(self, name: str, value: KestrelObject) -> KestrelObject:
        """Rebind the nearest enclosing binding, or create it here."""
        owner = self.find_owner(name) or self
        owner.store[name] = value
        return value

    def names(self) -> List[str]:
        seen = []
        s = self
        while s is not None:
            for k in s.store:
                if k not in seen:
                    seen.append(k)
            s = s.parent
        return seen

    def suggest(self, name: str) -> Optional[str]:
        matches = difflib.get_close_matches(name, self.names(), n=1)
        return matches[0] if matches else None

    def __contains__(self, name: str) -> bool:
        return self.find_owner(name) is not None

    def __repr__(self) -> str:
        keys = ", ".join(self.store.keys())
        parent_id = f", parent=#{id(self.parent)}" if self.parent else ""
        return f"<Scope store=[{keys}]{parent_id}>"


# =================================================================
# Conversion to and from Python values
# =================================================================

def from_native(value: Any) -> KestrelObject:
    """Build Kestrel objects from decoded JSON/YAML or host values."""
    if isinstance(value, KestrelObject):
        return value
    if value is None:
        return NIL
    if isinstance(value, bool):
        return native_bool(value)
    if isinstance(value, int):
        if value > INT64_MAX:
            return UInteger(value)
        return Integer(value)
    if isinstance(value, float):
        return Float(value)
    if isinstance(value, str):
        return String(value)
    if isinstance(value, bytes):
        return String(value.decode("utf-8", errors="replace"))
    if isinstance(value, dict):
        return Hash.from_pairs((from_native(k), from_native(v)) for k, v in value.items())
    if isinstance(value, tuple):
        return Tuple(from_native(v) for v in value)
    if isinstance(value, (list, set)):
        return Array([from_native(v) for v in value])
    return String(str(value))


def to_native(obj: KestrelObject) -> Any:
    """Plain Python structure for serialization and templates."""
    if obj is NIL:
        return None
    if isinstance(obj, Boolean):
        return obj.value
    if isinstance(obj, (Integer, UInteger, Float, String)):
        return obj.value
    if isinstance(obj, (Array, Tuple)):
        return [to_native(m) for m in obj.members]
    if isinstance(obj, Hash):
        out = {}
        for k, v in obj.items():
            key = k.value if isinstance(k, String) else k.inspect()
            out[key] = to_native(v)
        return out
    if isinstance(obj, Struct):
        return {k: to_native(v) for k, v in obj.scope.store.items()}
    if isinstance(obj, ObjectInstance):
        return {k: to_native(v) for k, v in obj.scope.store.items()
                if k not in ("this", "parent") and not isinstance(v, (Function, Builtin, Class))}
    if isinstance(obj, OptionalObject):
        return to_native(obj.value)
    if isinstance(obj, Enum):
        return {k: to_native(v) for k, v in obj.members.items()}
    return obj.inspect()


# =================================================================
# Equality and ordering
# =================================================================

def values_equal(left: KestrelObject, right: KestrelObject) -> bool:
    """Structural equality; numbers compare by value across the numeric types."""
    if isinstance(left, NUMBER_TYPES) and isinstance(right, NUMBER_TYPES):
        return left.value == right.value
    if type(left) is not type(right):
        return False
    if isinstance(left, (String, Boolean)):
        return left.value == right.value
    if left is NIL:
        return True
    if isinstance(left, (Array, Tuple)):
        return len(left) == len(right) and all(values_equal(a, b) for a, b in zip(left.members, right.members))
    if isinstance(left, Hash):
        if len(left) != len(right):
            return False
        for k, v in left.items():
            other = right.get(k)
            if other is None or not values_equal(v, other):
                return False
        return True
    if isinstance(left, Struct):
        a, b = left.scope.store, right.scope.store
        return a.keys() == b.keys() and all(values_equal(a[k], b[k]) for k in a)
    if isinstance(left, Regex):
        return left.pattern == right.pattern and left.flags == right.flags
    if isinstance(left, OptionalObject):
        return values_equal(left.value, right.value)
    return left is right


def compare_values(left: KestrelObject, right: KestrelObject) -> int:
    """-1, 0 or 1; raises KestrelRuntimeError for values without an order."""
    if isinstance(left, NUMBER_TYPES) and isinstance(right, NUMBER_TYPES):
        a, b = left.value, right.value
    elif isinstance(left, String) and isinstance(right, String):
        a, b = left.value, right.value
    elif isinstance(left, Boolean) and isinstance(right, Boolean):
        a, b = left.value, right.value
    elif isinstance(left, (Array, Tuple)) and isinstance(right, (Array, Tuple)):
        for x, y in zip(left.members, right.members):
            c = compare_values(x, y)
            if c:
                return c
        a, b = len(left), len(right)
    else:
        raise KestrelRuntimeError(f"cannot compare {left.type()} with {right.type()}")
    return (a > b) - (a < b)
