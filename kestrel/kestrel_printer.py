"""
A pretty-printer for Kestrel values, used by the REPL and the script runner.
"""
from kestrel.kestrel_datatypes import (
    Integer, UInteger, Float, String, Boolean, Nil, Array, Tuple, Hash, Struct,
    Enum, Function, Builtin, Class, ObjectInstance, OptionalObject, Error, Throw,
)


class Printer:
    """Formats Kestrel objects as readable Kestrel literals."""

    def __init__(self, indent_width=2, width=72):
        self._indent_char = " " * indent_width
        self._width = width
        self._handlers = self._create_handlers()

    def pformat(self, obj, level=0):
        """Public entry point to format an object."""
        handler = self._handlers.get(type(obj))
        if handler is None:
            return obj.inspect() if hasattr(obj, "inspect") else repr(obj)
        return handler(obj, level)

    def _create_handlers(self):
        return {
            Integer: self._pformat_primitive,
            Float: self._pformat_primitive,
            Boolean: self._pformat_primitive,
            Nil: self._pformat_primitive,
            UInteger: self._pformat_uint,
            String: self._pformat_str,
            Array: self._pformat_array,
            Tuple: self._pformat_tuple,
            Hash: self._pformat_hash,
            Struct: self._pformat_struct,
            Enum: self._pformat_primitive,
            Function: self._pformat_primitive,
            Builtin: self._pformat_primitive,
            Class: self._pformat_primitive,
            ObjectInstance: self._pformat_instance,
            OptionalObject: self._pformat_optional,
            Error: self._pformat_error,
            Throw: self._pformat_throw,
        }

    def _pformat_primitive(self, obj, level):
        return obj.inspect()

    def _pformat_uint(self, obj, level):
        return f"{obj.value}u"

    def _pformat_str(self, obj, level):
        escaped = obj.value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")
        return f'"{escaped}"'

    def _block(self, open_, close, items, level):
        """One line when it fits, otherwise one item per line."""
        flat = open_ + ", ".join(items) + close
        if len(flat) + len(self._indent_char) * level <= self._width and "\n" not in flat:
            return flat
        inner = self._indent_char * (level + 1)
        body = ",\n".join(inner + item for item in items)
        return f"{open_}\n{body}\n{self._indent_char * level}{close}"

    def _pformat_array(self, obj, level):
        return self._block("[", "]", [self.pformat(m, level + 1) for m in obj.members], level)

    def _pformat_tuple(self, obj, level):
        if len(obj.members) == 1:
            return f"({self.pformat(obj.members[0], level + 1)},)"
        return self._block("(", ")", [self.pformat(m, level + 1) for m in obj.members], level)

    def _pformat_hash(self, obj, level):
        items = [f"{self.pformat(k, level + 1)}: {self.pformat(v, level + 1)}" for k, v in obj.items()]
        return self._block("{", "}", items, level)

    def _pformat_struct(self, obj, level):
        items = [f"{k} => {self.pformat(v, level + 1)}" for k, v in obj.scope.store.items()]
        return "struct " + self._block("{ ", " }", items, level)

    def _pformat_instance(self, obj, level):
        items = [f"{k}={self.pformat(v, level + 1)}" for k, v in obj.scope.store.items()
                 if k not in ("this", "parent") and not isinstance(v, (Function, Builtin))]
        return obj.cls.name + self._block("(", ")", items, level)

    def _pformat_optional(self, obj, level):
        if not obj.present:
            return "Optional.empty"
        return f"Optional[{self.pformat(obj.value, level)}]"

    def _pformat_error(self, obj, level):
        return f"error: {obj.inspect()}"

    def _pformat_throw(self, obj, level):
        return f"uncaught exception: {self.pformat(obj.value, level)}"
