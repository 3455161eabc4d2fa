"""
Class runtime: class construction, instances, member and property access,
operator methods, annotations and categories.

Methods close over their class's static scope. When a method runs on an
instance, its call scope hangs off a *view* scope that shares the instance's
store but whose parent is the static scope of the class that declared the
method, so inherited methods still see their own module's globals.
"""
import difflib
from typing import Dict, List, Optional, TYPE_CHECKING

from kestrel import kestrel_ast as ast
from kestrel.kestrel_datatypes import (
    KestrelObject, Class, ObjectInstance, Function, Builtin, BoundMethod, Scope,
    ReturnValue, Break, Continue, Throw, Error, NIL, is_sentinel,
)

if TYPE_CHECKING:
    from kestrel.kestrel_interpreter import Evaluator

CALLABLES = (Function, Builtin, BoundMethod, Class)


class ParentRef(KestrelObject):
    """Value of `parent` inside a method: the instance seen as its parent class."""
    TYPE = "PARENT"

    def __init__(self, instance: KestrelObject, cls: Optional[Class]):
        self.instance = instance
        self.cls = cls

    def inspect(self) -> str:
        name = self.cls.name if self.cls else "object"
        return f"<parent {name}>"


def _unwrap(result: KestrelObject) -> KestrelObject:
    if isinstance(result, ReturnValue):
        return result.value
    if isinstance(result, (Break, Continue)):
        return NIL
    return result


class ClassRuntime:
    def __init__(self, evaluator: 'Evaluator'):
        self.evaluator = evaluator
        self.object_class = Class("object", None, Scope())

    # -----------------------------------------------------------------
    # Definition
    # -----------------------------------------------------------------

    async def define_class(self, literal: ast.ClassLiteral, scope: Scope, node,
                           name: str = "") -> KestrelObject:
        ev = self.evaluator
        parent = self.object_class
        if literal.parent:
            found = scope.get(literal.parent)
            if found is None:
                return ev.error(node, f"parent class '{literal.parent}' not found")
            if not isinstance(found, Class):
                return ev.error(node, f"'{literal.parent}' is not a class (got {found.type()})")
            parent = found
        cls = Class(name or literal.name or "anonymous", parent, scope, literal)
        cls.is_annotation = literal.is_annotation
        err = await self._add_members(cls, literal, scope)
        if err is not None:
            return err
        annotations = await self.build_annotations(literal.annotations, scope)
        if is_sentinel(annotations):
            return annotations
        cls.annotations = annotations
        return cls

    async def extend_category(self, stmt: ast.ClassStatement, scope: Scope) -> KestrelObject:
        """`class Name (Category) { ... }` adds members to an existing class."""
        ev = self.evaluator
        target = scope.get(stmt.name.name)
        if not isinstance(target, Class):
            return ev.error(stmt, f"category '{stmt.category}' extends unknown class '{stmt.name.name}'")
        err = await self._add_members(target, stmt.literal, scope)
        if err is not None:
            return err
        return target

    async def _add_members(self, cls: Class, literal: ast.ClassLiteral, scope: Scope) -> Optional[KestrelObject]:
        ev = self.evaluator
        for stmt in literal.members:
            for ident in stmt.names:
                cls.modifiers[ident.name] = stmt.modifier
            if stmt.static:
                result = await ev.eval(stmt, cls.static_scope)
                if is_sentinel(result):
                    return result
            else:
                cls.members.append(stmt)

        for prop in literal.properties:
            cls.properties[prop.name] = prop
            cls.modifiers[prop.name] = prop.modifier
            anns = await self.build_annotations(prop.annotations, scope)
            if is_sentinel(anns):
                return anns
            cls.member_annotations[prop.name] = anns
            if prop.static and self._hidden_backed(prop):
                default = NIL
                if prop.default is not None:
                    default = await ev.eval(prop.default, cls.static_scope)
                    if is_sentinel(default):
                        return default
                cls.static_scope.set("_" + prop.name, default)

        for stmt in literal.methods:
            name = stmt.name.name
            anns = await self.build_annotations(stmt.annotations, scope, cls=cls, method=name)
            if is_sentinel(anns):
                return anns
            fn = Function(stmt.function, cls.static_scope, name, anns, owner=cls, modifier=stmt.modifier)
            cls.methods[name] = fn
            cls.modifiers[name] = stmt.modifier
            cls.member_annotations[name] = anns
        return None

    @staticmethod
    def _hidden_backed(prop: ast.PropertyDeclaration) -> bool:
        return (prop.has_getter and prop.getter is None) or (prop.has_setter and prop.setter is None)

    # -----------------------------------------------------------------
    # Annotations
    # -----------------------------------------------------------------

    async def build_annotations(self, annotations, scope: Scope, *, cls: Optional[Class] = None,
                                method: Optional[str] = None):
        """Instances of the annotation classes named by `annotations`, or an Error."""
        ev = self.evaluator
        out: List[ObjectInstance] = []
        for ann in annotations:
            if ann.name == "Override":
                if method is None or cls is None or cls.parent is None \
                        or cls.parent.get_method(method) is None:
                    return ev.error(ann, f"method '{method}' is marked @Override but no parent class declares it")
                continue
            acls = scope.get(ann.name)
            if not isinstance(acls, Class) or not acls.is_annotation:
                return ev.error(ann, f"'{ann.name}' is not an annotation class")
            inst = ObjectInstance(acls, Scope(parent=acls.static_scope))
            inst.scope.set("this", inst)
            for level in reversed(acls.chain()):
                for prop in level.properties.values():
                    value = NIL
                    if prop.default is not None:
                        value = await ev.eval(prop.default, Scope(parent=level.static_scope))
                        if is_sentinel(value):
                            return value
                    inst.scope.set("_" + prop.name, value)
            attr_scope = Scope(parent=scope)
            for key, expr in ann.attributes:
                _, prop = acls.get_property(key)
                if prop is None:
                    return ev.error(ann, f"annotation '{ann.name}' has no property '{key}'")
                value = await ev.eval(expr, attr_scope)
                if is_sentinel(value):
                    return value
                inst.scope.set("_" + key, value)
            out.append(inst)
        return out

    # -----------------------------------------------------------------
    # Instances
    # -----------------------------------------------------------------

    def home_scope(self, instance: ObjectInstance, owner: Class) -> Scope:
        view = Scope(parent=owner.static_scope)
        view.store = instance.scope.store
        view.readonly = instance.scope.readonly
        return view

    async def instantiate(self, cls: Class, args: List[KestrelObject], node, scope: Scope) -> KestrelObject:
        ev = self.evaluator
        if cls.is_annotation:
            return ev.error(node, f"cannot instantiate annotation class '{cls.name}'")
        inst = ObjectInstance(cls, Scope(parent=cls.static_scope))
        inst.scope.set("this", inst)
        for level in reversed(cls.chain()):
            fields = Scope(parent=self.home_scope(inst, level))
            for stmt in level.members:
                result = await ev.eval(stmt, fields)
                if is_sentinel(result):
                    return result
            for prop in level.properties.values():
                if prop.static or not self._hidden_backed(prop):
                    continue
                value = NIL
                if prop.default is not None:
                    value = await ev.eval(prop.default, fields)
                    if is_sentinel(value):
                        return value
                fields.set("_" + prop.name, value)
            inst.scope.store.update(fields.store)
            inst.scope.readonly |= fields.readonly

        init = cls.get_method("init")
        if init is not None:
            result = await self.invoke_method(inst, init, args, node, scope)
            if isinstance(result, (Error, Throw)):
                return result
        elif args:
            return ev.error(node, f"class '{cls.name}' has no init but was given {len(args)} arguments")
        return inst

    async def invoke_method(self, receiver: KestrelObject, fn: Function, args: List[KestrelObject],
                            node, scope: Scope, awaited: bool = False) -> KestrelObject:
        owner = fn.owner
        bindings: Dict[str, KestrelObject] = {}
        if isinstance(receiver, ObjectInstance) and not fn.is_static:
            home = self.home_scope(receiver, owner)
            bindings["parent"] = ParentRef(receiver, owner.parent)
        else:
            home = owner.static_scope
        return await self.evaluator.invoke(fn, args, node, scope, home=home,
                                           bindings=bindings, awaited=awaited)

    # -----------------------------------------------------------------
    # Properties
    # -----------------------------------------------------------------

    async def _run_accessor(self, receiver: KestrelObject, owner: Class, body: ast.BlockStatement,
                            bindings: Dict[str, KestrelObject]) -> KestrelObject:
        ev = self.evaluator
        if isinstance(receiver, ObjectInstance):
            home = self.home_scope(receiver, owner)
            bindings = dict(bindings, parent=ParentRef(receiver, owner.parent))
        else:
            home = owner.static_scope
        call_scope = Scope(parent=home)
        for k, v in bindings.items():
            call_scope.set(k, v)
        return _unwrap(await ev.eval(body, call_scope))

    def _store_of(self, receiver: KestrelObject, owner: Class) -> Scope:
        if isinstance(receiver, ObjectInstance):
            return receiver.scope
        return owner.static_scope

    async def read_property(self, receiver, owner: Class, prop: ast.PropertyDeclaration, node,
                            bindings: Optional[Dict[str, KestrelObject]] = None) -> KestrelObject:
        if not prop.has_getter:
            return self.evaluator.error(node, f"property '{prop.name}' is write-only")
        if prop.getter is None:
            return self._store_of(receiver, owner).store.get("_" + prop.name, NIL)
        return await self._run_accessor(receiver, owner, prop.getter, bindings or {})

    async def write_property(self, receiver, owner: Class, prop: ast.PropertyDeclaration,
                             value: KestrelObject, node,
                             bindings: Optional[Dict[str, KestrelObject]] = None) -> KestrelObject:
        if not prop.has_setter:
            return self.evaluator.error(node, f"property '{prop.name}' is read-only")
        if prop.setter is None:
            self._store_of(receiver, owner).store["_" + prop.name] = value
            return value
        result = await self._run_accessor(receiver, owner, prop.setter, dict(bindings or {}, value=value))
        if isinstance(result, (Error, Throw)):
            return result
        return value

    def _indexer(self, instance: ObjectInstance, count: int, node):
        owner, prop = instance.cls.get_property(f"this{count}")
        if prop is None:
            return None, None, self.evaluator.error(node, f"class '{instance.cls.name}' has no indexer")
        return owner, prop, None

    async def index_get(self, instance: ObjectInstance, keys: List[KestrelObject], node) -> KestrelObject:
        owner, prop, err = self._indexer(instance, len(keys), node)
        if err is not None:
            return err
        bindings = {p.name: k for p, k in zip(prop.index_params, keys)}
        return await self.read_property(instance, owner, prop, node, bindings)

    async def index_set(self, instance: ObjectInstance, keys: List[KestrelObject], value: KestrelObject,
                        node) -> KestrelObject:
        owner, prop, err = self._indexer(instance, len(keys), node)
        if err is not None:
            return err
        bindings = {p.name: k for p, k in zip(prop.index_params, keys)}
        return await self.write_property(instance, owner, prop, value, node, bindings)

    # -----------------------------------------------------------------
    # Member access
    # -----------------------------------------------------------------

    def _check_access(self, cls: Class, name: str, via_this: bool, node) -> Optional[Error]:
        for level in cls.chain():
            modifier = level.modifiers.get(name)
            if modifier is None:
                continue
            if modifier != "public" and not via_this:
                return self.evaluator.error(node, f"'{name}' is {modifier} in class '{level.name}'")
            return None
        return None

    def _missing(self, cls: Class, name: str, node, candidates) -> Error:
        msg = f"undefined member '{name}' for class '{cls.name}'"
        suggestion = _closest(name, candidates)
        if suggestion:
            msg += f". Did you mean '{suggestion}'?"
        return self.evaluator.error(node, msg)

    def _is_static_field(self, cls: Class, name: str) -> bool:
        return any(name in level.static_scope.store for level in cls.chain())

    async def get_member(self, obj: KestrelObject, name: str, node, scope: Scope,
                         via_this: bool = False) -> KestrelObject:
        ev = self.evaluator
        if isinstance(obj, ParentRef):
            method = obj.cls.get_method(name) if obj.cls else None
            if method is None:
                return ev.error(node, f"parent class has no method '{name}'")
            return BoundMethod(obj, name, method)

        if isinstance(obj, ObjectInstance):
            cls = obj.cls
            err = self._check_access(cls, name, via_this, node)
            if err is not None:
                return err
            owner, prop = cls.get_property(name)
            if prop is not None:
                if prop.static:
                    return ev.error(node, f"static property '{name}' accessed through an instance of '{cls.name}'")
                return await self.read_property(obj, owner, prop, node)
            if name in obj.scope.store:
                return obj.scope.store[name]
            method = cls.get_method(name)
            if method is not None:
                if method.is_static:
                    return ev.error(node, f"static method '{name}' accessed through an instance of '{cls.name}'")
                return BoundMethod(obj, name, method)
            if self._is_static_field(cls, name):
                return ev.error(node, f"static member '{name}' accessed through an instance of '{cls.name}'")
            candidates = list(obj.scope.store) + [m for c in cls.chain() for m in c.methods]
            return self._missing(cls, name, node, candidates)

        if isinstance(obj, Class):
            err = self._check_access(obj, name, via_this, node)
            if err is not None:
                return err
            for level in obj.chain():
                if name in level.static_scope.store:
                    return level.static_scope.store[name]
            owner, prop = obj.get_property(name)
            if prop is not None:
                if not prop.static:
                    return ev.error(node, f"non-static property '{name}' accessed through class '{obj.name}'")
                return await self.read_property(obj, owner, prop, node)
            method = obj.get_method(name)
            if method is not None:
                if not method.is_static:
                    return ev.error(node, f"non-static method '{name}' accessed through class '{obj.name}'")
                return BoundMethod(obj, name, method)
            if any(name == ident.name for level in obj.chain() for s in level.members for ident in s.names):
                return ev.error(node, f"non-static member '{name}' accessed through class '{obj.name}'")
            candidates = [k for level in obj.chain() for k in level.static_scope.store]
            candidates += [m for level in obj.chain() for m in level.methods]
            return self._missing(obj, name, node, candidates)

        return ev.error(node, f"cannot read member '{name}' of {obj.type()}")

    async def set_member(self, obj: KestrelObject, name: str, value: KestrelObject, node,
                         via_this: bool = False) -> KestrelObject:
        ev = self.evaluator
        if isinstance(obj, ObjectInstance):
            cls = obj.cls
            err = self._check_access(cls, name, via_this, node)
            if err is not None:
                return err
            owner, prop = cls.get_property(name)
            if prop is not None:
                if prop.static:
                    return ev.error(node, f"static property '{name}' assigned through an instance of '{cls.name}'")
                return await self.write_property(obj, owner, prop, value, node)
            if name in obj.scope.readonly:
                return ev.error(node, f"cannot assign to constant field '{name}'")
            if name not in obj.scope.store:
                if self._is_static_field(cls, name):
                    return ev.error(node, f"static member '{name}' assigned through an instance of '{cls.name}'")
                if cls.get_method(name) is not None:
                    return ev.error(node, f"cannot assign to method '{name}'")
            obj.scope.store[name] = value
            return value

        if isinstance(obj, Class):
            for level in obj.chain():
                if name in level.static_scope.store:
                    if name in level.static_scope.readonly:
                        return ev.error(node, f"cannot assign to constant '{name}'")
                    level.static_scope.store[name] = value
                    return value
            owner, prop = obj.get_property(name)
            if prop is not None and prop.static:
                return await self.write_property(obj, owner, prop, value, node)
            return ev.error(node, f"cannot assign non-static member '{name}' through class '{obj.name}'")

        return ev.error(node, f"cannot assign member '{name}' of {obj.type()}")

    # -----------------------------------------------------------------
    # Calls and operators
    # -----------------------------------------------------------------

    async def call_method(self, obj: KestrelObject, name: str, args: List[KestrelObject], node,
                          scope: Scope, via_this: bool = False, awaited: bool = False) -> Optional[KestrelObject]:
        """
        Call `obj.name(args)` for instances, classes and `parent`.
        None means the receiver has no such script-level method, so the
        caller may fall back to the builtin type methods.
        """
        ev = self.evaluator
        if isinstance(obj, ParentRef):
            method = obj.cls.get_method(name) if obj.cls else None
            if method is None:
                if name == "init":
                    return NIL
                return ev.error(node, f"parent class has no method '{name}'")
            return await self.invoke_method(obj.instance, method, args, node, scope, awaited)

        if isinstance(obj, ObjectInstance):
            cls = obj.cls
            err = self._check_access(cls, name, via_this, node)
            if err is not None:
                return err
            method = cls.get_method(name)
            if method is not None:
                if method.is_static:
                    return ev.error(node, f"static method '{name}' called through an instance of '{cls.name}'")
                return await self.invoke_method(obj, method, args, node, scope, awaited)
            target = obj.scope.store.get(name)
            if target is None:
                owner, prop = cls.get_property(name)
                if prop is not None and not prop.static:
                    target = await self.read_property(obj, owner, prop, node)
                    if is_sentinel(target):
                        return target
            if isinstance(target, CALLABLES):
                return await ev.apply_function(target, args, scope, node, awaited)
            if target is not None:
                return ev.error(node, f"member '{name}' of class '{cls.name}' is not callable")
            candidates = [m for c in cls.chain() for m in c.methods]
            return self._missing(cls, name, node, candidates)

        if isinstance(obj, Class):
            err = self._check_access(obj, name, via_this, node)
            if err is not None:
                return err
            method = obj.get_method(name)
            if method is not None:
                if not method.is_static:
                    return ev.error(node, f"non-static method '{name}' called through class '{obj.name}'")
                return await self.invoke_method(obj, method, args, node, scope, awaited)
            for level in obj.chain():
                target = level.static_scope.store.get(name)
                if isinstance(target, CALLABLES):
                    return await ev.apply_function(target, args, scope, node, awaited)
            return None
        return None

    async def operator(self, instance: ObjectInstance, op: str, args: List[KestrelObject], node,
                       scope: Scope) -> Optional[KestrelObject]:
        """Run the operator method `op`, or None when the class does not define it."""
        method = instance.cls.get_method(op)
        if method is None:
            return None
        return await self.invoke_method(instance, method, args, node, scope)


def _closest(name: str, candidates) -> Optional[str]:
    matches = difflib.get_close_matches(name, [c for c in candidates if c != "this"], n=1)
    return matches[0] if matches else None
