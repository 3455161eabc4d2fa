from __future__ import annotations
import os
from typing import Optional, Any, List

from kestrel.kestrel_serialize import deserialize, serialize

SOURCE_EXT = ".ks"
ROOT_ENV = "KESTREL_ROOT"


def root_dir_from_env() -> Optional[str]:
    root = os.environ.get(ROOT_ENV)
    return root or None


def _resolve_locator(locator: str, base_dir: Optional[str]) -> str:
    # Accept 'file://' locators as well as plain paths
    rest = locator[7:] if locator.startswith("file://") else locator
    if rest.startswith("/"):
        return "/" + rest.lstrip("/")
    if rest.startswith("~"):
        return os.path.expanduser(rest)
    base = base_dir or os.getcwd()
    if rest == "":
        return base
    return os.path.normpath(os.path.join(base, rest))


def module_candidates(name: str, base_dir: Optional[str], root_dir: Optional[str] = None) -> List[str]:
    """
    Paths tried for `include name` / `import name`, in order: relative to the
    including file's directory, then the configured root directory.
    """
    rel = name
    if not rel.endswith(SOURCE_EXT):
        if "/" not in rel:
            rel = rel.replace(".", "/")
        rel += SOURCE_EXT
    if os.path.isabs(rel):
        return [rel]
    out = [_resolve_locator(rel, base_dir)]
    root = root_dir or root_dir_from_env()
    if root:
        out.append(os.path.normpath(os.path.join(root, rel)))
    return out


def resolve_module(name: str, base_dir: Optional[str], root_dir: Optional[str] = None) -> Optional[str]:
    for candidate in module_candidates(name, base_dir, root_dir):
        if os.path.isfile(candidate):
            return os.path.abspath(candidate)
    return None


def read_source(path: str) -> str:
    with open(path, "r", encoding="utf-8") as f:
        return f.read()


def file_get(locator: str, *, base_dir: Optional[str] = None) -> Any:
    """Read a file; JSON and YAML documents come back deserialized."""
    path = _resolve_locator(locator, base_dir)
    ext = os.path.splitext(path)[1].lower()
    if ext in (".json", ".yaml", ".yml"):
        with open(path, "rb") as f:
            data = f.read()
        return deserialize(data, fmt="json" if ext == ".json" else "yaml")
    with open(path, "r", encoding="utf-8") as f:
        return f.read()


def file_put(locator: str, data: Any, *, base_dir: Optional[str] = None) -> str:
    path = _resolve_locator(locator, base_dir)
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    ext = os.path.splitext(path)[1].lower()
    if ext in (".json", ".yaml", ".yml") and not isinstance(data, str):
        text = serialize(data, fmt="json" if ext == ".json" else "yaml", pretty=True)
    else:
        text = data if isinstance(data, str) else str(data)
    with open(path, "w", encoding="utf-8") as f:
        f.write(text)
    return path
