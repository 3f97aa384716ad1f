"""
Isolated interpreter worker.

Runs as its own process (``python -m roundtable.pyworker``) and speaks one JSON
message per line:

    stdin:  {"id": ..., "code": ..., "data": ..., "context": {...}}
    stdout: {"id": ..., "result": ...}  or  {"id": ..., "error": "..."}

Every request gets a fresh globals dict built from ``context`` plus ``data``.
The value of the final expression statement is the result. Exceptions raised
by the code are reported as an ``error`` message, never propagated.

Code is checked against a denylist before it runs and executes with a reduced
set of builtins. Only the analysis libraries may be imported.
"""

import ast
import builtins
import contextlib
import io
import json
import sys
from typing import Any, Dict, Optional

from roundtable.serializer import to_jsonable

ALLOWED_MODULES = frozenset({"json", "numpy", "pandas"})

_FORBIDDEN_NAMES = frozenset({
    "os", "sys", "subprocess", "shutil", "pathlib", "socket", "importlib",
    "open", "eval", "exec", "compile", "__import__", "globals", "locals", "vars",
    "getattr", "setattr", "delattr", "breakpoint", "exit", "quit", "input",
})

_FORBIDDEN_ATTR_CALLS = frozenset({
    "eval", "exec", "compile", "system", "popen",
    "to_csv", "to_excel", "to_sql", "to_json", "to_parquet", "to_pickle", "to_html",
    "to_clipboard", "to_latex", "to_hdf", "to_feather", "to_stata", "to_xml",
    "load", "loadtxt", "genfromtxt", "fromfile", "save", "savez", "savetxt", "tofile",
    "memmap", "open_memmap",
})


class UnsafeCodeError(Exception):
    pass


def _safe_import(name, globals_=None, locals_=None, fromlist=(), level=0):
    if level or name.split(".")[0] not in ALLOWED_MODULES:
        raise UnsafeCodeError(f"Forbidden import: {name}")
    return builtins.__import__(name, globals_, locals_, fromlist, level)


_SAFE_BUILTINS: Dict[str, Any] = {
    name: getattr(builtins, name)
    for name in (
        "abs", "all", "any", "bool", "dict", "divmod", "enumerate", "filter", "float",
        "frozenset", "hasattr", "int", "isinstance", "len", "list", "map", "max", "min",
        "next", "print", "range", "repr", "reversed", "round", "set", "slice", "sorted",
        "str", "sum", "tuple", "type", "zip",
        "Exception", "ArithmeticError", "AttributeError", "IndexError", "KeyError",
        "LookupError", "RuntimeError", "StopIteration", "TypeError", "ValueError",
        "ZeroDivisionError",
    )
}
_SAFE_BUILTINS["__import__"] = _safe_import


def validate_code(tree: ast.AST) -> None:
    """Raise UnsafeCodeError if the parsed code reaches outside the analysis libraries."""
    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            for alias in node.names:
                if alias.name.split(".")[0] not in ALLOWED_MODULES:
                    raise UnsafeCodeError(f"Forbidden import: {alias.name}")
        elif isinstance(node, ast.ImportFrom):
            if node.level or (node.module or "").split(".")[0] not in ALLOWED_MODULES:
                raise UnsafeCodeError(f"Forbidden import: {node.module}")
        elif isinstance(node, ast.Call):
            func = node.func
            if isinstance(func, ast.Attribute) and (
                func.attr in _FORBIDDEN_ATTR_CALLS or func.attr.startswith("read_")
            ):
                raise UnsafeCodeError(f"Forbidden method call: .{func.attr}()")
        elif isinstance(node, ast.Name) and node.id in _FORBIDDEN_NAMES:
            raise UnsafeCodeError(f"Forbidden name: {node.id}")
        elif isinstance(node, ast.Attribute) and node.attr.startswith("__"):
            raise UnsafeCodeError(f"Forbidden attribute: {node.attr}")


def run_code(code: str, data: Any, context: Optional[Dict[str, Any]] = None) -> Any:
    namespace: Dict[str, Any] = dict(context or {})
    namespace["__name__"] = "__sandbox__"
    namespace["__builtins__"] = _SAFE_BUILTINS
    namespace["data"] = data

    tree = ast.parse(code, filename="<analysis>", mode="exec")
    validate_code(tree)
    final_expression = None
    if tree.body and isinstance(tree.body[-1], ast.Expr):
        final_expression = ast.Expression(body=tree.body.pop().value)

    exec(compile(tree, "<analysis>", "exec"), namespace)
    if final_expression is None:
        return None
    return eval(compile(final_expression, "<analysis>", "eval"), namespace)


def handle_message(message: Dict[str, Any]) -> Dict[str, Any]:
    request_id = message.get("id")
    captured = io.StringIO()
    try:
        # Code output must not leak into the protocol stream
        with contextlib.redirect_stdout(captured):
            result = run_code(message.get("code") or "", message.get("data"), message.get("context"))
        return {"id": request_id, "result": to_jsonable(result)}
    except (Exception, SystemExit) as e:
        return {"id": request_id, "error": f"{type(e).__name__}: {e}"}


def main() -> None:
    out = sys.stdout
    for line in sys.stdin:
        if not line.strip():
            continue
        try:
            message = json.loads(line)
        except json.JSONDecodeError as e:
            response = {"id": None, "error": f"Invalid message: {e}"}
        else:
            response = handle_message(message if isinstance(message, dict) else {})
        out.write(json.dumps(response, default=str) + "\n")
        out.flush()


if __name__ == "__main__":
    main()
