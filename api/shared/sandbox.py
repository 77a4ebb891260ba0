"""
Restricted Python evaluator for the analysis workbench.

User code is parsed with ``ast`` and checked against an allow-list of
syntax before it runs. Attribute reads are rewritten into a guarded
lookup that refuses private names and any value that is a module, and
the importable modules are replaced by facades holding only their public
functions and classes.

Execution happens in a forked child process with ``RLIMIT_CPU`` and
``RLIMIT_AS`` set. The parent waits for the wall-clock limit and kills
the child when it is exceeded, so a single long expression cannot hold
an API worker. Inside the child a line-step budget is also enforced
through ``sys.settrace``.
"""

from __future__ import annotations

import ast
import builtins
import collections
import json
import math
import multiprocessing
import re
import resource
import signal
import statistics
import sys
import time
import types
from dataclasses import dataclass
from typing import Any

import numpy as np

from api.shared.logger import get_logger

logger = get_logger(__name__)

FILENAME = "<analysis>"
DEFAULT_MAX_STEPS = 200_000
DEFAULT_TIME_LIMIT = 5.0
DEFAULT_MEMORY_MB = 512
MAX_OUTPUT_CHARS = 100_000

GUARD_NAME = "__sandbox_getattr__"

ALLOWED_NODES: tuple[type, ...] = (
    ast.Module,
    ast.Expression,
    # statements
    ast.Expr,
    ast.Assign,
    ast.AugAssign,
    ast.AnnAssign,
    ast.For,
    ast.While,
    ast.If,
    ast.Break,
    ast.Continue,
    ast.Pass,
    ast.Import,
    ast.ImportFrom,
    ast.alias,
    ast.FunctionDef,
    ast.Return,
    ast.arguments,
    ast.arg,
    ast.Try,
    ast.ExceptHandler,
    ast.Raise,
    ast.Assert,
    # expressions
    ast.BoolOp,
    ast.BinOp,
    ast.UnaryOp,
    ast.Lambda,
    ast.IfExp,
    ast.NamedExpr,
    ast.Dict,
    ast.Set,
    ast.ListComp,
    ast.SetComp,
    ast.DictComp,
    ast.GeneratorExp,
    ast.comprehension,
    ast.Compare,
    ast.Call,
    ast.keyword,
    ast.FormattedValue,
    ast.JoinedStr,
    ast.Constant,
    ast.Attribute,
    ast.Subscript,
    ast.Starred,
    ast.Name,
    ast.List,
    ast.Tuple,
    ast.Slice,
    # operators and contexts
    ast.expr_context,
    ast.boolop,
    ast.operator,
    ast.unaryop,
    ast.cmpop,
)

# Attribute names that reach files, raw memory, frames or format-string lookups.
FORBIDDEN_ATTRIBUTES = frozenset(
    {
        "format",
        "format_map",
        "load",
        "save",
        "savez",
        "savez_compressed",
        "savetxt",
        "loadtxt",
        "genfromtxt",
        "fromfile",
        "tofile",
        "memmap",
        "ctypes",
        "gi_frame",
        "gi_code",
        "cr_frame",
        "ag_frame",
        "f_globals",
        "f_locals",
        "f_builtins",
        "f_back",
        "tb_frame",
    }
)

SAFE_BUILTINS = {
    name: getattr(builtins, name)
    for name in (
        "abs", "all", "any", "bool", "dict", "divmod", "enumerate", "filter", "float",
        "frozenset", "int", "isinstance", "len", "list", "map", "max", "min", "next",
        "pow", "range", "repr", "reversed", "round", "set", "slice", "sorted", "str",
        "sum", "tuple", "zip", "True", "False", "None",
        "Exception", "ArithmeticError", "AssertionError", "IndexError", "KeyError",
        "StopIteration", "TypeError", "ValueError", "ZeroDivisionError",
    )
}

NUMPY_NAMES = (
    "array", "asarray", "zeros", "ones", "full", "arange", "linspace", "concatenate", "stack",
    "mean", "median", "std", "var", "sum", "prod", "min", "max", "argmin", "argmax", "ptp",
    "nanmean", "nanmedian", "nanstd", "nansum", "nanmin", "nanmax",
    "percentile", "quantile", "histogram", "bincount", "corrcoef", "cov", "average",
    "cumsum", "cumprod", "diff", "sort", "argsort", "unique", "where", "clip", "round",
    "abs", "sqrt", "log", "log10", "exp", "power", "floor", "ceil",
    "isnan", "isfinite", "nan", "inf", "pi", "e",
    "ndarray", "float64", "int64",
)


def _facade(members: dict[str, Any]) -> types.SimpleNamespace:
    return types.SimpleNamespace(**members)


def _public_members(module: types.ModuleType) -> dict[str, Any]:
    names = getattr(module, "__all__", None) or [n for n in dir(module) if not n.startswith("_")]
    return {
        n: getattr(module, n)
        for n in names
        if hasattr(module, n) and not isinstance(getattr(module, n), types.ModuleType)
    }


MODULE_FACADES: dict[str, types.SimpleNamespace] = {
    "json": _facade(_public_members(json)),
    "math": _facade(_public_members(math)),
    "statistics": _facade(_public_members(statistics)),
    "collections": _facade(_public_members(collections)),
    "re": _facade(_public_members(re)),
    "numpy": _facade({n: getattr(np, n) for n in NUMPY_NAMES}),
}

ALLOWED_MODULES = frozenset(MODULE_FACADES)


class SandboxError(Exception):
    """Base class for analysis code failures."""


class SandboxSyntaxError(SandboxError):
    """Code does not parse, or uses a construct outside the allow-list."""


class SandboxImportError(SandboxError):
    """Code imports a module outside the allow-list."""


class SandboxAccessError(SandboxError):
    """Code reached an attribute or object it may not use."""


class SandboxLimitError(SandboxError):
    """Code exceeded the step budget, the CPU, memory or wall-clock limit."""


@dataclass
class ExecutionResult:
    success: bool
    output: str
    execution_time: int
    result: Any = None
    has_result: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": self.success,
            "output": self.output,
            "executionTime": self.execution_time,
        }
        if self.has_result:
            data["result"] = self.result
        if self.error is not None:
            data["error"] = self.error
        return data


def to_jsonable(value: Any, depth: int = 0, max_depth: int = 20) -> Any:
    """Convert an evaluation result into plain JSON types.

    numpy scalars and arrays become Python numbers and lists, sets and
    tuples become lists, NaN and infinities become ``None`` and anything
    unknown becomes its ``str``.
    """
    if depth > max_depth:
        return str(value)
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, np.generic):
        return to_jsonable(value.item(), depth + 1, max_depth)
    if isinstance(value, np.ndarray):
        return to_jsonable(value.tolist(), depth + 1, max_depth)
    if isinstance(value, dict):
        return {str(k): to_jsonable(v, depth + 1, max_depth) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset, collections.deque)):
        return [to_jsonable(v, depth + 1, max_depth) for v in value]
    return str(value)


def _address_space_bytes() -> int | None:
    """Virtual size of this process, from ``/proc/self/statm``."""
    try:
        with open("/proc/self/statm") as f:
            pages = int(f.read().split()[0])
    except (OSError, ValueError, IndexError):
        return None
    return pages * resource.getpagesize()


def guarded_getattr(obj: Any, name: str) -> Any:
    """Attribute read used in place of ``obj.name`` inside analysis code."""
    if name.startswith("_") or name in FORBIDDEN_ATTRIBUTES:
        raise SandboxAccessError(f"Attribute '{name}' is not allowed")
    value = getattr(obj, name)
    if isinstance(value, types.ModuleType):
        raise SandboxAccessError(f"Access to module '{value.__name__}' is not allowed")
    return value


class _GuardAttributes(ast.NodeTransformer):
    """Rewrite ``x.attr`` reads into ``__sandbox_getattr__(x, "attr")``."""

    def visit_Attribute(self, node: ast.Attribute) -> ast.AST:
        self.generic_visit(node)
        call = ast.Call(
            func=ast.Name(id=GUARD_NAME, ctx=ast.Load()),
            args=[node.value, ast.Constant(value=node.attr)],
            keywords=[],
        )
        return ast.copy_location(call, node)


class _Output:
    """``print`` replacement collecting text up to a size cap."""

    def __init__(self, limit: int = MAX_OUTPUT_CHARS):
        self.limit = limit
        self._parts: list[str] = []
        self._size = 0
        self.truncated = False

    def print(self, *args: Any, sep: str | None = " ", end: str | None = "\n", **_: Any) -> None:
        text = (" " if sep is None else str(sep)).join(str(a) for a in args) + ("\n" if end is None else str(end))
        remaining = self.limit - self._size
        if remaining <= 0:
            self.truncated = True
            return
        if len(text) > remaining:
            text = text[:remaining]
            self.truncated = True
        self._parts.append(text)
        self._size += len(text)

    def getvalue(self) -> str:
        value = "".join(self._parts)
        if self.truncated:
            value += "\n... output truncated"
        return value


class PythonSandbox:
    """Validates and runs analysis snippets.

    Args:
        max_steps: Maximum traced line events before the run is aborted.
        time_limit: Wall-clock seconds before the child process is killed.
        memory_mb: Address-space limit for the child process.
        allowed_modules: Importable module names.
    """

    def __init__(
        self,
        max_steps: int = DEFAULT_MAX_STEPS,
        time_limit: float = DEFAULT_TIME_LIMIT,
        memory_mb: int = DEFAULT_MEMORY_MB,
        allowed_modules: frozenset[str] = ALLOWED_MODULES,
    ):
        self.max_steps = max_steps
        self.time_limit = time_limit
        self.memory_mb = memory_mb
        self.allowed_modules = allowed_modules & ALLOWED_MODULES

    # ----- validation -----

    def validate(self, code: str) -> ast.Module:
        """Parse ``code`` and reject anything outside the allow-list."""
        try:
            tree = ast.parse(code, filename=FILENAME, mode="exec")
        except SyntaxError as e:
            raise SandboxSyntaxError(f"SyntaxError: {e.msg} (line {e.lineno})") from e

        for node in ast.walk(tree):
            if not isinstance(node, ALLOWED_NODES):
                raise SandboxSyntaxError(f"{type(node).__name__} is not allowed")
            if isinstance(node, ast.Attribute):
                if node.attr.startswith("_"):
                    raise SandboxSyntaxError(f"Access to private attribute '{node.attr}' is not allowed")
                if node.attr in FORBIDDEN_ATTRIBUTES:
                    raise SandboxSyntaxError(f"Attribute '{node.attr}' is not allowed")
                if not isinstance(node.ctx, ast.Load):
                    raise SandboxSyntaxError("Attribute assignment is not allowed")
            elif isinstance(node, ast.Name) and node.id.startswith("__"):
                raise SandboxSyntaxError(f"Name '{node.id}' is not allowed")
            elif isinstance(node, ast.FunctionDef) and node.decorator_list:
                raise SandboxSyntaxError("Decorators are not allowed")
            elif isinstance(node, ast.Import):
                for alias in node.names:
                    self._check_module(alias.name)
            elif isinstance(node, ast.ImportFrom):
                if node.level:
                    raise SandboxImportError("Relative imports are not allowed")
                self._check_module(node.module or "")
                for alias in node.names:
                    if alias.name == "*" or alias.name.startswith("_"):
                        raise SandboxImportError(f"Cannot import '{alias.name}' from {node.module}")
        return tree

    def _check_module(self, name: str) -> None:
        if name not in self.allowed_modules:
            allowed = ", ".join(sorted(self.allowed_modules))
            raise SandboxImportError(f"Import of '{name}' is not allowed (allowed: {allowed})")

    def _import(self, name: str, globals=None, locals=None, fromlist=(), level=0):
        if level:
            raise SandboxImportError("Relative imports are not allowed")
        self._check_module(name)
        return MODULE_FACADES[name]

    def compile(self, code: str) -> tuple[Any, Any]:
        """Validate and compile ``code`` into ``(body, last_expression)``."""
        tree = self.validate(code)

        last_expr = None
        if tree.body and isinstance(tree.body[-1], ast.Expr):
            last_expr = ast.Expression(body=tree.body.pop().value)

        guard = _GuardAttributes()
        tree = ast.fix_missing_locations(guard.visit(tree))
        body_code = compile(tree, FILENAME, "exec")
        expr_code = None
        if last_expr is not None:
            last_expr = ast.fix_missing_locations(guard.visit(last_expr))
            expr_code = compile(last_expr, FILENAME, "eval")
        return body_code, expr_code

    # ----- execution -----

    def _tracer(self):
        steps = 0

        def trace(frame, event, arg):
            nonlocal steps
            if frame.f_code.co_filename != FILENAME:
                return None
            if event == "line":
                steps += 1
                if steps > self.max_steps:
                    raise SandboxLimitError(f"Step limit exceeded ({self.max_steps} steps)")
            return trace

        return trace

    def _apply_rlimits(self) -> None:
        cpu_seconds = max(1, math.ceil(self.time_limit))
        limits = [(resource.RLIMIT_CPU, cpu_seconds)]
        baseline = _address_space_bytes()
        if self.memory_mb > 0 and baseline is not None:
            # The forked child starts with the parent's mappings
            limits.append((resource.RLIMIT_AS, baseline + self.memory_mb * 1024 * 1024))
        for which, value in limits:
            try:
                resource.setrlimit(which, (value, value))
            except (ValueError, OSError) as e:
                logger.debug("Could not set resource limit %s: %s", which, e)

    def run_compiled(self, body_code, expr_code, namespace: dict[str, Any]) -> tuple[str, Any, bool]:
        """Run compiled code in this process. Called inside the child."""
        output = _Output()
        env = dict(namespace)
        env[GUARD_NAME] = guarded_getattr
        env["__builtins__"] = {**SAFE_BUILTINS, "print": output.print, "__import__": self._import}

        previous = sys.gettrace()
        sys.settrace(self._tracer())
        try:
            exec(body_code, env)
            value = eval(expr_code, env) if expr_code is not None else None
        finally:
            sys.settrace(previous)

        return output.getvalue(), value, expr_code is not None

    def _child(self, conn, body_code, expr_code, data: dict[str, Any]) -> None:
        self._apply_rlimits()
        try:
            output, value, has_value = self.run_compiled(body_code, expr_code, build_namespace(data))
            message = ("ok", output, to_jsonable(value) if has_value else None, has_value)
        except SandboxError as e:
            message = ("error", "", str(e), False)
        except MemoryError:
            message = ("error", "", f"Memory limit exceeded ({self.memory_mb} MB)", False)
        except Exception as e:
            message = ("error", "", f"{type(e).__name__}: {e}", False)
        conn.send(message)
        conn.close()

    def execute(self, code: str, data: dict[str, Any]) -> tuple[str, Any, bool]:
        """Run ``code`` against ``data`` in a child process.

        Returns:
            ``(printed_output, last_expression_value, has_value)``

        Raises:
            SandboxError: On validation failures, exceeded limits, and
                anything the user code raises (as its type and message).
        """
        body_code, expr_code = self.compile(code)

        ctx = multiprocessing.get_context("fork")
        receiver, sender = ctx.Pipe(duplex=False)
        process = ctx.Process(target=self._child, args=(sender, body_code, expr_code, data), daemon=True)
        process.start()
        sender.close()

        try:
            if not receiver.poll(self.time_limit):
                raise SandboxLimitError(f"Time limit exceeded ({self.time_limit:g}s)")
            try:
                status, output, value, has_value = receiver.recv()
            except EOFError:
                process.join(1)
                if process.exitcode == -signal.SIGXCPU:
                    raise SandboxLimitError(f"CPU time limit exceeded ({self.time_limit:g}s)") from None
                raise SandboxLimitError(f"Execution aborted (exit code {process.exitcode})") from None
        finally:
            receiver.close()
            if process.is_alive():
                process.kill()
            process.join(1)

        if status != "ok":
            raise SandboxError(value)
        return output, value, has_value


def _curated_namespace() -> dict[str, Any]:
    return {
        "np": MODULE_FACADES["numpy"],
        "json": MODULE_FACADES["json"],
        "math": MODULE_FACADES["math"],
        "statistics": MODULE_FACADES["statistics"],
        "Counter": collections.Counter,
    }


def build_namespace(data: dict[str, Any]) -> dict[str, Any]:
    """Globals visible to analysis code."""
    nodes = data.get("nodes") or []
    return {
        "nodes": nodes,
        "aggregated": data.get("aggregated") or {},
        "summary": data.get("summary") or {},
        "results": [n.get("result") for n in nodes if isinstance(n, dict)],
        **_curated_namespace(),
    }


def default_output(data: dict[str, Any]) -> str:
    return "\n".join(
        [
            "Code executed successfully.",
            "Available data:",
            f"- nodes: {len(data.get('nodes') or [])} items",
            f"- aggregated: {len(data.get('aggregated') or {})} keys",
        ]
    )


def run_analysis_code(
    code: str,
    data: dict[str, Any],
    sandbox: PythonSandbox | None = None,
) -> ExecutionResult:
    """Execute an analysis snippet against workflow results.

    Failures are reported in the result rather than raised.
    """
    sandbox = sandbox or PythonSandbox()
    start = time.monotonic()

    try:
        output, value, has_value = sandbox.execute(code, data)
    except SandboxError as e:
        logger.info("Analysis code failed: %s", e)
        return ExecutionResult(
            success=False,
            output="",
            error=str(e),
            execution_time=int((time.monotonic() - start) * 1000),
        )

    output = output.rstrip("\n")
    if not output:
        output = default_output(data)

    return ExecutionResult(
        success=True,
        output=output,
        result=value,
        has_result=has_value,
        execution_time=int((time.monotonic() - start) * 1000),
    )
