"""
Tests for the restricted Python evaluator.

Run tests:
    pytest tests/test_python_sandbox.py -v
"""

import math
import os
import time
import types

import numpy as np
import pytest

from api.shared.sandbox import (
    PythonSandbox,
    SandboxAccessError,
    SandboxImportError,
    SandboxSyntaxError,
    _Output,
    build_namespace,
    guarded_getattr,
    run_analysis_code,
    to_jsonable,
)

DATA = {
    "nodes": [
        {"nodeName": "A", "result": {"rating": 4}},
        {"nodeName": "B", "result": {"rating": 2}},
    ],
    "aggregated": {"averageRating": 3},
}


# ============================================================================
# Successful runs
# ============================================================================


class TestExecution:
    """Output capture and result values."""

    def test_print_capture(self):
        result = run_analysis_code("print('nodes:', len(nodes))\nprint('done')", DATA)

        assert result.success is True
        assert result.output == "nodes: 2\ndone"
        assert "result" not in result.to_dict()

    def test_last_expression_is_result(self):
        code = "ratings = [n['result']['rating'] for n in nodes]\nsum(ratings) / len(ratings)"
        result = run_analysis_code(code, DATA)
        assert result.result == 3.0
        assert result.to_dict()["result"] == 3.0

    def test_numpy_result(self):
        result = run_analysis_code("np.array([r['rating'] for r in results]) * 2", DATA)
        assert result.result == [8, 4]

    def test_allowed_import(self):
        result = run_analysis_code("import statistics\nfrom math import sqrt\nsqrt(statistics.mean([9, 25, 16, 14]))", DATA)
        assert result.result == 4.0

    def test_functions_and_comprehensions(self):
        code = "def double(x):\n    return x * 2\n{n['nodeName']: double(n['result']['rating']) for n in nodes}"
        assert run_analysis_code(code, DATA).result == {"A": 8, "B": 4}

    def test_default_output(self):
        result = run_analysis_code("x = 1", DATA)
        assert result.output.startswith("Code executed successfully.")
        assert "- nodes: 2 items" in result.output
        assert "- aggregated: 1 keys" in result.output

    def test_namespace(self):
        namespace = build_namespace(DATA)
        assert namespace["results"] == [{"rating": 4}, {"rating": 2}]
        assert namespace["summary"] == {}


# ============================================================================
# Rejected code
# ============================================================================


class TestRestrictions:
    """Validation and runtime limits."""

    @pytest.mark.parametrize(
        "code, message",
        [
            ("import os", "Import of 'os' is not allowed"),
            ("from subprocess import run", "Import of 'subprocess' is not allowed"),
            ("().__class__", "private attribute '__class__'"),
            ("__import__('os')", "Name '__import__' is not allowed"),
            ("'{0.__class__}'.format(1)", "Attribute 'format' is not allowed"),
            ("np.load('x.npy')", "Attribute 'load' is not allowed"),
            ("class A:\n    pass", "ClassDef is not allowed"),
            ("with x:\n    pass", "With is not allowed"),
            ("def (", "SyntaxError"),
            ("nodes.extra = 1", "Attribute assignment is not allowed"),
            ("import numpy.linalg", "Import of 'numpy.linalg' is not allowed"),
            ("arr = np.array([1])\narr.ctypes", "Attribute 'ctypes' is not allowed"),
        ],
    )
    def test_rejected(self, code, message):
        result = run_analysis_code(code, DATA)
        assert result.success is False
        assert message in result.error

    def test_missing_builtins(self):
        result = run_analysis_code("open('/etc/passwd')", DATA)
        assert result.success is False
        assert result.error == "NameError: name 'open' is not defined"

    def test_runtime_error(self):
        result = run_analysis_code("1 / 0", DATA)
        assert result.error == "ZeroDivisionError: division by zero"
        assert result.output == ""

    def test_step_limit(self):
        sandbox = PythonSandbox(max_steps=50)
        result = run_analysis_code("i = 0\nwhile True:\n    i += 1", DATA, sandbox=sandbox)
        assert result.success is False
        assert result.error == "Step limit exceeded (50 steps)"

    def test_validate_raises(self):
        sandbox = PythonSandbox()
        with pytest.raises(SandboxImportError):
            sandbox.validate("import socket")
        with pytest.raises(SandboxSyntaxError):
            sandbox.validate("@decorator\ndef f():\n    pass")


class TestHelpers:
    def test_to_jsonable(self):
        assert to_jsonable(np.array([[1, 2], [3, 4]])) == [[1, 2], [3, 4]]
        assert to_jsonable(np.float64(2.5)) == 2.5
        assert to_jsonable(float("nan")) is None
        assert to_jsonable(math.inf) is None
        assert to_jsonable({1: (1, 2)}) == {"1": [1, 2]}
        assert to_jsonable(object()).startswith("<object object")

    def test_output_truncation(self):
        output = _Output(limit=5)
        output.print("abcdefgh")
        output.print("more")
        assert output.getvalue() == "abcde\n... output truncated"


# ============================================================================
# Isolation
# ============================================================================


class TestIsolation:
    """Module internals and long-running code stay out of reach."""

    @pytest.mark.parametrize(
        "code",
        [
            "statistics.sys.modules['os'].popen('id').read()",
            "json.codecs.open('/etc/hostname').read()",
            "import statistics\nstatistics.sys",
            "np.random.seed(1)",
            "math.sys",
        ],
    )
    def test_module_internals_unreachable(self, code):
        result = run_analysis_code(code, DATA)
        assert result.success is False
        assert result.error.startswith("AttributeError")

    def test_from_import_of_module_attribute(self):
        result = run_analysis_code("from statistics import sys\nsys.modules", DATA)
        assert result.success is False
        assert result.error.startswith("ImportError")

    def test_guard_refuses_modules(self):
        holder = types.SimpleNamespace(os=os, value=1)

        assert guarded_getattr(holder, "value") == 1
        with pytest.raises(SandboxAccessError, match="module 'os'"):
            guarded_getattr(holder, "os")
        with pytest.raises(SandboxAccessError):
            guarded_getattr(holder, "__dict__")

    def test_single_expression_hits_time_limit(self):
        sandbox = PythonSandbox(time_limit=0.5)
        start = time.monotonic()

        result = run_analysis_code("sum(range(10**10))", DATA, sandbox=sandbox)

        assert result.success is False
        assert result.error == "Time limit exceeded (0.5s)"
        assert time.monotonic() - start < 3
