"""Unit tests for the security validator."""

import pytest

from coderunner.models import ValidationError, ViolationKind
from coderunner.services.validation import (
    SecurityValidator,
    check_brackets,
    check_length,
)


@pytest.fixture
def validator():
    return SecurityValidator()


class TestForbiddenPatterns:
    """Test per-language forbidden pattern detection."""

    @pytest.mark.parametrize(
        "source",
        [
            "import os\nprint(os.getcwd())",
            "import subprocess",
            "from socket import socket",
            "__import__('os')",
            "exec('print(1)')",
            "eval('1+1')",
            "x = compile('1', 'f', 'eval')",
            "import importlib",
            "exit(0)",
        ],
    )
    def test_python_rejections(self, validator, source):
        """Test dangerous Python constructs are reported."""
        report = validator.validate("python", source)
        assert not report.is_valid
        assert any(v.kind == ViolationKind.FORBIDDEN_PATTERN for v in report.violations)

    @pytest.mark.parametrize(
        "source",
        [
            "print('hello')",
            "name = input()\nprint(name)",
            "import json\nprint(json.dumps({}))",
            "with open('out.txt', 'w') as f:\n    f.write('x')",
            "import math\nprint(math.pi)",
            "df.eval_score = 1",
            "model.compile(loss='mse')",
            "pos.x = 1",
        ],
    )
    def test_python_allowed(self, validator, source):
        """Test ordinary programs and lookalike identifiers pass."""
        assert validator.validate("python", source).is_valid

    def test_javascript_child_process(self, validator):
        """Test require('child_process') is rejected."""
        report = validator.validate(
            "javascript", "const cp = require('child_process');"
        )
        assert not report.is_valid

    def test_javascript_plain_program(self, validator):
        """Test an ordinary Node program passes."""
        assert validator.validate("js", "console.log([1, 2].map(x => x * 2));").is_valid

    def test_c_system_call(self, validator):
        """Test system() is rejected for C."""
        source = '#include <stdlib.h>\nint main() { system("ls"); return 0; }'
        assert not validator.validate("c", source).is_valid

    @pytest.mark.parametrize(
        "source",
        [
            'System.Diagnostics.Process.Start("ls");',
            'using System.Diagnostics;\nProcess.Start("ls");',
            "using System.Net.Sockets;",
            "var client = new HttpClient();",
            'System.IO.File.Delete("x");',
            'File.ReadAllText("/etc/passwd");',
            '[DllImport("libc")] static extern int getpid();',
            "Environment.Exit(1);",
        ],
    )
    def test_csharp_rejections(self, validator, source):
        """Test process, network, file and native interop access is rejected for C#."""
        report = validator.validate("csharp", source)
        assert not report.is_valid

    def test_csharp_plain_program(self, validator):
        """Test an ordinary C# program passes under its alias."""
        source = (
            "using System;\n\nclass Program {\n"
            "    static void Main() {\n"
            "        var name = Console.ReadLine();\n"
            '        Console.WriteLine($"Hello, {name}");\n'
            "    }\n}"
        )
        assert validator.validate("cs", source).is_valid

    def test_unsupported_language(self, validator):
        """Test validation of an unknown language raises."""
        with pytest.raises(ValidationError):
            validator.validate("cobol", "DISPLAY 'HI'.")


class TestStructuralRules:
    """Test structural requirements and bracket balance."""

    def test_java_requires_class_and_main(self, validator):
        """Test Java without a public class and main method reports both."""
        report = validator.validate("java", "class Foo { }")
        rules = {v.rule for v in report.violations}
        assert {"public_class", "main_method"} <= rules

    def test_java_complete_program(self, validator):
        """Test a minimal Java program passes."""
        source = (
            "public class Main {\n"
            "    public static void main(String[] args) {\n"
            '        System.out.println("hi");\n'
            "    }\n"
            "}\n"
        )
        assert validator.validate("java", source).is_valid

    def test_rust_requires_main(self, validator):
        """Test Rust without fn main is rejected."""
        report = validator.validate("rust", "fn helper() {}")
        assert [v.rule for v in report.violations] == ["main_function"]

    def test_all_violations_reported(self, validator):
        """Test every failing rule is reported, not only the first."""
        report = validator.validate("python", "import os\nprint((1)", max_length=5)
        kinds = {v.kind for v in report.violations}
        assert kinds == {
            ViolationKind.LENGTH,
            ViolationKind.FORBIDDEN_PATTERN,
            ViolationKind.STRUCTURAL,
        }


class TestCheckBrackets:
    """Test bracket balance counting."""

    @pytest.mark.parametrize("source", ["", "f(a[1], {b: 2})", "((([[{}]])))"])
    def test_balanced(self, source):
        """Test balanced sources produce no violation."""
        assert check_brackets(source) is None

    def test_unmatched_closer(self):
        """Test a closer with no opener fails at its position."""
        violation = check_brackets("x)")
        assert violation is not None
        assert "position 1" in violation.message

    def test_unclosed_opener(self):
        """Test an opener left open at the end fails."""
        violation = check_brackets("print((1)")
        assert violation is not None
        assert "Unclosed" in violation.message

    def test_counts_are_per_type(self):
        """Test each bracket type is counted independently."""
        assert check_brackets("([)]") is None
        assert check_brackets("(]") is not None


class TestCheckLength:
    """Test the length limit."""

    def test_at_limit(self):
        """Test a source exactly at the limit passes."""
        assert check_length("a" * 10, 10) is None

    def test_over_limit(self):
        """Test a source over the limit fails with both sizes in the message."""
        violation = check_length("a" * 11, 10)
        assert violation.kind == ViolationKind.LENGTH
        assert "11" in violation.message and "10" in violation.message


class TestEnsureValid:
    """Test ensure_valid raising."""

    def test_raises_with_violations(self, validator):
        """Test the raised error carries violations and details."""
        with pytest.raises(ValidationError) as exc_info:
            validator.ensure_valid("python", "import os")
        error = exc_info.value
        assert error.status_code == 400
        assert error.violations
        assert error.details[0].field == "code"

    def test_returns_report_when_valid(self, validator):
        """Test a valid source returns its report."""
        assert validator.ensure_valid("python", "print(1)").is_valid
