"""Language registry.

Static catalog of supported languages. Each entry describes how a program
is laid out on disk, how it is built and run, which source patterns are
rejected before execution, and the resource ceiling applied to the sandbox
that runs it.

The table is built once at import time and never mutated, so lookups need
no locking.
"""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from ..models.errors import ErrorDetail, ValidationError

MB = 1024 * 1024


@dataclass(frozen=True)
class ResourceCeiling:
    """Upper bound on memory, CPU share and process count for one sandbox."""

    memory_bytes: int = 256 * MB
    cpu_share: float = 0.5  # Fraction of a single CPU
    max_processes: int = 50
    # Off for runtimes that reserve large virtual ranges up front (JVM, V8, Go)
    limit_address_space: bool = True

    @property
    def memory_mb(self) -> int:
        return self.memory_bytes // MB


@dataclass(frozen=True)
class ForbiddenPattern:
    """A source pattern that is rejected before execution."""

    pattern: str
    flags: int = re.MULTILINE
    compiled: re.Pattern = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "compiled", re.compile(self.pattern, self.flags))

    def matches(self, source: str) -> bool:
        return self.compiled.search(source) is not None


@dataclass(frozen=True)
class StructuralRule:
    """A construct the source must contain to be runnable at all."""

    name: str
    pattern: str
    message: str
    compiled: re.Pattern = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "compiled", re.compile(self.pattern, re.MULTILINE))

    def is_satisfied(self, source: str) -> bool:
        return self.compiled.search(source) is not None


@dataclass(frozen=True)
class LanguagePluginConfig:
    """Configuration for one supported language."""

    id: str  # Canonical identifier: "python", "javascript", ...
    name: str  # Display name
    version: str
    extension: str  # Source file extension including the dot
    image: str  # Container image the program runs in
    filename: str  # Name the source is written under inside the workspace
    run_command: Tuple[str, ...]
    compile_command: Optional[Tuple[str, ...]] = None
    forbidden_patterns: Tuple[ForbiddenPattern, ...] = ()
    structural_rules: Tuple[StructuralRule, ...] = ()
    resource_ceiling: ResourceCeiling = ResourceCeiling()
    environment: Tuple[Tuple[str, str], ...] = ()
    aliases: Tuple[str, ...] = ()
    timeout_multiplier: float = 1.0

    @property
    def needs_compilation(self) -> bool:
        return self.compile_command is not None

    def env(self) -> Dict[str, str]:
        """Language-specific environment variables as a fresh dict."""
        return dict(self.environment)


def _patterns(*patterns: str) -> Tuple[ForbiddenPattern, ...]:
    return tuple(ForbiddenPattern(p) for p in patterns)


# Ceiling for runtimes that reserve large virtual ranges at startup
_RUNTIME_CEILING = ResourceCeiling(limit_address_space=False)

# Shared process/network escape hatches for the C family
_NATIVE_PATTERNS = (
    r"\bsystem\s*\(",
    r"\bpopen\s*\(",
    r"\bfork\s*\(",
    r"\bexec[lv]p?e?\s*\(",
    r"\bsocket\s*\(",
    r"\bptrace\s*\(",
    r"#\s*include\s*<\s*(sys/socket|netinet/in|arpa/inet|sys/ptrace)\.h\s*>",
)


LANGUAGES: Dict[str, LanguagePluginConfig] = {
    "python": LanguagePluginConfig(
        id="python",
        name="Python",
        version="3.11",
        extension=".py",
        image="python:3.11-alpine",
        filename="main.py",
        run_command=("python3", "main.py"),
        forbidden_patterns=_patterns(
            r"^\s*import\s+(os|subprocess|sys|shutil|glob|pathlib|tempfile|urllib|requests|socket|http|pickle|ctypes|multiprocessing)\b",
            r"^\s*from\s+(os|subprocess|sys|shutil|socket|ctypes|multiprocessing)\b",
            r"__import__\s*\(",
            r"(?<![\w.])exec\s*\(",
            r"(?<![\w.])eval\s*\(",
            r"(?<![\w.])compile\s*\(",
            r"(?<![\w.])(subprocess|os|sys|shutil|socket)\.",
            r"\b(exit|quit|breakpoint)\s*\(",
            r"\bimportlib\b",
            r"(?<![\w.])imp\.",
            r"^\s*from\s+\.",
            r"^\s*import\s+\.",
        ),
        environment=(
            ("PYTHONUNBUFFERED", "1"),
            ("PYTHONDONTWRITEBYTECODE", "1"),
        ),
        aliases=("py", "python3"),
    ),
    "javascript": LanguagePluginConfig(
        id="javascript",
        name="JavaScript",
        version="18",
        extension=".js",
        image="node:18-alpine",
        filename="main.js",
        run_command=("node", "main.js"),
        forbidden_patterns=_patterns(
            r"require\s*\(\s*['\"](child_process|fs|net|http|https|dgram|cluster|worker_threads|vm|os)['\"]\s*\)",
            r"^\s*import\s+.*\s+from\s+['\"](node:)?(child_process|fs|net|http|https|dgram|cluster|worker_threads|vm|os)['\"]",
            r"\bprocess\.(exit|kill|binding|dlopen|env)\b",
            r"\beval\s*\(",
            r"\bnew\s+Function\s*\(",
            r"\bimport\s*\(",
        ),
        environment=(("NODE_ENV", "sandbox"),),
        resource_ceiling=_RUNTIME_CEILING,
        aliases=("js", "node"),
    ),
    "typescript": LanguagePluginConfig(
        id="typescript",
        name="TypeScript",
        version="5",
        extension=".ts",
        image="node:18-alpine",
        filename="main.ts",
        compile_command=("tsc", "--outDir", ".", "--module", "commonjs", "main.ts"),
        run_command=("node", "main.js"),
        forbidden_patterns=_patterns(
            r"require\s*\(\s*['\"](child_process|fs|net|http|https|dgram|cluster|worker_threads|vm|os)['\"]\s*\)",
            r"^\s*import\s+.*\s+from\s+['\"](node:)?(child_process|fs|net|http|https|dgram|cluster|worker_threads|vm|os)['\"]",
            r"\bprocess\.(exit|kill|binding|dlopen|env)\b",
            r"\beval\s*\(",
            r"\bnew\s+Function\s*\(",
        ),
        resource_ceiling=_RUNTIME_CEILING,
        aliases=("ts",),
        timeout_multiplier=1.5,
    ),
    "java": LanguagePluginConfig(
        id="java",
        name="Java",
        version="17",
        extension=".java",
        image="openjdk:17-alpine",
        filename="Main.java",
        compile_command=("javac", "Main.java"),
        run_command=("java", "-Xmx384m", "Main"),
        forbidden_patterns=_patterns(
            r"\bRuntime\s*\.\s*getRuntime\s*\(",
            r"\bProcessBuilder\b",
            r"\bjava\.net\.",
            r"\bjava\.nio\.file\.",
            r"\bSystem\s*\.\s*exit\s*\(",
            r"\bClass\s*\.\s*forName\s*\(",
            r"\bjava\.lang\.reflect\b",
        ),
        structural_rules=(
            StructuralRule(
                name="public_class",
                pattern=r"\bpublic\s+class\s+\w+",
                message="Java code must contain a public class",
            ),
            StructuralRule(
                name="main_method",
                pattern=r"\bpublic\s+static\s+void\s+main\s*\(",
                message="Java code must contain a main method",
            ),
        ),
        resource_ceiling=ResourceCeiling(memory_bytes=512 * MB, limit_address_space=False),
        aliases=("jdk",),
        timeout_multiplier=2.0,
    ),
    "cpp": LanguagePluginConfig(
        id="cpp",
        name="C++",
        version="13",
        extension=".cpp",
        image="gcc:latest",
        filename="main.cpp",
        compile_command=("g++", "-O2", "-o", "main", "main.cpp"),
        run_command=("./main",),
        forbidden_patterns=_patterns(*_NATIVE_PATTERNS),
        aliases=("c++", "cc"),
        timeout_multiplier=1.5,
    ),
    "c": LanguagePluginConfig(
        id="c",
        name="C",
        version="13",
        extension=".c",
        image="gcc:latest",
        filename="main.c",
        compile_command=("gcc", "-O2", "-o", "main", "main.c"),
        run_command=("./main",),
        forbidden_patterns=_patterns(*_NATIVE_PATTERNS),
        timeout_multiplier=1.5,
    ),
    "csharp": LanguagePluginConfig(
        id="csharp",
        name="C#",
        version=".NET 7.0",
        extension=".cs",
        image="mcr.microsoft.com/dotnet/sdk:7.0",
        filename="Program.cs",
        # The console template overwrites Program.cs, so the source is set aside first
        compile_command=(
            "sh",
            "-c",
            "mv Program.cs Program.cs.src"
            " && dotnet new console --force -n main -o . >/dev/null"
            " && mv Program.cs.src Program.cs"
            " && dotnet build -c Release -o out --nologo -v q"
            " -nodeReuse:false -p:UseSharedCompilation=false",
        ),
        run_command=("dotnet", "out/main.dll"),
        forbidden_patterns=_patterns(
            r"\bSystem\s*\.\s*Diagnostics\s*\.\s*Process\b",
            r"\bProcess\s*\.\s*Start\s*\(",
            r"\bSystem\s*\.\s*Net\b",
            r"\bHttpClient\b",
            r"\bSystem\s*\.\s*IO\s*\.\s*File\b",
            r"\bFile\s*\.\s*(Delete|Move|Copy|Open|Write\w*|Read\w*)\s*\(",
            r"\bDllImport\b",
            r"\bEnvironment\s*\.\s*Exit\s*\(",
        ),
        environment=(
            ("DOTNET_CLI_HOME", "/tmp"),
            ("DOTNET_CLI_TELEMETRY_OPTOUT", "1"),
            ("DOTNET_NOLOGO", "1"),
            ("DOTNET_SKIP_FIRST_TIME_EXPERIENCE", "1"),
            ("NUGET_PACKAGES", "/tmp/nuget"),
        ),
        resource_ceiling=ResourceCeiling(memory_bytes=512 * MB, limit_address_space=False),
        aliases=("cs", "c#", "dotnet"),
        timeout_multiplier=3.0,
    ),
    "go": LanguagePluginConfig(
        id="go",
        name="Go",
        version="1.21",
        extension=".go",
        image="golang:1.21-alpine",
        filename="main.go",
        compile_command=("go", "build", "-o", "main", "main.go"),
        run_command=("./main",),
        forbidden_patterns=_patterns(
            r"\"os/exec\"",
            r"\"net(/http)?\"",
            r"\"syscall\"",
            r"\"unsafe\"",
            r"\bos\.(Exit|Remove|RemoveAll|Chmod|Chown)\s*\(",
        ),
        environment=(("GOCACHE", "/tmp/go-build"), ("GO111MODULE", "off")),
        resource_ceiling=_RUNTIME_CEILING,
        aliases=("golang",),
        timeout_multiplier=1.5,
    ),
    "rust": LanguagePluginConfig(
        id="rust",
        name="Rust",
        version="1.75",
        extension=".rs",
        image="rust:1.75-alpine",
        filename="main.rs",
        compile_command=("rustc", "-O", "main.rs", "-o", "main"),
        run_command=("./main",),
        forbidden_patterns=_patterns(
            r"\bstd::process\b",
            r"\bstd::net\b",
            r"\bstd::fs\b",
            r"\bunsafe\s*\{",
            r"\bextern\s+\"C\"",
        ),
        structural_rules=(
            StructuralRule(
                name="main_function",
                pattern=r"\bfn\s+main\s*\(",
                message="Rust code must contain a main function",
            ),
        ),
        aliases=("rs",),
        timeout_multiplier=2.0,
    ),
    "php": LanguagePluginConfig(
        id="php",
        name="PHP",
        version="8.2",
        extension=".php",
        image="php:8.2-alpine",
        filename="main.php",
        run_command=("php", "main.php"),
        forbidden_patterns=_patterns(
            r"\b(exec|shell_exec|system|passthru|proc_open|popen|pcntl_exec)\s*\(",
            r"\b(fsockopen|socket_create|curl_init)\s*\(",
            r"\beval\s*\(",
            r"`[^`]*`",
        ),
    ),
    "ruby": LanguagePluginConfig(
        id="ruby",
        name="Ruby",
        version="3.2",
        extension=".rb",
        image="ruby:3.2-alpine",
        filename="main.rb",
        run_command=("ruby", "main.rb"),
        forbidden_patterns=_patterns(
            r"\b(system|exec|spawn|fork|syscall)\s*[\(\s]",
            r"%x\s*[\(\{\[]",
            r"`[^`]*`",
            r"\b(IO\.popen|Open3|Socket|TCPSocket|UDPSocket)\b",
            r"\beval\s*[\(\s]",
            r"^\s*require\s+['\"](socket|open3|net/http)['\"]",
        ),
        aliases=("rb",),
    ),
}

# Alias table, resolved once alongside LANGUAGES
_ALIASES: Dict[str, str] = {
    alias: lang.id for lang in LANGUAGES.values() for alias in (lang.id,) + lang.aliases
}


def _normalize(language_id: str) -> str:
    return (language_id or "").lower().strip()


def resolve_language_id(language_id: str) -> Optional[str]:
    """Map an identifier or alias to its canonical language id."""
    return _ALIASES.get(_normalize(language_id))


def get_language(language_id: str) -> Optional[LanguagePluginConfig]:
    """Get a language configuration, or None when unsupported."""
    canonical = resolve_language_id(language_id)
    return LANGUAGES.get(canonical) if canonical else None


def is_supported_language(language_id: str) -> bool:
    return resolve_language_id(language_id) is not None


def get_supported_languages() -> List[str]:
    return list(LANGUAGES.keys())


class LanguageRegistry:
    """Read-only lookup over the static language table."""

    def __init__(self, languages: Optional[Dict[str, LanguagePluginConfig]] = None):
        self._languages = dict(languages if languages is not None else LANGUAGES)
        self._aliases = {
            alias: lang.id
            for lang in self._languages.values()
            for alias in (lang.id,) + lang.aliases
        }

    def get(self, language_id: str) -> LanguagePluginConfig:
        """Get a language configuration.

        Raises:
            ValidationError: The language is not in the registry
        """
        canonical = self._aliases.get(_normalize(language_id))
        if canonical is None:
            raise ValidationError(
                message=f"Unsupported programming language: {language_id}",
                details=[
                    ErrorDetail(
                        field="language",
                        message=f"Supported languages: {', '.join(self._languages)}",
                        code="unsupported_language",
                    )
                ],
            )
        return self._languages[canonical]

    def is_supported(self, language_id: str) -> bool:
        return _normalize(language_id) in self._aliases

    def list(self) -> List[LanguagePluginConfig]:
        return list(self._languages.values())


language_registry = LanguageRegistry()
