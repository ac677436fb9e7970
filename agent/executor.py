"""
probeshell Compile-Cache-Execute Engine (Agent Side)

A snippet of Python source is wrapped as the body of a function named
ENTRY_POINT, compiled once per distinct text (keyed by content hash) and
invoked with the agent's ExecutionContext.

Snippets run with full access to the host: there is no sandbox.
"""

import ast
import builtins
import logging
import time
from collections.abc import MutableMapping
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional

from . import digest

logger = logging.getLogger(__name__)

ENTRY_POINT = "__probe_execute__"
_TEMPLATE = f"def {ENTRY_POINT}(context):\n    pass\n"

Provider = Callable[[], Mapping[str, Any]]
Compiler = Callable[..., Any]


def safe_name(name: str) -> str:
    return name.strip().replace(" ", "_").replace("-", "_")


class ExecutionContext(MutableMapping):
    """
    Name -> live host object mapping handed to every snippet.

    Fixed bindings are set directly; providers re-enumerate host-managed
    named entities on each rescan(). Names a provider stops reporting are
    dropped on the next rescan, names set by snippets are kept.
    """

    def __init__(self, bindings: Optional[Mapping[str, Any]] = None,
                 providers: Iterable[Provider] = ()):
        self._bindings: Dict[str, Any] = dict(bindings or {})
        self._providers: List[Provider] = list(providers)
        self._scanned: set = set()
        self.last_rescan: Optional[float] = None

    def __getitem__(self, key: str) -> Any:
        return self._bindings[key]

    def __setitem__(self, key: str, value: Any) -> None:
        self._bindings[key] = value
        self._scanned.discard(key)

    def __delitem__(self, key: str) -> None:
        del self._bindings[key]
        self._scanned.discard(key)

    def __iter__(self) -> Iterator[str]:
        return iter(self._bindings)

    def __len__(self) -> int:
        return len(self._bindings)

    def add_provider(self, provider: Provider) -> None:
        self._providers.append(provider)

    def rescan(self) -> None:
        found: Dict[str, Any] = {}
        for provider in self._providers:
            try:
                entries = provider()
            except Exception:
                logger.exception("Context provider %r failed", provider)
                continue
            for name, obj in entries.items():
                name = safe_name(str(name))
                if name:
                    found[name] = obj

        for stale in self._scanned - found.keys():
            self._bindings.pop(stale, None)
        self._bindings.update(found)
        self._scanned = set(found)
        self.last_rescan = time.monotonic()


@dataclass(frozen=True)
class Diagnostic:
    line: Optional[int]
    message: str

    def __str__(self) -> str:
        return f"Line {self.line if self.line is not None else '?'}: {self.message}"


@dataclass
class CompiledUnit:
    key: str
    filename: str
    code: Any
    diagnostics: List[Diagnostic] = field(default_factory=list)


class CompilationError(Exception):
    def __init__(self, diagnostics: List[Diagnostic]):
        super().__init__("; ".join(str(d) for d in diagnostics))
        self.diagnostics = diagnostics


def innermost_cause(exc: BaseException) -> BaseException:
    """Follow the __cause__ / __context__ chain down to the first fault."""
    seen = {id(exc)}
    while True:
        inner = exc.__cause__
        if inner is None and not exc.__suppress_context__:
            inner = exc.__context__
        if inner is None or id(inner) in seen:
            return exc
        seen.add(id(inner))
        exc = inner


class CodeExecutor:
    """Compile, cache and run snippets against one ExecutionContext."""

    def __init__(self, context: ExecutionContext, compiler: Compiler = compile):
        self.context = context
        self._compiler = compiler
        self._units: Dict[str, CompiledUnit] = {}
        self.compile_count = 0

    @property
    def cache_size(self) -> int:
        return len(self._units)

    def clear_cache(self) -> None:
        self._units.clear()

    def compile_unit(self, source: str, key: Optional[str] = None) -> CompiledUnit:
        """
        Wrap source in the entry-point template and compile it.

        Raises CompilationError with the diagnostics on failure.
        Line numbers in diagnostics are those of the snippet itself.
        """
        key = key or digest.content_hash(source)
        filename = f"<probe-snippet-{key[:8]}>"
        self.compile_count += 1
        try:
            body = ast.parse(source, filename=filename)
            module = ast.parse(_TEMPLATE, filename=filename)
            module.body[0].body = body.body or [ast.Pass()]
            ast.fix_missing_locations(module)
            code = self._compiler(module, filename, "exec")
        except SyntaxError as e:
            raise CompilationError([Diagnostic(e.lineno, e.msg)]) from e
        except (ValueError, TypeError) as e:
            raise CompilationError([Diagnostic(None, str(e))]) from e
        return CompiledUnit(key=key, filename=filename, code=code)

    def execute(self, source: str) -> Any:
        """
        Run a snippet; returns its result, or None on any failure.

        Failures are reported through logging only.
        """
        if not source or not source.strip():
            logger.error("Code is null or empty")
            return None

        key = digest.content_hash(source)
        unit = self._units.get(key)
        if unit is None:
            try:
                unit = self.compile_unit(source, key)
            except CompilationError as e:
                lines = "\n".join(str(d) for d in e.diagnostics)
                logger.error("Compilation failed:\n%s", lines)
                return None
            self._units[key] = unit

        namespace = dict(self.context)
        namespace.update({
            "__builtins__": builtins,
            "__name__": unit.filename,
            "context": self.context,
        })
        try:
            exec(unit.code, namespace)
            result = namespace[ENTRY_POINT](self.context)
        except (Exception, SystemExit) as e:
            cause = innermost_cause(e)
            logger.error("Error executing code: %s", cause,
                         exc_info=(type(cause), cause, cause.__traceback__))
            return None

        if result is not None:
            logger.info("Execution result: %s", result)
        return result
