"""Time-boxed evaluation of administrator-supplied lookup scripts.

A lookup script is a restricted Python subset that must define::

    def lookup(id_in, id_type, prefix, context):
        return prefix + "-" + id_in[-4:].upper()

``context`` is a plain dict with ``brokerName`` and ``mappingCount``. Scripts
are validated statically (no imports, no dunder or private attribute access,
no class/async/with/global statements, a fixed builtin whitelist) and then run
inside a spawned worker process so a hostile or runaway script can be killed
without touching the host process state.
"""

from __future__ import annotations

import ast
import logging
import multiprocessing
import threading
from multiprocessing.connection import Connection
from multiprocessing.context import BaseContext
from typing import Any, Mapping, Optional

from .errors import ConfigurationError, ScriptExecutionError, ScriptOutputError

try:  # POSIX only
    import resource
except ImportError:  # pragma: no cover - Windows
    resource = None  # type: ignore[assignment]


logger = logging.getLogger(__name__)

ENTRYPOINT = "lookup"
ENTRYPOINT_ARITY = 4
MAX_SCRIPT_LENGTH = 20_000
MAX_OUTPUT_LENGTH = 256
WORKER_START_SECONDS = 30.0
WORKER_STOP_SECONDS = 1.0

_FORBIDDEN_NODES = (
    ast.Import,
    ast.ImportFrom,
    ast.Global,
    ast.Nonlocal,
    ast.ClassDef,
    ast.AsyncFunctionDef,
    ast.AsyncFor,
    ast.AsyncWith,
    ast.Await,
    ast.With,
    ast.Yield,
    ast.YieldFrom,
)

_FORBIDDEN_ATTRIBUTES = frozenset(
    {
        "format",
        "format_map",
        "mro",
        "gi_frame",
        "gi_code",
        "cr_frame",
        "ag_frame",
        "tb_frame",
        "f_back",
        "f_builtins",
        "f_globals",
        "f_locals",
    }
)

_SAFE_BUILTIN_NAMES = (
    "abs",
    "all",
    "any",
    "bool",
    "chr",
    "dict",
    "divmod",
    "enumerate",
    "filter",
    "float",
    "format",
    "hex",
    "int",
    "isinstance",
    "len",
    "list",
    "map",
    "max",
    "min",
    "oct",
    "ord",
    "pow",
    "range",
    "reversed",
    "round",
    "set",
    "sorted",
    "str",
    "sum",
    "tuple",
    "zip",
    "ArithmeticError",
    "Exception",
    "IndexError",
    "KeyError",
    "TypeError",
    "ValueError",
    "ZeroDivisionError",
)


def _safe_builtins() -> dict[str, Any]:
    import builtins

    return {name: getattr(builtins, name) for name in _SAFE_BUILTIN_NAMES}


def validate_script(source: str) -> ast.Module:
    """Parse ``source`` and reject anything outside the permitted subset."""

    if not source or not source.strip():
        raise ConfigurationError("Lookup script is empty")
    if len(source) > MAX_SCRIPT_LENGTH:
        raise ConfigurationError(f"Lookup script exceeds {MAX_SCRIPT_LENGTH} characters")
    try:
        tree = ast.parse(source, filename="<lookup-script>", mode="exec")
    except SyntaxError as exc:
        raise ConfigurationError(f"Lookup script has a syntax error on line {exc.lineno}: {exc.msg}") from exc

    for node in ast.walk(tree):
        if isinstance(node, _FORBIDDEN_NODES):
            raise ConfigurationError(
                f"Lookup script uses a forbidden construct: {type(node).__name__} (line {getattr(node, 'lineno', '?')})"
            )
        if isinstance(node, ast.Attribute) and (node.attr.startswith("_") or node.attr in _FORBIDDEN_ATTRIBUTES):
            raise ConfigurationError(f"Lookup script may not access attribute '{node.attr}'")
        if isinstance(node, ast.Name) and node.id.startswith("_"):
            raise ConfigurationError(f"Lookup script may not reference name '{node.id}'")

    entry = next(
        (stmt for stmt in tree.body if isinstance(stmt, ast.FunctionDef) and stmt.name == ENTRYPOINT),
        None,
    )
    if entry is None:
        raise ConfigurationError(f"Lookup script must define a '{ENTRYPOINT}' function")
    if len(entry.args.args) != ENTRYPOINT_ARITY:
        raise ConfigurationError(
            f"'{ENTRYPOINT}' must accept {ENTRYPOINT_ARITY} arguments: id_in, id_type, prefix, context"
        )
    return tree


def _worker_init(memory_limit_bytes: Optional[int]) -> None:
    if resource is None or not memory_limit_bytes:
        return
    try:
        resource.setrlimit(resource.RLIMIT_AS, (memory_limit_bytes, memory_limit_bytes))
    except (ValueError, OSError) as exc:  # pragma: no cover - platform dependent
        logger.warning("Could not apply script memory limit: %s", exc)


def _evaluate(source: str, id_in: str, id_type: str, prefix: str, context: dict) -> tuple[bool, Any]:
    """Run inside the worker process; returns ``(True, value)`` or ``(False, type_name)``."""

    tree = validate_script(source)
    namespace: dict[str, Any] = {"__builtins__": _safe_builtins()}
    exec(compile(tree, "<lookup-script>", "exec"), namespace)
    result = namespace[ENTRYPOINT](id_in, id_type, prefix, dict(context))
    if isinstance(result, str):
        return True, result
    return False, type(result).__name__


def _worker_main(conn: Connection, memory_limit_bytes: Optional[int]) -> None:
    """Worker loop: one request at a time until the parent closes the pipe."""

    _worker_init(memory_limit_bytes)
    conn.send(("ready", None))
    while True:
        try:
            request = conn.recv()
        except EOFError:
            return
        if request is None:
            return
        try:
            conn.send(("ok", _evaluate(*request)))
        except MemoryError:
            conn.send(("memory", None))
        except Exception as exc:
            conn.send(("error", f"{type(exc).__name__}: {exc}"))


class _Worker:
    """One spawned evaluation process and the parent end of its pipe."""

    def __init__(self, context: BaseContext, memory_limit: Optional[int]) -> None:
        self.conn, child = context.Pipe()
        self.process = context.Process(
            target=_worker_main,
            args=(child, memory_limit),
            name="lookup-script-worker",
            daemon=True,
        )
        self.process.start()
        child.close()

    def wait_ready(self, timeout: float) -> None:
        try:
            if self.conn.poll(timeout) and self.conn.recv()[0] == "ready":
                return
        except (EOFError, OSError) as exc:
            self.kill()
            raise ScriptExecutionError("Lookup script worker failed to start") from exc
        self.kill()
        raise ScriptExecutionError("Lookup script worker failed to start")

    def stop(self) -> None:
        try:
            self.conn.send(None)
            self.process.join(WORKER_STOP_SECONDS)
        except (OSError, ValueError) as exc:
            logger.debug("Lookup script worker pid %s already gone: %s", self.process.pid, exc)
        if self.process.is_alive():
            self.kill()
        else:
            self.conn.close()

    def kill(self) -> None:
        self.process.kill()
        self.process.join()
        self.conn.close()


class ScriptSandbox:
    """Evaluates lookup scripts, each call in its own spawned worker process.

    Idle workers are kept warm (up to ``workers``) and reused. A worker is only
    handed to one evaluation at a time, and a script that times out or runs out
    of memory gets its own worker killed; concurrent evaluations are untouched.
    The timeout starts once the request reaches a ready worker, so interpreter
    start-up never counts against a script.
    """

    def __init__(
        self,
        *,
        timeout_seconds: float = 0.5,
        workers: int = 2,
        memory_limit_mb: Optional[int] = 512,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self._workers = max(1, workers)
        self._memory_limit = memory_limit_mb * 1024 * 1024 if memory_limit_mb else None
        self._context = multiprocessing.get_context("spawn")
        self._idle: list[_Worker] = []
        self._closed = False
        self._lock = threading.Lock()

    def _checkout(self) -> _Worker:
        with self._lock:
            if self._idle:
                return self._idle.pop()
        worker = _Worker(self._context, self._memory_limit)
        worker.wait_ready(WORKER_START_SECONDS)
        logger.debug("Started lookup script worker pid %s", worker.process.pid)
        return worker

    def _release(self, worker: _Worker) -> None:
        with self._lock:
            if not self._closed and len(self._idle) < self._workers:
                self._idle.append(worker)
                return
        worker.stop()

    def _discard(self, worker: _Worker, reason: str) -> None:
        worker.kill()
        logger.warning("Lookup script worker pid %s killed: %s", worker.process.pid, reason)

    def run(
        self,
        source: str,
        *,
        id_in: str,
        id_type: str,
        prefix: str,
        context: Mapping[str, Any],
        timeout: Optional[float] = None,
    ) -> str:
        """Evaluate ``lookup`` from ``source`` and return its string result."""

        try:
            validate_script(source)
        except ConfigurationError as exc:
            raise ScriptExecutionError(str(exc)) from exc

        limit = self.timeout_seconds if timeout is None else timeout
        worker = self._checkout()
        try:
            worker.conn.send((source, id_in, id_type, prefix, dict(context)))
            finished = worker.conn.poll(limit)
            reply = worker.conn.recv() if finished else None
        except (EOFError, OSError) as exc:
            self._discard(worker, "exited unexpectedly")
            raise ScriptExecutionError("Lookup script worker exited unexpectedly") from exc

        if reply is None:
            self._discard(worker, f"timed out after {limit * 1000:.0f} ms")
            raise ScriptExecutionError(f"Lookup script timed out after {limit * 1000:.0f} ms")
        status, payload = reply
        if status == "memory":
            self._discard(worker, "memory limit exceeded")
            raise ScriptExecutionError("Lookup script exceeded its memory limit")
        self._release(worker)
        if status == "error":
            raise ScriptExecutionError(f"Lookup script raised {payload}")

        ok, value = payload
        if not ok:
            raise ScriptOutputError(f"Lookup script must return a string, got {value}")
        result = value.strip()
        if not result:
            raise ScriptOutputError("Lookup script returned an empty value")
        if len(result) > MAX_OUTPUT_LENGTH:
            raise ScriptOutputError(f"Lookup script returned more than {MAX_OUTPUT_LENGTH} characters")
        return result

    def close(self) -> None:
        with self._lock:
            self._closed = True
            idle, self._idle = self._idle, []
        for worker in idle:
            worker.stop()
