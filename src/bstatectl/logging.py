"""Structured operation logging.

Every CLI command runs inside :meth:`StructuredLogger.operation`, which appends
a single JSON record to ``<logs_dir>/operations.jsonl`` describing the
arguments, the steps taken and the final result. Diagnostic detail goes to the
standard :mod:`logging` hierarchy, rendered on the console through Rich.

Logging must never break a run: when the log directory cannot be created or
written to, the structured logger disables itself and carries on.
"""
from __future__ import annotations

import json
import logging
import time
import uuid
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

OPERATIONS_LOG = "operations.jsonl"
_SECRET_MARKERS = ("private_key", "privatekey", "password", "token", "secret")
_REDACTED = "***"


def configure_console_logging(level: int = logging.INFO, *, console: Console | None = None) -> None:
    """Route package log records to a Rich console handler."""
    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=False,
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    package_logger = logging.getLogger("bstatectl")
    package_logger.handlers[:] = [handler]
    package_logger.setLevel(level)
    package_logger.propagate = False


def _sanitise(value: object) -> object:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        result: dict[str, object] = {}
        for key, item in value.items():
            name = str(key)
            if any(marker in name.lower() for marker in _SECRET_MARKERS) and item:
                result[name] = _REDACTED
            else:
                result[name] = _sanitise(item)
        return result
    if isinstance(value, (list, tuple)):
        return [_sanitise(item) for item in value]
    return str(value)


@dataclass
class OperationScope:
    """Mutable record of a single CLI operation."""

    name: str
    args: Mapping[str, object]
    target: Mapping[str, object]
    started: float = field(default_factory=time.perf_counter)
    steps: list[dict[str, object]] = field(default_factory=list)
    result: dict[str, object] | None = None

    def add_step(self, step: str, *, status: str = "success", detail: object = None) -> None:
        """Record an intermediate step."""
        entry: dict[str, object] = {"name": step, "status": status}
        if detail is not None:
            entry["detail"] = _sanitise(detail)
        self.steps.append(entry)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._finish("success", message, changed=changed, backups=backups, context=context)

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int = 0,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._finish(
            "warning",
            message,
            warnings=warnings,
            errors=errors,
            changed=changed,
            backups=backups,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        rc: int = 1,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._finish(
            "error",
            message,
            errors=list(errors) if errors else [message],
            rc=rc,
            context=context,
        )

    def _finish(
        self,
        status: str,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int = 0,
        backups: Sequence[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": list(warnings or []),
            "errors": list(errors or []),
            "backups": list(backups or []),
            "context": _sanitise(dict(context or {})),
        }
        if rc is not None:
            result["rc"] = rc
        self.result = result

    def to_record(self) -> dict[str, object]:
        """Return the JSON record written to the operations log."""
        return {
            "id": uuid.uuid4().hex,
            "timestamp": datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z"),
            "operation": self.name,
            "args": _sanitise(dict(self.args)),
            "target": _sanitise(dict(self.target)),
            "steps": list(self.steps),
            "duration_ms": int((time.perf_counter() - self.started) * 1000),
            "result": self.result,
        }


class StructuredLogger:
    """Append operation records to ``operations.jsonl``."""

    def __init__(self, log_dir: Path) -> None:
        """Prepare the log directory, disabling the logger when unavailable."""
        self._log_dir = log_dir.expanduser()
        self._operations_log_path = self._log_dir / OPERATIONS_LOG
        self._enabled = True
        try:
            self._log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logging.getLogger(__name__).warning(
                "Operation log disabled, cannot create %s: %s", self._log_dir, exc
            )
            self._enabled = False

    @property
    def operations_log(self) -> Path:
        """Return the path of the operations log."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        name: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Record the operation executed inside the ``with`` block."""
        scope = OperationScope(name=name, args=dict(args or {}), target=dict(target or {}))
        try:
            yield scope
        except Exception as exc:
            if scope.result is None:
                scope.error(f"Unhandled error: {exc}", errors=[repr(exc)])
            raise
        finally:
            if scope.result is None:
                scope.success("Operation finished without an explicit result.")
            self._write(scope.to_record())

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=False))
                handle.write("\n")
        except OSError as exc:
            logging.getLogger(__name__).warning(
                "Operation log disabled after write failure: %s", exc
            )
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger", "configure_console_logging"]
