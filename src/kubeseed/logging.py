"""Structured operation logging for kubeseed commands.

Each CLI command runs inside :meth:`StructuredLogger.operation`, which yields an
:class:`OperationScope`. The scope collects steps and a final result, and on
exit appends exactly one JSON object per line to ``operations.jsonl`` in the
configured logs directory. The log is diagnostic only; provisioning decisions
never read it back.

Logging must never break provisioning: the directory is created on the first
write, and when that or a later write fails the logger disables itself and
carries on silently.
"""
from __future__ import annotations

import json
import logging
import os
import time
import uuid
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

LOGGER = logging.getLogger(__name__)

OPERATIONS_LOG_NAME = "operations.jsonl"


def _sanitize(value: object) -> object:
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


def _now() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class OperationScope:
    """Mutable record of a single command invocation."""

    def __init__(
        self,
        name: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Initialise an empty scope for operation *name*."""
        self.name = name
        self.op_id = uuid.uuid4().hex[:12]
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.started_at = _now()
        self.steps: list[dict[str, object]] = []
        self.result: dict[str, object] | None = None

    def add_step(self, step_id: str, *, status: str, detail: str | None = None) -> None:
        """Record an intermediate step outcome."""
        entry: dict[str, object] = {"id": step_id, "status": status, "ts": _now()}
        if detail:
            entry["detail"] = detail
        self.steps.append(entry)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result("success", message, changed=changed, context=context)

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            changed=changed,
            warnings=warnings,
            errors=errors,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        warnings: Sequence[str] | None = None,
        rc: int | None = None,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            changed=changed,
            warnings=warnings,
            errors=list(errors) if errors else [message],
            rc=rc,
            context=context,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        changed: int,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {
            "status": status,
            "message": message,
            "changed": changed,
        }
        if warnings:
            result["warnings"] = list(warnings)
        if errors:
            result["errors"] = list(errors)
        if rc is not None:
            result["rc"] = rc
        if context:
            result["context"] = _sanitize(context)
        self.result = result

    def to_record(self, duration_ms: int) -> dict[str, object]:
        """Return the JSON-safe record written to the operations log."""
        return {
            "op_id": self.op_id,
            "ts": self.started_at,
            "op": self.name,
            "args": _sanitize(self.args),
            "target": _sanitize(self.target),
            "steps": self.steps,
            "result": self.result,
            "duration_ms": duration_ms,
        }


class StructuredLogger:
    """Append-only JSON lines logger for command operations."""

    def __init__(self, logs_dir: Path) -> None:
        """Remember *logs_dir*; it is only created when a record is written."""
        self._logs_dir = Path(logs_dir).expanduser()
        self._operations_log_path = self._logs_dir / OPERATIONS_LOG_NAME
        self._enabled = True
        self._prepared = False

    @property
    def path(self) -> Path:
        """Return the operations log path."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        name: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
        persist: bool = True,
    ) -> Iterator[OperationScope]:
        """Yield a scope for *name* and persist it when the block exits.

        With ``persist=False`` the scope is collected but nothing is written,
        so dry runs leave the host untouched.
        """
        scope = OperationScope(name, args=args, target=target)
        start = time.perf_counter()
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(f"Unhandled {type(exc).__name__}: {exc}")
            raise
        finally:
            if scope.result is None:
                scope.success("Operation completed.")
            if persist:
                duration_ms = int((time.perf_counter() - start) * 1000)
                self._write(scope.to_record(duration_ms))

    def _prepare(self) -> bool:
        if self._prepared:
            return True
        try:
            self._logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.debug("Disabling operation log, cannot create %s: %s", self._logs_dir, exc)
            self._enabled = False
            return False
        self._prepared = True
        return True

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled or not self._prepare():
            return
        line = json.dumps(record, sort_keys=True)
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
            os.chmod(self._operations_log_path, 0o640)
        except OSError as exc:
            LOGGER.debug("Disabling operation log after write failure: %s", exc)
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger"]
