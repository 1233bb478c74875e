"""Structured operation logging for kodactl.

Every CLI command runs inside :meth:`StructuredLogger.operation`. The scope
collects the steps a lifecycle operation performed and the final outcome,
then appends a single JSON document to ``operations.jsonl`` and a one-line
summary to ``kodactl.log`` in the configured logs directory.

Logging is best-effort: when the directory cannot be created or a write
fails, the logger disables itself instead of failing the command.
"""
from __future__ import annotations

import getpass
import json
import logging
import os
import time
import uuid
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

LOGGER = logging.getLogger(__name__)

OPERATIONS_LOG_NAME = "operations.jsonl"
HUMAN_LOG_NAME = "kodactl.log"


def _sanitize(value: object) -> object:
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


def _iso_now() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def _actor() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return str(os.getuid()) if hasattr(os, "getuid") else "unknown"


@dataclass(slots=True)
class OperationStep:
    """A single step recorded while an operation runs."""

    name: str
    status: str
    detail: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        payload: dict[str, object] = {"name": self.name, "status": self.status}
        if self.detail is not None:
            payload["detail"] = self.detail
        return payload


@dataclass(slots=True)
class OperationScope:
    """Mutable record of a running operation."""

    command: str
    args: dict[str, object]
    target: dict[str, object]
    op_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    started_at: str = field(default_factory=_iso_now)
    steps: list[OperationStep] = field(default_factory=list)
    result: dict[str, object] | None = None

    def add_step(self, name: str, *, status: str, detail: str | None = None) -> None:
        """Record a step such as ``pm2.delete`` or ``archive.extract``."""
        self.steps.append(OperationStep(name=name, status=status, detail=detail))

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation successful."""
        self._set_result("success", message, changed=changed, context=context)

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] = (),
        errors: Sequence[str] = (),
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation complete with non-fatal anomalies."""
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
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation failed; *errors* defaults to ``[message]``."""
        self._set_result(
            "error",
            message,
            errors=list(errors) if errors else [message],
            rc=rc,
            context=context,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        changed: int = 0,
        warnings: Sequence[str] = (),
        errors: Sequence[str] = (),
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": list(warnings),
            "errors": list(errors),
            "context": _sanitize(dict(context or {})),
        }
        if rc is not None:
            result["rc"] = rc
        self.result = result


class StructuredLogger:
    """Append-only JSONL operation log plus a human-readable summary log."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare the log directory; disable logging if it is unusable."""
        self.logs_dir = logs_dir.expanduser()
        self._operations_log_path = self.logs_dir / OPERATIONS_LOG_NAME
        self._human_log_path = self.logs_dir / HUMAN_LOG_NAME
        self._enabled = True
        try:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.debug("Disabling structured logging: %s", exc)
            self._enabled = False

    @property
    def operations_log_path(self) -> Path:
        """Location of the JSONL operations log."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it when the block exits."""
        scope = OperationScope(
            command=command,
            args=dict(args or {}),
            target=dict(target or {}),
        )
        started = time.monotonic()
        try:
            yield scope
        except Exception as exc:
            if scope.result is None:
                scope.error(str(exc) or type(exc).__name__)
            raise
        finally:
            duration_ms = int((time.monotonic() - started) * 1000)
            self._write(scope, duration_ms)

    def _write(self, scope: OperationScope, duration_ms: int) -> None:
        if not self._enabled:
            return
        result = scope.result or {"status": "unknown", "message": "", "changed": 0}
        record = {
            "op_id": scope.op_id,
            "ts": scope.started_at,
            "command": scope.command,
            "args": _sanitize(scope.args),
            "target": _sanitize(scope.target),
            "actor": _actor(),
            "steps": [step.to_dict() for step in scope.steps],
            "duration_ms": duration_ms,
            "result": result,
        }
        summary = (
            f"{scope.started_at} {scope.command} "
            f"status={result.get('status')} message={result.get('message')!r}\n"
        )
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True) + "\n")
            with self._human_log_path.open("a", encoding="utf-8") as handle:
                handle.write(summary)
        except OSError as exc:
            LOGGER.debug("Disabling structured logging after write failure: %s", exc)
            self._enabled = False


__all__ = ["OperationScope", "OperationStep", "StructuredLogger"]
