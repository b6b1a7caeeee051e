"""Structured operation logging for fleetctl commands.

Every CLI command runs inside :meth:`StructuredLogger.operation`, which
appends a single JSON line to ``<logs_dir>/operations.jsonl`` once the command
finishes. A record looks like::

    {"id": "...", "command": "instance create", "args": {...},
     "target": {...}, "started_at": "...", "finished_at": "...",
     "duration_ms": 812, "steps": [...], "result": {"status": "success", ...}}

Logging must never break a command: when the directory is unusable or a
write fails the logger disables itself and later operations become no-ops.
"""
from __future__ import annotations

import json
import logging
import secrets
import time
from collections.abc import Iterable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

_log = logging.getLogger(__name__)

OPERATIONS_LOG_NAME = "operations.jsonl"


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def sanitize(value: object) -> object:
    """Return a JSON-safe copy of *value*."""
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): sanitize(item) for key, item in value.items()}
    if isinstance(value, Sequence) and not isinstance(value, (bytes, bytearray)):
        return [sanitize(item) for item in value]
    return str(value)


class OperationScope:
    """Collects steps and the final result of one command."""

    def __init__(
        self,
        logger: StructuredLogger,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        self._logger = logger
        self.command = command
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.operation_id = secrets.token_hex(8)
        self.started_at = _now_iso()
        self._started = time.monotonic()
        self.steps: list[dict[str, object]] = []
        self.result: dict[str, object] | None = None

    def add_step(self, name: str, *, status: str = "success", detail: str = "") -> None:
        """Record an intermediate step."""
        self.steps.append({"name": name, "status": status, "detail": detail, "at": _now_iso()})

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
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int = 0,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            changed=changed,
            warnings=list(warnings or [message]),
            errors=list(errors or []),
            backups=list(backups or []),
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        rc: int = 1,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            changed=changed,
            errors=list(errors or [message]),
            rc=rc,
            context=context,
        )

    # ------------------------------------------------------------------
    def _set_result(
        self,
        status: str,
        message: str,
        *,
        changed: int,
        warnings: list[str] | None = None,
        errors: list[str] | None = None,
        backups: list[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        self.result = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": warnings or [],
            "errors": errors or [],
            "backups": backups or [],
            "context": sanitize(dict(context or {})),
        }
        if rc is not None:
            self.result["rc"] = rc

    def to_record(self) -> dict[str, object]:
        """Return the JSON line payload for this operation."""
        result = self.result or {
            "status": "success",
            "message": "",
            "changed": 0,
            "warnings": [],
            "errors": [],
            "backups": [],
            "context": {},
        }
        return {
            "id": self.operation_id,
            "command": self.command,
            "args": sanitize(self.args),
            "target": sanitize(self.target),
            "started_at": self.started_at,
            "finished_at": _now_iso(),
            "duration_ms": int((time.monotonic() - self._started) * 1000),
            "steps": sanitize(self.steps),
            "result": result,
        }


class StructuredLogger:
    """Append operation records to a JSON lines file."""

    def __init__(self, logs_dir: Path) -> None:
        self.logs_dir = Path(logs_dir).expanduser()
        self._operations_log_path = self.logs_dir / OPERATIONS_LOG_NAME
        self._enabled = True
        try:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            _log.warning("Operation log disabled; cannot create %s: %s", self.logs_dir, exc)
            self._enabled = False

    @property
    def operations_log_path(self) -> Path:
        """Return the path of the JSON lines file."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it on exit."""
        scope = OperationScope(self, command, args=args, target=target)
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                rc = _exit_code_of(exc)
                if rc == 0:
                    scope.success("Completed.")
                else:
                    detail = f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__
                    scope.error(detail, rc=rc)
            raise
        finally:
            self._write(scope.to_record())

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=False))
                handle.write("\n")
        except OSError as exc:
            _log.warning("Operation log disabled after write failure: %s", exc)
            self._enabled = False


def _exit_code_of(exc: BaseException) -> int:
    # typer.Exit / click.exceptions.Exit carry ``exit_code``; SystemExit ``code``.
    code = getattr(exc, "exit_code", None)
    if isinstance(code, int):
        return code
    code = getattr(exc, "code", None)
    return code if isinstance(code, int) else 1


__all__ = ["OperationScope", "StructuredLogger", "sanitize"]
