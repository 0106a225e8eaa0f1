from __future__ import annotations

import json
import os
import time
from collections.abc import Callable
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

LATEST_POINTER = "LATEST"


class StateStoreError(RuntimeError):
    """Raised when run-state operations fail."""


class RunStore:
    """JSON namespaces and documents for one pipeline run.

    Layout under the workspace directory::

        runs/<run_id>/state/<namespace>.json
        runs/<run_id>/handoffs/
        runs/<run_id>/<documents>
    """

    NAMESPACES = {"context", "tasks", "decisions", "gates", "metrics"}
    SCHEMA_VERSION = 1

    def __init__(self, workspace: Path, run_id: str) -> None:
        if not run_id.strip():
            raise StateStoreError("Run id must not be empty.")
        self.workspace = workspace.resolve()
        self.run_id = run_id
        self.run_dir = self.workspace / "runs" / run_id
        self.state_dir = self.run_dir / "state"
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.lock_file = self.state_dir / ".lock"

    @classmethod
    def create(cls, workspace: Path, run_id: str | None = None) -> RunStore:
        if run_id is None:
            stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%S")
            run_id = f"run-{stamp}-{uuid4().hex[:6]}"
        store = cls(workspace, run_id)
        pointer = store.workspace / "runs" / LATEST_POINTER
        pointer.write_text(run_id + "\n", encoding="utf-8")
        return store

    @classmethod
    def open_latest(cls, workspace: Path) -> RunStore | None:
        pointer = workspace.resolve() / "runs" / LATEST_POINTER
        if not pointer.exists():
            return None
        run_id = pointer.read_text(encoding="utf-8").strip()
        if not run_id or not (pointer.parent / run_id).is_dir():
            return None
        return cls(workspace, run_id)

    @staticmethod
    def list_runs(workspace: Path) -> list[str]:
        runs_dir = workspace.resolve() / "runs"
        if not runs_dir.is_dir():
            return []
        return sorted(path.name for path in runs_dir.iterdir() if path.is_dir())

    @property
    def handoffs_dir(self) -> Path:
        return self.run_dir / "handoffs"

    @property
    def journal_path(self) -> Path:
        return self.run_dir / "journal.log"

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).replace(microsecond=0).isoformat()

    @staticmethod
    def _validate_namespace(namespace: str) -> None:
        if namespace not in RunStore.NAMESPACES:
            raise StateStoreError(f"Unsupported namespace: {namespace}")

    def _local_file(self, namespace: str) -> Path:
        return self.state_dir / f"{namespace}.json"

    @contextmanager
    def _state_lock(self, timeout_seconds: float = 3.0):
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise StateStoreError("Timed out waiting for state lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_raw_json(self, namespace: str) -> Any:
        local_file = self._local_file(namespace)
        if not local_file.exists():
            return None
        try:
            return json.loads(local_file.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise StateStoreError(f"State namespace '{namespace}' is corrupted: {exc}") from exc

    def _write_raw_json(self, namespace: str, payload: Any) -> None:
        target = self._local_file(namespace)
        scratch = target.with_suffix(".json.tmp")
        scratch.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
        scratch.replace(target)

    def _normalize_envelope(self, raw_payload: Any, default: Any) -> dict[str, Any]:
        if (
            isinstance(raw_payload, dict)
            and "schema_version" in raw_payload
            and "data" in raw_payload
            and "revision" in raw_payload
        ):
            return {
                "schema_version": int(raw_payload.get("schema_version") or self.SCHEMA_VERSION),
                "revision": int(raw_payload.get("revision") or 1),
                "updated_at": raw_payload.get("updated_at") or self._utcnow_iso(),
                "data": raw_payload.get("data", default),
            }
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 1,
            "updated_at": self._utcnow_iso(),
            "data": default if raw_payload is None else raw_payload,
        }

    def get_envelope(self, namespace: str, default: Any | None = None) -> dict[str, Any]:
        self._validate_namespace(namespace)
        default_value = {} if default is None else default
        return self._normalize_envelope(self._read_raw_json(namespace), default_value)

    def get_json(self, namespace: str, default: Any | None = None) -> Any:
        return self.get_envelope(namespace, default=default).get("data")

    def set_json(self, namespace: str, data: Any, expected_revision: int | None = None) -> None:
        self._validate_namespace(namespace)
        with self._state_lock():
            current = self.get_envelope(namespace, default={})
            current_revision = int(current.get("revision", 1))
            if expected_revision is not None and expected_revision != current_revision:
                raise StateStoreError(
                    f"Concurrent state update detected for namespace '{namespace}'."
                )
            self._write_raw_json(
                namespace,
                {
                    "schema_version": self.SCHEMA_VERSION,
                    "revision": current_revision + 1,
                    "updated_at": self._utcnow_iso(),
                    "data": data,
                },
            )

    def update_json(
        self,
        namespace: str,
        updater: Callable[[Any], Any],
        default: Any | None = None,
    ) -> Any:
        default_value = {} if default is None else default
        last_error: Exception | None = None
        for _ in range(4):
            current = self.get_envelope(namespace, default=default_value)
            updated = updater(current.get("data", default_value))
            try:
                self.set_json(namespace, updated, expected_revision=int(current.get("revision", 1)))
                return updated
            except StateStoreError as exc:
                last_error = exc
                if "Concurrent state update detected" not in str(exc):
                    raise
                time.sleep(0.01)
        raise StateStoreError(str(last_error) if last_error else "State update failed.")

    def get_context(self) -> dict[str, Any]:
        context = self.get_json("context", default={})
        return context if isinstance(context, dict) else {}

    def set_context(self, context: dict[str, Any]) -> None:
        self.set_json("context", context)

    def get_tasks(self) -> dict[str, Any]:
        tasks = self.get_json("tasks", default={})
        return tasks if isinstance(tasks, dict) else {}

    def set_task(self, task_id: str, record: dict[str, Any]) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            tasks = payload if isinstance(payload, dict) else {}
            existing = tasks.get(task_id)
            merged = existing if isinstance(existing, dict) else {}
            merged.update(record)
            tasks[task_id] = merged
            return tasks

        self.update_json("tasks", _updater, default={})

    def _append(self, namespace: str, key: str, item: dict[str, Any]) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {key: []}
            items = result.get(key)
            if not isinstance(items, list):
                items = []
            items.append(item)
            result[key] = items
            return result

        self.update_json(namespace, _updater, default={key: []})

    def _items(self, namespace: str, key: str) -> list[dict[str, Any]]:
        payload = self.get_json(namespace, default={key: []})
        if not isinstance(payload, dict):
            return []
        items = payload.get(key, [])
        return items if isinstance(items, list) else []

    def get_decisions(self) -> list[dict[str, Any]]:
        return self._items("decisions", "decisions")

    def add_decision(self, decision: dict[str, Any]) -> None:
        self._append("decisions", "decisions", decision)

    def get_gates(self) -> list[dict[str, Any]]:
        return self._items("gates", "gates")

    def add_gate(self, gate: dict[str, Any]) -> None:
        self._append("gates", "gates", gate)

    def get_metrics(self) -> dict[str, Any]:
        metrics = self.get_json("metrics", default={})
        return metrics if isinstance(metrics, dict) else {}

    def increment_metric(self, key: str, value: int = 1) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            metrics = payload if isinstance(payload, dict) else {}
            metrics[key] = int(metrics.get(key, 0)) + value
            return metrics

        self.update_json("metrics", _updater, default={})

    def record_event(self, event: dict[str, Any]) -> None:
        """Append a backend event and count it by name."""
        name = str(event.get("event", "unknown"))

        def _updater(payload: Any) -> dict[str, Any]:
            metrics = payload if isinstance(payload, dict) else {}
            counts = metrics.get("event_counts")
            if not isinstance(counts, dict):
                counts = {}
            counts[name] = int(counts.get(name, 0)) + 1
            metrics["event_counts"] = counts
            events = metrics.get("backend_events")
            if not isinstance(events, list):
                events = []
            events.append({**event, "at": self._utcnow_iso()})
            metrics["backend_events"] = events[-200:]
            return metrics

        self.update_json("metrics", _updater, default={})

    def write_document(self, name: str, text: str) -> Path:
        if not name or Path(name).name != name:
            raise StateStoreError(f"Invalid document name: {name!r}")
        target = self.run_dir / name
        target.write_text(text, encoding="utf-8")
        return target
