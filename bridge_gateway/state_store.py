"""JSON snapshot of the supervisor's process table, readable by other processes."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


class SupervisionStateStore:
    """Atomically replaced JSON file; only the supervisor writes it."""

    def __init__(self, path: str | Path):
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def write(self, processes: dict[str, dict[str, Any]]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self._path.with_suffix(f"{self._path.suffix}.tmp")
        payload = json.dumps(
            {
                "version": 1,
                "updated_at": datetime.now(timezone.utc).isoformat(),
                "processes": processes,
            },
            ensure_ascii=True,
            indent=2,
            sort_keys=True,
        )
        temp_path.write_text(payload, encoding="utf-8")
        temp_path.replace(self._path)

    def read(self) -> dict[str, Any]:
        if not self._path.exists():
            return {"version": 1, "updated_at": None, "processes": {}}
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            raw = {}
        processes = raw.get("processes") if isinstance(raw, dict) else None
        if not isinstance(processes, dict):
            processes = {}
        return {"version": 1, "updated_at": raw.get("updated_at") if isinstance(raw, dict) else None, "processes": processes}
