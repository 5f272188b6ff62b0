"""Administrative status helpers."""
from __future__ import annotations

from pathlib import Path
from typing import Dict

import orjson


def summarise_runs(manifest_dir: Path) -> Dict[str, Dict[str, object]]:
    """Summarise run manifests written by the pipeline runner."""
    results: Dict[str, Dict[str, object]] = {}
    if not manifest_dir.exists():
        return results
    for path in sorted(manifest_dir.glob("run-*.json")):
        try:
            payload = orjson.loads(path.read_bytes())
        except orjson.JSONDecodeError:
            results[path.stem] = {"path": str(path), "status": "unreadable"}
            continue
        results[path.stem] = {
            "path": str(path),
            "run_id": payload.get("run_id"),
            "status": payload.get("status"),
            "counts": payload.get("counts", {}),
            "exit_code": payload.get("exit_code"),
        }
    return results
