import csv
import json
import os
from pathlib import Path
from typing import Any, Dict, Iterable, List


def read_csv(path: Path) -> List[Dict[str, str]]:
    if not path.exists():
        return []
    with path.open("r", newline="", encoding="utf-8") as handle:
        reader = csv.DictReader(handle)
        return list(reader)


def write_csv(
    path: Path,
    rows: Iterable[Dict[str, str]],
    fieldnames: List[str],
    append: bool = False,
) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    if not append:
        _replace_csv(path, rows, fieldnames)
        return
    with path.open("a", newline="", encoding="utf-8") as handle:
        writer = csv.DictWriter(handle, fieldnames=fieldnames, extrasaction="ignore")
        if path.stat().st_size == 0:
            writer.writeheader()
        for row in rows:
            writer.writerow(row)


def _replace_csv(
    path: Path,
    rows: Iterable[Dict[str, str]],
    fieldnames: List[str],
) -> None:
    tmp_path = path.with_name(path.name + ".tmp")
    with tmp_path.open("w", newline="", encoding="utf-8") as handle:
        writer = csv.DictWriter(handle, fieldnames=fieldnames, extrasaction="ignore")
        writer.writeheader()
        for row in rows:
            writer.writerow(row)
    os.replace(tmp_path, path)


def read_json(path: Path) -> Any:
    if not path.exists():
        return None
    return json.loads(path.read_text(encoding="utf-8"))


def write_json(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, sort_keys=True), encoding="utf-8")
