"""
JSON documents kept on disk between sessions.

Three kinds of document live under the data directory:
- coordinates.json     override table produced by template analysis
- autosave_<type>.json last snapshot of a form in progress
- shared_report.json   report fields the statement form can reuse
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping

from coordinates import AXLE_COUNT, DocumentType, axle_field
from errors import StorageError

logger = logging.getLogger(__name__)

COORDINATES_KEY = "coordinates"
SHARED_REPORT_KEY = "shared_report"

SHARED_FIELDS = (
    "datetime",
    "location",
    "vehicle_type",
    "plate_number",
    "width_measured",
    "height_measured",
    "length_measured",
    "width_violation",
    "height_violation",
    "length_violation",
    "width_allowed",
    "height_allowed",
    "length_allowed",
    *(axle_field(i, side) for side in ("measured", "violation") for i in range(1, AXLE_COUNT + 1)),
    "total_weight_measured",
    "total_weight_violation",
)

_KEY_PATTERN = re.compile(r"^[a-z0-9_]+$")


def autosave_key(document_type: DocumentType) -> str:
    return f"autosave_{document_type.value}"


class JsonStore:
    def __init__(self, root: Path) -> None:
        self.root = root

    def _path(self, key: str) -> Path:
        if not _KEY_PATTERN.match(key):
            raise ValueError(f"Invalid storage key: {key!r}")
        return self.root / f"{key}.json"

    def read(self, key: str) -> Any | None:
        """Stored document, or None when it is missing or unreadable."""
        path = self._path(key)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable %s: %s", path.name, exc)
            return None

    def write(self, key: str, data: Any) -> None:
        path = self._path(key)
        tmp_path = path.with_suffix(".json.tmp")
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
            tmp_path.replace(path)
        except OSError as exc:
            tmp_path.unlink(missing_ok=True)
            raise StorageError(f"Failed to write {path.name}: {exc}") from exc

    def delete(self, key: str) -> bool:
        path = self._path(key)
        if not path.exists():
            return False
        path.unlink()
        return True


def build_shared_report(form: Mapping[str, Any], now: datetime | None = None) -> dict[str, Any]:
    """Pick the report fields a statement repeats, stamped with the share time."""
    shared = {name: form[name] for name in SHARED_FIELDS if form.get(name) not in (None, "")}
    shared["_shared_at"] = (now or datetime.now(timezone.utc)).isoformat()
    shared["_source"] = DocumentType.REPORT.value
    return shared
