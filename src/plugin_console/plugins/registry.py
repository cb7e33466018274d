# src/plugin_console/plugins/registry.py
"""
The plugins.json registry: persisted mapping of plugin name to installed metadata.

File shape: {"plugins": [ {name, version, enabled, ...}, ... ]}

Reads for display are tolerant: a missing or corrupt file reads as empty and
is logged. Mutations are not: `upsert` and `remove` refuse to touch a file
they cannot parse, and carry entries they do not understand through
unchanged. Writes are atomic (temp file, re-parse, rename). Only the job
worker writes.
"""
import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, ValidationError as PydanticValidationError

from plugin_console.plugins.errors import PluginDirectoryError, PluginManagerError

logger = logging.getLogger(__name__)


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class PluginRecord(BaseModel):
    """One installed plugin. Unknown keys written by other tools are kept."""

    model_config = ConfigDict(extra="allow")

    name: str
    version: Optional[str] = None
    enabled: bool = True
    description: str = ""
    category: str = "custom"
    source: str = "url"
    direct_url: Optional[str] = None
    installed_at: Optional[str] = None
    updated_at: Optional[str] = None


def _entry_name(raw: Any) -> Optional[str]:
    if isinstance(raw, dict) and isinstance(raw.get("name"), str):
        return raw["name"].lower()
    return None


class PluginRegistry:
    def __init__(self, path: Path):
        self.path = Path(path)

    # --- Reads ---

    def load(self) -> List[PluginRecord]:
        if not self.path.exists():
            logger.warning(f"{self.path.name} not found at {self.path}, returning empty plugin list")
            return []

        try:
            raw_entries = self._read_entries()
        except PluginManagerError as e:
            logger.error(str(e))
            return []

        records = []
        for raw in raw_entries:
            try:
                records.append(PluginRecord.model_validate(raw))
            except PydanticValidationError as e:
                logger.warning(f"Skipping malformed registry entry {raw!r}: {e}")
        return records

    def find(self, name: str) -> Optional[PluginRecord]:
        """Case-insensitive lookup by plugin name."""
        wanted = name.lower()
        for record in self.load():
            if record.name.lower() == wanted:
                return record
        return None

    def _read_entries(self) -> List[Any]:
        """
        The raw `plugins` list, exactly as stored.

        Raises PluginManagerError if the file is unreadable, empty, not JSON
        or has no `plugins` list. A missing file is an empty registry.
        """
        if not self.path.exists():
            return []
        try:
            content = self.path.read_text(encoding="utf-8")
        except OSError as e:
            raise PluginManagerError(f"Failed to read {self.path}: {e}") from e

        if not content.strip():
            raise PluginManagerError(f"{self.path.name} is empty at {self.path}")
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise PluginManagerError(
                f"Failed to parse {self.path}: {e} (length={len(content)})"
            ) from e

        if not isinstance(data, dict) or not isinstance(data.get("plugins"), list):
            raise PluginManagerError(f"{self.path} does not contain a 'plugins' list")
        return data["plugins"]

    # --- Writes ---

    def save(self, records: List[Union[PluginRecord, Dict[str, Any]]]):
        """Write `records` as the whole registry. Raw entries are written as given."""
        parent = self.path.parent
        parent.mkdir(parents=True, exist_ok=True)
        if not os.access(parent, os.W_OK):
            raise PluginDirectoryError(parent)

        payload = {
            "plugins": [
                r.model_dump(mode="json") if isinstance(r, PluginRecord) else r
                for r in records
            ]
        }
        tmp = self.path.with_name(self.path.name + ".tmp")
        try:
            tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
            json.loads(tmp.read_text(encoding="utf-8"))
            os.replace(tmp, self.path)
        except (OSError, ValueError) as e:
            try:
                tmp.unlink(missing_ok=True)
            except OSError as cleanup_error:
                logger.warning(f"Could not remove {tmp}: {cleanup_error}")
            raise PluginManagerError(f"Failed to update {self.path.name}: {e}") from e

        logger.info(f"Updated {self.path.name} with {len(records)} plugins")

    def upsert(self, record: PluginRecord):
        entries = self._read_entries()
        wanted = record.name.lower()
        for i, raw in enumerate(entries):
            if _entry_name(raw) == wanted:
                entries[i] = record
                break
        else:
            entries.append(record)
        self.save(entries)

    def remove(self, name: str) -> bool:
        entries = self._read_entries()
        kept = [raw for raw in entries if _entry_name(raw) != name.lower()]
        if len(kept) == len(entries):
            return False
        self.save(kept)
        return True

    # --- Health ---

    def health(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {"status": "error", "message": f"File not found: {self.path}"}
        try:
            entries = self._read_entries()
        except PluginManagerError as e:
            return {"status": "error", "message": str(e)}
        return {"status": "ok", "message": f"Found {len(entries)} plugins"}
