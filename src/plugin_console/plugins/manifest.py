"""Reads plugin metadata out of a server plugin JAR."""

import logging
import zipfile
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from plugin_console.plugins.errors import InvalidPluginFile

logger = logging.getLogger(__name__)

# Checked in order; the first entry present wins.
MANIFEST_ENTRIES = ("plugin.yml", "paper-plugin.yml")


@dataclass
class PluginMetadata:
    name: str
    version: str
    description: str = ""
    authors: List[str] = field(default_factory=list)
    api_version: Optional[str] = None
    depend: List[str] = field(default_factory=list)
    softdepend: List[str] = field(default_factory=list)
    main: Optional[str] = None
    website: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _as_list(value) -> List[str]:
    if not value:
        return []
    if isinstance(value, list):
        return [str(v) for v in value]
    return [str(value)]


def _find_entry(zf: zipfile.ZipFile) -> Optional[str]:
    names = set(zf.namelist())
    for entry in MANIFEST_ENTRIES:
        if entry in names:
            return entry
    return None


def is_valid_jar(path: Path) -> bool:
    """True if `path` is a non-empty zip archive carrying a plugin manifest."""
    path = Path(path)
    try:
        if not path.is_file() or path.stat().st_size == 0:
            return False
        with zipfile.ZipFile(path) as zf:
            return _find_entry(zf) is not None
    except (zipfile.BadZipFile, OSError):
        return False


def read_manifest(path: Path) -> PluginMetadata:
    """
    Parse the plugin manifest from a JAR.

    Scalars are loaded as strings so versions like `1.10` are not turned
    into floats.

    Raises:
        InvalidPluginFile: the archive is unreadable, has no manifest, or the
            manifest lacks `name` / `version`.
    """
    path = Path(path)
    try:
        with zipfile.ZipFile(path) as zf:
            entry = _find_entry(zf)
            if entry is None:
                raise InvalidPluginFile("Invalid plugin file: Missing plugin.yml")
            content = zf.read(entry).decode("utf-8")
    except (zipfile.BadZipFile, OSError, UnicodeDecodeError) as e:
        raise InvalidPluginFile(f"Invalid plugin file: {e}") from e

    try:
        data = yaml.load(content, Loader=yaml.BaseLoader)
    except yaml.YAMLError as e:
        raise InvalidPluginFile(f"Invalid plugin file: corrupt plugin.yml ({e})") from e

    if not isinstance(data, dict):
        raise InvalidPluginFile("Invalid plugin file: plugin.yml is not a mapping")
    if not data.get("name"):
        raise InvalidPluginFile("Invalid plugin file: Missing required field: name in plugin.yml")
    if not data.get("version"):
        raise InvalidPluginFile("Invalid plugin file: Missing required field: version in plugin.yml")

    authors = _as_list(data.get("author")) or _as_list(data.get("authors"))

    return PluginMetadata(
        name=str(data["name"]),
        version=str(data["version"]),
        description=str(data.get("description") or ""),
        authors=authors,
        api_version=data.get("api-version"),
        depend=_as_list(data.get("depend")),
        softdepend=_as_list(data.get("softdepend")),
        main=data.get("main"),
        website=data.get("website"),
    )
