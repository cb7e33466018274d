"""
Single-generation JAR backups.

Each plugin has at most one backup, `<plugins_dir>/<name>.jar.backup`,
holding the bytes of the JAR as it was right before the last destructive
mutation. A new mutation overwrites it and a rollback consumes it, so only
the immediately preceding operation can be undone. There is no backup
history.

While a mutation is in flight the backup it replaces sits in a hold slot
(`<name>.jar.backup.prev`) so a failed mutation can put it back.
"""
import logging
import os
import shutil
from pathlib import Path
from typing import Optional

from plugin_console.plugins.manifest import read_manifest, PluginMetadata

logger = logging.getLogger(__name__)

BACKUP_SUFFIX = ".jar.backup"
HELD_SUFFIX = ".jar.backup.prev"


class BackupStore:
    def __init__(self, plugins_dir: Path):
        self.plugins_dir = Path(plugins_dir)

    def path_for(self, name: str) -> Path:
        return self.plugins_dir / f"{name}{BACKUP_SUFFIX}"

    def exists(self, name: str) -> bool:
        return self.path_for(name).is_file()

    def capture(self, name: str, jar_path: Path) -> Path:
        """Copy `jar_path` into the backup slot, replacing any previous backup."""
        target = self.path_for(name)
        tmp = target.with_name(target.name + ".tmp")
        shutil.copyfile(jar_path, tmp)
        os.replace(tmp, target)
        logger.info(f"Backed up {jar_path.name} -> {target.name}")
        return target

    def metadata(self, name: str) -> PluginMetadata:
        return read_manifest(self.path_for(name))

    def restore(self, name: str, jar_path: Path):
        """
        Write the backup bytes over `jar_path`, then drop the backup.

        The JAR is replaced atomically before the backup is deleted, so an
        interruption leaves either the old state or a restorable backup.
        """
        source = self.path_for(name)
        self.copy_to(name, jar_path)
        source.unlink()
        logger.info(f"Restored {jar_path.name} from {source.name}")

    def copy_to(self, name: str, jar_path: Path):
        """Atomically write the backup bytes over `jar_path`, keeping the backup."""
        tmp = jar_path.with_name(jar_path.name + ".restore.tmp")
        shutil.copyfile(self.path_for(name), tmp)
        os.replace(tmp, jar_path)

    def discard(self, name: str) -> bool:
        path = self.path_for(name)
        if path.is_file():
            path.unlink()
            logger.info(f"Removed backup {path.name}")
            return True
        return False

    # --- Hold slot ---

    def hold(self, name: str) -> Optional[Path]:
        """Move the current backup into the hold slot. None if there is no backup."""
        source = self.path_for(name)
        if not source.is_file():
            return None
        held = self.plugins_dir / f"{name}{HELD_SUFFIX}"
        os.replace(source, held)
        return held

    def release(self, held: Optional[Path]):
        """The mutation succeeded: the held backup is obsolete."""
        if held is not None:
            held.unlink(missing_ok=True)

    def reinstate(self, name: str, held: Optional[Path]):
        """The mutation failed: put the held backup back, or clear the slot if there was none."""
        if held is None:
            self.path_for(name).unlink(missing_ok=True)
        else:
            os.replace(held, self.path_for(name))
        logger.info(f"Reinstated previous backup state for {name}")
