# src/plugin_console/plugins/manager.py
"""
Plugin Manager: every mutation of the plugins directory, plugins.json and the
backup store goes through here.

Only the job worker calls the mutating methods, one job at a time, so the
directory and registry never see concurrent writers. The read-only helpers
(`has_backup`, `list_plugins`, `check_health`, `get_history`) are safe to call
from the API.

Install protocol (detect, then confirm):
1. `install_from_url` downloads and validates the JAR. If a plugin with the
   same name is registered it returns a conflict result naming the action
   the caller must confirm (update / downgrade / reinstall) and writes nothing.
2. `proceed_with_install` repeats the download and performs the confirmed
   replacement, backing up the current JAR first.
"""
import json
import logging
import os
import re
import shutil
import tempfile
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import httpx

from plugin_console.config import DownloadConfig
from plugin_console.engine.cancellation import CancellationToken
from plugin_console.plugins.backups import BackupStore
from plugin_console.plugins.download import DownloadProgress, download_file
from plugin_console.plugins.errors import (
    InvalidPluginFile,
    NoBackupAvailable,
    PluginDirectoryError,
    PluginManagerError,
    PluginNotFoundError,
    ValidationError,
)
from plugin_console.plugins.history import HistoryLog
from plugin_console.plugins.manifest import PluginMetadata, is_valid_jar, read_manifest
from plugin_console.plugins.registry import PluginRecord, PluginRegistry, now_iso
from plugin_console.plugins.sources import (
    MultipleOptions,
    ResolvedSource,
    parse_url,
    select_option,
)
from plugin_console.plugins.versions import (
    CONFIRM_ACTIONS,
    REQUIRED_ACTION,
    compare_versions,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[DownloadProgress], None]

SAFE_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9 _.+\-]{0,99}$")
DISABLED_SUFFIX = ".jar.disabled"

PAST_TENSE = {
    "update": "updated",
    "downgrade": "downgraded",
    "reinstall": "reinstalled",
}


class PluginManager:
    def __init__(
        self,
        plugins_dir: Path,
        registry_file: Path,
        history: HistoryLog,
        downloads: Optional[DownloadConfig] = None,
        client: Optional[httpx.Client] = None,
        install_log: Optional[Path] = None,
    ):
        self.plugins_dir = Path(plugins_dir)
        self.registry = PluginRegistry(registry_file)
        self.backups = BackupStore(self.plugins_dir)
        self.history = history
        self.downloads = downloads or DownloadConfig()
        self.install_log = Path(install_log) if install_log else None
        self._owns_client = client is None
        self.client = client or httpx.Client(
            timeout=httpx.Timeout(
                self.downloads.read_timeout_seconds,
                connect=self.downloads.connect_timeout_seconds,
            ),
            headers={"User-Agent": self.downloads.user_agent},
            follow_redirects=True,
        )

    @classmethod
    def from_settings(cls, app_settings, engine) -> "PluginManager":
        return cls(
            plugins_dir=app_settings.plugins.plugins_dir,
            registry_file=app_settings.plugins.registry_file,
            history=HistoryLog(engine, retention=app_settings.history.retention),
            downloads=app_settings.downloads,
            install_log=app_settings.plugins.install_log,
        )

    def close(self):
        if self._owns_client:
            self.client.close()

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def jar_path(self, name: str) -> Path:
        return self.plugins_dir / f"{name}.jar"

    def disabled_jar_path(self, name: str) -> Path:
        return self.plugins_dir / f"{name}{DISABLED_SUFFIX}"

    def _current_jar(self, name: str) -> Optional[Path]:
        for path in (self.jar_path(name), self.disabled_jar_path(name)):
            if path.is_file():
                return path
        return None

    def _target_jar(self, name: str, record: Optional[PluginRecord]) -> Path:
        current = self._current_jar(name)
        if current is not None:
            return current
        if record is not None and not record.enabled:
            return self.disabled_jar_path(name)
        return self.jar_path(name)

    def _ensure_plugins_dir(self):
        d = self.plugins_dir
        if not d.is_dir() or not os.access(d, os.W_OK | os.X_OK):
            raise PluginDirectoryError(d)

    @staticmethod
    def _validate_name(name: Optional[str]) -> str:
        if not name or not SAFE_NAME_RE.match(name) or ".." in name:
            raise ValidationError(f"Invalid plugin name: {name!r}")
        return name

    # ------------------------------------------------------------------
    # Download + validation
    # ------------------------------------------------------------------

    def _resolve(self, url: str, selected_option=None) -> Union[ResolvedSource, MultipleOptions]:
        parsed = parse_url(
            url,
            self.client,
            github_token=self.downloads.github_token,
            timeout=self.downloads.lookup_timeout_seconds,
        )
        if isinstance(parsed, MultipleOptions) and selected_option is not None:
            return select_option(parsed, selected_option)
        return parsed

    def _fetch(
        self,
        source: ResolvedSource,
        on_progress: Optional[ProgressCallback],
        token: Optional[CancellationToken],
    ) -> Tuple[Path, PluginMetadata]:
        """Download into the staging area (never the plugins dir) and validate."""
        staging_dir = self.downloads.staging_dir
        if staging_dir is not None:
            Path(staging_dir).mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix="plugin-download-", suffix=".jar", dir=staging_dir)
        os.close(fd)
        staged = Path(tmp_name)

        try:
            for event in download_file(
                self.client,
                source.download_url,
                staged,
                token=token,
                max_bytes=self.downloads.max_size_mb * 1024 * 1024,
                chunk_size=self.downloads.chunk_size,
                total_timeout=self.downloads.total_timeout_seconds,
            ):
                if on_progress is not None:
                    on_progress(event)

            if not is_valid_jar(staged):
                raise InvalidPluginFile("Invalid plugin file: Missing or corrupt plugin.yml")
            metadata = read_manifest(staged)
        except BaseException:
            staged.unlink(missing_ok=True)
            raise

        return staged, metadata

    def _install_jar(
        self,
        staged: Path,
        name: str,
        record: Optional[PluginRecord],
        commit: Callable[[], None],
        backup: bool = True,
    ) -> bool:
        """
        Move the staged file into place, then run `commit` (the registry write).

        With `backup`, the JAR being replaced is captured into the backup slot
        first. If the swap or `commit` fails the plugins dir is put back as it
        was: the previous JAR returns (a fresh install's JAR is removed) and
        the previous backup is reinstated.

        Returns True if a backup was taken.
        """
        target = self._target_jar(name, record)
        had_jar = target.is_file()
        take_backup = backup and had_jar
        held = self.backups.hold(name) if take_backup else None
        stash = self.plugins_dir / f".{name}.jar.replaced" if had_jar and not take_backup else None
        incoming = self.plugins_dir / f".{name}.jar.incoming"
        replaced = False

        try:
            if take_backup:
                self.backups.capture(name, target)
            elif stash is not None:
                shutil.copyfile(target, stash)
            shutil.copyfile(staged, incoming)
            os.replace(incoming, target)
            replaced = True
            commit()
        except BaseException as e:
            logger.error(f"Installing {target.name} failed, restoring previous state: {e}")
            self._undo_install(name, target, replaced, take_backup, held, stash, incoming)
            raise

        self.backups.release(held)
        if stash is not None:
            stash.unlink(missing_ok=True)
        logger.info(f"Installed {target.name}")
        return take_backup

    def _undo_install(
        self,
        name: str,
        target: Path,
        replaced: bool,
        took_backup: bool,
        held: Optional[Path],
        stash: Optional[Path],
        incoming: Path,
    ):
        try:
            incoming.unlink(missing_ok=True)
            if replaced:
                if took_backup:
                    self.backups.copy_to(name, target)
                elif stash is not None:
                    os.replace(stash, target)
                else:
                    target.unlink(missing_ok=True)
            if took_backup:
                self.backups.reinstate(name, held)
            if stash is not None:
                stash.unlink(missing_ok=True)
        except OSError as e:
            # The original failure is what gets raised; this one is only logged
            logger.error(f"Could not restore {target.name} after failed install: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Install / confirm
    # ------------------------------------------------------------------

    def install_from_url(
        self,
        url: str,
        custom_name: Optional[str] = None,
        selected_option=None,
        on_progress: Optional[ProgressCallback] = None,
        token: Optional[CancellationToken] = None,
    ) -> Dict[str, Any]:
        """
        Download and install a plugin that is not registered yet.

        Returns one of:
            {"status": "installed", "pluginName", "version", "metadata"}
            {"status": "conflict", "pluginName", "currentVersion", "newVersion",
             "comparison", "requiredAction", "metadata"}
            {"status": "multiple-options", "options": [...]}
        """
        started = time.monotonic()
        attempt = {"action": "install_attempt", "url": url, "customName": custom_name}
        self._log_attempt({**attempt, "status": "started"})

        try:
            self._ensure_plugins_dir()
            if custom_name is not None:
                self._validate_name(custom_name)

            source = self._resolve(url, selected_option)
            if isinstance(source, MultipleOptions):
                self._log_attempt(
                    {**attempt, "status": "multiple_options", "optionsCount": len(source.options),
                     "duration_ms": _elapsed_ms(started)}
                )
                return {"status": "multiple-options", "options": source.to_list()}

            staged, metadata = self._fetch(source, on_progress, token)
            try:
                name = self._validate_name(custom_name or metadata.name)
                existing = self.registry.find(name)

                if existing is not None:
                    current_version = existing.version or "0.0.0"
                    comparison = compare_versions(metadata.version, current_version)
                    result = {
                        "status": "conflict",
                        "pluginName": existing.name,
                        "currentVersion": current_version,
                        "newVersion": metadata.version,
                        "comparison": comparison.value,
                        "requiredAction": REQUIRED_ACTION[comparison],
                        "metadata": metadata.to_dict(),
                    }
                    self._log_attempt(
                        {**attempt, "status": "plugin_exists", "pluginName": existing.name,
                         "currentVersion": current_version, "newVersion": metadata.version,
                         "comparison": comparison.value, "duration_ms": _elapsed_ms(started)}
                    )
                    return result

                if token is not None:
                    token.raise_if_cancelled()

                now = now_iso()
                record = PluginRecord(
                    name=name,
                    version=metadata.version,
                    enabled=True,
                    description=metadata.description,
                    category="custom",
                    source="url",
                    direct_url=url,
                    installed_at=now,
                    updated_at=now,
                )
                # Not registered: a stray file at <name>.jar is replaced, not backed up
                backed_up = self._install_jar(
                    staged, name, None, lambda: self.registry.upsert(record), backup=False
                )
            finally:
                staged.unlink(missing_ok=True)

            self.history.record("installed", name, metadata.version, "Installed from URL")
            self._log_attempt(
                {**attempt, "status": "success", "pluginName": name, "version": metadata.version,
                 "jarFile": self.jar_path(name).name, "backupCreated": backed_up,
                 "duration_ms": _elapsed_ms(started)}
            )
            logger.info(f"Installed plugin {name} {metadata.version}")
            return {
                "status": "installed",
                "pluginName": name,
                "version": metadata.version,
                "metadata": metadata.to_dict(),
            }

        except PluginDirectoryError as e:
            self._log_failure(attempt, e, started)
            raise
        except PermissionError as e:
            error = PluginDirectoryError(self.plugins_dir)
            self._log_failure(attempt, error, started)
            raise error from e
        except PluginManagerError as e:
            self._log_failure(attempt, e, started)
            raise

    def proceed_with_install(
        self,
        url: str,
        plugin_name: str,
        action: str,
        on_progress: Optional[ProgressCallback] = None,
        token: Optional[CancellationToken] = None,
        selected_option=None,
    ) -> Dict[str, Any]:
        """
        Perform an install that `install_from_url` withheld as a conflict.

        `action` is the confirmation: update, downgrade or reinstall.
        """
        if action not in CONFIRM_ACTIONS:
            raise ValidationError(
                f"Invalid confirmation action: {action!r} (expected one of {list(CONFIRM_ACTIONS)})"
            )

        started = time.monotonic()
        attempt = {"action": "proceed_install_attempt", "url": url,
                   "pluginName": plugin_name, "actionType": action}
        self._log_attempt({**attempt, "status": "started"})

        try:
            self._ensure_plugins_dir()
            self._validate_name(plugin_name)

            source = self._resolve(url, selected_option)
            if isinstance(source, MultipleOptions):
                return {"status": "multiple-options", "options": source.to_list()}

            staged, metadata = self._fetch(source, on_progress, token)
            try:
                existing = self.registry.find(plugin_name)
                name = existing.name if existing is not None else plugin_name

                if token is not None:
                    token.raise_if_cancelled()

                now = now_iso()
                if existing is not None:
                    record = existing.model_copy(
                        update={
                            "version": metadata.version,
                            "description": metadata.description,
                            "direct_url": url,
                            "source": "url",
                            "updated_at": now,
                        }
                    )
                else:
                    record = PluginRecord(
                        name=name,
                        version=metadata.version,
                        description=metadata.description,
                        direct_url=url,
                        installed_at=now,
                        updated_at=now,
                    )
                backed_up = self._install_jar(
                    staged, name, existing, lambda: self.registry.upsert(record)
                )
            finally:
                staged.unlink(missing_ok=True)

            self.history.record(PAST_TENSE[action], name, metadata.version, f"{action} from URL")
            self._log_attempt(
                {**attempt, "status": "success", "version": metadata.version,
                 "backupCreated": backed_up, "duration_ms": _elapsed_ms(started)}
            )
            logger.info(f"{PAST_TENSE[action].capitalize()} plugin {name} to {metadata.version}")
            return {
                "status": "success",
                "action": action,
                "pluginName": name,
                "version": metadata.version,
                "metadata": metadata.to_dict(),
            }

        except PluginDirectoryError as e:
            self._log_failure(attempt, e, started)
            raise
        except PermissionError as e:
            error = PluginDirectoryError(self.plugins_dir)
            self._log_failure(attempt, error, started)
            raise error from e
        except PluginManagerError as e:
            self._log_failure(attempt, e, started)
            raise

    # ------------------------------------------------------------------
    # Uninstall / toggle / rollback
    # ------------------------------------------------------------------

    def uninstall_plugin(self, name: str, delete_configs: bool = False) -> Dict[str, Any]:
        self._ensure_plugins_dir()
        record = self.registry.find(name)
        if record is None:
            raise PluginNotFoundError(name)
        name = record.name

        # Registry first: a registry that cannot be written leaves the files alone
        self.registry.remove(name)
        try:
            for path in (self.jar_path(name), self.disabled_jar_path(name)):
                if path.is_file():
                    path.unlink()
                    logger.info(f"Removed {path.name}")
        except OSError:
            self.registry.upsert(record)
            raise

        self.backups.discard(name)

        configs_deleted = False
        if delete_configs:
            config_dir = self.plugins_dir / name
            if config_dir.is_dir() and config_dir.resolve().parent == self.plugins_dir.resolve():
                shutil.rmtree(config_dir)
                configs_deleted = True
                logger.info(f"Removed config directory {config_dir}")

        self.history.record(
            "uninstalled",
            name,
            record.version,
            "Removed JAR and configs" if delete_configs else "Removed JAR only",
        )
        return {"status": "success", "pluginName": name, "configsDeleted": configs_deleted}

    def toggle_plugin(self, name: str, enabled: bool) -> Dict[str, Any]:
        """
        Enable or disable a plugin by renaming `<name>.jar` <-> `<name>.jar.disabled`.

        Toggling to the state the plugin is already in is a successful no-op.
        """
        record = self.registry.find(name)
        if record is None:
            raise PluginNotFoundError(name)
        name = record.name

        active, disabled = self.jar_path(name), self.disabled_jar_path(name)
        source, target = (disabled, active) if enabled else (active, disabled)
        needs_rename = source.is_file() and not target.is_file()

        if record.enabled == enabled and not needs_rename:
            return {"status": "success", "pluginName": name, "enabled": enabled, "changed": False}

        self._ensure_plugins_dir()
        if needs_rename:
            os.replace(source, target)
            logger.info(f"Renamed {source.name} -> {target.name}")

        try:
            self.registry.upsert(record.model_copy(update={"enabled": enabled, "updated_at": now_iso()}))
        except PluginManagerError:
            if needs_rename:
                os.replace(target, source)
                logger.info(f"Renamed {target.name} back to {source.name}")
            raise
        self.history.record(
            "enabled" if enabled else "disabled",
            name,
            record.version,
            f"Plugin {'enabled' if enabled else 'disabled'}",
        )
        return {"status": "success", "pluginName": name, "enabled": enabled, "changed": True}

    def rollback_plugin(self, name: str) -> Dict[str, Any]:
        """
        Restore the single backup over the current JAR and consume it.

        Fails with NoBackupAvailable (and changes nothing) if there is no backup.
        """
        record = self.registry.find(name)
        name = record.name if record is not None else name

        if not self.backups.exists(name):
            raise NoBackupAvailable(name)
        self._ensure_plugins_dir()

        backup_meta = self.backups.metadata(name)
        target = self._target_jar(name, record)

        # Registry first: if the file restore then fails, the old record goes back.
        if record is not None:
            self.registry.upsert(
                record.model_copy(update={"version": backup_meta.version, "updated_at": now_iso()})
            )
        try:
            self.backups.restore(name, target)
        except OSError:
            if record is not None:
                self.registry.upsert(record)
            raise

        self.history.record("rolled-back", name, backup_meta.version, "Restored from backup")
        logger.info(f"Rolled back {name} to {backup_meta.version}")
        return {"status": "success", "pluginName": name, "version": backup_meta.version}

    # ------------------------------------------------------------------
    # Read-only helpers
    # ------------------------------------------------------------------

    def has_backup(self, name: str) -> bool:
        record = self.registry.find(name)
        return self.backups.exists(record.name if record is not None else name)

    def get_all_plugins(self) -> List[PluginRecord]:
        return self.registry.load()

    def find_plugin(self, name: str) -> Optional[PluginRecord]:
        return self.registry.find(name)

    def list_plugins(self) -> List[Dict[str, Any]]:
        return [
            {
                "name": r.name,
                "version": r.version,
                "enabled": r.enabled,
                "description": r.description,
                "category": r.category,
                "source": r.source,
                "hasBackup": self.backups.exists(r.name),
                "installedAt": r.installed_at,
                "updatedAt": r.updated_at,
            }
            for r in self.registry.load()
        ]

    def get_history(self, limit: Optional[int] = None) -> List[dict]:
        return self.history.entries(limit)

    def check_health(self) -> Dict[str, Any]:
        checks = {"pluginsJson": self.registry.health()}

        d = self.plugins_dir
        if not d.exists():
            checks["pluginsDir"] = {"status": "error", "message": f"Directory not found: {d}"}
        elif not d.is_dir():
            checks["pluginsDir"] = {"status": "error", "message": f"{d} is not a directory"}
        elif not os.access(d, os.W_OK):
            checks["pluginsDir"] = {"status": "error", "message": "Directory is not writable"}
        else:
            checks["pluginsDir"] = {"status": "ok", "message": "Directory is writable"}

        healthy = all(c["status"] == "ok" for c in checks.values())
        return {"healthy": healthy, "checks": checks}

    # ------------------------------------------------------------------
    # Install attempt log
    # ------------------------------------------------------------------

    def _log_attempt(self, entry: Dict[str, Any]):
        """Append one JSON line per install attempt event."""
        logger.info(f"[PLUGIN_INSTALL] {json.dumps(entry, default=str)}")
        if self.install_log is None:
            return
        line = json.dumps({"timestamp": now_iso(), **entry}, default=str)
        try:
            self.install_log.parent.mkdir(parents=True, exist_ok=True)
            with open(self.install_log, "a", encoding="utf-8") as fh:
                fh.write(line + "\n")
        except OSError as e:
            logger.error(f"Failed to write install log {self.install_log}: {e}")

    def _log_failure(self, attempt: Dict[str, Any], error: Exception, started: float):
        self._log_attempt(
            {**attempt, "status": "failed", "error": str(error),
             "errorType": type(error).__name__, "duration_ms": _elapsed_ms(started)}
        )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
