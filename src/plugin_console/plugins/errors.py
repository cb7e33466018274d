"""
Error taxonomy for the plugin pipeline.

Conflicts and multiple download candidates are *results*, not exceptions:
they are returned to the caller so it can confirm or pick an option.
"""


class PluginManagerError(Exception):
    """Base class for all plugin pipeline failures."""


class ValidationError(PluginManagerError):
    """Bad input (missing url, unknown action, unsafe name). Never retried."""


class InvalidUrlError(ValidationError):
    """The URL cannot be parsed into a downloadable source."""


class UnsupportedSourceError(ValidationError):
    """The source is recognised but cannot be downloaded automatically."""


class NotFoundError(PluginManagerError):
    pass


class JobNotFoundError(NotFoundError):
    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class PluginNotFoundError(NotFoundError):
    def __init__(self, name: str):
        super().__init__(f"Plugin not found: {name}")
        self.name = name


class InvalidJobStateError(PluginManagerError):
    pass


class PluginDirectoryError(PluginManagerError, PermissionError):
    """The plugins directory is missing or read-only. Fatal, surfaced verbatim."""

    def __init__(self, plugins_dir):
        super().__init__(f"Plugins directory not accessible or not writable: {plugins_dir}")
        self.plugins_dir = plugins_dir


class NetworkError(PluginManagerError):
    """A lookup or download failed. Callers may resubmit a new job."""


class DownloadTimeout(NetworkError):
    pass


class InvalidPluginFile(PluginManagerError):
    """The artifact is not a plugin archive with a usable plugin.yml."""


class NoBackupAvailable(PluginManagerError):
    def __init__(self, name: str):
        super().__init__(f"No backup available for plugin: {name}")
        self.name = name


class JobCancelled(PluginManagerError):
    pass
