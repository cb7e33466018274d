"""
Resolves a user-supplied plugin URL into something downloadable.

Supported inputs:
- direct links ending in `.jar`
- GitHub release pages (`/releases/tag/<tag>`) and `/releases/latest`
- Modrinth project pages (`modrinth.com/plugin/<project>`)
- any other http(s) URL, tried as a direct download

GitHub releases can carry several plugin JARs (one per server flavour or
game version); those come back as `MultipleOptions` and the caller picks one
with `select_option`.
"""
import logging
import re
from dataclasses import dataclass, field, asdict
from typing import List, Optional, Union
from urllib.parse import urlparse

import httpx

from plugin_console.plugins.errors import (
    DownloadTimeout,
    InvalidUrlError,
    NetworkError,
    UnsupportedSourceError,
    ValidationError,
)

logger = logging.getLogger(__name__)

GITHUB_API = "https://api.github.com"
MODRINTH_API = "https://api.modrinth.com/v2"

GITHUB_TAG_RE = re.compile(r"github\.com/([^/]+)/([^/]+)/releases/tag/([^/?#]+)")
GITHUB_LATEST_RE = re.compile(r"github\.com/([^/]+)/([^/]+)/releases/latest")
MODRINTH_RE = re.compile(r"modrinth\.com/plugin/([^/?#]+)")
SPIGOT_RE = re.compile(r"spigotmc\.org/resources")

# Loaders whose builds run on a Bukkit-compatible server
COMPATIBLE_LOADERS = {"paper", "bukkit", "spigot", "purpur", "folia"}
# Release assets that are never the runnable plugin
EXCLUDED_ASSET_MARKERS = ("sources", "javadoc", "api")


@dataclass
class SourceOption:
    download_url: str
    filename: str
    size: Optional[int] = None


@dataclass
class ResolvedSource:
    kind: str
    download_url: str
    filename: str
    size: Optional[int] = None
    version: Optional[str] = None


@dataclass
class MultipleOptions:
    kind: str
    options: List[SourceOption] = field(default_factory=list)

    def to_list(self) -> List[dict]:
        return [asdict(o) for o in self.options]


ParsedSource = Union[ResolvedSource, MultipleOptions]


def parse_url(
    url: str,
    client: httpx.Client,
    github_token: Optional[str] = None,
    timeout: Optional[float] = None,
) -> ParsedSource:
    """
    Classify `url` and, for marketplace references, look up the JAR(s).

    Raises:
        InvalidUrlError: not an http(s) URL, or the release has no plugin JAR
        UnsupportedSourceError: SpigotMC pages (manual download only)
        DownloadTimeout: the lookup timed out
        NetworkError: the lookup failed
    """
    if not url or not isinstance(url, str):
        raise InvalidUrlError("URL is required")

    url = url.strip()
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise InvalidUrlError(f"Unsupported or malformed URL: {url}")

    if parsed.path.lower().endswith(".jar"):
        return ResolvedSource(kind="direct", download_url=url, filename=_basename(parsed.path))

    match = GITHUB_TAG_RE.search(url)
    if match:
        owner, repo, tag = match.groups()
        api_url = f"{GITHUB_API}/repos/{owner}/{repo}/releases/tags/{tag}"
        return _github_release(client, api_url, github_token, timeout, "github-release")

    match = GITHUB_LATEST_RE.search(url)
    if match:
        owner, repo = match.groups()
        api_url = f"{GITHUB_API}/repos/{owner}/{repo}/releases/latest"
        return _github_release(client, api_url, github_token, timeout, "github-latest")

    match = MODRINTH_RE.search(url)
    if match:
        return _modrinth_project(client, match.group(1), timeout)

    if SPIGOT_RE.search(url):
        raise UnsupportedSourceError(
            "SpigotMC requires manual download. Please download the plugin JAR "
            "manually and use the direct JAR URL."
        )

    return ResolvedSource(
        kind="unknown",
        download_url=url,
        filename=_basename(parsed.path) or "plugin.jar",
    )


def select_option(source: MultipleOptions, selected: Union[int, str]) -> ResolvedSource:
    """Pick one candidate by list index or by filename."""
    options = source.options
    chosen = None

    if isinstance(selected, int) or (isinstance(selected, str) and selected.isdigit()):
        index = int(selected)
        if 0 <= index < len(options):
            chosen = options[index]
    else:
        chosen = next((o for o in options if o.filename == selected), None)

    if chosen is None:
        raise ValidationError(
            f"selectedOption {selected!r} does not match any of: "
            f"{[o.filename for o in options]}"
        )

    return ResolvedSource(
        kind=source.kind,
        download_url=chosen.download_url,
        filename=chosen.filename,
        size=chosen.size,
    )


def _basename(path: str) -> str:
    return path.rstrip("/").split("/")[-1]


def _get_json(client: httpx.Client, api_url: str, what: str, headers=None, timeout=None):
    kwargs = {"headers": headers or {}}
    if timeout is not None:
        kwargs["timeout"] = timeout
    try:
        response = client.get(api_url, **kwargs)
        response.raise_for_status()
        return response.json()
    except httpx.TimeoutException as e:
        raise DownloadTimeout(f"Timed out fetching {what}: {api_url}") from e
    except httpx.HTTPStatusError as e:
        raise NetworkError(f"Failed to fetch {what}: HTTP {e.response.status_code}") from e
    except httpx.HTTPError as e:
        raise NetworkError(f"Failed to fetch {what}: {e}") from e
    except ValueError as e:
        raise NetworkError(f"Failed to fetch {what}: invalid JSON response") from e


def _github_release(client, api_url, github_token, timeout, kind) -> ParsedSource:
    headers = {"Accept": "application/vnd.github+json"}
    if github_token:
        headers["Authorization"] = f"Bearer {github_token}"

    release = _get_json(client, api_url, "GitHub release", headers=headers, timeout=timeout)

    jar_assets = [
        asset
        for asset in release.get("assets", [])
        if asset.get("name", "").endswith(".jar")
        and not any(marker in asset["name"] for marker in EXCLUDED_ASSET_MARKERS)
    ]

    if not jar_assets:
        raise InvalidUrlError(f"No JAR files found in release: {api_url}")

    options = [
        SourceOption(
            download_url=asset["browser_download_url"],
            filename=asset["name"],
            size=asset.get("size"),
        )
        for asset in jar_assets
    ]

    if len(options) == 1:
        only = options[0]
        return ResolvedSource(
            kind=kind,
            download_url=only.download_url,
            filename=only.filename,
            size=only.size,
            version=release.get("tag_name"),
        )

    logger.info(f"GitHub release has {len(options)} JAR candidates")
    return MultipleOptions(kind=kind, options=options)


def _modrinth_project(client, project_id, timeout) -> ResolvedSource:
    api_url = f"{MODRINTH_API}/project/{project_id}/version"
    versions = _get_json(client, api_url, "Modrinth project", timeout=timeout)

    if not versions:
        raise InvalidUrlError(f"No versions found for Modrinth project: {project_id}")

    # Modrinth lists versions newest first
    compatible = next(
        (
            v
            for v in versions
            if any(loader.lower() in COMPATIBLE_LOADERS for loader in v.get("loaders", []))
        ),
        None,
    )
    if compatible is None:
        raise InvalidUrlError("No compatible version found for Paper/Bukkit/Spigot")

    files = compatible.get("files", [])
    primary = next((f for f in files if f.get("primary")), files[0] if files else None)
    if primary is None:
        raise InvalidUrlError(f"No downloadable files found for Modrinth project: {project_id}")

    return ResolvedSource(
        kind="modrinth",
        download_url=primary["url"],
        filename=primary["filename"],
        size=primary.get("size"),
        version=compatible.get("version_number"),
    )
