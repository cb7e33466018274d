import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

import httpx

from plugin_console.engine.cancellation import CancellationToken
from plugin_console.plugins.errors import DownloadTimeout, InvalidPluginFile, NetworkError

logger = logging.getLogger(__name__)


@dataclass
class DownloadProgress:
    loaded: int
    total: Optional[int] = None

    @property
    def percentage(self) -> Optional[int]:
        if not self.total:
            return None
        return min(100, round(self.loaded * 100 / self.total))


def download_file(
    client: httpx.Client,
    url: str,
    dest: Path,
    token: Optional[CancellationToken] = None,
    max_bytes: Optional[int] = None,
    chunk_size: int = 64 * 1024,
    total_timeout: Optional[float] = None,
) -> Iterator[DownloadProgress]:
    """
    Stream `url` into `dest`, yielding a progress event after every chunk.

    The cancellation token and the overall deadline are checked between
    chunks; per-read timeouts come from the client. The caller owns `dest`
    and removes it if this raises.

    Raises:
        DownloadTimeout: connect/read timeout or the overall deadline passed
        NetworkError: transport failure or non-2xx status
        InvalidPluginFile: the body is larger than `max_bytes`
        JobCancelled: the token was tripped
    """
    deadline = time.monotonic() + total_timeout if total_timeout else None
    loaded = 0

    try:
        with client.stream("GET", url, follow_redirects=True) as response:
            response.raise_for_status()

            length = response.headers.get("Content-Length")
            total = int(length) if length and length.isdigit() else None
            if max_bytes and total and total > max_bytes:
                raise InvalidPluginFile(
                    f"Download too large: {total} bytes (limit {max_bytes})"
                )

            with open(dest, "wb") as fh:
                for chunk in response.iter_bytes(chunk_size):
                    if token is not None:
                        token.raise_if_cancelled()
                    if deadline is not None and time.monotonic() > deadline:
                        raise DownloadTimeout(
                            f"Download timed out after {total_timeout:.0f}s: {url}"
                        )

                    fh.write(chunk)
                    loaded += len(chunk)
                    if max_bytes and loaded > max_bytes:
                        raise InvalidPluginFile(
                            f"Download too large: more than {max_bytes} bytes"
                        )
                    yield DownloadProgress(loaded=loaded, total=total)

    except httpx.TimeoutException as e:
        raise DownloadTimeout(f"Download timed out: {url}") from e
    except httpx.HTTPStatusError as e:
        raise NetworkError(f"Download failed: HTTP {e.response.status_code} for {url}") from e
    except httpx.HTTPError as e:
        raise NetworkError(f"Download failed: {e}") from e

    logger.info(f"Downloaded {loaded} bytes from {url}")
