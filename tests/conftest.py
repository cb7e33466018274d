"""
Pytest fixtures and configuration for Plugin Console tests.
"""
import io
import json
import os
import zipfile

import httpx
import pytest

from plugin_console.config import DownloadConfig, SQLiteConfig
from plugin_console.db.access import get_engine
from plugin_console.db.setup import initialize_database
from plugin_console.engine.queue import JobQueue
from plugin_console.plugins.history import HistoryLog
from plugin_console.plugins.manager import PluginManager


BASE_URL = "https://downloads.example.com"


def _entry(name: str) -> zipfile.ZipInfo:
    # Fixed timestamp so equal inputs build byte-identical JARs
    return zipfile.ZipInfo(name, date_time=(2024, 1, 1, 0, 0, 0))


def build_jar(
    name: str,
    version: str,
    description: str = "",
    manifest: str = None,
    padding: int = 0,
) -> bytes:
    """Bytes of a minimal plugin JAR carrying a plugin.yml."""
    if manifest is None:
        manifest = (
            f"name: {name}\n"
            f"version: '{version}'\n"
            f"main: com.example.{name.lower()}.Main\n"
            f"description: {description or name + ' plugin'}\n"
            "api-version: '1.20'\n"
        )
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        zf.writestr(_entry("plugin.yml"), manifest)
        zf.writestr(_entry(f"com/example/{name.lower()}/Main.class"), b"\xca\xfe\xba\xbe")
        if padding:
            zf.writestr(_entry("assets/padding.bin"), os.urandom(padding))
    return buf.getvalue()


@pytest.fixture(scope="function")
def test_db_engine(tmp_path):
    """Create a test database engine with cleanup."""
    db_path = tmp_path / "test_plugin_console.sqlite3"
    engine = get_engine(SQLiteConfig(db_location=str(db_path)))

    # Initialize with reset
    initialize_database(engine, reset_tables=True)

    yield engine

    engine.dispose()


@pytest.fixture
def job_queue(test_db_engine):
    return JobQueue(test_db_engine)


@pytest.fixture
def plugins_dir(tmp_path):
    d = tmp_path / "plugins"
    d.mkdir()
    return d


@pytest.fixture
def registry_file(tmp_path):
    path = tmp_path / "plugins.json"
    path.write_text(json.dumps({"plugins": []}), encoding="utf-8")
    return path


@pytest.fixture
def http_routes():
    """
    URL -> response served by the mock transport.

    Values: bytes (file body), dict/list (JSON), int (bare status code), or
    a callable taking the request and returning an httpx.Response.
    """
    return {}


@pytest.fixture
def http_client(http_routes):
    def handler(request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        route = http_routes.get(url)
        if route is None:
            return httpx.Response(404, text=f"no route for {url}")
        if callable(route):
            return route(request)
        if isinstance(route, int):
            return httpx.Response(route)
        if isinstance(route, (dict, list)):
            return httpx.Response(200, json=route)
        return httpx.Response(
            200,
            content=route,
            headers={"Content-Type": "application/java-archive"},
        )

    client = httpx.Client(transport=httpx.MockTransport(handler))
    yield client
    client.close()


@pytest.fixture
def serve_jar(http_routes):
    """Register a JAR at BASE_URL/<filename> and return its URL."""

    def _serve(filename: str, name: str, version: str, **kwargs) -> str:
        url = f"{BASE_URL}/{filename}"
        http_routes[url] = build_jar(name, version, **kwargs)
        return url

    return _serve


@pytest.fixture
def manager(tmp_path, test_db_engine, plugins_dir, registry_file, http_client):
    mgr = PluginManager(
        plugins_dir=plugins_dir,
        registry_file=registry_file,
        history=HistoryLog(test_db_engine),
        downloads=DownloadConfig(staging_dir=tmp_path / "staging", chunk_size=1024),
        client=http_client,
        install_log=tmp_path / "logs" / "install-attempts.log",
    )
    yield mgr
    mgr.close()


def snapshot_dir(path):
    """Name -> bytes for every file directly under `path`."""
    return {p.name: p.read_bytes() for p in sorted(path.iterdir()) if p.is_file()}
