"""Offline cache agent.

Precaches a fixed manifest of asset paths into a named cache generation,
answers requests cache-first, and deletes every generation that is not the
current one once the current one is installed.

The agent sits below the shared ``httpx.AsyncClient`` as its transport
(``OfflineCacheTransport``), so it sees every outbound request without the
rest of the application calling it directly.

A generation is written into a hidden staging directory and renamed into
place only when every manifest entry is stored, so a complete generation from
an earlier run survives a failed install and keeps serving.

Storage layout::

    <cache_dir>/<generation>/<sha256(url)>.body
    <cache_dir>/<generation>/<sha256(url)>.json   # url, status, headers
    <cache_dir>/.<generation>.partial/            # install in progress
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import shutil
from pathlib import Path
from typing import TYPE_CHECKING

import httpx

from fishid.errors import CacheInstallError

if TYPE_CHECKING:
    from collections.abc import Iterable

    from fishid.config import Settings

logger = logging.getLogger(__name__)

MODEL_PREFIX = "/model/"
METADATA_SUFFIX = ".json"
STAGING_SUFFIX = ".partial"

# httpx has already decoded the body; these would no longer describe it.
_DROPPED_HEADERS = frozenset({"content-encoding", "content-length", "transfer-encoding"})


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


class CacheGeneration:
    """A named set of cached responses backed by one directory."""

    def __init__(self, name: str, path: Path) -> None:
        self.name = name
        self.path = path

    @staticmethod
    def _key(url: str) -> str:
        return hashlib.sha256(url.encode("utf-8")).hexdigest()

    def urls(self) -> list[str]:
        """URLs of all complete entries."""
        if not self.path.is_dir():
            return []
        urls = []
        for meta_path in sorted(self.path.glob("*.json")):
            with meta_path.open(encoding="utf-8") as fh:
                urls.append(json.load(fh)["url"])
        return urls

    def contains_all(self, urls: Iterable[str]) -> bool:
        """True if every URL has a complete entry in this generation."""
        if not self.path.is_dir():
            return False
        return all((self.path / f"{self._key(url)}.json").is_file() for url in urls)

    def match(self, request: httpx.Request) -> httpx.Response | None:
        url = str(request.url)
        key = self._key(url)
        meta_path = self.path / f"{key}.json"
        body_path = self.path / f"{key}.body"
        if not meta_path.is_file() or not body_path.is_file():
            return None

        with meta_path.open(encoding="utf-8") as fh:
            meta = json.load(fh)
        if meta.get("url") != url:
            return None
        return httpx.Response(
            status_code=meta["status_code"],
            headers=[(k, v) for k, v in meta["headers"]],
            content=body_path.read_bytes(),
            request=request,
        )

    def put(self, url: str, response: httpx.Response) -> None:
        """Store a fully read response. The metadata file is written last."""
        self.path.mkdir(parents=True, exist_ok=True)
        key = self._key(url)
        (self.path / f"{key}.body").write_bytes(response.content)
        meta = {
            "url": url,
            "status_code": response.status_code,
            "headers": [[k, v] for k, v in response.headers.multi_items() if k.lower() not in _DROPPED_HEADERS],
        }
        with (self.path / f"{key}.json").open("w", encoding="utf-8") as fh:
            json.dump(meta, fh)


class CacheStorage:
    """All cache generations under one root directory."""

    def __init__(self, root: Path) -> None:
        self._root = root

    @property
    def root(self) -> Path:
        return self._root

    def generations(self) -> list[str]:
        """Names of installed generations; staging directories are not listed."""
        if not self._root.is_dir():
            return []
        return sorted(p.name for p in self._root.iterdir() if p.is_dir() and not p.name.startswith("."))

    def open(self, name: str) -> CacheGeneration:
        return CacheGeneration(name, self._root / name)

    def staging(self, name: str) -> CacheGeneration:
        """An empty staging area for a new copy of generation ``name``."""
        path = self._root / f".{name}{STAGING_SUFFIX}"
        if path.exists():
            shutil.rmtree(path)
        return CacheGeneration(name, path)

    def discard(self, staged: CacheGeneration) -> None:
        shutil.rmtree(staged.path, ignore_errors=True)

    def commit(self, staged: CacheGeneration) -> CacheGeneration:
        """Move a fully written staging area into place as its generation."""
        target = self._root / staged.name
        if target.exists():
            shutil.rmtree(target)
        staged.path.rename(target)
        return CacheGeneration(staged.name, target)

    def delete(self, name: str) -> bool:
        path = self._root / name
        if not path.exists():
            return False
        shutil.rmtree(path)
        return True


# ---------------------------------------------------------------------------
# Agent
# ---------------------------------------------------------------------------


class OfflineCacheAgent:
    """Install / activate / request handlers for the offline cache.

    Cache file I/O runs in worker threads via ``asyncio.to_thread``; the agent
    does not share the inference pool.
    """

    def __init__(
        self,
        settings: Settings,
        network: httpx.AsyncBaseTransport,
        storage: CacheStorage | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        self._base_url = settings.asset_base_url.rstrip("/")
        origin = httpx.URL(self._base_url)
        self._origin = (origin.scheme, origin.host, origin.port)
        self._manifest = tuple(settings.precache_manifest)
        self._cache_name = settings.cache_name
        self._network = network
        self._storage = storage or CacheStorage(Path(settings.cache_dir))
        self._log = log or logger
        self._installed = False
        self._serving = False

    @property
    def cache_name(self) -> str:
        return self._cache_name

    @property
    def installed(self) -> bool:
        """True once an install succeeded in this process."""
        return self._installed

    @property
    def serving(self) -> bool:
        """True while requests are answered cache-first."""
        return self._serving

    @property
    def storage(self) -> CacheStorage:
        return self._storage

    # -- Lifecycle ----------------------------------------------------------

    async def start(self) -> bool:
        """Install, then activate if the install succeeded.

        A failed install leaves a complete current generation from an earlier
        run serving, without activating.
        """
        if not await self.on_install():
            if await asyncio.to_thread(self._current_is_complete):
                self._serving = True
                self._log.warning("Serving previously installed cache %s", self._cache_name)
            return False
        await asyncio.to_thread(self.on_activate)
        return True

    async def on_install(self) -> bool:
        """Precache the manifest into the current generation, all or nothing.

        Failures are logged and not retried; the application keeps working
        against the network.
        """
        try:
            await self._precache()
        except CacheInstallError as exc:
            self._log.error("Offline cache install failed for %s: %s", self._cache_name, exc)
            return False
        self._installed = True
        self._serving = True
        return True

    def on_activate(self) -> list[str]:
        """Delete every generation except the current one."""
        removed = []
        for name in self._storage.generations():
            if name == self._cache_name:
                continue
            self._storage.delete(name)
            removed.append(name)
            self._log.info("Deleted old cache %s", name)
        return removed

    async def on_request(self, request: httpx.Request) -> httpx.Response:
        """Answer a request cache-first, falling back to the network."""
        if not self._serving or self._bypasses_cache(request):
            return await self._network.handle_async_request(request)

        generation = self._storage.open(self._cache_name)
        cached = await asyncio.to_thread(generation.match, request)
        if cached is not None:
            self._log.debug("Cache hit %s", request.url)
            return cached

        response = await self._network.handle_async_request(request)
        if self._is_cacheable(request, response):
            await response.aread()
            try:
                await asyncio.to_thread(generation.put, str(request.url), response)
            except OSError as exc:
                self._log.warning("Could not cache %s: %s", request.url, exc)
        return response

    async def aclose(self) -> None:
        await self._network.aclose()

    # -- Internal -----------------------------------------------------------

    def _url_for(self, path: str) -> str:
        return f"{self._base_url}{path}"

    def _current_is_complete(self) -> bool:
        generation = self._storage.open(self._cache_name)
        return generation.contains_all(self._url_for(path) for path in self._manifest)

    @staticmethod
    def _bypasses_cache(request: httpx.Request) -> bool:
        if request.method != "GET":
            return True
        path = request.url.path
        return MODEL_PREFIX in path and not path.endswith(METADATA_SUFFIX)

    def _is_same_origin(self, url: httpx.URL) -> bool:
        return (url.scheme, url.host, url.port) == self._origin

    def _is_cacheable(self, request: httpx.Request, response: httpx.Response) -> bool:
        return response.status_code == 200 and self._is_same_origin(request.url)

    async def _precache(self) -> None:
        fetched: list[tuple[str, httpx.Response]] = []
        for path in self._manifest:
            request = httpx.Request("GET", self._url_for(path))
            try:
                response = await self._network.handle_async_request(request)
                await response.aread()
            except httpx.HTTPError as exc:
                raise CacheInstallError(f"Failed to fetch {path}: {exc}") from exc
            if not response.is_success:
                raise CacheInstallError(f"Failed to fetch {path}: HTTP {response.status_code}")
            fetched.append((str(request.url), response))

        try:
            await asyncio.to_thread(self._write_generation, fetched)
        except OSError as exc:
            raise CacheInstallError(f"Failed to write cache {self._cache_name}: {exc}") from exc
        self._log.info("Precached %s resources into %s", len(fetched), self._cache_name)

    def _write_generation(self, fetched: list[tuple[str, httpx.Response]]) -> None:
        staged = self._storage.staging(self._cache_name)
        try:
            for url, response in fetched:
                staged.put(url, response)
            self._storage.commit(staged)
        except OSError:
            self._storage.discard(staged)
            raise


class OfflineCacheTransport(httpx.AsyncBaseTransport):
    """Routes every request of an ``httpx.AsyncClient`` through the agent."""

    def __init__(self, agent: OfflineCacheAgent) -> None:
        self._agent = agent

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        return await self._agent.on_request(request)

    async def aclose(self) -> None:
        await self._agent.aclose()
