from __future__ import annotations

import logging
import posixpath
import shutil
import tempfile
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

import click

DEFAULT_CACHE_DIR = Path(tempfile.gettempdir()) / "xgo-cache"

LOGGER = logging.getLogger(__name__)


class DependencyCacheError(RuntimeError):
    pass


@dataclass(frozen=True)
class CacheEntry:
    ref: str
    local_path: Path
    fetched: bool


def split_dependencies(deps: str | None) -> list[str]:
    return [part.strip() for part in str(deps or "").split(" ") if part.strip()]


def cache_file_name(ref: str) -> str:
    path = urllib.parse.urlsplit(ref).path or ref
    return posixpath.basename(path.rstrip("/")) or posixpath.basename(ref.rstrip("/"))


class DependencyCache:
    """Download-once store for CGO dependency archives.

    Files are keyed by the last path segment of their URL and are never
    evicted. Concurrent runs writing the same name are not coordinated.
    """

    def __init__(
        self,
        cache_dir: Path = DEFAULT_CACHE_DIR,
        opener: Callable[..., Any] | None = None,
    ) -> None:
        self.cache_dir = Path(cache_dir)
        self._opener = opener or urllib.request.urlopen

    def ensure(self, deps: str | None) -> list[CacheEntry]:
        refs = split_dependencies(deps)
        if not refs:
            return []
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise DependencyCacheError(f"Failed to create dependency cache {self.cache_dir}: {exc}") from exc
        return [self._ensure_one(ref) for ref in refs]

    def _ensure_one(self, ref: str) -> CacheEntry:
        name = cache_file_name(ref)
        if not name:
            raise DependencyCacheError(f"Cannot derive a cache file name from dependency {ref!r}")
        path = self.cache_dir / name
        if path.exists():
            LOGGER.debug("Dependency cache hit for %s at %s", ref, path)
            click.echo(f"Dependency already cached: {path}.")
            return CacheEntry(ref=ref, local_path=path, fetched=False)

        click.echo(f"Downloading new dependency: {ref}...")
        try:
            handle = path.open("wb")
        except OSError as exc:
            raise DependencyCacheError(f"Failed to create dependency file {path}: {exc}") from exc
        with handle:
            self._download(ref, handle)
        click.echo(f"New dependency cached: {path}.")
        return CacheEntry(ref=ref, local_path=path, fetched=True)

    def _download(self, ref: str, handle: Any) -> None:
        request = urllib.request.Request(ref, method="GET")
        try:
            response = self._opener(request)
        except (urllib.error.URLError, ValueError, OSError) as exc:
            raise DependencyCacheError(f"Failed to retrieve dependency {ref}: {exc}") from exc
        with response:
            try:
                shutil.copyfileobj(response, handle)
            except OSError as exc:
                raise DependencyCacheError(f"Failed to download dependency {ref}: {exc}") from exc
