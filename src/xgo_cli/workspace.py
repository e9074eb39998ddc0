from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Iterable, Iterator, Protocol

EXT_GOPATH_ROOT = PurePosixPath("/ext-go")
EXT_GOPATH_SEPARATOR = ":"

LOGGER = logging.getLogger(__name__)


class WorkspaceError(RuntimeError):
    pass


@dataclass(frozen=True)
class MountPoint:
    host_path: Path
    sandbox_path: str
    sandbox_prefix: str

    def volume_spec(self) -> str:
        return f"{self.host_path}:{self.sandbox_path}:ro"


@dataclass
class LocalPackage:
    import_path: str
    mounts: list[MountPoint] = field(default_factory=list)

    @property
    def ext_gopath(self) -> str:
        return EXT_GOPATH_SEPARATOR.join(mount.sandbox_prefix for mount in self.mounts)


class WorkspaceResolver(Protocol):
    def import_path(self, directory: Path) -> str:
        ...


def _default_gopath() -> str:
    return str(Path.home() / "go")


def workspace_roots(env: dict[str, str] | None = None) -> list[Path]:
    source = os.environ if env is None else env
    raw = str(source.get("GOPATH", "")).strip() or _default_gopath()
    return [Path(os.path.abspath(Path(entry).expanduser())) for entry in raw.split(os.pathsep) if entry.strip()]


def is_local_reference(reference: str) -> bool:
    return reference.startswith(os.sep) or reference.startswith(".")


def _path_is_within(path: Path, root: Path) -> bool:
    if path == root:
        return True
    try:
        path.relative_to(root)
        return True
    except ValueError:
        return False


def _within_tree(target: Path, sources: Path) -> bool:
    if _path_is_within(target, sources):
        return True
    try:
        resolved_sources = sources.resolve(strict=True)
    except (OSError, RuntimeError):
        return False
    return _path_is_within(target, resolved_sources)


def _iter_symlinks(directory: Path) -> Iterator[Path]:
    """Yield every symlink below ``directory``, depth-first in lexical order.

    Links are reported but never descended into. Unreadable directories are
    skipped.
    """
    try:
        with os.scandir(directory) as handle:
            entries = sorted(handle, key=lambda entry: entry.name)
    except OSError:
        return
    for entry in entries:
        if entry.is_symlink():
            yield Path(entry.path)
            continue
        try:
            is_dir = entry.is_dir(follow_symlinks=False)
        except OSError:
            continue
        if is_dir:
            yield from _iter_symlinks(Path(entry.path))


def _resolve_link_directory(link: Path) -> Path | None:
    try:
        target = link.resolve(strict=True)
    except (OSError, RuntimeError):
        return None
    if not target.is_dir():
        return None
    return target


def _sandbox_mount(index: int, suffix: PurePosixPath | None = None) -> tuple[str, str]:
    prefix = EXT_GOPATH_ROOT / str(index)
    sandbox = prefix / "src"
    if suffix is not None:
        sandbox = sandbox / suffix
    return str(sandbox), str(prefix)


def plan_mounts(roots: Iterable[Path]) -> list[MountPoint]:
    """Flatten the symlinks of every ``<root>/src`` tree into explicit mounts.

    Docker does not follow symlinks out of a bind mount, so each link whose
    target escapes its source tree gets its own read-only mount, numbered
    ahead of the tree that contains it. The tree itself is mounted last.
    Numbering starts at 1 and is shared across all roots.
    """
    mounts: list[MountPoint] = []
    for root in roots:
        sources = Path(root) / "src"
        for link in _iter_symlinks(sources):
            target = _resolve_link_directory(link)
            if target is None:
                LOGGER.debug("Skipping unresolvable or non-directory symlink %s", link)
                continue
            if _within_tree(target, sources):
                LOGGER.debug("Skipping symlink %s -> %s inside %s", link, target, sources)
                continue
            suffix = PurePosixPath(link.relative_to(sources).as_posix())
            sandbox_path, sandbox_prefix = _sandbox_mount(len(mounts) + 1, suffix)
            mounts.append(MountPoint(host_path=target, sandbox_path=sandbox_path, sandbox_prefix=sandbox_prefix))
            LOGGER.debug("Hoisting symlink %s -> %s to %s", link, target, sandbox_path)

        sandbox_path, sandbox_prefix = _sandbox_mount(len(mounts) + 1)
        mounts.append(MountPoint(host_path=sources, sandbox_path=sandbox_path, sandbox_prefix=sandbox_prefix))
        LOGGER.debug("Mounting source tree %s at %s", sources, sandbox_path)
    return mounts


class GoWorkspaceResolver:
    """Resolve a directory to its Go import path.

    Directories inside a GOPATH source tree map to their path relative to
    that tree. Anything else is handed to ``go list`` so module-mode
    packages resolve too.
    """

    def __init__(self, roots: Iterable[Path], go_command: str = "go") -> None:
        self.roots = [Path(root) for root in roots]
        self.go_command = go_command

    def import_path(self, directory: Path) -> str:
        absolute = Path(os.path.abspath(directory))
        resolved = directory.resolve()
        # The path as written wins over its symlink-resolved form.
        for path in (absolute, resolved):
            for root in self.roots:
                sources = Path(root) / "src"
                for candidate in (sources, sources.resolve()):
                    if path != candidate and _path_is_within(path, candidate):
                        return path.relative_to(candidate).as_posix()
        return self._go_list(resolved)

    def _go_list(self, directory: Path) -> str:
        try:
            result = subprocess.run(
                [self.go_command, "list", "-e", "-f", "{{.ImportPath}}"],
                cwd=str(directory),
                check=False,
                text=True,
                capture_output=True,
            )
        except OSError as exc:
            raise WorkspaceError(f"{directory} is outside GOPATH and '{self.go_command}' could not be run: {exc}") from exc
        import_path = result.stdout.strip()
        if result.returncode != 0 or not import_path or import_path.startswith("_"):
            detail = result.stderr.strip() or import_path or f"exit code {result.returncode}"
            raise WorkspaceError(f"cannot determine import path of {directory}: {detail}")
        return import_path


def resolve_local_package(
    reference: str,
    *,
    resolver: WorkspaceResolver,
    roots: Iterable[Path],
    cwd: Path | None = None,
) -> LocalPackage:
    base = cwd or Path.cwd()
    path = Path(reference).expanduser()
    if not path.is_absolute():
        path = base / path
    path = Path(os.path.abspath(path))
    if not path.is_dir():
        raise WorkspaceError(f"Requested path invalid: {path} is not an existing directory")

    import_path = resolver.import_path(path)
    LOGGER.debug("Resolved %s to import path %s", path, import_path)
    return LocalPackage(import_path=import_path, mounts=plan_mounts(roots))
