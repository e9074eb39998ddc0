from __future__ import annotations

import logging
import shutil
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

import click

from xgo_cli.cache import DEFAULT_CACHE_DIR, DependencyCache, DependencyCacheError
from xgo_cli.workspace import (
    GoWorkspaceResolver,
    MountPoint,
    WorkspaceError,
    is_local_reference,
    resolve_local_package,
    workspace_roots,
)


DOCKER_DIST = "karalabe/xgo-"
DEFAULT_GO_VERSION = "latest"
DEFAULT_TARGETS = "*/*"
CONTAINER_BUILD_DIR = "/build"
CONTAINER_DEPS_CACHE_DIR = "/deps-cache"
TARGET_WILDCARD = "*"
TARGET_ANY = "."
LOG_LEVEL_CHOICES = ("critical", "error", "warning", "info", "debug")
DEFAULT_LOG_LEVEL = "warning"

LOGGER = logging.getLogger("xgo_cli")
LOGGER.addHandler(logging.NullHandler())


@dataclass
class InvocationSpec:
    output_dir: Path
    cache_dir: Path
    env: list[tuple[str, str]]
    image: str
    package: str
    mounts: list[MountPoint] = field(default_factory=list)

    def docker_args(self) -> list[str]:
        args = [
            "docker",
            "run",
            "--rm",
            "--volume",
            f"{self.output_dir}:{CONTAINER_BUILD_DIR}",
            "--volume",
            f"{self.cache_dir}:{CONTAINER_DEPS_CACHE_DIR}:ro",
        ]
        for mount in self.mounts:
            args.extend(["--volume", mount.volume_spec()])
        for key, value in self.env:
            args.extend(["--env", f"{key}={value}"])
        args.extend([self.image, self.package])
        return args


def _configure_logging(level: str) -> None:
    normalized = str(level or "").strip().lower()
    if normalized not in LOG_LEVEL_CHOICES:
        normalized = DEFAULT_LOG_LEVEL
    handler = logging.StreamHandler(sys.__stderr__)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    LOGGER.handlers.clear()
    LOGGER.addHandler(handler)
    LOGGER.setLevel(getattr(logging, normalized.upper(), logging.WARNING))
    LOGGER.propagate = False


def _to_absolute(value: str, cwd: Path) -> Path:
    path = Path(value).expanduser()
    return path if path.is_absolute() else (cwd / path).resolve()


def _run(cmd: Iterable[str], cwd: Path | None = None) -> None:
    cmd = list(cmd)
    try:
        subprocess.run(cmd, cwd=str(cwd) if cwd else None, check=True)
    except subprocess.CalledProcessError as exc:
        raise click.ClickException(f"Command failed with exit code {exc.returncode}: {' '.join(cmd)}") from exc
    except OSError as exc:
        raise click.ClickException(f"Unable to start command {' '.join(cmd)}: {exc}") from exc


def _docker_images_listing() -> str:
    try:
        result = subprocess.run(
            ["docker", "images", "--no-trunc"],
            check=False,
            text=True,
            capture_output=True,
        )
    except OSError as exc:
        raise click.ClickException(f"Failed to check docker image availability: {exc}") from exc
    if result.returncode != 0:
        detail = result.stderr.strip() or f"exit code {result.returncode}"
        raise click.ClickException(f"Failed to check docker image availability: {detail}")
    return result.stdout


def _check_docker() -> None:
    if shutil.which("docker") is None:
        raise click.ClickException("docker command not found in PATH")
    click.echo("Checking docker installation...")
    try:
        _run(["docker", "version"])
    except click.ClickException as exc:
        raise click.ClickException(f"Failed to check docker installation: {exc.message}") from exc
    click.echo()


def _ensure_docker_image(image: str) -> None:
    click.echo(f"Checking for required docker image {image}... ", nl=False)
    if image in _docker_images_listing():
        click.echo("found.")
        return
    click.echo("not found!")
    click.echo(f"Pulling {image} from docker registry...")
    try:
        _run(["docker", "pull", image])
    except click.ClickException as exc:
        raise click.ClickException(f"Failed to pull docker image from the registry: {exc.message}") from exc


def _select_image(go_version: str, image_override: str | None) -> str:
    override = str(image_override or "").strip()
    if override:
        return override
    return DOCKER_DIST + (str(go_version or "").strip() or DEFAULT_GO_VERSION)


def _normalize_targets(targets: str | None) -> str:
    selectors = str(targets if targets is not None else DEFAULT_TARGETS).split(",")
    return " ".join(selectors).replace(TARGET_WILDCARD, TARGET_ANY)


def _bool_env(value: bool) -> str:
    return "true" if value else "false"


def _resolve_output_dir(dest: str | None, cwd: Path) -> Path:
    if not dest:
        return cwd
    folder = _to_absolute(dest, cwd)
    try:
        folder.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise click.ClickException(f"Failed to resolve destination path ({dest}): {exc}") from exc
    return folder


def _build_invocation(
    *,
    package: str,
    image: str,
    remote: str,
    branch: str,
    sub_package: str,
    deps: str,
    output_dir: Path,
    out_prefix: str,
    verbose: bool,
    steps: bool,
    race: bool,
    targets: str,
    cache_dir: Path,
    mounts: list[MountPoint] | None = None,
    ext_gopath: str | None = None,
) -> InvocationSpec:
    env = [
        ("REPO_REMOTE", remote),
        ("REPO_BRANCH", branch),
        ("PACK", sub_package),
        ("DEPS", deps),
        ("OUT", out_prefix),
        ("FLAG_V", _bool_env(verbose)),
        ("FLAG_X", _bool_env(steps)),
        ("FLAG_RACE", _bool_env(race)),
        ("TARGETS", _normalize_targets(targets)),
    ]
    if ext_gopath is not None:
        env.append(("EXT_GOPATH", ext_gopath))
    return InvocationSpec(
        output_dir=output_dir,
        cache_dir=cache_dir,
        env=env,
        image=image,
        package=package,
        mounts=list(mounts or []),
    )


@click.command(help="Cross compile a Go package with CGO dependencies inside the xgo docker image.")
@click.option("--go", "go_version", default=DEFAULT_GO_VERSION, show_default=True, help="Go release to use for cross compilation")
@click.option("--pkg", "sub_package", default="", help="Sub-package to build if not root import")
@click.option("--out", "out_prefix", default="", help="Prefix to use for output naming (empty = package name)")
@click.option("--dest", default=None, help="Destination folder to put binaries in (empty = current)")
@click.option("--remote", default="", help="Version control remote repository to build")
@click.option("--branch", default="", help="Version control branch to build")
@click.option("--deps", default="", help="CGO dependencies (configure/make based archives), space separated")
@click.option("--targets", default=DEFAULT_TARGETS, show_default=True, help="Comma separated targets to build for")
@click.option("--image", "image_override", default=None, help="Use custom docker image instead of official distribution")
@click.option("-v", "build_verbose", is_flag=True, default=False, help="Print the names of packages as they are compiled")
@click.option("-x", "build_steps", is_flag=True, default=False, help="Print the command as executing the builds")
@click.option("--race", "build_race", is_flag=True, default=False, help="Enable data race detection (supported only on amd64)")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVEL_CHOICES, case_sensitive=False),
    default=DEFAULT_LOG_LEVEL,
    show_default=True,
    help="Diagnostic log level written to stderr.",
)
@click.argument("package")
def main(
    go_version: str,
    sub_package: str,
    out_prefix: str,
    dest: str | None,
    remote: str,
    branch: str,
    deps: str,
    targets: str,
    image_override: str | None,
    build_verbose: bool,
    build_steps: bool,
    build_race: bool,
    log_level: str,
    package: str,
) -> None:
    _configure_logging(log_level)

    _check_docker()
    image = _select_image(go_version, image_override)
    _ensure_docker_image(image)

    cache = DependencyCache(DEFAULT_CACHE_DIR)
    try:
        cache.ensure(deps)
    except DependencyCacheError as exc:
        raise click.ClickException(str(exc)) from exc

    cwd = Path.cwd().resolve()
    output_dir = _resolve_output_dir(dest, cwd)

    mounts: list[MountPoint] = []
    ext_gopath: str | None = None
    if is_local_reference(package):
        roots = workspace_roots()
        try:
            local = resolve_local_package(
                package,
                resolver=GoWorkspaceResolver(roots),
                roots=roots,
                cwd=cwd,
            )
        except WorkspaceError as exc:
            raise click.ClickException(f"Failed to resolve local package: {exc}") from exc
        package = local.import_path
        mounts = local.mounts
        ext_gopath = local.ext_gopath

    click.echo(f"Cross compiling {package}...")
    invocation = _build_invocation(
        package=package,
        image=image,
        remote=remote,
        branch=branch,
        sub_package=sub_package,
        deps=deps,
        output_dir=output_dir,
        out_prefix=out_prefix,
        verbose=build_verbose,
        steps=build_steps,
        race=build_race,
        targets=targets,
        cache_dir=cache.cache_dir,
        mounts=mounts,
        ext_gopath=ext_gopath,
    )
    cmd = invocation.docker_args()
    LOGGER.debug("Running %s", cmd)
    try:
        _run(cmd)
    except click.ClickException as exc:
        raise click.ClickException(f"Failed to cross compile package: {exc.message}") from exc


if __name__ == "__main__":
    main()
