"""Command line interface for the stage builder."""
from __future__ import annotations

from argparse import ArgumentParser, Namespace
from pathlib import Path
from typing import Dict, Iterable, List
import sys

import yaml

from core.command_runner import RecordingCommandRunner, SubprocessCommandRunner

from .assembler import ImageAssembler
from .backends import BACKENDS, make_backend
from .buildfile import format_buildfile
from .cache import LayerCache
from .config import Configuration, load_configuration
from .console import Console
from .context import BuildContext
from .errors import BuildError, ImageNotFound, ValidationFailed
from .executor import StageExecutor
from .export import ImageExporter
from .images import BaseImageResolver
from .loader import find_manifest, load_manifest
from .manifest import Manifest
from .validation import PipelineValidator


def _emit_dry_run_output(runner: RecordingCommandRunner, *, workspace: Path) -> None:
    for line in runner.iter_formatted(workspace=workspace):
        print(line)


def _parse_build_args(values: Iterable[str]) -> Dict[str, str]:
    build_args: Dict[str, str] = {}
    for raw in values:
        name, separator, value = raw.partition("=")
        name = name.strip()
        if not name or not separator:
            raise ValueError(f"Build argument '{raw}' must look like NAME=VALUE")
        build_args[name] = value
    return build_args


def _add_manifest_arguments(parser: ArgumentParser) -> None:
    parser.add_argument("manifest", nargs="?", help="Manifest or build file (default: found in the context)")
    parser.add_argument("--context", default=".", help="Build context directory")
    parser.add_argument(
        "--build-arg",
        dest="build_args",
        action="append",
        default=[],
        metavar="NAME=VALUE",
        help="Override a build argument (repeatable)",
    )


def _parse_arguments(argv: Iterable[str]) -> Namespace:
    parser = ArgumentParser(prog="stagebuild", description="Multi-stage image build pipeline")
    parser.add_argument("--config", help="Configuration file (default: stagebuild.toml in the workspace)")
    parser.add_argument("--log", choices=list(Console.LEVELS), help="Console log level")
    parser.add_argument("-v", "--verbose", action="store_true", help="Shortcut for --log debug")
    subparsers = parser.add_subparsers(dest="command", required=True)

    build_parser = subparsers.add_parser("build", help="Build an image from a manifest")
    _add_manifest_arguments(build_parser)
    build_parser.add_argument("--tag", help="Tag recorded in the image config")
    build_parser.add_argument("--images", help="Base image directory")
    build_parser.add_argument("--cache-dir", help="Persist layer cache in this directory")
    build_parser.add_argument("--no-cache", action="store_true", help="Disable the layer cache")
    build_parser.add_argument("--backend", choices=sorted(BACKENDS), help="Command backend (default: chroot)")
    build_parser.add_argument("--package-manager", help="Package manager for images without metadata")
    build_parser.add_argument("--output", help="Export rootfs archive and image.json to this directory")
    build_parser.add_argument("--format", dest="export_format", help="Archive format for --output")
    build_parser.add_argument("--stream", action="store_true", help="Stream command output instead of capturing it")
    build_parser.add_argument("--dry-run", action="store_true", help="Print commands without executing them")

    validate_parser = subparsers.add_parser("validate", help="Statically check a manifest")
    _add_manifest_arguments(validate_parser)
    validate_parser.add_argument("--images", help="Base image directory used to verify users")

    inspect_parser = subparsers.add_parser("inspect", help="Print the manifest in build-file form")
    _add_manifest_arguments(inspect_parser)

    return parser.parse_args(list(argv))


def main(argv: Iterable[str] | None = None) -> int:
    args = _parse_arguments(sys.argv[1:] if argv is None else argv)
    workspace = Path.cwd()

    try:
        config = load_configuration(workspace, explicit=Path(args.config) if args.config else None)
        level = args.log or ("debug" if args.verbose else config.global_config.log_level)
        console = Console(level=level, dry_run=bool(getattr(args, "dry_run", False)))

        if args.command == "build":
            return _handle_build(args, workspace, config, console)
        if args.command == "validate":
            return _handle_validate(args, workspace, config, console)
        if args.command == "inspect":
            return _handle_inspect(args, workspace)
        raise ValueError(f"Unknown command: {args.command}")
    except ValidationFailed as exc:
        print(exc, file=sys.stderr)
        for finding in exc.findings:
            print(f"  {finding.format()}", file=sys.stderr)
        return 1
    except BuildError as exc:
        print(f"Build failed: {exc}", file=sys.stderr)
        return 1
    except (ValueError, TypeError, FileNotFoundError, yaml.YAMLError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        print("Build aborted", file=sys.stderr)
        return 130


def _load(args: Namespace, workspace: Path) -> tuple[Manifest, Path]:
    context_dir = (workspace / args.context).resolve()
    if args.manifest:
        manifest_path = workspace / args.manifest
    else:
        found = find_manifest(context_dir)
        if found is None:
            raise FileNotFoundError(f"No manifest found in '{context_dir}'")
        manifest_path = found
    manifest = load_manifest(manifest_path, args=_parse_build_args(args.build_args))
    return manifest, context_dir


def _images_dir(args: Namespace, workspace: Path, config: Configuration) -> Path:
    if args.images:
        return workspace / args.images
    return config.resolve_path(config.global_config.images_dir, workspace)


def _handle_build(args: Namespace, workspace: Path, config: Configuration, console: Console) -> int:
    manifest, context_dir = _load(args, workspace)
    settings = config.global_config

    runner: SubprocessCommandRunner | RecordingCommandRunner
    if args.dry_run:
        runner = RecordingCommandRunner()
    else:
        runner = SubprocessCommandRunner()
    backend = make_backend(args.backend or settings.backend, runner, stream=args.stream)

    cache: LayerCache | None = None
    if not args.no_cache:
        cache_dir = args.cache_dir or settings.cache_dir
        directory = config.resolve_path(cache_dir, workspace) if cache_dir else None
        cache = LayerCache(directory, console=console)

    executor = StageExecutor(
        backend,
        BuildContext(context_dir),
        config.package_managers,
        cache=cache,
        console=console,
        default_package_manager=args.package_manager or settings.package_manager,
    )
    resolver = BaseImageResolver(_images_dir(args, workspace, config), console=console)
    image = ImageAssembler(executor, resolver, console=console).build(manifest, tag=args.tag)

    if args.output:
        ImageExporter(console).export(
            image,
            workspace / args.output,
            format_hint=args.export_format or settings.export_format,
        )

    if args.dry_run and isinstance(runner, RecordingCommandRunner):
        _emit_dry_run_output(runner, workspace=workspace)

    entrypoint = " ".join(image.entrypoint) if image.entrypoint else "<none>"
    print(f"Built {image.tag or '<untagged>'} {image.digest}")
    print(f"  user: {image.user}  workdir: {image.workdir}  entrypoint: {entrypoint}")
    if cache is not None:
        console.info(f"Layer cache: {cache.hits} hit(s), {cache.misses} miss(es)")
    return 0


def _handle_validate(args: Namespace, workspace: Path, config: Configuration, console: Console) -> int:
    manifest, _ = _load(args, workspace)
    resolver = BaseImageResolver(_images_dir(args, workspace, config), console=console)

    base_users: Dict[str, frozenset[str]] = {}
    for stage in manifest.stages:
        if stage.base in base_users:
            continue
        try:
            base_users[stage.base] = resolver.users(stage.base)
        except ImageNotFound as exc:
            console.warn(f"{exc}; users of that image are not verified")

    findings = PipelineValidator().validate(manifest, base_users=base_users)
    for finding in findings:
        print(finding.format())
    errors: List[str] = [finding.code for finding in findings if finding.is_error]
    if errors:
        return 1
    print("Validation successful")
    return 0


def _handle_inspect(args: Namespace, workspace: Path) -> int:
    manifest, _ = _load(args, workspace)
    sys.stdout.write(format_buildfile(manifest))
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
