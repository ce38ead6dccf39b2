# src/main.py — v1
"""CLI entry point — build, stages and patch commands.

Usage:
    aetherbuild build [--stage NAME] [--force-rebuild] [--stages-file PATH]
    aetherbuild stages [--stages-file PATH]
    aetherbuild patch create NAME DESCRIPTION
    aetherbuild patch apply DIR VERSION
    aetherbuild patch backup VERSION
    aetherbuild patch backups [VERSION]
    aetherbuild patch restore FILE
    aetherbuild patch update FILE
    aetherbuild patch list

Errors print as `<kind>: <id>: <message>` on stderr and exit 1.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from pydantic import ValidationError

from aetherbuild.config.settings import ConfigurationError, Settings, load_settings
from aetherbuild.core.errors import BuildError
from aetherbuild.core.models import RunResult
from aetherbuild.logging.logger import setup_logging
from aetherbuild.version import __version__

logger = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if not hasattr(args, "func"):
        parser.print_help()
        return 1

    try:
        settings = _load_settings(args)
    except (ConfigurationError, ValidationError) as exc:
        print(f"ConfigurationError: {exc}", file=sys.stderr)
        return 1

    _setup_logging(settings, args.verbose)

    try:
        return asyncio.run(args.func(args, settings))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except BuildError as exc:
        print(str(exc), file=sys.stderr)
        return 1
    except Exception as exc:
        logger.error("Fatal error: %s", exc, exc_info=args.verbose)
        return 1


def _build_parser() -> argparse.ArgumentParser:
    """Build CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="aetherbuild",
        description=f"aetherbuild v{__version__} — staged OS image builder",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command")

    # --- build ---
    p_build = subparsers.add_parser("build", help="Run the build pipeline")
    p_build.add_argument(
        "--stage", default=None,
        help="Resume from this stage (default: first stage)",
    )
    p_build.add_argument(
        "--force-rebuild", action="store_true",
        help="Ignore build markers and rebuild every selected stage",
    )
    p_build.add_argument(
        "--stages-file", type=Path, default=None,
        help="JSON stage list replacing the default catalogue",
    )
    p_build.add_argument(
        "-v", "--verbose", action="store_true", default=argparse.SUPPRESS,
        help="Enable debug logging",
    )
    p_build.set_defaults(func=_cmd_build)

    # --- stages ---
    p_stages = subparsers.add_parser("stages", help="List configured stages")
    p_stages.add_argument("--stages-file", type=Path, default=None)
    p_stages.set_defaults(func=_cmd_stages)

    # --- patch ---
    p_patch = subparsers.add_parser("patch", help="Manage tracked-tree patches")
    patch_sub = p_patch.add_subparsers(dest="patch_command", required=True)

    p_create = patch_sub.add_parser("create", help="Capture uncommitted changes as a patch")
    p_create.add_argument("name", help="Patch name (letters, digits, '.', '_', '-')")
    p_create.add_argument("description", help="One-line description")
    p_create.set_defaults(func=_cmd_patch_create)

    p_apply = patch_sub.add_parser("apply", help="Apply patches for a version to a directory")
    p_apply.add_argument("target_dir", type=Path, help="Directory to patch")
    p_apply.add_argument("target_version", help="Version bucket to apply")
    p_apply.set_defaults(func=_cmd_patch_apply)

    p_backup = patch_sub.add_parser("backup", help="Archive the tracked tree")
    p_backup.add_argument("backup_version", help="Version to record in the archive name")
    p_backup.set_defaults(func=_cmd_patch_backup)

    p_backups = patch_sub.add_parser("backups", help="List backups of the tracked tree")
    p_backups.add_argument("version", nargs="?", default=None, help="Only this version")
    p_backups.set_defaults(func=_cmd_patch_backups)

    p_restore = patch_sub.add_parser("restore", help="Restore the tracked tree from a backup")
    p_restore.add_argument("backup_file", help="Backup path or file name under backups/")
    p_restore.set_defaults(func=_cmd_patch_restore)

    p_update = patch_sub.add_parser("update", help="Replace the tracked tree with a new source tarball")
    p_update.add_argument("source_archive", type=Path, help="Source tarball")
    p_update.set_defaults(func=_cmd_patch_update)

    p_list = patch_sub.add_parser("list", help="List patches")
    p_list.set_defaults(func=_cmd_patch_list)

    return parser


def _load_settings(args: argparse.Namespace) -> Settings:
    overrides: dict[str, object] = {}
    if getattr(args, "force_rebuild", False):
        overrides["force_rebuild"] = True
    if getattr(args, "stages_file", None) is not None:
        overrides["stages_file"] = args.stages_file
    if args.verbose:
        overrides["log_level"] = "DEBUG"
    return load_settings(**overrides)


# --- build ---


async def _cmd_build(args: argparse.Namespace, settings: Settings) -> int:
    """Run the pipeline and print one line per stage."""
    from aetherbuild.config.stages import load_stages
    from aetherbuild.pipeline.runner import BuildPipeline

    stages = load_stages(settings.stages_file)
    pipeline = BuildPipeline(settings)
    result = await pipeline.run(
        stages, start_stage=args.stage, force_rebuild=args.force_rebuild
    )
    _print_run_summary(result)
    return result.exit_code


async def _cmd_stages(args: argparse.Namespace, settings: Settings) -> int:
    """List the stage catalogue with current marker versions."""
    from aetherbuild.config.stages import load_stages
    from aetherbuild.pipeline.plan import build_plan
    from aetherbuild.storage.marker_store import MarkerStore

    plan = build_plan(load_stages(settings.stages_file))
    built_versions = {
        m.stage_name: m.built_version for m in MarkerStore(settings.markers_dir).list_markers()
    }
    for stage in plan.stages:
        built = built_versions.get(stage.name, "-")
        print(f"{stage.order:>3}  {stage.name:<12} built={built:<16} {stage.description}")
    return 0


def _print_run_summary(result: RunResult) -> None:
    print(f"\nBuild {result.run_id} ({result.tracked_version}):")
    for outcome in result.outcomes:
        line = f"  {outcome.order:>3}  {outcome.stage_name:<12} {outcome.status}"
        if outcome.status != "Skipped":
            line += f"  {outcome.duration_ms}ms"
        if outcome.status == "Failed" and outcome.reason:
            line += f"  ({outcome.reason})"
        print(line)
    print(f"  Log: {result.aggregate_log}")
    if result.failure is not None:
        print(f"  Diagnostics: {result.failure.snapshot_dir}")


# --- patch ---


def _patch_components(settings: Settings):
    from aetherbuild.patches.repository import PatchRepository
    from aetherbuild.patches.updater import VersionUpdater
    from aetherbuild.storage.archive_store import ArchiveStore
    from aetherbuild.storage.version_store import VersionStore

    versions = VersionStore(settings.version_file, settings.tracked_dir)
    archives = ArchiveStore(settings, versions)
    repository = PatchRepository(settings, versions)
    updater = VersionUpdater(settings, versions, archives, repository)
    return versions, archives, repository, updater


async def _cmd_patch_create(args: argparse.Namespace, settings: Settings) -> int:
    _, _, repository, _ = _patch_components(settings)
    patch = repository.create(args.name, args.description)
    print(f"Created {patch.id} for {patch.target_version}")
    return 0


async def _cmd_patch_apply(args: argparse.Namespace, settings: Settings) -> int:
    from aetherbuild.storage.run_lock import tree_lock

    _, _, repository, _ = _patch_components(settings)
    target_dir: Path = args.target_dir
    if not target_dir.is_dir():
        logger.error("Not a directory: %s", target_dir)
        return 1
    with tree_lock(settings.locks_dir, target_dir, owner="patch apply"):
        result = repository.apply(target_dir, args.target_version)
    print(f"Applied {len(result.applied)} patch(es) for {result.target_version}")
    for pid in result.applied:
        print(f"  {pid}")
    return 0


async def _cmd_patch_backup(args: argparse.Namespace, settings: Settings) -> int:
    from aetherbuild.storage.run_lock import tree_lock

    _, archives, _, _ = _patch_components(settings)
    with tree_lock(settings.locks_dir, settings.tracked_dir, owner="backup"):
        backup = archives.backup(args.backup_version)
    print(f"Backup created: {backup.path}")
    return 0


async def _cmd_patch_backups(args: argparse.Namespace, settings: Settings) -> int:
    _, archives, _, _ = _patch_components(settings)
    backups = archives.list_backups(args.version)
    if not backups:
        print("No backups found")
        return 0
    for backup in backups:
        print(f"{backup.version:<16} {backup.timestamp:%Y-%m-%d %H:%M:%S}  {backup.path}")
    return 0


async def _cmd_patch_restore(args: argparse.Namespace, settings: Settings) -> int:
    _, _, _, updater = _patch_components(settings)
    backup = updater.restore(args.backup_file)
    if backup is not None:
        print(f"Restored {settings.tracked_name} {backup.version} from {backup.path}")
    else:
        print(f"Restored {settings.tracked_name} from {args.backup_file}")
    return 0


async def _cmd_patch_update(args: argparse.Namespace, settings: Settings) -> int:
    _, _, _, updater = _patch_components(settings)
    result = updater.update(args.source_archive)
    print(f"Updated {settings.tracked_name}: {result.previous_version} -> {result.new_version}")
    print(f"  Backup: {result.backup.path}")
    print(f"  Applied {len(result.applied_patches)} patch(es)")
    return 0


async def _cmd_patch_list(args: argparse.Namespace, settings: Settings) -> int:
    _, _, repository, _ = _patch_components(settings)
    patches = repository.list_all()
    if not patches:
        print("No patches found")
        return 0
    for patch in patches:
        print(f"Patch: {patch.id}")
        print(f"  Description: {patch.description}")
        print(f"  Created: {patch.created_at:%a, %d %b %Y %H:%M:%S %z}")
        print(f"  {settings.tracked_name.capitalize()} version: {patch.target_version}")
        if patch.dependencies:
            print(f"  Dependencies: {patch.dependencies}")
    return 0


def _setup_logging(settings: Settings, verbose: bool) -> None:
    """Configure logging for CLI usage."""
    setup_logging(
        level="DEBUG" if verbose else settings.log_level,
        log_format=settings.log_format,
        log_file=str(settings.log_file) if settings.log_file else None,
        rotation=settings.log_rotation,
        retention=settings.log_retention,
    )


if __name__ == "__main__":
    sys.exit(main())
