"""
Command-line interface for Waypost.

Provides commands for exporting the visit store to a backup archive,
restoring an archive, inspecting archives, and store maintenance.

Uses Python's argparse module (no external CLI libraries).
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import NoReturn

from waypost import __version__
from waypost.config.settings import ConfigurationError, Settings, load_config

# Set up logging
logger = logging.getLogger(__name__)

# Global verbosity settings (set during main() based on args)
_quiet_mode = False
_verbose_level = 0


def set_output_mode(quiet: bool = False, verbose: int = 0) -> None:
    """
    Set the output mode for the CLI.

    Args:
        quiet: If True, suppress non-essential output.
        verbose: Verbosity level (0=normal, 1+=verbose).
    """
    global _quiet_mode, _verbose_level
    _quiet_mode = quiet
    _verbose_level = verbose


def output(message: str = "", force: bool = False) -> None:
    """
    Print a message to stdout, respecting quiet mode.

    Args:
        message: The message to print.
        force: If True, print even in quiet mode (for essential output like JSON).
    """
    if force or not _quiet_mode:
        print(message)


def output_error(message: str) -> None:
    """Print an error message (always shown, even in quiet mode)."""
    print(message, file=sys.stderr)


def confirm(prompt: str) -> bool:
    response = input(f"{prompt} [y/N]: ").strip().lower()
    return response in ("y", "yes")


def create_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser for Waypost CLI."""
    parser = argparse.ArgumentParser(
        prog="waypost",
        description="Geolocated visit journal: backup, restore and store maintenance",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"waypost {__version__}",
    )

    parser.add_argument(
        "--config",
        metavar="PATH",
        help="Override config file location (default: ~/.waypost/config.yaml)",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase output verbosity (can be repeated)",
    )

    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Suppress non-essential output",
    )

    subparsers = parser.add_subparsers(
        title="commands",
        dest="command",
        metavar="<command>",
    )

    # export command
    export_parser = subparsers.add_parser(
        "export",
        help="Create a backup archive of all visits",
        description="Write visits, taxonomy and referenced photos to one ZIP archive.",
    )
    export_parser.add_argument(
        "--output",
        "-o",
        metavar="DIR",
        help="Output directory for the archive (default: backup.output_dir from config)",
    )
    export_parser.set_defaults(func=cmd_export)

    # restore command
    restore_parser = subparsers.add_parser(
        "restore",
        help="Restore from a backup archive",
        description="Import visits, taxonomy and photos from a backup archive.",
    )
    restore_parser.add_argument(
        "archive",
        metavar="ARCHIVE",
        help="Path to backup archive (.zip)",
    )
    restore_parser.add_argument(
        "--merge",
        action="store_true",
        help="Restore into a store that already contains visits",
    )
    restore_parser.add_argument(
        "--force",
        action="store_true",
        help="Skip confirmation prompts",
    )
    restore_parser.set_defaults(func=cmd_restore)

    # info command
    info_parser = subparsers.add_parser(
        "info",
        help="Show the manifest of a backup archive",
        description="Read a backup archive's manifest without extracting it.",
    )
    info_parser.add_argument(
        "archive",
        metavar="ARCHIVE",
        help="Path to backup archive (.zip)",
    )
    info_parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )
    info_parser.set_defaults(func=cmd_info)

    # stats command
    stats_parser = subparsers.add_parser(
        "stats",
        help="Show store statistics",
        description="Display visit, taxonomy and photo counts.",
    )
    stats_parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )
    stats_parser.set_defaults(func=cmd_stats)

    # reset command
    reset_parser = subparsers.add_parser(
        "reset",
        help="Delete all visits",
        description="Delete every visit. Taxonomy and photo files are kept.",
    )
    reset_parser.add_argument(
        "--force",
        action="store_true",
        help="Skip confirmation prompt",
    )
    reset_parser.set_defaults(func=cmd_reset)

    return parser


def setup_logging(verbose: int, quiet: bool) -> None:
    """Configure logging based on verbosity level."""
    if quiet:
        level = logging.WARNING
    elif verbose == 0:
        level = logging.INFO
    else:
        level = logging.DEBUG

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _load_settings(args: argparse.Namespace) -> Settings:
    """Load configuration; the configured log level applies unless -v/-q was given."""
    config_path = Path(args.config) if args.config else None
    settings = load_config(config_path)
    if not args.verbose and not args.quiet:
        logging.getLogger().setLevel(settings.log_level)
    return settings


def _open_store(settings: Settings):
    from waypost.storage import VisitStore

    return VisitStore(
        data_dir=Path(settings.data_dir),
        photo_dir_name=settings.photos.directory_name,
    )


def _make_manager(settings: Settings, store):
    from waypost.backup import BackupManager, BatchPolicy

    return BackupManager(
        store,
        output_dir=Path(settings.backup.output_dir),
        policy=BatchPolicy(
            batch_size=settings.backup.batch_size,
            refresh_every_failures=settings.backup.refresh_every_failures,
        ),
    )


def cmd_export(args: argparse.Namespace) -> int:
    """Create a backup archive."""
    settings = _load_settings(args)

    output_dir = Path(args.output).expanduser() if args.output else Path(
        settings.backup.output_dir
    ).expanduser()

    output("Waypost Export")
    output("=" * 50)
    output()
    output(f"Data directory: {settings.data_dir}")
    output(f"Output directory: {output_dir}")
    output()

    with _open_store(settings) as store:
        manager = _make_manager(settings, store)
        output("Creating backup...")
        result = manager.create_backup(output_path=output_dir)

    if not result.success:
        output()
        output_error(f"Backup failed: {result.error}")
        return 1

    output()
    output("Backup created successfully!")
    output()
    output(f"  File: {result.path}")
    output(f"  Size: {result.size_bytes:,} bytes ({result.size_bytes / 1024 / 1024:.2f} MB)")
    if result.manifest:
        output(f"  Visits: {result.manifest.visit_count}")
        output(f"  Labels: {result.manifest.label_count}")
        output(f"  Groups: {result.manifest.group_count}")
        output(f"  Members: {result.manifest.member_count}")
        output(f"  Photos: {result.manifest.photo_count}")
    if result.missing_photos:
        output(f"  Missing photos (skipped): {len(result.missing_photos)}")
    output()
    output("To restore from this backup, run:")
    output(f"  waypost restore {result.path}")
    return 0


def cmd_restore(args: argparse.Namespace) -> int:
    """Restore from a backup archive."""
    settings = _load_settings(args)
    backup_path = Path(args.archive).expanduser()

    if not backup_path.exists():
        output_error(f"Error: Backup file not found: {backup_path}")
        return 1

    output("Waypost Restore")
    output("=" * 50)
    output()
    output(f"Backup file: {backup_path}")
    output()

    with _open_store(settings) as store:
        manager = _make_manager(settings, store)

        manifest = manager.get_backup_info(backup_path)
        if manifest:
            output("Backup information:")
            output(f"  Created: {manifest.backup_date}")
            output(f"  Version: {manifest.version} (written by {manifest.app_version})")
            output(f"  Visits: {manifest.visit_count}")
            output(f"  Photos: {manifest.photo_count}")
            output()

        existing = store.count_visits()
        if existing and not args.merge:
            output_error(
                f"Error: Store already contains {existing} visit(s). "
                "Run 'waypost reset' first, or pass --merge."
            )
            return 1

        if existing and not args.force:
            output(f"The store contains {existing} visit(s); the archive will be merged in.")
            output("Existing labels, groups and members are renamed to the archived names.")
            output()
            if not confirm("Proceed with restore?"):
                output("Restore cancelled.")
                return 0

        output("Restoring...")
        result = manager.restore_backup(backup_path, require_empty=not args.merge)

    if not result.success:
        output()
        output_error(f"Restore failed ({result.error_code}): {result.error}")
        return 1

    output()
    output("Restore completed successfully!")
    output()
    output(f"  Visits imported: {result.visits_imported}")
    if result.visits_failed:
        output(f"  Visits failed: {result.visits_failed} (see log for details)")
    if result.report:
        for kind, counts in result.report.taxonomy.items():
            line = f"  {kind.title()}s: {counts.imported}"
            if counts.skipped_blank:
                line += f" ({counts.skipped_blank} skipped, empty name)"
            output(line)
    output(f"  Photos restored: {result.photos_restored}")
    if result.photos_failed:
        output(f"  Photos failed: {result.photos_failed}")
    return 0


def cmd_info(args: argparse.Namespace) -> int:
    """Show the manifest of a backup archive."""
    from waypost.backup import ArchiveReader, RestoreError

    backup_path = Path(args.archive).expanduser()
    try:
        manifest = ArchiveReader().inspect(backup_path)
    except RestoreError as e:
        output_error(f"Error: {e}")
        return 1

    if args.json:
        output(json.dumps(manifest.to_dict(), indent=2), force=True)
        return 0

    output("Backup Archive")
    output("=" * 50)
    output()
    output(f"  File: {backup_path}")
    output(f"  Size: {backup_path.stat().st_size:,} bytes")
    output(f"  Format version: {manifest.version}")
    output(f"  Written by: waypost {manifest.app_version}")
    output(f"  Created: {manifest.backup_date}")
    output()
    output(f"  Visits: {manifest.visit_count}")
    output(f"  Labels: {manifest.label_count}")
    output(f"  Groups: {manifest.group_count}")
    output(f"  Members: {manifest.member_count}")
    output(f"  Photos: {manifest.photo_count}")
    return 0


def cmd_stats(args: argparse.Namespace) -> int:
    """Show store statistics."""
    settings = _load_settings(args)

    with _open_store(settings) as store:
        stats = store.statistics()

    if args.json:
        output(json.dumps(stats, indent=2), force=True)
        return 0

    output("Waypost Store")
    output("=" * 50)
    output()
    output(f"  Data directory: {settings.data_dir}")
    output(f"  Visits: {stats['visits']}")
    output(f"  Labels: {stats['labels']}")
    output(f"  Groups: {stats['groups']}")
    output(f"  Members: {stats['members']}")
    output(f"  Photo references: {stats['photo_references']}")
    output(f"  Photo files: {stats['photo_files']}")
    output(f"  Database size: {stats['database_size_bytes']:,} bytes")
    return 0


def cmd_reset(args: argparse.Namespace) -> int:
    """Delete all visits."""
    settings = _load_settings(args)

    with _open_store(settings) as store:
        count = store.count_visits()
        if count == 0:
            output("Store is already empty.")
            return 0

        if not args.force:
            output(f"This will delete {count} visit(s). This action cannot be undone.")
            if not confirm("Proceed with reset?"):
                output("Reset cancelled.")
                return 0

        deleted = store.delete_all_visits()

    output(f"Deleted {deleted} visit(s).")
    return 0


def main(argv: list[str] | None = None) -> NoReturn:
    """Main entry point for Waypost CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    # Set up logging and output mode
    setup_logging(args.verbose, args.quiet)
    set_output_mode(args.quiet, args.verbose)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    try:
        exit_code = args.func(args)
        sys.exit(exit_code)
    except KeyboardInterrupt:
        output("\nOperation cancelled.")
        sys.exit(130)
    except ConfigurationError as e:
        output_error(f"Configuration error: {e}")
        sys.exit(2)
    except Exception as e:
        if args.verbose > 0:
            raise
        output_error(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
