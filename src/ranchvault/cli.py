"""
Command-line interface for ranchvault.

Provides commands to export a ranch to an archive, inspect and verify
archives, restore them into a ranch, and manage configuration.

Uses Python's argparse module (no external CLI libraries).

Exit codes:
    0   success
    1   failure
    2   configuration or credential error
    3   another restore holds the ranch's lock
    130 cancelled (Ctrl+C)
"""

from __future__ import annotations

import argparse
import getpass
import json
import logging
import os
import signal
import sys
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, NoReturn

from ranchvault import __version__
from ranchvault.backup import (
    DUPLICATE_POLICIES,
    MODE_REPLACE,
    RESTORE_MODES,
    ArchiveReader,
    BackupEngineError,
    CancellationToken,
    OperationCancelledError,
    RestoreLockError,
    RestoreOptions,
    RestoreOrchestrator,
    SnapshotBuilder,
)
from ranchvault.config.credentials import (
    BLOB_KEY_ENV_VAR,
    CredentialError,
    CredentialStore,
    InvalidPassphraseError,
    blob_endpoint,
    resolve_blob_service_key,
)
from ranchvault.config.settings import (
    ConfigurationError,
    Settings,
    get_config_path,
    load_config,
    save_config,
)
from ranchvault.storage import (
    ENTITY_ORDER,
    BlobStore,
    HttpBlobStore,
    LocalBlobStore,
    SqliteRecordStore,
)

# Set up logging
logger = logging.getLogger(__name__)

# Global verbosity settings (set during main() based on args)
_quiet_mode = False
_verbose_level = 0

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG_ERROR = 2
EXIT_LOCKED = 3
EXIT_CANCELLED = 130


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


def show_progress(message: str) -> None:
    output(f"  {message}")


def create_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser for ranchvault CLI."""
    parser = argparse.ArgumentParser(
        prog="ranchvault",
        description="Ranch backup and restore engine",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"ranchvault {__version__}",
    )

    parser.add_argument(
        "--config",
        metavar="PATH",
        help="Override config file location (default: ~/.ranchvault/config.yaml)",
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

    # init command
    init_parser = subparsers.add_parser(
        "init",
        help="Initialize ranchvault configuration",
        description="Create the config file, data directory and record store.",
    )
    init_parser.set_defaults(func=cmd_init)

    # configure command
    configure_parser = subparsers.add_parser(
        "configure",
        help="Store the blob store service key",
        description="Save the HTTP blob store service key in the encrypted credential store.",
    )
    configure_parser.set_defaults(func=cmd_configure)

    # ranches command
    ranches_parser = subparsers.add_parser(
        "ranches",
        help="List ranches in the record store",
    )
    ranches_parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )
    ranches_parser.set_defaults(func=cmd_ranches)

    # export command
    export_parser = subparsers.add_parser(
        "export",
        help="Export a ranch to a backup archive",
        description="Write every record and photo of one ranch to a .tar.gz archive.",
    )
    export_parser.add_argument(
        "ranch_id",
        metavar="RANCH_ID",
        help="Ranch to export",
    )
    export_parser.add_argument(
        "-o", "--output",
        metavar="DIR",
        help="Output directory (default: export.output_dir from config)",
    )
    export_parser.set_defaults(func=cmd_export)

    # restore command
    restore_parser = subparsers.add_parser(
        "restore",
        help="Restore a backup archive into a ranch",
        description=(
            "Restore an archive. 'missing' adds animals not already present; "
            "'replace' deletes the ranch's animals first."
        ),
    )
    restore_parser.add_argument(
        "archive",
        metavar="ARCHIVE",
        help="Path to the backup archive",
    )
    restore_parser.add_argument(
        "--ranch",
        required=True,
        metavar="ID",
        help="Target ranch",
    )
    restore_parser.add_argument(
        "--mode",
        required=True,
        choices=RESTORE_MODES,
        help="Restore mode",
    )
    restore_parser.add_argument(
        "--on-duplicate",
        choices=DUPLICATE_POLICIES,
        help="Missing mode: what to do with animals that already exist (default from config)",
    )
    restore_parser.add_argument(
        "--force",
        action="store_true",
        help="Skip the confirmation prompt for replace mode",
    )
    restore_parser.add_argument(
        "--json",
        action="store_true",
        help="Print the summary as JSON",
    )
    restore_parser.set_defaults(func=cmd_restore)

    # verify command
    verify_parser = subparsers.add_parser(
        "verify",
        help="Verify an archive's integrity",
    )
    verify_parser.add_argument(
        "archive",
        metavar="ARCHIVE",
        help="Path to the backup archive",
    )
    verify_parser.add_argument(
        "--media",
        action="store_true",
        help="Also verify every photo checksum",
    )
    verify_parser.set_defaults(func=cmd_verify)

    # info command
    info_parser = subparsers.add_parser(
        "info",
        help="Show an archive's manifest",
    )
    info_parser.add_argument(
        "archive",
        metavar="ARCHIVE",
        help="Path to the backup archive",
    )
    info_parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )
    info_parser.set_defaults(func=cmd_info)

    # demo command
    demo_parser = subparsers.add_parser(
        "demo",
        help="Create a demo ranch with sample data",
    )
    demo_parser.add_argument(
        "--force",
        action="store_true",
        help="Delete and recreate the demo ranch if it exists",
    )
    demo_parser.add_argument(
        "--seed",
        type=int,
        help="Random seed for reproducible data",
    )
    demo_parser.set_defaults(func=cmd_demo)

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
    config_path = Path(args.config) if getattr(args, "config", None) else None
    return load_config(config_path)


def _open_record_store(settings: Settings) -> SqliteRecordStore:
    return SqliteRecordStore(data_dir=Path(settings.data_dir).expanduser())


def _open_blob_store(settings: Settings) -> BlobStore:
    """
    Build the configured blob store.

    The http backend needs the service key: RANCHVAULT_BLOB_KEY if set,
    otherwise the credential store is unlocked interactively.
    """
    blob_config = settings.blob_store
    if blob_config.backend == "local":
        return LocalBlobStore(blob_config.root, chunk_size=blob_config.chunk_size)

    credential_store = None
    if not _has_env_key():
        credential_store = CredentialStore()
        credential_store.unlock(getpass.getpass("Enter passphrase to unlock credentials: "))

    try:
        service_key = resolve_blob_service_key(blob_config, credential_store)
    finally:
        if credential_store is not None:
            credential_store.lock()

    return HttpBlobStore(
        url=blob_config.url,
        bucket=blob_config.bucket,
        service_key=service_key,
        timeout=blob_config.timeout_seconds,
        chunk_size=blob_config.chunk_size,
    )


def _has_env_key() -> bool:
    return bool(os.environ.get(BLOB_KEY_ENV_VAR))


@contextmanager
def cancel_on_interrupt(token: CancellationToken) -> Generator[None, None, None]:
    """
    Turn Ctrl+C into a cooperative cancellation request.

    The running operation stops at its next batch or media boundary. A
    second Ctrl+C falls back to the default handler.
    """

    def handler(signum: int, frame: Any) -> None:
        output_error("\nCancelling after the current item... (Ctrl+C again to abort)")
        token.cancel()
        signal.signal(signal.SIGINT, previous)

    previous = signal.getsignal(signal.SIGINT)
    signal.signal(signal.SIGINT, handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def cmd_init(args: argparse.Namespace) -> int:
    """Initialize ranchvault configuration."""
    output("ranchvault Initialization")
    output("=" * 50)
    output()

    config_path = Path(args.config) if args.config else get_config_path()

    if config_path.exists():
        output(f"Configuration file already exists: {config_path}")
        settings = _load_settings(args)
    else:
        settings = Settings()
        save_config(settings, config_path)
        output(f"Configuration file created: {config_path}")

    store = _open_record_store(settings)
    output(f"Record store: {store.db_path}")

    Path(settings.export.output_dir).expanduser().mkdir(parents=True, exist_ok=True)
    output(f"Backup directory: {settings.export.output_dir}")

    if settings.blob_store.backend == "local":
        Path(settings.blob_store.root).expanduser().mkdir(parents=True, exist_ok=True)
        output(f"Photo storage: {settings.blob_store.root}")

    output()
    output("Initialization complete.")
    output()
    output("Next steps:")
    output("  1. Run 'ranchvault demo' to create a sample ranch")
    output("  2. Run 'ranchvault ranches' to list ranches")
    output("  3. Run 'ranchvault export <ranch_id>' to back one up")
    output()
    return EXIT_OK


def cmd_configure(args: argparse.Namespace) -> int:
    """Store the service key for the configured blob store."""
    settings = _load_settings(args)
    endpoint = blob_endpoint(settings.blob_store)
    credential_store = CredentialStore()

    if not credential_store.is_initialized():
        output("Credential Encryption Setup")
        output("-" * 30)
        output("Enter a passphrase to encrypt the blob store service key.")
        output("Minimum 12 characters.")
        output()

        while True:
            passphrase = getpass.getpass("Enter passphrase: ")
            confirm = getpass.getpass("Confirm passphrase: ")
            if passphrase != confirm:
                output_error("Error: Passphrases do not match.")
                continue
            try:
                credential_store.initialize(passphrase)
            except ValueError as e:
                output_error(f"Error: {e}")
                continue
            break
    else:
        passphrase = getpass.getpass("Enter passphrase to unlock credentials: ")
        try:
            credential_store.unlock(passphrase)
        except InvalidPassphraseError:
            output_error("Error: Invalid passphrase.")
            return EXIT_FAILURE

    service_key = getpass.getpass("Blob store service key: ").strip()
    if not service_key:
        output_error("Error: No key entered.")
        credential_store.lock()
        return EXIT_FAILURE

    credential_store.set_blob_key(endpoint, service_key)
    credential_store.lock()

    output(f"Service key saved for blob store {endpoint}.")
    return EXIT_OK


def cmd_ranches(args: argparse.Namespace) -> int:
    """List ranches."""
    settings = _load_settings(args)
    store = _open_record_store(settings)

    rows = []
    for ranch in store.list_ranches():
        rows.append(
            {
                "id": ranch.id,
                "name": ranch.name,
                "location": ranch.location,
                "animals": store.count("animals", ranch.id),
            }
        )

    if args.json:
        output(json.dumps(rows, indent=2), force=True)
        return EXIT_OK

    if not rows:
        output("No ranches found. Run 'ranchvault demo' to create one.")
        return EXIT_OK

    output(f"{'ID':<38} {'Name':<30} {'Animals':>8}")
    output("-" * 78)
    for row in rows:
        output(f"{row['id']:<38} {row['name'][:30]:<30} {row['animals']:>8}")
    return EXIT_OK


def cmd_export(args: argparse.Namespace) -> int:
    """Export a ranch to an archive."""
    settings = _load_settings(args)
    record_store = _open_record_store(settings)
    blob_store = _open_blob_store(settings)

    output("ranchvault Export")
    output("=" * 50)
    output()

    builder = SnapshotBuilder(record_store, blob_store, settings)
    token = CancellationToken()
    with cancel_on_interrupt(token):
        result = builder.export(
            args.ranch_id,
            output_dir=args.output,
            on_progress=show_progress,
            cancel_token=token,
        )

    counts = result.manifest.entity_counts
    output()
    output("Backup created successfully!")
    output()
    output(f"  File: {result.path}")
    output(f"  Size: {result.size_bytes:,} bytes ({result.size_bytes / 1024 / 1024:.2f} MB)")
    output(f"  Animals: {counts.get('animals', 0)}")
    output(f"  Medical records: {counts.get('medical_history', 0)}")
    output(f"  Photos: {result.manifest.media_count}")
    if result.missing_media:
        output(f"  Missing photos: {len(result.missing_media)}")
        for item in result.missing_media:
            output(f"    - {item.path}: {item.error}")
    output()
    output("To restore from this backup, run:")
    output(f"  ranchvault restore {result.path} --ranch <RANCH_ID> --mode missing")
    return EXIT_OK


def cmd_restore(args: argparse.Namespace) -> int:
    """Restore an archive into a ranch."""
    settings = _load_settings(args)
    archive_path = Path(args.archive)

    if not archive_path.exists():
        output_error(f"Error: Backup file not found: {archive_path}")
        return EXIT_FAILURE

    record_store = _open_record_store(settings)
    ranch = record_store.get_ranch(args.ranch)
    if ranch is None:
        output_error(f"Error: Ranch not found: {args.ranch}")
        return EXIT_FAILURE

    output("ranchvault Restore")
    output("=" * 50)
    output()
    output(f"Backup file: {archive_path}")
    output(f"Target ranch: {ranch.name} ({ranch.id})")
    output(f"Mode: {args.mode}")
    output()

    if args.mode == MODE_REPLACE and not args.force:
        animals = record_store.count("animals", ranch.id)
        output(f"WARNING: This will delete all {animals} animals of {ranch.name}")
        output("and their medical history, custom field values and photo records.")
        output()
        response = input("Proceed with restore? [y/N]: ").strip().lower()
        if response not in ("y", "yes"):
            output("Restore cancelled.")
            return EXIT_OK

    blob_store = _open_blob_store(settings)
    orchestrator = RestoreOrchestrator(record_store, blob_store, settings)
    options = RestoreOptions(
        mode=args.mode,
        ranch_id=ranch.id,
        duplicate_policy=args.on_duplicate,
    )

    token = CancellationToken()
    with cancel_on_interrupt(token):
        summary = orchestrator.restore(
            archive_path,
            options,
            on_progress=None if args.json else show_progress,
            cancel_token=token,
        )

    if args.json:
        output(json.dumps(summary.to_dict(), indent=2), force=True)
        return EXIT_OK

    output()
    output("Restore completed!")
    output()
    output(f"  Animals restored: {summary.animals_restored}")
    output(f"  Animals skipped: {summary.animals_skipped}")
    if summary.animals_updated:
        output(f"  Animals updated: {summary.animals_updated}")
    if summary.animals_deleted:
        output(f"  Animals deleted first: {summary.animals_deleted}")
    output(f"  Medical records: {summary.medical_records_restored}")
    output(f"  Custom field values: {summary.custom_field_values_restored}")
    output(f"  Photos uploaded: {summary.media_restored}")
    if summary.media_failed:
        output(f"  Photos failed: {summary.media_failed}")
    if summary.media_missing:
        output(f"  Photos missing from backup: {summary.media_missing}")
    if summary.parent_links_cleared:
        output(f"  Parent links cleared: {summary.parent_links_cleared}")
    if summary.records_dropped:
        output(f"  Orphaned records dropped: {summary.records_dropped}")
    return EXIT_OK


def cmd_verify(args: argparse.Namespace) -> int:
    """Verify an archive."""
    reader = ArchiveReader(Path(args.archive))

    output("Verifying backup integrity...")
    problems = reader.verify(include_media=args.media)

    if problems:
        output()
        output_error("Backup verification failed:")
        for problem in problems:
            output_error(f"  - {problem}")
        return EXIT_FAILURE

    output("Backup verified successfully.")
    return EXIT_OK


def cmd_info(args: argparse.Namespace) -> int:
    """Show an archive's manifest."""
    reader = ArchiveReader(Path(args.archive))
    manifest = reader.read_manifest()

    if args.json:
        output(json.dumps(manifest.to_dict(), indent=2), force=True)
        return EXIT_OK

    output("Backup information:")
    output(f"  Ranch: {manifest.ranch_name} ({manifest.ranch_id})")
    output(f"  Exported: {manifest.exported_at.isoformat()}")
    output(f"  Format version: {manifest.format_version}")
    output(f"  Generator: {manifest.generator}")
    output()
    output("Records:")
    for entity in ENTITY_ORDER:
        output(f"  {entity:<28} {manifest.entity_counts.get(entity, 0):>8}")
    output()
    output(f"Photos: {manifest.media_count}")
    if manifest.missing_media:
        output(f"Photos missing at export: {len(manifest.missing_media)}")
    return EXIT_OK


def cmd_demo(args: argparse.Namespace) -> int:
    """Create the demo ranch."""
    from ranchvault.demo import DemoRanchExistsError, generate_demo_data

    settings = _load_settings(args)
    record_store = _open_record_store(settings)
    blob_store = _open_blob_store(settings)

    output("ranchvault Demo Data Generator")
    output("=" * 50)
    output()

    try:
        summary = generate_demo_data(record_store, blob_store, force=args.force, seed=args.seed)
    except DemoRanchExistsError as e:
        output_error(f"Error: {e}")
        return EXIT_FAILURE

    output("Demo ranch created successfully!")
    output()
    output(f"  Ranch: {summary['ranch_name']} ({summary['ranch_id']})")
    output(f"  Animals: {summary['animals']}")
    output(f"  Medical records: {summary['medical_records']}")
    output(f"  Custom field values: {summary['custom_field_values']}")
    output(f"  Photos: {summary['photos']}")
    output()
    output("Next steps:")
    output(f"  ranchvault export {summary['ranch_id']}")
    return EXIT_OK


def main() -> NoReturn:
    """Main entry point for ranchvault CLI."""
    parser = create_parser()
    args = parser.parse_args()

    # Set up logging and output mode
    setup_logging(args.verbose, args.quiet)
    set_output_mode(args.quiet, args.verbose)

    if args.command is None:
        parser.print_help()
        sys.exit(EXIT_OK)

    try:
        exit_code = args.func(args)
        sys.exit(exit_code)
    except (KeyboardInterrupt, OperationCancelledError):
        output_error("\nOperation cancelled.")
        sys.exit(EXIT_CANCELLED)
    except RestoreLockError as e:
        output_error(f"Error: {e}")
        sys.exit(EXIT_LOCKED)
    except CredentialError as e:
        output_error(f"Credential error: {e}")
        sys.exit(EXIT_CONFIG_ERROR)
    except ConfigurationError as e:
        output_error(f"Configuration error: {e}")
        sys.exit(EXIT_CONFIG_ERROR)
    except BackupEngineError as e:
        if args.verbose > 0:
            logger.exception("Operation failed")
        output_error(f"Error: {e}")
        sys.exit(EXIT_FAILURE)
    except Exception as e:
        if args.verbose > 0:
            raise
        output_error(f"Error: {e}")
        sys.exit(EXIT_FAILURE)


if __name__ == "__main__":
    main()
