"""
imagevault CLI - operator commands for the persistence core.

Usage:
    imagevault status [--json]
    imagevault init
    imagevault migrate [VERSION]
    imagevault rollback VERSION
    imagevault history [--limit N] [--json]
    imagevault validate [--json]
    imagevault stats [--json]
    imagevault logs [--page N] [--page-size N] [--operation OP] [--status STATUS] [--json]
    imagevault cleanup-logs [--days N]
    imagevault backup [--reason REASON] [--json]
    imagevault backups [--json]
    imagevault restore NAME
    imagevault config
    imagevault keygen
"""

import argparse
import json
import logging
import sys
from typing import Any, List, Optional

from imagevault.config import get_settings
from imagevault.crypto import generate_key
from imagevault.errors import DatabaseError
from imagevault.logging_config import setup_logging
from imagevault.manager import DatabaseManager
from imagevault.storage.base import OperationStatus, PaginationOptions
from imagevault.storage.migrations import MigrationResult

logger = logging.getLogger(__name__)

# Commands that run before any schema exists
NO_INIT_COMMANDS = {"migrate", "rollback", "history", "validate", "status", "init", "backup", "backups", "restore"}


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _print_result(result: MigrationResult) -> int:
    if result.success:
        print(f"Schema at version {result.version} ({result.duration}ms)")
        for script in result.executed_scripts:
            print(f"  applied {script}")
        return 0
    print(f"Migration failed at version {result.version}: {result.error}")
    if result.failed_script:
        print(f"  failed script: {result.failed_script}")
    return 1


def cmd_status(args, db: DatabaseManager) -> int:
    """Show connection status, quality and schema version."""
    db.test_connection()
    status = db.get_connection_status()
    data = {
        "backend": db.backend.value,
        "connection": status.to_dict(),
        "quality": db.monitor.get_current_quality().value,
        "schema_version": db.get_current_version(),
        "latest_version": db.storage.migrator.get_latest_version(),
    }
    if args.json:
        _print_json(data)
        return 0
    print(f"Backend:        {data['backend']}")
    print(f"Connected:      {'yes' if status.is_connected else 'no'}")
    if status.latency_ms is not None:
        print(f"Latency:        {status.latency_ms:.1f}ms ({data['quality']})")
    if status.last_error:
        print(f"Last error:     {status.last_error}")
    print(f"Schema version: {data['schema_version']} (latest {data['latest_version']})")
    return 0


def cmd_init(args, db: DatabaseManager) -> int:
    return _print_result(db.initialize_schema())


def cmd_migrate(args, db: DatabaseManager) -> int:
    return _print_result(db.migrate_to_version(args.version))


def cmd_rollback(args, db: DatabaseManager) -> int:
    return _print_result(db.rollback_to_version(args.version))


def cmd_history(args, db: DatabaseManager) -> int:
    records = db.get_migration_history(args.limit)
    if args.json:
        _print_json([record.to_dict() for record in records])
        return 0
    if not records:
        print("No migrations applied.")
        return 0
    for record in records:
        applied = record.applied_at.strftime("%Y-%m-%d %H:%M:%S") if record.applied_at else "?"
        print(f"{record.version:<8} {applied}  {record.description or ''}")
    return 0


def cmd_validate(args, db: DatabaseManager) -> int:
    report = db.validate_database_integrity()
    if args.json:
        _print_json(report)
    elif report["valid"]:
        print("Database integrity OK")
    else:
        print("Database integrity problems:")
        for issue in report["issues"]:
            print(f"  - {issue}")
        for recommendation in report["recommendations"]:
            print(f"  > {recommendation}")
    return 0 if report["valid"] else 1


def cmd_stats(args, db: DatabaseManager) -> int:
    stats = db.get_statistics()
    if args.json:
        _print_json(stats)
        return 0
    print(f"Images:          {stats['total_images']}")
    print(f"Favorites:       {stats['favorite_images']}")
    print(f"Uploaded:        {stats['uploaded_images']} (pending {stats['pending_uploads']})")
    for model, count in stats["by_model"].items():
        print(f"  {model}: {count}")
    ops = stats["operations"]
    print(f"Operations:      {ops['total']} ({ops['failed']} failed, {ops['recent_24h']} in 24h)")
    print(f"Avg duration:    {ops['average_duration']}ms")
    return 0


def cmd_logs(args, db: DatabaseManager) -> int:
    filters = {}
    if args.operation:
        filters["operation"] = args.operation
    if args.status:
        filters["status"] = OperationStatus(args.status.upper())
    page = db.get_operation_logs(PaginationOptions(page=args.page, page_size=args.page_size, filters=filters))
    if args.json:
        _print_json(page.to_dict())
        return 0
    for entry in page.data:
        created = entry.created_at.strftime("%Y-%m-%d %H:%M:%S") if entry.created_at else "?"
        line = f"{created}  {entry.status.value:<7} {entry.operation:<12} {entry.table_name}"
        if entry.record_id:
            line += f"/{entry.record_id}"
        if entry.duration is not None:
            line += f" ({entry.duration}ms)"
        print(line)
    print(f"Page {page.page}/{max(page.total_pages, 1)} - {page.total} entries")
    return 0


def cmd_cleanup_logs(args, db: DatabaseManager) -> int:
    removed = db.cleanup_operation_logs(args.days)
    removed_migrations = db.cleanup_migration_logs(args.days)
    print(f"Removed {removed} operation log(s) and {removed_migrations} migration log(s)")
    return 0


def cmd_backup(args, db: DatabaseManager) -> int:
    info = db.backup_database(args.reason)
    if args.json:
        _print_json(info.to_dict())
        return 0
    print(f"Backup written: {info.path} ({info.size} bytes)")
    return 0


def cmd_backups(args, db: DatabaseManager) -> int:
    backups = db.list_backups()
    if args.json:
        _print_json([info.to_dict() for info in backups])
        return 0
    if not backups:
        print("No backups found.")
        return 0
    for info in backups:
        print(f"{info.created_at:%Y-%m-%d %H:%M:%S}  {info.size:>10}  {info.name}")
    return 0


def cmd_restore(args, db: DatabaseManager) -> int:
    saved = db.restore_backup(args.name)
    print(f"Restored from {args.name}")
    print(f"Previous state saved as {saved.name}")
    return 0


def cmd_config(args) -> int:
    _print_json(get_settings().redacted())
    return 0


def cmd_keygen(args) -> int:
    print(generate_key())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="imagevault",
        description="Persistence core for the image workspace",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    p_status = subparsers.add_parser("status", help="Show connection and schema status")
    p_status.add_argument("--json", "-j", action="store_true")

    subparsers.add_parser("init", help="Create or upgrade the schema to the latest version")

    p_migrate = subparsers.add_parser("migrate", help="Migrate the schema")
    p_migrate.add_argument("version", nargs="?", help="Target version (default: latest)")

    p_rollback = subparsers.add_parser("rollback", help="Roll the schema back")
    p_rollback.add_argument("version", help="Target version")

    p_history = subparsers.add_parser("history", help="Show applied migrations")
    p_history.add_argument("--limit", "-l", type=int, default=50)
    p_history.add_argument("--json", "-j", action="store_true")

    p_validate = subparsers.add_parser("validate", help="Check tables, columns and indexes")
    p_validate.add_argument("--json", "-j", action="store_true")

    p_stats = subparsers.add_parser("stats", help="Show image and operation statistics")
    p_stats.add_argument("--json", "-j", action="store_true")

    p_logs = subparsers.add_parser("logs", help="Show operation logs")
    p_logs.add_argument("--page", type=int, default=1)
    p_logs.add_argument("--page-size", type=int, default=20)
    p_logs.add_argument("--operation", "-o", help="Filter by operation (e.g. SAVE, UPDATE)")
    p_logs.add_argument("--status", "-s", choices=["success", "failed", "SUCCESS", "FAILED"])
    p_logs.add_argument("--json", "-j", action="store_true")

    p_cleanup = subparsers.add_parser("cleanup-logs", help="Prune old operation and migration logs")
    p_cleanup.add_argument("--days", "-d", type=int, default=30, help="Days to keep (default: 30)")

    p_backup = subparsers.add_parser("backup", help="Snapshot the embedded database")
    p_backup.add_argument("--reason", "-r", default="manual", help="Label for the backup file name")
    p_backup.add_argument("--json", "-j", action="store_true")

    p_backups = subparsers.add_parser("backups", help="List database backups, newest first")
    p_backups.add_argument("--json", "-j", action="store_true")

    p_restore = subparsers.add_parser("restore", help="Restore the embedded database from a backup")
    p_restore.add_argument("name", help="Backup file name (see: imagevault backups)")

    subparsers.add_parser("config", help="Show configuration with credentials masked")
    subparsers.add_parser("keygen", help="Generate a new ENCRYPTION_KEY")
    return parser


COMMANDS = {
    "status": cmd_status,
    "init": cmd_init,
    "migrate": cmd_migrate,
    "rollback": cmd_rollback,
    "history": cmd_history,
    "validate": cmd_validate,
    "stats": cmd_stats,
    "logs": cmd_logs,
    "cleanup-logs": cmd_cleanup_logs,
    "backup": cmd_backup,
    "backups": cmd_backups,
    "restore": cmd_restore,
}


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    settings = get_settings()
    setup_logging(settings.log_level, settings.log_dir)

    # Commands that never touch the database
    if args.command == "config":
        return cmd_config(args)
    if args.command == "keygen":
        return cmd_keygen(args)

    try:
        db = DatabaseManager(settings)
    except (ValueError, TypeError) as e:
        logger.error(f"Failed to initialize imagevault: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 1

    try:
        db.start(initialize=args.command not in NO_INIT_COMMANDS, monitor=False, backups=False)
        return COMMANDS[args.command](args, db)
    except DatabaseError as e:
        logger.error(f"Command failed: {e.original_message}")
        print(f"Error: {e.user_message}", file=sys.stderr)
        for suggestion in e.suggestions:
            print(f"  - {suggestion}", file=sys.stderr)
        return 1
    except (ValueError, FileNotFoundError) as e:
        logger.error(f"Input validation error: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        db.shutdown()


if __name__ == "__main__":
    sys.exit(main())
