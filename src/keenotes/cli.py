#!/usr/bin/env python3
"""Command-line interface for KeeNotes.

This module provides CLI commands for posting, syncing and browsing notes.
Uses only core/ modules.

Commands:
    post [content]          Encrypt and post a new note
    sync now|watch|status|reset
                            Synchronize the local cache with the server
    list-notes              List cached notes
    show-note <id>          Show a specific note
    search <query>          Search cached notes
    review                  Show notes from the last N days
    import <file>           Import notes from an NDJSON file
    clear-data              Delete all cached notes and the sync state
    config show|set         Show or change configuration
"""

from __future__ import annotations

import argparse
import getpass
import json
import sys
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from keenotes.core.api_client import ApiClient
from keenotes.core.config import Config, ConfigurationError
from keenotes.core.data_import import DataImporter, ImportInProgressError, validate_file
from keenotes.core.database import Database
from keenotes.core.models import SyncStatus
from keenotes.core.sync_client import SyncClient
from keenotes.core.transport import build_ws_url
from keenotes.core.validation import (
    ValidationError,
    validate_note_content,
    validate_note_id,
    validate_positive_int,
    validate_search_query,
)


def format_note(note: Dict[str, Any], format_type: str = "text") -> str:
    """Format a single note for display.

    Args:
        note: Note dictionary from database
        format_type: Output format (text, json)

    Returns:
        Formatted note string
    """
    if format_type == "json":
        return json.dumps(note, indent=2, ensure_ascii=False)
    lines = [
        f"ID: {note['id']}",
        f"Created: {note['created_at']}",
        f"Channel: {note['channel']}",
        f"\n{note['content']}",
    ]
    return "\n".join(lines)


def print_notes(notes: List[Dict[str, Any]], format_type: str, empty_message: str) -> None:
    """Print a list of notes, truncating content in text mode."""
    if format_type == "json":
        print(json.dumps(notes, indent=2, ensure_ascii=False))
        return

    if not notes:
        print(empty_message)
        return

    for i, note in enumerate(notes):
        if i > 0:
            print("\n" + "=" * 60 + "\n")
        content = note["content"]
        if len(content) > 100:
            content = content[:100] + "..."
        print(f"ID: {note['id']} | Created: {note['created_at']} | Channel: {note['channel']}")
        print(content)


def ensure_password(config: Config) -> bool:
    """Make sure an encryption password is cached, prompting if needed.

    Returns:
        True if a password is available
    """
    if config.has_encryption_password():
        return True
    if not sys.stdin.isatty():
        print(
            "Error: Encryption password not set. Set KEENOTES_PASSWORD or run interactively.",
            file=sys.stderr,
        )
        return False
    password = getpass.getpass("Encryption password: ")
    if not password:
        print("Error: Encryption password must not be empty.", file=sys.stderr)
        return False
    config.set_encryption_password(password)
    return True


def cmd_post(config: Config, args: argparse.Namespace) -> int:
    """Encrypt and post a new note.

    Args:
        config: Config instance
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for success, 1 for error)
    """
    content = args.content
    if content is None:
        content = sys.stdin.read()
    content = content.strip()
    validate_note_content(content)

    if not config.is_configured():
        print("Error: Configure endpoint_url and token first (keenotes config set ...).", file=sys.stderr)
        return 1
    if not ensure_password(config):
        return 1

    result = ApiClient(config).post_note(content, channel=args.channel)

    if args.format == "json":
        print(json.dumps({
            "success": result.success,
            "message": result.message,
            "note_id": result.note_id,
        }, indent=2))
    elif result.success:
        suffix = f" (ID: {result.note_id})" if result.note_id is not None else ""
        print(f"Note posted{suffix}")
    else:
        print(f"Error: {result.message}", file=sys.stderr)

    return 0 if result.success else 1


def cmd_list_notes(db: Database, args: argparse.Namespace) -> int:
    """List cached notes, newest first."""
    if args.limit is not None:
        notes = db.get_recent_notes(validate_positive_int(args.limit, "limit"))
    else:
        notes = db.get_all_notes()
    print_notes(notes, args.format, "No notes found.")
    return 0


def cmd_show_note(db: Database, args: argparse.Namespace) -> int:
    """Show details of a specific note.

    Returns:
        Exit code (0 for success, 1 for not found)
    """
    note_id = validate_note_id(args.note_id)
    note = db.get_note(note_id)

    if not note:
        print(f"Error: Note with ID {note_id} not found.", file=sys.stderr)
        return 1

    print(format_note(note, args.format))
    return 0


def cmd_search(db: Database, args: argparse.Namespace) -> int:
    """Search cached notes by substring."""
    validate_search_query(args.query)
    notes = db.search_notes(args.query)
    print_notes(notes, args.format, f"No notes matching '{args.query}'.")
    return 0


def cmd_review(db: Database, config: Config, args: argparse.Namespace) -> int:
    """Show notes created within the review window."""
    days = args.days if args.days is not None else config.get_review_days()
    days = validate_positive_int(days, "days")
    notes = db.get_notes_for_review(days)
    if args.format != "json" and notes:
        print(f"Notes from the last {days} day(s): {len(notes)}\n")
    print_notes(notes, args.format, f"No notes in the last {days} day(s).")
    return 0


def _sync_result_dict(result: Any) -> Dict[str, Any]:
    return {
        "success": result.success,
        "notes_synced": result.notes_synced,
        "last_sync_id": result.last_sync_id,
        "errors": result.errors,
    }


def cmd_sync_now(db: Database, config: Config, args: argparse.Namespace) -> int:
    """Catch up with the server once and disconnect.

    Returns:
        Exit code (0 for success, 1 for any failures)
    """
    config.require_server()
    if not ensure_password(config):
        return 1

    client = SyncClient(db, config)
    result = client.sync_once(timeout=args.timeout)

    if args.format == "json":
        print(json.dumps(_sync_result_dict(result), indent=2))
    elif result.success:
        print("Sync completed:")
        print(f"  Notes synced: {result.notes_synced}")
        print(f"  Last sync ID: {result.last_sync_id}")
    else:
        print("Sync failed:")
        for error in result.errors:
            print(f"  - {error}")

    return 0 if result.success else 1


class _WatchPrinter:
    """Prints sync progress while watching."""

    def __init__(self, format_type: str) -> None:
        self.format_type = format_type

    def on_status_changed(self, status: SyncStatus) -> None:
        if self.format_type != "json":
            print(f"[sync] {status.value}")

    def on_batch_applied(self, result: Any) -> None:
        if self.format_type != "json":
            print(f"[sync] batch {result.batch_id}/{result.total_batches}: {result.applied} notes")

    def on_note_received(self, note: Dict[str, Any]) -> None:
        if self.format_type == "json":
            print(json.dumps(note, ensure_ascii=False), flush=True)
        else:
            print(format_note(note))
            print()


def cmd_sync_watch(db: Database, config: Config, args: argparse.Namespace) -> int:
    """Stay connected and print notes as they arrive, until interrupted."""
    config.require_server()
    if not ensure_password(config):
        return 1

    client = SyncClient(db, config)
    client.add_listener(_WatchPrinter(args.format))
    stop = threading.Event()
    client.start()
    if args.format != "json":
        print("Watching for notes. Press Ctrl+C to stop.")
    try:
        while not stop.wait(1.0):
            pass
    except KeyboardInterrupt:
        pass
    finally:
        client.stop()
    return 0


def cmd_sync_status(db: Database, config: Config, args: argparse.Namespace) -> int:
    """Show sync state and cache statistics."""
    state = db.get_sync_state()
    endpoint = config.get_endpoint_url()
    try:
        ws_url: Optional[str] = build_ws_url(endpoint) if endpoint else None
    except ValueError:
        ws_url = None

    status = {
        "endpoint_url": endpoint,
        "websocket_url": ws_url,
        "client_id": config.get_client_id(),
        "configured": config.is_configured(),
        "last_sync_id": state["last_sync_id"],
        "last_sync_time": state["last_sync_time"],
        "note_count": db.get_note_count(),
        "oldest_note": db.get_oldest_note_date(),
    }

    if args.format == "json":
        print(json.dumps(status, indent=2))
    else:
        print(f"Endpoint: {endpoint or '(not configured)'}")
        if ws_url:
            print(f"Sync URL: {ws_url}")
        print(f"Client ID: {status['client_id']}")
        print(f"Last Sync ID: {status['last_sync_id']}")
        print(f"Last Sync Time: {status['last_sync_time'] or 'never'}")
        print(f"Cached Notes: {status['note_count']}")
        if status["oldest_note"]:
            print(f"Oldest Note: {status['oldest_note']}")
    return 0


def cmd_sync_reset(db: Database, args: argparse.Namespace) -> int:
    """Forget the sync watermark (notes are kept)."""
    db.reset_sync_state()
    if args.format == "json":
        print(json.dumps({"reset": True}))
    else:
        print("Sync state reset. The next sync will fetch all notes.")
    return 0


def cmd_import(config: Config, args: argparse.Namespace) -> int:
    """Validate and import an NDJSON file of notes."""
    path = Path(args.file)
    validation = validate_file(path)

    if not validation.valid:
        if args.format == "json":
            print(json.dumps({"valid": False, "error": validation.error_message}, indent=2))
        else:
            print(f"Error: {validation.error_message}", file=sys.stderr)
        return 1

    if args.validate_only:
        if args.format == "json":
            print(json.dumps({"valid": True, "line_count": validation.line_count}, indent=2))
        else:
            print(f"File is valid: {validation.line_count} notes")
        return 0

    if not config.is_configured():
        print("Error: Configure endpoint_url and token first (keenotes config set ...).", file=sys.stderr)
        return 1
    if not ensure_password(config):
        return 1

    def show_progress(current: int, total: int) -> None:
        if args.format != "json":
            print(f"\rImporting {current}/{total}", end="", file=sys.stderr, flush=True)

    importer = DataImporter(ApiClient(config), report_dir=config.get_config_dir())
    try:
        result = importer.import_file(path, show_progress)
    except ImportInProgressError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    if args.format != "json":
        print(file=sys.stderr)

    if args.format == "json":
        print(json.dumps({
            "total": result.total,
            "success": result.success,
            "failed": result.failed,
            "failed_lines": result.failed_lines,
            "report_file": str(result.report_file) if result.report_file else None,
        }, indent=2))
    else:
        print(f"Imported {result.success} of {result.total} notes")
        if result.failed:
            print(f"Failed: {result.failed}")
            for line in result.failed_lines[:10]:
                print(f"  - {line}")
            if result.report_file:
                print(f"Full report: {result.report_file}")

    return 0 if result.failed == 0 else 1


def cmd_clear_data(db: Database, args: argparse.Namespace) -> int:
    """Delete all cached notes and the sync state."""
    if not args.yes:
        answer = input("Delete all cached notes and sync state? Type 'yes' to confirm: ")
        if answer.strip().lower() != "yes":
            print("Aborted.")
            return 1

    db.clear_all_data()
    if args.format == "json":
        print(json.dumps({"cleared": True}))
    else:
        print("All local data cleared.")
    return 0


def cmd_config_show(config: Config, args: argparse.Namespace) -> int:
    """Show configuration with the token masked."""
    data = dict(config.config_data)
    token = data.get("token") or ""
    if token:
        data["token"] = token[:4] + "..." if len(token) > 8 else "***"
    data["password_set"] = config.has_encryption_password()

    if args.format == "json":
        print(json.dumps(data, indent=2))
    else:
        for key in sorted(data):
            print(f"{key}: {data[key]}")
    return 0


def cmd_config_set(config: Config, args: argparse.Namespace) -> int:
    """Set a configuration value."""
    config.set(args.key, args.value)
    if args.format == "json":
        print(json.dumps({"key": args.key, "value": config.get(args.key)}))
    else:
        print(f"Set {args.key}")
    return 0


def add_cli_arguments(parser: argparse.ArgumentParser) -> None:
    """Add all CLI subcommands to the top-level parser.

    Args:
        parser: Top-level argument parser
    """
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    post_parser = subparsers.add_parser("post", help="Encrypt and post a new note")
    post_parser.add_argument(
        "content",
        nargs="?",
        type=str,
        help="Note content (reads from stdin if not provided)"
    )
    post_parser.add_argument(
        "--channel",
        type=str,
        default=None,
        help="Channel label (default: configured channel)"
    )

    sync_parser = subparsers.add_parser("sync", help="Synchronize with the server")
    sync_subparsers = sync_parser.add_subparsers(dest="sync_command", help="Sync commands")
    now_parser = sync_subparsers.add_parser("now", help="Catch up once and exit")
    now_parser.add_argument(
        "--timeout",
        type=float,
        default=60.0,
        help="Seconds to wait for the sync to complete (default: 60)"
    )
    sync_subparsers.add_parser("watch", help="Stay connected and print new notes")
    sync_subparsers.add_parser("status", help="Show sync state")
    sync_subparsers.add_parser("reset", help="Forget the sync watermark")

    list_parser = subparsers.add_parser("list-notes", help="List cached notes")
    list_parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Show only the newest N notes"
    )

    show_parser = subparsers.add_parser("show-note", help="Show a specific note")
    show_parser.add_argument("note_id", type=str, help="ID of the note to show")

    search_parser = subparsers.add_parser("search", help="Search cached notes")
    search_parser.add_argument("query", type=str, help="Text to search for")

    review_parser = subparsers.add_parser("review", help="Show recent notes")
    review_parser.add_argument(
        "--days",
        type=int,
        default=None,
        help="Review window in days (default: review_days from config)"
    )

    import_parser = subparsers.add_parser("import", help="Import notes from an NDJSON file")
    import_parser.add_argument("file", type=str, help="NDJSON file to import")
    import_parser.add_argument(
        "--validate-only",
        action="store_true",
        help="Only check the file, do not post anything"
    )

    clear_parser = subparsers.add_parser("clear-data", help="Delete all cached notes")
    clear_parser.add_argument(
        "-y", "--yes",
        action="store_true",
        help="Do not ask for confirmation"
    )

    config_parser = subparsers.add_parser("config", help="Show or change configuration")
    config_subparsers = config_parser.add_subparsers(dest="config_command", help="Config commands")
    config_subparsers.add_parser("show", help="Show configuration")
    set_parser = config_subparsers.add_parser("set", help="Set a configuration value")
    set_parser.add_argument("key", type=str, help="Configuration key")
    set_parser.add_argument("value", type=str, help="New value")


def run(config_dir: Optional[Path], args: argparse.Namespace) -> int:
    """Run CLI with given arguments.

    Args:
        config_dir: Custom configuration directory or None for default
        args: Parsed command-line arguments (should have command attribute)

    Returns:
        Exit code (0 for success, 1 for error)
    """
    if not getattr(args, "command", None):
        print("Error: No command specified. Use --help for available commands.", file=sys.stderr)
        return 1

    config = Config(config_dir=config_dir)

    # Commands that do not need the database
    try:
        if args.command == "config":
            config_cmd = getattr(args, "config_command", None)
            if config_cmd == "show":
                return cmd_config_show(config, args)
            elif config_cmd == "set":
                return cmd_config_set(config, args)
            print("Error: No config command specified. Use 'config --help'.", file=sys.stderr)
            return 1
        elif args.command == "post":
            return cmd_post(config, args)
        elif args.command == "import":
            return cmd_import(config, args)
    except ValidationError as e:
        print(f"Error: Invalid {e.field} - {e.message}", file=sys.stderr)
        return 1

    db = Database(config.get_database_file())

    try:
        if args.command == "list-notes":
            return cmd_list_notes(db, args)
        elif args.command == "show-note":
            return cmd_show_note(db, args)
        elif args.command == "search":
            return cmd_search(db, args)
        elif args.command == "review":
            return cmd_review(db, config, args)
        elif args.command == "clear-data":
            return cmd_clear_data(db, args)
        elif args.command == "sync":
            sync_cmd = getattr(args, "sync_command", None)
            if not sync_cmd:
                print("Error: No sync command specified. Use 'sync --help'.", file=sys.stderr)
                return 1
            if sync_cmd == "now":
                return cmd_sync_now(db, config, args)
            elif sync_cmd == "watch":
                return cmd_sync_watch(db, config, args)
            elif sync_cmd == "status":
                return cmd_sync_status(db, config, args)
            elif sync_cmd == "reset":
                return cmd_sync_reset(db, args)
            else:
                print(f"Error: Unknown sync command '{sync_cmd}'", file=sys.stderr)
                return 1
        else:
            print(f"Error: Unknown command '{args.command}'", file=sys.stderr)
            return 1
    except ValidationError as e:
        print(f"Error: Invalid {e.field} - {e.message}", file=sys.stderr)
        return 1
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        db.close()
