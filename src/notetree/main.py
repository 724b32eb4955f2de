#!/usr/bin/env python
"""Command line entry point for notetree."""
import argparse
import asyncio
import atexit
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

from notetree import __version__
from notetree.config import config
from notetree.exceptions import NotetreeError
from notetree.models.db_models import init_db
from notetree.models.schema import Folder
from notetree.observability import configure_logging, metrics
from notetree.services.workspace_service import WorkspaceService
from notetree.storage.folder_repository import FolderRepository
from notetree.storage.note_repository import NoteRepository
from notetree.utils import truncate


def parse_args(argv: Optional[List[str]] = None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="notetree", description="Folders and notes in a SQLite workspace"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--database-path",
        help="SQLite database file path",
        type=str,
        default=os.environ.get("NOTETREE_DATABASE_PATH"),
    )
    parser.add_argument(
        "--log-level",
        help="Logging level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.environ.get("NOTETREE_LOG_LEVEL", "WARNING"),
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init", help="Create the database schema")
    subparsers.add_parser("tree", help="Print folders and notes")

    mkdir = subparsers.add_parser("mkdir", help="Create a folder")
    mkdir.add_argument("name")
    mkdir.add_argument("--parent", type=int, default=None, help="Parent folder id")

    note = subparsers.add_parser("note", help="Create a note")
    note.add_argument("title")
    note.add_argument("--folder", type=int, default=None, help="Folder id")
    note.add_argument("--content", default="", help="Note body")

    mv = subparsers.add_parser("mv", help="Move a folder")
    mv.add_argument("folder_id", type=int)
    mv.add_argument("--to", type=int, default=None, help="New parent id (root if omitted)")
    mv.add_argument("--position", type=int, default=None)

    rmdir = subparsers.add_parser("rmdir", help="Delete a folder with its subfolders and notes")
    rmdir.add_argument("folder_id", type=int)

    fav = subparsers.add_parser("fav", help="Toggle the favorite flag of a folder or note")
    fav.add_argument("kind", choices=["folder", "note"])
    fav.add_argument("entity_id", type=int)

    subparsers.add_parser("favorites", help="List favorite folders and notes")

    stats = subparsers.add_parser("stats", help="Show store operation metrics")
    stats.add_argument("--reset", action="store_true", help="Clear the collected metrics")

    return parser.parse_args(argv)


def update_config(args):
    """Update the global config with command line arguments."""
    if args.database_path:
        config.database_path = Path(args.database_path)


def _save_metrics_on_exit():
    """Save metrics to disk on exit."""
    try:
        if metrics.save_metrics():
            logging.getLogger(__name__).info("Metrics saved to disk on exit")
    except OSError as e:
        logging.getLogger(__name__).warning(f"Failed to save metrics on exit: {e}")


def render_tree(service: WorkspaceService) -> List[str]:
    """Lines of an indented listing: folders in order, their notes below them."""
    lines: List[str] = []

    def _notes(folder_id, depth: int) -> None:
        for note in service.notes_in(folder_id):
            lines.append(f"{'  ' * depth}- {truncate(note.title)} (note {note.id})")

    def _folders(folders: List[Folder], depth: int) -> None:
        for folder in folders:
            lines.append(f"{'  ' * depth}{truncate(folder.name)}/ (folder {folder.id})")
            _folders(service.folders.list_children(folder.id), depth + 1)
            _notes(folder.id, depth + 1)

    _folders(service.folders.list_children(None), 0)
    _notes(None, 0)
    return lines


def render_stats() -> List[str]:
    """Summary lines followed by one line per tracked operation."""
    summary = metrics.get_summary()
    lines = [
        f"Uptime: {summary['uptime_seconds']:.0f} seconds",
        f"Operations: {summary['total_operations']}",
        f"Success rate: {summary['overall_success_rate']:.1%}",
        f"Errors: {summary['total_errors']}",
    ]
    for name, m in sorted(metrics.get_metrics().items()):
        line = f"{name}: {m['count']} calls, {m['error_count']} errors, avg {m['avg_duration_ms']}ms"
        if m["last_error"]:
            line += f" (last error: {m['last_error']})"
        lines.append(line)
    return lines


async def run_command(args, service: WorkspaceService) -> int:
    """Run one subcommand against a loaded workspace; returns the exit code."""
    await service.load()

    if args.command == "init":
        print(f"Database ready: {config.get_db_url()}")
    elif args.command == "tree":
        for line in render_tree(service):
            print(line)
    elif args.command == "mkdir":
        folder = await service.create_folder(args.name, args.parent)
        if folder is None:
            print(f"Parent folder {args.parent} not found", file=sys.stderr)
            return 1
        print(f"Created folder {folder.id}: {folder.name}")
    elif args.command == "note":
        created = await service.create_note(args.title, args.folder, args.content)
        if created is None:
            print(f"Folder {args.folder} not found", file=sys.stderr)
            return 1
        print(f"Created note {created.id}: {created.title}")
    elif args.command == "mv":
        moved = await service.move_folder(args.folder_id, args.to, args.position)
        if moved is None:
            print("Folder or target not found", file=sys.stderr)
            return 1
        print(f"Moved folder {moved.id} under {moved.parent_id} at {moved.position}")
    elif args.command == "rmdir":
        if service.folders.find(args.folder_id) is None:
            print(f"Folder {args.folder_id} not found", file=sys.stderr)
            return 1
        deleted_notes = await service.delete_folder(args.folder_id)
        print(f"Deleted folder {args.folder_id} and {deleted_notes} notes")
    elif args.command == "fav":
        if args.kind == "folder":
            toggled = await service.toggle_folder_favorite(args.entity_id)
        else:
            toggled = await service.toggle_note_favorite(args.entity_id)
        if toggled is None:
            print(f"{args.kind.capitalize()} {args.entity_id} not found", file=sys.stderr)
            return 1
        state = "now" if toggled.is_favorite else "no longer"
        print(f"{args.kind.capitalize()} {toggled.id} is {state} a favorite")
    elif args.command == "favorites":
        for folder in service.favorite_folders():
            print(f"{truncate(folder.name)}/ (folder {folder.id})")
        for note in service.favorite_notes():
            print(f"- {truncate(note.title)} (note {note.id})")
    elif args.command == "stats":
        if args.reset:
            metrics.reset()
            metrics.save_metrics()
            print("Metrics cleared")
        else:
            for line in render_stats():
                print(line)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Run the notetree command line."""
    args = parse_args(argv)
    update_config(args)

    # Configure logging (persistent file logging with rotation)
    log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    try:
        configure_logging(log_dir=config.log_dir, level=log_level, console=False)
    except OSError as e:
        # Fall back to basic console logging if file logging fails
        logging.basicConfig(level=log_level)
        logging.getLogger(__name__).warning(f"Failed to configure file logging: {e}")

    logger = logging.getLogger(__name__)
    atexit.register(_save_metrics_on_exit)

    try:
        logger.info(f"Using SQLite database: {config.get_db_url()}")
        engine = init_db()
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        print(f"Failed to initialize database: {e}", file=sys.stderr)
        return 1

    service = WorkspaceService(FolderRepository(engine), NoteRepository(engine))
    try:
        return asyncio.run(run_command(args, service))
    except NotetreeError as e:
        logger.error(f"Command '{args.command}' failed: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
