#!/usr/bin/env python3
"""
Bookmark Tools - Import and export a user's bookmarks

This script:
- Imports browser bookmark files, recreating folders as collections
- Exports collections and bookmarks as a browser-importable bookmark file
- Imports and exports the JSON backup format
- Backs up the store before writing to it
"""

import argparse
import json
import logging
import os
import shutil
import sys
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import quote, urlparse

import pyperclip

from bookmark_store import (
    JsonBookmarkStore,
    StoreError,
    bookmark_from_document,
    bookmark_to_json,
    collection_from_document,
    collection_to_json,
)
from netscape_bookmarks import (
    Bookmark,
    Collection,
    ParsedFolder,
    ParsedNode,
    count_parsed_nodes,
    current_unix_seconds,
    decode_basic_entities,
    decode_entities,
    generate_bookmark_file,
    parse_bookmark_file,
)


# Configuration defaults
DEFAULT_CONFIG = {
    'store_path': os.environ.get('BOOKMARK_STORE', 'bookmarks-store.json'),
    'output_dir': 'bookmarks-exports',
    'backup_dir': 'bookmarks-backups',
    'log_file': 'bookmark_tools.log',
    'lang': os.environ.get('BOOKMARK_LANG', 'en'),
    'entity_decoder': 'markup',
    'collection_colors': [
        '#3b82f6',
        '#8b5cf6',
        '#ec4899',
        '#ef4444',
        '#f97316',
        '#f59e0b',
        '#eab308',
        '#84cc16',
        '#22c55e',
        '#10b981',
        '#14b8a6',
        '#06b6d4',
    ],
    'collection_icon': '\U0001F4C1',
    'untitled_collection': 'Untitled collection',
    'favicon_service': 'https://www.google.com/s2/favicons?domain={host}&sz=32',
    'screenshot_service': 'https://image.thum.io/get/width/800/crop/600/{url}',
}

ENTITY_DECODERS: Dict[str, Callable[[Optional[str]], str]] = {
    'markup': decode_entities,
    'basic': decode_basic_entities,
}

DANGEROUS_SCHEMES = ('javascript', 'data', 'vbscript')
NETWORK_SCHEMES = ('http', 'https', 'ftp', 'ws', 'wss')


class BookmarkToolsError(Exception):
    """A failure reported to the user without a traceback"""
    pass


class BookmarkImportError(BookmarkToolsError):
    """The input file has nothing that can be imported"""
    pass


class NothingToExportError(BookmarkToolsError):
    """The user has no bookmarks and no collections"""
    pass


@dataclass
class ImportStats:
    collections: int = 0
    bookmarks: int = 0
    skipped: int = 0


class ColorCycle:
    """Hands out palette colours in order, wrapping around"""

    def __init__(self, palette: List[str]):
        self.palette = list(palette)
        self.cursor = 0

    def next_color(self) -> str:
        if not self.palette:
            return ''
        color = self.palette[self.cursor % len(self.palette)]
        self.cursor += 1
        return color


@dataclass
class _ImportRun:
    store: JsonBookmarkStore
    owner: str
    config: Dict[str, Any]
    colors: ColorCycle
    stats: ImportStats = field(default_factory=ImportStats)


def setup_logging(log_file: Optional[str] = None, verbose: bool = False) -> None:
    """Setup logging configuration with proper encoding"""
    # Clear any existing handlers
    for handler in logging.root.handlers[:]:
        logging.root.removeHandler(handler)

    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding='utf-8'))

    formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')
    for handler in handlers:
        handler.setFormatter(formatter)
        logging.root.addHandler(handler)

    logging.root.setLevel(logging.DEBUG if verbose else logging.INFO)


def is_importable_url(url: Optional[str]) -> bool:
    """Check that a URL parses and is safe to store"""
    if not url or not isinstance(url, str):
        return False
    try:
        parsed = urlparse(url.strip())
    except ValueError:
        return False

    scheme = parsed.scheme.lower()
    if not scheme or scheme in DANGEROUS_SCHEMES:
        return False
    if scheme in NETWORK_SCHEMES and not parsed.hostname:
        return False
    return True


def favicon_url_for(url: str, icon: Optional[str], config: Dict[str, Any]) -> str:
    """Use the file's icon, or the favicon service for the URL's host"""
    if icon:
        return icon
    host = urlparse(url).hostname
    if not host:
        return ''
    return config['favicon_service'].format(host=host)


def screenshot_url_for(url: str, config: Dict[str, Any]) -> str:
    return config['screenshot_service'].format(url=quote(url, safe="!*'()"))


def read_text_file(file_path: str) -> str:
    """Read a UTF-8 text file, tolerating a byte order mark"""
    try:
        with open(file_path, 'r', encoding='utf-8-sig') as f:
            return f.read()
    except UnicodeDecodeError as e:
        logging.error(f"Failed to read file {file_path}: {e}")
        raise BookmarkImportError(f"{file_path} is not a UTF-8 text file") from e
    except FileNotFoundError:
        raise
    except OSError as e:
        logging.error(f"Failed to read file {file_path}: {e}")
        raise BookmarkImportError(f"Could not read {file_path}: {e}") from e


def write_text_file(file_path: Path, content: str) -> None:
    file_path.parent.mkdir(parents=True, exist_ok=True)
    with open(file_path, 'w', encoding='utf-8') as f:
        f.write(content)


# ---------------------------------------------------------------------------
# Import
# ---------------------------------------------------------------------------

def _persist_nodes(nodes: List[ParsedNode], parent_id: Optional[str], run: _ImportRun) -> None:
    """Write nodes depth first; a folder's id exists before its children are written"""
    config = run.config
    pending = [(node, parent_id) for node in reversed(nodes)]
    while pending:
        node, parent_id = pending.pop()
        if isinstance(node, ParsedFolder):
            collection = Collection(
                name=node.title or config['untitled_collection'],
                description=node.description,
                color=run.colors.next_color(),
                icon=config['collection_icon'],
                parent_id=parent_id,
                created_at=node.add_date,
                updated_at=node.last_modified,
            )
            collection_id = run.store.add_collection(run.owner, collection)
            run.stats.collections += 1
            logging.debug(f"Created collection {collection_id}: {collection.name}")
            pending.extend((child, collection_id) for child in reversed(node.children))
            continue

        if not is_importable_url(node.url):
            logging.warning(f"Skipping bookmark with invalid URL: {node.url[:100]}")
            run.stats.skipped += 1
            continue

        bookmark = Bookmark(
            url=node.url,
            title=node.title or node.url,
            description=node.description,
            favicon_url=favicon_url_for(node.url, node.icon, config),
            screenshot_url=screenshot_url_for(node.url, config),
            collection_id=parent_id,
            lang=config['lang'],
            created_at=node.add_date,
            updated_at=node.last_modified,
        )
        run.store.add_bookmark(run.owner, bookmark)
        run.stats.bookmarks += 1


def import_parsed_tree(nodes: List[ParsedNode], store: JsonBookmarkStore, owner: str,
                       config: Optional[Dict[str, Any]] = None) -> ImportStats:
    """Persist a parsed forest as collections and bookmarks for one owner"""
    config = config or DEFAULT_CONFIG
    run = _ImportRun(store, owner, config, ColorCycle(config['collection_colors']))
    _persist_nodes(nodes, None, run)
    return run.stats


def import_netscape_text(text: str, store: JsonBookmarkStore, owner: str,
                         config: Optional[Dict[str, Any]] = None) -> ImportStats:
    """Parse a Netscape bookmark file and persist its folders and links"""
    config = config or DEFAULT_CONFIG
    decoder = ENTITY_DECODERS[config['entity_decoder']]
    nodes = parse_bookmark_file(text, decoder=decoder)
    if not nodes:
        raise BookmarkImportError("File does not match the expected Netscape bookmark structure")

    folders, links = count_parsed_nodes(nodes)
    print(f"Found {folders} folders and {links} bookmarks")
    return import_parsed_tree(nodes, store, owner, config)


def _import_json_collections(documents: List[Any], run: _ImportRun) -> Dict[str, str]:
    """Recreate collections parents first; returns old id -> new id"""
    config = run.config
    pending = [collection_from_document(doc.get('id'), doc) for doc in documents if isinstance(doc, dict)]
    known_ids = {collection.id for collection in pending if collection.id}
    id_map: Dict[str, str] = {}

    while pending:
        deferred = []
        for collection in pending:
            parent_id = collection.parent_id
            if parent_id and parent_id in known_ids and parent_id not in id_map:
                deferred.append(collection)
                continue
            new_collection = Collection(
                name=collection.name or config['untitled_collection'],
                description=collection.description,
                color=collection.color or run.colors.next_color(),
                icon=collection.icon or config['collection_icon'],
                parent_id=id_map.get(parent_id) if parent_id else None,
                created_at=collection.created_at,
                updated_at=collection.updated_at,
            )
            new_id = run.store.add_collection(run.owner, new_collection)
            if collection.id:
                id_map[collection.id] = new_id
            run.stats.collections += 1

        if len(deferred) == len(pending):
            # parent cycle: detach one member and let the rest follow it
            logging.warning(f"Collection '{deferred[0].name}' is part of a parent cycle; "
                            f"importing it at the top level")
            deferred[0].parent_id = None
        pending = deferred

    return id_map


def import_json_payload(payload: Any, store: JsonBookmarkStore, owner: str,
                        config: Optional[Dict[str, Any]] = None) -> ImportStats:
    """Import a JSON export: a list of bookmarks, or {"items": [...], "collections": [...]}"""
    config = config or DEFAULT_CONFIG
    if isinstance(payload, list):
        items, collections = payload, []
    elif isinstance(payload, dict):
        items = payload.get('items') or []
        collections = payload.get('collections') or []
    else:
        raise BookmarkImportError("JSON file must hold a list of bookmarks or an object with 'items'")

    if not isinstance(items, list) or not isinstance(collections, list):
        raise BookmarkImportError("JSON 'items' and 'collections' must be lists")
    if not items and not collections:
        raise BookmarkImportError("No entries found to import")

    print(f"Found {len(collections)} collections and {len(items)} bookmarks")
    run = _ImportRun(store, owner, config, ColorCycle(config['collection_colors']))
    id_map = _import_json_collections(collections, run)

    for entry in items:
        if not isinstance(entry, dict):
            run.stats.skipped += 1
            continue
        bookmark = bookmark_from_document(None, entry)
        if not is_importable_url(bookmark.url):
            logging.warning(f"Skipping bookmark with invalid URL: {bookmark.url[:100]}")
            run.stats.skipped += 1
            continue
        bookmark.collection_id = id_map.get(bookmark.collection_id) if bookmark.collection_id else None
        bookmark.title = bookmark.title or bookmark.url
        bookmark.lang = bookmark.lang or config['lang']
        run.store.add_bookmark(owner, bookmark)
        run.stats.bookmarks += 1

    return run.stats


def create_backup(file_path: Path, backup_dir: str) -> str:
    """Copy the store file into the backup directory before it is modified

    Returns:
        Path to the backup file
    """
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    backup_name = f"{file_path.stem}_backup_{timestamp}{file_path.suffix}"
    backup_path = Path(backup_dir) / backup_name

    try:
        backup_path.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(file_path, backup_path)
    except OSError as e:
        raise BookmarkToolsError(f"Could not back up {file_path}: {e} (use --no-backup to skip)") from e

    print(f"\n💾 Backup created: {backup_path} ({os.path.getsize(backup_path):,} bytes)")
    return str(backup_path)


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------

def load_owner_records(store: JsonBookmarkStore, owner: str) -> Tuple[List[Bookmark], List[Collection]]:
    return store.list_bookmarks(owner), store.list_collections(owner)


def _require_content(bookmarks: List[Bookmark], collections: List[Collection]) -> None:
    if not bookmarks and not collections:
        raise NothingToExportError("Nothing to export: create at least one collection or bookmark first")


def export_netscape(bookmarks: List[Bookmark], collections: List[Collection]) -> str:
    """Render the user's records as a Netscape bookmark file"""
    _require_content(bookmarks, collections)
    return generate_bookmark_file(bookmarks, collections)


def export_json(bookmarks: List[Bookmark], collections: List[Collection]) -> str:
    """Render the user's records in the JSON backup format"""
    _require_content(bookmarks, collections)
    now = current_unix_seconds()
    payload = {
        'items': [bookmark_to_json(bookmark, now) for bookmark in bookmarks],
        'collections': [collection_to_json(collection, now) for collection in collections],
    }
    return json.dumps(payload, indent=2, ensure_ascii=False)


def default_export_path(output_dir: str, export_format: str) -> Path:
    date_stamp = datetime.now().strftime("%Y-%m-%d")
    extension = 'json' if export_format == 'json' else 'html'
    return Path(output_dir) / f"bookmarks_{date_stamp}.{extension}"


def copy_to_clipboard(content: str) -> bool:
    """Copy exported text to the clipboard; failures are only reported"""
    try:
        pyperclip.copy(content)
    except pyperclip.PyperclipException as e:
        print(f"⚠️  Clipboard copy failed: {e}")
        return False
    print("✅ Content copied to clipboard!")
    return True


# ---------------------------------------------------------------------------
# Command line
# ---------------------------------------------------------------------------

def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        description='Import and export bookmarks as Netscape bookmark files or JSON',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Examples:
  # Import a browser export
  python bookmark_tools.py import --uid alice --file bookmarks.html --format netscape

  # Export everything as a bookmark file browsers can import
  python bookmark_tools.py export --uid alice --format netscape --out bookmarks.html

  # JSON backup, copied to the clipboard as well
  python bookmark_tools.py export --uid alice --format json --clipboard
        '''
    )
    parser.add_argument('--verbose', '-v', action='store_true',
                        help='Enable verbose logging')
    parser.add_argument('--log-file', default=DEFAULT_CONFIG['log_file'],
                        help=f'Log file (default: {DEFAULT_CONFIG["log_file"]})')

    subparsers = parser.add_subparsers(dest='command', required=True)

    import_parser = subparsers.add_parser('import', help='Import a bookmark file into the store')
    import_parser.add_argument('--uid', required=True, help='Owner of the imported records')
    import_parser.add_argument('--file', required=True, help='Bookmark file to import')
    import_parser.add_argument('--format', choices=['netscape', 'json'], required=True,
                               help='Format of the input file')
    import_parser.add_argument('--store', default=DEFAULT_CONFIG['store_path'],
                               help=f'Store file (default: {DEFAULT_CONFIG["store_path"]})')
    import_parser.add_argument('--lang', default=DEFAULT_CONFIG['lang'],
                               help=f'Language tag for imported bookmarks (default: {DEFAULT_CONFIG["lang"]})')
    import_parser.add_argument('--entity-decoder', choices=sorted(ENTITY_DECODERS),
                               default=DEFAULT_CONFIG['entity_decoder'],
                               help='How titles and descriptions are decoded (default: markup)')
    import_parser.add_argument('--no-backup', action='store_true',
                               help='Skip backing up the store (not recommended)')
    import_parser.add_argument('--backup-dir', default=DEFAULT_CONFIG['backup_dir'],
                               help=f'Directory for store backups (default: {DEFAULT_CONFIG["backup_dir"]})')

    export_parser = subparsers.add_parser('export', help='Export the store as a bookmark file')
    export_parser.add_argument('--uid', required=True, help='Owner whose records are exported')
    export_parser.add_argument('--format', choices=['netscape', 'json'], required=True,
                               help='Format of the output file')
    export_parser.add_argument('--out', help='Output file (default: bookmarks_<date> in the output directory)')
    export_parser.add_argument('--output-dir', default=DEFAULT_CONFIG['output_dir'],
                               help=f'Output directory (default: {DEFAULT_CONFIG["output_dir"]})')
    export_parser.add_argument('--store', default=DEFAULT_CONFIG['store_path'],
                               help=f'Store file (default: {DEFAULT_CONFIG["store_path"]})')
    export_parser.add_argument('--clipboard', action='store_true',
                               help='Also copy the exported text to the clipboard')

    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> Dict[str, Any]:
    """Apply command line options on top of the defaults"""
    config = dict(DEFAULT_CONFIG)
    for key in ('lang', 'entity_decoder', 'backup_dir', 'output_dir'):
        value = getattr(args, key, None)
        if value:
            config[key] = value
    config['store_path'] = args.store
    return config


def run_import(args: argparse.Namespace, config: Dict[str, Any]) -> int:
    if not os.path.exists(args.file):
        raise FileNotFoundError(args.file)

    logging.info(f"Importing {args.format} bookmarks from: {args.file}")
    store = JsonBookmarkStore.open(config['store_path'])
    text = read_text_file(args.file)

    if args.format == 'json':
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as e:
            raise BookmarkImportError(f"{args.file} is not valid JSON: {e}") from e
        stats = import_json_payload(payload, store, args.uid, config)
    else:
        stats = import_netscape_text(text, store, args.uid, config)

    if args.no_backup:
        print("WARNING: Proceeding without backup (--no-backup flag)")
    elif store.path.exists():
        create_backup(store.path, config['backup_dir'])

    store.save()
    print(f"\nSUCCESS: Imported {stats.collections} collections and {stats.bookmarks} bookmarks")
    if stats.skipped:
        print(f"Skipped {stats.skipped} bookmarks with invalid URLs")
    logging.info(f"Import finished for {args.uid}: {stats}")
    return 0


def run_export(args: argparse.Namespace, config: Dict[str, Any]) -> int:
    store = JsonBookmarkStore.open(config['store_path'])
    bookmarks, collections = load_owner_records(store, args.uid)

    if args.format == 'json':
        content = export_json(bookmarks, collections)
    else:
        content = export_netscape(bookmarks, collections)

    output_path = Path(args.out) if args.out else default_export_path(config['output_dir'], args.format)
    write_text_file(output_path, content)
    print(f"\n✅ Exported {len(bookmarks)} bookmarks and {len(collections)} collections to: {output_path}")
    logging.info(f"Export finished for {args.uid}: {output_path}")

    if args.clipboard:
        copy_to_clipboard(content)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main function with error handling around the selected command"""
    log_file = DEFAULT_CONFIG['log_file']
    try:
        args = parse_arguments(argv)
        log_file = args.log_file
        setup_logging(args.log_file, args.verbose)
        config = build_config(args)

        if args.command == 'import':
            return run_import(args, config)
        return run_export(args, config)

    except KeyboardInterrupt:
        print("\nERROR: Operation cancelled by user")
        return 1
    except FileNotFoundError as e:
        print(f"ERROR: File not found - {e}")
        return 1
    except NothingToExportError as e:
        print(f"ℹ️  {e}")
        return 1
    except (BookmarkToolsError, StoreError) as e:
        logging.error(str(e))
        print(f"ERROR: {e}")
        return 1
    except Exception as e:
        logging.exception(f"Unexpected error: {e}")
        print(f"ERROR: Unexpected error occurred. Check {log_file} for details.")
        return 1


if __name__ == "__main__":
    sys.exit(main())
