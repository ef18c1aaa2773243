#!/usr/bin/env python3
"""
Netscape Bookmarks - Read and write NETSCAPE-Bookmark-file-1 documents

This module converts between:
- Bookmark HTML files exported by every major browser
- Flat bookmark and collection records, as kept per user in the store

Parsing is line oriented and tolerant: unknown lines, missing attributes
and unbalanced lists never raise. Generation is deterministic for a given
set of records so exported files diff cleanly.
"""

import logging
import math
import re
import time
import unicodedata
import warnings
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Iterator, List, Optional, Tuple, Union

from bs4 import BeautifulSoup, MarkupResemblesLocatorWarning, ParserRejectedMarkup


# Titles that fall back to their URL look like locators to BeautifulSoup
warnings.filterwarnings('ignore', category=MarkupResemblesLocatorWarning)

INBOX_COLLECTION_ID = 'inbox'
ROOT_FOLDER_TITLE = 'Bookmarks bar'

NETSCAPE_HEADER = '\n'.join([
    '<!DOCTYPE NETSCAPE-Bookmark-file-1>',
    '<!-- This is an automatically generated file.',
    '     It will be read and overwritten.',
    '     DO NOT EDIT! -->',
    '<META HTTP-EQUIV="Content-Type" CONTENT="text/html; charset=UTF-8">',
    '<TITLE>Bookmarks</TITLE>',
    '<H1>Bookmarks</H1>',
])

TimestampValue = Union[None, int, float, datetime, str]


@dataclass
class Bookmark:
    """A saved URL as stored for one owner"""
    url: str
    title: str = ''
    id: Optional[str] = None
    description: str = ''
    favicon_url: str = ''
    screenshot_url: str = ''
    tags: List[str] = field(default_factory=list)
    collection_id: Optional[str] = None
    pinned: bool = False
    lang: str = ''
    owner: str = ''
    created_at: TimestampValue = None
    updated_at: TimestampValue = None

    @property
    def display_title(self) -> str:
        return self.title or self.url


@dataclass
class Collection:
    """A bookmark folder; parent_id links it into the collection tree"""
    name: str
    id: Optional[str] = None
    description: str = ''
    color: str = ''
    icon: str = ''
    parent_id: Optional[str] = None
    owner: str = ''
    created_at: TimestampValue = None
    updated_at: TimestampValue = None


@dataclass
class ParsedBookmark:
    """A <DT><A> entry read from a bookmark file"""
    url: str
    title: str = ''
    description: str = ''
    add_date: Optional[int] = None
    last_modified: Optional[int] = None
    icon: Optional[str] = None


@dataclass
class ParsedFolder:
    """A <DT><H3> entry read from a bookmark file, with everything in its <DL>"""
    title: str
    description: str = ''
    add_date: Optional[int] = None
    last_modified: Optional[int] = None
    children: List[Union['ParsedFolder', ParsedBookmark]] = field(default_factory=list)


ParsedNode = Union[ParsedFolder, ParsedBookmark]


@dataclass
class CollectionNode:
    """A collection with its child collections and bookmarks attached"""
    collection: Collection
    children: List['CollectionNode'] = field(default_factory=list)
    bookmarks: List[Bookmark] = field(default_factory=list)


def normalize_tags(tags: Optional[List[str]]) -> List[str]:
    """Lowercase and de-duplicate tags, dropping blanks"""
    normalized = []
    for tag in tags or []:
        if not isinstance(tag, str):
            continue
        tag = tag.strip().lower()
        if tag and tag not in normalized:
            normalized.append(tag)
    return normalized


# ---------------------------------------------------------------------------
# Entities and attributes
# ---------------------------------------------------------------------------

_ATTRIBUTE_RE = re.compile(r'([A-Z0-9_:-]+)\s*=\s*"([^"]*)"', re.IGNORECASE)
_NUMERIC_REFERENCE_RE = re.compile(r'&#(?:([0-9]+)|[xX]([0-9a-fA-F]+));')
_NAMED_REFERENCES = (
    ('&lt;', '<'),
    ('&gt;', '>'),
    ('&quot;', '"'),
    ('&apos;', "'"),
)


def parse_attribute_map(raw: Optional[str]) -> Dict[str, str]:
    """Collect NAME="value" pairs from the inside of a start tag, keys upper-cased"""
    attrs = {}
    if not raw:
        return attrs
    for name, value in _ATTRIBUTE_RE.findall(raw):
        attrs[name.upper()] = value
    return attrs


def _replace_numeric_reference(match: 're.Match') -> str:
    decimal, hexadecimal = match.groups()
    try:
        return chr(int(decimal) if decimal else int(hexadecimal, 16))
    except (ValueError, OverflowError):
        return match.group(0)


def decode_basic_entities(value: Optional[str]) -> str:
    """Decode the common named references and numeric references without a markup parser

    &amp; is decoded last so "&amp;lt;" becomes "&lt;" rather than "<".
    """
    if not value:
        return ''
    for reference, char in _NAMED_REFERENCES:
        value = value.replace(reference, char)
    value = _NUMERIC_REFERENCE_RE.sub(_replace_numeric_reference, value)
    return value.replace('&amp;', '&')


def decode_entities(value: Optional[str]) -> str:
    """Decode HTML character references the way a browser reads element text"""
    if not value:
        return ''
    if '&' not in value and '<' not in value:
        return value
    try:
        return BeautifulSoup(value, 'html.parser').get_text()
    except ParserRejectedMarkup as e:
        logging.debug(f"Markup decoder rejected {value[:60]!r}, using basic decoding: {e}")
        return decode_basic_entities(value)


def encode_entities(value: Optional[str]) -> str:
    """Escape text for embedding in bookmark markup"""
    if not value:
        return ''
    return (value.replace('&', '&amp;')
                 .replace('<', '&lt;')
                 .replace('>', '&gt;')
                 .replace('"', '&quot;')
                 .replace("'", '&#39;'))


def encode_multiline(value: Optional[str]) -> str:
    """Escape text and keep line breaks as character references so it stays on one line"""
    text = encode_entities(value)
    return text.replace('\r\n', '\n').replace('\r', '\n').replace('\n', '&#10;')


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------

_EPOCH_STRING_RE = re.compile(r'-?\d+(\.\d+)?')


def current_unix_seconds() -> int:
    return int(time.time())


def to_unix_seconds(value: TimestampValue, now: Optional[int] = None) -> int:
    """Normalize a record timestamp to epoch seconds

    Accepts epoch numbers (already in seconds), datetimes (naive ones are
    read as UTC), ISO-8601 strings and decimal epoch strings. Missing or
    unparseable values become the current time; this never raises.
    """
    fallback = current_unix_seconds() if now is None else now

    if value is None or isinstance(value, bool):
        return fallback

    if isinstance(value, (int, float)):
        try:
            if math.isfinite(value):
                return math.floor(value)
        except OverflowError:
            pass
        logging.debug(f"Out of range timestamp {str(value)[:40]}, using current time")
        return fallback

    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        try:
            return math.floor(value.timestamp())
        except (OverflowError, OSError, ValueError):
            return fallback

    if isinstance(value, str):
        text = value.strip()
        if not text:
            return fallback
        if _EPOCH_STRING_RE.fullmatch(text):
            return to_unix_seconds(float(text), fallback)
        if text[-1] in 'zZ':
            text = text[:-1] + '+00:00'
        try:
            return to_unix_seconds(datetime.fromisoformat(text), fallback)
        except ValueError:
            pass

    logging.debug(f"Unparseable timestamp {value!r}, using current time")
    return fallback


def _parse_epoch_attribute(raw: Optional[str]) -> Optional[int]:
    if not raw:
        return None
    try:
        return int(float(raw))
    except (ValueError, OverflowError):
        return None


# ---------------------------------------------------------------------------
# Import: line oriented parser
# ---------------------------------------------------------------------------

_FOLDER_RE = re.compile(r'^<DT><H3([^>]*)>(.*?)</H3>', re.IGNORECASE)
_LINK_RE = re.compile(r'^<DT><A([^>]*)>(.*?)</A>', re.IGNORECASE)
_DESCRIPTION_OPEN_RE = re.compile(r'^<DD>', re.IGNORECASE)
_DESCRIPTION_CLOSE_RE = re.compile(r'</DD>', re.IGNORECASE)
_LINE_SPLIT_RE = re.compile(r'\r?\n')


def _append_description(node: ParsedNode, text: str) -> None:
    node.description = f"{node.description}\n{text}" if node.description else text


class _ParserState:
    """Container stack plus the node that receives the next <DD> line

    The stack always starts with a synthetic root folder. A folder heading
    is "pending" until the <DL> that opens its contents arrives; a <DL>
    without a pending folder re-pushes the current container so that
    <DL>/</DL> pairs stay balanced.
    """

    def __init__(self, decoder: Callable[[Optional[str]], str]):
        self.decode = decoder
        self.root = ParsedFolder(title='__root__')
        self.stack: List[ParsedFolder] = [self.root]
        self.pending: Optional[ParsedFolder] = None
        self.cursor: Optional[ParsedNode] = None
        self.transitions = (
            ('<DT><H3', self.open_folder),
            ('<DT><A', self.add_link),
            ('<DD>', self.add_description),
            ('<DL', self.open_list),
            ('</DL', self.close_list),
        )

    @property
    def container(self) -> ParsedFolder:
        return self.stack[-1]

    def feed(self, line: str) -> None:
        upper = line.upper()
        for marker, handler in self.transitions:
            if upper.startswith(marker):
                handler(line)
                return

    def open_folder(self, line: str) -> None:
        match = _FOLDER_RE.match(line)
        if not match:
            return
        attrs = parse_attribute_map(match.group(1))
        folder = ParsedFolder(
            title=self.decode(match.group(2)),
            add_date=_parse_epoch_attribute(attrs.get('ADD_DATE')),
            last_modified=_parse_epoch_attribute(attrs.get('LAST_MODIFIED')),
        )
        self.container.children.append(folder)
        self.pending = folder
        self.cursor = folder

    def add_link(self, line: str) -> None:
        match = _LINK_RE.match(line)
        if not match:
            return
        attrs = parse_attribute_map(match.group(1))
        # URLs only get the basic references: "&copy=1" in a query string is not an entity
        href = decode_basic_entities(attrs.get('HREF'))
        if not href:
            logging.debug(f"Dropping link without HREF: {line[:80]}")
            return
        icon = attrs.get('ICON') or attrs.get('ICON_URI')
        bookmark = ParsedBookmark(
            url=href,
            title=self.decode(match.group(2)),
            add_date=_parse_epoch_attribute(attrs.get('ADD_DATE')),
            last_modified=_parse_epoch_attribute(attrs.get('LAST_MODIFIED')),
            icon=decode_basic_entities(icon) or None,
        )
        self.container.children.append(bookmark)
        self.cursor = bookmark

    def add_description(self, line: str) -> None:
        raw = _DESCRIPTION_CLOSE_RE.sub('', _DESCRIPTION_OPEN_RE.sub('', line, count=1), count=1)
        text = self.decode(raw.strip())
        if text and self.cursor is not None:
            _append_description(self.cursor, text)

    def open_list(self, line: str) -> None:
        if self.pending is not None:
            self.stack.append(self.pending)
            self.pending = None
        else:
            self.stack.append(self.container)

    def close_list(self, line: str) -> None:
        if len(self.stack) > 1:
            self.stack.pop()
        self.pending = None
        # descriptions after a list boundary belong to the enclosing folder
        self.cursor = self.container if self.container is not self.root else None


def parse_bookmark_file(text: Optional[str],
                        decoder: Optional[Callable[[Optional[str]], str]] = None) -> List[ParsedNode]:
    """Parse Netscape bookmark HTML into a forest of folders and bookmarks

    Returns the top-level nodes; an empty list means the text holds no
    recognizable bookmark entries.
    """
    if not text:
        return []

    state = _ParserState(decoder or decode_entities)
    for raw_line in _LINE_SPLIT_RE.split(text):
        line = raw_line.strip()
        if line:
            state.feed(line)

    if len(state.stack) > 1:
        logging.debug(f"Bookmark file ended with {len(state.stack) - 1} unclosed list(s)")
    return state.root.children


def count_parsed_nodes(nodes: List[ParsedNode]) -> Tuple[int, int]:
    """Count (folders, bookmarks) in a parsed forest"""
    folders = bookmarks = 0
    stack = list(nodes)
    while stack:
        node = stack.pop()
        if isinstance(node, ParsedFolder):
            folders += 1
            stack.extend(node.children)
        else:
            bookmarks += 1
    return folders, bookmarks


def iter_parsed_bookmarks(nodes: List[ParsedNode],
                          path: Tuple[str, ...] = ()) -> Iterator[Tuple[Tuple[str, ...], ParsedBookmark]]:
    """Yield (folder path, bookmark) pairs in document order"""
    stack = [(path, node) for node in reversed(nodes)]
    while stack:
        node_path, node = stack.pop()
        if isinstance(node, ParsedFolder):
            child_path = node_path + (node.title,)
            stack.extend((child_path, child) for child in reversed(node.children))
        else:
            yield node_path, node


# ---------------------------------------------------------------------------
# Export: tree assembly and emission
# ---------------------------------------------------------------------------

def collation_key(text: Optional[str]) -> Tuple[str, str]:
    """Sort key approximating locale-aware comparison

    Accents and case are ignored first, then lowercase sorts before
    uppercase and unaccented before accented. The key does not depend on
    the process locale, so exports are identical across machines.
    """
    text = text or ''
    decomposed = unicodedata.normalize('NFKD', text)
    base = ''.join(ch for ch in decomposed if not unicodedata.combining(ch))
    return base.casefold(), text.swapcase()


def _bookmark_sort_key(bookmark: Bookmark) -> Tuple[str, str]:
    return collation_key(bookmark.display_title)


def sort_collection_tree(nodes: List[CollectionNode]) -> None:
    """Sort sibling collections by name and their bookmarks by title, at every level"""
    pending = [nodes]
    while pending:
        siblings = pending.pop()
        siblings.sort(key=lambda node: collation_key(node.collection.name))
        for node in siblings:
            node.bookmarks.sort(key=_bookmark_sort_key)
            pending.append(node.children)


def build_collection_tree(collections: List[Collection],
                          bookmarks: List[Bookmark]) -> Tuple[List[CollectionNode], List[Bookmark]]:
    """Assemble flat records into sorted (root collections, root bookmarks)

    Collections whose parent cannot be found become roots. Collections
    caught in a parent cycle are promoted to roots one at a time until
    every collection is reachable. Bookmarks without a resolvable
    collection are returned as root bookmarks.
    """
    nodes: Dict[str, CollectionNode] = {}
    for index, collection in enumerate(collections):
        key = collection.id if collection.id else f'__unsaved_{index}'
        nodes[key] = CollectionNode(collection)

    roots: List[CollectionNode] = []
    parent_of: Dict[str, str] = {}
    for key, node in nodes.items():
        parent_id = node.collection.parent_id
        if parent_id and parent_id in nodes:
            nodes[parent_id].children.append(node)
            parent_of[key] = parent_id
        else:
            roots.append(node)

    reachable = set()

    def mark_reachable(start: CollectionNode) -> None:
        pending = [start]
        while pending:
            current = pending.pop()
            if id(current) in reachable:
                continue
            reachable.add(id(current))
            pending.extend(current.children)

    for root in roots:
        mark_reachable(root)

    for key, node in nodes.items():
        if id(node) in reachable:
            continue
        parent = nodes[parent_of[key]]
        parent.children = [child for child in parent.children if child is not node]
        roots.append(node)
        mark_reachable(node)
        logging.warning(f"Collection '{node.collection.name}' is part of a parent cycle; "
                        f"exporting it at the top level")

    root_bookmarks: List[Bookmark] = []
    for bookmark in bookmarks:
        collection_id = bookmark.collection_id
        if collection_id and collection_id != INBOX_COLLECTION_ID and collection_id in nodes:
            nodes[collection_id].bookmarks.append(bookmark)
        else:
            root_bookmarks.append(bookmark)

    sort_collection_tree(roots)
    root_bookmarks.sort(key=_bookmark_sort_key)
    return roots, root_bookmarks


def _render_bookmark(bookmark: Bookmark, lines: List[str], level: int, now: int) -> None:
    indent = '  ' * level
    attributes = [
        f'HREF="{encode_entities(bookmark.url)}"',
        f'ADD_DATE="{to_unix_seconds(bookmark.created_at, now)}"',
        f'LAST_MODIFIED="{to_unix_seconds(bookmark.updated_at, now)}"',
    ]
    if bookmark.favicon_url:
        attributes.append(f'ICON="{encode_entities(bookmark.favicon_url)}"')
    title = encode_multiline(bookmark.display_title)
    lines.append(f'{indent}<DT><A {" ".join(attributes)}>{title}</A>')
    if bookmark.description:
        lines.append(f'{indent}<DD>{encode_multiline(bookmark.description)}')


def _render_collections(roots: List[CollectionNode], lines: List[str], level: int, now: int) -> None:
    """Emit folders depth first; a None entry closes the list opened at that level"""
    stack: List[Tuple[Optional[CollectionNode], int]] = [(node, level) for node in reversed(roots)]
    while stack:
        node, depth = stack.pop()
        indent = '  ' * depth
        if node is None:
            lines.append(f'{indent}</DL><p>')
            continue

        collection = node.collection
        added = to_unix_seconds(collection.created_at, now)
        modified = to_unix_seconds(collection.updated_at, now)
        lines.append(f'{indent}<DT><H3 ADD_DATE="{added}" LAST_MODIFIED="{modified}">'
                     f'{encode_multiline(collection.name)}</H3>')
        if collection.description:
            lines.append(f'{indent}<DD>{encode_multiline(collection.description)}')
        lines.append(f'{indent}<DL><p>')
        for bookmark in node.bookmarks:
            _render_bookmark(bookmark, lines, depth + 1, now)

        stack.append((None, depth))
        stack.extend((child, depth + 1) for child in reversed(node.children))


def _root_folder_dates(bookmarks: List[Bookmark], collections: List[Collection], now: int) -> Tuple[int, int]:
    records = list(bookmarks) + list(collections)
    if not records:
        return now, now
    added = min(to_unix_seconds(record.created_at, now) for record in records)
    modified = max(to_unix_seconds(record.updated_at, now) for record in records)
    return added, modified


def generate_bookmark_file(bookmarks: List[Bookmark],
                           collections: List[Collection],
                           now: Optional[int] = None,
                           root_title: str = ROOT_FOLDER_TITLE) -> str:
    """Render collections and bookmarks as a Netscape bookmark file

    Everything is wrapped in one personal-toolbar folder: root bookmarks
    first, then root collections. Records with missing or unreadable
    timestamps are stamped with ``now`` (the current time by default).
    """
    if now is None:
        now = current_unix_seconds()

    roots, root_bookmarks = build_collection_tree(collections, bookmarks)
    added, modified = _root_folder_dates(bookmarks, collections, now)

    lines = [NETSCAPE_HEADER, '<DL><p>']
    lines.append(f'  <DT><H3 ADD_DATE="{added}" LAST_MODIFIED="{modified}" '
                 f'PERSONAL_TOOLBAR_FOLDER="true">{encode_multiline(root_title)}</H3>')
    lines.append('  <DL><p>')
    for bookmark in root_bookmarks:
        _render_bookmark(bookmark, lines, 2, now)
    _render_collections(roots, lines, 2, now)
    lines.append('  </DL><p>')
    lines.append('</DL><p>')

    logging.debug(f"Rendered {len(bookmarks)} bookmarks in {len(collections)} collections")
    return '\n'.join(lines)
