#!/usr/bin/env python3
"""
Bookmark Store - JSON document store for each user's bookmarks and collections

Documents are kept under users/<uid>/bookmarks and users/<uid>/collections,
the same layout the web app uses in its hosted database, with the same
camelCase field names. The store assigns document ids and server
timestamps; readers get timestamps normalized to plain values before the
records reach the bookmark file code.
"""

import json
import logging
import math
import os
import time
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from netscape_bookmarks import (
    INBOX_COLLECTION_ID,
    Bookmark,
    Collection,
    TimestampValue,
    normalize_tags,
    to_unix_seconds,
)


class StoreError(Exception):
    """Raised when the store file cannot be read or has the wrong shape"""
    pass


def new_document_id() -> str:
    """Generate a 20 character document id"""
    return uuid.uuid4().hex[:20]


def server_timestamp() -> Dict[str, int]:
    """Timestamp in the store's own encoding"""
    return {'seconds': int(time.time()), 'nanoseconds': 0}


def normalize_timestamp(value: Any) -> TimestampValue:
    """Turn store-specific timestamp encodings into epoch seconds

    Handles mappings and objects exposing ``seconds`` (or ``_seconds``, as
    written by admin SDK JSON dumps). Plain numbers, strings and datetimes
    pass through; anything else becomes None.
    """
    if isinstance(value, bool):
        return None
    if value is None or isinstance(value, (int, float, str, datetime)):
        return value

    if isinstance(value, dict):
        seconds = value.get('seconds', value.get('_seconds'))
    else:
        seconds = getattr(value, 'seconds', None)

    if not isinstance(seconds, (int, float)) or isinstance(seconds, bool):
        return None
    try:
        return math.floor(seconds) if math.isfinite(seconds) else None
    except OverflowError:
        return None


def _collection_ref(value: Any) -> Optional[str]:
    if not value or value == INBOX_COLLECTION_ID:
        return None
    return str(value)


def _text(value: Any) -> str:
    return value if isinstance(value, str) else ''


def bookmark_from_document(doc_id: Optional[str], document: Dict[str, Any]) -> Bookmark:
    """Build a Bookmark record from a stored (or JSON exported) document"""
    return Bookmark(
        id=doc_id,
        url=_text(document.get('url')).strip(),
        title=_text(document.get('title')),
        description=_text(document.get('description')),
        favicon_url=_text(document.get('faviconUrl')),
        screenshot_url=_text(document.get('screenshotUrl')),
        tags=normalize_tags(document.get('tags') if isinstance(document.get('tags'), list) else []),
        collection_id=_collection_ref(document.get('collectionId')),
        pinned=bool(document.get('pinned')),
        lang=_text(document.get('lang')),
        owner=_text(document.get('owner')),
        created_at=normalize_timestamp(document.get('createdAt')),
        updated_at=normalize_timestamp(document.get('updatedAt')),
    )


def collection_from_document(doc_id: Optional[str], document: Dict[str, Any]) -> Collection:
    """Build a Collection record from a stored (or JSON exported) document"""
    parent_id = document.get('parentId')
    return Collection(
        id=doc_id,
        name=_text(document.get('name')),
        description=_text(document.get('description')),
        color=_text(document.get('color')),
        icon=_text(document.get('icon')),
        parent_id=str(parent_id) if parent_id else None,
        owner=_text(document.get('owner')),
        created_at=normalize_timestamp(document.get('createdAt')),
        updated_at=normalize_timestamp(document.get('updatedAt')),
    )


def bookmark_to_json(bookmark: Bookmark, now: Optional[int] = None) -> Dict[str, Any]:
    """Serialize a bookmark for the JSON export, timestamps as epoch seconds"""
    return {
        'id': bookmark.id,
        'url': bookmark.url,
        'title': bookmark.title or bookmark.url,
        'description': bookmark.description,
        'faviconUrl': bookmark.favicon_url,
        'screenshotUrl': bookmark.screenshot_url,
        'tags': normalize_tags(bookmark.tags),
        'collectionId': bookmark.collection_id,
        'pinned': bookmark.pinned,
        'lang': bookmark.lang,
        'createdAt': to_unix_seconds(bookmark.created_at, now),
        'updatedAt': to_unix_seconds(bookmark.updated_at, now),
    }


def collection_to_json(collection: Collection, now: Optional[int] = None) -> Dict[str, Any]:
    """Serialize a collection for the JSON export, timestamps as epoch seconds"""
    return {
        'id': collection.id,
        'name': collection.name,
        'description': collection.description,
        'color': collection.color,
        'icon': collection.icon,
        'parentId': collection.parent_id,
        'createdAt': to_unix_seconds(collection.created_at, now),
        'updatedAt': to_unix_seconds(collection.updated_at, now),
    }


def _stored_timestamp(value: TimestampValue) -> Dict[str, int]:
    if value is None:
        return server_timestamp()
    return {'seconds': to_unix_seconds(value), 'nanoseconds': 0}


class JsonBookmarkStore:
    """Per-user bookmark and collection documents kept in one JSON file"""

    BOOKMARKS = 'bookmarks'
    COLLECTIONS = 'collections'

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.data: Dict[str, Any] = {'users': {}}

    @classmethod
    def open(cls, path: Union[str, Path]) -> 'JsonBookmarkStore':
        store = cls(path)
        store.load()
        return store

    def load(self) -> None:
        """Read the store file; a missing file is an empty store"""
        if not self.path.exists():
            logging.debug(f"Store {self.path} does not exist yet, starting empty")
            self.data = {'users': {}}
            return

        try:
            with self.path.open('r', encoding='utf-8') as f:
                data = json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise StoreError(f"Store file {self.path} is not valid JSON: {e}") from e

        if not isinstance(data, dict) or not isinstance(data.setdefault('users', {}), dict):
            raise StoreError(f"Store file {self.path} does not contain a 'users' object")
        self.data = data
        logging.debug(f"Loaded store {self.path} with {len(data['users'])} user(s)")

    def save(self) -> None:
        """Write the store atomically"""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.path.with_name(self.path.name + '.tmp')
        with temp_path.open('w', encoding='utf-8') as f:
            json.dump(self.data, f, indent=2, ensure_ascii=False)
        os.replace(temp_path, self.path)
        logging.debug(f"Saved store {self.path}")

    def _table(self, owner: str, name: str) -> Dict[str, Dict[str, Any]]:
        user = self.data['users'].setdefault(owner, {})
        return user.setdefault(name, {})

    def _add_document(self, owner: str, table: str, fields: Dict[str, Any],
                      created_at: TimestampValue = None, updated_at: TimestampValue = None) -> str:
        doc_id = new_document_id()
        document = dict(fields)
        document['owner'] = owner
        document['createdAt'] = _stored_timestamp(created_at)
        document['updatedAt'] = _stored_timestamp(updated_at if updated_at is not None else created_at)
        self._table(owner, table)[doc_id] = document
        return doc_id

    def add_collection(self, owner: str, collection: Collection) -> str:
        """Create a collection document and return its new id"""
        fields = {
            'name': collection.name,
            'description': collection.description,
            'color': collection.color,
            'icon': collection.icon,
            'parentId': collection.parent_id,
        }
        return self._add_document(owner, self.COLLECTIONS, fields,
                                  collection.created_at, collection.updated_at)

    def add_bookmark(self, owner: str, bookmark: Bookmark) -> str:
        """Create a bookmark document and return its new id"""
        fields = {
            'url': bookmark.url,
            'title': bookmark.title or bookmark.url,
            'description': bookmark.description,
            'faviconUrl': bookmark.favicon_url,
            'screenshotUrl': bookmark.screenshot_url,
            'screenshotPath': '',
            'tags': normalize_tags(bookmark.tags),
            'collectionId': bookmark.collection_id,
            'pinned': bookmark.pinned,
            'lang': bookmark.lang,
        }
        return self._add_document(owner, self.BOOKMARKS, fields,
                                  bookmark.created_at, bookmark.updated_at)

    def list_bookmarks(self, owner: str) -> List[Bookmark]:
        return [bookmark_from_document(doc_id, document)
                for doc_id, document in self._documents(owner, self.BOOKMARKS)]

    def list_collections(self, owner: str) -> List[Collection]:
        return [collection_from_document(doc_id, document)
                for doc_id, document in self._documents(owner, self.COLLECTIONS)]

    def _documents(self, owner: str, table: str):
        user = self.data['users'].get(owner) or {}
        documents = user.get(table) or {}
        for doc_id, document in documents.items():
            if isinstance(document, dict):
                yield doc_id, document
            else:
                logging.warning(f"Ignoring malformed {table} document {doc_id} for {owner}")
