from __future__ import annotations

from threading import RLock
from typing import Dict, Optional, Protocol, Tuple
import logging
import os

import gridfs
from gridfs.errors import NoFile
from pymongo import MongoClient
from pymongo.errors import PyMongoError


logger = logging.getLogger(__name__)


class BlobStore(Protocol):
    def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> None: ...
    def get(self, key: str) -> Optional[bytes]: ...
    def delete(self, key: str) -> bool: ...
    def exists(self, key: str) -> bool: ...


class InMemoryBlobStore:
    def __init__(self) -> None:
        self._blobs: Dict[str, Tuple[bytes, Optional[str]]] = {}
        self._lock = RLock()

    def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> None:
        with self._lock:
            self._blobs[key] = (bytes(data), content_type)

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            entry = self._blobs.get(key)
            return entry[0] if entry else None

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._blobs.pop(key, None) is not None

    def exists(self, key: str) -> bool:
        with self._lock:
            return key in self._blobs


def _require_mongo() -> bool:
    return os.getenv("REALTY_BLOB_STORE_REQUIRE_MONGO", "false").lower() in ("1", "true", "yes")


class GridFSBlobStore:
    """GridFS-backed blob store keyed by filename.

    If Mongo is unreachable and REALTY_BLOB_STORE_REQUIRE_MONGO is not true,
    operations fall back to an internal in-memory store so local runs keep working.
    """

    def __init__(self, connection_string: str, database: Optional[str] = None) -> None:
        self._fallback = InMemoryBlobStore()
        self._client = None
        self._fs = None
        try:
            self._client = MongoClient(connection_string, serverSelectionTimeoutMS=500)
            self._client.server_info()
            db = self._client[database or os.getenv("REALTY_BLOB_DB", "realty")]
            self._fs = gridfs.GridFS(db, collection="documents")
        except PyMongoError as exc:
            logger.warning("GridFS unavailable (%s); using in-memory blob store", exc)
            self._client = None
            self._fs = None

    def _use_fallback(self) -> bool:
        if self._client is None or self._fs is None:
            if _require_mongo():
                raise RuntimeError("Mongo blob store required but not available")
            return True
        return False

    def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> None:
        if self._use_fallback():
            self._fallback.put(key, data, content_type)
            return
        self._fs.put(data, filename=key, contentType=content_type)

    def get(self, key: str) -> Optional[bytes]:
        if self._use_fallback():
            return self._fallback.get(key)
        try:
            return self._fs.get_last_version(filename=key).read()
        except NoFile:
            return None

    def delete(self, key: str) -> bool:
        if self._use_fallback():
            return self._fallback.delete(key)
        removed = False
        for grid_out in self._fs.find({"filename": key}):
            self._fs.delete(grid_out._id)
            removed = True
        return removed

    def exists(self, key: str) -> bool:
        if self._use_fallback():
            return self._fallback.exists(key)
        return bool(self._fs.exists(filename=key))


_blob_store_singleton: Optional[BlobStore] = None


def get_blob_store() -> BlobStore:
    global _blob_store_singleton
    if _blob_store_singleton is not None:
        return _blob_store_singleton
    conn = os.getenv("DOCUMENT_STORAGE_CONNECTION_STRING", "")
    impl = os.getenv("REALTY_BLOB_STORE_IMPL", "mongo" if conn.startswith("mongodb") else "memory").lower()
    if impl == "mongo" and conn:
        _blob_store_singleton = GridFSBlobStore(conn)
        return _blob_store_singleton
    _blob_store_singleton = InMemoryBlobStore()
    return _blob_store_singleton
