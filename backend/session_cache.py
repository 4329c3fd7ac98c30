"""
W-2 Refund Estimator - Session Cache
====================================
Keeps one pending W-2 document and one computed result for the lifetime of a
widget session.

Two key-value stores back the cache:
- A session-lifetime store (a plain mapping, or st.session_state in the widget)
  holds the result and the session sentinel.
- A durable store (a directory on disk) holds the document bytes, since the
  session store is a poor fit for binary payloads.

The durable store outlives the session. A sentinel in the session store tells
"same session, persisted document still valid" apart from "new session, wipe
it". The sentinel check runs before every read or write of either store.

Caching is best-effort: storage failures are logged at debug level and
otherwise ignored.
"""

import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, MutableMapping, Optional, Protocol, Union

from refund_constants import (
    DEFAULT_DOCUMENT_NAME,
    DEFAULT_DOCUMENT_TYPE,
    DOCUMENT_KEY,
    RESULT_KEY,
    SESSION_SENTINEL_KEY,
)
from refund_models import CachedDocument, CachedResult, StorageError

logger = logging.getLogger(__name__)


# =============================================================================
# KEY-VALUE STORES
# =============================================================================

class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[Any]: ...
    def set(self, key: str, value: Any) -> None: ...
    def delete(self, key: str) -> None: ...


class MappingStore:
    """Session-lifetime store over any mutable mapping."""

    def __init__(self, mapping: Optional[MutableMapping] = None):
        self._mapping = mapping if mapping is not None else {}

    def get(self, key: str) -> Optional[Any]:
        return self._mapping.get(key)

    def set(self, key: str, value: Any) -> None:
        self._mapping[key] = value

    def delete(self, key: str) -> None:
        if key in self._mapping:
            del self._mapping[key]


class DirectoryStore:
    """
    Durable store rooted at a directory.

    Each key is a JSON metadata file; a "buffer" entry holding bytes is split
    out into a sibling .bin file.
    """

    BUFFER_FIELD = "buffer"

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root).expanduser()

    def _paths(self, key: str):
        return self.root / f"{key}.json", self.root / f"{key}.bin"

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        meta_path, bin_path = self._paths(key)
        if not meta_path.exists():
            return None
        try:
            record = json.loads(meta_path.read_text(encoding="utf-8"))
            if bin_path.exists():
                record[self.BUFFER_FIELD] = bin_path.read_bytes()
        except (OSError, ValueError) as e:
            raise StorageError(f"Could not read {key}: {e}") from e
        return record

    def set(self, key: str, value: Dict[str, Any]) -> None:
        meta_path, bin_path = self._paths(key)
        record = dict(value)
        buffer = record.pop(self.BUFFER_FIELD, None)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            if buffer is not None:
                bin_path.write_bytes(bytes(buffer))
            elif bin_path.exists():
                bin_path.unlink()
            meta_path.write_text(json.dumps(record), encoding="utf-8")
        except (OSError, TypeError, ValueError) as e:
            raise StorageError(f"Could not write {key}: {e}") from e

    def delete(self, key: str) -> None:
        try:
            for path in self._paths(key):
                if path.exists():
                    path.unlink()
        except OSError as e:
            raise StorageError(f"Could not delete {key}: {e}") from e


# =============================================================================
# SESSION CACHE
# =============================================================================

class SessionCache:
    """One pending document and one result, scoped to the current session."""

    def __init__(self, session_store: KeyValueStore, durable_store: Optional[KeyValueStore]):
        self.session_store = session_store
        # None means durable storage is unavailable; document operations no-op
        self.durable_store = durable_store

    # --- session scoping ---

    def reset_if_new_session(self) -> None:
        """
        Wipe the persisted document and result the first time a session
        touches the cache. Later calls in the same session do nothing.
        """
        if self.session_store.get(SESSION_SENTINEL_KEY):
            return
        self.session_store.set(SESSION_SENTINEL_KEY, str(int(time.time() * 1000)))
        self.clear_document()
        self.clear_result()

    # --- results ---

    def save_result(self, result: CachedResult) -> None:
        try:
            self.reset_if_new_session()
            self.session_store.set(RESULT_KEY, result.model_dump_json(by_alias=True))
        except Exception as e:
            logger.debug(f"save_result skipped: {e}")

    def load_result(self) -> Optional[CachedResult]:
        try:
            self.reset_if_new_session()
            stored = self.session_store.get(RESULT_KEY)
            if stored:
                return CachedResult.model_validate_json(stored)
            # An older widget kept results in durable storage
            if self.durable_store is not None and self.durable_store.get(RESULT_KEY) is not None:
                self.durable_store.delete(RESULT_KEY)
        except Exception as e:
            logger.debug(f"load_result failed: {e}")
        return None

    def clear_result(self) -> None:
        try:
            self.session_store.delete(RESULT_KEY)
        except Exception as e:
            logger.debug(f"clear_result skipped: {e}")

    # --- documents ---

    def save_document(self, doc: CachedDocument) -> None:
        try:
            self.reset_if_new_session()
            if self.durable_store is None:
                return
            self.durable_store.set(DOCUMENT_KEY, {
                "buffer": doc.raw_bytes,
                "name": doc.file_name,
                "type": doc.mime_type,
                "lastModified": doc.last_modified,
            })
        except Exception as e:
            logger.debug(f"save_document skipped: {e}")

    def load_document(self) -> Optional[CachedDocument]:
        try:
            self.reset_if_new_session()
            if self.durable_store is None:
                return None
            data = self.durable_store.get(DOCUMENT_KEY)
            if not data or not data.get("buffer"):
                return None
            return CachedDocument(
                raw_bytes=bytes(data["buffer"]),
                file_name=data.get("name") or DEFAULT_DOCUMENT_NAME,
                mime_type=data.get("type") or DEFAULT_DOCUMENT_TYPE,
                last_modified=data.get("lastModified") or int(time.time() * 1000),
            )
        except Exception as e:
            logger.debug(f"load_document failed: {e}")
            return None

    def clear_document(self) -> None:
        try:
            if self.durable_store is not None:
                self.durable_store.delete(DOCUMENT_KEY)
        except Exception as e:
            logger.debug(f"clear_document skipped: {e}")


def create_session_cache(session_state: Optional[MutableMapping] = None, cache_dir: Optional[str] = None) -> SessionCache:
    """Session cache over a mapping and, when given, a directory on disk."""
    durable = DirectoryStore(cache_dir) if cache_dir else None
    return SessionCache(MappingStore(session_state), durable)
