# =============================================================================
# casefile_core/offline/local_cache.py
# Versioned key-value cache for form summaries, definitions and reference lists
# =============================================================================
"""
LocalCache - file-backed key-value store used by every other component.

Features:
- One JSON file per key plus a metadata index
- Integrity verification (md5) on read
- Atomic replace on write (a crash never leaves a half-written value)
- Per-key locks shared by readers and writers; unrelated keys never block
  each other

Directory Structure:
-------------------
local_data/cache/
├── entries/               # One JSON file per key
└── cache_index.json       # Metadata about cached items
"""

from __future__ import annotations
import hashlib
import json
import os
import tempfile
import threading
from collections import defaultdict
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional
import logging

from casefile_core.errors import PersistenceError
from casefile_core.models.forms import FormDefinition, FormSummary
from casefile_core.models.beneficiary_form import CityRef, CountyRef

logger = logging.getLogger(__name__)

FORM_SUMMARIES_KEY = "form_summaries"
COUNTIES_KEY = "counties"


def form_key(form_id: int) -> str:
    return f"form:{form_id}"


def cities_key(county_id: int) -> str:
    return f"cities:{county_id}"


class LocalCache:
    """
    Key-value cache with typed helpers for the form catalog.

    Usage:
        cache = LocalCache(Path("local_data/cache"))
        cache.set("counties", [{"id": 1, "name": "Alba"}])
        cache.get("counties")
    """

    CACHE_INDEX_FILE = "cache_index.json"

    def __init__(self, cache_dir: Path):
        self.cache_dir = Path(cache_dir)
        self._entries_dir = self.cache_dir / "entries"
        self._entries_dir.mkdir(parents=True, exist_ok=True)
        self._index: Dict[str, Dict[str, Any]] = {}
        self._index_lock = threading.Lock()
        self._key_locks: Dict[str, threading.RLock] = defaultdict(threading.RLock)
        self._key_locks_guard = threading.Lock()
        self._load_index()

    # =========================================================================
    # INDEX
    # =========================================================================

    def _load_index(self) -> None:
        index_path = self.cache_dir / self.CACHE_INDEX_FILE
        if not index_path.exists():
            self._index = {}
            return
        try:
            with open(index_path, "r") as f:
                self._index = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            logger.warning(f"Error loading cache index: {e}")
            self._index = {}

    def _save_index(self) -> None:
        self._write_atomic(self.cache_dir / self.CACHE_INDEX_FILE, self._index)

    def _write_atomic(self, path: Path, payload: Any) -> None:
        try:
            fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp")
            with os.fdopen(fd, "w") as f:
                json.dump(payload, f, indent=2, default=str)
            os.replace(tmp_path, path)
        except (IOError, OSError, TypeError) as e:
            raise PersistenceError(
                f"Could not write cache file {path.name}: {e}",
                entity="cache",
                operation="write",
            )

    @staticmethod
    def _file_hash(file_path: Path) -> str:
        hasher = hashlib.md5()
        with open(file_path, "rb") as f:
            for chunk in iter(lambda: f.read(8192), b""):
                hasher.update(chunk)
        return hasher.hexdigest()

    def _path_for(self, key: str) -> Path:
        safe = key.replace(":", "__").replace("/", "_")
        return self._entries_dir / f"{safe}.json"

    def lock_for(self, key: str) -> threading.RLock:
        """Lock serializing writers of one logical key."""
        with self._key_locks_guard:
            return self._key_locks[key]

    # =========================================================================
    # GENERIC GET / SET
    # =========================================================================

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None if missing or corrupted."""
        with self.lock_for(key):
            with self._index_lock:
                info = self._index.get(key)
            if info is None:
                return None

            file_path = Path(info["file_path"])
            if not file_path.exists():
                self._drop(key)
                return None

            if info.get("file_hash") and self._file_hash(file_path) != info["file_hash"]:
                logger.warning(f"Cache entry '{key}' failed integrity check, discarding")
                self._drop(key)
                return None

            try:
                with open(file_path, "r") as f:
                    return json.load(f)
            except (json.JSONDecodeError, IOError) as e:
                logger.error(f"Error reading cache entry '{key}': {e}")
                return None

    def set(self, key: str, value: Any) -> None:
        """Store a JSON-serializable value under key, replacing any previous one."""
        file_path = self._path_for(key)
        with self.lock_for(key):
            self._write_atomic(file_path, value)
            with self._index_lock:
                self._index[key] = {
                    "file_path": str(file_path),
                    "updated_at": datetime.now().isoformat(),
                    "file_hash": self._file_hash(file_path),
                }
                self._save_index()

    def has(self, key: str) -> bool:
        with self._index_lock:
            return key in self._index

    def delete(self, key: str) -> None:
        with self.lock_for(key):
            self._drop(key)

    def _drop(self, key: str) -> None:
        with self._index_lock:
            info = self._index.pop(key, None)
            if info is None:
                return
            self._save_index()
        Path(info["file_path"]).unlink(missing_ok=True)

    def keys(self) -> List[str]:
        with self._index_lock:
            return list(self._index)

    # =========================================================================
    # FORM CATALOG
    # =========================================================================

    def get_form_summaries(self) -> List[FormSummary]:
        raw = self.get(FORM_SUMMARIES_KEY) or []
        return [FormSummary.from_dict(item) for item in raw]

    def set_form_summaries(self, summaries: List[FormSummary]) -> None:
        ordered = sorted(summaries, key=lambda s: s.id)
        self.set(FORM_SUMMARIES_KEY, [s.to_dict() for s in ordered])

    def get_form_summary(self, form_id: int) -> Optional[FormSummary]:
        for summary in self.get_form_summaries():
            if summary.id == form_id:
                return summary
        return None

    def load_form(self, form_id: int) -> Optional[FormDefinition]:
        raw = self.get(form_key(form_id))
        if raw is None:
            return None
        return FormDefinition.from_dict(raw)

    def save_form(self, definition: FormDefinition) -> None:
        self.set(form_key(definition.form_id), definition.to_dict())

    def install_form(self, summary: FormSummary, definition: FormDefinition) -> None:
        """
        Replace the cached definition and summary of one form.

        The definition is written first; the summary (which is what staleness
        checks read) only advances once the definition is on disk. If the
        summary cannot be written the previous definition is put back, so the
        cached summary and definition always describe the same version.
        """
        key = form_key(summary.id)
        with self.lock_for(key):
            previous = self.get(key)
            self.save_form(definition)
            try:
                with self.lock_for(FORM_SUMMARIES_KEY):
                    others = [s for s in self.get_form_summaries() if s.id != summary.id]
                    self.set_form_summaries(others + [summary])
            except Exception:
                logger.error(f"Form #{summary.id} v{summary.version} not installed, restoring previous definition")
                if previous is None:
                    self.delete(key)
                else:
                    self.set(key, previous)
                raise

    # =========================================================================
    # REFERENCE LISTS
    # =========================================================================

    def get_counties(self) -> Optional[List[CountyRef]]:
        raw = self.get(COUNTIES_KEY)
        return [CountyRef.from_dict(c) for c in raw] if raw is not None else None

    def set_counties(self, counties: List[CountyRef]) -> None:
        self.set(COUNTIES_KEY, [c.to_dict() for c in counties])

    def get_cities(self, county_id: int) -> Optional[List[CityRef]]:
        raw = self.get(cities_key(county_id))
        return [CityRef.from_dict(c) for c in raw] if raw is not None else None

    def set_cities(self, cities: List[CityRef], county_id: int) -> None:
        self.set(cities_key(county_id), [c.to_dict() for c in cities])
