from __future__ import annotations

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from ruleflow.logging import get_logger
from ruleflow.service.flow_validation import validate_flow_document
from ruleflow.storage.errors import ConstraintViolation
from ruleflow.storage.models import RuleType, RuleVersion


class MemoryStore:
    """In-memory rule version repository.

    Reads are served under a lock so that concurrent flow runs can share one
    store; records handed out are the stored objects and must be treated as
    read-only by callers.
    """

    def __init__(self, seed_path: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.versions: Dict[str, RuleVersion] = {}
        # RLock so save_version can call activate while holding the lock
        self._data_lock = threading.RLock()
        if seed_path:
            self.load_seed(seed_path)

    def load_seed(self, path: str | Path) -> int:
        """Load rule versions from a JSON file; returns how many were stored."""

        seed_file = Path(path)
        try:
            data = json.loads(seed_file.read_text())
        except FileNotFoundError:
            self.logger.warning("versions_seed_missing", path=str(seed_file))
            return 0
        entries = data.get("versions", []) if isinstance(data, dict) else data
        loaded = 0
        for entry in entries:
            self.save_version(RuleVersion.from_dict(entry))
            loaded += 1
        self.logger.info("versions_seed_loaded", path=str(seed_file), count=loaded)
        return loaded

    def save_version(self, version: RuleVersion) -> RuleVersion:
        if version.type == RuleType.FLOW and version.flow is not None:
            validate_flow_document(version.flow_document())
        with self._data_lock:
            for existing in self.versions.values():
                if (
                    existing.id != version.id
                    and existing.category_id == version.category_id
                    and existing.version == version.version
                ):
                    raise ConstraintViolation.duplicate_label(version.category_id, version.version)
            self.versions[version.id] = version
            if version.is_active:
                self.activate(version.id)
        return version

    def find_by_id(self, version_id: str) -> Optional[RuleVersion]:
        with self._data_lock:
            return self.versions.get(version_id)

    def list_versions(self, category_id: str) -> List[RuleVersion]:
        """Versions of a category, newest first."""

        with self._data_lock:
            matches = [v for v in self.versions.values() if v.category_id == category_id]
        return sorted(matches, key=lambda v: v.created_at, reverse=True)

    def find_active(self, category_id: str) -> Optional[RuleVersion]:
        for version in self.list_versions(category_id):
            if version.is_active:
                return version
        return None

    def find_latest(self, category_id: str) -> Optional[RuleVersion]:
        versions = self.list_versions(category_id)
        return versions[0] if versions else None

    def activate(self, version_id: str) -> Optional[RuleVersion]:
        """Mark ``version_id`` active and deactivate its category siblings."""

        with self._data_lock:
            target = self.versions.get(version_id)
            if target is None:
                return None
            now = datetime.utcnow()
            for version in self._siblings(target.category_id):
                if version.is_active and version.id != target.id:
                    version.is_active = False
                    version.updated_at = now
            target.is_active = True
            target.updated_at = now
            return target

    def _siblings(self, category_id: str) -> Iterable[RuleVersion]:
        return [v for v in self.versions.values() if v.category_id == category_id]

