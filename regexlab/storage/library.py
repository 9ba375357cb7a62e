"""
regexlab/storage/library.py: saved-rule and workspace libraries.

Both libraries keep one JSON list per store key and rewrite the whole list on
every change. Names are unique keys: saving under an existing name replaces
the old entry in place.

Malformed persisted data is not propagated. :meth:`_Library._load` raises
:class:`~regexlab.core.errors.StoreCorruptionError` internally, the public
methods log it and treat the record as empty; the stored value is left as-is
until the next successful write replaces it.
"""

from __future__ import annotations

import logging
from typing import Generic, Optional, TypeVar

from pydantic import TypeAdapter, ValidationError

from regexlab.core.constants import C
from regexlab.core.errors import StoreCorruptionError
from regexlab.core.logger import get_logger
from regexlab.storage.kv_store import KeyValueStore
from regexlab.storage.records import (
    SAVED_PATTERNS_ADAPTER,
    WORKSPACES_ADAPTER,
    SavedRule,
    Workspace,
    dump_rules,
    dump_workspaces,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _Library(Generic[T]):
    """Shared load/store plumbing for one keyed list."""

    _key: str
    _adapter: TypeAdapter

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store
        self._last_error: Optional[StoreCorruptionError] = None

    @property
    def last_error(self) -> Optional[StoreCorruptionError]:
        """The corruption found by the most recent read, if any."""
        return self._last_error

    def list(self) -> list[T]:
        """Return every entry, oldest first. Malformed data reads as empty."""
        try:
            items = self._load()
            self._last_error = None
            return items
        except StoreCorruptionError as exc:
            self._last_error = exc
            logger.warning("%s", exc)
            get_logger().warn("store", "record_corrupt", {"key": exc.key, "detail": exc.detail})
            return []

    def _load(self) -> list[T]:
        raw = self._store.get(self._key)
        if raw is None:
            return []
        try:
            records = self._adapter.validate_json(raw)
        except ValidationError as exc:
            raise StoreCorruptionError(self._key, f"{exc.error_count()} validation error(s)") from exc
        return [self._to_domain(r) for r in records]

    def _to_domain(self, record) -> T:  # type: ignore[no-untyped-def]
        raise NotImplementedError

    def _dump(self, items: list[T]) -> str:
        raise NotImplementedError

    def _save_all(self, items: list[T]) -> None:
        self._store.set(self._key, self._dump(items))
        self._last_error = None
        get_logger().info("store", "record_written", {"key": self._key, "count": len(items)})


class RuleLibrary(_Library[SavedRule]):
    """Named reusable stage definitions under the ``savedPatterns`` key."""

    _key = C.SAVED_RULES_KEY
    _adapter = SAVED_PATTERNS_ADAPTER

    def _to_domain(self, record) -> SavedRule:  # type: ignore[no-untyped-def]
        return record.to_rule()

    def _dump(self, items: list[SavedRule]) -> str:
        return dump_rules(items)

    def get(self, name: str) -> Optional[SavedRule]:
        return next((r for r in self.list() if r.name == name), None)

    def save(
        self,
        name: str,
        source_expression: str,
        flags: str = "",
        replacement: str = "",
    ) -> SavedRule:
        """
        Save a rule under *name* (trimmed).

        Raises:
            ValueError: If the name or the expression is blank.
        """
        name = name.strip()
        if not name:
            raise ValueError("Rule name must not be empty")
        if not source_expression.strip():
            raise ValueError("Rule pattern must not be empty")
        rule = SavedRule(
            name=name,
            source_expression=source_expression,
            flags=flags,
            replacement=replacement,
        )
        self._save_all(_upsert(self.list(), rule))
        return rule

    def delete(self, name: str) -> bool:
        rules = self.list()
        kept = [r for r in rules if r.name != name]
        if len(kept) == len(rules):
            return False
        self._save_all(kept)
        return True

    def clear(self) -> None:
        """Remove every saved rule."""
        self._store.remove(self._key)
        self._last_error = None
        get_logger().info("store", "record_cleared", {"key": self._key})


class WorkspaceLibrary(_Library[Workspace]):
    """Named text + stage snapshots under the ``workspaces`` key."""

    _key = C.WORKSPACES_KEY
    _adapter = WORKSPACES_ADAPTER

    def _to_domain(self, record) -> Workspace:  # type: ignore[no-untyped-def]
        return record.to_workspace()

    def _dump(self, items: list[Workspace]) -> str:
        return dump_workspaces(items)

    def get(self, name: str) -> Optional[Workspace]:
        return next((w for w in self.list() if w.name == name), None)

    def save(self, workspace: Workspace) -> Workspace:
        """
        Save a workspace under its trimmed name.

        Raises:
            ValueError: If the name is blank.
        """
        name = workspace.name.strip()
        if not name:
            raise ValueError("Workspace name must not be empty")
        workspace = Workspace(name=name, text=workspace.text, stages=tuple(workspace.stages))
        self._save_all(_upsert(self.list(), workspace))
        return workspace

    def delete(self, name: str) -> bool:
        workspaces = self.list()
        kept = [w for w in workspaces if w.name != name]
        if len(kept) == len(workspaces):
            return False
        self._save_all(kept)
        return True


def _upsert(items: list, item):  # type: ignore[no-untyped-def]
    """Replace the entry with the same name in place, or append."""
    for i, existing in enumerate(items):
        if existing.name == item.name:
            return items[:i] + [item] + items[i + 1 :]
    return items + [item]
