"""Persistent contact -> thread mapping."""

from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Protocol

from loguru import logger

from threadline.assistant.errors import PersistenceError


class ThreadStore(Protocol):
    """Durable key-value surface backing the registry (full rewrite on save)."""

    def load_all(self) -> dict[str, str]: ...

    def save_all(self, mapping: dict[str, str]) -> None: ...


class JsonThreadStore:
    """Store the whole mapping as one JSON object on disk."""

    def __init__(self, path: Path):
        self.path = path

    def load_all(self) -> dict[str, str]:
        raw = json.loads(self.path.read_text(encoding="utf-8"))
        if not isinstance(raw, dict):
            raise ValueError(f"expected a JSON object in {self.path}")
        return {
            str(contact): thread
            for contact, thread in raw.items()
            if isinstance(thread, str) and thread
        }

    def save_all(self, mapping: dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(mapping, indent=2, sort_keys=True), encoding="utf-8")
        tmp_path.replace(self.path)


class ThreadRegistry:
    """
    Single source of truth for "does this contact already have a thread".

    Bindings are write-through: ``bind`` saves the full mapping before
    returning. A binding is never overwritten or removed here.
    """

    def __init__(self, store: ThreadStore):
        self.store = store
        self._lock = threading.Lock()
        self._threads: dict[str, str] = self._load()

    def _load(self) -> dict[str, str]:
        try:
            threads = dict(self.store.load_all())
        except FileNotFoundError:
            logger.info("No thread store found; starting with an empty registry")
            return {}
        except (OSError, ValueError) as e:
            logger.warning(f"Thread store unreadable ({e}); starting with an empty registry")
            return {}
        logger.info(f"Loaded {len(threads)} contact thread(s)")
        return threads

    def lookup(self, contact_id: str) -> str | None:
        """Thread bound to ``contact_id``, if any."""
        return self._threads.get(contact_id)

    def bind(self, contact_id: str, thread_id: str) -> str:
        """
        Bind ``contact_id`` to ``thread_id`` and persist synchronously.

        If the contact is already bound, the existing thread id is returned
        unchanged and nothing is written.

        Raises:
            PersistenceError: the store write failed. The in-memory binding is
                kept, so persistence is best effort; the next successful save
                rewrites the full mapping including it.
        """
        with self._lock:
            existing = self._threads.get(contact_id)
            if existing is not None:
                if existing != thread_id:
                    logger.warning(
                        f"Contact {contact_id} already bound to {existing}; ignoring {thread_id}"
                    )
                return existing

            self._threads[contact_id] = thread_id
            snapshot = dict(self._threads)
            try:
                self.store.save_all(snapshot)
            except (OSError, TypeError, ValueError) as e:
                raise PersistenceError(
                    f"failed to persist thread {thread_id} for {contact_id}: {e}",
                    contact_id=contact_id,
                    thread_id=thread_id,
                ) from e

        logger.debug(f"Bound {contact_id} -> {thread_id}")
        return thread_id

    def flush(self) -> None:
        """Rewrite the full mapping to the store."""
        with self._lock:
            snapshot = dict(self._threads)
            try:
                self.store.save_all(snapshot)
            except (OSError, TypeError, ValueError) as e:
                raise PersistenceError(f"failed to flush thread registry: {e}") from e

    def contacts(self) -> dict[str, str]:
        """Copy of the current mapping."""
        return dict(self._threads)

    def __len__(self) -> int:
        return len(self._threads)
