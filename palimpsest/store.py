"""Metadata persistence and the on-disk translation workspace."""

from __future__ import annotations

import json
import logging
import os
import pathlib
import tempfile
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from .errors import MetadataError
from .segmenter import content_hash
from .structures import DocumentMapping

logger = logging.getLogger(__name__)

WORKSPACE_DIRNAME = ".palimpsest"
METADATA_FILENAME = "metadata.json"


class MetadataStore(ABC):
    """Key/value contract for persisted document mappings."""

    @abstractmethod
    def load(self, key: str) -> Optional[DocumentMapping]:
        """Return the stored mapping for ``key``, if any."""

    @abstractmethod
    def save(self, key: str, mapping: DocumentMapping) -> None:
        """Store ``mapping`` under ``key``; last write wins."""


class InMemoryMetadataStore(MetadataStore):
    """Dictionary-backed store for tests and embedding."""

    def __init__(self) -> None:
        self._items: Dict[str, DocumentMapping] = {}

    def load(self, key: str) -> Optional[DocumentMapping]:
        return self._items.get(key)

    def save(self, key: str, mapping: DocumentMapping) -> None:
        self._items[key] = mapping


class JsonMetadataStore(MetadataStore):
    """Keeps every mapping in one JSON document, rewritten atomically."""

    def __init__(self, path: pathlib.Path) -> None:
        self.path = path
        self._lock = threading.Lock()

    def load(self, key: str) -> Optional[DocumentMapping]:
        with self._lock:
            translations = self._read().get("translations", {})
        data = translations.get(key)
        if not isinstance(data, dict):
            return None
        return DocumentMapping.from_dict(data, hasher=content_hash)

    def save(self, key: str, mapping: DocumentMapping) -> None:
        with self._lock:
            document = self._read()
            translations = document.setdefault("translations", {})
            translations[key] = mapping.to_dict()
            self._write(document)

    def _read(self) -> Dict[str, Any]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {"translations": {}}
        except OSError as exc:
            raise MetadataError(f"Could not read metadata file {self.path}: {exc}") from exc
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable metadata file %s.", self.path)
            return {"translations": {}}
        if not isinstance(parsed, dict) or not isinstance(parsed.get("translations"), dict):
            return {"translations": {}}
        return parsed

    def _write(self, document: Dict[str, Any]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, temp_name = tempfile.mkstemp(
                dir=str(self.path.parent), prefix=".metadata-", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    json.dump(document, handle, ensure_ascii=False, indent=2)
                os.replace(temp_name, self.path)
            except BaseException:
                if os.path.exists(temp_name):
                    os.unlink(temp_name)
                raise
        except OSError as exc:
            raise MetadataError(f"Could not write metadata file {self.path}: {exc}") from exc


class Workspace:
    """Maps source documents to translations under ``.palimpsest/``."""

    def __init__(self, root: pathlib.Path, *, store: Optional[MetadataStore] = None) -> None:
        self.root = root.expanduser().resolve()
        self.translation_dir = self.root / WORKSPACE_DIRNAME
        self.store = store or JsonMetadataStore(self.translation_dir / METADATA_FILENAME)

    def relative_key(self, source_path: pathlib.Path) -> str:
        resolved = source_path.expanduser().resolve()
        try:
            return resolved.relative_to(self.root).as_posix()
        except ValueError as exc:
            raise MetadataError(
                f"{resolved} is outside the workspace {self.root}."
            ) from exc

    def translation_path(self, source_path: pathlib.Path) -> pathlib.Path:
        return self.translation_dir / self.relative_key(source_path)

    def is_translation_file(self, path: pathlib.Path) -> bool:
        resolved = path.expanduser().resolve()
        try:
            relative = resolved.relative_to(self.translation_dir)
        except ValueError:
            return False
        return relative.as_posix() != METADATA_FILENAME

    def source_path_from_translation(self, translation_path: pathlib.Path) -> Optional[pathlib.Path]:
        resolved = translation_path.expanduser().resolve()
        try:
            relative = resolved.relative_to(self.translation_dir)
        except ValueError:
            return None
        return self.root / relative

    def _key_for_translation(self, translation_path: pathlib.Path) -> str:
        return translation_path.expanduser().resolve().relative_to(self.translation_dir).as_posix()

    def load_mapping(self, translation_path: pathlib.Path) -> Optional[DocumentMapping]:
        return self.store.load(self._key_for_translation(translation_path))

    def needs_translation(self, source_path: pathlib.Path, content: str) -> bool:
        """True when no translation exists or the source changed since."""

        translation_path = self.translation_path(source_path)
        if not translation_path.exists():
            return True
        mapping = self.load_mapping(translation_path)
        return mapping is None or mapping.source_hash != content_hash(content)

    def save_translation(
        self,
        source_path: pathlib.Path,
        translated_content: str,
        mapping: DocumentMapping,
    ) -> pathlib.Path:
        translation_path = self.translation_path(source_path)
        translation_path.parent.mkdir(parents=True, exist_ok=True)
        translation_path.write_text(translated_content, encoding="utf-8")
        self.store.save(self._key_for_translation(translation_path), mapping)
        return translation_path

    def update_source(
        self,
        translation_path: pathlib.Path,
        new_source_content: str,
        mapping: DocumentMapping,
    ) -> pathlib.Path:
        source_path = self.source_path_from_translation(translation_path)
        if source_path is None:
            raise MetadataError("Could not determine source file path.")
        source_path.write_text(new_source_content, encoding="utf-8")
        self.store.save(self._key_for_translation(translation_path), mapping)
        return source_path
