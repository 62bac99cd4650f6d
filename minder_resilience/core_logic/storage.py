"""Durable key/value stores used to persist the offline mutation queue.

The queue only relies on the small `DurableStore` contract below, so any
platform storage can be plugged in. Two implementations ship with the
package:

- `MemoryStore`: a plain dict. Nothing survives a restart.
- `JsonFileStore`: a single JSON object on disk, rewritten atomically on
  every change, in the same spirit as the transfer checkpoint files this
  codebase has always used.
"""
import abc
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, Optional, Union

logger = logging.getLogger(__name__)


class DurableStore(abc.ABC):
    """String key/value store contract. Implementations may raise; callers log."""

    @abc.abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Returns the stored string or None when the key is absent."""
        pass

    @abc.abstractmethod
    def set(self, key: str, value: str) -> None:
        pass

    @abc.abstractmethod
    def remove(self, key: str) -> None:
        pass

    @abc.abstractmethod
    def clear(self) -> None:
        pass


class MemoryStore(DurableStore):
    """In-memory store. Useful for tests and platforms without persistence."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def clear(self) -> None:
        self._data.clear()


class JsonFileStore(DurableStore):
    """Persists all keys in one JSON object file.

    Attributes:
        file (Path): The path of the backing JSON file.
    """

    def __init__(self, path: Union[str, Path]):
        self.file = Path(path)
        self._data = self._load()

    def _load(self) -> Dict[str, str]:
        if not self.file.exists():
            return {}
        try:
            data = json.loads(self.file.read_text(encoding='utf-8'))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Could not read store file '{self.file}': {e}. Starting fresh.")
            return {}
        if not isinstance(data, dict):
            logger.warning(f"Store file '{self.file}' does not hold a JSON object. Starting fresh.")
            return {}
        return {str(k): v for k, v in data.items() if isinstance(v, str)}

    def _save(self) -> None:
        """Writes the whole store to a temp file, then swaps it into place."""
        self.file.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=f".{self.file.name}.", dir=str(self.file.parent))
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(self._data, f, indent=2)
            os.replace(tmp_path, self.file)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value
        self._save()

    def remove(self, key: str) -> None:
        if key in self._data:
            del self._data[key]
            self._save()

    def clear(self) -> None:
        self._data = {}
        self._save()
