"""Whole-document JSON persistence.

The document is read in full before every operation and rewritten in full
after every mutation. Mutations within one process are serialized by a
lock; separate processes writing the same file can still lose updates.
"""

import copy
import json
import os
import threading
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator

from .common import log


class JsonFileStore:
    def __init__(self, path: str, default_factory: Callable[[], Dict[str, Any]]):
        self.path = path
        self.default_factory = default_factory
        self._lock = threading.RLock()

    def read(self) -> Dict[str, Any]:
        if not os.path.exists(self.path):
            return self.default_factory()
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as exc:
            log(f"WARN: Error reading {self.path}: {exc}")
            return self.default_factory()
        if not isinstance(data, dict):
            log(f"WARN: {self.path} does not hold a JSON object, ignoring it")
            return self.default_factory()
        base = self.default_factory()
        for key, value in data.items():
            if key in base and not isinstance(value, type(base[key])):
                log(f"WARN: {self.path} has a malformed '{key}' entry, using the default")
                continue
            base[key] = value
        return base

    def write(self, data: Dict[str, Any]) -> bool:
        try:
            with open(self.path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
        except (OSError, TypeError) as exc:
            log(f"WARN: Error writing {self.path}: {exc}")
            return False
        return True

    @contextmanager
    def mutate(self) -> Iterator[Dict[str, Any]]:
        """Yield the current document; write it back if the block exits cleanly.

        Callers that decide not to change anything can simply not touch the
        yielded dict: an unchanged document is not rewritten.
        """
        with self._lock:
            data = self.read()
            before = copy.deepcopy(data)
            yield data
            if data != before:
                self.write(data)
