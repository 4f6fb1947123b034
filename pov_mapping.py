#!/usr/bin/env python3
"""
POV Router Mapping Store
Version: 1.0.0

Persisted player -> source table (flat JSON object). Loaded once at startup,
reloaded on request, written only through set()/remove().
"""

import os
import json
import logging
import tempfile
from pathlib import Path
from typing import Dict, Union


class MappingStore:
    """SteamID -> OBS source name table backed by a JSON file."""

    def __init__(self, path: Union[str, Path], logger: logging.Logger):
        self.path = Path(path)
        self.logger = logger
        self._mapping: Dict[str, str] = {}

    def load(self) -> Dict[str, str]:
        """Read the mapping file. Missing or unreadable files give an empty mapping."""
        if not self.path.exists():
            self.logger.info(f"Mapping file {self.path} not found, starting with an empty mapping")
            self._mapping = {}
            return self.snapshot()

        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            self.logger.error(f"Failed to read {self.path}: {e}")
            self._mapping = {}
            return self.snapshot()

        if not isinstance(data, dict):
            self.logger.error(f"{self.path} must contain a JSON object, ignoring it")
            data = {}

        self._mapping = {str(k): str(v) for k, v in data.items() if v}
        self.logger.info(f"Loaded {len(self._mapping)} mapping entries from {self.path}")
        return self.snapshot()

    def reload(self) -> Dict[str, str]:
        return self.load()

    def save(self):
        """Atomically rewrite the mapping file."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".mapping-", suffix=".json", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(self._mapping, f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def set(self, player_id: str, source_name: str):
        self._mapping[str(player_id)] = str(source_name)
        self.save()
        self.logger.info(f"Mapping set: {player_id} -> {source_name}")

    def remove(self, player_id: str) -> bool:
        if self._mapping.pop(str(player_id), None) is None:
            return False
        self.save()
        self.logger.info(f"Mapping removed: {player_id}")
        return True

    def get(self, player_id: str):
        return self._mapping.get(player_id)

    def snapshot(self) -> Dict[str, str]:
        return dict(self._mapping)

    def __len__(self):
        return len(self._mapping)
