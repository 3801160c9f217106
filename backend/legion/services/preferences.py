"""Persisted per-user UI flags."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from legion.config import Settings, get_settings

logger = logging.getLogger(__name__)

SHOW_MEMBER_LIST_KEY = "legion-show-member-list"


class PreferenceStore:
    """JSON file mapping user ids to their flags, read and written whole on every access."""

    def __init__(self, path: Path | None = None, *, settings: Settings | None = None) -> None:
        self.path = path or (settings or get_settings()).preferences_path

    def _load(self) -> dict[str, Any]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning("Ignoring unreadable preferences file %s", self.path)
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")
        tmp_path.replace(self.path)

    def _flags(self, data: dict[str, Any], user_id: str) -> dict[str, Any]:
        flags = data.get(user_id)
        return flags if isinstance(flags, dict) else {}

    def get(self, user_id: str, key: str, default: Any = None) -> Any:
        return self._flags(self._load(), user_id).get(key, default)

    def set(self, user_id: str, key: str, value: Any) -> None:
        data = self._load()
        flags = self._flags(data, user_id)
        flags[key] = value
        data[user_id] = flags
        self._save(data)

    def remove(self, user_id: str, key: str) -> None:
        data = self._load()
        flags = self._flags(data, user_id)
        if flags.pop(key, None) is None:
            return
        if flags:
            data[user_id] = flags
        else:
            data.pop(user_id, None)
        self._save(data)

    def show_member_list(self, user_id: str) -> bool:
        return bool(self.get(user_id, SHOW_MEMBER_LIST_KEY, True))

    def set_show_member_list(self, user_id: str, value: bool) -> None:
        self.set(user_id, SHOW_MEMBER_LIST_KEY, bool(value))
