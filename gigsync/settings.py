"""
Per-user settings used when deriving mileage and fuel values.
"""

import json
import sqlite3
import logging
from typing import Any, Callable, Dict, Optional

from gigsync.calculations import as_number
from gigsync.db import Clock, db, now_iso, utc_now

logger = logging.getLogger("gigsync.settings")

DEFAULT_SETTINGS = {
    "mileageRate": None,      # $/mile; None = no reimbursement unless supplied
    "defaultMpg": None,
    "defaultGasPrice": None,
}

NUMERIC_SETTINGS = ("mileageRate", "defaultMpg", "defaultGasPrice")


class SettingsService:
    def __init__(self, connect: Callable[[], sqlite3.Connection] = db, clock: Clock = utc_now):
        self.connect = connect
        self.clock = clock

    def get(self, user_id: str) -> Dict[str, Any]:
        conn = self.connect()
        try:
            row = conn.execute(
                "SELECT settings FROM user_settings WHERE user_id = ?", (user_id,)
            ).fetchone()
        finally:
            conn.close()

        settings = dict(DEFAULT_SETTINGS)
        if row and row["settings"]:
            try:
                stored = json.loads(row["settings"])
                if isinstance(stored, dict):
                    settings.update({k: v for k, v in stored.items() if k in DEFAULT_SETTINGS})
            except json.JSONDecodeError as e:
                logger.warning(f"Corrupt settings for {user_id}, using defaults: {e}")
        return settings

    def update(self, user_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        settings = self.get(user_id)
        ignored = sorted(k for k in changes if k not in DEFAULT_SETTINGS)
        if ignored:
            logger.warning(f"Ignoring unknown settings for {user_id}: {ignored}")
        for key, value in changes.items():
            if key not in DEFAULT_SETTINGS:
                continue
            if key in NUMERIC_SETTINGS:
                value = as_number(value)
            settings[key] = value

        conn = self.connect()
        try:
            conn.execute(
                """
                INSERT INTO user_settings (user_id, settings, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET settings = excluded.settings, updated_at = excluded.updated_at
                """,
                (user_id, json.dumps(settings), now_iso(self.clock)),
            )
            conn.commit()
        finally:
            conn.close()
        logger.info(f"Settings updated for {user_id}: {sorted(set(changes) - set(ignored))}")
        return settings

    def mileage_rate(self, user_id: str) -> Optional[float]:
        return as_number(self.get(user_id).get("mileageRate"))
