# audit_log.py
import os
import json
import logging
import threading
from datetime import datetime
from typing import Dict, List, Optional

from config import AUDIT_LOG_FILE

logger = logging.getLogger("audit_log")

KIND_MESSAGE = "mensaje"
KIND_REGISTRATION = "registro"
KIND_REMOVAL = "eliminacion"


class AuditLog:
    """Append-only JSON array of {kind, timestamp, userId, detail}."""

    def __init__(self, path: str = AUDIT_LOG_FILE, clock=datetime.now):
        self.path = path
        self._clock = clock
        self._lock = threading.Lock()

    def _read_unlocked(self) -> List[Dict[str, str]]:
        if not os.path.exists(self.path):
            return []
        with open(self.path, "r", encoding="utf-8") as fh:
            content = fh.read()
        return json.loads(content) if content.strip() else []

    def append(self, kind: str, user_id: str, detail: str) -> Optional[Dict[str, str]]:
        entry = {
            "kind": kind,
            "timestamp": self._clock().isoformat(),
            "userId": user_id,
            "detail": detail,
        }
        try:
            with self._lock:
                entries = self._read_unlocked()
                entries.append(entry)
                os.makedirs(os.path.dirname(os.path.abspath(self.path)), exist_ok=True)
                with open(self.path, "w", encoding="utf-8") as fh:
                    json.dump(entries, fh, ensure_ascii=False, indent=2)
        except Exception:
            logger.exception("Error writing log entry %s", entry)
            return None
        return entry

    def entries(self) -> List[Dict[str, str]]:
        try:
            with self._lock:
                return self._read_unlocked()
        except Exception:
            logger.exception("Error reading logs from %s", self.path)
            return []

    def history_for(self, user_id: str) -> List[Dict[str, str]]:
        matches = [e for e in self.entries() if user_id and user_id in (e.get("userId") or "")]
        matches.sort(key=lambda e: e.get("timestamp", ""))
        return matches
