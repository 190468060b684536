# guardians.py
import os
import json
import logging
import tempfile
import threading
from typing import Dict, Iterable, List, Set

from config import ADMIN_IDS, ADMINS_FILE, GUARDIANS_FILE

logger = logging.getLogger("guardians")


def _atomic_write_json(path: str, payload: object) -> None:
    folder = os.path.dirname(os.path.abspath(path))
    os.makedirs(folder, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=folder, prefix=".tmp-", suffix=".json")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(payload, fh, ensure_ascii=False, indent=2)
        os.replace(tmp_path, path)
    except Exception:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise


class GuardianRegistry:
    """
    guardian id -> ordered, duplicate-free list of student ids, kept in
    {"encargados": {"<guardian>": {"alumnos": [...]}}}.

    Reads fail closed (an unreadable file looks empty); last write wins.
    """

    def __init__(self, path: str = GUARDIANS_FILE):
        self.path = path
        self._lock = threading.Lock()

    def _read_unlocked(self) -> Dict[str, Dict[str, object]]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                content = fh.read()
            if not content.strip():
                return {}
            return json.loads(content).get("encargados", {}) or {}
        except Exception:
            logger.exception("Error reading guardians file %s", self.path)
            return {}

    def _write_unlocked(self, data: Dict[str, Dict[str, object]]) -> None:
        _atomic_write_json(self.path, {"encargados": data})

    def link(self, guardian_id: str, student_id: str) -> bool:
        try:
            with self._lock:
                data = self._read_unlocked()
                entry = data.setdefault(guardian_id, {})
                students = list(entry.get("alumnos", []))
                if student_id not in students:
                    students.append(student_id)
                entry["alumnos"] = students
                self._write_unlocked(data)
        except Exception:
            logger.exception("Error linking guardian %s to student %s", guardian_id, student_id)
            return False
        logger.info("Guardian %s linked to student %s", guardian_id, student_id)
        return True

    def unlink(self, guardian_id: str, student_id: str) -> bool:
        try:
            with self._lock:
                data = self._read_unlocked()
                entry = data.get(guardian_id)
                students = list(entry.get("alumnos", [])) if entry else []
                if student_id not in students:
                    return False
                students.remove(student_id)
                entry["alumnos"] = students
                self._write_unlocked(data)
        except Exception:
            logger.exception("Error unlinking guardian %s from student %s", guardian_id, student_id)
            return False
        logger.info("Guardian %s unlinked from student %s", guardian_id, student_id)
        return True

    def students_of(self, guardian_id: str) -> List[str]:
        with self._lock:
            entry = self._read_unlocked().get(guardian_id) or {}
        return list(entry.get("alumnos", []))

    def guardians(self) -> List[str]:
        with self._lock:
            return list(self._read_unlocked().keys())

    def records(self) -> Dict[str, Dict[str, object]]:
        with self._lock:
            return self._read_unlocked()


# ========================= Admins =========================

class AdminList:
    """Flat allow-list of admin identities (admins.json plus the ADMIN_IDS env var)."""

    def __init__(self, ids: Iterable[str] = ()):
        self._ids: Set[str] = {self._bare(i) for i in ids if i}

    @staticmethod
    def _bare(identity: str) -> str:
        # "50499999999@s.whatsapp.net" / "+50499999999" -> "50499999999"
        return str(identity).split("@", 1)[0].strip().lstrip("+")

    @classmethod
    def load(cls, path: str = ADMINS_FILE, extra: Iterable[str] = ADMIN_IDS) -> "AdminList":
        ids: List[str] = list(extra)
        try:
            with open(path, "r", encoding="utf-8") as fh:
                ids.extend(str(x) for x in json.load(fh))
        except FileNotFoundError:
            logger.warning("admins file %s not found; using ADMIN_IDS only", path)
        except Exception:
            logger.exception("Error reading admins file %s", path)
        return cls(ids)

    def is_admin(self, identity: str) -> bool:
        return bool(identity) and self._bare(identity) in self._ids

    def __len__(self) -> int:
        return len(self._ids)
