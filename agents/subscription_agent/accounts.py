import json
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from agents.subscription_agent.models import AccountRecord


class JsonAccountDirectory:
    """Account lookups backed by a JSON file.

    Expected shape::

        {"accounts": [{"id": "acc-1", "email": "...", "password": "...",
                       "totp_secret": "...", "profile_id": "k12abc",
                       "alternate_profile_ids": ["k13def"]}]}

    The file is re-read when its modification time changes.
    """

    def __init__(self, path: Path, logger) -> None:
        self.path = Path(path)
        self.logger = logger
        self._lock = threading.Lock()
        self._mtime: Optional[float] = None
        self._rows: List[Dict[str, Any]] = []

    def _load(self) -> List[Dict[str, Any]]:
        with self._lock:
            if not self.path.exists():
                self._rows = []
                self._mtime = None
                return []
            mtime = self.path.stat().st_mtime
            if self._mtime == mtime:
                return self._rows
            try:
                raw = json.loads(self.path.read_text(encoding="utf-8"))
            except Exception:
                self.logger.exception("Failed to read accounts file %s", self.path)
                return self._rows
            rows = raw.get("accounts", []) if isinstance(raw, dict) else raw
            self._rows = [row for row in rows or [] if isinstance(row, dict)]
            self._mtime = mtime
            return self._rows

    @staticmethod
    def _to_record(row: Dict[str, Any]) -> AccountRecord:
        return AccountRecord(
            account_id=str(row.get("id", "") or row.get("email", "")).strip(),
            email=str(row.get("email", "")).strip(),
            password=str(row.get("password", "")),
            totp_secret=str(row.get("totp_secret", "")).strip(),
            profile_id=str(row.get("profile_id", "")).strip(),
        )

    def list_accounts(self) -> List[AccountRecord]:
        return [self._to_record(row) for row in self._load()]

    def find_account(self, account_id: str) -> Optional[AccountRecord]:
        wanted = str(account_id or "").strip().lower()
        if not wanted:
            return None
        for row in self._load():
            record = self._to_record(row)
            if record.account_id.lower() == wanted or record.email.lower() == wanted:
                return record
        return None

    def find_profile_ids(self, email: str) -> List[str]:
        wanted = str(email or "").strip().lower()
        found: List[str] = []
        if not wanted:
            return found
        for row in self._load():
            if str(row.get("email", "")).strip().lower() != wanted:
                continue
            candidates = [row.get("profile_id", "")] + list(row.get("alternate_profile_ids", []) or [])
            for value in candidates:
                candidate = str(value or "").strip()
                if candidate and candidate not in found:
                    found.append(candidate)
        return found
