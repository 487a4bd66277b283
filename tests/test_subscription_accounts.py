import json
import logging
import os
import tempfile
import unittest
from pathlib import Path

from agents.subscription_agent.accounts import JsonAccountDirectory


class JsonAccountDirectoryTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.path = Path(self.tmp.name) / "accounts.json"
        self.directory = JsonAccountDirectory(self.path, logging.getLogger("tests.accounts"))

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def _write(self, payload) -> None:
        self.path.write_text(json.dumps(payload), encoding="utf-8")

    def test_missing_file_is_empty(self) -> None:
        self.assertEqual(self.directory.list_accounts(), [])
        self.assertIsNone(self.directory.find_account("acc-1"))

    def test_records_and_email_fallback_id(self) -> None:
        self._write({"accounts": [{"email": " Solo@Example.com ", "password": "pw", "profile_id": "k5"}, "junk"]})
        accounts = self.directory.list_accounts()

        self.assertEqual(len(accounts), 1)
        self.assertEqual(accounts[0].account_id, "Solo@Example.com")
        self.assertEqual(self.directory.find_account("solo@example.com").profile_id, "k5")

    def test_profile_ids_across_rows(self) -> None:
        self._write(
            [
                {"id": "a", "email": "x@example.com", "profile_id": "k1", "alternate_profile_ids": ["k2", ""]},
                {"id": "b", "email": "X@example.com", "profile_id": "k2"},
                {"id": "c", "email": "y@example.com", "profile_id": "k9"},
            ]
        )
        self.assertEqual(self.directory.find_profile_ids("x@example.com"), ["k1", "k2"])
        self.assertEqual(self.directory.find_profile_ids(""), [])

    def test_reloads_after_change(self) -> None:
        self._write({"accounts": [{"id": "a", "email": "x@example.com"}]})
        self.assertEqual(len(self.directory.list_accounts()), 1)

        self._write({"accounts": [{"id": "a"}, {"id": "b"}]})
        stat = self.path.stat()
        os.utime(self.path, (stat.st_atime, stat.st_mtime + 5))
        self.assertEqual([a.account_id for a in self.directory.list_accounts()], ["a", "b"])

    def test_broken_file_keeps_last_good_rows(self) -> None:
        self._write({"accounts": [{"id": "a"}]})
        self.directory.list_accounts()

        self.path.write_text("{not json", encoding="utf-8")
        stat = self.path.stat()
        os.utime(self.path, (stat.st_atime, stat.st_mtime + 5))
        self.assertEqual([a.account_id for a in self.directory.list_accounts()], ["a"])


if __name__ == "__main__":
    unittest.main()
