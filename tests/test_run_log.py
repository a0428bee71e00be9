from __future__ import annotations

import io
import json
import tempfile
import unittest
from pathlib import Path

from masto_vision.run_log import RunLogger


def _events(text: str) -> list[dict]:
    return [json.loads(ln) for ln in text.splitlines() if ln.strip()]


class TestRunLogger(unittest.TestCase):
    def test_writes_jsonl_and_respects_min_level(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "logs" / "run.log"
            echo = io.StringIO()

            with RunLogger.open(path, min_level="info", echo=echo) as log:
                log.debug("too_chatty", post_id="1")
                log.info("status_updated", post_id="42", captioned=1)
                log.warning("retrying", url="https://files.example/a.png")

            records = _events(path.read_text(encoding="utf-8"))
            self.assertEqual([r["event"] for r in records], ["status_updated", "retrying"])
            self.assertEqual(records[0]["data"], {"post_id": "42", "captioned": 1})
            self.assertEqual(records[1]["level"], "WARN")
            self.assertEqual(records[1]["url"], "https://files.example/a.png")
            self.assertEqual(_events(echo.getvalue()), records)

    def test_exception_includes_traceback(self) -> None:
        echo = io.StringIO()
        log = RunLogger(echo=echo, min_level="debug")

        try:
            raise RuntimeError("boom")
        except RuntimeError as e:
            log.exception("update_failed", exc=e, post_id="42")

        record = _events(echo.getvalue())[0]
        self.assertEqual(record["level"], "ERROR")
        self.assertEqual(record["data"]["error"]["type"], "RuntimeError")
        self.assertIn("boom", record["data"]["error"]["traceback"])

    def test_appends_across_sessions(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "run.log"
            with RunLogger.open(path) as log:
                log.info("first")
            with RunLogger.open(path) as log:
                log.info("second")

            records = _events(path.read_text(encoding="utf-8"))
            self.assertEqual([r["event"] for r in records], ["first", "second"])
            self.assertNotEqual(records[0]["session_id"], records[1]["session_id"])

    def test_logger_without_sinks_discards(self) -> None:
        log = RunLogger()
        log.error("nothing_happens")
        self.assertIsNone(log._fp)
        log.close()

    def test_unknown_level_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            RunLogger(min_level="loud")


if __name__ == "__main__":
    unittest.main()
