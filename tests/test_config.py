from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from masto_vision.config import config_sha256, load_config, resolve_runtime_secrets
from masto_vision.errors import ConfigError


_VALID_YAML = """\
mastodon:
  base_url: https://mastodon.example/
  access_token_env: MASTODON_ACCESS_TOKEN
  max_attempts: 3
  backoff_seconds: 0

openai:
  api_key_env: OPENAI_API_KEY
  model: gpt-4o-mini
  max_output_tokens: 256

captioning:
  default_language: en
  max_attempts: 10
  backoff_seconds: 2
  done_policy: fully_resolved

polling:
  enabled: false
  initial_delay_seconds: 0
  interval_seconds: 60
  initial_statuses: 40
  statuses: 5
  pace_seconds: 1
"""


class TestConfig(unittest.TestCase):
    def _write(self, td: str, text: str) -> Path:
        path = Path(td) / "config.yaml"
        path.write_text(text, encoding="utf-8")
        return path

    def test_load_config_ok(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            cfg = load_config(self._write(td, _VALID_YAML))

            self.assertEqual(cfg.mastodon.base_url, "https://mastodon.example")
            self.assertEqual(cfg.mastodon.max_attempts, 3)
            self.assertEqual(cfg.openai.max_output_tokens, 256)
            self.assertEqual(cfg.captioning.done_policy, "fully_resolved")
            self.assertFalse(cfg.polling.enabled)
            self.assertEqual(cfg.polling.statuses, 5)

    def test_defaults_fill_optional_sections(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            cfg = load_config(self._write(td, "mastodon:\n  base_url: https://m.example\n"))

            self.assertEqual(cfg.captioning.max_attempts, 10)
            self.assertEqual(cfg.captioning.default_language, "en")
            self.assertEqual(cfg.captioning.done_policy, "on_write")
            self.assertTrue(cfg.polling.enabled)
            self.assertEqual(cfg.polling.pace_seconds, 1.0)

    def test_missing_file_raises(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            with self.assertRaises(ConfigError):
                load_config(Path(td) / "nope.yaml")

    def test_rejects_unknown_keys_and_bad_values(self) -> None:
        bad_inputs = [
            _VALID_YAML.replace("done_policy: fully_resolved", "done_policy: sometimes"),
            _VALID_YAML.replace("statuses: 5", "statuses: 80"),
            _VALID_YAML.replace("base_url: https://mastodon.example/", "base_url: mastodon.example"),
            _VALID_YAML.replace("  max_attempts: 3\n", "  max_attempts: 3\n  request_timeout_seconds: 0\n"),
            _VALID_YAML + "extra_section: {}\n",
            "- just\n- a list\n",
            "mastodon: [unclosed\n",
            "",
        ]
        with tempfile.TemporaryDirectory() as td:
            for text in bad_inputs:
                with self.subTest(text=text[-40:]):
                    with self.assertRaises(ConfigError):
                        load_config(self._write(td, text))

    def test_resolve_runtime_secrets_requires_env(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            cfg = load_config(self._write(td, _VALID_YAML))

            with self.assertRaises(ConfigError) as ctx:
                resolve_runtime_secrets(cfg, environ={"OPENAI_API_KEY": "b"})
            self.assertIn("MASTODON_ACCESS_TOKEN", str(ctx.exception))

            secrets = resolve_runtime_secrets(
                cfg, environ={"MASTODON_ACCESS_TOKEN": " a ", "OPENAI_API_KEY": "b"}
            )
            self.assertEqual(secrets.mastodon_access_token, "a")
            self.assertEqual(secrets.openai_api_key, "b")

    def test_config_hash_is_stable(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = self._write(td, _VALID_YAML)
            self.assertEqual(config_sha256(load_config(path)), config_sha256(load_config(path)))


if __name__ == "__main__":
    unittest.main()
