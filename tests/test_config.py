from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from taste_index.config import config_sha256, load_config, retry_config
from taste_index.errors import ConfigError


_VALID_YAML = """\
store:
  path: index.sqlite
  busy_timeout_ms: 2000

content:
  scheme: IPFS
  gateway: https://gateway.pinata.cloud/ipfs/

posts:
  categories: [Cook, taste, cook]
  max_caption_chars: 500
  rating_min: 1
  rating_max: 5

profiles:
  max_display_name_chars: 40

leaderboard:
  recent_window_seconds: 604800
  default_limit: 10

retry:
  max_attempts: 3
  base_delay_seconds: 0.01
  max_delay_seconds: 0.1
  jitter_ratio: 0.0
"""


class TestConfig(unittest.TestCase):
    def _write(self, td: str, text: str) -> Path:
        path = Path(td) / "config.yaml"
        path.write_text(text, encoding="utf-8")
        return path

    def test_load_config_ok(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            cfg = load_config(self._write(td, _VALID_YAML), environ={})
            self.assertEqual(cfg.store.busy_timeout_ms, 2000)
            self.assertEqual(cfg.content.scheme, "ipfs")
            self.assertEqual(cfg.posts.categories, ["cook", "taste"])
            self.assertEqual(cfg.profiles.max_display_name_chars, 40)

            retry = retry_config(cfg)
            self.assertEqual(retry.max_attempts, 3)
            self.assertEqual(retry.jitter_ratio, 0.0)

    def test_empty_file_yields_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            cfg = load_config(self._write(td, ""))
            self.assertEqual(cfg.leaderboard.recent_window_seconds, 7 * 24 * 60 * 60)
            self.assertEqual(cfg.posts.max_caption_chars, 500)

    def test_rejects_inverted_rating_range(self) -> None:
        bad = _VALID_YAML.replace("rating_max: 5", "rating_max: 0")
        with tempfile.TemporaryDirectory() as td:
            with self.assertRaises(ConfigError):
                load_config(self._write(td, bad))

    def test_rejects_unknown_keys(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            with self.assertRaises(ConfigError) as ctx:
                load_config(self._write(td, "store:\n  pathh: x\n"))
            self.assertIn("store.pathh", str(ctx.exception))

    def test_missing_file(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            with self.assertRaises(ConfigError):
                load_config(Path(td) / "nope.yaml")

    def test_environment_overrides_file_values(self) -> None:
        env = {"TASTE_INDEX_DB": " /var/lib/taste/index.sqlite ", "TASTE_INDEX_GATEWAY": ""}
        with tempfile.TemporaryDirectory() as td:
            cfg = load_config(self._write(td, _VALID_YAML), environ=env)
            self.assertEqual(cfg.store.path, "/var/lib/taste/index.sqlite")
            self.assertEqual(cfg.store.busy_timeout_ms, 2000)
            # Blank variables are ignored.
            self.assertEqual(cfg.content.gateway, "https://gateway.pinata.cloud/ipfs/")

            gw_env = {"TASTE_INDEX_GATEWAY": "https://gw.example/ipfs/"}
            empty = load_config(self._write(td, ""), environ=gw_env)
            self.assertEqual(empty.content.gateway, "https://gw.example/ipfs/")

    def test_hash_is_stable(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            a = load_config(self._write(td, _VALID_YAML))
            b = load_config(self._write(td, _VALID_YAML))
            self.assertEqual(config_sha256(a), config_sha256(b))


if __name__ == "__main__":
    unittest.main()
