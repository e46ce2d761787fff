from __future__ import annotations

import unittest
from pathlib import Path

import conftest  # noqa: F401  (import side-effect: sys.path bootstrap)

from simrunner.settings import RunnerSettings, apply_overrides, load_settings


class TestSettings(unittest.TestCase):
    def test_defaults(self) -> None:
        cfg = load_settings({})
        self.assertEqual(cfg.binary_path, Path("./lunchtime-simulator"))
        self.assertEqual(cfg.log_dir, Path("~/simulator-logs").expanduser())
        self.assertEqual(cfg.timeout_hours, 5.0)
        self.assertEqual(cfg.timeout_s, 5 * 3600.0)
        self.assertEqual(cfg.cores_per_run, 8)
        self.assertEqual(cfg.retry_interval_s, 300.0)
        self.assertEqual(cfg.download_url, "")

    def test_env_overrides(self) -> None:
        cfg = load_settings(
            {
                "SIMRUNNER_LOG_DIR": "/tmp/simlogs",
                "SIMRUNNER_TIMEOUT_HOURS": "0.5",
                "SIMRUNNER_CORES_PER_RUN": "4",
                "SIMRUNNER_DOWNLOAD_URL": "https://example.invalid/sim",
                "SIMRUNNER_POLL_INTERVAL_S": "",
            }
        )
        self.assertEqual(cfg.log_dir, Path("/tmp/simlogs"))
        self.assertEqual(cfg.timeout_hours, 0.5)
        self.assertEqual(cfg.cores_per_run, 4)
        self.assertEqual(cfg.download_url, "https://example.invalid/sim")
        self.assertEqual(cfg.poll_interval_s, 1.0)

    def test_bad_env_value_names_variable(self) -> None:
        with self.assertRaises(ValueError) as ctx:
            load_settings({"SIMRUNNER_CORES_PER_RUN": "eight"})
        self.assertIn("SIMRUNNER_CORES_PER_RUN", str(ctx.exception))

    def test_out_of_range_rejected(self) -> None:
        with self.assertRaises(ValueError):
            load_settings({"SIMRUNNER_TIMEOUT_HOURS": "0"})
        with self.assertRaises(ValueError):
            apply_overrides(RunnerSettings(), cores_per_run=0)
        with self.assertRaises(ValueError):
            apply_overrides(RunnerSettings(), poll_interval_s=-1.0)

    def test_non_finite_values_rejected(self) -> None:
        for raw in ("nan", "inf", "-inf"):
            with self.assertRaises(ValueError) as ctx:
                load_settings({"SIMRUNNER_TIMEOUT_HOURS": raw})
            self.assertIn("finite", str(ctx.exception))
        with self.assertRaises(ValueError):
            load_settings({"SIMRUNNER_POLL_INTERVAL_S": "nan"})
        with self.assertRaises(ValueError):
            apply_overrides(RunnerSettings(), retry_interval_s=float("inf"))

    def test_cli_overrides_skip_none(self) -> None:
        base = load_settings({"SIMRUNNER_CORES_PER_RUN": "4"})
        cfg = apply_overrides(base, cores_per_run=None, timeout_hours=2.0)
        self.assertEqual(cfg.cores_per_run, 4)
        self.assertEqual(cfg.timeout_hours, 2.0)


if __name__ == "__main__":
    unittest.main()
