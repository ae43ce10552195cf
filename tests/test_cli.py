from pathlib import Path
from tempfile import TemporaryDirectory
import contextlib
import io
import json
import logging
import unittest

from formpilot.app_logging import LOGGER_NAME
from formpilot.cli import _open_runtime, build_parser, load_batch, main
from formpilot.config import load_config


class CliTest(unittest.TestCase):
    def test_run_once_flag(self) -> None:
        parser = build_parser()
        args = parser.parse_args(["--config", "formpilot.yaml", "run", "--once"])
        self.assertEqual(args.command, "run")
        self.assertTrue(args.once)

    def test_concurrency_takes_integer(self) -> None:
        args = build_parser().parse_args(["--config", "formpilot.yaml", "concurrency", "4"])
        self.assertEqual(args.value, 4)

    def test_load_batch_accepts_items_mapping(self) -> None:
        with TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "batch.json"
            path.write_text(json.dumps({"items": [{"url": "https://a.example.com"}]}), encoding="utf-8")
            self.assertEqual(load_batch(path), [{"url": "https://a.example.com"}])
            path.write_text('{"jobs": []}', encoding="utf-8")
            with self.assertRaises(ValueError):
                load_batch(path)

    def test_open_runtime_prepares_state_directory(self) -> None:
        with TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            config_path = root / "formpilot.yaml"
            config_path.write_text(
                'paths:\n  db: "./state/formpilot.db"\n  log: "./logs/formpilot.log"\n',
                encoding="utf-8",
            )
            runtime = _open_runtime(load_config(config_path))
            try:
                self.assertTrue((root / "state" / "formpilot.db").exists())
                self.assertTrue((root / "logs" / "formpilot.log").exists())
                self.assertEqual(runtime.service.max_concurrent(), 3)
            finally:
                runtime.store.close()
                logger = logging.getLogger(LOGGER_NAME)
                for handler in list(logger.handlers):
                    handler.close()
                    logger.removeHandler(handler)

    def test_enqueue_then_status(self) -> None:
        with TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            config_path = root / "formpilot.yaml"
            config_path.write_text(
                'paths:\n  db: "./state/formpilot.db"\n  log: "./state/formpilot.log"\n',
                encoding="utf-8",
            )
            batch_path = root / "batch.yaml"
            batch_path.write_text(
                "- url: https://a.example.com\n  company: A\n- url: https://b.example.com\n",
                encoding="utf-8",
            )
            config = ["--config", str(config_path)]
            with contextlib.redirect_stdout(io.StringIO()):
                self.assertEqual(main([*config, "enqueue", str(batch_path)]), 0)
                self.assertEqual(main([*config, "pause"]), 0)
                self.assertEqual(main([*config, "concurrency", "9"]), 2)

            output = io.StringIO()
            with contextlib.redirect_stdout(output):
                self.assertEqual(main([*config, "status", "--json"]), 0)
            status = json.loads(output.getvalue())
            self.assertEqual(status["counts"]["pending"], 2)
            self.assertTrue(status["paused"])
            self.assertEqual(status["max_concurrent"], 3)
            self.assertTrue((root / "state" / "formpilot.db").exists())


if __name__ == "__main__":
    unittest.main()
