"""Tests for the command-line interface."""

import io
import json
import shutil
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from pathlib import Path
from unittest.mock import patch

from metaprep.__main__ import build_parser, config_from_args, main


class TestConfigFromArgs(unittest.TestCase):

    def setUp(self):
        self.test_dir = Path(tempfile.mkdtemp())
        self.parser = build_parser()

    def tearDown(self):
        shutil.rmtree(self.test_dir)

    def parse(self, *argv):
        with patch("metaprep.__main__.get_data_dir", return_value=None):
            return config_from_args(self.parser.parse_args(["run", *argv]))

    def test_flags_map_onto_config_fields(self):
        config = self.parse(
            "--prefix", "s1", "--reads1", "a.fq.gz", "--librarylayout", "single",
            "--dedup", "false", "--keepQCtmpfile", "yes", "--foreign-genome-ref", "/idx",
            "--max-memory", "2g", "--tool-dir", "/opt/a", "--tool-dir", "/opt/b", "--quiet",
        )
        self.assertEqual(config.prefix, "s1")
        self.assertEqual(config.library_layout, "single")
        self.assertFalse(config.dedup)
        self.assertTrue(config.keep_qc_tmpfile)
        self.assertEqual(config.foreign_genome_ref, "/idx")
        self.assertEqual(config.max_memory, "2g")
        self.assertEqual(list(config.tool_dirs), ["/opt/a", "/opt/b"])
        self.assertFalse(config.verbose)

    def test_flags_override_config_file_which_overrides_defaults(self):
        path = self.test_dir / "run.json"
        path.write_text(json.dumps({"prefix": "from_file", "threads": 16, "phred": 20}))

        config = self.parse("--config", str(path), "--threads", "8")
        self.assertEqual(config.prefix, "from_file")
        self.assertEqual(config.threads, 8)
        self.assertEqual(config.phred, 20)
        self.assertEqual(config.minlength, 60)

    def test_reference_defaults_from_data_dir(self):
        args = self.parser.parse_args(["run", "--prefix", "s", "--adapters", "/mine.fa"])
        with patch("metaprep.__main__.get_data_dir", return_value=Path("/data")):
            config = config_from_args(args)
        self.assertEqual(config.adapters, "/mine.fa")
        self.assertEqual(Path(config.artifacts).parent, Path("/data"))

    def test_bad_boolean_is_rejected(self):
        with redirect_stderr(io.StringIO()):
            with self.assertRaises(SystemExit) as ctx:
                self.parser.parse_args(["run", "--dedup", "maybe"])
        self.assertEqual(ctx.exception.code, 2)


class TestMain(unittest.TestCase):

    def test_stages_lists_every_stage(self):
        out = io.StringIO()
        with redirect_stdout(out):
            with self.assertRaises(SystemExit) as ctx:
                main(["stages", "--librarylayout", "single", "--dedup", "false"])
        self.assertEqual(ctx.exception.code, 0)
        for name in ("qc_raw", "dedup", "trim", "qc_trimmed", "decontaminate", "merge", "publish_tmp", "merge_logs"):
            self.assertIn(name, out.getvalue())

    @patch("metaprep.__main__.get_data_dir", return_value=None)
    @patch("metaprep.__main__.run_pipeline", return_value=0)
    def test_run_passes_config_to_pipeline(self, mock_run, mock_data_dir):
        with self.assertRaises(SystemExit) as ctx:
            main(["run", "--prefix", "s", "--reads1", "a.fq.gz", "--dry-run", "--quiet"])
        self.assertEqual(ctx.exception.code, 0)
        config = mock_run.call_args[0][0]
        self.assertEqual(config.prefix, "s")
        self.assertTrue(mock_run.call_args[1]["dry_run"])

    @patch("metaprep.__main__.get_data_dir", return_value=None)
    @patch("metaprep.__main__.run_pipeline", return_value=1)
    def test_pipeline_failure_exit_code(self, mock_run, mock_data_dir):
        with self.assertRaises(SystemExit) as ctx:
            main(["run", "--prefix", "s", "--quiet"])
        self.assertEqual(ctx.exception.code, 1)

    @patch("metaprep.__main__.get_data_dir", return_value=None)
    @patch("metaprep.__main__.run_pipeline")
    def test_configuration_error_exits_one(self, mock_run, mock_data_dir):
        err = io.StringIO()
        with redirect_stderr(err):
            with self.assertRaises(SystemExit) as ctx:
                main(["run", "--reads1", "a.fq.gz"])
        self.assertEqual(ctx.exception.code, 1)
        self.assertIn("prefix", err.getvalue())
        mock_run.assert_not_called()

    @patch("metaprep.__main__.get_data_dir", return_value=None)
    @patch("metaprep.__main__.run_pipeline", side_effect=KeyboardInterrupt)
    def test_interrupt_exits_130(self, mock_run, mock_data_dir):
        with redirect_stderr(io.StringIO()):
            with self.assertRaises(SystemExit) as ctx:
                main(["run", "--prefix", "s", "--quiet"])
        self.assertEqual(ctx.exception.code, 130)

    def test_no_command_prints_help(self):
        out = io.StringIO()
        with redirect_stdout(out):
            with self.assertRaises(SystemExit) as ctx:
                main([])
        self.assertEqual(ctx.exception.code, 0)
        self.assertIn("metaprep", out.getvalue())


if __name__ == "__main__":
    unittest.main()
