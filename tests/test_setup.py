"""Tests for tool installation and the doctor command."""

import io
import os
import shutil
import tarfile
import tempfile
import unittest
import zipfile
from contextlib import redirect_stdout
from pathlib import Path
from unittest.mock import patch

from metaprep import setup
from metaprep.discovery import TOOL_INFO


class SetupTestCase(unittest.TestCase):

    def setUp(self):
        self.test_dir = Path(tempfile.mkdtemp())
        self.home = self.test_dir / "home"
        patcher = patch.dict(os.environ, {"METAPREP_HOME": str(self.home)})
        patcher.start()
        self.addCleanup(patcher.stop)
        self.out = io.StringIO()

    def tearDown(self):
        shutil.rmtree(self.test_dir)


class TestExtract(SetupTestCase):

    def test_zip_keeps_executable_bit(self):
        archive = self.test_dir / "fastqc.zip"
        with zipfile.ZipFile(archive, "w") as zf:
            info = zipfile.ZipInfo("FastQC/fastqc")
            info.external_attr = 0o755 << 16
            zf.writestr(info, "#!/bin/sh\n")
        with redirect_stdout(self.out):
            self.assertTrue(setup.extract_zip(archive, self.test_dir / "tools"))
        self.assertTrue(os.access(self.test_dir / "tools" / "FastQC" / "fastqc", os.X_OK))

    def test_tarball(self):
        src = self.test_dir / "bbmap"
        src.mkdir()
        (src / "bbduk.sh").write_text("#!/bin/sh\n")
        archive = self.test_dir / "bbmap.tar.gz"
        with tarfile.open(archive, "w:gz") as tar:
            tar.add(src, arcname="bbmap")
        with redirect_stdout(self.out):
            self.assertTrue(setup.extract_tarball(archive, self.test_dir / "tools"))
        self.assertTrue((self.test_dir / "tools" / "bbmap" / "bbduk.sh").exists())

    def test_bad_archive(self):
        archive = self.test_dir / "broken.zip"
        archive.write_bytes(b"not a zip")
        with redirect_stdout(self.out):
            self.assertFalse(setup.extract_zip(archive, self.test_dir / "tools"))


class TestRunSetup(SetupTestCase):

    def setUp(self):
        super().setUp()
        for name, value in (("check_disk_space", (True, 100.0)), ("check_java", (True, "openjdk 17"))):
            patcher = patch.object(setup, name, return_value=value)
            patcher.start()
            self.addCleanup(patcher.stop)

    def test_installed_packages_are_not_downloaded(self):
        (self.home / "tools" / "bbmap").mkdir(parents=True)
        with patch.object(setup, "install_package", return_value=True) as install:
            with redirect_stdout(self.out):
                code = setup.run_setup(interactive=False)
        self.assertEqual(code, 0)
        install.assert_called_once_with("FastQC", self.home / "tools")
        self.assertIn("already installed", self.out.getvalue())

    def test_force_reinstalls(self):
        (self.home / "tools" / "bbmap").mkdir(parents=True)
        with patch.object(setup, "install_package", return_value=True) as install:
            with redirect_stdout(self.out):
                setup.run_setup(interactive=False, packages=["bbmap"], force=True)
        install.assert_called_once_with("bbmap", self.home / "tools")
        self.assertFalse((self.home / "tools" / "bbmap").exists())

    def test_failed_install_exit_code(self):
        with patch.object(setup, "install_package", return_value=False):
            with redirect_stdout(self.out):
                self.assertEqual(setup.run_setup(interactive=False, packages=["FastQC"]), 1)

    def test_declined_prompt_skips(self):
        with patch.object(setup, "install_package") as install, \
                patch.object(setup, "prompt_yes_no", return_value=False):
            with redirect_stdout(self.out):
                self.assertEqual(setup.run_setup(interactive=True), 0)
        install.assert_not_called()

    def test_install_package_unpacks_download(self):
        def fake_download(url, dest, desc=""):
            with tarfile.open(dest, "w:gz") as tar:
                script = self.test_dir / "clumpify.sh"
                script.write_text("#!/bin/sh\n")
                tar.add(script, arcname="bbmap/clumpify.sh")
            return True

        tools_dir = self.home / "tools"
        with patch.object(setup, "download_with_progress", side_effect=fake_download):
            with redirect_stdout(self.out):
                self.assertTrue(setup.install_package("bbmap", tools_dir))
        self.assertTrue(os.access(tools_dir / "bbmap" / "clumpify.sh", os.X_OK))
        self.assertFalse((tools_dir / "BBMap_37.56.tar.gz").exists())


class TestDoctor(SetupTestCase):

    def test_reports_missing_tools(self):
        status = {name: None for name in TOOL_INFO}
        with patch.object(setup, "tool_status", return_value=status), \
                patch.object(setup, "check_java", return_value=(True, "openjdk 17")), \
                patch.object(setup, "check_disk_space", return_value=(True, 100.0)), \
                patch.object(setup, "get_data_dir", return_value=None):
            with redirect_stdout(self.out):
                code = setup.run_doctor()
        self.assertEqual(code, 1)
        self.assertIn("bbwrap.sh (BBMap, needed by decontaminate)", self.out.getvalue())

    def test_all_ok(self):
        status = {name: f"/opt/{name}" for name in TOOL_INFO}
        with patch.object(setup, "tool_status", return_value=status), \
                patch.object(setup, "check_java", return_value=(True, "openjdk 17")), \
                patch.object(setup, "check_disk_space", return_value=(True, 100.0)), \
                patch.object(setup, "get_data_dir", return_value=self.test_dir):
            with redirect_stdout(self.out):
                code = setup.run_doctor()
        self.assertEqual(code, 0)


if __name__ == "__main__":
    unittest.main()
