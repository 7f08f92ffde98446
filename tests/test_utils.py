import os
import shutil
import tempfile
from pathlib import Path

import pytest

from cryptvol import utils


class TestSafeMkdir:
    _REL_TRAVERSAL = "../../../whee"
    _SAFE_RELPATH = "./hi"
    _SAFE_RELPATH2 = "yay/a/path"
    _UNSAFE_RELPATH = "lgtm/../ohwait"

    @classmethod
    def setup_class(cls):
        cls.homedir = tempfile.mkdtemp() + "/"

    @classmethod
    def teardown_class(cls):
        if os.path.exists(cls.homedir):
            shutil.rmtree(cls.homedir)

    def test_safe_mkdir_error_base_relpath(self):
        with pytest.raises(ValueError):
            utils.safe_mkdir(base_path=Path("."))

    def test_safe_mkdir_error_basepath_path_traversal(self):
        with pytest.raises(ValueError):
            utils.safe_mkdir(f"{self.homedir}{self._REL_TRAVERSAL}")

    def test_safe_mkdir_error_relpath_path_traversal(self):
        with pytest.raises(ValueError):
            utils.safe_mkdir(f"{self.homedir}", f"{self._REL_TRAVERSAL}")

    def test_safe_mkdir_success(self):
        utils.safe_mkdir(f"{self.homedir}")

    def test_safe_mkdir_success_with_relpath(self):
        utils.safe_mkdir(f"{self.homedir}", f"{self._SAFE_RELPATH}")

        assert os.path.exists(f"{self.homedir}{self._SAFE_RELPATH}")

    def test_safe_mkdir_success_another_relpath(self):
        utils.safe_mkdir(f"{self.homedir}", f"{self._SAFE_RELPATH2}")

        path = f"{self.homedir}{self._SAFE_RELPATH2}"
        assert os.path.exists(path)
        assert os.stat(path).st_mode & 0o777 == 0o700
        assert os.stat(f"{self.homedir}yay").st_mode & 0o777 == 0o700

    def test_safe_mkdir_weird_path(self):
        with pytest.raises(ValueError):
            utils.safe_mkdir(f"{self.homedir}", f"{self._UNSAFE_RELPATH}")

    def test_check_dir_permissions_unsafe(self):
        path = Path(self.homedir) / "unsafe"
        path.mkdir()
        path.chmod(0o755)

        with pytest.raises(RuntimeError):
            utils.check_dir_permissions(path)

    def test_check_dir_permissions_missing_is_ok(self):
        utils.check_dir_permissions(f"{self.homedir}does-not-exist")


@pytest.mark.parametrize("name", ["../x", "a/../b", ".."])
def test_check_path_traversal(name):
    with pytest.raises(ValueError):
        utils.check_path_traversal(name)


@pytest.mark.parametrize("name", ["a", "a/b", "./a", "..a", "a.."])
def test_check_path_traversal_safe(name):
    utils.check_path_traversal(name)
