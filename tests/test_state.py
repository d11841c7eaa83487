from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from gtdtxt_formula.common.state import STATE_FILE_NAME, InstallState, load_install_state, save_install_state


class StateTests(unittest.TestCase):
    def test_roundtrip(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            state = InstallState(
                installed_version="0.10.0",
                arch="64",
                archive_sha256="abc",
                binary_path="/usr/local/bin/gtdtxt",
            )
            state.touch_install_time()
            save_install_state(root, state)
            loaded = load_install_state(root)
            self.assertEqual(loaded, state)
            self.assertTrue(loaded.matches("0.10.0", "64", "ABC"))
            self.assertFalse(loaded.matches("0.10.0", "32", "abc"))

    def test_missing_file_gives_empty_state(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            self.assertEqual(load_install_state(Path(td)), InstallState())

    def test_bom_prefixed_file(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            (root / STATE_FILE_NAME).write_bytes(b'\xef\xbb\xbf{"installed_version": "0.6.0"}')
            self.assertEqual(load_install_state(root).installed_version, "0.6.0")


if __name__ == "__main__":
    unittest.main()
