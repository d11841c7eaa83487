from __future__ import annotations

import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from gtdtxt_formula.common.config import RuntimeConfig
from gtdtxt_formula.common.state import InstallState, load_install_state, save_install_state
from gtdtxt_formula.common.types import ARCH_32, ARCH_64, Formula, FormulaRevision
from gtdtxt_formula.formula.catalog import GTDTXT_FORMULA
from gtdtxt_formula.installer.binary_installer import BinaryInstaller
from gtdtxt_formula.installer.formula_service import FormulaService, select_artifact

from support import FakeSession, build_paths, make_revision, make_tarball


ARCHIVES = {
    ("0.6.0", ARCH_64): make_tarball(b"gtdtxt 0.6.0 x86_64"),
    ("0.6.0", ARCH_32): make_tarball(b"gtdtxt 0.6.0 i686"),
    ("0.12.0", ARCH_64): make_tarball(b"gtdtxt 0.12.0 x86_64"),
    ("0.12.0", ARCH_32): make_tarball(b"gtdtxt 0.12.0 i686"),
}

REV_060 = make_revision("0.6.0", ARCHIVES[("0.6.0", ARCH_64)], ARCHIVES[("0.6.0", ARCH_32)])
REV_0120 = make_revision("0.12.0", ARCHIVES[("0.12.0", ARCH_64)], ARCHIVES[("0.12.0", ARCH_32)])

FORMULA = Formula(
    name="gtdtxt",
    homepage="https://github.com/gtdtxt/gtdtxt",
    binary_name="gtdtxt",
    revisions=(REV_060, REV_0120),
)


def _bodies() -> dict[str, bytes]:
    bodies: dict[str, bytes] = {}
    for revision in (REV_060, REV_0120):
        for artifact in revision.artifacts():
            bodies[artifact.url] = ARCHIVES[(revision.version, artifact.arch)]
    return bodies


class FormulaServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.root = Path(self._td.name)

    def tearDown(self) -> None:
        self._td.cleanup()

    def _service(self, name: str = "a", formula: Formula = FORMULA, bodies=None) -> tuple[FormulaService, FakeSession]:
        paths = build_paths(self.root / name)
        runtime = RuntimeConfig()
        session = FakeSession(_bodies() if bodies is None else bodies)
        installer = BinaryInstaller(paths, runtime, session=session)
        return FormulaService(paths, runtime, formula=formula, installer=installer), session

    def test_select_artifact_by_arch(self) -> None:
        self.assertEqual(select_artifact(REV_0120, ARCH_64).url, REV_0120.url_64)
        self.assertEqual(select_artifact(REV_0120, ARCH_64).sha256, REV_0120.sha256_64)
        self.assertEqual(select_artifact(REV_0120, ARCH_32).url, REV_0120.url_32)
        self.assertEqual(select_artifact(REV_0120, ARCH_32).sha256, REV_0120.sha256_32)

    def test_64_bit_host_installs_64_bit_artifact(self) -> None:
        service, session = self._service()
        with patch("gtdtxt_formula.common.host.platform.machine", return_value="x86_64"):
            state = service.install()
        self.assertEqual(session.requested, [REV_0120.url_64])
        self.assertEqual(state.arch, ARCH_64)
        self.assertEqual(service.binary_path.read_bytes(), b"gtdtxt 0.12.0 x86_64")

    def test_32_bit_host_installs_32_bit_artifact(self) -> None:
        service, session = self._service()
        with patch("gtdtxt_formula.common.host.platform.machine", return_value="i686"):
            state = service.install()
        self.assertEqual(session.requested, [REV_0120.url_32])
        self.assertEqual(state.arch, ARCH_32)
        self.assertEqual(service.binary_path.read_bytes(), b"gtdtxt 0.12.0 i686")

    def test_revisions_install_independently(self) -> None:
        old, old_session = self._service("old")
        new, new_session = self._service("new")

        old_state = old.install("0.6.0", ARCH_64)
        new_state = new.install("0.12.0", ARCH_64)

        self.assertEqual(old_session.requested, [REV_060.url_64])
        self.assertEqual(new_session.requested, [REV_0120.url_64])
        self.assertEqual(old_state.archive_sha256, REV_060.sha256_64)
        self.assertEqual(new_state.archive_sha256, REV_0120.sha256_64)
        self.assertEqual(old.binary_path.read_bytes(), b"gtdtxt 0.6.0 x86_64")
        self.assertEqual(new.binary_path.read_bytes(), b"gtdtxt 0.12.0 x86_64")

    def test_install_records_state(self) -> None:
        service, _ = self._service()
        service.install("0.6.0", ARCH_32)
        loaded = load_install_state(service.paths.state_dir)
        self.assertEqual(loaded.installed_version, "0.6.0")
        self.assertEqual(loaded.arch, ARCH_32)
        self.assertEqual(loaded.archive_sha256, REV_060.sha256_32)
        self.assertEqual(loaded.binary_path, str(service.binary_path))
        self.assertIsNotNone(loaded.last_install_utc)

    def test_reinstall_skipped_when_current(self) -> None:
        service, session = self._service()
        service.install("0.12.0", ARCH_64)
        service.install("0.12.0", ARCH_64)
        self.assertEqual(len(session.requested), 1)

        service.install("0.12.0", ARCH_64, force=True)
        self.assertEqual(len(session.requested), 2)

    def test_modified_binary_is_reinstalled(self) -> None:
        service, session = self._service()
        service.install("0.12.0", ARCH_64)
        service.binary_path.write_bytes(b"edited by hand")
        service.install("0.12.0", ARCH_64)
        self.assertEqual(len(session.requested), 2)
        self.assertEqual(service.binary_path.read_bytes(), b"gtdtxt 0.12.0 x86_64")

    def test_upgrade_replaces_binary(self) -> None:
        service, _ = self._service()
        service.install("0.6.0", ARCH_64)
        state = service.install(arch=ARCH_64)
        self.assertEqual(state.installed_version, "0.12.0")
        self.assertEqual(service.binary_path.read_bytes(), b"gtdtxt 0.12.0 x86_64")
        self.assertFalse(service.binary_path.with_name("gtdtxt.bak").exists())

    def test_unpinned_downgrade_refused(self) -> None:
        service, _ = self._service(formula=Formula("gtdtxt", FORMULA.homepage, "gtdtxt", (REV_060,)))
        save_install_state(service.paths.state_dir, InstallState(installed_version="0.12.0", arch=ARCH_64))
        with self.assertRaisesRegex(RuntimeError, "Refusing downgrade"):
            service.install(arch=ARCH_64)
        state = service.install("0.6.0", ARCH_64)
        self.assertEqual(state.installed_version, "0.6.0")

    def test_force_does_not_allow_unpinned_downgrade(self) -> None:
        service, session = self._service(formula=Formula("gtdtxt", FORMULA.homepage, "gtdtxt", (REV_060,)))
        save_install_state(service.paths.state_dir, InstallState(installed_version="0.12.0", arch=ARCH_64))
        with self.assertRaisesRegex(RuntimeError, "Refusing downgrade"):
            service.install(arch=ARCH_64, force=True)
        self.assertEqual(session.requested, [])
        self.assertEqual(load_install_state(service.paths.state_dir).installed_version, "0.12.0")

    def test_needs_install(self) -> None:
        service, _ = self._service()
        artifact = REV_0120.artifact(ARCH_64)
        self.assertTrue(service.needs_install(InstallState(), REV_0120, artifact))

        state = service.install("0.12.0", ARCH_64)
        self.assertFalse(service.needs_install(state, REV_0120, artifact))
        self.assertTrue(service.needs_install(state, REV_0120, artifact, force=True))

        old = REV_060.artifact(ARCH_64)
        with self.assertRaisesRegex(RuntimeError, "Refusing downgrade"):
            service.needs_install(state, REV_060, old)
        self.assertTrue(service.needs_install(state, REV_060, old, pinned=True))

    def test_has_update(self) -> None:
        service, _ = self._service()
        self.assertTrue(service.has_update(InstallState()))
        self.assertTrue(service.has_update(InstallState(installed_version="0.6.0")))
        self.assertFalse(service.has_update(InstallState(installed_version="0.12.0")))
        self.assertFalse(service.has_update(InstallState(installed_version="1.0.0")))

    def test_corrupted_download_fails_closed(self) -> None:
        bodies = _bodies()
        bodies[REV_0120.url_64] = make_tarball(b"corrupted in transit")
        service, _ = self._service(bodies=bodies)
        with self.assertRaisesRegex(RuntimeError, "Checksum mismatch"):
            service.install("0.12.0", ARCH_64)
        self.assertFalse(service.binary_path.exists())
        self.assertEqual(load_install_state(service.paths.state_dir), InstallState())

    def test_unknown_version(self) -> None:
        service, _ = self._service()
        with self.assertRaises(KeyError):
            service.install("9.9.9", ARCH_64)

    def test_verify_catalog_clean(self) -> None:
        service, _ = self._service()
        self.assertEqual(service.verify_catalog(), [])
        self.assertEqual(service.verify_catalog(download=True), [])

    def test_verify_catalog_reports_download_mismatch(self) -> None:
        bodies = _bodies()
        bodies[REV_060.url_32] = b"different bytes"
        service, _ = self._service(bodies=bodies)
        issues = service.verify_catalog(download=True)
        self.assertEqual(len(issues), 1)
        self.assertEqual((issues[0].version, issues[0].arch), ("0.6.0", ARCH_32))
        self.assertIn("Checksum mismatch", issues[0].message)

    def test_verify_catalog_reports_url_version_drift(self) -> None:
        drifted = FormulaRevision(
            version="0.12.0",
            url_64=REV_060.url_64,
            url_32=REV_0120.url_32,
            sha256_64=REV_0120.sha256_64,
            sha256_32=REV_0120.sha256_32,
        )
        service, _ = self._service(formula=Formula("gtdtxt", FORMULA.homepage, "gtdtxt", (drifted,)))
        issues = service.verify_catalog()
        self.assertTrue(issues)
        self.assertTrue(all(issue.arch == ARCH_64 for issue in issues))

    def test_bundled_catalog_is_consistent(self) -> None:
        service, _ = self._service(formula=GTDTXT_FORMULA)
        self.assertEqual(service.verify_catalog(), [])


if __name__ == "__main__":
    unittest.main()
