from __future__ import annotations

import logging
import shutil
import tempfile
from dataclasses import asdict, dataclass
from pathlib import Path

from gtdtxt_formula.common.config import AppPaths, RuntimeConfig
from gtdtxt_formula.common.hashing import is_sha256_hex, sha256_file
from gtdtxt_formula.common.host import resolve_arch
from gtdtxt_formula.common.state import InstallState, load_install_state, save_install_state
from gtdtxt_formula.common.types import Formula, FormulaRevision, PlatformArtifact
from gtdtxt_formula.formula.catalog import is_semver, load_formula, parse_version, url_version_problems
from gtdtxt_formula.installer.binary_installer import BinaryInstaller, ProgressCallback


log = logging.getLogger(__name__)


@dataclass(frozen=True)
class CatalogIssue:
    version: str
    arch: str | None
    message: str


def select_artifact(revision: FormulaRevision, arch: str) -> PlatformArtifact:
    return revision.artifact(arch)


class FormulaService:
    def __init__(
        self,
        paths: AppPaths,
        runtime: RuntimeConfig,
        formula: Formula | None = None,
        installer: BinaryInstaller | None = None,
    ):
        self.paths = paths
        self.runtime = runtime
        self.formula = formula if formula is not None else load_formula(
            runtime.manifest_path,
            require_signature=runtime.require_signature,
            trusted_keys=runtime.trusted_public_keys,
        )
        self.installer = installer if installer is not None else BinaryInstaller(paths, runtime)

    @property
    def binary_path(self) -> Path:
        return self.installer.target_path(self.formula.binary_name)

    def resolve_revision(self, version: str | None = None) -> FormulaRevision:
        if version:
            return self.formula.get(version)
        return self.formula.latest()

    def resolve(self, version: str | None = None, arch: str | None = None) -> tuple[FormulaRevision, PlatformArtifact]:
        revision = self.resolve_revision(version)
        resolved_arch = resolve_arch(arch if arch is not None else self.runtime.arch_override)
        artifact = select_artifact(revision, resolved_arch)
        log.info("Selected %s %s (%s-bit): %s", self.formula.name, revision.version, artifact.arch, artifact.url)
        return revision, artifact

    def load_state(self) -> InstallState:
        return load_install_state(self.paths.state_dir)

    def has_update(self, state: InstallState, revision: FormulaRevision | None = None) -> bool:
        target = revision if revision is not None else self.formula.latest()
        current = state.installed_version or ""
        if not current:
            return True
        current_v = parse_version(current)
        target_v = parse_version(target.version)
        if target_v < current_v:
            log.warning("Refusing downgrade. installed=%s target=%s", current, target.version)
            return False
        return target_v > current_v

    def is_installed(self, state: InstallState, revision: FormulaRevision, artifact: PlatformArtifact) -> bool:
        if not state.matches(revision.version, artifact.arch, artifact.sha256):
            return False
        binary = self.binary_path
        if not binary.exists():
            return False
        if state.binary_sha256 and sha256_file(binary) != state.binary_sha256:
            log.warning("Installed %s does not match recorded checksum; reinstalling.", binary)
            return False
        return True

    def needs_install(
        self,
        state: InstallState,
        revision: FormulaRevision,
        artifact: PlatformArtifact,
        pinned: bool = False,
        force: bool = False,
    ) -> bool:
        """Whether install() would download and apply ``artifact``.

        An unpinned target below the recorded version raises RuntimeError,
        with or without ``force``.
        """
        if not pinned and not self.has_update(state, revision):
            if parse_version(revision.version) != parse_version(state.installed_version):
                raise RuntimeError(
                    f"Refusing downgrade from {state.installed_version} to {revision.version}; pin a version to override."
                )
        if force:
            return True
        return not self.is_installed(state, revision, artifact)

    def install(
        self,
        version: str | None = None,
        arch: str | None = None,
        force: bool = False,
        progress_callback: ProgressCallback | None = None,
    ) -> InstallState:
        state = self.load_state()
        revision, artifact = self.resolve(version, arch)

        if not self.needs_install(state, revision, artifact, pinned=version is not None, force=force):
            log.info("%s %s already installed at %s", self.formula.name, revision.version, self.binary_path)
            return state

        result = self.installer.install_artifact(
            artifact,
            self.formula.binary_name,
            progress_callback=progress_callback,
        )
        state.installed_version = revision.version
        state.arch = artifact.arch
        state.archive_sha256 = result.archive_sha256
        state.binary_sha256 = result.binary_sha256
        state.binary_path = str(result.binary_path)
        state.touch_install_time()
        save_install_state(self.paths.state_dir, state)
        log.info("Install recorded: %s", asdict(state))
        return state

    def verify_catalog(self, download: bool = False) -> list[CatalogIssue]:
        issues: list[CatalogIssue] = []
        for revision in self.formula.revisions:
            if not is_semver(revision.version):
                issues.append(
                    CatalogIssue(version=revision.version, arch=None, message="version is not a semantic version")
                )
            for artifact in revision.artifacts():
                for problem in url_version_problems(revision.version, artifact.url):
                    issues.append(CatalogIssue(version=revision.version, arch=artifact.arch, message=problem))
                if not is_sha256_hex(artifact.sha256):
                    issues.append(
                        CatalogIssue(
                            version=revision.version,
                            arch=artifact.arch,
                            message="checksum is not a lowercase sha256 hex digest",
                        )
                    )
                if download:
                    issue = self._verify_download(revision, artifact)
                    if issue is not None:
                        issues.append(issue)
        for issue in issues:
            log.warning("Catalog issue in %s (%s): %s", issue.version, issue.arch or "-", issue.message)
        return issues

    def _verify_download(self, revision: FormulaRevision, artifact: PlatformArtifact) -> CatalogIssue | None:
        self.paths.ensure_layout()
        staging = Path(tempfile.mkdtemp(prefix="verify-", dir=self.paths.temp_dir))
        try:
            self.installer.fetch_verified(artifact, staging)
        except Exception as exc:
            return CatalogIssue(version=revision.version, arch=artifact.arch, message=str(exc))
        finally:
            shutil.rmtree(staging, ignore_errors=True)
        return None
