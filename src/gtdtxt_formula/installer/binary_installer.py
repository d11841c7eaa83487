from __future__ import annotations

import logging
import os
import shutil
import stat
import tarfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Callable
from urllib.parse import unquote, urlparse

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from gtdtxt_formula.common.config import AppPaths, RuntimeConfig
from gtdtxt_formula.common.hashing import sha256_file
from gtdtxt_formula.common.manifest_security import (
    validate_archive_member_path,
    validate_trusted_url,
)
from gtdtxt_formula.common.types import PlatformArtifact


log = logging.getLogger(__name__)


@dataclass(frozen=True)
class InstallerProgress:
    phase: str
    message: str
    artifact_name: str | None = None
    bytes_done: int | None = None
    bytes_total: int | None = None


@dataclass(frozen=True)
class InstallResult:
    artifact: PlatformArtifact
    archive_sha256: str
    binary_sha256: str
    binary_path: Path


@dataclass(frozen=True)
class ExtractedBinary:
    path: Path
    mode: int


ProgressCallback = Callable[[InstallerProgress], None]


def build_session(runtime: RuntimeConfig) -> requests.Session:
    session = requests.Session()
    retry = Retry(
        total=runtime.max_retries,
        connect=runtime.max_retries,
        read=runtime.max_retries,
        status=runtime.max_retries,
        backoff_factor=0.5,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=frozenset({"GET", "HEAD"}),
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retry)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


class BinaryInstaller:
    def __init__(self, paths: AppPaths, runtime: RuntimeConfig, session: requests.Session | None = None):
        self.paths = paths
        self.runtime = runtime
        self.session = session if session is not None else build_session(runtime)

    def _emit(self, callback: ProgressCallback | None, progress: InstallerProgress) -> None:
        if callback is None:
            return
        try:
            callback(progress)
        except Exception:
            log.exception("Installer progress callback failed.")

    def target_path(self, binary_name: str) -> Path:
        return self.paths.bin_dir / self._safe_filename(binary_name)

    def install_artifact(
        self,
        artifact: PlatformArtifact,
        binary_name: str,
        progress_callback: ProgressCallback | None = None,
    ) -> InstallResult:
        self.paths.ensure_layout()
        self.recover_interrupted_apply(binary_name, progress_callback=progress_callback)
        staging = self.paths.staging_dir
        if staging.exists():
            shutil.rmtree(staging, ignore_errors=True)
        staging.mkdir(parents=True, exist_ok=True)

        self._emit(
            progress_callback,
            InstallerProgress(phase="prepare", message=f"Preparing {binary_name} ({artifact.arch}-bit)"),
        )
        try:
            archive = self.fetch_verified(artifact, staging, progress_callback=progress_callback)
            self._emit(
                progress_callback,
                InstallerProgress(phase="extract-start", message=f"Extracting {archive.name}", artifact_name=archive.name),
            )
            extracted = self._extract_binary(archive, staging, binary_name)
            self._emit(
                progress_callback,
                InstallerProgress(phase="extract-done", message=f"Extracted {binary_name}", artifact_name=archive.name),
            )
            binary_sha256 = sha256_file(extracted.path, chunk_size=self.runtime.download_chunk_size)

            self._emit(
                progress_callback,
                InstallerProgress(phase="apply-start", message=f"Installing {binary_name} into {self.paths.bin_dir}"),
            )
            target = self._atomic_apply(extracted, binary_name, progress_callback=progress_callback)
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        self._emit(
            progress_callback,
            InstallerProgress(phase="complete", message=f"Installed {target}"),
        )
        return InstallResult(
            artifact=artifact,
            archive_sha256=artifact.sha256.lower(),
            binary_sha256=binary_sha256,
            binary_path=target,
        )

    def fetch_verified(
        self,
        artifact: PlatformArtifact,
        staging: Path,
        progress_callback: ProgressCallback | None = None,
    ) -> Path:
        """Download ``artifact`` into ``staging`` and check its sha256.

        Raises RuntimeError on mismatch; the downloaded file is removed first so
        nothing unverified is left behind.
        """
        archive = self._download_artifact(artifact, staging, progress_callback=progress_callback)
        self._emit(
            progress_callback,
            InstallerProgress(phase="verify", message=f"Verifying {archive.name}", artifact_name=archive.name),
        )
        digest = sha256_file(archive, chunk_size=self.runtime.download_chunk_size)
        if digest.lower() != artifact.sha256.lower():
            archive.unlink()
            raise RuntimeError(f"Checksum mismatch for {archive.name}: {digest} != {artifact.sha256}")
        log.info("Verified %s sha256=%s", archive.name, digest)
        return archive

    @staticmethod
    def _remove_path(path: Path) -> None:
        if not path.exists() and not path.is_symlink():
            return
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path, ignore_errors=True)
            return
        try:
            path.unlink()
        except OSError:
            log.warning("Could not remove %s", path)

    def recover_interrupted_apply(
        self,
        binary_name: str,
        progress_callback: ProgressCallback | None = None,
    ) -> bool:
        target = self.target_path(binary_name)
        backup = target.with_name(target.name + ".bak")
        partial = target.with_name(f".{target.name}.partial")
        self._remove_path(partial)
        if not backup.exists():
            return False

        if target.exists():
            self._remove_path(backup)
            self._emit(
                progress_callback,
                InstallerProgress(phase="recover", message=f"Removed stale backup for {target.name}"),
            )
        else:
            backup.replace(target)
            self._emit(
                progress_callback,
                InstallerProgress(phase="recover", message=f"Restored interrupted install target: {target.name}"),
            )
        log.info("Recovered interrupted install state for %s", target)
        return True

    def _download_artifact(
        self,
        artifact: PlatformArtifact,
        staging: Path,
        progress_callback: ProgressCallback | None = None,
    ) -> Path:
        name = self._safe_filename(unquote(PurePosixPath(urlparse(artifact.url).path).name))
        destination = staging / name
        validate_trusted_url(
            artifact.url,
            self.runtime.trusted_asset_hosts,
            allow_http=self.runtime.allow_insecure_http,
        )
        log.info("Downloading %s", artifact.url)
        self._emit(
            progress_callback,
            InstallerProgress(phase="download-start", message=f"Downloading {name}", artifact_name=name, bytes_done=0),
        )
        bytes_done = 0
        last_emitted = 0
        emit_threshold = max(1024 * 1024, self.runtime.download_chunk_size * 4)
        with self.session.get(
            artifact.url,
            stream=True,
            timeout=(self.runtime.connect_timeout_seconds, self.runtime.read_timeout_seconds),
        ) as resp:
            resp.raise_for_status()
            validate_trusted_url(
                str(resp.url),
                self.runtime.trusted_asset_hosts,
                allow_http=self.runtime.allow_insecure_http,
            )
            content_len_raw = str(resp.headers.get("Content-Length", "")).strip()
            bytes_total = int(content_len_raw) if content_len_raw.isdigit() else None
            with destination.open("wb") as fh:
                for chunk in resp.iter_content(chunk_size=self.runtime.download_chunk_size):
                    if chunk:
                        fh.write(chunk)
                        bytes_done += len(chunk)
                        if (bytes_done - last_emitted) >= emit_threshold:
                            self._emit(
                                progress_callback,
                                InstallerProgress(
                                    phase="download-progress",
                                    message=f"Downloading {name}",
                                    artifact_name=name,
                                    bytes_done=bytes_done,
                                    bytes_total=bytes_total,
                                ),
                            )
                            last_emitted = bytes_done
        self._emit(
            progress_callback,
            InstallerProgress(
                phase="download-progress",
                message=f"Downloaded {name}",
                artifact_name=name,
                bytes_done=bytes_done,
                bytes_total=bytes_total if bytes_total is not None else bytes_done,
            ),
        )
        return destination

    @staticmethod
    def _safe_filename(name: str) -> str:
        raw = str(name or "").strip()
        if not raw:
            raise ValueError("File name cannot be empty.")
        path = Path(raw)
        if path.is_absolute() or len(path.parts) != 1:
            raise ValueError(f"Invalid file name: {name!r}")
        if raw in {".", ".."}:
            raise ValueError(f"Invalid file name: {name!r}")
        if any(ch in raw for ch in ("/", "\\")):
            raise ValueError(f"Invalid file name: {name!r}")
        return raw

    def _extract_binary(self, archive: Path, staging: Path, binary_name: str) -> ExtractedBinary:
        target_dir = staging / "extracted"
        target_dir.mkdir(parents=True, exist_ok=True)
        with tarfile.open(archive, "r:*") as tf:
            candidates: list[tarfile.TarInfo] = []
            for info in tf.getmembers():
                if info.isdir() and info.name.strip().rstrip("/") in {".", ""}:
                    continue
                member = validate_archive_member_path(info.name)

                if info.issym() or info.islnk():
                    raise ValueError(f"Archive contains a link entry: {info.name}")
                if info.isdev():
                    raise ValueError(f"Archive contains a device entry: {info.name}")
                if info.isdir():
                    continue
                if member.name == binary_name and len(member.parts) <= 2:
                    candidates.append(info)

            if not candidates:
                raise RuntimeError(f"Archive {archive.name} does not contain {binary_name!r}")
            if len(candidates) > 1:
                names = ", ".join(c.name for c in candidates)
                raise RuntimeError(f"Archive {archive.name} contains more than one {binary_name!r}: {names}")

            info = candidates[0]
            src = tf.extractfile(info)
            if src is None:
                raise RuntimeError(f"Archive entry {info.name} is not a regular file")
            dest_path = target_dir / binary_name
            with src, dest_path.open("wb") as dst:
                shutil.copyfileobj(src, dst, length=1024 * 1024)

        mode = (stat.S_IMODE(info.mode) & 0o777) | stat.S_IRUSR | stat.S_IXUSR
        return ExtractedBinary(path=dest_path, mode=mode)

    def _atomic_apply(
        self,
        extracted: ExtractedBinary,
        binary_name: str,
        progress_callback: ProgressCallback | None = None,
    ) -> Path:
        target = self.target_path(binary_name)
        backup = target.with_name(target.name + ".bak")
        partial = target.with_name(f".{target.name}.partial")
        target.parent.mkdir(parents=True, exist_ok=True)

        # Stage inside bin_dir so the final rename stays on one filesystem.
        shutil.copyfile(extracted.path, partial)
        os.chmod(partial, extracted.mode)

        backed_up = False
        try:
            if backup.exists():
                self._remove_path(backup)
            if target.exists():
                os.replace(target, backup)
                backed_up = True
            os.replace(partial, target)
        except Exception:
            log.exception("Install of %s failed. Rolling back.", target)
            self._emit(
                progress_callback,
                InstallerProgress(phase="rollback", message=f"Install failed, restoring previous {target.name}"),
            )
            self._remove_path(partial)
            if backed_up and backup.exists():
                if target.exists():
                    self._remove_path(target)
                os.replace(backup, target)
            raise
        else:
            if backed_up:
                self._remove_path(backup)
        log.info("Installed %s (mode %o)", target, extracted.mode)
        return target
