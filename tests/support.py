from __future__ import annotations

import hashlib
import io
import tarfile
from pathlib import Path

import requests

from gtdtxt_formula.common.config import AppPaths
from gtdtxt_formula.common.types import ARCH_32, ARCH_64, FormulaRevision
from gtdtxt_formula.formula.catalog import render_artifact_url


def build_paths(root: Path) -> AppPaths:
    return AppPaths.under(root / "install", root / "bin")


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def make_tarball(
    content: bytes,
    binary_name: str = "gtdtxt",
    mode: int = 0o755,
    prefix: str | None = None,
    extra: list[tarfile.TarInfo] | None = None,
) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tf:
        name = f"{prefix}/{binary_name}" if prefix else binary_name
        info = tarfile.TarInfo(name)
        info.size = len(content)
        info.mode = mode
        tf.addfile(info, io.BytesIO(content))
        for item in extra or []:
            tf.addfile(item)
    return buf.getvalue()


def symlink_member(name: str, target: str) -> tarfile.TarInfo:
    info = tarfile.TarInfo(name)
    info.type = tarfile.SYMTYPE
    info.linkname = target
    return info


def make_revision(version: str, archive_64: bytes, archive_32: bytes) -> FormulaRevision:
    return FormulaRevision(
        version=version,
        url_64=render_artifact_url(version, ARCH_64),
        url_32=render_artifact_url(version, ARCH_32),
        sha256_64=sha256_bytes(archive_64),
        sha256_32=sha256_bytes(archive_32),
    )


class FakeResponse:
    def __init__(self, url: str, body: bytes, status_code: int = 200):
        self.url = url
        self.body = body
        self.status_code = status_code
        self.headers = {"Content-Length": str(len(body))}

    def __enter__(self) -> "FakeResponse":
        return self

    def __exit__(self, *exc) -> None:
        return None

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} for url: {self.url}")

    def iter_content(self, chunk_size: int = 1024):
        for start in range(0, len(self.body), chunk_size):
            yield self.body[start : start + chunk_size]


class FakeSession:
    def __init__(self, bodies: dict[str, bytes] | None = None):
        self.bodies = dict(bodies or {})
        self.requested: list[str] = []

    def get(self, url: str, stream: bool = False, timeout=None) -> FakeResponse:
        self.requested.append(url)
        if url not in self.bodies:
            return FakeResponse(url, b"", status_code=404)
        return FakeResponse(url, self.bodies[url])
