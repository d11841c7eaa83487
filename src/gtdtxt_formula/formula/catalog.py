"""Bundled gtdtxt formula and loader for external formula manifests.

A revision is added for every upstream release and never edited afterwards.
Older revisions stay in the catalog so a pinned version can still be
installed.
"""
from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Mapping
from urllib.parse import urlparse

from gtdtxt_formula.common.hashing import is_sha256_hex
from gtdtxt_formula.common.manifest_security import (
    is_signed,
    manifest_signing_payload,
    verify_manifest_signature,
)
from gtdtxt_formula.common.types import ARCH_32, ARCH_64, Formula, FormulaRevision


log = logging.getLogger(__name__)

FORMULA_NAME = "gtdtxt"
HOMEPAGE = "https://github.com/gtdtxt/gtdtxt"
BINARY_NAME = "gtdtxt"

URL_TEMPLATE = "https://github.com/gtdtxt/gtdtxt/releases/download/v{version}/gtdtxt-v{version}-{target}.tar.gz"

TARGETS: dict[str, str] = {
    ARCH_64: "x86_64-apple-darwin",
    ARCH_32: "i686-apple-darwin",
}

_VERSION_RE = re.compile(r"^\d+\.\d+\.\d+(?:[-+][0-9A-Za-z.-]+)?$")


def render_artifact_url(version: str, arch: str) -> str:
    try:
        target = TARGETS[arch]
    except KeyError:
        raise ValueError(f"No release target for architecture {arch!r}") from None
    return URL_TEMPLATE.format(version=version, target=target)


def parse_version(version: str) -> tuple:
    """Ordering key for a version string.

    Build metadata after ``+`` is ignored. A pre-release (``1.0.0-rc1``) sorts
    below its release; numeric pre-release identifiers compare numerically.
    """
    text = str(version).strip().lstrip("v").split("+", 1)[0]
    core, _, pre = text.partition("-")
    parts = [p for p in core.split(".") if p]
    nums: list[int] = []
    for part in parts[:3]:
        digits = ""
        for ch in part:
            if not ch.isdigit():
                break
            digits += ch
        nums.append(int(digits) if digits else 0)
    while len(nums) < 3:
        nums.append(0)
    if not pre:
        return (nums[0], nums[1], nums[2], 1, ())
    tags = tuple((0, int(p), "") if p.isdigit() else (1, 0, p) for p in pre.split("."))
    return (nums[0], nums[1], nums[2], 0, tags)


def _revision(version: str, sha256_64: str, sha256_32: str) -> FormulaRevision:
    return FormulaRevision(
        version=version,
        url_64=render_artifact_url(version, ARCH_64),
        url_32=render_artifact_url(version, ARCH_32),
        sha256_64=sha256_64,
        sha256_32=sha256_32,
    )


GTDTXT_FORMULA = Formula(
    name=FORMULA_NAME,
    homepage=HOMEPAGE,
    binary_name=BINARY_NAME,
    revisions=(
        _revision(
            "0.10.0",
            sha256_64="15e901317008dfb185f510daa3807bf09421f80ff013b1518fc417de3f85d5c5",
            sha256_32="a29f01e6a7686d1ff0b333508ac99a9172d8bd5f4afb052f503d4f692d8a2d10",
        ),
    ),
)


def is_semver(version: str) -> bool:
    return bool(_VERSION_RE.match(str(version)))


def url_version_problems(version: str, url: str) -> list[str]:
    problems: list[str] = []
    segments = [s for s in urlparse(url).path.split("/") if s]
    if len(segments) < 2:
        return [f"URL {url} has no release tag and file name segments"]
    tag, filename = segments[-2], segments[-1]
    if tag != f"v{version}":
        problems.append(f"release tag {tag!r} does not match v{version}")
    occurrences = filename.count(f"-v{version}-")
    if occurrences != 1:
        problems.append(f"file name {filename!r} embeds -v{version}- {occurrences} times, expected once")
    return problems


def validate_revision(revision: FormulaRevision) -> None:
    if not is_semver(revision.version):
        raise ValueError(f"Revision version {revision.version!r} is not a semantic version.")
    if revision.url_64 == revision.url_32:
        raise ValueError(f"Revision {revision.version} uses the same URL for both architectures.")
    for artifact in revision.artifacts():
        problems = url_version_problems(revision.version, artifact.url)
        if problems:
            raise ValueError(
                f"Revision {revision.version} ({artifact.arch}-bit) URL is inconsistent: {'; '.join(problems)}"
            )
        if not is_sha256_hex(artifact.sha256):
            raise ValueError(
                f"Revision {revision.version} ({artifact.arch}-bit) checksum is not a lowercase sha256 hex digest."
            )


def validate_formula(formula: Formula) -> None:
    if not formula.binary_name or "/" in formula.binary_name or "\\" in formula.binary_name:
        raise ValueError(f"Invalid binary name {formula.binary_name!r}")
    seen_versions: set[str] = set()
    seen_urls: dict[str, str] = {}
    seen_checksums: dict[str, str] = {}
    for revision in formula.revisions:
        validate_revision(revision)
        if revision.version in seen_versions:
            raise ValueError(f"Formula contains duplicate version: {revision.version}")
        seen_versions.add(revision.version)
        for artifact in revision.artifacts():
            owner = seen_urls.setdefault(artifact.url, revision.version)
            if owner != revision.version:
                raise ValueError(f"URL {artifact.url} is shared by {owner} and {revision.version}")
            owner = seen_checksums.setdefault(artifact.sha256, revision.version)
            if owner != revision.version:
                raise ValueError(f"Checksum {artifact.sha256} is shared by {owner} and {revision.version}")


def parse_formula(data: dict) -> Formula:
    payload = manifest_signing_payload(data)
    revisions = [
        FormulaRevision(
            version=item["version"],
            url_64=item["url_64"],
            url_32=item["url_32"],
            sha256_64=item["sha256_64"],
            sha256_32=item["sha256_32"],
        )
        for item in payload["revisions"]
    ]
    revisions.sort(key=lambda r: parse_version(r.version))
    formula = Formula(
        name=payload["name"] or FORMULA_NAME,
        homepage=payload["homepage"],
        binary_name=payload["binary_name"] or BINARY_NAME,
        revisions=tuple(revisions),
    )
    validate_formula(formula)
    return formula


def formula_to_manifest(formula: Formula) -> dict:
    return {
        "schema_version": "1",
        "name": formula.name,
        "homepage": formula.homepage,
        "binary_name": formula.binary_name,
        "revisions": [
            {
                "version": r.version,
                "url_64": r.url_64,
                "url_32": r.url_32,
                "sha256_64": r.sha256_64,
                "sha256_32": r.sha256_32,
            }
            for r in formula.revisions
        ],
    }


def read_manifest(path: Path) -> dict:
    with path.open("r", encoding="utf-8-sig") as fh:
        data = json.load(fh)
    if not isinstance(data, dict):
        raise ValueError(f"Manifest {path} must contain a JSON object.")
    return data


def load_formula(
    path: Path | None = None,
    require_signature: bool = False,
    trusted_keys: Mapping[str, str] | None = None,
) -> Formula:
    if path is None:
        if require_signature:
            log.debug("Bundled formula is part of the package and carries no signature.")
        return GTDTXT_FORMULA

    log.info("Loading formula manifest from %s", path)
    data = read_manifest(path)
    if require_signature or is_signed(data):
        verify_manifest_signature(data, trusted_keys or {})
        log.info("Manifest signature verified (key %s)", data.get("signature_key_id"))
    return parse_formula(data)
