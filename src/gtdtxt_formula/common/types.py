from __future__ import annotations

from dataclasses import dataclass


ARCH_64 = "64"
ARCH_32 = "32"
ARCHES: tuple[str, ...] = (ARCH_64, ARCH_32)


@dataclass(frozen=True)
class PlatformArtifact:
    arch: str
    url: str
    sha256: str


@dataclass(frozen=True)
class FormulaRevision:
    version: str
    url_64: str
    url_32: str
    sha256_64: str
    sha256_32: str

    def artifact(self, arch: str) -> PlatformArtifact:
        if arch == ARCH_64:
            return PlatformArtifact(arch=ARCH_64, url=self.url_64, sha256=self.sha256_64)
        if arch == ARCH_32:
            return PlatformArtifact(arch=ARCH_32, url=self.url_32, sha256=self.sha256_32)
        raise ValueError(f"Unknown architecture {arch!r}; expected one of {list(ARCHES)}")

    def artifacts(self) -> tuple[PlatformArtifact, ...]:
        return tuple(self.artifact(arch) for arch in ARCHES)


@dataclass(frozen=True)
class Formula:
    name: str
    homepage: str
    binary_name: str
    revisions: tuple[FormulaRevision, ...]

    def versions(self) -> list[str]:
        return [r.version for r in self.revisions]

    def latest(self) -> FormulaRevision:
        if not self.revisions:
            raise ValueError(f"Formula {self.name!r} has no revisions.")
        return self.revisions[-1]

    def get(self, version: str) -> FormulaRevision:
        wanted = str(version).strip().lstrip("v")
        for revision in self.revisions:
            if revision.version == wanted:
                return revision
        raise KeyError(f"Unknown {self.name} version {wanted!r}; known versions: {self.versions()}")
