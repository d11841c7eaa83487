from __future__ import annotations

import logging
import platform
import struct

from gtdtxt_formula.common.types import ARCH_32, ARCH_64, ARCHES


log = logging.getLogger(__name__)

_64_BIT_MACHINES = frozenset(
    {
        "x86_64",
        "amd64",
        "x64",
        "arm64",
        "aarch64",
        "ppc64",
        "ppc64le",
        "s390x",
        "riscv64",
        "sparc64",
        "mips64",
        "loongarch64",
    }
)

_ARCH_ALIASES = {
    "64": ARCH_64,
    "64bit": ARCH_64,
    "x86_64": ARCH_64,
    "amd64": ARCH_64,
    "32": ARCH_32,
    "32bit": ARCH_32,
    "i386": ARCH_32,
    "i686": ARCH_32,
    "x86": ARCH_32,
}


def is_64_bit(machine: str | None = None) -> bool:
    name = (platform.machine() if machine is None else machine).strip().lower()
    if name:
        return name in _64_BIT_MACHINES
    # Unknown machine string, fall back to the interpreter's pointer width.
    return struct.calcsize("P") * 8 == 64


def normalize_arch(value: str) -> str:
    key = str(value or "").strip().lower().replace("-", "")
    arch = _ARCH_ALIASES.get(key)
    if arch is None:
        raise ValueError(f"Unsupported architecture override {value!r}; expected one of {list(ARCHES)}")
    return arch


def resolve_arch(override: str | None = None) -> str:
    if override is not None and str(override).strip():
        arch = normalize_arch(override)
        log.debug("Using architecture override %s", arch)
        return arch
    return ARCH_64 if is_64_bit() else ARCH_32
