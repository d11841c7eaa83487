from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path


# Hosts serving GitHub release downloads, including redirect targets.
DEFAULT_TRUSTED_HOSTS: tuple[str, ...] = (
    "github.com",
    "release-assets.githubusercontent.com",
    "objects.githubusercontent.com",
    "github-releases.githubusercontent.com",
)


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name, "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


def _env_list(name: str) -> tuple[str, ...]:
    raw = os.environ.get(name, "")
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def parse_public_keys(raw: str) -> dict[str, str]:
    """Parse ``key_id=base64key`` pairs separated by commas."""
    keys: dict[str, str] = {}
    for entry in str(raw or "").split(","):
        entry = entry.strip()
        if not entry:
            continue
        key_id, sep, value = entry.partition("=")
        if not sep or not key_id.strip() or not value.strip():
            raise ValueError(f"Malformed public key entry {entry!r}; expected key_id=base64")
        keys[key_id.strip()] = value.strip()
    return keys


@dataclass(frozen=True)
class AppPaths:
    install_root: Path
    bin_dir: Path
    logs_dir: Path
    state_dir: Path
    temp_dir: Path

    @classmethod
    def default(cls) -> "AppPaths":
        override_root = os.environ.get("GTDTXT_FORMULA_ROOT", "").strip()
        install_root = Path(override_root) if override_root else Path.home() / ".gtdtxt-formula"
        override_bin = os.environ.get("GTDTXT_BIN_DIR", "").strip()
        bin_dir = Path(override_bin) if override_bin else Path.home() / ".local" / "bin"
        return cls.under(install_root, bin_dir)

    @classmethod
    def under(cls, install_root: Path, bin_dir: Path | None = None) -> "AppPaths":
        return cls(
            install_root=install_root,
            bin_dir=bin_dir if bin_dir is not None else install_root / "bin",
            logs_dir=install_root / "logs",
            state_dir=install_root / "state",
            temp_dir=install_root / "state" / "tmp",
        )

    @property
    def staging_dir(self) -> Path:
        return self.temp_dir / "staging"

    def with_bin_dir(self, bin_dir: Path) -> "AppPaths":
        return replace(self, bin_dir=bin_dir)

    def ensure_layout(self) -> None:
        for path in (
            self.install_root,
            self.bin_dir,
            self.logs_dir,
            self.state_dir,
            self.temp_dir,
        ):
            path.mkdir(parents=True, exist_ok=True)


@dataclass(frozen=True)
class RuntimeConfig:
    manifest_path: Path | None = None
    arch_override: str | None = None
    download_chunk_size: int = 1024 * 1024
    connect_timeout_seconds: int = 10
    read_timeout_seconds: int = 60
    max_retries: int = 3
    allow_insecure_http: bool = False
    require_signature: bool = False
    trusted_public_keys: dict[str, str] = field(default_factory=dict)
    trusted_asset_hosts: tuple[str, ...] = DEFAULT_TRUSTED_HOSTS

    @classmethod
    def from_env(cls) -> "RuntimeConfig":
        manifest_raw = os.environ.get("GTDTXT_MANIFEST_PATH", "").strip()
        extra_hosts = _env_list("GTDTXT_TRUSTED_HOSTS")
        return cls(
            manifest_path=Path(manifest_raw) if manifest_raw else None,
            arch_override=os.environ.get("GTDTXT_ARCH", "").strip() or None,
            download_chunk_size=int(os.environ.get("GTDTXT_DOWNLOAD_CHUNK", str(1024 * 1024))),
            connect_timeout_seconds=int(os.environ.get("GTDTXT_CONNECT_TIMEOUT", "10")),
            read_timeout_seconds=int(os.environ.get("GTDTXT_READ_TIMEOUT", "60")),
            max_retries=int(os.environ.get("GTDTXT_MAX_RETRIES", "3")),
            allow_insecure_http=_env_flag("GTDTXT_ALLOW_HTTP"),
            require_signature=_env_flag("GTDTXT_REQUIRE_SIGNATURE"),
            trusted_public_keys=parse_public_keys(os.environ.get("GTDTXT_MANIFEST_PUBLIC_KEYS", "")),
            trusted_asset_hosts=DEFAULT_TRUSTED_HOSTS + extra_hosts,
        )
