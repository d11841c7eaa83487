from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


STATE_FILE_NAME = "install_state.v1.json"


@dataclass
class InstallState:
    installed_version: str | None = None
    arch: str | None = None
    archive_sha256: str | None = None
    binary_sha256: str | None = None
    binary_path: str | None = None
    last_install_utc: str | None = None

    def touch_install_time(self) -> None:
        self.last_install_utc = datetime.now(timezone.utc).isoformat()

    def matches(self, version: str, arch: str, archive_sha256: str) -> bool:
        return (
            self.installed_version == version
            and self.arch == arch
            and (self.archive_sha256 or "").lower() == archive_sha256.lower()
        )


def _state_file(state_dir: Path) -> Path:
    return state_dir / STATE_FILE_NAME


def load_install_state(state_dir: Path) -> InstallState:
    path = _state_file(state_dir)
    if not path.exists():
        return InstallState()

    # Hand-edited files may carry a UTF-8 BOM.
    with path.open("r", encoding="utf-8-sig") as fh:
        raw: dict[str, Any] = json.load(fh)

    return InstallState(
        installed_version=raw.get("installed_version"),
        arch=raw.get("arch"),
        archive_sha256=raw.get("archive_sha256"),
        binary_sha256=raw.get("binary_sha256"),
        binary_path=raw.get("binary_path"),
        last_install_utc=raw.get("last_install_utc"),
    )


def save_install_state(state_dir: Path, state: InstallState) -> None:
    path = _state_file(state_dir)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".tmp")
    with tmp.open("w", encoding="utf-8") as fh:
        json.dump(asdict(state), fh, indent=2, sort_keys=True)
    tmp.replace(path)
