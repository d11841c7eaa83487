from __future__ import annotations

import base64
import json
from pathlib import PurePosixPath
from typing import Iterable, Mapping
from urllib.parse import urlparse

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey


MANIFEST_SCHEMA_VERSION = "1"
MANIFEST_SIGNATURE_ALG = "ed25519"

SIGNATURE_FIELDS = ("signature_alg", "signature_key_id", "signature")

_CANONICAL_MANIFEST_FIELDS = (
    "schema_version",
    "name",
    "homepage",
    "binary_name",
    "revisions",
)

_REVISION_FIELDS = ("version", "url_64", "url_32", "sha256_64", "sha256_32")


def _normalize_host(host: str) -> str:
    return str(host or "").strip().lower().rstrip(".")


def _is_allowed_host(host: str, allowed_hosts: Iterable[str]) -> bool:
    normalized = _normalize_host(host)
    if not normalized:
        return False
    allowed = {_normalize_host(v) for v in allowed_hosts}
    if normalized in allowed:
        return True
    return any(normalized.endswith("." + entry) for entry in allowed)


def validate_trusted_url(url: str, allowed_hosts: Iterable[str], allow_http: bool = False) -> None:
    parsed = urlparse(str(url))
    scheme = (parsed.scheme or "").lower()
    if scheme != "https" and not (allow_http and scheme == "http"):
        raise ValueError(f"Untrusted URL scheme for download: {url}")
    host = parsed.hostname or ""
    if not _is_allowed_host(host, allowed_hosts):
        raise ValueError(f"Untrusted download host: {host or '<none>'}")


def _canonical_revisions(raw_revisions: object) -> list[dict[str, str]]:
    if not isinstance(raw_revisions, list):
        raise ValueError("Manifest revisions must be a list.")
    if not raw_revisions:
        raise ValueError("Manifest revisions list is empty.")

    output: list[dict[str, str]] = []
    for idx, raw in enumerate(raw_revisions):
        if not isinstance(raw, dict):
            raise ValueError(f"Manifest revision at index {idx} is not an object.")
        missing = [k for k in _REVISION_FIELDS if k not in raw]
        if missing:
            raise ValueError(f"Manifest revision at index {idx} missing fields: {missing}")
        output.append(
            {
                "version": str(raw["version"]).strip().lstrip("v"),
                "url_64": str(raw["url_64"]).strip(),
                "url_32": str(raw["url_32"]).strip(),
                "sha256_64": str(raw["sha256_64"]).strip().lower(),
                "sha256_32": str(raw["sha256_32"]).strip().lower(),
            }
        )
    return output


def manifest_signing_payload(manifest: dict) -> dict:
    missing = [k for k in _CANONICAL_MANIFEST_FIELDS if k not in manifest]
    if missing:
        raise ValueError(f"Manifest missing required fields: {missing}")

    schema_version = str(manifest["schema_version"]).strip()
    if schema_version != MANIFEST_SCHEMA_VERSION:
        raise ValueError(
            f"Unsupported manifest schema version {schema_version!r}; expected {MANIFEST_SCHEMA_VERSION!r}."
        )

    return {
        "schema_version": schema_version,
        "name": str(manifest["name"]).strip(),
        "homepage": str(manifest["homepage"]).strip(),
        "binary_name": str(manifest["binary_name"]).strip(),
        "revisions": _canonical_revisions(manifest["revisions"]),
    }


def canonical_manifest_bytes(manifest: dict) -> bytes:
    payload = manifest_signing_payload(manifest)
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=True).encode("utf-8")


def is_signed(manifest: dict) -> bool:
    return any(str(manifest.get(k, "")).strip() for k in SIGNATURE_FIELDS)


def _decode_private_key(value: str) -> Ed25519PrivateKey:
    text = str(value or "").strip()
    if not text:
        raise ValueError("Manifest signing key is empty.")

    if text.startswith("-----BEGIN"):
        key = serialization.load_pem_private_key(text.encode("utf-8"), password=None)
        if not isinstance(key, Ed25519PrivateKey):
            raise ValueError("Manifest signing key must be an Ed25519 private key.")
        return key

    try:
        raw = base64.b64decode(text, validate=True)
    except Exception as exc:
        raise ValueError("Manifest signing key must be PEM or base64-encoded raw Ed25519 key.") from exc
    if len(raw) != 32:
        raise ValueError("Base64 manifest signing key must decode to 32 bytes.")
    return Ed25519PrivateKey.from_private_bytes(raw)


def public_key_b64(private_key_value: str) -> str:
    key = _decode_private_key(private_key_value)
    raw = key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return base64.b64encode(raw).decode("ascii")


def sign_manifest(manifest: dict, private_key_value: str, key_id: str) -> dict:
    payload = canonical_manifest_bytes(manifest)
    key = _decode_private_key(private_key_value)
    signature = key.sign(payload)

    signed = {k: v for k, v in manifest.items() if k not in SIGNATURE_FIELDS}
    signed["signature_alg"] = MANIFEST_SIGNATURE_ALG
    signed["signature_key_id"] = str(key_id).strip()
    signed["signature"] = base64.b64encode(signature).decode("ascii")
    return signed


def verify_manifest_signature(manifest: dict, trusted_keys: Mapping[str, str]) -> None:
    alg = str(manifest.get("signature_alg", "")).strip().lower()
    key_id = str(manifest.get("signature_key_id", "")).strip()
    signature_b64 = str(manifest.get("signature", "")).strip()

    if alg != MANIFEST_SIGNATURE_ALG:
        raise ValueError(f"Unsupported manifest signature algorithm: {alg or '<missing>'}")
    if not key_id:
        raise ValueError("Manifest signature_key_id is missing.")
    if not signature_b64:
        raise ValueError("Manifest signature is missing.")

    key_b64 = trusted_keys.get(key_id)
    if not key_b64:
        raise ValueError(f"Manifest key ID {key_id!r} is not trusted.")

    try:
        signature = base64.b64decode(signature_b64, validate=True)
    except Exception as exc:
        raise ValueError("Manifest signature is not valid base64.") from exc

    try:
        pub_raw = base64.b64decode(key_b64, validate=True)
    except Exception as exc:
        raise ValueError(f"Public key for {key_id!r} is invalid.") from exc

    if len(pub_raw) != 32:
        raise ValueError(f"Public key for {key_id!r} must be 32 bytes.")

    payload = canonical_manifest_bytes(manifest)
    pub = Ed25519PublicKey.from_public_bytes(pub_raw)
    try:
        pub.verify(signature, payload)
    except Exception as exc:
        raise ValueError("Manifest signature verification failed.") from exc


def validate_archive_member_path(member_name: str) -> PurePosixPath:
    # Normalize as posix to avoid platform-dependent traversal quirks.
    normalized = str(member_name or "").replace("\\", "/").strip()
    if normalized.startswith("./"):
        normalized = normalized[2:]
    if not normalized:
        raise ValueError("Archive contains an empty path entry.")

    path = PurePosixPath(normalized)
    parts = path.parts
    if not parts:
        raise ValueError("Archive path entry has no parts.")
    if path.is_absolute():
        raise ValueError(f"Archive entry is absolute path: {member_name}")
    if any(part in {"..", ""} for part in parts):
        raise ValueError(f"Archive entry contains traversal segment: {member_name}")
    if ":" in parts[0]:
        raise ValueError(f"Archive entry contains drive designator: {member_name}")
    return path
