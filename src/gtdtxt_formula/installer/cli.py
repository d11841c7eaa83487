from __future__ import annotations

import argparse
import json
import logging
import os
from dataclasses import asdict, replace
from pathlib import Path

from gtdtxt_formula import __version__ as FORMULA_TOOL_VERSION
from gtdtxt_formula.common.config import AppPaths, RuntimeConfig
from gtdtxt_formula.common.logging_utils import configure_logging
from gtdtxt_formula.common.manifest_security import public_key_b64, sign_manifest
from gtdtxt_formula.formula.catalog import parse_formula, read_manifest
from gtdtxt_formula.installer.binary_installer import InstallerProgress
from gtdtxt_formula.installer.formula_service import FormulaService


log = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_USAGE = 1
EXIT_CHECK_FAILED = 2
EXIT_INSTALL_FAILED = 3


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="gtdtxt-formula", description="Install pinned gtdtxt release binaries.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {FORMULA_TOOL_VERSION}")
    parser.add_argument("--manifest", help="Formula manifest JSON to use instead of the bundled catalog.")
    parser.add_argument("--bin-dir", help="Directory the gtdtxt binary is installed into.")
    parser.add_argument("--log-level", default="INFO", help="Log level.")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("list", help="List known gtdtxt revisions.")

    info = sub.add_parser("info", help="Show the artifact selected for this host.")
    info.add_argument("--pin", dest="pin", help="Revision to select (default: latest).")
    info.add_argument("--arch", help="Override host architecture (64 or 32).")

    install = sub.add_parser("install", help="Download, verify and install gtdtxt.")
    install.add_argument("--pin", dest="pin", help="Revision to install (default: latest).")
    install.add_argument("--arch", help="Override host architecture (64 or 32).")
    install.add_argument("--force", action="store_true", help="Reinstall even if already installed.")
    install.add_argument("--check-only", action="store_true", help="Report whether an install is needed and exit.")

    verify = sub.add_parser("verify", help="Check catalog consistency.")
    verify.add_argument("--download", action="store_true", help="Re-download every artifact and compare checksums.")

    sub.add_parser("status", help="Show the recorded install state.")

    sign = sub.add_parser("sign", help="Sign a formula manifest with an Ed25519 key.")
    sign.add_argument("--key", required=True, help="File holding a PEM or base64 Ed25519 private key.")
    sign.add_argument("--key-id", required=True, help="Key identifier recorded in the manifest.")
    sign.add_argument("input", help="Manifest JSON to sign.")
    sign.add_argument("output", nargs="?", help="Where to write the signed manifest (default: overwrite input).")
    return parser


def _log_progress(p: InstallerProgress) -> None:
    if p.phase == "download-progress" and p.bytes_done is not None:
        log.debug("%s (%s/%s bytes)", p.message, p.bytes_done, p.bytes_total if p.bytes_total else "?")
        return
    log.info("[%s] %s", p.phase, p.message)


def _cmd_list(service: FormulaService) -> int:
    formula = service.formula
    latest = formula.latest().version
    print(f"{formula.name} ({formula.homepage})")
    for revision in reversed(formula.revisions):
        marker = " (latest)" if revision.version == latest else ""
        print(f"  {revision.version}{marker}")
    return EXIT_OK


def _cmd_info(service: FormulaService, args: argparse.Namespace) -> int:
    revision, artifact = service.resolve(args.pin, args.arch)
    print(f"version: {revision.version}")
    print(f"arch:    {artifact.arch}-bit")
    print(f"url:     {artifact.url}")
    print(f"sha256:  {artifact.sha256}")
    print(f"target:  {service.binary_path}")
    return EXIT_OK


def _cmd_install(service: FormulaService, args: argparse.Namespace) -> int:
    if args.check_only:
        state = service.load_state()
        revision, artifact = service.resolve(args.pin, args.arch)
        try:
            required = service.needs_install(state, revision, artifact, pinned=args.pin is not None, force=args.force)
        except RuntimeError as exc:
            log.warning("No install will happen: %s", exc)
            return EXIT_OK
        if not required:
            log.info("%s %s is installed.", service.formula.name, revision.version)
            return EXIT_OK
        log.info(
            "Install required: installed=%s target=%s arch=%s",
            state.installed_version,
            revision.version,
            artifact.arch,
        )
        return EXIT_CHECK_FAILED

    try:
        state = service.install(args.pin, args.arch, force=args.force, progress_callback=_log_progress)
    except Exception as exc:
        log.exception("Install failed: %s", exc)
        return EXIT_INSTALL_FAILED
    print(f"{service.formula.name} {state.installed_version} installed at {state.binary_path}")
    return EXIT_OK


def _cmd_verify(service: FormulaService, args: argparse.Namespace) -> int:
    issues = service.verify_catalog(download=args.download)
    if issues:
        for issue in issues:
            print(f"{issue.version} [{issue.arch or '-'}]: {issue.message}")
        return EXIT_CHECK_FAILED
    print(f"{len(service.formula.revisions)} revision(s) OK")
    return EXIT_OK


def _cmd_status(service: FormulaService) -> int:
    state = service.load_state()
    print(json.dumps(asdict(state), indent=2, sort_keys=True))
    return EXIT_OK


def _cmd_sign(args: argparse.Namespace) -> int:
    key_value = Path(args.key).read_text(encoding="utf-8")
    source = Path(args.input)
    manifest = read_manifest(source)
    signed = sign_manifest(manifest, key_value, args.key_id)
    parse_formula(signed)
    destination = Path(args.output) if args.output else source
    tmp = destination.with_suffix(destination.suffix + ".tmp")
    tmp.write_text(json.dumps(signed, indent=2) + "\n", encoding="utf-8")
    os.replace(tmp, destination)
    log.info("Signed %s with key %s (public key %s)", destination, args.key_id, public_key_b64(key_value))
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    paths = AppPaths.default()
    if args.bin_dir:
        paths = paths.with_bin_dir(Path(args.bin_dir))
    paths.ensure_layout()
    configure_logging(paths.logs_dir, level=args.log_level)

    try:
        runtime_cfg = RuntimeConfig.from_env()
        if args.manifest:
            runtime_cfg = replace(runtime_cfg, manifest_path=Path(args.manifest))

        if args.command == "sign":
            return _cmd_sign(args)

        service = FormulaService(paths, runtime_cfg)
        if args.command == "list":
            return _cmd_list(service)
        if args.command == "info":
            return _cmd_info(service, args)
        if args.command == "install":
            return _cmd_install(service, args)
        if args.command == "verify":
            return _cmd_verify(service, args)
        if args.command == "status":
            return _cmd_status(service)
    except (KeyError, ValueError, OSError) as exc:
        log.exception("%s failed: %s", args.command, exc)
        return EXIT_USAGE
    return EXIT_USAGE
