#!/usr/bin/env python3
"""
ZK Vault - Command Line Interface

Usage:
    zk-vault identity                       Show the identity handle (creates the root secret if needed)
    zk-vault export-phrase [--words 24]     Print the recovery phrase (optionally quiz 3 words)
    zk-vault restore-phrase                 Restore the root secret from a phrase read on stdin
    zk-vault parse-eml FILE                 Check that an .eml file carries usable DKIM evidence
    zk-vault attestations                   List stored attestations (public fields only)
    zk-vault delete-attestation TYPE        Delete the attestation of a claim type
    zk-vault permissions ORIGIN             Show the claim types granted to an origin
    zk-vault revoke ORIGIN TYPE             Revoke one grant
    zk-vault settings [--auto-approve on|off] [--expiry-days N]
    zk-vault ui-token [--write FILE]        Mint a credential for the broker's UI endpoints (ZKV_UI_TOKEN)

Exit codes: 0 success, 1 vault error, 2 usage error.
"""

import argparse
import getpass
import json
import logging
import os
import sys
import time
from pathlib import Path

from zk_vault.attestations import AttestationStore, ClaimType
from zk_vault.auth import ENV_UI_TOKEN, ENV_UI_TOKEN_FILE, new_ui_token
from zk_vault.config import BrokerConfig, SettingsStore
from zk_vault.errors import VaultError
from zk_vault.evidence import parse_evidence
from zk_vault.lockdown import StorageLockdownError
from zk_vault.mnemonic import verification_positions, verify_words
from zk_vault.permissions import PermissionRegistry
from zk_vault.store import VaultStore
from zk_vault.vault import CredentialVault

logger = logging.getLogger("zk_vault")


def setup_logging(verbose: bool = False):
    """Configure logging for CLI usage."""
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    logger.setLevel(level)


def _store(args) -> VaultStore:
    return VaultStore(args.db)


def _vault(args) -> CredentialVault:
    return CredentialVault(_store(args), iterations=BrokerConfig.from_env().pbkdf2_iterations)


def _print_json(obj) -> None:
    print(json.dumps(obj, indent=2, sort_keys=True, ensure_ascii=False))


def _read_phrase(prompt: str) -> str:
    if sys.stdin.isatty():
        return getpass.getpass(prompt)
    return sys.stdin.readline()


def cmd_identity(args):
    print(_vault(args).identity_handle())
    return 0


def cmd_export_phrase(args):
    phrase = _vault(args).export_phrase(args.words)
    print(phrase)
    if not args.verify:
        return 0

    checks = []
    for pos in verification_positions(args.words):
        checks.append((pos, input(f"Word #{pos}: ")))
    if verify_words(phrase, checks):
        print("Backup verified.")
        return 0
    print("Verification failed: the words do not match.", file=sys.stderr)
    return 1


def cmd_restore_phrase(args):
    vault = _vault(args)
    if vault.get_root_secret() is not None and not args.force:
        print("A root secret already exists; pass --force to replace it.", file=sys.stderr)
        return 2
    handle = vault.restore_from_phrase(_read_phrase("Recovery phrase: "))
    print(handle)
    return 0


def cmd_parse_eml(args):
    raw = Path(args.file).read_text(encoding="utf-8", errors="replace")
    triple = parse_evidence(raw)
    raw = None
    # Only the public part of the evidence is ever printed.
    _print_json({"domain": triple.domain, "dkim": "present", "authResults": bool(triple.auth_results)})
    return 0


def cmd_attestations(args):
    now = int(time.time() * 1000)
    out = {}
    for claim, attestation in AttestationStore(_store(args)).list_all().items():
        out[claim] = {
            "description": attestation.describe(),
            "publicInputs": attestation.public_claim,
            "generatedAt": attestation.generated_at,
            "expiresAt": attestation.expires_at,
            "expired": attestation.is_expired(now),
        }
    _print_json(out)
    return 0


def cmd_delete_attestation(args):
    deleted = AttestationStore(_store(args)).delete(ClaimType.parse(args.type))
    print("deleted" if deleted else "not found")
    return 0


def cmd_permissions(args):
    claims = PermissionRegistry(_store(args)).list_grants(args.origin)
    _print_json(sorted(c.value for c in claims))
    return 0


def cmd_revoke(args):
    PermissionRegistry(_store(args)).revoke(args.origin, ClaimType.parse(args.type))
    return 0


def cmd_settings(args):
    settings = SettingsStore(_store(args))
    auto = None if args.auto_approve is None else args.auto_approve == "on"
    if auto is None and args.expiry_days is None:
        current = settings.load()
    else:
        current = settings.update(auto_approve=auto, expiry_days=args.expiry_days)
    _print_json(current.to_record())
    return 0


def cmd_ui_token(args):
    token = new_ui_token()
    if args.write:
        path = Path(args.write)
        fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(token + "\n")
        print(f"wrote UI token to {path}; start the broker with {ENV_UI_TOKEN_FILE}={path}")
    else:
        print(token)
        print(f"export {ENV_UI_TOKEN}=<token> before starting the broker", file=sys.stderr)
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="ZK Vault CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument(
        "--db",
        default=os.getenv("ZKV_DB_PATH", "") or "zk_vault.db",
        help="Path to the vault database (default: $ZKV_DB_PATH or zk_vault.db)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    p = subparsers.add_parser("identity", help="Show the identity handle")
    p.set_defaults(func=cmd_identity)

    p = subparsers.add_parser("export-phrase", help="Print the recovery phrase")
    p.add_argument("--words", type=int, choices=(12, 24), default=24, help="Phrase length (root secrets need 24)")
    p.add_argument("--verify", action="store_true", help="Quiz three random words after printing")
    p.set_defaults(func=cmd_export_phrase)

    p = subparsers.add_parser("restore-phrase", help="Restore the root secret from a phrase on stdin")
    p.add_argument("--force", action="store_true", help="Replace an existing root secret")
    p.set_defaults(func=cmd_restore_phrase)

    p = subparsers.add_parser("parse-eml", help="Check DKIM evidence in an .eml file")
    p.add_argument("file", help="Path to the .eml file")
    p.set_defaults(func=cmd_parse_eml)

    p = subparsers.add_parser("attestations", help="List stored attestations")
    p.set_defaults(func=cmd_attestations)

    p = subparsers.add_parser("delete-attestation", help="Delete an attestation")
    p.add_argument("type", help="Claim type (country | email_domain | age)")
    p.set_defaults(func=cmd_delete_attestation)

    p = subparsers.add_parser("permissions", help="Show grants for an origin")
    p.add_argument("origin")
    p.set_defaults(func=cmd_permissions)

    p = subparsers.add_parser("revoke", help="Revoke one grant")
    p.add_argument("origin")
    p.add_argument("type", help="Claim type (country | email_domain | age)")
    p.set_defaults(func=cmd_revoke)

    p = subparsers.add_parser("settings", help="Show or change settings")
    p.add_argument("--auto-approve", choices=("on", "off"), default=None)
    p.add_argument("--expiry-days", type=int, default=None)
    p.set_defaults(func=cmd_settings)

    p = subparsers.add_parser("ui-token", help="Mint a UI credential for the broker")
    p.add_argument("--write", metavar="FILE", help="Write the token to FILE (mode 0600) instead of stdout")
    p.set_defaults(func=cmd_ui_token)

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 2

    setup_logging(args.verbose)
    try:
        return args.func(args)
    except VaultError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    except StorageLockdownError:
        print("error: vault storage is locked down; retry shortly", file=sys.stderr)
        return 1
    except ValueError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
