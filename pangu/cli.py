"""Command line for the pangu wallet core.

    python -m pangu keygen [--out key.json]
    python -m pangu address --key key.json
    python -m pangu canonicalize Transaction tx.json [--exclude TXID ...] [--digest]
    python -m pangu sign UserNewTX envelope.json --key key.json --field Sig [--exclude Height]
    python -m pangu verify UserNewTX envelope.json --key key.json --field Sig [--exclude Height]
    python -m pangu config show|validate [--file pangu.yaml]
"""

from __future__ import annotations

import argparse
import json
import pathlib
import sys
from typing import Dict, List, Optional, Tuple

from pangu.canonical import canonical_text, canonicalize
from pangu.config import ConfigManager, get_config
from pangu.core import int_to_hex, load_json, sha256_hex
from pangu.errors import PanguError
from pangu.observability import PanguLayer, configure_from, get_logger
from pangu.records import EcdsaSignature, Kind, PublicKeyNew, WireRecord, record_type
from pangu.signing import (
    derive_address,
    generate_private_key,
    private_key_hex,
    public_key_from_secret,
    sign,
    verify,
)

logger = get_logger("cli", PanguLayer.CLI)


def _key_document(secret: bytes) -> Dict[str, str]:
    public_key = public_key_from_secret(secret)
    return {
        "private_key": private_key_hex(secret),
        "CurveName": public_key.curve_name,
        "X": int_to_hex(public_key.x or 0),
        "Y": int_to_hex(public_key.y or 0),
        "address": derive_address(public_key),
    }


def _load_key(path: str) -> Tuple[Optional[str], PublicKeyNew]:
    """Read a key file; returns (private key hex or None, public key)."""
    doc = load_json(pathlib.Path(path))
    if not isinstance(doc, dict):
        raise ValueError(f"{path}: key file must be a JSON object")
    private = doc.get("private_key") or None
    if doc.get("X") and doc.get("Y"):
        public_key = PublicKeyNew.from_hex(doc["X"], doc["Y"], doc.get("CurveName") or "P256")
    elif private:
        public_key = public_key_from_secret(private)
    else:
        raise ValueError(f"{path}: key file has neither a private key nor coordinates")
    return private, public_key


def _load_record(name: str, path: str) -> WireRecord:
    cls = record_type(name)
    return cls.from_wire(load_json(pathlib.Path(path)))


def _signature_field(record: WireRecord, name: str) -> str:
    spec = record.spec(name)
    if spec.kind is not Kind.STRUCT or spec.record is not EcdsaSignature:
        raise ValueError(f"{type(record).WIRE_NAME}.{name} is not a signature field")
    return spec.attr


# =============================================================================
# COMMANDS
# =============================================================================

def cmd_keygen(args: argparse.Namespace) -> int:
    doc = _key_document(generate_private_key())
    text = json.dumps(doc, indent=2) + "\n"
    if args.out:
        out = pathlib.Path(args.out)
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text(text, encoding="utf-8")
        print("Wrote key for address", doc["address"], "to", out)
    else:
        sys.stdout.write(text)
    return 0


def cmd_address(args: argparse.Namespace) -> int:
    if args.key:
        _, public_key = _load_key(args.key)
    elif args.x and args.y:
        public_key = PublicKeyNew.from_hex(args.x, args.y)
    else:
        print("address: pass --key or both --x and --y", file=sys.stderr)
        return 2
    print(derive_address(public_key))
    return 0


def cmd_canonicalize(args: argparse.Namespace) -> int:
    record = _load_record(args.record, args.path)
    if args.digest:
        print(sha256_hex(canonicalize(record, args.exclude)))
    else:
        print(canonical_text(record, args.exclude))
    return 0


def cmd_sign(args: argparse.Namespace) -> int:
    private, _ = _load_key(args.key)
    if not private:
        print(f"sign: {args.key} has no private key", file=sys.stderr)
        return 2
    record = _load_record(args.record, args.path)
    attr = _signature_field(record, args.field)
    exclude = [args.field] + [f for f in args.exclude if f != args.field]
    setattr(record, attr, sign(record, exclude, private))
    text = canonical_text(record)
    if args.out:
        pathlib.Path(args.out).write_text(text + "\n", encoding="utf-8")
        print("Wrote signed record to", args.out)
    else:
        print(text)
    return 0


def cmd_verify(args: argparse.Namespace) -> int:
    _, public_key = _load_key(args.key)
    record = _load_record(args.record, args.path)
    signature = getattr(record, _signature_field(record, args.field))
    exclude = [args.field] + [f for f in args.exclude if f != args.field]
    if verify(record, signature, exclude, public_key):
        print("OK  ", type(record).WIRE_NAME, args.field)
        return 0
    print("FAIL", type(record).WIRE_NAME, args.field)
    return 2


def _manager(args: argparse.Namespace) -> ConfigManager:
    manager = ConfigManager()
    if args.file:
        manager.load_from_file(args.file)
    else:
        manager.load_defaults()
    return manager


def cmd_config_show(args: argparse.Namespace) -> int:
    sys.stdout.write(_manager(args).config.to_yaml())
    return 0


def cmd_config_validate(args: argparse.Namespace) -> int:
    errors = _manager(args).validate()
    for e in errors:
        print("FAIL", e)
    if errors:
        return 2
    print("OK   configuration valid")
    return 0


# =============================================================================
# ENTRY POINT
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="pangu")
    sub = ap.add_subparsers(dest="cmd", required=True)

    k = sub.add_parser("keygen", help="Generate a P-256 key and its address")
    k.add_argument("--out", default="", help="Write the key file here instead of stdout")
    k.set_defaults(func=cmd_keygen)

    a = sub.add_parser("address", help="Derive the address of a public key")
    a.add_argument("--key", default="", help="Key file (private key or X/Y)")
    a.add_argument("--x", default="", help="X coordinate, hex")
    a.add_argument("--y", default="", help="Y coordinate, hex")
    a.set_defaults(func=cmd_address)

    c = sub.add_parser("canonicalize", help="Print the canonical bytes of a record")
    c.add_argument("record", help="Record type, e.g. Transaction or UserNewTX")
    c.add_argument("path", help="JSON file holding the record")
    c.add_argument("--exclude", nargs="*", default=[], help="Fields zeroed before serialization")
    c.add_argument("--digest", action="store_true", help="Print the SHA-256 digest instead")
    c.set_defaults(func=cmd_canonicalize)

    for name, func, help_text in (
        ("sign", cmd_sign, "Sign a record and print it with the signature set"),
        ("verify", cmd_verify, "Verify the signature carried by a record"),
    ):
        s = sub.add_parser(name, help=help_text)
        s.add_argument("record", help="Record type")
        s.add_argument("path", help="JSON file holding the record")
        s.add_argument("--key", required=True, help="Key file")
        s.add_argument("--field", default="Sig", help="Signature field (default: Sig)")
        s.add_argument("--exclude", nargs="*", default=[], help="Additional zeroed fields")
        if name == "sign":
            s.add_argument("--out", default="", help="Output path (default: stdout)")
        s.set_defaults(func=func)

    cfg = sub.add_parser("config", help="Inspect configuration")
    cfg_sub = cfg.add_subparsers(dest="config_cmd", required=True)
    cs = cfg_sub.add_parser("show")
    cs.add_argument("--file", default="", help="YAML file (default: search standard paths)")
    cs.set_defaults(func=cmd_config_show)
    cv = cfg_sub.add_parser("validate")
    cv.add_argument("--file", default="", help="YAML file (default: search standard paths)")
    cv.set_defaults(func=cmd_config_validate)

    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_from(get_config())
    try:
        return args.func(args)
    except (PanguError, ValueError, OSError) as ex:
        logger.error("Command failed", error_code="CLI_ERROR", command=args.cmd, error=str(ex))
        print(f"{args.cmd}: {ex}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
