"""Operator CLI for inspecting FHEVM networks and local caches."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from rich.console import Console
from rich.table import Table

from .config import SessionSettings, load_settings, parse_mock_chains
from .errors import FhevmError
from .network import resolve_network, try_resolve_mock_metadata
from .permit import DecryptionPermit
from .public_params import PublicParamsStore
from .rpc import RpcError
from .storage import FileStringStorage


def _parse_mock_chain_args(values: Sequence[str]) -> Dict[int, str]:
    raw: Dict[str, str] = {}
    for value in values:
        chain_id, sep, url = value.partition("=")
        if not sep:
            raise SystemExit(f"--mock-chain expects CHAIN_ID=URL, got `{value}`")
        raw[chain_id.strip()] = url.strip()
    try:
        return parse_mock_chains(raw)
    except ValueError as exc:
        raise SystemExit(str(exc)) from exc


def _settings(args: argparse.Namespace) -> SessionSettings:
    if getattr(args, "config", None):
        return load_settings(args.config)
    return SessionSettings.from_env()


async def _probe(rpc_url: str, settings: SessionSettings, overrides: Dict[int, str]) -> Dict[str, object]:
    profile = await resolve_network(rpc_url, settings.merged_mock_chains(overrides), timeout=settings.rpc_timeout)
    report: Dict[str, object] = {
        "chainId": profile.chain_id,
        "mapped": profile.is_mock,
        "rpcUrl": profile.rpc_url,
        "mode": "relayer",
    }
    if profile.is_mock:
        metadata = await try_resolve_mock_metadata(profile.rpc_url or "", timeout=settings.rpc_timeout)
        if metadata is not None:
            report["mode"] = "mock"
            report.update(metadata.to_rpc())
    return report


def command_probe(args: argparse.Namespace, console: Console) -> int:
    settings = _settings(args)
    try:
        report = asyncio.run(_probe(args.rpc_url, settings, _parse_mock_chain_args(args.mock_chain)))
    except (RpcError, FhevmError, ValueError) as exc:
        console.print(f"[red]Probe failed:[/red] {exc}")
        return 1
    if args.json:
        console.print_json(json.dumps(report))
        return 0
    table = Table(title=f"FHEVM network {args.rpc_url}")
    table.add_column("Field")
    table.add_column("Value")
    for key, value in report.items():
        table.add_row(key, "" if value is None else str(value))
    console.print(table)
    return 0


def command_params(args: argparse.Namespace, console: Console) -> int:
    store = PublicParamsStore(args.dir)
    if args.action == "show" and not args.acl:
        raise SystemExit("params show requires --acl")
    try:
        if args.action == "clear":
            removed = store.clear_sync(args.acl)
            console.print(f"Removed {removed} cached entr{'y' if removed == 1 else 'ies'}")
            return 0
        entry = store.get_sync(args.acl)
    except FhevmError as exc:
        console.print(f"[red]Public parameter cache error:[/red] {exc}")
        return 1
    table = Table(title=f"Public parameters for {args.acl}")
    table.add_column("Store")
    table.add_column("Cached")
    table.add_row("publicKeyStore", "yes" if entry.public_key else "no")
    table.add_row("paramsStore", ", ".join(str(bits) for bits in (entry.public_params or {})) or "no")
    console.print(table)
    return 0


def command_permits(args: argparse.Namespace, console: Console) -> int:
    storage = FileStringStorage(args.file)
    if args.action == "clear":
        storage.clear()
        console.print(f"Cleared {args.file}")
        return 0
    try:
        keys = list(storage.keys())
    except FhevmError as exc:
        console.print(f"[red]Permit storage error:[/red] {exc}")
        return 1
    table = Table(title=f"Decryption permits in {args.file}")
    table.add_column("User")
    table.add_column("Contracts")
    table.add_column("Expires")
    table.add_column("Valid")
    for key in keys:
        raw = asyncio.run(storage.get_item(key))
        try:
            permit = DecryptionPermit.from_json(raw or "")
        except ValueError:
            table.add_row(key.split(":", 1)[0], "-", "-", "[red]malformed[/red]")
            continue
        table.add_row(
            permit.user_address,
            "\n".join(permit.contract_addresses),
            str(permit.expires_at),
            "yes" if permit.is_valid() else "expired",
        )
    console.print(table)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="FHEVM session utilities")
    parser.add_argument("--config", type=Path, help="YAML/JSON settings file (defaults to FHEVM_* env vars)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    probe = sub.add_parser("probe", help="Detect whether an RPC endpoint is a local mock FHEVM node")
    probe.add_argument("--rpc-url", required=True)
    probe.add_argument("--mock-chain", action="append", default=[], metavar="CHAIN_ID=URL")
    probe.add_argument("--json", action="store_true", help="Emit JSON instead of a table")
    probe.set_defaults(handler=command_probe)

    params = sub.add_parser("params", help="Inspect or clear the public parameter cache")
    params.add_argument("action", choices=("show", "clear"))
    params.add_argument("--dir", type=Path, required=True)
    params.add_argument("--acl", help="ACL contract address")
    params.set_defaults(handler=command_params)

    permits = sub.add_parser("permits", help="List or clear stored decryption permits")
    permits.add_argument("action", choices=("list", "clear"))
    permits.add_argument("--file", type=Path, required=True)
    permits.set_defaults(handler=command_permits)
    return parser


def main(argv: Optional[List[str]] = None, console: Optional[Console] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return args.handler(args, console or Console())
