#!/usr/bin/env python3
# clients/cli.py
# Command-line wallet: keys, faucet, balance, send, inbox, export/import.

from __future__ import annotations

import argparse
import asyncio
import os
import sys
import time
from pathlib import Path
from typing import List, Optional

from notewallet.api.config import WalletConfig, load_config
from notewallet.api.logging_config import configure_logging, get_logger
from notewallet.api.node_client import NodeClient
from notewallet.api.relay_client import RelayClient
from notewallet.clients.inbox import InboxPoller
from notewallet.clients.transfer import TransferService, TransferStage, get_spendable_notes
from notewallet.crypto_core import keys
from notewallet.crypto_core.prover import BbBridgeBackend, ProverService
from notewallet.database.backup import export_notes, import_archive, load_archive, save_archive
from notewallet.database.models import Note, StoredNote
from notewallet.database.note_store import NoteStore
from notewallet.database.storage import SqliteStorage
from notewallet.errors import ArchiveOwnerMismatch, NoteWalletError

logger = get_logger("clients.cli")


# ======== Color accents (no deps) ========
class C:
    OK = "\033[92m"
    WARN = "\033[93m"
    ERR = "\033[91m"
    DIM = "\033[2m"
    BOLD = "\033[1m"
    RST = "\033[0m"


def _short(pk: str) -> str:
    return f"{pk[:6]}…{pk[-6:]}" if pk and len(pk) > 14 else pk


_STAGE_LABELS = {
    TransferStage.SELECTING_NOTES: "Selecting notes",
    TransferStage.BUILDING_TRANSACTION: "Building transaction",
    TransferStage.INITIALIZING_PROVER: "Initializing prover",
    TransferStage.GENERATING_PROOF: "Generating proof (this can take a while)",
    TransferStage.SUBMITTING_TRANSACTION: "Submitting transaction",
    TransferStage.NOTIFYING_RECIPIENT: "Notifying recipient",
    TransferStage.COMPLETE: "Complete",
}


# ======== Session ========
class Session:
    def __init__(self, cfg: WalletConfig, name: str):
        self.cfg = cfg
        self.owner = name.strip()
        self.keypair = keys.derive(name)
        self.storage = SqliteStorage(cfg.db_path)
        self.store = NoteStore(self.storage)

    def close(self) -> None:
        self.storage.close()


def _now_ms() -> int:
    return int(time.time() * 1000)


# ======== Commands ========
def cmd_keys(s: Session, args: argparse.Namespace) -> int:
    print(f"{C.BOLD}Name{C.RST}       : {s.owner}")
    print(f"{C.BOLD}Public key{C.RST} : {s.keypair.public_key}")
    print(f"{C.BOLD}Address{C.RST}    : {s.keypair.address}")
    if args.show_private:
        print(f"{C.BOLD}Private key{C.RST}: {s.keypair.private_key}")
    print(f"{C.WARN}Keys are derived from the name alone: anyone who knows it can spend your notes.{C.RST}")
    return 0


async def _faucet(s: Session, amount: Optional[int]) -> int:
    async with NodeClient(s.cfg) as node:
        res = await node.request_faucet(s.keypair.public_key, amount)
    if res.note is not None:
        entry = StoredNote(
            note=Note.from_dict(res.note),
            tx_hash=res.tx_hash or f"faucet:{_now_ms()}",
            stored_at=_now_ms(),
            player=s.owner,
        )
        s.store.add(s.owner, entry)
        print(f"{C.OK}Received {entry.note.amount}{C.RST} (tx {_short(entry.tx_hash)})")
    else:
        print(f"{C.OK}Faucet submitted{C.RST} tx {res.tx_hash}; the note will arrive through the inbox.")
    return 0


def cmd_faucet(s: Session, args: argparse.Namespace) -> int:
    return asyncio.run(_faucet(s, args.amount))


def cmd_balance(s: Session, args: argparse.Namespace) -> int:
    stored = s.store.list(s.owner)
    pending = s.store.pending_hashes(s.owner)
    spendable = get_spendable_notes(stored, s.keypair.private_key, pending)
    reserved = sum(n.note.amount for n in stored if n.tx_hash in pending)
    optimistic = sum(n.note.amount for n in stored if n.is_optimistic)

    print(f"{C.BOLD}Spendable{C.RST}: {sum(n.value for n in spendable)} in {len(spendable)} notes")
    if reserved:
        print(f"{C.DIM}Reserved by pending transfers: {reserved}{C.RST}")
    if optimistic:
        print(f"{C.DIM}Awaiting confirmation: {optimistic}{C.RST}")
    if args.verbose:
        for n in stored:
            mark = " (pending)" if n.tx_hash in pending else " (optimistic)" if n.is_optimistic else ""
            print(f"  {n.note.amount:>12}  {_short(n.tx_hash)}{mark}")
    return 0


async def _send(s: Session, recipient: str, amount: int, server_prove: bool) -> int:
    def progress(stage: TransferStage) -> None:
        print(f"{C.DIM}... {_STAGE_LABELS[stage]}{C.RST}")

    async with NodeClient(s.cfg) as node, RelayClient(s.cfg) as relay:
        backend = BbBridgeBackend(s.cfg)
        svc = TransferService(s.cfg, s.store, ProverService(backend, backend), node, relay)
        try:
            result = await svc.execute_transfer(
                recipient,
                amount,
                svc.spendable_notes(s.owner, s.keypair),
                s.keypair,
                s.owner,
                on_progress=progress,
                server_prove=server_prove,
            )
        except asyncio.CancelledError:
            # once submitted the transfer is settled even on Ctrl-C
            if svc.settling:
                print(f"{C.WARN}Waiting for the submitted transfer to settle...{C.RST}")
                await svc.wait_settled()
            raise

    print(f"{C.OK}Sent {amount}{C.RST} tx {result.tx_hash}")
    if result.change_note is not None:
        print(f"{C.DIM}Change: {result.change_note.amount}{C.RST}")
    if not result.recipient_notified:
        print(f"{C.WARN}Recipient could not be notified through the relay.{C.RST}")
    return 0


def cmd_send(s: Session, args: argparse.Namespace) -> int:
    if args.server_prove:
        print(f"{C.WARN}--server-prove sends your input secret keys to the server.{C.RST}")
    return asyncio.run(_send(s, args.recipient, args.amount, args.server_prove))


async def _inbox(s: Session, watch: bool) -> int:
    async with RelayClient(s.cfg) as relay:
        poller = InboxPoller(s.store, relay, s.keypair, s.owner, interval_sec=s.cfg.poll_interval_sec)
        if not watch:
            res = await poller.poll_once()
            print(f"Received {res.received} notes" + (f", {res.failed} unreadable" if res.failed else ""))
            return 0
        print(f"{C.DIM}Watching inbox every {s.cfg.poll_interval_sec:.0f}s, Ctrl-C to stop{C.RST}")
        await poller.run()
    return 0


def cmd_inbox(s: Session, args: argparse.Namespace) -> int:
    return asyncio.run(_inbox(s, args.watch))


def cmd_export(s: Session, args: argparse.Namespace) -> int:
    notes = s.store.list(s.owner)
    path = save_archive(export_notes(s.owner, notes), args.out)
    print(f"{C.OK}Exported {len(notes)} notes{C.RST} → {path}")
    return 0


def cmd_import(s: Session, args: argparse.Namespace) -> int:
    data = load_archive(args.archive)
    try:
        added = import_archive(s.store, s.owner, data, overwrite_owner=args.force)
    except ArchiveOwnerMismatch as e:
        print(f"{C.ERR}{e.message}{C.RST}")
        print(f"{C.DIM}Switch --name to import, or pass --force to take the notes anyway.{C.RST}")
        return 2
    print(f"{C.OK}Imported {added} new notes{C.RST}")
    return 0


# ======== Parser ========
def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="notewallet", description="Private note wallet")
    p.add_argument("--name", default=os.getenv("NOTEWALLET_NAME"), help="Wallet name (keys derive from it)")
    p.add_argument("--server", help="Settlement server URL")
    p.add_argument("--relay", help="Relay URL (defaults to the server)")
    p.add_argument("--db", type=Path, help="Wallet database path")
    p.add_argument("--log-level", help="DEBUG, INFO, WARNING…")
    sub = p.add_subparsers(dest="command", required=True)

    sp = sub.add_parser("keys", help="Show derived keys")
    sp.add_argument("--show-private", action="store_true")
    sp.set_defaults(func=cmd_keys)

    sp = sub.add_parser("faucet", help="Request test funds")
    sp.add_argument("--amount", type=int)
    sp.set_defaults(func=cmd_faucet)

    sp = sub.add_parser("balance", help="Show spendable balance")
    sp.add_argument("-v", "--verbose", action="store_true")
    sp.set_defaults(func=cmd_balance)

    sp = sub.add_parser("send", help="Private transfer")
    sp.add_argument("recipient", help="Recipient public key (64 hex)")
    sp.add_argument("amount", type=int)
    sp.add_argument("--server-prove", action="store_true", help="Let the server build the proof")
    sp.set_defaults(func=cmd_send)

    sp = sub.add_parser("inbox", help="Fetch notes sent to you")
    sp.add_argument("--watch", action="store_true", help="Keep polling")
    sp.set_defaults(func=cmd_inbox)

    sp = sub.add_parser("export", help="Write a notes archive (.zip)")
    sp.add_argument("--out", type=Path, default=Path("."))
    sp.set_defaults(func=cmd_export)

    sp = sub.add_parser("import", help="Merge a notes archive")
    sp.add_argument("archive", type=Path)
    sp.add_argument("--force", action="store_true", help="Import even if the archive names another owner")
    sp.set_defaults(func=cmd_import)
    return p


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)
    if not args.name or not args.name.strip():
        parser.error("--name (or NOTEWALLET_NAME) is required")

    cfg = load_config(server_url=args.server, relay_url=args.relay or args.server, db_path=args.db)
    try:
        s = Session(cfg, args.name)
    except NoteWalletError as e:
        print(f"{C.ERR}{e.message}{C.RST}")
        return 1
    try:
        return args.func(s, args)
    except NoteWalletError as e:
        print(f"{C.ERR}{e.message}{C.RST}")
        if e.retryable:
            print(f"{C.DIM}(temporary failure, try again){C.RST}")
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted by user.")
        return 130
    finally:
        s.close()


if __name__ == "__main__":
    sys.exit(main())
