#!/usr/bin/env python3
"""
Shinobi wallet CLI

  shinobi-wallet create-account alice
  shinobi-wallet sync alice
  shinobi-wallet notes alice
  shinobi-wallet deposit alice
  shinobi-wallet withdraw alice --deposit-index 0 --amount 0.4 --recipient 0x...
"""
from __future__ import annotations

import argparse
import asyncio
import getpass
import json
import sys
from typing import List, Optional

from shinobi import config
from shinobi.api.health_checks import comprehensive_health_check
from shinobi.api.indexer_client import IndexerClient
from shinobi.api.ipfs import LabelListFetcher
from shinobi.api.pool_contract import PoolContractReader
from shinobi.crypto_core.notes import NoteChain, from_wei, to_wei
from shinobi.database.adapters import SqlRecordAdapter
from shinobi.database.note_store import EncryptedNoteStore
from shinobi.errors import InvalidWithdrawalError, ShinobiError
from shinobi.logging_config import configure_logging
from shinobi.wallet.discovery import DiscoveryProgress
from shinobi.wallet.prover import SnarkjsProver
from shinobi.wallet.session import WalletSession


class C:
    OK   = "\033[92m"
    WARN = "\033[93m"
    ERR  = "\033[91m"
    DIM  = "\033[2m"
    BOLD = "\033[1m"
    RST  = "\033[0m"


def _short(value: str) -> str:
    return f"{value[:6]}…{value[-4:]}" if value and len(value) > 12 else value


def format_chain(chain: NoteChain) -> List[str]:
    lines = [f"{C.BOLD}deposit #{chain.deposit_index}{C.RST}  balance {from_wei(chain.balance)} ETH"]
    for note in chain.notes:
        color = C.DIM if note.is_spent else C.OK
        tx = _short(note.transaction_hash or "")
        lines.append(
            f"  {color}[{note.change_index}] {from_wei(note.amount)} ETH  {note.status.value}{C.RST}  {tx}"
        )
    return lines


def _password(args: argparse.Namespace) -> str:
    return args.password or getpass.getpass(f"Password for {args.account}: ")


# ======== Wiring ========

class Runtime:
    def __init__(self, args: argparse.Namespace):
        self.args = args
        self.adapter = SqlRecordAdapter(url=args.database_url)
        self.store = EncryptedNoteStore(self.adapter)
        self.indexer = IndexerClient(args.indexer_url)
        self.labels = LabelListFetcher(args.ipfs_gateway)
        self.scope = PoolContractReader(args.rpc_url)
        self._wallet: Optional[WalletSession] = None

    @property
    def wallet(self) -> WalletSession:
        # only pool-bound commands need a valid --pool
        if self._wallet is None:
            self._wallet = WalletSession(
                self.store,
                self.indexer,
                self.labels,
                self.scope,
                SnarkjsProver(),
                pool_address=self.args.pool,
                entrypoint=self.args.entrypoint,
                fee_recipient=self.args.fee_recipient,
                relay_fee_bps=self.args.relay_fee_bps,
            )
        return self._wallet

    async def close(self) -> None:
        if self._wallet is not None:
            self._wallet.lock()
        else:
            self.store.clear_session()
        await self.indexer.close()
        await self.labels.close()
        await self.scope.close()
        await self.adapter.close()


# ======== Commands ========

async def cmd_create_account(rt: Runtime, args: argparse.Namespace) -> None:
    keys = await rt.wallet.create_account(args.account, _password(args), args.pbkdf2_iterations)
    print(f"{C.OK}Account '{args.account}' created{C.RST}  address {keys.address}")
    print(f"{C.WARN}Write down your backup phrase:{C.RST}")
    print("  " + " ".join(keys.mnemonic))


async def cmd_restore_account(rt: Runtime, args: argparse.Namespace) -> None:
    phrase = args.mnemonic or getpass.getpass("Backup phrase: ")
    keys = await rt.wallet.restore_account(args.account, phrase, _password(args), args.pbkdf2_iterations)
    print(f"{C.OK}Account '{args.account}' restored{C.RST}  address {keys.address}")
    print(f"{C.DIM}Run 'sync' to rebuild the note history.{C.RST}")


async def cmd_accounts(rt: Runtime, args: argparse.Namespace) -> None:
    names = await rt.store.list_account_names()
    if not names:
        print(f"{C.DIM}No accounts.{C.RST}")
    for name in names:
        print(name)


async def cmd_sync(rt: Runtime, args: argparse.Namespace) -> None:
    await rt.wallet.unlock(args.account, _password(args), args.pbkdf2_iterations)

    def progress(p: DiscoveryProgress) -> None:
        if not p.complete:
            print(f"{C.DIM}page {p.pages_processed}: {p.current_page_activity_count} activities, "
                  f"{p.deposits_matched} deposits found{C.RST}")

    result = await rt.wallet.sync(on_progress=progress)
    print(f"{C.OK}Synced{C.RST}: {result.new_chains_found} new deposits, "
          f"{len(result.unspent_notes)} unspent notes")


async def cmd_notes(rt: Runtime, args: argparse.Namespace) -> None:
    await rt.wallet.unlock(args.account, _password(args), args.pbkdf2_iterations)
    chains = await rt.wallet.note_chains()
    if not chains:
        print(f"{C.DIM}No notes yet. Run 'sync' first.{C.RST}")
    for chain in chains:
        if args.all or chain.is_live:
            print("\n".join(format_chain(chain)))


async def cmd_deposit(rt: Runtime, args: argparse.Namespace) -> None:
    await rt.wallet.unlock(args.account, _password(args), args.pbkdf2_iterations)
    allocation = await rt.wallet.prepare_deposit()
    print(json.dumps({
        "pool": allocation.pool_address,
        "depositIndex": allocation.deposit_index,
        "precommitment": str(allocation.precommitment),
        "to": rt.wallet.entrypoint,
        "value": str(to_wei(args.amount)) if args.amount else None,
        "calldata": "0x" + allocation.calldata.hex(),
    }, indent=2))


async def cmd_withdraw(rt: Runtime, args: argparse.Namespace) -> None:
    await rt.wallet.unlock(args.account, _password(args), args.pbkdf2_iterations)
    note = next((n for n in await rt.wallet.unspent_notes() if n.deposit_index == args.deposit_index), None)
    if note is None:
        raise InvalidWithdrawalError(f"no unspent note for deposit #{args.deposit_index}")
    handoff = await rt.wallet.prepare_withdrawal(
        note, to_wei(args.amount), args.recipient,
        on_progress=lambda stage: print(f"{C.DIM}{stage}…{C.RST}"),
    )
    print(json.dumps({
        "processooor": handoff.withdrawal_data.processooor,
        "data": "0x" + handoff.withdrawal_data.data.hex(),
        "scope": str(handoff.scope),
        "proof": {k: [str(x) if not isinstance(x, list) else [str(y) for y in x] for x in v]
                  for k, v in handoff.contract_proof.items()},
        "relayCalldata": "0x" + handoff.relay_calldata.hex(),
        "changeNote": {"changeIndex": handoff.change_note.change_index, "amount": str(handoff.change_note.amount)},
    }, indent=2))


async def cmd_health(rt: Runtime, args: argparse.Namespace) -> None:
    print(json.dumps(await comprehensive_health_check(rt.indexer, args.rpc_url), indent=2))


COMMANDS = {
    "create-account": cmd_create_account,
    "restore-account": cmd_restore_account,
    "accounts": cmd_accounts,
    "sync": cmd_sync,
    "notes": cmd_notes,
    "deposit": cmd_deposit,
    "withdraw": cmd_withdraw,
    "health": cmd_health,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="shinobi-wallet", description="Privacy pool wallet")
    parser.add_argument("--pool", default=config.POOL_ADDRESS, help="Privacy pool contract address")
    parser.add_argument("--entrypoint", default=config.ENTRYPOINT_ADDRESS, help="Pool entrypoint (processooor)")
    parser.add_argument("--fee-recipient", default=config.FEE_RECIPIENT_ADDRESS)
    parser.add_argument("--relay-fee-bps", type=int, default=config.RELAY_FEE_BPS)
    parser.add_argument("--indexer-url", default=config.INDEXER_URL)
    parser.add_argument("--ipfs-gateway", default=config.IPFS_GATEWAY_URL)
    parser.add_argument("--rpc-url", default=config.RPC_URL)
    parser.add_argument("--database-url", default=config.DATABASE_URL)
    parser.add_argument("--pbkdf2-iterations", type=int, default=config.PBKDF2_ITERATIONS)
    parser.add_argument("--log-level", default=config.LOG_LEVEL)

    sub = parser.add_subparsers(dest="command", required=True)

    def with_account(name: str, help_text: str) -> argparse.ArgumentParser:
        p = sub.add_parser(name, help=help_text)
        p.add_argument("account")
        p.add_argument("--password", default=None, help="Omit to be prompted")
        return p

    with_account("create-account", "Create a new account")
    restore = with_account("restore-account", "Restore an account from its backup phrase")
    restore.add_argument("--mnemonic", default=None, help="Omit to be prompted")
    sub.add_parser("accounts", help="List accounts in the local store")
    with_account("sync", "Discover deposits and withdrawals")
    notes = with_account("notes", "Show note chains")
    notes.add_argument("--all", action="store_true", help="Include fully spent chains")
    deposit = with_account("deposit", "Allocate the next deposit index and print its entrypoint calldata")
    deposit.add_argument("--amount", default=None, help="ETH amount to deposit (printed as msg.value)")
    withdraw = with_account("withdraw", "Build a withdrawal proof")
    withdraw.add_argument("--deposit-index", type=int, required=True)
    withdraw.add_argument("--amount", required=True, help="ETH amount to withdraw")
    withdraw.add_argument("--recipient", required=True)
    sub.add_parser("health", help="Check indexer and RPC connectivity")
    return parser


async def run(args: argparse.Namespace) -> None:
    rt = Runtime(args)
    try:
        await COMMANDS[args.command](rt, args)
    finally:
        await rt.close()


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)
    try:
        asyncio.run(run(args))
    except ShinobiError as e:
        print(f"\n{C.ERR}ERROR:{C.RST} {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        sys.exit(130)
