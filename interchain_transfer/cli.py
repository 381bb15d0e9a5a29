"""
Command line interface

    interchain-transfer transfer --amount 50000000
    interchain-transfer resume xfer_0123456789ab
    interchain-transfer send --amount 100000000 --to-address X-...
    interchain-transfer query
    interchain-transfer history

`--devnet` runs every command against an in-process LocalNetwork seeded with
funds for the configured key (or a freshly generated one).
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Dict, Iterable, Optional

from loguru import logger

from . import __version__
from .backoff import PollPolicy, RetryPolicy
from .config import DEFAULT_CONFIG_PATH, TransferSettings, load_credentials, load_settings, setup_logging
from .devnet import LocalNetwork
from .encoding import format_amount
from .errors import InterchainError
from .keychain import KeyChain
from .rpc_client import AvalancheRPCClient
from .transaction_history import TransferHistoryDB
from .transfer_engine import InterchainTransferEngine, TransferContext, TransferRequest, graceful_shutdown

CHAIN_ALIASES = ("X", "P", "C")
DEVNET_FUNDING = 10_000_000_000  # 10 AVAX
DEVNET_POLICY = PollPolicy(interval_seconds=0.05, backoff=1.0, max_interval_seconds=0.05,
                           max_attempts=50, timeout_seconds=10.0)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130


def build_keychains(private_key: Optional[str], aliases: Iterable[str] = CHAIN_ALIASES) -> Dict[str, KeyChain]:
    """One keychain per chain alias holding the same key (a new one if none is given)."""
    keychains = {alias: KeyChain(alias) for alias in aliases}
    if private_key is None:
        private_key = next(iter(keychains.values())).generate_key().private_key_string()
    for keychain in keychains.values():
        keychain.import_key(private_key)
    return keychains


def _create_devnet(keychains: Dict[str, KeyChain], settings: TransferSettings) -> LocalNetwork:
    network = LocalNetwork(aliases=tuple(keychains), tx_fee=settings.fallback_tx_fee)
    address = keychains[settings.source_chain].get_address_strings()[0]
    network.fund(settings.source_chain, address, DEVNET_FUNDING)
    logger.info(f"Devnet: funded {address} with {format_amount(DEVNET_FUNDING)} AVAX")
    return network


def create_engine(settings: TransferSettings, devnet: bool = False,
                  confirm_export: bool = True) -> InterchainTransferEngine:
    """Wire client, keys and history DB from settings."""
    private_key = None
    if not devnet or Path(settings.credentials_path).exists():
        private_key = load_credentials(settings.credentials_path)
    aliases = tuple(dict.fromkeys(CHAIN_ALIASES + (settings.source_chain, settings.destination_chain)))
    keychains = build_keychains(private_key, aliases)

    if devnet:
        client = _create_devnet(keychains, settings)
        status_policy = propagation_policy = DEVNET_POLICY
        retry_policy = RetryPolicy(delay_seconds=0.0)
    else:
        client = AvalancheRPCClient(settings.network.node_url, settings.network.request_timeout_seconds)
        status_policy = settings.status_policy
        propagation_policy = settings.propagation_policy
        retry_policy = settings.retry_policy

    history = TransferHistoryDB(settings.history_db) if settings.history_db else None
    return InterchainTransferEngine(TransferContext(
        client=client,
        keychains=keychains,
        status_policy=status_policy,
        propagation_policy=propagation_policy,
        retry_policy=retry_policy,
        fallback_fees={alias: settings.fallback_tx_fee for alias in aliases},
        confirm_export=confirm_export,
        history=history,
    ))


def _print_json(data: Dict):
    print(json.dumps(data, indent=2, default=str))


async def cmd_transfer(engine: InterchainTransferEngine, args, settings: TransferSettings) -> int:
    request = TransferRequest(
        amount=args.amount,
        asset=args.asset or settings.asset,
        source_chain=args.source or settings.source_chain,
        destination_chain=args.destination or settings.destination_chain,
        to_address=args.to_address,
        memo=args.memo,
        request_id=args.request_id,
    )
    result = await engine.transfer(request)
    _print_json(result.to_dict())
    return EXIT_OK if result.success else EXIT_FAILURE


async def cmd_resume(engine: InterchainTransferEngine, args, settings: TransferSettings) -> int:
    if args.export_tx:
        if args.amount is None:
            logger.error("✗ --amount is required with --export-tx")
            return EXIT_FAILURE
        request = TransferRequest(
            amount=args.amount,
            asset=args.asset or settings.asset,
            source_chain=args.source or settings.source_chain,
            destination_chain=args.destination or settings.destination_chain,
            to_address=args.to_address,
            request_id=args.request_id,
        )
        result = await engine.resume(request, args.export_tx)
    elif args.request_id:
        result = await engine.resume_from_history(args.request_id)
    else:
        logger.error("✗ Give a REQUEST_ID or --export-tx")
        return EXIT_FAILURE
    _print_json(result.to_dict())
    return EXIT_OK if result.success else EXIT_FAILURE


async def cmd_send(engine: InterchainTransferEngine, args, settings: TransferSettings) -> int:
    result = await engine.send(
        chain=args.chain or settings.source_chain,
        amount=args.amount,
        to_address=args.to_address,
        asset=args.asset or settings.asset,
        memo=args.memo,
    )
    _print_json({
        'chain': result.chain,
        'tx_id': result.tx_id,
        'status': result.status.value,
        'amount': result.amount,
        'fee': result.fee,
        'balance_before': result.balance_before,
        'balance_after': result.balance_after,
    })
    return EXIT_OK


async def cmd_query(engine: InterchainTransferEngine, args, settings: TransferSettings) -> int:
    client = engine.client
    report = {'chains': {}}
    for alias in CHAIN_ALIASES:
        report['chains'][alias] = await client.get_blockchain_id(alias)

    chain = settings.source_chain
    fees = await client.get_tx_fee(chain)
    asset_id = await engine.assets.resolve(chain, settings.asset)
    address = engine.keychain(chain).get_address_strings()[0]
    balance = await client.get_balance(chain, address, asset_id)

    report.update({
        'tx_fee': fees.tx_fee,
        'create_asset_tx_fee': fees.create_asset_tx_fee,
        'address': address,
        'asset_id': asset_id,
        'balance': balance,
        'balance_display': f"{format_amount(balance)} {settings.asset}",
    })
    _print_json(report)
    return EXIT_OK


async def cmd_history(engine: InterchainTransferEngine, args, settings: TransferSettings) -> int:
    if engine.history is None:
        logger.error("✗ history_db is not configured")
        return EXIT_FAILURE
    _print_json({
        'statistics': engine.history.get_statistics(),
        'resumable': [record.to_dict() for record in engine.history.get_resumable_transfers()],
    })
    return EXIT_OK


COMMANDS = {
    'transfer': cmd_transfer,
    'resume': cmd_resume,
    'send': cmd_send,
    'query': cmd_query,
    'history': cmd_history,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="interchain-transfer",
        description="Cross-chain export/import transfers",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-c", "--config", default=DEFAULT_CONFIG_PATH, help="YAML config path")
    parser.add_argument("--devnet", action="store_true", help="Run against an in-process network")
    parser.add_argument("--log-level", help="Override logging.level from config")
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_route_args(sub):
        sub.add_argument("--asset", help="Asset symbol (default from config)")
        sub.add_argument("--from", dest="source", help="Source chain alias")
        sub.add_argument("--to", dest="destination", help="Destination chain alias")
        sub.add_argument("--to-address", help="Recipient on the destination chain")

    transfer = subparsers.add_parser("transfer", help="Export and import an amount")
    transfer.add_argument("--amount", type=int, required=True, help="Amount in the smallest unit")
    add_route_args(transfer)
    transfer.add_argument("--memo")
    transfer.add_argument("--request-id")
    transfer.add_argument("--no-confirm-export", action="store_true",
                          help="Skip waiting for export acceptance before polling the destination")

    resume = subparsers.add_parser("resume", help="Finish the import of an exported transfer")
    resume.add_argument("request_id", nargs="?", help="Recorded request ID")
    resume.add_argument("--export-tx", help="Export TxID, when no history record exists")
    resume.add_argument("--amount", type=int, help="Original amount (with --export-tx)")
    add_route_args(resume)

    send = subparsers.add_parser("send", help="Same-chain transfer")
    send.add_argument("--amount", type=int, required=True)
    send.add_argument("--to-address", required=True)
    send.add_argument("--chain", help="Chain alias (default: source chain)")
    send.add_argument("--asset")
    send.add_argument("--memo")

    subparsers.add_parser("query", help="Chain IDs, fees and balance")
    subparsers.add_parser("history", help="Transfer statistics and resumable transfers")
    return parser


async def run(args) -> int:
    settings = load_settings(args.config)
    setup_logging(args.log_level or settings.logging.level, settings.logging.file)

    engine = create_engine(settings, devnet=args.devnet,
                           confirm_export=not getattr(args, 'no_confirm_export', False))
    try:
        return await COMMANDS[args.command](engine, args, settings)
    except (InterchainError, ValueError) as e:
        logger.error(f"✗ {type(e).__name__}: {e}")
        return EXIT_FAILURE
    finally:
        await graceful_shutdown(engine)


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return asyncio.run(run(args))
    except InterchainError as e:
        logger.error(f"✗ {e}")
        return EXIT_FAILURE
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    sys.exit(main())
