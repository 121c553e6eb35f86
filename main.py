"""
CDP Client — Command-Line Entry Point

Wires the ledger, registry, query service and CDP manager from config.py,
attaches log / journal / Telegram listeners to every tracked workflow, and
runs one command:

  python main.py open ETH-A
  python main.py open-lock-draw ETH-A --collateral 2 --debt 100
  python main.py list
  python main.py debt
  python main.py history
  python main.py free 42 0.5
  python main.py journal

With LEDGER_MODE=paper (default) everything runs against the in-memory
ledger, so commands only see state created within the same invocation.
"""
import argparse
import asyncio
import sys

from loguru import logger

from config import (
    LEDGER_MODE, RPC_URL, PRIVATE_KEY, CONTRACTS_FILE, CONFIRMATION_TIMEOUT,
    PAPER_BLOCK_TIME, PAPER_ETH_BALANCE, PAPER_GEM_BALANCE,
    QUERY_API_URL, QUERY_API_TIMEOUT, TX_JOURNAL_PATH,
    LOG_LEVEL, LOG_PATH, TELEGRAM_TOKEN, TELEGRAM_CHAT_ID,
)
from execution.cdp_manager import CdpManager
from ledger.contracts import ContractRegistry
from ledger.currency import MDAI, get_currency
from ledger.paper import PaperLedger
from ledger.query_api import QueryApi
from ledger.web3_client import Web3LedgerClient
from monitoring import tx_journal
from monitoring.telegram import TelegramNotifier


def setup_logging():
    logger.remove()
    logger.add(
        LOG_PATH,
        level=LOG_LEVEL,
        rotation='50 MB',
        retention='7 days',
        format='{time:HH:mm:ss.SSS} | {level:<7} | {message}',
    )
    logger.add(
        sys.stderr,
        level=LOG_LEVEL,
        format='{time:HH:mm:ss} | {level:<7} | {message}',
    )


# ── Wiring ────────────────────────────────────────────────────────────
def build_manager() -> CdpManager:
    registry = ContractRegistry.from_json(CONTRACTS_FILE) if CONTRACTS_FILE else ContractRegistry.default()

    if LEDGER_MODE == 'web3':
        if not PRIVATE_KEY:
            raise SystemExit('PRIVATE_KEY is required when LEDGER_MODE=web3')
        ledger = Web3LedgerClient(registry, RPC_URL, PRIVATE_KEY, CONFIRMATION_TIMEOUT)
    else:
        ledger = PaperLedger(
            registry,
            block_time=PAPER_BLOCK_TIME,
            eth_balance=PAPER_ETH_BALANCE,
            gem_balance=PAPER_GEM_BALANCE,
        )
        logger.info(f'[MAIN] Paper ledger — account {ledger.account}')

    query_api = QueryApi(QUERY_API_URL, timeout=QUERY_API_TIMEOUT)
    return CdpManager(ledger, registry, query_api=query_api)


def watch(manager: CdpManager, handle, notifier: TelegramNotifier):
    """Attach console, journal and Telegram listeners to a tracked workflow."""
    tracker = manager.tracker
    tracker.listen(handle, lambda step, state: print(
        f'  {state:<7} {step.label}' if step is not None else f'  {state}'
    ))
    tracker.listen(handle, tx_journal.journal_listener(handle.label))
    if notifier.enabled:
        tracker.listen(handle, notifier.listener(handle.label))
    return handle


# ── Commands ──────────────────────────────────────────────────────────
async def run(args) -> int:
    tx_journal.TX_JOURNAL_FILE = TX_JOURNAL_PATH
    notifier = TelegramNotifier(TELEGRAM_TOKEN, TELEGRAM_CHAT_ID)
    manager = build_manager()

    try:
        if args.command == 'open':
            cdp = await watch(manager, manager.open(args.ilk), notifier)
            print(f'Opened CDP {cdp.id} ({cdp.ilk})')

        elif args.command == 'open-lock-draw':
            cdp_type = manager.registry.get_cdp_type(args.ilk)
            collateral = get_currency(cdp_type.currency)(args.collateral)
            debt = MDAI(args.debt)
            handle = manager.open_lock_and_draw(args.ilk, collateral, debt)
            cdp = await watch(manager, handle, notifier)
            print(f'Opened CDP {cdp.id} ({cdp.ilk}) with {collateral} locked, {debt} drawn')

        elif args.command in ('list', 'debt', 'history'):
            proxy = await manager.proxies.current_proxy()
            if not proxy:
                print('No proxy for this account')
                return 0
            if args.command == 'list':
                for ref in await manager.get_cdp_ids(proxy):
                    print(f'{ref.id:>8}  {ref.ilk}')
            elif args.command == 'debt':
                print(await manager.get_combined_debt_value(proxy))
            else:
                for ev in await manager.get_combined_event_history(proxy):
                    print(f"{ev['block']:>10}  {ev['ilk']:<6} {ev['type']:<8} "
                          f"{ev['change_in_collateral']}  {ev['change_in_dai']}")

        elif args.command == 'free':
            cdp = await manager.get_cdp(args.id)
            amount = cdp.currency(args.amount)
            await watch(manager, cdp.free_collateral(amount), notifier)
            print(f'Freed {amount} from CDP {cdp.id}')

        elif args.command == 'journal':
            print(tx_journal.summarize().to_string(index=False))
    finally:
        await notifier.drain()
        await manager.ledger.close()
    return 0


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description='Manage CDPs through your DSProxy')
    sub = parser.add_subparsers(dest='command', required=True)

    p = sub.add_parser('open', help='Open an empty CDP')
    p.add_argument('ilk')

    p = sub.add_parser('open-lock-draw', help='Open a CDP, lock collateral and draw DAI')
    p.add_argument('ilk')
    p.add_argument('--collateral', default='0')
    p.add_argument('--debt', default='0')

    sub.add_parser('list', help='List CDPs owned by your proxy')
    sub.add_parser('debt', help='Total DAI debt across your CDPs')
    sub.add_parser('history', help='Event history across your CDPs')
    sub.add_parser('journal', help='Summarise the local transaction journal')

    p = sub.add_parser('free', help='Withdraw collateral from a CDP')
    p.add_argument('id', type=int)
    p.add_argument('amount')

    return parser.parse_args(argv)


def cli():
    setup_logging()
    sys.exit(asyncio.run(run(parse_args())))


if __name__ == '__main__':
    cli()
