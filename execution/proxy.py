"""
Proxy Resolver — finds or builds the per-account DSProxy every CDP action goes through.
"""
from typing import Optional

from loguru import logger

from execution.errors import LedgerRejected
from execution.inflight import InFlight
from execution.transaction_tracker import TransactionTracker, TxResult
from ledger.client import LedgerClient
from ledger.contracts import is_zero_address


class ProxyResolver:

    def __init__(self, ledger: LedgerClient, tracker: TransactionTracker):
        self.ledger  = ledger
        self.tracker = tracker
        self._known: dict[str, str] = {}          # account → proxy
        self._building = InFlight('PROXY')

    async def current_proxy(self, account: str = None) -> Optional[str]:
        """Proxy owned by `account` (default: the ledger's current account), or None."""
        account = account or self.ledger.account
        if account in self._known:
            return self._known[account]

        address = await self.ledger.call('PROXY_REGISTRY', 'proxies', (account,))
        if is_zero_address(address):
            return None
        self._known[account] = address
        return address

    async def ensure_proxy(self, handle: TxResult = None) -> str:
        """
        Return the current account's proxy, building it if absent. The build
        becomes a step of `handle`; concurrent callers share one build.
        """
        if handle is None:
            return await self.tracker.run('ensure proxy', self.ensure_proxy)

        account = self.ledger.account
        proxy = await self.current_proxy(account)
        if proxy:
            return proxy
        return await self._building.run(account, lambda: self._build(account, handle))

    async def _build(self, account: str, handle: TxResult) -> str:
        logger.info(f'[PROXY] No proxy for {account[:10]}... — building')
        await self.tracker.execute(handle, 'PROXY_REGISTRY', 'build')

        proxy = await self.current_proxy(account)
        if proxy is None:
            raise LedgerRejected('proxy registry has no proxy after build')
        logger.info(f'[PROXY] Built {proxy} for {account[:10]}...')
        return proxy
