"""
Bag Resolver — custodial "bags" for collateral tokens that cannot be pulled
with transferFrom (GNT). Tokens go account → bag first; the join then moves
them from the bag into the vault when collateral is locked.

Bag existence is read from the join on every call; nothing is cached, so a
bag created elsewhere is always picked up.
"""
from typing import Optional

from loguru import logger

from execution.errors import InsufficientBalance
from execution.inflight import InFlight
from execution.proxy import ProxyResolver
from execution.transaction_tracker import TransactionTracker, TxResult
from ledger.client import LedgerClient
from ledger.contracts import CdpType, CollateralKind, ContractRegistry, is_zero_address
from ledger.currency import Amount


class BagResolver:

    def __init__(
        self,
        ledger: LedgerClient,
        registry: ContractRegistry,
        tracker: TransactionTracker,
        proxies: ProxyResolver,
    ):
        self.ledger   = ledger
        self.registry = registry
        self.tracker  = tracker
        self.proxies  = proxies
        self._making  = InFlight('BAG')

    async def get_bag_address(self, proxy: str, join_contract: str) -> Optional[str]:
        """Bag of `proxy` under the given join adapter, or None. Read-only."""
        address = await self.ledger.call(join_contract, 'bags', (proxy,))
        return None if is_zero_address(address) else address

    async def ensure_bag(self, cdp_type: CdpType, handle: TxResult = None) -> str:
        """Existing bag for the current proxy, or a newly made one."""
        _require_bagged(cdp_type)
        if handle is None:
            return await self.tracker.run(
                f'ensure bag {cdp_type.ilk}', lambda h: self.ensure_bag(cdp_type, h),
            )

        proxy = await self.proxies.ensure_proxy(handle)
        bag = await self.get_bag_address(proxy, cdp_type.join_contract)
        if bag:
            return bag
        key = (proxy, cdp_type.join_contract)
        return await self._making.run(key, lambda: self._make_bag(proxy, cdp_type, handle))

    async def _make_bag(self, proxy: str, cdp_type: CdpType, handle: TxResult) -> str:
        join = cdp_type.join_contract
        logger.info(f'[BAG] No {cdp_type.currency} bag for proxy {proxy[:10]}... — creating')
        await self.tracker.execute(
            handle, 'PROXY_ACTIONS', 'makeGemBag',
            (self.registry.address(join),),
            via_proxy=proxy, ilk=cdp_type.ilk, kind=cdp_type.kind.value,
        )
        bag = await self.get_bag_address(proxy, join)
        if bag is None:
            raise RuntimeError(f'{join} reports no bag for {proxy} after makeGemBag')
        logger.info(f'[BAG] Created {bag} ({cdp_type.currency})')
        return bag

    async def transfer_to_bag(self, amount: Amount, cdp_type: CdpType, handle: TxResult = None) -> str:
        """Move `amount` of the token from the account into its bag. Returns the bag."""
        _require_bagged(cdp_type)
        if amount.symbol != cdp_type.currency:
            raise ValueError(f'Expected {cdp_type.currency}, got {amount.symbol}')
        if amount.value <= 0:
            raise ValueError(f'Bag transfer amount must be positive, got {amount}')
        if handle is None:
            return await self.tracker.run(
                f'transfer {amount} to bag', lambda h: self.transfer_to_bag(amount, cdp_type, h),
            )

        bag = await self.ensure_bag(cdp_type, handle)
        token = cdp_type.token_contract
        wad = amount.to_base_units(cdp_type.decimals)

        balance = await self.ledger.call(token, 'balanceOf', (self.ledger.account,))
        if balance < wad:
            raise InsufficientBalance(
                f'{token} balance {Amount.from_base_units(amount.symbol, balance, cdp_type.decimals)} '
                f'cannot cover {amount}'
            )

        await self.tracker.execute(handle, token, 'transfer', (bag, wad), ilk=cdp_type.ilk)
        logger.info(f'[BAG] Transferred {amount} to {bag[:10]}...')
        return bag


def _require_bagged(cdp_type: CdpType):
    if cdp_type.kind != CollateralKind.BAGGED:
        raise ValueError(f'{cdp_type.ilk} collateral does not use a bag')
