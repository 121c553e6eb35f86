"""
CDP Manager — opens, queries and modifies CDPs through the account's proxy.

═══════════════════════════════════════════════════════════════
PURPOSE:
  Composes the proxy resolver, bag resolver and transaction tracker into
  domain workflows. Every mutating call returns a TxResult immediately;
  listeners attached with tracker.listen() see each step settle.

WORKFLOWS:
  open(ilk)                         proxy? → PROXY_ACTIONS.open
  open_lock_and_draw(ilk, c, d)     proxy? → per collateral kind:
      native  → PROXY_ACTIONS.openLockETHAndDraw   (collateral sent as value)
      token   → token.approve? → PROXY_ACTIONS.openLockGemAndDraw
      bagged  → makeGemBag? → token.transfer(bag) → PROXY_ACTIONS.openLockGNTAndDraw

POSITION INDEX:
  get_cdp_ids(proxy) walks CDP_MANAGER's ownership list once per proxy and
  keeps the result until reset(). CDPs opened afterwards, even by this
  manager, stay invisible to index-based queries (get_cdp_ids,
  get_combined_debt_value, get_combined_event_history) until reset() is
  called. Ordering within a session stays stable as a result.

USAGE:
  cdp_manager = CdpManager(ledger, registry, query_api=query_api)

  handle = cdp_manager.open_lock_and_draw('ETH-A', ETH(2), MDAI(100))
  cdp_manager.tracker.listen(handle, {'mined': on_mined})
  cdp = await handle
  await cdp.free_collateral(ETH(0.5))
═══════════════════════════════════════════════════════════════
"""
import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from loguru import logger

from execution.bags import BagResolver
from execution.errors import NotFound
from execution.inflight import InFlight
from execution.proxy import ProxyResolver
from execution.transaction_tracker import TransactionTracker, TxResult
from ledger.client import LedgerClient, Outcome
from ledger.contracts import CdpType, CollateralKind, ContractRegistry, from_bytes32
from ledger.currency import Amount, MDAI, get_currency

MAX_UINT256 = 2 ** 256 - 1
RAD_DECIMALS = 45     # art (wad) × rate (ray)


# ── Per-Kind Entry Points ────────────────────────────────────────────
@dataclass(frozen=True)
class CollateralActions:
    """PROXY_ACTIONS entry points for one collateral kind."""
    open_lock_draw: str
    lock:           str
    lock_draw:      str
    free:           str


COLLATERAL_ACTIONS = {
    CollateralKind.NATIVE: CollateralActions('openLockETHAndDraw', 'lockETH', 'lockETHAndDraw', 'freeETH'),
    CollateralKind.TOKEN:  CollateralActions('openLockGemAndDraw', 'lockGem', 'lockGemAndDraw', 'freeGem'),
    CollateralKind.BAGGED: CollateralActions('openLockGNTAndDraw', 'lockGem', 'lockGemAndDraw', 'freeGem'),
}


@dataclass(frozen=True)
class CdpRef:
    """Index entry: a CDP id and its collateral type."""
    id:  int
    ilk: str


# ── Managed CDP ──────────────────────────────────────────────────────
class ManagedCdp:
    """
    Handle on one CDP. Reads are always live; mutating methods return a
    tracked TxResult resolving to this same object.
    """

    def __init__(self, cdp_id: int, ilk: str, manager: 'CdpManager'):
        self.id = cdp_id
        self.ilk = ilk
        self.type: CdpType = manager.registry.get_cdp_type(ilk)
        self._manager = manager
        self._urn: Optional[str] = None

    @property
    def currency(self):
        return get_currency(self.type.currency)

    async def get_urn(self) -> str:
        if self._urn is None:
            self._urn = await self._manager.ledger.call('CDP_MANAGER', 'urns', (self.id,))
        return self._urn

    async def get_collateral_amount(self) -> Amount:
        ink, _ = await self._manager._read_urn(self.ilk, await self.get_urn())
        return Amount.from_base_units(self.type.currency, ink, self.type.decimals)

    async def get_debt_value(self) -> Amount:
        return await self._manager._debt_of(CdpRef(self.id, self.ilk))

    def lock_collateral(self, amount: Amount) -> TxResult:
        return self._manager._lock_and_draw(self, amount, None)

    def draw_dai(self, amount: Amount) -> TxResult:
        return self._manager._draw(self, amount)

    def lock_and_draw(self, lock: Amount = None, draw: Amount = None) -> TxResult:
        return self._manager._lock_and_draw(self, lock, draw)

    def wipe_dai(self, amount: Amount) -> TxResult:
        return self._manager._wipe(self, amount)

    def free_collateral(self, amount: Amount) -> TxResult:
        return self._manager._free(self, amount)

    def __repr__(self):
        return f'<ManagedCdp {self.id} {self.ilk}>'


# ── CDP Manager ──────────────────────────────────────────────────────
class CdpManager:

    def __init__(
        self,
        ledger: LedgerClient,
        registry: ContractRegistry,
        tracker: TransactionTracker = None,
        proxies: ProxyResolver = None,
        bags: BagResolver = None,
        query_api=None,
    ):
        self.ledger    = ledger
        self.registry  = registry
        self.tracker   = tracker or TransactionTracker(ledger)
        self.proxies   = proxies or ProxyResolver(ledger, self.tracker)
        self.bags      = bags or BagResolver(ledger, registry, self.tracker, self.proxies)
        self.query_api = query_api

        self._index: dict[str, list[CdpRef]] = {}    # proxy → refs
        self._enumerating = InFlight('CDP')
        self._generation = 0                          # bumped by reset()

    # ── Open ──────────────────────────────────────────────────────────
    def open(self, ilk: str) -> TxResult:
        """Open an empty CDP of collateral type `ilk`. Resolves to a ManagedCdp."""
        cdp_type = self.registry.get_cdp_type(ilk)
        return self.tracker.run(f'open {ilk}', lambda h: self._open(cdp_type, h))

    async def _open(self, cdp_type: CdpType, handle: TxResult) -> ManagedCdp:
        proxy = await self.proxies.ensure_proxy(handle)
        outcome = await self.tracker.execute(
            handle, 'PROXY_ACTIONS', 'open',
            (self.registry.address('CDP_MANAGER'), cdp_type.ilk, proxy),
            via_proxy=proxy, **_meta(cdp_type),
        )
        return self._opened(outcome, cdp_type)

    def open_lock_and_draw(self, ilk: str, collateral: Amount = None, debt: Amount = None) -> TxResult:
        """
        Open a CDP, lock `collateral` and draw `debt` DAI in one proxy action.
        Either amount may be omitted (treated as zero).
        """
        cdp_type = self.registry.get_cdp_type(ilk)
        wad_c = _to_wad(collateral, cdp_type.currency, cdp_type.decimals)
        wad_d = _to_wad(debt, MDAI.symbol)
        return self.tracker.run(
            f'open-lock-draw {ilk}',
            lambda h: self._open_lock_and_draw(cdp_type, collateral, wad_c, wad_d, h),
        )

    async def _open_lock_and_draw(self, cdp_type, collateral, wad_c, wad_d, handle) -> ManagedCdp:
        proxy = await self.proxies.ensure_proxy(handle)
        value, transfer_from = await self._prepare_collateral(cdp_type, collateral, wad_c, proxy, handle)
        action = COLLATERAL_ACTIONS[cdp_type.kind].open_lock_draw

        head = (
            self.registry.address('CDP_MANAGER'),
            self.registry.address('MCD_JUG'),
            self.registry.address(cdp_type.join_contract),
            self.registry.address('MCD_JOIN_DAI'),
            cdp_type.ilk,
        )
        if cdp_type.kind == CollateralKind.NATIVE:
            args = head + (wad_d,)
        elif cdp_type.kind == CollateralKind.TOKEN:
            args = head + (wad_c, wad_d, transfer_from)
        else:
            args = head + (wad_c, wad_d)

        outcome = await self.tracker.execute(
            handle, 'PROXY_ACTIONS', action, args,
            value=value, via_proxy=proxy, **_meta(cdp_type),
        )
        return self._opened(outcome, cdp_type)

    def _opened(self, outcome: Outcome, cdp_type: CdpType) -> ManagedCdp:
        event = outcome.find_event('NewCdp')
        if event is None:
            raise NotFound(f'No NewCdp event in {outcome.tx_hash}')
        cdp_id = int(event['args']['cdp'])
        logger.info(f'[CDP] Opened CDP {cdp_id} ({cdp_type.ilk})')
        return ManagedCdp(cdp_id, cdp_type.ilk, self)

    # ── Collateral Preparation ────────────────────────────────────────
    async def _prepare_collateral(self, cdp_type, amount, wad, proxy, handle) -> tuple[int, bool]:
        """
        Get `wad` of collateral ready for the proxy to lock.
        Returns (native value to send, transferFrom flag).
        """
        if cdp_type.kind == CollateralKind.NATIVE:
            return wad, False
        if wad == 0:
            return 0, True
        if cdp_type.kind == CollateralKind.TOKEN:
            await self._ensure_allowance(cdp_type, proxy, wad, handle)
            return 0, True
        await self.bags.transfer_to_bag(amount, cdp_type, handle)
        return 0, False

    async def _ensure_allowance(self, cdp_type: CdpType, proxy: str, wad: int, handle: TxResult):
        token = cdp_type.token_contract
        allowance = await self.ledger.call(token, 'allowance', (self.ledger.account, proxy))
        if allowance >= wad:
            return
        logger.info(f'[CDP] Approving proxy {proxy[:10]}... for {token}')
        await self.tracker.execute(handle, token, 'approve', (proxy, MAX_UINT256), ilk=cdp_type.ilk)

    # ── Position Index ────────────────────────────────────────────────
    async def get_cdp_ids(self, proxy: str) -> list[CdpRef]:
        """CDPs owned by `proxy`, from the index (populated on first access)."""
        if proxy in self._index:
            return list(self._index[proxy])

        generation = self._generation
        refs = await self._enumerating.run(
            (proxy, generation), lambda: self._enumerate(proxy)
        )
        if generation != self._generation:
            # reset() ran mid-walk: hand back what was read, don't cache it.
            return list(refs)
        self._index.setdefault(proxy, refs)
        return list(self._index[proxy])

    async def _enumerate(self, proxy: str) -> list[CdpRef]:
        refs, seen = [], set()
        cdp = await self.ledger.call('CDP_MANAGER', 'first', (proxy,))
        while cdp and cdp not in seen:
            seen.add(cdp)
            ilk = from_bytes32(await self.ledger.call('CDP_MANAGER', 'ilks', (cdp,)))
            refs.append(CdpRef(int(cdp), ilk))
            _, cdp = await self.ledger.call('CDP_MANAGER', 'list', (cdp,))
        logger.debug(f'[CDP] Indexed {len(refs)} CDP(s) for proxy {proxy[:10]}...')
        return refs

    def reset(self):
        """Drop the whole position index; the next query re-reads the ledger."""
        self._index.clear()
        self._generation += 1
        logger.debug('[CDP] Position index reset')

    # ── Queries ───────────────────────────────────────────────────────
    async def get_cdp(self, cdp_id: int) -> ManagedCdp:
        for refs in self._index.values():
            for ref in refs:
                if ref.id == cdp_id:
                    return ManagedCdp(ref.id, ref.ilk, self)

        ilk = from_bytes32(await self.ledger.call('CDP_MANAGER', 'ilks', (cdp_id,)))
        if not ilk:
            raise NotFound(f'CDP {cdp_id} does not exist')
        return ManagedCdp(cdp_id, ilk, self)

    async def get_combined_debt_value(self, proxy: str) -> Amount:
        refs = await self.get_cdp_ids(proxy)
        debts = await asyncio.gather(*(self._debt_of(ref) for ref in refs))
        total = MDAI(0)
        for debt in debts:
            total = total + debt
        return total

    async def get_combined_event_history(self, proxy: str) -> list[dict]:
        """
        Frob history of every indexed CDP of `proxy`, fetched in one
        query-service call and normalised per collateral symbol.
        """
        if self.query_api is None:
            raise RuntimeError('CdpManager has no query service configured')

        refs = await self.get_cdp_ids(proxy)
        if not refs:
            return []
        urns = await asyncio.gather(
            *(self.ledger.call('CDP_MANAGER', 'urns', (ref.id,)) for ref in refs)
        )
        ilks = sorted({ref.ilk for ref in refs})
        ids_by_urn = {urn.lower(): ref.id for urn, ref in zip(urns, refs)}

        raw_events = await self.query_api.get_events_for_ilks_and_owners(ilks, list(urns))
        events = [self._format_event(e, ids_by_urn) for e in raw_events]
        events.sort(key=lambda e: e['block'], reverse=True)
        return events

    def _format_event(self, raw: dict, ids_by_urn: dict) -> dict:
        ilk = from_bytes32(raw['ilk'])
        try:
            gem = self.registry.get_cdp_type(ilk).currency
        except NotFound:
            gem = ilk.split('-')[0]
        rate = Decimal(str(raw.get('rate', 1)))
        urn = raw.get('urn', '')
        return {
            'transaction_hash':     raw.get('tx_hash', ''),
            'block':                int(raw.get('block', 0)),
            'time':                 _parse_time(raw.get('timestamp')),
            'type':                 raw.get('type', 'frob'),
            'sender':               raw.get('sender', ''),
            'cdp_id':               ids_by_urn.get(urn.lower()),
            'ilk':                  ilk,
            'gem':                  gem,
            'change_in_collateral': Amount(gem, Decimal(str(raw.get('dink', 0)))),
            'change_in_dai':        MDAI(Decimal(str(raw.get('dart', 0))) * rate),
            'collateral':           Amount(gem, Decimal(str(raw.get('ink', 0)))),
            'dai':                  MDAI(Decimal(str(raw.get('art', 0))) * rate),
        }

    async def _debt_of(self, ref: CdpRef) -> Amount:
        urn = await self.ledger.call('CDP_MANAGER', 'urns', (ref.id,))
        (_, art), ilk_data = await asyncio.gather(
            self._read_urn(ref.ilk, urn),
            self.ledger.call('MCD_VAT', 'ilks', (ref.ilk,)),
        )
        rate = ilk_data[1]
        return Amount.from_base_units(MDAI.symbol, art * rate, RAD_DECIMALS)

    async def _read_urn(self, ilk: str, urn: str) -> tuple[int, int]:
        ink, art = await self.ledger.call('MCD_VAT', 'urns', (ilk, urn))
        return ink, art

    # ── ManagedCdp Operations ─────────────────────────────────────────
    def _lock_and_draw(self, cdp: ManagedCdp, lock: Optional[Amount], draw: Optional[Amount]) -> TxResult:
        cdp_type = cdp.type
        wad_c = _to_wad(lock, cdp_type.currency, cdp_type.decimals)
        wad_d = _to_wad(draw, MDAI.symbol)
        label = f'lock {lock} in CDP {cdp.id}' if not wad_d else f'lock-draw CDP {cdp.id}'
        return self.tracker.run(label, lambda h: self._run_lock_and_draw(cdp, lock, wad_c, wad_d, h))

    async def _run_lock_and_draw(self, cdp, lock, wad_c, wad_d, handle) -> ManagedCdp:
        cdp_type = cdp.type
        actions = COLLATERAL_ACTIONS[cdp_type.kind]
        proxy = await self.proxies.ensure_proxy(handle)
        value, transfer_from = await self._prepare_collateral(cdp_type, lock, wad_c, proxy, handle)

        manager = self.registry.address('CDP_MANAGER')
        join = self.registry.address(cdp_type.join_contract)
        native = cdp_type.kind == CollateralKind.NATIVE

        if wad_d:
            head = (manager, self.registry.address('MCD_JUG'), join,
                    self.registry.address('MCD_JOIN_DAI'), cdp.id)
            method = actions.lock_draw
            args = head + (wad_d,) if native else head + (wad_c, wad_d, transfer_from)
        else:
            method = actions.lock
            args = (manager, join, cdp.id) if native else (manager, join, cdp.id, wad_c, transfer_from)

        await self.tracker.execute(
            handle, 'PROXY_ACTIONS', method, args,
            value=value, via_proxy=proxy, cdp=cdp.id, **_meta(cdp_type),
        )
        return cdp

    def _draw(self, cdp: ManagedCdp, amount: Amount) -> TxResult:
        wad = _to_wad(amount, MDAI.symbol)
        return self.tracker.run(f'draw {amount} from CDP {cdp.id}', lambda h: self._proxy_action(
            cdp, 'draw', h,
            lambda: (self.registry.address('CDP_MANAGER'), self.registry.address('MCD_JUG'),
                     self.registry.address('MCD_JOIN_DAI'), cdp.id, wad),
        ))

    def _wipe(self, cdp: ManagedCdp, amount: Amount) -> TxResult:
        wad = _to_wad(amount, MDAI.symbol)
        return self.tracker.run(f'wipe {amount} on CDP {cdp.id}', lambda h: self._proxy_action(
            cdp, 'wipe', h,
            lambda: (self.registry.address('CDP_MANAGER'), self.registry.address('MCD_JOIN_DAI'),
                     cdp.id, wad),
        ))

    def _free(self, cdp: ManagedCdp, amount: Amount) -> TxResult:
        cdp_type = cdp.type
        wad = _to_wad(amount, cdp_type.currency, cdp_type.decimals)
        method = COLLATERAL_ACTIONS[cdp_type.kind].free
        return self.tracker.run(f'free {amount} from CDP {cdp.id}', lambda h: self._proxy_action(
            cdp, method, h,
            lambda: (self.registry.address('CDP_MANAGER'),
                     self.registry.address(cdp_type.join_contract), cdp.id, wad),
        ))

    async def _proxy_action(self, cdp: ManagedCdp, method: str, handle: TxResult, build_args) -> ManagedCdp:
        proxy = await self.proxies.ensure_proxy(handle)
        await self.tracker.execute(
            handle, 'PROXY_ACTIONS', method, build_args(),
            via_proxy=proxy, cdp=cdp.id, **_meta(cdp.type),
        )
        return cdp


# ── Helpers ───────────────────────────────────────────────────────────
def _meta(cdp_type: CdpType) -> dict:
    return {'ilk': cdp_type.ilk, 'kind': cdp_type.kind.value}


def _to_wad(amount: Optional[Amount], symbol: str, decimals: int = 18) -> int:
    if amount is None:
        return 0
    if not isinstance(amount, Amount):
        raise TypeError(f'Expected a {symbol} amount, got {amount!r}')
    if amount.symbol != symbol:
        raise ValueError(f'Expected {symbol}, got {amount.symbol}')
    if amount.value < 0:
        raise ValueError(f'Amount must not be negative: {amount}')
    return amount.to_base_units(decimals)


def _parse_time(value) -> Optional[datetime]:
    if value is None or value == '':
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return datetime.fromisoformat(str(value).replace('Z', '+00:00'))
