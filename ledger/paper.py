"""
Paper Ledger — in-memory simulation of the MCD contracts the client talks to.

Models just enough on-chain behaviour to run every workflow without a node:
  - PROXY_REGISTRY   build / proxies
  - CDP_MANAGER      cdpi / urns / ilks / owns / first / last / count / list
  - MCD_VAT          urns(ilk, urn) → (ink, art), ilks(ilk) → (Art, rate, spot, line, dust)
  - gem joins        bags(proxy)
  - ERC-20 tokens    balanceOf / allowance / transfer / approve  (incl. MCD_DAI)
  - PROXY_ACTIONS    open, openLock*AndDraw, lock*, free*, draw, wipe, makeGemBag

Operations settle one "block" (block_time seconds) after submission.
A revert rolls state back and reports the same reason strings the real
contracts use, so error mapping is exercised end to end.
"""
import asyncio
import copy
import itertools
from dataclasses import dataclass, field
from typing import Optional

from loguru import logger
from web3 import Web3

from ledger.client import LedgerClient, StepHandle, Outcome, MINED, ERROR
from ledger.contracts import ContractRegistry, CollateralKind, ZERO_ADDRESS, placeholder_address
from ledger.currency import WAD, RAY

DEFAULT_SPOT = 100 * RAY          # collateral price / liquidation ratio, per unit
DEFAULT_LINE = 1_000_000 * WAD * RAY   # debt ceiling (rad)


class _Revert(Exception):
    pass


@dataclass
class _IlkState:
    Art:  int = 0
    rate: int = RAY
    spot: int = DEFAULT_SPOT
    line: int = DEFAULT_LINE
    dust: int = 0


@dataclass
class _State:
    eth:        dict = field(default_factory=dict)   # address → wei
    balances:   dict = field(default_factory=dict)   # token → {address: wad}
    allowances: dict = field(default_factory=dict)   # token → {(owner, spender): wad}
    proxies:    dict = field(default_factory=dict)   # account → proxy
    proxy_owner: dict = field(default_factory=dict)  # proxy → account
    bags:       dict = field(default_factory=dict)   # join → {proxy: bag}
    cdpi:       int = 0
    cdp_urns:   dict = field(default_factory=dict)   # id → urn
    cdp_ilks:   dict = field(default_factory=dict)   # id → ilk
    owns:       dict = field(default_factory=dict)   # id → proxy
    links:      dict = field(default_factory=dict)   # id → [prev, next]
    first:      dict = field(default_factory=dict)   # owner → id
    last:       dict = field(default_factory=dict)   # owner → id
    count:      dict = field(default_factory=dict)   # owner → n
    urns:       dict = field(default_factory=dict)   # (ilk, urn) → [ink, art]
    ilks:       dict = field(default_factory=dict)   # ilk → _IlkState


@dataclass
class _Pending:
    handle: StepHandle
    value:  int
    outcome: Optional[Outcome] = None


class PaperLedger(LedgerClient):
    """
    Simulated ledger. Accounts are created on demand with `add_account()`
    and selected with `use_account()`; each starts with `eth_balance` ETH
    and `gem_balance` of every collateral token.
    """

    def __init__(
        self,
        registry: ContractRegistry,
        block_time: float = 0.0,
        eth_balance: float = 100,
        gem_balance: float = 1000,
    ):
        self.registry    = registry
        self.block_time  = block_time
        self.block_number = 0
        self._eth_balance = int(eth_balance * WAD)
        self._gem_balance = int(gem_balance * WAD)
        self._state      = _State()
        self._pending: dict[str, _Pending] = {}
        self._nonce      = itertools.count(1)
        self._accounts   = itertools.count(1)

        self._tokens = {'MCD_DAI'} | {
            t.token_contract for t in registry.cdp_types()
            if t.kind != CollateralKind.NATIVE
        }
        self._joins = {t.join_contract: t for t in registry.cdp_types()}
        for t in registry.cdp_types():
            self._state.ilks.setdefault(t.ilk, _IlkState())

        self._default = self.add_account()
        self._current = self._default

    # ── Accounts ──────────────────────────────────────────────────────
    @property
    def account(self) -> str:
        return self._current

    def add_account(self) -> str:
        address = placeholder_address(f'account:{next(self._accounts)}')
        self._state.eth[address] = self._eth_balance
        for token in self._tokens:
            if token != 'MCD_DAI':
                self._state.balances.setdefault(token, {})[address] = self._gem_balance
        return address

    def use_account(self, address: str = 'default'):
        if address == 'default':
            address = self._default
        if address not in self._state.eth:
            raise KeyError(f'Unknown paper account: {address}')
        self._current = address
        logger.debug(f'[LEDGER-PAPER] Using account {address[:10]}...')

    # ── Test / Setup Helpers ──────────────────────────────────────────
    def set_ilk(self, ilk: str, rate: float = None, price: float = None,
                mat: float = 1.5, debt_ceiling: float = None):
        """Adjust collateral parameters (rate multiplier, price, debt ceiling in DAI)."""
        s = self._state.ilks.setdefault(ilk, _IlkState())
        if rate is not None:
            s.rate = int(rate * RAY)
        if price is not None:
            s.spot = int(price / mat * RAY)
        if debt_ceiling is not None:
            s.line = int(debt_ceiling * WAD) * RAY

    def fund(self, address: str, token: str, wad: int):
        if token == 'ETH':
            self._state.eth[address] = self._state.eth.get(address, 0) + wad
        else:
            bal = self._state.balances.setdefault(token, {})
            bal[address] = bal.get(address, 0) + wad

    # ── LedgerClient ──────────────────────────────────────────────────
    async def submit(self, contract, method, args=(), value=0, via_proxy=None) -> StepHandle:
        nonce = next(self._nonce)
        tx_hash = Web3.to_hex(Web3.keccak(text=f'paper-tx:{nonce}'))
        handle = StepHandle(
            tx_hash=tx_hash,
            contract=contract.upper(),
            method=method,
            args=tuple(args),
            sender=self._current,
            via_proxy=via_proxy,
        )
        self._pending[tx_hash] = _Pending(handle, int(value or 0))
        logger.debug(f'[LEDGER-PAPER] Submitted {contract}.{method} {tx_hash[:10]}')
        return handle

    async def wait_for_confirmation(self, handle: StepHandle) -> Outcome:
        pending = self._pending.get(handle.tx_hash)
        if pending is None:
            raise KeyError(f'Unknown transaction {handle.tx_hash}')
        await asyncio.sleep(self.block_time)
        if pending.outcome is None:
            pending.outcome = self._apply(pending)
        return pending.outcome

    async def call(self, contract, method, args=()):
        contract = contract.upper()
        fn = self._views().get((contract, method))
        if fn is None:
            if contract in self._tokens:
                fn = self._token_views(contract).get(method)
            elif contract in self._joins and method == 'bags':
                fn = lambda proxy: self._state.bags.get(contract, {}).get(proxy, ZERO_ADDRESS)
        if fn is None:
            raise KeyError(f'Paper ledger has no view {contract}.{method}')
        return fn(*args)

    # ── Settlement ────────────────────────────────────────────────────
    def _apply(self, pending: _Pending) -> Outcome:
        handle = pending.handle
        self.block_number += 1
        snapshot = copy.deepcopy(self._state)
        try:
            events = self._execute(handle, pending.value)
        except _Revert as e:
            self._state = snapshot
            logger.debug(f'[LEDGER-PAPER] Revert {handle.contract}.{handle.method}: {e}')
            return Outcome(ERROR, handle.tx_hash, self.block_number, reason=str(e))
        return Outcome(MINED, handle.tx_hash, self.block_number, events=events or [])

    def _execute(self, handle: StepHandle, value: int) -> list:
        contract, method, args = handle.contract, handle.method, handle.args

        if handle.via_proxy:
            owner = self._state.proxy_owner.get(handle.via_proxy)
            if owner != handle.sender:
                raise _Revert('ds-auth-unauthorized')
            if contract != 'PROXY_ACTIONS':
                raise _Revert(f'proxy cannot execute {contract}')
        if value:
            self._debit_eth(handle.sender, value)

        if contract == 'PROXY_REGISTRY' and method == 'build':
            return self._build(handle.sender)
        if contract == 'PROXY_ACTIONS':
            if not handle.via_proxy:
                raise _Revert('PROXY_ACTIONS must be called through a proxy')
            fn = getattr(self, f'_pa_{method}', None)
            if fn is None:
                raise _Revert(f'unknown proxy action {method}')
            return fn(handle.via_proxy, handle.sender, value, *args)
        if contract in self._tokens:
            if method == 'transfer':
                self._move(contract, handle.sender, args[0], args[1])
                return [{'event': 'Transfer', 'args': {'src': handle.sender, 'dst': args[0], 'wad': args[1]}}]
            if method == 'approve':
                self._state.allowances.setdefault(contract, {})[(handle.sender, args[0])] = args[1]
                return [{'event': 'Approval', 'args': {'src': handle.sender, 'guy': args[0], 'wad': args[1]}}]
        raise _Revert(f'unknown method {contract}.{method}')

    # ── Views ─────────────────────────────────────────────────────────
    def _views(self) -> dict:
        s = self._state
        return {
            ('PROXY_REGISTRY', 'proxies'): lambda acct: s.proxies.get(acct, ZERO_ADDRESS),
            ('CDP_MANAGER', 'cdpi'):  lambda: s.cdpi,
            ('CDP_MANAGER', 'urns'):  lambda cdp: s.cdp_urns.get(cdp, ZERO_ADDRESS),
            ('CDP_MANAGER', 'ilks'):  lambda cdp: s.cdp_ilks.get(cdp, ''),
            ('CDP_MANAGER', 'owns'):  lambda cdp: s.owns.get(cdp, ZERO_ADDRESS),
            ('CDP_MANAGER', 'first'): lambda owner: s.first.get(owner, 0),
            ('CDP_MANAGER', 'last'):  lambda owner: s.last.get(owner, 0),
            ('CDP_MANAGER', 'count'): lambda owner: s.count.get(owner, 0),
            ('CDP_MANAGER', 'list'):  lambda cdp: tuple(s.links.get(cdp, (0, 0))),
            ('MCD_VAT', 'urns'):      lambda ilk, urn: tuple(s.urns.get((ilk, urn), (0, 0))),
            ('MCD_VAT', 'ilks'):      self._vat_ilk,
        }

    def _vat_ilk(self, ilk):
        i = self._state.ilks.get(ilk)
        if i is None:
            return (0, 0, 0, 0, 0)
        return (i.Art, i.rate, i.spot, i.line, i.dust)

    def _token_views(self, token) -> dict:
        s = self._state
        return {
            'balanceOf': lambda addr: s.balances.get(token, {}).get(addr, 0),
            'allowance': lambda owner, spender: s.allowances.get(token, {}).get((owner, spender), 0),
        }

    # ── Primitives ────────────────────────────────────────────────────
    def _debit_eth(self, address, wei):
        if self._state.eth.get(address, 0) < wei:
            raise _Revert('insufficient-balance')
        self._state.eth[address] -= wei

    def _move(self, token, src, dst, wad):
        bal = self._state.balances.setdefault(token, {})
        if bal.get(src, 0) < wad:
            raise _Revert('ds-token-insufficient-balance')
        bal[src] -= wad
        bal[dst] = bal.get(dst, 0) + wad

    def _pull(self, token, owner, spender, wad):
        allowed = self._state.allowances.get(token, {}).get((owner, spender), 0)
        if allowed < wad:
            raise _Revert('ds-token-insufficient-approval')
        self._state.allowances[token][(owner, spender)] = allowed - wad
        self._move(token, owner, spender, wad)

    def _join_name(self, address) -> str:
        name = self.registry.name_for_address(address)
        if name not in self._joins:
            raise _Revert(f'unknown join {address}')
        return name

    def _check_owner(self, proxy, cdp):
        if cdp not in self._state.owns:
            raise _Revert('cdp-not-found')
        if self._state.owns[cdp] != proxy:
            raise _Revert('cdp-not-allowed')

    def _frob(self, cdp, dink: int, dart: int):
        s = self._state
        ilk, urn = s.cdp_ilks[cdp], s.cdp_urns[cdp]
        i = s.ilks[ilk]
        ink, art = s.urns.get((ilk, urn), (0, 0))
        ink, art = ink + dink, art + dart
        if ink < 0:
            raise _Revert('vat/not-safe')
        if art < 0:
            raise _Revert('vat/dust')
        if dart > 0 and (i.Art + dart) * i.rate > i.line:
            raise _Revert('vat/ceiling-exceeded')
        if (dart > 0 or dink < 0) and art * i.rate > ink * i.spot:
            raise _Revert('vat/not-safe')
        i.Art += dart
        s.urns[(ilk, urn)] = (ink, art)

    def _draw(self, proxy, sender, cdp, wad):
        if wad <= 0:
            return
        rate = self._state.ilks[self._state.cdp_ilks[cdp]].rate
        dart = -(-wad * RAY // rate)   # round up
        self._frob(cdp, 0, dart)
        self.fund(sender, 'MCD_DAI', wad)

    # ── PROXY_REGISTRY ────────────────────────────────────────────────
    def _build(self, sender) -> list:
        s = self._state
        if sender in s.proxies:
            raise _Revert('proxy-already-exists')
        proxy = placeholder_address(f'proxy:{sender}')
        s.proxies[sender] = proxy
        s.proxy_owner[proxy] = sender
        logger.debug(f'[LEDGER-PAPER] Proxy {proxy[:10]}... built for {sender[:10]}...')
        return [{'event': 'Created', 'args': {'sender': sender, 'owner': sender, 'proxy': proxy}}]

    # ── PROXY_ACTIONS ─────────────────────────────────────────────────
    def _pa_open(self, proxy, sender, value, manager, ilk, usr):
        s = self._state
        if ilk not in s.ilks:
            raise _Revert('ilk-not-init')
        s.cdpi += 1
        cdp = s.cdpi
        s.cdp_urns[cdp] = placeholder_address(f'urn:{cdp}')
        s.cdp_ilks[cdp] = ilk
        s.owns[cdp] = usr

        if s.first.get(usr, 0) == 0:
            s.first[usr] = cdp
        prev = s.last.get(usr, 0)
        if prev:
            s.links[prev][1] = cdp
        s.links[cdp] = [prev, 0]
        s.last[usr] = cdp
        s.count[usr] = s.count.get(usr, 0) + 1
        return [{'event': 'NewCdp', 'args': {'usr': usr, 'own': usr, 'cdp': cdp}}]

    def _pa_openLockETHAndDraw(self, proxy, sender, value, manager, jug, eth_join, dai_join, ilk, wad_d):
        events = self._pa_open(proxy, sender, 0, manager, ilk, proxy)
        cdp = events[0]['args']['cdp']
        self._frob(cdp, value, 0)
        self._draw(proxy, sender, cdp, wad_d)
        return events

    def _pa_openLockGemAndDraw(self, proxy, sender, value, manager, jug, gem_join, dai_join,
                               ilk, wad_c, wad_d, transfer_from=True):
        join = self._join_name(gem_join)
        events = self._pa_open(proxy, sender, 0, manager, ilk, proxy)
        cdp = events[0]['args']['cdp']
        self._lock_gem(proxy, sender, join, cdp, wad_c, transfer_from)
        self._draw(proxy, sender, cdp, wad_d)
        return events

    def _pa_openLockGNTAndDraw(self, proxy, sender, value, manager, jug, gnt_join, dai_join,
                               ilk, wad_c, wad_d):
        join = self._join_name(gnt_join)
        events = self._pa_open(proxy, sender, 0, manager, ilk, proxy)
        cdp = events[0]['args']['cdp']
        self._lock_from_bag(proxy, join, cdp, wad_c)
        self._draw(proxy, sender, cdp, wad_d)
        return events

    def _lock_gem(self, proxy, sender, join, cdp, wad, transfer_from):
        if wad <= 0:
            return
        cdp_type = self._joins[join]
        if cdp_type.kind == CollateralKind.BAGGED or not transfer_from:
            self._lock_from_bag(proxy, join, cdp, wad)
            return
        self._pull(cdp_type.token_contract, sender, proxy, wad)
        self._move(cdp_type.token_contract, proxy, self.registry.address(join), wad)
        self._frob(cdp, wad, 0)

    def _lock_from_bag(self, proxy, join, cdp, wad):
        if wad <= 0:
            return
        bag = self._state.bags.get(join, {}).get(proxy)
        if not bag:
            raise _Revert('bag-not-found')
        token = self._joins[join].token_contract
        self._move(token, bag, self.registry.address(join), wad)
        self._frob(cdp, wad, 0)

    def _pa_lockETH(self, proxy, sender, value, manager, eth_join, cdp):
        self._check_owner(proxy, cdp)
        self._frob(cdp, value, 0)
        return [{'event': 'LogNote', 'args': {'sig': 'lockETH', 'cdp': cdp}}]

    def _pa_lockGem(self, proxy, sender, value, manager, gem_join, cdp, wad, transfer_from=True):
        self._check_owner(proxy, cdp)
        self._lock_gem(proxy, sender, self._join_name(gem_join), cdp, wad, transfer_from)
        return [{'event': 'LogNote', 'args': {'sig': 'lockGem', 'cdp': cdp}}]

    def _pa_lockETHAndDraw(self, proxy, sender, value, manager, jug, eth_join, dai_join, cdp, wad_d):
        self._check_owner(proxy, cdp)
        self._frob(cdp, value, 0)
        self._draw(proxy, sender, cdp, wad_d)
        return [{'event': 'LogNote', 'args': {'sig': 'lockETHAndDraw', 'cdp': cdp}}]

    def _pa_lockGemAndDraw(self, proxy, sender, value, manager, jug, gem_join, dai_join,
                           cdp, wad_c, wad_d, transfer_from=True):
        self._check_owner(proxy, cdp)
        self._lock_gem(proxy, sender, self._join_name(gem_join), cdp, wad_c, transfer_from)
        self._draw(proxy, sender, cdp, wad_d)
        return [{'event': 'LogNote', 'args': {'sig': 'lockGemAndDraw', 'cdp': cdp}}]

    def _pa_freeETH(self, proxy, sender, value, manager, eth_join, cdp, wad):
        self._check_owner(proxy, cdp)
        self._frob(cdp, -wad, 0)
        self.fund(sender, 'ETH', wad)
        return [{'event': 'LogNote', 'args': {'sig': 'freeETH', 'cdp': cdp}}]

    def _pa_freeGem(self, proxy, sender, value, manager, gem_join, cdp, wad):
        self._check_owner(proxy, cdp)
        join = self._join_name(gem_join)
        self._frob(cdp, -wad, 0)
        self._move(self._joins[join].token_contract, self.registry.address(join), sender, wad)
        return [{'event': 'LogNote', 'args': {'sig': 'freeGem', 'cdp': cdp}}]

    def _pa_draw(self, proxy, sender, value, manager, jug, dai_join, cdp, wad):
        self._check_owner(proxy, cdp)
        self._draw(proxy, sender, cdp, wad)
        return [{'event': 'LogNote', 'args': {'sig': 'draw', 'cdp': cdp}}]

    def _pa_wipe(self, proxy, sender, value, manager, dai_join, cdp, wad):
        self._check_owner(proxy, cdp)
        self._move('MCD_DAI', sender, self.registry.address('MCD_JOIN_DAI'), wad)
        rate = self._state.ilks[self._state.cdp_ilks[cdp]].rate
        self._frob(cdp, 0, -(wad * RAY // rate))
        return [{'event': 'LogNote', 'args': {'sig': 'wipe', 'cdp': cdp}}]

    def _pa_makeGemBag(self, proxy, sender, value, gem_join):
        join = self._join_name(gem_join)
        bags = self._state.bags.setdefault(join, {})
        if proxy in bags:
            raise _Revert('bag-already-exists')
        bag = placeholder_address(f'bag:{join}:{proxy}')
        bags[proxy] = bag
        return [{'event': 'NewBag', 'args': {'owner': proxy, 'bag': bag}}]
