"""
Contract Registry — symbolic names → addresses, ABIs and per-ilk metadata.

A registry instance is built once by the caller and handed to every
component that needs it (ledger clients, resolvers, the CDP manager).
Tests build a fresh one per case with `ContractRegistry.default()`.

JSON layout accepted by `ContractRegistry.from_json`:

  {
    "contracts": {"CDP_MANAGER": {"address": "0x...", "abi": "abi/DssCdpManager.json"}, ...},
    "cdp_types": [{"ilk": "ETH-A", "currency": "ETH", "kind": "native",
                   "join": "MCD_JOIN_ETH_A", "token": "ETH"}, ...]
  }
"""
import json
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from web3 import Web3

from execution.errors import NotFound

ZERO_ADDRESS = '0x' + '0' * 40


class CollateralKind(str, Enum):
    NATIVE = 'native'   # ETH, wrapped by the proxy actions
    TOKEN  = 'token'    # standard ERC-20, pulled through an allowance
    BAGGED = 'bagged'   # non-standard ERC-20, deposited into a bag first


@dataclass(frozen=True)
class ContractInfo:
    name:    str
    address: str
    abi:     Optional[list] = None


@dataclass(frozen=True)
class CdpType:
    ilk:            str
    currency:       str               # collateral symbol, e.g. 'ETH'
    kind:           CollateralKind
    join_contract:  str               # registry name of the adapter
    token_contract: str               # registry name of the token ('ETH' for native)
    decimals:       int = 18


# ── Defaults ─────────────────────────────────────────────────────────
CORE_CONTRACTS = [
    'PROXY_REGISTRY', 'PROXY_ACTIONS', 'CDP_MANAGER', 'GET_CDPS',
    'MCD_VAT', 'MCD_JUG', 'MCD_DAI', 'MCD_JOIN_DAI',
]

DEFAULT_CDP_TYPES = [
    CdpType('ETH-A', 'ETH', CollateralKind.NATIVE, 'MCD_JOIN_ETH_A', 'ETH'),
    CdpType('ETH-B', 'ETH', CollateralKind.NATIVE, 'MCD_JOIN_ETH_B', 'ETH'),
    CdpType('REP-A', 'REP', CollateralKind.TOKEN,  'MCD_JOIN_REP_A', 'REP'),
    CdpType('BAT-A', 'BAT', CollateralKind.TOKEN,  'MCD_JOIN_BAT_A', 'BAT'),
    CdpType('GNT-A', 'GNT', CollateralKind.BAGGED, 'MCD_JOIN_GNT_A', 'GNT'),
]


def placeholder_address(name: str) -> str:
    """Deterministic address derived from a contract name (paper ledger only)."""
    return Web3.to_checksum_address(Web3.keccak(text=name)[-20:])


def is_zero_address(address) -> bool:
    return not address or int(address, 16) == 0


def to_bytes32(text: str) -> bytes:
    """Right-pad an ilk identifier ('ETH-A') into a bytes32 value."""
    raw = text.encode()
    if len(raw) > 32:
        raise ValueError(f'{text!r} does not fit in bytes32')
    return raw.ljust(32, b'\0')


def from_bytes32(value) -> str:
    """Inverse of to_bytes32; also accepts 0x-prefixed hex strings."""
    if isinstance(value, str):
        if not value.startswith('0x'):
            return value
        value = bytes.fromhex(value[2:])
    return bytes(value).rstrip(b'\0').decode()


class ContractRegistry:
    """Lookup tables for contracts, tokens and collateral types."""

    def __init__(self, contracts: dict[str, ContractInfo], cdp_types: list[CdpType]):
        self._contracts = {name.upper(): info for name, info in contracts.items()}
        self._cdp_types = {t.ilk: t for t in cdp_types}

    # ── Contracts ─────────────────────────────────────────────────────
    def get_contract(self, name: str) -> ContractInfo:
        if not isinstance(name, str):
            raise TypeError(f"Expected contract name string, got '{type(name).__name__}'")
        try:
            return self._contracts[name.upper()]
        except KeyError:
            raise KeyError(f"Cannot find contract: '{name}'") from None

    def address(self, name: str) -> str:
        return self.get_contract(name).address

    def name_for_address(self, address: str) -> Optional[str]:
        target = address.lower()
        for info in self._contracts.values():
            if info.address.lower() == target:
                return info.name
        return None

    def contracts(self) -> list[ContractInfo]:
        return list(self._contracts.values())

    # ── Collateral Types ──────────────────────────────────────────────
    def get_cdp_type(self, ilk: str) -> CdpType:
        try:
            return self._cdp_types[ilk]
        except KeyError:
            raise NotFound(f'Unknown collateral type: {ilk}') from None

    def cdp_types(self) -> list[CdpType]:
        return list(self._cdp_types.values())

    # ── Builders ──────────────────────────────────────────────────────
    @classmethod
    def default(cls, cdp_types: list[CdpType] = None) -> 'ContractRegistry':
        """Registry with placeholder addresses and no ABIs, for the paper ledger."""
        cdp_types = cdp_types or DEFAULT_CDP_TYPES
        names = list(CORE_CONTRACTS)
        for t in cdp_types:
            names.append(t.join_contract)
            if t.kind != CollateralKind.NATIVE:
                names.append(t.token_contract)
        contracts = {n: ContractInfo(n, placeholder_address(n)) for n in dict.fromkeys(names)}
        return cls(contracts, cdp_types)

    @classmethod
    def from_json(cls, path) -> 'ContractRegistry':
        path = Path(path)
        raw = json.loads(path.read_text())

        contracts = {}
        for name, entry in raw.get('contracts', {}).items():
            abi = entry.get('abi')
            if isinstance(abi, str):
                abi = json.loads((path.parent / abi).read_text())
            contracts[name] = ContractInfo(
                name=name.upper(),
                address=Web3.to_checksum_address(entry['address']),
                abi=abi,
            )

        cdp_types = [
            CdpType(
                ilk=t['ilk'],
                currency=t['currency'],
                kind=CollateralKind(t.get('kind', 'token')),
                join_contract=t['join'],
                token_contract=t.get('token', t['currency']),
                decimals=int(t.get('decimals', 18)),
            )
            for t in raw.get('cdp_types', [])
        ]
        return cls(contracts, cdp_types or DEFAULT_CDP_TYPES)
