"""
Currency amounts — immutable (symbol, Decimal) pairs.

  ETH(2)          → Amount('ETH', Decimal('2'))
  MDAI(3) + MDAI(5) == MDAI(8)
  ETH(1).to_base_units()  → 10**18

Arithmetic only works between amounts of the same symbol.
"""
from dataclasses import dataclass
from decimal import Context, Decimal

WAD = 10 ** 18
RAY = 10 ** 27

# Wide enough for rad values (45 decimals).
_CONTEXT = Context(prec=80)


@dataclass(frozen=True)
class Amount:
    symbol: str
    value:  Decimal

    def __post_init__(self):
        if not isinstance(self.value, Decimal):
            object.__setattr__(self, 'value', Decimal(str(self.value)))

    def _check(self, other: 'Amount'):
        if not isinstance(other, Amount) or other.symbol != self.symbol:
            raise TypeError(f'Cannot combine {self.symbol} with {other!r}')

    def __add__(self, other: 'Amount') -> 'Amount':
        self._check(other)
        return Amount(self.symbol, _CONTEXT.add(self.value, other.value))

    def __sub__(self, other: 'Amount') -> 'Amount':
        self._check(other)
        return Amount(self.symbol, _CONTEXT.subtract(self.value, other.value))

    def __lt__(self, other: 'Amount') -> bool:
        self._check(other)
        return self.value < other.value

    def __le__(self, other: 'Amount') -> bool:
        self._check(other)
        return self.value <= other.value

    def is_zero(self) -> bool:
        return self.value == 0

    def to_base_units(self, decimals: int = 18) -> int:
        """Integer amount in the token's smallest unit (wei for 18 decimals)."""
        return int(_CONTEXT.scaleb(self.value, decimals))

    @classmethod
    def from_base_units(cls, symbol: str, units: int, decimals: int = 18) -> 'Amount':
        return cls(symbol, _CONTEXT.scaleb(Decimal(units), -decimals))

    def __str__(self) -> str:
        return f'{_CONTEXT.normalize(self.value):f} {self.symbol}'


def currency(symbol: str):
    """Return a factory building Amounts of `symbol`."""
    def factory(value=0) -> Amount:
        return Amount(symbol, Decimal(str(value)))
    factory.symbol = symbol
    factory.__name__ = symbol
    return factory


ETH  = currency('ETH')
MDAI = currency('MDAI')
GNT  = currency('GNT')
REP  = currency('REP')
BAT  = currency('BAT')

CURRENCIES = {f.symbol: f for f in (ETH, MDAI, GNT, REP, BAT)}


def get_currency(symbol: str):
    try:
        return CURRENCIES[symbol]
    except KeyError:
        return currency(symbol)
