"""
Ledger Client — the narrow surface the orchestration layer depends on.

  submit(contract, method, args)   → StepHandle   (operation sent, not settled)
  wait_for_confirmation(handle)    → Outcome      (mined or reverted)
  call(contract, method, args)     → value        (read-only)

Two implementations ship with the client:
  - ledger.paper.PaperLedger          in-memory simulation (tests, dry runs)
  - ledger.web3_client.Web3LedgerClient  JSON-RPC node via web3.py
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

MINED = 'mined'
ERROR = 'error'


@dataclass
class StepHandle:
    """A submitted operation awaiting confirmation."""
    tx_hash:   str
    contract:  str
    method:    str
    args:      tuple = ()
    sender:    str = ''
    via_proxy: Optional[str] = None


@dataclass
class Outcome:
    """Settlement result of one submitted operation."""
    status:       str                       # 'mined' | 'error'
    tx_hash:      str
    block_number: int = 0
    reason:       str = ''                  # revert reason when status == 'error'
    events:       list[dict] = field(default_factory=list)  # [{'event': name, 'args': {...}}]

    @property
    def ok(self) -> bool:
        return self.status == MINED

    def find_event(self, name: str) -> Optional[dict]:
        for ev in self.events:
            if ev.get('event') == name:
                return ev
        return None


class LedgerClient(ABC):
    """Abstract ledger access. `account` is the address operations are sent from."""

    @property
    @abstractmethod
    def account(self) -> str:
        ...

    @abstractmethod
    async def submit(
        self,
        contract: str,
        method: str,
        args: tuple = (),
        value: int = 0,
        via_proxy: Optional[str] = None,
    ) -> StepHandle:
        """
        Send an operation. When `via_proxy` is set the call is executed by
        that proxy (delegatecall into `contract`) rather than by the account.
        `value` is native currency in wei.
        """

    @abstractmethod
    async def wait_for_confirmation(self, handle: StepHandle) -> Outcome:
        ...

    @abstractmethod
    async def call(self, contract: str, method: str, args: tuple = ()) -> Any:
        ...

    async def close(self):
        pass
