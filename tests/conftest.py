import pytest

from execution.cdp_manager import CdpManager
from ledger.contracts import ContractRegistry
from ledger.paper import PaperLedger


@pytest.fixture
def registry():
    return ContractRegistry.default()


@pytest.fixture
def ledger(registry):
    return PaperLedger(registry)


@pytest.fixture
def manager(ledger, registry):
    return CdpManager(ledger, registry)


class Recorder:
    """Collects (label, state) pairs from a tracker listener."""

    def __init__(self):
        self.calls = []

    def __call__(self, step, state):
        self.calls.append((step.label if step is not None else None, state))

    @property
    def labels(self):
        return [f'{label} {state}' for label, state in self.calls]


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def make_recorder():
    return Recorder
