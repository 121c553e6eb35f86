import asyncio

import pytest

from execution.errors import LedgerRejected, rejection_for
from execution.transaction_tracker import TransactionTracker
from ledger.contracts import placeholder_address
from ledger.currency import WAD
from monitoring import tx_journal


def test_journal_records_every_step(ledger, tmp_path):
    path = str(tmp_path / 'journal' / 'tx.csv')
    tracker = TransactionTracker(ledger)

    async def workflow(handle):
        await tracker.execute(handle, 'PROXY_REGISTRY', 'build')
        await tracker.execute(handle, 'REP', 'transfer', (placeholder_address('x'), WAD), ilk='REP-A')

    async def scenario():
        handle = tracker.run('build and pay', workflow)
        tracker.listen(handle, tx_journal.journal_listener(handle.label, path))
        await handle

    asyncio.run(scenario())
    df = tx_journal.load_journal(path)
    assert list(df.columns) == tx_journal.JOURNAL_COLUMNS
    assert list(df['method']) == ['build', 'transfer']
    assert list(df['state']) == ['mined', 'mined']
    assert list(df['ilk']) == ['', 'REP-A']
    assert set(df['unit']) == {'build and pay'}
    assert all(df['block'] != '')


def test_journal_records_reverts(ledger, tmp_path):
    path = str(tmp_path / 'tx.csv')
    tracker = TransactionTracker(ledger)

    async def workflow(handle):
        await tracker.execute(handle, 'REP', 'transfer', (placeholder_address('x'), 10 ** 6 * WAD))

    async def scenario():
        handle = tracker.run('overdraw', workflow)
        tracker.listen(handle, tx_journal.journal_listener(handle.label, path))
        with pytest.raises(LedgerRejected):
            await handle

    asyncio.run(scenario())
    row = tx_journal.load_journal(path).iloc[0]
    assert row['state'] == 'error'
    assert row['reason'] == 'ds-token-insufficient-balance'


def test_journal_records_steps_refused_before_broadcast(ledger, tmp_path, monkeypatch):
    path = str(tmp_path / 'tx.csv')
    tracker = TransactionTracker(ledger)

    async def refuse(contract, method, args=(), value=0, via_proxy=None):
        raise rejection_for(None, 'cdp-not-allowed')

    async def workflow(handle):
        await tracker.execute(handle, 'REP', 'transfer', (placeholder_address('x'), WAD), ilk='REP-A')

    async def scenario():
        monkeypatch.setattr(ledger, 'submit', refuse)
        handle = tracker.run('refused', workflow)
        tracker.listen(handle, tx_journal.journal_listener(handle.label, path))
        with pytest.raises(LedgerRejected):
            await handle

    asyncio.run(scenario())
    df = tx_journal.load_journal(path)
    assert len(df) == 1
    row = df.iloc[0]
    assert (row['tx_hash'], row['method'], row['ilk']) == ('', 'transfer', 'REP-A')
    assert (row['state'], row['reason']) == ('error', 'cdp-not-allowed')
    assert row['settled_at'] != ''


def test_summarize(ledger, tmp_path):
    path = str(tmp_path / 'tx.csv')
    tracker = TransactionTracker(ledger)

    async def workflow(handle):
        await tracker.execute(handle, 'PROXY_REGISTRY', 'build')
        await tracker.execute(handle, 'PROXY_REGISTRY', 'build')

    async def scenario():
        handle = tracker.run('build twice', workflow)
        tracker.listen(handle, tx_journal.journal_listener(handle.label, path))
        with pytest.raises(LedgerRejected):
            await handle

    asyncio.run(scenario())
    table = tx_journal.summarize(path)
    assert list(table.columns) == ['action', 'pending', 'mined', 'error']
    row = table.iloc[0]
    assert row['action'] == 'PROXY_REGISTRY.build'
    assert (row['mined'], row['error'], row['pending']) == (1, 1, 0)


def test_summarize_missing_journal(tmp_path):
    table = tx_journal.summarize(str(tmp_path / 'none.csv'))
    assert table.empty
