import asyncio

import pytest

import main
from execution.errors import InsufficientBalance
from ledger.currency import ETH, MDAI
from monitoring import tx_journal
from monitoring.telegram import TelegramNotifier


class RecordingNotifier(TelegramNotifier):
    """Sends take a few ticks of the event loop, like a real HTTP round trip."""

    def __init__(self, delay=0.01, fail=False):
        super().__init__('token', 'chat')
        self.delay = delay
        self.fail = fail
        self.sent = []

    async def _send(self, text: str):
        await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError('telegram down')
        self.sent.append(text)


def _use_paper_cli(monkeypatch, journal):
    monkeypatch.setattr(main, 'LEDGER_MODE', 'paper')
    monkeypatch.setattr(main, 'PAPER_BLOCK_TIME', 0)
    monkeypatch.setattr(main, 'CONTRACTS_FILE', '')
    monkeypatch.setattr(main, 'TX_JOURNAL_PATH', journal)
    monkeypatch.setattr(tx_journal, 'TX_JOURNAL_FILE', tx_journal.TX_JOURNAL_FILE)


def test_telegram_listener_reports_mined_and_error(manager, ledger):
    notifier = RecordingNotifier()
    ledger.set_ilk('ETH-B', debt_ceiling=0)

    async def scenario():
        ok = manager.open('ETH-A')
        manager.tracker.listen(ok, notifier.listener(ok.label))
        await ok
        failing = manager.open_lock_and_draw('ETH-B', ETH(1), MDAI(1))
        manager.tracker.listen(failing, notifier.listener(failing.label))
        with pytest.raises(InsufficientBalance):
            await failing
        await notifier.drain()

    asyncio.run(scenario())
    assert any('PROXY_ACTIONS.open mined' in text for text in notifier.sent)
    assert any('open-lock-draw ETH-B failed' in text and 'vat/ceiling-exceeded' in text
               for text in notifier.sent)


def test_drain_waits_for_alerts_still_in_flight(manager):
    notifier = RecordingNotifier(delay=0.05)

    async def scenario():
        handle = manager.open('ETH-A')
        manager.tracker.listen(handle, notifier.listener(handle.label))
        await handle
        in_flight = notifier.pending
        await notifier.drain()
        return in_flight

    in_flight = asyncio.run(scenario())
    assert in_flight > 0
    assert notifier.pending == 0
    assert [text.split('\n')[1] for text in notifier.sent] == [
        'PROXY_REGISTRY.build mined in block <code>1</code>',
        'PROXY_ACTIONS.open mined in block <code>2</code>',
    ]


def test_drain_collects_failed_alerts(manager):
    notifier = RecordingNotifier(fail=True)

    async def scenario():
        handle = manager.open('ETH-A')
        manager.tracker.listen(handle, notifier.listener(handle.label))
        await handle
        await notifier.drain()

    asyncio.run(scenario())
    assert notifier.sent == []
    assert notifier.pending == 0


def test_disabled_notifier_sends_nothing():
    notifier = TelegramNotifier('', '')
    assert not notifier.enabled
    asyncio.run(notifier.notify_error('unit', None, 'boom'))


def test_cli_open_lock_draw_on_paper_ledger(tmp_path, monkeypatch, capsys):
    journal = str(tmp_path / 'tx.csv')
    _use_paper_cli(monkeypatch, journal)
    monkeypatch.setattr(main, 'TELEGRAM_TOKEN', '')

    args = main.parse_args(['open-lock-draw', 'ETH-A', '--collateral', '2', '--debt', '100'])
    assert asyncio.run(main.run(args)) == 0

    out = capsys.readouterr().out
    assert 'PROXY_REGISTRY.build' in out
    assert 'Opened CDP 1 (ETH-A) with 2 ETH locked, 100 MDAI drawn' in out
    assert list(tx_journal.load_journal(journal)['state']) == ['mined', 'mined']


def test_cli_delivers_alerts_before_exit(tmp_path, monkeypatch):
    notifier = RecordingNotifier(delay=0.05)
    _use_paper_cli(monkeypatch, str(tmp_path / 'tx.csv'))
    monkeypatch.setattr(main, 'TelegramNotifier', lambda token, chat_id: notifier)

    args = main.parse_args(['open-lock-draw', 'ETH-A', '--collateral', '1'])
    assert asyncio.run(main.run(args)) == 0

    assert any('PROXY_ACTIONS.openLockETHAndDraw mined' in text for text in notifier.sent)
    assert notifier.pending == 0


def test_parse_args():
    args = main.parse_args(['free', '7', '0.5'])
    assert (args.command, args.id, args.amount) == ('free', 7, '0.5')
