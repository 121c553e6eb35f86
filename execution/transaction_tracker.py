"""
Transaction Tracker — uniform lifecycle for multi-step on-chain operations.

═══════════════════════════════════════════════════════════════
MODEL:
  A workflow (open a CDP, lock collateral, ...) runs as one asyncio task
  behind a TxResult placeholder. Every ledger operation the workflow sends
  becomes a TxStep of that unit:

      pending ──(ledger confirms)──→ mined   → next step, or unit done
         └────(ledger rejects)───→ error   → unit aborted

  A step the ledger refuses at submission (a node rejecting gas estimation)
  was never broadcast: it goes straight to error with an empty tx_hash and
  listeners see no pending for it.

  Steps of one unit run strictly in order (per-unit lock). Units started
  by unrelated calls are independent and may interleave freely.

LISTENERS:
  tracker.listen(handle, {'pending': fn(step), 'mined': fn(step),
                          'error': fn(step, reason)})
  tracker.listen(handle, fn(step, state))

  Each listener gets every forward transition exactly once, in step order.
  Nothing is replayed to late listeners except the final 'mined' of a
  successfully settled unit.

USAGE:
  handle = tracker.run('open ETH-A', lambda h: workflow(h))
  tracker.listen(handle, handlers)
  cdp = await handle
═══════════════════════════════════════════════════════════════
"""
import asyncio
import uuid
import weakref
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from loguru import logger

from execution.errors import LedgerRejected, rejection_for
from ledger.client import LedgerClient, Outcome

PENDING = 'pending'
MINED   = 'mined'
ERROR   = 'error'


@dataclass
class TxStep:
    """One submitted ledger operation within a tracked unit."""
    index:        int
    contract:     str
    method:       str
    args:         tuple = ()
    metadata:     dict = field(default_factory=dict)
    tx_hash:      str = ''
    state:        str = PENDING
    reason:       str = ''
    block_number: int = 0

    @property
    def label(self) -> str:
        return f'{self.contract}.{self.method}'


class TxResult:
    """
    Placeholder for the value of an operation that has not settled yet.
    Returned to the caller immediately; `await handle` yields the value or
    raises the error that ended the workflow.
    """

    def __init__(self, label: str):
        self.id = uuid.uuid4().hex[:12]
        self.label = label
        self._task: Optional[asyncio.Future] = None
        self._callbacks: list[Callable] = []

    def start(self, coro) -> 'TxResult':
        if self._task is not None:
            raise RuntimeError(f'{self.label} already started')
        self._task = asyncio.ensure_future(coro)
        for cb in self._callbacks:
            self._task.add_done_callback(cb)
        self._callbacks.clear()
        return self

    def add_done_callback(self, cb: Callable):
        if self._task is None:
            self._callbacks.append(cb)
        else:
            self._task.add_done_callback(cb)

    def __await__(self):
        if self._task is None:
            raise RuntimeError(f'{self.label} was never started')
        return self._task.__await__()

    def __repr__(self):
        return f'<TxResult {self.label} {self.id}>'


@dataclass
class _Listener:
    handlers:  Any
    delivered: set = field(default_factory=set)


class TrackedTransaction:
    """Steps, listeners and terminal state of one TxResult."""

    def __init__(self, handle: TxResult):
        self.label = handle.label
        self.steps: list[TxStep] = []
        self.listeners: list[_Listener] = []
        self.failure: Optional[BaseException] = None
        self.state = PENDING
        self.lock = asyncio.Lock()

    @property
    def last_step(self) -> Optional[TxStep]:
        return self.steps[-1] if self.steps else None


class TransactionTracker:

    def __init__(self, ledger: LedgerClient):
        self.ledger = ledger
        self._units: 'weakref.WeakKeyDictionary[TxResult, TrackedTransaction]' = weakref.WeakKeyDictionary()
        self._active: dict[str, TrackedTransaction] = {}

    # ── Registration ──────────────────────────────────────────────────
    def track(self, handle: TxResult):
        """Register `handle` as an observable unit."""
        if handle in self._units:
            return
        tx = TrackedTransaction(handle)
        self._units[handle] = tx
        self._active[handle.id] = tx
        handle.add_done_callback(lambda task: self._settle(handle.id, tx, task))

    def run(self, label: str, workflow: Callable[[TxResult], Any]) -> TxResult:
        """Create, track and start a unit running `workflow(handle)`."""
        handle = TxResult(label)
        self.track(handle)
        return handle.start(workflow(handle))

    def listen(self, handle: TxResult, handlers):
        """
        Attach a listener set. `handlers` is a mapping with any of
        'pending' / 'mined' / 'error', or a callable taking (step, state).
        """
        tx = self._unit(handle)
        listener = _Listener(handlers)
        if tx.state == PENDING:
            tx.listeners.append(listener)
        elif tx.state == MINED and tx.last_step is not None:
            self._deliver(listener, tx.last_step, MINED, '')

    # ── Introspection ─────────────────────────────────────────────────
    def is_tracked(self, handle: TxResult) -> bool:
        return handle in self._units

    def steps(self, handle: TxResult) -> list[TxStep]:
        return list(self._unit(handle).steps)

    def state(self, handle: TxResult) -> str:
        return self._unit(handle).state

    @property
    def active_count(self) -> int:
        return len(self._active)

    # ── Execution ─────────────────────────────────────────────────────
    async def execute(
        self,
        handle: TxResult,
        contract: str,
        method: str,
        args: tuple = (),
        value: int = 0,
        via_proxy: Optional[str] = None,
        **metadata,
    ) -> Outcome:
        """
        Submit one step under `handle`, wait for it to settle and return
        the Outcome. Raises the mapped LedgerRejected on revert; once a
        unit has failed, later steps are refused with the same error.
        """
        tx = self._unit(handle)
        async with tx.lock:
            if tx.failure is not None:
                raise tx.failure

            step = TxStep(len(tx.steps), contract, method, tuple(args), metadata)
            tx.steps.append(step)

            try:
                submitted = await self.ledger.submit(
                    contract, method, args, value=value, via_proxy=via_proxy,
                )
            except LedgerRejected as e:
                # Never broadcast: no tx_hash, no pending notification.
                err = rejection_for(step, e.reason)
                self._fail_step(tx, step, e.reason, err)
                raise err from e
            except Exception as e:
                self._fail_step(tx, step, str(e), e)
                raise

            step.tx_hash = submitted.tx_hash
            logger.info(f'[TRACKER] {tx.label} | {step.label} pending {step.tx_hash[:10]}')
            self._notify(tx, step, PENDING)

            try:
                outcome = await self.ledger.wait_for_confirmation(submitted)
            except Exception as e:
                self._fail_step(tx, step, str(e), e)
                raise

            step.block_number = outcome.block_number
            if outcome.ok:
                step.state = MINED
                logger.info(f'[TRACKER] {tx.label} | {step.label} mined in block {outcome.block_number}')
                self._notify(tx, step, MINED)
                return outcome

            err = rejection_for(step, outcome.reason)
            self._fail_step(tx, step, outcome.reason, err)
            raise err

    def _fail_step(self, tx: TrackedTransaction, step: TxStep, reason: str, err: BaseException):
        step.state = ERROR
        step.reason = reason
        tx.failure = err
        logger.error(f'[TRACKER] {tx.label} | {step.label} failed: {reason}')
        self._notify(tx, step, ERROR, reason)

    # ── Notification ──────────────────────────────────────────────────
    def _notify(self, tx: TrackedTransaction, step: Optional[TxStep], state: str, reason: str = ''):
        for listener in list(tx.listeners):
            self._deliver(listener, step, state, reason)

    def _deliver(self, listener: _Listener, step: Optional[TxStep], state: str, reason: str):
        key = (step.index if step is not None else None, state)
        if key in listener.delivered:
            return
        listener.delivered.add(key)

        handlers = listener.handlers
        try:
            if isinstance(handlers, Mapping):
                fn = handlers.get(state)
                if fn is None:
                    return
                if state == ERROR:
                    fn(step, reason)
                else:
                    fn(step)
            else:
                handlers(step, state)
        except Exception as e:
            logger.error(f'[TRACKER] Listener failed on {state}: {e}')

    def _settle(self, handle_id: str, tx: TrackedTransaction, task: asyncio.Future):
        """Terminal bookkeeping once the workflow task finishes."""
        self._active.pop(handle_id, None)

        if task.cancelled():
            tx.state = ERROR
            logger.warning(f'[TRACKER] {tx.label} cancelled')
        elif task.exception() is not None:
            exc = task.exception()
            tx.state = ERROR
            if tx.failure is None:
                # Failed outside any step (pre-check, lookup): no step to report.
                tx.failure = exc
                self._notify(tx, None, ERROR, str(exc))
            logger.warning(f'[TRACKER] {tx.label} failed after {len(tx.steps)} step(s): {exc}')
        else:
            tx.state = MINED
            last = tx.last_step
            if last is not None:
                self._notify(tx, last, MINED)
            logger.info(f'[TRACKER] {tx.label} settled ({len(tx.steps)} step(s))')

        tx.listeners.clear()

    def _unit(self, handle: TxResult) -> TrackedTransaction:
        try:
            return self._units[handle]
        except KeyError:
            raise KeyError(f'{handle!r} is not tracked') from None
