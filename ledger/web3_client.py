"""
Web3 Ledger Client — JSON-RPC node access through web3.py.

Signs locally with eth-account and routes proxy actions through
DSProxy.execute(target, calldata). ABIs come from the contract registry;
ilk arguments are accepted as plain strings and padded to bytes32 here,
so callers never deal with the encoding.

Docs: https://web3py.readthedocs.io/en/stable/
"""
import asyncio
from typing import Any, Optional

from eth_account import Account
from loguru import logger
from web3 import AsyncWeb3, AsyncHTTPProvider
from web3.exceptions import ContractLogicError, MismatchedABI, TimeExhausted, Web3Exception

from execution.errors import rejection_for
from ledger.client import LedgerClient, StepHandle, Outcome, MINED, ERROR
from ledger.contracts import ContractRegistry, to_bytes32, from_bytes32

DS_PROXY_ABI = [{
    'type': 'function',
    'name': 'execute',
    'stateMutability': 'payable',
    'inputs': [
        {'name': '_target', 'type': 'address'},
        {'name': '_data', 'type': 'bytes'},
    ],
    'outputs': [{'name': 'response', 'type': 'bytes32'}],
}]


class Web3LedgerClient(LedgerClient):
    """
    Ledger client for a live node. Nonces are assigned under a lock so
    concurrent workflows can submit without colliding.
    """

    def __init__(
        self,
        registry: ContractRegistry,
        rpc_url: str,
        private_key: str,
        confirmation_timeout: float = 120.0,
        w3: AsyncWeb3 = None,
    ):
        self.registry = registry
        self.w3 = w3 or AsyncWeb3(AsyncHTTPProvider(rpc_url))
        self.confirmation_timeout = confirmation_timeout
        self._signer = Account.from_key(private_key)
        self._nonce_lock = asyncio.Lock()
        logger.info(f'[LEDGER] Web3 client ready — account: {self._signer.address[:10]}...')

    @property
    def account(self) -> str:
        return self._signer.address

    # ── Contract Plumbing ─────────────────────────────────────────────
    def _contract(self, name: str, address: str = None):
        info = self.registry.get_contract(name)
        if not info.abi:
            raise ValueError(f'No ABI registered for {info.name}')
        return self.w3.eth.contract(address=address or info.address, abi=info.abi)

    def _prepare(self, name: str, method: str, args: tuple):
        contract = self._contract(name)
        fn_abi = _find_function(contract.abi, method, len(args))
        return contract, fn_abi, _coerce_args(fn_abi, args)

    # ── LedgerClient ──────────────────────────────────────────────────
    async def submit(self, contract, method, args=(), value=0, via_proxy=None) -> StepHandle:
        target, fn_abi, coerced = self._prepare(contract, method, tuple(args))
        if via_proxy:
            data = target.encode_abi(method, args=coerced)
            proxy = self.w3.eth.contract(address=via_proxy, abi=DS_PROXY_ABI)
            fn = proxy.functions.execute(target.address, data)
        else:
            fn = getattr(target.functions, method)(*coerced)

        async with self._nonce_lock:
            nonce = await self.w3.eth.get_transaction_count(self.account, 'pending')
            try:
                tx = await fn.build_transaction({
                    'from': self.account,
                    'nonce': nonce,
                    'value': int(value or 0),
                })
            except ContractLogicError as e:
                raise rejection_for(None, _revert_message(e)) from e
            signed = self._signer.sign_transaction(tx)
            tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)

        tx_hash = self.w3.to_hex(tx_hash)
        logger.debug(f'[LEDGER] Sent {contract}.{method} nonce={nonce} {tx_hash[:10]}')
        return StepHandle(
            tx_hash=tx_hash,
            contract=contract,
            method=method,
            args=tuple(args),
            sender=self.account,
            via_proxy=via_proxy,
        )

    async def wait_for_confirmation(self, handle: StepHandle) -> Outcome:
        try:
            receipt = await self.w3.eth.wait_for_transaction_receipt(
                handle.tx_hash, timeout=self.confirmation_timeout,
            )
        except TimeExhausted:
            logger.error(f'[LEDGER] {handle.tx_hash[:10]} not mined after {self.confirmation_timeout}s')
            raise

        block = receipt['blockNumber']
        if receipt['status'] == 1:
            return Outcome(MINED, handle.tx_hash, block, events=self._decode_logs(receipt))

        reason = await self._revert_reason(handle, block)
        logger.warning(f'[LEDGER] {handle.contract}.{handle.method} reverted: {reason}')
        return Outcome(ERROR, handle.tx_hash, block, reason=reason)

    async def call(self, contract, method, args=()) -> Any:
        target, fn_abi, coerced = self._prepare(contract, method, tuple(args))
        result = await getattr(target.functions, method)(*coerced).call({'from': self.account})
        return _coerce_result(fn_abi, result)

    async def close(self):
        provider = self.w3.provider
        if hasattr(provider, 'disconnect'):
            await provider.disconnect()

    # ── Receipts ──────────────────────────────────────────────────────
    async def _revert_reason(self, handle: StepHandle, block: int) -> str:
        """Replay the failed transaction as a call to recover its revert message."""
        try:
            tx = await self.w3.eth.get_transaction(handle.tx_hash)
            await self.w3.eth.call({
                'from': tx['from'],
                'to': tx['to'],
                'data': tx['input'],
                'value': tx['value'],
            }, block - 1)
        except ContractLogicError as e:
            return _revert_message(e)
        except Web3Exception as e:
            logger.debug(f'[LEDGER] Could not replay {handle.tx_hash[:10]}: {e}')
        return 'reverted'

    def _decode_logs(self, receipt) -> list[dict]:
        events = []
        for log in receipt.get('logs', []):
            name = self.registry.name_for_address(log['address'])
            if name is None or not self.registry.get_contract(name).abi:
                continue
            contract = self._contract(name)
            for entry in contract.abi:
                if entry.get('type') != 'event':
                    continue
                try:
                    decoded = getattr(contract.events, entry['name'])().process_log(log)
                except (MismatchedABI, Web3Exception, ValueError):
                    continue
                events.append({
                    'event': decoded['event'],
                    'contract': name,
                    'args': dict(decoded['args']),
                })
                break
        return events


# ── ABI Helpers ───────────────────────────────────────────────────────
def _find_function(abi: list, name: str, nargs: int) -> dict:
    for entry in abi:
        if entry.get('type') == 'function' and entry.get('name') == name \
                and len(entry.get('inputs', [])) == nargs:
            return entry
    raise ValueError(f'No function {name} with {nargs} argument(s) in ABI')


def _coerce_args(fn_abi: dict, args: tuple) -> list:
    out = []
    for param, arg in zip(fn_abi.get('inputs', []), args):
        if param['type'] == 'bytes32' and isinstance(arg, str) and not arg.startswith('0x'):
            arg = to_bytes32(arg)
        elif param['type'] == 'address' and isinstance(arg, str):
            arg = AsyncWeb3.to_checksum_address(arg)
        out.append(arg)
    return out


def _coerce_result(fn_abi: dict, result) -> Any:
    outputs = fn_abi.get('outputs', [])
    if len(outputs) == 1:
        return _decode_value(outputs[0]['type'], result)
    if isinstance(result, (list, tuple)):
        return tuple(_decode_value(o['type'], r) for o, r in zip(outputs, result))
    return result


def _decode_value(abi_type: str, value):
    if abi_type == 'bytes32' and isinstance(value, (bytes, bytearray)):
        try:
            return from_bytes32(value)
        except UnicodeDecodeError:
            return bytes(value)
    return value


def _revert_message(err: ContractLogicError) -> str:
    message = getattr(err, 'message', None) or str(err)
    return message.replace('execution reverted: ', '').strip() or 'reverted'
