import asyncio

import pytest
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import ContractLogicError

from execution.errors import Unauthorized
from ledger.client import ERROR, MINED
from ledger.contracts import (
    DEFAULT_CDP_TYPES, ContractInfo, ContractRegistry, placeholder_address, to_bytes32,
)
from ledger.web3_client import (
    DS_PROXY_ABI, Web3LedgerClient, _coerce_args, _coerce_result, _find_function, _revert_message,
)

KEY = '0x' + '11' * 32

ILKS_ABI = {
    'type': 'function',
    'name': 'ilks',
    'inputs': [{'name': 'cdp', 'type': 'uint256'}],
    'outputs': [{'name': '', 'type': 'bytes32'}],
}
VAT_URNS_ABI = {
    'type': 'function',
    'name': 'urns',
    'inputs': [{'name': 'ilk', 'type': 'bytes32'}, {'name': 'urn', 'type': 'address'}],
    'outputs': [{'name': 'ink', 'type': 'uint256'}, {'name': 'art', 'type': 'uint256'}],
}
FREE_ETH_ABI = {
    'type': 'function',
    'name': 'freeETH',
    'stateMutability': 'nonpayable',
    'inputs': [
        {'name': 'manager', 'type': 'address'},
        {'name': 'ethJoin', 'type': 'address'},
        {'name': 'cdp', 'type': 'uint256'},
        {'name': 'wad', 'type': 'uint256'},
    ],
    'outputs': [],
}
NEW_CDP_ABI = {
    'type': 'event',
    'name': 'NewCdp',
    'anonymous': False,
    'inputs': [
        {'name': 'usr', 'type': 'address', 'indexed': True},
        {'name': 'own', 'type': 'address', 'indexed': True},
        {'name': 'cdp', 'type': 'uint256', 'indexed': True},
    ],
}

ACTIONS = placeholder_address('PROXY_ACTIONS')
CDP_MANAGER = placeholder_address('CDP_MANAGER')
VAT = placeholder_address('MCD_VAT')
JOIN = placeholder_address('MCD_JOIN_ETH_A')
PROXY = placeholder_address('proxy')

# ABI encoding and log decoding only; nothing here talks to a node.
CODEC = Web3()


# ── Stand-in Node ────────────────────────────────────────────────────
class StubCall:

    def __init__(self, contract, name, args):
        self.contract = contract
        self.name = name
        self.args = args

    async def build_transaction(self, params):
        eth = self.contract.eth
        await asyncio.sleep(0)
        if eth.build_error:
            raise ContractLogicError(eth.build_error)
        tx = {
            'to': self.contract.address,
            'data': self.contract.encode_abi(self.name, args=list(self.args)),
            'value': params['value'],
            'nonce': params['nonce'],
            'gas': 300_000,
            'gasPrice': 10 ** 9,
            'chainId': 1,
        }
        eth.built.append((params, tx))
        return tx

    async def call(self, params):
        return self.contract.eth.call_results[self.name]


class StubFunctions:

    def __init__(self, contract):
        self._contract = contract

    def __getattr__(self, name):
        return lambda *args: StubCall(self._contract, name, args)


class StubContract:
    """Real ABI codec; transactions and calls go to the StubEth."""

    def __init__(self, eth, address, abi):
        self.eth = eth
        self._codec = CODEC.eth.contract(address=address, abi=abi)
        self.address = self._codec.address
        self.abi = self._codec.abi
        self.events = self._codec.events
        self.functions = StubFunctions(self)

    def encode_abi(self, name, args=None):
        return self._codec.encode_abi(name, args=args)


class StubEth:

    def __init__(self):
        self.built = []
        self.sent = []
        self.replayed = []
        self.build_error = None
        self.replay_error = None
        self.receipt = None
        self.call_results = {}

    def contract(self, address=None, abi=None):
        return StubContract(self, address, abi)

    async def get_transaction_count(self, account, block_identifier):
        await asyncio.sleep(0)
        return len(self.sent)

    async def send_raw_transaction(self, raw):
        self.sent.append(bytes(raw))
        return Web3.keccak(raw)

    async def wait_for_transaction_receipt(self, tx_hash, timeout):
        return self.receipt

    async def get_transaction(self, tx_hash):
        return {'from': 'me', 'to': PROXY, 'input': '0xdeadbeef', 'value': 0}

    async def call(self, tx, block):
        self.replayed.append((tx, block))
        if self.replay_error:
            raise ContractLogicError(self.replay_error)
        return b''


class StubW3:
    to_hex = staticmethod(Web3.to_hex)

    def __init__(self):
        self.eth = StubEth()
        self.provider = None


@pytest.fixture
def abi_registry():
    contracts = {
        'PROXY_ACTIONS': ContractInfo('PROXY_ACTIONS', ACTIONS, [FREE_ETH_ABI]),
        'CDP_MANAGER':   ContractInfo('CDP_MANAGER', CDP_MANAGER, [ILKS_ABI, NEW_CDP_ABI]),
        'MCD_VAT':       ContractInfo('MCD_VAT', VAT),
    }
    return ContractRegistry(contracts, DEFAULT_CDP_TYPES)


@pytest.fixture
def w3():
    return StubW3()


@pytest.fixture
def client(abi_registry, w3):
    return Web3LedgerClient(abi_registry, 'http://127.0.0.1:8545', KEY, w3=w3)


def _topic(value: bytes) -> HexBytes:
    return HexBytes(value.rjust(32, b'\0'))


def _log(address, topics):
    return {
        'address': address,
        'topics': topics,
        'data': HexBytes(b''),
        'logIndex': 0,
        'transactionIndex': 0,
        'transactionHash': HexBytes(b'\x01' * 32),
        'blockHash': HexBytes(b'\x02' * 32),
        'blockNumber': 9,
    }


# ── ABI Helpers ──────────────────────────────────────────────────────
def test_find_function_matches_arity():
    abi = [ILKS_ABI, VAT_URNS_ABI, {'type': 'event', 'name': 'urns', 'inputs': []}]
    assert _find_function(abi, 'urns', 2) is VAT_URNS_ABI
    with pytest.raises(ValueError):
        _find_function(abi, 'urns', 1)


def test_coerce_args_pads_ilks_and_checksums_addresses():
    urn = '0x' + 'ab' * 20
    ilk, address = _coerce_args(VAT_URNS_ABI, ('ETH-A', urn))
    assert ilk == to_bytes32('ETH-A')
    assert address.lower() == urn
    assert address != urn


def test_coerce_result_decodes_bytes32():
    assert _coerce_result(ILKS_ABI, to_bytes32('GNT-A')) == 'GNT-A'
    assert _coerce_result(VAT_URNS_ABI, [5, 7]) == (5, 7)


def test_revert_message():
    assert _revert_message(ContractLogicError('execution reverted: cdp-not-allowed')) == 'cdp-not-allowed'
    assert _revert_message(ContractLogicError('execution reverted: ')) == 'reverted'


def test_client_needs_abis(registry):
    client = Web3LedgerClient(registry, 'http://127.0.0.1:8545', KEY)
    assert client.account.startswith('0x')
    with pytest.raises(ValueError, match='No ABI'):
        asyncio.run(client.call('CDP_MANAGER', 'cdpi'))


# ── Submission ───────────────────────────────────────────────────────
def test_proxy_submit_wraps_calldata_in_execute(client, w3):
    args = (CDP_MANAGER.lower(), JOIN, 7, 10 ** 18)
    handle = asyncio.run(client.submit('PROXY_ACTIONS', 'freeETH', args, via_proxy=PROXY))

    (params, tx), = w3.eth.built
    assert params == {'from': client.account, 'nonce': 0, 'value': 0}
    assert tx['to'] == PROXY

    _, outer = CODEC.eth.contract(abi=DS_PROXY_ABI).decode_function_input(tx['data'])
    assert outer['_target'] == ACTIONS
    fn, inner = CODEC.eth.contract(abi=[FREE_ETH_ABI]).decode_function_input(outer['_data'])
    assert fn.fn_name == 'freeETH'
    assert inner == {'manager': CDP_MANAGER, 'ethJoin': JOIN, 'cdp': 7, 'wad': 10 ** 18}

    assert len(w3.eth.sent) == 1
    assert handle.tx_hash == Web3.to_hex(Web3.keccak(w3.eth.sent[0]))
    assert (handle.contract, handle.method, handle.args) == ('PROXY_ACTIONS', 'freeETH', args)
    assert (handle.sender, handle.via_proxy) == (client.account, PROXY)


def test_concurrent_submits_take_consecutive_nonces(client, w3):
    async def scenario():
        return await asyncio.gather(
            client.submit('CDP_MANAGER', 'ilks', (1,)),
            client.submit('CDP_MANAGER', 'ilks', (2,)),
        )

    first, second = asyncio.run(scenario())
    assert [params['nonce'] for params, _ in w3.eth.built] == [0, 1]
    assert first.tx_hash != second.tx_hash


def test_revert_at_gas_estimation_is_a_rejection(client, w3):
    w3.eth.build_error = 'execution reverted: cdp-not-allowed'

    with pytest.raises(Unauthorized) as exc:
        asyncio.run(client.submit('PROXY_ACTIONS', 'freeETH', (CDP_MANAGER, JOIN, 7, 1), via_proxy=PROXY))
    assert exc.value.reason == 'cdp-not-allowed'
    assert exc.value.step is None
    assert w3.eth.sent == []


# ── Receipts ─────────────────────────────────────────────────────────
def test_reverted_receipt_recovers_reason(client, w3):
    w3.eth.receipt = {'status': 0, 'blockNumber': 12, 'logs': []}
    w3.eth.replay_error = 'execution reverted: cdp-not-allowed'

    async def scenario():
        handle = await client.submit('PROXY_ACTIONS', 'freeETH', (CDP_MANAGER, JOIN, 7, 1), via_proxy=PROXY)
        return handle, await client.wait_for_confirmation(handle)

    handle, outcome = asyncio.run(scenario())
    assert (outcome.status, outcome.reason) == (ERROR, 'cdp-not-allowed')
    assert (outcome.tx_hash, outcome.block_number) == (handle.tx_hash, 12)
    (replayed, block), = w3.eth.replayed
    assert block == 11
    assert replayed['data'] == '0xdeadbeef'


def test_reverted_receipt_without_message(client, w3):
    w3.eth.receipt = {'status': 0, 'blockNumber': 3, 'logs': []}

    async def scenario():
        handle = await client.submit('CDP_MANAGER', 'ilks', (1,))
        return await client.wait_for_confirmation(handle)

    assert asyncio.run(scenario()).reason == 'reverted'


def test_mined_receipt_decodes_known_events(client, w3):
    new_cdp = [
        Web3.keccak(text='NewCdp(address,address,uint256)'),
        _topic(bytes.fromhex(client.account[2:])),
        _topic(bytes.fromhex(PROXY[2:])),
        _topic((7).to_bytes(32, 'big')),
    ]
    w3.eth.receipt = {'status': 1, 'blockNumber': 9, 'logs': [
        _log(placeholder_address('elsewhere'), new_cdp),
        _log(VAT, new_cdp),
        _log(CDP_MANAGER.lower(), new_cdp),
    ]}

    async def scenario():
        handle = await client.submit('CDP_MANAGER', 'ilks', (1,))
        return await client.wait_for_confirmation(handle)

    outcome = asyncio.run(scenario())
    assert (outcome.status, outcome.block_number) == (MINED, 9)
    assert outcome.events == [{
        'event': 'NewCdp',
        'contract': 'CDP_MANAGER',
        'args': {'usr': client.account, 'own': PROXY, 'cdp': 7},
    }]
    assert outcome.find_event('NewCdp')['args']['cdp'] == 7


def test_call_decodes_bytes32_result(client, w3):
    w3.eth.call_results['ilks'] = to_bytes32('ETH-A')
    assert asyncio.run(client.call('CDP_MANAGER', 'ilks', (1,))) == 'ETH-A'
