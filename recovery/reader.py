import random
import time
from concurrent.futures import ThreadPoolExecutor

from tqdm import tqdm
from web3 import Web3
from web3.exceptions import BadFunctionCallOutput, ContractLogicError

from recovery.config import ZERO_ADDRESS
from recovery.errors import CallReverted, DataSourceError, RangeTooLarge

TRANSFER_TOPIC = Web3.to_hex(Web3.keccak(text='Transfer(address,address,uint256)'))
ZERO_TOPIC = '0x' + '00' * 32

ERC20_ABI = [
    {'name': 'balanceOf', 'type': 'function', 'stateMutability': 'view',
     'inputs': [{'name': 'account', 'type': 'address'}],
     'outputs': [{'name': '', 'type': 'uint256'}]},
    {'name': 'totalSupply', 'type': 'function', 'stateMutability': 'view',
     'inputs': [], 'outputs': [{'name': '', 'type': 'uint256'}]},
]

# veNFT-style registry: one ERC-721 token per lock position
LOCK_REGISTRY_ABI = [
    {'name': 'locked', 'type': 'function', 'stateMutability': 'view',
     'inputs': [{'name': 'tokenId', 'type': 'uint256'}],
     'outputs': [{'name': 'amount', 'type': 'int128'}, {'name': 'end', 'type': 'uint256'}]},
    {'name': 'ownerOf', 'type': 'function', 'stateMutability': 'view',
     'inputs': [{'name': 'tokenId', 'type': 'uint256'}],
     'outputs': [{'name': '', 'type': 'address'}]},
]

RATE_LIMIT_MARKERS = ('429', 'rate limit', 'too many requests')
RANGE_MARKERS = (
    'log response size exceeded',
    'block range',
    'range too large',
    'range is too large',
    'query returned more than',
    'result window is too large',
)


def is_rate_limited(exc):
    message = str(exc).lower()
    return any(marker in message for marker in RATE_LIMIT_MARKERS)


def is_range_too_large(exc):
    message = str(exc).lower()
    return any(marker in message for marker in RANGE_MARKERS)


def with_retry(fn, retries=5, backoff=1.0, sleep=time.sleep):
    """
    Call `fn`, backing off exponentially on failures.

    Reverts and oversized log ranges are not retried: the first is a
    property of the contract, the second is handled by splitting the range.
    """
    for attempt in range(retries + 1):
        try:
            return fn()
        except (CallReverted, RangeTooLarge):
            raise
        except (ContractLogicError, BadFunctionCallOutput) as e:
            raise CallReverted('call reverted', {'error': e}) from e
        except Exception as e:
            if is_range_too_large(e):
                raise RangeTooLarge('range too large', {'error': e}) from e
            if attempt == retries:
                raise DataSourceError('lookup failed', {'attempts': attempt + 1, 'error': e}) from e
            delay = backoff * 2 ** attempt + random.uniform(0, backoff / 2)
            reason = 'rate limited' if is_rate_limited(e) else 'error'
            print(f'  {reason}, retrying in {delay:.1f}s (attempt {attempt + 1}/{retries})')
            sleep(delay)


def scan_range(fetch, start, end):
    """Fetch [start, end], halving the range for as long as the source refuses it."""
    try:
        return fetch(start, end)
    except RangeTooLarge:
        if start >= end:
            raise
        mid = (start + end) // 2
        return scan_range(fetch, start, mid) + scan_range(fetch, mid + 1, end)


def scan_blocks(fetch, start, end, batch_size):
    items = []
    for lo in range(start, end + 1, batch_size):
        hi = min(lo + batch_size - 1, end)
        items.extend(scan_range(fetch, lo, hi))
    return items


def topic_to_address(topic):
    return '0x' + bytes(topic)[-20:].hex()


def topic_to_int(topic):
    return int.from_bytes(bytes(topic), 'big')


class ChainReader:
    """Point-in-time balances and transfer history from a JSON-RPC node."""

    def __init__(self, web3, start_block=0, batch_size=50_000, max_workers=8,
                 retries=5, backoff=1.0, sleep=time.sleep):
        self.web3 = web3
        self.start_block = start_block
        self.batch_size = batch_size
        self.max_workers = max_workers
        self.retries = retries
        self.backoff = backoff
        self.sleep = sleep

    @classmethod
    def from_config(cls, config, **kwargs):
        web3 = Web3(Web3.HTTPProvider(config.rpc, request_kwargs={'timeout': 60}))
        return cls(
            web3,
            start_block=config.start_block,
            batch_size=config.batch_size,
            max_workers=config.max_workers,
            retries=config.retries,
            backoff=config.backoff,
            **kwargs,
        )

    def _call(self, fn):
        return with_retry(fn, self.retries, self.backoff, self.sleep)

    def _contract(self, address, abi):
        return self.web3.eth.contract(Web3.to_checksum_address(address), abi=abi)

    def _logs(self, address, topics, block):
        checksum = Web3.to_checksum_address(address)

        def fetch(lo, hi):
            return list(self._call(lambda: self.web3.eth.get_logs({
                'address': checksum,
                'topics': topics,
                'fromBlock': lo,
                'toBlock': hi,
            })))

        return scan_blocks(fetch, self.start_block, block, self.batch_size)

    def transfer_recipients(self, token, block):
        """Every address that ever received `token` up to `block`, in order of first receipt."""
        recipients = dict.fromkeys(
            topic_to_address(log['topics'][2])
            for log in self._logs(token, [TRANSFER_TOPIC], block)
            if len(log['topics']) >= 3
        )
        recipients.pop(ZERO_ADDRESS, None)
        return list(recipients)

    def balance_of(self, token, account, block):
        contract = self._contract(token, ERC20_ABI)
        account = Web3.to_checksum_address(account)
        return self._call(lambda: contract.functions.balanceOf(account).call(block_identifier=block))

    def balances_of(self, token, accounts, block):
        accounts = list(accounts)
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            results = executor.map(lambda account: self.balance_of(token, account, block), accounts)
            balances = list(tqdm(results, total=len(accounts), desc='balances', leave=False))
        return dict(zip(accounts, balances))

    def total_supply(self, token, block):
        contract = self._contract(token, ERC20_ABI)
        return self._call(lambda: contract.functions.totalSupply().call(block_identifier=block))

    def minted_positions(self, registry, block):
        """Position ids in mint order. Ids are never reused after a burn."""
        ids = [
            topic_to_int(log['topics'][3])
            for log in self._logs(registry, [TRANSFER_TOPIC, ZERO_TOPIC], block)
            if len(log['topics']) == 4
        ]
        return list(dict.fromkeys(ids))

    def locked(self, registry, position_id, block):
        contract = self._contract(registry, LOCK_REGISTRY_ABI)
        amount, _end = self._call(lambda: contract.functions.locked(position_id).call(block_identifier=block))
        return max(int(amount), 0)

    def owner_of(self, registry, position_id, block):
        """Current owner, or None for a burned position."""
        contract = self._contract(registry, LOCK_REGISTRY_ABI)
        try:
            owner = self._call(lambda: contract.functions.ownerOf(position_id).call(block_identifier=block))
        except CallReverted:
            return None
        owner = owner.lower()
        if owner == ZERO_ADDRESS:
            return None
        return owner

    def position(self, registry, position_id, block):
        owner = self.owner_of(registry, position_id, block)
        if owner is None:
            return None, 0
        return owner, self.locked(registry, position_id, block)

    def positions(self, registry, position_ids, block):
        """{position_id: (owner, locked)} for every id; burned positions have owner None."""
        position_ids = list(position_ids)
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            results = executor.map(lambda position_id: self.position(registry, position_id, block), position_ids)
            positions = list(tqdm(results, total=len(position_ids), desc='positions', leave=False))
        return dict(zip(position_ids, positions))
