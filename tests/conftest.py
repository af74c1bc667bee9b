from collections import defaultdict

import pytest

from recovery.config import Token, Wrapper
from recovery.errors import DataSourceError


def addr(n):
    return '0x' + format(n, '040x')


TOKEN_A = Token('stkscUSD', addr(0xa0), 6)
TOKEN_B = Token('stkscETH', addr(0xb0), 18)


def wrapper(name, n, kind, token=TOKEN_A):
    return Wrapper(name, addr(n), kind, token.symbol)


class FakeChain:
    """In-memory stand-in for ChainReader at a single height."""

    def __init__(self):
        self.balances = defaultdict(dict)
        self.supplies = {}
        self.registries = defaultdict(dict)
        self.failing = set()

    def set_balances(self, token, balances, supply=None):
        self.balances[token].update(balances)
        if supply is not None:
            self.supplies[token] = supply

    def add_position(self, registry, position_id, owner, locked):
        self.registries[registry][position_id] = (owner, locked)

    def _check(self, address):
        if address in self.failing:
            raise DataSourceError('lookup failed', {'address': address})

    def transfer_recipients(self, token, block):
        self._check(token)
        return list(self.balances[token])

    def balances_of(self, token, accounts, block):
        self._check(token)
        return {account: self.balances[token].get(account, 0) for account in accounts}

    def total_supply(self, token, block):
        self._check(token)
        return self.supplies.get(token, sum(self.balances[token].values()))

    def minted_positions(self, registry, block):
        self._check(registry)
        return list(self.registries[registry])

    def positions(self, registry, position_ids, block):
        self._check(registry)
        return {position_id: self.registries[registry][position_id] for position_id in position_ids}


class Clock:
    def __init__(self, now=1_700_000_000):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def clock():
    return Clock()
