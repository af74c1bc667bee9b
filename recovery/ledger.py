"""
In-process model of the recovery claim contract.

Tracks rounds funded against one published share tree (or one tree per
token), verifies proofs, pays `share * roundTotal // WAD`, and keeps
cumulative allocations so no round can be funded with money another
round still owes. Used to rehearse a round before it is funded on chain,
and as the reference for the contract's behaviour.
"""
import threading
import time
from collections import Counter
from dataclasses import dataclass, field

from recovery.config import DEFAULT_CLAIM_WINDOW
from recovery.errors import (
    AlreadyClaimed,
    ClaimWindowClosed,
    InsufficientCustody,
    InvalidProof,
    InvalidRoot,
    OperatorError,
    PayoutExceedsAllocation,
    RootCorrectionRejected,
    RoundInactive,
    SweepRejected,
    Unauthorized,
    UnknownRound,
    WaiverRequired,
)
from recovery.merkle import ZERO_ROOT, MerkleTree, leaf_hash, to_bytes32
from recovery.shares import WAD, payout

LEDGER_ADDRESS = '0x000000000000000000000000000000000000c1a1'


class Token:
    """Minimal fungible token used for ledger custody."""

    def __init__(self, symbol, decimals=18):
        self.symbol = symbol
        self.decimals = decimals
        self.balances = Counter()
        self._lock = threading.Lock()

    def mint(self, account, amount):
        with self._lock:
            self.balances[account.lower()] += amount

    def balance_of(self, account):
        return self.balances[account.lower()]

    def transfer(self, sender, recipient, amount):
        sender, recipient = sender.lower(), recipient.lower()
        with self._lock:
            if amount < 0 or self.balances[sender] < amount:
                raise ValueError(f'{self.symbol}: transfer amount exceeds balance')
            self.balances[sender] -= amount
            self.balances[recipient] += amount


class WaiverRegistry:
    """Addresses that completed the liability acknowledgment."""

    def __init__(self, signed=()):
        self.signed = {account.lower() for account in signed}

    def acknowledge(self, account):
        self.signed.add(account.lower())

    def has_signed(self, account):
        return account.lower() in self.signed


@dataclass
class Round:
    round_id: int
    roots: dict
    totals: dict
    deadline: float
    claimed: dict = field(default_factory=dict)
    active: bool = True
    released: bool = False
    swept: bool = False
    corrected: bool = False
    claim_count: int = 0

    def remaining(self, symbol):
        return self.totals[symbol] - self.claimed[symbol]

    @property
    def fully_claimed(self):
        return all(self.claimed[s] >= self.totals[s] for s in self.totals)

    @property
    def terminal(self):
        return self.swept or self.fully_claimed


class ClaimLedger:
    def __init__(self, admin, tokens, waivers=None, layout='joint',
                 claim_window=DEFAULT_CLAIM_WINDOW, clock=time.time, address=LEDGER_ADDRESS):
        if layout not in ('joint', 'per-token'):
            raise ValueError(f'unknown layout {layout!r}')
        self.admin = admin.lower()
        self.tokens = {token.symbol: token for token in tokens}
        self.symbols = [token.symbol for token in tokens]
        self.waivers = waivers if waivers is not None else WaiverRegistry()
        self.layout = layout
        self.claim_window = claim_window
        self.clock = clock
        self.address = address
        self.rounds = {}
        self.claims = set()
        self.allocated = {symbol: 0 for symbol in self.symbols}
        self._lock = threading.Lock()

    # views

    def custody(self, symbol):
        return self.tokens[symbol].balance_of(self.address)

    def available(self, symbol):
        return self.custody(symbol) - self.allocated[symbol]

    def get_round(self, round_id):
        try:
            return self.rounds[round_id]
        except KeyError:
            raise UnknownRound('unknown round', {'round': round_id}) from None

    def is_claimed(self, round_id, account, symbol):
        return (round_id, account.lower(), symbol) in self.claims

    def claimable(self, round_id, shares, symbol=None):
        round_ = self.get_round(round_id)
        symbols = self._claim_symbols(shares, symbol)
        return {symbol: payout(share, round_.totals[symbol]) for symbol, share in zip(symbols, shares)}

    # privileged

    def _only_admin(self, sender):
        if sender.lower() != self.admin:
            raise Unauthorized('caller is not the admin', {'sender': sender})

    def _parse_roots(self, roots):
        if isinstance(roots, dict):
            parsed = {symbol: to_bytes32(roots.get(symbol, ZERO_ROOT)) for symbol in self.symbols}
            if self.layout != 'joint':
                return parsed
            nonzero = set(parsed.values()) - {ZERO_ROOT}
            if len(nonzero) > 1:
                raise InvalidRoot('joint layout takes a single root')
            roots = nonzero.pop() if nonzero else ZERO_ROOT
        if self.layout != 'joint':
            raise InvalidRoot('per-token layout takes a root per token')
        root = to_bytes32(roots)
        return {symbol: root for symbol in self.symbols}

    def _check_roots(self, roots, totals):
        if self.layout == 'joint':
            root = roots[self.symbols[0]]
            if root == ZERO_ROOT:
                raise InvalidRoot('zero root')
            if not any(totals.values()):
                raise InvalidRoot('non-zero root with nothing to distribute')
            return
        for symbol in self.symbols:
            has_root = roots[symbol] != ZERO_ROOT
            if has_root and not totals[symbol]:
                raise InvalidRoot('non-zero root with zero total', {'token': symbol})
            if totals[symbol] and not has_root:
                raise InvalidRoot('zero root with non-zero total', {'token': symbol})
        if not any(totals.values()):
            raise InvalidRoot('round distributes nothing')

    def create_round(self, roots, totals, sender):
        with self._lock:
            self._only_admin(sender)
            totals = {symbol: int(totals.get(symbol, 0)) for symbol in self.symbols}
            if any(total < 0 for total in totals.values()):
                raise InvalidRoot('negative round total')
            roots = self._parse_roots(roots)
            self._check_roots(roots, totals)
            for symbol, total in totals.items():
                if self.allocated[symbol] + total > self.custody(symbol):
                    raise InsufficientCustody('custody does not cover outstanding allocations', {
                        'token': symbol,
                        'custody': self.custody(symbol),
                        'allocated': self.allocated[symbol],
                        'requested': total,
                    })
            round_id = len(self.rounds)
            self.rounds[round_id] = Round(
                round_id=round_id,
                roots=roots,
                totals=totals,
                deadline=self.clock() + self.claim_window,
                claimed={symbol: 0 for symbol in self.symbols},
            )
            for symbol, total in totals.items():
                self.allocated[symbol] += total
            return round_id

    def correct_root(self, round_id, roots, sender):
        with self._lock:
            self._only_admin(sender)
            round_ = self.get_round(round_id)
            if round_.claim_count:
                raise RootCorrectionRejected('round already has claims', {'round': round_id})
            if round_.corrected:
                raise RootCorrectionRejected('root already corrected', {'round': round_id})
            if not round_.active:
                raise RootCorrectionRejected('round is not active', {'round': round_id})
            roots = self._parse_roots(roots)
            self._check_roots(roots, round_.totals)
            round_.roots = roots
            round_.corrected = True

    def deactivate(self, round_id, sender):
        with self._lock:
            self._only_admin(sender)
            round_ = self.get_round(round_id)
            if not round_.active:
                raise OperatorError('round is not active', {'round': round_id})
            for symbol in self.symbols:
                self.allocated[symbol] -= round_.remaining(symbol)
            round_.active = False
            round_.released = True

    def sweep(self, round_id, recipient, sender):
        with self._lock:
            self._only_admin(sender)
            round_ = self.get_round(round_id)
            if round_.swept:
                raise SweepRejected('round already swept', {'round': round_id})
            if self.clock() <= round_.deadline:
                raise SweepRejected('claim deadline has not passed', {'round': round_id, 'deadline': round_.deadline})
            swept = {}
            for symbol in self.symbols:
                amount = 0 if round_.released else round_.remaining(symbol)
                if amount:
                    self.allocated[symbol] -= amount
                    self.tokens[symbol].transfer(self.address, recipient, amount)
                swept[symbol] = amount
                round_.claimed[symbol] = round_.totals[symbol]
            round_.swept = True
            round_.active = False
            return swept

    # claims

    def _claim_symbols(self, shares, symbol=None):
        if symbol is not None:
            return [symbol]
        if len(shares) != len(self.symbols):
            raise InvalidProof('one share per token is required', {'expected': len(self.symbols), 'got': len(shares)})
        return self.symbols

    def _open_round(self, round_id, account):
        if not self.waivers.has_signed(account):
            raise WaiverRequired('liability waiver not signed', {'account': account})
        round_ = self.get_round(round_id)
        if not round_.active:
            raise RoundInactive('round is not active', {'round': round_id})
        if self.clock() > round_.deadline:
            raise ClaimWindowClosed('claim deadline has passed', {'round': round_id})
        return round_

    def _settle(self, round_, account, symbols, shares, proof):
        for symbol in symbols:
            if (round_.round_id, account, symbol) in self.claims:
                raise AlreadyClaimed('already claimed', {'round': round_.round_id, 'account': account, 'token': symbol})
        if any(share < 0 or share > WAD for share in shares):
            raise InvalidProof('share out of range')

        root = round_.roots[symbols[0]]
        if root == ZERO_ROOT or not MerkleTree.verify(proof, root, leaf_hash(account, tuple(shares))):
            raise InvalidProof('proof does not match round root', {'round': round_.round_id, 'account': account})

        payouts = {symbol: payout(share, round_.totals[symbol]) for symbol, share in zip(symbols, shares)}
        for symbol, amount in payouts.items():
            if round_.claimed[symbol] + amount > round_.totals[symbol]:
                raise PayoutExceedsAllocation('payout would exceed round total', {'round': round_.round_id, 'token': symbol})

        for symbol, amount in payouts.items():
            self.claims.add((round_.round_id, account, symbol))
            round_.claimed[symbol] += amount
            self.allocated[symbol] -= amount
            if amount:
                self.tokens[symbol].transfer(self.address, account, amount)
        round_.claim_count += 1
        return payouts

    def claim(self, round_id, account, shares, proof):
        """Claim every token of a joint-layout round at once."""
        if self.layout != 'joint':
            raise InvalidProof('ledger uses per-token trees; use claim_token')
        account = account.lower()
        shares = tuple(int(share) for share in shares)
        with self._lock:
            round_ = self._open_round(round_id, account)
            symbols = self._claim_symbols(shares)
            return self._settle(round_, account, symbols, shares, proof)

    def claim_token(self, round_id, account, symbol, share, proof):
        """Claim one token of a per-token-layout round."""
        if self.layout != 'per-token':
            raise InvalidProof('ledger uses a joint tree; use claim')
        if symbol not in self.tokens:
            raise InvalidProof('unknown token', {'token': symbol})
        account = account.lower()
        with self._lock:
            round_ = self._open_round(round_id, account)
            return self._settle(round_, account, [symbol], (int(share),), proof)
