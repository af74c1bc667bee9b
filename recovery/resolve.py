from collections import Counter
from dataclasses import dataclass, field

from click import secho
from toolz import valfilter

from recovery.errors import DataSourceError, ResolutionIntegrityError, WrapperCycleError


@dataclass(frozen=True)
class BalanceRecord:
    address: str
    amounts: tuple


@dataclass
class Resolution:
    """
    Entitlements at one snapshot height.

    `balances` maps token symbol to a Counter of address -> amount; every
    Counter sums to the token's total supply in `totals`. `flags` lists the
    fallbacks that changed the allocation and need a human to look at them.
    """
    block: int
    symbols: list
    balances: dict = field(default_factory=dict)
    totals: dict = field(default_factory=dict)
    stats: dict = field(default_factory=dict)
    pools: list = field(default_factory=list)
    flags: list = field(default_factory=list)

    def flag(self, message):
        secho(f'  REVIEW: {message}', fg='yellow')
        self.flags.append(message)

    @property
    def records(self):
        addresses = sorted(set().union(*(self.balances[s] for s in self.symbols)))
        return [
            BalanceRecord(address, tuple(self.balances[s].get(address, 0) for s in self.symbols))
            for address in addresses
        ]


def holder_balances(reader, token, block):
    """Nonzero balances of everyone who ever received `token`, in order of first receipt."""
    candidates = reader.transfer_recipients(token, block)
    balances = reader.balances_of(token, candidates, block)
    return valfilter(bool, dict(balances))


def largest_holder(entries):
    # max() keeps the first of equal values
    return max(entries, key=lambda item: item[1])[0]


def redistribute(resolved, label, amount):
    """Spread `amount` pro-rata over `resolved`; the division remainder goes to the largest holder."""
    total = sum(resolved.values())
    if total == 0:
        raise ResolutionIntegrityError('no resolved holders to redistribute onto', {'pool': label, 'amount': amount})
    entries = list(resolved.items())
    distributed = 0
    for address, balance in entries:
        share = balance * amount // total
        if share:
            resolved[address] = balance + share
            distributed += share
    dust = amount - distributed
    if dust:
        resolved[largest_holder(entries)] += dust
    print(f'  {label}: redistributed {amount} across {len(entries)} holders (dust: {dust})')


class TokenResolver:
    """Looks through the wrappers of one claim token down to the depositors."""

    def __init__(self, reader, token, wrappers, block, resolution):
        self.reader = reader
        self.token = token
        self.wrappers = [w for w in wrappers if w.token == token.symbol]
        self.by_address = {w.address: w for w in self.wrappers}
        self.block = block
        self.resolution = resolution
        self.pools = []

    def resolve(self):
        direct = holder_balances(self.reader, self.token.address, self.block)
        print(f'  {self.token.symbol}: {len(direct)} non-zero holders')

        resolved = Counter()
        for address, balance in direct.items():
            if address not in self.by_address:
                resolved[address] += balance

        for wrapper in self.wrappers:
            balance = direct.get(wrapper.address, 0)
            if not balance:
                print(f'  {wrapper.name}: no balance, skipping')
                continue
            print(f'  {wrapper.name}: resolving {balance} across depositors...')
            resolved.update(self.expand(wrapper, balance, balance, (wrapper.address,)))

        for label, amount in self.pools:
            self.resolution.pools.append({'token': self.token.symbol, 'pool': label, 'amount': amount})
            redistribute(resolved, label, amount)
        return Counter(valfilter(bool, dict(resolved)))

    def unresolvable(self, wrapper, amount, reason):
        print(f'  {wrapper.name}: {reason}, {amount} will be redistributed pro-rata')
        self.pools.append((f'{wrapper.name} ({reason})', amount))
        return Counter()

    def expand(self, wrapper, amount, held, path):
        """
        Attribute `amount` of the claim token, sitting in `wrapper` as
        `held` units of whatever the wrapper holds, to the wrapper's
        depositors. Anything that cannot be attributed is queued as a pool.
        """
        if wrapper.kind == 'opaque':
            return self.unresolvable(wrapper, amount, 'opaque queue')
        try:
            if wrapper.kind == 'fungible':
                held_by, contributions = self.expand_fungible(wrapper, amount)
            else:
                held_by, contributions = self.expand_lock_registry(wrapper, amount, held)
        except DataSourceError as e:
            self.resolution.flag(f'{wrapper.name} could not be enumerated ({e}); its balance goes to the pro-rata pool instead of its depositors')
            return self.unresolvable(wrapper, amount, 'lookup failed')
        if contributions is None:
            return Counter()

        self.resolution.stats[wrapper.name] = len(contributions)
        resolved = Counter()
        for address, value in contributions.items():
            nested = self.by_address.get(address)
            if nested is None:
                resolved[address] += value
                continue
            if address in path:
                raise WrapperCycleError('wrapper cycle', {'path': ' -> '.join(path + (address,))})
            print(f'  {wrapper.name}: depositor {nested.name} is itself a wrapper')
            resolved.update(self.expand(nested, value, held_by[address], path + (address,)))
        return resolved

    def expand_fungible(self, wrapper, amount):
        total_issued = self.reader.total_supply(wrapper.address, self.block)
        if total_issued == 0:
            self.unresolvable(wrapper, amount, 'total issued is zero')
            return None, None
        depositors = holder_balances(self.reader, wrapper.address, self.block)
        if sum(depositors.values()) > total_issued:
            raise ResolutionIntegrityError('wrapper holders exceed total issued', {'wrapper': wrapper.name})

        contributions = Counter()
        for depositor, balance in depositors.items():
            entitlement = balance * amount // total_issued
            if entitlement:
                contributions[depositor] += entitlement
        if not contributions:
            self.unresolvable(wrapper, amount, 'resolved sum is zero')
            return None, None

        dust = amount - sum(contributions.values())
        if dust >= len(depositors):
            # more than rounding: part of the supply sits with holders we never saw
            self.resolution.flag(f'{wrapper.name}: {dust} not attributable to enumerated holders')
            self.unresolvable(wrapper, dust, 'unenumerated supply')
        elif dust:
            first = next(depositor for depositor, balance in depositors.items() if balance)
            contributions[first] += dust
        print(f'  {wrapper.name}: resolved to {len(contributions)} depositors (dust: {dust})')
        return depositors, contributions

    def expand_lock_registry(self, wrapper, amount, held):
        position_ids = self.reader.minted_positions(wrapper.address, self.block)
        locked_by = Counter()
        for owner, locked in self.reader.positions(wrapper.address, position_ids, self.block).values():
            if owner is not None and locked:
                locked_by[owner] += locked

        live = sum(locked_by.values())
        if live > held:
            raise ResolutionIntegrityError(
                'locked positions exceed wrapper balance',
                {'wrapper': wrapper.name, 'locked': live, 'balance': held},
            )
        if live == 0:
            self.unresolvable(wrapper, amount, 'no live positions')
            return None, None

        contributions = Counter({owner: locked * amount // held for owner, locked in locked_by.items()})
        contributions = Counter(valfilter(bool, dict(contributions)))
        gap = amount - sum(contributions.values())
        print(f'  {wrapper.name}: resolved {len(contributions)} position owners (outside live locks: {gap})')
        if gap:
            self.unresolvable(wrapper, gap, 'outside live locks')
        return locked_by, contributions


def check_sum(symbol, balances, total):
    resolved = sum(balances.values())
    if resolved != total:
        raise ResolutionIntegrityError(
            'entitlement sum does not match total supply',
            {'token': symbol, 'sum': resolved, 'total_supply': total, 'diff': total - resolved},
        )
    secho(f'  {symbol}: sum={resolved} totalSupply={total} match=True', fg='green')


def apply_redirects(resolution, redirects):
    """Move balances of known intermediaries onto their targets; sources merge additively."""
    for redirect in redirects:
        if redirect.source == redirect.target:
            continue
        for symbol in resolution.symbols:
            balances = resolution.balances[symbol]
            amount = balances.pop(redirect.source, 0)
            if amount:
                print(f'  redirect {symbol} {amount}: {redirect.source} -> {redirect.target}')
                balances[redirect.target] += amount


def resolve(reader, block, tokens, wrappers=(), redirects=()):
    """
    Resolve every holder of `tokens` at `block`, looking through `wrappers`
    (processed in the given order, nested wrappers depth first, tokens in
    order), then apply `redirects`.

    Raises ResolutionIntegrityError unless every token's entitlements sum
    exactly to its total supply.
    """
    resolution = Resolution(block=block, symbols=[token.symbol for token in tokens])
    for token in tokens:
        print(f'resolving {token.symbol} at block {block}')
        balances = TokenResolver(reader, token, wrappers, block, resolution).resolve()
        total = reader.total_supply(token.address, block)
        check_sum(token.symbol, balances, total)
        resolution.balances[token.symbol] = balances
        resolution.totals[token.symbol] = total

    if redirects:
        print('applying redirects')
        apply_redirects(resolution, redirects)
        for symbol in resolution.symbols:
            check_sum(symbol, resolution.balances[symbol], resolution.totals[symbol])
    return resolution
