import pytest

from conftest import TOKEN_A, TOKEN_B, addr, wrapper
from recovery.config import Redirect
from recovery.errors import ResolutionIntegrityError, WrapperCycleError
from recovery.resolve import BalanceRecord, redistribute, resolve

BLOCK = 1_000_000

A, B, C, D = addr(1), addr(2), addr(3), addr(4)


def balances(resolution, token=TOKEN_A):
    return dict(resolution.balances[token.symbol])


class TestDirectHolders:
    def test_plain_holders(self, chain):
        chain.set_balances(TOKEN_A.address, {A: 60, B: 40, C: 0})
        resolution = resolve(chain, BLOCK, [TOKEN_A])
        assert balances(resolution) == {A: 60, B: 40}
        assert resolution.totals == {'stkscUSD': 100}
        assert resolution.flags == []

    def test_sum_mismatch_refuses(self, chain):
        chain.set_balances(TOKEN_A.address, {A: 60, B: 40}, supply=101)
        with pytest.raises(ResolutionIntegrityError):
            resolve(chain, BLOCK, [TOKEN_A])

    def test_two_tokens_records(self, chain):
        chain.set_balances(TOKEN_A.address, {A: 10, B: 5})
        chain.set_balances(TOKEN_B.address, {B: 7, C: 3})
        resolution = resolve(chain, BLOCK, [TOKEN_A, TOKEN_B])
        assert resolution.records == [
            BalanceRecord(A, (10, 0)),
            BalanceRecord(B, (5, 7)),
            BalanceRecord(C, (0, 3)),
        ]


class TestFungibleWrapper:
    def test_pro_rata_with_dust_to_first_depositor(self, chain):
        vault = wrapper('wstkscUSD', 0x100, 'fungible')
        chain.set_balances(TOKEN_A.address, {A: 50, vault.address: 50})
        chain.set_balances(vault.address, {B: 1, C: 2})
        resolution = resolve(chain, BLOCK, [TOKEN_A], [vault])
        assert balances(resolution) == {A: 50, B: 17, C: 33}
        assert resolution.stats == {'wstkscUSD': 2}
        assert vault.address not in resolution.balances['stkscUSD']

    def test_dust_goes_to_first_depositor_seen(self, chain):
        vault = wrapper('wstkscUSD', 0x100, 'fungible')
        chain.set_balances(TOKEN_A.address, {A: 49, vault.address: 51})
        chain.set_balances(vault.address, {C: 1, B: 1})
        resolution = resolve(chain, BLOCK, [TOKEN_A], [vault])
        assert balances(resolution) == {A: 49, B: 25, C: 26}

    def test_unenumerated_supply_is_flagged_and_pooled(self, chain):
        vault = wrapper('wstkscUSD', 0x100, 'fungible')
        chain.set_balances(TOKEN_A.address, {A: 50, vault.address: 50})
        chain.set_balances(vault.address, {B: 10}, supply=100)
        resolution = resolve(chain, BLOCK, [TOKEN_A], [vault])
        assert balances(resolution) == {A: 91, B: 9}
        assert len(resolution.flags) == 1
        assert resolution.pools[0]['amount'] == 45

    def test_zero_issued_pools_everything(self, chain):
        vault = wrapper('wstkscUSD', 0x100, 'fungible')
        chain.set_balances(TOKEN_A.address, {A: 30, B: 10, vault.address: 60})
        chain.set_balances(vault.address, {}, supply=0)
        resolution = resolve(chain, BLOCK, [TOKEN_A], [vault])
        assert balances(resolution) == {A: 75, B: 25}

    def test_depositors_above_issued_refuses(self, chain):
        vault = wrapper('wstkscUSD', 0x100, 'fungible')
        chain.set_balances(TOKEN_A.address, {A: 50, vault.address: 50})
        chain.set_balances(vault.address, {B: 10, C: 10}, supply=15)
        with pytest.raises(ResolutionIntegrityError):
            resolve(chain, BLOCK, [TOKEN_A], [vault])

    def test_failed_lookup_falls_back_to_pool(self, chain):
        vault = wrapper('wstkscUSD', 0x100, 'fungible')
        chain.set_balances(TOKEN_A.address, {A: 60, B: 20, vault.address: 20})
        chain.set_balances(vault.address, {C: 1})
        chain.failing.add(vault.address)
        resolution = resolve(chain, BLOCK, [TOKEN_A], [vault])
        assert balances(resolution) == {A: 75, B: 25}
        assert len(resolution.flags) == 1
        assert 'wstkscUSD' in resolution.flags[0]


class TestLockRegistry:
    def test_live_locks_and_gap(self, chain):
        registry = wrapper('veUSD', 0x200, 'lock-registry')
        chain.set_balances(TOKEN_A.address, {A: 40, registry.address: 60})
        chain.add_position(registry.address, 1, B, 30)
        chain.add_position(registry.address, 2, C, 20)
        chain.add_position(registry.address, 3, None, 10)
        resolution = resolve(chain, BLOCK, [TOKEN_A], [registry])
        # 10 outside live locks is spread over A, B and C; the remainder goes to A
        assert balances(resolution) == {A: 45, B: 33, C: 22}
        assert resolution.stats == {'veUSD': 2}
        assert [pool['pool'] for pool in resolution.pools] == ['veUSD (outside live locks)']

    def test_positions_of_one_owner_are_summed(self, chain):
        registry = wrapper('veUSD', 0x200, 'lock-registry')
        chain.set_balances(TOKEN_A.address, {registry.address: 100})
        chain.add_position(registry.address, 1, B, 25)
        chain.add_position(registry.address, 2, B, 25)
        chain.add_position(registry.address, 3, C, 50)
        resolution = resolve(chain, BLOCK, [TOKEN_A], [registry])
        assert balances(resolution) == {B: 50, C: 50}
        assert resolution.pools == []

    def test_locks_above_balance_refuses(self, chain):
        registry = wrapper('veUSD', 0x200, 'lock-registry')
        chain.set_balances(TOKEN_A.address, {A: 40, registry.address: 60})
        chain.add_position(registry.address, 1, B, 70)
        with pytest.raises(ResolutionIntegrityError):
            resolve(chain, BLOCK, [TOKEN_A], [registry])

    def test_failed_position_lookup_falls_back_to_pool(self, chain):
        registry = wrapper('veUSD', 0x200, 'lock-registry')
        chain.set_balances(TOKEN_A.address, {A: 30, B: 10, registry.address: 60})
        chain.add_position(registry.address, 1, C, 60)
        chain.failing.add(registry.address)
        resolution = resolve(chain, BLOCK, [TOKEN_A], [registry])
        assert balances(resolution) == {A: 75, B: 25}
        assert len(resolution.flags) == 1


class TestOpaqueAndNesting:
    def test_opaque_queue_is_redistributed(self, chain):
        queue = wrapper('queue', 0x300, 'opaque')
        chain.set_balances(TOKEN_A.address, {A: 60, B: 10, queue.address: 30})
        resolution = resolve(chain, BLOCK, [TOKEN_A], [queue])
        assert balances(resolution) == {A: 86, B: 14}
        assert resolution.pools == [{'token': 'stkscUSD', 'pool': 'queue (opaque queue)', 'amount': 30}]

    def test_pools_follow_wrapper_order(self, chain):
        first = wrapper('first', 0x300, 'opaque')
        second = wrapper('second', 0x301, 'opaque')
        chain.set_balances(TOKEN_A.address, {A: 50, B: 30, second.address: 10, first.address: 10})
        resolution = resolve(chain, BLOCK, [TOKEN_A], [first, second])
        assert [pool['pool'] for pool in resolution.pools] == ['first (opaque queue)', 'second (opaque queue)']
        assert sum(balances(resolution).values()) == 100

    def test_nested_wrapper(self, chain):
        outer = wrapper('outer', 0x100, 'fungible')
        inner = wrapper('inner', 0x101, 'fungible')
        chain.set_balances(TOKEN_A.address, {A: 50, outer.address: 50})
        chain.set_balances(outer.address, {inner.address: 5, B: 5})
        chain.set_balances(inner.address, {C: 1, D: 1})
        resolution = resolve(chain, BLOCK, [TOKEN_A], [outer, inner])
        assert balances(resolution) == {A: 50, B: 25, C: 13, D: 12}
        assert resolution.stats == {'outer': 2, 'inner': 2}

    def test_cycle_is_an_error(self, chain):
        one = wrapper('one', 0x100, 'fungible')
        two = wrapper('two', 0x101, 'fungible')
        chain.set_balances(TOKEN_A.address, {A: 50, one.address: 50})
        chain.set_balances(one.address, {two.address: 10})
        chain.set_balances(two.address, {one.address: 10})
        with pytest.raises(WrapperCycleError):
            resolve(chain, BLOCK, [TOKEN_A], [one, two])

    def test_wrappers_only_apply_to_their_token(self, chain):
        vault = wrapper('wstkscETH', 0x100, 'fungible', TOKEN_B)
        chain.set_balances(TOKEN_A.address, {A: 10, vault.address: 10})
        chain.set_balances(TOKEN_B.address, {B: 10, vault.address: 10})
        chain.set_balances(vault.address, {C: 4})
        resolution = resolve(chain, BLOCK, [TOKEN_A, TOKEN_B], [vault])
        assert balances(resolution, TOKEN_A) == {A: 10, vault.address: 10}
        assert balances(resolution, TOKEN_B) == {B: 10, C: 10}


class TestRedirects:
    def test_balance_moves_to_target(self, chain):
        chain.set_balances(TOKEN_A.address, {A: 60, B: 40})
        resolution = resolve(chain, BLOCK, [TOKEN_A], redirects=[Redirect(A, C)])
        assert balances(resolution) == {B: 40, C: 60}

    def test_redirects_apply_in_order_and_merge(self, chain):
        chain.set_balances(TOKEN_A.address, {A: 60, B: 40})
        redirects = [Redirect(A, B), Redirect(B, C)]
        resolution = resolve(chain, BLOCK, [TOKEN_A], redirects=redirects)
        assert balances(resolution) == {C: 100}


class TestRedistribute:
    def test_dust_goes_to_largest_holder(self):
        resolved = {A: 1, B: 1, C: 2}
        redistribute(resolved, 'pool', 3)
        assert resolved == {A: 1, B: 1, C: 5}

    def test_empty_target_refuses(self):
        with pytest.raises(ResolutionIntegrityError):
            redistribute({}, 'pool', 3)
