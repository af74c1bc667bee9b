from eth_utils import is_address, to_checksum_address

from recovery.merkle import claim_shares, verify_claim
from recovery.shares import format_share, payout


def format_amount(raw, decimals, places=6):
    raw = int(raw)
    whole, frac = divmod(raw, 10 ** decimals)
    frac = str(frac).rjust(decimals, '0')[:places] if decimals else ''
    return f'{whole:,}.{frac}' if frac else f'{whole:,}'


def lookup_address(address, snapshot, distributions, round_totals=None):
    """
    Everything a holder needs to check their entitlement: balances and
    shares at the snapshot, inclusion and proof validity per published
    tree, and the payout for `round_totals` (raw units per token) if given.
    """
    if not is_address(address):
        raise ValueError(f'invalid address: {address}')
    checksum = to_checksum_address(address)
    entry = next((e for e in snapshot['entitlements'] if e['address'].lower() == address.lower()), None)
    report = {
        'address': checksum,
        'snapshotBlock': snapshot['snapshotBlock'],
        'found': entry is not None,
        'balances': {},
        'trees': {},
        'payouts': {},
    }
    if entry:
        for symbol, raw in entry['balances'].items():
            decimals = snapshot['tokens'][symbol]['decimals']
            report['balances'][symbol] = format_amount(raw, decimals) if int(raw) else None

    for name, distribution in distributions.items():
        claim = distribution['claims'].get(checksum)
        tree = {'included': claim is not None}
        if claim:
            shares = claim_shares(claim, distribution['tokens'])
            tree.update(
                index=claim['index'],
                shares=dict(zip(distribution['tokens'], shares)),
                percentages={s: format_share(share, places=6) for s, share in zip(distribution['tokens'], shares)},
                proofValid=verify_claim(distribution, checksum),
            )
            for symbol, share in zip(distribution['tokens'], shares):
                if round_totals and symbol in round_totals:
                    report['payouts'][symbol] = payout(share, int(round_totals[symbol]))
        report['trees'][name] = tree
    return report
