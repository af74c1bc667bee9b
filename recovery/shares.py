from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal

from recovery.errors import ResolutionIntegrityError, TreeIntegrityError

WAD = 10 ** 18


@dataclass(frozen=True)
class ShareRecord:
    address: str
    shares: tuple


def share_of(balance, total):
    return balance * WAD // total if total else 0


def payout(share, total):
    return share * total // WAD


def format_share(share, places=4):
    pct = Decimal(share) / Decimal(10 ** 16)
    return f'{pct.quantize(Decimal(1).scaleb(-places), rounding=ROUND_DOWN)}%'


def check_share_sums(records, totals):
    for i, total in enumerate(totals):
        shares = [record.shares[i] for record in records]
        if any(share < 0 or share > WAD for share in shares):
            raise TreeIntegrityError('share out of range', {'token': i})
        expected = WAD if total else 0
        if sum(shares) != expected:
            raise TreeIntegrityError('share sum is not one WAD', {'token': i, 'sum': sum(shares)})


def largest_share(rows, key):
    # max() keeps the first of equal values
    return max(range(len(rows)), key=lambda j: key(rows[j][1]))


def normalize(records, totals, layout='joint'):
    """
    Turn balance records into WAD shares of each token's total.

    Floor division leaves each token short of one WAD by less than the
    number of holders. Addresses with no share of any token are dropped
    first. In the joint layout every token's shortfall goes to the one
    address with the largest combined share; with per-token trees each
    token's shortfall goes to that token's largest share. Ties go to the
    first record.
    """
    totals = tuple(totals)
    for i, total in enumerate(totals):
        balance_sum = sum(record.amounts[i] for record in records)
        if balance_sum != total:
            raise ResolutionIntegrityError('balances do not sum to total', {'token': i, 'sum': balance_sum, 'total': total})

    rows = [
        (record.address, [share_of(amount, total) for amount, total in zip(record.amounts, totals)])
        for record in records
    ]
    rows = [(address, row) for address, row in rows if any(row)]
    dust = [WAD - sum(row[i] for _, row in rows) if total else 0 for i, total in enumerate(totals)]

    if any(dust):
        if layout == 'joint':
            largest = largest_share(rows, sum)
            for i, amount in enumerate(dust):
                rows[largest][1][i] += amount
            print(f'  rounding dust {dust} -> {rows[largest][0]}')
        else:
            for i, amount in enumerate(dust):
                if amount:
                    largest = largest_share(rows, lambda row: row[i])
                    rows[largest][1][i] += amount
                    print(f'  rounding dust token {i}: {amount} -> {rows[largest][0]}')

    shares = [ShareRecord(address, tuple(row)) for address, row in rows]
    check_share_sums(shares, totals)
    return shares
