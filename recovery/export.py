import csv
import json
import os
from datetime import datetime, timezone
from pathlib import Path

from eth_utils import to_checksum_address

from recovery.resolve import BalanceRecord
from recovery.shares import format_share, share_of


def value_key(record, decimals):
    # compare amounts of tokens with different decimals on an 18-decimal scale
    return sum(amount * 10 ** (18 - d) for amount, d in zip(record.amounts, decimals))


def snapshot_artifact(resolution, tokens):
    decimals = [token.decimals for token in tokens]
    records = sorted(resolution.records, key=lambda r: value_key(r, decimals), reverse=True)
    return {
        'snapshotBlock': resolution.block,
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'tokens': {
            token.symbol: {
                'address': to_checksum_address(token.address),
                'totalSupply': str(resolution.totals[token.symbol]),
                'decimals': token.decimals,
                'holderCount': len(resolution.balances[token.symbol]),
            }
            for token in tokens
        },
        'recursiveResolution': dict(resolution.stats),
        'unresolvedPools': [dict(pool, amount=str(pool['amount'])) for pool in resolution.pools],
        'reviewFlags': list(resolution.flags),
        'entitlements': [
            {
                'address': to_checksum_address(record.address),
                'balances': {s: str(a) for s, a in zip(resolution.symbols, record.amounts)},
                'shares': {
                    s: str(share_of(a, resolution.totals[s]))
                    for s, a in zip(resolution.symbols, record.amounts)
                },
            }
            for record in records
        ],
    }


def load_snapshot(snapshot):
    """(block, symbols, totals, records) from a snapshot artifact, records in artifact order."""
    symbols = list(snapshot['tokens'])
    totals = tuple(int(snapshot['tokens'][s]['totalSupply']) for s in symbols)
    records = [
        BalanceRecord(entry['address'].lower(), tuple(int(entry['balances'][s]) for s in symbols))
        for entry in snapshot['entitlements']
    ]
    return snapshot['snapshotBlock'], symbols, totals, records


def write_json(path, data):
    path = Path(path)
    os.makedirs(path.parent, exist_ok=True)
    path.write_text(json.dumps(data, indent=2))
    print('write', path)


def read_json(path):
    return json.loads(Path(path).read_text())


def write_share_table(path, share_records, symbols):
    """Flat address/share/percentage table for independent checking."""
    path = Path(path)
    os.makedirs(path.parent, exist_ok=True)
    header = ['address']
    for symbol in symbols:
        header += [f'{symbol}_share_wad', f'{symbol}_pct']
    with path.open('w', newline='') as fp:
        writer = csv.writer(fp)
        writer.writerow(header)
        for record in sorted(share_records, key=lambda r: int(r.address, 16)):
            row = [to_checksum_address(record.address)]
            for share in record.shares:
                row += [str(share), format_share(share, places=6)]
            writer.writerow(row)
    print('write', path)
