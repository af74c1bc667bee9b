import json
import os

import click
from click import secho

from recovery.export import read_json
from recovery.lookup import lookup_address


@click.command()
@click.argument('address')
@click.option('--snapshot', 'snapshot_path', required=True)
@click.option('--merkle', 'merkle_paths', multiple=True, help='merkle-<name>.json, once per tree')
@click.option('--amount', 'amounts', multiple=True, help='SYMBOL=raw units, to preview a round payout')
@click.option('--json', 'as_json', is_flag=True, help='print the raw report')
def main(address, snapshot_path, merkle_paths, amounts, as_json):
    """Check an address against the snapshot and the published trees."""
    snapshot = read_json(snapshot_path)
    distributions = {os.path.basename(path): read_json(path) for path in merkle_paths}
    round_totals = dict(value.split('=', 1) for value in amounts)
    try:
        report = lookup_address(address, snapshot, distributions, round_totals)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint='address')

    if as_json:
        print(json.dumps(report, indent=2))
        return

    print(f"{report['address']} at block {report['snapshotBlock']}")
    if not report['found']:
        secho('  not in snapshot', fg='yellow')
    for symbol, balance in report['balances'].items():
        print(f'  {symbol}: {balance or "-"}')
    for name, tree in report['trees'].items():
        if not tree['included']:
            secho(f'  {name}: not included', fg='yellow')
            continue
        pct = ', '.join(f'{s} {p}' for s, p in tree['percentages'].items())
        secho(f"  {name}: index {tree['index']}, {pct}, proof valid: {tree['proofValid']}",
              fg='green' if tree['proofValid'] else 'red')
    for symbol, amount in report['payouts'].items():
        print(f'  payout {symbol}: {amount}')


if __name__ == '__main__':
    main()
