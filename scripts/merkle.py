import os

import click
from click import secho

from recovery.config import load_config
from recovery.export import load_snapshot, read_json, write_json, write_share_table
from recovery.merkle import build_distributions
from recovery.shares import normalize

CONFIG = os.environ.get('RECOVERY_CONFIG', 'config/sonic.toml')


@click.command()
@click.option('--snapshot', 'snapshot_path', required=True)
@click.option('--config', 'config_path', default=CONFIG, show_default=True)
@click.option('--layout', type=click.Choice(['joint', 'per-token']), default=None)
@click.option('--output', default='snapshot/output', show_default=True)
@click.option('--top', default=10, show_default=True)
def main(snapshot_path, config_path, layout, output, top):
    layout = layout or load_config(config_path).layout
    block, symbols, totals, records = load_snapshot(read_json(snapshot_path))
    print(f'loaded snapshot from block {block}: {len(records)} addresses')

    print('computing shares (WAD)...')
    shares = normalize(records, totals, layout=layout)
    print(f'  {len(shares)} eligible addresses')
    write_share_table(os.path.join(output, 'shares.csv'), shares, symbols)

    print(f'building {layout} merkle tree(s)...')
    distributions = build_distributions(shares, symbols, layout=layout, block=block)
    for name, distribution in distributions.items():
        write_json(os.path.join(output, f'merkle-{name}.json'), distribution)

    for name, distribution in distributions.items():
        tokens = distribution['tokens']
        print(f'\ntop {top} claimants in {name} by {tokens[0]} share:')
        ranked = sorted(distribution['claims'].items(), key=lambda item: int(item[1]['shares'][tokens[0]]), reverse=True)
        for rank, (address, claim) in enumerate(ranked[:top], 1):
            pct = ', '.join(f"{s} {claim['percentages'][s]}" for s in tokens)
            print(f'  {rank}. {address}: {pct}')

    secho('\nuse these roots for every create_round:', fg='green')
    for name, distribution in distributions.items():
        secho(f"  {name}: {distribution['merkleRoot']}", fg='green')


if __name__ == '__main__':
    main()
