import os

import click
from click import secho

from recovery.cache import cached
from recovery.config import load_config
from recovery.explorer import ExplorerReader
from recovery.export import snapshot_artifact, write_json
from recovery.reader import ChainReader
from recovery.resolve import resolve

CONFIG = os.environ.get('RECOVERY_CONFIG', 'config/sonic.toml')


def get_reader(config):
    if config.explorer:
        return ExplorerReader.from_config(config)
    return ChainReader.from_config(config)


@cached('snapshot/{block}/resolved-{config.fingerprint}.json')
def step_01(config, block):
    print('step 01. balances, wrapper resolution, redirects')
    resolution = resolve(get_reader(config), block, config.tokens, config.wrappers, config.redirects)
    return snapshot_artifact(resolution, config.tokens)


@click.command()
@click.option('--block', type=int, required=True, help='snapshot height')
@click.option('--config', 'config_path', default=CONFIG, show_default=True)
@click.option('--output', default='snapshot/output', show_default=True)
def main(block, config_path, output):
    config = load_config(config_path, block)
    snapshot = step_01(config=config, block=block)
    write_json(os.path.join(output, f'snapshot-{block}.json'), snapshot)

    for symbol, token in snapshot['tokens'].items():
        print(f"  {symbol}: totalSupply={token['totalSupply']} holders={token['holderCount']}")
    for flag in snapshot['reviewFlags']:
        secho(f'REVIEW: {flag}', fg='yellow')
    secho(f"{len(snapshot['entitlements'])} addresses at block {block}", fg='green')


if __name__ == '__main__':
    main()
