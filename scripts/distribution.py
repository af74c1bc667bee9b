import os

import click
from click import secho

from recovery.config import load_config
from recovery.export import read_json
from recovery.ledger import ClaimLedger, Token, WaiverRegistry
from recovery.merkle import claim_shares

CONFIG = os.environ.get('RECOVERY_CONFIG', 'config/sonic.toml')
ADMIN = '0x000000000000000000000000000000000000ad01'


def parse_amounts(values, symbols):
    amounts = {}
    for value in values:
        symbol, _, amount = value.partition('=')
        if symbol not in symbols:
            raise click.BadParameter(f'unknown token {symbol}', param_hint='--amount')
        amounts[symbol] = int(amount)
    return amounts


@click.command()
@click.option('--merkle', 'merkle_paths', multiple=True, required=True, help='merkle-<name>.json, once per tree')
@click.option('--amount', 'amounts', multiple=True, required=True, help='SYMBOL=raw units for this round')
@click.option('--config', 'config_path', default=CONFIG, show_default=True)
def main(merkle_paths, amounts, config_path):
    """Rehearse a funded round: fund custody, open the round, let everyone claim."""
    config = load_config(config_path)
    amounts = parse_amounts(amounts, config.symbols)
    distributions = [read_json(path) for path in merkle_paths]

    tokens = [Token(token.symbol, token.decimals) for token in config.tokens]
    claimants = set().union(*(d['claims'] for d in distributions))
    ledger = ClaimLedger(ADMIN, tokens, WaiverRegistry(claimants), layout=config.layout,
                         claim_window=config.claim_window)
    for token in tokens:
        token.mint(ledger.address, amounts.get(token.symbol, 0))

    if config.layout == 'joint':
        roots = distributions[0]['merkleRoot']
    else:
        roots = {d['tokens'][0]: d['merkleRoot'] for d in distributions}
    round_id = ledger.create_round(roots, amounts, sender=ADMIN)
    print('created round', round_id, 'totals', amounts)

    for distribution in distributions:
        symbols = distribution['tokens']
        for address, claim in distribution['claims'].items():
            shares = claim_shares(claim, symbols)
            if config.layout == 'joint':
                paid = ledger.claim(round_id, address, shares, claim['proof'])
            else:
                paid = ledger.claim_token(round_id, address, symbols[0], shares[0], claim['proof'])
            print(f'  {address}: {paid}')

    round_ = ledger.get_round(round_id)
    print(f'{round_.claim_count} claims processed')
    for symbol in config.symbols:
        paid = round_.claimed[symbol]
        left = ledger.custody(symbol)
        color = 'green' if left < max(round_.claim_count, 1) else 'red'
        secho(f'  {symbol}: paid {paid} of {round_.totals[symbol]}, left in custody {left}', fg=color)


if __name__ == '__main__':
    main()
