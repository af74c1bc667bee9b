import json
import os
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path

import toml
from eth_utils import encode_hex, is_address, keccak

from recovery.errors import ConfigError

ZERO_ADDRESS = '0x0000000000000000000000000000000000000000'

WRAPPER_KINDS = ('fungible', 'lock-registry', 'opaque')
LAYOUTS = ('joint', 'per-token')

# one year, in seconds
DEFAULT_CLAIM_WINDOW = 365 * 24 * 60 * 60


def to_address(value):
    if not isinstance(value, str) or not is_address(value):
        raise ConfigError('invalid address', {'value': value})
    return value.lower()


def _in_window(block, from_block, to_block):
    if block is None:
        return True
    if from_block is not None and block < from_block:
        return False
    if to_block is not None and block > to_block:
        return False
    return True


@dataclass(frozen=True)
class Token:
    symbol: str
    address: str
    decimals: int = 18


@dataclass(frozen=True)
class Wrapper:
    name: str
    address: str
    kind: str
    token: str
    from_block: int = None
    to_block: int = None

    def applies_to(self, block):
        return _in_window(block, self.from_block, self.to_block)


@dataclass(frozen=True)
class Redirect:
    source: str
    target: str
    reason: str = ''
    from_block: int = None
    to_block: int = None

    def applies_to(self, block):
        return _in_window(block, self.from_block, self.to_block)


@dataclass
class Config:
    tokens: list
    wrappers: list = field(default_factory=list)
    redirects: list = field(default_factory=list)
    rpc: str = None
    explorer: str = None
    explorer_key: str = None
    start_block: int = 0
    max_workers: int = 8
    batch_size: int = 50_000
    retries: int = 5
    backoff: float = 1.0
    claim_window: int = DEFAULT_CLAIM_WINDOW
    layout: str = 'joint'

    @property
    def symbols(self):
        return [token.symbol for token in self.tokens]

    def token(self, symbol):
        for token in self.tokens:
            if token.symbol == symbol:
                return token
        raise ConfigError('unknown token', {'symbol': symbol})

    @property
    def fingerprint(self):
        """Short hash of everything that changes a resolution at a given height."""
        data = {
            'tokens': [asdict(token) for token in self.tokens],
            'wrappers': [asdict(wrapper) for wrapper in self.wrappers],
            'redirects': [asdict(redirect) for redirect in self.redirects],
            'start_block': self.start_block,
        }
        return encode_hex(keccak(text=json.dumps(data, sort_keys=True)))[2:14]

    def for_block(self, block):
        """Only the wrappers and redirects whose block window covers `block`."""
        return replace(
            self,
            wrappers=[w for w in self.wrappers if w.applies_to(block)],
            redirects=[r for r in self.redirects if r.applies_to(block)],
        )


def parse_config(data):
    network = data.get('network', {})
    claims = data.get('claims', {})

    tokens = [
        Token(symbol, to_address(entry['address']), int(entry.get('decimals', 18)))
        for symbol, entry in data.get('tokens', {}).items()
    ]
    if not tokens:
        raise ConfigError('at least one token is required')
    symbols = {token.symbol for token in tokens}

    wrappers = []
    for entry in data.get('wrappers', []):
        kind = entry.get('kind')
        if kind not in WRAPPER_KINDS:
            raise ConfigError('unknown wrapper kind', {'name': entry.get('name'), 'kind': kind})
        if entry.get('token') not in symbols:
            raise ConfigError('wrapper references unknown token', {'name': entry.get('name'), 'token': entry.get('token')})
        wrappers.append(Wrapper(
            name=entry.get('name', entry['address']),
            address=to_address(entry['address']),
            kind=kind,
            token=entry['token'],
            from_block=entry.get('from_block'),
            to_block=entry.get('to_block'),
        ))
    seen = set()
    for wrapper in wrappers:
        key = (wrapper.token, wrapper.address)
        if key in seen:
            raise ConfigError('duplicate wrapper', {'name': wrapper.name})
        seen.add(key)

    redirects = [
        Redirect(
            source=to_address(entry['source']),
            target=to_address(entry['target']),
            reason=entry.get('reason', ''),
            from_block=entry.get('from_block'),
            to_block=entry.get('to_block'),
        )
        for entry in data.get('redirects', [])
    ]

    layout = claims.get('layout', 'joint')
    if layout not in LAYOUTS:
        raise ConfigError('unknown layout', {'layout': layout})

    return Config(
        tokens=tokens,
        wrappers=wrappers,
        redirects=redirects,
        rpc=os.environ.get('RECOVERY_RPC', network.get('rpc')),
        explorer=network.get('explorer'),
        explorer_key=os.environ.get('RECOVERY_EXPLORER_KEY'),
        start_block=int(network.get('start_block', 0)),
        max_workers=int(network.get('max_workers', 8)),
        batch_size=int(network.get('batch_size', 50_000)),
        retries=int(network.get('retries', 5)),
        backoff=float(network.get('backoff', 1.0)),
        claim_window=int(claims.get('claim_window', DEFAULT_CLAIM_WINDOW)),
        layout=layout,
    )


def load_config(path, block=None):
    config = parse_config(toml.loads(Path(path).read_text()))
    return config.for_block(block) if block is not None else config
