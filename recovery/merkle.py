from itertools import zip_longest

from eth_abi import encode
from eth_utils import decode_hex, encode_hex, keccak, to_checksum_address

from recovery.errors import TreeIntegrityError
from recovery.shares import WAD, format_share

ZERO_ROOT = bytes(32)


def to_bytes32(value):
    if isinstance(value, str):
        value = decode_hex(value)
    value = bytes(value)
    if len(value) != 32:
        raise ValueError(f'expected 32 bytes, got {len(value)}')
    return value


def leaf_hash(address, shares):
    """keccak256(bytes.concat(keccak256(abi.encode(address, share...))))"""
    types = ['address'] + ['uint256'] * len(shares)
    inner = keccak(encode(types, [to_checksum_address(address), *shares]))
    return keccak(inner)


class MerkleTree:
    def __init__(self, elements):
        if not elements:
            raise TreeIntegrityError('no leaves')
        self.elements = list(elements)
        self.layers = MerkleTree.get_layers(self.elements)

    @property
    def root(self):
        return self.layers[-1][0]

    def get_proof(self, idx):
        proof = []
        for layer in self.layers:
            pair_idx = idx + 1 if idx % 2 == 0 else idx - 1
            if pair_idx < len(layer):
                proof.append(layer[pair_idx])
            idx //= 2
        return proof

    @staticmethod
    def get_layers(elements):
        layers = [elements]
        while len(layers[-1]) > 1:
            layers.append(MerkleTree.get_next_layer(layers[-1]))
        return layers

    @staticmethod
    def get_next_layer(elements):
        return [MerkleTree.combined_hash(a, b) for a, b in zip_longest(elements[::2], elements[1::2])]

    @staticmethod
    def combined_hash(a, b):
        if a is None:
            return b
        if b is None:
            return a
        return keccak(b''.join(sorted([a, b])))

    @staticmethod
    def verify(proof, root, leaf):
        computed = to_bytes32(leaf)
        for node in proof:
            computed = MerkleTree.combined_hash(computed, to_bytes32(node))
        return computed == to_bytes32(root)


def calculate_merkle_tree(entries, symbols, block=None):
    """
    Commit to `entries` (address, shares) and return the distribution.

    Leaves are ordered by numeric address so anyone can rebuild the same
    tree from the same shares. Every proof is checked against the root
    before anything is returned.
    """
    entries = sorted(entries, key=lambda entry: int(entry[0], 16))
    addresses = [address for address, _ in entries]
    if len(set(addresses)) != len(addresses):
        raise TreeIntegrityError('duplicate address in tree')

    for i, symbol in enumerate(symbols):
        total = sum(shares[i] for _, shares in entries)
        if total not in (0, WAD):
            raise TreeIntegrityError('share sum is not one WAD', {'token': symbol, 'sum': total})

    leaves = [leaf_hash(address, shares) for address, shares in entries]
    tree = MerkleTree(leaves)
    proofs = [tree.get_proof(index) for index in range(len(leaves))]
    for index, (leaf, proof) in enumerate(zip(leaves, proofs)):
        if not MerkleTree.verify(proof, tree.root, leaf):
            raise TreeIntegrityError('proof failed self-verification', {'index': index, 'address': addresses[index]})

    distribution = {
        'snapshotBlock': block,
        'merkleRoot': encode_hex(tree.root),
        'tokens': list(symbols),
        'leafCount': len(leaves),
        'shareTotals': {
            symbol: str(sum(shares[i] for _, shares in entries))
            for i, symbol in enumerate(symbols)
        },
        'claims': {
            to_checksum_address(address): {
                'index': index,
                'shares': {symbol: str(share) for symbol, share in zip(symbols, shares)},
                'percentages': {symbol: format_share(share) for symbol, share in zip(symbols, shares)},
                'leaf': encode_hex(leaves[index]),
                'proof': [encode_hex(node) for node in proofs[index]],
            }
            for index, (address, shares) in enumerate(entries)
        },
    }
    print(f'merkle root: {encode_hex(tree.root)} ({len(leaves)} leaves, all proofs verified)')
    return distribution


def build_distributions(share_records, symbols, layout='joint', block=None):
    """
    `joint`: one tree named 'shares' whose leaves carry every token's share.
    `per-token`: one tree per token, holders of that token only.
    """
    if layout == 'joint':
        entries = [(record.address, record.shares) for record in share_records]
        return {'shares': calculate_merkle_tree(entries, symbols, block)}
    if layout != 'per-token':
        raise ValueError(f'unknown layout {layout!r}')
    distributions = {}
    for i, symbol in enumerate(symbols):
        entries = [(record.address, (record.shares[i],)) for record in share_records if record.shares[i]]
        if not entries:
            print(f'{symbol}: no holders, no tree')
            continue
        distributions[symbol] = calculate_merkle_tree(entries, [symbol], block)
    return distributions


def claim_shares(claim, symbols):
    return tuple(int(claim['shares'][symbol]) for symbol in symbols)


def verify_claim(distribution, address):
    """Rebuild the leaf for `address` from the published distribution and check its proof."""
    claim = distribution['claims'].get(to_checksum_address(address))
    if claim is None:
        return False
    leaf = leaf_hash(address, claim_shares(claim, distribution['tokens']))
    return encode_hex(leaf) == claim['leaf'] and MerkleTree.verify(claim['proof'], distribution['merkleRoot'], leaf)
