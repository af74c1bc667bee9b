"""Snapshot, share-tree and claim ledger for the stkscUSD / stkscETH recovery."""

__version__ = '0.1.0'
