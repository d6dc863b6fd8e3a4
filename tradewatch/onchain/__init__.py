"""On-chain decoding and trade reconstruction helpers.

This package turns raw EVM logs and receipts into per-wallet trade records:
log/ABI decoders, the watched-wallet registry with file hot reload, the token
metadata resolver and the net-flow aggregator that classifies BUY/SELL/SWAP.
"""

__all__ = [
    'aggregator',
    'decoder',
    'metadata',
    'registry',
]
