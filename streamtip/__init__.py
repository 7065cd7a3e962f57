"""
StreamTip settlement core.

Ingests confirmed cross-chain tips, batches them per streamer, chain and
token, and drives each batch through conversion and bridging into the
destination settlement currency.
"""

__version__ = "1.0.0"
