"""Pool loading, account decoding, pool discovery and quote simulation for Solana DEX markets."""

__version__ = "0.1.0"