"""pymac: player identity and verdict aggregation for a game anti-cheat client."""

__version__ = "0.1.0"
