"""bookrelay - relays node health and order-book state from Redis to observers."""

__version__ = "0.1.0"
