"""Building blocks for a UDP-over-TURN relay proxy: staged errors, datagram forwarding,
supervised workers, and browser-assisted provider challenges over DevTools."""

__version__ = "0.1.0"