"""ladder-mm - oracle-anchored ladder market maker for limit-order-book DEXes."""

__version__ = "0.1.0"
