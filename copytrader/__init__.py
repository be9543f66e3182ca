"""Copy-trading bot for pump.fun tokens"""

__version__ = "0.1.0"
