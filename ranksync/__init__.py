"""ranksync: ranked album lists kept in sync across live clients."""

__version__ = "0.1.0"
