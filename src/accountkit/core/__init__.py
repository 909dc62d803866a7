"""
accountkit core module

Crypto helpers, configuration, logging, exceptions and the account
abstraction contracts.
"""

__all__ = []
