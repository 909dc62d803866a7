"""
accountkit - ERC-4337 account abstraction core

Main Components:
- Smart accounts: multi-owner validation with replay protection
- Account factory: deterministic (CREATE2 style) deployment
- Verifying paymaster: verifier-approved gas sponsorship
- EntryPoint: reference executor for UserOperations
"""

__version__ = "0.1.0"
__author__ = "accountkit developers"

__all__ = []
