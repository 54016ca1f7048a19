"""
Authentication module: SMART identity provider gateway and local accounts.
"""

from .users import UserDirectory, hash_password, verify_password

__all__ = ['UserDirectory', 'hash_password', 'verify_password']
