"""
Pairing Package

Short human-enterable codes that identify one transfer session.
"""

from medsync.pairing.codes import (
    PAIRING_ALPHABET,
    CODE_LENGTH,
    generate_pairing_code,
    is_valid_pairing_code,
    format_pairing_code,
    normalize_pairing_code,
)

__all__ = [
    "PAIRING_ALPHABET",
    "CODE_LENGTH",
    "generate_pairing_code",
    "is_valid_pairing_code",
    "format_pairing_code",
    "normalize_pairing_code",
]
