"""
Pairing Codes - generation, validation and display formatting

A pairing code is 6 symbols drawn from a 32-character alphabet: the digits
2-9 and the letters A-Z without I and O, so 0/O and 1/I never appear.
32^6 ~ 1.07e9 codes.
"""

import re
import secrets

PAIRING_ALPHABET = "23456789ABCDEFGHJKLMNPQRSTUVWXYZ"
CODE_LENGTH = 6

_CODE_PATTERN = re.compile(rf"^[{PAIRING_ALPHABET}]{{{CODE_LENGTH}}}$")


def generate_pairing_code() -> str:
    """
    Generate a cryptographically secure pairing code.

    One independent draw per character, no checksum.

    Returns:
        6-character uppercase code, e.g. "K7X9M2"
    """
    return "".join(secrets.choice(PAIRING_ALPHABET) for _ in range(CODE_LENGTH))


def is_valid_pairing_code(value: str) -> bool:
    """True iff the uppercased value is exactly 6 alphabet symbols"""
    if not isinstance(value, str):
        return False
    return _CODE_PATTERN.match(value.upper()) is not None


def format_pairing_code(code: str) -> str:
    """
    Format a pairing code for display.

    Example: "K7X9M2" -> "K7X 9M2". Anything that is not 6 characters
    long is returned unchanged.
    """
    if len(code) != CODE_LENGTH:
        return code
    half = CODE_LENGTH // 2
    return f"{code[:half]} {code[half:]}"


def normalize_pairing_code(value: str) -> str:
    """Strip whitespace and uppercase user input ("k7x 9m2" -> "K7X9M2")"""
    return "".join(value.split()).upper()
