"""Fixed-width integer constants and utilities.

This module contains pure Python tables and helpers for emulating the
native integer width of the target virtual machine. The evaluation stack of
the VM holds 4-byte or 8-byte integers; arithmetic wraps modulo ``2**bits``
unless the instruction is a checked variant.
"""

import ctypes

# =============================================================================
# Bitwise Operation Constants
# =============================================================================

# All-ones mask for different byte widths
AND_TABLE: dict[int, int] = {
    1: 0xFF,
    2: 0xFFFF,
    4: 0xFFFFFFFF,
    8: 0xFFFFFFFFFFFFFFFF,
}

# Sign bit for different byte widths
MSB_TABLE: dict[int, int] = {
    1: 0x80,
    2: 0x8000,
    4: 0x80000000,
    8: 0x8000000000000000,
}

# ctypes lookup tables for signed/unsigned integer conversions
CTYPE_SIGNED_TABLE: dict[int, type] = {
    1: ctypes.c_int8,
    2: ctypes.c_int16,
    4: ctypes.c_int32,
    8: ctypes.c_int64,
}

CTYPE_UNSIGNED_TABLE: dict[int, type] = {
    1: ctypes.c_uint8,
    2: ctypes.c_uint16,
    4: ctypes.c_uint32,
    8: ctypes.c_uint64,
}

SUPPORTED_WIDTHS = frozenset(AND_TABLE)


# =============================================================================
# Conversion Functions
# =============================================================================

def unsigned_to_signed(unsigned_value: int, nb_bytes: int) -> int:
    """Convert an unsigned integer to its signed representation.

    >>> unsigned_to_signed(0xFFFFFFFF, 4)
    -1
    """
    return CTYPE_SIGNED_TABLE[nb_bytes](unsigned_value).value


def signed_to_unsigned(signed_value: int, nb_bytes: int) -> int:
    """Convert a signed integer to its unsigned representation.

    >>> signed_to_unsigned(-1, 2)
    65535
    """
    return CTYPE_UNSIGNED_TABLE[nb_bytes](signed_value).value


def wrap_signed(value: int, nb_bytes: int) -> int:
    """Truncate an arbitrary Python int to *nb_bytes* and read it back signed."""
    return unsigned_to_signed(value & AND_TABLE[nb_bytes], nb_bytes)


def fits_signed(value: int, nb_bytes: int) -> bool:
    """Return True when *value* is representable as a signed *nb_bytes* integer."""
    return -MSB_TABLE[nb_bytes] <= value < MSB_TABLE[nb_bytes]
