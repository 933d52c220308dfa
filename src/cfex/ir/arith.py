"""Fixed-width evaluation of :class:`ArithOp` over literal integers.

Values are kept as signed integers of the configured width. Wrapping
operations truncate modulo ``2**bits``; checked (``.ovf``) operations, and
every operation when the overflow policy is ``"trap"``, raise
:class:`NumericOverflow` instead of producing a wrapped value. Operations
whose run-time behaviour is a trap regardless of policy (division by zero,
``MIN / -1``) and oversized shift counts evaluate to ``None``.
"""
from __future__ import annotations

import typing

from cfex.core.bits import (
    fits_signed,
    signed_to_unsigned,
    wrap_signed,
)
from cfex.errors import NumericOverflow
from cfex.ir.model import ArithOp

WRAP = "wrap"
TRAP = "trap"


def is_integer_literal(value: typing.Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _div_trunc(a: int, b: int) -> int:
    q = abs(a) // abs(b)
    return q if (a < 0) == (b < 0) else -q


def _checked(op: ArithOp, exact: int, width: int) -> None:
    if not fits_signed(exact, width):
        raise NumericOverflow(f"{op.value} overflows {width * 8}-bit integer: {exact}")


def evaluate(
    op: ArithOp,
    operands: typing.Sequence[int],
    width: int = 4,
    overflow: str = WRAP,
) -> int | None:
    """Evaluate *op* over *operands* (deepest stack slot first).

    >>> evaluate(ArithOp.ADD, [0x7FFFFFFF, 1])
    -2147483648
    >>> evaluate(ArithOp.DIV, [7, 0]) is None
    True
    """
    if len(operands) != op.arity or not all(is_integer_literal(v) for v in operands):
        return None
    bits = width * 8
    values = [wrap_signed(v, width) for v in operands]
    trap = overflow == TRAP

    if op.arity == 1:
        (a,) = values
        if op is ArithOp.NEG:
            exact = -a
            if trap:
                _checked(op, exact, width)
            return wrap_signed(exact, width)
        return wrap_signed(~a, width)

    a, b = values
    if op in (ArithOp.ADD, ArithOp.SUB, ArithOp.MUL, ArithOp.ADD_OVF, ArithOp.SUB_OVF, ArithOp.MUL_OVF):
        if op in (ArithOp.ADD, ArithOp.ADD_OVF):
            exact = a + b
        elif op in (ArithOp.SUB, ArithOp.SUB_OVF):
            exact = a - b
        else:
            exact = a * b
        if op.checked or trap:
            _checked(op, exact, width)
        return wrap_signed(exact, width)

    if op in (ArithOp.DIV, ArithOp.REM):
        if b == 0 or (b == -1 and a == -(1 << (bits - 1))):
            return None
        q = _div_trunc(a, b)
        return wrap_signed(q if op is ArithOp.DIV else a - b * q, width)

    if op in (ArithOp.DIV_UN, ArithOp.REM_UN):
        ua, ub = signed_to_unsigned(a, width), signed_to_unsigned(b, width)
        if ub == 0:
            return None
        return wrap_signed(ua // ub if op is ArithOp.DIV_UN else ua % ub, width)

    if op is ArithOp.AND:
        return wrap_signed(a & b, width)
    if op is ArithOp.OR:
        return wrap_signed(a | b, width)
    if op is ArithOp.XOR:
        return wrap_signed(a ^ b, width)

    # shifts: the shift count is the top of stack
    if b < 0 or b >= bits:
        return None
    if op is ArithOp.SHL:
        return wrap_signed(a << b, width)
    if op is ArithOp.SHR:
        return a >> b
    return wrap_signed(signed_to_unsigned(a, width) >> b, width)
