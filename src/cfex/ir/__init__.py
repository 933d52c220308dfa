"""Instruction model, fixed-width arithmetic and the text/JSON encodings."""

from .model import (
    ArithOp,
    Block,
    BlockGraph,
    ExceptionRegion,
    ExitRecord,
    Instruction,
    InstructionArena,
    MethodBody,
    Opcode,
    RegionKind,
    RegionSpan,
    has_dispatch,
)

__all__ = [
    "ArithOp",
    "Block",
    "BlockGraph",
    "ExceptionRegion",
    "ExitRecord",
    "Instruction",
    "InstructionArena",
    "MethodBody",
    "Opcode",
    "RegionKind",
    "RegionSpan",
    "has_dispatch",
]
