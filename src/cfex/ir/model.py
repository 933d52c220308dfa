"""In-memory model of a stack-VM method body.

Instructions carry a stable ``uid`` handed out by an :class:`InstructionArena`.
Branch operands refer to target uids, never to stream positions, so deleting
or inserting instructions does not require rewriting unrelated branches.
"""
from __future__ import annotations

import dataclasses
import enum
import itertools
import typing


class Opcode(enum.Enum):
    """Opcode category of an instruction."""

    PUSH_CONST = "push-constant"
    LOAD_LOCAL = "load-local"
    STORE_LOCAL = "store-local"
    ARITH = "arithmetic"
    DUP = "duplicate-top"
    POP = "discard-top"
    NOP = "no-op"
    BRANCH = "unconditional-branch"
    COND_BRANCH = "conditional-branch"
    SWITCH = "multi-way-dispatch"
    LEAVE = "exit-protected-region"
    SIZEOF = "size-of-type-query"
    OPAQUE = "other"

    @property
    def is_branch(self) -> bool:
        return self in BRANCH_OPCODES

    @property
    def is_unconditional(self) -> bool:
        """True for branch kinds that never fall through."""
        return self in (Opcode.BRANCH, Opcode.LEAVE)


BRANCH_OPCODES = frozenset(
    {Opcode.BRANCH, Opcode.COND_BRANCH, Opcode.SWITCH, Opcode.LEAVE}
)


class ArithOp(enum.Enum):
    ADD = "add"
    SUB = "sub"
    MUL = "mul"
    DIV = "div"
    DIV_UN = "div.un"
    REM = "rem"
    REM_UN = "rem.un"
    AND = "and"
    OR = "or"
    XOR = "xor"
    SHL = "shl"
    SHR = "shr"
    SHR_UN = "shr.un"
    NEG = "neg"
    NOT = "not"
    ADD_OVF = "add.ovf"
    SUB_OVF = "sub.ovf"
    MUL_OVF = "mul.ovf"

    @property
    def arity(self) -> int:
        return 1 if self in (ArithOp.NEG, ArithOp.NOT) else 2

    @property
    def checked(self) -> bool:
        return self.value.endswith(".ovf")


class RegionKind(enum.Enum):
    CATCH = "catch"
    FILTER = "filter"
    FINALLY = "finally"
    FAULT = "fault"


@dataclasses.dataclass(eq=False, slots=True)
class Instruction:
    """One VM instruction.

    Equality is identity: two instructions with the same opcode and operand
    are still distinct branch targets.
    """

    opcode: Opcode
    operand: typing.Any = None
    uid: int = -1
    mnemonic: str | None = None
    # (pops, pushes) for OPAQUE instructions whose stack effect is known
    stack_effect: tuple[int, int] | None = None

    @property
    def is_branch(self) -> bool:
        return self.opcode is not None and self.opcode.is_branch

    def targets(self) -> tuple[int, ...]:
        """Target uids of a branch-family instruction (empty otherwise)."""
        if not self.is_branch:
            return ()
        if self.opcode is Opcode.SWITCH:
            return tuple(self.operand or ())
        if self.operand is None:
            return ()
        return (self.operand,)

    def retarget(self, mapping: typing.Mapping[int, int]) -> None:
        """Rewrite branch operands through *mapping* (uids not in it are kept)."""
        if not self.is_branch:
            return
        if self.opcode is Opcode.SWITCH:
            self.operand = tuple(mapping.get(t, t) for t in self.operand or ())
        elif self.operand is not None:
            self.operand = mapping.get(self.operand, self.operand)

    def falls_through(self, terminators: typing.Container[str] = ()) -> bool:
        if self.opcode is None:
            return False
        if self.opcode.is_unconditional:
            return False
        if self.opcode is Opcode.OPAQUE and self.mnemonic in terminators:
            return False
        return True

    def become(self, opcode: Opcode, operand: typing.Any = None) -> None:
        """Rewrite this instruction in place, keeping its uid."""
        self.opcode = opcode
        self.operand = operand
        self.mnemonic = None
        self.stack_effect = None

    def copy(self) -> Instruction:
        return Instruction(
            self.opcode,
            tuple(self.operand) if isinstance(self.operand, (list, tuple)) else self.operand,
            self.uid,
            self.mnemonic,
            self.stack_effect,
        )

    def __repr__(self) -> str:
        name = self.mnemonic or (self.opcode.value if self.opcode else "<null>")
        if self.operand is None:
            return f"<{self.uid}: {name}>"
        operand = self.operand.value if isinstance(self.operand, enum.Enum) else self.operand
        return f"<{self.uid}: {name} {operand!r}>"


@dataclasses.dataclass(slots=True)
class ExceptionRegion:
    """A protected range plus its handler range.

    All four boundaries are instruction uids; ends are inclusive.
    """

    kind: RegionKind
    try_start: int | None
    try_end: int | None
    handler_start: int | None
    handler_end: int | None
    catch_type: str | None = None

    def boundaries(self) -> tuple[int | None, int | None, int | None, int | None]:
        return (self.try_start, self.try_end, self.handler_start, self.handler_end)

    def copy(self) -> ExceptionRegion:
        return dataclasses.replace(self)


class InstructionArena:
    """Hands out stable instruction identities for one method body."""

    def __init__(self, start: int = 0):
        self._counter = itertools.count(start)

    def next_uid(self) -> int:
        return next(self._counter)

    def new(self, opcode: Opcode, operand: typing.Any = None, **kwargs) -> Instruction:
        return Instruction(opcode, operand, uid=self.next_uid(), **kwargs)


@dataclasses.dataclass(slots=True)
class MethodBody:
    """Ordered instructions, exception regions and local slots of one method."""

    instructions: list[Instruction]
    regions: list[ExceptionRegion] = dataclasses.field(default_factory=list)
    locals: list[str] = dataclasses.field(default_factory=list)
    name: str = "<method>"

    def __post_init__(self) -> None:
        self.ensure_uids()

    def ensure_uids(self) -> None:
        """Assign fresh uids to instructions that do not have one yet."""
        if all(ins.uid >= 0 for ins in self.instructions):
            return
        arena = self.arena()
        for ins in self.instructions:
            if ins.uid < 0:
                ins.uid = arena.next_uid()

    def arena(self) -> InstructionArena:
        used = [ins.uid for ins in self.instructions if ins.uid >= 0]
        return InstructionArena(max(used, default=-1) + 1)

    def positions(self) -> dict[int, int]:
        return {ins.uid: i for i, ins in enumerate(self.instructions)}

    def has_dispatch(self) -> bool:
        return any(ins.opcode is Opcode.SWITCH for ins in self.instructions)

    def copy(self) -> MethodBody:
        """Deep, private snapshot of the body (uids preserved)."""
        return MethodBody(
            instructions=[ins.copy() for ins in self.instructions],
            regions=[region.copy() for region in self.regions],
            locals=list(self.locals),
            name=self.name,
        )

    def __len__(self) -> int:
        return len(self.instructions)


def has_dispatch(body: MethodBody) -> bool:
    """Whether *body* contains a multi-way dispatch worth normalizing."""
    return body.has_dispatch()


@dataclasses.dataclass(eq=False)
class Block:
    """Maximal straight-line run of instructions with a single entry."""

    label: int
    instructions: list[Instruction] = dataclasses.field(default_factory=list)
    preds: set[int] = dataclasses.field(default_factory=set)
    succs: set[int] = dataclasses.field(default_factory=set)
    is_entry: bool = False

    @property
    def terminator(self) -> Instruction | None:
        return self.instructions[-1] if self.instructions else None

    def __repr__(self) -> str:
        return (
            f"Block(label={self.label}, n={len(self.instructions)}, "
            f"preds={sorted(self.preds)}, succs={sorted(self.succs)})"
        )


@dataclasses.dataclass(slots=True)
class RegionSpan:
    """Blocks covered by one exception region, in stream order."""

    region: ExceptionRegion
    try_blocks: list[int]
    handler_blocks: list[int]


@dataclasses.dataclass(frozen=True, slots=True)
class ExitRecord:
    """Pre-transform relation between an exit instruction and its region."""

    region_index: int
    bounded: bool


@dataclasses.dataclass(eq=False)
class BlockGraph:
    """Block-level view of a method body shared by every pipeline stage."""

    blocks: dict[int, Block]
    spans: list[RegionSpan]
    exits: dict[int, ExitRecord]
    locals: list[str]
    name: str
    terminators: frozenset[str] = frozenset()
    arena: InstructionArena = dataclasses.field(default_factory=InstructionArena)

    @property
    def order(self) -> list[int]:
        return list(self.blocks)

    @property
    def entry(self) -> Block | None:
        for blk in self.blocks.values():
            if blk.is_entry:
                return blk
        return None

    def next_label(self, label: int) -> int | None:
        found = False
        for other in self.blocks:
            if found:
                return other
            if other == label:
                found = True
        return None

    def instructions(self) -> typing.Iterator[Instruction]:
        for blk in self.blocks.values():
            yield from blk.instructions

    def instruction_count(self) -> int:
        return sum(len(blk.instructions) for blk in self.blocks.values())

    def owner_map(self) -> dict[int, int]:
        """uid -> label of the block currently holding that instruction."""
        return {
            ins.uid: blk.label
            for blk in self.blocks.values()
            for ins in blk.instructions
        }

    def resolve_target(self, label: int) -> int | None:
        """First live instruction reached when control enters block *label*.

        Emptied blocks forward to their fall-through neighbour. Returns None
        when the label is gone or the chain runs off the end of the method.
        """
        seen: set[int] = set()
        current: int | None = label
        while current is not None and current in self.blocks and current not in seen:
            seen.add(current)
            blk = self.blocks[current]
            if blk.instructions:
                return blk.instructions[0].uid
            current = self.next_label(current)
        return None

    def handler_roots(self) -> list[int]:
        return [span.handler_blocks[0] for span in self.spans if span.handler_blocks]
