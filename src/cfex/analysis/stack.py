"""Abstract stack interpretation.

Two analyses share the :class:`ConstantAnalysis` interface:

``forward``
    One pass over the blocks in stream order. A block inherits the stack of
    the previous block only when that block is its sole predecessor; every
    other block starts from an unknown-depth stack.
    Nothing is merged at join points.

``worklist``
    Iterates block entry states to a fixed point, joining predecessor
    states. Conflicting ``Known`` values meet at ``UNKNOWN``; conflicting
    depths give an unknown-depth stack.

Both record, per instruction uid, the value the instruction produced
(or, for stores and dispatch, the value it consumed) together with the
simulated stack depth in front of it.
"""
from __future__ import annotations

import abc
import collections
import dataclasses
import typing

from cfex.core.config import ConfigConstants
from cfex.core.logging import getLogger
from cfex.core.registry import Registrant
from cfex.errors import NumericOverflow
from cfex.ir.arith import evaluate, is_integer_literal
from cfex.ir.model import Block, BlockGraph, Instruction, Opcode, RegionKind

logger = getLogger("CFEX.analysis")


@dataclasses.dataclass(frozen=True, slots=True)
class Known:
    value: typing.Any

    def __repr__(self) -> str:
        return f"Known({self.value!r})"


class _Unknown:
    __slots__ = ()

    def __repr__(self) -> str:
        return "Unknown"


UNKNOWN = _Unknown()

AbstractValue = typing.Union[Known, _Unknown]


def join_values(a: AbstractValue, b: AbstractValue) -> AbstractValue:
    if isinstance(a, Known) and isinstance(b, Known):
        if type(a.value) is type(b.value) and a.value == b.value:
            return a
    return UNKNOWN


@dataclasses.dataclass(slots=True)
class AbstractStack:
    """Simulated evaluation stack.

    When ``depth_known`` is False the entries below ``values`` are unknown
    in number and content; popping past ``values`` yields ``UNKNOWN``.
    """

    values: list[AbstractValue] = dataclasses.field(default_factory=list)
    depth_known: bool = True

    @classmethod
    def unknown(cls) -> AbstractStack:
        return cls([], depth_known=False)

    @property
    def depth(self) -> int | None:
        return len(self.values) if self.depth_known else None

    def push(self, value: AbstractValue) -> None:
        self.values.append(value)

    def pop(self) -> AbstractValue:
        if self.values:
            return self.values.pop()
        # underflow on a known-depth stack means the stream is not verifiable;
        # either way nothing is known about the value
        self.depth_known = False
        return UNKNOWN

    def popn(self, count: int) -> list[AbstractValue]:
        """Pop *count* values, returned deepest first."""
        popped = [self.pop() for _ in range(count)]
        popped.reverse()
        return popped

    def invalidate(self) -> None:
        self.values.clear()
        self.depth_known = False

    def copy(self) -> AbstractStack:
        return AbstractStack(list(self.values), self.depth_known)

    def join(self, other: AbstractStack) -> AbstractStack:
        if self.depth_known and other.depth_known and len(self.values) == len(other.values):
            return AbstractStack(
                [join_values(a, b) for a, b in zip(self.values, other.values)]
            )
        return AbstractStack.unknown()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, AbstractStack):
            return NotImplemented
        return self.depth_known == other.depth_known and self.values == other.values


@dataclasses.dataclass
class ConstantFacts:
    """Per-instruction results of one analysis run.

    Only valid for the instruction stream it was computed on; any stage that
    changes the stream must ask for fresh facts.
    """

    values: dict[int, AbstractValue] = dataclasses.field(default_factory=dict)
    depths: dict[int, int | None] = dataclasses.field(default_factory=dict)
    analysis: str = "forward"

    def get(self, uid: int) -> AbstractValue:
        return self.values.get(uid, UNKNOWN)

    def known(self, uid: int) -> bool:
        return isinstance(self.values.get(uid), Known)

    def value(self, uid: int) -> typing.Any:
        fact = self.values.get(uid)
        if not isinstance(fact, Known):
            raise KeyError(uid)
        return fact.value

    def known_int(self, uid: int) -> int | None:
        fact = self.values.get(uid)
        if isinstance(fact, Known) and is_integer_literal(fact.value):
            return fact.value
        return None

    def depth_before(self, uid: int) -> int | None:
        return self.depths.get(uid)

    def __len__(self) -> int:
        return sum(1 for v in self.values.values() if isinstance(v, Known))


_BINARY_CONDITIONS = frozenset(
    {"beq", "bne.un", "bge", "bge.un", "bgt", "bgt.un", "ble", "ble.un", "blt", "blt.un"}
)


def condition_arity(ins: Instruction) -> int:
    name = (ins.mnemonic or "").removesuffix(".s")
    return 2 if name in _BINARY_CONDITIONS else 1


class ConstantAnalysis(Registrant, abc.ABC):
    """Computes :class:`ConstantFacts` for a block graph."""

    registrant_name: typing.ClassVar[str]

    def __init__(
        self,
        int_width: int = 4,
        overflow: str = "wrap",
        type_sizes: typing.Mapping[str, int] | None = None,
    ):
        self.int_width = int_width
        self.overflow = overflow
        self.type_sizes = (
            type_sizes if type_sizes is not None else ConfigConstants.PRIMITIVE_TYPE_SIZES
        )

    @abc.abstractmethod
    def run(self, graph: BlockGraph) -> ConstantFacts:
        """Analyse *graph* and return a fresh set of facts."""

    def entry_states(self, graph: BlockGraph) -> dict[int, AbstractStack]:
        """Stacks at the method entry and at every handler start."""
        states: dict[int, AbstractStack] = {}
        entry = graph.entry
        if entry is not None:
            states[entry.label] = AbstractStack()
        for span in graph.spans:
            if not span.handler_blocks:
                continue
            if span.region.kind in (RegionKind.CATCH, RegionKind.FILTER):
                # the thrown object
                states[span.handler_blocks[0]] = AbstractStack([UNKNOWN])
            else:
                states[span.handler_blocks[0]] = AbstractStack()
        return states

    def transfer(
        self, block: Block, stack: AbstractStack, facts: ConstantFacts | None
    ) -> AbstractStack:
        """Simulate *block* on *stack* (mutated) and optionally record facts."""
        for ins in block.instructions:
            if facts is not None:
                facts.depths[ins.uid] = stack.depth
            fact = self.step(ins, stack)
            if facts is not None and fact is not None:
                facts.values[ins.uid] = fact
        return stack

    def step(self, ins: Instruction, stack: AbstractStack) -> AbstractValue | None:
        op = ins.opcode
        if op is Opcode.PUSH_CONST:
            value: AbstractValue = Known(ins.operand)
            stack.push(value)
            return value
        if op is Opcode.LOAD_LOCAL:
            stack.push(UNKNOWN)
            return UNKNOWN
        if op is Opcode.STORE_LOCAL:
            return stack.pop()
        if op is Opcode.ARITH:
            value = self.evaluate(ins, stack.popn(ins.operand.arity))
            stack.push(value)
            return value
        if op is Opcode.DUP:
            value = stack.pop()
            stack.push(value)
            stack.push(value)
            return value
        if op is Opcode.POP:
            stack.pop()
            return None
        if op is Opcode.NOP or op is Opcode.BRANCH:
            return None
        if op is Opcode.COND_BRANCH:
            stack.popn(condition_arity(ins))
            return None
        if op is Opcode.SWITCH:
            return stack.pop()
        if op is Opcode.LEAVE:
            # leaving a protected region empties the evaluation stack
            stack.values.clear()
            stack.depth_known = True
            return None
        if op is Opcode.SIZEOF:
            size = self.type_sizes.get(ins.operand) if isinstance(ins.operand, str) else None
            value = Known(size) if size is not None else UNKNOWN
            stack.push(value)
            return value
        if ins.stack_effect is not None:
            pops, pushes = ins.stack_effect
            stack.popn(pops)
            for _ in range(pushes):
                stack.push(UNKNOWN)
            return UNKNOWN if pushes else None
        stack.invalidate()
        return None

    def evaluate(self, ins: Instruction, operands: list[AbstractValue]) -> AbstractValue:
        if not all(isinstance(v, Known) for v in operands):
            return UNKNOWN
        try:
            result = evaluate(
                ins.operand,
                [v.value for v in operands],  # type: ignore[union-attr]
                width=self.int_width,
                overflow=self.overflow,
            )
        except NumericOverflow as e:
            logger.debug("%r not folded: %s", ins, e)
            return UNKNOWN
        return Known(result) if result is not None else UNKNOWN


class ForwardStackInterpreter(ConstantAnalysis):
    """Single forward scan in stream order, no merging at joins."""

    registrant_name = "forward"

    def run(self, graph: BlockGraph) -> ConstantFacts:
        facts = ConstantFacts(analysis=self.registrant_name)
        roots = self.entry_states(graph)
        previous: Block | None = None
        carried: AbstractStack | None = None
        for block in graph.blocks.values():
            if block.label in roots:
                stack = roots[block.label].copy()
            elif previous is not None and carried is not None and block.preds == {previous.label}:
                stack = carried
            else:
                stack = AbstractStack.unknown()
            carried = self.transfer(block, stack, facts)
            previous = block
        if logger.debug_on:
            logger.debug("forward pass: %d known fact(s)", len(facts))
        return facts


class WorklistStackInterpreter(ConstantAnalysis):
    """Fixed-point solver merging stack states at every block join."""

    registrant_name = "worklist"

    # lattice height is bounded, this only guards malformed graphs
    MAX_VISITS_PER_BLOCK = 64

    def run(self, graph: BlockGraph) -> ConstantFacts:
        roots = self.entry_states(graph)
        entry: dict[int, AbstractStack] = {label: s.copy() for label, s in roots.items()}
        exit_states: dict[int, AbstractStack] = {}
        visits: collections.Counter[int] = collections.Counter()
        worklist = collections.deque(label for label in graph.blocks if label in entry)
        queued = set(worklist)

        while worklist:
            label = worklist.popleft()
            queued.discard(label)
            visits[label] += 1
            block = graph.blocks[label]
            out = self.transfer(block, entry[label].copy(), None)
            if exit_states.get(label) == out:
                continue
            exit_states[label] = out
            for succ in block.succs:
                if succ in roots:
                    continue
                merged = out.copy() if succ not in entry else entry[succ].join(out)
                if succ in entry and merged == entry[succ]:
                    continue
                if visits[succ] >= self.MAX_VISITS_PER_BLOCK:
                    merged = AbstractStack.unknown()
                    if entry.get(succ) == merged:
                        continue
                entry[succ] = merged
                if succ not in queued:
                    worklist.append(succ)
                    queued.add(succ)

        facts = ConstantFacts(analysis=self.registrant_name)
        for label, block in graph.blocks.items():
            stack = entry[label].copy() if label in entry else AbstractStack.unknown()
            self.transfer(block, stack, facts)
        if logger.debug_on:
            logger.debug("worklist solver: %d known fact(s) after %d visit(s)", len(facts), sum(visits.values()))
        return facts


def analysis_for(name: str, **kwargs) -> ConstantAnalysis:
    """Instantiate the registered analysis called *name*."""
    return ConstantAnalysis.get(name)(**kwargs)
