"""Collapse dispatches whose selector is a proven constant."""
from __future__ import annotations

from cfex._compat import override
from cfex.analysis.stack import ConstantFacts
from cfex.core.logging import getLogger
from cfex.ir.model import Block, Opcode
from cfex.passes.handler import NormalizationPass, PassContext
from cfex.passes.modifier import DeferredGraphModifier

logger = getLogger("CFEX.pass.switch")

# Producers that can be dropped together with the value they pushed
_PURE_PRODUCERS = frozenset({Opcode.PUSH_CONST, Opcode.LOAD_LOCAL, Opcode.SIZEOF})


def selector_value(block: Block, facts: ConstantFacts) -> int | None:
    """Proven selector consumed by the dispatch ending *block*, if any.

    Falls back to the ``store x; load x; switch`` chain when the consumed
    value itself is unknown.
    """
    switch = block.instructions[-1]
    value = facts.known_int(switch.uid)
    if value is not None:
        return value
    if len(block.instructions) >= 3:
        store, load = block.instructions[-3], block.instructions[-2]
        if (
            store.opcode is Opcode.STORE_LOCAL
            and load.opcode is Opcode.LOAD_LOCAL
            and store.operand == load.operand
        ):
            return facts.known_int(store.uid)
    return None


class SwitchResolver(NormalizationPass):
    NAME = "Switch resolver"
    DESCRIPTION = "Replace a dispatch with a constant in-range selector by a direct branch"
    registrant_name = "switch_resolver"

    @override
    def run(self, context: PassContext) -> int:
        graph = context.graph
        facts = context.facts
        modifier = DeferredGraphModifier(graph)
        resolved = 0
        for blk in graph.blocks.values():
            switch = blk.terminator
            if switch is None or switch.opcode is not Opcode.SWITCH:
                continue
            targets = switch.targets()
            value = selector_value(blk, facts)
            if value is None:
                continue
            if not 0 <= value < len(targets):
                logger.info(
                    "Selector %d out of range for %d target(s) at %r, left as-is",
                    value,
                    len(targets),
                    switch,
                )
                continue
            target = targets[value]
            # the branch no longer consumes the selector
            producer = blk.instructions[-2] if len(blk.instructions) >= 2 else None
            if producer is not None and producer.opcode in _PURE_PRODUCERS:
                modifier.queue_insn_remove(blk.label, producer.uid, f"selector producer {producer!r}")
            else:
                modifier.queue_insert_before(blk.label, switch.uid, Opcode.POP, "discard selector")
            modifier.queue_convert_to_branch(
                blk.label, switch.uid, target, f"{switch!r} -> case {value} ({target})"
            )
            resolved += 1
        if resolved:
            modifier.apply()
            logger.info("Resolved %d dispatch site(s)", resolved)
        return resolved
