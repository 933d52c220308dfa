from __future__ import annotations

from cfex._compat import override
from cfex.core.logging import getLogger
from cfex.ir.model import Instruction, Opcode
from cfex.passes.handler import NormalizationPass, PassContext
from cfex.passes.modifier import DeferredGraphModifier

logger = getLogger("CFEX.pass.junk")


def junk_in(instructions: list[Instruction]) -> list[Instruction]:
    """Instructions of one block that can be dropped without effect.

    No-ops always go. A discard cancels the duplicate immediately in front
    of it in the stream that remains, so ``dup; dup; pop; pop`` drops all
    four.
    """
    kept: list[Instruction] = []
    junk: list[Instruction] = []
    for ins in instructions:
        if ins.opcode is Opcode.NOP:
            junk.append(ins)
        elif ins.opcode is Opcode.POP and kept and kept[-1].opcode is Opcode.DUP:
            junk.append(kept.pop())
            junk.append(ins)
        else:
            kept.append(ins)
    return junk


class JunkEliminator(NormalizationPass):
    NAME = "Junk eliminator"
    DESCRIPTION = "Remove no-ops and duplicate/discard pairs"
    registrant_name = "junk_eliminator"

    @override
    def run(self, context: PassContext) -> int:
        modifier = DeferredGraphModifier(context.graph)
        for blk in context.graph.blocks.values():
            for ins in junk_in(blk.instructions):
                modifier.queue_insn_remove(blk.label, ins.uid, repr(ins))
        removed = modifier.apply()
        if removed:
            logger.info("Removed %d junk instruction(s)", removed)
        return removed
