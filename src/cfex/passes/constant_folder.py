"""Fold size queries and constant arithmetic chains into constant pushes.

Inside one block the folder keeps a view of the stream as it will look
once the queued folds are applied. An arithmetic instruction folds only
when the operands directly in front of it in that view are integer
constant pushes (original or already folded) and the analysis proved the
same result. The arithmetic instruction keeps its uid and becomes the
push; its operand pushes are deleted.
"""
from __future__ import annotations

import typing

from cfex._compat import override
from cfex.core.logging import getLogger
from cfex.errors import NumericOverflow
from cfex.ir.arith import evaluate, is_integer_literal
from cfex.ir.model import Block, Instruction, Opcode
from cfex.passes.handler import ConfigParam, NormalizationPass, PassContext
from cfex.passes.modifier import DeferredGraphModifier

logger = getLogger("CFEX.pass.fold")

# Marks a view entry that is not an integer constant push
_OPAQUE = object()


class ConstantFolder(NormalizationPass):
    NAME = "Constant folder"
    DESCRIPTION = "Replace size queries and pure constant arithmetic with a constant push"
    CONFIG_SCHEMA = (
        ConfigParam("fold_sizeof", bool, True, "Fold size queries of known primitive types"),
        ConfigParam("fold_arithmetic", bool, True, "Fold arithmetic over constant pushes"),
    )
    registrant_name = "constant_folder"

    @override
    def run(self, context: PassContext) -> int:
        modifier = DeferredGraphModifier(context.graph)
        folded = 0
        for blk in context.graph.blocks.values():
            folded += self._fold_block(blk, context, modifier)
        if folded:
            modifier.apply()
            logger.info("Folded %d constant computation(s)", folded)
        return folded

    def _fold_block(
        self, blk: Block, context: PassContext, modifier: DeferredGraphModifier
    ) -> int:
        sizes = context.analysis.type_sizes
        fold_sizeof = self.option("fold_sizeof")
        fold_arithmetic = self.option("fold_arithmetic")
        view: list[tuple[Instruction, typing.Any]] = []
        folded = 0
        for ins in blk.instructions:
            if ins.opcode is Opcode.PUSH_CONST and is_integer_literal(ins.operand):
                view.append((ins, ins.operand))
            elif (
                ins.opcode is Opcode.SIZEOF
                and fold_sizeof
                and isinstance(ins.operand, str)
                and ins.operand in sizes
            ):
                size = sizes[ins.operand]
                modifier.queue_replace_with_const(blk.label, ins.uid, size, f"sizeof {ins.operand} = {size}")
                view.append((ins, size))
                folded += 1
            elif ins.opcode is Opcode.ARITH and fold_arithmetic:
                value = self._fold_arith(ins, view, context)
                if value is None:
                    view.append((ins, _OPAQUE))
                    continue
                arity = ins.operand.arity
                for operand, _ in view[-arity:]:
                    modifier.queue_insn_remove(blk.label, operand.uid, f"operand of {ins!r}")
                del view[-arity:]
                modifier.queue_replace_with_const(blk.label, ins.uid, value, f"{ins!r} = {value}")
                view.append((ins, value))
                folded += 1
            else:
                if ins.opcode is Opcode.SIZEOF and logger.debug_on:
                    logger.debug("Unknown size for %r, left as-is", ins)
                view.append((ins, _OPAQUE))
        return folded

    def _fold_arith(
        self,
        ins: Instruction,
        view: list[tuple[Instruction, typing.Any]],
        context: PassContext,
    ) -> int | None:
        arity = ins.operand.arity
        if len(view) < arity:
            return None
        operands = [value for _, value in view[-arity:]]
        if any(value is _OPAQUE for value in operands):
            return None
        config = context.config
        try:
            value = evaluate(ins.operand, operands, width=config.int_width, overflow=config.overflow)
        except NumericOverflow as e:
            logger.debug("%r not folded: %s", ins, e)
            return None
        if value is None:
            return None
        proven = context.facts.known_int(ins.uid)
        if proven != value:
            logger.debug("%r not folded: analysis proved %r, operands give %r", ins, proven, value)
            return None
        return value
