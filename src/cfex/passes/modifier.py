"""
Deferred modifications of a :class:`BlockGraph`.

Passes walk the graph and queue what they want changed; nothing is touched
until :meth:`DeferredGraphModifier.apply` runs. Queued changes store only
instruction uids, never list positions, so they stay valid while earlier
changes delete neighbouring instructions.

Supported modification types:
- INSN_CONVERT_TO_BRANCH: turn a dispatch into an unconditional branch
- INSN_REPLACE_WITH_CONST: turn an instruction into a constant push
- INSN_INSERT_BEFORE: insert a fresh instruction in front of another
- INSN_REMOVE: delete an instruction (applied last)

Example::

    modifier = DeferredGraphModifier(graph)
    for blk in graph.blocks.values():
        for ins in blk.instructions:
            if ins.opcode is Opcode.NOP:
                modifier.queue_insn_remove(blk.label, ins.uid, "nop")
    changes = modifier.apply()
"""
from __future__ import annotations

import typing
from dataclasses import dataclass, field
from enum import Enum, auto

from cfex.analysis.cfg import compute_edges
from cfex.core.logging import getLogger
from cfex.ir.model import BlockGraph, Opcode

logger = getLogger("CFEX.pass")


class ModificationType(Enum):
    """Types of graph modifications that can be queued."""

    INSN_CONVERT_TO_BRANCH = auto()
    INSN_REPLACE_WITH_CONST = auto()
    INSN_INSERT_BEFORE = auto()
    INSN_REMOVE = auto()


_PRIORITY = {
    ModificationType.INSN_CONVERT_TO_BRANCH: 10,
    ModificationType.INSN_REPLACE_WITH_CONST: 20,
    ModificationType.INSN_INSERT_BEFORE: 30,
    ModificationType.INSN_REMOVE: 100,
}

# Unique sentinel so a constant payload of None is still distinguishable.
_NO_PAYLOAD = object()


@dataclass
class GraphModification:
    """Represents a single queued graph modification."""

    mod_type: ModificationType
    block_label: int
    insn_uid: int
    # Branch target uid, constant value, or the opcode to insert
    payload: typing.Any = _NO_PAYLOAD
    # Priority for ordering (lower = earlier)
    priority: int = 100
    # Description for logging
    description: str = ""

    @property
    def key(self) -> tuple:
        return (self.mod_type, self.insn_uid)


@dataclass
class DeferredGraphModifier:
    """
    Queue-based graph modifier that defers all changes until apply() is called.

    Key Features:
        - Drops exact duplicates
        - Keeps the first of two conflicting changes to the same instruction
        - Applies in priority order (rewrites before removals)
        - Recomputes block edges after any successful change
    """

    graph: BlockGraph
    modifications: list[GraphModification] = field(default_factory=list)
    _applied: bool = False

    def reset(self) -> None:
        """Clear all queued modifications."""
        self.modifications.clear()
        self._applied = False

    def _queue(
        self,
        mod_type: ModificationType,
        block_label: int,
        insn_uid: int,
        payload: typing.Any = _NO_PAYLOAD,
        description: str = "",
    ) -> None:
        mod = GraphModification(
            mod_type=mod_type,
            block_label=block_label,
            insn_uid=insn_uid,
            payload=payload,
            priority=_PRIORITY[mod_type],
            description=description,
        )
        self.modifications.append(mod)
        logger.debug("Queued %s: %s", mod_type.name, description or insn_uid)

    def queue_convert_to_branch(
        self, block_label: int, insn_uid: int, target_uid: int, description: str = ""
    ) -> None:
        self._queue(
            ModificationType.INSN_CONVERT_TO_BRANCH, block_label, insn_uid, target_uid, description
        )

    def queue_replace_with_const(
        self, block_label: int, insn_uid: int, value: typing.Any, description: str = ""
    ) -> None:
        self._queue(
            ModificationType.INSN_REPLACE_WITH_CONST, block_label, insn_uid, value, description
        )

    def queue_insert_before(
        self, block_label: int, insn_uid: int, opcode: Opcode, description: str = ""
    ) -> None:
        self._queue(ModificationType.INSN_INSERT_BEFORE, block_label, insn_uid, opcode, description)

    def queue_insn_remove(self, block_label: int, insn_uid: int, description: str = "") -> None:
        self._queue(ModificationType.INSN_REMOVE, block_label, insn_uid, description=description)

    def has_modifications(self) -> bool:
        """Check if there are any queued modifications."""
        return len(self.modifications) > 0

    def coalesce(self) -> int:
        """
        Remove duplicate and conflicting modifications.

        Two modifications with the same type and instruction but different
        payloads conflict; the first one queued wins.

        Returns:
            Number of modifications removed.
        """
        if not self.modifications:
            return 0
        original_count = len(self.modifications)
        seen: dict[tuple, GraphModification] = {}
        unique = []
        for mod in self.modifications:
            first = seen.get(mod.key)
            if first is None:
                seen[mod.key] = mod
                unique.append(mod)
                continue
            if first.payload is not mod.payload and first.payload != mod.payload:
                logger.warning(
                    "CONFLICT RESOLVED: uid %d %s - keeping %r, discarding %r",
                    mod.insn_uid,
                    mod.mod_type.name,
                    first.payload,
                    mod.payload,
                )
        removed_count = original_count - len(unique)
        if removed_count > 0:
            logger.debug(
                "Coalesced modifications: removed %d duplicates/conflicts (%d -> %d)",
                removed_count,
                original_count,
                len(unique),
            )
        self.modifications = unique
        return removed_count

    def apply(self) -> int:
        """
        Apply all queued modifications in priority order.

        Returns:
            Number of successful modifications applied.
        """
        if self._applied:
            logger.warning("DeferredGraphModifier.apply() called twice")
            return 0
        self._applied = True
        if not self.modifications:
            return 0

        self.coalesce()
        sorted_mods = sorted(self.modifications, key=lambda m: m.priority)
        successful = 0
        for mod in sorted_mods:
            if self._apply_single(mod):
                successful += 1
            else:
                logger.warning("Could not apply %s to uid %d", mod.mod_type.name, mod.insn_uid)

        if successful:
            compute_edges(self.graph)
        logger.debug("Applied %d/%d modifications", successful, len(sorted_mods))
        return successful

    def _apply_single(self, mod: GraphModification) -> bool:
        blk = self.graph.blocks.get(mod.block_label)
        if blk is None:
            return False
        index = next(
            (i for i, ins in enumerate(blk.instructions) if ins.uid == mod.insn_uid), None
        )
        if index is None:
            return False
        ins = blk.instructions[index]

        if mod.mod_type == ModificationType.INSN_CONVERT_TO_BRANCH:
            ins.become(Opcode.BRANCH, mod.payload)
        elif mod.mod_type == ModificationType.INSN_REPLACE_WITH_CONST:
            ins.become(Opcode.PUSH_CONST, mod.payload)
        elif mod.mod_type == ModificationType.INSN_INSERT_BEFORE:
            blk.instructions.insert(index, self.graph.arena.new(mod.payload))
        elif mod.mod_type == ModificationType.INSN_REMOVE:
            del blk.instructions[index]
        else:
            logger.warning("Unknown modification type: %s", mod.mod_type)
            return False
        return True
