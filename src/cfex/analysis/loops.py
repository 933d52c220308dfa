"""Backward-branch detection.

Reports branches whose target sits at or before the branch in stream
order. The result is informational: nothing here restructures the graph.
"""
from __future__ import annotations

import dataclasses

from cfex.core.logging import getLogger
from cfex.ir.model import BlockGraph

logger = getLogger("CFEX.analysis")


@dataclasses.dataclass(frozen=True, slots=True)
class BackEdge:
    branch_uid: int
    source_label: int
    target_label: int


def find_back_edges(graph: BlockGraph) -> list[BackEdge]:
    order = {label: i for i, label in enumerate(graph.blocks)}
    edges = []
    for blk in graph.blocks.values():
        last = blk.terminator
        if last is None or not last.is_branch:
            continue
        for target in sorted(blk.succs):
            if target in order and order[target] <= order[blk.label] and target in last.targets():
                edges.append(BackEdge(last.uid, blk.label, target))
    if edges:
        logger.debug("%d backward branch(es) left as-is", len(edges))
    return edges
