"""Block graph construction and reachability pruning.

The builder splits the flat stream at every branch target, after every
instruction without a fall-through successor and at every exception-region
boundary. Each block is labelled with the uid of its leader, so a branch to
uid ``u`` enters the block labelled ``u``.
"""
from __future__ import annotations

import collections
import typing

from cfex.core.config import ConfigConstants
from cfex.core.logging import getLogger
from cfex.errors import IssueKind, StructuralInconsistency, ValidationIssue
from cfex.ir.model import (
    Block,
    BlockGraph,
    ExceptionRegion,
    ExitRecord,
    Instruction,
    MethodBody,
    Opcode,
    RegionSpan,
)

logger = getLogger("CFEX.cfg")


def _region_positions(
    region: ExceptionRegion, index: int, positions: typing.Mapping[int, int]
) -> tuple[int, int, int, int]:
    resolved = []
    for name, uid in zip(
        ("try_start", "try_end", "handler_start", "handler_end"), region.boundaries()
    ):
        if uid is None or uid not in positions:
            raise StructuralInconsistency(
                [
                    ValidationIssue(
                        IssueKind.DANGLING_REGION,
                        f"region #{index} {name} refers to missing instruction",
                        uid,
                    )
                ]
            )
        resolved.append(positions[uid])
    try_start, try_end, handler_start, handler_end = resolved
    if try_start > try_end or handler_start > handler_end:
        raise StructuralInconsistency(
            [ValidationIssue(IssueKind.EMPTY_REGION, f"region #{index} has an inverted range")]
        )
    return try_start, try_end, handler_start, handler_end


def _dangling_branch(ins: Instruction) -> StructuralInconsistency:
    return StructuralInconsistency(
        [ValidationIssue(IssueKind.DANGLING_BRANCH, f"{ins!r} targets missing instruction", ins.uid)]
    )


def innermost_region(
    position: int, ranges: typing.Sequence[tuple[int, int, int, int]]
) -> int | None:
    """Index of the smallest region whose try or handler range holds *position*."""
    best: tuple[int, int] | None = None
    for index, (ts, te, hs, he) in enumerate(ranges):
        for start, end in ((ts, te), (hs, he)):
            if start <= position <= end:
                size = end - start
                if best is None or size < best[0]:
                    best = (size, index)
    return best[1] if best is not None else None


def build_block_graph(
    body: MethodBody,
    terminators: typing.Iterable[str] = ConfigConstants.DEFAULT_TERMINATORS,
) -> BlockGraph:
    """Partition *body* into a :class:`BlockGraph` with edges and exit records.

    Raises :class:`StructuralInconsistency` when a branch operand or region
    boundary does not name an instruction of *body*.
    """
    terminators = frozenset(terminators)
    instructions = body.instructions
    positions = body.positions()
    ranges = [_region_positions(r, i, positions) for i, r in enumerate(body.regions)]

    leaders: set[int] = {0} if instructions else set()
    for pos, ins in enumerate(instructions):
        for target in ins.targets():
            if target not in positions:
                raise _dangling_branch(ins)
            leaders.add(positions[target])
        if ins.is_branch or not ins.falls_through(terminators):
            leaders.add(pos + 1)
    for ts, te, hs, he in ranges:
        leaders.update((ts, te + 1, hs, he + 1))
    starts = sorted(p for p in leaders if p < len(instructions))

    blocks: dict[int, Block] = {}
    for i, start in enumerate(starts):
        end = starts[i + 1] if i + 1 < len(starts) else len(instructions)
        run = instructions[start:end]
        blocks[run[0].uid] = Block(label=run[0].uid, instructions=list(run), is_entry=start == 0)

    spans = []
    for region, (ts, te, hs, he) in zip(body.regions, ranges):
        spans.append(
            RegionSpan(
                region=region,
                try_blocks=[instructions[p].uid for p in starts if ts <= p <= te],
                handler_blocks=[instructions[p].uid for p in starts if hs <= p <= he],
            )
        )

    exits: dict[int, ExitRecord] = {}
    for pos, ins in enumerate(instructions):
        if ins.opcode is not Opcode.LEAVE:
            continue
        index = innermost_region(pos, ranges)
        if index is None:
            continue
        if not isinstance(ins.operand, int) or ins.operand not in positions:
            raise _dangling_branch(ins)
        handler_end = ranges[index][3]
        exits[ins.uid] = ExitRecord(index, positions[ins.operand] <= handler_end + 1)

    graph = BlockGraph(
        blocks=blocks,
        spans=spans,
        exits=exits,
        locals=list(body.locals),
        name=body.name,
        terminators=terminators,
        arena=body.arena(),
    )
    compute_edges(graph)
    if logger.debug_on:
        logger.debug(
            "Built %d block(s) over %d instruction(s), %d region(s), %d exit(s)",
            len(blocks),
            graph.instruction_count(),
            len(spans),
            len(exits),
        )
    return graph


def block_successors(graph: BlockGraph, block: Block) -> list[int]:
    """Labels *block* can transfer control to, in target order."""
    succs: list[int] = []
    last = block.terminator
    if last is not None:
        owners = None
        for target in last.targets():
            if target in graph.blocks:
                label = target
            else:
                owners = owners if owners is not None else graph.owner_map()
                label = owners.get(target)
            if label is not None and label not in succs:
                succs.append(label)
    if last is None or last.falls_through(graph.terminators):
        nxt = graph.next_label(block.label)
        if nxt is not None and nxt not in succs:
            succs.append(nxt)
    return succs


def compute_edges(graph: BlockGraph) -> None:
    """Recompute every predecessor/successor set from block terminators."""
    for blk in graph.blocks.values():
        blk.preds.clear()
        blk.succs.clear()
    for blk in graph.blocks.values():
        for succ in block_successors(graph, blk):
            blk.succs.add(succ)
            graph.blocks[succ].preds.add(blk.label)


def reachable_labels(graph: BlockGraph) -> set[int]:
    """Blocks reachable from the entry block or from any handler start."""
    roots = []
    if graph.entry is not None:
        roots.append(graph.entry.label)
    roots.extend(graph.handler_roots())
    seen: set[int] = set()
    queue = collections.deque(r for r in roots if r in graph.blocks)
    while queue:
        label = queue.popleft()
        if label in seen:
            continue
        seen.add(label)
        queue.extend(s for s in graph.blocks[label].succs if s not in seen)
    return seen


def remove_unreachable(graph: BlockGraph) -> list[int]:
    """Delete blocks no root reaches. Returns the removed labels."""
    live = reachable_labels(graph)
    dead = [label for label in graph.blocks if label not in live]
    if not dead:
        return []
    dead_uids = set()
    for label in dead:
        blk = graph.blocks.pop(label)
        dead_uids.update(ins.uid for ins in blk.instructions)
        logger.debug("Removing unreachable block %d (%d instruction(s))", label, len(blk.instructions))
    dead_set = set(dead)
    for blk in graph.blocks.values():
        blk.preds -= dead_set
        blk.succs -= dead_set
    for span in graph.spans:
        span.try_blocks = [b for b in span.try_blocks if b not in dead_set]
        span.handler_blocks = [b for b in span.handler_blocks if b not in dead_set]
    for uid in dead_uids & set(graph.exits):
        del graph.exits[uid]
    return dead


def _same_regions(graph: BlockGraph, a: int, b: int) -> bool:
    return all(
        (a in span.try_blocks) == (b in span.try_blocks)
        and (a in span.handler_blocks) == (b in span.handler_blocks)
        for span in graph.spans
    )


def merge_fallthrough_blocks(graph: BlockGraph) -> list[int]:
    """Fold each block into the block before it when nothing else enters it.

    Pruning leaves behind leaders that only existed because a now-dead
    block branched to them. A block is merged when its stream predecessor
    ends without a branch and falls through, no live branch names any of
    its instructions, and both blocks sit in the same exception regions.
    Returns the labels that were merged away.
    """
    targeted = {target for ins in graph.instructions() for target in ins.targets()}
    merged: list[int] = []
    prev: Block | None = None
    absorbed: set[int] = set()
    for label in list(graph.blocks):
        blk = graph.blocks[label]
        last = prev.terminator if prev is not None else None
        if (
            prev is not None
            and not blk.is_entry
            and (last is None or (not last.is_branch and last.falls_through(graph.terminators)))
            and blk.preds <= absorbed
            and label not in targeted
            and not any(ins.uid in targeted for ins in blk.instructions)
            and _same_regions(graph, prev.label, label)
        ):
            prev.instructions.extend(blk.instructions)
            del graph.blocks[label]
            absorbed.add(label)
            merged.append(label)
            continue
        prev = blk
        absorbed = {label}
    if not merged:
        return merged
    gone = set(merged)
    for span in graph.spans:
        span.try_blocks = [b for b in span.try_blocks if b not in gone]
        span.handler_blocks = [b for b in span.handler_blocks if b not in gone]
    compute_edges(graph)
    logger.debug("Merged %d fall-through block(s)", len(merged))
    return merged


def prune(graph: BlockGraph) -> list[int]:
    """Remove unreachable blocks, then re-partition what survives.

    Returns the labels of the removed blocks.
    """
    dead = remove_unreachable(graph)
    if dead:
        merge_fallthrough_blocks(graph)
    return dead
