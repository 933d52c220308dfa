"""Flatten a block graph back into a method body and validate it.

Blocks are emitted in their current order. Branch operands are relinked to
the first live instruction of the block they name, following emptied
blocks through their fall-through successor. The result is committed only
when :func:`validate` finds nothing wrong.
"""
from __future__ import annotations

import typing

from cfex.core.logging import getLogger
from cfex.errors import IssueKind, StructuralInconsistency, ValidationIssue
from cfex.ir.model import BlockGraph, Instruction, MethodBody

logger = getLogger("CFEX.reconstruct")


def flatten(graph: BlockGraph) -> list[Instruction]:
    return list(graph.instructions())


def live_target(
    graph: BlockGraph, uid: int | None, owners: typing.Mapping[int, int] | None = None
) -> int | None:
    """Live instruction uid control reaches when branching to *uid*."""
    if uid is None:
        return None
    if uid in graph.blocks:
        return graph.resolve_target(uid)
    owners = owners if owners is not None else graph.owner_map()
    return uid if uid in owners else None


def span_bounds(graph: BlockGraph, labels: typing.Iterable[int]) -> tuple[int, int] | None:
    """First and last live instruction uid of the surviving blocks in *labels*."""
    first = last = None
    for label in labels:
        blk = graph.blocks.get(label)
        if blk is None or not blk.instructions:
            continue
        if first is None:
            first = blk.instructions[0].uid
        last = blk.instructions[-1].uid
    if first is None or last is None:
        return None
    return first, last


def relink(graph: BlockGraph) -> int:
    """Point every branch operand at a live instruction. Returns the number rewritten."""
    owners = graph.owner_map()
    mapping: dict[int, int] = {}
    rewritten = 0
    for ins in graph.instructions():
        for target in ins.targets():
            if target in mapping:
                continue
            live = live_target(graph, target, owners)
            if live is not None and live != target:
                mapping[target] = live
        before = ins.operand
        ins.retarget(mapping)
        if ins.operand != before:
            rewritten += 1
    if rewritten:
        logger.debug("Relinked %d branch operand(s)", rewritten)
    return rewritten


def reconstruct(graph: BlockGraph) -> MethodBody:
    """Build a new :class:`MethodBody` from *graph* (branches relinked)."""
    relink(graph)
    return MethodBody(
        instructions=flatten(graph),
        regions=[span.region.copy() for span in graph.spans],
        locals=list(graph.locals),
        name=graph.name,
    )


def validate(body: MethodBody) -> list[ValidationIssue]:
    """Structural checks a rewritten body must pass before it is committed."""
    issues: list[ValidationIssue] = []
    positions = body.positions()
    if not body.instructions:
        issues.append(ValidationIssue(IssueKind.EMPTY_BODY, "no instructions left"))
    for ins in body.instructions:
        if ins.opcode is None:
            issues.append(ValidationIssue(IssueKind.NULL_OPCODE, "instruction has no opcode", ins.uid))
            continue
        if not ins.is_branch:
            continue
        if ins.operand is None:
            issues.append(ValidationIssue(IssueKind.DANGLING_BRANCH, f"{ins!r} has no target", ins.uid))
            continue
        for target in ins.targets():
            if target not in positions:
                issues.append(
                    ValidationIssue(
                        IssueKind.DANGLING_BRANCH, f"{ins!r} targets missing uid {target}", ins.uid
                    )
                )
    for index, region in enumerate(body.regions):
        names = ("try_start", "try_end", "handler_start", "handler_end")
        missing = [
            name for name, uid in zip(names, region.boundaries()) if uid is None or uid not in positions
        ]
        if missing:
            issues.append(
                ValidationIssue(
                    IssueKind.DANGLING_REGION,
                    f"region #{index} {', '.join(missing)} do(es) not resolve",
                )
            )
            continue
        if positions[region.try_start] > positions[region.try_end]:
            issues.append(ValidationIssue(IssueKind.EMPTY_REGION, f"region #{index} try range is inverted"))
        if positions[region.handler_start] > positions[region.handler_end]:
            issues.append(
                ValidationIssue(IssueKind.EMPTY_REGION, f"region #{index} handler range is inverted")
            )
    return issues


def commit(graph: BlockGraph, flagged: typing.Sequence[ValidationIssue] = ()) -> MethodBody:
    """Reconstruct and validate; raise :class:`StructuralInconsistency` on any issue."""
    body = reconstruct(graph)
    issues = list(flagged) + validate(body)
    if issues:
        for issue in issues:
            logger.warning("Validation failed: %s", issue)
        raise StructuralInconsistency(issues)
    return body
