"""Keep exception regions and region exits pointing at live instructions.

Region boundaries move to the first/last live instruction of the blocks
the region still covers. Exit instructions are retargeted past emptied
blocks. Anything that cannot be kept consistent is flagged, never guessed:
an empty range, an exit whose target is gone, or an exit that used to stay
within its region's handler end and no longer does.
"""
from __future__ import annotations

from cfex._compat import override
from cfex.core.logging import getLogger
from cfex.errors import IssueKind, ValidationIssue
from cfex.passes.handler import NormalizationPass, PassContext
from cfex.reconstruct import live_target, span_bounds

logger = getLogger("CFEX.pass.eh")


class ExceptionRegionReconciler(NormalizationPass):
    NAME = "Exception region reconciler"
    DESCRIPTION = "Rewrite region boundaries and exit targets after instructions move"
    registrant_name = "exception_reconciler"

    @override
    def run(self, context: PassContext) -> int:
        return self._reconcile_regions(context) + self._reconcile_exits(context)

    def _reconcile_regions(self, context: PassContext) -> int:
        changes = 0
        for index, span in enumerate(context.graph.spans):
            region = span.region
            try_bounds = span_bounds(context.graph, span.try_blocks)
            handler_bounds = span_bounds(context.graph, span.handler_blocks)
            if try_bounds is None:
                context.flag(ValidationIssue(IssueKind.EMPTY_REGION, f"region #{index} try range is empty"))
            if handler_bounds is None:
                context.flag(
                    ValidationIssue(IssueKind.EMPTY_REGION, f"region #{index} handler range is empty")
                )
            if try_bounds is None or handler_bounds is None:
                continue
            new = (*try_bounds, *handler_bounds)
            if new != region.boundaries():
                logger.debug("Region #%d boundaries %s -> %s", index, region.boundaries(), new)
                region.try_start, region.try_end, region.handler_start, region.handler_end = new
                changes += 1
        return changes

    def _reconcile_exits(self, context: PassContext) -> int:
        graph = context.graph
        stream = list(graph.instructions())
        positions = {ins.uid: i for i, ins in enumerate(stream)}
        owners = graph.owner_map()
        changes = 0
        for ins in stream:
            record = graph.exits.get(ins.uid)
            if record is None:
                continue
            target = live_target(graph, ins.operand, owners)
            if target is None:
                context.flag(
                    ValidationIssue(IssueKind.DANGLING_BRANCH, "exit target no longer exists", ins.uid)
                )
                continue
            if target != ins.operand:
                ins.operand = target
                changes += 1
            handler_end = graph.spans[record.region_index].region.handler_end
            if handler_end not in positions:
                # already flagged as an empty handler range
                continue
            within = positions[target] <= positions[handler_end] + 1
            if record.bounded and not within:
                context.flag(
                    ValidationIssue(
                        IssueKind.EXIT_OUT_OF_BOUNDS,
                        f"exit of region #{record.region_index} now lands beyond its handler end",
                        ins.uid,
                    )
                )
        return changes
