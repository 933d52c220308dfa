from __future__ import annotations

import dataclasses
import typing
from collections import defaultdict
from enum import Enum, auto

from .logging import getLogger
from .registry import EventEmitter

if typing.TYPE_CHECKING:
    from cfex.engine import NormalizationResult

logger = getLogger("CFEX")


class NormalizationEvent(Enum):
    """Events emitted while folding per-method results, for instrumentation/testing."""

    METHOD_REWRITTEN = auto()  # A method produced a validated replacement body
    METHOD_REVERTED = auto()  # Validation or an internal error reverted a method
    METHOD_UNCHANGED = auto()  # No applicable pattern was found
    METHOD_SKIPPED = auto()  # Filtered out before running the pipeline
    STAGE_CHANGES = auto()  # A stage reported a non-zero change count

    BATCH_START = auto()
    BATCH_END = auto()


@dataclasses.dataclass
class NormalizationStatistics:
    """Aggregated counters for a batch of normalized methods.

    Every counter is filled from returned :class:`NormalizationResult`
    values. Nothing here is touched by the per-method pipeline itself, so a
    statistics object is owned by exactly one driver.
    """

    methods_seen: int = 0
    methods_rewritten: int = 0
    methods_reverted: int = 0
    methods_unchanged: int = 0
    methods_skipped: int = 0
    # "Cases fixed": dispatch sites collapsed into direct branches
    switches_resolved: int = 0
    loops_detected: int = 0

    # stage name -> list of change counts, one entry per method that changed
    stage_changes: typing.Dict[str, typing.List[int]] = dataclasses.field(
        default_factory=lambda: defaultdict(list)
    )

    # method name -> reason it was reverted
    reverted_reasons: typing.Dict[str, str] = dataclasses.field(default_factory=dict)

    events: EventEmitter[NormalizationEvent] = dataclasses.field(
        default_factory=lambda: EventEmitter[NormalizationEvent]()
    )

    def record(self, result: NormalizationResult) -> None:
        """Fold one per-method result into the totals."""
        self.methods_seen += 1
        self.loops_detected += result.loops_detected
        if result.skipped:
            self.methods_skipped += 1
            self.events.emit(NormalizationEvent.METHOD_SKIPPED, result)
            return
        if result.rewritten:
            self.methods_rewritten += 1
            self.switches_resolved += result.switches_resolved
            for stage, count in result.changes.items():
                if count:
                    self.stage_changes[stage].append(count)
                    self.events.emit(NormalizationEvent.STAGE_CHANGES, stage, count)
            self.events.emit(NormalizationEvent.METHOD_REWRITTEN, result)
        elif result.reverted:
            self.methods_reverted += 1
            self.reverted_reasons[result.name] = result.reason
            self.events.emit(NormalizationEvent.METHOD_REVERTED, result)
        else:
            self.methods_unchanged += 1
            self.events.emit(NormalizationEvent.METHOD_UNCHANGED, result)

    def record_all(self, results: typing.Iterable[NormalizationResult]) -> None:
        for result in results:
            self.record(result)

    def summary(self) -> typing.Dict[str, typing.Any]:
        """Plain-dict view, suitable for JSON output."""
        return {
            "methods_seen": self.methods_seen,
            "methods_rewritten": self.methods_rewritten,
            "methods_reverted": self.methods_reverted,
            "methods_unchanged": self.methods_unchanged,
            "methods_skipped": self.methods_skipped,
            "switches_resolved": self.switches_resolved,
            "loops_detected": self.loops_detected,
            "stage_changes": {k: sum(v) for k, v in self.stage_changes.items()},
        }

    def report(self) -> None:
        """Log a human-readable summary."""
        logger.info(
            "Normalized %d method(s): %d rewritten, %d reverted, %d unchanged, %d skipped",
            self.methods_seen,
            self.methods_rewritten,
            self.methods_reverted,
            self.methods_unchanged,
            self.methods_skipped,
        )
        logger.info("Cases fixed: %d", self.switches_resolved)
        for stage, counts in self.stage_changes.items():
            logger.info(
                "Stage '%s' changed %d method(s) (%d change(s))",
                stage,
                len(counts),
                sum(counts),
            )
        for name, reason in self.reverted_reasons.items():
            logger.info("Reverted %s: %s", name, reason)
