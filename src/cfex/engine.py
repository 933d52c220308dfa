"""Per-method normalization pipeline and the batch driver.

:class:`MethodNormalizer` works on a private deep copy of the body it is
given. Either every stage succeeds and the reconstructed body validates,
or the caller gets the original body back with ``rewritten=False``.
Nothing is shared between two calls, so :func:`normalize_methods` can
run methods on independent worker threads.
"""
from __future__ import annotations

import dataclasses
import time
import typing
from concurrent.futures import ThreadPoolExecutor, as_completed

from cfex.analysis.cfg import build_block_graph, prune
from cfex.analysis.loops import find_back_edges
from cfex.core.config import ConfigConstants, EngineConfiguration
from cfex.core.logging import CfexLogger, getLogger
from cfex.core.stats import NormalizationEvent, NormalizationStatistics
from cfex.errors import StructuralInconsistency, ValidationIssue
from cfex.ir.model import MethodBody
from cfex.passes import NormalizationPass, PassContext
from cfex.reconstruct import commit

logger = getLogger("CFEX.engine")

NO_APPLICABLE_PATTERNS = "no applicable patterns"
NO_DISPATCH = "no dispatch"
UNREACHABLE = "unreachable_blocks"


@dataclasses.dataclass
class NormalizationResult:
    """Outcome of normalizing one method.

    ``body`` is the validated replacement when ``rewritten`` is True and the
    untouched original otherwise.
    """

    name: str
    body: MethodBody
    rewritten: bool
    reason: str = ""
    switches_resolved: int = 0
    loops_detected: int = 0
    changes: dict[str, int] = dataclasses.field(default_factory=dict)
    issues: list[ValidationIssue] = dataclasses.field(default_factory=list)
    reverted: bool = False
    skipped: bool = False
    elapsed: float = 0.0

    @property
    def total_changes(self) -> int:
        return sum(self.changes.values())


class MethodNormalizer:
    """Runs the fixed stage order over one method at a time."""

    def __init__(self, config: EngineConfiguration | None = None):
        self.config = config if config is not None else EngineConfiguration()

    def stages(self) -> list[NormalizationPass]:
        stages = []
        for name in ConfigConstants.STAGE_ORDER:
            if not self.config.is_stage_active(name):
                continue
            stage = NormalizationPass.get(name)()
            stage.configure(self.config.stage_config(name))
            stages.append(stage)
        return stages

    def normalize(self, body: MethodBody) -> NormalizationResult:
        start = time.perf_counter()
        CfexLogger.update_method(body.name)
        try:
            result = self._normalize(body)
        except StructuralInconsistency as e:
            logger.info("Reverting %s: %s", body.name, e)
            result = NormalizationResult(
                name=body.name,
                body=body,
                rewritten=False,
                reason=f"structural inconsistency: {e}",
                issues=e.issues,
                reverted=True,
            )
        except Exception as e:
            logger.exception("Unexpected error while normalizing %s", body.name)
            result = NormalizationResult(
                name=body.name,
                body=body,
                rewritten=False,
                reason=f"internal error: {e}",
                reverted=True,
            )
        finally:
            CfexLogger.reset_method()
        result.elapsed = time.perf_counter() - start
        return result

    def _normalize(self, body: MethodBody) -> NormalizationResult:
        snapshot = body.copy()
        graph = build_block_graph(snapshot, self.config.terminators)
        changes = {UNREACHABLE: len(prune(graph))}
        context = PassContext.for_graph(graph, self.config)

        for stage in self.stages():
            count = stage.run(context)
            changes[stage.registrant_name] = count
            if count:
                logger.debug("%s made %d change(s)", stage.name, count)
                context.invalidate()
            if stage.registrant_name != "switch_resolver":
                continue
            # resolving one dispatch can expose the selector of the next
            while count:
                changes[UNREACHABLE] += len(prune(graph))
                context.invalidate()
                count = stage.run(context)
                changes[stage.registrant_name] += count

        loops = len(find_back_edges(graph))
        switches = changes.get("switch_resolver", 0)
        if context.issues:
            raise StructuralInconsistency(context.issues)
        if not any(changes.values()):
            return NormalizationResult(
                name=body.name,
                body=body,
                rewritten=False,
                reason=NO_APPLICABLE_PATTERNS,
                loops_detected=loops,
                changes=changes,
            )
        new_body = commit(graph)
        logger.info(
            "Rewrote %s: %d -> %d instruction(s), %d dispatch site(s) resolved",
            body.name,
            len(body),
            len(new_body),
            switches,
        )
        return NormalizationResult(
            name=body.name,
            body=new_body,
            rewritten=True,
            reason="rewritten",
            switches_resolved=switches,
            loops_detected=loops,
            changes=changes,
        )


def normalize_method(
    body: MethodBody, config: EngineConfiguration | None = None
) -> NormalizationResult:
    """Normalize a single method body."""
    return MethodNormalizer(config).normalize(body)


def _skipped(body: MethodBody) -> NormalizationResult:
    return NormalizationResult(name=body.name, body=body, rewritten=False, reason=NO_DISPATCH, skipped=True)


def normalize_methods(
    bodies: typing.Sequence[MethodBody],
    config: EngineConfiguration | None = None,
    stats: NormalizationStatistics | None = None,
) -> list[NormalizationResult]:
    """Normalize a batch of methods, in parallel when ``config.workers > 1``.

    Results come back in input order. One method failing never affects the
    others. When *stats* is given every result is folded into it.
    """
    config = config if config is not None else EngineConfiguration()
    normalizer = MethodNormalizer(config)
    if stats is not None:
        stats.events.emit(NormalizationEvent.BATCH_START, len(bodies))

    def run_one(body: MethodBody) -> NormalizationResult:
        if config.only_with_dispatch and not body.has_dispatch():
            return _skipped(body)
        return normalizer.normalize(body)

    results: list[NormalizationResult | None] = [None] * len(bodies)
    if config.workers > 1 and len(bodies) > 1:
        with ThreadPoolExecutor(max_workers=config.workers) as ex:
            futures = {ex.submit(run_one, body): i for i, body in enumerate(bodies)}
            for fut in as_completed(futures):
                i = futures[fut]
                try:
                    results[i] = fut.result()
                except Exception as e:
                    logger.exception("Worker crashed on %s", bodies[i].name)
                    results[i] = NormalizationResult(
                        name=bodies[i].name,
                        body=bodies[i],
                        rewritten=False,
                        reason=f"internal error: {e}",
                        reverted=True,
                    )
    else:
        for i, body in enumerate(bodies):
            results[i] = run_one(body)

    final = typing.cast(list[NormalizationResult], results)
    if stats is not None:
        stats.record_all(final)
        stats.events.emit(NormalizationEvent.BATCH_END, stats)
    return final
