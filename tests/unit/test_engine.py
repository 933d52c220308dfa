"""End-to-end behaviour of the per-method pipeline and the batch driver."""

import pytest

from cfex.analysis.cfg import build_block_graph, reachable_labels
from cfex.core.config import EngineConfiguration
from cfex.core.stats import NormalizationEvent, NormalizationStatistics
from cfex.engine import (
    NO_APPLICABLE_PATTERNS,
    NO_DISPATCH,
    MethodNormalizer,
    normalize_method,
    normalize_methods,
)
from cfex.errors import IssueKind
from cfex.ir.assembler import assemble, disassemble, format_instruction
from cfex.ir.model import Instruction, MethodBody, Opcode
from cfex.passes import JunkEliminator

from tests.unit.listings import DISPATCH_FIVE, DISPATCH_FOUR, TRY_CATCH, UNREACHABLE_TRY

JOINED_SELECTOR = """
.method Joined
        ldloc c
        brtrue B
        ldc 1
        br J
B:      ldc 1
J:      switch (X, Y)
X:      ret
Y:      ret
"""

# The second selector is only provable once the path through D is gone.
CHAINED_DISPATCH = """
.method Chained
        ldc 0
        switch (P, D)
P:      ldc 1
C:      switch (X, Y, Z)
X:      ldc 10
        ret
Y:      ldc 11
        ret
Z:      ldc 12
        ret
D:      ldc 0
        br C
"""

# C starts a block only because the dead D branches to it.
STALE_SPLIT = """
.method StaleSplit
.locals a
        br S
D:      br C
S:      ldc 1
C:      ldc 2
        add
        stloc a
        ret
"""

COUNTING_LOOP = """
.method Loop
        ldc 0
        stloc i
TOP:    ldloc i
        ldc 1
        add
        stloc i
        ldloc i
        ldc 10
        blt TOP
        ret
"""


def _listing(body):
    return [format_instruction(ins) for ins in body.instructions]


def _assert_well_formed(body):
    positions = body.positions()
    for ins in body.instructions:
        assert ins.opcode is not None
        assert all(t in positions for t in ins.targets())
    for region in body.regions:
        assert all(b in positions for b in region.boundaries())
    graph = build_block_graph(body)
    assert reachable_labels(graph) == set(graph.blocks)


class TestNormalizeMethod:
    def test_dispatch_resolved(self, dispatch_five):
        result = normalize_method(dispatch_five)
        assert result.rewritten
        assert result.reason == "rewritten"
        assert result.switches_resolved == 1
        assert result.changes["unreachable_blocks"] == 5
        assert _listing(result.body) == ["ldc 4", "stloc a", "br L13", "ldc 14", "ret"]
        # the dispatch keeps its identity as the new branch
        assert result.body.instructions[2].uid == 3
        _assert_well_formed(result.body)

    def test_selector_one_past_the_end(self, dispatch_four):
        result = normalize_method(dispatch_four)
        assert not result.rewritten
        assert not result.reverted
        assert result.reason == NO_APPLICABLE_PATTERNS
        assert result.body is dispatch_four

    def test_idempotent(self, dispatch_five, try_catch):
        for body in (dispatch_five, try_catch):
            first = normalize_method(body)
            second = normalize_method(first.body)
            assert not second.rewritten
            assert second.reason == NO_APPLICABLE_PATTERNS
            assert disassemble(second.body) == disassemble(first.body)

    def test_chained_dispatch_settles_in_one_run(self):
        first = normalize_method(assemble(CHAINED_DISPATCH))
        assert first.rewritten
        assert first.switches_resolved == 2
        assert first.changes["unreachable_blocks"] == 3
        assert _listing(first.body) == ["br L3", "br L6", "ldc 11", "ret"]
        _assert_well_formed(first.body)

        second = normalize_method(first.body)
        assert not second.rewritten
        assert second.reason == NO_APPLICABLE_PATTERNS

    def test_fold_across_pruned_split(self):
        first = normalize_method(assemble(STALE_SPLIT))
        assert first.rewritten
        assert first.changes["constant_folder"] == 1
        assert _listing(first.body) == ["br L4", "ldc 3", "stloc a", "ret"]

        second = normalize_method(first.body)
        assert not second.rewritten
        assert second.changes["constant_folder"] == 0

    def test_structured_size_descriptor_passes_through(self):
        body = MethodBody(
            [
                Instruction(Opcode.NOP),
                Instruction(Opcode.SIZEOF, {"name": "MyStruct"}),
                Instruction(Opcode.POP),
                Instruction(Opcode.OPAQUE, mnemonic="ret"),
            ],
            name="Structured",
        )
        result = normalize_method(body)
        assert result.rewritten
        assert not result.reverted
        assert result.changes["junk_eliminator"] == 1
        assert result.changes["constant_folder"] == 0
        assert result.body.instructions[0].operand == {"name": "MyStruct"}

    def test_input_not_mutated(self, dispatch_five, try_catch):
        for body in (dispatch_five, try_catch):
            before = disassemble(body)
            normalize_method(body)
            assert disassemble(body) == before

    def test_regions_follow_junk_removal(self, try_catch):
        result = normalize_method(try_catch)
        assert result.rewritten
        assert result.changes["junk_eliminator"] == 2
        assert result.changes["exception_reconciler"] == 1
        assert result.body.regions[0].boundaries() == (1, 2, 4, 5)
        assert _listing(result.body) == ["call Foo {0,0}", "leave L6", "pop", "leave L6", "ret"]
        _assert_well_formed(result.body)

    def test_dead_block_removed(self):
        body = assemble(
            """
        T:      leave OUT
        H:      pop
        HE:     leave OUT
                nop
                ldc 1
        OUT:    ret
        .try T T catch H HE
            """
        )
        result = normalize_method(body)
        assert result.rewritten
        assert result.changes["unreachable_blocks"] == 1
        assert [ins.uid for ins in result.body.instructions] == [0, 1, 2, 5]
        _assert_well_formed(result.body)

    def test_reverted_on_empty_region(self):
        body = assemble(UNREACHABLE_TRY)
        before = disassemble(body)
        result = normalize_method(body)
        assert not result.rewritten
        assert result.reverted
        assert result.reason.startswith("structural inconsistency")
        assert IssueKind.EMPTY_REGION in [issue.kind for issue in result.issues]
        assert result.body is body
        assert disassemble(body) == before

    def test_reverted_on_malformed_input(self):
        body = MethodBody([Instruction(Opcode.BRANCH, 99), Instruction(Opcode.NOP)], name="Broken")
        result = normalize_method(body)
        assert result.reverted
        assert result.issues[0].kind is IssueKind.DANGLING_BRANCH

    def test_reverted_on_exit_without_target(self):
        body = assemble("T: nop\nTE: leave OUT\nH: pop\nHE: leave OUT\nOUT: ret\n.try T TE catch H HE")
        body.instructions[1].operand = None
        result = normalize_method(body)
        assert result.reverted
        assert result.reason.startswith("structural inconsistency")
        assert result.issues[0].kind is IssueKind.DANGLING_BRANCH

    def test_reverted_on_internal_error(self, monkeypatch, try_catch):
        def explode(self, context):
            raise RuntimeError("boom")

        monkeypatch.setattr(JunkEliminator, "run", explode)
        result = normalize_method(try_catch)
        assert result.reverted
        assert result.reason == "internal error: boom"
        assert result.body is try_catch

    def test_loops_reported_not_rewritten(self):
        result = normalize_method(assemble(COUNTING_LOOP))
        assert result.loops_detected == 1
        assert not result.rewritten

    def test_disabled_stage(self, try_catch):
        config = EngineConfiguration()
        next(s for s in config.stages if s.name == "junk_eliminator").is_activated = False
        normalizer = MethodNormalizer(config)
        assert [stage.registrant_name for stage in normalizer.stages()] == [
            "switch_resolver",
            "constant_folder",
            "exception_reconciler",
        ]
        result = normalizer.normalize(try_catch)
        assert "junk_eliminator" not in result.changes
        assert not result.rewritten

    def test_worklist_resolves_joined_selector(self):
        forward = normalize_method(assemble(JOINED_SELECTOR))
        assert forward.switches_resolved == 0
        assert not forward.rewritten

        config = EngineConfiguration(analysis="worklist")
        result = normalize_method(assemble(JOINED_SELECTOR), config)
        assert result.rewritten
        assert result.switches_resolved == 1
        assert _listing(result.body) == [
            "ldloc c",
            "brtrue L4",
            "ldc 1",
            "br L8",
            "ldc 1",
            "pop",
            "br L7",
            "ret",
        ]
        _assert_well_formed(result.body)

    def test_folding_and_dispatch_together(self):
        body = assemble(
            """
            .method Mixed
            .locals a
                    sizeof Int32
                    ldc 3
                    sub
                    switch (A, B)
            A:      ldc 0
                    ret
            B:      ldc 2
                    ldc 3
                    mul
                    ret
            """
        )
        result = normalize_method(body)
        assert result.switches_resolved == 1
        assert result.changes["constant_folder"] == 3
        assert _listing(result.body) == ["ldc 1", "pop", "br L8", "ldc 6", "ret"]

    def test_elapsed(self, dispatch_five):
        assert normalize_method(dispatch_five).elapsed >= 0.0


class TestNormalizeMethods:
    def _batch(self):
        bodies = []
        for i in range(3):
            for listing in (DISPATCH_FIVE, DISPATCH_FOUR, TRY_CATCH, UNREACHABLE_TRY):
                body = assemble(listing)
                body.name = f"{body.name}_{i}"
                bodies.append(body)
        return bodies

    @pytest.mark.parametrize("workers", [1, 4])
    def test_order_and_stats(self, workers):
        bodies = self._batch()
        stats = NormalizationStatistics()
        results = normalize_methods(bodies, EngineConfiguration(workers=workers), stats)
        assert [r.name for r in results] == [b.name for b in bodies]
        assert [r.rewritten for r in results[:4]] == [True, False, True, False]
        assert stats.methods_seen == 12
        assert stats.methods_rewritten == 6
        assert stats.methods_reverted == 3
        assert stats.methods_unchanged == 3
        assert stats.switches_resolved == 3
        assert set(stats.reverted_reasons) == {f"DeadTry_{i}" for i in range(3)}

    def test_same_results_in_parallel(self):
        serial = normalize_methods(self._batch(), EngineConfiguration(workers=1))
        parallel = normalize_methods(self._batch(), EngineConfiguration(workers=4))
        assert [disassemble(r.body) for r in serial] == [disassemble(r.body) for r in parallel]

    def test_only_with_dispatch(self, dispatch_five, try_catch):
        config = EngineConfiguration(only_with_dispatch=True)
        stats = NormalizationStatistics()
        results = normalize_methods([dispatch_five, try_catch], config, stats)
        assert results[0].rewritten
        assert results[1].skipped
        assert results[1].reason == NO_DISPATCH
        assert results[1].body is try_catch
        assert stats.methods_skipped == 1

    def test_worker_failure_is_isolated(self, monkeypatch):
        original = MethodNormalizer.normalize

        def flaky(self, body):
            if body.name == "Guarded_1":
                raise RuntimeError("worker died")
            return original(self, body)

        monkeypatch.setattr(MethodNormalizer, "normalize", flaky)
        bodies = self._batch()
        results = normalize_methods(bodies, EngineConfiguration(workers=4))
        failed = [r for r in results if r.reason.startswith("internal error")]
        assert [r.name for r in failed] == ["Guarded_1"]
        assert failed[0].body is bodies[6]
        assert results[0].rewritten

    def test_empty_batch(self):
        assert normalize_methods([]) == []

    def test_batch_events(self, dispatch_five, dispatch_four):
        stats = NormalizationStatistics()
        seen = []
        stats.events.on(NormalizationEvent.BATCH_START, lambda count: seen.append(("start", count)))
        stats.events.on(NormalizationEvent.METHOD_REWRITTEN, lambda r: seen.append(("rewritten", r.name)))
        stats.events.on(NormalizationEvent.BATCH_END, lambda s: seen.append(("end", s.methods_seen)))
        normalize_methods([dispatch_five, dispatch_four], stats=stats)
        assert seen == [("start", 2), ("rewritten", "DispatchFive"), ("end", 2)]
