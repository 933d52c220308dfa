from cfex.analysis.cfg import build_block_graph
from cfex.analysis.stack import ForwardStackInterpreter
from cfex.ir.assembler import assemble, format_instruction
from cfex.passes import JunkEliminator, PassContext
from cfex.passes.junk import junk_in


def _run(text):
    graph = build_block_graph(assemble(text))
    removed = JunkEliminator().run(PassContext.for_graph(graph))
    return graph, removed


def _listing(graph):
    return [format_instruction(ins) for ins in graph.instructions()]


def test_nop_dup_pop():
    graph, removed = _run("nop\ndup\npop\nldc 5")
    assert removed == 3
    assert _listing(graph) == ["ldc 5"]


def test_nested_pairs():
    body = assemble("ldc 1\ndup\ndup\npop\npop\nstloc a")
    junk = junk_in(body.instructions)
    assert sorted(ins.uid for ins in junk) == [1, 2, 3, 4]


def test_pop_after_other_value_is_kept():
    body = assemble("ldc 1\ndup\nldc 2\npop\npop\nstloc a")
    assert junk_in(body.instructions) == []


def test_pairs_do_not_span_blocks():
    graph, removed = _run("ldc 1\ndup\nbr X\nX: pop\npop\nret")
    assert removed == 0


def test_nothing_to_do():
    graph, removed = _run("ldc 1\nstloc a\nret")
    assert removed == 0


def test_depths_are_preserved():
    text = "ldc 1\ndup\npop\nnop\nldc 2\nadd\ndup\ndup\npop\npop\nstloc a\nret"
    graph = build_block_graph(assemble(text))
    analysis = ForwardStackInterpreter()
    before = analysis.run(graph)

    removed = JunkEliminator().run(PassContext.for_graph(graph))
    after = analysis.run(graph)

    assert removed == 7
    survivors = [ins.uid for ins in graph.instructions()]
    assert survivors == [0, 4, 5, 10, 11]
    for uid in survivors:
        assert after.depth_before(uid) == before.depth_before(uid)
    assert after.value(10) == 3
