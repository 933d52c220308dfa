from cfex.analysis.cfg import build_block_graph
from cfex.analysis.loops import BackEdge, find_back_edges
from cfex.ir.assembler import assemble


def test_no_loops(dispatch_five):
    assert find_back_edges(build_block_graph(dispatch_five)) == []


def test_counting_loop():
    body = assemble(
        """
        ldc 0
        stloc i
    TOP: ldloc i
        ldc 1
        add
        stloc i
        ldloc i
        ldc 10
        blt TOP
        ret
        """
    )
    graph = build_block_graph(body)
    assert find_back_edges(graph) == [BackEdge(branch_uid=8, source_label=2, target_label=2)]


def test_fall_through_is_not_a_back_edge():
    body = assemble(
        """
    A:  nop
        br B
    C:  ret
    B:  br C
        """
    )
    edges = find_back_edges(build_block_graph(body))
    assert edges == [BackEdge(branch_uid=3, source_label=3, target_label=2)]
