from .cfg import build_block_graph, compute_edges, remove_unreachable, reachable_labels
from .loops import BackEdge, find_back_edges
from .stack import (
    UNKNOWN,
    AbstractStack,
    ConstantAnalysis,
    ConstantFacts,
    ForwardStackInterpreter,
    Known,
    WorklistStackInterpreter,
    analysis_for,
)

__all__ = [
    "build_block_graph",
    "compute_edges",
    "remove_unreachable",
    "reachable_labels",
    "BackEdge",
    "find_back_edges",
    "UNKNOWN",
    "AbstractStack",
    "ConstantAnalysis",
    "ConstantFacts",
    "ForwardStackInterpreter",
    "Known",
    "WorklistStackInterpreter",
    "analysis_for",
]
