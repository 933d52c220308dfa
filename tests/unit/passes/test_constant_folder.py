import pytest

from cfex.analysis.cfg import build_block_graph
from cfex.core.config import EngineConfiguration
from cfex.ir.assembler import assemble, format_instruction
from cfex.ir.model import Instruction, MethodBody, Opcode
from cfex.passes import ConstantFolder, PassContext


def _run(text, config=None, **options):
    graph = build_block_graph(assemble(text))
    folder = ConstantFolder()
    folder.configure(options)
    folded = folder.run(PassContext.for_graph(graph, config))
    return [format_instruction(ins) for ins in graph.instructions()], folded, graph


class TestSizeQueries:
    @pytest.mark.parametrize("name", ["Int32", "System.Int32"])
    def test_known_type(self, name):
        listing, folded, graph = _run(f"sizeof {name}\nstloc a\nret")
        assert folded == 1
        assert listing == ["ldc 4", "stloc a", "ret"]
        # folded in place
        assert next(graph.instructions()).uid == 0

    def test_unknown_type(self):
        listing, folded, _ = _run("sizeof UnknownType\nstloc a\nret")
        assert folded == 0
        assert listing == ["sizeof UnknownType", "stloc a", "ret"]

    def test_configured_type(self):
        config = EngineConfiguration(type_sizes={"Vector3": 12})
        listing, folded, _ = _run("sizeof Vector3\nret", config)
        assert listing == ["ldc 12", "ret"]

    def test_structured_type_descriptor(self):
        body = MethodBody(
            [
                Instruction(Opcode.SIZEOF, {"name": "MyStruct"}),
                Instruction(Opcode.POP),
                Instruction(Opcode.OPAQUE, mnemonic="ret"),
            ]
        )
        graph = build_block_graph(body)
        folded = ConstantFolder().run(PassContext.for_graph(graph))
        assert folded == 0
        assert next(graph.instructions()).operand == {"name": "MyStruct"}

    def test_disabled(self):
        listing, folded, _ = _run("sizeof Int32\nret", fold_sizeof=False)
        assert folded == 0
        assert listing[0] == "sizeof Int32"


class TestArithmetic:
    def test_single(self):
        listing, folded, graph = _run("ldc 2\nldc 3\nadd\nstloc a\nret")
        assert folded == 1
        assert listing == ["ldc 5", "stloc a", "ret"]
        assert next(graph.instructions()).uid == 2

    def test_chain(self):
        listing, folded, _ = _run("ldc 2\nldc 3\nadd\nldc 4\nmul\nstloc a\nret")
        assert folded == 2
        assert listing == ["ldc 20", "stloc a", "ret"]

    def test_nested(self):
        text = "ldc 1\nldc 2\nadd\nldc 3\nldc 4\nadd\nmul\nneg\nstloc a\nret"
        listing, folded, _ = _run(text)
        assert folded == 4
        assert listing == ["ldc -21", "stloc a", "ret"]

    def test_with_size_query(self):
        listing, folded, _ = _run("sizeof Int32\nldc 2\nmul\nstloc a\nret")
        assert folded == 2
        assert listing == ["ldc 8", "stloc a", "ret"]

    def test_wraps_by_default(self):
        listing, _, _ = _run("ldc 0x7FFFFFFF\nldc 1\nadd\nstloc a\nret")
        assert listing[0] == "ldc -2147483648"

    def test_wider_integers(self):
        config = EngineConfiguration(int_width=8)
        listing, _, _ = _run("ldc 0x7FFFFFFF\nldc 1\nadd\nstloc a\nret", config)
        assert listing[0] == "ldc 2147483648"

    @pytest.mark.parametrize(
        "text,config",
        [
            ("ldc 0x7FFFFFFF\nldc 1\nadd", EngineConfiguration(overflow="trap")),
            ("ldc 0x7FFFFFFF\nldc 1\nadd.ovf", None),
            ("ldc 7\nldc 0\ndiv", None),
            ("ldc 1\nldc 33\nshl", None),
            ("ldloc x\nldc 1\nadd", None),
            ("ldc 3\ndup\nadd", None),
            ("ldc 1\ncall F {0,1}\nadd", None),
            ("ldc 1\nbr X\nX: ldc 2\nadd", None),
            ('ldstr "a"\nldc 1\nadd', None),
        ],
    )
    def test_not_folded(self, text, config):
        _, folded, _ = _run(text + "\nstloc a\nret", config)
        assert folded == 0

    def test_partial_chain(self):
        listing, folded, _ = _run("ldloc x\nldc 2\nldc 3\nmul\nadd\nstloc a\nret")
        assert folded == 1
        assert listing == ["ldloc x", "ldc 6", "add", "stloc a", "ret"]

    def test_disabled(self):
        listing, folded, _ = _run("ldc 2\nldc 3\nadd\nret", fold_arithmetic=False)
        assert folded == 0
        assert listing == ["ldc 2", "ldc 3", "add", "ret"]

    def test_worklist_analysis(self):
        config = EngineConfiguration(analysis="worklist")
        listing, folded, _ = _run("ldc 2\nldc 3\nsub\nstloc a\nret", config)
        assert listing == ["ldc -1", "stloc a", "ret"]
