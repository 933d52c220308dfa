import pytest

from cfex.errors import AssemblyError
from cfex.ir.assembler import (
    assemble,
    disassemble,
    format_instruction,
    parse_literal,
    parse_methods,
)
from cfex.ir.model import ArithOp, Opcode, RegionKind

from tests.unit.listings import DISPATCH_FIVE, TRY_CATCH


class TestLiterals:
    @pytest.mark.parametrize(
        "text,expected",
        [
            ("4", 4),
            ("-7", -7),
            ("0x10", 16),
            ("1.5", 1.5),
            ('"hi there"', "hi there"),
            ("null", None),
        ],
    )
    def test_parse(self, text, expected):
        assert parse_literal(text) == expected

    def test_bad_literal(self):
        with pytest.raises(AssemblyError):
            parse_literal("four")


class TestAssemble:
    def test_dispatch_listing(self):
        body = assemble(DISPATCH_FIVE)
        assert body.name == "DispatchFive"
        assert body.locals == ["a"]
        assert [i.uid for i in body.instructions] == list(range(len(body)))
        switch = body.instructions[3]
        assert switch.opcode is Opcode.SWITCH
        # C0..C4 are the ldc 10..14 instructions
        by_uid = {ins.uid: ins for ins in body.instructions}
        assert [by_uid[t].operand for t in switch.operand] == [10, 11, 12, 13, 14]
        assert body.instructions[-1].opcode is Opcode.OPAQUE
        assert body.instructions[-1].mnemonic == "ret"

    def test_short_forms(self):
        body = assemble(
            """
            ldc.i4.3
            ldc.i4.m1
            ldc.i4.s 100
            stloc.0
            ldloc.s 2
            add.ovf
            shr.un
            brtrue.s X
            leave.s X
        X:  ret
            """
        )
        ops = [(i.opcode, i.operand) for i in body.instructions[:7]]
        assert ops == [
            (Opcode.PUSH_CONST, 3),
            (Opcode.PUSH_CONST, -1),
            (Opcode.PUSH_CONST, 100),
            (Opcode.STORE_LOCAL, 0),
            (Opcode.LOAD_LOCAL, 2),
            (Opcode.ARITH, ArithOp.ADD_OVF),
            (Opcode.ARITH, ArithOp.SHR_UN),
        ]
        cond, leave = body.instructions[7], body.instructions[8]
        assert cond.opcode is Opcode.COND_BRANCH and cond.mnemonic == "brtrue.s"
        assert leave.opcode is Opcode.LEAVE
        assert cond.operand == leave.operand == 9

    def test_opaque_with_effect(self):
        body = assemble("call Foo::Bar {2,1}\nret")
        call = body.instructions[0]
        assert call.opcode is Opcode.OPAQUE
        assert call.mnemonic == "call"
        assert call.operand == "Foo::Bar"
        assert call.stack_effect == (2, 1)
        assert body.instructions[1].stack_effect is None

    def test_comments_and_stacked_labels(self):
        body = assemble(
            """
            br B            // jump over
        A:  B: ldstr "a // not a comment"
            ret
            """
        )
        assert body.instructions[0].operand == 1
        assert body.instructions[1].operand == "a // not a comment"

    def test_regions(self):
        body = assemble(TRY_CATCH)
        (region,) = body.regions
        assert region.kind is RegionKind.CATCH
        assert region.boundaries() == (0, 2, 3, 5)
        assert region.catch_type == "System.Exception"

    @pytest.mark.parametrize(
        "text",
        [
            "br NOWHERE\nret",
            "A: nop\nA: nop",
            "nop\nDANGLING:",
            "ldc",
            "br A B\nA: B: ret",
            "ldc.i4.x",
            "nop\n.try A A bogus A A\nA: ret",
            "A: nop\n.try A A catch A",
        ],
    )
    def test_errors(self, text):
        with pytest.raises(AssemblyError):
            assemble(text)

    def test_error_carries_line(self):
        with pytest.raises(AssemblyError) as ctx:
            assemble("nop\nnop\nbr MISSING")
        assert ctx.value.line == 3
        assert "line 3" in str(ctx.value)


class TestMultipleMethods:
    def test_parse_methods(self):
        methods = parse_methods(DISPATCH_FIVE + TRY_CATCH)
        assert [m.name for m in methods] == ["DispatchFive", "Guarded"]
        # uids restart per method
        assert methods[1].instructions[0].uid == 0

    def test_assemble_requires_one(self):
        with pytest.raises(AssemblyError):
            assemble(DISPATCH_FIVE + TRY_CATCH)
        with pytest.raises(AssemblyError):
            assemble("// nothing here")


class TestDisassemble:
    @pytest.mark.parametrize("listing", [DISPATCH_FIVE, TRY_CATCH])
    def test_text_is_stable(self, listing):
        text = disassemble(assemble(listing))
        assert disassemble(assemble(text)) == text

    def test_labels_only_where_referenced(self):
        text = disassemble(assemble("br X\nnop\nX: ret"))
        lines = text.splitlines()
        assert lines[0] == ".method <method>"
        assert lines[1].strip() == "br L2"
        assert not lines[2].strip().startswith("L1:")
        assert lines[3].startswith("L2:")

    def test_format_instruction(self):
        body = assemble('ldstr "x"\nsizeof System.Int32\ncall F {1,0}\nswitch (A, A)\nA: ret')
        assert [format_instruction(i) for i in body.instructions] == [
            'ldc "x"',
            "sizeof System.Int32",
            "call F {1,0}",
            "switch (L4, L4)",
            "ret",
        ]
