"""Line-oriented text form of method bodies.

Used by the command line driver and throughout the tests::

    .method Demo
    .locals a
            ldc 4
            stloc a
            ldloc a
            switch (L1, L2)
    L1:     ret
    L2:     ret
    .try L1 L1 catch L2 L2 System.Exception

Every instruction line may carry a ``NAME:`` label. Branch operands and
``.try`` boundaries name labels; region ends are inclusive. Unknown
mnemonics become opaque instructions; an optional ``{pops,pushes}`` suffix
declares their stack effect.
"""
from __future__ import annotations

import re
import typing

from cfex.errors import AssemblyError
from cfex.ir.model import (
    ArithOp,
    ExceptionRegion,
    Instruction,
    MethodBody,
    Opcode,
    RegionKind,
)

_LABEL_RE = re.compile(r"^([A-Za-z_][\w.$]*):\s*(.*)$")
_EFFECT_RE = re.compile(r"\{\s*(\d+)\s*,\s*(\d+)\s*\}\s*$")
_INT_RE = re.compile(r"^[+-]?(0[xX][0-9a-fA-F]+|\d+)$")

_ARITH = {op.value: op for op in ArithOp}
_UNCONDITIONAL = {"br", "br.s"}
_LEAVE = {"leave", "leave.s"}
_CONDITIONAL = {
    "brtrue", "brfalse", "brnull", "brzero", "brinst",
    "beq", "bne.un", "bge", "bge.un", "bgt", "bgt.un",
    "ble", "ble.un", "blt", "blt.un",
}
_CONDITIONAL |= {f"{name}.s" for name in _CONDITIONAL}
_SHORT_LOCALS = {"ldloc.s", "stloc.s"}


def _strip_comment(line: str) -> str:
    in_string = False
    for i, ch in enumerate(line):
        if ch == '"':
            in_string = not in_string
        elif not in_string and line.startswith("//", i):
            return line[:i]
    return line


def parse_literal(text: str) -> typing.Any:
    text = text.strip()
    if len(text) >= 2 and text[0] == text[-1] == '"':
        return text[1:-1]
    if text == "null":
        return None
    if _INT_RE.match(text):
        return int(text, 0)
    try:
        return float(text)
    except ValueError:
        raise AssemblyError(f"bad literal {text!r}") from None


def format_literal(value: typing.Any) -> str:
    if isinstance(value, str):
        return f'"{value}"'
    if value is None:
        return "null"
    return repr(value)


def _local_operand(text: str) -> typing.Any:
    return int(text) if text.isdigit() else text


def _split_targets(text: str) -> list[str]:
    return [t for t in re.split(r"[\s,()]+", text) if t]


class _MethodBuilder:
    def __init__(self, name: str):
        self.name = name
        self.locals: list[str] = []
        self.instructions: list[Instruction] = []
        self.labels: dict[str, int] = {}
        # (instruction, label names, source line)
        self.fixups: list[tuple[Instruction, list[str], int]] = []
        self.regions: list[tuple[list[str], int]] = []
        self.pending_labels: list[tuple[str, int]] = []

    def add_label(self, label: str, lineno: int) -> None:
        if label in self.labels or any(label == p for p, _ in self.pending_labels):
            raise AssemblyError(f"duplicate label {label!r}", lineno)
        self.pending_labels.append((label, lineno))

    def add(self, ins: Instruction) -> None:
        ins.uid = len(self.instructions)
        for label, _ in self.pending_labels:
            self.labels[label] = ins.uid
        self.pending_labels.clear()
        self.instructions.append(ins)

    def resolve(self, label: str, lineno: int) -> int:
        try:
            return self.labels[label]
        except KeyError:
            raise AssemblyError(f"undefined label {label!r}", lineno) from None

    def finish(self) -> MethodBody:
        if self.pending_labels:
            label, lineno = self.pending_labels[0]
            raise AssemblyError(f"label {label!r} does not precede an instruction", lineno)
        for ins, names, lineno in self.fixups:
            uids = [self.resolve(n, lineno) for n in names]
            ins.operand = tuple(uids) if ins.opcode is Opcode.SWITCH else uids[0]
        regions = []
        for fields, lineno in self.regions:
            if len(fields) not in (5, 6):
                raise AssemblyError(".try expects: try_start try_end kind handler_start handler_end [type]", lineno)
            try:
                kind = RegionKind(fields[2].lower())
            except ValueError:
                raise AssemblyError(f"unknown region kind {fields[2]!r}", lineno) from None
            regions.append(
                ExceptionRegion(
                    kind=kind,
                    try_start=self.resolve(fields[0], lineno),
                    try_end=self.resolve(fields[1], lineno),
                    handler_start=self.resolve(fields[3], lineno),
                    handler_end=self.resolve(fields[4], lineno),
                    catch_type=fields[5] if len(fields) == 6 else None,
                )
            )
        return MethodBody(self.instructions, regions, self.locals, self.name)


def _parse_instruction(builder: _MethodBuilder, text: str, lineno: int) -> Instruction:
    effect = None
    if m := _EFFECT_RE.search(text):
        effect = (int(m.group(1)), int(m.group(2)))
        text = text[: m.start()].rstrip()
    mnemonic, _, rest = text.partition(" ")
    mnemonic = mnemonic.lower()
    rest = rest.strip()

    if mnemonic == "nop":
        return Instruction(Opcode.NOP)
    if mnemonic == "dup":
        return Instruction(Opcode.DUP)
    if mnemonic == "pop":
        return Instruction(Opcode.POP)
    if mnemonic in ("ldc", "ldc.i4", "ldc.i8", "ldc.r4", "ldc.r8", "ldc.i4.s", "ldstr"):
        if not rest:
            raise AssemblyError(f"{mnemonic} needs a literal", lineno)
        return Instruction(Opcode.PUSH_CONST, parse_literal(rest))
    if mnemonic.startswith("ldc.i4."):
        suffix = mnemonic[len("ldc.i4."):]
        value = -1 if suffix == "m1" else int(suffix) if suffix.isdigit() else None
        if value is None:
            raise AssemblyError(f"bad constant form {mnemonic!r}", lineno)
        return Instruction(Opcode.PUSH_CONST, value)
    if mnemonic in ("ldloc", "stloc") or mnemonic in _SHORT_LOCALS:
        if not rest:
            raise AssemblyError(f"{mnemonic} needs a local", lineno)
        opcode = Opcode.LOAD_LOCAL if mnemonic.startswith("ld") else Opcode.STORE_LOCAL
        return Instruction(opcode, _local_operand(rest))
    if re.fullmatch(r"(ld|st)loc\.\d", mnemonic):
        opcode = Opcode.LOAD_LOCAL if mnemonic.startswith("ld") else Opcode.STORE_LOCAL
        return Instruction(opcode, int(mnemonic[-1]))
    if mnemonic in _ARITH:
        return Instruction(Opcode.ARITH, _ARITH[mnemonic])
    if mnemonic == "sizeof":
        if not rest:
            raise AssemblyError("sizeof needs a type", lineno)
        return Instruction(Opcode.SIZEOF, rest)
    if mnemonic in _UNCONDITIONAL or mnemonic in _LEAVE or mnemonic in _CONDITIONAL:
        targets = _split_targets(rest)
        if len(targets) != 1:
            raise AssemblyError(f"{mnemonic} needs exactly one target", lineno)
        if mnemonic in _UNCONDITIONAL:
            ins = Instruction(Opcode.BRANCH)
        elif mnemonic in _LEAVE:
            ins = Instruction(Opcode.LEAVE)
        else:
            ins = Instruction(Opcode.COND_BRANCH, mnemonic=mnemonic)
        builder.fixups.append((ins, targets, lineno))
        return ins
    if mnemonic == "switch":
        targets = _split_targets(rest)
        ins = Instruction(Opcode.SWITCH, ())
        if targets:
            builder.fixups.append((ins, targets, lineno))
        return ins
    return Instruction(
        Opcode.OPAQUE, rest or None, mnemonic=mnemonic, stack_effect=effect
    )


def parse_methods(text: str) -> list[MethodBody]:
    """Parse one or more ``.method`` sections."""
    methods: list[MethodBody] = []
    builder: _MethodBuilder | None = None
    for lineno, raw in enumerate(text.splitlines(), start=1):
        line = _strip_comment(raw).strip()
        if not line:
            continue
        if line.startswith(".method"):
            if builder is not None:
                methods.append(builder.finish())
            builder = _MethodBuilder(line[len(".method"):].strip() or f"method_{len(methods)}")
            continue
        if builder is None:
            builder = _MethodBuilder("<method>")
        if line.startswith(".locals"):
            builder.locals.extend(line[len(".locals"):].split())
            continue
        if line.startswith(".try"):
            builder.regions.append((line[len(".try"):].split(), lineno))
            continue
        while m := _LABEL_RE.match(line):
            builder.add_label(m.group(1), lineno)
            line = m.group(2).strip()
        if not line:
            continue
        builder.add(_parse_instruction(builder, line, lineno))
    if builder is not None:
        methods.append(builder.finish())
    return methods


def assemble(text: str) -> MethodBody:
    """Parse exactly one method body."""
    methods = parse_methods(text)
    if len(methods) != 1:
        raise AssemblyError(f"expected one method, found {len(methods)}")
    return methods[0]


def _label(uid: int) -> str:
    return f"L{uid}"


def format_instruction(ins: Instruction) -> str:
    op = ins.opcode
    if op is None:
        return "<null>"
    if op is Opcode.PUSH_CONST:
        return f"ldc {format_literal(ins.operand)}"
    if op is Opcode.LOAD_LOCAL:
        return f"ldloc {ins.operand}"
    if op is Opcode.STORE_LOCAL:
        return f"stloc {ins.operand}"
    if op is Opcode.ARITH:
        return ins.operand.value if isinstance(ins.operand, ArithOp) else str(ins.operand)
    if op is Opcode.DUP:
        return "dup"
    if op is Opcode.POP:
        return "pop"
    if op is Opcode.NOP:
        return "nop"
    if op is Opcode.SIZEOF:
        return f"sizeof {ins.operand}"
    if op is Opcode.SWITCH:
        return "switch (" + ", ".join(_label(t) for t in ins.targets()) + ")"
    if op.is_branch:
        name = {Opcode.BRANCH: "br", Opcode.LEAVE: "leave"}.get(op) or ins.mnemonic or "brtrue"
        return f"{name} {_label(ins.operand)}"
    text = ins.mnemonic or "opaque"
    if ins.operand is not None:
        text += f" {ins.operand}"
    if ins.stack_effect is not None:
        text += " {%d,%d}" % ins.stack_effect
    return text


def disassemble(body: MethodBody) -> str:
    """Render *body* back into the text form accepted by :func:`assemble`."""
    referenced: set[int] = set()
    for ins in body.instructions:
        referenced.update(ins.targets())
    for region in body.regions:
        referenced.update(b for b in region.boundaries() if b is not None)

    lines = [f".method {body.name}"]
    if body.locals:
        lines.append(".locals " + " ".join(body.locals))
    for ins in body.instructions:
        prefix = f"{_label(ins.uid)}:" if ins.uid in referenced else ""
        lines.append(f"{prefix:<8}{format_instruction(ins)}")
    for region in body.regions:
        fields = [
            _label(region.try_start),
            _label(region.try_end),
            region.kind.value,
            _label(region.handler_start),
            _label(region.handler_end),
        ]
        if region.catch_type:
            fields.append(region.catch_type)
        lines.append(".try " + " ".join(fields))
    return "\n".join(lines) + "\n"
