"""Plain-dict (JSON) encoding of method bodies.

Layout of one method::

    {
      "name": "Demo",
      "locals": ["a"],
      "instructions": [
        {"uid": 0, "op": "push_const", "operand": 4},
        {"uid": 1, "op": "switch", "operand": [2, 3]},
        {"uid": 2, "op": "opaque", "mnemonic": "ret"},
        ...
      ],
      "regions": [
        {"kind": "catch", "try_start": 0, "try_end": 1,
         "handler_start": 2, "handler_end": 2, "catch_type": "System.Exception"}
      ]
    }

``uid`` may be omitted, in which case instructions are numbered in stream
order. Branch operands always name uids.
"""
from __future__ import annotations

import json
import pathlib
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

_OPCODES = {op.name.lower(): op for op in Opcode}
_ARITH = {op.value: op for op in ArithOp}


def instruction_to_dict(ins: Instruction) -> dict[str, typing.Any]:
    data: dict[str, typing.Any] = {
        "uid": ins.uid,
        "op": ins.opcode.name.lower() if ins.opcode is not None else None,
    }
    operand = ins.operand
    if isinstance(operand, ArithOp):
        operand = operand.value
    elif isinstance(operand, tuple):
        operand = list(operand)
    if operand is not None:
        data["operand"] = operand
    if ins.mnemonic is not None:
        data["mnemonic"] = ins.mnemonic
    if ins.stack_effect is not None:
        data["stack_effect"] = list(ins.stack_effect)
    return data


def instruction_from_dict(data: typing.Mapping[str, typing.Any]) -> Instruction:
    op_name = data.get("op")
    if op_name is None:
        opcode = None
    else:
        try:
            opcode = _OPCODES[str(op_name).lower()]
        except KeyError:
            raise AssemblyError(f"unknown opcode {op_name!r}") from None
    operand = data.get("operand")
    if opcode is Opcode.ARITH:
        try:
            operand = _ARITH[operand]
        except KeyError:
            raise AssemblyError(f"unknown arithmetic operation {operand!r}") from None
    elif opcode is Opcode.SWITCH:
        operand = tuple(operand or ())
    effect = data.get("stack_effect")
    return Instruction(
        opcode,  # type: ignore[arg-type]
        operand,
        uid=int(data.get("uid", -1)),
        mnemonic=data.get("mnemonic"),
        stack_effect=tuple(effect) if effect is not None else None,
    )


def region_to_dict(region: ExceptionRegion) -> dict[str, typing.Any]:
    data = {
        "kind": region.kind.value,
        "try_start": region.try_start,
        "try_end": region.try_end,
        "handler_start": region.handler_start,
        "handler_end": region.handler_end,
    }
    if region.catch_type is not None:
        data["catch_type"] = region.catch_type
    return data


def region_from_dict(data: typing.Mapping[str, typing.Any]) -> ExceptionRegion:
    try:
        kind = RegionKind(data["kind"])
    except (KeyError, ValueError):
        raise AssemblyError(f"bad region kind in {dict(data)!r}") from None
    return ExceptionRegion(
        kind=kind,
        try_start=data.get("try_start"),
        try_end=data.get("try_end"),
        handler_start=data.get("handler_start"),
        handler_end=data.get("handler_end"),
        catch_type=data.get("catch_type"),
    )


def body_to_dict(body: MethodBody) -> dict[str, typing.Any]:
    return {
        "name": body.name,
        "locals": list(body.locals),
        "instructions": [instruction_to_dict(ins) for ins in body.instructions],
        "regions": [region_to_dict(r) for r in body.regions],
    }


def body_from_dict(data: typing.Mapping[str, typing.Any]) -> MethodBody:
    if "instructions" not in data:
        raise AssemblyError("method body has no 'instructions'")
    instructions = [instruction_from_dict(d) for d in data["instructions"]]
    uids = [ins.uid for ins in instructions if ins.uid >= 0]
    if len(uids) != len(set(uids)):
        raise AssemblyError(f"duplicate instruction uids in {data.get('name', '<method>')!r}")
    return MethodBody(
        instructions=instructions,
        regions=[region_from_dict(r) for r in data.get("regions", [])],
        locals=list(data.get("locals", [])),
        name=data.get("name", "<method>"),
    )


def load_methods(path: pathlib.Path | str) -> list[MethodBody]:
    """Read ``{"methods": [...]}`` (or a bare list) from a JSON file."""
    with pathlib.Path(path).open("r", encoding="utf-8") as fp:
        document = json.load(fp)
    if isinstance(document, dict):
        document = document.get("methods", [])
    return [body_from_dict(d) for d in document]


def dump_methods(bodies: typing.Iterable[MethodBody], path: pathlib.Path | str) -> None:
    path = pathlib.Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as fp:
        json.dump({"methods": [body_to_dict(b) for b in bodies]}, fp, indent=2)
