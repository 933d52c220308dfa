"""Exception hierarchy for cfex.

None of these escape :func:`cfex.engine.normalize_method`; the engine turns
them into a "not rewritten" result for the method that raised them.
"""
from __future__ import annotations

import dataclasses
import enum


class CfexException(Exception):
    """Base class for all cfex errors."""


class ConfigurationError(CfexException):
    """An option value is not one the engine understands."""


class AssemblyError(CfexException):
    """Malformed textual or serialized method body."""

    def __init__(self, message: str, line: int | None = None):
        self.line = line
        if line is not None:
            message = f"line {line}: {message}"
        super().__init__(message)


class NumericOverflow(CfexException):
    """Checked arithmetic overflowed its integer width."""


class IssueKind(enum.Enum):
    NULL_OPCODE = "null opcode"
    DANGLING_BRANCH = "dangling branch target"
    DANGLING_REGION = "dangling region boundary"
    EMPTY_REGION = "empty region range"
    EXIT_OUT_OF_BOUNDS = "exit target beyond handler end"
    EMPTY_BODY = "empty body"


@dataclasses.dataclass(frozen=True, slots=True)
class ValidationIssue:
    kind: IssueKind
    detail: str
    uid: int | None = None

    def __str__(self) -> str:
        where = f" (uid {self.uid})" if self.uid is not None else ""
        return f"{self.kind.value}{where}: {self.detail}"


class StructuralInconsistency(CfexException):
    """A branch or region reference cannot be resolved after a transform."""

    def __init__(self, issues: list[ValidationIssue]):
        self.issues = list(issues)
        super().__init__("; ".join(str(i) for i in self.issues) or "structural inconsistency")
