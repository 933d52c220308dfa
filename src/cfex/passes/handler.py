from __future__ import annotations

import abc
import dataclasses
import typing

from cfex.analysis.stack import ConstantAnalysis, ConstantFacts, analysis_for
from cfex.core.config import EngineConfiguration
from cfex.core.logging import getLogger
from cfex.core.registry import Registrant
from cfex.errors import ValidationIssue
from cfex.ir.model import BlockGraph

logger = getLogger("CFEX.pass")


@dataclasses.dataclass(frozen=True)
class ConfigParam:
    """Typed metadata for a single stage configuration parameter."""

    name: str
    type: type  # bool, int, str, list, float, dict
    default: typing.Any
    description: str
    choices: tuple | None = None  # for enum-like params


@dataclasses.dataclass
class PassContext:
    """State owned by one method's normalization run.

    Facts are computed lazily and dropped by :meth:`invalidate` whenever a
    stage changes the instruction stream.
    """

    graph: BlockGraph
    config: EngineConfiguration
    analysis: ConstantAnalysis
    issues: list[ValidationIssue] = dataclasses.field(default_factory=list)
    _facts: ConstantFacts | None = dataclasses.field(default=None, repr=False)

    @classmethod
    def for_graph(
        cls, graph: BlockGraph, config: EngineConfiguration | None = None
    ) -> PassContext:
        config = config if config is not None else EngineConfiguration()
        analysis = analysis_for(
            config.analysis,
            int_width=config.int_width,
            overflow=config.overflow,
            type_sizes=config.resolved_type_sizes(),
        )
        return cls(graph=graph, config=config, analysis=analysis)

    @property
    def facts(self) -> ConstantFacts:
        if self._facts is None:
            self._facts = self.analysis.run(self.graph)
        return self._facts

    def invalidate(self) -> None:
        self._facts = None

    def flag(self, issue: ValidationIssue) -> None:
        logger.info("Flagged: %s", issue)
        self.issues.append(issue)


class NormalizationPass(Registrant, abc.ABC):
    """One stage of the per-method pipeline.

    Subclasses register under ``registrant_name`` (the stage name used in
    the configuration file) and return the number of changes they made.
    """

    NAME: typing.ClassVar[str | None] = None
    DESCRIPTION: typing.ClassVar[str | None] = None
    CONFIG_SCHEMA: typing.ClassVar[tuple[ConfigParam, ...]] = ()

    registrant_name: typing.ClassVar[str]

    def __init__(self):
        self.config: dict[str, typing.Any] = {}

    def configure(self, kwargs: dict[str, typing.Any] | None) -> None:
        self.config = dict(kwargs) if kwargs is not None else {}
        known = {param.name for param in self.CONFIG_SCHEMA}
        for key in self.config:
            if key not in known:
                logger.warning("Unknown option %r for stage %s", key, self.name)

    def option(self, name: str) -> typing.Any:
        for param in self.CONFIG_SCHEMA:
            if param.name == name:
                return self.config.get(name, param.default)
        raise KeyError(name)

    @property
    def name(self) -> str:
        if self.NAME is not None:
            return self.NAME
        return self.__class__.__name__

    @property
    def description(self) -> str:
        if self.DESCRIPTION is not None:
            return self.DESCRIPTION
        return "No description available"

    @abc.abstractmethod
    def run(self, context: PassContext) -> int:
        """Transform ``context.graph`` in place and return the number of changes."""
        raise NotImplementedError
