import dataclasses
import json
import os
import pathlib
import types
import typing

from cfex.errors import ConfigurationError

from .bits import SUPPORTED_WIDTHS
from .logging import getLogger

logger = getLogger("CFEX.config")


def _default_user_dir() -> pathlib.Path:
    """Return the per-user cfex directory (``$CFEX_HOME`` or ``~/.cfex``)."""
    env = os.environ.get("CFEX_HOME")
    if env:
        return pathlib.Path(env)
    return pathlib.Path.home() / ".cfex"


DEFAULT_USER_DIR = _default_user_dir()


def _primitive_sizes() -> dict[str, int]:
    sizes = {
        "Boolean": 1,
        "Byte": 1,
        "SByte": 1,
        "Char": 2,
        "Int16": 2,
        "UInt16": 2,
        "Int32": 4,
        "UInt32": 4,
        "Int64": 8,
        "UInt64": 8,
        "Single": 4,
        "Double": 8,
    }
    sizes.update({f"System.{name}": size for name, size in list(sizes.items())})
    return sizes


@dataclasses.dataclass(frozen=True, slots=True)
class ConfigConstants:
    OPTIONS_FILENAME: typing.ClassVar[str] = "options.json"
    STAGE_ORDER: typing.ClassVar[tuple[str, ...]] = (
        "switch_resolver",
        "junk_eliminator",
        "constant_folder",
        "exception_reconciler",
    )
    ANALYSES: typing.ClassVar[tuple[str, ...]] = ("forward", "worklist")
    OVERFLOW_MODES: typing.ClassVar[tuple[str, ...]] = ("wrap", "trap")
    # Read-only, process-wide: safe to share between worker threads.
    PRIMITIVE_TYPE_SIZES: typing.ClassVar[typing.Mapping[str, int]] = (
        types.MappingProxyType(_primitive_sizes())
    )
    DEFAULT_TERMINATORS: typing.ClassVar[tuple[str, ...]] = (
        "ret",
        "throw",
        "rethrow",
        "endfinally",
        "endfilter",
        "jmp",
    )

    @staticmethod
    def default_log_dir(user_dir: pathlib.Path | None = None) -> pathlib.Path:
        base = user_dir if user_dir is not None else DEFAULT_USER_DIR
        return base / "logs"


@dataclasses.dataclass(slots=True)
class StageConfiguration:
    """
    Represents the configuration for a single pipeline stage.

    >>> stage = StageConfiguration(name="junk_eliminator", is_activated=True)
    >>> stage.to_dict()
    {'name': 'junk_eliminator', 'is_activated': True, 'config': {}}
    >>> StageConfiguration.from_dict({'name': 'constant_folder', 'is_activated': False}).is_activated
    False
    """

    name: str
    is_activated: bool = True
    config: dict[str, typing.Any] = dataclasses.field(default_factory=dict)

    def to_dict(self) -> dict[str, typing.Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, typing.Any]) -> "StageConfiguration":
        return cls(**data)


def _default_stages() -> list[StageConfiguration]:
    return [StageConfiguration(name=name) for name in ConfigConstants.STAGE_ORDER]


@dataclasses.dataclass(slots=True)
class EngineConfiguration:
    """
    Options for one normalization run.

    ``int_width`` is the native integer width in bytes used when folding
    arithmetic. ``overflow`` selects between wrapping (``"wrap"``) and
    skipping any fold that overflows (``"trap"``). ``analysis`` picks the
    constant analysis: the single forward pass or the join-aware worklist
    solver.

    >>> cfg = EngineConfiguration.from_dict({"int_width": 8, "overflow": "trap"})
    >>> cfg.int_width, cfg.overflow
    (8, 'trap')
    >>> cfg.is_stage_active("junk_eliminator")
    True
    """

    int_width: int = 4
    overflow: str = "wrap"
    analysis: str = "forward"
    stages: list[StageConfiguration] = dataclasses.field(default_factory=_default_stages)
    type_sizes: dict[str, int] = dataclasses.field(default_factory=dict)
    terminators: tuple[str, ...] = ConfigConstants.DEFAULT_TERMINATORS
    workers: int = 1
    only_with_dispatch: bool = False
    log_dir: pathlib.Path | None = None

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        if self.int_width not in SUPPORTED_WIDTHS:
            raise ConfigurationError(
                f"int_width must be one of {sorted(SUPPORTED_WIDTHS)}, got {self.int_width!r}"
            )
        if self.overflow not in ConfigConstants.OVERFLOW_MODES:
            raise ConfigurationError(f"Unknown overflow mode: {self.overflow!r}")
        if self.analysis not in ConfigConstants.ANALYSES:
            raise ConfigurationError(f"Unknown analysis: {self.analysis!r}")
        if self.workers < 1:
            raise ConfigurationError(f"workers must be >= 1, got {self.workers}")
        known = set(ConfigConstants.STAGE_ORDER)
        for stage in self.stages:
            if stage.name not in known:
                raise ConfigurationError(f"Unknown stage: {stage.name!r}")

    def is_stage_active(self, name: str) -> bool:
        for stage in self.stages:
            if stage.name == name:
                return stage.is_activated
        return False

    def stage_config(self, name: str) -> dict[str, typing.Any]:
        for stage in self.stages:
            if stage.name == name:
                return stage.config
        return {}

    def resolved_type_sizes(self) -> typing.Mapping[str, int]:
        """Built-in primitive sizes with the user overrides merged on top."""
        if not self.type_sizes:
            return ConfigConstants.PRIMITIVE_TYPE_SIZES
        merged = dict(ConfigConstants.PRIMITIVE_TYPE_SIZES)
        merged.update(self.type_sizes)
        return types.MappingProxyType(merged)

    def to_dict(self) -> dict[str, typing.Any]:
        return {
            "int_width": self.int_width,
            "overflow": self.overflow,
            "analysis": self.analysis,
            "stages": [stage.to_dict() for stage in self.stages],
            "type_sizes": dict(self.type_sizes),
            "terminators": list(self.terminators),
            "workers": self.workers,
            "only_with_dispatch": self.only_with_dispatch,
            "log_dir": self.log_dir.as_posix() if self.log_dir else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, typing.Any]) -> "EngineConfiguration":
        kwargs = dict(data)
        if "stages" in kwargs:
            kwargs["stages"] = [StageConfiguration.from_dict(s) for s in kwargs["stages"]]
        if "terminators" in kwargs:
            kwargs["terminators"] = tuple(kwargs["terminators"])
        if kwargs.get("log_dir"):
            kwargs["log_dir"] = pathlib.Path(kwargs["log_dir"])
        unknown = set(kwargs) - {f.name for f in dataclasses.fields(cls)}
        if unknown:
            raise ConfigurationError(f"Unknown configuration keys: {sorted(unknown)}")
        return cls(**kwargs)

    @classmethod
    def from_file(cls, path: pathlib.Path | str) -> "EngineConfiguration":
        """
        Loads engine configuration from a JSON file.

        Raises:
            FileNotFoundError: If the configuration file cannot be found.
            json.JSONDecodeError: If the file is not valid JSON.
            ConfigurationError: If an option value is invalid.
        """
        config_path = pathlib.Path(path)
        logger.info("Loading engine configuration from %s", config_path)
        try:
            with config_path.open("r", encoding="utf-8") as fp:
                data = json.load(fp)
        except FileNotFoundError:
            logger.error("Configuration file not found: %s", config_path)
            raise
        except json.JSONDecodeError as e:
            logger.error("Failed to parse configuration %s: %s", config_path, e)
            raise
        return cls.from_dict(data)

    @classmethod
    def load_default(cls, user_dir: pathlib.Path | None = None) -> "EngineConfiguration":
        """Load ``options.json`` from the user directory, else the bundled template."""
        base = user_dir if user_dir is not None else DEFAULT_USER_DIR
        candidates = [
            base / ConfigConstants.OPTIONS_FILENAME,
            pathlib.Path(__file__).resolve().parent.parent
            / "conf"
            / ConfigConstants.OPTIONS_FILENAME,
        ]
        for path in candidates:
            if path.is_file():
                return cls.from_file(path)
            logger.debug("Configuration file %s not found", path)
        logger.warning("No configuration found; using defaults in memory.")
        return cls()

    def save(self, path: pathlib.Path | str) -> None:
        """Saves the configuration to *path* as JSON."""
        path = pathlib.Path(path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("w", encoding="utf-8") as fp:
                json.dump(self.to_dict(), fp, indent=2)
            logger.info("Configuration saved to %s", path)
        except IOError as e:
            logger.error("Failed to save configuration to %s: %s", path, e)
