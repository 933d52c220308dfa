import collections
import dataclasses
import functools
import logging
import logging.config
import pathlib
import threading
import typing

LOG_FILENAME = "cfex.log"
LEVEL_NAMES = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

_config = collections.Counter(version=0)


@dataclasses.dataclass(slots=True)
class LevelFlag:
    """Cached ``isEnabledFor`` answer for one logger and level.

    Per-instruction loops test the flag instead of asking the logging
    machinery every time. The cache is dropped whenever
    :func:`configure_loggers` or :meth:`LoggerConfigurator.set_level` runs.

    Example:
        if logger.debug_on:
            logger.debug("removed %s", format_instruction(ins))
    """

    _logger_name: str
    _level: int
    _last_version: int = dataclasses.field(default=-1, init=False)
    _cached: bool = dataclasses.field(default=False, init=False)

    def __bool__(self) -> bool:
        current = _config["version"]
        if self._last_version != current:
            self._cached = getLogger(self._logger_name).isEnabledFor(self._level)
            self._last_version = current
        return self._cached

    def __repr__(self):
        return f"<LevelFlag {self._logger_name}>={logging.getLevelName(self._level)}>"

    @staticmethod
    def bump_config_version() -> None:
        _config["version"] += 1


class CfexLogger(logging.Logger):
    """Logger carrying a per-thread Mapped Diagnostic Context (MDC).

    The engine stores the name of the method being normalized under the
    ``method`` key so that records emitted from worker threads can be told
    apart in a shared log file.
    """

    _mdc_local: "threading.local" = threading.local()

    @classmethod
    def mdc(cls) -> typing.Mapping[str, typing.Any]:
        return getattr(cls._mdc_local, "mdc", None) or {"method": ""}

    @classmethod
    def set_mdc(cls, d: dict[str, typing.Any]) -> None:
        cls._mdc_local.mdc = d

    @functools.cached_property
    def debug_on(self) -> LevelFlag:  # noqa: D401
        """Fast flag: is DEBUG enabled for this logger?"""
        return LevelFlag(self.name, logging.DEBUG)

    @classmethod
    def update_method(cls, method: str) -> None:
        cls.set_mdc({**cls.mdc(), "method": method})

    @classmethod
    def reset_method(cls) -> None:
        d = dict(cls.mdc())
        d.pop("method", None)
        cls.set_mdc(d)

    def makeRecord(
        self,
        name,
        level,
        fn,
        lno,
        msg,
        args,
        exc_info,
        func=None,
        extra: dict[str, typing.Any] | None = None,
        sinfo=None,
    ):
        """Stamp the current MDC onto every record."""
        extra = dict(extra) if extra else {}
        extra.update(self.mdc())
        return super().makeRecord(
            name, level, fn, lno, msg, args, exc_info, func=func, extra=extra, sinfo=sinfo
        )


class CfexFormatter(logging.Formatter):
    """Renders the MDC method as `` - <method>``, or nothing when unset."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        method = getattr(record, "method", "")
        if method and not str(method).startswith(" - "):
            record.method = f" - {method}"
        elif not method:
            record.method = ""
        return super().format(record)


_CONSOLE_AND_FILE = ("consoleHandler", "defaultFileHandler")
_FILE_ONLY = ("defaultFileHandler",)

# The file handler path is filled in by configure_loggers.
conf: dict[str, typing.Any] = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "CfexFormatter": {
            "()": CfexFormatter,
            "format": "%(asctime)s - %(name)s - %(levelname)s%(method)s - %(message)s",
        },
    },
    "handlers": {
        "consoleHandler": {
            "class": "logging.StreamHandler",
            "level": "INFO",
            "formatter": "CfexFormatter",
            "stream": "ext://sys.stdout",
        },
        "defaultFileHandler": {
            "class": "logging.FileHandler",
            "level": "DEBUG",
            "formatter": "CfexFormatter",
            "filename": None,
        },
    },
    "loggers": {
        name: {"level": "INFO", "handlers": list(handlers), "propagate": False}
        for name, handlers in (
            ("CFEX", _CONSOLE_AND_FILE),
            ("CFEX.engine", _CONSOLE_AND_FILE),
            ("CFEX.cfg", _FILE_ONLY),
            ("CFEX.analysis", _FILE_ONLY),
            ("CFEX.pass", _FILE_ONLY),
            ("CFEX.reconstruct", _FILE_ONLY),
            ("CFEX.cli", _CONSOLE_AND_FILE),
        )
    },
    "root": {
        "level": "WARNING",
        "handlers": ["consoleHandler"],
    },
}


class LoggerConfigurator:
    """Query and change logger levels at runtime (``cfex loggers``, ``--log-level``)."""

    @staticmethod
    def available_loggers(prefix: str | None = None) -> list[str]:
        """Sorted names of every created or configured logger.

        With *prefix*, only that logger and its descendants are listed.
        """
        names = {
            name
            for name, logger in logging.Logger.manager.loggerDict.items()
            if isinstance(logger, logging.Logger)
        }
        names.update(conf["loggers"])
        if prefix is not None:
            names = {n for n in names if n == prefix or n.startswith(prefix + ".")}
        return sorted(names)

    @staticmethod
    def get_level(name: str) -> int:
        return getLogger(name).getEffectiveLevel()

    @staticmethod
    def set_level(logger_name: str, level_name: str) -> None:
        """Set *logger_name* to one of :data:`LEVEL_NAMES`."""
        lvl = getattr(logging, level_name.upper(), None)
        if not isinstance(lvl, int):
            raise ValueError(f"Unknown logging level: {level_name}")
        getLogger(logger_name, lvl).setLevel(lvl)
        LevelFlag.bump_config_version()


def configure_loggers(log_dir: str | pathlib.Path) -> None:
    """Apply :data:`conf`, writing ``cfex.log`` into *log_dir*."""
    log_dir = pathlib.Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    conf["handlers"]["defaultFileHandler"]["filename"] = (log_dir / LOG_FILENAME).as_posix()
    logging.config.dictConfig(conf)
    LevelFlag.bump_config_version()


def getLogger(name: str, default_level: int = logging.INFO) -> CfexLogger:
    """Return the :class:`CfexLogger` registered under *name*.

    A plain logger already known to the manager is swapped for a
    :class:`CfexLogger` that keeps its handlers, filters and parent. A logger
    that would drop records (no handlers, ``propagate`` off) propagates again.
    """
    name = name or __name__
    base = logging.getLogger(name)
    if isinstance(base, CfexLogger):
        return base
    loglvl = base.level
    if loglvl == logging.NOTSET or loglvl < default_level:
        loglvl = default_level
    new = CfexLogger(base.name, level=loglvl)
    new.handlers = list(base.handlers)
    new.filters = list(base.filters)
    new.propagate = base.propagate
    new.disabled = base.disabled
    new.parent = base.parent
    if not new.handlers and not new.propagate:
        new.propagate = True
    logging.Logger.manager.loggerDict[name] = new
    return new
