"""Command line driver.

Quick Start
-----------
Normalize every method of a JSON document (``{"methods": [...]}``)::

    cfex normalize methods.json

Normalize an assembler listing, four worker threads, logs under ``./logs``::

    cfex normalize obfuscated.il --workers 4 --log-dir logs

List the stages with their options, or the loggers with their levels::

    cfex stages
    cfex loggers CFEX.pass

Unless ``-o`` is given the result is written next to the input as
``<stem>_cleaned<suffix>``. Methods that could not be rewritten are written
back unchanged. The run ends with the number of resolved dispatch sites
("Cases fixed") and the elapsed time.
"""
from __future__ import annotations

import argparse
import json
import logging
import pathlib
import sys
import time

from cfex.analysis.stack import ConstantAnalysis
from cfex.core.config import ConfigConstants, EngineConfiguration
from cfex.core.logging import LEVEL_NAMES, LoggerConfigurator, configure_loggers, getLogger
from cfex.core.stats import NormalizationEvent, NormalizationStatistics
from cfex.engine import normalize_methods
from cfex.errors import CfexException
from cfex.ir.assembler import disassemble, parse_methods
from cfex.ir.model import MethodBody
from cfex.ir.serialization import dump_methods, load_methods
from cfex.passes import NormalizationPass

logger = getLogger("CFEX.cli")

TEXT_SUFFIXES = frozenset({".il", ".txt", ".cfex", ".asm"})


def _is_text(path: pathlib.Path, force_text: bool) -> bool:
    return force_text or path.suffix.lower() in TEXT_SUFFIXES


def read_methods(path: pathlib.Path, force_text: bool = False) -> list[MethodBody]:
    if _is_text(path, force_text):
        return parse_methods(path.read_text(encoding="utf-8"))
    return load_methods(path)


def write_methods(bodies: list[MethodBody], path: pathlib.Path, force_text: bool = False) -> None:
    if _is_text(path, force_text):
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("\n".join(disassemble(b) for b in bodies), encoding="utf-8")
    else:
        dump_methods(bodies, path)


def default_output(path: pathlib.Path) -> pathlib.Path:
    return path.with_name(f"{path.stem}_cleaned{path.suffix}")


def _load_config(args: argparse.Namespace) -> EngineConfiguration:
    config = (
        EngineConfiguration.from_file(args.config)
        if args.config
        else EngineConfiguration.load_default()
    )
    if args.workers is not None:
        config.workers = args.workers
    if args.log_dir is not None:
        config.log_dir = pathlib.Path(args.log_dir)
    if args.only_with_dispatch:
        config.only_with_dispatch = True
    config.validate()
    return config


def cmd_normalize(args: argparse.Namespace) -> int:
    source = pathlib.Path(args.input)
    try:
        config = _load_config(args)
    except (OSError, json.JSONDecodeError, CfexException) as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return 2
    if config.log_dir is not None:
        configure_loggers(config.log_dir)
    if args.log_level:
        for name in LoggerConfigurator.available_loggers("CFEX"):
            LoggerConfigurator.set_level(name, args.log_level)

    try:
        bodies = read_methods(source, args.text)
    except FileNotFoundError:
        print(f"No such file: {source}", file=sys.stderr)
        return 2
    except (json.JSONDecodeError, CfexException) as exc:
        print(f"Failed to read {source}: {exc}", file=sys.stderr)
        return 2

    logger.info("Loaded %d method(s) from %s", len(bodies), source)
    stats = NormalizationStatistics()
    reverted = []

    @stats.events.on(NormalizationEvent.METHOD_REVERTED)
    def note_reverted(result) -> None:
        reverted.append(result)

    @stats.events.on(NormalizationEvent.BATCH_START)
    def announce(count: int) -> None:
        logger.info("Normalizing %d method(s) with %d worker(s)", count, config.workers)

    start = time.perf_counter()
    results = normalize_methods(bodies, config, stats)
    elapsed = time.perf_counter() - start

    output = pathlib.Path(args.output) if args.output else default_output(source)
    write_methods([r.body for r in results], output, args.text)
    stats.report()

    if args.json:
        summary = stats.summary()
        summary["elapsed"] = elapsed
        summary["output"] = output.as_posix()
        print(json.dumps(summary, indent=2, sort_keys=True))
    else:
        for result in reverted:
            print(f"{result.name}: not rewritten ({result.reason})")
        print(f"Cases fixed: {stats.switches_resolved}")
        print(
            f"Methods rewritten: {stats.methods_rewritten}/{stats.methods_seen}"
            f" ({stats.methods_reverted} reverted)"
        )
        print(f"Elapsed: {elapsed:.3f}s")
        print(f"Saved to {output}")
    return 0


def cmd_stages(args: argparse.Namespace) -> int:
    order = {name: i for i, name in enumerate(ConfigConstants.STAGE_ORDER)}
    stages = sorted(NormalizationPass.all(), key=lambda cls: order.get(cls.registrant_name, len(order)))
    for stage in stages:
        print(f"{stage.registrant_name}: {stage.DESCRIPTION}")
        for param in stage.CONFIG_SCHEMA:
            print(f"    {param.name} (default {param.default!r}): {param.description}")
    analyses = sorted(cls.registrant_name for cls in ConstantAnalysis.all())
    print(f"analyses: {', '.join(analyses)}")
    return 0


def cmd_loggers(args: argparse.Namespace) -> int:
    for name in LoggerConfigurator.available_loggers(args.prefix):
        print(f"{name} {logging.getLevelName(LoggerConfigurator.get_level(name))}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cfex",
        description="Normalize control flow of obfuscated stack-VM method bodies.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    normalize = sub.add_parser("normalize", help="Normalize every method of INPUT.")
    normalize.add_argument("input", help="JSON document or assembler listing.")
    normalize.add_argument(
        "-o",
        "--output",
        default=None,
        help="Where to write the result (default: <stem>_cleaned<suffix> next to INPUT).",
    )
    normalize.add_argument("--config", default=None, help="Engine options JSON file.")
    normalize.add_argument("--workers", type=int, default=None, help="Worker threads (default: from config).")
    normalize.add_argument("--log-dir", default=None, help="Write cfex.log into this directory.")
    normalize.add_argument(
        "--text",
        action="store_true",
        help="Treat INPUT and OUTPUT as assembler listings regardless of suffix.",
    )
    normalize.add_argument(
        "--only-with-dispatch",
        action="store_true",
        help="Skip methods without a multi-way dispatch.",
    )
    normalize.add_argument("--json", action="store_true", help="Print a machine-readable summary.")
    normalize.add_argument(
        "--log-level",
        choices=LEVEL_NAMES,
        type=str.upper,
        default=None,
        help="Level for every CFEX logger.",
    )
    normalize.set_defaults(func=cmd_normalize)

    stages = sub.add_parser("stages", help="List pipeline stages, their options and analyses.")
    stages.set_defaults(func=cmd_stages)

    loggers = sub.add_parser("loggers", help="List loggers and their effective level.")
    loggers.add_argument("prefix", nargs="?", default="CFEX", help="Logger name prefix (default: CFEX).")
    loggers.set_defaults(func=cmd_loggers)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
