#!/usr/bin/env python3
"""
Command line driver for the control-flow deobfuscator.

Reads a method listing (JSON or YAML), deobfuscates every method with a
body and writes the rewritten listing.
"""

import argparse
import json
import sys
from typing import List, Optional

import structlog
import yaml

from deobfuscator.config import LOG_FORMATS, LOG_LEVELS, DeobfuscatorConfig, load_config
from deobfuscator.core.deobfuscation_state import DeobfuscationState
from deobfuscator.exceptions import DeobfuscationError
from deobfuscator.listing import dump_module, export_to_json, export_to_yaml, read_listing
from deobfuscator.simple_deobfuscator import deobfuscate, deobfuscate_blocks
from deobfuscator.utils.logging_utils import configure_logging

logger = structlog.get_logger()


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        prog="cflow-deob",
        description="Remove control-flow obfuscation from a method listing",
    )
    parser.add_argument("input", help="Method listing to read (.json, .yaml or .yml)")
    parser.add_argument("-o", "--output", help="Where to write the result (default: stdout)")
    parser.add_argument(
        "--format",
        choices=["json", "yaml"],
        help="Output format (default: from the output file extension, else json)",
    )
    parser.add_argument(
        "--blocks-only",
        action="store_true",
        help="Only remove dead blocks, normalise branches and run the transform pipeline",
    )
    parser.add_argument("--config", help="YAML or JSON configuration file")
    parser.add_argument("--max-iterations", type=int, help="Transform pipeline iteration cap")
    parser.add_argument(
        "--disable-extra-instrs",
        action="store_true",
        default=None,
        help="Don't let the constant folder insert instructions",
    )
    parser.add_argument(
        "--inline-instance-methods",
        action="store_true",
        default=None,
        help="Also inline non-static call targets",
    )
    parser.add_argument("--log-level", type=str.upper, choices=LOG_LEVELS, help="Logging level")
    parser.add_argument("--log-format", choices=LOG_FORMATS, help="Log renderer")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> DeobfuscatorConfig:
    """Configuration file (or DEOB_* environment variables) overridden by flags."""
    config = load_config(args.config) if args.config else DeobfuscatorConfig.from_env()
    return config.merged(
        max_iterations=args.max_iterations,
        disable_constants_folder_extra_instrs=args.disable_extra_instrs,
        inline_instance_methods=args.inline_instance_methods,
        log_level=args.log_level,
        log_format=args.log_format,
    )


def output_format(args: argparse.Namespace) -> str:
    if args.format:
        return args.format
    if args.output and args.output.endswith((".yaml", ".yml")):
        return "yaml"
    return "json"


def run(args: argparse.Namespace, config: DeobfuscatorConfig) -> int:
    methods = read_listing(args.input)
    logger.info("Loaded listing", path=args.input, methods=len(methods))

    state = DeobfuscationState()
    processed = skipped = failed = 0
    for method in methods:
        if args.blocks_only:
            result = deobfuscate_blocks(method, config)
            if result.ok:
                processed += 1
            elif method.has_body:
                failed += 1
                logger.warning("Block cleanup failed", method=method.full_name, error=str(result.error))
            else:
                skipped += 1
        elif deobfuscate(method, state, config):
            processed += 1
        else:
            skipped += 1

    fmt = output_format(args)
    if args.output:
        if fmt == "yaml":
            export_to_yaml(methods, args.output)
        else:
            export_to_json(methods, args.output)
        logger.info("Wrote listing", path=args.output, format=fmt)
    elif fmt == "yaml":
        yaml.safe_dump(dump_module(methods), sys.stdout, default_flow_style=False, sort_keys=False)
    else:
        json.dump(dump_module(methods), sys.stdout, indent=2)
        sys.stdout.write("\n")

    logger.info("Deobfuscation finished", processed=processed, skipped=skipped, failed=failed)
    return 1 if failed else 0


def main(argv: Optional[List[str]] = None) -> int:
    """
    Parse arguments and deobfuscate the listing.

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    args = parse_args(argv)
    try:
        config = build_config(args)
    except DeobfuscationError as e:
        configure_logging(args.log_level or "INFO")
        logger.error("Invalid configuration", error=str(e))
        return 2
    configure_logging(config.log_level, config.log_format)

    try:
        return run(args, config)
    except DeobfuscationError as e:
        logger.error("Deobfuscation failed", error=str(e))
        return 1
    except OSError as e:
        logger.error("Can't write output", error=str(e))
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130


if __name__ == "__main__":
    sys.exit(main())
