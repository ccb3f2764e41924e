"""
Command-line entry point.

    python -m neurassembly INPUT [--arch x86_64] [--base ADDR] [--output PATH]

INPUT is raw machine code, or Intel-syntax assembly when it ends in ``.s``
or ``.asm``.
"""

import argparse
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from google import genai
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

# Load .env before the defaults in const are read
load_dotenv()

from neurassembly import const
from neurassembly.errors import NeurAssemblyError, SessionCancelled, SessionFailed
from neurassembly.isa.asm import assemble
from neurassembly.isa.instruction import ExitSignature
from neurassembly.isa.operands import ALL_FLAGS, ALL_REGISTERS, REGISTER_ALIASES
from neurassembly.optimizer.config import OptimizerConfig
from neurassembly.optimizer.core import FinalResult
from neurassembly.optimizer.llm_generator import GeminiProposer
from neurassembly.optimizer.service import await_result, start_session

logger = logging.getLogger("neurassembly")
console = Console()


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="neurassembly", description="Verified superoptimizer for machine code")
    parser.add_argument("input", type=Path, help="Raw code, or assembly (.s/.asm)")
    parser.add_argument("--arch", default="x86_64")
    parser.add_argument("--base", type=lambda v: int(v, 0), default=0, help="Load address of the first byte")
    parser.add_argument("--output", type=Path, help="Where to write the optimized bytes")
    parser.add_argument("--seed", type=int, default=const.SEED)
    parser.add_argument("--samples", type=int, default=const.SAMPLE_COUNT)
    parser.add_argument("--live-out", help="Comma-separated registers live at exit (default: all)")
    parser.add_argument("--flags-live", action="store_true", help="Treat flags as live at exit")
    parser.add_argument("--no-model", action="store_true", help="Use peephole rules only")
    return parser.parse_args(argv)


def exit_signature(args: argparse.Namespace) -> ExitSignature:
    registers = ALL_REGISTERS
    if args.live_out:
        names = set()
        for name in args.live_out.split(","):
            name = name.strip().lower()
            if not name:
                continue
            canonical = REGISTER_ALIASES.get(name, (name, 64))[0]
            if canonical not in ALL_REGISTERS:
                raise SystemExit(f"Unknown register: {name}")
            names.add(canonical)
        registers = frozenset(names)
    flags = ALL_FLAGS if args.flags_live else frozenset()
    return ExitSignature(registers=registers, flags=flags, return_flags_live=args.flags_live)


def read_input(args: argparse.Namespace) -> bytes:
    if args.input.suffix in (".s", ".asm"):
        return assemble(args.input.read_text(encoding="utf-8"), args.base, args.arch)
    return args.input.read_bytes()


def render(result: FinalResult) -> None:
    table = Table(title="Applied Transformations")
    table.add_column("Address", style="cyan")
    table.add_column("Origin", style="magenta")
    table.add_column("Original")
    table.add_column("Replacement", style="green")
    table.add_column("Verdict", style="yellow")
    table.add_column("Score", justify="right")
    for t in result.applied:
        table.add_row(
            f"{t.address:#x}",
            t.origin,
            "\n".join(t.original),
            "\n".join(t.replacement) or "<removed>",
            t.verdict,
            f"{t.score.value:.2f}",
        )
    console.print(table)

    metrics = Table(title="Metrics")
    metrics.add_column("Metric", style="cyan")
    metrics.add_column("Reduction", justify="right")
    for name, value in (
        ("Instructions", result.metrics.instruction_reduction),
        ("Estimated cycles", result.metrics.cycle_reduction),
        ("Memory operations", result.metrics.memory_ops_reduction),
        ("Register pressure", result.metrics.register_pressure_change),
        ("Code size", result.metrics.code_size_reduction),
    ):
        metrics.add_row(name, f"{value:.1f}%")
    console.print(metrics)
    if result.budget_exceeded:
        console.print(f"[bold yellow]Budget exhausted:[/bold yellow] {len(result.unresolved)} windows unresolved")


def main(argv=None) -> int:
    logging.basicConfig(
        level=const.LOG_LEVEL,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(markup=True, rich_tracebacks=True)],
    )
    args = parse_args(argv)

    proposer = None
    api_key = os.environ.get("GEMINI_API_KEY")
    if not args.no_model:
        if api_key:
            proposer = GeminiProposer(genai.Client(api_key=api_key), model=const.GEMINI_MODEL)
        else:
            logger.warning("GEMINI_API_KEY not set, using peephole rules only")

    try:
        code = read_input(args)
        config = OptimizerConfig(seed=args.seed, sample_count=args.samples, use_learned=not args.no_model)
        handle = start_session(
            code,
            args.arch,
            config,
            base_address=args.base,
            exit=exit_signature(args),
            proposer=proposer,
        )
        result = await_result(handle)
    except SessionCancelled:
        logger.warning("Session cancelled")
        return 130
    except SessionFailed as e:
        logger.error(f"[bold red]Optimization failed:[/bold red] {e}")
        return 1
    except NeurAssemblyError as e:
        logger.error(f"[bold red]Error:[/bold red] {e}")
        return 1

    render(result)
    if args.output:
        args.output.write_bytes(result.code)
        logger.info(f"Wrote {len(result.code)} bytes to {args.output}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
