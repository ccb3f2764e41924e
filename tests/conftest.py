"""
Shared fixtures for the neurassembly test suite.
"""
import pytest

from neurassembly.isa.asm import assemble_sequence, parse_instructions
from neurassembly.isa.instruction import ExitSignature
from neurassembly.isa.liveness import analyze
from neurassembly.isa.operands import ALL_REGISTERS
from neurassembly.optimizer.analyzer import Window
from neurassembly.optimizer.config import OptimizerConfig
from neurassembly.optimizer.generator import GenerationContext


@pytest.fixture
def config():
    """Small, fast and deterministic session configuration."""
    return OptimizerConfig(
        sample_count=64,
        global_samples=32,
        workers=2,
        seed=7,
        verification_timeout=30.0,
        inference_timeout=2.0,
        time_budget=120.0,
    )


@pytest.fixture
def flags_dead_exit():
    """Every register observable at exit, no flags."""
    return ExitSignature(registers=ALL_REGISTERS, flags=frozenset())


def window_for(seq, start, stop, liveness=None):
    liveness = liveness or analyze(seq)
    body = seq.instructions[start:stop]
    return Window(
        start=start,
        stop=stop,
        uids=tuple(ins.uid for ins in body),
        start_address=body[0].address,
        priority=0.0,
        live_out=liveness.after(stop - 1),
    )


@pytest.fixture
def make_context():
    """Build the generation context of window ``seq[start:stop]``."""

    def _make(seq, start, stop):
        liveness = analyze(seq)
        return GenerationContext(seq, window_for(seq, start, stop, liveness), liveness)

    return _make


@pytest.fixture
def make_candidate(make_context):
    """Build a candidate replacing ``seq[start:stop]`` with assembly lines."""

    def _make(seq, start, stop, lines, origin="test:manual"):
        context = make_context(seq, start, stop)
        return context.make_candidate(start, stop, parse_instructions(lines), origin)

    return _make


@pytest.fixture
def program():
    """Assemble text into an annotated sequence."""

    def _program(text, base_address=0x1000, **signatures):
        return assemble_sequence(text, base_address, **signatures)

    return _program
