"""
Cost model and scoring.

Static per-architecture cycle estimates with an optional profiling hook, the
score of a rewrite, and whole-sequence performance metrics.
"""

from dataclasses import dataclass
from typing import Callable, Sequence

from neurassembly import const
from neurassembly.isa.effects import is_zero_idiom
from neurassembly.isa.instruction import Instruction
from neurassembly.isa.operands import Mem, Reg


# Estimated cycles per mnemonic, register-operand form
INSTRUCTION_CYCLES: dict[str, dict[str, float]] = {
    "x86_64": {
        "nop": 1, "mov": 1, "lea": 1,
        "add": 1, "sub": 1, "adc": 1, "sbb": 1, "inc": 1, "dec": 1, "neg": 1,
        "and": 1, "or": 1, "xor": 1, "not": 1, "cmp": 1, "test": 1,
        "shl": 1, "shr": 1, "sar": 1,
        "imul": 3, "mul": 3, "div": 15, "idiv": 15,
        "push": 3, "pop": 3,
        "jmp": 2, "call": 3, "ret": 3,
    },
}
DEFAULT_CYCLES = 1.0
BRANCH_CYCLES = 2.0
MEMORY_LOAD_PENALTY = 3.0
MEMORY_STORE_PENALTY = 1.0
ZERO_IDIOM_CYCLES = 0.25

# Mnemonics whose table cost already accounts for their implicit stack access
_IMPLICIT_MEMORY = frozenset({"push", "pop", "call", "ret"})

ProfileHook = Callable[[Instruction], "float | None"]


@dataclass(frozen=True)
class Score:
    """
    Gain of replacing an original window with a replacement.

    Attributes:
        cycles_saved: cost(original) - cost(replacement), may be negative
        bytes_saved: size(original) - size(replacement), may be negative
        instructions_saved: len(original) - len(replacement)
        size_weight: Cycles credited per byte saved
    """

    cycles_saved: float
    bytes_saved: int
    instructions_saved: int
    size_weight: float = const.SIZE_WEIGHT

    @property
    def value(self) -> float:
        return self.cycles_saved + self.size_weight * self.bytes_saved

    def sort_key(self) -> tuple:
        """Higher value first, then fewer resulting instructions, then smaller code."""
        return (-self.value, -self.instructions_saved, -self.bytes_saved)


@dataclass(frozen=True)
class PerformanceMetrics:
    instruction_count: int
    estimated_cycles: float
    memory_ops: int
    register_pressure: int
    code_size: int


@dataclass(frozen=True)
class MetricsComparison:
    """Percentage reductions from an original to an optimized sequence."""

    instruction_reduction: float
    cycle_reduction: float
    memory_ops_reduction: float
    register_pressure_change: float
    code_size_reduction: float


def percentage_change(original: float, new: float) -> float:
    if original == 0:
        return 0.0
    return (original - new) / original * 100.0


class CostModel:
    """
    Estimates instruction costs in cycles.

    A ``profile_hook`` may substitute measured data: when it returns a number
    for an instruction, that number is used instead of the static estimate.
    """

    def __init__(
        self,
        arch: str = "x86_64",
        size_weight: float = const.SIZE_WEIGHT,
        profile_hook: ProfileHook | None = None,
    ) -> None:
        """
        Initialize the cost model.

        Args:
            arch: Architecture whose cycle table to use
            size_weight: Cycles credited per byte saved in ``score``
            profile_hook: Optional callable returning measured cycles or None
        """
        self.table = INSTRUCTION_CYCLES.get(arch, INSTRUCTION_CYCLES["x86_64"])
        self.size_weight = size_weight
        self.profile_hook = profile_hook

    def instruction_cost(self, ins: Instruction) -> float:
        if self.profile_hook is not None:
            measured = self.profile_hook(ins)
            if measured is not None:
                return float(measured)
        if is_zero_idiom(ins):
            return ZERO_IDIOM_CYCLES
        if ins.mnemonic.startswith("j") and ins.mnemonic != "jmp":
            cycles = BRANCH_CYCLES
        else:
            cycles = float(self.table.get(ins.mnemonic, DEFAULT_CYCLES))
        if ins.mnemonic in _IMPLICIT_MEMORY:
            return cycles
        effects = ins.effects
        if effects is not None and not effects.unknown and effects.hazard is None:
            if effects.mem_read:
                cycles += MEMORY_LOAD_PENALTY
            if effects.mem_write:
                cycles += MEMORY_STORE_PENALTY
        elif any(isinstance(op, Mem) for op in ins.operands):
            cycles += MEMORY_LOAD_PENALTY
        return cycles

    def cost(self, instructions: Sequence[Instruction]) -> float:
        return sum(self.instruction_cost(ins) for ins in instructions)

    def weighted_cost(self, instructions: Sequence[Instruction]) -> float:
        """Cycles plus ``size_weight`` per byte; a positive score lowers this."""
        return self.cost(instructions) + self.size_weight * sum(ins.length for ins in instructions)

    def score(self, original: Sequence[Instruction], replacement: Sequence[Instruction]) -> Score:
        """
        Score a rewrite.

        Returns:
            Score whose ``value`` is cycles saved plus ``size_weight`` times bytes saved
        """
        return Score(
            cycles_saved=self.cost(original) - self.cost(replacement),
            bytes_saved=sum(ins.length for ins in original) - sum(ins.length for ins in replacement),
            instructions_saved=len(original) - len(replacement),
            size_weight=self.size_weight,
        )

    def metrics(self, instructions: Sequence[Instruction]) -> PerformanceMetrics:
        registers = set()
        memory_ops = 0
        for ins in instructions:
            for op in ins.operands:
                if isinstance(op, Reg):
                    registers.add(op.name)
                elif isinstance(op, Mem):
                    registers |= op.registers
                    memory_ops += 1
            if ins.mnemonic in ("push", "pop"):
                memory_ops += 1
        return PerformanceMetrics(
            instruction_count=len(instructions),
            estimated_cycles=self.cost(instructions),
            memory_ops=memory_ops,
            register_pressure=len(registers),
            code_size=sum(ins.length for ins in instructions),
        )

    def compare(self, original: Sequence[Instruction], optimized: Sequence[Instruction]) -> MetricsComparison:
        before = self.metrics(original)
        after = self.metrics(optimized)
        return MetricsComparison(
            instruction_reduction=percentage_change(before.instruction_count, after.instruction_count),
            cycle_reduction=percentage_change(before.estimated_cycles, after.estimated_cycles),
            memory_ops_reduction=percentage_change(before.memory_ops, after.memory_ops),
            register_pressure_change=percentage_change(before.register_pressure, after.register_pressure),
            code_size_reduction=percentage_change(before.code_size, after.code_size),
        )
