"""
Window analyzer for identifying rewrite opportunities.

Splits an instruction sequence into straight-line segments and slides
fixed-size windows over them. Each window gets a gain potential (the
estimated cost of its body) used to prioritize the work queue.
"""

import logging
from dataclasses import dataclass

from neurassembly.isa.instruction import ControlKind, InstructionSequence
from neurassembly.isa.liveness import Liveness, analyze
from neurassembly.optimizer.config import OptimizerConfig
from neurassembly.optimizer.cost import CostModel

logger = logging.getLogger("neurassembly.optimizer")

TERMINATORS = (ControlKind.JUMP, ControlKind.BRANCH, ControlKind.RETURN)


@dataclass(frozen=True)
class Window:
    """
    A contiguous slice of straight-line instructions.

    Attributes:
        start: Index of the first instruction
        stop: Index one past the last body instruction
        uids: uids of the body instructions
        start_address: Address of the first instruction
        priority: Gain potential (estimated cost of the body)
        live_out: Registers and flags live after the body
    """

    start: int
    stop: int
    uids: tuple[int, ...]
    start_address: int
    priority: float
    live_out: frozenset[str]

    @property
    def key(self) -> tuple:
        return (self.uids, self.live_out)

    def overlaps(self, other: "Window") -> bool:
        return self.start < other.stop and other.start < self.stop

    def sort_key(self) -> tuple:
        """Highest gain potential first, ties to the lowest start address."""
        return (-self.priority, self.start_address, self.start)


class WindowAnalyzer:
    """
    Finds candidate windows in an instruction sequence.

    Barriers (unknown effects, hazards, calls, indirect control transfers)
    are never part of a window; in-sequence branch targets start a new
    segment and direct jumps, conditional branches and returns end one.
    """

    def __init__(self, config: OptimizerConfig | None = None, cost_model: CostModel | None = None) -> None:
        """
        Initialize the window analyzer.

        Args:
            config: Session configuration (window size and overlap)
            cost_model: Cost model used for gain potential
        """
        self.config = config or OptimizerConfig()
        self.cost_model = cost_model or CostModel()

    def segments(self, seq: InstructionSequence) -> list[tuple[int, int]]:
        """
        Split ``seq`` into straight-line segments.

        Returns:
            ``(start, stop)`` index pairs of rewritable instruction runs
        """
        targets = seq.branch_target_indices()
        segments: list[tuple[int, int]] = []
        start = None
        for i, ins in enumerate(seq):
            effects = ins.effects
            if i in targets and start is not None and start < i:
                segments.append((start, i))
                start = None
            if effects.is_barrier or effects.control in TERMINATORS:
                if start is not None and start < i:
                    segments.append((start, i))
                start = None
                continue
            if start is None:
                start = i
        if start is not None and start < len(seq):
            segments.append((start, len(seq)))
        return segments

    def find_windows(self, seq: InstructionSequence, liveness: Liveness | None = None) -> list[Window]:
        """
        Slide windows over every segment.

        Args:
            seq: Sequence to analyze
            liveness: Precomputed liveness (computed if not provided)

        Returns:
            Windows sorted by priority (highest first, ties by start address)
        """
        liveness = liveness or analyze(seq)
        size = self.config.window_size
        stride = max(1, size - self.config.window_overlap)
        windows: list[Window] = []
        for seg_start, seg_stop in self.segments(seq):
            start = seg_start
            while True:
                stop = min(start + size, seg_stop)
                body = seq.instructions[start:stop]
                windows.append(Window(
                    start=start,
                    stop=stop,
                    uids=tuple(ins.uid for ins in body),
                    start_address=body[0].address,
                    priority=self.cost_model.cost(body),
                    live_out=liveness.after(stop - 1),
                ))
                if stop >= seg_stop:
                    break
                start += stride

        windows.sort(key=Window.sort_key)
        if windows:
            logger.debug(f"Found {len(windows)} windows in {len(seq)} instructions")
        return windows
