"""
Session configuration.

Defaults come from ``neurassembly.const`` (which reads the environment);
explicit keyword arguments override them.
"""

import logging
import os
from dataclasses import dataclass, field

from neurassembly import const

logger = logging.getLogger("neurassembly.optimizer")


@dataclass
class OptimizerConfig:
    """
    Tunables of one optimization session.

    Attributes:
        window_size: Maximum instructions per candidate window
        window_overlap: Instructions shared by consecutive windows
        sample_count: Random states per sampled verification
        min_samples: Passing samples a Tested verdict needs to be accepted
            (defaults to sample_count)
        verification_timeout: Deadline in seconds for one candidate
        symbolic_max_instructions: Largest len(original)+len(replacement)
            handed to the SMT solver
        symbolic_memory: Whether memory-touching windows may be proven symbolically
        inference_timeout: Deadline in seconds for one learned-proposer call
        confidence_threshold: Minimum confidence of a learned proposal
        global_reverify_interval: Commits between whole-sequence re-verifications
        global_samples: Random states per whole-sequence re-verification
        global_max_steps: Instruction budget per whole-sequence run
        max_iterations: Candidate verifications before the session stops
        time_budget: Wall-clock seconds before the session stops
        size_weight: Cycles credited per byte saved
        workers: Verifier worker threads
        queue_capacity: Bound of the candidate queue between stages
        seed: Base seed for sampled verification
        use_learned: Whether to query the learned proposer
    """

    window_size: int = const.WINDOW_SIZE
    window_overlap: int = const.WINDOW_OVERLAP
    sample_count: int = const.SAMPLE_COUNT
    min_samples: int | None = None
    verification_timeout: float = const.VERIFICATION_TIMEOUT
    symbolic_max_instructions: int = const.SYMBOLIC_MAX_INSTRUCTIONS
    symbolic_memory: bool = const.SYMBOLIC_MEMORY
    inference_timeout: float = const.INFERENCE_TIMEOUT
    confidence_threshold: float = const.CONFIDENCE_THRESHOLD
    global_reverify_interval: int = const.GLOBAL_REVERIFY_INTERVAL
    global_samples: int = const.GLOBAL_SAMPLES
    global_max_steps: int = const.GLOBAL_MAX_STEPS
    max_iterations: int = const.MAX_ITERATIONS
    time_budget: float = const.TIME_BUDGET
    size_weight: float = const.SIZE_WEIGHT
    workers: int = field(default_factory=lambda: os.cpu_count() or 1)
    queue_capacity: int = const.QUEUE_CAPACITY
    seed: int = const.SEED
    use_learned: bool = True

    def __post_init__(self) -> None:
        """Validate ranges."""
        if self.window_size < 1:
            raise ValueError(f"window_size must be >= 1, got {self.window_size}")
        if not 0 <= self.window_overlap < self.window_size:
            clamped = max(0, min(self.window_overlap, self.window_size - 1))
            logger.warning(
                f"window_overlap={self.window_overlap} outside [0, {self.window_size}), clamped to {clamped}"
            )
            self.window_overlap = clamped
        if self.sample_count < 1:
            raise ValueError(f"sample_count must be >= 1, got {self.sample_count}")
        if self.min_samples is None:
            self.min_samples = self.sample_count
        if not 1 <= self.min_samples <= self.sample_count:
            raise ValueError(f"min_samples must be in [1, {self.sample_count}], got {self.min_samples}")
        if self.workers < 1:
            raise ValueError(f"workers must be >= 1, got {self.workers}")
        if self.queue_capacity < 1:
            raise ValueError(f"queue_capacity must be >= 1, got {self.queue_capacity}")
        if not 0.0 <= self.confidence_threshold <= 1.0:
            raise ValueError(f"confidence_threshold must be in [0, 1], got {self.confidence_threshold}")
        if self.global_reverify_interval < 1:
            self.global_reverify_interval = 1
