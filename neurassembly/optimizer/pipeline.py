"""
Generation/verification pipeline for one batch of windows.

Generator tasks push candidates into a bounded queue; verifier workers drain
it, verify and score. A full queue blocks the generators until the verifiers
catch up. Results are collected by (window, candidate) position so the
outcome does not depend on completion order.
"""

import logging
import queue
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

from neurassembly.errors import OperationCancelled
from neurassembly.optimizer.config import OptimizerConfig
from neurassembly.optimizer.cost import CostModel, Score
from neurassembly.optimizer.generator import CandidateGenerator, GenerationContext, TransformationCandidate
from neurassembly.optimizer.validator import Deadline, EquivalenceVerifier, VerificationResult

logger = logging.getLogger("neurassembly.optimizer")

_SENTINEL = object()


@dataclass
class CandidateOutcome:
    """A candidate with its verdict; ``result`` is None when it was never verified."""

    candidate: TransformationCandidate
    result: VerificationResult | None = None
    score: Score | None = None


@dataclass
class WindowOutcome:
    context: GenerationContext
    outcomes: list[CandidateOutcome] = field(default_factory=list)
    degraded: list[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return all(o.result is not None for o in self.outcomes)


@dataclass
class BatchResult:
    windows: list[WindowOutcome]
    verifications: int
    exhausted: bool


class VerificationPipeline:
    """
    Runs generation, verification and scoring for a batch of windows.

    Workers only read the immutable snapshots handed to them; nothing here
    mutates the session's sequence.
    """

    def __init__(
        self,
        generator: CandidateGenerator,
        verifier: EquivalenceVerifier,
        cost_model: CostModel,
        config: OptimizerConfig | None = None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.generator = generator
        self.verifier = verifier
        self.cost_model = cost_model
        self.config = config or OptimizerConfig()
        self.cancel_event = cancel_event or threading.Event()

    def run(
        self,
        contexts: list[GenerationContext],
        iteration_limit: int,
        deadline: Deadline | None = None,
    ) -> BatchResult:
        """
        Process one batch.

        Args:
            contexts: One generation context per window, in priority order
            iteration_limit: Maximum verifications this batch may perform
            deadline: Session time budget

        Returns:
            BatchResult with per-window outcomes in input order; ``exhausted``
            is set when the iteration limit or time budget cut the batch short

        Raises:
            OperationCancelled: If the session was cancelled during the batch
        """
        deadline = deadline or Deadline(None)
        workers = self.config.workers
        work: queue.Queue = queue.Queue(maxsize=self.config.queue_capacity)
        generated: list = [None] * len(contexts)
        results: dict[tuple[int, int], tuple[VerificationResult, Score | None]] = {}
        lock = threading.Lock()
        counters = {"verified": 0, "exhausted": False}
        failures: list[BaseException] = []

        def produce(index: int, context: GenerationContext) -> None:
            if self.cancel_event.is_set():
                return
            outcome = self.generator.generate(context)
            generated[index] = outcome
            for position, candidate in enumerate(outcome.candidates):
                work.put((index, position, candidate))

        def consume() -> None:
            while True:
                item = work.get()
                if item is _SENTINEL:
                    return
                if failures or self.cancel_event.is_set():
                    continue
                if deadline.expired():
                    counters["exhausted"] = True
                    continue
                index, position, candidate = item
                with lock:
                    if counters["verified"] >= iteration_limit:
                        counters["exhausted"] = True
                        continue
                    counters["verified"] += 1
                try:
                    result = self.verifier.verify(candidate)
                    score = None
                    if result.equivalent:
                        score = self.cost_model.score(candidate.original, candidate.replacement)
                except OperationCancelled:
                    continue
                except Exception as e:
                    failures.append(e)
                    continue
                with lock:
                    results[(index, position)] = (result, score)

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="verify") as verify_pool:
            consumers = [verify_pool.submit(consume) for _ in range(workers)]
            try:
                with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="generate") as generate_pool:
                    producers = [generate_pool.submit(produce, i, ctx) for i, ctx in enumerate(contexts)]
                    for future in producers:
                        future.result()
            finally:
                for _ in consumers:
                    work.put(_SENTINEL)
            for future in consumers:
                future.result()

        if failures:
            raise failures[0]
        if self.cancel_event.is_set():
            raise OperationCancelled("Session cancelled")

        windows = []
        for index, context in enumerate(contexts):
            outcome = generated[index]
            window = WindowOutcome(context)
            if outcome is not None:
                window.degraded = list(outcome.degraded)
                for position, candidate in enumerate(outcome.candidates):
                    result, score = results.get((index, position), (None, None))
                    window.outcomes.append(CandidateOutcome(candidate, result, score))
            windows.append(window)
        logger.debug(f"Batch of {len(contexts)} windows: {counters['verified']} verifications")
        return BatchResult(windows, counters["verified"], counters["exhausted"])
