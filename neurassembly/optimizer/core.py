"""
Optimization session controller.

This module implements the ``OptimizationSession`` that coordinates the
Decode-Generate-Verify-Commit workflow over one code region.
"""

import heapq
import itertools
import logging
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Sequence

from neurassembly.errors import (
    BudgetExceeded,
    EncodeError,
    IntegrityViolation,
    OperationCancelled,
    SessionCancelled,
    SessionFailed,
)
from neurassembly.isa.codec import decode, encode, get_architecture, splice
from neurassembly.isa.instruction import EntrySignature, ExitSignature, InstructionSequence
from neurassembly.isa.liveness import Liveness, analyze
from neurassembly.optimizer.analyzer import Window, WindowAnalyzer
from neurassembly.optimizer.commit_manager import AppliedTransformation, Checkpoint, CheckpointManager
from neurassembly.optimizer.config import OptimizerConfig
from neurassembly.optimizer.cost import CostModel, MetricsComparison
from neurassembly.optimizer.generator import (
    CandidateGenerator,
    CandidateSource,
    GenerationContext,
    LearnedSource,
    RuleBasedSource,
)
from neurassembly.optimizer.llm_generator import GeminiProposer, LearnedProposer
from neurassembly.optimizer.pipeline import CandidateOutcome, VerificationPipeline
from neurassembly.optimizer.safety import SafetyEnforcer
from neurassembly.optimizer.validator import Deadline, EquivalenceVerifier, GlobalVerifier, Verdict

logger = logging.getLogger("neurassembly.optimizer")


class SessionState(Enum):
    INITIALIZED = "initialized"
    DECODING = "decoding"
    OPTIMIZING = "optimizing"
    RE_ENCODING = "re_encoding"
    FINALIZED = "finalized"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class AuditEvent:
    timestamp: datetime
    kind: str
    detail: str
    data: dict = field(default_factory=dict)


@dataclass
class RejectedCandidate:
    """A candidate that was verified or considered but not committed."""

    origin: str
    address: int
    original: tuple[str, ...]
    replacement: tuple[str, ...]
    verdict: str
    reason: str
    fingerprint: str = ""


@dataclass
class UnresolvedWindow:
    start_address: int
    instructions: tuple[str, ...]


@dataclass
class FinalResult:
    """
    Terminal output of a session.

    Attributes:
        code: Re-encoded machine code
        sequence: Final instruction sequence
        applied: Committed transformations in commit order
        aggregate_score: Sum of the committed scores
        rejected: Candidates not committed, with reasons
        unresolved: Windows left unprocessed when a budget ran out
        original_cost: Weighted cost of the input
        final_cost: Weighted cost of the output
        metrics: Percentage reductions from input to output
        budget_exceeded: Whether the session stopped on a budget
        audit_trail: Chronological session events
    """

    code: bytes
    sequence: InstructionSequence
    applied: list[AppliedTransformation]
    aggregate_score: float
    rejected: list[RejectedCandidate]
    unresolved: list[UnresolvedWindow]
    original_cost: float
    final_cost: float
    metrics: MetricsComparison
    budget_exceeded: bool = False
    audit_trail: list[AuditEvent] = field(default_factory=list)


class OptimizationSession:
    """
    Main orchestrator for one optimization session.

    This class coordinates the workflow:
    1. Decoding: Bytes to an annotated instruction sequence
    2. Generation: Rule-based and learned candidates per window
    3. Verification: Safety, symbolic proof or sampled testing, then scoring
    4. Commit: Serial splice with a checkpoint, periodic global re-verification

    The session is the only writer of its sequence; worker threads read the
    immutable snapshot they were handed.
    """

    def __init__(
        self,
        code: bytes,
        arch: str = "x86_64",
        config: OptimizerConfig | None = None,
        *,
        base_address: int = 0,
        entry: EntrySignature | None = None,
        exit: ExitSignature | None = None,
        sources: Sequence[CandidateSource] | None = None,
        proposer: LearnedProposer | None = None,
        llm_client: Any | None = None,
        verifier: EquivalenceVerifier | None = None,
        global_verifier: GlobalVerifier | None = None,
        cost_model: CostModel | None = None,
        safety: SafetyEnforcer | None = None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        """
        Initialize the session.

        Args:
            code: Machine code to optimize
            arch: Architecture name
            config: Session configuration (defaults from the environment)
            base_address: Load address of ``code[0]``
            entry: Entry signature
            exit: Exit signature
            sources: Candidate sources (replaces the default rule/learned pair)
            proposer: Learned proposer for the default learned source
            llm_client: Google GenAI client used when no proposer is given
            verifier: Window verifier
            global_verifier: Whole-sequence verifier
            cost_model: Cost model used for priorities and scores
            safety: Safety enforcer for the default verifier
            cancel_event: Shared cancellation flag

        Raises:
            UnsupportedArchitecture: If ``arch`` is not registered
        """
        self.architecture = get_architecture(arch)
        self.code = bytes(code)
        self.config = config or OptimizerConfig()
        self.base_address = base_address
        self.entry = entry
        self.exit = exit
        self.cancel_event = cancel_event or threading.Event()
        self.state = SessionState.INITIALIZED

        self.cost_model = cost_model or CostModel(self.architecture.name, self.config.size_weight)
        self.analyzer = WindowAnalyzer(self.config, self.cost_model)
        self.verifier = verifier or EquivalenceVerifier(self.config, safety, self.cancel_event)
        self.global_verifier = global_verifier or GlobalVerifier(self.config, self.cancel_event)

        if sources is None:
            sources = [RuleBasedSource()]
            if proposer is None and llm_client is not None:
                proposer = GeminiProposer(llm_client)
            if proposer is not None and self.config.use_learned:
                sources.append(LearnedSource(proposer, self.config))
        self.generator = CandidateGenerator(sources)
        self.pipeline = VerificationPipeline(
            self.generator, self.verifier, self.cost_model, self.config, self.cancel_event
        )

        self.original: InstructionSequence | None = None
        self.sequence: InstructionSequence | None = None
        self.checkpoints: CheckpointManager | None = None
        self.result: FinalResult | None = None

        self._liveness: Liveness | None = None
        self._heap: list = []
        self._counter = itertools.count()
        self._visited: set[tuple] = set()
        self._blacklist: dict[str, str] = {}
        self._applied: list[AppliedTransformation] = []
        self._rejected: list[RejectedCandidate] = []
        self._unresolved: list[UnresolvedWindow] = []
        self._audit_trail: list[AuditEvent] = []
        self._iterations = 0
        self._since_reverify = 0

    # lifecycle

    def cancel(self) -> None:
        """Request cooperative cancellation; the run ends in CANCELLED."""
        self.cancel_event.set()

    def run(self) -> FinalResult:
        """
        Run the session to completion.

        Returns:
            FinalResult (partial, with ``budget_exceeded`` set, when a budget ran out)

        Raises:
            SessionFailed: On a fatal error, carrying the last good checkpoint
            SessionCancelled: If the session was cancelled
        """
        started = time.monotonic()
        try:
            self._set_state(SessionState.DECODING)
            self.original = decode(
                self.code, self.architecture.name, self.base_address, self.entry, self.exit
            )
            self.sequence = self.original
            self._liveness = analyze(self.sequence)
            self.checkpoints = CheckpointManager(self.original)
            self._audit("decode", f"{len(self.original)} instructions", size=len(self.code))

            self._set_state(SessionState.OPTIMIZING)
            budget_exceeded = self._optimize()

            self._set_state(SessionState.RE_ENCODING)
            self.result = self._finalize(budget_exceeded)
            self._set_state(SessionState.FINALIZED)
            self.checkpoints.discard()
            logger.info(
                f"Session finished in {time.monotonic() - started:.2f}s: "
                f"{len(self.result.applied)} transformations, score {self.result.aggregate_score:.2f}"
            )
            return self.result
        except OperationCancelled:
            self._set_state(SessionState.CANCELLED)
            self._audit("cancelled", "session cancelled")
            raise SessionCancelled(self._last_good()) from None
        except Exception as e:
            self._set_state(SessionState.FAILED)
            logger.error(f"Session failed: {e}")
            self._audit("failed", str(e))
            raise SessionFailed(e, self._last_good()) from e
        finally:
            self.generator.close()

    def _set_state(self, state: SessionState) -> None:
        logger.debug(f"Session state {self.state.value} -> {state.value}")
        self.state = state

    def _last_good(self) -> Checkpoint | None:
        return self.checkpoints.last_good() if self.checkpoints else None

    def _audit(self, kind: str, detail: str, **data) -> None:
        self._audit_trail.append(AuditEvent(datetime.now(), kind, detail, data))

    # work queue

    def _push(self, window: Window) -> None:
        heapq.heappush(self._heap, (window.sort_key(), next(self._counter), window))

    def _resolve(self, window: Window) -> Window | None:
        """Map a queued window onto the current sequence, or None if it was edited away."""
        uids = self.sequence.uid_map()
        start = uids.get(window.uids[0])
        if start is None:
            return None
        stop = start + len(window.uids)
        if stop > len(self.sequence):
            return None
        if tuple(ins.uid for ins in self.sequence.instructions[start:stop]) != window.uids:
            return None
        return replace(
            window,
            start=start,
            stop=stop,
            start_address=self.sequence[start].address,
            live_out=self._liveness.after(stop - 1),
        )

    def _enqueue_unvisited(self, windows: list[Window]) -> int:
        added = 0
        for window in windows:
            if window.key not in self._visited:
                self._push(window)
                added += 1
        return added

    def _rescan(self) -> bool:
        """Re-enqueue windows not yet visited with their current liveness."""
        windows = self.analyzer.find_windows(self.sequence, self._liveness)
        added = self._enqueue_unvisited(windows)
        if added:
            logger.debug(f"Rescan queued {added} windows")
        return added > 0

    def _rederive_around(self, lo: int, hi: int) -> None:
        size = self.config.window_size
        windows = self.analyzer.find_windows(self.sequence, self._liveness)
        self._enqueue_unvisited([w for w in windows if w.start < hi + size and w.stop > lo - size])

    def _pop_batch(self) -> list[Window]:
        batch: list[Window] = []
        deferred: list[Window] = []
        while self._heap and len(batch) < self.config.workers:
            _, _, queued = heapq.heappop(self._heap)
            window = self._resolve(queued)
            if window is None or window.key in self._visited:
                continue
            if any(window.overlaps(other) for other in batch):
                deferred.append(window)
                continue
            self._visited.add(window.key)
            batch.append(window)
        for window in deferred:
            self._push(window)
        return batch

    # main loop

    def _check_budget(self, deadline: Deadline) -> None:
        if self.cancel_event.is_set():
            raise OperationCancelled("Session cancelled")
        if self._iterations >= self.config.max_iterations:
            raise BudgetExceeded(f"iteration budget of {self.config.max_iterations} exhausted")
        if deadline.expired():
            raise BudgetExceeded(f"time budget of {self.config.time_budget}s exhausted")

    def _optimize(self) -> bool:
        """
        Run batches until a fixed point or a budget.

        Returns:
            True if a budget ran out
        """
        deadline = Deadline(self.config.time_budget, self.cancel_event)
        self._rescan()
        try:
            while True:
                if not self._heap and not self._rescan():
                    if self._global_reverify():
                        return False
                    self._rescan()
                    continue
                self._check_budget(deadline)
                batch = self._pop_batch()
                if batch:
                    self._process_batch(batch, deadline)
        except BudgetExceeded as e:
            logger.warning(f"Stopping early: {e}")
            self._audit("budget", str(e))
            for _, _, queued in sorted(self._heap):
                window = self._resolve(queued)
                if window is not None and window.key not in self._visited:
                    self._mark_unresolved(window)
            self._heap.clear()
            self._global_reverify()
            return True

    def _mark_unresolved(self, window: Window) -> None:
        body = self.sequence.instructions[window.start:window.stop]
        self._unresolved.append(UnresolvedWindow(window.start_address, tuple(str(ins) for ins in body)))

    def _process_batch(self, batch: list[Window], deadline: Deadline) -> None:
        contexts = [GenerationContext(self.sequence, window, self._liveness) for window in batch]
        outcome = self.pipeline.run(
            contexts,
            iteration_limit=self.config.max_iterations - self._iterations,
            deadline=deadline,
        )
        self._iterations += outcome.verifications

        for window_outcome in outcome.windows:
            window = window_outcome.context.window
            for reason in window_outcome.degraded:
                self._audit("degraded", reason, address=window.start_address)

            accepted = []
            for candidate_outcome in window_outcome.outcomes:
                if candidate_outcome.result is None:
                    continue
                reason = self._rejection_reason(candidate_outcome)
                if reason is None:
                    accepted.append(candidate_outcome)
                else:
                    self._reject(candidate_outcome, reason)

            if accepted:
                best = min(
                    accepted,
                    key=lambda o: (o.score.sort_key(), o.candidate.origin, o.candidate.fingerprint),
                )
                if not self._try_commit(best):
                    self._visited.discard(window.key)
                    resolved = self._resolve(window)
                    if resolved is not None:
                        self._push(resolved)
            elif not window_outcome.complete:
                # Stays unresolved when the budget cut verification short
                self._visited.discard(window.key)
                resolved = self._resolve(window)
                if resolved is not None:
                    self._push(resolved)

        if outcome.exhausted:
            if self._iterations >= self.config.max_iterations:
                raise BudgetExceeded(f"iteration budget of {self.config.max_iterations} exhausted")
            raise BudgetExceeded(f"time budget of {self.config.time_budget}s exhausted")

    def _rejection_reason(self, outcome: CandidateOutcome) -> str | None:
        result = outcome.result
        candidate = outcome.candidate
        if result.verdict == Verdict.TESTED:
            if result.passed < self.config.min_samples:
                return f"only {result.passed} samples passed, {self.config.min_samples} required"
        elif result.verdict != Verdict.SYMBOLIC_PROVEN:
            return result.reason or result.verdict.value
        if candidate.fingerprint in self._blacklist:
            return self._blacklist[candidate.fingerprint]
        if outcome.score is None or outcome.score.value <= 0:
            return "no gain"
        return None

    def _reject(self, outcome: CandidateOutcome, reason: str) -> None:
        candidate = outcome.candidate
        verdict = outcome.result.verdict.value if outcome.result else "unverified"
        address = candidate.original[0].address if candidate.original else 0
        self._rejected.append(RejectedCandidate(
            origin=candidate.origin,
            address=address,
            original=tuple(str(ins) for ins in candidate.original),
            replacement=tuple(str(ins) for ins in candidate.replacement),
            verdict=verdict,
            reason=reason,
            fingerprint=candidate.fingerprint,
        ))
        logger.debug(f"Rejected {candidate.origin} at {address:#x}: {reason}")

    def _try_commit(self, outcome: CandidateOutcome) -> bool:
        """
        Commit a verified candidate if its source is still intact.

        Returns:
            False if the sequence changed under the candidate, or the edit could
            not be laid out, and its window must be re-derived

        Raises:
            IntegrityViolation: If the splice breaks sequence invariants
        """
        candidate = outcome.candidate
        uids = self.sequence.uid_map()
        start = uids.get(candidate.source_uids[0])
        if start is None:
            return False
        stop = start + len(candidate.source_uids)
        current = tuple(ins.uid for ins in self.sequence.instructions[start:stop])
        if current != candidate.source_uids:
            return False
        if not self._liveness.after(stop - 1) <= candidate.live_out:
            return False

        before = self.sequence
        try:
            after = splice(before, start, stop, candidate.replacement)
        except EncodeError as e:
            reason = f"relayout failed: {e}"
            logger.warning(f"Not committing {candidate.origin} at {before[start].address:#x}: {reason}")
            self._reject(outcome, reason)
            self._blacklist[candidate.fingerprint] = reason
            return False
        transformation = AppliedTransformation(
            checkpoint_id=self.checkpoints.next_id(),
            origin=candidate.origin,
            address=before[start].address,
            original=tuple(str(ins) for ins in candidate.original),
            replacement=tuple(str(ins) for ins in candidate.replacement),
            verdict=outcome.result.verdict.value,
            score=outcome.score,
            evidence=dict(outcome.result.evidence, samples=outcome.result.samples, passed=outcome.result.passed),
            fingerprint=candidate.fingerprint,
        )
        self.checkpoints.push(before, after, transformation)
        self._applied.append(transformation)
        self.sequence = after
        self._liveness = analyze(after)
        self._since_reverify += 1

        logger.info(
            f"Committed {candidate.origin} at {transformation.address:#x}: "
            f"{candidate.describe()} (score {outcome.score.value:.2f})"
        )
        self._audit(
            "commit",
            candidate.describe(),
            checkpoint=transformation.checkpoint_id,
            origin=candidate.origin,
            address=transformation.address,
            verdict=transformation.verdict,
        )
        self._rederive_around(start, start + len(candidate.replacement))
        if self._since_reverify >= self.config.global_reverify_interval:
            self._global_reverify()
        return True

    def _global_reverify(self) -> bool:
        """
        Re-verify the whole sequence against the original.

        Returns:
            True if nothing was pending or verification passed; False after a rollback
        """
        self._since_reverify = 0
        if not self.checkpoints.pending():
            return True
        result = self.global_verifier.verify(self.original, self.sequence)
        if result.equivalent:
            self.checkpoints.mark_verified()
            self._audit("global_verify", "passed", samples=result.samples)
            logger.debug(f"Global re-verification passed ({result.samples} samples)")
            return True

        logger.warning(f"Global re-verification failed: {result.reason}")
        restored, discarded = self.checkpoints.rollback_to_last_verified()
        self.sequence = restored
        self._liveness = analyze(restored)
        dropped = {cp.checkpoint_id for cp in discarded}
        self._applied = [t for t in self._applied if t.checkpoint_id not in dropped]
        for checkpoint in discarded:
            transformation = checkpoint.transformation
            self._blacklist[transformation.fingerprint] = "blacklisted after failed global re-verification"
            self._rejected.append(RejectedCandidate(
                origin=transformation.origin,
                address=transformation.address,
                original=transformation.original,
                replacement=transformation.replacement,
                verdict=Verdict.REJECTED.value,
                reason=f"global re-verification failed: {result.reason}",
                fingerprint=transformation.fingerprint,
            ))
        self._audit("rollback", result.reason, discarded=sorted(dropped))
        self._heap.clear()
        self._visited.clear()
        return False

    def _finalize(self, budget_exceeded: bool) -> FinalResult:
        code = encode(self.sequence)
        redecoded = decode(
            code, self.architecture.name, self.base_address, self.sequence.entry, self.sequence.exit
        )
        if redecoded.instructions != self.sequence.instructions:
            raise IntegrityViolation("Re-encoded bytes do not decode to the final sequence")

        original_cost = self.cost_model.weighted_cost(self.original.instructions)
        final_cost = self.cost_model.weighted_cost(self.sequence.instructions)
        self._audit("finalize", f"{len(self.code)} -> {len(code)} bytes")
        return FinalResult(
            code=code,
            sequence=self.sequence,
            applied=list(self._applied),
            aggregate_score=sum(t.score.value for t in self._applied),
            rejected=list(self._rejected),
            unresolved=list(self._unresolved),
            original_cost=original_cost,
            final_cost=final_cost,
            metrics=self.cost_model.compare(self.original.instructions, self.sequence.instructions),
            budget_exceeded=budget_exceeded,
            audit_trail=list(self._audit_trail),
        )
