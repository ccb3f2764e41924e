"""
Candidate generation.

Candidate sources share one capability, ``generate(context)``, and return
read-only ``TransformationCandidate`` objects. The ``CandidateGenerator``
merges every source's output, de-duplicates it and degrades to the remaining
sources when the learned proposer is unavailable.
"""

import hashlib
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FuturesTimeout
from dataclasses import dataclass, field, replace
from typing import Protocol, Sequence

from neurassembly.errors import AssemblyError, InferenceUnavailable
from neurassembly.isa.asm import parse_instructions
from neurassembly.isa.effects import annotate
from neurassembly.isa.instruction import Instruction, InstructionSequence
from neurassembly.isa.liveness import Liveness
from neurassembly.optimizer.analyzer import Window
from neurassembly.optimizer.config import OptimizerConfig
from neurassembly.optimizer.llm_generator import LearnedProposer, ProposalContext
from neurassembly.optimizer.rules import DEFAULT_RULES, PeepholeRule

logger = logging.getLogger("neurassembly.optimizer")


@dataclass(frozen=True)
class TransformationCandidate:
    """
    A proposed replacement of ``sequence[source_start:source_stop]``.

    Attributes:
        source_start: Index of the first replaced instruction in the snapshot
        source_stop: Index one past the last replaced instruction
        source_uids: uids of the replaced instructions
        original: Replaced instructions
        replacement: Proposed instructions
        origin: ``rule:<id>`` or ``model:<name>#<rank>``
        confidence: A priori confidence of the source
        live_out: Registers and flags that must be preserved
    """

    source_start: int
    source_stop: int
    source_uids: tuple[int, ...]
    original: tuple[Instruction, ...]
    replacement: tuple[Instruction, ...]
    origin: str
    confidence: float
    live_out: frozenset[str]

    @property
    def dedupe_key(self) -> tuple:
        return (self.source_start, self.source_stop, tuple(ins.key for ins in self.replacement))

    @property
    def fingerprint(self) -> str:
        """Content hash of original, replacement and live-out set."""
        payload = repr((
            tuple(ins.key for ins in self.original),
            tuple(ins.key for ins in self.replacement),
            tuple(sorted(self.live_out)),
        ))
        return hashlib.blake2b(payload.encode(), digest_size=16).hexdigest()

    def describe(self) -> str:
        before = "; ".join(str(ins) for ins in self.original) or "<empty>"
        after = "; ".join(str(ins) for ins in self.replacement) or "<empty>"
        return f"{before} => {after}"


@dataclass(frozen=True)
class GenerationContext:
    """Immutable snapshot a source generates candidates from."""

    sequence: InstructionSequence
    window: Window
    liveness: Liveness

    @property
    def body(self) -> tuple[Instruction, ...]:
        return self.sequence.instructions[self.window.start:self.window.stop]

    def make_candidate(
        self,
        start: int,
        stop: int,
        replacement: Sequence[Instruction],
        origin: str,
        confidence: float = 1.0,
    ) -> TransformationCandidate:
        seq = self.sequence
        region = (seq.base_address, seq.end_address)
        address = seq[start].address if start < len(seq) else seq.end_address
        placed = []
        for ins in replacement:
            ins = replace(ins, address=address, effects=annotate(ins, region))
            placed.append(ins)
            address += ins.length
        original = seq.instructions[start:stop]
        return TransformationCandidate(
            source_start=start,
            source_stop=stop,
            source_uids=tuple(ins.uid for ins in original),
            original=original,
            replacement=tuple(placed),
            origin=origin,
            confidence=confidence,
            live_out=self.liveness.after(stop - 1),
        )


class CandidateSource(Protocol):
    name: str

    def generate(self, context: GenerationContext) -> list[TransformationCandidate]:
        """
        Propose candidates for one window.

        Raises:
            InferenceUnavailable: If the source depends on an unreachable collaborator
        """
        ...


class RuleBasedSource:
    """Applies every peephole rule at every position of the window."""

    name = "rules"

    def __init__(self, rules: Sequence[PeepholeRule] = DEFAULT_RULES) -> None:
        self.rules = tuple(rules)

    def generate(self, context: GenerationContext) -> list[TransformationCandidate]:
        seq = context.sequence
        window = context.window
        candidates = []
        for rule in self.rules:
            for start in range(window.start, window.stop - rule.length + 1):
                stop = start + rule.length
                replacement = rule.rewrite(
                    seq.instructions[start:stop], context.liveness.after(stop - 1), seq.arch
                )
                if replacement is None:
                    continue
                candidates.append(context.make_candidate(start, stop, replacement, f"rule:{rule.rule_id}"))
        return candidates


class LearnedSource:
    """
    Wraps a ``LearnedProposer`` with a bounded call and a confidence filter.

    Proposals replace the whole window body.
    """

    def __init__(self, proposer: LearnedProposer, config: OptimizerConfig | None = None) -> None:
        """
        Initialize the learned source.

        Args:
            proposer: Collaborator producing textual proposals
            config: Session configuration (timeout and confidence threshold)
        """
        self.proposer = proposer
        self.config = config or OptimizerConfig()
        self.name = f"model:{getattr(proposer, 'name', type(proposer).__name__)}"
        self._pool_size = max(1, self.config.workers)
        self._executor = self._new_executor()
        self._hung: list[Future] = []
        self._lock = threading.Lock()

    def _new_executor(self) -> ThreadPoolExecutor:
        return ThreadPoolExecutor(max_workers=self._pool_size, thread_name_prefix="proposer")

    def _submit(self, context: ProposalContext) -> Future:
        with self._lock:
            self._hung = [f for f in self._hung if not f.done()]
            if len(self._hung) >= self._pool_size:
                # Every worker is stuck in a timed-out call
                logger.warning(f"{self.name}: {len(self._hung)} calls still hanging, starting a fresh worker pool")
                self._executor.shutdown(wait=False, cancel_futures=True)
                self._executor = self._new_executor()
                self._hung = []
            return self._executor.submit(self.proposer.infer, context)

    def _infer(self, context: ProposalContext):
        future = self._submit(context)
        try:
            return future.result(timeout=self.config.inference_timeout)
        except FuturesTimeout:
            if not future.cancel():
                with self._lock:
                    self._hung.append(future)
            raise InferenceUnavailable(
                f"{self.name} did not answer within {self.config.inference_timeout}s"
            ) from None
        except InferenceUnavailable:
            raise
        except Exception as e:
            raise InferenceUnavailable(f"{self.name} failed: {e}") from e

    def generate(self, context: GenerationContext) -> list[TransformationCandidate]:
        window = context.window
        live = window.live_out
        proposal_context = ProposalContext(
            arch=context.sequence.arch,
            instructions=tuple(str(ins) for ins in context.body),
            live_registers=tuple(sorted(Liveness.registers(live))),
            live_flags=tuple(sorted(Liveness.flags(live))),
            start_address=window.start_address,
        )
        proposals = self._infer(proposal_context)

        candidates = []
        for rank, proposal in enumerate(proposals):
            if proposal.confidence < self.config.confidence_threshold:
                logger.debug(f"{self.name}#{rank}: confidence {proposal.confidence:.2f} below threshold")
                continue
            try:
                replacement = parse_instructions(proposal.assembly, context.sequence.arch)
            except AssemblyError as e:
                logger.debug(f"{self.name}#{rank}: unparsable proposal ({e})")
                continue
            candidates.append(context.make_candidate(
                window.start, window.stop, replacement, f"{self.name}#{rank}", proposal.confidence
            ))
        return candidates

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)


@dataclass
class GenerationResult:
    candidates: list[TransformationCandidate]
    degraded: list[str] = field(default_factory=list)


class CandidateGenerator:
    """
    Merges candidates from every source for one window.

    A source raising ``InferenceUnavailable`` is skipped for that window; the
    reason is reported so the session can record it in the audit trail.
    """

    def __init__(self, sources: Sequence[CandidateSource]) -> None:
        self.sources = list(sources)

    def generate(self, context: GenerationContext) -> GenerationResult:
        merged: dict[tuple, TransformationCandidate] = {}
        degraded: list[str] = []
        for source in self.sources:
            try:
                candidates = source.generate(context)
            except InferenceUnavailable as e:
                logger.warning(f"Inference unavailable, continuing with remaining sources: {e}")
                degraded.append(str(e))
                continue
            for candidate in candidates:
                merged.setdefault(candidate.dedupe_key, candidate)
        ordered = sorted(
            merged.values(),
            key=lambda c: (c.source_start, c.source_stop, c.origin, c.fingerprint),
        )
        return GenerationResult(ordered, degraded)

    def close(self) -> None:
        for source in self.sources:
            close = getattr(source, "close", None)
            if close is not None:
                close()
