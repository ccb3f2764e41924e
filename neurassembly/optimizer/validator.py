"""
Equivalence verification for instruction rewrites.

Verification is progressive:
1. Safety check - hazards, unmodeled effects and control flow are Unverifiable
2. Symbolic check - small fully-modeled windows are proven with z3
3. Sampled check - deterministic random states run through both versions
4. Global check - whole-sequence differential execution after commits
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum

import numpy as np
import z3

from neurassembly.errors import OperationCancelled, UndefinedBehavior, VerificationTimeout
from neurassembly.isa.instruction import ControlKind, InstructionSequence
from neurassembly.isa.liveness import exit_live_sets, END, EXTERNAL, RETURN
from neurassembly.isa.operands import ALL_FLAGS, ALL_REGISTERS, FLAGS, GPRS, mask
from neurassembly.isa.semantics import (
    ConcreteDomain,
    MachineState,
    Semantics,
    Z3Domain,
    concrete_state,
    symbolic_state,
)
from neurassembly.optimizer.config import OptimizerConfig
from neurassembly.optimizer.safety import SafetyEnforcer

logger = logging.getLogger("neurassembly.optimizer")

EDGE_VALUES = (
    0,
    1,
    mask(64),
    1 << 63,
    mask(63),
    mask(32),
    1 << 31,
    mask(31),
    1 << 32,
)


class Verdict(Enum):
    """Outcome of verifying one candidate."""

    SYMBOLIC_PROVEN = "symbolic_proven"
    TESTED = "tested"
    REJECTED = "rejected"
    UNVERIFIABLE = "unverifiable"


@dataclass
class VerificationResult:
    """Result of a verification run."""

    verdict: Verdict
    samples: int = 0
    passed: int = 0
    counterexample: dict | None = None
    reason: str = ""
    evidence: dict = field(default_factory=dict)
    elapsed: float = 0.0

    @property
    def equivalent(self) -> bool:
        return self.verdict in (Verdict.SYMBOLIC_PROVEN, Verdict.TESTED)


class Deadline:
    """
    Cooperative deadline with optional cancellation.

    Long-running work calls ``check()`` between units of work.
    """

    def __init__(self, seconds: float | None, cancel_event: threading.Event | None = None) -> None:
        self.expires_at = None if seconds is None else time.monotonic() + seconds
        self.cancel_event = cancel_event

    def remaining(self) -> float | None:
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - time.monotonic())

    def expired(self) -> bool:
        return self.expires_at is not None and time.monotonic() >= self.expires_at

    def check(self) -> None:
        """
        Raises:
            OperationCancelled: If the session was cancelled
            VerificationTimeout: If the deadline passed
        """
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise OperationCancelled("Verification cancelled")
        if self.expired():
            raise VerificationTimeout("Verification deadline exceeded")


def _flag_mismatch(original, replacement) -> bool:
    """A flag undefined in the original may be anything; defined-to-undefined is a mismatch."""
    if original is None:
        return False
    if replacement is None:
        return True
    return original != replacement


def compare_states(
    original: MachineState,
    replacement: MachineState,
    registers,
    flags,
    memory: bool = True,
) -> list[str]:
    """Concrete comparison of two end states; returns human-readable differences."""
    differences = []
    for name in sorted(registers):
        if original.regs[name] != replacement.regs[name]:
            differences.append(f"{name}: {original.regs[name]:#x} != {replacement.regs[name]:#x}")
    for name in sorted(flags):
        if _flag_mismatch(original.flags[name], replacement.flags[name]):
            differences.append(f"{name}: {original.flags[name]} != {replacement.flags[name]}")
    if memory:
        addresses = sorted(set(original.mem.written) | set(replacement.mem.written))
        for address in addresses:
            a, b = original.mem.read_byte(address), replacement.mem.read_byte(address)
            if a != b:
                differences.append(f"mem[{address:#x}]: {a:#04x} != {b:#04x}")
                break
    return differences


class InputSampler:
    """Deterministic input states mixing random values, edge values and register aliasing."""

    def __init__(self, seed: int, content_hash: int) -> None:
        self.rng = np.random.default_rng([seed & mask(64), content_hash & mask(64)])

    def draw(self, index: int) -> tuple[dict[str, int], dict[str, bool], int]:
        rng = self.rng
        halves = rng.integers(0, 1 << 32, size=(len(GPRS), 2), dtype=np.uint64)
        regs = {name: (int(hi) << 32) | int(lo) for name, (hi, lo) in zip(GPRS, halves)}
        choices = rng.random(size=(len(GPRS), 2))
        edges = rng.integers(0, len(EDGE_VALUES), size=len(GPRS))
        partners = rng.integers(0, len(GPRS), size=len(GPRS))
        for i, name in enumerate(GPRS):
            if index < len(EDGE_VALUES):
                regs[name] = EDGE_VALUES[index]
            elif choices[i, 0] < 0.125:
                regs[name] = EDGE_VALUES[int(edges[i])]
            elif choices[i, 1] < 0.25:
                regs[name] = regs[GPRS[int(partners[i])]]
        flag_bits = rng.integers(0, 2, size=len(FLAGS))
        flags = {name: bool(bit) for name, bit in zip(FLAGS, flag_bits)}
        salt = int(rng.integers(0, 1 << 62))
        return regs, flags, salt


class EquivalenceVerifier:
    """
    Decides whether a candidate's replacement is equivalent to its original.

    Equivalence means identical values in every live register and flag and
    identical memory for every input state; a flag the original leaves
    undefined may take any value in the replacement.
    """

    def __init__(
        self,
        config: OptimizerConfig | None = None,
        safety: SafetyEnforcer | None = None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        """
        Initialize the verifier.

        Args:
            config: Session configuration (samples, timeouts, symbolic limits)
            safety: Safety enforcer deciding what is Unverifiable
            cancel_event: Session-wide cancellation flag
        """
        self.config = config or OptimizerConfig()
        self.safety = safety or SafetyEnforcer()
        self.cancel_event = cancel_event

    def verify(self, candidate) -> VerificationResult:
        """
        Verify one candidate.

        Returns:
            VerificationResult; timeouts surface as a Rejected verdict

        Raises:
            OperationCancelled: If the session was cancelled meanwhile
        """
        started = time.monotonic()
        reason = self.safety.inspect(candidate.original, candidate.replacement)
        if reason:
            result = VerificationResult(Verdict.UNVERIFIABLE, reason=reason)
        else:
            deadline = Deadline(self.config.verification_timeout, self.cancel_event)
            try:
                deadline.check()
                result = None
                if self._symbolic_eligible(candidate):
                    result = self._prove(candidate, deadline)
                if result is None:
                    result = self._sample(candidate, deadline)
            except VerificationTimeout:
                result = VerificationResult(Verdict.REJECTED, reason="timeout")
        result.elapsed = time.monotonic() - started
        logger.debug(
            f"{candidate.origin} {candidate.describe()}: {result.verdict.value}"
            + (f" ({result.reason})" if result.reason else "")
        )
        return result

    def _symbolic_eligible(self, candidate) -> bool:
        if len(candidate.original) + len(candidate.replacement) > self.config.symbolic_max_instructions:
            return False
        if self.config.symbolic_memory:
            return True
        return not any(
            ins.effects.mem_read or ins.effects.mem_write
            for ins in (*candidate.original, *candidate.replacement)
        )

    def _prove(self, candidate, deadline: Deadline) -> VerificationResult | None:
        domain = Z3Domain()
        semantics = Semantics(domain)
        initial = symbolic_state(domain)
        try:
            after_original = semantics.run(initial.copy(domain), candidate.original)
            deadline.check()
            after_replacement = semantics.run(initial.copy(domain), candidate.replacement)
            deadline.check()
        except UndefinedBehavior as e:
            return VerificationResult(Verdict.REJECTED, reason=f"undefined behavior: {e}")

        live = candidate.live_out
        differences = []
        for name in sorted(live & ALL_REGISTERS):
            differences.append(after_original.regs[name] != after_replacement.regs[name])
        for name in sorted(live & ALL_FLAGS):
            before, after = after_original.flags[name], after_replacement.flags[name]
            if before is None:
                continue
            if after is None:
                return VerificationResult(Verdict.REJECTED, reason=f"replacement leaves live flag {name} undefined")
            differences.append(before != after)
        differences.append(after_original.mem != after_replacement.mem)

        solver = z3.Solver(ctx=domain.ctx)
        remaining = deadline.remaining()
        if remaining is not None:
            solver.set("timeout", max(1, int(remaining * 1000)))
        solver.add(z3.Or(*differences) if len(differences) > 1 else differences[0])
        outcome = solver.check()
        deadline.check()

        if outcome == z3.unsat:
            return VerificationResult(
                Verdict.SYMBOLIC_PROVEN,
                reason="proven",
                evidence={"method": "z3", "live_out": sorted(live)},
            )
        if outcome == z3.sat:
            model = solver.model()
            used = set()
            for ins in (*candidate.original, *candidate.replacement):
                used |= ins.effects.reads
            counterexample = {
                "registers": {
                    name: model.eval(initial.regs[name], model_completion=True).as_long() for name in sorted(used)
                },
                "flags": {
                    name: z3.is_true(model.eval(initial.flags[name], model_completion=True)) for name in FLAGS
                },
            }
            return VerificationResult(
                Verdict.REJECTED,
                counterexample=counterexample,
                reason="counterexample found",
                evidence={"method": "z3"},
            )
        logger.debug(f"Solver returned unknown for {candidate.origin}, falling back to sampling")
        return None

    def _sample(self, candidate, deadline: Deadline) -> VerificationResult:
        domain = ConcreteDomain()
        semantics = Semantics(domain)
        sampler = InputSampler(self.config.seed, int(candidate.fingerprint[:16], 16))
        live = candidate.live_out
        total = self.config.sample_count
        for index in range(total):
            deadline.check()
            regs, flags, salt = sampler.draw(index)
            state = concrete_state(regs, flags, salt)
            try:
                after_original = semantics.run(state.copy(domain), candidate.original)
            except UndefinedBehavior as e:
                return VerificationResult(Verdict.REJECTED, samples=index, passed=index,
                                          reason=f"undefined behavior in original: {e}")
            try:
                after_replacement = semantics.run(state.copy(domain), candidate.replacement)
            except UndefinedBehavior as e:
                return VerificationResult(Verdict.REJECTED, samples=index + 1, passed=index,
                                          reason=f"undefined behavior in replacement: {e}")
            differences = compare_states(
                after_original, after_replacement, live & ALL_REGISTERS, live & ALL_FLAGS
            )
            if differences:
                return VerificationResult(
                    Verdict.REJECTED,
                    samples=index + 1,
                    passed=index,
                    counterexample={"registers": regs, "flags": flags, "memory_salt": salt,
                                    "differences": differences},
                    reason="counterexample found",
                    evidence={"method": "sampled"},
                )
        return VerificationResult(
            Verdict.TESTED,
            samples=total,
            passed=total,
            reason="all samples agree",
            evidence={"method": "sampled", "seed": self.config.seed},
        )


@dataclass
class ExitState:
    kind: str
    tag: object
    state: MachineState | None


class GlobalVerifier:
    """
    Whole-sequence differential execution of an original and a rewritten sequence.

    Internal branches are followed; execution stops at the end, a ``ret``, an
    external jump, the first barrier (compared by the barrier's identity) or
    the step limit.
    """

    def __init__(self, config: OptimizerConfig | None = None, cancel_event: threading.Event | None = None) -> None:
        self.config = config or OptimizerConfig()
        self.cancel_event = cancel_event

    def run(self, seq: InstructionSequence, state: MachineState, semantics: Semantics) -> ExitState:
        """
        Execute ``seq`` from its first instruction.

        Raises:
            UndefinedBehavior: If execution reads an undefined flag
        """
        uids = seq.uid_map()
        pc = 0
        for _ in range(self.config.global_max_steps):
            if pc >= len(seq):
                return ExitState(END, None, state)
            ins = seq[pc]
            effects = ins.effects
            if effects.is_barrier or (effects.control == ControlKind.NONE and not semantics.supports(ins)):
                return ExitState("barrier", ins.uid, state)
            if effects.control in (ControlKind.JUMP, ControlKind.BRANCH):
                taken = True
                if effects.control == ControlKind.BRANCH:
                    taken = semantics.condition(state, ins.mnemonic[1:])
                if not taken:
                    pc += 1
                    continue
                if ins.target_uid is None:
                    return ExitState(EXTERNAL, ins.branch_target, state)
                if ins.target_uid not in uids:
                    return ExitState(END, None, state)
                pc = uids[ins.target_uid]
                continue
            if effects.control == ControlKind.RETURN:
                semantics.pop_return_address(state)
                return ExitState(RETURN, None, state)
            semantics.step(state, ins)
            pc += 1
        return ExitState("step_limit", None, None)

    def verify(self, original: InstructionSequence, current: InstructionSequence) -> VerificationResult:
        """
        Compare ``current`` against ``original`` on sampled whole-sequence inputs.

        Returns:
            TESTED when every compared sample agrees, REJECTED with the first
            difference, UNVERIFIABLE when no sample reached a comparable exit

        Raises:
            OperationCancelled: If the session was cancelled meanwhile
        """
        started = time.monotonic()
        domain = ConcreteDomain()
        semantics = Semantics(domain)
        deadline = Deadline(None, self.cancel_event)
        sampler = InputSampler(self.config.seed, len(original) * 0x9E3779B1 + original.base_address)
        exits = exit_live_sets(original)
        total = self.config.global_samples
        skipped = 0
        compared = 0

        for index in range(total):
            deadline.check()
            regs, flags, salt = sampler.draw(index)
            state = concrete_state(regs, flags, salt)
            try:
                before = self.run(original, state.copy(domain), semantics)
            except UndefinedBehavior:
                skipped += 1
                continue
            try:
                after = self.run(current, state.copy(domain), semantics)
            except UndefinedBehavior as e:
                return self._rejected(index, compared, regs, f"undefined behavior: {e}", started)

            if (before.kind, before.tag) != (after.kind, after.tag):
                reason = f"exit differs: {before.kind}/{before.tag} vs {after.kind}/{after.tag}"
                return self._rejected(index, compared, regs, reason, started)
            if before.kind == "step_limit":
                skipped += 1
                continue
            if before.kind == "barrier":
                registers, flag_names, memory = ALL_REGISTERS, ALL_FLAGS, True
            else:
                live = exits[before.kind]
                registers, flag_names, memory = live & ALL_REGISTERS, live & ALL_FLAGS, original.exit.memory
            differences = compare_states(before.state, after.state, registers, flag_names, memory)
            if differences:
                return self._rejected(index, compared, regs, "; ".join(differences), started)
            compared += 1

        if compared == 0:
            return VerificationResult(
                Verdict.UNVERIFIABLE,
                samples=total,
                reason=f"no whole-sequence sample could be compared ({skipped} skipped)",
                evidence={"method": "global", "skipped": skipped},
                elapsed=time.monotonic() - started,
            )
        return VerificationResult(
            Verdict.TESTED,
            samples=total,
            passed=compared,
            reason="whole-sequence samples agree",
            evidence={"method": "global", "skipped": skipped},
            elapsed=time.monotonic() - started,
        )

    @staticmethod
    def _rejected(index: int, compared: int, regs: dict, reason: str, started: float) -> VerificationResult:
        return VerificationResult(
            Verdict.REJECTED,
            samples=index + 1,
            passed=compared,
            counterexample={"registers": regs},
            reason=reason,
            evidence={"method": "global"},
            elapsed=time.monotonic() - started,
        )
