"""
End-to-end tests for optimization sessions and the service API.
"""
import threading
from dataclasses import replace

import pytest

from neurassembly.errors import (
    DecodeError,
    InferenceUnavailable,
    SessionCancelled,
    SessionFailed,
    UnsupportedArchitecture,
)
from neurassembly.isa.asm import assemble
from neurassembly.isa.codec import decode
from neurassembly.isa.instruction import ExitSignature
from neurassembly.isa.operands import ALL_REGISTERS
from neurassembly.optimizer import (
    OptimizationSession,
    SessionState,
    await_result,
    cancel,
    start_session,
)
from neurassembly.optimizer.llm_generator import Proposal
from neurassembly.optimizer.validator import VerificationResult, Verdict

BASE = 0x1000
FLAGS_DEAD = ExitSignature(registers=ALL_REGISTERS, flags=frozenset())

MIXED_PROGRAM = """
    mov rbx, rbx
    mov rax, 0
    imul rcx, rdx, 4
    add rsi, 1
    mov qword ptr [rdi+0x8], rsi
    mov rsi, qword ptr [rdi+0x8]
    ret
"""


class ScriptedProposer:
    """Learned proposer double: fixed proposals, an error, or a gate to block on."""

    name = "fake"

    def __init__(self, proposals=(), error=None, gate=None):
        self.proposals = list(proposals)
        self.error = error
        self.gate = gate
        self.calls = 0

    def infer(self, context):
        self.calls += 1
        if self.gate is not None:
            self.gate.wait(10)
        if self.error is not None:
            raise self.error
        return self.proposals


class FlakyGlobalVerifier:
    """Fails the first whole-sequence check, passes afterwards."""

    def __init__(self):
        self.calls = 0

    def verify(self, original, current):
        self.calls += 1
        if self.calls == 1:
            return VerificationResult(Verdict.REJECTED, samples=1, reason="injected mismatch")
        return VerificationResult(Verdict.TESTED, samples=1, passed=1)


def optimize(text, config, exit=FLAGS_DEAD, **options):
    code = assemble(text, BASE)
    session = OptimizationSession(code, "x86_64", config, base_address=BASE, exit=exit, **options)
    return session, session.run()


def texts(result):
    return [str(ins) for ins in result.sequence]


class TestScenarios:
    """Test complete sessions on small programs."""

    def test_swap_then_dead_write(self, config):
        """Test that a redundant swap collapses once rax is dead at exit."""
        exit = ExitSignature(registers=ALL_REGISTERS - {"rax"}, flags=frozenset())
        session, result = optimize("mov rax, rbx\nmov rbx, rax", config, exit=exit)
        assert result.code == b""
        assert [t.origin for t in result.applied] == ["rule:mov-swap", "rule:dead-write"]
        assert session.state == SessionState.FINALIZED
        assert result.final_cost < result.original_cost

    def test_dead_compare_before_jump(self, config):
        """Test that a compare whose flags die at the jump is removed."""
        _, result = optimize("mov rax, rdi\ncmp rax, rsi\njmp done\ndone:", config)
        assert texts(result)[0] == "mov rax, rdi"
        assert result.sequence[1].mnemonic == "jmp"
        assert len(result.sequence) == 2
        assert result.sequence[1].branch_target == result.sequence.end_address

    def test_system_call_is_preserved(self, config):
        """Test that rewrites never cross a system call."""
        _, result = optimize("mov rax, 60\nxor edi, edi\nsyscall\nmov rbx, rbx", config)
        assert [ins.mnemonic for ins in result.sequence] == ["mov", "xor", "syscall"]
        assert [t.origin for t in result.applied] == ["rule:mov-self"]

    def test_loop_branch_is_fixed_up(self, config):
        """Test that a rewrite inside a loop keeps the back edge on the new instruction."""
        _, result = optimize("mov ecx, 3\ntop:\nadd rax, 1\ndec rcx\njne top\nret", config)
        _, inc, _, jne, _ = result.sequence
        assert inc.mnemonic == "inc"
        assert jne.target_uid == inc.uid
        assert jne.branch_target == result.sequence[0].end
        assert decode(result.code, base_address=BASE).instructions == result.sequence.instructions

    def test_relayout_failure_is_rejected(self, config):
        """Test that a rewrite whose short back edge cannot be widened is rejected, not fatal."""
        body = assemble("imul rcx, rdx, 4\n" + "nop\n" * 116 + "cmp rax, rbx", BASE)
        assert len(body) == 123
        # ds-prefixed jne rel8 back to the first instruction, at the edge of its range
        code = body + bytes([0x3E, 0x75, (-(len(body) + 3)) & 0xFF])
        session = OptimizationSession(code, "x86_64", config, base_address=BASE, exit=FLAGS_DEAD)
        result = session.run()
        assert session.state == SessionState.FINALIZED
        assert result.code == code
        assert result.applied == []
        failed = [r for r in result.rejected if r.origin == "rule:mul-pow2"]
        assert failed
        assert all(r.reason.startswith("relayout failed") for r in failed)

    def test_empty_input(self, config):
        """Test that an empty region finalizes immediately."""
        session, result = optimize("", config)
        assert result.code == b""
        assert result.applied == []
        assert session.state == SessionState.FINALIZED

    def test_mixed_program(self, config):
        """Test several independent rewrites with monotone cost."""
        _, result = optimize(MIXED_PROGRAM, config)
        origins = {t.origin for t in result.applied}
        assert {"rule:mov-self", "rule:zero-idiom", "rule:mul-pow2", "rule:store-load"} <= origins
        assert all(t.score.value > 0 for t in result.applied)
        assert result.aggregate_score == pytest.approx(sum(t.score.value for t in result.applied))
        assert result.final_cost < result.original_cost
        assert result.metrics.instruction_reduction > 0
        assert result.sequence[-1].mnemonic == "ret"

    def test_audit_trail(self, config):
        """Test that decode, commit and finalize are recorded in order."""
        _, result = optimize("mov rbx, rbx", config)
        kinds = [event.kind for event in result.audit_trail]
        assert kinds[0] == "decode"
        assert "commit" in kinds
        assert kinds[-1] == "finalize"


class TestProperties:
    """Test session-wide guarantees."""

    def test_deterministic(self, config):
        """Test that identical inputs and seeds give identical results."""
        _, first = optimize(MIXED_PROGRAM, config)
        _, second = optimize(MIXED_PROGRAM, config)
        assert first.code == second.code
        assert [(t.origin, t.address) for t in first.applied] == [(t.origin, t.address) for t in second.applied]

    def test_fixed_point(self, config):
        """Test that re-optimizing the output finds nothing more to do."""
        _, first = optimize(MIXED_PROGRAM, config)
        session = OptimizationSession(first.code, "x86_64", config, base_address=BASE, exit=FLAGS_DEAD)
        second = session.run()
        assert second.applied == []
        assert second.code == first.code

    def test_rollback_on_global_failure(self, config):
        """Test that a failed whole-sequence check undoes and blacklists the commits."""
        text = "mov rbx, rbx\nmov rcx, rcx"
        flaky = FlakyGlobalVerifier()
        _, result = optimize(text, config, global_verifier=flaky)
        assert result.code == assemble(text, BASE)
        assert result.applied == []
        failed = [r for r in result.rejected if r.reason.startswith("global re-verification failed")]
        assert len(failed) == 2
        assert all("injected mismatch" in r.reason for r in failed)
        assert "rollback" in [event.kind for event in result.audit_trail]
        assert flaky.calls >= 1

    def test_rollback_when_global_check_is_inconclusive(self, config):
        """Test that commits inside a loop that never exits are undone."""
        text = "top:\nmov rbx, rbx\njmp top"
        _, result = optimize(text, replace(config, global_max_steps=200))
        assert result.code == assemble(text, BASE)
        assert result.applied == []
        failed = [r for r in result.rejected if r.origin == "rule:mov-self"]
        assert failed
        assert "no whole-sequence sample" in failed[0].reason


class TestLearnedProposals:
    """Test sessions with a learned proposer."""

    def test_verified_proposal_is_committed(self, config):
        """Test that the correct proposal wins and the wrong one is rejected."""
        proposer = ScriptedProposer([Proposal(("mov eax, 9",), 0.9), Proposal(("mov eax, 8",), 0.8)])
        config = replace(config, confidence_threshold=0.5)
        _, result = optimize("mov rax, 5\nadd rax, 3", config, proposer=proposer)
        assert texts(result) == ["mov eax, 0x8"]
        assert [t.origin for t in result.applied] == ["model:fake#1"]
        wrong = [r for r in result.rejected if r.origin == "model:fake#0" and r.verdict == "rejected"]
        assert wrong
        assert proposer.calls >= 1

    def test_unavailable_inference_degrades(self, config):
        """Test that an offline proposer leaves the rule-based result intact."""
        proposer = ScriptedProposer(error=InferenceUnavailable("offline"))
        _, result = optimize("mov rbx, rbx\nadd rax, 1", config, proposer=proposer)
        assert {t.origin for t in result.applied} == {"rule:mov-self", "rule:inc-dec"}
        degraded = [event for event in result.audit_trail if event.kind == "degraded"]
        assert degraded
        assert all(event.detail == "offline" for event in degraded)

    def test_learned_source_disabled(self, config):
        """Test that use_learned=False never calls the proposer."""
        proposer = ScriptedProposer([Proposal(("mov eax, 8",), 0.9)])
        optimize("mov rax, 5\nadd rax, 3", replace(config, use_learned=False), proposer=proposer)
        assert proposer.calls == 0


class TestBudgets:
    """Test budget, cancellation and failure handling."""

    def test_iteration_budget(self, config):
        """Test that running out of iterations returns a partial result."""
        config = replace(config, max_iterations=1, workers=1)
        _, result = optimize("mov rbx, rbx\nmov rcx, rcx", config)
        assert result.budget_exceeded
        assert result.unresolved
        assert len(result.applied) <= 1
        assert "budget" in [event.kind for event in result.audit_trail]

    def test_time_budget(self, config):
        """Test that a zero time budget returns the input unchanged."""
        text = "mov rbx, rbx\nmov rcx, rcx"
        _, result = optimize(text, replace(config, time_budget=0.0))
        assert result.budget_exceeded
        assert result.code == assemble(text, BASE)
        assert result.applied == []
        assert [w.start_address for w in result.unresolved] == [BASE]

    def test_cancel_before_run(self, config):
        """Test that a pre-set cancel event ends the session as cancelled."""
        event = threading.Event()
        event.set()
        session = OptimizationSession(assemble("mov rbx, rbx", BASE), "x86_64", config,
                                      base_address=BASE, cancel_event=event)
        with pytest.raises(SessionCancelled):
            session.run()
        assert session.state == SessionState.CANCELLED

    def test_invalid_encoding_fails(self, config):
        """Test that undecodable input fails the session with the cause attached."""
        session = OptimizationSession(b"\xd8\xc0", "x86_64", config)
        with pytest.raises(SessionFailed) as excinfo:
            session.run()
        assert isinstance(excinfo.value.error, DecodeError)
        assert excinfo.value.last_good_checkpoint is None
        assert session.state == SessionState.FAILED


class TestService:
    """Test the background session API."""

    def test_start_and_await(self, config):
        """Test that a background session delivers its result."""
        handle = start_session(assemble("mov rbx, rbx", BASE), "x86_64", config, base_address=BASE)
        result = await_result(handle, timeout=60)
        assert result.code == b""
        assert handle.done()
        assert handle.state == SessionState.FINALIZED

    def test_unsupported_architecture(self, config):
        """Test that unknown architectures are rejected before starting."""
        with pytest.raises(UnsupportedArchitecture):
            start_session(b"\x90", "riscv64", config)

    def test_cancel_running_session(self, config):
        """Test cancelling a session blocked on the learned proposer."""
        gate = threading.Event()
        proposer = ScriptedProposer(gate=gate)
        config = replace(config, inference_timeout=30.0)
        handle = start_session(assemble("mov rax, 5\nadd rax, 3", BASE), "x86_64", config,
                               base_address=BASE, proposer=proposer)
        try:
            cancel(handle)
        finally:
            gate.set()
        with pytest.raises(SessionCancelled):
            await_result(handle, timeout=60)
        assert handle.state == SessionState.CANCELLED
