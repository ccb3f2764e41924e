"""
Tests for candidate verification and whole-sequence re-verification.
"""
import threading
from dataclasses import replace

import pytest

from neurassembly.errors import OperationCancelled
from neurassembly.isa.asm import parse_instructions
from neurassembly.isa.codec import splice
from neurassembly.isa.instruction import ExitSignature
from neurassembly.isa.operands import ALL_REGISTERS
from neurassembly.isa.semantics import concrete_state
from neurassembly.optimizer.validator import (
    EDGE_VALUES,
    EquivalenceVerifier,
    GlobalVerifier,
    InputSampler,
    Verdict,
    compare_states,
)

ZF_LIVE = ExitSignature(flags=frozenset({"zf"}))

EQUIVALENT_PAIRS = [
    ("mov rax, 0", ["xor eax, eax"]),
    ("lea rax, [rbx+rcx*4]", ["mov rax, rcx", "shl rax, 2", "add rax, rbx"]),
    ("imul rax, rbx, 8", ["mov rax, rbx", "shl rax, 3"]),
    ("mov qword ptr [rdi], rax\nmov rax, qword ptr [rdi]", ["mov qword ptr [rdi], rax"]),
]

DIFFERENT_PAIRS = [
    ("mov rax, 5\nadd rax, 3", ["mov eax, 9"]),
    ("mov qword ptr [rdi], rax\nmov rbx, qword ptr [rsi]", ["mov qword ptr [rdi], rax", "mov rbx, rax"]),
    ("mov eax, ebx", ["mov rax, rbx"]),
]


@pytest.fixture
def sampled_config(config):
    """Configuration with the symbolic stage disabled."""
    return replace(config, symbolic_max_instructions=0)


class TestEquivalenceVerifier:
    """Test single-candidate verification."""

    def test_symbolic_proof(self, config, program, make_candidate, flags_dead_exit):
        """Test that the zero idiom is proven when flags are dead."""
        seq = program("mov rax, 0", exit=flags_dead_exit)
        result = EquivalenceVerifier(config).verify(make_candidate(seq, 0, 1, ["xor eax, eax"]))
        assert result.verdict == Verdict.SYMBOLIC_PROVEN
        assert result.equivalent
        assert result.evidence["method"] == "z3"

    def test_symbolic_counterexample(self, config, program, make_candidate):
        """Test that clobbering live flags is refuted with a model."""
        seq = program("mov rax, 0")
        result = EquivalenceVerifier(config).verify(make_candidate(seq, 0, 1, ["xor eax, eax"]))
        assert result.verdict == Verdict.REJECTED
        assert not result.equivalent
        assert set(result.counterexample) == {"registers", "flags"}

    def test_sampled_acceptance(self, sampled_config, program, make_candidate, flags_dead_exit):
        """Test that sampling accepts an equivalent rewrite with every sample passing."""
        seq = program("mov rax, 0", exit=flags_dead_exit)
        result = EquivalenceVerifier(sampled_config).verify(make_candidate(seq, 0, 1, ["xor eax, eax"]))
        assert result.verdict == Verdict.TESTED
        assert result.samples == result.passed == sampled_config.sample_count
        assert result.evidence["seed"] == sampled_config.seed

    def test_sampled_counterexample(self, sampled_config, program, make_candidate, flags_dead_exit):
        """Test that a wrong constant is caught with the failing input recorded."""
        seq = program("mov rax, 5\nadd rax, 3", exit=flags_dead_exit)
        result = EquivalenceVerifier(sampled_config).verify(make_candidate(seq, 0, 2, ["mov eax, 9"]))
        assert result.verdict == Verdict.REJECTED
        assert result.samples == 1
        assert any(d.startswith("rax") for d in result.counterexample["differences"])
        assert set(result.counterexample) == {"registers", "flags", "memory_salt", "differences"}

    @pytest.mark.parametrize("text,lines", EQUIVALENT_PAIRS)
    def test_domains_agree_on_equivalent(self, config, sampled_config, program, make_candidate,
                                         flags_dead_exit, text, lines):
        """Test that symbolic and sampled verification both accept equivalent rewrites."""
        seq = program(text, exit=flags_dead_exit)
        candidate = make_candidate(seq, 0, len(seq), lines)
        assert EquivalenceVerifier(config).verify(candidate).verdict == Verdict.SYMBOLIC_PROVEN
        assert EquivalenceVerifier(sampled_config).verify(candidate).verdict == Verdict.TESTED

    @pytest.mark.parametrize("text,lines", DIFFERENT_PAIRS)
    def test_domains_agree_on_different(self, config, sampled_config, program, make_candidate,
                                        flags_dead_exit, text, lines):
        """Test that symbolic and sampled verification both reject wrong rewrites."""
        seq = program(text, exit=flags_dead_exit)
        candidate = make_candidate(seq, 0, len(seq), lines)
        assert EquivalenceVerifier(config).verify(candidate).verdict == Verdict.REJECTED
        assert EquivalenceVerifier(sampled_config).verify(candidate).verdict == Verdict.REJECTED

    def test_undefined_original_flag_is_free(self, config, sampled_config, program, make_candidate):
        """Test that a flag imul leaves undefined may take any value in the replacement."""
        seq = program("imul rax, rax, 2", exit=ZF_LIVE)
        candidate = make_candidate(seq, 0, 1, ["add rax, rax"])
        assert EquivalenceVerifier(config).verify(candidate).verdict == Verdict.SYMBOLIC_PROVEN
        assert EquivalenceVerifier(sampled_config).verify(candidate).verdict == Verdict.TESTED

    def test_replacement_must_define_live_flags(self, config, sampled_config, program, make_candidate):
        """Test that leaving a live, defined flag undefined is rejected."""
        seq = program("add rax, rax", exit=ZF_LIVE)
        candidate = make_candidate(seq, 0, 1, ["imul rax, rax, 2"])
        result = EquivalenceVerifier(config).verify(candidate)
        assert result.verdict == Verdict.REJECTED
        assert "undefined" in result.reason
        assert EquivalenceVerifier(sampled_config).verify(candidate).verdict == Verdict.REJECTED

    def test_hazard_is_unverifiable(self, config, program, make_candidate):
        """Test that a window containing a system call is never executed."""
        seq = program("mov rax, 60\nsyscall")
        result = EquivalenceVerifier(config).verify(make_candidate(seq, 0, 2, ["mov eax, 60"]))
        assert result.verdict == Verdict.UNVERIFIABLE
        assert "syscall" in result.reason

    def test_branch_in_replacement_is_unverifiable(self, config, program, make_candidate):
        """Test that replacements may not introduce control flow."""
        seq = program("mov rax, 1")
        result = EquivalenceVerifier(config).verify(make_candidate(seq, 0, 1, ["jmp 0x9000"]))
        assert result.verdict == Verdict.UNVERIFIABLE

    def test_timeout_rejects(self, config, program, make_candidate, flags_dead_exit):
        """Test that an exhausted deadline yields a timeout rejection."""
        seq = program("mov rax, 0", exit=flags_dead_exit)
        verifier = EquivalenceVerifier(replace(config, verification_timeout=0.0))
        result = verifier.verify(make_candidate(seq, 0, 1, ["xor eax, eax"]))
        assert result.verdict == Verdict.REJECTED
        assert result.reason == "timeout"

    def test_cancellation_propagates(self, config, program, make_candidate, flags_dead_exit):
        """Test that a set cancel event aborts verification."""
        cancel = threading.Event()
        cancel.set()
        seq = program("mov rax, 0", exit=flags_dead_exit)
        with pytest.raises(OperationCancelled):
            EquivalenceVerifier(config, cancel_event=cancel).verify(make_candidate(seq, 0, 1, ["xor eax, eax"]))

    def test_sampling_is_reproducible(self, sampled_config, program, make_candidate, flags_dead_exit):
        """Test that the same seed finds the same counterexample."""
        seq = program("mov rax, rbx", exit=flags_dead_exit)
        candidate = make_candidate(seq, 0, 1, ["mov rax, rcx"])
        first = EquivalenceVerifier(sampled_config).verify(candidate)
        second = EquivalenceVerifier(sampled_config).verify(candidate)
        assert first.counterexample == second.counterexample


class TestInputSampler:
    """Test deterministic input generation."""

    def test_edge_values_first(self):
        """Test that the first samples set every register to one edge value."""
        sampler = InputSampler(seed=1, content_hash=2)
        for index, value in enumerate(EDGE_VALUES):
            regs, _, _ = sampler.draw(index)
            assert set(regs.values()) == {value}

    def test_same_seed_same_draws(self):
        """Test that draws depend only on seed and content hash."""
        a, b = InputSampler(3, 4), InputSampler(3, 4)
        assert [a.draw(i) for i in range(20)] == [b.draw(i) for i in range(20)]
        c = InputSampler(5, 4)
        assert [a.draw(i) for i in range(20, 25)] != [c.draw(i) for i in range(20, 25)]


class TestCompareStates:
    """Test end-state comparison."""

    def test_undefined_original_flag_is_ignored(self):
        """Test that a flag undefined in the original never mismatches."""
        a = concrete_state({"rax": 1}, {})
        b = concrete_state({"rax": 1}, {"zf": True})
        a.flags["zf"] = None
        assert compare_states(a, b, {"rax"}, {"zf"}) == []
        assert compare_states(b, a, {"rax"}, {"zf"}) == ["zf: True != None"]

    def test_memory_difference(self):
        """Test that a differing written byte is reported."""
        a = concrete_state({}, {}, salt=9)
        b = concrete_state({}, {}, salt=9)
        a.mem.write_byte(0x10, 1)
        b.mem.write_byte(0x10, 2)
        assert compare_states(a, b, set(), set()) == ["mem[0x10]: 0x01 != 0x02"]
        assert compare_states(a, b, set(), set(), memory=False) == []


class TestGlobalVerifier:
    """Test whole-sequence differential execution."""

    def test_identical_sequences(self, config, program):
        """Test that a sequence agrees with itself."""
        seq = program("""
                mov ecx, 3
            top:
                add rax, rbx
                dec rcx
                jne top
                ret
        """)
        result = GlobalVerifier(config).verify(seq, seq)
        assert result.verdict == Verdict.TESTED
        assert result.passed == config.global_samples

    def test_nothing_comparable_when_original_is_undefined(self, config, program):
        """Test that a sequence whose every run reads an undefined flag is not reported as tested."""
        seq = program("imul rax, rbx\nje out\nout:")
        result = GlobalVerifier(config).verify(seq, seq)
        assert result.verdict == Verdict.UNVERIFIABLE
        assert not result.equivalent
        assert result.passed == 0
        assert "no whole-sequence sample" in result.reason
        assert result.evidence["skipped"] == config.global_samples

    def test_nothing_comparable_when_every_run_hits_step_limit(self, config, program):
        """Test that an endless loop leaves the whole-sequence check inconclusive."""
        seq = program("top:\njmp top")
        result = GlobalVerifier(replace(config, global_max_steps=50)).verify(seq, seq)
        assert result.verdict == Verdict.UNVERIFIABLE
        assert result.passed == 0

    def test_loop_trip_count_change(self, config, program):
        """Test that changing a loop bound is caught at the exit."""
        seq = program("""
                mov ecx, 3
            top:
                add rax, rbx
                dec rcx
                jne top
        """)
        current = splice(seq, 0, 1, parse_instructions(["mov ecx, 4"]))
        result = GlobalVerifier(config).verify(seq, current)
        assert result.verdict == Verdict.REJECTED
        assert "rax" in result.reason

    def test_dead_register_at_exit(self, config, program):
        """Test that registers outside the exit signature are not compared."""
        exit = ExitSignature(registers=ALL_REGISTERS - {"rbx"}, flags=frozenset())
        seq = program("mov rbx, rax\nmov rax, 1", exit=exit)
        current = splice(seq, 0, 1, [])
        assert GlobalVerifier(config).verify(seq, current).verdict == Verdict.TESTED

    def test_barrier_compares_everything(self, config, program):
        """Test that state reaching a barrier is compared in full."""
        exit = ExitSignature(registers=frozenset(), flags=frozenset())
        seq = program("mov rbx, 1\nsyscall", exit=exit)
        current = splice(seq, 0, 1, [])
        result = GlobalVerifier(config).verify(seq, current)
        assert result.verdict == Verdict.REJECTED
        assert "rbx" in result.reason

    def test_external_exit_target(self, config, program):
        """Test that leaving to a different external address is a mismatch."""
        seq = program("jmp 0x9000")
        current = splice(seq, 0, 1, parse_instructions(["jmp 0x9100"]))
        result = GlobalVerifier(config).verify(seq, current)
        assert result.verdict == Verdict.REJECTED
        assert "exit differs" in result.reason
