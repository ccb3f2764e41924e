"""
Tests for the concrete and symbolic instruction semantics.
"""
import pytest
import z3

from neurassembly.errors import UndefinedBehavior
from neurassembly.isa.asm import parse_instructions
from neurassembly.isa.operands import FLAGS, GPRS
from neurassembly.isa.semantics import (
    ConcreteDomain,
    ConcreteMemory,
    Semantics,
    Z3Domain,
    concrete_state,
    symbolic_state,
)

MAX = (1 << 64) - 1


@pytest.fixture
def concrete():
    return Semantics(ConcreteDomain())


def run(semantics, lines, regs=None, flags=None):
    state = concrete_state(regs or {}, flags or {})
    return semantics.run(state, parse_instructions(lines))


class TestConcrete:
    """Test execution over Python integers."""

    def test_add_carry_and_zero(self, concrete):
        """Test that wrapping addition sets CF and ZF."""
        state = run(concrete, ["add rax, rbx"], {"rax": MAX, "rbx": 1})
        assert state.regs["rax"] == 0
        assert state.flags["cf"] is True
        assert state.flags["zf"] is True
        assert state.flags["of"] is False
        assert state.flags["sf"] is False

    def test_add_signed_overflow(self, concrete):
        """Test that crossing the signed maximum sets OF and SF."""
        state = run(concrete, ["add rax, 1"], {"rax": (1 << 63) - 1})
        assert state.flags["of"] is True
        assert state.flags["sf"] is True
        assert state.flags["cf"] is False

    def test_cmp_leaves_operands(self, concrete):
        """Test that cmp only writes flags."""
        state = run(concrete, ["cmp rax, rbx"], {"rax": 1, "rbx": 2})
        assert state.regs["rax"] == 1
        assert state.flags["cf"] is True
        assert state.flags["zf"] is False
        assert state.flags["sf"] is True

    def test_32_bit_writes_zero_extend(self, concrete):
        """Test that writing a 32-bit register clears the upper half."""
        state = run(concrete, ["mov eax, ebx"], {"rax": MAX, "rbx": MAX})
        assert state.regs["rax"] == 0xFFFFFFFF
        state = run(concrete, ["xor ecx, ecx"], {"rcx": MAX})
        assert state.regs["rcx"] == 0

    def test_inc_preserves_carry(self, concrete):
        """Test that inc leaves CF untouched."""
        state = run(concrete, ["inc rax"], {"rax": MAX}, {"cf": True})
        assert state.regs["rax"] == 0
        assert state.flags["cf"] is True
        assert state.flags["zf"] is True

    def test_shift_flags(self, concrete):
        """Test the carry out of a one-bit shift and the undefined OF of longer shifts."""
        state = run(concrete, ["shl rax, 1"], {"rax": 1 << 63})
        assert state.regs["rax"] == 0
        assert state.flags["cf"] is True
        assert state.flags["of"] is True

        state = run(concrete, ["shr rax, 4"], {"rax": 0x18})
        assert state.regs["rax"] == 1
        assert state.flags["cf"] is True
        assert state.flags["of"] is None

    def test_sar_keeps_sign(self, concrete):
        """Test that sar replicates the sign bit."""
        state = run(concrete, ["sar rax, 8"], {"rax": MAX - 0xFF})
        assert state.regs["rax"] == MAX

    def test_imul_leaves_flags_undefined(self, concrete):
        """Test that reading ZF after imul is undefined behavior."""
        state = run(concrete, ["imul rax, rbx"], {"rax": 3, "rbx": 5})
        assert state.regs["rax"] == 15
        assert state.flags["cf"] is False
        assert state.flags["zf"] is None
        with pytest.raises(UndefinedBehavior):
            concrete.condition(state, "e")

    def test_imul_overflow(self, concrete):
        """Test that a truncated signed product sets CF and OF."""
        state = run(concrete, ["imul rax, rax, 4"], {"rax": 1 << 62})
        assert state.regs["rax"] == 0
        assert state.flags["cf"] is True
        assert state.flags["of"] is True

    def test_lea_computes_address_only(self, concrete):
        """Test that lea does not touch memory or flags."""
        state = run(concrete, ["lea rax, [rbx+rcx*8+0x10]"], {"rbx": 0x1000, "rcx": 2}, {"zf": True})
        assert state.regs["rax"] == 0x1020
        assert state.flags["zf"] is True
        assert state.mem.written == {}

    def test_push_pop(self, concrete):
        """Test that push/pop moves a value through the stack."""
        state = run(concrete, ["push rbx", "pop rcx"], {"rbx": 0xCAFE, "rsp": 0x8000})
        assert state.regs["rcx"] == 0xCAFE
        assert state.regs["rsp"] == 0x8000
        assert state.mem.written[0x7FF8] == 0xFE

    def test_store_then_load(self, concrete):
        """Test little-endian stores and loads."""
        lines = ["mov qword ptr [rdi+0x8], rsi", "mov rax, qword ptr [rdi+0x8]"]
        state = run(concrete, lines, {"rdi": 0x5000, "rsi": 0x0102030405060708})
        assert state.regs["rax"] == 0x0102030405060708
        assert state.mem.written[0x5008] == 0x08

    def test_conditions(self, concrete):
        """Test signed and unsigned condition codes after cmp."""
        state = run(concrete, ["cmp rax, rbx"], {"rax": MAX, "rbx": 1})
        assert concrete.condition(state, "a") is True
        assert concrete.condition(state, "l") is True
        assert concrete.condition(state, "ge") is False
        with pytest.raises(ValueError):
            concrete.condition(state, "zz")

    def test_unsupported_instruction(self, concrete):
        """Test that instructions without semantics raise NotImplementedError."""
        (syscall,) = parse_instructions(["syscall"])
        with pytest.raises(NotImplementedError):
            concrete.step(concrete_state({}, {}), syscall)


class TestMemory:
    """Test the salted sparse memory model."""

    def test_unwritten_bytes_are_stable(self):
        """Test that the same salt yields the same contents."""
        domain = ConcreteDomain()
        a, b = ConcreteMemory(salt=42), ConcreteMemory(salt=42)
        assert domain.load(a, 0x1234, 8) == domain.load(b, 0x1234, 8)

    def test_salt_changes_contents(self):
        """Test that different salts give different initial memory."""
        domain = ConcreteDomain()
        assert domain.load(ConcreteMemory(salt=1), 0x1000, 8) != domain.load(ConcreteMemory(salt=2), 0x1000, 8)

    def test_copy_is_independent(self):
        """Test that copying memory isolates later writes."""
        memory = ConcreteMemory()
        memory.write_byte(0x10, 0xAA)
        clone = memory.copy()
        clone.write_byte(0x10, 0xBB)
        assert memory.read_byte(0x10) == 0xAA
        assert clone.read_byte(0x10) == 0xBB


def prove_equal(lines_a, lines_b, registers=GPRS, flags=FLAGS):
    """Return the z3 check result of 'some observed value differs'."""
    domain = Z3Domain()
    semantics = Semantics(domain)
    initial = symbolic_state(domain)
    a = semantics.run(initial.copy(domain), parse_instructions(lines_a))
    b = semantics.run(initial.copy(domain), parse_instructions(lines_b))
    differences = [a.regs[r] != b.regs[r] for r in registers]
    differences += [a.flags[f] != b.flags[f] for f in flags]
    solver = z3.Solver(ctx=domain.ctx)
    solver.add(z3.Or(*differences))
    return solver.check()


class TestSymbolic:
    """Test the z3 domain."""

    def test_add_self_equals_shift(self):
        """Test that add rax, rax and shl rax, 1 agree on registers and every flag."""
        assert prove_equal(["add rax, rax"], ["shl rax, 1"]) == z3.unsat

    def test_inc_differs_from_add_in_carry(self):
        """Test that inc and add 1 are distinguishable through CF."""
        assert prove_equal(["inc rax"], ["add rax, 1"]) == z3.sat
        assert prove_equal(["inc rax"], ["add rax, 1"], flags=("zf", "sf", "of", "pf")) == z3.unsat

    def test_zeroing_idioms(self):
        """Test that xor eax, eax zeroes the whole register like mov rax, 0."""
        assert prove_equal(["xor eax, eax"], ["mov rax, 0"], flags=()) == z3.unsat

    def test_lea_against_arithmetic(self):
        """Test that lea with a scaled index matches shift-and-add on registers."""
        assert prove_equal(
            ["lea rax, [rbx+rcx*4]"],
            ["mov rax, rcx", "shl rax, 2", "add rax, rbx"],
            flags=(),
        ) == z3.unsat

    def test_symbolic_matches_concrete(self, concrete):
        """Test that both domains compute the same sub result and flags."""
        lines = ["sub rax, rbx", "sbb rcx, rdx"]
        regs = {"rax": 5, "rbx": 7, "rcx": 100, "rdx": 1}
        expected = run(concrete, lines, regs)

        domain = Z3Domain()
        semantics = Semantics(domain)
        state = symbolic_state(domain)
        inputs = dict(state.regs)
        out = semantics.run(state, parse_instructions(lines))
        substitutions = [(inputs[name], domain.const(regs.get(name, 0), 64)) for name in GPRS]
        for name in ("rax", "rcx"):
            value = z3.simplify(z3.substitute(out.regs[name], *substitutions))
            assert value.as_long() == expected.regs[name]
