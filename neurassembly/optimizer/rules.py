"""
Deterministic peephole rules.

Each rule looks at a fixed number of consecutive instructions plus the set of
registers and flags live after them and either returns a replacement or
None. Rules are allowed to be optimistic: every proposal still goes through
the equivalence verifier.
"""

from typing import Sequence

from neurassembly.isa.codec import materialize
from neurassembly.isa.instruction import ControlKind, Instruction
from neurassembly.isa.operands import ALL_FLAGS, Imm, Mem, Reg, to_signed


def _flags_dead(live: frozenset[str]) -> bool:
    return not (live & ALL_FLAGS)


def _is_reg_reg_mov(ins: Instruction, width: int = 64) -> bool:
    if ins.mnemonic != "mov" or len(ins.operands) != 2:
        return False
    dst, src = ins.operands
    return isinstance(dst, Reg) and isinstance(src, Reg) and dst.width == width and src.width == width


class PeepholeRule:
    """Base class: match ``length`` instructions and propose a replacement."""

    rule_id: str = ""
    length: int = 1

    def rewrite(self, window: Sequence[Instruction], live: frozenset[str], arch: str) -> list[Instruction] | None:
        raise NotImplementedError


class MovSelf(PeepholeRule):
    """``mov r64, r64`` with identical operands does nothing."""

    rule_id = "mov-self"

    def rewrite(self, window, live, arch):
        (ins,) = window
        if _is_reg_reg_mov(ins) and ins.operands[0] == ins.operands[1]:
            return []
        return None


class MovSwap(PeepholeRule):
    """``mov a, b; mov b, a``: the second move is redundant."""

    rule_id = "mov-swap"
    length = 2

    def rewrite(self, window, live, arch):
        first, second = window
        if not (_is_reg_reg_mov(first) and _is_reg_reg_mov(second)):
            return None
        a, b = first.operands
        if a != b and second.operands == (b, a):
            return [materialize(arch, "mov", (a, b))]
        return None


class DeadWrite(PeepholeRule):
    """Remove an instruction whose every output is dead."""

    rule_id = "dead-write"

    def rewrite(self, window, live, arch):
        (ins,) = window
        effects = ins.effects
        if effects is None or effects.unknown or effects.hazard is not None:
            return None
        if effects.control != ControlKind.NONE or effects.mem_read or effects.mem_write:
            return None
        outputs = effects.writes | effects.flags_written | effects.flags_undefined
        if outputs and not (outputs & live):
            return []
        return None


class ZeroIdiom(PeepholeRule):
    """``mov r, 0`` -> ``xor r32, r32`` when the flags it clobbers are dead."""

    rule_id = "zero-idiom"

    def rewrite(self, window, live, arch):
        (ins,) = window
        if ins.mnemonic != "mov" or not _flags_dead(live):
            return None
        dst, src = ins.operands
        if isinstance(dst, Reg) and isinstance(src, Imm) and src.value & ((1 << dst.width) - 1) == 0:
            r32 = Reg(dst.name, 32)
            return [materialize(arch, "xor", (r32, r32))]
        return None


class IncDec(PeepholeRule):
    """``add/sub x, 1`` -> ``inc/dec x`` when CF is dead."""

    rule_id = "inc-dec"

    def rewrite(self, window, live, arch):
        (ins,) = window
        if ins.mnemonic not in ("add", "sub") or "cf" in live:
            return None
        dst, src = ins.operands
        if not isinstance(src, Imm) or not isinstance(dst, (Reg, Mem)):
            return None
        step = to_signed(src.value, dst.width)
        if ins.mnemonic == "sub":
            step = -step
        if step == 1:
            return [materialize(arch, "inc", (dst,))]
        if step == -1:
            return [materialize(arch, "dec", (dst,))]
        return None


class AddZero(PeepholeRule):
    """Arithmetic identity on a 64-bit register (``add r, 0``, ``and r, -1``...)."""

    rule_id = "add-zero"

    def rewrite(self, window, live, arch):
        (ins,) = window
        if ins.mnemonic not in ("add", "sub", "or", "xor", "and") or not _flags_dead(live):
            return None
        dst, src = ins.operands
        if not isinstance(dst, Reg) or dst.width != 64 or not isinstance(src, Imm):
            return None
        value = to_signed(src.value, 64)
        identity = -1 if ins.mnemonic == "and" else 0
        return [] if value == identity else None


class MulPow2(PeepholeRule):
    """``imul d, s, 2^k`` -> ``shl`` (with a move when d != s)."""

    rule_id = "mul-pow2"

    def rewrite(self, window, live, arch):
        (ins,) = window
        if ins.mnemonic != "imul" or len(ins.operands) != 3 or not _flags_dead(live):
            return None
        dst, src, imm = ins.operands
        if not isinstance(src, Reg) or not isinstance(imm, Imm):
            return None
        value = to_signed(imm.value, dst.width)
        if value <= 0 or value & (value - 1):
            return None
        k = value.bit_length() - 1
        if k >= dst.width:
            return None
        replacement = []
        if dst != src or k == 0:
            replacement.append(materialize(arch, "mov", (dst, src)))
        if k:
            replacement.append(materialize(arch, "shl", (dst, Imm(k))))
        return replacement


class DoubleNot(PeepholeRule):
    rule_id = "double-not"
    length = 2

    def rewrite(self, window, live, arch):
        first, second = window
        if first.mnemonic == second.mnemonic == "not" and first.operands == second.operands:
            (op,) = first.operands
            if isinstance(op, Reg) and op.width == 64:
                return []
        return None


class DoubleNeg(PeepholeRule):
    rule_id = "double-neg"
    length = 2

    def rewrite(self, window, live, arch):
        first, second = window
        if first.mnemonic == second.mnemonic == "neg" and first.operands == second.operands and _flags_dead(live):
            (op,) = first.operands
            if isinstance(op, Reg) and op.width == 64:
                return []
        return None


class StoreLoad(PeepholeRule):
    """``mov [m], r; mov r, [m]``: the reload is redundant."""

    rule_id = "store-load"
    length = 2

    def rewrite(self, window, live, arch):
        store, load = window
        if store.mnemonic != "mov" or load.mnemonic != "mov":
            return None
        mem, reg = store.operands
        if not (isinstance(mem, Mem) and isinstance(reg, Reg) and reg.width == 64):
            return None
        if load.operands == (reg, mem) and reg.name not in mem.registers:
            return [store]
        return None


class LoadLoad(PeepholeRule):
    """Repeated identical load into the same register."""

    rule_id = "load-load"
    length = 2

    def rewrite(self, window, live, arch):
        first, second = window
        if first.mnemonic != "mov" or first.operands != second.operands or second.mnemonic != "mov":
            return None
        reg, mem = first.operands
        if isinstance(reg, Reg) and isinstance(mem, Mem) and reg.name not in mem.registers:
            return [first]
        return None


DEFAULT_RULES: tuple[PeepholeRule, ...] = (
    MovSelf(),
    MovSwap(),
    DeadWrite(),
    ZeroIdiom(),
    IncDec(),
    AddZero(),
    MulPow2(),
    DoubleNot(),
    DoubleNeg(),
    StoreLoad(),
    LoadLoad(),
)
