"""
Executable semantics of the modeled x86-64 subset.

One set of instruction handlers runs over two value domains: plain Python
integers for sampled testing and z3 bit-vectors for symbolic proofs. Every
domain operation takes explicit widths, so the handlers never care which
domain they run on.

Flags are booleans of the domain, or ``None`` once an instruction leaves
them undefined. Reading an undefined flag raises ``UndefinedBehavior``.
"""

from dataclasses import dataclass

import z3

from neurassembly.errors import UndefinedBehavior
from neurassembly.isa.operands import FLAGS, GPRS, Imm, Mem, Reg, mask, to_signed
from neurassembly.isa.x86 import CONDITION_CODES


def splitmix64(value: int) -> int:
    value = (value + 0x9E3779B97F4A7C15) & mask(64)
    value = ((value ^ (value >> 30)) * 0xBF58476D1CE4E5B9) & mask(64)
    value = ((value ^ (value >> 27)) * 0x94D049BB133111EB) & mask(64)
    return value ^ (value >> 31)


class ConcreteMemory:
    """Sparse byte memory; bytes never written read as a salted hash of their address."""

    def __init__(self, salt: int = 0, written: dict[int, int] | None = None) -> None:
        self.salt = salt
        self.written = dict(written or {})

    def read_byte(self, address: int) -> int:
        address &= mask(64)
        if address in self.written:
            return self.written[address]
        return splitmix64(address ^ self.salt) & 0xFF

    def write_byte(self, address: int, value: int) -> None:
        self.written[address & mask(64)] = value & 0xFF

    def copy(self) -> "ConcreteMemory":
        return ConcreteMemory(self.salt, self.written)


class ConcreteDomain:
    """Python integers masked to their width; flags are Python booleans."""

    symbolic = False

    def const(self, value, width):
        return value & mask(width)

    def add(self, a, b, width):
        return (a + b) & mask(width)

    def sub(self, a, b, width):
        return (a - b) & mask(width)

    def mul(self, a, b, width):
        return (a * b) & mask(width)

    def and_(self, a, b, width):
        return a & b

    def or_(self, a, b, width):
        return a | b

    def xor(self, a, b, width):
        return a ^ b

    def not_(self, a, width):
        return ~a & mask(width)

    def shl(self, a, count, width):
        return (a << count) & mask(width)

    def lshr(self, a, count, width):
        return a >> count

    def ashr(self, a, count, width):
        return (to_signed(a, width) >> count) & mask(width)

    def zext(self, a, from_width, to_width):
        return a

    def sext(self, a, from_width, to_width):
        return to_signed(a, from_width) & mask(to_width)

    def extract(self, a, hi, lo):
        return (a >> lo) & mask(hi - lo + 1)

    def bit(self, a, index):
        return bool((a >> index) & 1)

    def eq(self, a, b):
        return a == b

    def ult(self, a, b, width):
        return a < b

    def is_zero(self, a, width):
        return a == 0

    def parity(self, a):
        return bin(a & 0xFF).count("1") % 2 == 0

    def ite(self, cond, a, b):
        return a if cond else b

    def boolean(self, value):
        return bool(value)

    def b_and(self, *values):
        return all(values)

    def b_or(self, *values):
        return any(values)

    def b_not(self, value):
        return not value

    def b_eq(self, a, b):
        return a == b

    def b_xor(self, a, b):
        return a != b

    def load(self, memory: ConcreteMemory, address, size):
        return int.from_bytes(bytes(memory.read_byte(address + i) for i in range(size)), "little")

    def store(self, memory: ConcreteMemory, address, value, size):
        for i in range(size):
            memory.write_byte(address + i, value >> (8 * i))
        return memory

    def copy_memory(self, memory: ConcreteMemory) -> ConcreteMemory:
        return memory.copy()


class Z3Domain:
    """z3 bit-vectors and booleans, all created in one private context."""

    symbolic = True

    def __init__(self, ctx: z3.Context | None = None) -> None:
        self.ctx = ctx or z3.Context()

    def const(self, value, width):
        return z3.BitVecVal(value & mask(width), width, self.ctx)

    def add(self, a, b, width):
        return a + b

    def sub(self, a, b, width):
        return a - b

    def mul(self, a, b, width):
        return a * b

    def and_(self, a, b, width):
        return a & b

    def or_(self, a, b, width):
        return a | b

    def xor(self, a, b, width):
        return a ^ b

    def not_(self, a, width):
        return ~a

    def shl(self, a, count, width):
        return a << count

    def lshr(self, a, count, width):
        return z3.LShR(a, count)

    def ashr(self, a, count, width):
        return a >> count

    def zext(self, a, from_width, to_width):
        return z3.ZeroExt(to_width - from_width, a) if to_width > from_width else a

    def sext(self, a, from_width, to_width):
        return z3.SignExt(to_width - from_width, a) if to_width > from_width else a

    def extract(self, a, hi, lo):
        return z3.Extract(hi, lo, a)

    def bit(self, a, index):
        return z3.Extract(index, index, a) == 1

    def eq(self, a, b):
        return a == b

    def ult(self, a, b, width):
        return z3.ULT(a, b)

    def is_zero(self, a, width):
        return a == 0

    def parity(self, a):
        low = z3.Extract(7, 0, a)
        folded = low ^ z3.LShR(low, 4)
        folded = folded ^ z3.LShR(folded, 2)
        folded = folded ^ z3.LShR(folded, 1)
        return z3.Extract(0, 0, folded) == 0

    def ite(self, cond, a, b):
        return z3.If(cond, a, b, self.ctx)

    def boolean(self, value):
        return z3.BoolVal(bool(value), self.ctx)

    def b_and(self, *values):
        return z3.And(*values)

    def b_or(self, *values):
        return z3.Or(*values)

    def b_not(self, value):
        return z3.Not(value)

    def b_eq(self, a, b):
        return a == b

    def b_xor(self, a, b):
        return z3.Xor(a, b)

    def load(self, memory, address, size):
        parts = [z3.Select(memory, address + i) for i in reversed(range(size))]
        return parts[0] if size == 1 else z3.Concat(*parts)

    def store(self, memory, address, value, size):
        for i in range(size):
            memory = z3.Store(memory, address + i, z3.Extract(8 * i + 7, 8 * i, value))
        return memory

    def copy_memory(self, memory):
        return memory

    def fresh_memory(self, name: str = "mem"):
        return z3.Array(name, z3.BitVecSort(64, self.ctx), z3.BitVecSort(8, self.ctx))


@dataclass
class MachineState:
    """
    Registers (64-bit values), flags (domain booleans or ``None`` when
    undefined) and memory of one execution.
    """

    regs: dict
    flags: dict
    mem: object

    def copy(self, domain) -> "MachineState":
        return MachineState(dict(self.regs), dict(self.flags), domain.copy_memory(self.mem))


def concrete_state(regs: dict[str, int], flags: dict[str, bool], salt: int = 0) -> MachineState:
    return MachineState(
        regs={name: regs.get(name, 0) & mask(64) for name in GPRS},
        flags={name: bool(flags.get(name, False)) for name in FLAGS},
        mem=ConcreteMemory(salt),
    )


def symbolic_state(domain: Z3Domain) -> MachineState:
    """Fresh symbolic inputs for every register, flag and memory byte."""
    return MachineState(
        regs={name: z3.BitVec(f"in_{name}", 64, domain.ctx) for name in GPRS},
        flags={name: z3.Bool(f"in_{name}", domain.ctx) for name in FLAGS},
        mem=domain.fresh_memory("in_mem"),
    )


class Semantics:
    """Instruction interpreter parameterized by a value domain."""

    def __init__(self, domain) -> None:
        self.d = domain
        self.handlers = {
            "nop": self._nop,
            "mov": self._mov,
            "lea": self._lea,
            "add": self._arith,
            "adc": self._arith,
            "sub": self._arith,
            "sbb": self._arith,
            "cmp": self._arith,
            "and": self._logic,
            "or": self._logic,
            "xor": self._logic,
            "test": self._logic,
            "inc": self._inc_dec,
            "dec": self._inc_dec,
            "not": self._not,
            "neg": self._neg,
            "imul": self._imul,
            "shl": self._shift,
            "shr": self._shift,
            "sar": self._shift,
            "push": self._push,
            "pop": self._pop,
        }

    def supports(self, ins) -> bool:
        return ins.mnemonic in self.handlers and ins.form != "opaque"

    def step(self, state: MachineState, ins) -> None:
        """
        Execute one straight-line instruction in place.

        Raises:
            UndefinedBehavior: If the instruction reads an undefined flag
            NotImplementedError: If the instruction has no semantics
        """
        if not self.supports(ins):
            raise NotImplementedError(f"No semantics for {ins}")
        self.handlers[ins.mnemonic](state, ins)

    def run(self, state: MachineState, instructions) -> MachineState:
        for ins in instructions:
            self.step(state, ins)
        return state

    # operand access

    def address(self, state: MachineState, mem: Mem):
        d = self.d
        if mem.rip_relative:
            return d.const(mem.target, 64)
        value = d.const(mem.disp, 64)
        if mem.base:
            value = d.add(value, state.regs[mem.base], 64)
        if mem.index:
            shift = {1: 0, 2: 1, 4: 2, 8: 3}[mem.scale]
            value = d.add(value, d.shl(state.regs[mem.index], shift, 64), 64)
        return value

    def read(self, state: MachineState, op, width: int):
        d = self.d
        if isinstance(op, Reg):
            value = state.regs[op.name]
            return value if width == 64 else d.extract(value, width - 1, 0)
        if isinstance(op, Imm):
            return d.const(op.value, width)
        if isinstance(op, Mem):
            return d.load(state.mem, self.address(state, op), width // 8)
        raise NotImplementedError(f"Cannot read operand {op}")

    def write(self, state: MachineState, op, value, width: int) -> None:
        d = self.d
        if isinstance(op, Reg):
            # 32-bit writes zero the upper half
            state.regs[op.name] = value if width == 64 else d.zext(value, width, 64)
        elif isinstance(op, Mem):
            state.mem = d.store(state.mem, self.address(state, op), value, width // 8)
        else:
            raise NotImplementedError(f"Cannot write operand {op}")

    def flag(self, state: MachineState, name: str):
        value = state.flags[name]
        if value is None:
            raise UndefinedBehavior(f"Read of undefined flag {name}")
        return value

    def condition(self, state: MachineState, cc: str):
        """Evaluate condition code ``cc`` (``e``, ``ne``, ``l``, ...)."""
        if cc not in CONDITION_CODES:
            raise ValueError(f"Unknown condition code {cc!r}")
        d = self.d
        f = lambda name: self.flag(state, name)  # noqa: E731
        base, negate = {
            "o": ("o", False), "no": ("o", True), "b": ("b", False), "ae": ("b", True),
            "e": ("e", False), "ne": ("e", True), "be": ("be", False), "a": ("be", True),
            "s": ("s", False), "ns": ("s", True), "p": ("p", False), "np": ("p", True),
            "l": ("l", False), "ge": ("l", True), "le": ("le", False), "g": ("le", True),
        }[cc]
        if base == "o":
            value = f("of")
        elif base == "b":
            value = f("cf")
        elif base == "e":
            value = f("zf")
        elif base == "be":
            value = d.b_or(f("cf"), f("zf"))
        elif base == "s":
            value = f("sf")
        elif base == "p":
            value = f("pf")
        elif base == "l":
            value = d.b_xor(f("sf"), f("of"))
        else:
            value = d.b_or(f("zf"), d.b_xor(f("sf"), f("of")))
        return d.b_not(value) if negate else value

    @staticmethod
    def _width(ins) -> int:
        return ins.operands[0].width

    def _set_result_flags(self, state, result, width) -> None:
        d = self.d
        state.flags["zf"] = d.is_zero(result, width)
        state.flags["sf"] = d.bit(result, width - 1)
        state.flags["pf"] = d.parity(result)

    # handlers

    def _nop(self, state, ins) -> None:
        return None

    def _mov(self, state, ins) -> None:
        dst, src = ins.operands
        width = dst.width
        self.write(state, dst, self.read(state, src, width), width)

    def _lea(self, state, ins) -> None:
        dst, src = ins.operands
        address = self.address(state, src)
        if dst.width != 64:
            address = self.d.extract(address, dst.width - 1, 0)
        self.write(state, dst, address, dst.width)

    def _arith(self, state, ins) -> None:
        d = self.d
        dst, src = ins.operands
        width = dst.width
        a = self.read(state, dst, width)
        b = self.read(state, src, width)
        carry = self.flag(state, "cf") if ins.mnemonic in ("adc", "sbb") else d.boolean(False)
        carry_bits = d.ite(carry, d.const(1, width + 1), d.const(0, width + 1))
        wide_a = d.zext(a, width, width + 1)
        wide_b = d.add(d.zext(b, width, width + 1), carry_bits, width + 1)
        sign_a, sign_b = d.bit(a, width - 1), d.bit(b, width - 1)

        if ins.mnemonic in ("add", "adc"):
            wide = d.add(wide_a, wide_b, width + 1)
            result = d.extract(wide, width - 1, 0)
            cf = d.bit(wide, width)
            of = d.b_and(d.b_eq(sign_a, sign_b), d.b_not(d.b_eq(d.bit(result, width - 1), sign_a)))
        else:
            wide = d.sub(wide_a, wide_b, width + 1)
            result = d.extract(wide, width - 1, 0)
            cf = d.ult(wide_a, wide_b, width + 1)
            of = d.b_and(d.b_not(d.b_eq(sign_a, sign_b)), d.b_not(d.b_eq(d.bit(result, width - 1), sign_a)))

        if ins.mnemonic != "cmp":
            self.write(state, dst, result, width)
        state.flags["cf"] = cf
        state.flags["of"] = of
        self._set_result_flags(state, result, width)

    def _logic(self, state, ins) -> None:
        d = self.d
        dst, src = ins.operands
        width = dst.width
        a = self.read(state, dst, width)
        b = self.read(state, src, width)
        if ins.mnemonic in ("and", "test"):
            result = d.and_(a, b, width)
        elif ins.mnemonic == "or":
            result = d.or_(a, b, width)
        else:
            result = d.xor(a, b, width)
        if ins.mnemonic != "test":
            self.write(state, dst, result, width)
        state.flags["cf"] = d.boolean(False)
        state.flags["of"] = d.boolean(False)
        self._set_result_flags(state, result, width)

    def _inc_dec(self, state, ins) -> None:
        d = self.d
        (dst,) = ins.operands
        width = dst.width
        a = self.read(state, dst, width)
        one = d.const(1, width)
        if ins.mnemonic == "inc":
            result = d.add(a, one, width)
            # overflow only when crossing from the largest positive value
            of = d.eq(a, d.const(mask(width - 1), width))
        else:
            result = d.sub(a, one, width)
            of = d.eq(a, d.const(1 << (width - 1), width))
        self.write(state, dst, result, width)
        state.flags["of"] = of
        self._set_result_flags(state, result, width)

    def _not(self, state, ins) -> None:
        (dst,) = ins.operands
        width = dst.width
        self.write(state, dst, self.d.not_(self.read(state, dst, width), width), width)

    def _neg(self, state, ins) -> None:
        d = self.d
        (dst,) = ins.operands
        width = dst.width
        a = self.read(state, dst, width)
        result = d.sub(d.const(0, width), a, width)
        self.write(state, dst, result, width)
        state.flags["cf"] = d.b_not(d.is_zero(a, width))
        state.flags["of"] = d.eq(a, d.const(1 << (width - 1), width))
        self._set_result_flags(state, result, width)

    def _imul(self, state, ins) -> None:
        d = self.d
        dst = ins.operands[0]
        width = dst.width
        if len(ins.operands) == 2:
            a = self.read(state, dst, width)
            b = self.read(state, ins.operands[1], width)
        else:
            a = self.read(state, ins.operands[1], width)
            b = self.read(state, ins.operands[2], width)
        full = d.mul(d.sext(a, width, 2 * width), d.sext(b, width, 2 * width), 2 * width)
        result = d.extract(full, width - 1, 0)
        overflow = d.b_not(d.eq(d.sext(result, width, 2 * width), full))
        self.write(state, dst, result, width)
        state.flags["cf"] = overflow
        state.flags["of"] = overflow
        for name in ("pf", "zf", "sf"):
            state.flags[name] = None

    def _shift(self, state, ins) -> None:
        d = self.d
        dst, count_op = ins.operands
        width = dst.width
        count = count_op.value & (0x3F if width == 64 else 0x1F)
        a = self.read(state, dst, width)
        if count == 0:
            # flags untouched, destination still rewritten (zero-extended)
            self.write(state, dst, a, width)
            return
        if ins.mnemonic == "shl":
            result = d.shl(a, count, width)
            cf = d.bit(a, width - count)
            of = d.b_xor(d.bit(result, width - 1), cf)
        elif ins.mnemonic == "shr":
            result = d.lshr(a, count, width)
            cf = d.bit(a, count - 1)
            of = d.bit(a, width - 1)
        else:
            result = d.ashr(a, count, width)
            cf = d.bit(a, count - 1)
            of = d.boolean(False)
        self.write(state, dst, result, width)
        state.flags["cf"] = cf
        state.flags["of"] = of if count == 1 else None
        self._set_result_flags(state, result, width)

    def _push(self, state, ins) -> None:
        d = self.d
        value = self.read(state, ins.operands[0], 64)
        rsp = d.sub(state.regs["rsp"], d.const(8, 64), 64)
        state.regs["rsp"] = rsp
        state.mem = d.store(state.mem, rsp, value, 8)

    def _pop(self, state, ins) -> None:
        d = self.d
        rsp = state.regs["rsp"]
        value = d.load(state.mem, rsp, 8)
        state.regs["rsp"] = d.add(rsp, d.const(8, 64), 64)
        self.write(state, ins.operands[0], value, 64)

    def pop_return_address(self, state: MachineState):
        """Semantics of ``ret``: pop and return the return address."""
        d = self.d
        rsp = state.regs["rsp"]
        value = d.load(state.mem, rsp, 8)
        state.regs["rsp"] = d.add(rsp, d.const(8, 64), 64)
        return value
