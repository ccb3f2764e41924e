"""
Versioned effect table for the modeled x86-64 subset.

Every decoded instruction is annotated with an ``Effects`` descriptor derived
from this table. Instructions missing from the table, or decoded in their
opaque form, get ``UNKNOWN_EFFECTS``; hazard instructions read and write
everything and are never part of a rewrite.
"""

from dataclasses import dataclass, replace

from neurassembly.isa.instruction import UNKNOWN_EFFECTS, ControlKind, Effects, Hazard, Instruction
from neurassembly.isa.operands import ALL_FLAGS, Imm, Mem, Reg, Rel
from neurassembly.isa.x86 import CONDITION_CODES

EFFECT_TABLE_VERSION = "x86_64-effects/1"

ARITH_FLAGS = ALL_FLAGS
LOGIC_FLAGS = ALL_FLAGS
INC_DEC_FLAGS = frozenset({"pf", "zf", "sf", "of"})

CONDITION_FLAGS = {
    "o": {"of"}, "no": {"of"},
    "b": {"cf"}, "ae": {"cf"},
    "e": {"zf"}, "ne": {"zf"},
    "be": {"cf", "zf"}, "a": {"cf", "zf"},
    "s": {"sf"}, "ns": {"sf"},
    "p": {"pf"}, "np": {"pf"},
    "l": {"sf", "of"}, "ge": {"sf", "of"},
    "le": {"zf", "sf", "of"}, "g": {"zf", "sf", "of"},
}


@dataclass(frozen=True)
class EffectSpec:
    """
    Table row for one mnemonic.

    ``access`` maps operand count to per-operand access: ``r`` read, ``w``
    write, ``rw`` both, ``a`` address only (registers read, memory untouched),
    ``-`` ignored.
    """

    access: dict
    flags_read: frozenset[str] = frozenset()
    flags_written: frozenset[str] = frozenset()
    flags_undefined: frozenset[str] = frozenset()
    implicit_reads: frozenset[str] = frozenset()
    implicit_writes: frozenset[str] = frozenset()
    mem_read: bool = False
    mem_write: bool = False
    control: ControlKind = ControlKind.NONE


_BINARY_RW = {2: ("rw", "r")}
_RSP = frozenset({"rsp"})

EFFECT_TABLE: dict[str, EffectSpec] = {
    "nop": EffectSpec(access={0: (), 1: ("-",)}),
    "mov": EffectSpec(access={2: ("w", "r")}),
    "lea": EffectSpec(access={2: ("w", "a")}),
    "add": EffectSpec(access=_BINARY_RW, flags_written=ARITH_FLAGS),
    "sub": EffectSpec(access=_BINARY_RW, flags_written=ARITH_FLAGS),
    "adc": EffectSpec(access=_BINARY_RW, flags_read=frozenset({"cf"}), flags_written=ARITH_FLAGS),
    "sbb": EffectSpec(access=_BINARY_RW, flags_read=frozenset({"cf"}), flags_written=ARITH_FLAGS),
    "and": EffectSpec(access=_BINARY_RW, flags_written=LOGIC_FLAGS),
    "or": EffectSpec(access=_BINARY_RW, flags_written=LOGIC_FLAGS),
    "xor": EffectSpec(access=_BINARY_RW, flags_written=LOGIC_FLAGS),
    "cmp": EffectSpec(access={2: ("r", "r")}, flags_written=ARITH_FLAGS),
    "test": EffectSpec(access={2: ("r", "r")}, flags_written=LOGIC_FLAGS),
    "inc": EffectSpec(access={1: ("rw",)}, flags_written=INC_DEC_FLAGS),
    "dec": EffectSpec(access={1: ("rw",)}, flags_written=INC_DEC_FLAGS),
    "not": EffectSpec(access={1: ("rw",)}),
    "neg": EffectSpec(access={1: ("rw",)}, flags_written=ARITH_FLAGS),
    "imul": EffectSpec(
        access={2: ("rw", "r"), 3: ("w", "r", "r")},
        flags_written=frozenset({"cf", "of"}),
        flags_undefined=frozenset({"pf", "zf", "sf"}),
    ),
    "shl": EffectSpec(access=_BINARY_RW),
    "shr": EffectSpec(access=_BINARY_RW),
    "sar": EffectSpec(access=_BINARY_RW),
    "push": EffectSpec(access={1: ("r",)}, implicit_reads=_RSP, implicit_writes=_RSP, mem_write=True),
    "pop": EffectSpec(access={1: ("w",)}, implicit_reads=_RSP, implicit_writes=_RSP, mem_read=True),
    "jmp": EffectSpec(access={1: ("-",)}, control=ControlKind.JUMP),
    "ret": EffectSpec(access={0: ()}, implicit_reads=_RSP, implicit_writes=_RSP, mem_read=True,
                      control=ControlKind.RETURN),
}
for _cc in CONDITION_CODES:
    EFFECT_TABLE[f"j{_cc}"] = EffectSpec(
        access={1: ("-",)}, flags_read=frozenset(CONDITION_FLAGS[_cc]), control=ControlKind.BRANCH
    )

HAZARDS = {
    "syscall": Hazard.SYSCALL,
    "sysenter": Hazard.SYSCALL,
    "int": Hazard.SYSCALL,
    "int3": Hazard.SYSCALL,
    "in": Hazard.IO,
    "out": Hazard.IO,
    "insb": Hazard.IO,
    "insd": Hazard.IO,
    "outsb": Hazard.IO,
    "outsd": Hazard.IO,
    "hlt": Hazard.PRIVILEGED,
    "cli": Hazard.PRIVILEGED,
    "sti": Hazard.PRIVILEGED,
    "ud2": Hazard.UNBOUNDED,
}


def _everything(**changes) -> Effects:
    return replace(UNKNOWN_EFFECTS, unknown=False, **changes)


def shift_count(ins: Instruction) -> int | None:
    """Effective (masked) count of an immediate shift."""
    if ins.mnemonic not in ("shl", "shr", "sar") or len(ins.operands) != 2:
        return None
    dst, count = ins.operands
    if not isinstance(count, Imm):
        return None
    return count.value & (0x3F if dst.width == 64 else 0x1F)


def is_zero_idiom(ins: Instruction) -> bool:
    """``xor r, r`` / ``sub r, r``: result independent of the register's value."""
    if ins.mnemonic not in ("xor", "sub") or len(ins.operands) != 2:
        return False
    a, b = ins.operands
    return isinstance(a, Reg) and a == b


def annotate(ins: Instruction, code_region: tuple[int, int] | None = None) -> Effects:
    """
    Compute the effect descriptor of ``ins``.

    Args:
        ins: Decoded or materialized instruction
        code_region: ``(start, end)`` of the code being optimized; RIP-relative
            operands pointing inside it turn the instruction into a hazard

    Returns:
        Effects descriptor
    """
    if ins.mnemonic in HAZARDS and ins.form != "opaque":
        return _everything(hazard=HAZARDS[ins.mnemonic])

    if ins.form == "opaque":
        control = ControlKind.BRANCH if ins.branch_target is not None else ControlKind.NONE
        return replace(UNKNOWN_EFFECTS, control=control)

    if ins.mnemonic in ("call", "jmp") and ins.operands and not isinstance(ins.operands[0], Rel):
        return _everything(control=ControlKind.INDIRECT, hazard=Hazard.UNBOUNDED)
    if ins.mnemonic == "call":
        return _everything(control=ControlKind.CALL, hazard=Hazard.UNBOUNDED)

    spec = EFFECT_TABLE.get(ins.mnemonic)
    if spec is None or len(ins.operands) not in spec.access:
        return UNKNOWN_EFFECTS

    reads = set(spec.implicit_reads)
    writes = set(spec.implicit_writes)
    mem_read, mem_write = spec.mem_read, spec.mem_write
    hazard = None
    for op, access in zip(ins.operands, spec.access[len(ins.operands)]):
        if access == "-":
            continue
        if isinstance(op, Reg):
            if "r" in access:
                reads.add(op.name)
            if "w" in access:
                writes.add(op.name)
        elif isinstance(op, Mem):
            reads |= op.registers
            if access == "a":
                if op.rip_relative and _in_region(op.target, code_region):
                    hazard = Hazard.CODE_REFERENCE
                continue
            if "r" in access:
                mem_read = True
            if "w" in access:
                mem_write = True
            if op.rip_relative and _in_region(op.target, code_region):
                hazard = Hazard.SELF_MODIFYING if "w" in access else Hazard.CODE_REFERENCE

    flags_written = spec.flags_written
    flags_undefined = spec.flags_undefined
    count = shift_count(ins)
    if count is not None:
        if count == 0:
            flags_written = frozenset()
        elif count == 1:
            flags_written = ALL_FLAGS
        else:
            flags_written = ALL_FLAGS - {"of"}
            flags_undefined = frozenset({"of"})

    if is_zero_idiom(ins):
        reads.discard(ins.operands[0].name)

    if hazard is not None:
        return _everything(hazard=hazard, control=spec.control)
    return Effects(
        reads=frozenset(reads),
        writes=frozenset(writes),
        flags_read=spec.flags_read,
        flags_written=flags_written,
        flags_undefined=flags_undefined,
        mem_read=mem_read,
        mem_write=mem_write,
        control=spec.control,
    )


def _in_region(address: int | None, region: tuple[int, int] | None) -> bool:
    if address is None or region is None:
        return False
    start, end = region
    return start <= address < end

