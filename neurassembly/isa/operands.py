"""
Operand types and register tables for the x86-64 instruction model.

Registers are always named by their canonical 64-bit name; the operand width
says which view of the register an instruction uses.
"""

from dataclasses import dataclass

GPRS: tuple[str, ...] = (
    "rax", "rcx", "rdx", "rbx", "rsp", "rbp", "rsi", "rdi",
    "r8", "r9", "r10", "r11", "r12", "r13", "r14", "r15",
)

GPR32: tuple[str, ...] = (
    "eax", "ecx", "edx", "ebx", "esp", "ebp", "esi", "edi",
    "r8d", "r9d", "r10d", "r11d", "r12d", "r13d", "r14d", "r15d",
)

FLAGS: tuple[str, ...] = ("cf", "pf", "zf", "sf", "of")

ALL_REGISTERS = frozenset(GPRS)
ALL_FLAGS = frozenset(FLAGS)

REGISTER_NUMBER = {name: i for i, name in enumerate(GPRS)}

# Every spelling the assembler accepts -> (canonical name, width)
REGISTER_ALIASES: dict[str, tuple[str, int]] = {}
for _i, _name in enumerate(GPRS):
    REGISTER_ALIASES[_name] = (_name, 64)
    REGISTER_ALIASES[GPR32[_i]] = (_name, 32)

WIDTH_NAMES = {64: "qword", 32: "dword"}
SIZE_KEYWORDS = {"qword": 64, "dword": 32}


def mask(width: int) -> int:
    return (1 << width) - 1


def to_signed(value: int, width: int) -> int:
    value &= mask(width)
    if value >> (width - 1):
        return value - (1 << width)
    return value


def fits_signed(value: int, bits: int) -> bool:
    return -(1 << (bits - 1)) <= value < (1 << (bits - 1))


def _hex(value: int) -> str:
    return f"-{-value:#x}" if value < 0 else f"{value:#x}"


@dataclass(frozen=True)
class Reg:
    name: str
    width: int = 64

    def __str__(self) -> str:
        if self.width == 32:
            return GPR32[REGISTER_NUMBER[self.name]]
        return self.name


@dataclass(frozen=True)
class Imm:
    value: int

    def __str__(self) -> str:
        return _hex(self.value)


@dataclass(frozen=True)
class Mem:
    """
    Memory reference ``[base + index*scale + disp]``.

    RIP-relative references use ``base == "rip"`` and keep the absolute
    ``target`` address so they survive code motion.
    """

    width: int
    base: str | None = None
    index: str | None = None
    scale: int = 1
    disp: int = 0
    target: int | None = None

    @property
    def rip_relative(self) -> bool:
        return self.base == "rip"

    @property
    def registers(self) -> frozenset[str]:
        regs = set()
        if self.base and self.base != "rip":
            regs.add(self.base)
        if self.index:
            regs.add(self.index)
        return frozenset(regs)

    def __str__(self) -> str:
        prefix = f"{WIDTH_NAMES.get(self.width, 'qword')} ptr "
        if self.rip_relative:
            return f"{prefix}[rel {self.target:#x}]"
        parts = []
        if self.base:
            parts.append(self.base)
        if self.index:
            parts.append(self.index if self.scale == 1 else f"{self.index}*{self.scale}")
        text = "+".join(parts)
        if self.disp or not parts:
            if not parts:
                text = f"{self.disp & mask(64):#x}"
            elif self.disp < 0:
                text += f"-{-self.disp:#x}"
            else:
                text += f"+{self.disp:#x}"
        return f"{prefix}[{text}]"


@dataclass(frozen=True)
class Rel:
    """Direct branch target, kept as an absolute address."""

    target: int

    def __str__(self) -> str:
        return f"{self.target:#x}"


Operand = Reg | Imm | Mem | Rel
