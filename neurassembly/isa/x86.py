"""
Built-in x86-64 decoder/encoder collaborator.

Decodes the 64-bit-mode subset the semantic model understands (REX, ModRM,
SIB, disp8/disp32 and RIP-relative addressing) and a table of opaque opcodes
whose length is known but whose effect is not modeled. Decoded instructions
keep their raw bytes; re-encoding reuses them and only patches PC-relative
fields, so an untouched instruction always re-encodes byte for byte.
"""

import struct
from dataclasses import replace

from neurassembly.errors import DecodeError, EncodeError
from neurassembly.isa.instruction import Instruction, Reloc
from neurassembly.isa.operands import (
    GPRS,
    REGISTER_NUMBER,
    Imm,
    Mem,
    Reg,
    Rel,
    fits_signed,
    mask,
    to_signed,
)


ARCH = "x86_64"
MAX_INSTRUCTION_LENGTH = 15

CONDITION_CODES = ("o", "no", "b", "ae", "e", "ne", "be", "a", "s", "ns", "p", "np", "l", "ge", "le", "g")
JCC = tuple(f"j{cc}" for cc in CONDITION_CODES)
JCC_ALIASES = {
    "jc": "jb", "jnae": "jb", "jnb": "jae", "jnc": "jae", "jz": "je", "jnz": "jne",
    "jna": "jbe", "jnbe": "ja", "jpe": "jp", "jpo": "jnp", "jnge": "jl", "jnl": "jge",
    "jng": "jle", "jnle": "jg",
}

ALU_OPS = ("add", "or", "adc", "sbb", "and", "sub", "xor", "cmp")
SHIFT_OPS = {4: "shl", 5: "shr", 7: "sar"}
SHIFT_CODES = {name: code for code, name in SHIFT_OPS.items()}

LEGACY_PREFIXES = frozenset({0x66, 0x67, 0xF0, 0xF2, 0xF3, 0x2E, 0x36, 0x3E, 0x26, 0x64, 0x65})

# Instructions without operands and their canonical encodings
FIXED_ENCODINGS = {
    "ret": bytes([0xC3]),
    "syscall": bytes([0x0F, 0x05]),
    "sysenter": bytes([0x0F, 0x34]),
    "int3": bytes([0xCC]),
    "hlt": bytes([0xF4]),
    "cli": bytes([0xFA]),
    "sti": bytes([0xFB]),
    "ud2": bytes([0x0F, 0x0B]),
    "cpuid": bytes([0x0F, 0xA2]),
    "rdtsc": bytes([0x0F, 0x31]),
    "insd": bytes([0x6D]),
    "outsd": bytes([0x6F]),
}

# Opcode layout: (has ModRM, immediate kind). Immediate kinds: "" none,
# "1"/"2"/"4" fixed bytes, "z" 4 (2 with 0x66), "v" 8 with REX.W else "z".
ONE_BYTE: dict[int, tuple[bool, str]] = {}
for _base in range(0x00, 0x40, 0x08):
    ONE_BYTE.update({
        _base: (True, ""), _base + 1: (True, ""), _base + 2: (True, ""), _base + 3: (True, ""),
        _base + 4: (False, "1"), _base + 5: (False, "z"),
    })
ONE_BYTE.update({op: (False, "") for op in range(0x50, 0x60)})
ONE_BYTE.update({
    0x63: (True, ""), 0x68: (False, "z"), 0x69: (True, "z"), 0x6A: (False, "1"), 0x6B: (True, "1"),
    0x6C: (False, ""), 0x6D: (False, ""), 0x6E: (False, ""), 0x6F: (False, ""),
})
ONE_BYTE.update({op: (False, "1") for op in range(0x70, 0x80)})
ONE_BYTE.update({
    0x80: (True, "1"), 0x81: (True, "z"), 0x83: (True, "1"),
    0x84: (True, ""), 0x85: (True, ""), 0x86: (True, ""), 0x87: (True, ""),
    0x88: (True, ""), 0x89: (True, ""), 0x8A: (True, ""), 0x8B: (True, ""),
    0x8C: (True, ""), 0x8D: (True, ""), 0x8E: (True, ""), 0x8F: (True, ""),
})
ONE_BYTE.update({op: (False, "") for op in range(0x90, 0x98)})
ONE_BYTE.update({0x98: (False, ""), 0x99: (False, ""), 0x9C: (False, ""), 0x9D: (False, "")})
ONE_BYTE.update({0xA8: (False, "1"), 0xA9: (False, "z")})
ONE_BYTE.update({op: (False, "1") for op in range(0xB0, 0xB8)})
ONE_BYTE.update({op: (False, "v") for op in range(0xB8, 0xC0)})
ONE_BYTE.update({
    0xC0: (True, "1"), 0xC1: (True, "1"), 0xC2: (False, "2"), 0xC3: (False, ""),
    0xC6: (True, "1"), 0xC7: (True, "z"), 0xC9: (False, ""), 0xCC: (False, ""), 0xCD: (False, "1"),
    0xD0: (True, ""), 0xD1: (True, ""), 0xD2: (True, ""), 0xD3: (True, ""),
    0xE0: (False, "1"), 0xE1: (False, "1"), 0xE2: (False, "1"), 0xE3: (False, "1"),
    0xE4: (False, "1"), 0xE5: (False, "1"), 0xE6: (False, "1"), 0xE7: (False, "1"),
    0xE8: (False, "4"), 0xE9: (False, "4"), 0xEB: (False, "1"),
    0xEC: (False, ""), 0xED: (False, ""), 0xEE: (False, ""), 0xEF: (False, ""),
    0xF4: (False, ""), 0xF5: (False, ""), 0xF6: (True, ""), 0xF7: (True, ""),
    0xF8: (False, ""), 0xF9: (False, ""), 0xFA: (False, ""), 0xFB: (False, ""),
    0xFC: (False, ""), 0xFD: (False, ""), 0xFE: (True, ""), 0xFF: (True, ""),
})

TWO_BYTE: dict[int, tuple[bool, str]] = {
    0x05: (False, ""), 0x0B: (False, ""), 0x1E: (True, ""), 0x1F: (True, ""),
    0x31: (False, ""), 0x34: (False, ""), 0xA2: (False, ""),
    0xA3: (True, ""), 0xA4: (True, "1"), 0xA5: (True, ""), 0xAB: (True, ""),
    0xAC: (True, "1"), 0xAD: (True, ""), 0xAF: (True, ""), 0xB3: (True, ""),
    0xB6: (True, ""), 0xB7: (True, ""), 0xBA: (True, "1"), 0xBB: (True, ""),
    0xBE: (True, ""), 0xBF: (True, ""),
}
TWO_BYTE.update({op: (True, "") for op in range(0x40, 0x50)})
TWO_BYTE.update({op: (False, "4") for op in range(0x80, 0x90)})
TWO_BYTE.update({op: (True, "") for op in range(0x90, 0xA0)})
TWO_BYTE.update({op: (False, "") for op in range(0xC8, 0xD0)})

# One-byte opcodes carrying a relative branch displacement
REL_ONE_BYTE = frozenset(range(0x70, 0x80)) | {0xE0, 0xE1, 0xE2, 0xE3, 0xE8, 0xE9, 0xEB}

OPAQUE_NAMES = {
    0x63: "movsxd", 0x68: "push", 0x6A: "push", 0x84: "test", 0x86: "xchg", 0x87: "xchg",
    0x88: "mov", 0x8A: "mov", 0x8C: "mov", 0x8E: "mov", 0x8F: "pop",
    0x98: "cdqe", 0x99: "cqo", 0x9C: "pushf", 0x9D: "popf", 0xA8: "test",
    0xC0: "rotate", 0xC2: "ret", 0xC6: "mov", 0xC9: "leave",
    0xD0: "rotate", 0xD2: "rotate", 0xD3: "rotate",
    0xE0: "loopne", 0xE1: "loope", 0xE2: "loop", 0xE3: "jrcxz",
    0xF5: "cmc", 0xF6: "group3", 0xF8: "clc", 0xF9: "stc", 0xFC: "cld", 0xFD: "std", 0xFE: "group4",
}
OPAQUE_TWO_BYTE_NAMES = {
    0x1E: "endbr", 0x31: "rdtsc", 0xA2: "cpuid", 0xA3: "bt", 0xA4: "shld", 0xA5: "shld",
    0xAB: "bts", 0xAC: "shrd", 0xAD: "shrd", 0xB3: "btr", 0xB6: "movzx", 0xB7: "movzx",
    0xBA: "bt", 0xBB: "btc", 0xBE: "movsx", 0xBF: "movsx",
}


class _Cursor:
    """Byte reader over the code buffer that reports errors at the instruction start."""

    def __init__(self, code: bytes, start: int) -> None:
        self.code = code
        self.start = start
        self.pos = start

    def byte(self) -> int:
        if self.pos >= len(self.code):
            raise DecodeError(self.start, "truncated instruction")
        value = self.code[self.pos]
        self.pos += 1
        if self.pos - self.start > MAX_INSTRUCTION_LENGTH:
            raise DecodeError(self.start, "instruction longer than 15 bytes")
        return value

    def peek(self) -> int | None:
        return self.code[self.pos] if self.pos < len(self.code) else None

    def integer(self, size: int, signed: bool = True) -> int:
        if self.pos + size > len(self.code):
            raise DecodeError(self.start, "truncated immediate")
        chunk = self.code[self.pos:self.pos + size]
        self.pos += size
        if self.pos - self.start > MAX_INSTRUCTION_LENGTH:
            raise DecodeError(self.start, "instruction longer than 15 bytes")
        return int.from_bytes(chunk, "little", signed=signed)


class _ModRM:
    """Decoded ModRM/SIB/displacement fields."""

    def __init__(self, mod: int, reg: int, rm_reg: int | None, mem: dict | None, rip_offset: int | None) -> None:
        self.mod = mod
        self.reg = reg
        self.rm_reg = rm_reg
        self.mem = mem
        self.rip_offset = rip_offset

    def operand(self, width: int, address_end: int) -> Reg | Mem:
        if self.rm_reg is not None:
            return Reg(GPRS[self.rm_reg], width)
        fields = dict(self.mem)
        if fields.pop("rip"):
            return Mem(width, base="rip", target=(address_end + fields["disp"]) & mask(64))
        return Mem(width, **fields)


def _read_modrm(cur: _Cursor, rex: int) -> _ModRM:
    b = cur.byte()
    mod, reg, rm = b >> 6, ((b >> 3) & 7) | ((rex & 4) << 1), b & 7
    if mod == 3:
        return _ModRM(mod, reg, rm | ((rex & 1) << 3), None, None)

    base = index = None
    scale = 1
    disp = 0
    rip = False
    rip_offset = None
    if rm == 4:
        sib = cur.byte()
        scale = 1 << (sib >> 6)
        idx = ((sib >> 3) & 7) | ((rex & 2) << 2)
        sib_base = sib & 7
        if idx != 4:
            index = GPRS[idx]
        if sib_base == 5 and mod == 0:
            disp = cur.integer(4)
        else:
            base = GPRS[sib_base | ((rex & 1) << 3)]
    elif rm == 5 and mod == 0:
        rip = True
        rip_offset = cur.pos - cur.start
        disp = cur.integer(4)
    else:
        base = GPRS[rm | ((rex & 1) << 3)]

    if mod == 1:
        disp = cur.integer(1)
    elif mod == 2:
        disp = cur.integer(4)
    if index is None:
        scale = 1
    return _ModRM(mod, reg, None, {"base": base, "index": index, "scale": scale, "disp": disp, "rip": rip}, rip_offset)


def _immediate_size(kind: str, rex: int, opsize_prefix: bool) -> int:
    if kind in ("", None):
        return 0
    if kind == "z":
        return 2 if opsize_prefix else 4
    if kind == "v":
        if rex & 8:
            return 8
        return 2 if opsize_prefix else 4
    return int(kind)


class X86Decoder:
    """Raw decoding collaborator: bytes -> un-annotated instructions."""

    arch = ARCH

    def decode_one(self, code: bytes, offset: int, address: int) -> Instruction:
        """
        Decode the instruction starting at ``code[offset]``.

        Args:
            code: Complete code buffer
            offset: Offset of the instruction inside ``code``
            address: Address the instruction is loaded at

        Returns:
            Instruction without effects or uid

        Raises:
            DecodeError: On truncated, unsupported or malformed encodings
        """
        cur = _Cursor(code, offset)
        prefixes = []
        while cur.peek() in LEGACY_PREFIXES:
            prefixes.append(cur.byte())
        rex = 0
        nxt = cur.peek()
        if nxt is not None and 0x40 <= nxt <= 0x4F:
            rex = cur.byte()
        op = cur.byte()
        two_byte = op == 0x0F
        if two_byte:
            op = cur.byte()
            layout = TWO_BYTE.get(op)
        else:
            layout = ONE_BYTE.get(op)
        if layout is None:
            prefix = "0f " if two_byte else ""
            raise DecodeError(offset, f"unsupported opcode {prefix}{op:02x}")

        has_modrm, imm_kind = layout
        modrm = _read_modrm(cur, rex) if has_modrm else None
        if not two_byte and op in (0xF6, 0xF7) and modrm.reg & 7 in (0, 1):
            imm_kind = "1" if op == 0xF6 else "z"
        imm_size = _immediate_size(imm_kind, rex, 0x66 in prefixes)
        imm = cur.integer(imm_size, signed=imm_kind != "v") if imm_size else None
        length = cur.pos - offset
        end = address + length
        raw = bytes(code[offset:cur.pos])

        is_rel = (two_byte and 0x80 <= op <= 0x8F) or (not two_byte and op in REL_ONE_BYTE)
        rel_reloc = Reloc(length - imm_size, imm_size, "rel") if is_rel else None
        rip_reloc = Reloc(modrm.rip_offset, 4, "rip") if modrm is not None and modrm.rip_offset is not None else None

        decoded = None
        if not prefixes or self._nop_prefixes(prefixes, two_byte, op, modrm):
            decoded = self._interpret(op, two_byte, rex, modrm, imm, end, offset)
        if decoded is None:
            decoded = self._opaque(op, two_byte, rex, modrm, imm, end, is_rel)
        mnemonic, operands, form = decoded
        if prefixes and form != "opaque":
            form = " ".join(f"{p:02X}" for p in prefixes) + " " + form
        return Instruction(
            arch=ARCH,
            mnemonic=mnemonic,
            operands=tuple(operands),
            length=length,
            address=address,
            form=form,
            raw=raw,
            reloc=rel_reloc or rip_reloc,
        )

    @staticmethod
    def _nop_prefixes(prefixes, two_byte, op, modrm) -> bool:
        # 0x66-padded nops are still nops
        if set(prefixes) != {0x66}:
            return False
        if two_byte:
            return op == 0x1F and modrm.reg & 7 == 0
        return op == 0x90

    def _interpret(self, op, two_byte, rex, modrm, imm, end, offset):
        width = 64 if rex & 8 else 32

        def rm(w=width):
            return modrm.operand(w, end)

        def reg(w=width):
            return Reg(GPRS[modrm.reg], w)

        if two_byte:
            if op == 0x05:
                return "syscall", (), "0F05"
            if op == 0x34:
                return "sysenter", (), "0F34"
            if op == 0x0B:
                return "ud2", (), "0F0B"
            if op == 0x1F and modrm.reg & 7 == 0:
                return "nop", (rm(),), "0F1F"
            if op == 0xAF:
                return "imul", (reg(), rm()), "0FAF"
            if 0x80 <= op <= 0x8F:
                return JCC[op - 0x80], (Rel((end + imm) & mask(64)),), "0F80+cc"
            return None

        if op < 0x40 and op & 7 in (1, 3, 5):
            name = ALU_OPS[op >> 3]
            if op & 7 == 1:
                return name, (rm(), reg()), f"{op:02X}"
            if op & 7 == 3:
                return name, (reg(), rm()), f"{op:02X}"
            return name, (Reg("rax", width), Imm(imm)), f"{op:02X}"
        if 0x50 <= op <= 0x57:
            return "push", (Reg(GPRS[(op & 7) | ((rex & 1) << 3)], 64),), "50+r"
        if 0x58 <= op <= 0x5F:
            return "pop", (Reg(GPRS[(op & 7) | ((rex & 1) << 3)], 64),), "58+r"
        if op == 0x69:
            return "imul", (reg(), rm(), Imm(imm)), "69"
        if op == 0x6B:
            return "imul", (reg(), rm(), Imm(imm)), "6B"
        if 0x70 <= op <= 0x7F:
            return JCC[op - 0x70], (Rel((end + imm) & mask(64)),), "70+cc"
        if op in (0x81, 0x83):
            return ALU_OPS[modrm.reg & 7], (rm(), Imm(imm)), f"{op:02X}"
        if op == 0x85:
            return "test", (rm(), reg()), "85"
        if op == 0x89:
            return "mov", (rm(), reg()), "89"
        if op == 0x8B:
            return "mov", (reg(), rm()), "8B"
        if op == 0x8D:
            if modrm.rm_reg is not None:
                raise DecodeError(offset, "lea with a register operand")
            return "lea", (reg(), rm()), "8D"
        if op == 0x90 and not rex & 1:
            return "nop", (), "90"
        if op == 0xA9:
            return "test", (Reg("rax", width), Imm(imm)), "A9"
        if 0xB8 <= op <= 0xBF:
            return "mov", (Reg(GPRS[(op & 7) | ((rex & 1) << 3)], width), Imm(imm)), "B8+r"
        if op == 0xC1 and modrm.reg & 7 in SHIFT_OPS:
            return SHIFT_OPS[modrm.reg & 7], (rm(), Imm(imm & 0xFF)), "C1"
        if op == 0xD1 and modrm.reg & 7 in SHIFT_OPS:
            return SHIFT_OPS[modrm.reg & 7], (rm(), Imm(1)), "D1"
        if op == 0xC3:
            return "ret", (), "C3"
        if op == 0xC7 and modrm.reg & 7 == 0:
            return "mov", (rm(), Imm(imm)), "C7"
        if op == 0xCC:
            return "int3", (), "CC"
        if op == 0xCD:
            return "int", (Imm(imm & 0xFF),), "CD"
        if op in (0xE4, 0xE5):
            return "in", (Imm(imm & 0xFF),), f"{op:02X}"
        if op in (0xE6, 0xE7):
            return "out", (Imm(imm & 0xFF),), f"{op:02X}"
        if op in (0xEC, 0xED):
            return "in", (), f"{op:02X}"
        if op in (0xEE, 0xEF):
            return "out", (), f"{op:02X}"
        if op in (0x6C, 0x6D):
            return "insd" if op == 0x6D else "insb", (), f"{op:02X}"
        if op in (0x6E, 0x6F):
            return "outsd" if op == 0x6F else "outsb", (), f"{op:02X}"
        if op == 0xE8:
            return "call", (Rel((end + imm) & mask(64)),), "E8"
        if op == 0xE9:
            return "jmp", (Rel((end + imm) & mask(64)),), "E9"
        if op == 0xEB:
            return "jmp", (Rel((end + imm) & mask(64)),), "EB"
        if op == 0xF4:
            return "hlt", (), "F4"
        if op == 0xFA:
            return "cli", (), "FA"
        if op == 0xFB:
            return "sti", (), "FB"
        if op == 0xF7:
            sub = modrm.reg & 7
            if sub == 0:
                return "test", (rm(), Imm(imm)), "F7/0"
            if sub == 2:
                return "not", (rm(),), "F7/2"
            if sub == 3:
                return "neg", (rm(),), "F7/3"
            return None
        if op == 0xFF:
            sub = modrm.reg & 7
            if sub == 0:
                return "inc", (rm(),), "FF/0"
            if sub == 1:
                return "dec", (rm(),), "FF/1"
            if sub == 2:
                return "call", (rm(64),), "FF/2"
            if sub == 4:
                return "jmp", (rm(64),), "FF/4"
            if sub == 7:
                raise DecodeError(offset, "invalid ff /7 encoding")
            return None
        return None

    def _opaque(self, op, two_byte, rex, modrm, imm, end, is_rel):
        if two_byte:
            if 0x40 <= op <= 0x4F:
                name = f"cmov{CONDITION_CODES[op - 0x40]}"
            elif 0x90 <= op <= 0x9F:
                name = f"set{CONDITION_CODES[op - 0x90]}"
            elif 0x80 <= op <= 0x8F:
                name = JCC[op - 0x80]
            elif 0xC8 <= op <= 0xCF:
                name = "bswap"
            else:
                name = OPAQUE_TWO_BYTE_NAMES.get(op, f"op_0f{op:02x}")
        elif op < 0x40:
            name = ALU_OPS[op >> 3]
        elif 0x90 <= op <= 0x97:
            name = "xchg"
        elif 0xB0 <= op <= 0xB7:
            name = "mov"
        elif 0x70 <= op <= 0x7F:
            name = JCC[op - 0x70]
        elif op == 0xF7:
            name = ("test", "test", "not", "neg", "mul", "imul", "div", "idiv")[modrm.reg & 7]
        elif op == 0xFF:
            name = ("inc", "dec", "call", "callf", "jmp", "jmpf", "push", "invalid")[modrm.reg & 7]
        elif op in (0xC1, 0xD1):
            name = "rotate"
        elif op in (0xE8, 0xE9, 0xEB):
            name = {0xE8: "call", 0xE9: "jmp", 0xEB: "jmp"}[op]
        elif op in (0x80, 0x81, 0x83):
            name = ALU_OPS[modrm.reg & 7]
        else:
            name = OPAQUE_NAMES.get(op, f"op_{op:02x}")

        operands = []
        if modrm is not None:
            operands.append(modrm.operand(64 if rex & 8 else 32, end))
        if is_rel:
            operands.append(Rel((end + imm) & mask(64)))
        return name, tuple(operands), "opaque"


def _rex(w: int, r: int, x: int, b: int) -> bytes:
    value = 0x40 | (w << 3) | (r << 2) | (x << 1) | b
    return bytes([value]) if value != 0x40 else b""


def _modrm_bytes(reg_field: int, rm: Reg | Mem) -> tuple[int, int, bytes, int | None]:
    """Return (rex.x, rex.b, modrm/sib/disp bytes, rip displacement offset)."""
    if isinstance(rm, Reg):
        n = REGISTER_NUMBER[rm.name]
        return 0, n >> 3, bytes([0xC0 | ((reg_field & 7) << 3) | (n & 7)]), None
    if rm.rip_relative:
        return 0, 0, bytes([((reg_field & 7) << 3) | 5]) + b"\x00\x00\x00\x00", 1

    disp = to_signed(rm.disp, 64)
    if not fits_signed(disp, 32):
        raise EncodeError(f"Displacement {rm.disp:#x} does not fit in 32 bits")
    if rm.index == "rsp":
        raise EncodeError("rsp cannot be used as an index register")
    try:
        ss = {1: 0, 2: 1, 4: 2, 8: 3}[rm.scale]
    except KeyError:
        raise EncodeError(f"Invalid scale {rm.scale}") from None

    if rm.base is None:
        idx = REGISTER_NUMBER[rm.index] if rm.index else 4
        body = bytes([((reg_field & 7) << 3) | 4, (ss << 6) | ((idx & 7) << 3) | 5])
        return (idx >> 3) if rm.index else 0, 0, body + struct.pack("<i", disp), None

    bn = REGISTER_NUMBER[rm.base]
    if disp == 0 and bn & 7 != 5:
        mod, dbytes = 0, b""
    elif fits_signed(disp, 8):
        mod, dbytes = 1, struct.pack("<b", disp)
    else:
        mod, dbytes = 2, struct.pack("<i", disp)

    if rm.index is not None or bn & 7 == 4:
        idx = REGISTER_NUMBER[rm.index] if rm.index else 4
        body = bytes([(mod << 6) | ((reg_field & 7) << 3) | 4, (ss << 6) | ((idx & 7) << 3) | (bn & 7)])
        return (idx >> 3) if rm.index else 0, bn >> 3, body + dbytes, None
    return 0, bn >> 3, bytes([(mod << 6) | ((reg_field & 7) << 3) | (bn & 7)]) + dbytes, None


def _width_of(op) -> int:
    return op.width if isinstance(op, (Reg, Mem)) else 64


class X86Encoder:
    """Raw encoding collaborator: instructions -> bytes."""

    arch = ARCH

    def encode_one(self, ins: Instruction) -> bytes:
        """
        Emit ``ins`` at its current address.

        Raises:
            EncodeError: If a PC-relative field does not fit its encoding
        """
        if not ins.raw:
            ins = self.materialize(ins.mnemonic, ins.operands, address=ins.address)
        if ins.reloc is None:
            return ins.raw
        if ins.reloc.kind == "rel":
            target = ins.branch_target
        else:
            target = next(op.target for op in ins.operands if isinstance(op, Mem) and op.rip_relative)
        value = to_signed(target - ins.end, 64)
        if not fits_signed(value, ins.reloc.size * 8):
            raise EncodeError(
                f"{ins} at {ins.address:#x}: displacement {value} does not fit in {ins.reloc.size} byte(s)"
            )
        raw = bytearray(ins.raw)
        raw[ins.reloc.offset:ins.reloc.offset + ins.reloc.size] = value.to_bytes(ins.reloc.size, "little", signed=True)
        return bytes(raw)

    def displacement_fits(self, ins: Instruction, target: int, address: int) -> bool:
        if ins.reloc is None:
            return True
        value = to_signed(target - (address + ins.length), 64)
        return fits_signed(value, ins.reloc.size * 8)

    def widen(self, ins: Instruction) -> Instruction:
        """Return the rel32 form of a short branch."""
        if ins.form == "EB":
            raw, form = bytes([0xE9, 0, 0, 0, 0]), "E9"
        elif ins.form == "70+cc":
            cc = JCC.index(ins.mnemonic)
            raw, form = bytes([0x0F, 0x80 + cc, 0, 0, 0, 0]), "0F80+cc"
        else:
            raise EncodeError(f"{ins} at {ins.address:#x} has no wider encoding")
        return replace(ins, raw=raw, form=form, length=len(raw), reloc=Reloc(len(raw) - 4, 4, "rel"))

    def materialize(self, mnemonic: str, operands, address: int = 0) -> Instruction:
        """
        Build a fresh instruction (canonical encoding) from mnemonic and operands.

        Raises:
            EncodeError: If the combination is not encodable
        """
        mnemonic = JCC_ALIASES.get(mnemonic, mnemonic)
        if mnemonic == "sal":
            mnemonic = "shl"
        raw, form, operands, reloc = self._build(mnemonic, tuple(operands))
        return Instruction(
            arch=ARCH,
            mnemonic=mnemonic,
            operands=operands,
            length=len(raw),
            address=address,
            form=form,
            raw=raw,
            reloc=reloc,
        )

    def _rm_form(self, opcode: bytes, reg_field: int, rm, width: int, imm: bytes = b""):
        x, b, body, rip = _modrm_bytes(reg_field, rm)
        prefix = _rex(1 if width == 64 else 0, reg_field >> 3, x, b)
        raw = prefix + opcode + body + imm
        reloc = Reloc(len(prefix) + len(opcode) + rip, 4, "rip") if rip is not None else None
        return raw, reloc

    def _build(self, mnemonic: str, ops: tuple):
        if mnemonic in FIXED_ENCODINGS and not ops:
            return FIXED_ENCODINGS[mnemonic], FIXED_ENCODINGS[mnemonic].hex().upper(), ops, None

        if mnemonic == "nop":
            if not ops:
                return bytes([0x90]), "90", ops, None
            (rm,) = ops
            raw, reloc = self._rm_form(b"\x0f\x1f", 0, rm, _width_of(rm))
            return raw, "0F1F", ops, reloc

        if mnemonic == "mov":
            return self._build_mov(ops)

        if mnemonic == "lea":
            dst, src = ops
            if not isinstance(dst, Reg) or not isinstance(src, Mem):
                raise EncodeError("lea needs a register destination and a memory source")
            src = replace(src, width=dst.width)
            raw, reloc = self._rm_form(b"\x8d", REGISTER_NUMBER[dst.name], src, dst.width)
            return raw, "8D", (dst, src), reloc

        if mnemonic in ALU_OPS:
            n = ALU_OPS.index(mnemonic)
            dst, src = ops
            if isinstance(src, Reg) and isinstance(dst, (Reg, Mem)):
                self._check_widths(dst, src)
                raw, reloc = self._rm_form(bytes([0x01 + 8 * n]), REGISTER_NUMBER[src.name], dst, src.width)
                return raw, f"{0x01 + 8 * n:02X}", ops, reloc
            if isinstance(dst, Reg) and isinstance(src, Mem):
                self._check_widths(dst, src)
                raw, reloc = self._rm_form(bytes([0x03 + 8 * n]), REGISTER_NUMBER[dst.name], src, dst.width)
                return raw, f"{0x03 + 8 * n:02X}", ops, reloc
            if isinstance(src, Imm) and isinstance(dst, (Reg, Mem)):
                value = to_signed(src.value, dst.width)
                if fits_signed(value, 8):
                    raw, reloc = self._rm_form(b"\x83", n, dst, dst.width, struct.pack("<b", value))
                    return raw, "83", (dst, Imm(value)), reloc
                if fits_signed(value, 32):
                    raw, reloc = self._rm_form(b"\x81", n, dst, dst.width, struct.pack("<i", value))
                    return raw, "81", (dst, Imm(value)), reloc
                raise EncodeError(f"{mnemonic}: immediate {src.value:#x} does not fit in 32 bits")
            raise EncodeError(f"Unsupported operands for {mnemonic}")

        if mnemonic == "test":
            dst, src = ops
            if isinstance(src, Reg):
                self._check_widths(dst, src)
                raw, reloc = self._rm_form(b"\x85", REGISTER_NUMBER[src.name], dst, src.width)
                return raw, "85", ops, reloc
            if isinstance(src, Imm):
                value = to_signed(src.value, dst.width)
                if not fits_signed(value, 32):
                    raise EncodeError(f"test: immediate {src.value:#x} does not fit in 32 bits")
                raw, reloc = self._rm_form(b"\xf7", 0, dst, dst.width, struct.pack("<i", value))
                return raw, "F7/0", (dst, Imm(value)), reloc
            raise EncodeError("Unsupported operands for test")

        if mnemonic in ("inc", "dec", "not", "neg"):
            (dst,) = ops
            opcode, sub, form = {
                "inc": (b"\xff", 0, "FF/0"), "dec": (b"\xff", 1, "FF/1"),
                "not": (b"\xf7", 2, "F7/2"), "neg": (b"\xf7", 3, "F7/3"),
            }[mnemonic]
            raw, reloc = self._rm_form(opcode, sub, dst, _width_of(dst))
            return raw, form, ops, reloc

        if mnemonic == "imul":
            if len(ops) == 2:
                dst, src = ops
                self._check_widths(dst, src)
                raw, reloc = self._rm_form(b"\x0f\xaf", REGISTER_NUMBER[dst.name], src, dst.width)
                return raw, "0FAF", ops, reloc
            dst, src, imm = ops
            self._check_widths(dst, src)
            value = to_signed(imm.value, dst.width)
            if fits_signed(value, 8):
                raw, reloc = self._rm_form(b"\x6b", REGISTER_NUMBER[dst.name], src, dst.width, struct.pack("<b", value))
                return raw, "6B", (dst, src, Imm(value)), reloc
            if fits_signed(value, 32):
                raw, reloc = self._rm_form(b"\x69", REGISTER_NUMBER[dst.name], src, dst.width, struct.pack("<i", value))
                return raw, "69", (dst, src, Imm(value)), reloc
            raise EncodeError(f"imul: immediate {imm.value:#x} does not fit in 32 bits")

        if mnemonic in SHIFT_CODES:
            dst, count = ops
            if not isinstance(count, Imm):
                raise EncodeError(f"{mnemonic} only supports immediate counts")
            value = count.value & 0xFF
            sub = SHIFT_CODES[mnemonic]
            if value == 1:
                raw, reloc = self._rm_form(b"\xd1", sub, dst, _width_of(dst))
                return raw, "D1", (dst, Imm(1)), reloc
            raw, reloc = self._rm_form(b"\xc1", sub, dst, _width_of(dst), bytes([value]))
            return raw, "C1", (dst, Imm(value)), reloc

        if mnemonic in ("push", "pop"):
            (reg,) = ops
            if not isinstance(reg, Reg):
                raise EncodeError(f"{mnemonic} only supports register operands")
            n = REGISTER_NUMBER[reg.name]
            base = 0x50 if mnemonic == "push" else 0x58
            raw = _rex(0, 0, 0, n >> 3) + bytes([base + (n & 7)])
            return raw, f"{base:02X}+r", (Reg(reg.name, 64),), None

        if mnemonic in ("jmp", "call") or mnemonic in JCC:
            (target,) = ops
            if not isinstance(target, Rel):
                raise EncodeError(f"Indirect {mnemonic} cannot be synthesized")
            if mnemonic == "call":
                raw, form = bytes([0xE8, 0, 0, 0, 0]), "E8"
            elif mnemonic == "jmp":
                raw, form = bytes([0xEB, 0]), "EB"
            else:
                raw, form = bytes([0x70 + JCC.index(mnemonic), 0]), "70+cc"
            return raw, form, ops, Reloc(len(raw) - (4 if form == "E8" else 1), 4 if form == "E8" else 1, "rel")

        if mnemonic == "int":
            (vector,) = ops
            return bytes([0xCD, vector.value & 0xFF]), "CD", (Imm(vector.value & 0xFF),), None

        if mnemonic in ("in", "out"):
            if not ops:
                opcode = 0xED if mnemonic == "in" else 0xEF
                return bytes([opcode]), f"{opcode:02X}", ops, None
            (port,) = ops
            opcode = 0xE5 if mnemonic == "in" else 0xE7
            return bytes([opcode, port.value & 0xFF]), f"{opcode:02X}", (Imm(port.value & 0xFF),), None

        raise EncodeError(f"Unsupported instruction: {mnemonic} {', '.join(str(o) for o in ops)}")

    def _build_mov(self, ops: tuple):
        dst, src = ops
        if isinstance(src, Imm):
            if isinstance(dst, Reg):
                n = REGISTER_NUMBER[dst.name]
                if dst.width == 64:
                    value = to_signed(src.value, 64)
                    if fits_signed(value, 32):
                        raw, reloc = self._rm_form(b"\xc7", 0, dst, 64, struct.pack("<i", value))
                        return raw, "C7", (dst, Imm(value)), reloc
                    value = src.value & mask(64)
                    raw = _rex(1, 0, 0, n >> 3) + bytes([0xB8 + (n & 7)]) + struct.pack("<Q", value)
                    return raw, "B8+r", (dst, Imm(value)), None
                value = src.value & mask(32)
                raw = _rex(0, 0, 0, n >> 3) + bytes([0xB8 + (n & 7)]) + struct.pack("<I", value)
                return raw, "B8+r", (dst, Imm(value)), None
            value = to_signed(src.value, dst.width)
            if not fits_signed(value, 32):
                raise EncodeError(f"mov: immediate {src.value:#x} does not fit in 32 bits")
            raw, reloc = self._rm_form(b"\xc7", 0, dst, dst.width, struct.pack("<i", value))
            return raw, "C7", (dst, Imm(value)), reloc
        if isinstance(src, Reg) and isinstance(dst, (Reg, Mem)):
            self._check_widths(dst, src)
            raw, reloc = self._rm_form(b"\x89", REGISTER_NUMBER[src.name], dst, src.width)
            return raw, "89", ops, reloc
        if isinstance(dst, Reg) and isinstance(src, Mem):
            self._check_widths(dst, src)
            raw, reloc = self._rm_form(b"\x8b", REGISTER_NUMBER[dst.name], src, dst.width)
            return raw, "8B", ops, reloc
        raise EncodeError("Unsupported operands for mov")

    @staticmethod
    def _check_widths(a, b) -> None:
        if _width_of(a) != _width_of(b):
            raise EncodeError(f"Operand size mismatch: {a} vs {b}")
