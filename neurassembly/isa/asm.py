"""
Minimal Intel-syntax assembler and formatter.

Used to build test inputs, read ``.s`` files on the command line and parse the
instructions a learned proposer returns. Supports labels, ``;``/``#``
comments, ``qword ptr``/``dword ptr`` sizes and ``[rel 0x...]`` operands.
"""

import re
from dataclasses import replace

from neurassembly.errors import AssemblyError, EncodeError, IntegrityViolation
from neurassembly.isa.codec import decode, encode, get_architecture, next_uid
from neurassembly.isa.instruction import END_UID, Instruction, InstructionSequence
from neurassembly.isa.operands import REGISTER_ALIASES, SIZE_KEYWORDS, Imm, Mem, Reg, Rel
from neurassembly.isa.x86 import JCC, JCC_ALIASES

BRANCHES = frozenset(JCC) | {"jmp", "call"}

_LABEL = re.compile(r"^\s*([A-Za-z_.$][\w.$]*)\s*:")
_SIZE = re.compile(r"^(qword|dword)\s+(?:ptr\s+)?", re.IGNORECASE)
_SCALED = re.compile(r"^([a-z0-9]+)\s*\*\s*([1248])$|^([1248])\s*\*\s*([a-z0-9]+)$")


def _strip_comment(line: str) -> str:
    return re.split(r"[;#]", line, maxsplit=1)[0].strip()


def _number(token: str) -> int | None:
    try:
        return int(token.replace("_", ""), 0)
    except ValueError:
        return None


def _canonical_mnemonic(mnemonic: str) -> str:
    mnemonic = mnemonic.lower()
    mnemonic = JCC_ALIASES.get(mnemonic, mnemonic)
    return "shl" if mnemonic == "sal" else mnemonic


def _parse_memory(text: str, width: int | None, line: int | None) -> Mem:
    inner = text.strip()[1:-1].strip().lower()
    if inner.startswith("rel "):
        target = _number(inner[4:].strip())
        if target is None:
            raise AssemblyError(f"Invalid RIP-relative target: {text}", line)
        return Mem(width or 64, base="rip", target=target)

    base = index = None
    scale = 1
    disp = 0
    for sign, term in re.findall(r"([+-]?)\s*([^+-]+)", inner):
        term = term.strip()
        negative = sign == "-"
        scaled = _SCALED.match(term)
        if scaled:
            reg = scaled.group(1) or scaled.group(4)
            factor = int(scaled.group(2) or scaled.group(3))
            if reg not in REGISTER_ALIASES or negative or index is not None:
                raise AssemblyError(f"Invalid index term {term!r}", line)
            index, scale = REGISTER_ALIASES[reg][0], factor
        elif term in REGISTER_ALIASES:
            if negative:
                raise AssemblyError(f"Cannot subtract register {term!r}", line)
            name = REGISTER_ALIASES[term][0]
            if base is None:
                base = name
            elif index is None:
                index = name
            else:
                raise AssemblyError(f"Too many registers in {text}", line)
        else:
            value = _number(term)
            if value is None:
                raise AssemblyError(f"Invalid memory term {term!r}", line)
            disp += -value if negative else value
    return Mem(width or 64, base=base, index=index, scale=scale, disp=disp)


def parse_operand(text: str, mnemonic: str, width_hint: int | None = None, line: int | None = None):
    """Parse one operand. Returns an operand or a label name (str) for branches."""
    text = text.strip()
    lowered = text.lower()
    size = _SIZE.match(lowered)
    width = width_hint
    if size:
        width = SIZE_KEYWORDS[size.group(1)]
        lowered = lowered[size.end():].strip()
        text = text[size.end():].strip()
    if lowered.startswith("[") and lowered.endswith("]"):
        return _parse_memory(lowered, width, line)
    if lowered in REGISTER_ALIASES:
        name, reg_width = REGISTER_ALIASES[lowered]
        return Reg(name, reg_width)
    value = _number(lowered)
    if value is not None:
        return Rel(value) if mnemonic in BRANCHES else Imm(value)
    if mnemonic in BRANCHES and re.fullmatch(r"[A-Za-z_.$][\w.$]*", text):
        return text
    raise AssemblyError(f"Cannot parse operand {text!r}", line)


def parse_line(text: str, line: int | None = None):
    """
    Parse one instruction.

    Returns:
        ``(mnemonic, operands)`` where a branch operand may be a label name
    """
    parts = text.strip().split(None, 1)
    mnemonic = _canonical_mnemonic(parts[0])
    raw_operands = [p for p in parts[1].split(",")] if len(parts) > 1 else []
    reg_widths = [
        REGISTER_ALIASES[p.strip().lower()][1] for p in raw_operands if p.strip().lower() in REGISTER_ALIASES
    ]
    hint = reg_widths[0] if reg_widths else None
    operands = tuple(parse_operand(p, mnemonic, hint, line) for p in raw_operands)
    return mnemonic, operands


def parse_program(text: str) -> tuple[list[tuple[str, tuple, int]], dict[str, int]]:
    """Split assembly text into instructions and a label -> instruction index map."""
    items = []
    labels: dict[str, int] = {}
    for number, raw_line in enumerate(text.splitlines(), start=1):
        body = _strip_comment(raw_line)
        while True:
            match = _LABEL.match(body)
            if not match:
                break
            name = match.group(1)
            if name in labels:
                raise AssemblyError(f"Duplicate label {name!r}", number)
            labels[name] = len(items)
            body = body[match.end():].strip()
        if body:
            mnemonic, operands = parse_line(body, number)
            items.append((mnemonic, operands, number))
    return items, labels


def assemble(text: str, base_address: int = 0, arch: str = "x86_64") -> bytes:
    """
    Assemble Intel-syntax text at ``base_address``.

    Short branch encodings are tried first and widened where needed.

    Raises:
        AssemblyError: On syntax errors, unknown labels or unencodable instructions
    """
    encoder = get_architecture(arch).encoder
    items, labels = parse_program(text)
    instructions = []
    pending = []
    for mnemonic, operands, number in items:
        label = next((op for op in operands if isinstance(op, str)), None)
        if label is not None:
            if label not in labels:
                raise AssemblyError(f"Unknown label {label!r}", number)
            operands = tuple(Rel(0) if isinstance(op, str) else op for op in operands)
        try:
            ins = encoder.materialize(mnemonic, operands)
        except (EncodeError, ValueError, KeyError, TypeError) as e:
            raise AssemblyError(f"{mnemonic}: {e}", number) from e
        instructions.append(replace(ins, uid=next_uid()))
        pending.append(label)

    resolved = []
    for ins, label in zip(instructions, pending):
        if label is not None:
            index = labels[label]
            target_uid = instructions[index].uid if index < len(instructions) else END_UID
            ins = replace(ins, target_uid=target_uid)
        resolved.append(ins)

    seq = InstructionSequence(arch=get_architecture(arch).name, base_address=base_address, instructions=tuple(resolved))
    try:
        return encode(seq)
    except (EncodeError, IntegrityViolation) as e:
        raise AssemblyError(str(e)) from e


def assemble_sequence(text: str, base_address: int = 0, arch: str = "x86_64", **signatures) -> InstructionSequence:
    """Assemble ``text`` and decode it back into an annotated sequence."""
    return decode(assemble(text, base_address, arch), arch, base_address, **signatures)


def parse_instructions(lines, arch: str = "x86_64") -> list[Instruction]:
    """
    Materialize a list of assembly lines (no labels) into instructions.

    Raises:
        AssemblyError: If any line does not parse or encode
    """
    encoder = get_architecture(arch).encoder
    result = []
    for number, text in enumerate(lines, start=1):
        body = _strip_comment(text)
        if not body:
            continue
        mnemonic, operands = parse_line(body, number)
        if any(isinstance(op, str) for op in operands):
            raise AssemblyError("Labels are not allowed in replacements", number)
        try:
            result.append(encoder.materialize(mnemonic, operands))
        except (EncodeError, ValueError, KeyError, TypeError) as e:
            raise AssemblyError(f"{mnemonic}: {e}", number) from e
    return result


def format_instructions(instructions) -> str:
    return "\n".join(str(ins) for ins in instructions)


def format_sequence(seq: InstructionSequence) -> str:
    """Listing with addresses and raw bytes, one instruction per line."""
    lines = []
    for ins in seq:
        raw = ins.raw.hex(" ") if ins.raw else ""
        lines.append(f"{ins.address:#010x}:  {raw:<30} {ins}")
    return "\n".join(lines)
