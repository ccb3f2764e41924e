"""
Architecture registry plus sequence-level decode, encode and editing.

``decode`` turns bytes into an annotated ``InstructionSequence`` whose
in-range branch targets are resolved to instruction uids. ``splice`` replaces
a contiguous slice and ``relayout`` recomputes addresses, rewrites branch
displacements and widens short branches that no longer reach their target.
"""

import itertools
import logging
from dataclasses import dataclass, replace
from typing import Protocol

from neurassembly.errors import DecodeError, EncodeError, IntegrityViolation, UnsupportedArchitecture
from neurassembly.isa.effects import annotate
from neurassembly.isa.instruction import (
    END_UID,
    EntrySignature,
    ExitSignature,
    Instruction,
    InstructionSequence,
)
from neurassembly.isa.operands import Rel
from neurassembly.isa.x86 import X86Decoder, X86Encoder

logger = logging.getLogger("neurassembly.isa")

_uids = itertools.count(1)


def next_uid() -> int:
    return next(_uids)


class RawDecoder(Protocol):
    def decode_one(self, code: bytes, offset: int, address: int) -> Instruction:
        """
        Decode the instruction starting at ``code[offset]``.

        Raises:
            DecodeError: If the bytes are truncated or not a known instruction
        """
        ...


class RawEncoder(Protocol):
    def encode_one(self, ins: Instruction) -> bytes:
        ...

    def displacement_fits(self, ins: Instruction, target: int, address: int) -> bool:
        ...

    def widen(self, ins: Instruction) -> Instruction:
        ...

    def materialize(self, mnemonic: str, operands, address: int = 0) -> Instruction:
        ...


@dataclass(frozen=True)
class Architecture:
    name: str
    decoder: RawDecoder
    encoder: RawEncoder
    aliases: tuple[str, ...] = ()


ARCHITECTURES: dict[str, Architecture] = {}


def register_architecture(architecture: Architecture) -> None:
    ARCHITECTURES[architecture.name] = architecture
    for alias in architecture.aliases:
        ARCHITECTURES[alias] = architecture


register_architecture(Architecture("x86_64", X86Decoder(), X86Encoder(), aliases=("x86-64", "amd64")))


def get_architecture(name: str) -> Architecture:
    """
    Look up a registered architecture.

    Raises:
        UnsupportedArchitecture: If ``name`` is not registered
    """
    try:
        return ARCHITECTURES[name.lower()]
    except (KeyError, AttributeError):
        raise UnsupportedArchitecture(name) from None


def decode(
    code: bytes,
    arch: str = "x86_64",
    base_address: int = 0,
    entry: EntrySignature | None = None,
    exit: ExitSignature | None = None,
) -> InstructionSequence:
    """
    Decode a code region into an annotated instruction sequence.

    Args:
        code: Raw machine code
        arch: Architecture name
        base_address: Load address of ``code[0]``
        entry: Entry signature (all registers meaningful by default)
        exit: Exit signature (everything observable by default)

    Returns:
        InstructionSequence with effects and resolved branch targets

    Raises:
        UnsupportedArchitecture: Unknown ``arch``
        DecodeError: Invalid encoding or a branch into the middle of an instruction
    """
    architecture = get_architecture(arch)
    code = bytes(code)
    decoded = []
    offset = 0
    while offset < len(code):
        ins = architecture.decoder.decode_one(code, offset, base_address + offset)
        decoded.append(replace(ins, uid=next_uid()))
        offset += ins.length

    end = base_address + len(code)
    by_address = {ins.address: ins.uid for ins in decoded}
    instructions = []
    for ins in decoded:
        target = ins.branch_target
        target_uid = None
        if target is not None:
            if target == end:
                target_uid = END_UID
            elif base_address <= target < end:
                target_uid = by_address.get(target)
                if target_uid is None:
                    raise DecodeError(
                        ins.address - base_address,
                        f"branch target {target:#x} is inside an instruction",
                    )
        instructions.append(
            replace(ins, effects=annotate(ins, (base_address, end)), target_uid=target_uid)
        )

    seq = InstructionSequence(
        arch=architecture.name,
        base_address=base_address,
        instructions=tuple(instructions),
        entry=entry or EntrySignature(),
        exit=exit or ExitSignature(),
    )
    seq.validate()
    unknown = sum(1 for ins in instructions if ins.effects.unknown)
    logger.debug(f"Decoded {len(instructions)} instructions at {base_address:#x} ({unknown} opaque)")
    return seq


def materialize(arch: str, mnemonic: str, operands) -> Instruction:
    """Build a fresh instruction for ``arch`` from mnemonic and operands."""
    return get_architecture(arch).encoder.materialize(mnemonic, operands)


def _retarget(ins: Instruction, target: int) -> Instruction:
    operands = tuple(Rel(target) if isinstance(op, Rel) else op for op in ins.operands)
    if operands == ins.operands:
        return ins
    return replace(ins, operands=operands)


def relayout(seq: InstructionSequence) -> InstructionSequence:
    """
    Recompute addresses and branch displacements, widening short branches
    until every displacement fits.

    Raises:
        EncodeError: A branch cannot be widened far enough
        IntegrityViolation: A branch target uid no longer exists
    """
    encoder = get_architecture(seq.arch).encoder
    instructions = list(seq.instructions)
    while True:
        address = seq.base_address
        placed = []
        for ins in instructions:
            placed.append(ins if ins.address == address else replace(ins, address=address))
            address += ins.length
        end = address
        addresses = {ins.uid: ins.address for ins in placed}

        widened = False
        instructions = []
        for ins in placed:
            if ins.target_uid is not None:
                if ins.target_uid == END_UID:
                    target = end
                elif ins.target_uid in addresses:
                    target = addresses[ins.target_uid]
                else:
                    raise IntegrityViolation(f"{ins} at {ins.address:#x} targets a removed instruction")
                ins = _retarget(ins, target)
            target = ins.branch_target
            if target is not None and not encoder.displacement_fits(ins, target, ins.address):
                ins = encoder.widen(ins)
                widened = True
            instructions.append(ins)
        if not widened:
            break
        logger.debug("Widened short branches, recomputing layout")

    laid_out = replace(seq, instructions=tuple(instructions))
    laid_out.validate()
    return laid_out


def encode(seq: InstructionSequence) -> bytes:
    """
    Serialize a sequence, fixing up branch displacements.

    Raises:
        EncodeError: An instruction or displacement cannot be encoded
    """
    encoder = get_architecture(seq.arch).encoder
    laid_out = relayout(seq)
    return b"".join(encoder.encode_one(ins) for ins in laid_out)


def splice(
    seq: InstructionSequence,
    start: int,
    stop: int,
    replacement: list[Instruction] | tuple[Instruction, ...],
) -> InstructionSequence:
    """
    Replace ``seq[start:stop]`` with ``replacement`` and re-lay out the result.

    Branches that targeted the first replaced instruction are redirected to the
    first replacement instruction, or to the instruction after the window when
    the replacement is empty.

    Raises:
        IntegrityViolation: A branch targets an instruction inside the window
            other than its first one
    """
    if not 0 <= start <= stop <= len(seq):
        raise IntegrityViolation(f"Invalid splice window [{start}, {stop}) for {len(seq)} instructions")

    region = (seq.base_address, seq.end_address)
    by_address = {ins.address: ins.uid for ins in seq}
    fresh = []
    for ins in replacement:
        target_uid = None
        target = ins.branch_target
        if target is not None:
            if target == seq.end_address:
                target_uid = END_UID
            elif seq.contains_address(target):
                target_uid = by_address.get(target)
                if target_uid is None:
                    raise EncodeError(f"{ins} targets {target:#x}, inside an instruction")
        fresh.append(replace(
            ins,
            uid=next_uid(),
            effects=ins.effects or annotate(ins, region),
            target_uid=target_uid,
        ))

    removed = [ins.uid for ins in seq.instructions[start:stop]]
    if fresh:
        redirect = fresh[0].uid
    elif stop < len(seq):
        redirect = seq[stop].uid
    else:
        redirect = END_UID
    inner = set(removed[1:])

    instructions = []
    for ins in seq.instructions[:start] + tuple(fresh) + seq.instructions[stop:]:
        if removed and ins.target_uid == removed[0]:
            ins = replace(ins, target_uid=redirect)
        elif ins.target_uid in inner:
            raise IntegrityViolation(f"{ins} at {ins.address:#x} jumps into the replaced window")
        instructions.append(ins)
    return relayout(replace(seq, instructions=tuple(instructions)))
