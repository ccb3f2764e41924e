"""
Instruction and instruction-sequence data model.

Instructions are immutable once decoded. A sequence owns an ordered tuple of
instructions; branch targets inside the sequence are tracked by instruction
uid (an arena index) so addresses can be recomputed after every edit without
dangling targets.
"""

from dataclasses import dataclass, field
from enum import Enum

from neurassembly.errors import IntegrityViolation
from neurassembly.isa.operands import ALL_FLAGS, ALL_REGISTERS, Operand, Rel

# Target uid meaning "the address just past the last instruction"
END_UID = -1


class ControlKind(Enum):
    NONE = "none"
    JUMP = "jump"
    BRANCH = "branch"
    CALL = "call"
    RETURN = "return"
    INDIRECT = "indirect"


class Hazard(Enum):
    """Reasons an instruction can never take part in a rewrite."""

    SYSCALL = "syscall"
    IO = "io"
    PRIVILEGED = "privileged"
    SELF_MODIFYING = "self_modifying"
    CODE_REFERENCE = "code_reference"
    UNBOUNDED = "unbounded"


@dataclass(frozen=True)
class Effects:
    """Semantic effect descriptor of one instruction."""

    reads: frozenset[str] = frozenset()
    writes: frozenset[str] = frozenset()
    flags_read: frozenset[str] = frozenset()
    flags_written: frozenset[str] = frozenset()
    flags_undefined: frozenset[str] = frozenset()
    mem_read: bool = False
    mem_write: bool = False
    control: ControlKind = ControlKind.NONE
    hazard: Hazard | None = None
    unknown: bool = False

    @property
    def kills(self) -> frozenset[str]:
        """Registers definitely overwritten (empty when effects are not modeled)."""
        if self.unknown or self.hazard is not None:
            return frozenset()
        return self.writes

    @property
    def flags_killed(self) -> frozenset[str]:
        if self.unknown or self.hazard is not None:
            return frozenset()
        return self.flags_written | self.flags_undefined

    @property
    def is_barrier(self) -> bool:
        return (
            self.unknown
            or self.hazard is not None
            or self.control in (ControlKind.CALL, ControlKind.INDIRECT)
        )


UNKNOWN_EFFECTS = Effects(
    reads=ALL_REGISTERS,
    writes=ALL_REGISTERS,
    flags_read=ALL_FLAGS,
    flags_written=ALL_FLAGS,
    mem_read=True,
    mem_write=True,
    unknown=True,
)


@dataclass(frozen=True)
class Reloc:
    """Location of a PC-relative field inside ``Instruction.raw``."""

    offset: int
    size: int
    kind: str  # "rel" for branch displacements, "rip" for memory operands


@dataclass(frozen=True)
class Instruction:
    """
    One decoded machine instruction.

    Attributes:
        arch: Architecture name the instruction belongs to
        mnemonic: Canonical lower-case mnemonic
        operands: Ordered operand tuple
        length: Encoded length in bytes
        address: Address of the first byte
        form: Encoding form chosen by the architecture encoder
        effects: Semantic effect descriptor (None before annotation)
        uid: Arena index, stable across edits of the owning sequence
        target_uid: uid of the in-sequence branch target (END_UID for the end)
        raw: Encoded bytes as last laid out
        reloc: PC-relative field inside ``raw``, if any
    """

    arch: str
    mnemonic: str
    operands: tuple[Operand, ...]
    length: int
    address: int = 0
    form: str = ""
    effects: Effects | None = field(default=None, compare=False)
    uid: int = field(default=0, compare=False)
    target_uid: int | None = field(default=None, compare=False)
    raw: bytes = field(default=b"", compare=False, repr=False)
    reloc: Reloc | None = field(default=None, compare=False, repr=False)

    @property
    def end(self) -> int:
        return self.address + self.length

    @property
    def branch_target(self) -> int | None:
        for op in self.operands:
            if isinstance(op, Rel):
                return op.target
        return None

    @property
    def key(self) -> tuple:
        """Location-independent identity used for de-duplication and hashing."""
        return (self.mnemonic, self.operands, self.form)

    def __str__(self) -> str:
        if not self.operands:
            return self.mnemonic
        return f"{self.mnemonic} {', '.join(str(op) for op in self.operands)}"


@dataclass(frozen=True)
class EntrySignature:
    """Registers holding meaningful values on entry."""

    registers: frozenset[str] = ALL_REGISTERS


@dataclass(frozen=True)
class ExitSignature:
    """
    Values observable after the sequence exits.

    Attributes:
        registers: Registers live when control leaves by falling through the
            end or jumping to an external address
        flags: Flags live at those exits
        memory: Whether memory contents are observable (compared on exit)
        return_flags_live: Whether flags survive a ``ret``
    """

    registers: frozenset[str] = ALL_REGISTERS
    flags: frozenset[str] = ALL_FLAGS
    memory: bool = True
    return_flags_live: bool = False


@dataclass(frozen=True)
class InstructionSequence:
    """A basic block or straight-line function body."""

    arch: str
    base_address: int
    instructions: tuple[Instruction, ...]
    entry: EntrySignature = EntrySignature()
    exit: ExitSignature = ExitSignature()

    def __len__(self) -> int:
        return len(self.instructions)

    def __iter__(self):
        return iter(self.instructions)

    def __getitem__(self, index):
        return self.instructions[index]

    @property
    def end_address(self) -> int:
        if not self.instructions:
            return self.base_address
        return self.instructions[-1].end

    @property
    def size(self) -> int:
        return self.end_address - self.base_address

    def contains_address(self, address: int) -> bool:
        return self.base_address <= address < self.end_address

    def index_of(self, uid: int) -> int | None:
        for i, ins in enumerate(self.instructions):
            if ins.uid == uid:
                return i
        return None

    def uid_map(self) -> dict[int, int]:
        return {ins.uid: i for i, ins in enumerate(self.instructions)}

    def address_of(self, uid: int) -> int:
        if uid == END_UID:
            return self.end_address
        index = self.index_of(uid)
        if index is None:
            raise IntegrityViolation(f"Branch target uid {uid} is not part of the sequence")
        return self.instructions[index].address

    def branch_target_indices(self) -> set[int]:
        """Indices of instructions that some in-sequence branch jumps to."""
        uids = self.uid_map()
        targets = set()
        for ins in self.instructions:
            if ins.target_uid is not None and ins.target_uid != END_UID:
                index = uids.get(ins.target_uid)
                if index is not None:
                    targets.add(index)
        return targets

    def validate(self) -> None:
        """
        Check addressing and branch-target invariants.

        Raises:
            IntegrityViolation: If addresses have gaps/overlaps or a branch
                target does not resolve
        """
        expected = self.base_address
        uids: set[int] = set()
        for i, ins in enumerate(self.instructions):
            if ins.address != expected:
                raise IntegrityViolation(
                    f"Instruction {i} ({ins}) at {ins.address:#x}, expected {expected:#x}"
                )
            if ins.length <= 0:
                raise IntegrityViolation(f"Instruction {i} ({ins}) has length {ins.length}")
            if ins.uid in uids:
                raise IntegrityViolation(f"Duplicate instruction uid {ins.uid}")
            uids.add(ins.uid)
            expected = ins.end

        for ins in self.instructions:
            target = ins.branch_target
            if target is None:
                continue
            if ins.target_uid is None:
                if self.base_address <= target <= self.end_address:
                    raise IntegrityViolation(
                        f"{ins} at {ins.address:#x} targets its own sequence but is marked external"
                    )
                continue
            if ins.target_uid != END_UID and ins.target_uid not in uids:
                raise IntegrityViolation(f"{ins} at {ins.address:#x} targets a removed instruction")
            if self.address_of(ins.target_uid) != target:
                raise IntegrityViolation(
                    f"{ins} at {ins.address:#x} points to {target:#x}, "
                    f"target instruction is at {self.address_of(ins.target_uid):#x}"
                )
