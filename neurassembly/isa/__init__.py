"""
Instruction model for neurassembly.

Decodes raw machine code into annotated instruction sequences, re-encodes
them with branch fix-ups, and provides the executable semantics and liveness
analysis the optimizer builds on.

Key Components:
- decode / encode / splice: Sequence-level codec (codec.py)
- X86Decoder / X86Encoder: Built-in x86-64 collaborator (x86.py)
- annotate: Versioned effect table (effects.py)
- Semantics: Concrete and z3 interpreters (semantics.py)
- analyze: Register and flag liveness (liveness.py)
- assemble: Intel-syntax assembler for inputs and proposals (asm.py)
"""

from neurassembly.isa.codec import decode, encode, get_architecture, materialize, relayout, splice
from neurassembly.isa.instruction import (
    END_UID,
    ControlKind,
    Effects,
    EntrySignature,
    ExitSignature,
    Hazard,
    Instruction,
    InstructionSequence,
)

__all__ = [
    "END_UID",
    "ControlKind",
    "Effects",
    "EntrySignature",
    "ExitSignature",
    "Hazard",
    "Instruction",
    "InstructionSequence",
    "decode",
    "encode",
    "get_architecture",
    "materialize",
    "relayout",
    "splice",
]
