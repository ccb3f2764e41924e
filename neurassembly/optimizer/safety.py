"""
Safety configuration and enforcement for rewrites.

Decides which instruction windows and replacements may be verified at all.
Anything touching system calls, I/O, privileged state, self-modifying code,
control flow or instructions without modeled effects is classified
Unverifiable before any execution happens.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Sequence

from neurassembly.isa.instruction import ControlKind, Instruction
from neurassembly.isa.operands import Rel

logger = logging.getLogger("neurassembly.optimizer")


@dataclass
class SafetyConfig:
    """
    Configuration for rewrite safety.

    Attributes:
        forbidden_patterns: Regex patterns matched against the text of every
            original and replacement instruction
        allow_memory: Whether windows that read or write memory may be rewritten
    """

    forbidden_patterns: Sequence[str] = field(default_factory=lambda: [
        r"^(?:syscall|sysenter|sysret|int3?|into|iret[dq]?)\b",
        r"^(?:in|out|ins[bwd]?|outs[bwd]?)\b",
        r"^(?:hlt|cli|sti|ud2|lgdt|lidt|wrmsr|rdmsr)\b",
    ])
    allow_memory: bool = True


class SafetyEnforcer:
    """
    Enforces the rewrite safety rules.

    Every verdict a candidate can get starts here: a non-empty reason means the
    candidate is Unverifiable and is never executed.
    """

    def __init__(self, config: SafetyConfig | None = None) -> None:
        """
        Initialize the safety enforcer.

        Args:
            config: Safety configuration. Uses defaults if not provided.
        """
        self.config = config or SafetyConfig()
        self._forbidden_regex = [re.compile(pattern) for pattern in self.config.forbidden_patterns]

    def check_forbidden_patterns(self, instructions: Sequence[Instruction]) -> list[str]:
        """
        Scan instruction text for forbidden mnemonics.

        Returns:
            Instructions (as text) matching a forbidden pattern
        """
        found: list[str] = []
        for ins in instructions:
            text = str(ins)
            if any(regex.search(text) for regex in self._forbidden_regex):
                found.append(text)
        return found

    def instruction_reason(self, ins: Instruction, replacement: bool = False) -> str | None:
        effects = ins.effects
        if effects is None:
            return f"{ins}: effects not annotated"
        if effects.hazard is not None:
            return f"{ins}: {effects.hazard.value} hazard"
        if effects.unknown:
            return f"{ins}: effects not modeled"
        if effects.control != ControlKind.NONE:
            return f"{ins}: control transfer"
        if replacement and any(isinstance(op, Rel) for op in ins.operands):
            return f"{ins}: branch operand in replacement"
        if not self.config.allow_memory and (effects.mem_read or effects.mem_write):
            return f"{ins}: memory access"
        return None

    def inspect(self, original: Sequence[Instruction], replacement: Sequence[Instruction]) -> str | None:
        """
        Decide whether a rewrite may be verified.

        Args:
            original: Instructions being replaced
            replacement: Proposed instructions

        Returns:
            Reason the rewrite is Unverifiable, or None if it may be verified
        """
        forbidden = self.check_forbidden_patterns(list(original) + list(replacement))
        if forbidden:
            logger.debug(f"Forbidden instructions in rewrite: {forbidden}")
            return f"forbidden instruction: {forbidden[0]}"
        for ins in original:
            reason = self.instruction_reason(ins)
            if reason:
                return reason
        for ins in replacement:
            reason = self.instruction_reason(ins, replacement=True)
            if reason:
                return reason
        return None
