"""
Checkpoint management for committed transformations.

Every commit pushes a checkpoint holding the sequence before and after the
edit. Global re-verification marks checkpoints as verified; on failure the
session rolls back to the state after the last verified checkpoint.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime

from neurassembly.isa.instruction import InstructionSequence
from neurassembly.optimizer.cost import Score

logger = logging.getLogger("neurassembly.optimizer")


@dataclass
class AppliedTransformation:
    """
    Record of one committed rewrite.

    Attributes:
        checkpoint_id: Checkpoint created by the commit
        origin: Source of the candidate (``rule:<id>`` or ``model:<name>#<rank>``)
        address: Address of the first replaced instruction at commit time
        original: Replaced instructions in Intel syntax
        replacement: New instructions in Intel syntax
        verdict: Verification verdict name
        score: Score of the rewrite
        evidence: Verifier evidence for the audit trail
        fingerprint: Content hash of the candidate
    """

    checkpoint_id: int
    origin: str
    address: int
    original: tuple[str, ...]
    replacement: tuple[str, ...]
    verdict: str
    score: Score
    evidence: dict = field(default_factory=dict)
    fingerprint: str = ""


@dataclass
class Checkpoint:
    """
    Sequence snapshots around one commit.

    Attributes:
        checkpoint_id: Identifier, increasing per session
        before: Sequence the edit was applied to
        after: Sequence produced by the edit
        transformation: The committed rewrite
        created_at: Commit time
        verified: Covered by a passing global re-verification
    """

    checkpoint_id: int
    before: InstructionSequence
    after: InstructionSequence
    transformation: AppliedTransformation
    created_at: datetime
    verified: bool = False


class CheckpointManager:
    """
    Ordered checkpoints of a session.

    Checkpoints are only appended or truncated from the end; the session is
    their sole writer.
    """

    def __init__(self, initial: InstructionSequence) -> None:
        """
        Initialize the checkpoint manager.

        Args:
            initial: Sequence the session started from
        """
        self.initial = initial
        self._checkpoints: list[Checkpoint] = []
        self._next_id = 1

    def __len__(self) -> int:
        return len(self._checkpoints)

    @property
    def checkpoints(self) -> tuple[Checkpoint, ...]:
        return tuple(self._checkpoints)

    def next_id(self) -> int:
        return self._next_id

    def push(
        self, before: InstructionSequence, after: InstructionSequence, transformation: AppliedTransformation
    ) -> Checkpoint:
        checkpoint = Checkpoint(
            checkpoint_id=self._next_id,
            before=before,
            after=after,
            transformation=transformation,
            created_at=datetime.now(),
        )
        self._next_id += 1
        self._checkpoints.append(checkpoint)
        logger.debug(f"Checkpoint {checkpoint.checkpoint_id}: {transformation.origin} at {transformation.address:#x}")
        return checkpoint

    def pending(self) -> int:
        """Checkpoints not yet covered by a passing global re-verification."""
        return sum(1 for cp in self._checkpoints if not cp.verified)

    def mark_verified(self) -> None:
        for checkpoint in self._checkpoints:
            checkpoint.verified = True

    def last_good(self) -> Checkpoint | None:
        """
        The most recent checkpoint that passed global re-verification.

        Its ``after`` is the last sequence known to match the original.
        """
        for checkpoint in reversed(self._checkpoints):
            if checkpoint.verified:
                return checkpoint
        return None

    def rollback_to_last_verified(self) -> tuple[InstructionSequence | None, list[Checkpoint]]:
        """
        Drop every unverified checkpoint.

        Returns:
            The sequence after the last verified checkpoint (or the initial
            sequence) and the discarded checkpoints, oldest first; ``(None, [])``
            when nothing is pending
        """
        first_pending = next(
            (i for i, cp in enumerate(self._checkpoints) if not cp.verified),
            len(self._checkpoints),
        )
        discarded = self._checkpoints[first_pending:]
        del self._checkpoints[first_pending:]
        if not discarded:
            return None, []
        logger.warning(
            f"Rolling back {len(discarded)} transformations to checkpoint "
            f"{self._checkpoints[-1].checkpoint_id if self._checkpoints else 0}"
        )
        return discarded[0].before, discarded

    def discard(self) -> None:
        self._checkpoints.clear()
