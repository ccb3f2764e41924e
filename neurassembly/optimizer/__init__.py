"""
Superoptimization engine for neurassembly.

Rewrites windows of machine instructions into cheaper equivalents. Every
proposal is verified before it is committed, and committed edits are
re-verified against the original sequence as a whole.

Key Components:
- OptimizationSession: Main orchestrator for the optimization workflow
- WindowAnalyzer: Identifies rewrite windows
- CandidateGenerator: Merges rule-based and learned proposals
- EquivalenceVerifier: Safety, symbolic proof and sampled testing
- GlobalVerifier: Whole-sequence differential re-verification
- CostModel: Cycle and size estimates, scoring and metrics
- CheckpointManager: Checkpoints with rollback capability
"""

from neurassembly.optimizer.config import OptimizerConfig
from neurassembly.optimizer.core import FinalResult, OptimizationSession, SessionState
from neurassembly.optimizer.safety import SafetyConfig, SafetyEnforcer
from neurassembly.optimizer.service import SessionHandle, await_result, cancel, start_session

__all__ = [
    "FinalResult",
    "OptimizationSession",
    "OptimizerConfig",
    "SafetyConfig",
    "SafetyEnforcer",
    "SessionHandle",
    "SessionState",
    "await_result",
    "cancel",
    "start_session",
]
