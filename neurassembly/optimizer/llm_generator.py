"""
Learned rewrite proposals.

Defines the proposer contract the candidate generator talks to and the
default proposer backed by a Gemini model. Proposals are plain assembly text
with a confidence; parsing and verification happen downstream.
"""

import logging
from dataclasses import dataclass
from textwrap import dedent
from typing import Any, Protocol

from google.genai import types
from pydantic import ValidationError

from neurassembly import const
from neurassembly.errors import InferenceUnavailable
from neurassembly.models import ProposalResponse

logger = logging.getLogger("neurassembly.optimizer.llm")


@dataclass(frozen=True)
class ProposalContext:
    """
    What a proposer sees of one window.

    Attributes:
        arch: Architecture name
        instructions: Window body in Intel syntax
        live_registers: Registers that must hold the same values afterwards
        live_flags: Flags that must hold the same values afterwards
        start_address: Address of the first instruction
    """

    arch: str
    instructions: tuple[str, ...]
    live_registers: tuple[str, ...]
    live_flags: tuple[str, ...]
    start_address: int


@dataclass(frozen=True)
class Proposal:
    assembly: tuple[str, ...]
    confidence: float


class LearnedProposer(Protocol):
    """Anything that turns a window into ranked rewrite proposals."""

    name: str

    def infer(self, context: ProposalContext) -> list[Proposal]:
        """
        Propose rewrites for a window.

        Raises:
            InferenceUnavailable: If no proposal can be produced right now
        """
        ...


class GeminiProposer:
    """
    Proposes rewrites with a Gemini model.

    The model answers with JSON validated against ``ProposalResponse``.
    """

    name = "gemini"

    def __init__(self, llm_client: Any, model: str = const.GEMINI_MODEL, max_proposals: int = 3) -> None:
        """
        Initialize the proposer.

        Args:
            llm_client: Google GenAI client
            model: Model id to query
            max_proposals: Upper bound on proposals returned per window
        """
        self.llm_client = llm_client
        self.model = model
        self.max_proposals = max_proposals

    def infer(self, context: ProposalContext) -> list[Proposal]:
        if not self.llm_client:
            raise InferenceUnavailable("LLM client not available for rewrite proposals")

        prompt = self._build_prompt(context)
        try:
            response = self.llm_client.models.generate_content(
                model=self.model,
                contents=prompt,
                config=types.GenerateContentConfig(
                    temperature=0.2,
                    max_output_tokens=1024,
                    response_mime_type="application/json",
                    response_schema=ProposalResponse,
                    system_instruction=dedent("""
                        You are a superoptimizer for x86-64 machine code.

                        RULES:
                        1. Propose replacements for the WHOLE window that compute exactly the same
                           values in every live register and live flag, and the same memory contents
                        2. Registers and flags that are not listed as live may end with any value
                        3. Use Intel syntax, 64-bit mode, one instruction per entry, no labels
                        4. Never use branches, calls, returns, system calls, I/O or privileged instructions
                        5. Only propose rewrites that are cheaper (fewer cycles or fewer bytes)
                        6. An empty instruction list deletes the window
                    """).strip(),
                ),
            )
        except Exception as e:
            raise InferenceUnavailable(f"Gemini request failed: {e}") from e

        parsed = getattr(response, "parsed", None)
        if parsed is None:
            if not response.text:
                raise InferenceUnavailable("Gemini returned an empty response")
            try:
                parsed = ProposalResponse.model_validate_json(response.text)
            except ValidationError as e:
                raise InferenceUnavailable(f"Gemini response did not match the schema: {e}") from e

        proposals = [
            Proposal(assembly=tuple(rewrite.assembly), confidence=rewrite.confidence)
            for rewrite in parsed.rewrites[: self.max_proposals]
        ]
        logger.debug(f"Gemini proposed {len(proposals)} rewrites at {context.start_address:#x}")
        return proposals

    def _build_prompt(self, context: ProposalContext) -> str:
        live_regs = ", ".join(context.live_registers) or "none"
        live_flags = ", ".join(context.live_flags) or "none"
        return "\n".join([
            f"REWRITE TASK ({context.arch}):",
            "",
            f"Window at {context.start_address:#x}:",
            *context.instructions,
            "",
            f"Live registers after the window: {live_regs}",
            f"Live flags after the window: {live_flags}",
        ])
