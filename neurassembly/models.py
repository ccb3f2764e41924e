from pydantic import BaseModel, Field
from typing import List


class ProposedRewrite(BaseModel):
    assembly: List[str] = Field(description="Replacement instructions in Intel syntax, one per entry, no labels. Empty to delete the window.")
    confidence: float = Field(ge=0.0, le=1.0, description="Estimated probability that the rewrite is equivalent and cheaper.")
    rationale: str = Field(default="", description="One short sentence on why the rewrite is equivalent.")


class ProposalResponse(BaseModel):
    rewrites: List[ProposedRewrite] = Field(description="Candidate rewrites of the whole window, best first.")
