"""
Scheduling schemas - property lookups and candidate snapshots.
"""
from typing import Literal, Optional
from pydantic import BaseModel, Field


class PropertyCandidate(BaseModel):
    """Read-only projection of a property, kept only for disambiguation."""
    id: str
    code: str
    title: str
    address: str = ""


class PropertyResolution(BaseModel):
    """Outcome of a property lookup: nothing, exactly one, or several matches."""
    kind: Literal["none", "resolved", "ambiguous"] = "none"
    property_id: Optional[str] = None
    candidates: list[PropertyCandidate] = Field(default_factory=list)

    @classmethod
    def none(cls) -> "PropertyResolution":
        return cls(kind="none")

    @classmethod
    def resolved(cls, property_id: str) -> "PropertyResolution":
        return cls(kind="resolved", property_id=property_id)

    @classmethod
    def ambiguous(cls, candidates: list[PropertyCandidate]) -> "PropertyResolution":
        return cls(kind="ambiguous", candidates=candidates)


class CandidateChoice(BaseModel):
    """A reply picking one of the listed candidates, by position or by code."""
    index: Optional[int] = Field(default=None, description="Zero-based position in the list")
    code: Optional[str] = None
