"""
Parse result models for operator return files.
"""

from typing import Optional

from pydantic import BaseModel, Field

from tiss_claims.domain.guide import GuideOutcome


class ReturnHeader(BaseModel):
    """File-level metadata found in a return."""

    batch_number: Optional[str] = None
    protocol_number: Optional[str] = None
    operator_code: Optional[str] = None
    operator_name: Optional[str] = None
    provider_code: Optional[str] = None
    tiss_version: Optional[str] = None


class UnmatchedLine(BaseModel):
    """A record the parser could not turn into an outcome."""

    line: Optional[int] = None
    content: Optional[str] = Field(None, description="Raw record, truncated")
    reason: str


class ParseResult(BaseModel):
    """
    Accumulated result of parsing one return file.

    Malformed records never abort a parse; they land in ``unmatched_lines``.
    """

    strategy: str
    encoding: str
    header: ReturnHeader = Field(default_factory=ReturnHeader)
    guide_outcomes: list[GuideOutcome] = Field(default_factory=list)
    unmatched_lines: list[UnmatchedLine] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    @property
    def tiss_version(self) -> Optional[str]:
        return self.header.tiss_version

    def add_outcome(self, outcome: GuideOutcome) -> None:
        """Append an outcome; repeated guide numbers are kept once."""
        if any(o.guide_number == outcome.guide_number for o in self.guide_outcomes):
            self.unmatch(
                f"duplicate guide number {outcome.guide_number}",
                line=outcome.source_line,
            )
            return
        self.guide_outcomes.append(outcome)

    def unmatch(self, reason: str, line: Optional[int] = None, content: Optional[str] = None) -> None:
        if content is not None and len(content) > 200:
            content = content[:200]
        self.unmatched_lines.append(UnmatchedLine(line=line, content=content, reason=reason))
