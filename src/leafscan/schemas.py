"""Pydantic payloads handed to the result presenter."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class _Outcome(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)


class LabelOutcome(_Outcome):
    """A firm prediction."""

    label: str
    confidence_percent: int = Field(alias="confidencePercent", ge=0, le=100)

    @property
    def message(self) -> str:
        return f"{self.label} ({self.confidence_percent}%)"


class LowConfidenceOutcome(_Outcome):
    """The top prediction is below the confidence threshold."""

    low_confidence: Literal[True] = Field(default=True, alias="lowConfidence")

    @property
    def message(self) -> str:
        return "Low confidence. Try another image."


class ErrorOutcome(_Outcome):
    """A per-request pipeline failure, with its cause for diagnostics."""

    error: str

    @property
    def message(self) -> str:
        return self.error


Outcome = LabelOutcome | LowConfidenceOutcome | ErrorOutcome
