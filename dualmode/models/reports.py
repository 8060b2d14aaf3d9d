"""Structured reports handed to the reporting layer.

Validation and debug results are returned as values instead of printed, so
whatever renders scenario output decides how to show them.
"""

from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from dualmode.models.test_mode import TestMode


class ContextValidationReport(BaseModel):
    mode: TestMode
    context_id: str
    valid: bool
    record_counts: Dict[str, int] = Field(default_factory=dict)
    issues: List[str] = Field(default_factory=list)


class ElementFailure(BaseModel):
    element_name: str
    selector: str
    reason: str


class ElementValidationReport(BaseModel):
    mode: TestMode
    passed: bool
    elements_expected: int
    elements_found: int
    mode_specific_elements: int
    selectors_attempted: List[str] = Field(default_factory=list)
    selectors_successful: List[str] = Field(default_factory=list)
    failures: List[ElementFailure] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)

    @property
    def failing_selectors(self) -> List[str]:
        return [f.selector for f in self.failures]


class AttemptView(BaseModel):
    mode: TestMode
    failure: str
    reason: str


class ContextReport(BaseModel):
    manager_id: str
    run_id: str
    state: str
    requested: Optional[TestMode] = None
    mode: Optional[TestMode] = None
    context_id: Optional[str] = None
    record_counts: Dict[str, int] = Field(default_factory=dict)
    attempts: List[AttemptView] = Field(default_factory=list)
    validation: Optional[ContextValidationReport] = None
    cleanup_warnings: List[str] = Field(default_factory=list)


__all__ = [
    "ContextValidationReport",
    "ElementFailure",
    "ElementValidationReport",
    "AttemptView",
    "ContextReport",
]
