"""Mode-specific UI element configuration.

Each logical element is registered once per page or region. Resolution
walks `mode selector -> fallback selector -> base selector`, so a lookup
always ends in a selector string.
"""

from __future__ import annotations

from typing import Awaitable, Callable, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Receives the selector that was found visible; True means the element passed
ElementPredicate = Callable[[str], Awaitable[bool]]


class ModeSpecificElementConfig(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    element_name: str
    base_selector: str
    isolated_mode_selector: Optional[str] = None
    production_mode_selector: Optional[str] = None
    fallback_selector: Optional[str] = None
    is_required: bool = False
    isolated_validation: Optional[ElementPredicate] = None
    production_validation: Optional[ElementPredicate] = None
    isolated_timeout: Optional[float] = Field(default=None, gt=0)
    production_timeout: Optional[float] = Field(default=None, gt=0)
    retries: Optional[int] = Field(default=None, ge=0)

    @field_validator("element_name", "base_selector")
    @classmethod
    def must_be_non_empty(cls, v: str) -> str:
        if not isinstance(v, str) or not v.strip():
            raise ValueError("element_name and base_selector must be non-empty")
        return v


class LookupStrategy(BaseModel):
    """Concrete lookup plan for one element in one mode."""

    model_config = ConfigDict(frozen=True)

    element_name: str
    selector: str
    alternates: Tuple[str, ...] = ()
    timeout: float
    retries: int
    registered: bool = True

    @property
    def selectors(self) -> Tuple[str, ...]:
        return (self.selector,) + self.alternates


__all__ = ["ElementPredicate", "ModeSpecificElementConfig", "LookupStrategy"]
