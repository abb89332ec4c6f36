"""
Client profile models used to personalize plan retrieval.
"""
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator


class Dependent(BaseModel):
    """A person covered under the client's plan."""
    model_config = ConfigDict(frozen=True)

    age: Optional[int] = None
    relationship: Optional[str] = None

    @field_validator('age')
    @classmethod
    def validate_age(cls, v):
        """Ensure ages are non-negative."""
        if v is not None and v < 0:
            raise ValueError("Age cannot be negative")
        return v


class ClientProfile(BaseModel):
    """
    Snapshot of the requester's attributes relevant to plan matching.

    Every field is optional: the dialogue layer may only have collected
    part of the profile when a search is triggered.
    """
    model_config = ConfigDict(frozen=True)

    age: Optional[int] = None
    city: Optional[str] = None
    state: Optional[str] = None
    budget: Optional[float] = None  # monthly
    dependents: List[Dependent] = Field(default_factory=list)
    pre_existing_conditions: List[str] = Field(default_factory=list)
    preferences: List[str] = Field(default_factory=list)

    @field_validator('age', 'budget')
    @classmethod
    def validate_non_negative(cls, v):
        """Ensure age and budget are non-negative."""
        if v is not None and v < 0:
            raise ValueError("Value cannot be negative")
        return v

    @field_validator('pre_existing_conditions', 'preferences')
    @classmethod
    def strip_items(cls, v):
        """Drop blank entries and surrounding whitespace."""
        return [item.strip() for item in v if item and item.strip()]

    @property
    def location(self) -> str:
        return ", ".join(part for part in (self.city, self.state) if part)

    @property
    def has_children(self) -> bool:
        return any(d.age is not None and d.age < 18 for d in self.dependents)
