"""
Configuration file schemas.

Pydantic models for the YAML documents that override the built-in
severity policies and runbooks.
"""

from typing import Dict, List

from pydantic import BaseModel, Field, field_validator, model_validator


class SeverityPolicyModel(BaseModel):
    """One severity level as written in the severity file."""
    response_minutes: float = Field(..., gt=0)
    escalation_minutes: float = Field(..., gt=0)
    update_interval_minutes: float = Field(..., gt=0)
    stakeholders: List[str] = Field(default_factory=list)
    description: str = ""

    @model_validator(mode="after")
    def check_escalation_after_response(self) -> "SeverityPolicyModel":
        if self.escalation_minutes < self.response_minutes:
            raise ValueError("escalation_minutes must not be shorter than response_minutes")
        return self


class SeverityFileModel(BaseModel):
    """Top-level severity file: {severities: {SEV1: {...}, ...}}."""
    severities: Dict[str, SeverityPolicyModel]

    @field_validator("severities")
    @classmethod
    def normalize_levels(cls, value: Dict[str, SeverityPolicyModel]) -> Dict[str, SeverityPolicyModel]:
        return {level.strip().upper(): policy for level, policy in value.items()}


class RunbookModel(BaseModel):
    """One runbook as written in the runbook file."""
    title: str = ""
    steps: List[str] = Field(..., min_length=1)

    @field_validator("steps")
    @classmethod
    def no_blank_steps(cls, value: List[str]) -> List[str]:
        for idx, step in enumerate(value, start=1):
            if not step.strip():
                raise ValueError(f"step {idx} is blank")
        return [step.strip() for step in value]


class RunbookFileModel(BaseModel):
    """Top-level runbook file: {runbooks: {category: {...}, ...}}."""
    include_defaults: bool = True
    runbooks: Dict[str, RunbookModel] = Field(default_factory=dict)
