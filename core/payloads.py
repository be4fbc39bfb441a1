"""
Structured payloads stored in JSON columns (skills, evidence, deliverables,
workflow step specs, judge verdicts). Parsed once at the service boundary
and persisted via model_dump(), so read sites never re-validate.
"""
from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError
from pydantic import field_validator, model_validator

from services.errors import ValidationError

MAX_SKILLS = 20
MAX_LINKS = 20

DISPUTE_REASONS = ('not_delivered', 'wrong_output', 'quality_issue', 'scam', 'other')
RESOLUTIONS = ('full_refund', 'partial_refund', 'agent_paid', 'split')


def normalize_skills(skills) -> list:
    """Trim, lowercase and de-duplicate a skill list, preserving order."""
    if skills is None:
        return []
    if not isinstance(skills, (list, tuple)):
        raise ValueError("skills must be a list of strings")
    seen = []
    for s in skills:
        if not isinstance(s, str):
            raise ValueError("skills must be a list of strings")
        s = s.strip().lower()
        if s and s not in seen:
            seen.append(s)
    if len(seen) > MAX_SKILLS:
        raise ValueError(f"at most {MAX_SKILLS} skills allowed")
    return seen


class _Payload(BaseModel):
    model_config = ConfigDict(extra='forbid', str_strip_whitespace=True)


class TaskSpec(_Payload):
    title: str = Field(min_length=1, max_length=500)
    description: str = Field(min_length=1, max_length=50000)
    category: str = Field(default='general', max_length=50)
    budget_usdc: Decimal = Field(gt=0, decimal_places=6)
    required_skills: list[str] = Field(default_factory=list)
    deadline: Optional[datetime] = None
    auto_accept: bool = False
    auto_accept_min_trust: Optional[int] = Field(default=None, ge=0, le=100)
    auto_accept_max_budget: Optional[Decimal] = Field(default=None, gt=0, decimal_places=6)

    @field_validator('required_skills', mode='before')
    @classmethod
    def normalize_required_skills(cls, v):
        return normalize_skills(v)


class BidSpec(_Payload):
    amount_usdc: Decimal = Field(gt=0, decimal_places=6)
    proposal: str = Field(min_length=10, max_length=10000)
    estimated_hours: Optional[int] = Field(default=None, gt=0, le=10000)


class Deliverables(_Payload):
    output: Optional[str] = Field(default=None, max_length=200000)
    output_url: Optional[str] = Field(default=None, max_length=2000)
    notes: Optional[str] = Field(default=None, max_length=10000)

    @model_validator(mode='after')
    def check_has_content(self):
        if not (self.output or self.output_url or self.notes):
            raise ValueError("one of output, output_url or notes is required")
        return self


class EvidenceInput(_Payload):
    text: str = Field(min_length=1, max_length=10000)
    links: list[str] = Field(default_factory=list, max_length=MAX_LINKS)


class EvidenceEntry(EvidenceInput):
    submitted_by: str
    submitted_at: str


class StepSpec(_Payload):
    title: str = Field(min_length=1, max_length=500)
    description: str = Field(min_length=1, max_length=50000)
    required_skills: list[str] = Field(default_factory=list)
    category: str = Field(default='general', max_length=50)
    budget_usdc: Decimal = Field(gt=0, decimal_places=6)
    input_description: Optional[str] = None
    output_description: Optional[str] = None
    output_format: Literal['text', 'json', 'markdown', 'code', 'url'] = 'text'

    @field_validator('required_skills', mode='before')
    @classmethod
    def normalize_required_skills(cls, v):
        return normalize_skills(v)


class WorkflowSpec(_Payload):
    name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=10000)
    steps: list[StepSpec] = Field(min_length=1, max_length=20)
    is_template: bool = False
    auto_match: bool = False


class AutoBidRuleSpec(_Payload):
    name: Optional[str] = Field(default=None, max_length=200)
    categories: list[str] = Field(default_factory=list, max_length=MAX_SKILLS)
    skills: list[str] = Field(default_factory=list)
    min_budget_usdc: Optional[Decimal] = Field(default=None, gt=0, decimal_places=6)
    max_budget_usdc: Optional[Decimal] = Field(default=None, gt=0, decimal_places=6)
    bid_strategy: Literal['match_budget', 'undercut_10', 'fixed_rate'] = 'match_budget'
    fixed_bid_usdc: Optional[Decimal] = Field(default=None, gt=0, decimal_places=6)
    bid_message: Optional[str] = Field(default=None, min_length=10, max_length=5000)
    max_active_tasks: int = Field(default=3, ge=1, le=50)
    enabled: bool = True

    @field_validator('skills', mode='before')
    @classmethod
    def normalize_rule_skills(cls, v):
        return normalize_skills(v)

    @model_validator(mode='after')
    def check_rule(self):
        if self.bid_strategy == 'fixed_rate' and self.fixed_bid_usdc is None:
            raise ValueError("fixed_bid_usdc is required for the fixed_rate strategy")
        if self.min_budget_usdc and self.max_budget_usdc and self.min_budget_usdc > self.max_budget_usdc:
            raise ValueError("min_budget_usdc must not exceed max_budget_usdc")
        return self


class JudgeVerdict(BaseModel):
    """Advisory verdict returned by the dispute judge."""
    model_config = ConfigDict(extra='ignore')

    recommendation: Literal['full_refund', 'partial_refund', 'agent_paid', 'split']
    refund_percentage: int = Field(ge=0, le=100)
    confidence: int = Field(ge=0, le=100)
    rationale: str = ''
    concerns: list[str] = Field(default_factory=list)


def parse_payload(model, data):
    """Validate ``data`` against ``model``; raise the service ValidationError on failure."""
    if data is None:
        data = {}
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        first = e.errors()[0]
        loc = '.'.join(str(p) for p in first.get('loc', ())) or 'body'
        raise ValidationError(f"{loc}: {first.get('msg')}", {"fields": [
            '.'.join(str(p) for p in err.get('loc', ())) for err in e.errors()
        ]})
