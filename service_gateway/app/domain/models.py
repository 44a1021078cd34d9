"""
Request and response models for the gateway API.
"""

from typing import List, Optional

from pydantic import BaseModel, Field


class PlanEntry(BaseModel):
    est_units: float = Field(default=0, ge=0, allow_inf_nan=False)
    endpoint: Optional[str] = None


class QuoteRequest(BaseModel):
    plan: List[PlanEntry] = Field(default_factory=list)
    tenant_id: Optional[str] = None


class QuoteResponse(BaseModel):
    estimated_credits: int
    tariff_hash: str
    expires_ms: int


class LockRequest(BaseModel):
    job_id: str = Field(min_length=1)
    budget_apic: int = Field(ge=0)
    endpoints: List[str] = Field(default_factory=list)


class LockResponse(BaseModel):
    job_id: str
    locked_budget_apic: int
    usage_auth_token: str
    expires_at: str


class ExecuteRequest(BaseModel):
    endpoint: Optional[str] = None
    method: Optional[str] = None
    body: Optional[dict] = None


class UsageReport(BaseModel):
    units: int
    credits: int


class ExecuteResponse(BaseModel):
    ok: bool
    usage: UsageReport


class IngestResponse(BaseModel):
    ok: bool
    id: str
    durability: str
