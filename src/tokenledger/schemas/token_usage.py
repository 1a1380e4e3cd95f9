"""Pydantic v2 schemas for token usage recording and reporting."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from tokenledger.models.token_usage import FlowType


class CredentialAccessSchema(BaseModel):
    """One credential use observed during an execution."""

    credential_id: str | None = None
    credential_name: str | None = None
    model: str | None = None


class RecordTokenUsageRequest(BaseModel):
    """Usage report sent by the execution pipeline after an execution finishes.

    ``usage_payloads`` are raw LLM responses or execution traces in any
    provider shape; they are searched for usage objects server-side.
    """

    workspace_id: str
    organization_id: str
    user_id: str | None = None
    flow_type: FlowType
    flow_id: str | None = None
    execution_id: str | None = None
    chat_id: str | None = None
    chat_message_id: str | None = None
    session_id: str | None = None
    usage_payloads: list[Any] = Field(default_factory=list)
    credential_accesses: list[CredentialAccessSchema] = Field(default_factory=list)


class RecordTokenUsageResponse(BaseModel):
    recorded: bool
    skipped_reason: str | None = None
    execution_id: str | None = None
    credential_record_ids: list[str] = Field(default_factory=list)
    credit_consumed: int = 0
    credit: int | None = None


class UsageCounters(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0
    reasoning_tokens: int = 0
    accepted_prediction_tokens: int = 0
    rejected_prediction_tokens: int = 0
    audio_input_tokens: int = 0
    audio_output_tokens: int = 0


class CredentialUsageSummary(UsageCounters):
    credential_id: str | None = None
    credential_name: str | None = None
    model: str | None = None
    usage_count: int = 0


class UserUsageSummary(UsageCounters):
    user_id: str
    execution_count: int = 0
    credentials: list[CredentialUsageSummary] = Field(default_factory=list)


class ExecutionSummary(UsageCounters):
    model_config = ConfigDict(from_attributes=True)

    id: str
    workspace_id: str
    user_id: str | None = None
    flow_type: str
    flow_id: str | None = None
    chat_id: str | None = None
    created_at: datetime


class OrganizationUsageSummaryResponse(BaseModel):
    """Usage of one organization over ``[start_date, end_date]``."""

    organization_id: str
    start_date: datetime
    end_date: datetime
    total: UsageCounters
    users: list[UserUsageSummary]
    recent_executions: list[ExecutionSummary]
