"""Token usage recording and reporting service layer.

``record_token_usage`` is called by the execution pipeline once per finished
execution. It extracts usage from the raw provider payloads, stores one
execution row, splits the totals across the credentials that served the
execution, and debits the user's workspace credit.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tokenledger.config import Settings, get_settings
from tokenledger.errors import BadRequestError
from tokenledger.metering import (
    METRIC_FIELDS,
    UsageMetrics,
    aggregate_usage,
    distribute,
    extract_usage_entries,
    to_count,
    top_model,
)
from tokenledger.models.token_usage import FlowType, TokenUsageCredential, TokenUsageExecution
from tokenledger.services.credit_service import ConsumptionResult, CreditService, CredentialUsage

logger = logging.getLogger(__name__)

UNKNOWN_CREDENTIAL = "Unknown Credential"
RECENT_EXECUTIONS_LIMIT = 30
DEFAULT_SUMMARY_WINDOW = timedelta(hours=24)


@dataclass(frozen=True)
class CredentialAccess:
    """One credential use recorded by the execution pipeline."""

    credential_id: str | None = None
    credential_name: str | None = None
    model: str | None = None


@dataclass
class RecordTokenUsageInput:
    workspace_id: str
    organization_id: str
    flow_type: FlowType | str
    usage_payloads: Sequence[Any] = ()
    credential_accesses: Sequence[CredentialAccess] = ()
    user_id: str | None = None
    flow_id: str | None = None
    execution_id: str | None = None
    chat_id: str | None = None
    chat_message_id: str | None = None
    session_id: str | None = None


@dataclass
class RecordTokenUsageResult:
    """Outcome of one recording call; ``skipped_reason`` is set for no-ops."""

    execution: TokenUsageExecution | None = None
    credential_records: list[TokenUsageCredential] = field(default_factory=list)
    consumption: ConsumptionResult | None = None
    skipped_reason: str | None = None


@dataclass
class CredentialGroup:
    credential_id: str | None
    credential_name: str
    model: str | None
    usage_count: int = 1


def group_credential_accesses(accesses: Sequence[CredentialAccess]) -> list[CredentialGroup]:
    """Merge accesses by (credential_id, credential_name), counting occurrences.

    Groups keep first-seen order; a group's model is its first access's model.
    """
    groups: dict[tuple[str, str], CredentialGroup] = {}
    for access in accesses:
        name = access.credential_name or UNKNOWN_CREDENTIAL
        key = (access.credential_id or "", name)
        group = groups.get(key)
        if group is None:
            groups[key] = CredentialGroup(
                credential_id=access.credential_id,
                credential_name=name,
                model=access.model,
            )
        else:
            group.usage_count += 1
    return list(groups.values())


def distribute_metrics(metrics: UsageMetrics, weights: list[int]) -> list[UsageMetrics]:
    """Split every counter and breakdown key of ``metrics`` by ``weights``.

    For each field the shares sum exactly to the execution total.
    """
    shares = [UsageMetrics() for _ in weights]
    for name in METRIC_FIELDS:
        for share, value in zip(shares, distribute(getattr(metrics, name), weights)):
            setattr(share, name, value)
    for key, total in metrics.additional_breakdown.items():
        for share, value in zip(shares, distribute(total, weights)):
            share.additional_breakdown[key] = value
    return shares


def _payload_key_sample(payloads: Sequence[Any]) -> list[str]:
    first = payloads[0] if payloads else None
    if isinstance(first, Mapping):
        return [str(key) for key in list(first.keys())[:30]]
    return []


def _coerce_flow_type(flow_type: FlowType | str) -> FlowType:
    try:
        return FlowType(flow_type)
    except ValueError as exc:
        raise BadRequestError(f"Invalid flow type: {flow_type}") from exc


def _parse_window_bound(value: datetime | str | None) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            logger.debug("Ignoring unparseable usage summary bound %r", value)
            return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _counters(row: Any) -> dict[str, int]:
    return {name: getattr(row, name) or 0 for name in METRIC_FIELDS}


class TokenUsageService:
    """Service for recording and summarizing token usage.

    Args:
        db: Async SQLAlchemy session for database operations.
        settings: Passed through to the credit ledger.
        credit_service: Ledger used for debits; built from ``db`` if omitted.
    """

    def __init__(
        self,
        db: AsyncSession,
        settings: Settings | None = None,
        credit_service: CreditService | None = None,
    ) -> None:
        self.db = db
        self.settings = settings or get_settings()
        self.credit_service = credit_service or CreditService(db, self.settings)

    async def record_token_usage(self, data: RecordTokenUsageInput) -> RecordTokenUsageResult:
        """Record one execution's usage, attribute it to credentials, and bill it.

        Missing or unusable usage is a logged no-op, never an error. Without
        credential accesses only the execution row is written; without a user
        nothing is debited.

        Raises:
            BadRequestError: If ``flow_type`` is not a known flow type.
            NotFoundError: If billing is due but the user is not a member of
                the workspace (usage rows are already stored by then).
        """
        flow_type = _coerce_flow_type(data.flow_type)
        payloads = list(data.usage_payloads or [])
        accesses = list(data.credential_accesses or [])

        logger.info(
            "Token usage record start flow_type=%s flow_id=%s chat_id=%s user_id=%s payloads=%d credentials=%d",
            flow_type.value,
            data.flow_id or "-",
            data.chat_id or "-",
            data.user_id or "-",
            len(payloads),
            len(accesses),
        )

        if not payloads:
            logger.warning("Token usage skipped: empty usage payloads")
            return RecordTokenUsageResult(skipped_reason="empty_payloads")

        entries = [entry for payload in payloads for entry in extract_usage_entries(payload)]
        if not entries:
            logger.warning(
                "Token usage skipped: no usage entries extracted first_payload_keys=%s flow_type=%s chat_id=%s",
                json.dumps(_payload_key_sample(payloads)),
                flow_type.value,
                data.chat_id or "-",
            )
            return RecordTokenUsageResult(skipped_reason="no_usage_entries")

        aggregate = aggregate_usage(entries)
        logger.info("Token usage sources selected: %s", json.dumps(aggregate.source_counts))

        if not aggregate.has_usage():
            logger.warning(
                "Token usage skipped: %d entries extracted but aggregated metrics are zero flow_type=%s chat_id=%s",
                aggregate.entry_count,
                flow_type.value,
                data.chat_id or "-",
            )
            return RecordTokenUsageResult(skipped_reason="zero_usage")

        metrics = aggregate.metrics.rounded()
        model_totals = {model: to_count(total) for model, total in aggregate.model_totals.items()}
        logger.info(
            "Token usage extracted entries=%d total=%d input=%d output=%d models=%s",
            aggregate.entry_count,
            metrics.total_tokens,
            metrics.input_tokens,
            metrics.output_tokens,
            json.dumps(model_totals),
        )

        execution = TokenUsageExecution(
            workspace_id=data.workspace_id,
            organization_id=data.organization_id,
            user_id=data.user_id,
            flow_type=flow_type.value,
            flow_id=data.flow_id,
            execution_id=data.execution_id,
            chat_id=data.chat_id,
            chat_message_id=data.chat_message_id,
            session_id=data.session_id,
            usage_breakdown=json.dumps(metrics.additional_breakdown),
            model_breakdown=json.dumps(model_totals),
            **metrics.as_counters(),
        )
        self.db.add(execution)
        await self.db.commit()
        await self.db.refresh(execution)
        logger.info("Token usage execution stored id=%s flow_type=%s", execution.id, flow_type.value)

        result = RecordTokenUsageResult(execution=execution)
        if not accesses:
            return result

        groups = group_credential_accesses(accesses)
        shares = distribute_metrics(metrics, [group.usage_count for group in groups])
        fallback_model = top_model(model_totals)

        records = [
            TokenUsageCredential(
                usage_execution_id=execution.id,
                workspace_id=data.workspace_id,
                organization_id=data.organization_id,
                user_id=data.user_id,
                credential_id=group.credential_id,
                credential_name=group.credential_name,
                model=group.model or fallback_model,
                usage_count=group.usage_count,
                usage_breakdown=json.dumps(share.additional_breakdown),
                **share.as_counters(),
            )
            for group, share in zip(groups, shares)
        ]
        self.db.add_all(records)
        await self.db.commit()
        result.credential_records = records
        logger.info(
            "Token usage credential rows stored count=%d execution_id=%s", len(records), execution.id
        )

        if not data.user_id:
            logger.info("Credit consumption skipped: missing user_id execution_id=%s", execution.id)
            return result

        result.consumption = await self.credit_service.consume_by_usages(
            data.workspace_id,
            data.user_id,
            [
                CredentialUsage(
                    total_tokens=record.total_tokens,
                    credential_id=record.credential_id,
                    credential_name=record.credential_name,
                    model=record.model,
                )
                for record in records
            ],
        )
        logger.info(
            "Token usage credit consumed=%d balance=%s execution_id=%s",
            result.consumption.credit_consumed,
            result.consumption.credit,
            execution.id,
        )
        return result

    async def get_usage_summary_by_organization(
        self,
        organization_id: str,
        start_date: datetime | str | None = None,
        end_date: datetime | str | None = None,
    ) -> dict:
        """Summarize an organization's usage over a time window.

        The window defaults to the 24 hours before ``end_date`` (or now);
        unparseable bounds fall back to those defaults.

        Returns:
            Dict with start_date, end_date, total counters, per-user usage
            (sorted by total tokens, each with its credential rows) and the
            most recent executions.
        """
        end = _parse_window_bound(end_date) or datetime.now(timezone.utc)
        start = _parse_window_bound(start_date) or end - DEFAULT_SUMMARY_WINDOW

        executions_result = await self.db.execute(
            select(TokenUsageExecution)
            .where(
                TokenUsageExecution.organization_id == organization_id,
                TokenUsageExecution.created_at >= start,
                TokenUsageExecution.created_at <= end,
            )
            .order_by(TokenUsageExecution.created_at.desc())
        )
        executions = list(executions_result.scalars().all())

        credentials_result = await self.db.execute(
            select(TokenUsageCredential)
            .where(
                TokenUsageCredential.organization_id == organization_id,
                TokenUsageCredential.created_at >= start,
                TokenUsageCredential.created_at <= end,
            )
            .order_by(TokenUsageCredential.created_at.desc())
        )
        credential_rows = list(credentials_result.scalars().all())

        overall = UsageMetrics()
        by_user: dict[str, tuple[UsageMetrics, list[int]]] = {}
        for execution in executions:
            metrics = UsageMetrics(**_counters(execution))
            overall.add(metrics)
            if not execution.user_id:
                continue
            user_metrics, count = by_user.setdefault(str(execution.user_id), (UsageMetrics(), [0]))
            user_metrics.add(metrics)
            count[0] += 1

        credentials_by_user: dict[str, list[dict]] = {}
        for row in credential_rows:
            if not row.user_id:
                continue
            credentials_by_user.setdefault(str(row.user_id), []).append(
                {
                    "credential_id": row.credential_id,
                    "credential_name": row.credential_name,
                    "model": row.model,
                    "usage_count": row.usage_count,
                    **_counters(row),
                }
            )

        users = [
            {
                "user_id": user_id,
                "execution_count": count[0],
                **metrics.as_counters(),
                "credentials": credentials_by_user.get(user_id, []),
            }
            for user_id, (metrics, count) in by_user.items()
        ]
        users.sort(key=lambda user: user["total_tokens"], reverse=True)

        return {
            "start_date": start,
            "end_date": end,
            "total": overall.as_counters(),
            "users": users,
            "recent_executions": executions[:RECENT_EXECUTIONS_LIMIT],
        }
