"""Tests for the workspace credit ledger."""

import uuid
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from conftest import FakeClock, FixedRng
from tokenledger.config import Settings
from tokenledger.errors import BadRequestError, InternalError, NotFoundError, PaymentRequiredError
from tokenledger.models import WorkspaceCreditTransaction, WorkspaceUser
from tokenledger.services.credential_service import CredentialService
from tokenledger.services.credit_service import CreditService, CredentialUsage


def _ref(member):
    """Detached copy of the member keys, usable after a rollback expires the row."""
    return SimpleNamespace(id=member.id, workspace_id=member.workspace_id, user_id=member.user_id)


async def _ledger(session, member):
    result = await session.execute(
        select(WorkspaceCreditTransaction)
        .where(
            WorkspaceCreditTransaction.workspace_id == member.workspace_id,
            WorkspaceCreditTransaction.user_id == member.user_id,
        )
        .order_by(WorkspaceCreditTransaction.created_at)
    )
    return list(result.scalars().all())


async def _balance(session, member):
    result = await session.execute(
        select(WorkspaceUser.credit).where(WorkspaceUser.id == member.id)
    )
    return result.scalar_one()


class TestSummary:
    @pytest.mark.asyncio
    async def test_get_summary(self, session, settings, make_member):
        member = await make_member(credit=42)
        service = CreditService(session, settings)
        summary = await service.get_summary(member.workspace_id, member.user_id)
        assert summary["credit"] == 42

    @pytest.mark.asyncio
    async def test_unknown_member(self, session, settings):
        service = CreditService(session, settings)
        with pytest.raises(NotFoundError, match="Workspace User Not Found"):
            await service.get_summary(str(uuid.uuid4()), str(uuid.uuid4()))


class TestTopupAndAdjust:
    @pytest.mark.asyncio
    async def test_topup_appends_transaction(self, session, settings, make_member):
        member = await make_member(credit=50)
        service = CreditService(session, settings)

        transaction = await service.topup(member.workspace_id, member.user_id, 100)

        assert transaction.type == "topup"
        assert transaction.amount == 100
        assert transaction.balance == 150
        assert transaction.description == "Manual top-up"
        assert await _balance(session, member) == 150

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -5, 1.5, True, "10", None])
    async def test_topup_rejects_invalid_amount(self, session, settings, make_member, amount):
        member = await make_member(credit=50)
        service = CreditService(session, settings)
        with pytest.raises(BadRequestError, match="Invalid credit amount"):
            await service.topup(member.workspace_id, member.user_id, amount)
        assert await _ledger(session, member) == []

    @pytest.mark.asyncio
    async def test_topup_unknown_member(self, session, settings):
        service = CreditService(session, settings)
        with pytest.raises(NotFoundError):
            await service.topup(str(uuid.uuid4()), str(uuid.uuid4()), 10)

    @pytest.mark.asyncio
    async def test_adjust_can_go_negative(self, session, settings, make_member):
        member = await make_member(credit=10)
        service = CreditService(session, settings)
        transaction = await service.adjust(member.workspace_id, member.user_id, -30, "refund reversal")
        assert transaction.type == "adjust"
        assert transaction.balance == -20
        assert transaction.description == "refund reversal"

    @pytest.mark.asyncio
    async def test_adjust_rejects_zero(self, session, settings, make_member):
        member = await make_member()
        service = CreditService(session, settings)
        with pytest.raises(BadRequestError):
            await service.adjust(member.workspace_id, member.user_id, 0)

    @pytest.mark.asyncio
    async def test_failed_commit_rolls_back(self, session, settings, make_member):
        member = _ref(await make_member(credit=50))
        service = CreditService(session, settings)
        real_commit = session.commit
        session.commit = AsyncMock(side_effect=SQLAlchemyError("disk full"))
        try:
            with pytest.raises(InternalError) as exc_info:
                await service.topup(member.workspace_id, member.user_id, 25)
        finally:
            session.commit = real_commit

        assert isinstance(exc_info.value.__cause__, SQLAlchemyError)
        assert await _balance(session, member) == 50
        assert await _ledger(session, member) == []


class TestDailyCheckIn:
    @pytest.mark.asyncio
    async def test_second_claim_within_cooldown_fails(self, session, settings, clock, make_member):
        member = _ref(await make_member(credit=5))
        service = CreditService(session, settings, clock=clock, rng=FixedRng(42))

        result = await service.daily_check_in(member.workspace_id, member.user_id)
        assert result.reward == 42
        assert result.credit == 47
        assert result.transaction.type == "checkin"
        assert result.next_available_at == clock.now + timedelta(hours=24)

        clock.advance(hours=23)
        with pytest.raises(BadRequestError, match="already claimed") as exc_info:
            await service.daily_check_in(member.workspace_id, member.user_id)
        assert exc_info.value.details["next_available_at"] == result.next_available_at.isoformat()
        assert await _balance(session, member) == 47

    @pytest.mark.asyncio
    async def test_claim_after_cooldown(self, session, settings, clock, make_member):
        member = await make_member()
        rng = FixedRng(10)
        service = CreditService(session, settings, clock=clock, rng=rng)

        await service.daily_check_in(member.workspace_id, member.user_id)
        clock.advance(hours=24)
        result = await service.daily_check_in(member.workspace_id, member.user_id)

        assert result.credit == 20
        assert rng.calls == [(1, 100), (1, 100)]

    @pytest.mark.asyncio
    async def test_requires_min_credit(self, session, clock, make_member):
        settings = Settings(database_url="sqlite+aiosqlite://", checkin_min_credit=10)
        member = await make_member(credit=5)
        service = CreditService(session, settings, clock=clock, rng=FixedRng(1))
        with pytest.raises(BadRequestError, match="requires min credit 10"):
            await service.daily_check_in(member.workspace_id, member.user_id)

    @pytest.mark.asyncio
    async def test_reward_within_configured_range(self, session, settings, make_member):
        member = await make_member()
        service = CreditService(session, settings)
        result = await service.daily_check_in(member.workspace_id, member.user_id)
        assert 1 <= result.reward <= 100


class TestConsumeByUsages:
    @pytest.mark.asyncio
    async def test_bills_priced_usage(self, session, settings, make_member):
        member = await make_member(credit=500)
        credential = await CredentialService(session).create_credential(
            member.workspace_id,
            "OpenAI",
            "openAIApi",
            credit_consumption_multiplier=2,
            model_multipliers={"gpt-4o": {"multiplier": 1, "rmbPerMTok": 1}},
        )
        service = CreditService(session, settings)

        result = await service.consume_by_usages(
            member.workspace_id,
            member.user_id,
            [
                CredentialUsage(
                    total_tokens=1_000_000,
                    credential_id=credential.id,
                    credential_name="OpenAI",
                    model="gpt-4o",
                )
            ],
        )

        assert result.credit_consumed == 200
        assert result.credit == 300
        [transaction] = result.transactions
        assert transaction.type == "consume"
        assert transaction.amount == -200
        assert transaction.balance == 300
        assert transaction.credential_id == credential.id
        assert "consumedCredit=200" in transaction.description

    @pytest.mark.asyncio
    async def test_unpriced_usage_writes_nothing(self, session, settings, make_member):
        member = await make_member(credit=50)
        service = CreditService(session, settings)
        result = await service.consume_by_usages(
            member.workspace_id,
            member.user_id,
            [
                CredentialUsage(total_tokens=1_000_000, credential_id=None, model="gpt-x"),
                CredentialUsage(total_tokens=0, credential_id=str(uuid.uuid4())),
            ],
        )
        assert result.credit_consumed == 0
        assert result.credit == 50
        assert result.transactions == []
        assert await _ledger(session, member) == []

    @pytest.mark.asyncio
    async def test_unpriced_usage_needs_no_membership(self, session, settings):
        service = CreditService(session, settings)
        result = await service.consume_by_usages(
            str(uuid.uuid4()),
            str(uuid.uuid4()),
            [CredentialUsage(total_tokens=500, credential_id=str(uuid.uuid4()), model="gpt-x")],
        )
        assert result.credit_consumed == 0
        assert result.credit is None
        assert result.transactions == []

    @pytest.mark.asyncio
    async def test_balance_may_go_negative(self, session, settings, make_member):
        member = await make_member(credit=1)
        credential = await CredentialService(session).create_credential(
            member.workspace_id, "Anthropic", "anthropicApi", model_multipliers={"claude": {"multiplier": 1, "rmbPerMTok": 100}}
        )
        service = CreditService(session, settings)
        result = await service.consume_by_usages(
            member.workspace_id,
            member.user_id,
            [CredentialUsage(total_tokens=10_000, credential_id=credential.id.upper(), model="claude")],
        )
        assert result.credit_consumed == 100
        assert result.credit == -99


class TestPreflight:
    @pytest.mark.asyncio
    async def test_low_balance_is_rejected(self, session, settings, make_member):
        member = await make_member(credit=0)
        service = CreditService(session, settings)
        with pytest.raises(PaymentRequiredError) as exc_info:
            await service.assert_sufficient_credit(member.workspace_id, member.user_id)
        assert exc_info.value.status_code == 402
        assert exc_info.value.details == {"credit": 0, "min_credit": 1}

    @pytest.mark.asyncio
    async def test_sufficient_balance(self, session, settings, make_member):
        member = await make_member(credit=3)
        service = CreditService(session, settings)
        assert await service.assert_sufficient_credit(member.workspace_id, member.user_id) == 3

    @pytest.mark.asyncio
    async def test_gate_disabled(self, session, make_member):
        settings = Settings(database_url="sqlite+aiosqlite://", min_credit_to_interact=0)
        service = CreditService(session, settings)
        assert await service.assert_sufficient_credit(str(uuid.uuid4()), str(uuid.uuid4())) is None


class TestTransactions:
    @pytest.mark.asyncio
    async def test_pagination_newest_first(self, session, settings, clock, make_member):
        member = await make_member()
        service = CreditService(session, settings, clock=clock)
        for amount in range(1, 6):
            await service.topup(member.workspace_id, member.user_id, amount)
            clock.advance(minutes=1)

        page, meta = await service.get_transactions(member.workspace_id, member.user_id, page=1, page_size=2)
        assert [t.amount for t in page] == [5, 4]
        assert (meta.total, meta.has_next, meta.has_prev) == (5, True, False)

        page, meta = await service.get_transactions(member.workspace_id, member.user_id, page=3, page_size=2)
        assert [t.amount for t in page] == [1]
        assert (meta.has_next, meta.has_prev) == (False, True)

    @pytest.mark.asyncio
    async def test_same_instant_keeps_insertion_order(self, session, settings, clock, make_member):
        member = await make_member()
        service = CreditService(session, settings, clock=clock)
        await service.topup(member.workspace_id, member.user_id, 1)
        await service.topup(member.workspace_id, member.user_id, 2)
        page, _ = await service.get_transactions(member.workspace_id, member.user_id)
        assert [t.amount for t in page] == [2, 1]

    @pytest.mark.asyncio
    async def test_date_range_is_inclusive_of_end_day(self, session, settings, make_member):
        member = await make_member()
        clock_values = iter(
            datetime(2026, 1, day, 18, 30, tzinfo=timezone.utc) for day in (1, 2, 3)
        )
        service = CreditService(session, settings, clock=lambda: next(clock_values))
        for amount in (10, 20, 30):
            await service.topup(member.workspace_id, member.user_id, amount)

        page, meta = await service.get_transactions(
            member.workspace_id, member.user_id, start_date="2026-01-02", end_date="2026-01-02"
        )
        assert [t.amount for t in page] == [20]
        assert meta.total == 1

        page, _ = await service.get_transactions(
            member.workspace_id, member.user_id, start_date="2026-01-02T00:00:00Z"
        )
        assert [t.amount for t in page] == [30, 20]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "kwargs",
        [
            {"page": 0},
            {"page_size": 0},
            {"page_size": 501},
            {"start_date": "yesterday"},
            {"start_date": "2026-01-03", "end_date": "2026-01-02"},
        ],
    )
    async def test_invalid_queries(self, session, settings, make_member, kwargs):
        member = await make_member()
        service = CreditService(session, settings)
        with pytest.raises(BadRequestError):
            await service.get_transactions(member.workspace_id, member.user_id, **kwargs)


class TestLedgerReplay:
    @pytest.mark.asyncio
    async def test_balances_replay_from_amounts(self, session, settings, clock, make_member):
        member = await make_member(credit=0)
        credential = await CredentialService(session).create_credential(
            member.workspace_id, "OpenAI", "openAIApi", model_multipliers={"gpt-4o": {"multiplier": 1, "rmbPerMTok": 50}}
        )
        service = CreditService(session, settings, clock=clock, rng=FixedRng(7))

        await service.topup(member.workspace_id, member.user_id, 100)
        await service.daily_check_in(member.workspace_id, member.user_id)
        await service.consume_by_usages(
            member.workspace_id,
            member.user_id,
            [
                CredentialUsage(total_tokens=3_000, credential_id=credential.id, model="gpt-4o"),
                CredentialUsage(total_tokens=9_999, credential_id=credential.id, model="gpt-4o"),
            ],
        )
        await service.adjust(member.workspace_id, member.user_id, -5)

        running = 0
        transactions = await _ledger(session, member)
        assert [t.type for t in transactions] == ["topup", "checkin", "consume", "consume", "adjust"]
        for transaction in transactions:
            running += transaction.amount
            assert transaction.balance == running
        assert await _balance(session, member) == running

    @pytest.mark.asyncio
    async def test_lagging_clock_in_another_instance_stays_ordered(
        self, session, settings, clock, make_member
    ):
        member = await make_member(credit=0)
        ahead = CreditService(session, settings, clock=FakeClock(clock.now + timedelta(milliseconds=5)))
        behind = CreditService(session, settings, clock=clock)

        first = await ahead.topup(member.workspace_id, member.user_id, 10)
        second = await behind.topup(member.workspace_id, member.user_id, 20)

        assert second.created_at > first.created_at
        transactions = await _ledger(session, member)
        assert [(t.amount, t.balance) for t in transactions] == [(10, 10), (20, 30)]
