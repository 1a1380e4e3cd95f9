"""Workspace credit ledger service layer.

Owns ``WorkspaceUser.credit`` and the append-only
``WorkspaceCreditTransaction`` log. Every balance mutation runs as one
read-modify-write on the member row, locked with ``SELECT ... FOR UPDATE``,
and writes the new balance together with its transaction rows before
committing. Any failure rolls the whole call back.
"""

from __future__ import annotations

import logging
import random
import uuid
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tokenledger.config import Settings, get_settings
from tokenledger.errors import (
    BadRequestError,
    InternalError,
    NotFoundError,
    PaymentRequiredError,
    TokenLedgerError,
)
from tokenledger.models.base import utcnow
from tokenledger.models.credential import Credential
from tokenledger.models.credit_transaction import CreditTransactionType, WorkspaceCreditTransaction
from tokenledger.models.workspace import WorkspaceUser
from tokenledger.schemas.pagination import PaginationMeta
from tokenledger.services.billing import compute_consumed_credit, describe_consumption, resolve_billing

logger = logging.getLogger(__name__)

WORKSPACE_USER_NOT_FOUND = "Workspace User Not Found"
INVALID_AMOUNT = "Invalid credit amount"


@dataclass(frozen=True)
class CredentialUsage:
    """Tokens attributed to one credential, as handed to the ledger for billing."""

    total_tokens: int
    credential_id: str | None = None
    credential_name: str | None = None
    model: str | None = None


@dataclass
class CheckInResult:
    reward: int
    credit: int
    next_available_at: datetime
    transaction: WorkspaceCreditTransaction


@dataclass
class ConsumptionResult:
    credit_consumed: int
    credit: int | None
    transactions: list[WorkspaceCreditTransaction] = field(default_factory=list)


def _as_utc(value: datetime) -> datetime:
    """Treat naive datetimes (as returned by SQLite) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _is_positive_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def _canonical_uuid(value: str | None) -> str | None:
    """Return ``value`` in canonical UUID form, or None if it is not a UUID."""
    if not value:
        return None
    try:
        return str(uuid.UUID(str(value)))
    except ValueError:
        return None


def _parse_bound(value: date | datetime | str | None, *, end: bool) -> datetime | None:
    """Convert a date range bound into an aware UTC datetime.

    A bare date covers the whole day: as a start bound it means 00:00, as an
    end bound it means the last microsecond of that day.
    """
    if value is None or value == "":
        return None
    if isinstance(value, str):
        text = value.strip()
        try:
            if len(text) == 10:
                value = date.fromisoformat(text)
            else:
                value = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError as exc:
            raise BadRequestError(f"Invalid date: {text}") from exc
    if isinstance(value, datetime):
        return _as_utc(value)
    if isinstance(value, date):
        return datetime.combine(value, time.max if end else time.min, tzinfo=timezone.utc)
    raise BadRequestError(f"Invalid date: {value!r}")


class CreditService:
    """Service for workspace member credit balances and their ledger.

    Args:
        db: Async SQLAlchemy session for database operations.
        settings: Credit thresholds and check-in rules; defaults to
            :func:`get_settings`.
        clock: Returns the current aware UTC time.
        rng: Source of check-in rewards.
    """

    def __init__(
        self,
        db: AsyncSession,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.db = db
        self.settings = settings or get_settings()
        self._clock = clock or utcnow
        self._rng = rng or random.Random()
        self._last_stamp: datetime | None = None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _stamp(self) -> datetime:
        """Next ledger timestamp, strictly after the last one issued or loaded."""
        now = _as_utc(self._clock())
        if self._last_stamp is not None and now <= self._last_stamp:
            now = self._last_stamp + timedelta(microseconds=1)
        self._last_stamp = now
        return now

    async def _latest_stamp(self, workspace_id: str, user_id: str) -> None:
        """Raise the stamp floor to the member's newest ledger row.

        Runs under the row lock, so other instances and processes whose
        clocks lag still stamp after it.
        """
        result = await self.db.execute(
            select(func.max(WorkspaceCreditTransaction.created_at)).where(
                WorkspaceCreditTransaction.workspace_id == workspace_id,
                WorkspaceCreditTransaction.user_id == user_id,
            )
        )
        latest = result.scalar_one_or_none()
        if latest is None:
            return
        latest = _as_utc(latest)
        if self._last_stamp is None or latest > self._last_stamp:
            self._last_stamp = latest

    async def _get_member(
        self, workspace_id: str, user_id: str, *, lock: bool = False
    ) -> WorkspaceUser:
        query = select(WorkspaceUser).where(
            WorkspaceUser.workspace_id == workspace_id,
            WorkspaceUser.user_id == user_id,
        )
        if lock:
            # Re-read the locked row even if the session already holds it.
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.db.execute(query)
        member = result.scalar_one_or_none()
        if member is None:
            raise NotFoundError(WORKSPACE_USER_NOT_FOUND)
        return member

    @asynccontextmanager
    async def _locked_member(self, workspace_id: str, user_id: str) -> AsyncIterator[WorkspaceUser]:
        """Yield the member row under a row lock; commit on exit, roll back on error."""
        try:
            member = await self._get_member(workspace_id, user_id, lock=True)
            await self._latest_stamp(workspace_id, user_id)
            yield member
            await self.db.commit()
        except TokenLedgerError:
            await self.db.rollback()
            raise
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.exception(
                "Credit ledger mutation failed for workspace=%s user=%s", workspace_id, user_id
            )
            raise InternalError("Credit ledger update failed") from exc
        except Exception:
            await self.db.rollback()
            raise

    def _append(
        self,
        member: WorkspaceUser,
        type_: CreditTransactionType,
        amount: int,
        description: str | None = None,
        credential_id: str | None = None,
        credential_name: str | None = None,
    ) -> WorkspaceCreditTransaction:
        member.credit = (member.credit or 0) + amount
        transaction = WorkspaceCreditTransaction(
            workspace_id=member.workspace_id,
            user_id=member.user_id,
            type=type_.value,
            amount=amount,
            balance=member.credit,
            credential_id=credential_id,
            credential_name=credential_name,
            description=description,
            created_at=self._stamp(),
        )
        self.db.add(transaction)
        return transaction

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_summary(self, workspace_id: str, user_id: str) -> dict:
        """Get a member's current balance.

        Returns:
            Dict with workspace_id, user_id and credit.

        Raises:
            NotFoundError: If the workspace membership does not exist.
        """
        member = await self._get_member(workspace_id, user_id)
        return {
            "workspace_id": workspace_id,
            "user_id": user_id,
            "credit": member.credit or 0,
        }

    async def get_transactions(
        self,
        workspace_id: str,
        user_id: str,
        page: int = 1,
        page_size: int = 20,
        start_date: date | datetime | str | None = None,
        end_date: date | datetime | str | None = None,
    ) -> tuple[list[WorkspaceCreditTransaction], PaginationMeta]:
        """List a member's transactions, newest first.

        Both date bounds are inclusive; a bare date as ``end_date`` includes
        that whole day.

        Returns:
            Tuple of (transactions page, pagination metadata).

        Raises:
            BadRequestError: On invalid paging or an invalid/inverted range.
            NotFoundError: If the workspace membership does not exist.
        """
        if not _is_positive_int(page):
            raise BadRequestError(f"Invalid page: {page}")
        max_page_size = self.settings.transactions_max_page_size
        if not _is_positive_int(page_size) or page_size > max_page_size:
            raise BadRequestError(f"Invalid page size: {page_size} (1-{max_page_size})")

        start_at = _parse_bound(start_date, end=False)
        end_at = _parse_bound(end_date, end=True)
        if start_at is not None and end_at is not None and start_at > end_at:
            raise BadRequestError("Invalid date range: startDate is after endDate")

        await self._get_member(workspace_id, user_id)

        conditions = [
            WorkspaceCreditTransaction.workspace_id == workspace_id,
            WorkspaceCreditTransaction.user_id == user_id,
        ]
        if start_at is not None:
            conditions.append(WorkspaceCreditTransaction.created_at >= start_at)
        if end_at is not None:
            conditions.append(WorkspaceCreditTransaction.created_at <= end_at)

        total_result = await self.db.execute(
            select(func.count()).select_from(WorkspaceCreditTransaction).where(*conditions)
        )
        total = int(total_result.scalar_one())

        result = await self.db.execute(
            select(WorkspaceCreditTransaction)
            .where(*conditions)
            .order_by(
                WorkspaceCreditTransaction.created_at.desc(),
                WorkspaceCreditTransaction.id.desc(),
            )
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        transactions = list(result.scalars().all())
        return transactions, PaginationMeta.build(page, page_size, total)

    async def assert_sufficient_credit(self, workspace_id: str, user_id: str) -> int | None:
        """Pre-flight gate run before a model invocation is dispatched.

        Returns:
            The current balance, or None when the gate is disabled
            (``min_credit_to_interact <= 0``).

        Raises:
            PaymentRequiredError: If the balance is below the minimum.
            NotFoundError: If the workspace membership does not exist.
        """
        min_credit = self.settings.min_credit_to_interact
        if min_credit <= 0:
            return None
        member = await self._get_member(workspace_id, user_id)
        credit = member.credit or 0
        if credit < min_credit:
            raise PaymentRequiredError(credit=credit, min_credit=min_credit)
        return credit

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def topup(
        self,
        workspace_id: str,
        user_id: str,
        amount: int,
        description: str | None = None,
    ) -> WorkspaceCreditTransaction:
        """Add ``amount`` credits and append a ``topup`` transaction.

        Returns:
            The created transaction; its ``balance`` is the new balance.

        Raises:
            BadRequestError: If ``amount`` is not a positive integer.
            NotFoundError: If the workspace membership does not exist.
        """
        if not _is_positive_int(amount):
            raise BadRequestError(INVALID_AMOUNT)

        async with self._locked_member(workspace_id, user_id) as member:
            transaction = self._append(
                member,
                CreditTransactionType.TOPUP,
                amount,
                description=description or "Manual top-up",
            )

        logger.info(
            "Credit top-up workspace=%s user=%s amount=%d balance=%d",
            workspace_id,
            user_id,
            amount,
            transaction.balance,
        )
        return transaction

    async def adjust(
        self,
        workspace_id: str,
        user_id: str,
        amount: int,
        description: str | None = None,
    ) -> WorkspaceCreditTransaction:
        """Apply a signed administrative correction as an ``adjust`` transaction.

        Raises:
            BadRequestError: If ``amount`` is not a non-zero integer.
            NotFoundError: If the workspace membership does not exist.
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount == 0:
            raise BadRequestError(INVALID_AMOUNT)

        async with self._locked_member(workspace_id, user_id) as member:
            transaction = self._append(
                member,
                CreditTransactionType.ADJUST,
                amount,
                description=description or "Manual adjustment",
            )

        logger.info(
            "Credit adjustment workspace=%s user=%s amount=%d balance=%d",
            workspace_id,
            user_id,
            amount,
            transaction.balance,
        )
        return transaction

    async def daily_check_in(self, workspace_id: str, user_id: str) -> CheckInResult:
        """Claim the daily check-in reward.

        Requires the balance to be at least ``checkin_min_credit`` and the
        previous check-in (if any) to be at least ``checkin_cooldown_hours``
        old. The reward is uniform over
        ``[checkin_reward_min, checkin_reward_max]``.

        Raises:
            BadRequestError: Minimum balance not met, or already claimed
                (``details["next_available_at"]`` holds the ISO timestamp).
            NotFoundError: If the workspace membership does not exist.
        """
        cooldown = timedelta(hours=self.settings.checkin_cooldown_hours)
        min_credit = self.settings.checkin_min_credit

        async with self._locked_member(workspace_id, user_id) as member:
            if (member.credit or 0) < min_credit:
                raise BadRequestError(
                    f"Daily check-in requires min credit {min_credit}",
                    details={"credit": member.credit or 0, "min_credit": min_credit},
                )

            result = await self.db.execute(
                select(WorkspaceCreditTransaction.created_at)
                .where(
                    WorkspaceCreditTransaction.workspace_id == workspace_id,
                    WorkspaceCreditTransaction.user_id == user_id,
                    WorkspaceCreditTransaction.type == CreditTransactionType.CHECKIN.value,
                )
                .order_by(WorkspaceCreditTransaction.created_at.desc())
                .limit(1)
            )
            last_checkin = result.scalar_one_or_none()
            now = _as_utc(self._clock())
            if last_checkin is not None:
                next_available_at = _as_utc(last_checkin) + cooldown
                if now < next_available_at:
                    raise BadRequestError(
                        "Daily check-in already claimed",
                        details={"next_available_at": next_available_at.isoformat()},
                    )

            reward = self._rng.randint(
                self.settings.checkin_reward_min, self.settings.checkin_reward_max
            )
            transaction = self._append(
                member,
                CreditTransactionType.CHECKIN,
                reward,
                description="Daily check-in reward",
            )

        logger.info(
            "Daily check-in workspace=%s user=%s reward=%d balance=%d",
            workspace_id,
            user_id,
            reward,
            transaction.balance,
        )
        return CheckInResult(
            reward=reward,
            credit=transaction.balance,
            next_available_at=_as_utc(transaction.created_at) + cooldown,
            transaction=transaction,
        )

    async def consume_by_usages(
        self,
        workspace_id: str,
        user_id: str,
        usages: Sequence[CredentialUsage],
    ) -> ConsumptionResult:
        """Debit credits for credential usage, one ``consume`` row per billed usage.

        Usages with no tokens, or whose computed credit is zero, are skipped.
        When nothing is billable no membership is required and ``credit`` is
        None for non-members.
        The balance may go negative. All debits of one call commit together
        or not at all.

        Raises:
            NotFoundError: If something is billable and the workspace
                membership does not exist.
        """
        positive = [usage for usage in usages if usage.total_tokens and usage.total_tokens > 0]

        credentials = await self._load_credentials(
            [_canonical_uuid(usage.credential_id) for usage in positive]
        )

        billable = []
        for usage in positive:
            credential = credentials.get(_canonical_uuid(usage.credential_id))
            resolution = resolve_billing(credential, usage.model)
            computation = compute_consumed_credit(usage.total_tokens, resolution)
            if computation.consumed_credit <= 0:
                logger.debug(
                    "Skip credit consumption credential=%s model=%s tokens=%d: zero credit",
                    usage.credential_id or usage.credential_name,
                    usage.model,
                    usage.total_tokens,
                )
                continue
            billable.append((usage, resolution, computation))

        if not billable:
            return ConsumptionResult(
                credit_consumed=0, credit=await self._current_credit(workspace_id, user_id)
            )

        transactions: list[WorkspaceCreditTransaction] = []
        async with self._locked_member(workspace_id, user_id) as member:
            for usage, resolution, computation in billable:
                transactions.append(
                    self._append(
                        member,
                        CreditTransactionType.CONSUME,
                        -computation.consumed_credit,
                        description=describe_consumption(usage.model, resolution, computation),
                        credential_id=usage.credential_id,
                        credential_name=usage.credential_name,
                    )
                )
            balance = member.credit

        consumed = sum(computation.consumed_credit for _, _, computation in billable)
        logger.info(
            "Credit consumed workspace=%s user=%s rows=%d consumed=%d balance=%d",
            workspace_id,
            user_id,
            len(transactions),
            consumed,
            balance,
        )
        return ConsumptionResult(credit_consumed=consumed, credit=balance, transactions=transactions)

    async def _current_credit(self, workspace_id: str, user_id: str) -> int | None:
        """Balance for reporting only; None when the user is not a member."""
        result = await self.db.execute(
            select(WorkspaceUser.credit).where(
                WorkspaceUser.workspace_id == workspace_id,
                WorkspaceUser.user_id == user_id,
            )
        )
        row = result.first()
        if row is None:
            return None
        return row[0] or 0

    async def _load_credentials(self, credential_ids: list[str | None]) -> dict[str, Credential]:
        ids = {credential_id for credential_id in credential_ids if credential_id}
        if not ids:
            return {}
        result = await self.db.execute(select(Credential).where(Credential.id.in_(ids)))
        return {_canonical_uuid(credential.id): credential for credential in result.scalars().all()}
