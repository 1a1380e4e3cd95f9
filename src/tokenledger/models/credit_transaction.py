import enum

from sqlalchemy import Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from tokenledger.models.base import Base, CreatedAtMixin, UUIDPrimaryKeyMixin


class CreditTransactionType(str, enum.Enum):
    """Ledger row kinds."""

    TOPUP = "topup"
    CONSUME = "consume"
    ADJUST = "adjust"
    CHECKIN = "checkin"


class WorkspaceCreditTransaction(Base, UUIDPrimaryKeyMixin, CreatedAtMixin):
    """Append-only credit ledger row.

    ``amount`` is signed (positive gains credit, negative spends it) and
    ``balance`` is the member's balance right after applying ``amount``.
    """

    __tablename__ = "workspace_credit_transactions"
    __table_args__ = (
        Index(
            "ix_workspace_credit_transactions_workspace_user_created",
            "workspace_id",
            "user_id",
            "created_at",
        ),
    )

    workspace_id: Mapped[str] = mapped_column(UUID(as_uuid=False), nullable=False)
    user_id: Mapped[str] = mapped_column(UUID(as_uuid=False), nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    balance: Mapped[int] = mapped_column(Integer, nullable=False)
    credential_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    credential_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
