from sqlalchemy import Integer, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from tokenledger.models.base import AuditMixin, Base, UUIDPrimaryKeyMixin


class WorkspaceUser(Base, UUIDPrimaryKeyMixin, AuditMixin):
    """Workspace membership carrying the member's prepaid credit balance.

    ``credit`` is only written by the credit ledger, inside the same
    transaction that appends the matching ``WorkspaceCreditTransaction``.
    """

    __tablename__ = "workspace_users"
    __table_args__ = (
        UniqueConstraint("workspace_id", "user_id", name="uq_workspace_user"),
    )

    workspace_id: Mapped[str] = mapped_column(UUID(as_uuid=False), nullable=False)
    user_id: Mapped[str] = mapped_column(UUID(as_uuid=False), nullable=False)
    role: Mapped[str] = mapped_column(
        String(50), server_default="member", default="member", nullable=False
    )
    credit: Mapped[int] = mapped_column(
        Integer, server_default="0", default=0, nullable=False
    )
