from sqlalchemy import Float, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from tokenledger.models.base import AuditMixin, Base, UUIDPrimaryKeyMixin


class Credential(Base, UUIDPrimaryKeyMixin, AuditMixin):
    """Provider credential with its owner-managed billing configuration.

    ``credit_consumption_multiplier_by_model`` stores a JSON object mapping
    model name to ``{"multiplier": float, "rmbPerMTok": float}``; legacy rows
    may map a model to a bare multiplier number.
    """

    __tablename__ = "credentials"

    workspace_id: Mapped[str] = mapped_column(UUID(as_uuid=False), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    credential_name: Mapped[str] = mapped_column(String(100), nullable=False)
    credit_consumption_multiplier: Mapped[float] = mapped_column(
        Float, server_default="1", default=1.0, nullable=False
    )
    credit_consumption_multiplier_by_model: Mapped[str | None] = mapped_column(
        Text, nullable=True
    )
