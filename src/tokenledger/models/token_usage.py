import enum

from sqlalchemy import ForeignKey, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from tokenledger.models.base import Base, CreatedAtMixin, UUIDPrimaryKeyMixin


class FlowType(str, enum.Enum):
    """Kind of flow an execution belongs to."""

    CHATFLOW = "CHATFLOW"
    AGENTFLOW = "AGENTFLOW"
    ASSISTANT = "ASSISTANT"
    MULTIAGENT = "MULTIAGENT"


class TokenCountersMixin:
    """The ten canonical token counters."""

    input_tokens: Mapped[int] = mapped_column(Integer, server_default="0", default=0, nullable=False)
    output_tokens: Mapped[int] = mapped_column(Integer, server_default="0", default=0, nullable=False)
    total_tokens: Mapped[int] = mapped_column(Integer, server_default="0", default=0, nullable=False)
    cache_read_tokens: Mapped[int] = mapped_column(Integer, server_default="0", default=0, nullable=False)
    cache_write_tokens: Mapped[int] = mapped_column(Integer, server_default="0", default=0, nullable=False)
    reasoning_tokens: Mapped[int] = mapped_column(Integer, server_default="0", default=0, nullable=False)
    accepted_prediction_tokens: Mapped[int] = mapped_column(
        Integer, server_default="0", default=0, nullable=False
    )
    rejected_prediction_tokens: Mapped[int] = mapped_column(
        Integer, server_default="0", default=0, nullable=False
    )
    audio_input_tokens: Mapped[int] = mapped_column(Integer, server_default="0", default=0, nullable=False)
    audio_output_tokens: Mapped[int] = mapped_column(Integer, server_default="0", default=0, nullable=False)


class TokenUsageExecution(Base, UUIDPrimaryKeyMixin, CreatedAtMixin, TokenCountersMixin):
    """Aggregated token usage for one metered execution. Immutable once written."""

    __tablename__ = "token_usage_executions"

    workspace_id: Mapped[str] = mapped_column(UUID(as_uuid=False), nullable=False, index=True)
    organization_id: Mapped[str] = mapped_column(UUID(as_uuid=False), nullable=False, index=True)
    user_id: Mapped[str | None] = mapped_column(UUID(as_uuid=False), nullable=True)
    flow_type: Mapped[str] = mapped_column(String(32), nullable=False)
    flow_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    execution_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    chat_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    chat_message_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    session_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    usage_breakdown: Mapped[str | None] = mapped_column(Text, nullable=True)
    model_breakdown: Mapped[str | None] = mapped_column(Text, nullable=True)


class TokenUsageCredential(Base, UUIDPrimaryKeyMixin, CreatedAtMixin, TokenCountersMixin):
    """One credential group's share of an execution's usage."""

    __tablename__ = "token_usage_credentials"

    usage_execution_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("token_usage_executions.id"),
        nullable=False,
        index=True,
    )
    workspace_id: Mapped[str] = mapped_column(UUID(as_uuid=False), nullable=False)
    organization_id: Mapped[str] = mapped_column(UUID(as_uuid=False), nullable=False, index=True)
    user_id: Mapped[str | None] = mapped_column(UUID(as_uuid=False), nullable=True)
    credential_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    credential_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    model: Mapped[str | None] = mapped_column(String(255), nullable=True)
    usage_count: Mapped[int] = mapped_column(Integer, server_default="0", default=0, nullable=False)
    usage_breakdown: Mapped[str | None] = mapped_column(Text, nullable=True)
