from tokenledger.models.base import AuditMixin, Base, CreatedAtMixin, UUIDPrimaryKeyMixin
from tokenledger.models.credential import Credential
from tokenledger.models.credit_transaction import CreditTransactionType, WorkspaceCreditTransaction
from tokenledger.models.token_usage import FlowType, TokenUsageCredential, TokenUsageExecution
from tokenledger.models.workspace import WorkspaceUser

__all__ = [
    "Base",
    "UUIDPrimaryKeyMixin",
    "CreatedAtMixin",
    "AuditMixin",
    "Credential",
    "CreditTransactionType",
    "FlowType",
    "TokenUsageCredential",
    "TokenUsageExecution",
    "WorkspaceCreditTransaction",
    "WorkspaceUser",
]
