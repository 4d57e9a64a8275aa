# Import every model so Base.metadata is complete for create_all / Alembic.
from chat_ledger.models.ledger import ApiUsage, Balance, LedgerTransaction, TransactionStatus, TransactionType
from chat_ledger.models.payment_event import PaymentEvent, PaymentEventStatus
from chat_ledger.models.user import User

__all__ = [
    "ApiUsage",
    "Balance",
    "LedgerTransaction",
    "PaymentEvent",
    "PaymentEventStatus",
    "TransactionStatus",
    "TransactionType",
    "User",
]
