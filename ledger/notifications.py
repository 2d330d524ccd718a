import logging
from typing import Optional
from uuid import UUID, uuid4

from .errors import LedgerServiceError
from .models import Notification, NotificationType
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)


def notify(
    storage: InMemoryStorage,
    user_id: UUID,
    notification_type: NotificationType,
    message: str,
    loan_id: Optional[UUID] = None,
    repayment_id: Optional[UUID] = None,
) -> Optional[Notification]:
    """Record a notification. Losing one is not a ledger failure, so errors are logged only."""
    row = {
        "id": uuid4(),
        "user_id": user_id,
        "loan_id": loan_id,
        "repayment_id": repayment_id,
        "notification_type": notification_type,
        "message": message,
        "is_read": False,
        "created_at": storage.now(),
    }
    try:
        return Notification(**storage.insert("notifications", row))
    except LedgerServiceError as e:
        logger.warning("Dropped %s notification for user %s: %s", notification_type.value, user_id, e)
        return None
