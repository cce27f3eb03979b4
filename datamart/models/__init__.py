from datamart.models.audit_log import AuditLog
from datamart.models.bundle import Bundle
from datamart.models.failed_job import FailedJob
from datamart.models.order import Order
from datamart.models.transaction import Transaction
from datamart.models.user import User

__all__ = [
    "AuditLog",
    "Bundle",
    "FailedJob",
    "Order",
    "Transaction",
    "User",
]
