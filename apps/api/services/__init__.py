"""
Services package for CareLink API
Contains the notification and payment lifecycle business logic
"""

from .connection_registry import ConnectionRegistry, InMemoryConnectionRegistry, Identity
from .notification_dispatcher import NotificationDispatcher
from .payment_lifecycle import PaymentLifecycleManager, ReconcileResult, ReconcileStatus

__all__ = [
    'ConnectionRegistry',
    'InMemoryConnectionRegistry',
    'Identity',
    'NotificationDispatcher',
    'PaymentLifecycleManager',
    'ReconcileResult',
    'ReconcileStatus',
]
