from .chairs import Chair, DeviceStatus
from .payments import Payment, PaymentStatus, NotificationState, ChairSession, TERMINAL_STATUSES
from .audit import AuditLog

__all__ = [
    'Chair', 'DeviceStatus',
    'Payment', 'PaymentStatus', 'NotificationState', 'ChairSession', 'TERMINAL_STATUSES',
    'AuditLog',
]
