from .drop_service import DropService, DropStatus, classify_drop
from .drop_notification_service import DropNotificationService
from .email_service import EmailService
from .inventory_service import InventoryService
from .low_stock_alert_service import LowStockAlertService
from .order_service import OrderService
from .payment_service import PaymentService
from .reservation_service import ReservationPolicy, ReservationService

__all__ = [
    "DropService",
    "DropStatus",
    "classify_drop",
    "DropNotificationService",
    "EmailService",
    "InventoryService",
    "LowStockAlertService",
    "OrderService",
    "PaymentService",
    "ReservationPolicy",
    "ReservationService",
]
