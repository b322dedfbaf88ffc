from .tracker import DeliveryStatus, DeliveryTracker, PendingDelivery

__all__ = ["DeliveryStatus", "DeliveryTracker", "PendingDelivery"]
