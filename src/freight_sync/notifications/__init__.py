"""
Notification feed: message polling, merging and read-state reconciliation.
"""

from .center import NotificationCenter
from .merger import NotificationMerger, unread_count
from .models import NotificationItem
from .poller import NotificationWatermarkPoller
from .reconciler import ReadStateReconciler

__all__ = [
    "NotificationCenter",
    "NotificationItem",
    "NotificationMerger",
    "NotificationWatermarkPoller",
    "ReadStateReconciler",
    "unread_count",
]
