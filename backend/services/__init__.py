from .notification_hub import NotificationHub, Notification, get_notification_hub, user_group, EMAIL_STATUS_EVENT

__all__ = [
    'NotificationHub',
    'Notification',
    'get_notification_hub',
    'user_group',
    'EMAIL_STATUS_EVENT',
]
