from imobcrm.notifications.gateway import (
    DeliveryResult,
    InstanceRef,
    NotificationGateway,
    WebhookWhatsAppGateway,
    get_gateway,
    set_gateway,
)

__all__ = [
    "DeliveryResult",
    "InstanceRef",
    "NotificationGateway",
    "WebhookWhatsAppGateway",
    "get_gateway",
    "set_gateway",
]
