"""Push delivery to relatives' devices (FCM for Android, APNs for iOS)."""

from callpanion.integrations.push.base import (
    DeliveryResult,
    DeliveryStatus,
    Platform,
    PushBackend,
    PushBackendKind,
    PushNotification,
    PushTarget,
    select_backend,
    stringify_data,
)
from callpanion.integrations.push.dispatcher import PushDispatcher
from callpanion.integrations.push.factory import (
    build_push_dispatcher,
    get_push_dispatcher,
    reset_push_dispatcher,
)
from callpanion.integrations.push.token_cache import AccessTokenCache, CachedToken

__all__ = [
    "AccessTokenCache",
    "CachedToken",
    "DeliveryResult",
    "DeliveryStatus",
    "Platform",
    "PushBackend",
    "PushBackendKind",
    "PushDispatcher",
    "PushNotification",
    "PushTarget",
    "build_push_dispatcher",
    "get_push_dispatcher",
    "reset_push_dispatcher",
    "select_backend",
    "stringify_data",
]
