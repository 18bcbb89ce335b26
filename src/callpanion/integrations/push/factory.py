"""Push Dispatcher Factory.

Creates the push dispatcher from configuration. A backend whose
credentials are missing is left out; dispatching to its platform then
fails with a DeliveryError, which the orchestrator records on the session.
"""

from __future__ import annotations

from callpanion.config import Settings, get_settings
from callpanion.core.logging import get_logger
from callpanion.integrations.push.base import PushBackend, PushBackendKind
from callpanion.integrations.push.dispatcher import PushDispatcher

log = get_logger(__name__)


# Singleton instance
_dispatcher: PushDispatcher | None = None


def build_push_dispatcher(settings: Settings) -> PushDispatcher:
    """Build a dispatcher with every backend that has credentials."""
    backends: dict[PushBackendKind, PushBackend] = {}

    fcm_config = settings.push.fcm
    if fcm_config.service_account_json or fcm_config.service_account_file:
        from callpanion.integrations.push.fcm import FCMBackend, load_service_account

        info = load_service_account(
            fcm_config.service_account_json,
            fcm_config.service_account_file,
        )
        if fcm_config.token_uri and not info.get("token_uri"):
            info["token_uri"] = fcm_config.token_uri
        backends[PushBackendKind.FCM] = FCMBackend(
            info,
            project_id=fcm_config.project_id or None,
            channel_id=fcm_config.android_channel_id,
        )
        log.info("FCM backend initialized", project_id=backends[PushBackendKind.FCM].project_id)
    else:
        log.warning("FCM credentials not configured, Android push disabled")

    apns_config = settings.push.apns
    if (
        apns_config.key_id
        and apns_config.team_id
        and apns_config.bundle_id
        and (apns_config.private_key or apns_config.private_key_base64)
    ):
        from callpanion.integrations.push.apns import APNsBackend, load_signing_key

        backends[PushBackendKind.APNS] = APNsBackend(
            key_id=apns_config.key_id,
            team_id=apns_config.team_id,
            signing_key=load_signing_key(
                apns_config.private_key,
                apns_config.private_key_base64,
            ),
            bundle_id=apns_config.bundle_id,
            voip_topic=apns_config.voip_topic or None,
            production=apns_config.production,
        )
        log.info(
            "APNs backend initialized",
            bundle_id=apns_config.bundle_id,
            production=apns_config.production,
        )
    else:
        log.warning("APNs credentials not configured, iOS push disabled")

    return PushDispatcher(backends)


def get_push_dispatcher() -> PushDispatcher:
    """Get the configured push dispatcher."""
    global _dispatcher

    if _dispatcher is None:
        _dispatcher = build_push_dispatcher(get_settings())
    return _dispatcher


async def reset_push_dispatcher() -> None:
    """Close and drop the dispatcher (shutdown and tests)."""
    global _dispatcher

    if _dispatcher is not None:
        await _dispatcher.close()
    _dispatcher = None
