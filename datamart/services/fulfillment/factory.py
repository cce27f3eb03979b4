from __future__ import annotations

from datamart.core.config import Settings, get_settings
from datamart.services.fulfillment.base import FulfillmentProvider
from datamart.services.fulfillment.hubnet import HubnetProvider


def get_provider_for_bundle_type(bundle_type: str, settings: Settings | None = None) -> FulfillmentProvider | None:
    """Provider that delivers this bundle type, or None for manual (Editor) fulfillment."""
    s = settings or get_settings()
    kind = (bundle_type or "").lower()
    if kind == "mtnup2u" and s.mtn_hubnet_enabled:
        return HubnetProvider(
            "mtn",
            s.hubnet_base_url,
            s.hubnet_token,
            referrer=s.hubnet_referrer,
            completes_synchronously=False,
            timeout=s.provider_timeout_seconds,
        )
    if kind == "at-ishare" and s.at_hubnet_enabled:
        return HubnetProvider(
            "at",
            s.hubnet_base_url,
            s.hubnet_token,
            completes_synchronously=True,
            timeout=s.provider_timeout_seconds,
        )
    return None
