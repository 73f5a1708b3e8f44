from django.conf import settings

from .constants import SUBSCRIPTIONS


def get_setting(key: str, default=None):
    """Project settings (settings.SUBSCRIPTIONS) win over the app's built-in constants."""
    overrides = getattr(settings, "SUBSCRIPTIONS", None) or {}
    if key in overrides:
        return overrides[key]
    return SUBSCRIPTIONS.get(key, default)


def default_provider() -> str:
    return (get_setting("DEFAULT_PROVIDER") or "stripe").lower().strip()


def default_currency() -> str:
    return (get_setting("CURRENCY") or "USD").upper()
