from importlib import import_module

from django.conf import settings

GATEWAY_MAP = {
    "stripe": "subscriptions.payment_gateway.stripe",
    "manual": "subscriptions.payment_gateway.manual",
}


def get_gateway(provider_name: str):
    """Dynamically import and return the payment gateway module."""
    provider_name = (provider_name or "").lower().strip()
    if provider_name not in GATEWAY_MAP:
        raise ValueError(f"Unsupported payment provider: {provider_name}")
    return import_module(GATEWAY_MAP[provider_name])


def get_config(provider_name: str) -> dict:
    """Credentials for the selected provider, read from Django settings."""
    provider_name = (provider_name or "").lower().strip()

    if provider_name == "stripe":
        keys = {
            "secret_key": getattr(settings, "STRIPE_SECRET_KEY", ""),
            "webhook_secret": getattr(settings, "STRIPE_WEBHOOK_SECRET", ""),
        }
    elif provider_name == "manual":
        keys = {"webhook_secret": getattr(settings, "MANUAL_WEBHOOK_SECRET", "")}
    else:
        keys = {}

    return {"provider": provider_name, **keys}


def load(provider_name: str):
    """Resolve a gateway and inject its credentials in one step."""
    gateway = get_gateway(provider_name)
    if hasattr(gateway, "configure"):
        gateway.configure(get_config(provider_name))
    return gateway
