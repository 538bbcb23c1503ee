"""Collaborators shared by routers, resolved from ``app.state``.

The app lifespan puts the configured notifier (and card gateway) on
``app.state``; tests override these dependencies with fakes.
"""

from fastapi import Request

from src.core.config import settings
from src.core.notifications import LogNotifier, Notifier
from src.integrations.paypal.client import PayPalGateway, PaymentGateway


def get_notifier(request: Request) -> Notifier:
    return getattr(request.app.state, "notifier", None) or LogNotifier()


def get_gateway(request: Request) -> PaymentGateway:
    gateway = getattr(request.app.state, "gateway", None)
    if gateway is None:
        gateway = PayPalGateway.from_settings(settings)
    return gateway
