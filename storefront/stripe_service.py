import stripe

from storefront.config import get_settings

_http_clients = {}


def http_client(timeout):
    """One pooled client per timeout value, shared by every gateway call."""
    client = _http_clients.get(timeout)
    if client is None:
        client = _http_clients[timeout] = stripe.RequestsClient(timeout=timeout)
    return client


def configure():
    settings = get_settings()
    stripe.api_key = settings.stripe_secret_key
    stripe.default_http_client = http_client(settings.gateway_timeout)
    stripe.max_network_retries = 0


def create_checkout_session(*, line_items, success_url, cancel_url, metadata,
                            customer_email=None, idempotency_key=None):
    configure()
    return stripe.checkout.Session.create(
        mode="payment",
        payment_method_types=["card"],
        line_items=line_items,
        success_url=success_url,
        cancel_url=cancel_url,
        customer_email=customer_email,
        metadata=metadata,
        idempotency_key=idempotency_key
    )


def refund_payment(payment_intent_id: str, reason: str = None, idempotency_key: str = None):
    configure()
    return stripe.Refund.create(
        payment_intent=payment_intent_id,
        metadata={"reason": reason} if reason else None,
        idempotency_key=idempotency_key
    )


def construct_event(payload: bytes, signature: str):
    return stripe.Webhook.construct_event(
        payload,
        signature,
        get_settings().stripe_webhook_secret
    )
