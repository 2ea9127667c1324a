from __future__ import annotations

from typing import Any, Dict, List, Optional

import stripe

from utils.settings import Settings


def stripe_to_dict(obj: Any) -> Dict[str, Any]:
    """Convert Stripe objects to plain dicts for safer access."""
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj

    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        result = to_dict()
        if isinstance(result, dict):
            return result

    try:
        return dict(obj)
    except (TypeError, ValueError):
        return {}


def stripe_get(obj: Any, key: str) -> Any:
    """Fetch a key from Stripe objects, dicts, or plain attrs."""
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(key)
    getter = getattr(obj, "get", None)
    if callable(getter):
        return getter(key)
    return getattr(obj, key, None)


def stripe_list_data(result: Any) -> List[Any]:
    data = stripe_get(result, "data")
    return list(data or [])


class PaymentProvider:
    """Request-facing handle on the Stripe API.

    Wraps an injected ``stripe.StripeClient`` so no code path depends on the
    module-level ``stripe.api_key``. One instance is built per process and
    shared across requests; it holds no per-request state.
    """

    def __init__(
        self,
        client: Optional[stripe.StripeClient],
        *,
        webhook_secret: Optional[str] = None,
        webhook_tolerance: int = stripe.Webhook.DEFAULT_TOLERANCE,
    ) -> None:
        self._client = client
        self.webhook_secret = webhook_secret
        self.webhook_tolerance = webhook_tolerance

    @property
    def configured(self) -> bool:
        return self._client is not None

    @property
    def _api(self) -> Any:
        if self._client is None:
            raise stripe.AuthenticationError("Stripe API key is not configured.")
        # Newer SDKs namespace the v1 resources under ``client.v1``.
        return getattr(self._client, "v1", self._client)

    def retrieve_session(self, session_id: str) -> Any:
        return self._api.checkout.sessions.retrieve(session_id)

    def list_customers(self, email: str) -> List[Any]:
        return stripe_list_data(self._api.customers.list(params={"email": email}))

    def list_subscriptions(self, customer_id: str, status: str = "active") -> List[Any]:
        return stripe_list_data(
            self._api.subscriptions.list(params={"customer": customer_id, "status": status})
        )

    def create_checkout_session(
        self,
        *,
        price_id: str,
        client_reference_id: str,
        success_url: str,
        cancel_url: str,
        customer_email: Optional[str] = None,
    ) -> Any:
        params: Dict[str, Any] = {
            "mode": "subscription",
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference_id": client_reference_id,
            "line_items": [{"price": price_id, "quantity": 1}],
            "metadata": {"client_reference_id": client_reference_id},
        }
        if customer_email:
            params["customer_email"] = customer_email
        return self._api.checkout.sessions.create(params=params)

    def verify_signature(self, raw_body: bytes, signature_header: str) -> None:
        """Check the ``Stripe-Signature`` header against the raw body.

        Only the signature is checked here; the body is not decoded as JSON.
        Raises ``stripe.SignatureVerificationError`` on mismatch.
        """
        if not self.webhook_secret:
            raise ValueError("Stripe webhook secret is not configured.")
        payload = raw_body.decode("utf-8") if isinstance(raw_body, bytes) else raw_body
        stripe.WebhookSignature.verify_header(
            payload,
            signature_header,
            self.webhook_secret,
            tolerance=self.webhook_tolerance,
        )


def build_payment_provider(settings: Settings) -> PaymentProvider:
    client: Optional[stripe.StripeClient] = None
    if settings.stripe_secret_key:
        client = stripe.StripeClient(
            settings.stripe_secret_key,
            http_client=stripe.RequestsClient(timeout=settings.stripe_timeout_seconds),
            max_network_retries=0,
        )
    return PaymentProvider(
        client,
        webhook_secret=settings.stripe_webhook_secret,
        webhook_tolerance=settings.stripe_webhook_tolerance,
    )
