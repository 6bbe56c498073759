"""Payment processor capability.

The rest of the code talks to Stripe only through ``PaymentProcessor``. One
implementation is picked when the process starts: ``StripeProcessor`` when a
secret key is configured, ``DisabledProcessor`` otherwise.
"""

import json
from typing import Any, Optional

import stripe

from commerce.config import Settings
from commerce.errors import AuthError, ExternalServiceError
from commerce.logs import get_logger

log = get_logger("processor")


class PaymentProcessor:
    def create_product(self, name: str, description: Optional[str], active: bool) -> str:
        raise NotImplementedError

    def update_product(
        self, product_id: str, name: str, description: Optional[str], active: bool
    ) -> None:
        raise NotImplementedError

    def create_price(self, product_id: str, unit_amount_cents: int, currency: str) -> str:
        raise NotImplementedError

    def archive_price(self, price_id: str) -> None:
        raise NotImplementedError

    def create_checkout_session(
        self,
        line_items: list[dict],
        *,
        currency: str,
        client_reference_id: str,
        metadata: dict[str, str],
        customer_email: Optional[str] = None,
    ) -> dict:
        raise NotImplementedError

    def verify_event(self, payload: bytes, signature: Optional[str]) -> dict:
        raise NotImplementedError


class DisabledProcessor(PaymentProcessor):
    """Stand-in used when no Stripe key is configured."""

    def _unavailable(self) -> ExternalServiceError:
        return ExternalServiceError("payment processor is not configured")

    def create_product(self, name, description, active):
        raise self._unavailable()

    def update_product(self, product_id, name, description, active):
        raise self._unavailable()

    def create_price(self, product_id, unit_amount_cents, currency):
        raise self._unavailable()

    def archive_price(self, price_id):
        raise self._unavailable()

    def create_checkout_session(self, line_items, *, currency, client_reference_id, metadata, customer_email=None):
        raise self._unavailable()

    def verify_event(self, payload, signature):
        raise AuthError("webhook signing secret is not configured")


class StripeProcessor(PaymentProcessor):
    def __init__(
        self,
        api_key: str,
        webhook_secret: Optional[str] = None,
        frontend_url: str = "",
        tolerance: int = 300,
    ):
        self._api_key = api_key
        self._webhook_secret = webhook_secret
        self._frontend_url = frontend_url.rstrip("/")
        self._tolerance = tolerance

    def _call(self, operation: str, fn, *args, **params) -> Any:
        try:
            return fn(*args, api_key=self._api_key, **params)
        except stripe.StripeError as exc:
            log.warning("stripe_call_failed", operation=operation, error=str(exc))
            raise ExternalServiceError(f"{operation} failed: {exc}") from exc

    def create_product(self, name, description, active):
        params: dict[str, Any] = {"name": name, "active": active}
        if description:
            params["description"] = description
        created = self._call("product.create", stripe.Product.create, **params)
        return created.id

    def update_product(self, product_id, name, description, active):
        params: dict[str, Any] = {"name": name, "active": active}
        if description is not None:
            # Stripe clears a field when sent an empty string
            params["description"] = description
        self._call("product.update", stripe.Product.modify, product_id, **params)

    def create_price(self, product_id, unit_amount_cents, currency):
        created = self._call(
            "price.create",
            stripe.Price.create,
            product=product_id,
            unit_amount=unit_amount_cents,
            currency=currency,
            active=True,
        )
        return created.id

    def archive_price(self, price_id):
        self._call("price.archive", stripe.Price.modify, price_id, active=False)

    def create_checkout_session(self, line_items, *, currency, client_reference_id, metadata, customer_email=None):
        params: dict[str, Any] = {
            "mode": "payment",
            "line_items": line_items,
            "client_reference_id": client_reference_id,
            "metadata": metadata,
            "success_url": f"{self._frontend_url}/checkout/return?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{self._frontend_url}/cart",
            "shipping_address_collection": {"allowed_countries": ["US", "CA"]},
        }
        if customer_email:
            params["customer_email"] = customer_email
        session = self._call("checkout.session.create", stripe.checkout.Session.create, **params)
        return {"id": session.id, "url": session.url}

    def verify_event(self, payload, signature):
        if not self._webhook_secret:
            raise AuthError("webhook signing secret is not configured")
        if not signature:
            raise AuthError("missing Stripe-Signature header")
        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"), signature, self._webhook_secret, self._tolerance
            )
        except stripe.SignatureVerificationError as exc:
            log.warning("webhook_signature_invalid", error=str(exc))
            raise AuthError(f"Webhook Error: {exc}") from exc
        try:
            return json.loads(payload)
        except ValueError as exc:
            raise AuthError("Webhook Error: payload is not valid JSON") from exc


def build_processor(settings: Settings) -> PaymentProcessor:
    if settings.stripe_secret_key:
        log.info("processor_selected", processor="stripe")
        return StripeProcessor(
            settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
            frontend_url=settings.frontend_url,
        )
    log.warning("processor_selected", processor="disabled")
    return DisabledProcessor()
