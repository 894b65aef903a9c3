import json
import logging
from typing import Any, Dict, List, Optional

import stripe
from starlette.concurrency import run_in_threadpool

from shared.utils import settings, ConfigurationException

logger = logging.getLogger("checkout-service")


def to_plain_dict(obj: Any) -> Dict[str, Any]:
    """
    Convert Stripe objects / mappings into a plain dict (best-effort).
    """
    if obj is None:
        return {}
    if isinstance(obj, dict) and not hasattr(obj, "to_dict_recursive") and not hasattr(obj, "to_dict"):
        return obj
    for name in ("to_dict_recursive", "to_dict"):
        fn = getattr(obj, name, None)
        if callable(fn):
            return fn()
    return dict(obj)


class StripePayments:
    """Thin async facade over the stripe client library."""

    def __init__(self, secret_key: Optional[str]):
        self.secret_key = secret_key

    def _api_key(self) -> str:
        if not self.secret_key:
            raise ConfigurationException(
                "Server configuration error",
                message="Stripe secret key not configured. Set STRIPE_SECRET_KEY in environment variables.",
            )
        return self.secret_key

    async def create_checkout_session(
        self,
        line_items: List[dict],
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
        customer_email: Optional[str] = None,
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "payment_method_types": ["card"],
            "line_items": line_items,
            "mode": "payment",
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
        }
        if customer_email:
            params["customer_email"] = customer_email
            params["payment_intent_data"] = {"receipt_email": customer_email}

        session = await run_in_threadpool(
            stripe.checkout.Session.create, api_key=self._api_key(), **params
        )
        return to_plain_dict(session)

    async def retrieve_session(self, session_id: str, expand: Optional[List[str]] = None) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {"api_key": self._api_key()}
        if expand:
            kwargs["expand"] = expand
        session = await run_in_threadpool(stripe.checkout.Session.retrieve, session_id, **kwargs)
        return to_plain_dict(session)

    @staticmethod
    def verify_webhook(payload: bytes, signature: str, secret: str) -> Dict[str, Any]:
        """
        Check the signature header against the raw body and return the event.

        Raises stripe.SignatureVerificationError on mismatch and ValueError
        when the verified body is not JSON.
        """
        stripe.WebhookSignature.verify_header(
            payload.decode("utf-8"), signature, secret, stripe.Webhook.DEFAULT_TOLERANCE
        )
        return json.loads(payload)


def get_payments() -> StripePayments:
    return StripePayments(settings.STRIPE_SECRET_KEY)


# --- Publishable key ---
def _key_mode(key: Optional[str], test_prefix: str, live_prefix: str) -> str:
    if key and key.startswith(test_prefix):
        return "test"
    if key and key.startswith(live_prefix):
        return "live"
    return "unknown"


def _mismatch(message: str) -> ConfigurationException:
    return ConfigurationException("Configuration error: Key mode mismatch", message=message)


def resolve_publishable_key(
    secret_key: Optional[str],
    publishable_key: Optional[str],
    publishable_key_test: Optional[str],
) -> str:
    """Pick the publishable key whose mode (test/live) matches the secret key."""
    secret_mode = _key_mode(secret_key, "sk_test_", "sk_live_")
    selected = None

    if secret_mode == "test":
        if publishable_key_test:
            if not publishable_key_test.startswith("pk_test_"):
                raise ConfigurationException(
                    "Configuration error: Invalid test key",
                    message="STRIPE_PUBLISHABLE_KEY_TEST must start with pk_test_. Please check your environment variables.",
                )
            selected = publishable_key_test
        elif publishable_key and publishable_key.startswith("pk_test_"):
            selected = publishable_key
        else:
            raise _mismatch(
                "Your STRIPE_SECRET_KEY is in test mode, but no test publishable key is configured. "
                "Set STRIPE_PUBLISHABLE_KEY_TEST=pk_test_... in your environment variables."
            )
    elif secret_mode == "live":
        if publishable_key and publishable_key.startswith("pk_live_"):
            selected = publishable_key
        else:
            raise _mismatch(
                "Your STRIPE_SECRET_KEY is in live mode, but STRIPE_PUBLISHABLE_KEY is not a live key. "
                "Set STRIPE_PUBLISHABLE_KEY=pk_live_... in your environment variables."
            )
    else:
        selected = publishable_key_test or publishable_key
        if selected:
            logger.warning("Could not detect secret key mode; using first configured publishable key")

    if not selected:
        raise ConfigurationException(
            "Server configuration error",
            message="Stripe publishable key not configured. Set STRIPE_PUBLISHABLE_KEY or "
                    "STRIPE_PUBLISHABLE_KEY_TEST in environment variables",
        )

    publishable_mode = _key_mode(selected, "pk_test_", "pk_live_")
    if "unknown" not in (secret_mode, publishable_mode) and secret_mode != publishable_mode:
        raise _mismatch(
            f"Secret key is {secret_mode} mode but publishable key is {publishable_mode} mode. They must match."
        )
    return selected
