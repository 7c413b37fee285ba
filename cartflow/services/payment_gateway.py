"""
Payment authorization collaborator.

Gateways expose authorize(amount, payment_method_ref, idempotency_key) and
void(reference). A decline is a normal result; an unreachable or slow
gateway raises PaymentGatewayError.
"""
import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

import requests
from flask import Flask, current_app

logger = logging.getLogger(__name__)


@dataclass
class AuthorizationResult:
    approved: bool
    reference: Optional[str] = None
    reason: Optional[str] = None


class PaymentGatewayError(Exception):
    """Gateway could not be reached or answered with garbage."""


class PaymentTimeout(PaymentGatewayError):
    """Gateway did not answer within the configured timeout."""


class HttpPaymentGateway:
    """JSON-over-HTTP payment processor client."""

    def __init__(self, base_url: str, api_key: Optional[str] = None, timeout: float = 10):
        if not base_url:
            raise ValueError("PAYMENT_GATEWAY_URL is required")
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.headers = {'Content-Type': 'application/json'}
        if api_key:
            self.headers['Authorization'] = f'Bearer {api_key}'

    def _post(self, path: str, payload: dict) -> dict:
        url = f"{self.base_url}{path}"
        try:
            response = requests.post(url, json=payload, headers=self.headers, timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except requests.Timeout as e:
            logger.warning(f"[PAYMENT] Timeout calling {url}: {e}")
            raise PaymentTimeout(str(e)) from e
        except requests.HTTPError as e:
            logger.error(f"[PAYMENT] HTTP {e.response.status_code} from {url}: {e.response.text[:200]}")
            raise PaymentGatewayError(f"Gateway answered {e.response.status_code}") from e
        except (requests.RequestException, ValueError) as e:
            logger.error(f"[PAYMENT] Error calling {url}: {e}")
            raise PaymentGatewayError(str(e)) from e

    def authorize(self, amount: Decimal, payment_method_ref: str, idempotency_key: Optional[str] = None) -> AuthorizationResult:
        """
        Ask the processor to hold amount on the given payment method.

        Raises:
            PaymentTimeout: no answer within the timeout.
            PaymentGatewayError: gateway unreachable or erroring.
        """
        data = self._post('/authorizations', {
            'amount': str(amount),
            'payment_method_ref': payment_method_ref,
            'idempotency_key': idempotency_key,
        })
        result = AuthorizationResult(
            approved=bool(data.get('approved')),
            reference=data.get('reference'),
            reason=data.get('reason'),
        )
        logger.info(f"[PAYMENT] authorize amount={amount} approved={result.approved} ref={result.reference}")
        return result

    def void(self, reference: str) -> None:
        """Release a previously granted authorization."""
        self._post(f'/authorizations/{reference}/void', {})
        logger.info(f"[PAYMENT] voided {reference}")


class CashOnDeliveryGateway:
    """Collects on delivery: every authorization is approved."""

    def authorize(self, amount: Decimal, payment_method_ref: str, idempotency_key: Optional[str] = None) -> AuthorizationResult:
        reference = f"COD-{uuid.uuid4().hex[:12].upper()}"
        logger.info(f"[PAYMENT] cash on delivery amount={amount} ref={reference}")
        return AuthorizationResult(approved=True, reference=reference)

    def void(self, reference: str) -> None:
        logger.info(f"[PAYMENT] cash on delivery {reference} voided")


def init_payment_gateway(app: Flask) -> None:
    """Select the gateway from configuration and register it on the app."""
    url = app.config.get('PAYMENT_GATEWAY_URL')
    if url:
        gateway = HttpPaymentGateway(
            url,
            api_key=app.config.get('PAYMENT_GATEWAY_API_KEY'),
            timeout=app.config.get('PAYMENT_TIMEOUT_SECONDS', 10),
        )
    else:
        gateway = CashOnDeliveryGateway()

    app.extensions['payment_gateway'] = gateway
    app.logger.info(f"[PAYMENT] Using {type(gateway).__name__}")


def get_payment_gateway():
    """Get the gateway registered on the current app."""
    gateway = current_app.extensions.get('payment_gateway')
    if gateway is None:
        raise RuntimeError("Payment gateway not initialized.")
    return gateway


def void_payment(gateway, payment_reference: str) -> bool:
    """Void an authorization. Failures are logged for manual follow-up."""
    try:
        gateway.void(payment_reference)
        return True
    except PaymentGatewayError:
        logger.exception(f"[PAYMENT] could not void {payment_reference}")
        return False
