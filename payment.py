"""
Midtrans Snap integration

`SnapClient` creates transactions on the hosted gateway using the server key
(HTTP basic auth, key as username and an empty password). `SnapWidget`
prepares the handoff the browser needs to open the Snap popup for a token.
"""
import logging
import os
import time
from typing import Any, Dict, Optional

import requests

logger = logging.getLogger(__name__)

SANDBOX_API_URL = "https://app.sandbox.midtrans.com"
PRODUCTION_API_URL = "https://app.midtrans.com"
SANDBOX_SNAP_JS = "https://app.sandbox.midtrans.com/snap/snap.js"
PRODUCTION_SNAP_JS = "https://app.midtrans.com/snap/snap.js"


class PaymentError(Exception):
    pass


def is_production() -> bool:
    return os.getenv("MIDTRANS_IS_PRODUCTION", "false").lower() in ("1", "true", "yes")


def gateway_order_id() -> str:
    return "order-%d" % int(time.time() * 1000)


def build_transaction(name: str, email: str, amount: Any, order_id: str) -> Dict[str, Any]:
    return {
        "transaction_details": {
            "order_id": order_id,
            "gross_amount": amount,
        },
        "customer_details": {
            "first_name": name,
            "email": email,
        },
        "item_details": [
            {
                "id": "fixie001",
                "price": amount,
                "quantity": 1,
                "name": "FixieStore Order",
            }
        ],
    }


def extract_token(data: Dict[str, Any]) -> Optional[str]:
    """Pick the Snap token from a gateway response; `token` wins over `snap_token`."""
    if not isinstance(data, dict):
        return None
    return data.get("token") or data.get("snap_token") or None


class SnapClient:
    def __init__(self, server_key: Optional[str] = None, base_url: Optional[str] = None,
                 timeout: Optional[float] = None, session: Optional[requests.Session] = None):
        self.server_key = server_key if server_key is not None else os.getenv("MIDTRANS_SERVER_KEY", "")
        self.base_url = (base_url or (PRODUCTION_API_URL if is_production() else SANDBOX_API_URL)).rstrip("/")
        self.timeout = timeout if timeout is not None else float(os.getenv("MIDTRANS_TIMEOUT", "30"))
        self.session = session or requests.Session()

    @property
    def transactions_url(self) -> str:
        return f"{self.base_url}/snap/v1/transactions"

    def create_transaction(self, name: str, email: str, amount: Any) -> Dict[str, Any]:
        """Forward a transaction to the gateway and return its JSON unmodified.

        Raises PaymentError on transport failure or an unparseable body. The
        gateway's own error responses are JSON too and are returned as-is.
        """
        data, _ = self._post(name, email, amount)
        return data

    def request_token(self, name: str, email: str, amount: Any) -> Dict[str, Any]:
        data, status = self._post(name, email, amount)
        if not 200 <= status < 300:
            logger.warning("Gateway rejected transaction (HTTP %s): %s", status, data)
            raise PaymentError("Failed to request payment token")
        return data

    def _post(self, name, email, amount):
        order_id = gateway_order_id()
        payload = build_transaction(name, email, amount, order_id)
        try:
            response = self.session.post(
                self.transactions_url,
                json=payload,
                auth=(self.server_key, ""),
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
            data = response.json()
        except (requests.RequestException, ValueError) as exc:
            logger.exception("Snap transaction %s failed", order_id)
            raise PaymentError("Failed to request payment token") from exc
        logger.info("Snap response for %s: %s", order_id, data)
        return data, response.status_code


class SnapWidget:
    """Hands a Snap token to the browser runtime that renders the payment popup."""

    def __init__(self, client_key: Optional[str] = None):
        self.client_key = client_key if client_key is not None else os.getenv("MIDTRANS_CLIENT_KEY", "")

    @property
    def available(self) -> bool:
        return bool(self.client_key)

    def pay(self, token: str, order_id: str, redirect_url: Optional[str] = None) -> Dict[str, Any]:
        if not self.available:
            raise PaymentError("Payment widget is not available")
        return {
            "token": token,
            "redirect_url": redirect_url,
            "client_key": self.client_key,
            "snap_js_url": PRODUCTION_SNAP_JS if is_production() else SANDBOX_SNAP_JS,
            "order_id": order_id,
        }
