"""
Transbank service - Webpay Plus and OneClick Mall REST client
Every provider failure leaves this module as a GatewayError
"""

import logging
import re
import secrets
import time
from typing import Any, Optional, Protocol

import httpx

from ... import config
from ...exceptions import GatewayError
from .schemas import (
    ChargeResult,
    InscriptionRemoved,
    InscriptionResult,
    InscriptionStarted,
    TransactionConfirmation,
    TransactionCreated,
)

logger = logging.getLogger(__name__)

TRANSBANK_API_URLS = {
    "integration": "https://webpay3gint.transbank.cl",
    "production": "https://webpay3g.transbank.cl",
}

WEBPAY_TRANSACTIONS_PATH = "/rswebpaytransaction/api/webpay/v1.2/transactions"
ONECLICK_INSCRIPTIONS_PATH = "/rswebpaytransaction/api/oneclick/v1.2/inscriptions"
ONECLICK_TRANSACTIONS_PATH = "/rswebpaytransaction/api/oneclick/v1.2/transactions"

# Transbank rejects buy orders longer than this
BUY_ORDER_MAX_LENGTH = 26

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def normalize_transbank_environment(env: Optional[str]) -> str:
    """Normalize Transbank environment value to expected format"""
    value = (env or "integration").strip().lower()
    if value in {"production", "prod", "live"}:
        return "production"
    if value in {"integration", "test", "sandbox", "staging", "dev", "development"}:
        return "integration"
    logger.warning(f"Unknown TRANSBANK_ENVIRONMENT '{env}', defaulting to integration")
    return "integration"


def _to_snake_case(key: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", key).lower()


def normalize_gateway_response(payload: Any) -> Any:
    """
    Map a provider response to snake_case keys, recursively.

    Transbank and its SDKs have been observed to return either
    `response_code`/`tbk_user` or `responseCode`/`tbkUser`; both shapes
    resolve to the same canonical dict.
    """
    if isinstance(payload, dict):
        return {_to_snake_case(str(k)): normalize_gateway_response(v) for k, v in payload.items()}
    if isinstance(payload, list):
        return [normalize_gateway_response(item) for item in payload]
    return payload


def generate_buy_order(prefix: str = "BF") -> str:
    """Generate a unique buy order within Transbank's 26-character limit"""
    suffix = f"{int(time.time())}{secrets.token_hex(3).upper()}"
    return f"{prefix}{suffix}"[:BUY_ORDER_MAX_LENGTH]


def _parse_response_code(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _parse_amount(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def extract_last4(card_number: Optional[str]) -> Optional[str]:
    """Reduce a masked card number (XXXXXXXXXXXX6623) to its last four digits"""
    if not card_number:
        return None
    digits = re.sub(r"\D", "", str(card_number))
    return digits[-4:] if digits else None


class PaymentGateway(Protocol):
    """Capabilities the billing pipeline needs from a payment provider"""

    async def create_transaction(
        self, order_id: str, payer_identifier: str, amount: int, return_url: str
    ) -> TransactionCreated: ...

    async def confirm_transaction(self, token: str) -> TransactionConfirmation: ...

    async def get_transaction_status(self, token: str) -> TransactionConfirmation: ...

    async def start_inscription(self, username: str, email: str, return_url: str) -> InscriptionStarted: ...

    async def finish_inscription(self, token: str) -> InscriptionResult: ...

    async def charge_inscribed_card(
        self, payer_identifier: str, card_token: str, order_id: str, amount: int
    ) -> ChargeResult: ...

    async def remove_inscription(self, card_token: str, payer_identifier: str) -> InscriptionRemoved: ...


class TransbankGateway:
    """Transbank REST client for Webpay Plus (one-time) and OneClick Mall (card on file)"""

    def __init__(
        self,
        commerce_code: str,
        api_key: str,
        child_commerce_code: str,
        webpay_commerce_code: Optional[str] = None,
        environment: str = "integration",
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        if not commerce_code or not api_key:
            raise ValueError("Transbank commerce code and API key are required")

        self.commerce_code = commerce_code
        self.api_key = api_key
        self.child_commerce_code = child_commerce_code
        self.webpay_commerce_code = webpay_commerce_code or commerce_code
        self.environment = normalize_transbank_environment(environment)
        self.base_url = TRANSBANK_API_URLS[self.environment]

        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

        logger.info(f"Transbank client initialized (env={self.environment}, commerce={self.commerce_code})")

    @classmethod
    def from_config(cls, http_client: Optional[httpx.AsyncClient] = None) -> "TransbankGateway":
        """Build the gateway once from environment configuration"""
        return cls(
            commerce_code=config.TRANSBANK_COMMERCE_CODE,
            api_key=config.TRANSBANK_API_KEY,
            child_commerce_code=config.TRANSBANK_CHILD_COMMERCE_CODE,
            webpay_commerce_code=config.TRANSBANK_WEBPAY_COMMERCE_CODE,
            environment=config.TRANSBANK_ENVIRONMENT,
            timeout=config.TRANSBANK_TIMEOUT_SECONDS,
            http_client=http_client,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _headers(self, commerce_code: str) -> dict:
        return {
            "Tbk-Api-Key-Id": commerce_code,
            "Tbk-Api-Key-Secret": self.api_key,
            "Content-Type": "application/json",
        }

    async def _request(
        self, method: str, path: str, commerce_code: str, payload: Optional[dict] = None
    ) -> dict:
        """Send one request and return the normalized JSON body"""
        try:
            response = await self._client.request(
                method,
                f"{self.base_url}{path}",
                json=payload,
                headers=self._headers(commerce_code),
            )
        except httpx.HTTPError as e:
            logger.error(f"❌ Transbank {method} {path} failed: {e}")
            raise GatewayError(f"Transbank request failed: {e}") from e

        if response.status_code not in [200, 201, 204]:
            error_detail = self._error_detail(response)
            logger.error(f"❌ Transbank API error {response.status_code} on {method} {path}: {error_detail}")
            raise GatewayError(
                f"Transbank API error ({response.status_code}): {error_detail}",
                status_code=response.status_code,
            )

        if response.status_code == 204 or not response.content:
            return {}

        try:
            body = response.json()
        except ValueError as e:
            raise GatewayError(
                "Malformed Transbank response: body is not JSON", status_code=response.status_code
            ) from e

        if not isinstance(body, dict):
            raise GatewayError(
                "Malformed Transbank response: expected a JSON object", status_code=response.status_code
            )

        return normalize_gateway_response(body)

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        try:
            body = normalize_gateway_response(response.json())
        except ValueError:
            return response.text or "no response body"
        if isinstance(body, dict) and body.get("error_message"):
            return str(body["error_message"])
        return response.text or "no response body"

    # ------------------------------------------------------------------
    # Webpay Plus
    # ------------------------------------------------------------------

    async def create_transaction(
        self, order_id: str, payer_identifier: str, amount: int, return_url: str
    ) -> TransactionCreated:
        """Create a one-time Webpay Plus transaction"""
        body = await self._request(
            "POST",
            WEBPAY_TRANSACTIONS_PATH,
            self.webpay_commerce_code,
            {
                "buy_order": order_id,
                "session_id": payer_identifier,
                "amount": amount,
                "return_url": return_url,
            },
        )

        token = body.get("token")
        url = body.get("url")
        if not token or not url:
            raise GatewayError("Malformed Transbank response: missing token or url")

        logger.info(f"✅ Webpay transaction created: {order_id}")
        return TransactionCreated(token=token, redirect_url=url)

    def _confirmation_from_body(self, body: dict) -> TransactionConfirmation:
        status = body.get("status")
        card_detail = body.get("card_detail") or {}
        authorization_code = body.get("authorization_code")
        return TransactionConfirmation(
            authorized=status == "AUTHORIZED",
            status=status,
            order_id=body.get("buy_order"),
            amount=_parse_amount(body.get("amount")),
            authorization_code=str(authorization_code) if authorization_code is not None else None,
            response_code=_parse_response_code(body.get("response_code")),
            card_last4=extract_last4(card_detail.get("card_number")),
            details={k: v for k, v in body.items() if k != "card_detail"},
        )

    async def confirm_transaction(self, token: str) -> TransactionConfirmation:
        """Commit a Webpay Plus transaction after the payer returns"""
        body = await self._request("PUT", f"{WEBPAY_TRANSACTIONS_PATH}/{token}", self.webpay_commerce_code)
        confirmation = self._confirmation_from_body(body)

        if confirmation.authorized:
            logger.info(f"✅ Webpay transaction authorized: {confirmation.order_id}")
        else:
            logger.warning(f"⚠️ Webpay transaction not authorized: status={confirmation.status}")
        return confirmation

    async def get_transaction_status(self, token: str) -> TransactionConfirmation:
        """Look up a Webpay Plus transaction (used for reconciliation)"""
        body = await self._request("GET", f"{WEBPAY_TRANSACTIONS_PATH}/{token}", self.webpay_commerce_code)
        return self._confirmation_from_body(body)

    # ------------------------------------------------------------------
    # OneClick Mall
    # ------------------------------------------------------------------

    async def start_inscription(self, username: str, email: str, return_url: str) -> InscriptionStarted:
        """Begin card tokenization for future automatic charges"""
        body = await self._request(
            "POST",
            ONECLICK_INSCRIPTIONS_PATH,
            self.commerce_code,
            {"username": username, "email": email, "response_url": return_url},
        )

        token = body.get("token")
        url = body.get("url_webpay")
        if not token or not url:
            raise GatewayError("Malformed Transbank response: missing token or url_webpay")

        logger.info(f"✅ OneClick inscription started for {username}")
        return InscriptionStarted(token=token, redirect_url=url)

    async def finish_inscription(self, token: str) -> InscriptionResult:
        """Finish a card inscription; success only on response code 0"""
        body = await self._request("PUT", f"{ONECLICK_INSCRIPTIONS_PATH}/{token}", self.commerce_code)

        response_code = _parse_response_code(body.get("response_code"))
        if response_code != 0:
            logger.warning(f"⚠️ OneClick inscription rejected: response_code={response_code}")
            return InscriptionResult(success=False, response_code=response_code)

        authorization_code = body.get("authorization_code")
        logger.info("✅ OneClick inscription finished")
        return InscriptionResult(
            success=True,
            card_token=body.get("tbk_user"),
            authorization_code=str(authorization_code) if authorization_code is not None else None,
            card_brand=body.get("card_type"),
            masked_card_number=extract_last4(body.get("card_number")),
            response_code=response_code,
        )

    async def charge_inscribed_card(
        self, payer_identifier: str, card_token: str, order_id: str, amount: int
    ) -> ChargeResult:
        """Charge a card on file through the OneClick Mall child store"""
        child_order_id = f"{order_id[:BUY_ORDER_MAX_LENGTH - 2]}-1"
        body = await self._request(
            "POST",
            ONECLICK_TRANSACTIONS_PATH,
            self.commerce_code,
            {
                "username": payer_identifier,
                "tbk_user": card_token,
                "buy_order": order_id,
                "details": [
                    {
                        "commerce_code": self.child_commerce_code,
                        "buy_order": child_order_id,
                        "amount": amount,
                        "installments_number": 1,
                    }
                ],
            },
        )

        details = body.get("details") or []
        detail = details[0] if details and isinstance(details[0], dict) else {}
        response_code = _parse_response_code(
            detail.get("response_code") if "response_code" in detail else body.get("response_code")
        )
        card_detail = body.get("card_detail") or {}
        authorization_code = detail.get("authorization_code")

        result = ChargeResult(
            success=response_code == 0,
            authorization_code=str(authorization_code) if authorization_code is not None else None,
            order_id=body.get("buy_order") or order_id,
            amount=_parse_amount(detail.get("amount", amount)),
            transaction_date=body.get("transaction_date"),
            response_code=response_code,
            card_last4=extract_last4(card_detail.get("card_number")),
            status=detail.get("status"),
        )

        if result.success:
            logger.info(f"✅ OneClick charge authorized: {order_id} amount={amount}")
        else:
            logger.warning(f"⚠️ OneClick charge rejected: {order_id} response_code={response_code}")
        return result

    async def remove_inscription(self, card_token: str, payer_identifier: str) -> InscriptionRemoved:
        """Delete a card on file"""
        await self._request(
            "DELETE",
            ONECLICK_INSCRIPTIONS_PATH,
            self.commerce_code,
            {"tbk_user": card_token, "username": payer_identifier},
        )
        logger.info(f"✅ OneClick inscription removed for {payer_identifier}")
        return InscriptionRemoved(success=True)
