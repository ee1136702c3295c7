"""Payments domain - Transbank Webpay Plus and OneClick Mall client"""

from .schemas import (
    ChargeResult,
    InscriptionRemoved,
    InscriptionResult,
    InscriptionStarted,
    TransactionConfirmation,
    TransactionCreated,
)
from .transbank_service import (
    PaymentGateway,
    TransbankGateway,
    generate_buy_order,
    normalize_gateway_response,
)

__all__ = [
    "ChargeResult",
    "InscriptionRemoved",
    "InscriptionResult",
    "InscriptionStarted",
    "PaymentGateway",
    "TransactionConfirmation",
    "TransactionCreated",
    "TransbankGateway",
    "generate_buy_order",
    "normalize_gateway_response",
]
