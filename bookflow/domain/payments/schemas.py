"""Payment gateway result schemas - canonical shapes returned by the gateway client"""

from typing import Optional

from pydantic import BaseModel


class TransactionCreated(BaseModel):
    """Webpay Plus transaction ready for the payer to complete"""

    token: str
    redirect_url: str


class TransactionConfirmation(BaseModel):
    """Outcome of committing (or looking up) a Webpay Plus transaction"""

    authorized: bool
    status: Optional[str] = None
    order_id: Optional[str] = None
    amount: Optional[int] = None
    authorization_code: Optional[str] = None
    response_code: Optional[int] = None
    card_last4: Optional[str] = None
    details: dict = {}


class InscriptionStarted(BaseModel):
    """OneClick card inscription ready for the cardholder to complete"""

    token: str
    redirect_url: str


class InscriptionResult(BaseModel):
    success: bool
    card_token: Optional[str] = None
    authorization_code: Optional[str] = None
    card_brand: Optional[str] = None
    masked_card_number: Optional[str] = None  # Last four digits only
    response_code: Optional[int] = None


class ChargeResult(BaseModel):
    """Outcome of charging a card on file"""

    success: bool
    authorization_code: Optional[str] = None
    order_id: Optional[str] = None
    amount: Optional[int] = None
    transaction_date: Optional[str] = None
    response_code: Optional[int] = None
    card_last4: Optional[str] = None
    status: Optional[str] = None


class InscriptionRemoved(BaseModel):
    success: bool
