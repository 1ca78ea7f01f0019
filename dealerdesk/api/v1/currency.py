"""
Currency API Routes
"""
from fastapi import APIRouter, Depends

from dealerdesk.core.security import Actor, RoleChecker, get_current_actor
from dealerdesk.schemas import (
    ConversionRequest, ConversionResponse, MessageResponse,
    QuotationPayloadConversionRequest, QuotationPayloadConversionResponse
)
from dealerdesk.services.currency_service import CurrencyService, get_currency_service

router = APIRouter(prefix="/currency", tags=["Currency"])


@router.get("/rates/{code}")
def get_rate(
    code: str,
    actor: Actor = Depends(get_current_actor),
    currency_service: CurrencyService = Depends(get_currency_service),
):
    """Units of a currency per one unit of the base currency"""
    return {
        "base": currency_service.base_currency,
        "currency": code.upper(),
        "rate": currency_service.get_rate(code),
    }


@router.post("/convert", response_model=ConversionResponse)
def convert_amount(
    conversion: ConversionRequest,
    actor: Actor = Depends(get_current_actor),
    currency_service: CurrencyService = Depends(get_currency_service),
):
    return currency_service.convert(conversion.amount, conversion.from_currency, conversion.to_currency)


@router.post("/convert-quotation", response_model=QuotationPayloadConversionResponse)
def convert_quotation_payload(
    request: QuotationPayloadConversionRequest,
    actor: Actor = Depends(get_current_actor),
    currency_service: CurrencyService = Depends(get_currency_service),
):
    """Re-price a quotation payload into another currency with one snapshot rate"""
    payload, rate = currency_service.convert_quotation_payload(
        request.payload.model_dump(mode="python"), request.target_currency
    )
    return {"payload": payload, "rate": rate}


@router.get("/cache")
def get_cache_stats(
    actor: Actor = Depends(get_current_actor),
    currency_service: CurrencyService = Depends(get_currency_service),
):
    return currency_service.cache_stats()


@router.delete("/cache", response_model=MessageResponse, dependencies=[Depends(RoleChecker())])
def clear_cache(
    actor: Actor = Depends(get_current_actor),
    currency_service: CurrencyService = Depends(get_currency_service),
):
    currency_service.clear_cache()
    return {"success": True, "message": "Exchange rate cache cleared"}
