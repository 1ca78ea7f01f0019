"""
Quotation API Routes
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import List, Optional
from datetime import datetime

from dealerdesk.core.database import get_db
from dealerdesk.core.security import Actor, RoleChecker, get_current_actor
from dealerdesk.schemas import (
    GroupByEnum, QuotationAnalyticsResponse, QuotationCountsResponse, QuotationCreate,
    QuotationDuplicateRequest, QuotationPricingUpdate, QuotationResponse, QuotationWithItems,
    ExpireResponse, MessageResponse
)
from dealerdesk.services.analytics_service import AnalyticsService
from dealerdesk.services.company_service import CompanyService
from dealerdesk.services.currency_service import CurrencyService, get_currency_service
from dealerdesk.services.quotation_service import QuotationService

router = APIRouter(prefix="/quotations", tags=["Quotations"])


@router.post("", response_model=QuotationWithItems, status_code=201)
def create_quotation(
    quotation_data: QuotationCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    currency_service: CurrencyService = Depends(get_currency_service),
):
    """Create a quotation and hold its chassis numbers"""
    company = CompanyService(db).get_profile()
    quotation = QuotationService(db, currency_service).create(quotation_data, actor.id, company)
    db.commit()
    return quotation


@router.get("", response_model=List[QuotationResponse])
async def list_quotations(
    status: Optional[str] = None,
    customer_id: Optional[int] = None,
    currency: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """List quotations"""
    return QuotationService(db).list(status, customer_id, currency, date_from, date_to)


@router.get("/stats")
async def quotation_status_counts(
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Quotation counts per status"""
    return QuotationService(db).status_counts()


@router.get("/counts", response_model=QuotationCountsResponse)
async def quotation_counts(
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Quotation counts per status, currency, customer and creator"""
    return QuotationService(db).counts()


@router.get("/search", response_model=List[QuotationResponse])
async def search_quotations(
    q: str = Query(..., min_length=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Search quotations by number, title or customer"""
    return QuotationService(db).search(q, limit)


@router.get("/expiring-soon", response_model=List[QuotationResponse])
async def quotations_expiring_soon(
    days: int = Query(3, ge=1, le=90),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Open quotations whose validity ends within the given number of days"""
    return QuotationService(db).expiring_soon(days)


@router.get("/analytics", response_model=QuotationAnalyticsResponse)
async def get_quotation_analytics(
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    group_by: GroupByEnum = GroupByEnum.DAY,
    limit: int = Query(30, ge=1, le=366),
    status: Optional[str] = None,
    customer_id: Optional[int] = None,
    created_by: Optional[str] = None,
    currency: Optional[str] = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Projected profit of quotations per status and over time"""
    return AnalyticsService(db).get_quotation_analytics(
        date_from=date_from,
        date_to=date_to,
        group_by=group_by.value,
        limit=limit,
        status=status,
        customer_id=customer_id,
        created_by=created_by,
        currency=currency,
    )


@router.post("/expire", response_model=ExpireResponse)
async def expire_overdue_quotations(
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Expire every open quotation past its validity date"""
    expired = QuotationService(db).expire_overdue()
    db.commit()
    return {"expired": len(expired), "quotation_numbers": [q.quotation_number for q in expired]}


@router.get("/number/{quotation_number}", response_model=QuotationWithItems)
async def get_quotation_by_number(
    quotation_number: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return QuotationService(db).get_by_number(quotation_number)


@router.get("/{quotation_id}", response_model=QuotationWithItems)
async def get_quotation(
    quotation_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Get quotation by ID"""
    return QuotationService(db).get(quotation_id)


def _transition_route(action: str, summary: str):
    async def endpoint(
        quotation_id: int,
        db: Session = Depends(get_db),
        actor: Actor = Depends(get_current_actor),
    ):
        quotation = getattr(QuotationService(db), action)(quotation_id, actor.id)
        db.commit()
        return quotation

    endpoint.__name__ = f"{action}_quotation"
    endpoint.__doc__ = summary
    return endpoint


for _path, _action, _summary in (
    ("send", "mark_sent", "Mark quotation as sent to the customer"),
    ("view", "mark_viewed", "Mark quotation as viewed by the customer"),
    ("accept", "accept", "Customer accepted the quotation"),
    ("review", "send_review", "Send quotation for internal review, re-asserting unit holds"),
    ("approve", "approve", "Approve a reviewed quotation"),
    ("confirm", "confirm", "Confirm an approved quotation"),
    ("convert", "convert", "Mark a confirmed quotation as converted"),
    ("reject", "reject", "Reject quotation and release its units"),
):
    router.add_api_route(
        f"/{{quotation_id}}/{_path}",
        _transition_route(_action, _summary),
        methods=["POST"],
        response_model=QuotationWithItems,
    )


@router.post("/{quotation_id}/duplicate", response_model=QuotationWithItems, status_code=201)
def duplicate_quotation(
    quotation_id: int,
    duplicate_data: Optional[QuotationDuplicateRequest] = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Open a new draft from an existing quotation, holding fresh units"""
    duplicate_data = duplicate_data or QuotationDuplicateRequest()
    company = CompanyService(db).get_profile()
    quotation = QuotationService(db).duplicate(
        quotation_id, actor.id, company,
        chassis_numbers=duplicate_data.chassis_numbers,
        title=duplicate_data.title,
    )
    db.commit()
    return quotation


@router.put("/{quotation_id}/pricing", response_model=QuotationWithItems)
async def update_quotation_pricing(
    quotation_id: int,
    pricing_data: QuotationPricingUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Re-price discount and additional expenses of an accepted/review quotation"""
    quotation = QuotationService(db).update_pricing(quotation_id, pricing_data, actor.id)
    db.commit()
    return quotation


@router.delete("/{quotation_id}", response_model=MessageResponse,
               dependencies=[Depends(RoleChecker())])
async def delete_quotation(
    quotation_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Administrative delete; held units must be released separately"""
    QuotationService(db).delete(quotation_id)
    db.commit()
    return {"success": True, "message": "Quotation deleted"}
