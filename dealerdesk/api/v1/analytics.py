"""
Analytics API Routes
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import Optional
from datetime import datetime

from dealerdesk.core.database import get_db
from dealerdesk.core.security import Actor, get_current_actor
from dealerdesk.schemas import GroupByEnum, SalesAnalyticsResponse
from dealerdesk.services.analytics_service import AnalyticsService

router = APIRouter(prefix="/analytics", tags=["Analytics"])


@router.get("/sales", response_model=SalesAnalyticsResponse)
async def get_sales_analytics(
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    group_by: GroupByEnum = GroupByEnum.DAY,
    limit: int = Query(30, ge=1, le=366),
    currency: Optional[str] = None,
    status: Optional[str] = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Profit analytics over invoices, per currency and over time"""
    return AnalyticsService(db).get_sales_analytics(
        date_from=date_from,
        date_to=date_to,
        group_by=group_by.value,
        limit=limit,
        currency=currency,
        status=status,
    )
