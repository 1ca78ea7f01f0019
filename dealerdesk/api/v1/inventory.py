"""
Inventory API Routes - Stock items and unit reservations
"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import List, Optional

from dealerdesk.core.database import get_db
from dealerdesk.core.security import Actor, RoleChecker, get_current_actor
from dealerdesk.schemas import (
    StockItemCreate, StockItemUpdate, StockItemResponse, ChassisRequest,
    ReservationResultResponse, UnitHolderResponse
)
from dealerdesk.services.currency_service import CurrencyService, get_currency_service
from dealerdesk.services.inventory_service import InventoryLedger, StockItemService

router = APIRouter(prefix="/inventory", tags=["Inventory"])


@router.post("/items", response_model=StockItemResponse, status_code=201)
async def create_stock_item(
    item_data: StockItemCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Create a stock item (bulk import feeds this one item at a time)"""
    item = StockItemService(db).create(item_data, actor.id)
    db.commit()
    return item


@router.get("/items", response_model=List[StockItemResponse])
async def list_stock_items(
    status: Optional[str] = None,
    item_type: Optional[str] = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return StockItemService(db).list(status, item_type)


@router.get("/catalog")
def get_catalog(
    currency: Optional[str] = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    currency_service: CurrencyService = Depends(get_currency_service),
):
    """Sellable stock with available chassis numbers, optionally priced in another currency"""
    return StockItemService(db).list_catalog(currency_service, currency)


@router.get("/items/{stock_item_id}", response_model=StockItemResponse)
async def get_stock_item(
    stock_item_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return StockItemService(db).get(stock_item_id)


@router.put("/items/{stock_item_id}", response_model=StockItemResponse)
async def update_stock_item(
    stock_item_id: int,
    item_data: StockItemUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Update prices and descriptive fields"""
    item = StockItemService(db).update(stock_item_id, item_data)
    db.commit()
    return item


@router.get("/items/{stock_item_id}/holders", response_model=List[UnitHolderResponse])
async def get_unit_holders(
    stock_item_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Quotations holding units of this stock item"""
    return InventoryLedger(db).find_unit_holders(stock_item_id)


@router.get("/items/{stock_item_id}/verify")
async def verify_stock_quantity(
    stock_item_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Check that quantity matches the number of active units"""
    return InventoryLedger(db).verify_quantity(stock_item_id)


@router.post("/release", response_model=ReservationResultResponse,
             dependencies=[Depends(RoleChecker())])
async def release_units(
    release_data: ChassisRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Return held units to stock (after an administrative quotation delete)"""
    result = InventoryLedger(db).release(release_data.stock_item_id, release_data.chassis_numbers)
    result.raise_if_failed("release")
    db.commit()
    return result.to_dict()
