from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from database import get_db
from models import User, Role
from routes.auth import get_current_user, require_role
from services.order_book import portfolio
from services.settlement import supplier_payout_summary

router = APIRouter(prefix="/api", tags=["portfolio"])


@router.get("/portfolio")
def my_portfolio(db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    """Caller's token holdings per invoice."""
    return portfolio(db, current_user)


@router.get("/supplier/payouts")
def my_payouts(db: Session = Depends(get_db), current_user: User = Depends(require_role(Role.SUPPLIER))):
    """Net payouts received from auction sales, grouped by invoice."""
    return supplier_payout_summary(db, current_user)
