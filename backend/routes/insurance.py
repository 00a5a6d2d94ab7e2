from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from database import get_db
from models import InsuranceClaim, User, Role
from routes.auth import require_role, get_clock
from schemas import InsuranceClaimRequest, claim_to_dict
from services.clock import Clock
from services.money import Amount
from services.settlement import claim_insurance

router = APIRouter(prefix="/api/insurance", tags=["insurance"])


@router.post("/claim", status_code=201)
def claim(data: InsuranceClaimRequest, db: Session = Depends(get_db),
          current_user: User = Depends(require_role(Role.INVESTOR)), clock: Clock = Depends(get_clock)):
    """Claim half of the acquired price on a defaulted invoice."""
    return claim_to_dict(claim_insurance(db, data.invoice_id, current_user, clock))


@router.get("/claims")
def my_claims(db: Session = Depends(get_db), current_user: User = Depends(require_role(Role.INVESTOR))):
    claims = db.query(InsuranceClaim).filter(
        InsuranceClaim.investor_id == current_user.id,
    ).order_by(InsuranceClaim.created_at.desc(), InsuranceClaim.id.desc()).all()
    return {
        "claims": [claim_to_dict(c) for c in claims],
        "total_claimed": str(Amount.sum(c.claim_amount for c in claims)),
    }
