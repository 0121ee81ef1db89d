from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from creatorpay.api.deps import get_current_account
from creatorpay.db.session import get_db
from creatorpay.services.presence import touch

router = APIRouter()


@router.post("/heartbeat")
def heartbeat(current=Depends(get_current_account), db: Session = Depends(get_db)):
    row = touch(db, current.id)
    db.commit()
    return {"ok": True, "expiresAt": row.expires_at}
