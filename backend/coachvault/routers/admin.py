from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from coachvault.database import get_db
from coachvault.deps import current_user_id
from coachvault.errors import InsufficientPermission, NotFoundError
from coachvault.models import User
from coachvault.schemas import ActivityOut
from coachvault.services import data_protection
from coachvault.services.activity_log import recent_activity

router = APIRouter(prefix="/api/admin", tags=["admin"])


@router.delete("/users/{user_id}")
def delete_user(
    user_id: str,
    preserve_data: bool = Query(False),
    reason: Optional[str] = Query(None),
    actor_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    outcome = data_protection.safe_delete(db, user_id, preserve_data=preserve_data, reason=reason, actor_id=actor_id)
    if not outcome.success:
        if outcome.importance is None:
            raise NotFoundError(outcome.message)
        raise InsufficientPermission(outcome.message)
    return {"data": outcome.to_dict()}


@router.get("/users/{user_id}/importance")
def user_importance(user_id: str, _: str = Depends(current_user_id), db: Session = Depends(get_db)):
    if db.get(User, user_id) is None:
        raise NotFoundError(f"User {user_id} not found")
    return {"data": data_protection.assess_importance(db, user_id).to_dict()}


@router.get("/orphans")
def orphans(_: str = Depends(current_user_id), db: Session = Depends(get_db)):
    estimate = data_protection.estimate_deleted_owners(db)
    return {
        "data": {
            "orphans": estimate.to_dict()["orphans_by_table"],
            "deletedOwners": {
                "lowerBound": estimate.lower_bound,
                "ownerIds": estimate.owner_ids,
            },
        }
    }


@router.get("/activity")
def activity(
    event_type: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    _: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    entries = recent_activity(db, event_type=event_type, limit=limit)
    return {"data": [ActivityOut.model_validate(e).model_dump(mode="json") for e in entries]}
