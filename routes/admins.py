import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pymongo.database import Database

import verification
from database import get_db, get_documents, to_object_id, to_public_id, update_document
from errors import NotFound
from schemas import CamelModel
from security import require_role, strip_sensitive

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admins", tags=["admins"])


class VerifyRequest(CamelModel):
    action: Optional[str] = None
    rejection_reason: Optional[str] = None


@router.get("/providers/pending")
def list_pending_providers(
    admin: dict = Depends(require_role(["admin"])),
    db: Database = Depends(get_db),
):
    providers = get_documents(
        db,
        "user",
        {"role": "provider", "providerDetails.verificationStatus": verification.PENDING},
        sort=[("providerDetails.submittedAt", -1), ("_id", -1)],
    )
    data = [to_public_id(strip_sensitive(p)) for p in providers]
    return {"success": True, "count": len(data), "data": data}


@router.patch("/providers/{user_id}/verify")
def decide_provider(
    user_id: str,
    payload: VerifyRequest,
    admin: dict = Depends(require_role(["admin"])),
    db: Database = Depends(get_db),
):
    """Approve or reject a pending provider application."""
    action = payload.action or ""
    user = db["user"].find_one({"_id": to_object_id(user_id)})
    if user is None:
        raise NotFound("User not found")

    set_fields, unset_fields = verification.decision_changes(user, action, payload.rejection_reason)
    updated = update_document(db, "user", user, set_fields, unset_fields)
    logger.info("Admin %s %sd provider %s", admin["_id"], action, user["_id"])

    details = updated.get("providerDetails") or {}
    data = {"id": str(updated["_id"]), "verificationStatus": details.get("verificationStatus")}
    if action == "reject":
        data["rejectionReason"] = details.get("rejectionReason")
    return {"success": True, "message": f"Provider {action}d successfully", "data": data}
