"""
Job postings and their lifecycle.

    open -> assigned -> [escrow_funded ->] in_progress -> completed
    any non-terminal state -> cancelled

``completed`` and ``cancelled`` are terminal; the only write a terminal job
still accepts is the client's review of a completed job.
"""
import logging
import math
from typing import Dict, FrozenSet, List, Optional, Union

from fastapi import APIRouter, Depends, Query
from pydantic import Field
from pymongo import ReturnDocument
from pymongo.database import Database

from database import (
    create_document,
    get_db,
    get_documents,
    now,
    to_object_id,
    to_public_id,
    update_document,
)
from errors import ConflictError, Forbidden, InvalidState, NotFound, ValidationError
from schemas import CamelModel, Job, JobContent, JobReview, validate_document
from security import get_current_user, require_role

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/jobs", tags=["jobs"])

TERMINAL = frozenset({"completed", "cancelled"})
TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "open": frozenset({"assigned", "cancelled"}),
    "assigned": frozenset({"escrow_funded", "in_progress", "cancelled"}),
    "escrow_funded": frozenset({"in_progress", "completed", "cancelled"}),
    "in_progress": frozenset({"completed", "cancelled"}),
    "completed": frozenset(),
    "cancelled": frozenset(),
}
COMPLETABLE = frozenset({"in_progress", "escrow_funded"})

CONTENT_FIELDS = tuple(f.alias for f in JobContent.model_fields.values())

Number = Union[float, str]


# ----------------------------
# Payloads
# ----------------------------

class JobCreateRequest(CamelModel):
    title: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    budget: Optional[Number] = None
    payment_type: Optional[str] = None
    estimated_duration: Optional[Number] = None
    duration_unit: Optional[str] = None
    urgency: Optional[str] = None
    preferred_date: Optional[str] = None


class JobUpdateRequest(JobCreateRequest):
    pass


class ApplicationRequest(CamelModel):
    proposed_price: Optional[float] = Field(None, gt=0)
    message: Optional[str] = Field(None, max_length=1000)


class AssignRequest(CamelModel):
    worker_id: str


# ----------------------------
# Helpers
# ----------------------------

def parse_positive(value) -> Optional[float]:
    """Parse a client-supplied number; ``None`` when it is not a finite positive number."""
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number) or number <= 0:
        return None
    return number


def _blank(value: Optional[str]) -> bool:
    return value is None or not str(value).strip()


def _duration_unit(unit: Optional[str], fallback: str = "hours") -> str:
    return unit if unit in ("hours", "days") else fallback


def load_job(db: Database, job_id: str) -> dict:
    job = db["job"].find_one({"_id": to_object_id(job_id)})
    if job is None:
        raise NotFound("Job not found")
    return job


def ensure_owner(job: dict, user: dict) -> None:
    if user.get("role") == "admin":
        return
    if job.get("client") != user["_id"]:
        raise Forbidden("You can only manage your own jobs")


def ensure_transition(job: dict, target: str) -> None:
    status = job.get("status", "open")
    if target not in TRANSITIONS.get(status, frozenset()):
        raise InvalidState(f"Cannot move a job from {status} to {target}")


def _summary(person: Optional[dict], ref) -> Optional[dict]:
    if ref is None:
        return None
    if person is None:
        return {"id": str(ref)}
    return {"id": str(ref), "fullName": person.get("fullName"), "email": person.get("email")}


def with_people(db: Database, jobs: List[dict]) -> List[dict]:
    """Serialize jobs with name/email summaries of the client and assigned worker."""
    ids = {j.get("client") for j in jobs} | {j.get("assignedWorker") for j in jobs}
    ids.discard(None)
    people = {}
    if ids:
        cursor = db["user"].find({"_id": {"$in": list(ids)}}, {"fullName": 1, "email": 1})
        people = {p["_id"]: p for p in cursor}

    views = []
    for job in jobs:
        view = to_public_id(job)
        view["client"] = _summary(people.get(job.get("client")), job.get("client"))
        view["assignedWorker"] = _summary(
            people.get(job.get("assignedWorker")), job.get("assignedWorker")
        )
        view.pop("revision", None)
        views.append(view)
    return views


def job_view(job: dict) -> dict:
    view = to_public_id(job)
    view.pop("revision", None)
    return view


def _job_response(message: str, job: dict) -> dict:
    return {"success": True, "message": message, "job": job_view(job)}


# ----------------------------
# Routes
# ----------------------------

@router.get("")
def list_jobs(
    skip: int = Query(0, ge=0),
    limit: Optional[int] = Query(None, ge=1, le=100),
    db: Database = Depends(get_db),
):
    jobs = get_documents(
        db, "job", {"isActive": True}, sort=[("createdAt", -1), ("_id", -1)], skip=skip, limit=limit
    )
    return {"success": True, "count": len(jobs), "jobs": with_people(db, jobs)}


@router.post("/add", status_code=201)
def create_job(
    payload: JobCreateRequest,
    user: dict = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    if _blank(payload.title):
        raise ValidationError("Job title is required")
    if _blank(payload.description):
        raise ValidationError("Description is required")
    if _blank(payload.category):
        raise ValidationError("Category is required")
    if _blank(payload.address):
        raise ValidationError("Address is required")

    budget = parse_positive(payload.budget)
    if budget is None:
        raise ValidationError("Budget must be a valid positive number")

    data = {
        "title": payload.title.strip(),
        "description": payload.description.strip(),
        "category": payload.category.strip(),
        "location": {"address": payload.address.strip()},
        "budget": budget,
        "urgency": payload.urgency or "medium",
        "escrow": {"amount": budget, "funded": False},
        "status": "open",
        "isActive": True,
    }
    if not _blank(payload.city):
        data["location"]["city"] = payload.city.strip()
    if payload.payment_type:
        data["paymentType"] = payload.payment_type
    if not _blank(payload.preferred_date):
        data["preferredDate"] = payload.preferred_date

    if payload.estimated_duration is not None and payload.estimated_duration != "":
        duration = parse_positive(payload.estimated_duration)
        if duration is None:
            raise ValidationError("Estimated duration must be a valid positive number")
        data["estimatedDuration"] = {"value": duration, "unit": _duration_unit(payload.duration_unit)}

    job = validate_document(Job, data)
    doc = job.model_dump(by_alias=True, exclude_none=True)
    doc["client"] = user["_id"]
    doc["assignedWorker"] = None
    doc["applications"] = []
    doc["_id"] = create_document(db, "job", doc)

    logger.info("User %s created job %s", user["_id"], doc["_id"])
    stored = db["job"].find_one({"_id": doc["_id"]})
    return _job_response("Job created successfully", stored)


@router.get("/my")
def list_my_jobs(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    jobs = get_documents(db, "job", {"client": user["_id"]}, sort=[("createdAt", -1), ("_id", -1)])
    return {"success": True, "count": len(jobs), "jobs": with_people(db, jobs)}


@router.get("/{job_id}")
def get_job(job_id: str, db: Database = Depends(get_db)):
    oid = to_object_id(job_id)
    # views is a plain counter, so it does not take part in revision checks
    job = db["job"].find_one_and_update(
        {"_id": oid}, {"$inc": {"views": 1}}, return_document=ReturnDocument.AFTER
    )
    if job is None:
        raise NotFound("Job not found")
    return {"success": True, "job": with_people(db, [job])[0]}


@router.patch("/{job_id}")
def update_job(
    job_id: str,
    payload: JobUpdateRequest,
    user: dict = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    job = load_job(db, job_id)
    ensure_owner(job, user)
    if job.get("status") in TERMINAL:
        raise InvalidState(f"{job['status'].capitalize()} job cannot be updated")

    changes = payload.model_dump(exclude_unset=True)
    content = {k: job[k] for k in CONTENT_FIELDS if job.get(k) is not None}

    for field, key in (
        ("title", "title"),
        ("description", "description"),
        ("category", "category"),
        ("urgency", "urgency"),
        ("payment_type", "paymentType"),
    ):
        if changes.get(field) is not None:
            content[key] = changes[field].strip()

    if "budget" in changes:
        budget = parse_positive(changes["budget"])
        if budget is None:
            raise ValidationError("Budget must be a valid positive number")
        content["budget"] = budget

    if "preferred_date" in changes:
        if _blank(changes["preferred_date"]):
            content.pop("preferredDate", None)
        else:
            content["preferredDate"] = changes["preferred_date"]

    if not _blank(changes.get("address")) or not _blank(changes.get("city")):
        location = dict(job.get("location") or {})
        if not _blank(changes.get("address")):
            location["address"] = changes["address"].strip()
        if not _blank(changes.get("city")):
            location["city"] = changes["city"].strip()
        content["location"] = location

    if changes.get("estimated_duration") is not None or changes.get("duration_unit") is not None:
        previous = job.get("estimatedDuration") or {}
        raw = changes.get("estimated_duration")
        value = parse_positive(raw) if raw not in (None, "") else previous.get("value")
        if value is None:
            raise ValidationError("Estimated duration must be a valid positive number")
        unit = _duration_unit(changes.get("duration_unit"), previous.get("unit", "hours"))
        content["estimatedDuration"] = {"value": value, "unit": unit}

    validated = validate_document(JobContent, content).model_dump(by_alias=True, exclude_none=True)
    unset_fields = [k for k in CONTENT_FIELDS if k in job and k not in validated]
    set_fields = dict(validated)
    escrow = job.get("escrow") or {}
    if not escrow.get("funded"):
        set_fields["escrow.amount"] = validated["budget"]

    updated = update_document(db, "job", job, set_fields, unset_fields)
    return _job_response("Job updated successfully", updated)


@router.patch("/{job_id}/end")
def complete_job(job_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    job = load_job(db, job_id)
    ensure_owner(job, user)
    if job.get("status") not in COMPLETABLE:
        raise InvalidState("Job cannot be ended in its current state")

    updated = update_document(
        db,
        "job",
        job,
        {"status": "completed", "isActive": False, "escrow.releasedAt": now()},
    )
    logger.info("Job %s completed by %s", job["_id"], user["_id"])
    return _job_response("Job completed successfully", updated)


@router.patch("/{job_id}/cancel")
def cancel_job(job_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    job = load_job(db, job_id)
    ensure_owner(job, user)
    ensure_transition(job, "cancelled")

    set_fields = {"status": "cancelled", "isActive": False}
    if (job.get("escrow") or {}).get("funded"):
        set_fields["escrow.refundedAt"] = now()
    updated = update_document(db, "job", job, set_fields)
    logger.info("Job %s cancelled by %s", job["_id"], user["_id"])
    return _job_response("Job cancelled successfully", updated)


@router.post("/{job_id}/apply", status_code=201)
def apply_to_job(
    job_id: str,
    payload: ApplicationRequest,
    user: dict = Depends(require_role(["provider"])),
    db: Database = Depends(get_db),
):
    job = load_job(db, job_id)
    if job.get("status") != "open":
        raise InvalidState("Job is not open for applications")
    if job.get("client") == user["_id"]:
        raise ValidationError("You cannot apply to your own job")
    applications = job.get("applications") or []
    if any(a.get("worker") == user["_id"] for a in applications):
        raise ConflictError("You have already applied to this job")

    application = {
        "worker": user["_id"],
        "proposedPrice": payload.proposed_price or job.get("budget"),
        "appliedAt": now(),
    }
    if payload.message and payload.message.strip():
        application["message"] = payload.message.strip()

    updated = update_document(db, "job", job, {"applications": applications + [application]})
    return _job_response("Application submitted successfully", updated)


@router.patch("/{job_id}/assign")
def assign_worker(
    job_id: str,
    payload: AssignRequest,
    user: dict = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    job = load_job(db, job_id)
    ensure_owner(job, user)
    ensure_transition(job, "assigned")

    worker_id = to_object_id(payload.worker_id)
    if not any(a.get("worker") == worker_id for a in job.get("applications") or []):
        raise ValidationError("Worker has not applied to this job")

    updated = update_document(db, "job", job, {"status": "assigned", "assignedWorker": worker_id})
    logger.info("Job %s assigned to %s", job["_id"], worker_id)
    return _job_response("Worker assigned successfully", updated)


@router.patch("/{job_id}/fund")
def fund_escrow(job_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    job = load_job(db, job_id)
    ensure_owner(job, user)
    ensure_transition(job, "escrow_funded")

    updated = update_document(
        db,
        "job",
        job,
        {"status": "escrow_funded", "escrow.funded": True, "escrow.fundedAt": now()},
    )
    return _job_response("Escrow funded successfully", updated)


@router.patch("/{job_id}/start")
def start_job(job_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    job = load_job(db, job_id)
    if job.get("assignedWorker") != user["_id"]:
        ensure_owner(job, user)
    ensure_transition(job, "in_progress")

    updated = update_document(db, "job", job, {"status": "in_progress"})
    return _job_response("Job started", updated)


@router.post("/{job_id}/review", status_code=201)
def review_job(
    job_id: str,
    payload: JobReview,
    user: dict = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    job = load_job(db, job_id)
    if job.get("client") != user["_id"]:
        raise Forbidden("Only the client who posted the job can review it")
    if job.get("status") != "completed":
        raise InvalidState("Only completed jobs can be reviewed")
    if job.get("review"):
        raise InvalidState("Job has already been reviewed")
    worker = db["user"].find_one({"_id": job.get("assignedWorker")}) if job.get("assignedWorker") else None
    if worker is None:
        raise InvalidState("Job has no assigned worker to review")

    review = payload.model_dump(exclude_none=True)
    # Worker before job: a 409 on either write leaves the job open to a retry,
    # and a job already on the worker's reviews is not counted again.
    reviews = worker.get("reviews") or []
    if not any(r.get("jobId") == job["_id"] for r in reviews):
        ratings = worker.get("ratings") or {}
        count = ratings.get("count", 0)
        average = (ratings.get("average", 0) * count + payload.rating) / (count + 1)
        entry = {"reviewerId": user["_id"], "jobId": job["_id"], "rating": payload.rating, "date": now()}
        if payload.comment:
            entry["comment"] = payload.comment
        update_document(
            db,
            "user",
            worker,
            {
                "reviews": reviews + [entry],
                "ratings": {"average": round(average, 2), "count": count + 1},
            },
        )

    updated = update_document(db, "job", job, {"review": review})
    logger.info("Job %s reviewed by %s", job["_id"], user["_id"])
    return _job_response("Review submitted successfully", updated)
