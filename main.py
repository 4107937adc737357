import logging
import math
import os
import re
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

import config
import database
from access import (
    ROLES,
    AccessContext,
    admin_only,
    authenticated,
    get_db,
    get_tokens,
    moderator_only,
    require_owner,
    self_service,
)
from database import delete_result, insert_result, sanitize, to_obj_id, update_result
from errors import ApiError, ConflictError, NotFoundError, ValidationError
from payments import StripeGateway
from reporting import PlatformStats
from schemas import PENDING, Email, normalize_email, now
from schemas import Application as ApplicationSchema
from schemas import Review as ReviewSchema
from schemas import Scholarship as ScholarshipSchema
from schemas import User as UserSchema
from tokens import TokenService

config.configure_logging()
logger = logging.getLogger(__name__)

router = APIRouter()

# Helpers

INT_FIELDS = ("universityWorldRank",)
FLOAT_FIELDS = ("tuitionFees", "applicationFees", "serviceCharge")

# Never overwritten by a scholarship edit
PROTECTED_SCHOLARSHIP_FIELDS = {
    "_id", "id", "postedUserEmail", "userEmail", "postDate", "createdAt",
    "applicationCount", "reviewCount", "averageRating",
}

# Set by the server or by moderation, never by the applicant
CLIENT_LOCKED_APPLICATION_FIELDS = {"_id", "id", "status", "appliedDate", "moderatedAt", "moderatedBy", "feedback"}


def get_payments(request: Request):
    return request.app.state.payments


def coerce_numbers(data: Dict[str, Any]) -> Dict[str, Any]:
    d = {**data}
    for name, cast in [(f, int) for f in INT_FIELDS] + [(f, float) for f in FLOAT_FIELDS]:
        if name not in d:
            continue
        value = d[name]
        if value is None or value == "":
            d[name] = None
            continue
        try:
            number = float(value)
            if not math.isfinite(number):
                raise ValueError(value)
            d[name] = cast(number)
        except (TypeError, ValueError, OverflowError):
            raise ValidationError(f"{name} must be a number")
    return d


def validation_details(e: PydanticValidationError) -> List[Dict[str, Any]]:
    return jsonable_encoder(e.errors(include_url=False, include_context=False, include_input=False))


def applications_with_scholarship(match: Dict[str, Any]) -> List[Dict[str, Any]]:
    return [
        {"$match": match},
        {
            "$lookup": {
                "from": "scholarships",
                "localField": "scholarshipId",
                "foreignField": "_id",
                "as": "scholarship",
            }
        },
        {"$unwind": {"path": "$scholarship", "preserveNullAndEmptyArrays": True}},
        {"$sort": {"appliedDate": -1}},
    ]


def flatten_scholarship(doc: Dict[str, Any]) -> Dict[str, Any]:
    s = doc.pop("scholarship", None) or {}
    doc["scholarshipTitle"] = s.get("scholarshipName")
    doc["scholarshipCategory"] = s.get("scholarshipCategory")
    doc["universityName"] = s.get("universityName")
    return sanitize(doc)


def refresh_review_stats(db: Database, scholarship_id) -> None:
    """Recompute reviewCount/averageRating for one scholarship (best effort)."""
    try:
        rows = list(db["reviews"].aggregate([
            {"$match": {"scholarshipId": scholarship_id}},
            {"$group": {"_id": "$scholarshipId", "count": {"$sum": 1}, "avg": {"$avg": "$rating"}}},
        ]))
        count = rows[0]["count"] if rows else 0
        avg = round(rows[0]["avg"], 2) if rows else 0
        res = db["scholarships"].update_one(
            {"_id": scholarship_id},
            {"$set": {"reviewCount": count, "averageRating": avg}},
        )
        if res.matched_count == 0:
            logger.warning("Review stats not updated: scholarship %s not found", scholarship_id)
    except PyMongoError:
        logger.exception("Failed to refresh review stats for %s", scholarship_id)


# Request/Response Models
class TokenRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    email: Email


class CreateUserRequest(BaseModel):
    email: Email
    name: Optional[str] = None
    photoURL: Optional[str] = None


class UpdateProfileRequest(BaseModel):
    name: Optional[str] = Field(None, max_length=120)
    photoURL: Optional[str] = None
    address: Optional[str] = Field(None, max_length=400)
    phone: Optional[str] = Field(None, max_length=40)


class UpdateRoleRequest(BaseModel):
    role: Optional[str] = None


class PaymentIntentRequest(BaseModel):
    price: Any = None


class CreateApplicationRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    scholarshipId: str
    applicantEmail: Email
    applicantName: Optional[str] = None
    applicationFee: Optional[float] = Field(None, allow_inf_nan=False)
    transactionId: Optional[str] = None
    paymentDate: Optional[datetime] = None


class StatusUpdateRequest(BaseModel):
    status: Literal["Approved", "Rejected"]
    feedback: Optional[str] = Field(None, max_length=2000)


class CreateReviewRequest(BaseModel):
    scholarshipId: str
    rating: int = Field(..., ge=1, le=5)
    comment: str = Field("", max_length=2000)
    reviewerName: Optional[str] = None
    reviewerImage: Optional[str] = None


class UpdateReviewRequest(BaseModel):
    rating: Optional[int] = Field(None, ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=2000)


# Auth Routes
@router.post("/jwt")
def issue_token(payload: TokenRequest, tokens: TokenService = Depends(get_tokens)):
    token = tokens.issue(payload.model_dump(mode="json"))
    return {"token": token}


# User Routes
@router.get("/users/role/{email}")
def get_user_role(email: str, db: Database = Depends(get_db)):
    email = normalize_email(email)
    user = db["users"].find_one({"email": email})
    if user:
        return {"role": user.get("role", "user"), "email": user["email"]}
    return {"role": "user", "email": email, "message": "User not found, returning default role."}


@router.post("/users")
def create_user(payload: CreateUserRequest, db: Database = Depends(get_db)):
    users = db["users"]
    if users.find_one({"email": payload.email}):
        return {"message": "User already exists", "insertedId": None}
    # Everyone starts as a plain user; elevation goes through an admin
    user_doc = UserSchema(email=payload.email, name=payload.name, photoURL=payload.photoURL, role="user").model_dump()
    try:
        res = users.insert_one(user_doc)
    except DuplicateKeyError:
        return {"message": "User already exists", "insertedId": None}
    return {"message": "User created", **insert_result(res)}


@router.get("/user/profile")
@router.get("/users/profile")
def get_profile(ctx: AccessContext = Depends(self_service), db: Database = Depends(get_db)):
    user = db["users"].find_one({"email": ctx.email})
    if not user:
        raise NotFoundError("User not found")
    return sanitize(user)


@router.patch("/users/profile")
def update_profile(
    payload: UpdateProfileRequest,
    ctx: AccessContext = Depends(self_service),
    db: Database = Depends(get_db),
):
    fields = payload.model_dump(exclude_unset=True)
    if not fields:
        raise ValidationError("No profile fields to update")
    fields["updatedAt"] = now()
    res = db["users"].update_one({"email": ctx.email}, {"$set": fields})
    if res.matched_count == 0:
        raise NotFoundError("User not found")
    return update_result(res)


@router.get("/users")
def list_users(role: Optional[str] = None, admin: AccessContext = Depends(admin_only), db: Database = Depends(get_db)):
    q: Dict[str, Any] = {}
    if role:
        if role not in ROLES:
            raise ValidationError("Invalid role specified")
        q["role"] = role
    return [sanitize(u) for u in db["users"].find(q).sort("createdAt", -1)]


@router.patch("/users/role/{user_id}")
def update_user_role(
    user_id: str,
    payload: UpdateRoleRequest,
    admin: AccessContext = Depends(admin_only),
    db: Database = Depends(get_db),
):
    oid = to_obj_id(user_id, "user id")
    if payload.role not in ROLES:
        raise ValidationError("Invalid role specified")
    res = db["users"].update_one({"_id": oid}, {"$set": {"role": payload.role, "updatedAt": now()}})
    if res.matched_count == 0:
        raise NotFoundError("User not found")
    logger.info("%s set role of user %s to %s", admin.email, user_id, payload.role)
    return update_result(res)


@router.delete("/users/{user_id}")
def delete_user(user_id: str, admin: AccessContext = Depends(admin_only), db: Database = Depends(get_db)):
    res = db["users"].delete_one({"_id": to_obj_id(user_id, "user id")})
    if res.deleted_count == 0:
        raise NotFoundError("User not found")
    logger.info("%s deleted user %s", admin.email, user_id)
    return delete_result(res)


# Payment Routes
@router.post("/create-payment-intent")
def create_payment_intent(payload: PaymentIntentRequest, payments=Depends(get_payments)):
    price = payload.price
    if isinstance(price, bool) or not isinstance(price, (int, float)):
        raise ValidationError("Invalid price amount.")
    if isinstance(price, float) and not math.isfinite(price):
        raise ValidationError("Invalid price amount.")
    # Whole units of the smallest currency denomination only
    if price < 1 or price != int(price):
        raise ValidationError("Invalid price amount.")
    return {"clientSecret": payments.create_intent(int(price))}


# Application Routes
@router.post("/applications", status_code=201)
def create_application(payload: CreateApplicationRequest, db: Database = Depends(get_db)):
    scholarship_id = to_obj_id(payload.scholarshipId, "scholarship id")
    data = {k: v for k, v in payload.model_dump().items() if k not in CLIENT_LOCKED_APPLICATION_FIELDS}
    data["status"] = PENDING
    try:
        doc = ApplicationSchema(**data).model_dump()
    except PydanticValidationError as e:
        raise ValidationError("Invalid application", details=validation_details(e))
    doc["scholarshipId"] = scholarship_id
    try:
        res = db["applications"].insert_one(doc)
    except DuplicateKeyError:
        raise ConflictError("You have already applied for this scholarship.")

    # Not transactional with the insert: a crash here leaves the counter short
    try:
        counter = db["scholarships"].update_one({"_id": scholarship_id}, {"$inc": {"applicationCount": 1}})
        if counter.matched_count == 0:
            logger.warning("Scholarship update warning: ID %s not found.", scholarship_id)
    except PyMongoError:
        logger.exception("Failed to increment applicationCount for %s", scholarship_id)
    return insert_result(res)


@router.get("/applications/pending")
@router.get("/moderator/pending-applications")
def pending_applications(mod: AccessContext = Depends(moderator_only), db: Database = Depends(get_db)):
    rows = db["applications"].aggregate(applications_with_scholarship({"status": PENDING}))
    return [flatten_scholarship(r) for r in rows]


@router.get("/dashboard/my-applications")
def my_applications(ctx: AccessContext = Depends(self_service), db: Database = Depends(get_db)):
    rows = db["applications"].aggregate(applications_with_scholarship({"applicantEmail": ctx.email}))
    return [flatten_scholarship(r) for r in rows]


@router.patch("/applications/status/{application_id}")
def update_application_status(
    application_id: str,
    payload: StatusUpdateRequest,
    mod: AccessContext = Depends(moderator_only),
    db: Database = Depends(get_db),
):
    oid = to_obj_id(application_id, "application id")
    applications = db["applications"]
    # Only Pending applications can move; Approved/Rejected are final
    res = applications.update_one(
        {"_id": oid, "status": PENDING},
        {"$set": {
            "status": payload.status,
            "feedback": payload.feedback,
            "moderatedAt": now(),
            "moderatedBy": mod.email,
        }},
    )
    if res.matched_count == 0:
        if applications.find_one({"_id": oid}, {"_id": 1}) is None:
            raise NotFoundError("Application not found")
        raise ConflictError("Application has already been moderated.")
    return update_result(res)


@router.delete("/applications/{application_id}")
def delete_application(application_id: str, admin: AccessContext = Depends(admin_only), db: Database = Depends(get_db)):
    oid = to_obj_id(application_id, "application id")
    application = db["applications"].find_one_and_delete({"_id": oid})
    if not application:
        raise NotFoundError("Application not found")
    try:
        db["scholarships"].update_one(
            {"_id": application.get("scholarshipId"), "applicationCount": {"$gt": 0}},
            {"$inc": {"applicationCount": -1}},
        )
    except PyMongoError:
        logger.exception("Failed to decrement applicationCount for %s", application.get("scholarshipId"))
    return {"success": True, "message": "Application deleted successfully"}


# Scholarship Routes
@router.get("/all-scholarships")
@router.get("/scholarships/all")
def search_scholarships(
    search: Optional[str] = None,
    category: Optional[str] = None,
    subject: Optional[str] = None,
    location: Optional[str] = None,
    db: Database = Depends(get_db),
):
    clauses: List[Dict[str, Any]] = []
    if search:
        rx = {"$regex": re.escape(search), "$options": "i"}
        clauses.append({"$or": [{"scholarshipName": rx}, {"universityName": rx}, {"degree": rx}]})
    if category:
        clauses.append({"scholarshipCategory": category})
    if subject:
        clauses.append({"subjectCategory": subject})
    if location:
        clauses.append({"$or": [{"location": location}, {"universityCountry": location}]})
    q = {"$and": clauses} if clauses else {}
    return [sanitize(s) for s in db["scholarships"].find(q).sort("createdAt", -1)]


@router.get("/top-scholarships")
def top_scholarships(db: Database = Depends(get_db)):
    cursor = db["scholarships"].find({}).sort([("applicationFees", 1), ("createdAt", -1)]).limit(6)
    return [sanitize(s) for s in cursor]


@router.get("/scholarships/{scholarship_id}")
@router.get("/all-scholarships/{scholarship_id}")
def get_scholarship(scholarship_id: str, db: Database = Depends(get_db)):
    scholarship = db["scholarships"].find_one({"_id": to_obj_id(scholarship_id, "scholarship id")})
    if not scholarship:
        raise NotFoundError("Scholarship not found with this ID.")
    return sanitize(scholarship)


@router.get("/addScholars")
def scholarships_by_poster(email: Optional[str] = None, db: Database = Depends(get_db)):
    q = {"postedUserEmail": normalize_email(email)} if email else {}
    return [sanitize(s) for s in db["scholarships"].find(q).sort("createdAt", -1)]


@router.post("/add-scholarships")
@router.post("/addScholars")
def add_scholarship(
    payload: Dict[str, Any] = Body(...),
    mod: AccessContext = Depends(moderator_only),
    db: Database = Depends(get_db),
):
    data = coerce_numbers({k: v for k, v in payload.items() if k not in PROTECTED_SCHOLARSHIP_FIELDS})
    poster = normalize_email(payload.get("postedUserEmail") or payload.get("userEmail") or mod.email)
    require_owner(mod, poster, "Forbidden: You can only post scholarships as yourself.")
    data["postedUserEmail"] = poster
    try:
        doc = ScholarshipSchema(**data).model_dump()
    except PydanticValidationError as e:
        raise ValidationError("Invalid scholarship", details=validation_details(e))
    res = db["scholarships"].insert_one(doc)
    return insert_result(res)


@router.put("/addScholars/{scholarship_id}")
@router.patch("/scholarships/{scholarship_id}")
def update_scholarship(
    scholarship_id: str,
    payload: Dict[str, Any] = Body(...),
    mod: AccessContext = Depends(moderator_only),
    db: Database = Depends(get_db),
):
    oid = to_obj_id(scholarship_id, "scholarship id")
    fields = coerce_numbers({k: v for k, v in payload.items() if k not in PROTECTED_SCHOLARSHIP_FIELDS})
    if not fields:
        raise ValidationError("No scholarship fields to update")
    scholarships = db["scholarships"]
    existing = scholarships.find_one({"_id": oid})
    if not existing:
        raise NotFoundError("Scholarship not found with this ID.")
    # The edited document must still be a valid scholarship
    merged = {k: v for k, v in existing.items() if k != "_id"}
    merged.update(fields)
    try:
        validated = ScholarshipSchema(**merged).model_dump()
    except PydanticValidationError as e:
        raise ValidationError("Invalid scholarship", details=validation_details(e))
    fields = {k: validated[k] for k in fields}
    fields["updatedAt"] = now()
    res = scholarships.update_one({"_id": oid}, {"$set": fields})
    if res.matched_count == 0:
        raise NotFoundError("Scholarship not found with this ID.")
    return update_result(res)


@router.delete("/addScholars/{scholarship_id}")
@router.delete("/scholarships/{scholarship_id}")
def delete_scholarship(scholarship_id: str, mod: AccessContext = Depends(moderator_only), db: Database = Depends(get_db)):
    res = db["scholarships"].delete_one({"_id": to_obj_id(scholarship_id, "scholarship id")})
    if res.deleted_count == 0:
        raise NotFoundError("Scholarship not found with this ID.")
    logger.info("%s deleted scholarship %s", mod.email, scholarship_id)
    return delete_result(res)


# Review Routes
@router.post("/reviews")
def create_review(payload: CreateReviewRequest, ctx: AccessContext = Depends(authenticated), db: Database = Depends(get_db)):
    scholarship_id = to_obj_id(payload.scholarshipId, "scholarship id")
    doc = ReviewSchema(reviewerEmail=ctx.email, **payload.model_dump()).model_dump()
    doc["scholarshipId"] = scholarship_id
    res = db["reviews"].insert_one(doc)
    refresh_review_stats(db, scholarship_id)
    return insert_result(res)


@router.get("/latest-reviews")
def latest_reviews(db: Database = Depends(get_db)):
    return [sanitize(r) for r in db["reviews"].find({}).sort("reviewDate", -1).limit(3)]


@router.get("/my-reviews")
def my_reviews(ctx: AccessContext = Depends(self_service), db: Database = Depends(get_db)):
    return [sanitize(r) for r in db["reviews"].find({"reviewerEmail": ctx.email}).sort("reviewDate", -1)]


@router.get("/reviews/single/{review_id}")
def get_review(review_id: str, db: Database = Depends(get_db)):
    review = db["reviews"].find_one({"_id": to_obj_id(review_id, "review id")})
    if not review:
        raise NotFoundError("Review not found")
    return sanitize(review)


@router.get("/reviews/{scholarship_id}")
def scholarship_reviews(scholarship_id: str, db: Database = Depends(get_db)):
    q = {"scholarshipId": to_obj_id(scholarship_id, "scholarship id")}
    return [sanitize(r) for r in db["reviews"].find(q).sort("reviewDate", -1)]


@router.patch("/reviews/{review_id}")
def update_review(
    review_id: str,
    payload: UpdateReviewRequest,
    ctx: AccessContext = Depends(authenticated),
    db: Database = Depends(get_db),
):
    reviews = db["reviews"]
    review = reviews.find_one({"_id": to_obj_id(review_id, "review id")})
    if not review:
        raise NotFoundError("Review not found")
    require_owner(ctx, review.get("reviewerEmail"), "Forbidden: You can only edit your own reviews.")
    fields = payload.model_dump(exclude_none=True)
    if not fields:
        raise ValidationError("No review fields to update")
    fields["updatedAt"] = now()
    res = reviews.update_one({"_id": review["_id"]}, {"$set": fields})
    if "rating" in fields:
        refresh_review_stats(db, review.get("scholarshipId"))
    return update_result(res)


@router.delete("/reviews/{review_id}")
def delete_review(review_id: str, ctx: AccessContext = Depends(authenticated), db: Database = Depends(get_db)):
    reviews = db["reviews"]
    review = reviews.find_one({"_id": to_obj_id(review_id, "review id")})
    if not review:
        raise NotFoundError("Review not found")
    require_owner(ctx, review.get("reviewerEmail"), "Forbidden: You can only delete your own reviews.")
    res = reviews.delete_one({"_id": review["_id"]})
    refresh_review_stats(db, review.get("scholarshipId"))
    return delete_result(res)


# Analytics
@router.get("/analytics/platform-stats")
def platform_stats(db: Database = Depends(get_db)):
    return PlatformStats.from_db(db).compute()


# Utility endpoints
@router.get("/")
def root():
    return {"message": "Scholarship Platform Server is Running!"}


@router.get("/test")
def test_database(db: Database = Depends(get_db)):
    try:
        return {"backend": "ok", "database": "ok", "collections": db.list_collection_names()}
    except Exception as e:
        return {"backend": "ok", "database": f"error: {e}"}


# Error handlers
def handle_api_error(request: Request, exc: ApiError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def handle_request_validation(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        # Raw input is not echoed back; it may not be JSON-encodable (NaN, inf)
        content={"message": "Invalid request", "details": jsonable_encoder(
            [{k: v for k, v in err.items() if k != "input"} for err in exc.errors()]
        )},
    )


def handle_database_error(request: Request, exc: PyMongoError):
    logger.exception("Database error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"message": "Database error", "details": str(exc)})


def create_app(db: Optional[Database] = None, tokens: Optional[TokenService] = None, payments=None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        database.ensure_indexes(app.state.db)
        yield

    app = FastAPI(title="Scholarship Platform API", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.db = db if db is not None else database.db
    app.state.tokens = tokens or TokenService(
        config.ACCESS_TOKEN_SECRET, ttl=timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    app.state.payments = payments or StripeGateway(config.STRIPE_SECRET_KEY, config.PAYMENT_CURRENCY)

    app.add_exception_handler(ApiError, handle_api_error)
    app.add_exception_handler(RequestValidationError, handle_request_validation)
    app.add_exception_handler(PyMongoError, handle_database_error)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
