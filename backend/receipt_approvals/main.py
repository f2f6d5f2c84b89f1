import logging
import uuid
from concurrent import futures
from datetime import date
from typing import List, Literal, Optional

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Query, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from google.api_core import exceptions
from pydantic import BaseModel, Field
from starlette.responses import JSONResponse, Response

from .config import AppSettings, get_directory_settings, get_settings
from .errors import ConfigurationError, ErrorKind
from .services import firestore
from .services.export import export_filename, receipts_to_csv
from .services.extraction import VALID_SECTORS, ExtractedReceipt, extract_receipt_data
from .services.gcs import upload_receipt_image
from .services.hierarchy import HierarchyResolver
from .services.pubsub import publish_event


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

IAP_USER_HEADER = "X-Goog-Authenticated-User-Email"
IAP_PREFIX = "accounts.google.com:"

STATUS_BY_ERROR_KIND = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.PERMISSION_DENIED: 502,
    ErrorKind.UNEXPECTED: 500,
}


class SubmitResponse(BaseModel):
    receiptId: str
    photoUrl: str
    status: str
    notifiedManagers: List[str]
    warning: Optional[str] = None


class DecisionRequest(BaseModel):
    decision: Literal["approve", "deny"]
    reason: str = ""


class RolesResponse(BaseModel):
    email: str
    managers: List[str]
    managedUsers: List[str]
    isManager: bool
    isExporter: bool
    error: Optional[str] = None


class ProfileResponse(BaseModel):
    email: str
    displayName: str
    photoUrl: Optional[str] = None


class ReceiptSubmission(BaseModel):
    sector: Literal["comida", "transporte", "otros"]
    importe: float = Field(ge=0)
    fecha: str
    observaciones: str = ""


app = FastAPI(title="Receipt Approvals API", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_resolver() -> HierarchyResolver:
    return HierarchyResolver(get_directory_settings())


def current_user(x_goog_authenticated_user_email: Optional[str] = Header(default=None)) -> str:
    value = (x_goog_authenticated_user_email or "").strip()
    if value.startswith(IAP_PREFIX):
        value = value[len(IAP_PREFIX):]
    if not value:
        raise HTTPException(status_code=401, detail=f"Missing {IAP_USER_HEADER} header")
    return value.lower()


def _result_response(result) -> JSONResponse:
    status = STATUS_BY_ERROR_KIND.get(result.errorKind, 200) if result.error else 200
    return JSONResponse(jsonable_encoder(result), status_code=status)


def _managed_emails(resolver: HierarchyResolver, email: str) -> List[str]:
    result = resolver.resolve_managed_users(email)
    if result.error:
        raise HTTPException(status_code=STATUS_BY_ERROR_KIND[result.errorKind], detail=result.error)
    return [u.email.lower() for u in result.users or []]


def _notify(topic: str, message: dict) -> Optional[str]:
    """Publish an event. A failure leaves the stored record as is and comes back as a warning."""
    try:
        publish_event(topic=topic, message=message)
    except (exceptions.GoogleAPICallError, futures.TimeoutError) as exc:
        logger.error("Failed to publish %s event: %s", topic, exc)
        return f"Saved, but the {topic} notification could not be sent."
    return None


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request, exc: ConfigurationError):
    logger.error("Configuration error: %s", exc)
    return JSONResponse({"detail": str(exc)}, status_code=500)


@app.get("/")
def root():
    return {"message": "Receipt Approvals API", "version": "0.1.0", "status": "running"}


@app.get("/health")
def health(settings: AppSettings = Depends(get_settings)):
    return {"status": "ok", "service": "receipt-approvals", "project": settings.project_id}


# Hierarchy
@app.get("/api/hierarchy/managers")
def managers_of(email: str = Query(...), resolver: HierarchyResolver = Depends(get_resolver)):
    return _result_response(resolver.resolve_managers(email))


@app.get("/api/hierarchy/managed-users")
def managed_by(email: str = Query(...), resolver: HierarchyResolver = Depends(get_resolver)):
    return _result_response(resolver.resolve_managed_users(email))


@app.get("/api/me/roles", response_model=RolesResponse)
def my_roles(
    user: str = Depends(current_user),
    resolver: HierarchyResolver = Depends(get_resolver),
    settings: AppSettings = Depends(get_settings),
):
    managers = resolver.resolve_managers(user)
    managed = resolver.resolve_managed_users(user)
    errors = [r.error for r in (managers, managed) if r.error]
    for message in errors:
        logger.error("Could not load roles for %s: %s", user, message)
    managed_emails = [u.email for u in managed.users or []]
    return RolesResponse(
        email=user,
        managers=[m.email for m in managers.managers or []],
        managedUsers=managed_emails,
        isManager=bool(managed_emails),
        isExporter=settings.is_exporter(user),
        error="; ".join(errors) or None,
    )


@app.get("/api/me/profile", response_model=ProfileResponse)
def my_profile(user: str = Depends(current_user), resolver: HierarchyResolver = Depends(get_resolver)):
    directory = resolver.open_directory(user)
    try:
        profile = directory.get_user_profile(user)
    except exceptions.NotFound:
        raise HTTPException(status_code=404, detail=f"No user found with email {user}")
    except exceptions.Forbidden:
        raise HTTPException(status_code=502, detail="Directory access denied for the service account")
    return ProfileResponse(email=profile.primaryEmail, displayName=profile.fullName or "No Name", photoUrl=profile.thumbnailPhotoUrl)


# Receipts
@app.post("/api/receipts/extract", response_model=ExtractedReceipt)
def extract_receipt(file: UploadFile = File(...), user: str = Depends(current_user)):
    content = file.file.read()
    if not content:
        raise HTTPException(status_code=400, detail="Empty file")
    return extract_receipt_data(content, file.content_type or "image/jpeg", user)


@app.post("/api/receipts", response_model=SubmitResponse)
def submit_receipt(
    file: UploadFile = File(...),
    sector: str = Form(...),
    importe: float = Form(...),
    fecha: str = Form(...),
    observaciones: str = Form(default=""),
    user: str = Depends(current_user),
    resolver: HierarchyResolver = Depends(get_resolver),
    settings: AppSettings = Depends(get_settings),
):
    if sector not in VALID_SECTORS:
        raise HTTPException(status_code=422, detail=f"sector must be one of {', '.join(VALID_SECTORS)}")
    if importe < 0:
        raise HTTPException(status_code=422, detail="importe must not be negative")
    submission = ReceiptSubmission(sector=sector, importe=importe, fecha=fecha, observaciones=observaciones)

    # 1) Upload image
    receipt_id = str(uuid.uuid4())
    object_name = f"{receipt_id}/{file.filename or 'receipt.jpg'}"
    gcs_uri, photo_url = upload_receipt_image(settings.receipts_bucket, object_name, file)

    # 2) Create Firestore doc
    fields = dict(submission.model_dump(), usuario=user)
    firestore.create_receipt(receipt_id, fields, gcs_uri=gcs_uri, photo_url=photo_url, file_name=object_name)

    # 3) Notify managers
    warning = None
    managers: List[str] = []
    try:
        managers_result = resolver.resolve_managers(user)
    except ConfigurationError as exc:
        logger.error("Configuration error while resolving managers for %s: %s", user, exc)
        warning = f"Receipt saved, but managers could not be resolved: {exc}"
    else:
        if managers_result.error:
            warning = f"Receipt saved, but managers could not be resolved: {managers_result.error}"
        managers = [m.email for m in managers_result.managers or []]
    if not managers and not warning:
        warning = f"No manager found to notify for {user}. The receipt was saved anyway."

    publish_warning = _notify(
        topic=settings.topic_submitted,
        message={
            "receiptId": receipt_id,
            "usuario": user,
            "importe": submission.importe,
            "fecha": submission.fecha,
            "sector": submission.sector,
            "managers": managers,
        },
    )
    warning = warning or publish_warning
    if warning:
        logger.warning(warning)
    return SubmitResponse(
        receiptId=receipt_id,
        photoUrl=photo_url,
        status=firestore.PENDING,
        notifiedManagers=managers,
        warning=warning,
    )


@app.get("/api/receipts")
def my_receipts(user: str = Depends(current_user)):
    return JSONResponse(jsonable_encoder(firestore.list_user_receipts(user)))


# Approvals
@app.get("/api/approvals/pending")
def pending_approvals(user: str = Depends(current_user), resolver: HierarchyResolver = Depends(get_resolver)):
    managed = _managed_emails(resolver, user)
    if not managed:
        raise HTTPException(status_code=403, detail="This page is only available to managers")
    return JSONResponse(jsonable_encoder(firestore.list_pending_receipts(managed)))


@app.post("/api/approvals/{receipt_id}")
def decide_receipt(
    receipt_id: str,
    body: DecisionRequest,
    user: str = Depends(current_user),
    resolver: HierarchyResolver = Depends(get_resolver),
    settings: AppSettings = Depends(get_settings),
):
    if body.decision == "deny" and not body.reason.strip():
        raise HTTPException(status_code=422, detail="A reason is required to deny a receipt")

    receipt = firestore.get_receipt(receipt_id)
    if not receipt:
        raise HTTPException(status_code=404, detail="Not found")
    if receipt["usuario"].lower() not in _managed_emails(resolver, user):
        raise HTTPException(status_code=403, detail="You do not manage the submitter of this receipt")
    if receipt["estado"] != firestore.PENDING:
        raise HTTPException(status_code=409, detail=f"Receipt is already {receipt['estado']}")

    estado = firestore.APPROVED if body.decision == "approve" else firestore.DENIED
    firestore.record_decision(receipt_id, estado, body.reason.strip(), reviewer=user)
    warning = _notify(
        topic=settings.topic_decided,
        message={
            "receiptId": receipt_id,
            "usuario": receipt["usuario"],
            "importe": receipt["importe"],
            "fecha": receipt["fecha"],
            "estado": estado,
            "motivo": body.reason.strip(),
            "revisadoPor": user,
        },
    )
    logger.info("Receipt %s %s by %s", receipt_id, estado, user)
    return {"receiptId": receipt_id, "estado": estado, "warning": warning}


# Export
@app.get("/api/export/receipts.csv")
def export_receipts(
    usuario: Optional[str] = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
    user: str = Depends(current_user),
    settings: AppSettings = Depends(get_settings),
):
    if not settings.is_exporter(user):
        raise HTTPException(status_code=403, detail="You are not allowed to export receipts")
    receipts = firestore.list_approved_receipts(user_email=usuario, start=start, end=end)
    if not receipts:
        raise HTTPException(status_code=404, detail="No receipts match the current filters")
    return Response(
        content=receipts_to_csv(receipts),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{export_filename()}"'},
    )
