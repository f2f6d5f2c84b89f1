from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from google.cloud import firestore
from google.cloud.firestore_v1 import FieldFilter

from ..config import get_settings


PENDING = "pendiente"
APPROVED = "aprobado"
DENIED = "denegado"

# Firestore caps the number of values in an "in" filter.
IN_QUERY_LIMIT = 30

_client: Optional[firestore.Client] = None


def _get_client() -> firestore.Client:
    global _client
    if _client is None:
        settings = get_settings()
        _client = firestore.Client(project=settings.project_id, database=settings.firestore_database)
    return _client


def _collection() -> firestore.CollectionReference:
    return _get_client().collection(get_settings().receipts_collection)


def _clean(receipt_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": receipt_id,
        "usuario": data.get("usuario") or "",
        "importe": float(data.get("importe") or 0),
        "fecha": data.get("fecha") or "",
        "sector": data.get("sector") or "otros",
        "estado": data.get("estado") or PENDING,
        "motivo": data.get("motivo") or "",
        "observaciones": data.get("observaciones") or "",
        "photoUrl": data.get("photoUrl") or "",
        "fileName": data.get("fileName") or "",
        "fechaSubida": data.get("fechaSubida"),
        "revisadoPor": data.get("revisadoPor"),
    }


def parse_receipt_date(value: str) -> Optional[date]:
    """Receipt dates are ISO; older records were stored as DD/MM/YYYY."""
    for fmt in ("%Y-%m-%d", "%d/%m/%Y"):
        try:
            return datetime.strptime(value.strip(), fmt).date()
        except (ValueError, AttributeError):
            continue
    return None


def create_receipt(receipt_id: str, fields: Dict[str, Any], gcs_uri: str, photo_url: str, file_name: str) -> None:
    """Create a pending receipt document (synchronous)"""
    _collection().document(receipt_id).set(
        {
            "usuario": fields["usuario"],
            "importe": float(fields["importe"]),
            "fecha": fields["fecha"],
            "sector": fields["sector"],
            "observaciones": fields.get("observaciones") or "",
            "estado": PENDING,
            "motivo": "",
            "gcsUri": gcs_uri,
            "photoUrl": photo_url,
            "fileName": file_name,
            "fechaSubida": datetime.now(timezone.utc),
        }
    )


def get_receipt(receipt_id: str) -> Optional[Dict[str, Any]]:
    snap = _collection().document(receipt_id).get()
    if not snap.exists:
        return None
    return _clean(receipt_id, snap.to_dict() or {})


def list_user_receipts(user_email: str) -> List[Dict[str, Any]]:
    docs = _collection().where(filter=FieldFilter("usuario", "==", user_email)).stream()
    return [_clean(d.id, d.to_dict() or {}) for d in docs]


def list_pending_receipts(user_emails: Iterable[str]) -> List[Dict[str, Any]]:
    emails = sorted(set(user_emails))
    receipts: List[Dict[str, Any]] = []
    for start in range(0, len(emails), IN_QUERY_LIMIT):
        chunk = emails[start : start + IN_QUERY_LIMIT]
        query = (
            _collection()
            .where(filter=FieldFilter("usuario", "in", chunk))
            .where(filter=FieldFilter("estado", "==", PENDING))
        )
        receipts.extend(_clean(d.id, d.to_dict() or {}) for d in query.stream())
    receipts.sort(key=lambda r: parse_receipt_date(r["fecha"]) or date.min, reverse=True)
    return receipts


def record_decision(receipt_id: str, estado: str, motivo: str, reviewer: str) -> None:
    """Update approval state (synchronous)"""
    _collection().document(receipt_id).update(
        {
            "estado": estado,
            "motivo": motivo,
            "revisadoPor": reviewer,
            "fechaRevision": datetime.now(timezone.utc),
        }
    )


def list_approved_receipts(
    user_email: Optional[str] = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
) -> List[Dict[str, Any]]:
    query = _collection().where(filter=FieldFilter("estado", "==", APPROVED))
    if user_email:
        query = query.where(filter=FieldFilter("usuario", "==", user_email))

    receipts = []
    for d in query.stream():
        receipt = _clean(d.id, d.to_dict() or {})
        if start or end:
            receipt_date = parse_receipt_date(receipt["fecha"])
            if receipt_date is None:
                continue
            if start and receipt_date < start:
                continue
            if end and receipt_date > end:
                continue
        receipts.append(receipt)
    receipts.sort(key=lambda r: (r["usuario"], parse_receipt_date(r["fecha"]) or date.min))
    return receipts
