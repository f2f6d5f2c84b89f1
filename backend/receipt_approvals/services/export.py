import csv
import io
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional


CSV_HEADERS = [
    "ID",
    "Usuario",
    "Importe",
    "Moneda",
    "Fecha Recibo",
    "Fecha Subida",
    "Sector",
    "Estado",
    "Observaciones",
    "Motivo Aprobacion/Denegacion",
    "URL Foto",
    "Nombre Fichero",
]


def format_upload_date(value: Any) -> str:
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M:%S")
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00")).strftime("%Y-%m-%d %H:%M:%S")
        except ValueError:
            return ""
    return ""


def receipts_to_csv(receipts: Iterable[Dict[str, Any]]) -> str:
    """Render receipts as CSV. An empty input yields an empty string."""
    rows = [
        [
            r.get("id", ""),
            r.get("usuario", ""),
            f"{float(r.get('importe') or 0):.2f}",
            "EUR",
            r.get("fecha", ""),
            format_upload_date(r.get("fechaSubida")),
            r.get("sector", ""),
            r.get("estado", ""),
            r.get("observaciones", ""),
            r.get("motivo", ""),
            r.get("photoUrl", ""),
            r.get("fileName", ""),
        ]
        for r in receipts
    ]
    if not rows:
        return ""

    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    writer.writerows(rows)
    return buffer.getvalue()


def export_filename(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"export_recibos_{now.strftime('%Y-%m-%d')}-{int(now.timestamp() * 1000)}.csv"
