import csv
import io
from datetime import datetime, timezone

from receipt_approvals.services.export import CSV_HEADERS, export_filename, receipts_to_csv


def _receipt(**overrides):
    receipt = {
        "id": "r1",
        "usuario": "a@x.com",
        "importe": 12.5,
        "fecha": "2025-01-10",
        "fechaSubida": datetime(2025, 1, 11, 9, 30, 5, tzinfo=timezone.utc),
        "sector": "comida",
        "estado": "aprobado",
        "observaciones": "",
        "motivo": "ok",
        "photoUrl": "https://storage.googleapis.com/ticketimages/r1/a.jpg",
        "fileName": "r1/a.jpg",
    }
    receipt.update(overrides)
    return receipt


def test_empty_export_is_empty_string():
    assert receipts_to_csv([]) == ""


def test_rows_follow_header_layout():
    content = receipts_to_csv([_receipt()])
    header, row = list(csv.reader(io.StringIO(content)))

    assert header == CSV_HEADERS
    assert row[:8] == ["r1", "a@x.com", "12.50", "EUR", "2025-01-10", "2025-01-11 09:30:05", "comida", "aprobado"]


def test_fields_with_commas_and_quotes_are_quoted():
    content = receipts_to_csv([_receipt(observaciones='Cena, "equipo"')])

    assert '"Cena, ""equipo"""' in content
    assert list(csv.reader(io.StringIO(content)))[1][8] == 'Cena, "equipo"'


def test_upload_date_accepts_iso_strings_and_garbage():
    rows = list(
        csv.reader(io.StringIO(receipts_to_csv([_receipt(fechaSubida="2025-01-11T09:30:05Z"), _receipt(fechaSubida="?")])))
    )

    assert rows[1][5] == "2025-01-11 09:30:05"
    assert rows[2][5] == ""


def test_export_filename():
    now = datetime(2025, 1, 11, 0, 0, tzinfo=timezone.utc)

    assert export_filename(now) == f"export_recibos_2025-01-11-{int(now.timestamp() * 1000)}.csv"
