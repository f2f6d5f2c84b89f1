from typing import Optional, Tuple

from google.cloud import storage

from ..config import get_settings


_client: Optional[storage.Client] = None


def _get_client() -> storage.Client:
    global _client
    if _client is None:
        _client = storage.Client(project=get_settings().project_id)
    return _client


def public_url(bucket_name: str, object_name: str) -> str:
    return f"https://storage.googleapis.com/{bucket_name}/{object_name}"


def upload_receipt_image(bucket_name: str, object_name: str, file) -> Tuple[str, str]:
    """Upload an UploadFile to the receipts bucket. Returns (gs:// URI, https URL)."""
    blob = _get_client().bucket(bucket_name).blob(object_name)
    blob.upload_from_file(file.file, rewind=True, content_type=file.content_type or "image/jpeg")
    return f"gs://{bucket_name}/{object_name}", public_url(bucket_name, object_name)


def upload_report(bucket_name: str, object_name: str, content: str) -> str:
    blob = _get_client().bucket(bucket_name).blob(object_name)
    blob.upload_from_string(content, content_type="text/csv; charset=utf-8")
    return f"gs://{bucket_name}/{object_name}"
