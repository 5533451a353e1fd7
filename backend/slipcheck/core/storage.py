import base64
import binascii
import logging
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from fastapi import HTTPException

from slipcheck.core.config import get_settings

logger = logging.getLogger(__name__)

SLIP_PREFIX = "slips"


@dataclass(frozen=True)
class StoredFile:
    key: str
    url: str


def _file_extension(filename: Optional[str]) -> str:
    if not filename:
        return ""
    return Path(filename).suffix.lower()


def build_object_key(filename: Optional[str]) -> str:
    day = datetime.now(timezone.utc).strftime("%Y/%m/%d")
    return f"{SLIP_PREFIX}/{day}/{uuid.uuid4().hex}{_file_extension(filename)}"


def get_storage_client():
    from supabase import create_client

    settings = get_settings()
    key = settings.supabase_service_role_key or settings.supabase_key
    if not settings.supabase_url or not key:
        raise RuntimeError("Supabase storage credentials are not configured")
    return create_client(settings.supabase_url, key)


def build_object_url(bucket: str, key: str) -> str:
    settings = get_settings()
    return f"{settings.supabase_url}/storage/v1/object/{bucket}/{key}"


def _local_root() -> Path:
    return Path(get_settings().storage_local_dir).resolve()


def _local_path(key: str) -> Path:
    root = _local_root()
    path = (root / key).resolve()
    if root not in path.parents:
        raise HTTPException(400, "Invalid storage key")
    return path


def _save_local(key: str, content: bytes) -> StoredFile:
    path = _local_path(key)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
    except OSError as exc:
        logger.exception("Local slip storage write failed key=%s", key)
        raise HTTPException(502, "Failed to store slip file") from exc
    return StoredFile(key=key, url=f"/uploads/{key}")


def _save_supabase(key: str, content: bytes, content_type: Optional[str]) -> StoredFile:
    settings = get_settings()
    options = {"content-type": content_type} if content_type else None
    try:
        result = get_storage_client().storage.from_(settings.storage_bucket).upload(key, content, options)
    except Exception as exc:  # pragma: no cover
        raise HTTPException(502, "Failed to store slip file") from exc

    error = result.get("error") if isinstance(result, dict) else getattr(result, "error", None)
    if error:
        raise HTTPException(502, "Failed to store slip file")
    return StoredFile(key=key, url=build_object_url(settings.storage_bucket, key))


def save_slip_file(*, filename: Optional[str], content: bytes, content_type: Optional[str]) -> StoredFile:
    key = build_object_key(filename)
    if get_settings().storage_backend == "supabase":
        return _save_supabase(key, content, content_type)
    return _save_local(key, content)


def read_slip_file(key: str) -> bytes:
    """Fetch stored slip bytes, e.g. for a re-validation pass."""
    settings = get_settings()
    if settings.storage_backend == "supabase":
        try:
            return get_storage_client().storage.from_(settings.storage_bucket).download(key)
        except Exception as exc:  # pragma: no cover
            raise HTTPException(502, "Failed to read slip file") from exc

    path = _local_path(key)
    try:
        return path.read_bytes()
    except FileNotFoundError as exc:
        raise HTTPException(404, "Slip file not found") from exc
    except OSError as exc:
        raise HTTPException(502, "Failed to read slip file") from exc


ALLOWED_CONTENT_TYPE_PREFIXES = ("image/",)
ALLOWED_CONTENT_TYPES = {"application/pdf"}
_DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?:;[\w=.-]+)*?;base64,(?P<payload>.*)$", re.DOTALL)


def is_allowed_content_type(content_type: Optional[str]) -> bool:
    mime = (content_type or "").split(";", 1)[0].strip().lower()
    return mime in ALLOWED_CONTENT_TYPES or mime.startswith(ALLOWED_CONTENT_TYPE_PREFIXES)


def check_slip_upload(content: bytes, content_type: Optional[str]) -> None:
    if not is_allowed_content_type(content_type):
        raise HTTPException(400, "Only image or PDF slips are accepted")
    if not content:
        raise HTTPException(400, "Empty file")
    if len(content) > get_settings().slip_max_upload_bytes:
        raise HTTPException(413, "File is too large")


def decode_data_url(data_url: str) -> tuple[bytes, str]:
    """Split a ``data:<mime>;base64,<payload>`` string into bytes and MIME type."""
    found = _DATA_URL_RE.match((data_url or "").strip())
    if not found or not found.group("mime"):
        raise HTTPException(400, "Slip must be a base64 data URL")
    try:
        content = base64.b64decode("".join(found.group("payload").split()), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise HTTPException(400, "Slip must be a base64 data URL") from exc
    return content, found.group("mime").lower()
