from __future__ import annotations

import json
import logging
import os
import urllib.error
import urllib.parse
import urllib.request
import uuid


class PhotoStorageError(RuntimeError):
    pass


LOGGER = logging.getLogger("closet_inventory.storage")

PHOTO_FOLDERS = {"locations", "bins"}
DEFAULT_BUCKET = "closet-photos"


def _require_env(name: str) -> str:
    value = (os.environ.get(name) or "").strip()
    if not value:
        raise PhotoStorageError(f"Missing required environment variable: {name}")
    return value


def _clean_file_name(raw: str) -> str:
    name = os.path.basename((raw or "").replace("\\", "/")).strip()
    if not name:
        raise ValueError("fileName is required.")
    return name


def build_object_path(folder: str, file_name: str) -> str:
    if folder not in PHOTO_FOLDERS:
        raise ValueError("folder must be locations or bins.")
    return f"{folder}/{uuid.uuid4()}-{_clean_file_name(file_name)}"


def _request_signed_upload_url(path: str) -> str:
    base_url = _require_env("STORAGE_API_BASE_URL").rstrip("/")
    api_key = _require_env("STORAGE_API_KEY")
    bucket = (os.environ.get("STORAGE_BUCKET") or DEFAULT_BUCKET).strip()
    quoted_path = urllib.parse.quote(path)
    request = urllib.request.Request(
        url=f"{base_url}/storage/v1/object/upload/sign/{bucket}/{quoted_path}",
        data=b"{}",
        headers={
            "Authorization": f"Bearer {api_key}",
            "apikey": api_key,
            "Content-Type": "application/json",
        },
        method="POST",
    )
    try:
        with urllib.request.urlopen(request, timeout=15) as response:
            payload = json.loads(response.read().decode("utf-8"))
    except urllib.error.HTTPError as exc:
        raise PhotoStorageError(f"Storage API HTTP error: {exc.code}") from exc
    except urllib.error.URLError as exc:
        raise PhotoStorageError(f"Storage API connection error: {exc.reason}") from exc
    except json.JSONDecodeError as exc:
        raise PhotoStorageError("Storage API returned invalid JSON") from exc

    signed = str((payload or {}).get("url") or "").strip() if isinstance(payload, dict) else ""
    if not signed:
        raise PhotoStorageError("Unable to create upload URL")
    if signed.startswith("http"):
        return signed
    return f"{base_url}/storage/v1{signed}"


def create_signed_upload(folder: str, file_name: str) -> dict[str, str]:
    path = build_object_path(folder, file_name)
    try:
        upload_url = _request_signed_upload_url(path)
    except PhotoStorageError:
        LOGGER.exception("Signed upload URL request failed for %s", path)
        raise
    return {"path": path, "uploadUrl": upload_url}
