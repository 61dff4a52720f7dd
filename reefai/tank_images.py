from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from uuid import uuid4

logger = logging.getLogger(__name__)

MAX_IMAGES_PER_USER = 5
MAX_IMAGE_BYTES = 10 * 1024 * 1024
PROFILE_IMAGE_MAX_BYTES = 5 * 1024 * 1024
ALLOWED_CONTENT_TYPES = {"image/jpeg", "image/jpg", "image/png", "image/webp"}
EXTENSION_BY_CONTENT_TYPE = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
}
HISTORY_LIMIT = 50


class TankImageStoreError(RuntimeError):
    pass


class TankImageNotFoundError(TankImageStoreError):
    pass


class TankImageValidationError(TankImageStoreError):
    pass


class TankImageLimitError(TankImageValidationError):
    pass


def validate_upload(*, content_type: str | None, size: int, max_bytes: int = MAX_IMAGE_BYTES) -> None:
    normalized_type = (content_type or "").strip().lower()
    if normalized_type not in ALLOWED_CONTENT_TYPES:
        raise TankImageValidationError("Invalid file type. Only JPEG, PNG, and WebP images are allowed.")
    if size <= 0:
        raise TankImageValidationError("No image file provided")
    if size > max_bytes:
        raise TankImageValidationError(f"File too large. Maximum size is {max_bytes // (1024 * 1024)}MB.")


class TankImageStore:
    """
    Uploaded tank photos and their cached analyses, one JSON index per user.

    The per-user cap and the analysis cache are both check-then-act: two
    concurrent requests can each pass the check.
    """

    def __init__(self, *, root: Path, max_images: int = MAX_IMAGES_PER_USER) -> None:
        self.root = root
        self.max_images = max_images

    def create(
        self,
        *,
        user_id: str,
        original_filename: str | None,
        content_type: str | None,
        data: bytes,
        description: str = "",
    ) -> dict[str, Any]:
        payload = self._read_index(user_id)
        if len(payload["images"]) >= self.max_images:
            raise TankImageLimitError(f"Maximum of {self.max_images} images allowed per user")

        validate_upload(content_type=content_type, size=len(data))

        image_id = uuid4().hex
        extension = _file_extension(original_filename, content_type)
        filename = f"{image_id}.{extension}"
        relative_path = f"files/{filename}"
        file_path = self._user_dir(user_id) / relative_path
        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            file_path.write_bytes(data)
        except OSError as exc:
            raise TankImageStoreError(f"Upload error: {exc}") from exc

        record = {
            "id": image_id,
            "user_id": user_id,
            "filename": filename,
            "original_filename": original_filename or filename,
            "file_path": relative_path,
            "description": (description or "").strip(),
            "file_size": len(data),
            "content_type": (content_type or "").strip().lower(),
            "uploaded_at": self._now_iso(),
        }
        payload["images"].append(record)
        try:
            self._write_index(user_id, payload)
        except OSError as exc:
            _remove_file(file_path)
            raise TankImageStoreError(f"Database error: {exc}") from exc
        logger.info("Stored tank image %s for user %s (%s bytes)", image_id, user_id, len(data))
        return dict(record)

    def list_images(self, *, user_id: str) -> list[dict[str, Any]]:
        payload = self._read_index(user_id)
        images = sorted(payload["images"], key=lambda item: item.get("uploaded_at", ""), reverse=True)
        return [{**image, "url": image_url(image["id"])} for image in images]

    def get(self, *, user_id: str, image_id: str) -> dict[str, Any]:
        payload = self._read_index(user_id)
        for image in payload["images"]:
            if image.get("id") == image_id:
                return dict(image)
        raise TankImageNotFoundError("Image not found")

    def file_path(self, *, user_id: str, image_id: str) -> Path:
        record = self.get(user_id=user_id, image_id=image_id)
        return self._user_dir(user_id) / record["file_path"]

    def read_bytes(self, *, user_id: str, image_id: str) -> bytes:
        path = self.file_path(user_id=user_id, image_id=image_id)
        try:
            return path.read_bytes()
        except OSError as exc:
            raise TankImageStoreError(f"Failed to download image: {exc}") from exc

    def delete(self, *, user_id: str, image_id: str) -> None:
        payload = self._read_index(user_id)
        record = None
        for image in payload["images"]:
            if image.get("id") == image_id:
                record = image
                break
        if record is None:
            raise TankImageNotFoundError("Image not found")

        _remove_file(self._user_dir(user_id) / record["file_path"])
        payload["images"] = [image for image in payload["images"] if image.get("id") != image_id]
        payload["analyses"] = [item for item in payload["analyses"] if item.get("image_id") != image_id]
        self._write_index(user_id, payload)

    def get_cached_analysis(self, *, user_id: str, image_id: str) -> dict[str, Any] | None:
        payload = self._read_index(user_id)
        for item in payload["analyses"]:
            if item.get("image_id") == image_id:
                return dict(item.get("analysis_data") or {})
        return None

    def save_analysis(self, *, user_id: str, image_id: str, analysis: dict[str, Any]) -> dict[str, Any]:
        payload = self._read_index(user_id)
        if not any(image.get("id") == image_id for image in payload["images"]):
            raise TankImageNotFoundError("Image not found")
        record = {
            "id": uuid4().hex,
            "image_id": image_id,
            "score": analysis.get("score"),
            "summary": analysis.get("summary"),
            "breakdown": analysis.get("breakdown"),
            "analysis_data": analysis,
            "analyzed_at": self._now_iso(),
        }
        payload["analyses"].append(record)
        self._write_index(user_id, payload)
        return record

    def list_analyses(self, *, user_id: str, limit: int = HISTORY_LIMIT) -> list[dict[str, Any]]:
        payload = self._read_index(user_id)
        images = {image["id"]: image for image in payload["images"]}
        history: list[dict[str, Any]] = []
        for item in reversed(payload["analyses"]):
            image = images.get(item.get("image_id"))
            if image is None:
                continue
            history.append(
                {
                    "id": item["id"],
                    "image_id": image["id"],
                    "image_filename": image.get("filename") or "Unknown Image",
                    "original_filename": image.get("original_filename") or "Unknown Image",
                    "image_url": image_url(image["id"]),
                    "score": item.get("score"),
                    "summary": item.get("summary"),
                    "breakdown": item.get("breakdown"),
                    "analyzed_at": item.get("analyzed_at"),
                }
            )
            if len(history) >= limit:
                break
        return history

    def _user_dir(self, user_id: str) -> Path:
        return self.root / "tank_images" / _safe_user_key(user_id)

    def _index_path(self, user_id: str) -> Path:
        return self._user_dir(user_id) / "index.json"

    def _read_index(self, user_id: str) -> dict[str, Any]:
        index_path = self._index_path(user_id)
        if not index_path.exists():
            return {"images": [], "analyses": []}
        try:
            payload = json.loads(index_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise TankImageStoreError(f"Database error: {exc}") from exc
        if not isinstance(payload, dict):
            raise TankImageStoreError("Tank image index has invalid format.")
        payload.setdefault("images", [])
        payload.setdefault("analyses", [])
        return payload

    def _write_index(self, user_id: str, payload: dict[str, Any]) -> None:
        index_path = self._index_path(user_id)
        index_path.parent.mkdir(parents=True, exist_ok=True)
        index_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    def _now_iso(self) -> str:
        return datetime.now(timezone.utc).isoformat()


def image_url(image_id: str) -> str:
    return f"/api/user-tank-images/{image_id}/file"


def _file_extension(original_filename: str | None, content_type: str | None) -> str:
    if original_filename and "." in original_filename:
        candidate = original_filename.rsplit(".", 1)[-1].strip().lower()
        if re.fullmatch(r"[a-z0-9]{1,5}", candidate):
            return candidate
    return EXTENSION_BY_CONTENT_TYPE.get((content_type or "").strip().lower(), "jpg")


def _remove_file(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        return
    except OSError as exc:
        logger.error("Storage deletion error for %s: %s", path, exc)


def _safe_user_key(user_id: str) -> str:
    normalized = re.sub(r"[^A-Za-z0-9_-]+", "_", str(user_id or "").strip())
    if not normalized.strip("_"):
        raise TankImageStoreError("A user id is required.")
    return normalized[:128]
