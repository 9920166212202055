import logging
import os
import re
import uuid
from typing import List, Literal

from fastapi import APIRouter, Depends, File, Form, UploadFile

from agromart import config
from agromart.errors import AppError
from agromart.rate_limit import upload_limiter
from agromart.responses import ok
from agromart.security import authenticate, require_permission

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/upload", tags=["uploads"])

UploadType = Literal["products", "reviews", "profiles"]
ALLOWED_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".webp"}
ALLOWED_CONTENT_TYPES = {"image/jpeg", "image/png", "image/gif", "image/webp"}
MAX_FILES = 10
FILENAME_PATTERN = re.compile(r"^[0-9a-f]{32}\.(jpg|jpeg|png|gif|webp)$")


def read_image(upload: UploadFile) -> tuple:
    """Validate an upload and return its extension and bytes."""
    ext = os.path.splitext(upload.filename or "")[1].lower()
    if ext not in ALLOWED_EXTENSIONS or (upload.content_type and upload.content_type not in ALLOWED_CONTENT_TYPES):
        raise AppError(
            "Only image files (jpg, jpeg, png, gif, webp) are allowed",
            400,
            "INVALID_FILE_TYPE",
            {"filename": upload.filename},
        )
    content = upload.file.read(config.MAX_UPLOAD_BYTES + 1)
    if len(content) > config.MAX_UPLOAD_BYTES:
        raise AppError(
            f"File too large. Maximum size is {config.MAX_UPLOAD_BYTES // (1024 * 1024)}MB",
            400,
            "FILE_TOO_LARGE",
            {"filename": upload.filename},
        )
    if not content:
        raise AppError("Uploaded file is empty", 400, "INVALID_FILE_TYPE", {"filename": upload.filename})
    return ext, content


def write_image(upload: UploadFile, upload_type: str, ext: str, content: bytes) -> dict:
    directory = os.path.join(config.UPLOAD_DIR, upload_type)
    os.makedirs(directory, exist_ok=True)
    filename = f"{uuid.uuid4().hex}{ext}"
    with open(os.path.join(directory, filename), "wb") as fh:
        fh.write(content)
    logger.info("Stored upload %s/%s (%d bytes)", upload_type, filename, len(content))
    return {
        "filename": filename,
        "original_name": upload.filename,
        "size": len(content),
        "url": f"/uploads/{upload_type}/{filename}",
    }


def save_image(upload: UploadFile, upload_type: str) -> dict:
    ext, content = read_image(upload)
    return write_image(upload, upload_type, ext, content)


def save_images(uploads: List[UploadFile], upload_type: str) -> List[dict]:
    """Store a batch; nothing is written unless every file is valid."""
    if len(uploads) > MAX_FILES:
        raise AppError(f"You can upload at most {MAX_FILES} files at once", 400, "TOO_MANY_FILES")
    validated = [(upload, *read_image(upload)) for upload in uploads]
    return [write_image(upload, upload_type, ext, content) for upload, ext, content in validated]


def delete_image(upload_type: str, filename: str) -> None:
    if not FILENAME_PATTERN.match(filename):
        raise AppError("Invalid filename", 400, "INVALID_FILENAME")
    path = os.path.join(config.UPLOAD_DIR, upload_type, filename)
    if not os.path.isfile(path):
        raise AppError("File not found", 404, "FILE_NOT_FOUND", {"filename": filename})
    os.remove(path)


# Upload Endpoints
@router.post("/image", status_code=201, dependencies=[Depends(authenticate), Depends(upload_limiter)])
def upload_image(file: UploadFile = File(...), type: UploadType = Form("products")):
    return ok(save_image(file, type), "File uploaded")


@router.post("/images", status_code=201, dependencies=[Depends(authenticate), Depends(upload_limiter)])
def upload_images(files: List[UploadFile] = File(...), type: UploadType = Form("products")):
    return ok(save_images(files, type), f"{len(files)} files uploaded")


@router.delete("/{upload_type}/{filename}", dependencies=[Depends(require_permission("uploads:delete"))])
def remove_image(upload_type: UploadType, filename: str):
    delete_image(upload_type, filename)
    return ok(message="File deleted")
