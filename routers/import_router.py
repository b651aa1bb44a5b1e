"""
Import Router - STL imports from URLs and direct uploads
"""
import json
import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends, File, Form, Query, UploadFile
from fastapi.responses import FileResponse
from pydantic import BaseModel, ConfigDict, Field

from dependencies import get_import_jobs
from jobs.import_job_manager import ImportJobManager, STL_CONTENT_TYPE
from models.import_job_state import ImportJobStatus
from utils.responses import success_response, error_response
from utils.security_utils import validate_uploaded_file

logger = logging.getLogger(__name__)

import_router = APIRouter(prefix="/api", tags=["import"])


class ImportRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    stl_url: str = Field(..., alias="stlUrl", min_length=1)
    file_name: Optional[str] = Field(None, alias="fileName")
    source: Optional[str] = None
    metadata: dict = Field(default_factory=dict)


@import_router.post("/import-stl")
async def import_stl(
    body: ImportRequest = Body(...),
    import_jobs: ImportJobManager = Depends(get_import_jobs),
):
    """
    Start an STL import from a URL.

    Returns immediately with the job id; progress is available from
    /api/import-status/{id} or the /ws/import/{id} websocket.
    """
    try:
        import_id = import_jobs.create_import_job(body.stl_url, body.file_name, body.source, body.metadata)
    except ValueError as e:
        return error_response("INVALID_FILENAME", 400, str(e))
    job = import_jobs.get_job(import_id)
    return success_response({"importId": import_id, "job": job.to_dict()}, message="Import started")


@import_router.post("/upload")
async def upload_stl(
    file: UploadFile = File(...),
    source: Optional[str] = Form(None),
    fileName: Optional[str] = Form(None),
    metadata: Optional[str] = Form(None),
    import_jobs: ImportJobManager = Depends(get_import_jobs),
):
    """
    Direct STL upload. The file is validated and stored before responding,
    so the returned job is already completed or failed.
    """
    sanitized_filename, content = await validate_uploaded_file(file)

    parsed_metadata = {}
    if metadata:
        try:
            parsed_metadata = json.loads(metadata)
        except json.JSONDecodeError as e:
            logger.warning(f"Failed to parse upload metadata JSON: {e}")

    try:
        job = await import_jobs.create_upload_job(content, fileName or sanitized_filename, source, parsed_metadata)
    except ValueError as e:
        return error_response("INVALID_FILENAME", 400, str(e))
    if job.status == ImportJobStatus.FAILED:
        return error_response("INVALID_STL", 400, job.error or "Failed to process uploaded file",
                              data={"importId": job.id, "job": job.to_dict()})
    return success_response({"importId": job.id, "job": job.to_dict()}, message="Upload complete")


@import_router.get("/import-status/{import_id}")
async def get_import_status(
    import_id: str,
    import_jobs: ImportJobManager = Depends(get_import_jobs),
):
    job = import_jobs.get_job(import_id)
    if job is None:
        return error_response("NOT_FOUND", 404, "Import job not found")

    data = {"job": job.to_dict()}
    if job.status == ImportJobStatus.COMPLETED and job.file_path:
        data["downloadUrl"] = import_jobs.blob_store.signed_url(import_jobs.blob_store.key_for(job.file_path))
    return success_response(data)


@import_router.get("/models/{import_id}")
async def get_imported_model(
    import_id: str,
    import_jobs: ImportJobManager = Depends(get_import_jobs),
):
    """Download the stored STL of a completed import."""
    job = import_jobs.get_job(import_id)
    if job is None:
        return error_response("NOT_FOUND", 404, "Import job not found")
    if job.status != ImportJobStatus.COMPLETED or not job.file_path:
        return error_response("NOT_READY", 400, "Import job not completed or file not available")
    if not await import_jobs.blob_store.exists(import_jobs.blob_store.key_for(job.file_path)):
        return error_response("FILE_NOT_FOUND", 404, "File not found")

    return FileResponse(job.file_path, media_type=STL_CONTENT_TYPE, filename=job.file_name)


files_router = APIRouter(tags=["files"])


@files_router.get("/files/{path:path}")
async def get_signed_file(
    path: str,
    expires: int = Query(...),
    signature: str = Query(...),
    import_jobs: ImportJobManager = Depends(get_import_jobs),
):
    """Serve a stored blob through a signed, expiring URL."""
    blob_store = import_jobs.blob_store
    if not blob_store.verify_signature(path, expires, signature):
        return error_response("INVALID_SIGNATURE", 403, "Download link is invalid or has expired")
    try:
        if not await blob_store.exists(path):
            return error_response("FILE_NOT_FOUND", 404, "File not found")
    except ValueError as e:
        return error_response("INVALID_PATH", 400, str(e))
    file_path = blob_store.resolve(path)
    return FileResponse(file_path, media_type=STL_CONTENT_TYPE, filename=file_path.name)
