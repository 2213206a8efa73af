"""Signed document downloads."""

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import FileResponse

from factoring.core.exceptions import ValidationFailed
from factoring.services.document_storage import DocumentStorage, get_document_storage

router = APIRouter()


@router.get(
    "/{storage_id}",
    summary="Download a document through a signed URL",
    response_class=FileResponse,
    responses={
        403: {"description": "Link is invalid or has expired"},
        404: {"description": "Document not found"},
    },
)
async def download_document(
    storage_id: str,
    expires: int = Query(...),
    signature: str = Query(...),
    storage: DocumentStorage = Depends(get_document_storage),
) -> FileResponse:
    """The signature stands in for authentication, so no bearer token is needed."""
    if not storage.verify_secure_url(storage_id, expires, signature):
        raise HTTPException(status_code=403, detail="Link is invalid or has expired")
    try:
        located = storage.open_path(storage_id)
    except ValidationFailed:
        located = None
    if located is None:
        raise HTTPException(status_code=404, detail="Document not found")
    path, mime_type = located
    return FileResponse(path, media_type=mime_type)
