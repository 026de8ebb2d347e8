from __future__ import annotations

import logging
import os
from typing import Annotated

from fastapi import APIRouter, Depends, File, HTTPException, Request, Response, UploadFile, status
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from app.api.deps import get_tenant_context, require_permission
from app.domain.models import StandardCreate, StandardImportResult, StandardRead
from app.domain.permissions import PERM_MANAGE_STANDARDS
from app.domain.standard_csv import CsvParseError, generate_csv_template
from app.domain.tenancy import TenantContext
from app.infra.audit import set_audit_context
from app.services.hierarchy_service import ConflictError, HierarchyService, NotFoundError
from app.services.standard_import_service import StandardImportService

logger = logging.getLogger(__name__)

CSV_MAX_UPLOAD_BYTES = int(os.getenv("CSV_MAX_UPLOAD_BYTES", str(5 * 1024 * 1024)))
TEMPLATE_FILENAME = "standards-template.csv"

router = APIRouter()


def get_hierarchy_service() -> HierarchyService:
    return HierarchyService()


def get_import_service() -> StandardImportService:
    return StandardImportService()


Context = Annotated[TenantContext, Depends(get_tenant_context)]
ManagerContext = Annotated[TenantContext, Depends(require_permission(PERM_MANAGE_STANDARDS))]
Service = Annotated[HierarchyService, Depends(get_hierarchy_service)]
ImportService = Annotated[StandardImportService, Depends(get_import_service)]


def _handle_standard_error(exc: Exception) -> None:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    raise exc


def _upload_error(message: str) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": message})


@router.get("", response_model=list[StandardRead])
def list_standards(
    context: Context,
    service: Service,
    facility_id: int | None = None,
    area_id: int | None = None,
) -> list[StandardRead]:
    return service.list_standards(context, facility_id=facility_id, area_id=area_id)


@router.post("", response_model=StandardRead, status_code=status.HTTP_201_CREATED)
def create_standard(payload: StandardCreate, context: ManagerContext, service: Service) -> StandardRead:
    try:
        return service.create_standard(context, payload)
    except (NotFoundError, ConflictError) as exc:
        _handle_standard_error(exc)
        raise


@router.post("/upload", response_model=StandardImportResult)
async def upload_standards(
    request: Request,
    context: ManagerContext,
    service: ImportService,
    file: UploadFile | None = File(default=None),
) -> StandardImportResult | JSONResponse:
    if file is None:
        return _upload_error("No file uploaded")
    if not (file.filename or "").lower().endswith(".csv"):
        return _upload_error("File must be a CSV")

    raw = await file.read(CSV_MAX_UPLOAD_BYTES + 1)
    if len(raw) > CSV_MAX_UPLOAD_BYTES:
        return _upload_error(f"File exceeds the {CSV_MAX_UPLOAD_BYTES} byte upload limit")
    try:
        content = raw.decode("utf-8")
    except UnicodeDecodeError:
        return _upload_error("File must be UTF-8 encoded text")

    try:
        result = await run_in_threadpool(service.import_csv, content, context)
    except CsvParseError as exc:
        logger.info("rejected standards upload %s: %s", file.filename, exc)
        return _upload_error(f"Failed to parse CSV: {exc}")

    set_audit_context(
        request,
        action="standards.import",
        detail={
            "what": {"filename": file.filename},
            "result": {"created": result.created, "failed": len(result.errors), "rejected": result.rejected},
        },
    )
    if result.rejected:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=result.model_dump(mode="json", by_alias=True))
    return result


@router.get("/template")
def download_template(context: Context) -> Response:
    return Response(
        content=generate_csv_template(),
        media_type="text/csv",
        headers={
            "Content-Disposition": f'attachment; filename="{TEMPLATE_FILENAME}"',
            "Cache-Control": "no-cache",
        },
    )


@router.get("/{standard_id}", response_model=StandardRead)
def get_standard(standard_id: int, context: Context, service: Service) -> StandardRead:
    try:
        return service.get_standard(context, standard_id)
    except NotFoundError as exc:
        _handle_standard_error(exc)
        raise
