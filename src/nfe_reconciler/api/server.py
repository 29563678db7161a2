"""FastAPI application exposing the reconciliation pipeline to the review UI."""

from __future__ import annotations

from typing import Any, Dict, Optional, Union

from fastapi import Depends, FastAPI, HTTPException
from pydantic import BaseModel

from ..config import Settings
from ..core.errors import (
    ClientValidationError,
    IncompleteDecisionError,
    InvalidTransitionError,
    ReconciliationError,
    ResolutionError,
)
from ..core.serialization import to_jsonable
from ..core.service import ReconciliationService, UnknownImportError


class StageRequest(BaseModel):
    invoice: Dict[str, Any]
    tenant_id: Optional[int] = None


class LineDecisionRequest(BaseModel):
    variant_id: int
    quantity: Optional[float] = None
    entry_certificate_id: Optional[int] = None
    custom_lot: Optional[str] = None


class NewCustomerRequest(BaseModel):
    name: str
    tenant_id: int
    country: str = "Brasil"
    tax_id: Optional[str] = None
    tax_id_type: Optional[str] = None
    address: Optional[str] = None
    phone: Optional[str] = None
    quality_email: Optional[str] = None
    is_national: bool = True
    internal_code: Optional[str] = None


class DecisionRequest(BaseModel):
    customer_id: Optional[int] = None
    create_customer: bool = False
    new_customer_data: Optional[NewCustomerRequest] = None
    # a bare integer is shorthand for {"variant_id": n}
    lines: Dict[int, Union[int, LineDecisionRequest]] = {}
    use_defaults: bool = False


class MappingRequest(BaseModel):
    tenant_id: int
    variant_id: int
    item: Dict[str, Any]


def _http_error(exc: ReconciliationError) -> HTTPException:
    if isinstance(exc, UnknownImportError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, InvalidTransitionError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, ResolutionError):
        return HTTPException(status_code=502, detail=str(exc))
    if isinstance(exc, IncompleteDecisionError):
        return HTTPException(
            status_code=400,
            detail={
                "message": str(exc),
                "missing_lines": exc.missing_lines,
                "missing_customer": exc.missing_customer,
            },
        )
    if isinstance(exc, ClientValidationError):
        return HTTPException(status_code=400, detail={"message": str(exc), "fields": exc.fields})
    return HTTPException(status_code=400, detail=str(exc))


def create_app(settings: Settings, service: Optional[ReconciliationService] = None) -> FastAPI:
    app = FastAPI(title="NF-e Import Reconciliation")
    reconciliation = service or ReconciliationService(settings)

    def get_service() -> ReconciliationService:
        return reconciliation

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    @app.post("/imports")
    async def stage_import(request: StageRequest, svc: ReconciliationService = Depends(get_service)) -> dict:
        try:
            staged = svc.stage(request.invoice, tenant_id=request.tenant_id)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        except ReconciliationError as exc:
            raise _http_error(exc)
        return to_jsonable(staged)

    @app.get("/imports/{import_id}")
    async def get_import(import_id: str, svc: ReconciliationService = Depends(get_service)) -> dict:
        try:
            return to_jsonable(svc.get(import_id))
        except ReconciliationError as exc:
            raise _http_error(exc)

    @app.post("/imports/{import_id}/decision")
    async def decide(import_id: str, request: DecisionRequest, svc: ReconciliationService = Depends(get_service)) -> dict:
        payload = None if request.use_defaults else request.dict(exclude={"use_defaults"})
        try:
            staged = svc.decide(import_id, payload)
        except (TypeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        except ReconciliationError as exc:
            raise _http_error(exc)
        return to_jsonable(staged.decision)

    @app.post("/imports/{import_id}/commit")
    async def commit(import_id: str, svc: ReconciliationService = Depends(get_service)) -> dict:
        try:
            result = svc.commit(import_id)
        except ReconciliationError as exc:
            raise _http_error(exc)
        return to_jsonable(result)

    @app.post("/mappings")
    async def save_mapping(request: MappingRequest, svc: ReconciliationService = Depends(get_service)) -> dict:
        try:
            svc.save_mapping(request.tenant_id, request.item, request.variant_id)
        except ReconciliationError as exc:
            raise _http_error(exc)
        return {"status": "registered"}

    @app.post("/catalog/reload")
    async def reload_catalog(svc: ReconciliationService = Depends(get_service)) -> dict:
        return {"status": "reloaded", "variants": svc.reload_catalog()}

    return app


__all__ = ["create_app"]
