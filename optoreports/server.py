"""
OptoReports — Monthly institutional survey reports API
FastAPI routing layer. Request parsing and status codes only; report logic
lives in optoreports.reports, persistence in optoreports.db.
"""
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from optoreports.config import CORS_ORIGINS, DEBUG_API, VERSION, StorageConfig, load_storage_config
from optoreports.db import ReportStore, StorageError, create_store
from optoreports.reports import IdentityError, ReportKey, ReportService, merge_flag

logger = logging.getLogger(__name__)


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(400, "Request body must be JSON")
    if not isinstance(body, dict):
        raise HTTPException(400, "Request body must be a JSON object")
    return body


def create_app(config: Optional[StorageConfig] = None, store: Optional[ReportStore] = None) -> FastAPI:
    """Build the API around an explicit store. Defaults come from the environment."""
    if store is None:
        store = create_store(config or load_storage_config())
    service = ReportService(store, debug=DEBUG_API)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("[API] Storage: %s", store.info())
        yield
        store.close()

    app = FastAPI(title="OptoReports", version=VERSION, lifespan=lifespan)
    app.add_middleware(CORSMiddleware, allow_origins=CORS_ORIGINS, allow_credentials=True,
                       allow_methods=["*"], allow_headers=["*"])
    app.state.service = service

    @app.exception_handler(IdentityError)
    async def identity_error(request: Request, exc: IdentityError):
        return JSONResponse({"ok": False, "error": str(exc)}, status_code=400)

    @app.exception_handler(StorageError)
    async def storage_error(request: Request, exc: StorageError):
        logger.error("[API] %s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse({"ok": False, "error": "storage_error"}, status_code=500)

    # ============================================================
    # HEALTH / INFO
    # ============================================================
    @app.get("/api/health")
    async def health():
        return {"ok": True, "version": VERSION}

    @app.get("/api/storage/info")
    async def storage_info():
        return {"ok": True, "info": store.info()}

    # ============================================================
    # SAVE
    # ============================================================
    async def _save(request: Request, merge: Optional[str]):
        body = await _json_body(request)
        key = ReportKey.from_mapping(body)
        result = await run_in_threadpool(service.save_report, key, body,
                                         merge_flag(merge, body.get("merge")))
        return {"ok": True, "doc": result.doc}

    @app.post("/api/reports")
    async def save_report(request: Request, merge: Optional[str] = None):
        return await _save(request, merge)

    @app.post("/api/report")
    async def save_report_singular(request: Request, merge: Optional[str] = None):
        return await _save(request, merge)

    @app.post("/api/reports/preview")
    async def preview_report(request: Request, merge: Optional[str] = None):
        """Normalized answers + cumulative for a submission, without saving."""
        body = await _json_body(request)
        key = ReportKey.from_mapping(body)
        result = await run_in_threadpool(service.preview, key, body,
                                         merge_flag(merge, body.get("merge")))
        return {"ok": True, **result}

    # ============================================================
    # READ
    # ============================================================
    @app.get("/api/report")
    async def get_report(district: str = "", institution: str = "", month: str = "", year: str = ""):
        key = ReportKey.from_mapping(
            {"district": district, "institution": institution, "month": month, "year": year})
        doc = await run_in_threadpool(service.get_report, key)
        if not doc:
            raise HTTPException(404, "not_found")
        return {"ok": True, "doc": doc}

    @app.get("/api/reports")
    async def list_reports(district: Optional[str] = None, institution: Optional[str] = None,
                           month: Optional[str] = None, year: Optional[str] = None):
        filters = {"district": district, "institution": institution, "month": month, "year": year}
        return await run_in_threadpool(service.list_reports, filters)

    @app.get("/api/reports/{rid:path}")
    async def get_report_by_id(rid: str):
        doc = await run_in_threadpool(service.get_by_id, rid)
        if not doc:
            raise HTTPException(404, "not_found")
        return {"ok": True, "doc": doc}

    @app.get("/api/institutions")
    async def institutions(district: Optional[str] = None):
        return await run_in_threadpool(service.institutions, district)

    return app


def main():
    import uvicorn
    logging.basicConfig(
        level=logging.DEBUG if DEBUG_API else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    port = int(os.environ.get("PORT", "5000"))
    logger.info("Starting OptoReports v%s on port %d", VERSION, port)
    uvicorn.run(create_app(), host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
