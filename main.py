import logging
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from cache import BalanceCache, TagSnapshotCache, get_cache_backend
from config import get_settings
from database import SessionLocal
from schemas import LinkCredentials, Scope
from services import LedgerQueryService, MovementFilters, Unauthorized
from sessions import SessionUser, read_session_token
from tag_tree import TagHierarchyError

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def _load_app_version() -> str:
    try:
        import tomllib
    except Exception:
        return "unknown"
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except Exception:
        return "unknown"


APP_VERSION = _load_app_version()

app = FastAPI(title="Ledger Balances", version=APP_VERSION)


@app.exception_handler(Unauthorized)
def unauthorized_handler(request: Request, exc: Unauthorized) -> JSONResponse:
    return JSONResponse(status_code=401, content={"detail": str(exc)})


@app.exception_handler(OperationalError)
def store_unavailable_handler(request: Request, exc: OperationalError) -> JSONResponse:
    logger.error(f"store_unavailable: path={request.url.path} error={exc.orig}")
    return JSONResponse(
        status_code=503,
        content={"detail": "Ledger store unavailable, retry later"},
        headers={"Retry-After": "5"},
    )


@app.exception_handler(TagHierarchyError)
def tag_hierarchy_handler(request: Request, exc: TagHierarchyError) -> JSONResponse:
    logger.error(f"tag_hierarchy_corrupt: path={request.url.path} error={exc}")
    return JSONResponse(
        status_code=500,
        content={"detail": "Tag hierarchy is inconsistent, contact an administrator"},
    )


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def current_user(request: Request) -> Optional[SessionUser]:
    token = request.cookies.get("session")
    header = request.headers.get("authorization", "")
    if header.lower().startswith("bearer "):
        token = header[7:].strip()
    return read_session_token(token)


def get_query_service(
    db: Session = Depends(get_db),
    user: Optional[SessionUser] = Depends(current_user),
) -> LedgerQueryService:
    settings = get_settings()
    backend = get_cache_backend()
    return LedgerQueryService(
        db,
        user,
        balance_cache=BalanceCache(backend, settings.balance_cache_ttl_secs),
        tag_cache=TagSnapshotCache(backend, settings.tag_cache_ttl_secs),
    )


def _int_param(request: Request, name: str) -> Optional[int]:
    raw = request.query_params.get(name)
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid {name}") from exc


def _bool_param(request: Request, name: str) -> Optional[bool]:
    raw = request.query_params.get(name)
    if raw is None or raw == "":
        return None
    value = raw.strip().lower()
    if value in ("true", "1", "yes"):
        return True
    if value in ("false", "0", "no"):
        return False
    raise HTTPException(status_code=400, detail=f"Invalid {name}")


def _date_param(request: Request, name: str) -> Optional[date]:
    raw = request.query_params.get(name)
    if not raw:
        return None
    try:
        return date.fromisoformat(raw)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid {name}") from exc


def scope_from_request(request: Request) -> Scope:
    entity_tag = request.query_params.get("entity_tag") or None
    try:
        return Scope(entity_id=_int_param(request, "entity_id"), entity_tag=entity_tag)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def link_from_request(request: Request) -> LinkCredentials:
    return LinkCredentials(
        link_id=_int_param(request, "link_id"),
        link_token=request.query_params.get("link_token") or None,
    )


@app.get("/api/movements/current-accounts")
def api_current_accounts(
    request: Request, service: LedgerQueryService = Depends(get_query_service)
):
    max_page_size = get_settings().max_page_size
    page_size = _int_param(request, "page_size") or 10
    page_size = min(max(page_size, 1), max_page_size)
    page_number = max(_int_param(request, "page_number") or 1, 1)
    filters = MovementFilters(
        account=_bool_param(request, "account"),
        currency=request.query_params.get("currency") or None,
        day_in_past=_date_param(request, "day_in_past"),
    )
    page = service.get_current_accounts(
        scope_from_request(request),
        page_size=page_size,
        page_number=page_number,
        filters=filters,
        link=link_from_request(request),
    )
    return page.model_dump(mode="json")


@app.get("/api/movements/balances")
def api_balances_by_entities(
    request: Request, service: LedgerQueryService = Depends(get_query_service)
):
    balances = service.get_balances_by_entities(
        scope_from_request(request), link=link_from_request(request)
    )
    return [item.model_dump(mode="json") for item in balances]


@app.get("/api/movements/balances/card")
def api_balances_for_card(
    request: Request, service: LedgerQueryService = Depends(get_query_service)
):
    balances = service.get_balances_by_entities_for_card(
        scope_from_request(request), link=link_from_request(request)
    )
    return [item.model_dump(mode="json") for item in balances]


@app.get("/api/movements/balances/summary")
def api_balance_summary(
    request: Request, service: LedgerQueryService = Depends(get_query_service)
):
    summary = service.get_balance_summary(
        scope_from_request(request),
        day_in_past=_date_param(request, "day_in_past"),
        link=link_from_request(request),
    )
    return [item.model_dump(mode="json") for item in summary]


@app.get("/api/movements/balances/detailed")
def api_detailed_balance(
    request: Request, service: LedgerQueryService = Depends(get_query_service)
):
    account_type = _bool_param(request, "account_type")
    if account_type is None:
        raise HTTPException(status_code=400, detail="account_type is required")
    balances = service.get_detailed_balance(
        scope_from_request(request), account_type, link=link_from_request(request)
    )
    return [item.model_dump(mode="json") for item in balances]


@app.get("/api/movements/by-currency")
def api_movements_by_currency(
    request: Request, service: LedgerQueryService = Depends(get_query_service)
):
    currency = request.query_params.get("currency")
    if not currency:
        raise HTTPException(status_code=400, detail="currency is required")
    limit = min(max(_int_param(request, "limit") or 5, 1), get_settings().max_page_size)
    movements = service.get_movements_by_currency(
        scope_from_request(request), currency, limit=limit
    )
    return [item.model_dump(mode="json") for item in movements]


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
