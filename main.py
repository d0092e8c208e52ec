import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from sqlalchemy.orm import Session

from cache import CacheCoordinator, MemoryCache
from config import get_settings
from dashboard import DashboardService
from database import SessionFactory, build_engine, build_session_factory
from errors import CONFLICT_ERRORS, NotFound, TreasuryError
from models import CollectionMode
from periods import DateWindow, resolve_window
from scheduler import SchedulerManager
from schemas import (
    AccountBalanceIn,
    AccountBalanceOut,
    ApprovalIn,
    CategoryIn,
    CategoryOut,
    CategoryUpdate,
    CollectionIn,
    CollectionOut,
    ExpenseIn,
    ExpenseOut,
    ReceiptIn,
    ReorderIn,
    StructureReorderIn,
    SubcategoryIn,
    SubcategoryOut,
    SubcategoryUpdate,
    YearlyBalanceIn,
    YearlyBalanceOut,
    YearlyBalanceUpdate,
)
from services import (
    AggregationService,
    AnalyticsService,
    BalanceService,
    CategoryFilters,
    CategoryService,
    CollectionFilters,
    CollectionService,
    ExpenseFilters,
    ExpenseService,
    LedgerSource,
    ReportService,
    SubcategoryService,
    breakdown_dicts,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/treasury")


def http_error(exc: ValueError) -> HTTPException:
    if isinstance(exc, NotFound):
        status = 404
    elif isinstance(exc, CONFLICT_ERRORS):
        status = 409
    else:
        status = 400
    if isinstance(exc, TreasuryError):
        detail = {"kind": exc.kind, "message": exc.message, **exc.details}
    else:
        detail = {"kind": "BadRequest", "message": str(exc)}
    return HTTPException(status_code=status, detail=detail)


def get_db(request: Request):
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def get_cache(request: Request) -> Optional[CacheCoordinator]:
    return request.app.state.cache


def get_dashboards(request: Request) -> DashboardService:
    return DashboardService(request.app.state.session_factory, cache=request.app.state.cache)


def window_from_request(request: Request) -> DateWindow:
    params = request.query_params
    year = params.get("year")
    try:
        return resolve_window(
            int(year) if year else None, params.get("date_from"), params.get("date_to")
        )
    except ValueError as exc:
        raise http_error(exc) from exc


def _flag(request: Request, name: str) -> Optional[bool]:
    raw = request.query_params.get(name)
    if raw is None or raw == "":
        return None
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _int_param(request: Request, name: str) -> Optional[int]:
    raw = request.query_params.get(name)
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid {name}") from exc


def _page(request: Request) -> tuple[int, int]:
    page = max(_int_param(request, "page") or 1, 1)
    limit = min(max(_int_param(request, "limit") or 50, 1), 100)
    return page, limit


# Categories and structure


@router.get("/categories")
def list_categories(
    request: Request,
    db: Session = Depends(get_db),
    cache: Optional[CacheCoordinator] = Depends(get_cache),
):
    filters = CategoryFilters(
        query=request.query_params.get("q"), is_active=_flag(request, "active")
    )
    return {"categories": CategoryService(db, cache=cache).list_all(filters)}


@router.post("/categories", status_code=201)
def create_category(
    payload: CategoryIn,
    db: Session = Depends(get_db),
    cache: Optional[CacheCoordinator] = Depends(get_cache),
):
    try:
        category = CategoryService(db, cache=cache).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return CategoryOut.model_validate(category).model_dump()


@router.post("/categories/reorder")
def reorder_categories(
    payload: ReorderIn,
    db: Session = Depends(get_db),
    cache: Optional[CacheCoordinator] = Depends(get_cache),
):
    try:
        ordered = CategoryService(db, cache=cache).reorder(payload.ids)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"categories": [CategoryOut.model_validate(c).model_dump() for c in ordered]}


@router.get("/categories/{category_id}")
def get_category(category_id: int, db: Session = Depends(get_db)):
    try:
        return CategoryService(db).summary(category_id)
    except ValueError as exc:
        raise http_error(exc) from exc


@router.put("/categories/{category_id}")
def update_category(
    category_id: int,
    payload: CategoryUpdate,
    db: Session = Depends(get_db),
    cache: Optional[CacheCoordinator] = Depends(get_cache),
):
    try:
        category = CategoryService(db, cache=cache).update(category_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return CategoryOut.model_validate(category).model_dump()


@router.delete("/categories/{category_id}")
def delete_category(
    category_id: int,
    db: Session = Depends(get_db),
    cache: Optional[CacheCoordinator] = Depends(get_cache),
):
    try:
        CategoryService(db, cache=cache).delete(category_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"deleted": category_id}


@router.get("/structure")
def category_structure(
    request: Request,
    db: Session = Depends(get_db),
    cache: Optional[CacheCoordinator] = Depends(get_cache),
):
    include_amounts = _flag(request, "amounts")
    return CategoryService(db, cache=cache).structure(
        include_inactive=bool(_flag(request, "inactive")),
        include_amounts=True if include_amounts is None else include_amounts,
    )


@router.get("/structure/tree")
def category_tree(
    db: Session = Depends(get_db),
    cache: Optional[CacheCoordinator] = Depends(get_cache),
):
    return {"options": CategoryService(db, cache=cache).structure_tree()}


@router.post("/structure/reorder")
def reorder_structure(
    payload: StructureReorderIn,
    db: Session = Depends(get_db),
    cache: Optional[CacheCoordinator] = Depends(get_cache),
):
    try:
        CategoryService(db, cache=cache).reorder_structure(payload.structure)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"reordered": len(payload.structure)}


@router.get("/categories/{category_id}/subcategories")
def list_subcategories(
    category_id: int,
    request: Request,
    db: Session = Depends(get_db),
    cache: Optional[CacheCoordinator] = Depends(get_cache),
):
    try:
        items = SubcategoryService(db, cache=cache).list_for_category(
            category_id, include_inactive=bool(_flag(request, "inactive"))
        )
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"subcategories": items}


@router.post("/categories/{category_id}/subcategories", status_code=201)
def create_subcategory(
    category_id: int,
    payload: SubcategoryIn,
    db: Session = Depends(get_db),
    cache: Optional[CacheCoordinator] = Depends(get_cache),
):
    try:
        subcategory = SubcategoryService(db, cache=cache).create(category_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return SubcategoryOut.model_validate(subcategory).model_dump()


@router.post("/categories/{category_id}/subcategories/reorder")
def reorder_subcategories(
    category_id: int,
    payload: ReorderIn,
    db: Session = Depends(get_db),
    cache: Optional[CacheCoordinator] = Depends(get_cache),
):
    try:
        ordered = SubcategoryService(db, cache=cache).reorder(category_id, payload.ids)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {
        "subcategories": [SubcategoryOut.model_validate(s).model_dump() for s in ordered]
    }


@router.put("/subcategories/{subcategory_id}")
def update_subcategory(
    subcategory_id: int,
    payload: SubcategoryUpdate,
    db: Session = Depends(get_db),
    cache: Optional[CacheCoordinator] = Depends(get_cache),
):
    try:
        subcategory = SubcategoryService(db, cache=cache).update(subcategory_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return SubcategoryOut.model_validate(subcategory).model_dump()


@router.delete("/subcategories/{subcategory_id}")
def delete_subcategory(
    subcategory_id: int,
    db: Session = Depends(get_db),
    cache: Optional[CacheCoordinator] = Depends(get_cache),
):
    try:
        SubcategoryService(db, cache=cache).delete(subcategory_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"deleted": subcategory_id}


# Expenses


@router.get("/expenses")
def list_expenses(
    request: Request,
    db: Session = Depends(get_db),
    cache: Optional[CacheCoordinator] = Depends(get_cache),
):
    page, limit = _page(request)
    filters = ExpenseFilters(
        window=window_from_request(request),
        category_id=_int_param(request, "category_id"),
        subcategory_id=_int_param(request, "subcategory_id"),
        event_id=_int_param(request, "event_id"),
        is_approved=_flag(request, "approved"),
        query=request.query_params.get("q"),
    )
    return ExpenseService(db, cache=cache).page(filters, page=page, limit=limit)


@router.post("/expenses", status_code=201)
def create_expense(
    payload: ExpenseIn,
    db: Session = Depends(get_db),
    cache: Optional[CacheCoordinator] = Depends(get_cache),
):
    try:
        expense = ExpenseService(db, cache=cache).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return ExpenseOut.model_validate(expense).model_dump()


@router.get("/expenses/{expense_id}")
def get_expense(
    expense_id: int,
    db: Session = Depends(get_db),
    cache: Optional[CacheCoordinator] = Depends(get_cache),
):
    try:
        return ExpenseService(db, cache=cache).detail(expense_id)
    except ValueError as exc:
        raise http_error(exc) from exc


@router.put("/expenses/{expense_id}")
def update_expense(
    expense_id: int,
    payload: ExpenseIn,
    db: Session = Depends(get_db),
    cache: Optional[CacheCoordinator] = Depends(get_cache),
):
    try:
        expense = ExpenseService(db, cache=cache).update(expense_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return ExpenseOut.model_validate(expense).model_dump()


@router.delete("/expenses/{expense_id}")
def delete_expense(
    expense_id: int,
    db: Session = Depends(get_db),
    cache: Optional[CacheCoordinator] = Depends(get_cache),
):
    try:
        deleted = ExpenseService(db, cache=cache).delete(expense_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"deleted": deleted.id, "receipt_url": deleted.receipt_url}


@router.post("/expenses/{expense_id}/approve")
def approve_expense(
    expense_id: int,
    payload: ApprovalIn,
    db: Session = Depends(get_db),
    cache: Optional[CacheCoordinator] = Depends(get_cache),
):
    try:
        expense = ExpenseService(db, cache=cache).approve(expense_id, payload.value)
    except ValueError as exc:
        raise http_error(exc) from exc
    return ExpenseOut.model_validate(expense).model_dump()


@router.put("/expenses/{expense_id}/receipt")
def set_expense_receipt(
    expense_id: int,
    payload: ReceiptIn,
    db: Session = Depends(get_db),
    cache: Optional[CacheCoordinator] = Depends(get_cache),
):
    try:
        previous = ExpenseService(db, cache=cache).set_receipt(expense_id, payload.url)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"receipt_url": payload.url, "replaced": previous}


@router.delete("/expenses/{expense_id}/receipt")
def clear_expense_receipt(
    expense_id: int,
    db: Session = Depends(get_db),
    cache: Optional[CacheCoordinator] = Depends(get_cache),
):
    try:
        previous = ExpenseService(db, cache=cache).clear_receipt(expense_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"receipt_url": None, "replaced": previous}


# Manual collections


@router.get("/collections")
def list_collections(
    request: Request,
    db: Session = Depends(get_db),
    cache: Optional[CacheCoordinator] = Depends(get_cache),
):
    page, limit = _page(request)
    mode = request.query_params.get("mode")
    try:
        parsed_mode: Optional[CollectionMode] = (
            CollectionService.parse_mode(mode) if mode else None
        )
    except ValueError as exc:
        raise http_error(exc) from exc
    filters = CollectionFilters(
        window=window_from_request(request),
        collection_mode=parsed_mode,
        category=request.query_params.get("category"),
        event_id=_int_param(request, "event_id"),
        is_verified=_flag(request, "verified"),
        query=request.query_params.get("q"),
    )
    return CollectionService(db, cache=cache).page(filters, page=page, limit=limit)


@router.post("/collections", status_code=201)
def create_collection(
    payload: CollectionIn,
    db: Session = Depends(get_db),
    cache: Optional[CacheCoordinator] = Depends(get_cache),
):
    try:
        collection = CollectionService(db, cache=cache).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return CollectionOut.model_validate(collection).model_dump()


@router.get("/collections/{collection_id}")
def get_collection(
    collection_id: int,
    db: Session = Depends(get_db),
    cache: Optional[CacheCoordinator] = Depends(get_cache),
):
    try:
        return CollectionService(db, cache=cache).detail(collection_id)
    except ValueError as exc:
        raise http_error(exc) from exc


@router.put("/collections/{collection_id}")
def update_collection(
    collection_id: int,
    payload: CollectionIn,
    db: Session = Depends(get_db),
    cache: Optional[CacheCoordinator] = Depends(get_cache),
):
    try:
        collection = CollectionService(db, cache=cache).update(collection_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return CollectionOut.model_validate(collection).model_dump()


@router.delete("/collections/{collection_id}")
def delete_collection(
    collection_id: int,
    db: Session = Depends(get_db),
    cache: Optional[CacheCoordinator] = Depends(get_cache),
):
    try:
        deleted = CollectionService(db, cache=cache).delete(collection_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"deleted": deleted.id, "receipt_url": deleted.receipt_url}


@router.post("/collections/{collection_id}/verify")
def verify_collection(
    collection_id: int,
    payload: ApprovalIn,
    db: Session = Depends(get_db),
    cache: Optional[CacheCoordinator] = Depends(get_cache),
):
    try:
        collection = CollectionService(db, cache=cache).verify(
            collection_id, payload.value
        )
    except ValueError as exc:
        raise http_error(exc) from exc
    return CollectionOut.model_validate(collection).model_dump()


@router.put("/collections/{collection_id}/receipt")
def set_collection_receipt(
    collection_id: int,
    payload: ReceiptIn,
    db: Session = Depends(get_db),
    cache: Optional[CacheCoordinator] = Depends(get_cache),
):
    try:
        previous = CollectionService(db, cache=cache).set_receipt(
            collection_id, payload.url
        )
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"receipt_url": payload.url, "replaced": previous}


@router.delete("/collections/{collection_id}/receipt")
def clear_collection_receipt(
    collection_id: int,
    db: Session = Depends(get_db),
    cache: Optional[CacheCoordinator] = Depends(get_cache),
):
    try:
        previous = CollectionService(db, cache=cache).clear_receipt(collection_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"receipt_url": None, "replaced": previous}


# Balances


@router.get("/balance/current")
def current_balance(
    db: Session = Depends(get_db),
    cache: Optional[CacheCoordinator] = Depends(get_cache),
):
    return BalanceService(db, cache=cache).current_account_balance_view()


@router.get("/balance/history")
def balance_history(
    request: Request,
    db: Session = Depends(get_db),
    cache: Optional[CacheCoordinator] = Depends(get_cache),
):
    limit = _int_param(request, "limit") or 50
    return BalanceService(db, cache=cache).balance_history(limit)


@router.post("/balance", status_code=201)
def record_balance(
    payload: AccountBalanceIn,
    db: Session = Depends(get_db),
    cache: Optional[CacheCoordinator] = Depends(get_cache),
):
    try:
        snapshot = BalanceService(db, cache=cache).record_account_balance(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return AccountBalanceOut.model_validate(snapshot).model_dump()


@router.put("/balance/{balance_id}")
def update_balance(
    balance_id: int,
    payload: AccountBalanceIn,
    db: Session = Depends(get_db),
    cache: Optional[CacheCoordinator] = Depends(get_cache),
):
    try:
        snapshot = BalanceService(db, cache=cache).update_account_balance(
            balance_id, payload
        )
    except ValueError as exc:
        raise http_error(exc) from exc
    return AccountBalanceOut.model_validate(snapshot).model_dump()


@router.put("/balance/{balance_id}/statement")
def set_balance_statement(
    balance_id: int,
    payload: ReceiptIn,
    db: Session = Depends(get_db),
    cache: Optional[CacheCoordinator] = Depends(get_cache),
):
    try:
        snapshot = BalanceService(db, cache=cache).set_bank_statement(
            balance_id, payload.url
        )
    except ValueError as exc:
        raise http_error(exc) from exc
    return AccountBalanceOut.model_validate(snapshot).model_dump()


@router.get("/yearly-balances")
def list_yearly_balances(
    db: Session = Depends(get_db),
    cache: Optional[CacheCoordinator] = Depends(get_cache),
):
    return BalanceService(db, cache=cache).list_yearly_balances()


@router.post("/yearly-balances", status_code=201)
def create_yearly_balance(
    payload: YearlyBalanceIn,
    db: Session = Depends(get_db),
    cache: Optional[CacheCoordinator] = Depends(get_cache),
):
    try:
        balance = BalanceService(db, cache=cache).create_yearly_balance(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return YearlyBalanceOut.model_validate(balance).model_dump()


@router.get("/yearly-balances/{year}")
def get_yearly_balance(
    year: int,
    db: Session = Depends(get_db),
    cache: Optional[CacheCoordinator] = Depends(get_cache),
):
    try:
        return BalanceService(db, cache=cache).yearly_balance_detail(year)
    except ValueError as exc:
        raise http_error(exc) from exc


@router.patch("/yearly-balances/{year}")
def update_yearly_balance(
    year: int,
    payload: YearlyBalanceUpdate,
    db: Session = Depends(get_db),
    cache: Optional[CacheCoordinator] = Depends(get_cache),
):
    try:
        balance = BalanceService(db, cache=cache).update_yearly_balance(year, payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return YearlyBalanceOut.model_validate(balance).model_dump()


@router.delete("/yearly-balances/{year}")
def delete_yearly_balance(
    year: int,
    db: Session = Depends(get_db),
    cache: Optional[CacheCoordinator] = Depends(get_cache),
):
    try:
        BalanceService(db, cache=cache).delete_yearly_balance(year)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"deleted": year}


@router.get("/reconciliation/{year}")
def reconciliation(year: int, db: Session = Depends(get_db)):
    try:
        return BalanceService(db).yearly_summary(year).as_dict()
    except ValueError as exc:
        raise http_error(exc) from exc


# Aggregates and analytics


@router.get("/aggregate/{source}")
def aggregate(source: LedgerSource, request: Request, db: Session = Depends(get_db)):
    window = window_from_request(request)
    try:
        result = AggregationService(db).aggregate(
            source, window, group_by=request.query_params.get("group_by")
        )
    except ValueError as exc:
        raise http_error(exc) from exc
    return {
        "source": result.source.value,
        "total_cents": result.total_cents,
        "count": result.count,
        "breakdown": breakdown_dicts(result.breakdown),
    }


@router.get("/analytics/collections")
def collection_analytics(
    request: Request,
    db: Session = Depends(get_db),
    cache: Optional[CacheCoordinator] = Depends(get_cache),
):
    window = window_from_request(request)
    try:
        return AnalyticsService(db, cache=cache).collection_analytics(
            window, _int_param(request, "year")
        )
    except ValueError as exc:
        raise http_error(exc) from exc


@router.get("/analytics/collections/online")
def online_analytics(
    request: Request,
    db: Session = Depends(get_db),
    cache: Optional[CacheCoordinator] = Depends(get_cache),
):
    window = window_from_request(request)
    try:
        return AnalyticsService(db, cache=cache).online_analytics(
            window, _int_param(request, "year")
        )
    except ValueError as exc:
        raise http_error(exc) from exc


@router.get("/analytics/collections/manual")
def manual_analytics(
    request: Request,
    db: Session = Depends(get_db),
    cache: Optional[CacheCoordinator] = Depends(get_cache),
):
    window = window_from_request(request)
    try:
        return AnalyticsService(db, cache=cache).manual_analytics(
            window, _int_param(request, "year")
        )
    except ValueError as exc:
        raise http_error(exc) from exc


@router.get("/analytics/expenses")
def expense_analytics(
    request: Request,
    db: Session = Depends(get_db),
    cache: Optional[CacheCoordinator] = Depends(get_cache),
):
    window = window_from_request(request)
    try:
        return AnalyticsService(db, cache=cache).expense_analytics(
            window,
            _int_param(request, "year"),
            category_id=_int_param(request, "category_id"),
        )
    except ValueError as exc:
        raise http_error(exc) from exc


@router.get("/analytics/expenses/by-category")
def category_analytics(
    request: Request,
    db: Session = Depends(get_db),
    cache: Optional[CacheCoordinator] = Depends(get_cache),
):
    window = window_from_request(request)
    try:
        return AnalyticsService(db, cache=cache).category_analytics(
            window, _int_param(request, "year")
        )
    except ValueError as exc:
        raise http_error(exc) from exc


@router.get("/analytics/yearly-summary/{year}")
def yearly_financial_summary(
    year: int,
    db: Session = Depends(get_db),
    cache: Optional[CacheCoordinator] = Depends(get_cache),
):
    try:
        return AnalyticsService(db, cache=cache).yearly_financial_summary(year)
    except ValueError as exc:
        raise http_error(exc) from exc


@router.get("/analytics/surplus-deficit")
def surplus_deficit(
    request: Request, dashboards: DashboardService = Depends(get_dashboards)
):
    try:
        return dashboards.surplus_deficit(_int_param(request, "year"))
    except ValueError as exc:
        raise http_error(exc) from exc


# Reports


@router.get("/reports/financial/{year}")
def financial_report(
    year: int,
    db: Session = Depends(get_db),
    cache: Optional[CacheCoordinator] = Depends(get_cache),
):
    try:
        return ReportService(db, cache=cache).financial_report(year)
    except ValueError as exc:
        raise http_error(exc) from exc


@router.get("/reports/receipt-summary")
def receipt_summary(
    request: Request,
    db: Session = Depends(get_db),
    cache: Optional[CacheCoordinator] = Depends(get_cache),
):
    window = window_from_request(request)
    return ReportService(db, cache=cache).receipt_summary(window)


# Dashboards


@router.get("/dashboard")
def main_dashboard(dashboards: DashboardService = Depends(get_dashboards)):
    try:
        return dashboards.main_dashboard()
    except ValueError as exc:
        raise http_error(exc) from exc


@router.get("/dashboard/{year}")
def yearly_dashboard(
    year: int, dashboards: DashboardService = Depends(get_dashboards)
):
    try:
        return dashboards.yearly_dashboard(year)
    except ValueError as exc:
        raise http_error(exc) from exc


def create_app(
    session_factory: Optional[SessionFactory] = None,
    *,
    cache: Optional[CacheCoordinator] = None,
    run_scheduler: bool = True,
) -> FastAPI:
    app = FastAPI(title="Treasury Ledger")
    app.state.session_factory = session_factory
    app.state.cache = cache
    app.state.scheduler = None
    app.include_router(router)

    @app.on_event("startup")
    def startup_event():
        settings = get_settings()
        logging.basicConfig(level=settings.log_level)
        if app.state.session_factory is None:
            app.state.session_factory = build_session_factory(build_engine())
        if app.state.cache is None:
            app.state.cache = CacheCoordinator(
                MemoryCache(),
                executor=ThreadPoolExecutor(max_workers=2),
                enabled=settings.cache_enabled,
            )
        if run_scheduler:
            app.state.scheduler = SchedulerManager(
                app.state.session_factory, app.state.cache
            )
            app.state.scheduler.start()
        logger.info(f"app_started: database={settings.database_url.split('://')[0]}")

    @app.on_event("shutdown")
    def shutdown_event():
        if app.state.scheduler is not None:
            app.state.scheduler.stop()
        cache_executor = getattr(app.state.cache, "executor", None)
        if cache_executor is not None:
            cache_executor.shutdown(wait=False)

    return app


app = create_app()
