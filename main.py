import logging
from typing import Any

from fastapi import (
    BackgroundTasks,
    Depends,
    FastAPI,
    File,
    HTTPException,
    Query,
    Request,
    Response,
    UploadFile,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session, sessionmaker

from aggregation import (
    DashboardParams,
    TransactionFilters,
    build_dashboard,
    filter_transactions,
    paginate,
    with_running_balance,
)
from auth import (
    InvalidToken,
    create_access_token,
    get_current_user,
    require_admin,
    require_pin_confirmation,
    user_from_token,
)
from config import get_settings
from database import get_db, get_session_factory
from formatting import format_currency, local_today
from models import User
from notifications import TRANSACTIONS_UPDATED, manager
from pin_tokens import generate_pin_token
from schemas import (
    AdminUserCreateIn,
    AdminUserUpdateIn,
    LoginIn,
    PinUpdateIn,
    PinVerifyIn,
    ProfileUpdateIn,
    RegisterIn,
    RoleUpdateIn,
    TransactionIn,
    ViewParams,
)
from services import (
    AdminService,
    EmailAlreadyUsed,
    InvalidCredentials,
    InvalidPin,
    TransactionNotFound,
    TransactionService,
    UserNotFound,
    UserService,
    serialize_user,
)
from spreadsheet import SpreadsheetError, SpreadsheetPreview, export_csv, export_xlsx, parse_spreadsheet


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

MAX_UPLOAD_BYTES = 5 * 1024 * 1024
VIEW_PARAM_KEYS = (
    "search",
    "date_from",
    "date_to",
    "type",
    "page",
    "page_size",
    "chart_granularity",
    "reference_date",
)

app = FastAPI(title="Cashflow Tracker")
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


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


def view_params_from_request(request: Request) -> ViewParams:
    query = request.query_params
    raw = {key: query.get(key) for key in VIEW_PARAM_KEYS if query.get(key)}
    try:
        return ViewParams(**raw)
    except ValidationError as exc:
        errors = "; ".join(
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
            for err in exc.errors()
        )
        raise HTTPException(status_code=400, detail=errors) from exc


def filters_from_params(params: ViewParams) -> TransactionFilters:
    return TransactionFilters(
        search=params.search,
        date_from=params.date_from,
        date_to=params.date_to,
        type=params.type,
    )


def admin_snapshot(db: Session) -> dict[str, Any]:
    if not manager.has_admin_listeners():
        return {}
    admin = AdminService(db)
    return {
        "stats": admin.stats(),
        "users": UserService(db).list_with_counts(),
        "transactions": admin.all_transactions(),
    }


def schedule_push(background_tasks: BackgroundTasks, db: Session, user_id: int) -> None:
    transactions = TransactionService(db, user_id).records()
    background_tasks.add_task(manager.publish, user_id, transactions, admin_snapshot(db))


def schedule_admin_push(background_tasks: BackgroundTasks, db: Session) -> None:
    snapshot = admin_snapshot(db)
    if snapshot:
        background_tasks.add_task(manager.publish_admin, snapshot)


def auth_response(user: User) -> dict[str, Any]:
    return {"token": create_access_token(user), "user": serialize_user(user)}


@app.get("/api/health")
def health():
    return {"status": "ok", "version": APP_VERSION}


@app.post("/api/auth/register", status_code=201)
def register(
    data: RegisterIn, background_tasks: BackgroundTasks, db: Session = Depends(get_db)
):
    try:
        user = UserService(db).register(data)
    except EmailAlreadyUsed as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    schedule_admin_push(background_tasks, db)
    return auth_response(user)


@app.post("/api/auth/login")
def login(data: LoginIn, db: Session = Depends(get_db)):
    try:
        user = UserService(db).authenticate(data.email, data.password)
    except InvalidCredentials as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    return auth_response(user)


@app.get("/api/auth/verify")
def verify(user: User = Depends(get_current_user)):
    return {"user": serialize_user(user)}


@app.get("/api/user/settings")
def user_settings(user: User = Depends(get_current_user)):
    return serialize_user(user)


@app.put("/api/user/profile")
def update_profile(
    data: ProfileUpdateIn,
    background_tasks: BackgroundTasks,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        updated = UserService(db).update_profile(user.id, data)
    except EmailAlreadyUsed as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    schedule_admin_push(background_tasks, db)
    return serialize_user(updated)


@app.put("/api/user/pin")
def update_pin(
    data: PinUpdateIn,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        updated = UserService(db).update_pin(user.id, data)
    except InvalidPin as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    message = "PIN protection enabled" if updated.pin_enabled else "PIN protection disabled"
    return {"pin_enabled": updated.pin_enabled, "message": message}


@app.post("/api/user/verify-pin")
def verify_pin(
    data: PinVerifyIn,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if not user.pin_enabled:
        raise HTTPException(status_code=400, detail="PIN protection is not enabled")
    if not UserService(db).verify_pin(user.id, data.pin):
        logger.info(f"pin_rejected: user_id={user.id}")
        raise HTTPException(status_code=400, detail="Incorrect PIN")
    return {"valid": True, "pin_token": generate_pin_token(user.id)}


@app.get("/api/transactions")
def list_transactions(
    user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    return TransactionService(db, user.id).records()


@app.get("/api/transactions/view")
def transactions_view(
    request: Request,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    params = view_params_from_request(request)
    records = TransactionService(db, user.id).records()
    entries = with_running_balance(records, newest_first=True)
    filtered = filter_transactions(entries, filters_from_params(params))
    return paginate(filtered, params.page, params.page_size).as_dict()


@app.get("/api/stats")
def stats(
    request: Request,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    params = view_params_from_request(request)
    records = TransactionService(db, user.id).records()
    dashboard = build_dashboard(
        records,
        DashboardParams(
            filters=filters_from_params(params),
            page=params.page,
            page_size=params.page_size,
            chart_granularity=params.chart_granularity,
            reference_date=params.reference_date or local_today(user.timezone),
        ),
    )
    dashboard["totals_display"] = {
        key: format_currency(value) for key, value in dashboard["totals"].items()
    }
    return dashboard


@app.post("/api/transactions", status_code=201)
def create_transaction(
    data: TransactionIn,
    background_tasks: BackgroundTasks,
    user: User = Depends(require_pin_confirmation),
    db: Session = Depends(get_db),
):
    txn = TransactionService(db, user.id).create(data)
    schedule_push(background_tasks, db, user.id)
    return TransactionService.serialize(txn)


@app.put("/api/transactions/{transaction_id}")
def update_transaction(
    transaction_id: int,
    data: TransactionIn,
    background_tasks: BackgroundTasks,
    user: User = Depends(require_pin_confirmation),
    db: Session = Depends(get_db),
):
    try:
        txn = TransactionService(db, user.id).update(transaction_id, data)
    except TransactionNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    schedule_push(background_tasks, db, user.id)
    return TransactionService.serialize(txn)


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def delete_transaction(
    transaction_id: int,
    background_tasks: BackgroundTasks,
    user: User = Depends(require_pin_confirmation),
    db: Session = Depends(get_db),
):
    try:
        TransactionService(db, user.id).delete(transaction_id)
    except TransactionNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    schedule_push(background_tasks, db, user.id)
    return Response(status_code=204)


@app.delete("/api/transactions", status_code=204)
def delete_all_transactions(
    background_tasks: BackgroundTasks,
    user: User = Depends(require_pin_confirmation),
    db: Session = Depends(get_db),
):
    TransactionService(db, user.id).delete_all()
    schedule_push(background_tasks, db, user.id)
    return Response(status_code=204)


@app.get("/api/transactions/export")
def export_transactions(
    file_format: str = Query(default="xlsx", alias="format", pattern="^(xlsx|csv)$"),
    user: User = Depends(require_pin_confirmation),
    db: Session = Depends(get_db),
):
    records = TransactionService(db, user.id).records()
    if not records:
        raise HTTPException(status_code=400, detail="No transactions to export")
    filename = f"cashflow-transactions-{local_today(user.timezone).isoformat()}.{file_format}"
    headers = {"Content-Disposition": f'attachment; filename="{filename}"'}
    logger.info(f"transactions_exported: user_id={user.id} format={file_format} rows={len(records)}")
    if file_format == "csv":
        return StreamingResponse(
            iter([export_csv(records)]), media_type="text/csv", headers=headers
        )
    return StreamingResponse(
        iter([export_xlsx(records)]),
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers=headers,
    )


async def _read_spreadsheet(file: UploadFile) -> SpreadsheetPreview:
    content = await file.read()
    if not content:
        raise HTTPException(status_code=400, detail="Empty file")
    if len(content) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=400, detail="File too large (max 5MB)")
    try:
        return parse_spreadsheet(file.filename or "", content)
    except SpreadsheetError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.post("/api/transactions/import/preview")
async def import_preview(
    file: UploadFile = File(...),
    user: User = Depends(get_current_user),
):
    preview = await _read_spreadsheet(file)
    return {
        "rows": [row.model_dump(mode="json") for row in preview.rows],
        "errors": preview.errors,
        "skipped": preview.skipped,
    }


@app.post("/api/transactions/import")
async def import_commit(
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    user: User = Depends(require_pin_confirmation),
    db: Session = Depends(get_db),
):
    preview = await _read_spreadsheet(file)
    if not preview.rows:
        raise HTTPException(
            status_code=400, detail="No valid transactions found in the file"
        )
    result = TransactionService(db, user.id).import_rows(preview.rows)
    schedule_push(background_tasks, db, user.id)
    return {
        "imported": result.imported,
        "failed": result.failed,
        "skipped": preview.skipped,
        "errors": preview.errors + result.errors,
    }


@app.get("/api/admin/stats")
def admin_stats(_: User = Depends(require_admin), db: Session = Depends(get_db)):
    return AdminService(db).stats()


@app.get("/api/admin/users")
def admin_users(_: User = Depends(require_admin), db: Session = Depends(get_db)):
    return UserService(db).list_with_counts()


@app.get("/api/admin/transactions")
def admin_transactions(_: User = Depends(require_admin), db: Session = Depends(get_db)):
    return AdminService(db).all_transactions()


@app.post("/api/admin/users", status_code=201)
def admin_create_user(
    data: AdminUserCreateIn,
    background_tasks: BackgroundTasks,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    try:
        user = UserService(db).create(data)
    except EmailAlreadyUsed as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    logger.info(f"admin_user_created: admin_id={admin.id} user_id={user.id}")
    schedule_admin_push(background_tasks, db)
    return serialize_user(user)


@app.put("/api/admin/users/{user_id}")
def admin_update_user(
    user_id: int,
    data: AdminUserUpdateIn,
    background_tasks: BackgroundTasks,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    try:
        user = UserService(db).update(user_id, data)
    except UserNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except EmailAlreadyUsed as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    logger.info(f"admin_user_updated: admin_id={admin.id} user_id={user.id}")
    schedule_admin_push(background_tasks, db)
    return serialize_user(user)


@app.put("/api/admin/users/{user_id}/role")
def admin_update_role(
    user_id: int,
    data: RoleUpdateIn,
    background_tasks: BackgroundTasks,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    if user_id == admin.id and data.role != admin.role:
        raise HTTPException(status_code=400, detail="You cannot change your own role")
    try:
        user = UserService(db).update_role(user_id, data.role)
    except UserNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    schedule_admin_push(background_tasks, db)
    return serialize_user(user)


@app.delete("/api/admin/users/{user_id}")
def admin_delete_user(
    user_id: int,
    background_tasks: BackgroundTasks,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    if user_id == admin.id:
        raise HTTPException(status_code=400, detail="You cannot delete your own account")
    try:
        user = UserService(db).delete(user_id)
    except UserNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    schedule_admin_push(background_tasks, db)
    return {"id": user_id, "email": user.email, "name": user.name}


@app.websocket("/ws")
async def realtime(
    websocket: WebSocket,
    token: str = Query(default=""),
    session_factory: sessionmaker = Depends(get_session_factory),
):
    # The session is closed before the receive loop so idle sockets hold no connection.
    with session_factory() as db:
        try:
            user = user_from_token(db, token)
        except InvalidToken:
            user = None
        else:
            user_id = user.id
            is_admin = user.is_admin
            initial = TransactionService(db, user_id).records()
    if user is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    await websocket.accept()
    manager.register(websocket, user_id, is_admin)
    try:
        await websocket.send_json({"event": TRANSACTIONS_UPDATED, "data": initial})
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        manager.unregister(websocket, user_id)


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
