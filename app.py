import os
import uuid
import logging
import threading
from datetime import timedelta
from logging.handlers import RotatingFileHandler
from functools import wraps

from flask import Flask, request, session, jsonify, send_file
from werkzeug.utils import secure_filename

import accounts
from accounts import AuthContext, SESSION_KEY, token_expired
from asset_client import AssetApiClient
from errors import ActionInProgress, ApiError, MutationError, ValidationError
from mutations import MutationCoordinator
from spreadsheet import (
    TEMPLATE_FILENAME,
    XLSX_MIMETYPE,
    build_export_workbook,
    build_import_template,
    export_filename,
    workbook_stream,
)
from view_state import ViewStateStore


def _parse_bool(value, default=False):
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _parse_int(value, default):
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        return default


app = Flask(__name__)
app.config["ASSET_API_BASE_URL"] = os.environ.get(
    "ASSET_API_BASE_URL", "http://localhost:5000/api/v1"
)
app.config["SECRET_KEY"] = os.environ.get("SECRET_KEY", "dev-secret-key")
app.config["LOG_DIR"] = os.environ.get("LOG_DIR", "/data/logs")
app.config["LOG_FILE"] = os.environ.get("LOG_FILE", "console.log")
app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(days=14)
app.config["API_TIMEOUT_SECONDS"] = float(os.environ.get("API_TIMEOUT_SECONDS", "15"))
app.config["SEARCH_DEBOUNCE_SECONDS"] = float(os.environ.get("SEARCH_DEBOUNCE_SECONDS", "0.4"))
app.config["REFRESH_INTERVAL_SECONDS"] = float(os.environ.get("REFRESH_INTERVAL_SECONDS", "30"))
app.config["BACKGROUND_REFRESH"] = _parse_bool(os.environ.get("BACKGROUND_REFRESH"), True)
app.config["MAX_IMPORT_BYTES"] = _parse_int(os.environ.get("MAX_IMPORT_BYTES"), 5 * 1024 * 1024)
app.config["IDLE_TIMEOUT_SECONDS"] = float(os.environ.get("IDLE_TIMEOUT_SECONDS", "600"))
LOG_EXCLUDE_ENDPOINTS = {
    "dashboard_state",
}

_VIEW_STORES = {}
_VIEW_STORES_LOCK = threading.Lock()


def setup_logging():
    log_dir = app.config["LOG_DIR"]
    os.makedirs(log_dir, exist_ok=True)
    log_path = os.path.join(log_dir, app.config["LOG_FILE"])
    handler = RotatingFileHandler(log_path, maxBytes=5_000_000, backupCount=5)
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")
    handler.setFormatter(formatter)
    handler.setLevel(logging.INFO)
    app.logger.setLevel(logging.INFO)
    if not any(isinstance(h, RotatingFileHandler) for h in app.logger.handlers):
        app.logger.addHandler(handler)
    for name in ("werkzeug", "asset_client", "view_state", "mutations"):
        logging.getLogger(name).addHandler(handler)


setup_logging()


@app.teardown_request
def log_unhandled_exception(exc):
    if exc is not None:
        app.logger.exception("Unhandled exception", exc_info=exc)


@app.before_request
def log_requests():
    if request.endpoint in LOG_EXCLUDE_ENDPOINTS:
        return
    data = session.get(SESSION_KEY) or {}
    username = data.get("username") or "-"
    ip_address = request.headers.get("X-Forwarded-For", request.remote_addr) or "-"
    app.logger.info(
        "request user=%s ip=%s method=%s url=%s", username, ip_address, request.method, request.full_path
    )


def log_audit(action, entity_type, entity_id=None, success=True, details=None):
    auth = AuthContext.from_session(session.get(SESSION_KEY))
    app.logger.info(
        "audit action=%s entity=%s entity_id=%s user=%s ip=%s success=%s details=%s",
        action,
        entity_type,
        entity_id or "-",
        auth.username if auth else "-",
        request.remote_addr or "-",
        "yes" if success else "no",
        details if details is not None else "-",
    )


def get_request_data():
    payload = request.get_json(silent=True)
    if isinstance(payload, dict):
        return payload
    return request.form.to_dict()


def make_api_client(auth=None):
    return AssetApiClient(
        app.config["ASSET_API_BASE_URL"],
        token=auth.token if auth else None,
        timeout=app.config["API_TIMEOUT_SECONDS"],
    )


def error_status(exc):
    status = getattr(exc, "status", None)
    if status and 400 <= status < 500:
        return status
    return 502


def error_response(exc):
    if isinstance(exc, (ValidationError, ValueError)):
        return jsonify({"error": getattr(exc, "message", str(exc))}), 400
    if isinstance(exc, ActionInProgress):
        return jsonify({"error": exc.message}), 409
    return jsonify({"error": exc.message}), error_status(exc)


def response_data(payload, default=None):
    if isinstance(payload, dict):
        return payload.get("data", payload if default is None else default)
    return payload


def user_payload(auth):
    return {
        "_id": auth.user_id,
        "username": auth.username,
        "name": auth.name,
        "role": auth.role,
        "isAdmin": auth.is_admin,
    }


def teardown_console():
    console_id = session.get("console_id")
    if not console_id:
        return
    with _VIEW_STORES_LOCK:
        store = _VIEW_STORES.pop(console_id, None)
    session.pop("console_id", None)
    if store is not None:
        store.close()


def get_current_auth():
    auth = AuthContext.from_session(session.get(SESSION_KEY))
    if auth and token_expired(auth.token):
        app.logger.info("Session token expired for %s", auth.username)
        teardown_console()
        session.clear()
        return None
    return auth


def login_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        auth = get_current_auth()
        if not auth:
            return jsonify({"error": "Authentication required"}), 401
        request.console_auth = auth
        return view(*args, **kwargs)

    return wrapped


def admin_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        auth = get_current_auth()
        if not auth:
            return jsonify({"error": "Authentication required"}), 401
        if not auth.is_admin:
            return jsonify({"error": "Forbidden"}), 403
        request.console_auth = auth
        return view(*args, **kwargs)

    return wrapped


def forget_view_store(console_id):
    def forget(store):
        with _VIEW_STORES_LOCK:
            if _VIEW_STORES.get(console_id) is store:
                del _VIEW_STORES[console_id]

    return forget


def sweep_view_stores():
    with _VIEW_STORES_LOCK:
        stale = [
            (console_id, store)
            for console_id, store in _VIEW_STORES.items()
            if store.closed or store.is_stale()
        ]
        for console_id, _store in stale:
            del _VIEW_STORES[console_id]
    for _console_id, store in stale:
        app.logger.info("Discarding idle dashboard for %s", store.auth.username)
        store.close()


def mount_view_store(auth):
    teardown_console()
    sweep_view_stores()
    console_id = uuid.uuid4().hex
    store = ViewStateStore(
        make_api_client(auth),
        auth,
        debounce_seconds=app.config["SEARCH_DEBOUNCE_SECONDS"],
        refresh_interval=app.config["REFRESH_INTERVAL_SECONDS"],
        idle_timeout=app.config["IDLE_TIMEOUT_SECONDS"],
        on_close=forget_view_store(console_id),
    )
    with _VIEW_STORES_LOCK:
        _VIEW_STORES[console_id] = store
    session["console_id"] = console_id
    store.mount()
    if app.config["BACKGROUND_REFRESH"]:
        store.start_polling()
    return store


def get_view_store(auth):
    sweep_view_stores()
    console_id = session.get("console_id")
    with _VIEW_STORES_LOCK:
        store = _VIEW_STORES.get(console_id) if console_id else None
    if store is None or store.closed:
        store = mount_view_store(auth)
    store.touch()
    return store


def get_coordinator(store, auth):
    return MutationCoordinator(
        store.client, store, auth, max_import_bytes=app.config["MAX_IMPORT_BYTES"]
    )


@app.route("/login", methods=["POST"])
def login():
    data = get_request_data()
    username = accounts.normalize_username(data.get("username"))
    try:
        auth = accounts.login(make_api_client(), username, data.get("password", ""))
    except ValidationError as exc:
        return error_response(exc)
    except ApiError as exc:
        log_audit("login_failed", "auth", success=False, details=username)
        message = exc.message if exc.status else "Invalid username or password. Please try again."
        return jsonify({"error": message}), error_status(exc)
    teardown_console()
    session.clear()
    session[SESSION_KEY] = auth.to_session()
    session.permanent = _parse_bool(data.get("remember_me"))
    log_audit("login", "auth", details=auth.username)
    return jsonify({"user": user_payload(auth)})


@app.route("/signup", methods=["POST"])
def signup():
    data = get_request_data()
    username = accounts.normalize_username(data.get("username"))
    try:
        accounts.signup(
            make_api_client(),
            username,
            data.get("name", ""),
            data.get("role", accounts.ROLE_USER),
            data.get("password", ""),
            data.get("confirmPassword", ""),
        )
    except ValidationError as exc:
        return error_response(exc)
    except ApiError as exc:
        log_audit("signup_failed", "auth", success=False, details=username)
        return jsonify({"error": exc.message or "Failed to create account. Please try again."}), error_status(exc)
    log_audit("signup", "auth", details=username)
    return jsonify({"message": "Account created successfully!"}), 201


@app.route("/reset-password", methods=["POST"])
def reset_password():
    data = get_request_data()
    username = accounts.normalize_username(data.get("username"))
    try:
        accounts.reset_password(
            make_api_client(),
            username,
            data.get("oldPassword", ""),
            data.get("newPassword", ""),
            data.get("confirmPassword", ""),
        )
    except ValidationError as exc:
        return error_response(exc)
    except ApiError as exc:
        log_audit("reset_password", "auth", success=False, details=username)
        return jsonify({"error": exc.message or "Failed to reset password. Please try again."}), error_status(exc)
    log_audit("reset_password", "auth", details=username)
    return jsonify({"message": "Password reset successfully!"})


@app.route("/logout", methods=["POST"])
def logout():
    log_audit("logout", "auth")
    teardown_console()
    session.clear()
    return jsonify({"status": "logged_out"})


@app.route("/dashboard")
@login_required
def dashboard():
    store = mount_view_store(request.console_auth)
    return jsonify({"user": user_payload(request.console_auth), "state": store.snapshot()})


@app.route("/dashboard/state")
@login_required
def dashboard_state():
    store = get_view_store(request.console_auth)
    return jsonify(store.snapshot())


@app.route("/dashboard/filter", methods=["POST"])
@login_required
def dashboard_filter():
    data = get_request_data()
    store = get_view_store(request.console_auth)
    try:
        store.set_filter(data.get("kind"), data.get("value"))
    except ValueError as exc:
        return error_response(exc)
    return jsonify(store.snapshot())


@app.route("/dashboard/search", methods=["POST"])
@login_required
def dashboard_search():
    data = get_request_data()
    store = get_view_store(request.console_auth)
    store.set_search(data.get("term", ""))
    return jsonify(store.snapshot()), 202


@app.route("/dashboard/view-mode", methods=["POST"])
@login_required
def dashboard_view_mode():
    data = get_request_data()
    store = get_view_store(request.console_auth)
    try:
        store.set_view_mode(data.get("mode"))
    except ValueError as exc:
        return error_response(exc)
    return jsonify(store.snapshot())


@app.route("/dashboard/page", methods=["POST"])
@login_required
def dashboard_page():
    data = get_request_data()
    store = get_view_store(request.console_auth)
    try:
        store.go_to_page(data.get("page"))
    except ValueError as exc:
        return error_response(exc)
    return jsonify(store.snapshot())


@app.route("/dashboard/refresh", methods=["POST"])
@login_required
def dashboard_refresh():
    store = get_view_store(request.console_auth)
    try:
        with store.busy("refresh"):
            store.refresh()
            store.load_mine_count()
    except ActionInProgress as exc:
        return error_response(exc)
    return jsonify(store.snapshot())


@app.route("/assets", methods=["POST"])
@login_required
def create_asset():
    auth = request.console_auth
    store = get_view_store(auth)
    try:
        created = get_coordinator(store, auth).create(get_request_data())
    except (ValidationError, ActionInProgress) as exc:
        return error_response(exc)
    except MutationError as exc:
        log_audit("create", "asset", success=False, details=exc.message)
        return error_response(exc)
    record = created.get("data", created) if isinstance(created, dict) else created
    entity_id = record.get("_id") if isinstance(record, dict) else None
    log_audit("create", "asset", entity_id=entity_id)
    return jsonify({"asset": record, "state": store.snapshot()}), 201


@app.route("/assets/<asset_id>", methods=["PUT"])
@login_required
def update_asset(asset_id):
    auth = request.console_auth
    store = get_view_store(auth)
    try:
        updated = get_coordinator(store, auth).update(asset_id, get_request_data())
    except (ValidationError, ActionInProgress) as exc:
        return error_response(exc)
    except MutationError as exc:
        log_audit("update", "asset", entity_id=asset_id, success=False, details=exc.message)
        return error_response(exc)
    log_audit("update", "asset", entity_id=asset_id)
    record = updated.get("data", updated) if isinstance(updated, dict) else updated
    return jsonify({"asset": record, "state": store.snapshot()})


@app.route("/assets/<asset_id>", methods=["DELETE"])
@login_required
def delete_asset(asset_id):
    auth = request.console_auth
    store = get_view_store(auth)
    try:
        get_coordinator(store, auth).delete(asset_id)
    except ActionInProgress as exc:
        return error_response(exc)
    except MutationError as exc:
        log_audit("delete", "asset", entity_id=asset_id, success=False, details=exc.message)
        return error_response(exc)
    log_audit("delete", "asset", entity_id=asset_id)
    return jsonify({"status": "deleted", "state": store.snapshot()})


@app.route("/assets/export")
@admin_required
def export_assets_excel():
    store = get_view_store(request.console_auth)
    try:
        assets = store.export_assets()
    except ApiError as exc:
        log_audit("export", "asset", success=False, details=exc.message)
        return error_response(exc)
    if not assets:
        return jsonify({"error": "No assets to export."}), 400
    include_serial = _parse_bool(request.args.get("serial"), True)
    output = workbook_stream(build_export_workbook(assets, include_serial=include_serial))
    log_audit("export", "asset", details=f"rows={len(assets)}")
    return send_file(
        output,
        as_attachment=True,
        download_name=export_filename(),
        mimetype=XLSX_MIMETYPE,
    )


@app.route("/assets/template")
@login_required
def download_import_template():
    return send_file(
        workbook_stream(build_import_template()),
        as_attachment=True,
        download_name=TEMPLATE_FILENAME,
        mimetype=XLSX_MIMETYPE,
    )


@app.route("/assets/import", methods=["POST"])
@login_required
def import_assets_excel():
    if "file" not in request.files:
        return jsonify({"error": "No file uploaded."}), 400
    file = request.files["file"]
    if not file or not file.filename:
        return jsonify({"error": "No file selected."}), 400
    auth = request.console_auth
    store = get_view_store(auth)
    filename = secure_filename(file.filename) or "assets.xlsx"
    try:
        summary = get_coordinator(store, auth).import_file(filename, file.stream)
    except (ValidationError, ActionInProgress) as exc:
        return error_response(exc)
    except MutationError as exc:
        log_audit("create", "asset_import", success=False, details=exc.message)
        return error_response(exc)
    log_audit(
        "create",
        "asset_import",
        details=f"imported={summary['imported']} failed={summary['failed']}",
    )
    return jsonify({"result": summary, "state": store.snapshot()})


@app.route("/filters")
@login_required
def filter_options():
    try:
        payload = make_api_client(request.console_auth).filter_options()
    except ApiError as exc:
        return error_response(exc)
    return jsonify(response_data(payload))


@app.route("/branches")
@login_required
def list_branches():
    try:
        payload = make_api_client(request.console_auth).list_branches()
    except ApiError as exc:
        return error_response(exc)
    return jsonify(response_data(payload, []))


@app.route("/branches", methods=["POST"])
@admin_required
def create_branch():
    name = (get_request_data().get("name") or "").strip()
    if not name:
        return jsonify({"error": "Branch name is required."}), 400
    try:
        payload = make_api_client(request.console_auth).create_branch(name)
    except ApiError as exc:
        log_audit("create", "branch", success=False, details=exc.message)
        return error_response(exc)
    log_audit("create", "branch", details=name)
    return jsonify(response_data(payload)), 201


@app.route("/branches/<branch_id>", methods=["DELETE"])
@admin_required
def delete_branch(branch_id):
    try:
        make_api_client(request.console_auth).delete_branch(branch_id)
    except ApiError as exc:
        log_audit("delete", "branch", entity_id=branch_id, success=False, details=exc.message)
        return error_response(exc)
    log_audit("delete", "branch", entity_id=branch_id)
    return jsonify({"status": "deleted"})


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=_parse_int(os.environ.get("PORT"), 8000))
