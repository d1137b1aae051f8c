import io
import logging

from asset_query import DEVICE_TYPES
from errors import ApiError, MutationError, ValidationError
from spreadsheet import ASSET_COLUMNS, read_asset_rows

logger = logging.getLogger(__name__)

SERIAL_PLACEHOLDERS = {"", "auto", "auto-generated"}
IMPORT_EXTENSIONS = (".xlsx",)
MAX_IMPORT_BYTES = 5 * 1024 * 1024

CREATE_FAILED = "Failed to create asset. Please try again."
UPDATE_FAILED = "Failed to update asset. Please try again."
DELETE_FAILED = "Failed to delete asset. Please try again."
IMPORT_FAILED = "Failed to import assets. Please try again."


def normalize_asset_form(form, partial=False):
    data = {}
    for _label, field_name in ASSET_COLUMNS:
        if partial and field_name not in form:
            continue
        value = form.get(field_name)
        data[field_name] = str(value).strip() if value is not None else ""
    serial = str(form.get("serialNumber") or "").strip()
    if serial.lower() not in SERIAL_PLACEHOLDERS:
        data["serialNumber"] = serial
    if "companyName" in data or not partial:
        if not data.get("companyName"):
            return None, "Company name is required."
    if "device" in data or not partial:
        if data.get("device") not in DEVICE_TYPES:
            return None, f"Device must be one of {', '.join(DEVICE_TYPES)}."
    return data, None


def validate_import_file(filename, size, max_bytes=MAX_IMPORT_BYTES):
    if not filename:
        raise ValidationError("No file selected.")
    if not filename.lower().endswith(IMPORT_EXTENSIONS):
        raise ValidationError("Upload an .xlsx file.")
    if size > max_bytes:
        raise ValidationError(f"File is too large. Maximum size is {max_bytes // (1024 * 1024)} MB.")
    if size == 0:
        raise ValidationError("Excel file is empty.")


def _remote_message(exc):
    payload = exc.payload if isinstance(exc.payload, dict) else {}
    return payload.get("message") or payload.get("error")


class MutationCoordinator:
    def __init__(self, client, store, auth, max_import_bytes=MAX_IMPORT_BYTES):
        self.client = client
        self.store = store
        self.auth = auth
        self.max_import_bytes = max_import_bytes

    def _failed(self, exc, fallback, record=True):
        message = _remote_message(exc) or fallback
        if record:
            self.store.set_error(message)
        return MutationError(message, status=exc.status)

    def create(self, form):
        data, error = normalize_asset_form(form)
        if error:
            raise ValidationError(error)
        data["createdBy"] = self.auth.user_id
        with self.store.busy("create"):
            self.store.clear_error()
            try:
                created = self.client.create_asset(data)
            except ApiError as exc:
                raise self._failed(exc, CREATE_FAILED) from exc
            self.store.fetch(1)
            self.store.refresh_counts()
            self.store.adjust_mine_count(1)
        logger.info("Asset created by %s", self.auth.username)
        return created

    def update(self, asset_id, form):
        data, error = normalize_asset_form(form, partial=True)
        if error:
            raise ValidationError(error)
        data.pop("serialNumber", None)
        if not data:
            raise ValidationError("Nothing to update.")
        with self.store.busy("update"):
            self.store.clear_error()
            page = self.store.current_page()
            try:
                updated = self.client.update_asset(asset_id, data)
            except ApiError as exc:
                raise self._failed(exc, UPDATE_FAILED) from exc
            self.store.fetch(page)
            self.store.refresh_counts()
        logger.info("Asset %s updated by %s", asset_id, self.auth.username)
        return updated

    def delete(self, asset_id):
        with self.store.busy("delete"):
            self.store.clear_error()
            page = self.store.current_page()
            owner = self.store.owner_of(asset_id)
            try:
                deleted = self.client.delete_asset(asset_id)
            except ApiError as exc:
                raise self._failed(exc, DELETE_FAILED) from exc
            self.store.fetch(page)
            self.store.refresh_counts()
            if owner is None:
                self.store.load_mine_count()
            elif owner == str(self.auth.user_id):
                self.store.adjust_mine_count(-1)
            last_page = self.store.last_page_if_past_end()
            if last_page is not None:
                self.store.fetch(last_page)
        logger.info("Asset %s deleted by %s", asset_id, self.auth.username)
        return deleted

    def import_file(self, filename, stream):
        content = stream.read()
        validate_import_file(filename, len(content), self.max_import_bytes)
        rows = read_asset_rows(io.BytesIO(content))
        if not rows:
            raise ValidationError("Excel file has no asset rows.")
        with self.store.busy("import"):
            try:
                result = self.client.upload_excel(filename, io.BytesIO(content), self.auth.user_id)
            except ApiError as exc:
                raise self._failed(exc, IMPORT_FAILED, record=False) from exc
            if result.get("success") is False:
                raise MutationError(result.get("message") or IMPORT_FAILED)
            data = result.get("data") or {}
            summary = {
                "rows": len(rows),
                "imported": int(data.get("imported") or 0),
                "failed": int(data.get("failed") or 0),
                "errors": list(data.get("errors") or []),
            }
            self.store.fetch(1)
            self.store.refresh_counts()
            self.store.load_mine_count()
        logger.info(
            "Import by %s: %s imported, %s failed", self.auth.username, summary["imported"], summary["failed"]
        )
        return summary
