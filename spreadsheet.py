import datetime
import io
import re
import zipfile

from openpyxl import Workbook, load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from errors import ValidationError

SHEET_TITLE = "IT Assets"
SERIAL_HEADER = "S.No"
DATE_FORMAT = "%d-%m-%Y"
EXCEL_EPOCH = datetime.datetime(1899, 12, 30)
XLSX_MIMETYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
TEMPLATE_FILENAME = "IT_Assets_Template.xlsx"

ASSET_COLUMNS = [
    ("Company", "companyName"),
    ("Branch", "branch"),
    ("Department", "department"),
    ("User", "userName"),
    ("Brand", "brand"),
    ("Device", "device"),
    ("Device S.No", "deviceSerialNo"),
    ("Operating System", "operatingSystem"),
    ("Purchase Date", "dateOfPurchase"),
    ("Remark", "remark"),
]
HEADER_ALIASES = {
    "dept": "department",
    "os": "operatingSystem",
    "serial_no": "deviceSerialNo",
    "company_name": "companyName",
    "user_name": "userName",
    "date_of_purchase": "dateOfPurchase",
}
SAMPLE_ASSET = {
    "companyName": "Acme Corp",
    "branch": "Head Office",
    "department": "IT",
    "userName": "Jane Doe",
    "brand": "Dell",
    "device": "Laptop",
    "deviceSerialNo": "DL5420-0001",
    "operatingSystem": "Windows 11",
    "dateOfPurchase": "15-01-2024",
    "remark": "Sample row",
}

_DMY_PATTERN = re.compile(r"^(\d{1,2})[-/](\d{1,2})[-/](\d{4})$")
_YMD_PATTERN = re.compile(r"^(\d{4})[-/](\d{1,2})[-/](\d{1,2})(?:[T ].*)?$")


def _normalize_header(value):
    return re.sub(r"\s+", "_", str(value or "").strip().lower())


def get_header_map():
    header_map = {_normalize_header(SERIAL_HEADER): "serialNumber"}
    for label, field_name in ASSET_COLUMNS:
        header_map[_normalize_header(label)] = field_name
        header_map[_normalize_header(field_name)] = field_name
    header_map.update(HEADER_ALIASES)
    return header_map


def format_purchase_date(value):
    if value is None or value == "":
        return ""
    if isinstance(value, (datetime.datetime, datetime.date)):
        return value.strftime(DATE_FORMAT)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return (EXCEL_EPOCH + datetime.timedelta(days=value)).strftime(DATE_FORMAT)
    text = str(value).strip()
    match = _DMY_PATTERN.match(text)
    if match:
        day, month, year = match.groups()
        return f"{int(day):02d}-{int(month):02d}-{year}"
    match = _YMD_PATTERN.match(text)
    if match:
        year, month, day = match.groups()
        return f"{int(day):02d}-{int(month):02d}-{year}"
    return text


def _cell_text(value):
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def build_export_workbook(assets, include_serial=True):
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = SHEET_TITLE
    headers = [label for label, _field_name in ASSET_COLUMNS]
    if include_serial:
        headers.insert(0, SERIAL_HEADER)
    sheet.append(headers)
    for index, asset in enumerate(assets):
        row = []
        if include_serial:
            row.append(asset.get("serialNumber") or index + 1)
        for _label, field_name in ASSET_COLUMNS:
            value = asset.get(field_name)
            if field_name == "dateOfPurchase":
                value = format_purchase_date(value)
            row.append(value if value is not None else "")
        sheet.append(row)
    return workbook


def build_import_template():
    return build_export_workbook([SAMPLE_ASSET], include_serial=False)


def workbook_stream(workbook):
    output = io.BytesIO()
    workbook.save(output)
    output.seek(0)
    return output


def export_filename(now=None):
    now = now or datetime.datetime.now()
    return f"IT_Assets-{now.strftime('%Y%m%d-%H%M%S')}.xlsx"


def read_asset_rows(stream):
    try:
        workbook = load_workbook(stream, data_only=True, read_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError) as exc:
        raise ValidationError("Could not read the Excel file.") from exc
    try:
        rows = list(workbook.active.iter_rows(values_only=True))
    finally:
        workbook.close()
    if not rows:
        raise ValidationError("Excel file is empty.")
    header_map = get_header_map()
    headers = [header_map.get(_normalize_header(cell)) for cell in rows[0]]
    required = {field_name: label for label, field_name in ASSET_COLUMNS}
    missing = [label for field_name, label in required.items() if field_name not in headers]
    if missing:
        raise ValidationError(f"Missing required headers: {', '.join(missing)}")
    assets = []
    for row in rows[1:]:
        if row is None or all(cell in (None, "") for cell in row):
            continue
        data = {}
        for idx, cell in enumerate(row):
            field_name = headers[idx] if idx < len(headers) else None
            if not field_name or field_name == "serialNumber":
                continue
            if field_name == "dateOfPurchase":
                data[field_name] = format_purchase_date(cell)
            else:
                data[field_name] = _cell_text(cell)
        assets.append(data)
    return assets
