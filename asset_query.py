PAGE_SIZE = 20
EXPORT_PAGE_SIZE = 100
SORT_BY = "createdAt"
SORT_ORDER = "desc"

VIEW_ALL = "all"
VIEW_MINE = "mine"
VIEW_MODES = (VIEW_ALL, VIEW_MINE)

DEVICE_LAPTOP = "Laptop"
DEVICE_DESKTOP = "Desktop"
DEVICE_PRINTER = "Printer"
DEVICE_TYPES = (DEVICE_LAPTOP, DEVICE_DESKTOP, DEVICE_PRINTER)

# counter name -> device filter ("" counts every device)
COUNT_KEYS = {
    "total": "",
    "laptops": DEVICE_LAPTOP,
    "desktops": DEVICE_DESKTOP,
    "printers": DEVICE_PRINTER,
}


def effective_view_mode(auth, view_mode):
    if not auth.is_admin:
        return VIEW_MINE
    return view_mode if view_mode in VIEW_MODES else VIEW_ALL


def effective_created_by(auth, view_mode):
    if not auth.is_admin or view_mode == VIEW_MINE:
        return auth.user_id
    return None


def _drop_empty(params):
    return {key: value for key, value in params.items() if value}


def build_asset_query(auth, view_mode, company=None, device=None, search="", page=1, limit=PAGE_SIZE):
    params = {"page": page, "limit": limit, "sortBy": SORT_BY, "order": SORT_ORDER}
    params.update(
        _drop_empty(
            {
                "search": (search or "").strip(),
                "companyName": company,
                "device": device,
                "createdBy": effective_created_by(auth, view_mode),
            }
        )
    )
    return params


def build_count_queries(auth, view_mode, company=None):
    queries = {}
    for key, device in COUNT_KEYS.items():
        queries[key] = build_asset_query(auth, view_mode, company=company, device=device, limit=1)
    return queries


def build_mine_count_query(auth):
    return build_asset_query(auth, VIEW_MINE, limit=1)


def build_export_query(auth, view_mode, company=None, device=None, search="", page=1):
    return build_asset_query(
        auth, view_mode, company=company, device=device, search=search, page=page, limit=EXPORT_PAGE_SIZE
    )
