import logging
import math
import threading
import time
from contextlib import contextmanager

from accounts import token_expired
from asset_query import (
    COUNT_KEYS,
    DEVICE_TYPES,
    PAGE_SIZE,
    VIEW_ALL,
    VIEW_MINE,
    VIEW_MODES,
    build_asset_query,
    build_count_queries,
    build_export_query,
    build_mine_count_query,
    effective_view_mode,
)
from errors import ActionInProgress, ApiError

logger = logging.getLogger(__name__)

SEARCH_DEBOUNCE_SECONDS = 0.4
REFRESH_INTERVAL_SECONDS = 30
IDLE_TIMEOUT_SECONDS = 600
LOAD_ERROR_MESSAGE = "Failed to load assets. Please check if the API server is running."
FILTER_KINDS = ("company", "device")


def empty_counts():
    return {key: 0 for key in COUNT_KEYS}


def asset_owner(asset):
    owner = asset.get("createdBy")
    if isinstance(owner, dict):
        owner = owner.get("_id") or owner.get("id")
    return str(owner) if owner else None


def extract_assets(response):
    if isinstance(response, list):
        return response
    if isinstance(response, dict):
        data = response.get("data")
        if isinstance(data, dict) and isinstance(data.get("assets"), list):
            return data["assets"]
        if isinstance(data, list):
            return data
    return []


def extract_pagination(response, page, page_size, row_count):
    data = response.get("data") if isinstance(response, dict) else None
    pagination = data.get("pagination") if isinstance(data, dict) else None
    if not pagination:
        return {
            "currentPage": page,
            "totalPages": 1,
            "totalItems": row_count,
            "itemsPerPage": page_size,
            "hasNextPage": False,
            "hasPrevPage": page > 1,
        }
    total_items = int(pagination.get("totalItems") or 0)
    items_per_page = int(pagination.get("itemsPerPage") or page_size)
    total_pages = pagination.get("totalPages")
    if total_pages is None:
        total_pages = max(math.ceil(total_items / items_per_page), 1)
    current_page = int(pagination.get("currentPage") or page)
    return {
        "currentPage": current_page,
        "totalPages": int(total_pages),
        "totalItems": total_items,
        "itemsPerPage": items_per_page,
        "hasNextPage": bool(pagination.get("hasNextPage", current_page < int(total_pages))),
        "hasPrevPage": bool(pagination.get("hasPrevPage", current_page > 1)),
    }


class ViewState:
    def __init__(self, view_mode=VIEW_ALL):
        self.page = 1
        self.page_size = PAGE_SIZE
        self.total_items = 0
        self.total_pages = 1
        self.has_next = False
        self.has_prev = False
        self.company = None
        self.device = None
        self.search = ""
        self.pending_search = None
        self.view_mode = view_mode
        self.assets = []
        self.counts = empty_counts()
        self.mine_count = 0
        self.loading = False
        self.error = None


class ViewStateStore:
    """Dashboard state for one signed-in console session.

    Every page fetch and counts refresh is tagged with a sequence number and
    only the most recently issued one may write its result back, so a slow
    response for an old filter can never overwrite a newer page.
    """

    def __init__(
        self,
        client,
        auth,
        debounce_seconds=SEARCH_DEBOUNCE_SECONDS,
        refresh_interval=REFRESH_INTERVAL_SECONDS,
        timer_factory=threading.Timer,
        idle_timeout=IDLE_TIMEOUT_SECONDS,
        clock=time.monotonic,
        on_close=None,
    ):
        self.client = client
        self.auth = auth
        self.debounce_seconds = debounce_seconds
        self.refresh_interval = refresh_interval
        self.idle_timeout = idle_timeout
        self.state = ViewState(effective_view_mode(auth, VIEW_ALL))
        self._timer_factory = timer_factory
        self._clock = clock
        self._on_close = on_close
        self.last_access = clock()
        self._lock = threading.RLock()
        self._fetch_seq = 0
        self._counts_seq = 0
        self._search_timer = None
        self._poller = None
        self._busy = set()
        self._closed = False

    def mount(self):
        self.fetch(1)
        self.refresh_counts()
        self.load_mine_count()
        return self.snapshot()

    def current_page(self):
        with self._lock:
            return self.state.page

    def set_filter(self, kind, value):
        if kind not in FILTER_KINDS:
            raise ValueError(f"Unknown filter: {kind}")
        if value is not None and not isinstance(value, str):
            raise ValueError("Filter value must be text")
        value = (value or "").strip() or None
        if kind == "device" and value and value not in DEVICE_TYPES:
            raise ValueError(f"Device must be one of {', '.join(DEVICE_TYPES)}")
        with self._lock:
            setattr(self.state, kind, value)
            self.state.page = 1
        self.fetch(1)
        self.refresh_counts()

    def set_search(self, term):
        with self._lock:
            if self._closed:
                return
            self._cancel_search_timer()
            self.state.pending_search = "" if term is None else str(term)
            timer = self._timer_factory(self.debounce_seconds, self._apply_pending_search)
            timer.daemon = True
            self._search_timer = timer
        timer.start()

    def flush_search(self):
        with self._lock:
            self._cancel_search_timer()
        self._apply_pending_search()

    def _apply_pending_search(self):
        with self._lock:
            self._search_timer = None
            term = self.state.pending_search
            if term is None or self._closed:
                return
            self.state.pending_search = None
            self.state.search = term.strip()
            self.state.page = 1
        self.fetch(1)

    def _cancel_search_timer(self):
        if self._search_timer is not None:
            self._search_timer.cancel()
            self._search_timer = None

    def set_view_mode(self, mode):
        if mode not in VIEW_MODES:
            raise ValueError(f"View mode must be one of {', '.join(VIEW_MODES)}")
        with self._lock:
            self.state.view_mode = effective_view_mode(self.auth, mode)
            self.state.page = 1
        self.fetch(1)
        self.refresh_counts()

    def go_to_page(self, page):
        try:
            page = int(page)
        except (TypeError, ValueError):
            raise ValueError("Page must be a number") from None
        with self._lock:
            page = min(max(page, 1), max(self.state.total_pages, 1))
        self.fetch(page)

    def refresh(self, show_loading=True):
        self.fetch(None, show_loading=show_loading)
        self.refresh_counts()

    def poll(self):
        self.refresh(show_loading=False)
        self.load_mine_count()

    def fetch(self, page=None, show_loading=True):
        with self._lock:
            if page is None:
                page = self.state.page
            self._fetch_seq += 1
            seq = self._fetch_seq
            params = build_asset_query(
                self.auth,
                self.state.view_mode,
                company=self.state.company,
                device=self.state.device,
                search=self.state.search,
                page=page,
            )
            self.state.page = page
            if show_loading:
                self.state.loading = True
        try:
            response = self.client.list_assets(params)
        except ApiError as exc:
            return self._apply_fetch_error(exc, seq, show_loading)
        return self.apply_fetch_result(response, seq)

    def apply_fetch_result(self, result, seq):
        with self._lock:
            if seq != self._fetch_seq:
                logger.debug("Dropping stale asset page (request %s, latest %s)", seq, self._fetch_seq)
                return False
            assets = extract_assets(result)
            pagination = extract_pagination(result, self.state.page, self.state.page_size, len(assets))
            self.state.assets = assets
            self.state.page = pagination["currentPage"]
            self.state.total_items = pagination["totalItems"]
            self.state.total_pages = pagination["totalPages"]
            self.state.has_next = pagination["hasNextPage"]
            self.state.has_prev = pagination["hasPrevPage"]
            self.state.error = None
            self.state.loading = False
            return True

    def _apply_fetch_error(self, exc, seq, show_loading):
        with self._lock:
            if seq != self._fetch_seq:
                return False
            self.state.error = exc.message if exc.status else LOAD_ERROR_MESSAGE
            self.state.loading = False
            # background refreshes keep the rows already on screen
            if show_loading:
                self.state.assets = []
        logger.warning("Asset fetch failed: %s", exc.message)
        return False

    def refresh_counts(self):
        with self._lock:
            self._counts_seq += 1
            seq = self._counts_seq
            queries = build_count_queries(self.auth, self.state.view_mode, self.state.company)
        counts = {}
        try:
            for key, params in queries.items():
                counts[key] = self.client.count_assets(params)
        except ApiError as exc:
            logger.warning("Asset count refresh failed: %s", exc.message)
            return False
        return self.apply_counts_result(counts, seq)

    def apply_counts_result(self, counts, seq):
        with self._lock:
            if seq != self._counts_seq:
                logger.debug("Dropping stale asset counts (request %s, latest %s)", seq, self._counts_seq)
                return False
            self.state.counts = {key: int(counts.get(key) or 0) for key in COUNT_KEYS}
            return True

    def load_mine_count(self):
        try:
            count = self.client.count_assets(build_mine_count_query(self.auth))
        except ApiError as exc:
            logger.warning("Own asset count failed: %s", exc.message)
            return False
        with self._lock:
            self.state.mine_count = count
        return True

    def adjust_mine_count(self, delta):
        with self._lock:
            self.state.mine_count = max(self.state.mine_count + delta, 0)

    def owner_of(self, asset_id):
        """Owner of a row on the current page, or None when it is not shown."""
        with self._lock:
            for asset in self.state.assets:
                if str(asset.get("_id")) == str(asset_id):
                    return asset_owner(asset)
        return None

    def last_page_if_past_end(self):
        with self._lock:
            if self.state.page > 1 and not self.state.assets and self.state.page > self.state.total_pages:
                return max(self.state.total_pages, 1)
        return None

    def set_error(self, message):
        with self._lock:
            self.state.error = message

    def clear_error(self):
        self.set_error(None)

    @contextmanager
    def busy(self, action):
        with self._lock:
            if action in self._busy:
                raise ActionInProgress(action)
            self._busy.add(action)
        try:
            yield
        finally:
            with self._lock:
                self._busy.discard(action)

    def export_assets(self):
        with self._lock:
            view_mode = self.state.view_mode
            company = self.state.company
            device = self.state.device
            search = self.state.search
        rows = []
        page = 1
        while True:
            params = build_export_query(
                self.auth, view_mode, company=company, device=device, search=search, page=page
            )
            response = self.client.list_assets(params)
            assets = extract_assets(response)
            rows.extend(assets)
            pagination = extract_pagination(response, page, params["limit"], len(assets))
            if not assets or not pagination["hasNextPage"]:
                break
            page += 1
        return rows

    def start_polling(self):
        with self._lock:
            if self._closed or self._poller is not None:
                return
            self._poller = RefreshPoller(self, self.refresh_interval, self._timer_factory)
            poller = self._poller
        poller.start()

    def touch(self):
        with self._lock:
            self.last_access = self._clock()

    def is_stale(self):
        """True once the session token has expired or nobody has looked at
        this dashboard for ``idle_timeout`` seconds."""
        if token_expired(self.auth.token):
            return True
        with self._lock:
            return self._clock() - self.last_access >= self.idle_timeout

    def close(self):
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._cancel_search_timer()
            self.state.pending_search = None
            poller = self._poller
            self._poller = None
        if poller is not None:
            poller.stop()
        if self._on_close is not None:
            self._on_close(self)

    @property
    def closed(self):
        return self._closed

    def snapshot(self):
        with self._lock:
            state = self.state
            show_actions = not self.auth.is_admin or state.view_mode == VIEW_MINE
            assets = []
            for asset in state.assets:
                row = dict(asset)
                row["editable"] = asset_owner(asset) == str(self.auth.user_id)
                assets.append(row)
            return {
                "assets": assets,
                "pagination": {
                    "currentPage": state.page,
                    "totalPages": state.total_pages,
                    "totalItems": state.total_items,
                    "itemsPerPage": state.page_size,
                    "hasNextPage": state.has_next,
                    "hasPrevPage": state.has_prev,
                },
                "filters": {"company": state.company, "device": state.device},
                "search": state.search,
                "pendingSearch": state.pending_search,
                "viewMode": state.view_mode,
                "isAdmin": self.auth.is_admin,
                "showActions": show_actions,
                "counts": dict(state.counts),
                "mineCount": state.mine_count,
                "loading": state.loading,
                "error": state.error,
                "busy": sorted(self._busy),
            }


class RefreshPoller:
    """Re-reads the current page on a fixed interval until stopped.

    No ordering or delivery guarantee beyond eventually re-reading the
    current state; each tick reschedules the next one.
    """

    def __init__(self, store, interval, timer_factory=threading.Timer):
        self._store = store
        self._interval = interval
        self._timer_factory = timer_factory
        self._timer = None
        self._stopped = False
        self._lock = threading.Lock()

    def start(self):
        with self._lock:
            if self._stopped:
                return
            self._schedule()

    def _schedule(self):
        timer = self._timer_factory(self._interval, self._tick)
        timer.daemon = True
        self._timer = timer
        timer.start()

    def _tick(self):
        with self._lock:
            if self._stopped:
                return
        if self._store.is_stale():
            logger.info("Closing idle dashboard for %s", self._store.auth.username)
            self._store.close()
            return
        try:
            self._store.poll()
        except Exception:
            logger.exception("Background asset refresh failed")
        with self._lock:
            if not self._stopped:
                self._schedule()

    def stop(self):
        with self._lock:
            self._stopped = True
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    @property
    def running(self):
        return not self._stopped
