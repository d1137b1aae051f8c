import logging

import requests

from errors import ApiError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 15
UNREACHABLE_MESSAGE = "Unable to reach the asset service."


def _error_message(payload, status):
    if isinstance(payload, dict):
        message = payload.get("message") or payload.get("error")
        if message:
            return str(message)
    return f"HTTP error! status: {status}"


class AssetApiClient:
    def __init__(self, base_url, token=None, timeout=DEFAULT_TIMEOUT, session=None):
        self.base_url = (base_url or "").rstrip("/")
        self.token = token
        self.timeout = timeout
        self.session = session or requests.Session()

    def _headers(self):
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _request(self, method, path, **kwargs):
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(
                method, url, headers=self._headers(), timeout=self.timeout, **kwargs
            )
        except requests.RequestException as exc:
            logger.warning("%s %s failed: %s", method, url, exc)
            raise ApiError(UNREACHABLE_MESSAGE) from exc
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if not response.ok:
            message = _error_message(payload, response.status_code)
            logger.warning("%s %s -> %s %s", method, url, response.status_code, message)
            raise ApiError(message, status=response.status_code, payload=payload)
        if payload is None:
            raise ApiError("Unexpected response from the asset service.", status=response.status_code)
        return payload

    def login(self, username, password):
        return self._request("POST", "/auth/login", json={"username": username, "password": password})

    def signup(self, username, name, role, password):
        return self._request(
            "POST",
            "/auth/signup",
            json={"username": username, "name": name, "role": role, "password": password},
        )

    def reset_password(self, username, old_password, new_password):
        return self._request(
            "POST",
            "/auth/reset-password",
            json={"username": username, "oldPassword": old_password, "newPassword": new_password},
        )

    def list_assets(self, params):
        return self._request("GET", "/assets", params=params)

    def count_assets(self, params):
        payload = self.list_assets(params)
        data = payload.get("data") if isinstance(payload, dict) else None
        pagination = data.get("pagination") if isinstance(data, dict) else None
        if not pagination:
            return 0
        return int(pagination.get("totalItems") or 0)

    def filter_options(self):
        return self._request("GET", "/assets/filters")

    def create_asset(self, payload):
        return self._request("POST", "/assets", json=payload)

    def update_asset(self, asset_id, payload):
        return self._request("PUT", f"/assets/{asset_id}", json=payload)

    def delete_asset(self, asset_id):
        return self._request("DELETE", f"/assets/{asset_id}")

    def upload_excel(self, filename, stream, created_by):
        files = {
            "file": (
                filename,
                stream,
                "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
            )
        }
        return self._request(
            "POST", "/assets/upload-excel", files=files, data={"createdBy": created_by}
        )

    def list_branches(self):
        try:
            return self._request("GET", "/branches")
        except ApiError as exc:
            if exc.status == 404:
                return {"data": []}
            raise

    def create_branch(self, name):
        return self._request("POST", "/branches", json={"name": name})

    def delete_branch(self, branch_id):
        return self._request("DELETE", f"/branches/{branch_id}")
