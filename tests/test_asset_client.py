import io
from unittest.mock import MagicMock

import pytest
import requests

from asset_client import AssetApiClient
from errors import ApiError


def _response(status=200, payload=None, json_error=False):
    response = MagicMock()
    response.status_code = status
    response.ok = 200 <= status < 400
    if json_error:
        response.json.side_effect = ValueError("No JSON object could be decoded")
    else:
        response.json.return_value = payload
    return response


@pytest.fixture
def session():
    return MagicMock()


@pytest.fixture
def client(session):
    return AssetApiClient("http://assets.local/api/", token="abc", timeout=5, session=session)


def test_requests_carry_bearer_token_and_timeout(client, session):
    session.request.return_value = _response(payload={"success": True, "data": {"assets": []}})

    client.list_assets({"page": 1, "limit": 20})

    args, kwargs = session.request.call_args
    assert args == ("GET", "http://assets.local/api/assets")
    assert kwargs["headers"]["Authorization"] == "Bearer abc"
    assert kwargs["params"] == {"page": 1, "limit": 20}
    assert kwargs["timeout"] == 5


def test_anonymous_requests_have_no_authorization(session):
    client = AssetApiClient("http://assets.local/api", session=session)
    session.request.return_value = _response(payload={"success": True})

    client.login("jdoe", "secret")

    _args, kwargs = session.request.call_args
    assert "Authorization" not in kwargs["headers"]
    assert kwargs["json"] == {"username": "jdoe", "password": "secret"}


def test_error_status_uses_server_message(client, session):
    session.request.return_value = _response(status=409, payload={"message": "Serial number already exists"})

    with pytest.raises(ApiError) as excinfo:
        client.create_asset({"companyName": "Acme Corp"})

    assert excinfo.value.status == 409
    assert excinfo.value.message == "Serial number already exists"
    assert excinfo.value.payload == {"message": "Serial number already exists"}


def test_error_without_body_falls_back_to_status(client, session):
    session.request.return_value = _response(status=500, json_error=True)

    with pytest.raises(ApiError) as excinfo:
        client.delete_asset("asset-1")

    assert excinfo.value.message == "HTTP error! status: 500"


def test_connection_failure_is_reported_as_unreachable(client, session):
    session.request.side_effect = requests.ConnectionError("refused")

    with pytest.raises(ApiError) as excinfo:
        client.list_assets({})

    assert excinfo.value.message == "Unable to reach the asset service."
    assert excinfo.value.status is None


def test_non_json_success_is_rejected(client, session):
    session.request.return_value = _response(json_error=True)

    with pytest.raises(ApiError) as excinfo:
        client.filter_options()

    assert excinfo.value.message == "Unexpected response from the asset service."


def test_count_reads_total_items(client, session):
    session.request.return_value = _response(
        payload={"data": {"assets": [{}], "pagination": {"totalItems": 42}}}
    )

    assert client.count_assets({"limit": 1}) == 42
    session.request.return_value = _response(payload={"data": []})
    assert client.count_assets({"limit": 1}) == 0


def test_missing_branch_endpoint_yields_empty_list(client, session):
    session.request.return_value = _response(status=404, payload={"message": "Not found"})

    assert client.list_branches() == {"data": []}


def test_branch_errors_other_than_not_found_propagate(client, session):
    session.request.return_value = _response(status=500, payload={"error": "boom"})

    with pytest.raises(ApiError):
        client.list_branches()


def test_upload_excel_sends_multipart_with_owner(client, session):
    session.request.return_value = _response(payload={"success": True, "data": {"imported": 2}})
    stream = io.BytesIO(b"xlsx-bytes")

    client.upload_excel("assets.xlsx", stream, "user-1")

    args, kwargs = session.request.call_args
    assert args == ("POST", "http://assets.local/api/assets/upload-excel")
    filename, sent_stream, mimetype = kwargs["files"]["file"]
    assert filename == "assets.xlsx"
    assert sent_stream is stream
    assert mimetype.endswith("spreadsheetml.sheet")
    assert kwargs["data"] == {"createdBy": "user-1"}


def test_reset_password_payload(client, session):
    session.request.return_value = _response(payload={"success": True})

    client.reset_password("jdoe", "old", "new")

    _args, kwargs = session.request.call_args
    assert kwargs["json"] == {"username": "jdoe", "oldPassword": "old", "newPassword": "new"}
