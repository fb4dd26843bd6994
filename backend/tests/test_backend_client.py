# Overview: Pytest coverage for the hosted backend HTTP client.

import json

import httpx
import pytest

from pharmapos.services.backend_client import (
    REJECTED_MESSAGE,
    UNAVAILABLE_MESSAGE,
    BackendRejected,
    BackendUnavailable,
    SupabaseClient,
)


def client_for(handler, **kwargs):
    return SupabaseClient(
        "http://backend.test/",
        "anon-key",
        access_token=kwargs.pop("access_token", "user-token"),
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


class TestRequests:
    def test_headers_carry_anon_key_and_user_token(self):
        seen = {}

        def handler(request):
            seen["apikey"] = request.headers["apikey"]
            seen["auth"] = request.headers["Authorization"]
            seen["path"] = request.url.path
            return httpx.Response(200, json=[])

        with client_for(handler) as client:
            client.fetch_medications("pharm-1")

        assert seen == {"apikey": "anon-key", "auth": "Bearer user-token", "path": "/rest/v1/medications"}

    def test_product_filter_uses_in_list(self):
        seen = {}

        def handler(request):
            seen.update(request.url.params)
            return httpx.Response(200, json=[])

        with client_for(handler) as client:
            client.fetch_medications("pharm-1", product_ids=["a", "b"])

        assert seen["id"] == 'in.("a","b")'
        assert seen["pharmacy_id"] == "eq.pharm-1"
        assert seen["is_shelved"] == "eq.true"

    def test_commit_sends_idempotency_key(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json="RCP-9")

        with client_for(handler) as client:
            result = client.commit_sale({"total": 10}, "key-123")

        assert seen["body"] == {"p_sale": {"total": 10, "idempotency_key": "key-123"}}
        assert result == {"receipt_id": "RCP-9"}

    def test_update_pending_is_conditional_on_status(self):
        seen = {}

        def handler(request):
            seen.update(request.url.params)
            seen["prefer"] = request.headers.get("Prefer")
            return httpx.Response(200, json=[])

        with client_for(handler) as client:
            assert client.update_pending_transaction("pt-1", {"status": "cancelled"}) is None

        assert seen["id"] == "eq.pt-1"
        assert seen["status"] == "eq.pending"
        assert seen["prefer"] == "return=representation"

    def test_get_pending_is_scoped_and_pending_only(self):
        seen = {}

        def handler(request):
            seen.update(request.url.params)
            return httpx.Response(200, json=[{"id": "pt-1"}])

        with client_for(handler) as client:
            row = client.get_pending_transaction("pharm-1", "pt-1", branch_id="branch-2")

        assert row == {"id": "pt-1"}
        assert seen["id"] == "eq.pt-1"
        assert seen["pharmacy_id"] == "eq.pharm-1"
        assert seen["branch_id"] == "eq.branch-2"
        assert seen["status"] == "eq.pending"


class TestErrors:
    def test_connection_error_is_unavailable(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with client_for(handler) as client:
            with pytest.raises(BackendUnavailable) as exc_info:
                client.fetch_medications("pharm-1")

        assert str(exc_info.value) == UNAVAILABLE_MESSAGE

    def test_timeout_is_unavailable(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with client_for(handler) as client:
            with pytest.raises(BackendUnavailable) as exc_info:
                client.commit_sale({}, "k")

        assert exc_info.value.details["reason"] == "timeout"

    def test_plpgsql_message_is_shown(self):
        def handler(request):
            return httpx.Response(400, json={"code": "P0001", "message": "Shift is closed"})

        with client_for(handler) as client:
            with pytest.raises(BackendRejected) as exc_info:
                client.commit_sale({}, "k")

        assert str(exc_info.value) == "Shift is closed"
        assert exc_info.value.status_code == 400

    def test_raw_codes_are_hidden(self):
        def handler(request):
            return httpx.Response(406, json={"code": "PGRST116", "message": "JSON object requested, multiple rows"})

        with client_for(handler) as client:
            with pytest.raises(BackendRejected) as exc_info:
                client.fetch_pharmacy("pharm-1")

        assert str(exc_info.value) == REJECTED_MESSAGE
        assert exc_info.value.details["code"] == "PGRST116"

    def test_empty_commit_response_is_rejected(self):
        with client_for(lambda request: httpx.Response(200, json=[])) as client:
            with pytest.raises(BackendRejected):
                client.commit_sale({}, "k")

    def test_ping(self):
        with client_for(lambda request: httpx.Response(200, json={})) as client:
            assert client.ping() is True

        def down(request):
            raise httpx.ConnectError("refused", request=request)

        with client_for(down) as client:
            assert client.ping() is False
