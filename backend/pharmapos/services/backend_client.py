# Overview: HTTP client for the hosted backend (Supabase REST + RPC).

"""
Backend Client

WHY: All persistence of record lives in the hosted backend. The till talks
to it through PostgREST tables and RPC functions, authenticated with the
project's anon key plus the cashier's access token (so row-level security
applies to every call).

ERROR POLICY:
- Transport failures and timeouts raise BackendUnavailable (retryable).
- HTTP error responses raise BackendRejected with a human-readable message.
  Raw backend error codes are kept in `details` for logs, never in the message.
"""
from __future__ import annotations

from typing import Any

import httpx


RPC_COMPLETE_SALE = "complete_sale"

UNAVAILABLE_MESSAGE = "Could not reach the pharmacy server. Check your connection and try again."
REJECTED_MESSAGE = "The pharmacy server could not complete the request. Please review and try again."


class BackendError(Exception):
    """Base class for backend failures."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class BackendUnavailable(BackendError):
    """Network failure or timeout; nothing is known to have been persisted."""


class BackendRejected(BackendError):
    """The backend answered with an error (validation, RLS, race with another till)."""
    def __init__(self, message: str, status_code: int, details: dict | None = None):
        super().__init__(message, details)
        self.status_code = status_code


def _in_filter(values: list[str]) -> str:
    quoted = ",".join(f'"{value}"' for value in values)
    return f"in.({quoted})"


def _readable_message(response: httpx.Response) -> str:
    """
    Pick a cashier-safe message out of a PostgREST error body.

    RPC functions raise with a human message in `message`; PostgREST's own
    errors carry codes like PGRST116 or 23505 which are not shown.
    """
    try:
        body = response.json()
    except ValueError:
        return REJECTED_MESSAGE
    if not isinstance(body, dict):
        return REJECTED_MESSAGE
    message = body.get("message")
    code = str(body.get("code") or "")
    # P0001 = raise exception from plpgsql: written for humans
    if isinstance(message, str) and message.strip() and code in {"", "P0001"}:
        return message.strip()
    return REJECTED_MESSAGE


class SupabaseClient:
    """
    Thin synchronous client over PostgREST.

    One instance per request/till; call close() (or use as a context manager)
    to release the connection pool.
    """

    def __init__(
        self,
        base_url: str,
        anon_key: str,
        *,
        access_token: str | None = None,
        timeout: float = 15.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._anon_key = anon_key
        self._access_token = access_token
        headers = {
            "apikey": anon_key,
            "Authorization": f"Bearer {access_token or anon_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        self._http = httpx.Client(
            base_url=f"{self.base_url}/rest/v1",
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_config(
        cls,
        config,
        access_token: str | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> "SupabaseClient":
        return cls(
            config["SUPABASE_URL"],
            config["SUPABASE_ANON_KEY"],
            access_token=access_token,
            timeout=config.get("BACKEND_TIMEOUT_SECONDS", 15.0),
            transport=transport,
        )

    def __enter__(self) -> "SupabaseClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self) -> None:
        self._http.close()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict | None = None,
        json: Any = None,
        prefer: str | None = None,
    ) -> Any:
        headers = {"Prefer": prefer} if prefer else None
        try:
            response = self._http.request(method, path, params=params, json=json, headers=headers)
        except httpx.TimeoutException as exc:
            raise BackendUnavailable(UNAVAILABLE_MESSAGE, {"path": path, "reason": "timeout"}) from exc
        except httpx.TransportError as exc:
            raise BackendUnavailable(UNAVAILABLE_MESSAGE, {"path": path, "reason": str(exc)}) from exc

        if response.status_code >= 400:
            details = {"path": path, "status_code": response.status_code}
            try:
                body = response.json()
            except ValueError:
                body = None
            if isinstance(body, dict):
                details["code"] = body.get("code")
                details["hint"] = body.get("hint")
            raise BackendRejected(_readable_message(response), response.status_code, details)

        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    # ------------------------------------------------------------------
    # Inventory
    # ------------------------------------------------------------------

    def fetch_medications(
        self,
        pharmacy_id: str,
        *,
        product_ids: list[str] | None = None,
    ) -> list[dict]:
        """Shelved catalog rows for a pharmacy (central stock lives on these rows)."""
        params = {
            "select": "*",
            "pharmacy_id": f"eq.{pharmacy_id}",
            "is_shelved": "eq.true",
            "order": "name",
        }
        if product_ids:
            params["id"] = _in_filter(product_ids)
        rows = self._request("GET", "/medications", params=params)
        return rows or []

    def fetch_branch_inventory(
        self,
        branch_id: str,
        *,
        product_ids: list[str] | None = None,
    ) -> list[dict]:
        """Per-branch stock rows for a non-main branch."""
        params = {
            "select": "medication_id,current_stock,reorder_level",
            "branch_id": f"eq.{branch_id}",
        }
        if product_ids:
            params["medication_id"] = _in_filter(product_ids)
        rows = self._request("GET", "/branch_inventory", params=params)
        return rows or []

    # ------------------------------------------------------------------
    # Letterhead
    # ------------------------------------------------------------------

    def fetch_pharmacy(self, pharmacy_id: str) -> dict | None:
        rows = self._request(
            "GET",
            "/pharmacies",
            params={"select": "name,address,phone,logo_url", "id": f"eq.{pharmacy_id}", "limit": "1"},
        )
        return rows[0] if rows else None

    def fetch_branch(self, branch_id: str) -> dict | None:
        rows = self._request(
            "GET",
            "/branches",
            params={"select": "name,address,phone,logo_url", "id": f"eq.{branch_id}", "limit": "1"},
        )
        return rows[0] if rows else None

    # ------------------------------------------------------------------
    # Sales
    # ------------------------------------------------------------------

    def commit_sale(self, request: dict, idempotency_key: str) -> dict:
        """
        Commit a sale through the backend RPC.

        The backend re-validates stock and may still reject; nothing is
        persisted on rejection. The idempotency key makes a repeated call
        with the same payload return the original receipt.
        """
        body = dict(request)
        body["idempotency_key"] = idempotency_key
        result = self._request("POST", f"/rpc/{RPC_COMPLETE_SALE}", json={"p_sale": body})
        if isinstance(result, list):
            result = result[0] if result else None
        if isinstance(result, str):
            result = {"receipt_id": result}
        if not isinstance(result, dict):
            raise BackendRejected(REJECTED_MESSAGE, 502, {"reason": "empty sale response"})
        return result

    # ------------------------------------------------------------------
    # Pending (credit) transactions
    # ------------------------------------------------------------------

    def create_pending_transaction(self, row: dict) -> dict:
        rows = self._request(
            "POST",
            "/pending_transactions",
            json=row,
            prefer="return=representation",
        )
        if not rows:
            raise BackendRejected(REJECTED_MESSAGE, 502, {"reason": "empty insert response"})
        return rows[0] if isinstance(rows, list) else rows

    def find_pending_transaction(
        self,
        pharmacy_id: str,
        term: str,
        *,
        branch_id: str | None = None,
    ) -> dict | None:
        params = {
            "select": "*",
            "pharmacy_id": f"eq.{pharmacy_id}",
            "status": "eq.pending",
            "or": f"(short_code.ilike.*{term}*,barcode.ilike.*{term}*)",
            "order": "created_at.desc",
            "limit": "1",
        }
        if branch_id:
            params["branch_id"] = f"eq.{branch_id}"
        rows = self._request("GET", "/pending_transactions", params=params)
        return rows[0] if rows else None

    def get_pending_transaction(
        self,
        pharmacy_id: str,
        transaction_id: str,
        *,
        branch_id: str | None = None,
    ) -> dict | None:
        """The row only while it is still pending."""
        params = {
            "select": "*",
            "id": f"eq.{transaction_id}",
            "pharmacy_id": f"eq.{pharmacy_id}",
            "status": "eq.pending",
            "limit": "1",
        }
        if branch_id:
            params["branch_id"] = f"eq.{branch_id}"
        rows = self._request("GET", "/pending_transactions", params=params)
        return rows[0] if rows else None

    def update_pending_transaction(self, transaction_id: str, changes: dict) -> dict | None:
        rows = self._request(
            "PATCH",
            "/pending_transactions",
            params={"id": f"eq.{transaction_id}", "status": "eq.pending"},
            json=changes,
            prefer="return=representation",
        )
        return rows[0] if rows else None

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        """True when the REST endpoint answers at all."""
        try:
            self._http.get("/", timeout=3.0)
        except httpx.HTTPError:
            return False
        return True
