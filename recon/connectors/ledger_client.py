"""Remote ledger REST client: paged transaction search and write endpoints."""

import json
from types import TracebackType
from typing import Any, Self

import httpx
from pydantic import BaseModel

from recon.config import MatchSettings
from recon.http_guard import create_guarded_client
from recon.models import RemotePage, RemoteTransaction

__all__ = [
    "ApiError",
    "LedgerClient",
    "LedgerCredentials",
    "create_ledger_client",
]


class ApiError(Exception):
    """Non-2xx response or transport failure from the remote ledger."""


class LedgerCredentials(BaseModel):
    base_url: str
    email: str
    password: str
    company_id: int = 1


class LedgerClient:
    """Remote ledger REST client; one synchronous call per method, no retries."""

    def __init__(
        self,
        credentials: LedgerCredentials,
        *,
        timeout: float = 60.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.credentials = credentials
        self.base_url = credentials.base_url.rstrip("/")
        self.client = create_guarded_client(
            timeout=httpx.Timeout(timeout, connect=min(timeout, 10.0)),
            auth=(credentials.email, credentials.password),
            headers={
                "Accept": "application/json",
                "Content-Type": "application/json",
                "User-Agent": "LedgerRecon/1.0",
                "X-Company": str(credentials.company_id),
            },
            transport=transport,
        )

    def _request(
        self, method: str, path: str, **kwargs: Any  # noqa: ANN401
    ) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = self.client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            msg = f"API request failed: {e}"
            raise ApiError(msg) from e

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {"data": data}

        if not response.is_success:
            error_msg = data.get("message") or f"HTTP {response.status_code}"
            if data.get("errors"):
                error_msg += ": " + json.dumps(data["errors"], sort_keys=True)
            msg = f"API error: {error_msg}"
            raise ApiError(msg)
        return data

    def list_transactions(
        self,
        account_id: int,
        date_from: str,
        date_to: str,
        page: int,
        page_size: int,
    ) -> RemotePage:
        """Fetch one page of transactions for an account within a date window.

        The account filter travels inside the search expression, not as a
        separate query parameter. Rows without a paid_at date are skipped.
        """
        search = f"account_id:{account_id} paid_at>={date_from} paid_at<={date_to}"
        data = self._request(
            "GET",
            "/api/transactions",
            params={"limit": page_size, "page": page, "search": search},
        )
        rows = data.get("data") or []
        items = [
            RemoteTransaction.from_api(row)
            for row in rows
            if row.get("paid_at")
        ]
        meta = data.get("meta") or {}
        return RemotePage(
            items=items,
            row_count=len(rows),
            current_page=page,
            total_pages=int(meta.get("last_page") or 1),
            total_count=int(meta.get("total") or len(rows)),
        )

    def _create(self, path: str, payload: dict[str, Any]) -> int:
        data = self._request("POST", path, json=payload)
        remote_id = (data.get("data") or {}).get("id")
        if remote_id is None:
            msg = "API error: response did not include a created id"
            raise ApiError(msg)
        return int(remote_id)

    def create_transaction(self, payload: dict[str, Any]) -> int:
        """Create an income/expense transaction; returns the remote id."""
        return self._create("/api/transactions", payload)

    def create_transfer(self, payload: dict[str, Any]) -> int:
        """Create an account-to-account transfer; returns the remote id."""
        return self._create("/api/transfers", payload)

    def close(self) -> None:
        """Close the HTTP client."""
        self.client.close()

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()


def create_ledger_client(
    installation: dict[str, Any], settings: MatchSettings | None = None
) -> LedgerClient:
    """Create a ledger client from an installation row."""
    settings = settings or MatchSettings()
    credentials = LedgerCredentials(
        base_url=installation["base_url"],
        email=installation["api_email"],
        password=installation["api_password"],
        company_id=installation.get("company_id") or 1,
    )
    return LedgerClient(credentials, timeout=settings.api_timeout)
