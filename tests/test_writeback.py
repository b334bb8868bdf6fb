"""Tests for pushing, transferring and replicating imported rows."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import date
from decimal import Decimal

import httpx
import pytest
import respx
from pydantic import ValidationError
from sqlalchemy import Engine
from sqlalchemy.exc import OperationalError

from recon import mappings, store
from recon.errors import DuplicatePushError, NotFoundError, WriteBackError
from recon.mappings import get_transaction_mapping
from recon.writeback import (
    PushRequest,
    ReplicateRequest,
    TransferRequest,
    push_transaction,
    push_transfer,
    replicate_transaction,
    suggest_mapping,
)
from tests.utils.db_helper import (
    BASE_URL,
    seed_entity,
    seed_installation,
    seed_linked_batch,
    txn,
)

OTHER_URL = "https://other-ledger.test"


def _push_request(**overrides: object) -> PushRequest:
    data: dict[str, object] = {
        "type": "expense",
        "date": "2024-03-07",
        "amount": "12.50",
        "category_id": 9,
        "category_name": "Meals",
        "payment_method": "card",
        "contact_name": "Blue Bottle",
    }
    data.update(overrides)
    return PushRequest.model_validate(data)


@pytest.fixture
def batch(db_engine: Engine) -> Engine:
    with db_engine.begin() as conn:
        seed_linked_batch(
            conn,
            [
                txn("2024-03-07", "-12.50", "SQ *BLUE BOTTLE COFFEE"),
                txn("2024-03-08", "-200.00", "TRANSFER TO SAVINGS"),
            ],
        )
    return db_engine


# --- Push -----------------------------------------------------------------------


@respx.mock
def test_push_creates_remote_row_and_records_match(batch: Engine) -> None:
    route = respx.post(f"{BASE_URL}/api/transactions").mock(
        return_value=httpx.Response(201, json={"data": {"id": 555}})
    )

    with batch.begin() as conn:
        result = push_transaction(conn, 1, 1, 1, _push_request())
        stored = store.get_transaction(conn, 1)
        mapping = get_transaction_mapping(conn, 1, "BLUE BOTTLE COFFEE")

    assert result == {
        "remote_id": 555,
        "number": "IMP-TRA-1",
        "message": "Transaction created in remote ledger",
    }
    payload = json.loads(route.calls.last.request.content)
    assert payload["number"] == "IMP-TRA-1"
    assert payload["account_id"] == 7
    assert payload["paid_at"] == "2024-03-07 00:00:00"
    assert payload["amount"] == 12.5
    assert payload["currency_code"] == "USD"
    assert payload["contact_name"] == "Blue Bottle"
    assert "contact_id" not in payload

    assert stored is not None
    assert stored.matched_remote_id == 555
    assert stored.matched_remote_number == "IMP-TRA-1"
    assert stored.matched_remote_amount == Decimal("-12.50")
    assert stored.match_confidence == "high"
    assert stored.pushed_number == "IMP-TRA-1"
    assert stored.status == "processed"

    assert mapping is not None
    assert mapping["category_id"] == 9
    assert mapping["transaction_type"] == "expense"


@respx.mock
def test_second_push_is_refused_without_remote_call(batch: Engine) -> None:
    route = respx.post(f"{BASE_URL}/api/transactions").mock(
        return_value=httpx.Response(201, json={"data": {"id": 555}})
    )

    with batch.begin() as conn:
        push_transaction(conn, 1, 1, 1, _push_request())
        with pytest.raises(DuplicatePushError, match="IMP-TRA-1"):
            push_transaction(conn, 1, 1, 1, _push_request())

    assert route.call_count == 1


@respx.mock
def test_remote_rejection_is_reported_and_nothing_stored(batch: Engine) -> None:
    respx.post(f"{BASE_URL}/api/transactions").mock(
        return_value=httpx.Response(
            422, json={"message": "The given data was invalid."}
        )
    )

    with batch.begin() as conn:
        with pytest.raises(WriteBackError, match="The given data was invalid"):
            push_transaction(conn, 1, 1, 1, _push_request())
        stored = store.get_transaction(conn, 1)

    assert stored is not None
    assert stored.pushed_number is None
    assert stored.matched_remote_id is None


@pytest.mark.parametrize(
    "overrides",
    [
        {"amount": "0"},
        {"category_id": 0},
        {"payment_method": ""},
        {"type": "transfer"},
        {"date": "not-a-date"},
    ],
)
def test_invalid_push_request_is_rejected(overrides: dict[str, object]) -> None:
    with pytest.raises(ValidationError):
        _push_request(**overrides)


def test_push_checks_batch_ownership_and_membership(batch: Engine) -> None:
    with batch.begin() as conn:
        with pytest.raises(NotFoundError):
            push_transaction(conn, 1, 1, 2, _push_request())
        with pytest.raises(NotFoundError, match="Transaction not found"):
            push_transaction(conn, 1, 99, 1, _push_request())


# --- Transfer -------------------------------------------------------------------


@respx.mock
def test_transfer_posts_rates_and_records_transfer(batch: Engine) -> None:
    route = respx.post(f"{BASE_URL}/api/transfers").mock(
        return_value=httpx.Response(201, json={"data": {"id": 88}})
    )
    request = TransferRequest(
        date=date(2024, 3, 8),
        amount=Decimal("200.00"),
        to_account_id=12,
        payment_method="bank_transfer",
        currency_rate=Decimal("1.1"),
    )

    with batch.begin() as conn:
        result = push_transfer(conn, 1, 2, 1, request)
        stored = store.get_transaction(conn, 2)
        mapping = get_transaction_mapping(conn, 1, "TRANSFER TO SAVINGS")

    assert result["number"] == "IMP-TRF-2"
    payload = json.loads(route.calls.last.request.content)
    assert payload["from_account_id"] == 7
    assert payload["to_account_id"] == 12
    assert payload["transferred_at"] == "2024-03-08"
    assert payload["from_account_rate"] == 1.0
    assert payload["to_account_rate"] == 1.1

    assert stored is not None
    assert stored.matched_remote_amount == Decimal("-200.00")
    assert stored.matched_remote_contact == "Transfer"
    assert stored.matched_remote_category == "Transfer"
    assert stored.pushed_number == "IMP-TRF-2"

    assert mapping is not None
    assert mapping["transaction_type"] == "transfer"
    assert mapping["transfer_to_account_id"] == 12


@respx.mock
def test_transfer_without_rate_sends_no_rates(batch: Engine) -> None:
    route = respx.post(f"{BASE_URL}/api/transfers").mock(
        return_value=httpx.Response(201, json={"data": {"id": 89}})
    )
    request = TransferRequest(
        date=date(2024, 3, 8),
        amount=Decimal("200.00"),
        to_account_id=12,
        from_account_id=30,
        payment_method="bank_transfer",
    )

    with batch.begin() as conn:
        push_transfer(conn, 1, 2, 1, request)

    payload = json.loads(route.calls.last.request.content)
    assert payload["from_account_id"] == 30
    assert "from_account_rate" not in payload
    assert "to_account_rate" not in payload


# --- Replicate ------------------------------------------------------------------


@pytest.fixture
def two_entities(batch: Engine) -> Engine:
    with batch.begin() as conn:
        seed_entity(conn, entity_id=2)
        seed_installation(
            conn, installation_id=2, entity_id=2, base_url=OTHER_URL, name="Sister Co"
        )
        seed_installation(
            conn, installation_id=3, user_id=2, entity_id=2, base_url=OTHER_URL,
            is_active=False, name="Not Yours",
        )
    return batch


def _replicate_request(**overrides: object) -> ReplicateRequest:
    data: dict[str, object] = {
        "installation_id": 2,
        "account_id": 40,
        "type": "expense",
        "date": "2024-03-07",
        "amount": "12.50",
        "category_id": 5,
        "payment_method": "card",
    }
    data.update(overrides)
    return ReplicateRequest.model_validate(data)


@respx.mock
def test_replicate_converts_amount_and_keeps_match_fields(two_entities: Engine) -> None:
    route = respx.post(f"{OTHER_URL}/api/transactions").mock(
        return_value=httpx.Response(201, json={"data": {"id": 901}})
    )
    request = _replicate_request(
        to_amount="11.25", currency_rate="0.9", currency_code="EUR"
    )

    with two_entities.begin() as conn:
        result = replicate_transaction(conn, 1, 1, request)
        stored = store.get_transaction(conn, 1)
        with pytest.raises(DuplicatePushError):
            replicate_transaction(conn, 1, 1, request)

    assert result == {
        "remote_id": 901,
        "number": "IMP-TRA-1",
        "message": "Transaction replicated to Sister Co",
    }
    assert route.call_count == 1
    payload = json.loads(route.calls.last.request.content)
    assert payload["account_id"] == 40
    assert payload["amount"] == 11.25
    assert payload["currency_rate"] == 0.9
    assert payload["currency_code"] == "EUR"
    assert payload["description"] == "SQ *BLUE BOTTLE COFFEE"

    assert stored is not None
    assert stored.replicated_remote_id == 901
    assert stored.replicated_number == "IMP-TRA-1"
    assert stored.replicated_to_entity_id == 2
    assert stored.matched_remote_id is None
    assert stored.pushed_number is None


@respx.mock
def test_replicate_without_conversion_uses_source_currency(two_entities: Engine) -> None:
    route = respx.post(f"{OTHER_URL}/api/transactions").mock(
        return_value=httpx.Response(201, json={"data": {"id": 902}})
    )

    with two_entities.begin() as conn:
        replicate_transaction(conn, 1, 1, _replicate_request(to_amount="11.25"))

    payload = json.loads(route.calls.last.request.content)
    assert payload["amount"] == 12.5
    assert payload["currency_rate"] == 1.0
    assert payload["currency_code"] == "USD"


def test_replicate_to_foreign_installation_is_not_found(two_entities: Engine) -> None:
    with two_entities.begin() as conn:
        with pytest.raises(NotFoundError, match="Installation not found"):
            replicate_transaction(conn, 1, 1, _replicate_request(installation_id=3))
        with pytest.raises(NotFoundError, match="Transaction not found"):
            replicate_transaction(conn, 1, 2, _replicate_request())


# --- Suggestions ----------------------------------------------------------------


@respx.mock
def test_suggest_mapping_returns_earlier_classification(batch: Engine) -> None:
    respx.post(f"{BASE_URL}/api/transactions").mock(
        return_value=httpx.Response(201, json={"data": {"id": 555}})
    )

    with batch.begin() as conn:
        push_transaction(conn, 1, 1, 1, _push_request())
        suggestion = suggest_mapping(conn, 1, 1, "BLUE BOTTLE COFFEE #42")
        nothing = suggest_mapping(conn, 1, 1, "Unrelated vendor")
        with pytest.raises(NotFoundError):
            suggest_mapping(conn, 1, 2, "BLUE BOTTLE")

    assert suggestion is not None
    assert suggestion["category_name"] == "Meals"
    assert suggestion["payment_method"] == "card"
    assert nothing is None


# --- Mapping cache failures -----------------------------------------------------

CACHE_FAILURES = [
    pytest.param(KeyError("strip_prefixes"), id="bad-pattern-rules"),
    pytest.param(
        OperationalError(
            "INSERT INTO transaction_mappings", {}, Exception("database is locked")
        ),
        id="database-error",
    ),
]


def _failing(error: Exception) -> Callable[..., None]:
    def save(*_args: object, **_kwargs: object) -> None:
        raise error

    return save


@pytest.mark.parametrize("error", CACHE_FAILURES)
@respx.mock
def test_push_survives_mapping_cache_failure(
    batch: Engine,
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
    error: Exception,
) -> None:
    respx.post(f"{BASE_URL}/api/transactions").mock(
        return_value=httpx.Response(201, json={"data": {"id": 555}})
    )
    monkeypatch.setattr(mappings, "save_transaction_mapping", _failing(error))

    with caplog.at_level(logging.WARNING, logger="recon.writeback"):
        with batch.begin() as conn:
            result = push_transaction(conn, 1, 1, 1, _push_request())

    with batch.connect() as conn:
        stored = store.get_transaction(conn, 1)

    assert result["remote_id"] == 555
    assert stored is not None
    assert stored.pushed_number == "IMP-TRA-1"
    assert stored.matched_remote_id == 555
    assert "Failed to save mapping" in caplog.text


@pytest.mark.parametrize("error", CACHE_FAILURES)
@respx.mock
def test_transfer_survives_mapping_cache_failure(
    batch: Engine,
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
    error: Exception,
) -> None:
    respx.post(f"{BASE_URL}/api/transfers").mock(
        return_value=httpx.Response(201, json={"data": {"id": 88}})
    )
    monkeypatch.setattr(mappings, "save_transaction_mapping", _failing(error))
    request = TransferRequest(
        date=date(2024, 3, 8),
        amount=Decimal("200.00"),
        to_account_id=12,
        payment_method="bank_transfer",
    )

    with caplog.at_level(logging.WARNING, logger="recon.writeback"):
        with batch.begin() as conn:
            result = push_transfer(conn, 1, 2, 1, request)

    with batch.connect() as conn:
        stored = store.get_transaction(conn, 2)

    assert result["remote_id"] == 88
    assert stored is not None
    assert stored.pushed_number == "IMP-TRF-2"
    assert "Failed to save mapping" in caplog.text


@pytest.mark.parametrize("error", CACHE_FAILURES)
@respx.mock
def test_replicate_survives_mapping_cache_failure(
    two_entities: Engine,
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
    error: Exception,
) -> None:
    respx.post(f"{OTHER_URL}/api/transactions").mock(
        return_value=httpx.Response(201, json={"data": {"id": 901}})
    )
    monkeypatch.setattr(mappings, "save_replication_mapping", _failing(error))

    with caplog.at_level(logging.WARNING, logger="recon.writeback"):
        with two_entities.begin() as conn:
            result = replicate_transaction(conn, 1, 1, _replicate_request())

    with two_entities.connect() as conn:
        stored = store.get_transaction(conn, 1)

    assert result["remote_id"] == 901
    assert stored is not None
    assert stored.replicated_remote_id == 901
    assert "Failed to save mapping" in caplog.text
