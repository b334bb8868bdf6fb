# recon/mappings.py
"""Mapping cache: remembers how a description was last classified on push."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import TYPE_CHECKING, Any, cast

import yaml
from sqlalchemy import text

if TYPE_CHECKING:
    from sqlalchemy.engine import Connection


@lru_cache(maxsize=1)
def _load_pattern_rules() -> dict[str, Any]:
    """Load description normalization rules from YAML file (cached)."""
    rules_path = Path(__file__).parent / "patterns.yaml"
    result = yaml.safe_load(rules_path.read_text(encoding="utf-8"))
    return cast(dict[str, Any], result)


def extract_pattern(description: str) -> str:
    """Normalize a description to the key used by the mapping cache.

    Upper-cases, strips one known processor prefix, then keeps at most
    ``max_words`` leading words without exceeding ``max_length`` characters.

    >>> extract_pattern("paypal *Spotify premium family plan")
    'SPOTIFY PREMIUM FAMILY'
    """
    rules = _load_pattern_rules()
    pattern = description.strip().upper()
    for prefix in rules["strip_prefixes"]:
        if pattern.startswith(prefix):
            pattern = pattern[len(prefix) :]
            break

    significant: list[str] = []
    length = 0
    for word in pattern.split():
        if length + len(word) > rules["max_length"]:
            break
        significant.append(word)
        length += len(word) + 1
        if len(significant) >= rules["max_words"]:
            break
    return " ".join(significant)


def get_transaction_mapping(
    conn: Connection, installation_id: int, pattern: str
) -> dict[str, Any] | None:
    row = conn.execute(
        text("""
            SELECT * FROM transaction_mappings
            WHERE installation_id = :iid AND description_pattern = :pattern
        """),
        {"iid": installation_id, "pattern": pattern},
    ).fetchone()
    return dict(row._mapping) if row else None  # noqa: SLF001


def find_best_transaction_mapping(
    conn: Connection, installation_id: int, description: str
) -> dict[str, Any] | None:
    """Exact pattern first, then the most-used mapping sharing the first word."""
    mapping = get_transaction_mapping(conn, installation_id, extract_pattern(description))
    if mapping:
        return mapping

    words = description.strip().split()
    first_word = words[0].upper() if words else ""
    if len(first_word) < _load_pattern_rules()["min_prefix_length"]:
        return None
    row = conn.execute(
        text("""
            SELECT * FROM transaction_mappings
            WHERE installation_id = :iid AND description_pattern LIKE :prefix
            ORDER BY usage_count DESC, mapping_id
            LIMIT 1
        """),
        {"iid": installation_id, "prefix": f"{first_word}%"},
    ).fetchone()
    return dict(row._mapping) if row else None  # noqa: SLF001


_MAPPING_FIELDS = (
    "transaction_type",
    "contact_id",
    "contact_name",
    "category_id",
    "category_name",
    "payment_method",
    "transfer_to_account_id",
)


def save_transaction_mapping(
    conn: Connection,
    installation_id: int,
    description: str,
    **fields: Any,  # noqa: ANN401
) -> str | None:
    """Upsert the mapping for a description; returns the pattern used.

    Fields passed as None keep their stored value; usage_count is bumped.
    """
    pattern = extract_pattern(description)
    if not pattern:
        return None
    params = {name: fields.get(name) for name in _MAPPING_FIELDS}
    params.update({"iid": installation_id, "pattern": pattern})

    if conn.dialect.name == "postgresql":
        conn.execute(
            text("""
                INSERT INTO transaction_mappings (
                    installation_id, description_pattern, transaction_type,
                    contact_id, contact_name, category_id, category_name,
                    payment_method, transfer_to_account_id, usage_count
                )
                VALUES (
                    :iid, :pattern, :transaction_type, :contact_id, :contact_name,
                    :category_id, :category_name, :payment_method,
                    :transfer_to_account_id, 1
                )
                ON CONFLICT (installation_id, description_pattern) DO UPDATE SET
                    transaction_type = COALESCE(EXCLUDED.transaction_type,
                        transaction_mappings.transaction_type),
                    contact_id = COALESCE(EXCLUDED.contact_id,
                        transaction_mappings.contact_id),
                    contact_name = COALESCE(EXCLUDED.contact_name,
                        transaction_mappings.contact_name),
                    category_id = COALESCE(EXCLUDED.category_id,
                        transaction_mappings.category_id),
                    category_name = COALESCE(EXCLUDED.category_name,
                        transaction_mappings.category_name),
                    payment_method = COALESCE(EXCLUDED.payment_method,
                        transaction_mappings.payment_method),
                    transfer_to_account_id = COALESCE(EXCLUDED.transfer_to_account_id,
                        transaction_mappings.transfer_to_account_id),
                    usage_count = transaction_mappings.usage_count + 1
            """),
            params,
        )
        return pattern

    # SQLite: manual upsert
    existing = get_transaction_mapping(conn, installation_id, pattern)
    if existing:
        conn.execute(
            text("""
                UPDATE transaction_mappings
                SET transaction_type = COALESCE(:transaction_type, transaction_type),
                    contact_id = COALESCE(:contact_id, contact_id),
                    contact_name = COALESCE(:contact_name, contact_name),
                    category_id = COALESCE(:category_id, category_id),
                    category_name = COALESCE(:category_name, category_name),
                    payment_method = COALESCE(:payment_method, payment_method),
                    transfer_to_account_id = COALESCE(
                        :transfer_to_account_id, transfer_to_account_id
                    ),
                    usage_count = usage_count + 1
                WHERE installation_id = :iid AND description_pattern = :pattern
            """),
            params,
        )
    else:
        conn.execute(
            text("""
                INSERT INTO transaction_mappings (
                    installation_id, description_pattern, transaction_type,
                    contact_id, contact_name, category_id, category_name,
                    payment_method, transfer_to_account_id, usage_count
                )
                VALUES (
                    :iid, :pattern, :transaction_type, :contact_id, :contact_name,
                    :category_id, :category_name, :payment_method,
                    :transfer_to_account_id, 1
                )
            """),
            params,
        )
    return pattern


def save_replication_mapping(  # noqa: PLR0913
    conn: Connection,
    source_installation_id: int,
    target_installation_id: int,
    description: str,
    *,
    transaction_type: str | None = None,
    contact_id: int | None = None,
    contact_name: str | None = None,
    category_id: int | None = None,
    category_name: str | None = None,
    account_id: int | None = None,
    payment_method: str | None = None,
) -> str | None:
    """Remember how a description was classified when replicated elsewhere."""
    pattern = extract_pattern(description)
    if not pattern:
        return None
    params = {
        "src": source_installation_id,
        "dst": target_installation_id,
        "pattern": pattern,
        "transaction_type": transaction_type,
        "contact_id": contact_id,
        "contact_name": contact_name,
        "category_id": category_id,
        "category_name": category_name,
        "account_id": account_id,
        "payment_method": payment_method,
    }
    existing = conn.execute(
        text("""
            SELECT mapping_id FROM replication_mappings
            WHERE source_installation_id = :src
              AND target_installation_id = :dst
              AND description_pattern = :pattern
        """),
        params,
    ).fetchone()
    if existing:
        conn.execute(
            text("""
                UPDATE replication_mappings
                SET transaction_type = COALESCE(:transaction_type, transaction_type),
                    target_contact_id = COALESCE(:contact_id, target_contact_id),
                    target_contact_name = COALESCE(:contact_name, target_contact_name),
                    target_category_id = COALESCE(:category_id, target_category_id),
                    target_category_name = COALESCE(
                        :category_name, target_category_name
                    ),
                    target_account_id = COALESCE(:account_id, target_account_id),
                    target_payment_method = COALESCE(
                        :payment_method, target_payment_method
                    ),
                    usage_count = usage_count + 1
                WHERE mapping_id = :mid
            """),
            {**params, "mid": existing[0]},
        )
    else:
        conn.execute(
            text("""
                INSERT INTO replication_mappings (
                    source_installation_id, target_installation_id,
                    description_pattern, transaction_type, target_contact_id,
                    target_contact_name, target_category_id, target_category_name,
                    target_account_id, target_payment_method, usage_count
                )
                VALUES (
                    :src, :dst, :pattern, :transaction_type, :contact_id,
                    :contact_name, :category_id, :category_name, :account_id,
                    :payment_method, 1
                )
            """),
            params,
        )
    return pattern
