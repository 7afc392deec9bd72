from __future__ import annotations

from typing import Any

import pytest

from sqla_repository import Store

from ..models import UserRepository


def _names(rows: Any) -> list[str]:
    return sorted(row["first_name"] for row in rows)


@pytest.mark.parametrize("term", ["ali", "ALI", "Ali"])
def test_term_is_case_insensitive(store: Store, seed_data: dict[str, Any], term: str) -> None:
    result = UserRepository(store).search(term, ["first_name", "last_name", "email"], ["first_name"])

    assert _names(result) == ["Alice"]
    assert result.filtered == 1


def test_belongs_to_field(store: Store, seed_data: dict[str, Any]) -> None:
    result = UserRepository(store).search("japan", ["first_name", "country.name"], ["first_name", "country.name"])

    assert _names(result) == ["Bob"]
    assert result[0]["country"]["name"] == "Japan"
    assert result.filtered == 1


def test_has_many_field_counts_entities(store: Store, seed_data: dict[str, Any]) -> None:
    result = UserRepository(store).search("paid", ["orders.status"], ["first_name"])

    assert _names(result) == ["Alice", "Carol"]
    assert result.filtered == 2


def test_empty_term_is_an_unfiltered_read(store: Store, seed_data: dict[str, Any]) -> None:
    users = UserRepository(store).order_by("first_name")
    result = users.search("", ["first_name"], ["first_name"])

    assert result.filtered is None
    assert result.rows == users.all(["first_name"])
    assert users.search(None, ["first_name"], ["first_name"]).rows == result.rows


def test_empty_term_with_conditions(store: Store, seed_data: dict[str, Any]) -> None:
    result = UserRepository(store).search("", ["first_name"], ["first_name"], {"orders.status": "paid"})

    assert _names(result) == ["Alice", "Carol"]
    assert result.filtered == 2


def test_term_and_conditions(store: Store, seed_data: dict[str, Any]) -> None:
    france = seed_data["countries"]["france"]
    result = UserRepository(store).search("a", ["first_name"], ["first_name"], {"country_id": france})

    assert _names(result) == ["Alice", "Carol"]
    assert result.filtered == 2


def test_filtered_ignores_the_window(store: Store, seed_data: dict[str, Any]) -> None:
    result = UserRepository(store).order_by("first_name").limit(0, 1).search("a", ["first_name"], ["first_name"])

    assert [row["first_name"] for row in result] == ["Alice"]
    assert len(result) == 1
    assert result.filtered == 3


def test_wildcards_are_escaped(store: Store, seed_data: dict[str, Any]) -> None:
    result = UserRepository(store).search("%", ["first_name", "email"])

    assert result.rows == []
    assert result.filtered == 0


def test_non_column_fields_are_skipped(store: Store, seed_data: dict[str, Any]) -> None:
    result = UserRepository(store).search("Alice Martin", ["full_name"])

    assert result.rows == []
    assert result.filtered == 0


def test_non_string_column(store: Store, seed_data: dict[str, Any]) -> None:
    result = UserRepository(store).search("50", ["orders.total"], ["first_name"])

    assert _names(result) == ["Bob"]


def test_restricted_relation_field(store: Store, seed_data: dict[str, Any]) -> None:
    result = UserRepository(store).search("pending", ["paid_orders.status"], ["first_name"])

    assert result.rows == []
    assert result.filtered == 0


def test_field_through_the_base_table(store: Store, seed_data: dict[str, Any]) -> None:
    result = UserRepository(store).search("sato", ["country.users.last_name"], ["first_name"])

    assert _names(result) == ["Bob"]
    assert result.filtered == 1
