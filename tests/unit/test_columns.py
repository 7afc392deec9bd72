from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from sqla_repository import (
    ConfigurationError,
    LoadContext,
    Repository,
    Store,
    TemplateIntrospector,
    computed,
    resolve_columns,
)
from sqla_repository.columns import collect_computed

from ..models import OrderRepository, RoleRepository, UserRepository


class TestResolveColumns:
    def test_star_expands_fillable_and_computed(self, offline_store: Store) -> None:
        context = resolve_columns(UserRepository(offline_store), ["*"])

        assert context.columns == (
            "users.first_name",
            "users.last_name",
            "users.email",
            "users.country_id",
            "users.birthday",
            "users.id",
        )
        assert context.computed == ("full_name",)
        assert context.relations == ()

    def test_star_adds_timestamps_when_enabled(self, offline_store: Store) -> None:
        context = resolve_columns(OrderRepository(offline_store), ["*"])
        assert context.columns == (
            "orders.user_id",
            "orders.status",
            "orders.total",
            "orders.created_at",
            "orders.updated_at",
            "orders.id",
        )

    def test_star_without_fillable_stays_star(self, offline_store: Store) -> None:
        class OpenRoleRepository(Repository):
            __abstract__ = True
            __tablename__ = "roles"

        assert resolve_columns(OpenRoleRepository(offline_store), ["*"]).columns == ("*",)

    def test_relations_move_to_the_eager_map(self, offline_store: Store) -> None:
        context = resolve_columns(
            UserRepository(offline_store),
            ["first_name", "country.name", "orders", "orders.lines.sku", "orders.status"],
        )

        assert context.relations == ("country", "orders")
        assert dict(context.eager) == {"country": ("name",), "orders": ("lines.sku", "status")}
        assert context.columns == ("users.first_name", "users.id", "users.country_id")

    def test_only_relations_select_star(self, offline_store: Store) -> None:
        context = resolve_columns(UserRepository(offline_store), ["roles", "orders"])

        assert context.columns == ("*",)
        assert context.relations == ("roles", "orders")
        assert context.eager_columns("roles") == ("*",)

    def test_computed_pulls_required_columns(self, offline_store: Store) -> None:
        context = resolve_columns(UserRepository(offline_store), ["email_domain"])

        assert context.computed == ("email_domain",)
        assert context.columns == ("users.email", "users.id")

    def test_unknown_relation_path_is_kept_literally(self, offline_store: Store) -> None:
        context = resolve_columns(UserRepository(offline_store), ["first_name", "nope.name"])

        assert context.relations == ()
        assert context.columns == ("users.first_name", "nope.name", "users.id")

    def test_view_columns_replace_star(self, offline_store: Store) -> None:
        users = UserRepository(offline_store)

        assert resolve_columns(users, ["*"], ["email"]).columns == ("users.email", "users.id")
        assert resolve_columns(users, ["first_name"], ["email"]).columns == (
            "users.first_name",
            "users.email",
            "users.id",
        )

    def test_requested_list_is_not_modified(self, offline_store: Store) -> None:
        requested = ["first_name", "country.name"]
        resolve_columns(UserRepository(offline_store), requested)
        assert requested == ["first_name", "country.name"]

    def test_same_relation_from_several_paths_registers_once(self, offline_store: Store) -> None:
        context = resolve_columns(UserRepository(offline_store), ["roles", "roles.name", "roles", "roles.name"])

        assert context.relations == ("roles",)
        assert dict(context.eager) == {"roles": ("name",)}


class TestLoadContext:
    def test_registration_is_idempotent(self) -> None:
        context = LoadContext().with_relation("orders", "status").with_relation("orders", "status")
        context = context.with_relation("orders").with_computed("full_name").with_computed("full_name")

        assert context.relations == ("orders",)
        assert dict(context.eager) == {"orders": ("status",)}
        assert context.computed == ("full_name",)

    def test_immutable(self) -> None:
        context = LoadContext()
        extended = context.with_relation("country")

        assert context.relations == ()
        assert extended.relations == ("country",)
        with pytest.raises(AttributeError):
            context.relations = ("x",)  # type: ignore[misc]

    def test_eager_columns_default_to_star(self) -> None:
        assert LoadContext().eager_columns("country") == ("*",)


class TestComputed:
    def test_collected_on_class_creation(self, offline_store: Store) -> None:
        attributes = UserRepository(offline_store).computed_attributes
        assert set(attributes) == {"full_name", "email_domain"}
        assert attributes["full_name"].requires == ("first_name", "last_name")

    def test_function_receives_the_row(self) -> None:
        attribute = UserRepository._computed["full_name"]
        assert attribute.function(None, {"first_name": "Ada", "last_name": "Lovelace"}) == "Ada Lovelace"

    def test_override_without_decorator_removes_it(self) -> None:
        class PlainUserRepository(UserRepository):
            __abstract__ = True

            def full_name(self, row: dict[str, Any]) -> str:  # type: ignore[override]
                return "plain"

        assert set(collect_computed(PlainUserRepository)) == {"email_domain"}

    def test_decorator_marks_the_function(self) -> None:
        @computed("a", "b")
        def joined(self: Any, row: dict[str, Any]) -> str:
            return row["a"] + row["b"]

        assert joined.__computed_requires__ == ("a", "b")  # type: ignore[attr-defined]


class TestViewIntrospection:
    def test_template_introspector(self, tmp_path: Path) -> None:
        (tmp_path / "users").mkdir()
        (tmp_path / "users" / "index.html").write_text(
            "<td>{{ user.First_Name }}</td><td>{{ user.country.name }}</td>", encoding="utf-8"
        )
        introspector = TemplateIntrospector(tmp_path)

        names = introspector.referenced_names("users/index", ["first_name", "email", "country", "first_name"])
        assert names == ["first_name", "country"]

    def test_fill_from_view_requires_an_introspector(self, offline_store: Store) -> None:
        with pytest.raises(ConfigurationError, match="view introspector"):
            RoleRepository(offline_store).fill_from_view("roles/index")
