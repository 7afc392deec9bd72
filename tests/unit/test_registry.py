from __future__ import annotations

from collections.abc import Iterator

import pytest

from sqla_repository import ConfigurationError, Registry, Repository
from sqla_repository.registry import resolve_target

from ..models import OrderRepository, UserRepository


@pytest.fixture
def isolated_registry() -> Iterator[Registry]:
    saved = Registry._Registry__instance  # type: ignore[attr-defined]
    Registry.reset()
    yield Registry()
    Registry._Registry__instance = saved  # type: ignore[attr-defined]


class TestRegistry:
    def test_singleton(self) -> None:
        assert Registry() is Registry()

    def test_repositories_register_on_definition(self) -> None:
        assert Registry()["UserRepository"] is UserRepository
        assert "OrderRepository" in Registry()

    def test_unknown_name(self) -> None:
        assert Registry().get("MissingRepository") is None
        with pytest.raises(ConfigurationError, match="MissingRepository"):
            Registry()["MissingRepository"]

    def test_repositories_is_a_copy(self) -> None:
        snapshot = Registry().repositories
        assert snapshot["UserRepository"] is UserRepository
        snapshot.pop("UserRepository")  # type: ignore[attr-defined]
        assert "UserRepository" in Registry()

    def test_reset_drops_registrations(self, isolated_registry: Registry) -> None:
        assert "UserRepository" not in isolated_registry

        class InvoiceRepository(Repository):
            fillable = ("number",)

        assert isolated_registry["InvoiceRepository"] is InvoiceRepository
        assert InvoiceRepository.__tablename__ == "invoices"

    def test_abstract_repositories_are_not_registered(self, isolated_registry: Registry) -> None:
        class BaseAuditRepository(Repository):
            __abstract__ = True
            timestamps = True

        class AuditEntryRepository(BaseAuditRepository):
            fillable = ("message",)

        assert "BaseAuditRepository" not in isolated_registry
        assert AuditEntryRepository.__tablename__ == "audit_entries"
        assert AuditEntryRepository.timestamps is True


class TestResolveTarget:
    def test_class(self) -> None:
        assert resolve_target(OrderRepository) is OrderRepository

    def test_name(self) -> None:
        assert resolve_target("OrderRepository") is OrderRepository

    def test_not_a_repository(self) -> None:
        with pytest.raises(ConfigurationError, match="Repository subclass"):
            resolve_target(dict)  # type: ignore[arg-type]

    def test_unknown_name(self) -> None:
        with pytest.raises(ConfigurationError, match="Unknown repository"):
            resolve_target("NopeRepository")
