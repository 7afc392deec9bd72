from __future__ import annotations

import datetime as dt
import os
from collections.abc import Iterator
from typing import Any

import pytest
import sqlalchemy as sa

from sqla_repository import Store, cache_clear

from .models import Base, Country, Order, OrderLine, Role, User, role_user


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--db",
        default="sqlite",
        choices=["postgres", "mysql", "mariadb", "sqlite"],
        help="Database backend to test against",
    )


@pytest.fixture(scope="session")
def db_backend(request: pytest.FixtureRequest) -> str:
    value: str = request.config.getoption("--db")

    return value


@pytest.fixture(scope="session")
def db_config(db_backend: str, tmp_path_factory: pytest.TempPathFactory) -> Iterator[str]:
    match db_backend:
        case "postgres":
            from testcontainers.postgres import PostgresContainer

            pg = PostgresContainer(image="postgres:latest")
            if os.name == "nt":
                pg.get_container_host_ip = lambda: "127.0.0.1"
            with pg:
                host = pg.get_container_host_ip()
                dsn = (
                    f"postgresql+psycopg://{pg.username}:{pg.password}"
                    f"@{host}:{pg.get_exposed_port(pg.port)}/{pg.dbname}"
                )
                yield dsn

        case "mysql" | "mariadb":
            from testcontainers.mysql import MySqlContainer

            image = "mysql:8.0" if db_backend == "mysql" else "mariadb:latest"
            my = MySqlContainer(image=image)
            if os.name == "nt":
                my.get_container_host_ip = lambda: "127.0.0.1"
            with my:
                host = my.get_container_host_ip()
                port = my.get_exposed_port(my.port)
                dsn = (
                    f"mysql+pymysql://{my.username}:{my.password}"
                    f"@{host}:{port}/{my.dbname}"
                )
                yield dsn

        case "sqlite":
            tmp = tmp_path_factory.mktemp("db")
            yield f"sqlite:///{tmp}/test.db"


@pytest.fixture(scope="session")
def engine(db_config: str) -> Iterator[sa.Engine]:
    engine = sa.create_engine(db_config, echo=False)
    yield engine
    engine.dispose()


@pytest.fixture(scope="session")
def _create_tables(engine: sa.Engine) -> Iterator[None]:
    Base.metadata.create_all(engine)
    yield
    Base.metadata.drop_all(engine)


@pytest.fixture
def connection(engine: sa.Engine, _create_tables: None) -> Iterator[sa.Connection]:
    with engine.connect() as conn:
        trans = conn.begin()
        yield conn
        trans.rollback()


@pytest.fixture
def store(connection: sa.Connection) -> Store:
    return Store(connection, metadata=Base.metadata)


@pytest.fixture
def statements(connection: sa.Connection) -> Iterator[list[str]]:
    """SQL statements sent on the test connection, in order."""
    sent: list[str] = []

    def record(conn: Any, cursor: Any, statement: str, *args: Any) -> None:
        sent.append(statement)

    sa.event.listen(connection, "before_cursor_execute", record)
    yield sent
    sa.event.remove(connection, "before_cursor_execute", record)


def _insert(connection: sa.Connection, model: type[Base], **values: Any) -> int:
    key = connection.execute(sa.insert(model.__table__).values(**values)).inserted_primary_key
    assert key is not None

    return int(key[0])


@pytest.fixture
def seed_data(connection: sa.Connection) -> dict[str, Any]:
    """Ids of the seeded rows, by name.

    Rows are inserted without explicit ids so sequences stay consistent on
    every backend; tests refer to rows through the returned ids.
    """
    france = _insert(connection, Country, name="France", code="FR")
    japan = _insert(connection, Country, name="Japan", code="JP")

    alice = _insert(
        connection, User, first_name="Alice", last_name="Martin", email="alice@example.fr",
        country_id=france, birthday=dt.date(1990, 5, 17),
    )
    bob = _insert(connection, User, first_name="Bob", last_name="Sato", email="bob@example.jp", country_id=japan)
    carol = _insert(
        connection, User, first_name="Carol", last_name="Durand", email="carol@example.org", country_id=france
    )
    dave = _insert(connection, User, first_name="Dave", last_name="Nocountry", email="dave@example.com")

    orders = [
        _insert(connection, Order, user_id=alice, status="paid", total=30),
        _insert(connection, Order, user_id=alice, status="paid", total=20),
        _insert(connection, Order, user_id=alice, status="pending", total=5),
        _insert(connection, Order, user_id=bob, status="pending", total=50),
        _insert(connection, Order, user_id=carol, status="paid", total=10),
    ]
    _insert(connection, OrderLine, order_id=orders[0], sku="BOOK", quantity=2)
    _insert(connection, OrderLine, order_id=orders[0], sku="PEN", quantity=10)
    _insert(connection, OrderLine, order_id=orders[3], sku="LAMP", quantity=1)

    admin = _insert(connection, Role, name="admin", level=10)
    editor = _insert(connection, Role, name="editor", level=5)
    viewer = _insert(connection, Role, name="viewer", level=1)

    connection.execute(
        role_user.insert().values([
            {"users_id": alice, "roles_id": admin},
            {"users_id": alice, "roles_id": editor},
            {"users_id": bob, "roles_id": editor},
            {"users_id": bob, "roles_id": viewer},
        ])
    )

    return {
        "countries": {"france": france, "japan": japan},
        "users": {"alice": alice, "bob": bob, "carol": carol, "dave": dave},
        "orders": orders,
        "roles": {"admin": admin, "editor": editor, "viewer": viewer},
    }


@pytest.fixture(autouse=True)
def clear_lru_caches() -> Iterator[None]:
    yield
    cache_clear()


@pytest.fixture(scope="session")
def offline_store() -> Store:
    """A store that never connects: every table comes from the models' metadata."""
    return Store(sa.create_engine("sqlite://"), metadata=Base.metadata)
