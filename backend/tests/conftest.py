"""Pytest configuration and fixtures."""

import pytest
from decimal import Decimal
from typing import Generator

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.db.base import Base
from app.db.session import enable_sqlite_savepoints, get_db
from app.main import app
# Import all models to ensure they're registered with Base.metadata
from app.models import *
from app.models.product import Product
from app.models.recipe import IngredientRequirement, Recipe
from app.models.stock import InventoryItem
from app.models.store import Store

# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite:///:memory:"


@pytest.fixture(scope="function")
def db_engine():
    """Create a test database engine."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_savepoints(engine)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def session_factory(db_engine):
    """Session factory bound to the test engine (for workers that open their own sessions)."""
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture(scope="function")
def db_session(session_factory) -> Generator[Session, None, None]:
    """Create a test database session."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope="function")
def client(db_session: Session) -> Generator[TestClient, None, None]:
    """Create a test client with database override.

    The client is not entered as a context manager, so the lifespan (real
    database, background workers) does not run.
    """
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    # Disable rate limiters during tests to avoid flaky failures
    from app.core.rate_limit import limiter as global_limiter
    global_limiter.enabled = False
    # Don't raise server exceptions so we can test error status codes
    test_client = TestClient(app, raise_server_exceptions=False)
    yield test_client
    global_limiter.enabled = True
    app.dependency_overrides.clear()
    app.state.retry_queue = None
    app.state.movement_recorder = None


def _add_recipe(db: Session, name: str, requirements, product_name: str = None) -> dict:
    recipe = Recipe(name=name)
    db.add(recipe)
    db.flush()
    for ingredient_name, qty, unit in requirements:
        db.add(IngredientRequirement(
            recipe_id=recipe.id,
            ingredient_name=ingredient_name,
            quantity=Decimal(str(qty)),
            unit=unit,
        ))
    product = Product(name=product_name or name, recipe_id=recipe.id, active=True)
    db.add(product)
    db.flush()
    return {"recipe": recipe, "product": product}


@pytest.fixture
def stock_setup(db_session: Session) -> dict:
    """A store with inventory and three recipes, each sold as one product.

    - Whipped Topping: 1 serving "Whipped Cream"
    - Classic Croffle: croissant, whipped cream, wax paper, chopstick
    - Oreo Blended: "16oz Plastic Cups" (inventory: "Plastic Cup 16oz"),
      lid, straw, "Oreo Crushed"
    """
    store = Store(name="Downtown", code="DT", active=True)
    db_session.add(store)
    db_session.flush()

    items = {}
    for name, unit, qty in [
        ("Whipped Cream", "serving", 50),
        ("Regular Croissant", "pieces", 100),
        ("Wax Paper", "pieces", 500),
        ("Chopstick", "pieces", 500),
        ("Plastic Cup 16oz", "pieces", 200),
        ("Plastic Lid", "pieces", 200),
        ("Straw", "pieces", 300),
        ("Oreo Crushed", "serving", 30),
        ("Oreo Cookies", "pieces", 30),
    ]:
        item = InventoryItem(store_id=store.id, name=name, unit=unit, quantity=Decimal(qty))
        db_session.add(item)
        items[name] = item
    db_session.flush()

    topping = _add_recipe(db_session, "Whipped Topping", [("Whipped Cream", 1, "serving")])
    croffle = _add_recipe(db_session, "Classic Croffle", [
        ("Regular Croissant", 1, "pieces"),
        ("Whipped Cream", 1, "serving"),
        ("Wax Paper", 1, "pieces"),
        ("Chopstick", 1, "pieces"),
    ])
    blended = _add_recipe(db_session, "Oreo Blended", [
        ("16oz Plastic Cups", 1, "pieces"),
        ("Plastic Lid", 1, "pieces"),
        ("Straw", 1, "pieces"),
        ("Oreo Crushed", 1, "serving"),
    ])
    db_session.commit()

    return {
        "db": db_session,
        "store": store,
        "items": items,
        "topping": topping["product"],
        "croffle": croffle["product"],
        "blended": blended["product"],
        "recipes": {
            "topping": topping["recipe"],
            "croffle": croffle["recipe"],
            "blended": blended["recipe"],
        },
    }


@pytest.fixture
def add_recipe(db_session: Session):
    """Factory fixture: add a recipe with requirements and a product selling it."""
    def _factory(name, requirements, product_name=None):
        created = _add_recipe(db_session, name, requirements, product_name)
        db_session.commit()
        return created
    return _factory


@pytest.fixture
def stock_level(db_session: Session):
    """Current quantity of an inventory item, re-read from the database."""
    def _read(item: InventoryItem) -> Decimal:
        db_session.expire_all()
        return Decimal(str(db_session.get(InventoryItem, item.id).quantity))
    return _read
