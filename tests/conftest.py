import os
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine

from subscription_engine import BillingClient, create_billing_client
from subscription_engine.config import get_settings, reset_settings
# Base.metadata only knows the billing tables once subscription_engine.db is imported.
from subscription_engine.db import Base
from subscription_engine.models import BillingInterval, Feature, PlanCreate


@pytest.fixture(scope="session")
def postgres_env():
    """
    Starts PostgreSQL once per session and points the settings at it.
    Database tests are skipped when Docker is not available.
    """
    try:
        from testcontainers.postgres import PostgresContainer
        postgres = PostgresContainer("postgres:15")
        postgres.start()
    except Exception as e:
        pytest.skip(f"PostgreSQL test container unavailable: {e}")

    os.environ["POSTGRES_USER"] = postgres.username
    os.environ["POSTGRES_PASSWORD"] = postgres.password
    os.environ["POSTGRES_DB"] = postgres.dbname
    os.environ["POSTGRES_HOST"] = postgres.get_container_host_ip()
    os.environ["POSTGRES_PORT"] = str(postgres.get_exposed_port(5432))
    reset_settings()
    yield postgres
    postgres.stop()
    reset_settings()


@pytest_asyncio.fixture(scope="function")
async def db_engine(postgres_env):
    """
    Creates every table (with triggers and constraints) before the test and
    drops them afterwards for full isolation.
    """
    engine = create_async_engine(get_settings().postgres.get_pg_dsn())
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def billing_client(db_engine) -> BillingClient:
    """A BillingClient built by the same factory the application uses."""
    client = create_billing_client()
    yield client
    await client.aclose()


@pytest_asyncio.fixture
async def tenant(billing_client):
    return await billing_client.create_tenant("Chez Kigali", email="owner@example.com",
                                              external_customer_id="cus_kigali")


@pytest_asyncio.fixture
async def starter_plan(billing_client):
    return await billing_client.create_plan(PlanCreate(
        name="Starter", price=10000, currency="RWF", interval=BillingInterval.monthly,
        trial_days=14, features=[Feature.qr_code_generation],
    ))


@pytest_asyncio.fixture
async def pro_plan(billing_client):
    return await billing_client.create_plan(PlanCreate(
        name="Professional", price=20000, currency="RWF", interval=BillingInterval.monthly,
        trial_days=14, features=[Feature.qr_code_generation, Feature.advanced_analytics],
    ))
