import pytest
from fastapi.testclient import TestClient

from paas_billing.core.auth import StaticAuthenticator, TokenAuthorizer
from paas_billing.core.config import Settings, split_csv
from paas_billing.core.database import build_engine, create_all_tables
from paas_billing.core.metrics import METRICS
from paas_billing.features.context import build_context
from paas_billing.features.pricing.config_loader import load_config_document
from paas_billing.main import create_app
from paas_billing.tests.mocks import ADMIN_TOKEN, BILLING_TOKEN, ORG_GUID, OUTSIDER_TOKEN, pricing_document


@pytest.fixture(autouse=True)
def reset_metrics():
    METRICS.reset()
    yield
    METRICS.reset()


@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        _env_file=None,
        DATABASE_URL=f"sqlite:///{tmp_path / 'billing.db'}",
        BILLING_CONFIG_PATH=str(tmp_path / "config.json"),
    )


@pytest.fixture
def engine(test_settings):
    """A fresh SQLite database per test."""
    engine = build_engine(test_settings.DATABASE_URL)
    create_all_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def authenticator(test_settings):
    admin_scopes = split_csv(test_settings.AUTH_ADMIN_SCOPES)
    return StaticAuthenticator({
        ADMIN_TOKEN: TokenAuthorizer(["cloud_controller.admin"], [], admin_scopes),
        BILLING_TOKEN: TokenAuthorizer(["openid"], [ORG_GUID], admin_scopes),
        OUTSIDER_TOKEN: TokenAuthorizer(["openid"], [], admin_scopes),
    })


@pytest.fixture
def context(engine, test_settings, authenticator):
    return build_context(engine, test_settings, authenticator=authenticator)


@pytest.fixture
def configured(context):
    """Context with the default pricing document installed."""
    context.refresher.refresh(load_config_document(pricing_document()))
    return context


@pytest.fixture
def client(configured, test_settings):
    """HTTP client over an app bound to ``configured`` (no lifespan)."""
    return TestClient(create_app(configured, settings_obj=test_settings))
