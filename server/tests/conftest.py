"""
Shared test configuration and fixtures for the subsidy signing test suite.
"""

from typing import Generator

import pytest
from fastapi.testclient import TestClient

from subsidy_signing.api.dependencies.providers import (
    clear_credential_cache,
    get_envelope_provider,
    get_optional_drive,
    get_pdf_filler,
)
from subsidy_signing.api.routes.webhooks import get_provider_builder
from subsidy_signing.core.config import Settings, clear_settings_cache
from subsidy_signing.core.tenants import TenantRegistry, get_tenant_registry
from subsidy_signing.integrations.esignature import ESignatureType
from tests.fakes import TEST_FORM_TEMPLATE, FakeProvider, InMemoryDrive, StubFiller, write_form_pdf


@pytest.fixture(autouse=True)
def test_environment(monkeypatch):
    """Isolate every test from the developer's environment and cached settings."""
    monkeypatch.setenv("ENVIRONMENT", "test")
    monkeypatch.setenv("ESIGN_PROVIDER", "signwell")
    monkeypatch.setenv("SIGNWELL_API_KEY", "test-api-key")
    monkeypatch.setenv("PDF_CHECK_ON_STARTUP", "false")
    for name in ("GRAPH_TENANT_ID", "GRAPH_CLIENT_ID", "GRAPH_CLIENT_SECRET", "GRAPH_SITE_ID", "GRAPH_USER_ID", "TENANTS_FILE"):
        monkeypatch.delenv(name, raising=False)
    clear_settings_cache()
    get_tenant_registry.cache_clear()
    get_pdf_filler.cache_clear()
    clear_credential_cache()
    yield
    clear_settings_cache()
    get_tenant_registry.cache_clear()
    get_pdf_filler.cache_clear()
    clear_credential_cache()


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None, graph_root_folder="SLIM Subsidies")


@pytest.fixture
def tenants(settings) -> TenantRegistry:
    return TenantRegistry.from_settings(settings)


@pytest.fixture
def drive(tenants) -> InMemoryDrive:
    return InMemoryDrive(tenants=tenants)


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def stub_filler() -> StubFiller:
    return StubFiller()


@pytest.fixture
def form_template_dir(tmp_path):
    write_form_pdf(tmp_path / TEST_FORM_TEMPLATE.file_name)
    return tmp_path


@pytest.fixture
def de_minimis_form_data():
    return {
        "selectedOption": 1,
        "generalData": {
            "companyName": "Acme B.V.",
            "kvkNumber": "12345678",
            "street": "Stationsstraat",
            "houseNumber": "12",
            "city": "Utrecht",
            "postalCode": "3511AB",
            "signerName": "Jan Jansen",
            "date": "17-05-24",
        },
    }


@pytest.fixture
def mkb_form_data():
    return {
        "companyName": "Acme B.V.",
        "financialYear": "2023",
        "employees": 12,
        "annualTurnover": 1500000,
        "balanceTotal": 800000,
        "signerName": "Jan Jansen",
        "signerPosition": "Directeur",
        "dateAndLocation": "17-05-2024 Utrecht",
    }


@pytest.fixture
def machtiging_form_data():
    return {
        "applicantData": {
            "companyName": "Acme B.V.",
            "email": "info@acme.nl",
            "kvkNumber": "12345678",
            "contactPerson": "Jan Jansen",
            "position": "Directeur",
            "phoneNumber": "0301234567",
            "date": "17-05-24",
        },
    }


@pytest.fixture
def test_client(fake_provider, stub_filler, drive) -> Generator[TestClient, None, None]:
    """Test client with provider, filler and drive replaced by in-memory fakes."""
    from subsidy_signing.main import create_application

    app = create_application()

    async def override_provider():
        yield fake_provider

    async def override_drive():
        yield drive

    def override_builder():
        def build(settings, provider_type=None):
            fake_provider.kind = ESignatureType(provider_type or settings.esign_provider)
            fake_provider.provider_type = fake_provider.kind
            return fake_provider
        return build

    app.dependency_overrides[get_envelope_provider] = override_provider
    app.dependency_overrides[get_optional_drive] = override_drive
    app.dependency_overrides[get_pdf_filler] = lambda: stub_filler
    app.dependency_overrides[get_provider_builder] = override_builder

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()
