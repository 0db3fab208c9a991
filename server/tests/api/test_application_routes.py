"""
Application folder, bank statement, representative and health endpoint tests.
"""

from datetime import datetime, timezone

import pytest

from subsidy_signing.api.dependencies.providers import get_optional_drive

PDF = b"%PDF-1.4 bankafschrift"


@pytest.fixture
def company_info():
    return {
        "applicationId": "APP-1",
        "tenantId": "default",
        "datum": "17-05-2024",
        "bedrijfsnaam": "Acme B.V.",
        "kvkNummer": "12345678",
        "btwId": "NL123456789B01",
        "adres": "Stationsstraat 12",
        "postcode": "3511AB",
        "plaats": "Utrecht",
        "contactNaam": "Jan Jansen",
        "contactEmail": "jan@acme.nl",
    }


def test_submit_company_info(test_client, drive, company_info):
    response = test_client.post("/applications/company-info", json=company_info)

    assert response.status_code == 200
    body = response.json()
    year = datetime.now(timezone.utc).year
    assert body["success"] is True
    assert body["folderPath"] == f"SLIM Subsidies {year}/APP-1"
    assert body["message"] == "Company info submitted successfully"
    assert drive.file_names(body["folderId"]) == ["Bedrijfsinfo.xlsx"]


def test_update_company_info(test_client, drive, company_info):
    folder_id = drive.add_folder("SLIM Subsidies 2024/concept")

    response = test_client.post("/applications/company-info", json={**company_info, "folderId": folder_id})

    assert response.status_code == 200
    assert response.json()["message"] == "Company info updated successfully"
    assert drive.renames == [(folder_id, "APP-1")]


def test_company_info_requires_fields(test_client, company_info):
    response = test_client.post("/applications/company-info", json={**company_info, "contactEmail": "nope"})

    assert response.status_code == 400
    assert any("contactEmail" in error for error in response.json()["details"]["validation_errors"])


def test_storage_not_configured(test_client, company_info):
    async def no_drive():
        yield None

    test_client.app.dependency_overrides[get_optional_drive] = no_drive

    response = test_client.post("/applications/company-info", json=company_info)

    assert response.status_code == 503
    assert response.json()["error"] == "not_configured"


def test_upload_bank_statement(test_client, drive):
    folder_id = drive.add_folder("SLIM Subsidies 2024/APP-1")

    response = test_client.post(
        "/applications/bank-statement",
        files={"file": ("afschrift.pdf", PDF, "application/pdf")},
        data={"folderId": folder_id, "applicationId": "APP-1", "bedrijfsnaam": "Acme B.V."},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["folderId"] == folder_id
    assert body["fileName"].startswith("Acme B.V. - bankafschrift-")
    assert drive.files[(folder_id, body["fileName"])] == PDF


def test_bank_statement_must_be_pdf(test_client, drive):
    folder_id = drive.add_folder("SLIM Subsidies 2024/APP-1")

    response = test_client.post(
        "/applications/bank-statement",
        files={"file": ("afschrift.docx", b"PK", "application/octet-stream")},
        data={"folderId": folder_id, "applicationId": "APP-1"},
    )

    assert response.status_code == 400
    assert "Only PDF files are allowed" in response.json()["details"]["validation_errors"]


def test_bank_statement_for_other_application(test_client, drive):
    folder_id = drive.add_folder("SLIM Subsidies 2024/APP-1")

    response = test_client.post(
        "/applications/bank-statement",
        files={"file": ("afschrift.pdf", PDF, "application/pdf")},
        data={"folderId": folder_id, "applicationId": "APP-9"},
    )

    assert response.status_code == 400
    assert response.json()["error"] == "folder_mismatch"


def test_bank_statement_requires_folder(test_client):
    response = test_client.post(
        "/applications/bank-statement",
        files={"file": ("afschrift.pdf", PDF, "application/pdf")},
        data={"applicationId": "APP-1"},
    )

    assert response.status_code == 400


def test_authorized_representative(test_client):
    response = test_client.get("/applications/authorized-representative", params={"tenantId": "IGNITE"})

    assert response.status_code == 200
    body = response.json()
    assert body["tenantId"] == "ignite"
    assert set(body) == {"tenantId", "organisation", "name", "email", "phone", "kvkNumber"}


def test_unknown_tenant_falls_back_to_default(test_client):
    response = test_client.get("/applications/authorized-representative", params={"tenantId": "onbekend"})

    assert response.json()["tenantId"] == "default"


def test_health(test_client):
    response = test_client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["provider"] == "signwell"
    assert body["storageConfigured"] is False


def test_provider_health(test_client):
    response = test_client.get("/health/provider")

    assert response.json() == {"provider": "signwell", "reachable": True}
