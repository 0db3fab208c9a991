"""
Webhook endpoint tests: acknowledgements, signature rejection and storage.
"""

import hashlib
import hmac
import json

from subsidy_signing.api.routes.webhooks import get_provider_builder
from subsidy_signing.core.errors import ConfigurationError
from tests.fakes import FAKE_SIGNATURE_HEADER

COMPLETED = json.dumps({"event": "completed", "envelopeId": "env-1"}).encode()


def test_completion_is_stored(test_client, drive):
    response = test_client.post("/webhooks/signwell", content=COMPLETED)

    assert response.status_code == 200
    assert response.json() == {"received": True, "outcome": "stored", "envelopeId": "env-1"}
    folder_id = drive.folders["SLIM Subsidies 2024/APP-1"]
    assert drive.file_names(folder_id) == ["De-minimisverklaring-signed.pdf", "MKB-verklaring-signed.pdf"]


def test_docusign_delivery_uses_docusign_provider(test_client, fake_provider):
    response = test_client.post("/webhooks/docusign", content=COMPLETED)

    assert response.status_code == 200
    assert fake_provider.provider_type.value == "docusign"


def test_invalid_signature(test_client, fake_provider, drive):
    fake_provider.webhook_secret = "hook-secret"

    response = test_client.post("/webhooks/signwell", content=COMPLETED, headers={FAKE_SIGNATURE_HEADER: "bad"})

    assert response.status_code == 401
    assert drive.files == {}


def test_valid_signature(test_client, fake_provider):
    fake_provider.webhook_secret = "hook-secret"
    signature = hmac.new(b"hook-secret", COMPLETED, hashlib.sha256).hexdigest()

    response = test_client.post("/webhooks/signwell", content=COMPLETED, headers={FAKE_SIGNATURE_HEADER: signature})

    assert response.status_code == 200
    assert response.json()["outcome"] == "stored"


def test_other_events_are_acknowledged(test_client, drive):
    body = json.dumps({"event": "viewed", "envelopeId": "env-1"}).encode()

    response = test_client.post("/webhooks/signwell", content=body)

    assert response.status_code == 200
    assert response.json()["outcome"] == "ignored"
    assert drive.files == {}


def test_garbage_is_acknowledged(test_client):
    response = test_client.post("/webhooks/signwell", content=b"not json")

    assert response.status_code == 200
    assert response.json()["outcome"] == "failed"


def test_unconfigured_provider_is_acknowledged(test_client):
    def unconfigured(settings, provider_type=None):
        raise ConfigurationError("DocuSign is not configured", missing=["docusign_integration_key"])

    test_client.app.dependency_overrides[get_provider_builder] = lambda: unconfigured

    response = test_client.post("/webhooks/docusign", content=COMPLETED)

    assert response.status_code == 200
    assert response.json()["outcome"] == "failed"
