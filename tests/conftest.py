"""Shared fixtures for the Lab-Sieve test suite."""

import json

import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from labsieve.domain.models import AccessToken, ExportManifest, OutputFile
from labsieve.infrastructure.config_manager import ExportConfig

TOKEN_ENDPOINT = "https://auth.example.org/oauth2/token"
FHIR_BASE_URL = "https://fhir.example.org/api/FHIR/R4"
GROUP_ID = "cohort-1"


@pytest.fixture(scope="session")
def rsa_private_key():
    """RSA key pair generated once per session."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def key_store(tmp_path, rsa_private_key):
    """JWKS file with an encryption key followed by the signing key."""
    sig_jwk = json.loads(RSAAlgorithm.to_jwk(rsa_private_key))
    sig_jwk.update({"use": "sig", "kid": "sig-key-1", "alg": "RS384"})
    enc_jwk = dict(sig_jwk, use="enc", kid="enc-key-1")

    path = tmp_path / "keys.json"
    path.write_text(json.dumps({"keys": [enc_jwk, sig_jwk]}), encoding="utf-8")
    return path


@pytest.fixture
def export_config(key_store):
    return ExportConfig(
        client_id="client-abc",
        token_endpoint=TOKEN_ENDPOINT,
        fhir_base_url=FHIR_BASE_URL,
        group_id=GROUP_ID,
        key_store_path=str(key_store),
        poll_interval_seconds=30,
    )


@pytest.fixture
def token():
    return AccessToken(access_token="secret-token", expires_in=3600, scope="system/*.read")


@pytest.fixture
def manifest():
    """Completed manifest with two Patient files and two Observation files."""
    return ExportManifest(
        transactionTime="2026-10-18T09:00:00Z",
        output=[
            OutputFile(type="Patient", url="https://files.example.org/patient-1.ndjson"),
            OutputFile(type="Patient", url="https://files.example.org/patient-2.ndjson"),
            OutputFile(type="Observation", url="https://files.example.org/observation-1.ndjson"),
            OutputFile(type="Observation", url="https://files.example.org/observation-2.ndjson"),
        ],
    )


class RecordingSleep:
    """Async stand-in for asyncio.sleep that records requested delays."""

    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


def observation_resource(
    obs_id="obs-1",
    code="Glucose",
    value=90,
    low=70,
    high=110,
    subject="Patient/p1",
):
    """Build a laboratory Observation resource as exported."""
    resource = {
        "resourceType": "Observation",
        "id": obs_id,
        "code": {"text": code},
        "subject": {"reference": subject},
    }
    if value is not None:
        resource["valueQuantity"] = {"value": value, "unit": "mg/dL"}
    if low is not None or high is not None:
        bounds = {}
        if low is not None:
            bounds["low"] = {"value": low, "unit": "mg/dL"}
        if high is not None:
            bounds["high"] = {"value": high, "unit": "mg/dL"}
        resource["referenceRange"] = [bounds]
    return resource


def patient_resource(patient_id="p1", text="Jane Doe"):
    return {"resourceType": "Patient", "id": patient_id, "name": [{"text": text}]}


@pytest.fixture
def make_observation():
    return observation_resource


@pytest.fixture
def make_patient():
    return patient_resource
