"""
Shared fixtures for the extensions harness tests.

No test talks to Azure: the legacy ServiceManagementService is replaced by a
Mock and certificates are generated on the fly.
"""

import datetime
import io
import shutil
import subprocess
from types import SimpleNamespace
from unittest.mock import Mock

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import Encoding, NoEncryption, PrivateFormat, pkcs12
from cryptography.x509.oid import NameOID

import extensions_harness

ENV_VARS = [
    "SUBSCRIPTION_ID",
    "SUBSCRIPTION_CERT",
    "MANAGEMENT_URL",
    "STORAGE_BASE_URL",
    "EXTENSION_NAMESPACE",
    "EXTENSION_NAME",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep the developer's environment out of flag defaults."""
    for var in ENV_VARS:
        monkeypatch.delenv(var, raising=False)


class FakeClock:
    """Monotonic clock that only moves when slept on or advanced."""

    def __init__(self):
        self.now = 1000.0
        self.sleeps = []

    def monotonic(self):
        return self.now

    def sleep(self, seconds):
        if seconds < 0:
            raise ValueError("sleep length must be non-negative")
        self.sleeps.append(seconds)
        self.now += seconds

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture(autouse=True)
def clock(monkeypatch):
    clock = FakeClock()
    monkeypatch.setattr(extensions_harness, "time", clock)
    return clock


@pytest.fixture
def no_sleep(clock):
    """Sleeps recorded instead of waited."""
    return clock.sleeps


def make_response(request_id="req-1", body=b"", status=202):
    return SimpleNamespace(status=status, message="Accepted", headers=[("x-ms-request-id", request_id)], body=body)


def make_operation(status, code=None, message=None):
    error = SimpleNamespace(code=code, message=message) if code else None
    return SimpleNamespace(id="req-1", status=status, http_status_code="400" if code else "200", error=error)


@pytest.fixture
def sms():
    """Mock ServiceManagementService whose operations succeed at once."""
    sms = Mock()
    sms.perform_post.return_value = make_response("req-post")
    sms.perform_put.return_value = make_response("req-put")
    sms.perform_delete.return_value = make_response("req-delete")
    sms.get_operation_status.return_value = make_operation("Succeeded")
    return sms


@pytest.fixture
def client(sms):
    return extensions_harness.ExtensionsClient("sub-id", "cert.pem", sms=sms)


@pytest.fixture
def out():
    return io.StringIO()


@pytest.fixture
def harness(tmp_path, client, out):
    return extensions_harness.ExtensionsHarness(config_file=str(tmp_path / "missing.conf"), client=client, out=out)


@pytest.fixture
def sample_manifest():
    return extensions_harness.build_extension_manifest(
        "Microsoft.Azure.Extensions",
        "FooExtension",
        "1.0.0",
        label="Foo",
        description="Foo extension",
        media_link="https://acct.blob.core.windows.net/extension-packages/foo.zip?sig=abc",
        eula_url="https://example.com/eula",
        privacy_url="https://example.com/privacy",
        homepage_url="https://example.com",
        company="Contoso",
        supported_os="Linux",
    )


@pytest.fixture
def manifest_file(tmp_path, sample_manifest):
    path = tmp_path / "manifest.xml"
    path.write_text(sample_manifest)
    return str(path)


def make_certificate(expired=False):
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "extensions-harness-test")])
    now = datetime.datetime.now(datetime.timezone.utc)
    if expired:
        not_before, not_after = now - datetime.timedelta(days=10), now - datetime.timedelta(days=1)
    else:
        not_before, not_after = now - datetime.timedelta(days=1), now + datetime.timedelta(days=30)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .sign(key, hashes.SHA256())
    )
    return key, cert


@pytest.fixture
def certificate():
    return make_certificate()


@pytest.fixture
def pem_file(tmp_path, certificate):
    key, cert = certificate
    path = tmp_path / "management.pem"
    path.write_bytes(
        cert.public_bytes(Encoding.PEM)
        + key.private_bytes(Encoding.PEM, PrivateFormat.TraditionalOpenSSL, NoEncryption())
    )
    return str(path)


@pytest.fixture
def pfx_file(tmp_path, certificate):
    key, cert = certificate
    path = tmp_path / "management.pfx"
    path.write_bytes(pkcs12.serialize_key_and_certificates(b"management", key, cert, None, NoEncryption()))
    return str(path)


@pytest.fixture
def empty_password_pfx_file(tmp_path, pem_file):
    """PFX exported with an empty password; cryptography cannot write one."""
    openssl = shutil.which("openssl")
    if openssl is None:
        pytest.skip("openssl not installed")
    path = tmp_path / "management-empty-password.pfx"
    subprocess.run(
        [openssl, "pkcs12", "-export", "-in", pem_file, "-out", str(path), "-passout", "pass:"],
        check=True,
        capture_output=True,
    )
    return str(path)
