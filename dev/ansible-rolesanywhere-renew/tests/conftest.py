import datetime

import boto3
import pytest
import pytz
from botocore.stub import Stubber
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from ansible.module_utils.basic import AnsibleModule
from ansible.module_utils.testing import patch_module_args

import aws_rolesanywhere_renew

utc = pytz.UTC

CA_ARN = "arn:aws:acm-pca:us-east-1:111122223333:certificate-authority/11111111-2222-3333-4444-555555555555"
CERT_ARN = CA_ARN + "/certificate/0123456789abcdef0123456789abcdef"


def client_name(common_name="build-agent-01"):
    return x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Example Corp"),
        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
    ])


def key_pem(key, passphrase=None):
    encryption = serialization.BestAvailableEncryption(passphrase.encode()) if passphrase \
        else serialization.NoEncryption()
    return key.private_bytes(serialization.Encoding.PEM, serialization.PrivateFormat.PKCS8, encryption)


def cert_pem(cert):
    return cert.public_bytes(serialization.Encoding.PEM)


def make_ca(common_name):
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.datetime.now(utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=3650))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .sign(key, hashes.SHA256())
    )
    return key, cert


@pytest.fixture(scope="session")
def ca():
    return make_ca("Test Root CA")


@pytest.fixture(scope="session")
def other_ca():
    return make_ca("Unrelated CA")


@pytest.fixture
def issue_cert(ca):
    def issue(public_key, days_left, name=None, issuer=None):
        ca_key, ca_cert = issuer or ca
        now = datetime.datetime.now(utc)
        return (
            x509.CertificateBuilder()
            .subject_name(name or client_name())
            .issuer_name(ca_cert.subject)
            .public_key(public_key)
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - datetime.timedelta(days=1))
            .not_valid_after(now + datetime.timedelta(days=days_left))
            .sign(ca_key, hashes.SHA256())
        )
    return issue


@pytest.fixture
def pki(tmp_path, ca):
    ca_key, ca_cert = ca
    key = ec.generate_private_key(ec.SECP256R1())
    paths = {
        "dir": tmp_path,
        "key": tmp_path / "client.key",
        "cert": tmp_path / "client.pem",
        "backup": tmp_path / "client.pem.bak",
        "csr": tmp_path / "client.csr",
        "chain": tmp_path / "chain.pem",
        "ca_cert": tmp_path / "ca.pem",
        "ca_key": tmp_path / "ca.key",
    }
    paths["key"].write_bytes(key_pem(key))
    paths["ca_cert"].write_bytes(cert_pem(ca_cert))
    paths["ca_key"].write_bytes(key_pem(ca_key))
    paths["client_key"] = key
    return paths


@pytest.fixture
def make_params(pki):
    def make(**overrides):
        data = {name: spec.get("default") for name, spec in aws_rolesanywhere_renew.ARGUMENT_SPEC.items()}
        data.update({
            "cert_path": str(pki["cert"]),
            "key_path": str(pki["key"]),
            "ca_type": "self_managed",
            "ca_cert_path": str(pki["ca_cert"]),
            "ca_key_path": str(pki["ca_key"]),
        })
        data.update(overrides)
        return data
    return make


@pytest.fixture
def acm_pca():
    client = boto3.client("acm-pca", region_name="us-east-1",
                          aws_access_key_id="testing", aws_secret_access_key="testing")
    with Stubber(client) as stubber:
        yield client, stubber
        stubber.assert_no_pending_responses()


@pytest.fixture
def no_sleep(monkeypatch):
    monkeypatch.setattr("time.sleep", lambda seconds: None)


@pytest.fixture
def ansible_module():
    with patch_module_args({}):
        yield AnsibleModule(argument_spec={})
