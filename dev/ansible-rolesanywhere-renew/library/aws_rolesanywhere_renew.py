#!/usr/bin/env python3
DOCUMENTATION = '''
---
module: aws_rolesanywhere_renew
version_added: "0.1.0"
short_description: Renews an IAM Roles Anywhere client certificate before it expires.
description:
  - Builds a new certificate signing request from the existing private key, has it
    signed by an ACM Private CA or by a self-managed CA, verifies the result and swaps
    it into place. The previous certificate is kept byte-for-byte under I(backup_path).
  - The private key is reused unchanged.
  - Nothing is swapped unless the new certificate verifies against the private key,
    the requested subject and the issuing CA. A failed issuance leaves the active
    certificate and its backup untouched.
  - Concurrent runs against the same certificate serialize on C(<cert_path>.lock).
requirements: [ "boto3", "cryptography", "pytz" ]
options:
  cert_path:
    description: Path of the active certificate (PEM).
    required: true
  key_path:
    description: Path of the existing private key (PEM).
    required: true
  key_passphrase:
    description: Passphrase protecting I(key_path).
    required: false
  backup_path:
    description: Where the previous certificate is preserved.
    required: false
    default: '<cert_path>.bak'
  csr_path:
    description: Where the certificate signing request is written.
    required: false
    default: '<cert_path without extension>.csr'
  chain_path:
    description: Optional file receiving the issuing CA chain.
    required: false
  subject:
    description:
      - Subject of the certificate. When omitted the subject of the current
        certificate is reused.
    required: false
    suboptions:
      common_name: {required: true}
      organization: {}
      organizational_unit: {}
      country: {}
      state: {}
      locality: {}
  ca_type:
    description: Kind of certificate authority.
    choices: [ acm_pca, self_managed ]
    default: acm_pca
  ca_arn:
    description: ARN of the ACM Private CA. Required when I(ca_type=acm_pca).
  region:
    description: AWS region for ACM PCA calls. Defaults to the region of I(ca_arn).
  template_arn:
    description: ACM PCA certificate template, e.g. C(arn:aws:acm-pca:::template/EndEntityClientAuthCertificate/V1).
  signing_algorithm:
    description: ACM PCA signing algorithm.
    default: SHA256WITHRSA
  ca_cert_path:
    description: CA certificate. Required when I(ca_type=self_managed).
  ca_key_path:
    description: CA private key. Required when I(ca_type=self_managed).
  ca_key_passphrase:
    description: Passphrase protecting I(ca_key_path).
  validity_days:
    description: Validity period of the new certificate.
    default: 365
  renew_before_days:
    description: Renew once fewer than this many days of validity remain.
    default: 30
  force:
    description: Renew regardless of the remaining validity.
    default: false
  wait_delay:
    description: Seconds between polls for a pending ACM PCA issuance.
    default: 3
  wait_max_attempts:
    description: Number of polls before a pending ACM PCA issuance is given up.
    default: 40
  lock_timeout:
    description: Seconds to wait for another renewal of the same certificate.
    default: 60
'''

EXAMPLES = '''
- name: Renew Roles Anywhere certificate from ACM PCA
  aws_rolesanywhere_renew:
    cert_path: /etc/pki/rolesanywhere/client.pem
    key_path: /etc/pki/rolesanywhere/client.key
    ca_arn: "arn:aws:acm-pca:us-east-1:111122223333:certificate-authority/11111111-2222-3333-4444-555555555555"
    template_arn: "arn:aws:acm-pca:::template/EndEntityClientAuthCertificate/V1"
    chain_path: /etc/pki/rolesanywhere/chain.pem

- name: Renew from a self-managed CA
  aws_rolesanywhere_renew:
    cert_path: /etc/pki/rolesanywhere/client.pem
    key_path: /etc/pki/rolesanywhere/client.key
    ca_type: self_managed
    ca_cert_path: /etc/pki/ca/ca.pem
    ca_key_path: /etc/pki/ca/ca.key
    subject:
      common_name: build-agent-01
      organization: Example Corp
      organizational_unit: CI
'''

RETURN = '''
renewed:
  description: Whether a new certificate was swapped into place.
  type: bool
reason:
  description: Why the certificate was (or was not) renewed.
  type: str
backup_path:
  description: Location of the previous certificate, when one existed.
  type: str
serial_number:
  description: Serial number of the active certificate, hex encoded.
  type: str
subject:
  description: Subject of the active certificate (RFC 4514).
  type: str
not_before:
  description: Start of the active certificate's validity window (ISO 8601, UTC).
  type: str
not_after:
  description: End of the active certificate's validity window (ISO 8601, UTC).
  type: str
days_remaining:
  description: Whole days left on the active certificate.
  type: int
certificate_arn:
  description: ARN of the certificate issued by ACM PCA.
  type: str
'''

import contextlib
import datetime
import fcntl
import logging
import os
import tempfile
import time

import boto3
import pytz
from botocore.exceptions import BotoCoreError, ClientError, WaiterError
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID
from ansible.module_utils.basic import AnsibleModule

utc = pytz.UTC
log = logging.getLogger(__name__)

SUBJECT_OIDS = [
    ('country', NameOID.COUNTRY_NAME),
    ('state', NameOID.STATE_OR_PROVINCE_NAME),
    ('locality', NameOID.LOCALITY_NAME),
    ('organization', NameOID.ORGANIZATION_NAME),
    ('organizational_unit', NameOID.ORGANIZATIONAL_UNIT_NAME),
    ('common_name', NameOID.COMMON_NAME),
]

# tolerated difference between our clock and the CA's
CLOCK_SKEW = datetime.timedelta(minutes=5)

ARGUMENT_SPEC = {
    "cert_path": {"required": True, "type": "path"},
    "key_path": {"required": True, "type": "path"},
    "key_passphrase": {"type": "str", "no_log": True},
    "backup_path": {"type": "path"},
    "csr_path": {"type": "path"},
    "chain_path": {"type": "path"},
    "subject": {"type": "dict", "options": {
        "common_name": {"required": True, "type": "str"},
        "organization": {"type": "str"},
        "organizational_unit": {"type": "str"},
        "country": {"type": "str"},
        "state": {"type": "str"},
        "locality": {"type": "str"},
    }},
    "ca_type": {"type": "str", "default": "acm_pca", "choices": ["acm_pca", "self_managed"]},
    "ca_arn": {"type": "str"},
    "region": {"type": "str"},
    "template_arn": {"type": "str"},
    "signing_algorithm": {"type": "str", "default": "SHA256WITHRSA"},
    "ca_cert_path": {"type": "path"},
    "ca_key_path": {"type": "path"},
    "ca_key_passphrase": {"type": "str", "no_log": True},
    "validity_days": {"type": "int", "default": 365},
    "renew_before_days": {"type": "int", "default": 30},
    "force": {"type": "bool", "default": False},
    "wait_delay": {"type": "int", "default": 3},
    "wait_max_attempts": {"type": "int", "default": 40},
    "lock_timeout": {"type": "int", "default": 60},
}

REQUIRED_IF = [
    ("ca_type", "acm_pca", ["ca_arn"]),
    ("ca_type", "self_managed", ["ca_cert_path", "ca_key_path"]),
]


class RenewalError(Exception):
    def __init__(self, msg, **result):
        super().__init__(msg)
        self.result = result


class LockTimeout(RenewalError):
    pass


class IssuanceError(RenewalError):
    pass


class VerificationError(RenewalError):
    pass


class ModuleLogHandler(logging.Handler):
    """Forwards log records to AnsibleModule.log; stdout is reserved for the module result."""

    def __init__(self, module):
        super().__init__()
        self.module = module

    def emit(self, record):
        self.module.log(self.format(record))


@contextlib.contextmanager
def renewal_lock(path, timeout):
    fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o600)
    deadline = time.monotonic() + timeout
    try:
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    raise LockTimeout("timed out after %ss waiting for renewal lock %s" % (timeout, path),
                                      lock_path=path)
                time.sleep(0.2)
        yield
    finally:
        # closing the descriptor drops the flock
        os.close(fd)


def atomic_write(module, path, data, attrs):
    """Write data next to path and move it into place with module.atomic_move.

    atomic_move keeps the owner, group and SELinux context of an existing path;
    attrs (mode, uid, gid) are then enforced so new files match the certificate.
    """
    mode, uid, gid = attrs
    directory = os.path.dirname(os.path.abspath(path))
    fd, tmp = tempfile.mkstemp(dir=directory, prefix='.' + os.path.basename(path) + '.')
    try:
        with os.fdopen(fd, 'wb') as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
    except Exception:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp)
        raise
    module.atomic_move(tmp, path)
    module.set_mode_if_different(path, mode, False)
    if uid is not None:
        module.set_owner_if_different(path, uid, False)
        module.set_group_if_different(path, gid, False)


def read_bytes(path):
    with open(path, 'rb') as f:
        return f.read()


def load_private_key(path, passphrase=None):
    password = passphrase.encode() if passphrase else None
    try:
        return serialization.load_pem_private_key(read_bytes(path), password=password)
    except (OSError, ValueError, TypeError) as e:
        raise RenewalError("cannot load private key %s: %s" % (path, e))


def load_ca_cert(path):
    try:
        data = read_bytes(path)
        return data, x509.load_pem_x509_certificate(data)
    except (OSError, ValueError) as e:
        raise RenewalError("cannot load CA certificate %s: %s" % (path, e))


def load_local_cert(path):
    try:
        data = read_bytes(path)
    except FileNotFoundError:
        return None, None
    except OSError as e:
        raise RenewalError("cannot read certificate %s: %s" % (path, e))
    try:
        return data, x509.load_pem_x509_certificate(data)
    except ValueError:
        log.warning("existing certificate %s is not a readable PEM certificate", path)
        return data, None


def file_attrs(path):
    """Mode and ownership the renewed files inherit from the current certificate."""
    try:
        st = os.stat(path)
    except FileNotFoundError:
        return 0o644, None, None
    return st.st_mode & 0o777, st.st_uid, st.st_gid


def build_name(subject):
    if not subject.get('common_name'):
        raise RenewalError("subject needs a common_name")
    try:
        return x509.Name([x509.NameAttribute(oid, subject[field])
                          for field, oid in SUBJECT_OIDS if subject.get(field)])
    except ValueError as e:
        raise RenewalError("invalid subject %s: %s" % (subject, e))


def needs_renewal(cert, renew_before_days, force, now):
    if cert is None:
        return True, "no valid certificate present"
    if force:
        return True, "renewal forced"
    remaining = cert.not_valid_after_utc - now
    if remaining <= datetime.timedelta(days=renew_before_days):
        return True, "certificate expires in %d days" % remaining.days
    return False, "certificate valid for another %d days" % remaining.days


def build_csr(key, name):
    return x509.CertificateSigningRequestBuilder().subject_name(name).sign(key, hashes.SHA256())


def acm_region(ca_arn):
    parts = ca_arn.split(':')
    if len(parts) < 6 or not parts[3]:
        raise RenewalError("cannot determine region from CA ARN %s" % ca_arn)
    return parts[3]


def issue_acm_pca(csr_pem, data, client=None):
    ca_arn = data['ca_arn']
    if client is None:
        # Create ACM PCA client
        client = boto3.client('acm-pca', region_name=data['region'] or acm_region(ca_arn))
    request = {
        'CertificateAuthorityArn': ca_arn,
        'Csr': csr_pem,
        'SigningAlgorithm': data['signing_algorithm'],
        'Validity': {'Value': data['validity_days'], 'Type': 'DAYS'},
    }
    if data['template_arn']:
        request['TemplateArn'] = data['template_arn']
    try:
        cert_arn = client.issue_certificate(**request)['CertificateArn']
        log.info("requested certificate %s from %s", cert_arn, ca_arn)
        # Issuance is asynchronous; the waiter keeps polling while the request is in progress
        client.get_waiter('certificate_issued').wait(
            CertificateAuthorityArn=ca_arn,
            CertificateArn=cert_arn,
            WaiterConfig={'Delay': data['wait_delay'], 'MaxAttempts': data['wait_max_attempts']},
        )
        response = client.get_certificate(CertificateAuthorityArn=ca_arn, CertificateArn=cert_arn)
    except ClientError as e:
        error = e.response.get('Error', {})
        raise IssuanceError("ACM PCA rejected the request: %s" % error.get('Message', e),
                            error_code=error.get('Code'))
    except WaiterError as e:
        error = (e.last_response or {}).get('Error', {})
        raise IssuanceError("certificate %s was not issued: %s" % (cert_arn, error.get('Message', e)),
                            certificate_arn=cert_arn, error_code=error.get('Code'))
    except BotoCoreError as e:
        raise IssuanceError("ACM PCA request failed: %s" % e)
    cert_pem = response['Certificate'].encode()
    chain_pem = response.get('CertificateChain', '').encode()
    return cert_pem, chain_pem, cert_arn


def sign_self_managed(csr, data, now):
    ca_pem, ca_cert = load_ca_cert(data['ca_cert_path'])
    ca_key = load_private_key(data['ca_key_path'], data['ca_key_passphrase'])
    if not csr.is_signature_valid:
        raise IssuanceError("certificate signing request has an invalid signature")
    # never outlive the issuing CA
    not_after = min(now + datetime.timedelta(days=data['validity_days']), ca_cert.not_valid_after_utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(csr.subject)
        .issuer_name(ca_cert.subject)
        .public_key(csr.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - CLOCK_SKEW)
        .not_valid_after(not_after)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(x509.KeyUsage(
            digital_signature=True, content_commitment=False, key_encipherment=False,
            data_encipherment=False, key_agreement=False, key_cert_sign=False,
            crl_sign=False, encipher_only=False, decipher_only=False), critical=True)
        .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.CLIENT_AUTH]), critical=False)
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(csr.public_key()), critical=False)
        .add_extension(x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_key.public_key()), critical=False)
        .sign(ca_key, hashes.SHA256())
    )
    log.info("signed certificate %x with self-managed CA %s", cert.serial_number, ca_cert.subject.rfc4514_string())
    return cert.public_bytes(serialization.Encoding.PEM), ca_pem


def public_key_der(key):
    return key.public_bytes(serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo)


def verify_certificate(cert_pem, chain_pem, key, name, now):
    try:
        cert = x509.load_pem_x509_certificate(cert_pem)
    except ValueError as e:
        raise VerificationError("issued certificate is not valid PEM: %s" % e)
    if public_key_der(cert.public_key()) != public_key_der(key.public_key()):
        raise VerificationError("issued certificate does not match the private key")
    if cert.subject != name:
        raise VerificationError("issued certificate subject %s differs from requested %s" % (
            cert.subject.rfc4514_string(), name.rfc4514_string()))
    if not cert.not_valid_before_utc - CLOCK_SKEW <= now < cert.not_valid_after_utc:
        raise VerificationError("issued certificate is not currently valid (%s to %s)" % (
            cert.not_valid_before_utc.isoformat(), cert.not_valid_after_utc.isoformat()))
    if chain_pem.strip():
        try:
            issuer = x509.load_pem_x509_certificates(chain_pem)[0]
        except ValueError as e:
            raise VerificationError("issuing chain is not valid PEM: %s" % e)
        try:
            cert.verify_directly_issued_by(issuer)
        except (ValueError, TypeError, InvalidSignature) as e:
            raise VerificationError("issued certificate is not signed by %s: %s" % (
                issuer.subject.rfc4514_string(), str(e) or "bad signature"))
    return cert


def describe(cert, now):
    return {
        'serial_number': '%x' % cert.serial_number,
        'subject': cert.subject.rfc4514_string(),
        'not_before': cert.not_valid_before_utc.isoformat(),
        'not_after': cert.not_valid_after_utc.isoformat(),
        'days_remaining': (cert.not_valid_after_utc - now).days,
    }


def default_paths(data):
    cert_path = data['cert_path']
    backup_path = data['backup_path'] or cert_path + '.bak'
    csr_path = data['csr_path'] or os.path.splitext(cert_path)[0] + '.csr'
    return backup_path, csr_path


def renew(module, data, now, client=None):
    backup_path, csr_path = default_paths(data)
    old_pem, old_cert = load_local_cert(data['cert_path'])
    renew_due, reason = needs_renewal(old_cert, data['renew_before_days'], data['force'], now)
    result = {'changed': False, 'renewed': False, 'reason': reason, 'cert_path': data['cert_path']}
    if not renew_due:
        result.update(describe(old_cert, now))
        return result

    if data['subject']:
        name = build_name({k: v for k, v in data['subject'].items() if v})
    elif old_cert is not None:
        # reused as-is so every attribute survives the renewal
        name = old_cert.subject
    else:
        raise RenewalError("no subject given and no readable certificate at %s to take it from" % data['cert_path'])

    key = load_private_key(data['key_path'], data['key_passphrase'])
    csr = build_csr(key, name)
    csr_pem = csr.public_bytes(serialization.Encoding.PEM)
    attrs = file_attrs(data['cert_path'])
    atomic_write(module, csr_path, csr_pem, attrs)
    log.info("wrote certificate signing request %s for %s", csr_path, name.rfc4514_string())

    certificate_arn = None
    if data['ca_type'] == 'acm_pca':
        cert_pem, chain_pem, certificate_arn = issue_acm_pca(csr_pem, data, client)
    else:
        cert_pem, chain_pem = sign_self_managed(csr, data, now)

    new_cert = verify_certificate(cert_pem, chain_pem, key, name, now)

    if data['chain_path'] and chain_pem.strip():
        atomic_write(module, data['chain_path'], chain_pem, attrs)
    if old_pem is not None:
        atomic_write(module, backup_path, old_pem, attrs)
        result['backup_path'] = backup_path
    atomic_write(module, data['cert_path'], cert_pem, attrs)
    log.info("installed certificate %x valid until %s", new_cert.serial_number, new_cert.not_valid_after_utc.isoformat())

    result.update(describe(new_cert, now))
    result.update({'changed': True, 'renewed': True, 'csr_path': csr_path})
    if certificate_arn:
        result['certificate_arn'] = certificate_arn
    return result


def run(module, data, check_mode=False, client=None):
    if check_mode:
        now = datetime.datetime.now(utc)
        _, cert = load_local_cert(data['cert_path'])
        renew_due, reason = needs_renewal(cert, data['renew_before_days'], data['force'], now)
        result = {'changed': renew_due, 'renewed': False, 'reason': reason, 'cert_path': data['cert_path']}
        if cert is not None:
            result.update(describe(cert, now))
        return result
    with renewal_lock(data['cert_path'] + '.lock', data['lock_timeout']):
        # read the clock only once the lock is held; waiting for it can take lock_timeout
        return renew(module, data, datetime.datetime.now(utc), client)


def main():
    module = AnsibleModule(argument_spec=ARGUMENT_SPEC, required_if=REQUIRED_IF, supports_check_mode=True)
    handler = ModuleLogHandler(module)
    log.addHandler(handler)
    log.setLevel(logging.INFO)
    try:
        result = run(module, module.params, check_mode=module.check_mode)
    except RenewalError as e:
        module.fail_json(msg=str(e), **e.result)
    except OSError as e:
        module.fail_json(msg="%s: %s" % (e.filename or 'renewal', e.strerror or e))
    finally:
        log.removeHandler(handler)
    module.exit_json(**result)


if __name__ == "__main__":
    main()
