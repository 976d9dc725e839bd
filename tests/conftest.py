"""Shared fixtures for SubSeal tests.

The ``tsa_pki`` fixture stands up a throwaway PKI (root CA plus a TSA signing
certificate) and mints real RFC 3161 responses with it, so verification is
exercised end to end without touching the network.
"""

import hashlib
from datetime import datetime, timedelta, timezone
from itertools import count
from typing import Optional

import pytest
from asn1crypto import cms, tsp
from asn1crypto import x509 as asn1_x509
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from subseal.models import ArtifactDigest, SubmissionInput
from subseal.timestamp import _TimeStampResp
from subseal.trust import TrustStore


NOW = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)
DEADLINE = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


def _name(common_name: str) -> x509.Name:
    return x509.Name(
        [
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "SubSeal Test"),
            x509.NameAttribute(NameOID.COMMON_NAME, common_name),
        ]
    )


def _build_cert(
    subject: x509.Name,
    issuer: x509.Name,
    public_key,
    signing_key,
    *,
    ca: bool,
    eku: Optional[list] = None,
    not_before: datetime = NOW - timedelta(days=365),
    not_after: datetime = NOW + timedelta(days=365),
) -> x509.Certificate:
    """Issue a certificate for tests."""
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(public_key), critical=False)
    )
    if eku is not None:
        builder = builder.add_extension(x509.ExtendedKeyUsage(eku), critical=True)
    return builder.sign(signing_key, hashes.SHA256())


class TsaPki:
    """A root CA and a TSA that can mint signed TimeStampResp messages."""

    def __init__(self) -> None:
        self.root_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        self.root_cert = _build_cert(
            _name("SubSeal Test Root"),
            _name("SubSeal Test Root"),
            self.root_key.public_key(),
            self.root_key,
            ca=True,
        )
        self.tsa_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        self.tsa_cert = self.issue_tsa_cert(self.tsa_key)
        self._serials = count(1000)

    def issue_tsa_cert(
        self,
        key,
        eku: Optional[list] = None,
        not_before: datetime = NOW - timedelta(days=365),
        not_after: datetime = NOW + timedelta(days=365),
    ) -> x509.Certificate:
        return _build_cert(
            _name("SubSeal Test TSA"),
            self.root_cert.subject,
            key.public_key(),
            self.root_key,
            ca=False,
            eku=eku if eku is not None else [ExtendedKeyUsageOID.TIME_STAMPING],
            not_before=not_before,
            not_after=not_after,
        )

    def trust_store(self) -> TrustStore:
        return TrustStore([self.root_cert], [self.tsa_cert])

    def root_pem(self) -> bytes:
        return self.root_cert.public_bytes(serialization.Encoding.PEM)

    def tsa_pem(self) -> bytes:
        return self.tsa_cert.public_bytes(serialization.Encoding.PEM)

    def make_response(
        self,
        digest: bytes,
        gen_time: datetime = NOW,
        *,
        hash_name: str = "sha256",
        key=None,
        cert: Optional[x509.Certificate] = None,
        embed_cert: bool = True,
        tamper_signature: bool = False,
        message_digest: Optional[bytes] = None,
        ess_cert_hash: Optional[bytes] = None,
        ess_certs: Optional[list] = None,
        content_type_values: Optional[list] = None,
        status: str = "granted",
    ) -> bytes:
        """Build a DER TimeStampResp signed by the test TSA.

        Args:
            digest: Digest to place in the message imprint.
            gen_time: Generation time asserted by the token.
            hash_name: Imprint hash algorithm name.
            key: Signing key (defaults to the TSA key).
            cert: Signer certificate (defaults to the TSA certificate).
            embed_cert: Include the signer certificate in the token.
            tamper_signature: Corrupt the signature after signing.
            message_digest: Override the signed message-digest attribute.
            ess_cert_hash: Add an ESS signing-certificate-v2 attribute with
                this SHA-256 certificate hash.
            ess_certs: Raw ``certs`` list for the ESS signing-certificate-v2
                attribute, for malformed tokens.
            content_type_values: Values of the signed content-type attribute
                (defaults to id-ct-TSTInfo).
            status: PKI status; anything but granted omits the token.
        """
        if status != "granted":
            return _TimeStampResp(
                {"status": {"status": status, "status_string": ["request refused"]}}
            ).dump()

        key = key or self.tsa_key
        cert = cert or self.tsa_cert
        asn1_cert = asn1_x509.Certificate.load(cert.public_bytes(serialization.Encoding.DER))

        tst_info = tsp.TSTInfo(
            {
                "version": "v1",
                "policy": "1.3.6.1.4.1.4146.2.3",
                "message_imprint": {
                    "hash_algorithm": {"algorithm": hash_name},
                    "hashed_message": digest,
                },
                "serial_number": next(self._serials),
                "gen_time": gen_time,
                "accuracy": {"seconds": 1},
                "tsa": asn1_x509.GeneralName(name="directory_name", value=asn1_cert.subject),
            }
        )
        econtent = tst_info.dump()

        attrs = [
            cms.CMSAttribute(
                {
                    "type": "content_type",
                    "values": ["tst_info"] if content_type_values is None else content_type_values,
                }
            ),
            cms.CMSAttribute(
                {
                    "type": "message_digest",
                    "values": [message_digest or hashlib.sha256(econtent).digest()],
                }
            ),
        ]
        if ess_cert_hash is not None:
            ess_certs = [{"cert_hash": ess_cert_hash}]
        if ess_certs is not None:
            attrs.append(
                cms.CMSAttribute(
                    {
                        "type": "signing_certificate_v2",
                        "values": [{"certs": ess_certs}],
                    }
                )
            )
        signed_attrs = cms.CMSAttributes(attrs)
        to_sign = signed_attrs.dump()

        if isinstance(key, ec.EllipticCurvePrivateKey):
            signature = key.sign(to_sign, ec.ECDSA(hashes.SHA256()))
            signature_algorithm = "sha256_ecdsa"
        else:
            signature = key.sign(to_sign, padding.PKCS1v15(), hashes.SHA256())
            signature_algorithm = "rsassa_pkcs1v15"
        if tamper_signature:
            signature = signature[:-1] + bytes([signature[-1] ^ 0x01])

        signer_info = cms.SignerInfo(
            {
                "version": "v1",
                "sid": cms.SignerIdentifier(
                    name="issuer_and_serial_number",
                    value=cms.IssuerAndSerialNumber(
                        {
                            "issuer": asn1_cert.issuer,
                            "serial_number": asn1_cert.serial_number,
                        }
                    ),
                ),
                "digest_algorithm": {"algorithm": "sha256"},
                "signed_attrs": signed_attrs,
                "signature_algorithm": {"algorithm": signature_algorithm},
                "signature": signature,
            }
        )

        signed_data = {
            "version": "v3",
            "digest_algorithms": [{"algorithm": "sha256"}],
            "encap_content_info": {
                "content_type": "tst_info",
                "content": cms.ParsableOctetString(econtent),
            },
            "signer_infos": [signer_info],
        }
        if embed_cert:
            signed_data["certificates"] = [
                cms.CertificateChoices(name="certificate", value=asn1_cert)
            ]

        token = cms.ContentInfo(
            {"content_type": "signed_data", "content": cms.SignedData(signed_data)}
        )
        return tsp.TimeStampResp(
            {"status": {"status": "granted"}, "time_stamp_token": token}
        ).dump()


@pytest.fixture(scope="session")
def tsa_pki() -> TsaPki:
    """Throwaway root CA and TSA shared across the session."""
    return TsaPki()


@pytest.fixture(scope="session")
def other_pki() -> TsaPki:
    """A second, unrelated PKI for trust failures."""
    return TsaPki()


@pytest.fixture
def trust_files(tmp_path, tsa_pki):
    """CA bundle and untrusted TSA certificate written as PEM files."""
    ca_bundle = tmp_path / "tsa_bundle.pem"
    ca_bundle.write_bytes(tsa_pki.root_pem())
    untrusted = tmp_path / "tsacert.pem"
    untrusted.write_bytes(tsa_pki.tsa_pem())
    return ca_bundle, untrusted


@pytest.fixture
def sample_pdf() -> bytes:
    """Minimal valid PDF bytes for testing."""
    return (
        b"%PDF-1.4\n"
        b"1 0 obj<</Type/Catalog/Pages 2 0 R>>endobj\n"
        b"2 0 obj<</Type/Pages/Kids[3 0 R]/Count 1>>endobj\n"
        b"3 0 obj<</Type/Page/MediaBox[0 0 612 792]/Parent 2 0 R>>endobj\n"
        b"xref\n0 4\n"
        b"0000000000 65535 f \n"
        b"0000000009 00000 n \n"
        b"0000000058 00000 n \n"
        b"0000000115 00000 n \n"
        b"trailer<</Size 4/Root 1 0 R>>\n"
        b"startxref\n190\n%%EOF"
    )


@pytest.fixture
def sample_digest(sample_pdf) -> ArtifactDigest:
    return ArtifactDigest(value=hashlib.sha256(sample_pdf).digest())


@pytest.fixture
def make_submission(sample_digest):
    """Factory for SubmissionInput with the deadline at ``DEADLINE``."""

    def _make(**overrides) -> SubmissionInput:
        fields = {
            "course_id": "course-1",
            "student_id": "student-1",
            "file_name": "essay.pdf",
            "digest": sample_digest,
            "server_received_at": DEADLINE - timedelta(minutes=5),
            "deadline": DEADLINE,
        }
        fields.update(overrides)
        return SubmissionInput(**fields)

    return _make


@pytest.fixture
def tmp_store(tmp_path):
    """Create a temporary SubmissionStore."""
    from subseal.store import SubmissionStore

    return SubmissionStore(base_dir=tmp_path / "data")
