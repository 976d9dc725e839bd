"""RFC 3161 timestamping client for SubSeal.

Anchors the content digest of an uploaded artifact to a trusted Time Stamping
Authority (TSA). The TSA's signed token proves that the digest was presented
at a specific instant; that instant, once verified, is the strongest evidence
of when a submission's content existed.

The round trip is split into small steps so each can be tested on its own:

1. :func:`create_timestamp_request` — DER ``TimeStampReq`` for a digest.
2. :func:`submit_timestamp` — HTTP POST to the TSA with a hard timeout.
3. :func:`parse_timestamp_response` — decode the ``TimeStampResp``.
4. :func:`verify_timestamp_token` — fail-closed check of imprint, CMS
   signature and certificate chain; returns the generation time in UTC.

:class:`TimestampAuthorityClient` chains the four steps and collapses every
failure into a :class:`~subseal.models_timestamp.TsaOutcome`. It never
retries; retry policy belongs to the caller.

Usage::

    from subseal.timestamp import TimestampAuthorityClient
    from subseal.trust import TrustStore

    store = TrustStore.from_config(config)
    client = TimestampAuthorityClient(config, store)
    outcome = client.request_timestamp(digest)
    if outcome.succeeded:
        print(f"Verified at {outcome.time.isoformat()}")
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import time
import urllib.error
import urllib.request
from datetime import datetime
from pathlib import Path
from typing import Optional, Protocol

from asn1crypto import algos, cms, core, tsp
from asn1crypto import x509 as asn1_x509
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.serialization import Encoding

from .errors import TsaError, TsaMalformedResponse, TsaUnreachable, TsaVerificationFailed
from .models import ArtifactDigest
from .models_timestamp import (
    HashAlgorithm,
    ParsedTimestampResponse,
    TsaConfig,
    TsaOutcome,
    as_utc,
)
from .trust import TrustStore

logger = logging.getLogger("subseal.timestamp")

_CRYPTO_HASHES: dict[str, type[hashes.HashAlgorithm]] = {
    "sha1": hashes.SHA1,
    "sha224": hashes.SHA224,
    "sha256": hashes.SHA256,
    "sha384": hashes.SHA384,
    "sha512": hashes.SHA512,
}

READ_CHUNK_SIZE = 16 * 1024
MAX_RESPONSE_BYTES = 1024 * 1024


class _TimeStampResp(tsp.TimeStampResp):
    """TimeStampResp whose token may be absent, as it is on refusals."""

    _fields = [
        ("status", tsp.PKIStatusInfo),
        ("time_stamp_token", cms.ContentInfo, {"optional": True}),
    ]
    _field_map = None


class TimestampAuthority(Protocol):
    """Anything that can attest a digest with a verified instant."""

    def request_timestamp(self, digest: ArtifactDigest) -> TsaOutcome:
        ...


# ---------------------------------------------------------------------------
# Request creation
# ---------------------------------------------------------------------------


def create_timestamp_request(
    digest: bytes,
    hash_algorithm: HashAlgorithm = HashAlgorithm.SHA256,
    request_cert: bool = True,
    nonce: Optional[int] = None,
) -> bytes:
    """Build a DER-encoded RFC 3161 TimeStampReq for a precomputed digest.

    No nonce is sent unless one is given: the value being protected is the
    authenticity of the returned time, not the freshness of the query.

    Args:
        digest: Raw digest bytes of the artifact.
        hash_algorithm: Algorithm that produced ``digest``.
        request_cert: Ask the TSA to embed its signing certificate.
        nonce: Optional nonce to include.

    Returns:
        DER-encoded TimeStampReq bytes.

    Raises:
        ValueError: If the digest length does not match the algorithm.
    """
    if len(digest) != hash_algorithm.digest_size:
        raise ValueError(
            f"{hash_algorithm.value} digest must be {hash_algorithm.digest_size} bytes"
        )

    fields = {
        "version": 1,
        "message_imprint": tsp.MessageImprint(
            {
                "hash_algorithm": algos.DigestAlgorithm(
                    {"algorithm": hash_algorithm.value, "parameters": core.Null()}
                ),
                "hashed_message": digest,
            }
        ),
        "cert_req": request_cert,
    }
    if nonce is not None:
        fields["nonce"] = nonce
    return tsp.TimeStampReq(fields).dump()


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------


def submit_timestamp(request: bytes, config: TsaConfig) -> bytes:
    """POST a TimeStampReq to the configured TSA and return the raw reply.

    ``timeout_seconds`` bounds the whole exchange, not each socket read: a
    TSA that trickles its reply is cut off once the budget is spent. Replies
    larger than ``MAX_RESPONSE_BYTES`` are refused.

    Raises:
        TsaUnreachable: On network failure, timeout, an oversized reply or a
            non-200 status.
    """
    deadline = time.monotonic() + config.timeout_seconds
    req = urllib.request.Request(
        config.tsa_url,
        data=request,
        headers={
            "Content-Type": "application/timestamp-query",
            "Accept": "application/timestamp-reply",
        },
        method="POST",
    )
    try:
        with urllib.request.urlopen(req, timeout=config.timeout_seconds) as resp:
            if resp.status != 200:
                raise TsaUnreachable(
                    f"TSA {config.tsa_url} answered HTTP {resp.status}"
                )
            return _read_bounded(resp, deadline, config)
    except urllib.error.HTTPError as exc:
        raise TsaUnreachable(f"TSA {config.tsa_url} answered HTTP {exc.code}") from exc
    except (urllib.error.URLError, TimeoutError, OSError) as exc:
        raise TsaUnreachable(f"TSA request to {config.tsa_url} failed: {exc}") from exc


def _read_bounded(resp, deadline: float, config: TsaConfig) -> bytes:
    body = bytearray()
    while True:
        if time.monotonic() > deadline:
            raise TsaUnreachable(
                f"TSA {config.tsa_url} did not answer within {config.timeout_seconds}s"
            )
        # read1 returns whatever one socket read yields, so the deadline is
        # rechecked between trickled chunks.
        chunk = resp.read1(READ_CHUNK_SIZE)
        if not chunk:
            return bytes(body)
        body.extend(chunk)
        if len(body) > MAX_RESPONSE_BYTES:
            raise TsaUnreachable(
                f"TSA {config.tsa_url} reply exceeds {MAX_RESPONSE_BYTES} bytes"
            )


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def parse_timestamp_response(response_der: bytes) -> ParsedTimestampResponse:
    """Decode a TimeStampResp and extract the TSTInfo metadata.

    Nothing here is trusted yet; the values only become evidence once
    :func:`verify_timestamp_token` succeeds.

    Raises:
        TsaMalformedResponse: If the reply is not a granted, well-formed
            response carrying a TimeStampToken.
    """
    try:
        resp = _TimeStampResp.load(response_der)
        status_info = resp["status"]
        status = status_info["status"].native

        status_string = None
        free_text = status_info["status_string"]
        if not isinstance(free_text, core.Void) and free_text.native:
            status_string = "; ".join(free_text.native)

        if status not in ("granted", "granted_with_mods"):
            raise TsaMalformedResponse(
                f"TSA refused the request (status {status}: {status_string or 'no detail'})"
            )

        token = resp["time_stamp_token"]
        if isinstance(token, core.Void):
            raise TsaMalformedResponse("Granted response carries no TimeStampToken")

        tst_info, _ = _unwrap_token(token)
        return _describe(status, status_string, tst_info, token.dump())
    except TsaMalformedResponse:
        raise
    except (ValueError, TypeError, KeyError, IndexError) as exc:
        raise TsaMalformedResponse(f"Cannot decode TSA response: {exc}") from exc


def _unwrap_token(token: cms.ContentInfo) -> tuple[tsp.TSTInfo, cms.SignedData]:
    if token["content_type"].native != "signed_data":
        raise TsaMalformedResponse(
            f"TimeStampToken is {token['content_type'].native}, expected signed_data"
        )
    signed_data = token["content"]
    encap = signed_data["encap_content_info"]
    if encap["content_type"].native != "tst_info":
        raise TsaMalformedResponse(
            f"Encapsulated content is {encap['content_type'].native}, expected tst_info"
        )
    econtent = encap["content"]
    if isinstance(econtent, core.Void):
        raise TsaMalformedResponse("TimeStampToken has no encapsulated TSTInfo")
    return tsp.TSTInfo.load(bytes(econtent)), signed_data


def _describe(
    status: str,
    status_string: Optional[str],
    tst_info: tsp.TSTInfo,
    token_der: bytes,
) -> ParsedTimestampResponse:
    imprint = tst_info["message_imprint"]

    accuracy = None
    accuracy_node = tst_info["accuracy"]
    if not isinstance(accuracy_node, core.Void):
        secs = float(accuracy_node["seconds"].native or 0)
        millis = float(accuracy_node["millis"].native or 0)
        micros = float(accuracy_node["micros"].native or 0)
        accuracy = secs + millis / 1000.0 + micros / 1_000_000.0

    tsa_name = None
    tsa_node = tst_info["tsa"]
    if not isinstance(tsa_node, core.Void):
        if tsa_node.name == "directory_name":
            tsa_name = tsa_node.chosen.human_friendly
        else:
            tsa_name = str(tsa_node.native)

    gen_time = tst_info["gen_time"].native
    if not isinstance(gen_time, datetime):
        raise TsaMalformedResponse(f"Unusable genTime in token: {gen_time!r}")

    return ParsedTimestampResponse(
        status=status,
        status_string=status_string,
        gen_time=as_utc(gen_time),
        serial_number=int(tst_info["serial_number"].native),
        policy_id=tst_info["policy"].dotted,
        hash_algorithm=imprint["hash_algorithm"]["algorithm"].native,
        message_imprint=imprint["hashed_message"].native.hex(),
        accuracy_seconds=accuracy,
        tsa_name=tsa_name,
        token_der=token_der,
    )


def load_timestamp_response(path: str | Path) -> ParsedTimestampResponse:
    """Load and parse a saved ``.tsr`` response from disk.

    Raises:
        FileNotFoundError: If the file does not exist.
        TsaMalformedResponse: If it does not hold a granted response.
    """
    tsr_path = Path(path).resolve()
    if not tsr_path.exists():
        raise FileNotFoundError(f"TSR file not found: {path}")
    return parse_timestamp_response(tsr_path.read_bytes())


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


def verify_timestamp_token(
    parsed: ParsedTimestampResponse,
    digest: ArtifactDigest,
    trust_store: TrustStore,
) -> datetime:
    """Verify a parsed token against the requested digest and trust store.

    Checks, failing closed on the first problem:

    1. The token's message imprint names the same algorithm and digest.
    2. The signed attributes bind the TSTInfo (content type and digest).
    3. The signer certificate is found and matches any ESS signing
       certificate attribute.
    4. The signature over the signed attributes is valid.
    5. The signer chains to a trust anchor at the token's generation time.

    Returns:
        The token's generation time, normalized to UTC.

    Raises:
        TsaVerificationFailed: If any check fails.
        TsaMalformedResponse: If the token cannot be decoded.
    """
    if not parsed.is_granted or parsed.token_der is None:
        raise TsaMalformedResponse("Response carries no granted token")

    if parsed.hash_algorithm != digest.algorithm.value:
        raise TsaVerificationFailed(
            f"Token imprint uses {parsed.hash_algorithm}, requested {digest.algorithm.value}"
        )
    if parsed.message_imprint is None or not hmac.compare_digest(
        parsed.message_imprint.lower(), digest.hex
    ):
        raise TsaVerificationFailed("Token message imprint does not match the digest")

    try:
        token = cms.ContentInfo.load(parsed.token_der)
        tst_info, signed_data = _unwrap_token(token)
        signer_info = _single_signer(signed_data)
        _check_signed_attributes(signer_info, bytes(signed_data["encap_content_info"]["content"]))
        embedded = _embedded_certificates(signed_data)
        signer_asn1 = _find_signer_certificate(signer_info, embedded, trust_store)
        _check_signing_certificate_attr(signer_info, signer_asn1)

        signer = x509.load_der_x509_certificate(signer_asn1.dump())
        _check_signature(signer_info, signer)

        gen_time = as_utc(tst_info["gen_time"].native)
        intermediates = [x509.load_der_x509_certificate(c.dump()) for c in embedded]
    except TsaError:
        raise
    except (ValueError, TypeError, KeyError, IndexError) as exc:
        raise TsaMalformedResponse(f"Cannot decode TimeStampToken: {exc}") from exc

    trust_store.verify_chain(signer, at=gen_time, intermediates=intermediates)

    logger.info(
        "Verified timestamp token serial %s at %s",
        parsed.serial_number,
        gen_time.isoformat(),
    )
    return gen_time


def _single_signer(signed_data: cms.SignedData) -> cms.SignerInfo:
    signer_infos = signed_data["signer_infos"]
    if len(signer_infos) != 1:
        raise TsaVerificationFailed(
            f"Token must have exactly one signer, found {len(signer_infos)}"
        )
    return signer_infos[0]


def _signed_attr_values(signer_info: cms.SignerInfo) -> dict[str, object]:
    signed_attrs = signer_info["signed_attrs"]
    if isinstance(signed_attrs, core.Void) or len(signed_attrs) == 0:
        raise TsaVerificationFailed("Token signer has no signed attributes")
    values: dict[str, object] = {}
    for attr in signed_attrs:
        if len(attr["values"]) == 0:
            raise TsaMalformedResponse(
                f"Signed attribute {attr['type'].native} carries no value"
            )
        values[attr["type"].native] = attr["values"][0]
    return values


def _check_signed_attributes(signer_info: cms.SignerInfo, econtent: bytes) -> None:
    attrs = _signed_attr_values(signer_info)

    content_type = attrs.get("content_type")
    if content_type is None or content_type.native != "tst_info":
        raise TsaVerificationFailed("Signed content-type attribute is not id-ct-TSTInfo")

    message_digest = attrs.get("message_digest")
    if message_digest is None:
        raise TsaVerificationFailed("Signed attributes lack a message-digest")

    digest_name = signer_info["digest_algorithm"]["algorithm"].native
    expected = hashlib.new(digest_name, econtent).digest()
    if not hmac.compare_digest(message_digest.native, expected):
        raise TsaVerificationFailed("message-digest does not match the TSTInfo")


def _embedded_certificates(signed_data: cms.SignedData) -> list[asn1_x509.Certificate]:
    certificates = signed_data["certificates"]
    if isinstance(certificates, core.Void):
        return []
    return [choice.chosen for choice in certificates if choice.name == "certificate"]


def _find_signer_certificate(
    signer_info: cms.SignerInfo,
    embedded: list[asn1_x509.Certificate],
    trust_store: TrustStore,
) -> asn1_x509.Certificate:
    candidates = list(embedded) + [
        asn1_x509.Certificate.load(c.public_bytes(Encoding.DER))
        for c in trust_store.untrusted
    ]
    sid = signer_info["sid"]
    for cert in candidates:
        if sid.name == "issuer_and_serial_number":
            ias = sid.chosen
            if cert.serial_number == ias["serial_number"].native and cert.issuer == ias["issuer"]:
                return cert
        elif sid.name == "subject_key_identifier":
            if cert.key_identifier == sid.chosen.native:
                return cert
    raise TsaVerificationFailed("Signer certificate not found in token or untrusted set")


def _first_ess_cert(attr_value):
    certs = attr_value["certs"]
    if len(certs) == 0:
        raise TsaMalformedResponse("ESS signing-certificate attribute lists no certificate")
    return certs[0]


def _check_signing_certificate_attr(
    signer_info: cms.SignerInfo, signer: asn1_x509.Certificate
) -> None:
    attrs = _signed_attr_values(signer_info)
    cert_der = signer.dump()

    if "signing_certificate_v2" in attrs:
        ess = _first_ess_cert(attrs["signing_certificate_v2"])
        hash_name = ess["hash_algorithm"]["algorithm"].native
        expected = hashlib.new(hash_name, cert_der).digest()
    elif "signing_certificate" in attrs:
        ess = _first_ess_cert(attrs["signing_certificate"])
        expected = hashlib.sha1(cert_der).digest()
    else:
        return

    if not hmac.compare_digest(ess["cert_hash"].native, expected):
        raise TsaVerificationFailed("ESS signing-certificate hash does not match signer")


def _check_signature(signer_info: cms.SignerInfo, signer: x509.Certificate) -> None:
    # Signed attributes are signed as a universal SET OF, not the [0] tag they
    # carry inside SignerInfo.
    signed_bytes = b"\x31" + signer_info["signed_attrs"].dump()[1:]
    signature = signer_info["signature"].native

    digest_name = signer_info["digest_algorithm"]["algorithm"].native
    hash_cls = _CRYPTO_HASHES.get(digest_name)
    if hash_cls is None:
        raise TsaVerificationFailed(f"Unsupported signer digest algorithm {digest_name}")

    sig_algorithm = signer_info["signature_algorithm"]
    try:
        sig_algo = sig_algorithm.signature_algo
    except ValueError:
        sig_algo = None

    public_key = signer.public_key()
    try:
        if isinstance(public_key, rsa.RSAPublicKey):
            if sig_algo == "rsassa_pss":
                params = sig_algorithm["parameters"]
                pss_hash = _CRYPTO_HASHES[params["hash_algorithm"]["algorithm"].native]()
                pad = padding.PSS(
                    mgf=padding.MGF1(pss_hash),
                    salt_length=params["salt_length"].native,
                )
                public_key.verify(signature, signed_bytes, pad, pss_hash)
            else:
                public_key.verify(signature, signed_bytes, padding.PKCS1v15(), hash_cls())
        elif isinstance(public_key, ec.EllipticCurvePublicKey):
            public_key.verify(signature, signed_bytes, ec.ECDSA(hash_cls()))
        else:
            raise TsaVerificationFailed(
                f"Unsupported TSA key type {type(public_key).__name__}"
            )
    except InvalidSignature as exc:
        raise TsaVerificationFailed("Token signature is invalid") from exc


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class TimestampAuthorityClient:
    """RFC 3161 client bound to one TSA endpoint and one trust store.

    The trust store is loaded once by the application and shared read-only
    between concurrent requests.

    Args:
        config: Endpoint, timeout and algorithm settings.
        trust_store: Anchors and untrusted TSA certificates.
    """

    def __init__(self, config: TsaConfig, trust_store: TrustStore) -> None:
        self.config = config
        self.trust_store = trust_store

    @property
    def tsa_url(self) -> str:
        return self.config.tsa_url

    def request_timestamp(self, digest: ArtifactDigest) -> TsaOutcome:
        """Obtain a verified instant for ``digest``.

        Every failure (network, malformed reply, bad signature, imprint
        mismatch) yields a failed outcome with the error kind retained; no
        exception escapes for TSA problems.
        """
        logger.info("Submitting timestamp request for %s to %s", digest.hex[:16], self.tsa_url)
        try:
            request = create_timestamp_request(
                digest.value,
                digest.algorithm,
                request_cert=self.config.request_cert,
            )
            response_der = submit_timestamp(request, self.config)
            parsed = parse_timestamp_response(response_der)
            verified_at = verify_timestamp_token(parsed, digest, self.trust_store)
        except TsaError as exc:
            logger.warning(
                "Timestamp from %s unavailable (%s): %s",
                self.tsa_url,
                exc.kind.value,
                exc.detail,
            )
            return TsaOutcome.failed(exc.kind, exc.detail, tsa_url=self.tsa_url)

        return TsaOutcome.ok(
            verified_at,
            tsa_url=self.tsa_url,
            serial_number=parsed.serial_number,
        )
