"""Trust anchors for timestamp token verification.

The store holds two sets of certificates, both loaded once at startup:

* **anchors** — root and intermediate CAs the operator trusts (the CA bundle);
* **untrusted** — the TSA's own signing certificate and any helpers, used to
  complete a chain but never accepted as an endpoint on their own.

This is deliberately not a general PKI validator: it walks issuer links,
checks signatures and validity windows at the token's generation time, and
requires the ``timeStamping`` extended key usage on the signer.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional, Sequence

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.x509.oid import ExtendedKeyUsageOID

from .errors import TrustStoreError, TsaVerificationFailed
from .models_timestamp import TsaConfig, as_utc

logger = logging.getLogger("subseal.trust")

MAX_CHAIN_DEPTH = 8


def load_pem_certificates(source: bytes | str | Path) -> list[x509.Certificate]:
    """Load every certificate from PEM bytes or a PEM file.

    Raises:
        TrustStoreError: If the file is unreadable or holds no certificate.
    """
    if isinstance(source, bytes):
        data = source
        label = "<memory>"
    else:
        path = Path(source).expanduser()
        label = str(path)
        try:
            data = path.read_bytes()
        except OSError as exc:
            raise TrustStoreError(f"Cannot read certificates from {path}: {exc}") from exc

    try:
        certs = x509.load_pem_x509_certificates(data)
    except ValueError as exc:
        raise TrustStoreError(f"No PEM certificates in {label}: {exc}") from exc
    return certs


def _fingerprint(cert: x509.Certificate) -> bytes:
    return cert.fingerprint(hashes.SHA256())


class TrustStore:
    """Read-only set of trust anchors plus untrusted chain material.

    Args:
        anchors: Certificates accepted as chain endpoints.
        untrusted: Certificates usable as chain links or as the signer.
    """

    def __init__(
        self,
        anchors: Iterable[x509.Certificate],
        untrusted: Iterable[x509.Certificate] = (),
    ) -> None:
        self._anchors = tuple(anchors)
        self._untrusted = tuple(untrusted)
        if not self._anchors:
            raise TrustStoreError("Trust store needs at least one anchor certificate")
        self._anchor_fingerprints = frozenset(_fingerprint(c) for c in self._anchors)

    @classmethod
    def from_files(
        cls,
        ca_bundle: str | Path,
        untrusted: Optional[str | Path] = None,
    ) -> "TrustStore":
        anchors = load_pem_certificates(ca_bundle)
        extra = load_pem_certificates(untrusted) if untrusted else []
        logger.info(
            "Loaded %d trust anchor(s) and %d untrusted certificate(s)",
            len(anchors),
            len(extra),
        )
        return cls(anchors, extra)

    @classmethod
    def from_config(cls, config: TsaConfig) -> "TrustStore":
        if not config.ca_bundle_path:
            raise TrustStoreError("TsaConfig.ca_bundle_path is not set")
        return cls.from_files(config.ca_bundle_path, config.untrusted_cert_path)

    @property
    def anchors(self) -> tuple[x509.Certificate, ...]:
        return self._anchors

    @property
    def untrusted(self) -> tuple[x509.Certificate, ...]:
        return self._untrusted

    def is_anchor(self, cert: x509.Certificate) -> bool:
        return _fingerprint(cert) in self._anchor_fingerprints

    # ------------------------------------------------------------------
    # Chain validation
    # ------------------------------------------------------------------

    def verify_chain(
        self,
        signer: x509.Certificate,
        at: datetime,
        intermediates: Sequence[x509.Certificate] = (),
    ) -> list[x509.Certificate]:
        """Validate the TSA signer certificate up to a trust anchor.

        Args:
            signer: The certificate whose key signed the token.
            at: Instant the chain must be valid at (the token's gen time).
            intermediates: Extra certificates shipped inside the token.

        Returns:
            The chain from signer to anchor, inclusive.

        Raises:
            TsaVerificationFailed: If no valid path to an anchor exists.
        """
        at = as_utc(at)
        _require_timestamping_usage(signer)

        pool = [*intermediates, *self._untrusted]
        chain = [signer]
        current = signer
        for _ in range(MAX_CHAIN_DEPTH):
            _check_validity(current, at)
            if self.is_anchor(current):
                return chain

            anchor = _find_issuer(current, self._anchors)
            if anchor is not None:
                _check_validity(anchor, at)
                chain.append(anchor)
                return chain

            seen = {_fingerprint(c) for c in chain}
            issuer = _find_issuer(
                current,
                [c for c in pool if _fingerprint(c) not in seen and _is_ca(c)],
            )
            if issuer is None:
                raise TsaVerificationFailed(
                    f"No trusted issuer found for {current.subject.rfc4514_string()}"
                )
            chain.append(issuer)
            current = issuer

        raise TsaVerificationFailed("Certificate chain exceeds maximum depth")


def _find_issuer(
    cert: x509.Certificate, candidates: Iterable[x509.Certificate]
) -> Optional[x509.Certificate]:
    for candidate in candidates:
        if candidate.subject != cert.issuer:
            continue
        try:
            cert.verify_directly_issued_by(candidate)
        except (ValueError, TypeError, InvalidSignature) as exc:
            logger.debug(
                "Candidate issuer %s rejected: %s",
                candidate.subject.rfc4514_string(),
                exc,
            )
            continue
        return candidate
    return None


def _is_ca(cert: x509.Certificate) -> bool:
    try:
        constraints = cert.extensions.get_extension_for_class(x509.BasicConstraints)
    except x509.ExtensionNotFound:
        return False
    return constraints.value.ca


def _check_validity(cert: x509.Certificate, at: datetime) -> None:
    if not cert.not_valid_before_utc <= at <= cert.not_valid_after_utc:
        raise TsaVerificationFailed(
            f"Certificate {cert.subject.rfc4514_string()} not valid at {at.isoformat()}"
        )


def _require_timestamping_usage(cert: x509.Certificate) -> None:
    try:
        eku = cert.extensions.get_extension_for_class(x509.ExtendedKeyUsage)
    except x509.ExtensionNotFound:
        raise TsaVerificationFailed(
            "TSA certificate has no extended key usage extension"
        ) from None
    if ExtendedKeyUsageOID.TIME_STAMPING not in eku.value:
        raise TsaVerificationFailed("TSA certificate is not issued for time stamping")
