# stack_engine/certs/issuers.py
"""Certificate issuers: local self-signed and external ACME endpoint."""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Tuple

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from stack_engine.certs.acme_client import AcmeClient
from stack_engine.core.errors import CertificateError

logger = logging.getLogger(__name__)


def generate_key(key_size: int = 2048) -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=key_size)


def key_to_pem(key: rsa.RSAPrivateKey) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


class CertificateIssuer(ABC):
    """Produces PEM certificate and key material for a hostname."""

    @abstractmethod
    def issue(self, hostname: str, now: datetime) -> Tuple[bytes, bytes]:
        """
        Issue a certificate.

        Returns:
            (cert_pem, key_pem)
        """
        pass


class SelfSignedIssuer(CertificateIssuer):
    """Local key pair and a self-signed X.509 certificate (SAN = hostname)."""

    def __init__(self, validity_days: int = 90, key_size: int = 2048):
        self.validity_days = validity_days
        self.key_size = key_size

    def issue(self, hostname: str, now: datetime) -> Tuple[bytes, bytes]:
        key = generate_key(self.key_size)
        name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, hostname)])

        # X.509 validity has second precision
        not_before = now.replace(microsecond=0)
        certificate = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(not_before)
            .not_valid_after(not_before + timedelta(days=self.validity_days))
            .add_extension(x509.SubjectAlternativeName([x509.DNSName(hostname)]), critical=False)
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .sign(key, hashes.SHA256())
        )

        logger.info(f"[certs] self-signed certificate issued for {hostname} ({self.validity_days}d)")
        return certificate.public_bytes(serialization.Encoding.PEM), key_to_pem(key)


class AcmeIssuer(CertificateIssuer):
    """
    Generates the key and CSR locally, then asks an ACME-capable endpoint
    to sign. The private key never leaves this host.
    """

    def __init__(self, client: AcmeClient, key_size: int = 2048):
        self.client = client
        self.key_size = key_size

    def issue(self, hostname: str, now: datetime) -> Tuple[bytes, bytes]:
        key = generate_key(self.key_size)
        csr = (
            x509.CertificateSigningRequestBuilder()
            .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, hostname)]))
            .add_extension(x509.SubjectAlternativeName([x509.DNSName(hostname)]), critical=False)
            .sign(key, hashes.SHA256())
        )
        csr_pem = csr.public_bytes(serialization.Encoding.PEM)

        cert_pem = self.client.issue(hostname, csr_pem)
        self._check_matches(hostname, cert_pem, key)
        logger.info(f"[certs] ACME certificate issued for {hostname}")
        return cert_pem, key_to_pem(key)

    @staticmethod
    def _check_matches(hostname: str, cert_pem: bytes, key: rsa.RSAPrivateKey) -> None:
        """The signed certificate must carry our key and name `hostname`."""
        try:
            certificate = x509.load_pem_x509_certificate(cert_pem)
        except ValueError as e:
            raise CertificateError(f"{hostname}: ACME endpoint returned an unreadable certificate: {e}") from e

        spki = serialization.PublicFormat.SubjectPublicKeyInfo
        expected = key.public_key().public_bytes(serialization.Encoding.DER, spki)
        if certificate.public_key().public_bytes(serialization.Encoding.DER, spki) != expected:
            raise CertificateError(f"{hostname}: ACME endpoint returned a certificate for a different key")

        try:
            san = certificate.extensions.get_extension_for_class(x509.SubjectAlternativeName)
            names = san.value.get_values_for_type(x509.DNSName)
        except x509.ExtensionNotFound:
            names = []
        if hostname not in names:
            raise CertificateError(f"{hostname}: ACME certificate does not cover {hostname} (names: {names})")
