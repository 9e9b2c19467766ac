# stack_engine/certs/acme_client.py
"""HTTP client for an external ACME-capable issuance endpoint."""

import logging
from abc import ABC, abstractmethod

import requests

from stack_engine.core.errors import CertificateError

logger = logging.getLogger(__name__)


class AcmeClient(ABC):
    @abstractmethod
    def issue(self, hostname: str, csr_pem: bytes) -> bytes:
        """Submit a CSR, return the signed certificate as PEM."""
        pass


class HttpAcmeClient(AcmeClient):
    """
    Request/response contract:

        POST {endpoint}/issue
        {"domain": ..., "csr": <PEM>, "contact": ...}
        -> 200 {"certificate": <PEM>}

    The ACME protocol itself (challenges, account keys) is handled by the
    endpoint.
    """

    def __init__(self, endpoint: str, contact_email: str, timeout: float = 60.0):
        self.endpoint = endpoint.rstrip("/")
        self.contact_email = contact_email
        self.timeout = timeout
        self.session = requests.Session()

    def issue(self, hostname: str, csr_pem: bytes) -> bytes:
        url = f"{self.endpoint}/issue"
        payload = {
            "domain": hostname,
            "csr": csr_pem.decode("ascii"),
            "contact": self.contact_email,
        }

        try:
            response = self.session.post(url, json=payload, timeout=self.timeout)
            response.raise_for_status()
            certificate = response.json()["certificate"]
        except requests.exceptions.RequestException as e:
            raise CertificateError(f"{hostname}: ACME endpoint request failed: {e}") from e
        except (KeyError, ValueError) as e:
            raise CertificateError(f"{hostname}: malformed ACME endpoint response: {e}") from e

        logger.debug(f"[acme] {hostname} signed by {self.endpoint}")
        return certificate.encode("ascii")
