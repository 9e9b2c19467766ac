# stack_engine/certs/manager.py
"""
Certificate Manager - issues, caches and renews per-domain certificates.
"""

import logging
import threading
from concurrent.futures import Future
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Mapping, Optional

from stack_engine.certs.issuers import CertificateIssuer
from stack_engine.certs.storage import CertificateStore
from stack_engine.core.errors import CertificateError
from stack_engine.core.events import EventEmitter, NullEventEmitter
from stack_engine.core.events_model import StackEvent
from stack_engine.core.models import Certificate, CertificateMode, utcnow

logger = logging.getLogger(__name__)


class CertificateManager:
    """
    Hands out the current Certificate for a domain.

    Certificates are immutable: a renewal stores a new record and swaps it
    in under the lock, so readers see either the old or the new one.
    Concurrent `ensure` calls for one domain share a single issuance.
    """

    def __init__(
        self,
        store: CertificateStore,
        issuers: Mapping[CertificateMode, CertificateIssuer],
        renewal_fraction: float = 1 / 3,
        clock: Callable[[], datetime] = utcnow,
        emitter: Optional[EventEmitter] = None,
    ):
        if not 0 < renewal_fraction < 1:
            raise ValueError("renewal_fraction must be between 0 and 1")

        self._store = store
        self._issuers = dict(issuers)
        self.renewal_fraction = renewal_fraction
        self._clock = clock
        self._emitter = emitter or NullEventEmitter()

        self._lock = threading.Lock()
        self._current: Dict[str, Certificate] = {}
        self._modes: Dict[str, CertificateMode] = {}
        self._in_flight: Dict[str, Future] = {}
        self._renewal_errors: Dict[str, str] = {}

    @property
    def store(self) -> CertificateStore:
        return self._store

    def use_storage_root(self, storage_root: Path) -> None:
        """Point the manager at another storage root (new spec generation)."""
        with self._lock:
            if self._store.root == Path(storage_root):
                return
            logger.info(f"[certs] storage root changed to {storage_root}")
            self._store = CertificateStore(storage_root)
            self._current.clear()

    # -------------------------
    # PUBLIC API
    # -------------------------

    def ensure(self, domain: str, mode: CertificateMode) -> Certificate:
        """
        Return a valid certificate for `domain`, issuing one if needed.

        Idempotent: while the current certificate is outside its renewal
        window the same object is returned.

        Raises:
            CertificateError: If issuance or storage fails
        """
        now = self._clock()
        with self._lock:
            self._modes[domain] = mode
            current = self._current.get(domain)
            if current is not None and self._fresh(current, mode, now):
                return current

            future = self._in_flight.get(domain)
            leader = future is None
            if leader:
                future = Future()
                self._in_flight[domain] = future

        if not leader:
            logger.debug(f"[certs] {domain}: waiting for in-flight issuance")
            return future.result()

        try:
            certificate = self._obtain(domain, mode, current, now)
        except BaseException as e:
            if isinstance(e, CertificateError):
                with self._lock:
                    if domain in self._current:
                        self._renewal_errors[domain] = str(e)
            future.set_exception(e)
            raise
        else:
            with self._lock:
                self._renewal_errors.pop(domain, None)
            future.set_result(certificate)
            return certificate
        finally:
            with self._lock:
                self._in_flight.pop(domain, None)

    def revalidate(self, domain: str) -> Certificate:
        """
        Re-read storage and renew if the certificate is due.

        Raises:
            CertificateError: If the domain was never ensured or renewal fails
        """
        with self._lock:
            mode = self._modes.get(domain)
        if mode is None:
            raise CertificateError(f"{domain}: no certificate has been requested for this domain")

        try:
            stored = self._store.load(domain)
        except CertificateError as e:
            logger.warning(f"[certs] {domain}: {e}, will reissue")
            stored = None

        with self._lock:
            current = self._current.get(domain)
            if stored is None:
                self._current.pop(domain, None)
            elif stored.mode == mode and (current is None or stored.serial != current.serial):
                self._current[domain] = stored

        return self.ensure(domain, mode)

    def current(self, domain: str) -> Optional[Certificate]:
        with self._lock:
            return self._current.get(domain)

    def domains(self) -> Dict[str, CertificateMode]:
        with self._lock:
            return dict(self._modes)

    def usable(self, domain: str) -> Optional[Certificate]:
        """The current certificate while it has not expired, due for renewal or not."""
        with self._lock:
            current = self._current.get(domain)
        if current is None or current.is_expired(self._clock()):
            return None
        return current

    def renewal_error(self, domain: str) -> Optional[str]:
        """Why the last renewal of a still-held certificate failed, if it did."""
        with self._lock:
            return self._renewal_errors.get(domain)

    # -------------------------
    # INTERNALS
    # -------------------------

    def _fresh(self, certificate: Certificate, mode: CertificateMode, now: datetime) -> bool:
        return certificate.mode == mode and not certificate.needs_renewal(now, self.renewal_fraction)

    def _obtain(
        self,
        domain: str,
        mode: CertificateMode,
        previous: Optional[Certificate],
        now: datetime,
    ) -> Certificate:
        # A usable certificate from an earlier run is adopted as is
        if previous is None:
            try:
                stored = self._store.load(domain)
            except CertificateError as e:
                logger.warning(f"[certs] {domain}: {e}, will reissue")
                stored = None
            if stored is not None and self._fresh(stored, mode, now):
                logger.info(f"[certs] {domain}: using stored certificate serial={stored.serial}")
                with self._lock:
                    self._current[domain] = stored
                return stored
            previous = stored
            if stored is not None and stored.mode == mode:
                # keeps serving while the renewal below is attempted
                with self._lock:
                    self._current[domain] = stored

        issuer = self._issuers.get(mode)
        if issuer is None:
            raise CertificateError(f"{domain}: no issuer configured for {mode.value} certificates")

        try:
            cert_pem, key_pem = issuer.issue(domain, now)
        except CertificateError:
            raise
        except Exception as e:
            raise CertificateError(f"{domain}: issuance failed: {e}") from e

        certificate = self._store.save(domain, mode, cert_pem, key_pem)

        with self._lock:
            self._current[domain] = certificate

        renewed = previous is not None
        logger.info(
            f"[certs] {domain}: certificate {'renewed' if renewed else 'issued'} "
            f"serial={certificate.serial} not_after={certificate.not_after.isoformat()}"
        )
        self._emitter.emit([StackEvent.certificate_issued(certificate, renewed=renewed)])
        return certificate
