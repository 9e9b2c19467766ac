# stack_engine/certs/storage.py
"""
Filesystem storage for issued certificates.

Layout: <storage_root>/certs/<hostname>/
    <serial>.<suffix>/{cert.pem, key.pem, meta.json}   one directory per issuance
    current -> <serial>.<suffix>                        swapped atomically
"""

import json
import logging
import os
import shutil
import tempfile
import uuid
from pathlib import Path
from typing import Optional

from cryptography import x509

from stack_engine.core.errors import CertificateError
from stack_engine.core.models import Certificate, CertificateMode

logger = logging.getLogger(__name__)


CERT_FILE = "cert.pem"
KEY_FILE = "key.pem"
META_FILE = "meta.json"
CURRENT_LINK = "current"


def _write_file(path: Path, data: bytes, mode: int = 0o644) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, mode)
    with os.fdopen(fd, "wb") as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())


def _swap_link(link: Path, target: str) -> None:
    """Point `link` at `target` with a single rename."""
    tmp = link.with_name(f".{link.name}.{uuid.uuid4().hex}")
    os.symlink(target, tmp)
    try:
        os.replace(tmp, link)
    except BaseException:
        os.unlink(tmp)
        raise


def parse_certificate(
    hostname: str,
    mode: CertificateMode,
    cert_pem: bytes,
    cert_path: Path,
    key_path: Path,
) -> Certificate:
    """Build a Certificate record from PEM bytes."""
    try:
        parsed = x509.load_pem_x509_certificate(cert_pem)
    except ValueError as e:
        raise CertificateError(f"{hostname}: unreadable certificate: {e}") from e

    return Certificate(
        domain=hostname,
        mode=mode,
        not_before=parsed.not_valid_before_utc,
        not_after=parsed.not_valid_after_utc,
        cert_path=cert_path,
        key_path=key_path,
        serial=format(parsed.serial_number, "x"),
    )


class CertificateStore:
    """Reads and writes certificate material under a storage root."""

    def __init__(self, storage_root: Path):
        self.root = Path(storage_root)

    def directory(self, hostname: str) -> Path:
        return self.root / "certs" / hostname

    def current_directory(self, hostname: str) -> Path:
        return self.directory(hostname) / CURRENT_LINK

    def save(
        self,
        hostname: str,
        mode: CertificateMode,
        cert_pem: bytes,
        key_pem: bytes,
    ) -> Certificate:
        """
        Persist a certificate/key pair and return its record.

        The pair is written into a fresh version directory which is then
        published by swapping the `current` symlink, so a reader going
        through `current` sees either the old pair or the new one.
        """
        directory = self.directory(hostname)
        current = self.current_directory(hostname)

        certificate = parse_certificate(
            hostname, mode, cert_pem, current / CERT_FILE, current / KEY_FILE,
        )

        try:
            directory.mkdir(parents=True, exist_ok=True)
            version = Path(tempfile.mkdtemp(dir=directory, prefix=f"{certificate.serial}."))
            os.chmod(version, 0o755)
            _write_file(version / KEY_FILE, key_pem, mode=0o600)
            _write_file(version / CERT_FILE, cert_pem)
            meta = {
                "domain": hostname,
                "mode": mode.value,
                "serial": certificate.serial,
                "not_before": certificate.not_before.isoformat(),
                "not_after": certificate.not_after.isoformat(),
            }
            _write_file(version / META_FILE, json.dumps(meta, indent=2).encode("utf-8"))

            previous = os.readlink(current) if current.is_symlink() else None
            _swap_link(current, version.name)
        except OSError as e:
            raise CertificateError(f"{hostname}: cannot write certificate: {e}") from e

        self._prune(directory, keep={version.name, previous})
        logger.debug(f"[certs] stored {hostname} serial={certificate.serial} in {version}")
        return certificate

    def load(self, hostname: str) -> Optional[Certificate]:
        """
        Read the stored certificate for `hostname`.

        Returns:
            Certificate, or None when no complete pair is stored

        Raises:
            CertificateError: If the stored files cannot be read or parsed
        """
        current = self.current_directory(hostname)
        cert_path = current / CERT_FILE
        key_path = current / KEY_FILE

        if not cert_path.exists() or not key_path.exists():
            return None

        mode = CertificateMode.SELF_SIGNED
        meta_path = current / META_FILE
        try:
            if meta_path.exists():
                meta = json.loads(meta_path.read_text(encoding="utf-8"))
                mode = CertificateMode(meta.get("mode", mode.value))
            cert_pem = cert_path.read_bytes()
        except (OSError, ValueError) as e:
            raise CertificateError(f"{hostname}: cannot read stored certificate: {e}") from e

        return parse_certificate(hostname, mode, cert_pem, cert_path, key_path)

    def _prune(self, directory: Path, keep: set) -> None:
        # the version a reader may still have open stays one more round
        for entry in directory.iterdir():
            if entry.name in keep or entry.is_symlink() or not entry.is_dir():
                continue
            try:
                shutil.rmtree(entry)
            except OSError as e:
                logger.warning(f"[certs] cannot remove old version {entry}: {e}")
