# stack_engine/drivers/secrets.py
"""PDS secrets: generated once per service, then reused across applies."""

import json
import logging
import os
import secrets
import string
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict

from cryptography.hazmat.primitives.asymmetric import ec

from stack_engine.core.errors import DriverError

logger = logging.getLogger(__name__)


ALPHANUMERIC = string.ascii_letters + string.digits


def random_string(length: int) -> str:
    return "".join(secrets.choice(ALPHANUMERIC) for _ in range(length))


def generate_rotation_key() -> str:
    """secp256k1 private key as 64 hex characters."""
    key = ec.generate_private_key(ec.SECP256K1())
    return format(key.private_numbers().private_value, "064x")


@dataclass(frozen=True)
class PdsSecrets:
    jwt_secret: str
    admin_password: str
    plc_rotation_key: str

    @classmethod
    def generate(cls) -> "PdsSecrets":
        return cls(
            jwt_secret=random_string(32),
            admin_password=random_string(16),
            plc_rotation_key=generate_rotation_key(),
        )

    def as_env(self) -> Dict[str, str]:
        return {
            "PDS_JWT_SECRET": self.jwt_secret,
            "PDS_ADMIN_PASSWORD": self.admin_password,
            "PDS_PLC_ROTATION_KEY_K256_PRIVATE_KEY_HEX": self.plc_rotation_key,
        }


def secrets_path(storage_root: Path, service_id: str) -> Path:
    return Path(storage_root) / "secrets" / f"{service_id}.json"


def load_or_create(storage_root: Path, service_id: str) -> PdsSecrets:
    """
    Read the persisted secrets for `service_id`, generating them on first use.

    Regenerating would lock the PDS out of its own accounts, so an
    unreadable file is an error rather than a reason to start over.
    """
    path = secrets_path(storage_root, service_id)

    if path.exists():
        try:
            return PdsSecrets(**json.loads(path.read_text(encoding="utf-8")))
        except (OSError, ValueError, TypeError) as e:
            raise DriverError(f"{service_id}: cannot read secrets from {path}: {e}") from e

    created = PdsSecrets.generate()
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(asdict(created), f, indent=2)
    except FileExistsError:
        return load_or_create(storage_root, service_id)
    except OSError as e:
        raise DriverError(f"{service_id}: cannot write secrets to {path}: {e}") from e

    logger.info(f"[pds] generated secrets for {service_id} in {path}")
    return created
