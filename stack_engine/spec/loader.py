# stack_engine/spec/loader.py
"""Spec Loader - turns a raw deployment document into a DeploymentSpec."""

import logging
import tomllib
from collections import Counter
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ValidationError

from stack_engine.core.errors import SpecValidationError
from stack_engine.core.models import (
    CertificateMode,
    DeploymentSpec,
    DnsRecord,
    DomainSpec,
    EnvironmentTier,
    ServiceSpec,
)
from stack_engine.spec.schemas import (
    DeploymentDocument,
    DomainDocument,
    ServiceDocument,
)

logger = logging.getLogger(__name__)


def _format_errors(label: str, error: ValidationError) -> List[str]:
    messages = []
    for item in error.errors():
        loc = ".".join(str(part) for part in item.get("loc", ()))
        where = f"{label}.{loc}" if loc else label
        messages.append(f"{where}: {item.get('msg')}")
    return messages


class SpecLoader:
    """
    Validates a deployment document.

    Every violation found is collected and raised together in one
    SpecValidationError so an operator can fix the document in one pass.
    """

    def load_file(self, path: Union[str, Path]) -> DeploymentSpec:
        """
        Read a YAML or TOML document and load it.

        Args:
            path: Document path (.yaml, .yml or .toml)

        Raises:
            SpecValidationError: If the file cannot be parsed or is invalid
        """
        path = Path(path)
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise SpecValidationError([f"cannot read {path}: {e}"]) from e

        try:
            if path.suffix.lower() == ".toml":
                raw = tomllib.loads(text)
            else:
                raw = yaml.safe_load(text)
        except (tomllib.TOMLDecodeError, yaml.YAMLError) as e:
            raise SpecValidationError([f"cannot parse {path}: {e}"]) from e

        logger.info(f"[spec] loaded document {path}")
        return self.load(raw, base_dir=path.parent)

    def load(self, raw: Any, base_dir: Optional[Path] = None) -> DeploymentSpec:
        """
        Validate a parsed document.

        Args:
            raw: Parsed document (mapping)
            base_dir: Directory relative storage_root is resolved against

        Returns:
            Immutable DeploymentSpec

        Raises:
            SpecValidationError: Listing every violation found
        """
        if not isinstance(raw, dict):
            raise SpecValidationError(["document must be a mapping"])

        try:
            document = DeploymentDocument.model_validate(raw)
        except ValidationError as e:
            raise SpecValidationError(_format_errors("document", e)) from e

        violations: List[str] = []

        domains = self._validate_items(
            document.domains, DomainDocument, "domains", "hostname", violations
        )
        services = self._validate_items(
            document.services, ServiceDocument, "services", "id", violations
        )

        self._check_domains(domains, document.environment, violations)
        self._check_services(services, domains, violations)

        if violations:
            logger.warning(f"[spec] rejected document with {len(violations)} violation(s)")
            raise SpecValidationError(violations)

        storage_root = Path(document.storage_root)
        if base_dir is not None and not storage_root.is_absolute():
            storage_root = base_dir / storage_root

        return DeploymentSpec(
            services=tuple(self._to_service(s) for s in services),
            domains=tuple(self._to_domain(d) for d in domains),
            storage_root=storage_root,
            environment=document.environment,
        )

    # -------------------------
    # STRUCTURE
    # -------------------------

    def _validate_items(
        self,
        items: List[Dict[str, Any]],
        model: type,
        section: str,
        key: str,
        violations: List[str],
    ) -> List[BaseModel]:
        valid = []
        for index, item in enumerate(items):
            name = item.get(key) if isinstance(item, dict) else None
            label = f"{section}[{index}]" + (f" ({name})" if name else "")
            try:
                valid.append(model.model_validate(item))
            except ValidationError as e:
                violations.extend(_format_errors(label, e))
        return valid

    # -------------------------
    # SEMANTICS
    # -------------------------

    def _check_domains(
        self,
        domains: List[DomainDocument],
        environment: EnvironmentTier,
        violations: List[str],
    ) -> None:
        counts = Counter(d.hostname for d in domains)
        for hostname, count in counts.items():
            if count > 1:
                violations.append(f"domain '{hostname}' is declared {count} times")

        if environment == EnvironmentTier.PRODUCTION:
            for domain in domains:
                if domain.certificate == CertificateMode.SELF_SIGNED:
                    violations.append(
                        f"domain '{domain.hostname}' uses self-signed certificates "
                        f"in the production tier"
                    )

    def _check_services(
        self,
        services: List[ServiceDocument],
        domains: List[DomainDocument],
        violations: List[str],
    ) -> None:
        counts = Counter(s.id for s in services)
        for service_id, count in counts.items():
            if count > 1:
                violations.append(f"service id '{service_id}' is declared {count} times")

        known_services = set(counts)
        known_domains = {d.hostname for d in domains}

        for service in services:
            for dep, count in Counter(service.depends_on).items():
                if count > 1:
                    violations.append(
                        f"service '{service.id}' lists dependency '{dep}' {count} times"
                    )
                if dep not in known_services:
                    violations.append(
                        f"service '{service.id}' depends on unknown service '{dep}'"
                    )
            if service.domain and service.domain not in known_domains:
                violations.append(
                    f"service '{service.id}' references undeclared domain '{service.domain}'"
                )

        # A hostname may only be shared by services joined by a direct dependency.
        by_domain: Dict[str, List[ServiceDocument]] = {}
        for service in services:
            if service.domain:
                by_domain.setdefault(service.domain, []).append(service)

        for hostname, sharing in by_domain.items():
            for i, left in enumerate(sharing):
                for right in sharing[i + 1:]:
                    if not self._cooperating(left, right):
                        violations.append(
                            f"domain '{hostname}' is used by non-cooperating services "
                            f"'{left.id}' and '{right.id}'"
                        )

    @staticmethod
    def _cooperating(left: ServiceDocument, right: ServiceDocument) -> bool:
        return right.id in left.depends_on or left.id in right.depends_on

    # -------------------------
    # MAPPING
    # -------------------------

    @staticmethod
    def _to_domain(document: DomainDocument) -> DomainSpec:
        return DomainSpec(
            hostname=document.hostname,
            records=tuple(
                DnsRecord(record_type=r.type, target=r.target.strip())
                for r in document.records
            ),
            certificate_mode=document.certificate,
        )

    @staticmethod
    def _to_service(document: ServiceDocument) -> ServiceSpec:
        return ServiceSpec(
            service_id=document.id,
            kind=document.kind,
            depends_on=tuple(document.depends_on),
            domain=document.domain,
            config=MappingProxyType(dict(document.config)),
            replicas=document.replicas,
        )


def load_spec(source: Union[str, Path, Dict[str, Any]]) -> DeploymentSpec:
    """Load from a path or an already parsed document."""
    loader = SpecLoader()
    if isinstance(source, dict):
        return loader.load(source)
    return loader.load_file(source)
