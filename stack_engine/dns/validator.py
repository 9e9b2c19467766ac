# stack_engine/dns/validator.py
"""
DNS Validator - checks that a domain's required records resolve.

A precondition gate: one check per call, never a blocking wait for
propagation. Callers retry on their own schedule.
"""

import ipaddress
import logging
from typing import List, Optional

from stack_engine.core.deadline import call_with_deadline
from stack_engine.core.errors import DnsLookupError, OperationTimeout
from stack_engine.core.models import (
    DnsRecord,
    DomainSpec,
    MissingRecord,
    RecordType,
    ValidationResult,
)
from stack_engine.dns.resolver import Resolver

logger = logging.getLogger(__name__)


def _normalize_name(value: str) -> str:
    return value.strip().rstrip(".").lower()


def _normalize_address(value: str) -> Optional[str]:
    try:
        return str(ipaddress.ip_address(value.strip()))
    except ValueError:
        return None


def record_matches(record: DnsRecord, found: List[str]) -> bool:
    """
    A/AAAA: the expected address is among the answers.
    CNAME: an answer equals the expected target or sits under it.
    """
    if record.record_type in (RecordType.A, RecordType.AAAA):
        expected = _normalize_address(record.target)
        if expected is None:
            expected = _normalize_name(record.target)
            return any(_normalize_name(f) == expected for f in found)
        return any(_normalize_address(f) == expected for f in found)

    expected = _normalize_name(record.target)
    for answer in found:
        name = _normalize_name(answer)
        if name == expected or name.endswith("." + expected):
            return True
    return False


class DnsValidator:
    def __init__(self, resolver: Resolver, timeout: Optional[float] = 5.0):
        self.resolver = resolver
        self.timeout = timeout

    def check(self, domain: DomainSpec) -> ValidationResult:
        """
        Resolve every required record of `domain` once.

        Lookup errors and timeouts are reported as missing records
        carrying the error text.
        """
        missing = []

        for record in domain.records:
            try:
                found = call_with_deadline(
                    self.resolver.resolve,
                    self.timeout,
                    domain.hostname,
                    record.record_type,
                    description=f"dns {domain.hostname} {record.record_type.value}",
                )
            except (DnsLookupError, OperationTimeout) as e:
                missing.append(MissingRecord(domain.hostname, record, error=str(e)))
                continue

            if not record_matches(record, found):
                missing.append(MissingRecord(domain.hostname, record, found=tuple(found)))

        result = ValidationResult(
            hostname=domain.hostname,
            satisfied=not missing,
            missing=tuple(missing),
        )

        if result.satisfied:
            logger.debug(f"[dns] {domain.hostname}: {len(domain.records)} record(s) satisfied")
        else:
            logger.info(f"[dns] {domain.hostname}: {result.describe()}")
        return result
