# stack_engine/dns/resolver.py
"""DNS resolvers used by the validator."""

import ipaddress
import logging
import subprocess
import threading
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional, Tuple

from stack_engine.core.errors import DnsLookupError
from stack_engine.core.models import RecordType

logger = logging.getLogger(__name__)


def _is_address(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
        return True
    except ValueError:
        return False


class Resolver(ABC):
    """Answers a single (hostname, record type) query."""

    @abstractmethod
    def resolve(self, hostname: str, record_type: RecordType) -> List[str]:
        """
        Returns:
            Answer values (addresses or target names); empty when no record

        Raises:
            DnsLookupError: If the query itself failed
        """
        pass


class DigResolver(Resolver):
    """Shells out to `dig +short`."""

    def __init__(self, binary: str = "dig", timeout: float = 5.0, nameserver: Optional[str] = None):
        self.binary = binary
        self.timeout = timeout
        self.nameserver = nameserver

    def resolve(self, hostname: str, record_type: RecordType) -> List[str]:
        cmd = [self.binary, "+short", "+tries=1", f"+time={max(1, int(self.timeout))}"]
        if self.nameserver:
            cmd.append(f"@{self.nameserver}")
        cmd += [hostname, record_type.value]

        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
        except FileNotFoundError as e:
            raise DnsLookupError(f"{self.binary} not available") from e
        except subprocess.TimeoutExpired as e:
            raise DnsLookupError(f"lookup of {hostname} {record_type.value} timed out") from e

        if result.returncode != 0:
            detail = result.stderr.strip() or result.stdout.strip() or f"exit code {result.returncode}"
            raise DnsLookupError(f"lookup of {hostname} {record_type.value} failed: {detail}")

        answers = []
        for line in result.stdout.splitlines():
            line = line.strip()
            if not line or line.startswith(";"):
                continue
            # +short prints the CNAME chain before the addresses of an A/AAAA query
            if record_type in (RecordType.A, RecordType.AAAA) and not _is_address(line):
                continue
            answers.append(line)

        logger.debug(f"[dns] {hostname} {record_type.value} -> {answers}")
        return answers


class StaticResolver(Resolver):
    """Fixed answers, for development stacks and tests."""

    def __init__(self, answers: Optional[Dict[Tuple[str, RecordType], Iterable[str]]] = None):
        self._answers: Dict[Tuple[str, RecordType], List[str]] = {}
        self._errors: Dict[Tuple[str, RecordType], str] = {}
        self._lock = threading.Lock()
        for (hostname, record_type), values in (answers or {}).items():
            self.set(hostname, record_type, values)

    def set(self, hostname: str, record_type: RecordType, values: Iterable[str]) -> None:
        key = (hostname.lower().rstrip("."), record_type)
        with self._lock:
            self._answers[key] = list(values)
            self._errors.pop(key, None)

    def fail(self, hostname: str, record_type: RecordType, message: str) -> None:
        """Make the next lookups of this record raise DnsLookupError."""
        with self._lock:
            self._errors[(hostname.lower().rstrip("."), record_type)] = message

    def clear(self, hostname: str, record_type: RecordType) -> None:
        key = (hostname.lower().rstrip("."), record_type)
        with self._lock:
            self._answers.pop(key, None)
            self._errors.pop(key, None)

    def resolve(self, hostname: str, record_type: RecordType) -> List[str]:
        key = (hostname.lower().rstrip("."), record_type)
        with self._lock:
            if key in self._errors:
                raise DnsLookupError(self._errors[key])
            return list(self._answers.get(key, []))
