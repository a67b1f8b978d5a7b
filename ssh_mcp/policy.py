from typing import Iterable, List, Optional, Tuple

from ssh_mcp.errors import HostPolicyViolation


class HostPolicy:
    """Allow-list of target hosts.

    Patterns are either exact host names or ``*.suffix`` wildcards. A
    wildcard also accepts the bare suffix (``*.example.com`` matches
    ``example.com``). No patterns means every host is accepted.
    """

    def __init__(self, patterns: Optional[Iterable[str]] = None):
        self.patterns: List[str] = [p.strip() for p in (patterns or []) if p and p.strip()]
        self._exact, self._suffixes = self._compile(self.patterns)

    @staticmethod
    def _compile(patterns: List[str]) -> Tuple[frozenset, Tuple[str, ...]]:
        exact = set()
        suffixes = []
        for pattern in patterns:
            lowered = pattern.lower()
            if lowered.startswith("*."):
                suffixes.append(lowered[1:])
            else:
                exact.add(lowered)
        return frozenset(exact), tuple(suffixes)

    @property
    def restricted(self) -> bool:
        return bool(self.patterns)

    def allows(self, host: str) -> bool:
        if not self.restricted:
            return True
        candidate = (host or "").strip().lower()
        if candidate in self._exact:
            return True
        for suffix in self._suffixes:
            if candidate.endswith(suffix) or candidate == suffix[1:]:
                return True
        return False

    def check(self, host: str) -> None:
        if not self.allows(host):
            raise HostPolicyViolation(host, self.patterns)
