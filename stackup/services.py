"""
Service selection for a stackup run.

A run enables a set of optional services. The raw input is a list of
service tokens and meta-group names, where a leading ``-`` forces a token
out. Resolution is two-phase:

1. Expand meta-groups in both the positive and the negated input.
2. Subtract the negated tokens from the positive ones.

A negation therefore always wins, whatever the order of enable/disable
calls. The result is frozen into a SelectionSet, then checked against
the exclusion groups and conflict pairs. Nothing else may change the
selection afterwards.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Iterable, Iterator, List, Mapping, Optional, Sequence, Set, Tuple, Union

from stackup.errors import PreflightConfigError, SelectionFrozenError


class Service(str, Enum):
    """Known optional services."""

    MYSQL = "mysql"
    RABBIT = "rabbit"
    QPID = "qpid"
    ZEROMQ = "zeromq"
    KEYSTONE = "key"
    GLANCE_API = "g-api"
    GLANCE_REGISTRY = "g-reg"
    NOVA_API = "n-api"
    NOVA_COMPUTE = "n-cpu"
    NOVA_NETWORK = "n-net"
    NOVA_SCHEDULER = "n-sch"
    NOVA_CERT = "n-crt"
    NOVA_OBJECTSTORE = "n-obj"
    NOVA_CONSOLEAUTH = "n-cauth"
    NOVA_NOVNC = "n-novnc"
    NOVA_XVNC = "n-xvnc"
    NOVA_VOLUME = "n-vol"
    CINDER = "cinder"
    CINDER_API = "c-api"
    CINDER_SCHEDULER = "c-sch"
    CINDER_VOLUME = "c-vol"
    HORIZON = "horizon"
    SWIFT = "swift"
    SWIFT3 = "swift3"
    QUANTUM = "quantum"
    QUANTUM_SERVER = "q-svc"
    QUANTUM_AGENT = "q-agt"
    QUANTUM_DHCP = "q-dhcp"
    QUANTUM_L3 = "q-l3"
    HEAT = "heat"
    HEAT_API = "h-api"
    HEAT_ENGINE = "h-eng"
    HEAT_METADATA = "h-meta"
    CEILOMETER = "ceilometer"
    TEMPEST = "tempest"

    @property
    def family(self) -> Optional[str]:
        """Umbrella name for prefixed services (``n-api`` -> ``nova``)."""
        for prefix, family in FAMILY_PREFIXES.items():
            if self.value.startswith(prefix):
                return family
        return None

    def __str__(self) -> str:
        return self.value


FAMILY_PREFIXES: Dict[str, str] = {
    "n-": "nova",
    "g-": "glance",
    "c-": "cinder",
    "q-": "quantum",
    "h-": "heat",
}

FAMILIES = frozenset(FAMILY_PREFIXES.values())

DEFAULT_META_GROUPS: Dict[str, Tuple[str, ...]] = {
    "queueing": ("rabbit", "qpid", "zeromq"),
    "nova": ("n-api", "n-cpu", "n-net", "n-sch", "n-crt", "n-obj", "n-cauth", "n-novnc", "n-xvnc"),
    "glance": ("g-api", "g-reg"),
    "cinder-all": ("cinder", "c-api", "c-sch", "c-vol"),
    "quantum-all": ("quantum", "q-svc", "q-agt", "q-dhcp", "q-l3"),
    "heat-all": ("heat", "h-api", "h-eng", "h-meta"),
}

DEFAULT_EXCLUSION_GROUPS: Dict[str, Tuple[str, ...]] = {
    "rpc_backend": ("rabbit", "qpid", "zeromq"),
}

DEFAULT_CONFLICTS: Tuple[Tuple[str, str], ...] = (
    ("cinder", "n-vol"),
)

Token = Union[Service, str]


def parse_token(name: Token) -> Service:
    """
    Convert a token name to a Service.

    Raises:
        PreflightConfigError: If the name is not a known service
    """
    if isinstance(name, Service):
        return name
    try:
        return Service(name.strip())
    except ValueError:
        raise PreflightConfigError(f"Unknown service token: {name!r}")


@dataclass(frozen=True)
class SelectionSet:
    """The resolved, immutable set of services enabled for a run."""

    services: FrozenSet[Service]

    def is_enabled(self, *tokens: Token) -> bool:
        """
        Return True if any of the given tokens is enabled.

        A family name (``nova``, ``glance``, ``cinder``, ``quantum``,
        ``heat``) also matches any enabled member of that family.
        """
        for token in tokens:
            value = token.value if isinstance(token, Service) else str(token)
            if any(service.value == value for service in self.services):
                return True
            if value in FAMILIES and any(s.family == value for s in self.services):
                return True
        return False

    def ordered(self) -> List[Service]:
        """Enabled services in declaration order."""
        return [service for service in Service if service in self.services]

    def to_env(self) -> str:
        """Comma-separated form, as passed to collaborator scripts."""
        return ",".join(service.value for service in self.ordered())

    def __contains__(self, token: object) -> bool:
        if isinstance(token, (Service, str)):
            return self.is_enabled(token)
        return False

    def __iter__(self) -> Iterator[Service]:
        return iter(self.ordered())

    def __len__(self) -> int:
        return len(self.services)


class ServiceSelection:
    """
    Accumulates enable/disable requests and resolves them once.

    Example:
        selection = ServiceSelection()
        parse_service_list("queueing,key,-qpid,-zeromq", selection)
        enabled = selection.resolve()
        enabled.is_enabled("rabbit")  # True
    """

    def __init__(
        self,
        meta_groups: Optional[Mapping[str, Sequence[str]]] = None,
        exclusion_groups: Optional[Mapping[str, Sequence[str]]] = None,
        conflicts: Optional[Sequence[Sequence[str]]] = None,
    ):
        self.meta_groups = dict(DEFAULT_META_GROUPS if meta_groups is None else meta_groups)
        self.exclusion_groups = dict(
            DEFAULT_EXCLUSION_GROUPS if exclusion_groups is None else exclusion_groups
        )
        self.conflicts = [tuple(pair) for pair in (DEFAULT_CONFLICTS if conflicts is None else conflicts)]
        self._positive: Set[str] = set()
        self._negative: Set[str] = set()
        self._resolved: Optional[SelectionSet] = None

    @property
    def frozen(self) -> bool:
        return self._resolved is not None

    def enable(self, token: Token) -> None:
        """Request a service or meta-group."""
        self._check_mutable("enable", token)
        self._positive.add(_token_name(token))

    def disable(self, token: Token) -> None:
        """Force a service or meta-group out, overriding any enable."""
        self._check_mutable("disable", token)
        self._negative.add(_token_name(token))

    def expand_meta(self, tokens: Iterable[Token]) -> FrozenSet[Service]:
        """
        Expand meta-group names into concrete services.

        Raises:
            PreflightConfigError: On unknown tokens or cyclic meta-groups
        """
        expanded: Set[Service] = set()
        for token in tokens:
            expanded.update(self._expand(_token_name(token), ()))
        return frozenset(expanded)

    def resolve(self) -> SelectionSet:
        """
        Freeze the selection and validate it.

        Returns:
            The SelectionSet for this run (the same object on repeated calls)

        Raises:
            PreflightConfigError: On unknown tokens, exclusion group or
                conflict violations
        """
        if self._resolved is None:
            positives = self.expand_meta(self._positive)
            negatives = self.expand_meta(self._negative)
            self._resolved = SelectionSet(frozenset(positives - negatives))

        validate_selection(self._resolved, self.exclusion_groups, self.conflicts)
        return self._resolved

    def _expand(self, name: str, path: Tuple[str, ...]) -> Set[Service]:
        if name in self.meta_groups:
            if name in path:
                cycle = " -> ".join(path + (name,))
                raise PreflightConfigError(f"Meta-group cycle: {cycle}")
            members: Set[Service] = set()
            for member in self.meta_groups[name]:
                members.update(self._expand(member, path + (name,)))
            return members
        return {parse_token(name)}

    def _check_mutable(self, action: str, token: Token) -> None:
        if self._resolved is not None:
            raise SelectionFrozenError(
                f"Cannot {action} {_token_name(token)!r}: service selection is already resolved"
            )


def _token_name(token: Token) -> str:
    if isinstance(token, Service):
        return token.value
    return str(token).strip()


def parse_service_list(raw: Union[str, Iterable[str]], selection: ServiceSelection) -> ServiceSelection:
    """
    Apply a raw service list to a selection.

    Accepts ``"g-api,key,-n-vol"`` or a list of the same tokens. A leading
    ``-`` disables the token; empty entries are ignored.
    """
    if isinstance(raw, str):
        items = raw.split(",")
    else:
        items = list(raw)

    for item in items:
        item = str(item).strip()
        if not item:
            continue
        if item.startswith("-"):
            selection.disable(item[1:])
        else:
            selection.enable(item)
    return selection


def validate_selection(
    selection: SelectionSet,
    exclusion_groups: Mapping[str, Sequence[str]],
    conflicts: Sequence[Sequence[str]],
) -> None:
    """
    Check exclusion groups and conflict pairs against a resolved selection.

    Raises:
        PreflightConfigError: On the first violation found
    """
    for group_name, members in exclusion_groups.items():
        enabled = [m for m in members if parse_token(m) in selection.services]
        if not enabled:
            raise PreflightConfigError(
                f"zero members of exclusion group '{group_name}' enabled; "
                f"enable exactly one of: {', '.join(members)}"
            )
        if len(enabled) > 1:
            raise PreflightConfigError(
                f"more than one member of exclusion group '{group_name}' enabled "
                f"({', '.join(enabled)}); enable exactly one of: {', '.join(members)}"
            )

    for first, second in conflicts:
        if selection.is_enabled(first) and selection.is_enabled(second):
            raise PreflightConfigError(
                f"{first} and {second} must not be enabled at the same time"
            )


def resolve_services(
    raw: Union[str, Iterable[str]],
    meta_groups: Optional[Mapping[str, Sequence[str]]] = None,
    exclusion_groups: Optional[Mapping[str, Sequence[str]]] = None,
    conflicts: Optional[Sequence[Sequence[str]]] = None,
) -> SelectionSet:
    """Parse and resolve a raw service list in one call."""
    selection = ServiceSelection(meta_groups, exclusion_groups, conflicts)
    parse_service_list(raw, selection)
    return selection.resolve()
