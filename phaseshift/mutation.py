"""Generation of fresh configuration states for a collapse."""
from __future__ import annotations

import hashlib
import logging
import os
import random
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Deque, Dict, FrozenSet, List, Mapping, Optional, Sequence, Set, Tuple

from .identity import CredentialVerificationError, IdentityIssuer, RevocationProof
from .state import ConfigurationState, Identity, LayoutDescriptor

logger = logging.getLogger(__name__)


class ConstraintUnsatisfiable(RuntimeError):
    """Raised when no configuration satisfies the port or identity constraints."""


class InvalidConfiguration(ValueError):
    """Raised when a generated configuration fails validation."""


@dataclass(frozen=True)
class MutationConstraints:
    """Bounds a generated configuration must respect."""

    port_range: Tuple[int, int] = (20000, 60999)
    reserved_ports: FrozenSet[int] = frozenset()
    history_depth: int = 4
    identity_ttl: timedelta = timedelta(hours=1)
    identity_overlap: timedelta = timedelta(seconds=30)
    services: FrozenSet[int] = frozenset()
    subjects: FrozenSet[str] = frozenset()
    sessions: Mapping[str, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        low, high = self.port_range
        if not 1 <= low <= high <= 65535:
            raise ValueError(f"invalid port range {self.port_range!r}")
        if self.history_depth < 0:
            raise ValueError("history_depth must not be negative")
        if self.identity_ttl <= timedelta(0):
            raise ValueError("identity_ttl must be positive")
        if self.identity_overlap < timedelta(0):
            raise ValueError("identity_overlap must not be negative")
        object.__setattr__(self, "reserved_ports", frozenset(int(p) for p in self.reserved_ports))
        object.__setattr__(self, "services", frozenset(int(p) for p in self.services))
        object.__setattr__(self, "subjects", frozenset(str(s) for s in self.subjects))
        object.__setattr__(self, "sessions", {str(k): int(v) for k, v in self.sessions.items()})

    def candidate_ports(self) -> List[int]:
        low, high = self.port_range
        return [port for port in range(low, high + 1) if port not in self.reserved_ports]

    def allows(self, port: int) -> bool:
        low, high = self.port_range
        return low <= port <= high and port not in self.reserved_ports


class MutationEngine:
    """Produces the next :class:`ConfigurationState` for a collapse."""

    _HISTORY_LIMIT = 64

    def __init__(
        self,
        issuer: Optional[IdentityIssuer] = None,
        *,
        rng: Optional[random.Random] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._issuer = issuer or IdentityIssuer()
        self._rng = rng or random.SystemRandom()
        self._clock = clock or _utcnow
        self._lock = threading.Lock()
        self._history: Deque[Dict[int, int]] = deque(maxlen=self._HISTORY_LIMIT)
        self._last_state_id = 0
        self._revocations: List[RevocationProof] = []

    @property
    def issuer(self) -> IdentityIssuer:
        return self._issuer

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def bootstrap(self, constraints: MutationConstraints) -> ConfigurationState:
        """Build the first active configuration from the configured services."""

        genesis = ConfigurationState(
            state_id=0,
            port_map={},
            layout=LayoutDescriptor(token="genesis", generation=0),
        )
        return self.generate(genesis, constraints)

    def generate(self, previous: ConfigurationState, constraints: MutationConstraints) -> ConfigurationState:
        services = sorted(previous.services or constraints.services)
        if not services:
            raise ConstraintUnsatisfiable("no services to map")

        now = self._clock()
        port_map = self._remap(previous, services, constraints)

        with self._lock:
            state_id = max(previous.state_id, self._last_state_id) + 1
            self._last_state_id = state_id
            self._history.append(dict(port_map))

        identities, grace, grace_until = self._rotate_identities(previous, constraints, now)
        logger.debug("Generated state %s remapping %s services", state_id, len(port_map))
        return ConfigurationState(
            state_id=state_id,
            port_map=port_map,
            layout=self._next_layout(previous.layout, state_id),
            identities=identities,
            grace_identities=grace,
            session_bindings=self._bind_sessions(port_map, constraints.sessions),
            grace_until=grace_until,
        )

    def validate(
        self,
        candidate: ConfigurationState,
        previous: ConfigurationState,
        constraints: MutationConstraints,
    ) -> None:
        """Raise :class:`InvalidConfiguration` unless ``candidate`` may replace ``previous``."""

        if candidate.state_id <= previous.state_id:
            raise InvalidConfiguration(
                f"state id {candidate.state_id} does not advance past {previous.state_id}"
            )
        if not candidate.is_bijective():
            raise InvalidConfiguration("port map assigns one service to several external ports")

        expected_services = previous.services or constraints.services
        if candidate.services != expected_services:
            raise InvalidConfiguration("port map does not cover exactly the active service set")

        for external, internal in candidate.port_map.items():
            if not constraints.allows(external):
                raise InvalidConfiguration(f"external port {external} is outside the permitted range")
            if previous.port_map.get(external) == internal:
                raise InvalidConfiguration(f"association {external}->{internal} reuses the previous mapping")

        if candidate.layout.token == previous.layout.token:
            raise InvalidConfiguration("layout token was not rotated")

        credential_ids: Set[str] = set()
        for identity in list(candidate.identities.values()) + list(candidate.grace_identities.values()):
            if identity.credential_id in credential_ids:
                raise InvalidConfiguration(f"credential {identity.credential_id} issued twice")
            credential_ids.add(identity.credential_id)

        previous_expiry = previous.latest_expiry()
        for identity in candidate.identities.values():
            if previous_expiry is not None and identity.expires_at <= previous_expiry:
                raise InvalidConfiguration(f"credential for {identity.subject} does not outlive its predecessor")
            try:
                self._issuer.verify(identity)
            except CredentialVerificationError as exc:
                raise InvalidConfiguration(str(exc)) from exc

        for token, port in candidate.session_bindings.items():
            if port not in candidate.port_map:
                raise InvalidConfiguration(f"session {token} is bound to unmapped port {port}")

    def commit(self, previous: ConfigurationState, current: ConfigurationState) -> List[RevocationProof]:
        """Revoke the credentials superseded by ``current``."""

        now = self._clock()
        live = {identity.credential_id for identity in current.identities.values()}
        proofs = [
            self._issuer.revoke(identity, revoked_at=now)
            for identity in previous.identities.values()
            if identity.credential_id not in live
        ]
        with self._lock:
            self._revocations.extend(proofs)
        return proofs

    def revocations(self) -> Sequence[RevocationProof]:
        with self._lock:
            return tuple(self._revocations)

    def resume(self, state_id: int) -> None:
        """Never issue a state id at or below ``state_id`` from now on."""

        with self._lock:
            self._last_state_id = max(self._last_state_id, int(state_id))
        logger.info("State ids resume after %s", state_id)

    def recent_mappings(self, depth: int) -> List[Dict[int, int]]:
        with self._lock:
            if depth <= 0:
                return []
            return [dict(mapping) for mapping in list(self._history)[-depth:]]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _remap(
        self,
        previous: ConfigurationState,
        services: Sequence[int],
        constraints: MutationConstraints,
    ) -> Dict[int, int]:
        pool = constraints.candidate_ports()
        if len(pool) < len(services):
            raise ConstraintUnsatisfiable(
                f"port range offers {len(pool)} usable ports for {len(services)} services"
            )

        forbidden: Set[Tuple[int, int]] = set(previous.port_map.items())
        for mapping in self.recent_mappings(constraints.history_depth):
            forbidden.update(mapping.items())

        # Ports the previous mapping exposed are only reused as a last resort.
        previous_externals = set(previous.port_map)
        fresh = [port for port in pool if port not in previous_externals]
        for candidates in (fresh, pool):
            if len(candidates) < len(services):
                continue
            assignment = self._match(services, candidates, forbidden)
            if assignment is not None:
                return {external: service for service, external in assignment.items()}
            logger.warning(
                "No matching of %s services over %s candidate ports avoids %s recent associations",
                len(services),
                len(candidates),
                len(forbidden),
            )

        raise ConstraintUnsatisfiable(
            f"no assignment of {len(services)} services avoids the last "
            f"{constraints.history_depth} mappings within {constraints.port_range}"
        )

    def _match(
        self,
        services: Sequence[int],
        candidates: Sequence[int],
        forbidden: Set[Tuple[int, int]],
    ) -> Optional[Dict[int, int]]:
        order = list(candidates)
        self._rng.shuffle(order)
        owner: Dict[int, int] = {}
        assigned: Dict[int, int] = {}

        pending = list(services)
        self._rng.shuffle(pending)
        for service in pending:
            if not self._augment(service, order, owner, assigned, forbidden):
                return None
        return assigned

    def _augment(
        self,
        root: int,
        order: Sequence[int],
        owner: Dict[int, int],
        assigned: Dict[int, int],
        forbidden: Set[Tuple[int, int]],
    ) -> bool:
        """Find an augmenting path for ``root`` with an explicit stack."""

        visited: Set[int] = set()
        # Each frame: (service, next offset to try, randomized start, port it was reached through).
        stack: List[List[Optional[int]]] = [[root, 0, self._rng.randrange(len(order)), None]]
        while stack:
            frame = stack[-1]
            service, offset, start = frame[0], frame[1], frame[2]
            if offset >= len(order):
                stack.pop()
                continue
            frame[1] = offset + 1
            port = order[(start + offset) % len(order)]
            if port in visited or (port, service) in forbidden:
                continue
            visited.add(port)
            holder = owner.get(port)
            if holder is not None:
                stack.append([holder, 0, self._rng.randrange(len(order)), port])
                continue
            # Free port: shift every service on the path one port along.
            target = port
            while stack:
                current, _, _, reached_via = stack.pop()
                owner[target] = current
                assigned[current] = target
                if reached_via is None:
                    break
                target = reached_via
            return True
        return False

    def _next_layout(self, previous: LayoutDescriptor, state_id: int) -> LayoutDescriptor:
        while True:
            digest = hashlib.sha256()
            digest.update(os.urandom(32))
            digest.update(previous.token.encode("utf-8"))
            digest.update(state_id.to_bytes(8, "big"))
            token = digest.hexdigest()
            if token != previous.token:
                return LayoutDescriptor(token=token, generation=previous.generation + 1)

    def _rotate_identities(
        self,
        previous: ConfigurationState,
        constraints: MutationConstraints,
        now: datetime,
    ) -> Tuple[Dict[str, Identity], Dict[str, Identity], Optional[datetime]]:
        subjects = sorted(set(previous.identities) | set(constraints.subjects))
        latest = previous.latest_expiry()
        base = max(now, latest) if latest is not None else now
        expires_at = base + constraints.identity_ttl

        identities = {
            subject: self._issuer.issue(
                subject,
                issued_at=now,
                expires_at=expires_at,
                parent=previous.identities.get(subject),
            )
            for subject in subjects
        }

        if constraints.identity_overlap <= timedelta(0):
            return identities, {}, None
        grace_until = now + constraints.identity_overlap
        grace = {
            subject: identity
            for subject, identity in previous.identities.items()
            if identity.expires_at > now
        }
        return identities, grace, grace_until if grace else None

    @staticmethod
    def _bind_sessions(port_map: Mapping[int, int], sessions: Mapping[str, int]) -> Dict[str, int]:
        external_by_service = {internal: external for external, internal in port_map.items()}
        return {
            token: external_by_service[service]
            for token, service in sessions.items()
            if service in external_by_service
        }


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


__all__ = [
    "ConstraintUnsatisfiable",
    "InvalidConfiguration",
    "MutationConstraints",
    "MutationEngine",
]
