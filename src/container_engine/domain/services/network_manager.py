"""Network manager service.

Each network keeps its own resolution table: the member endpoints with
their addresses and aliases. A name is only ever resolved against one
network's table, so two containers that share no network cannot find
each other.
"""

from __future__ import annotations

import ipaddress
import logging
import threading
from typing import Callable, Iterable, Optional

from container_engine.domain.entities import (
    LOOPBACK_ADDRESS,
    Container,
    ContainerState,
    Endpoint,
    Event,
    EventType,
    Network,
    NetworkDriver,
    ResourceKind,
)
from container_engine.domain.errors import (
    AddressPoolExhaustedError,
    ConflictError,
    InUseError,
    NotFoundError,
    PolicyViolationError,
    SandboxFailureError,
)
from container_engine.domain.services.event_bus import EventBus
from container_engine.domain.services.locks import KeyedLocks
from container_engine.domain.services.resource_store import ResourceStore
from container_engine.domain.value_objects import create_network_id, is_valid_name
from container_engine.ports.outbound import NetworkHandle, ProcessSandboxPort, SandboxError

logger = logging.getLogger(__name__)

# Drivers that may exist at most once per engine
SINGLETON_DRIVERS = (NetworkDriver.HOST, NetworkDriver.NONE)


class NetworkManager:
    """Manages networks and container membership.

    Handles:
    - Network creation with subnet allocation from the default pool
    - Attach/detach with per-network address allocation
    - Per-network name resolution
    - Reachability and uplink policy checks
    """

    def __init__(
        self,
        store: ResourceStore,
        locks: KeyedLocks,
        bus: EventBus,
        sandbox: ProcessSandboxPort,
        default_pool: str = "172.28.0.0/14",
        default_prefix: int = 24,
    ) -> None:
        """Initialize network manager.

        Args:
            store: Resource store.
            locks: Per-container locks.
            bus: Event bus.
            sandbox: Process sandbox used to join running containers.
            default_pool: Address pool for networks created without a subnet.
            default_prefix: Prefix length of subnets carved from the pool.
        """
        self._store = store
        self._locks = locks
        self._bus = bus
        self._sandbox = sandbox
        self._pool = ipaddress.ip_network(default_pool)
        if not self._pool.prefixlen <= default_prefix <= self._pool.max_prefixlen - 2:
            raise ValueError(f"Prefix /{default_prefix} does not fit pool {default_pool}")
        self._prefix = default_prefix
        self._create_lock = threading.Lock()

    # =========================================================================
    # Networks
    # =========================================================================

    def create_network(
        self,
        name: str,
        driver: NetworkDriver | str = NetworkDriver.BRIDGE,
        subnet: Optional[str] = None,
        gateway: Optional[str] = None,
        internal: bool = False,
        labels: Optional[dict[str, str]] = None,
    ) -> Network:
        """Create a network.

        Args:
            name: Unique network name.
            driver: Network driver.
            subnet: CIDR subnet; allocated from the default pool when omitted.
            gateway: Gateway address; the first host address when omitted.
            internal: Never route to the external uplink.
            labels: Network labels.

        Returns:
            Created network.

        Raises:
            ValueError: If the name, subnet or gateway is invalid.
            ConflictError: If the name is taken, the subnet overlaps another
                network, or a second host/none network is requested.
            AddressPoolExhaustedError: If the default pool has no free subnet.
        """
        if not is_valid_name(name):
            raise ValueError(f"Invalid network name: {name!r}")
        driver = NetworkDriver(driver)
        if driver == NetworkDriver.INTERNAL:
            internal = True

        with self._create_lock:
            existing = self._store.list(ResourceKind.NETWORK)
            if driver in SINGLETON_DRIVERS:
                if subnet or gateway:
                    raise ValueError(f"The {driver.value} driver does not take a subnet")
                if any(n.driver == driver for n in existing):
                    raise ConflictError(f"Only one {driver.value} network may exist")
                network_subnet = None
                network_gateway = None
            else:
                network_subnet, network_gateway = self._plan_subnet(subnet, gateway, existing)

            network = Network(
                network_id=create_network_id(),
                name=name,
                driver=driver,
                subnet=str(network_subnet) if network_subnet else None,
                gateway=str(network_gateway) if network_gateway else None,
                internal=internal,
                uplink=not internal and driver != NetworkDriver.NONE,
                labels=dict(labels or {}),
            )
            self._store.create(ResourceKind.NETWORK, network)

        logger.info(f"Created {driver.value} network {name} ({network.subnet or 'no subnet'})")
        self._publish(
            EventType.NETWORK_CREATED,
            network.network_id,
            name=name,
            driver=driver.value,
            subnet=network.subnet,
        )
        return self._store.get(ResourceKind.NETWORK, network.network_id)

    def ensure_network(self, name: str, driver: NetworkDriver | str = NetworkDriver.BRIDGE) -> Network:
        """Get a network by name, creating it if it does not exist."""
        try:
            return self._store.find(ResourceKind.NETWORK, name)
        except NotFoundError:
            pass
        try:
            return self.create_network(name, driver)
        except ConflictError:
            return self._store.find(ResourceKind.NETWORK, name)

    def remove_network(self, ref: str) -> None:
        """Remove a network.

        Raises:
            NotFoundError: If the network does not exist.
            InUseError: If containers are still attached.
        """
        network = self._store.find(ResourceKind.NETWORK, ref)
        if network.members:
            raise InUseError(
                f"Network {network.name} has {len(network.members)} attached container(s)"
            )
        self._store.delete(ResourceKind.NETWORK, network.network_id)
        logger.info(f"Removed network {network.name}")
        self._publish(EventType.NETWORK_REMOVED, network.network_id, name=network.name)

    def get_network(self, ref: str) -> Network:
        """Get a network by ID, name or ID prefix."""
        return self._store.find(ResourceKind.NETWORK, ref)

    def list_networks(self, predicate: Optional[Callable[[Network], bool]] = None) -> list[Network]:
        """List networks, oldest first."""
        return self._store.list(ResourceKind.NETWORK, predicate)

    def request_default_route(self, ref: str) -> Network:
        """Route a network to the external uplink.

        Raises:
            PolicyViolationError: If the network is internal.
        """
        network = self._store.find(ResourceKind.NETWORK, ref)
        if network.internal:
            raise PolicyViolationError(
                f"Network {network.name} is internal and cannot route to the uplink"
            )
        if network.uplink:
            return network

        def enable(record: Network) -> None:
            record.uplink = True

        return self._store.mutate(ResourceKind.NETWORK, network.network_id, enable)

    # =========================================================================
    # Membership
    # =========================================================================

    def attach(
        self,
        network_ref: str,
        container_id: str,
        aliases: Iterable[str] = (),
        address: Optional[str] = None,
    ) -> Optional[str]:
        """Attach a container to a network.

        Args:
            network_ref: Network ID, name or ID prefix.
            container_id: Container ID.
            aliases: Extra names the container answers to on this network.
            address: Static address inside the subnet.

        Returns:
            The allocated address; None on a host network, loopback on a
            none network.

        Raises:
            NotFoundError: If the network or container does not exist.
            ConflictError: If already attached or the address is taken.
            AddressPoolExhaustedError: If the subnet is full.
            SandboxFailureError: If a running container could not join.
        """
        aliases = [a for a in aliases if a]
        for alias in aliases:
            if not is_valid_name(alias):
                raise ValueError(f"Invalid alias: {alias!r}")

        with self._locks.hold(container_id):
            container = self._store.get(ResourceKind.CONTAINER, container_id)
            network = self._store.find(ResourceKind.NETWORK, network_ref)
            if address is not None and not network.driver.allocates_addresses:
                raise ValueError(f"The {network.driver.value} driver does not assign addresses")

            allocated: dict[str, Optional[str]] = {}

            def join(record: Network) -> None:
                if container_id in record.members:
                    raise ConflictError(
                        f"Container {container.display_name} is already attached to {record.name}"
                    )
                assigned = None
                if record.driver.allocates_addresses:
                    assigned = self._allocate(record, address)
                allocated["address"] = assigned
                record.members[container_id] = Endpoint(
                    container_id=container_id,
                    address=assigned,
                    aliases=list(aliases),
                    container_name=container.name,
                )

            network = self._store.mutate(ResourceKind.NETWORK, network.network_id, join)
            assigned = allocated.get("address")
            try:
                self._store.mutate(
                    ResourceKind.CONTAINER,
                    container_id,
                    lambda c: c.networks.add(network.network_id),
                )
                if container.state in (ContainerState.RUNNING, ContainerState.PAUSED) and container.pid:
                    self._sandbox.attach_namespace(container.pid, self._handle(network, container_id))
            except SandboxError as e:
                self._leave(network.network_id, container_id)
                raise SandboxFailureError(container_id, f"attach to {network.name} failed: {e}") from e
            except Exception:
                self._leave(network.network_id, container_id)
                raise

            logger.debug(
                f"Attached {container.display_name} to {network.name} at {assigned or 'no address'}"
            )
            self._publish(
                EventType.NETWORK_CONNECTED,
                network.network_id,
                name=network.name,
                container_id=container_id,
                address=assigned,
                aliases=list(aliases),
            )

        if network.driver == NetworkDriver.NONE:
            return LOOPBACK_ADDRESS
        return assigned

    def detach(self, network_ref: str, container_id: str) -> None:
        """Detach a container from a network, freeing its address.

        Raises:
            NotFoundError: If the network does not exist or the container
                is not a member.
        """
        with self._locks.hold(container_id):
            network = self._store.find(ResourceKind.NETWORK, network_ref)
            if container_id not in network.members:
                raise NotFoundError("endpoint", f"{container_id} on {network.name}")
            self._leave(network.network_id, container_id)
            logger.debug(f"Detached {container_id} from {network.name}")
            self._publish(
                EventType.NETWORK_DISCONNECTED,
                network.network_id,
                name=network.name,
                container_id=container_id,
            )

    def detach_all(self, container_id: str) -> list[str]:
        """Detach a container from every network it belongs to.

        Returns:
            IDs of the networks left.
        """
        with self._locks.hold(container_id):
            left = []
            for network in self.list_networks(lambda n: n.has_member(container_id)):
                self.detach(network.network_id, container_id)
                left.append(network.network_id)
            return left

    # =========================================================================
    # Resolution
    # =========================================================================

    def resolve(self, network_ref: str, name: str, requester: Optional[str] = None) -> str:
        """Resolve a name to an address on one network.

        Args:
            network_ref: Network ID, name or ID prefix.
            name: Alias, container name, container ID or unique ID prefix.
            requester: Container asking. On a ``none`` network a container
                only resolves itself, to loopback.

        Returns:
            Address of the earliest attached match.

        Raises:
            NotFoundError: If no member of the network answers to the name.
        """
        addresses = self.resolve_all(network_ref, name, requester)
        return addresses[0]

    def resolve_all(self, network_ref: str, name: str, requester: Optional[str] = None) -> list[str]:
        """Resolve a name to every matching address on one network.

        Raises:
            NotFoundError: If no member of the network answers to the name.
        """
        network = self._store.find(ResourceKind.NETWORK, network_ref)
        endpoints = network.endpoints_for(name)
        if network.driver == NetworkDriver.NONE:
            requester_id = self._requester_id(requester)
            endpoints = [e for e in endpoints if e.container_id == requester_id]
        if not endpoints:
            raise NotFoundError("name", f"{name} on network {network.name}")
        if not network.driver.allocates_addresses:
            return [LOOPBACK_ADDRESS]
        return [e.address for e in endpoints if e.address]

    def _requester_id(self, requester: Optional[str]) -> Optional[str]:
        if requester is None:
            return None
        try:
            return self._store.resolve_id(ResourceKind.CONTAINER, requester)
        except NotFoundError:
            return None

    def reachable(self, first: str, second: str) -> bool:
        """Check whether two containers share a network with connectivity."""
        first_id = self._store.resolve_id(ResourceKind.CONTAINER, first)
        second_id = self._store.resolve_id(ResourceKind.CONTAINER, second)
        shared = self.list_networks(
            lambda n: n.driver != NetworkDriver.NONE
            and n.has_member(first_id)
            and n.has_member(second_id)
        )
        return bool(shared)

    def namespace_handles(self, container: Container) -> list[NetworkHandle]:
        """Handles for every network a container must join on start."""
        networks = self.list_networks(lambda n: n.has_member(container.container_id))
        return [self._handle(n, container.container_id) for n in networks]

    # =========================================================================
    # Internals
    # =========================================================================

    def _plan_subnet(
        self,
        subnet: Optional[str],
        gateway: Optional[str],
        existing: list[Network],
    ) -> tuple[ipaddress.IPv4Network | ipaddress.IPv6Network, ipaddress.IPv4Address | ipaddress.IPv6Address]:
        taken = [ipaddress.ip_network(n.subnet) for n in existing if n.subnet]
        if subnet is not None:
            try:
                network_subnet = ipaddress.ip_network(subnet)
            except ValueError as e:
                raise ValueError(f"Invalid subnet {subnet!r}: {e}") from None
            if network_subnet.num_addresses < 4:
                raise ValueError(f"Subnet {subnet} is too small")
            for other in taken:
                if network_subnet.overlaps(other):
                    raise ConflictError(f"Subnet {subnet} overlaps {other}")
        else:
            network_subnet = None
            for candidate in self._pool.subnets(new_prefix=self._prefix):
                if not any(candidate.overlaps(other) for other in taken):
                    network_subnet = candidate
                    break
            if network_subnet is None:
                raise AddressPoolExhaustedError(f"No free /{self._prefix} subnet left in {self._pool}")

        if gateway is not None:
            try:
                network_gateway = ipaddress.ip_address(gateway)
            except ValueError as e:
                raise ValueError(f"Invalid gateway {gateway!r}: {e}") from None
            if not self._is_host_address(network_subnet, network_gateway):
                raise ValueError(f"Gateway {gateway} is not a host address of {network_subnet}")
        else:
            network_gateway = next(network_subnet.hosts())
        return network_subnet, network_gateway

    @staticmethod
    def _is_host_address(subnet, address) -> bool:
        return (
            address in subnet
            and address != subnet.network_address
            and address != subnet.broadcast_address
        )

    def _allocate(self, network: Network, requested: Optional[str]) -> str:
        subnet = ipaddress.ip_network(network.subnet)
        gateway = ipaddress.ip_address(network.gateway) if network.gateway else None
        in_use = {ipaddress.ip_address(a) for a in network.allocated_addresses()}

        if requested is not None:
            try:
                address = ipaddress.ip_address(requested)
            except ValueError as e:
                raise ValueError(f"Invalid address {requested!r}: {e}") from None
            if not self._is_host_address(subnet, address) or address == gateway:
                raise ValueError(f"Address {requested} is not assignable in {network.subnet}")
            if address in in_use:
                raise ConflictError(f"Address {requested} is already in use on {network.name}")
            return str(address)

        for address in subnet.hosts():
            if address != gateway and address not in in_use:
                return str(address)
        raise AddressPoolExhaustedError(f"No free address left on network {network.name}")

    def _leave(self, network_id: str, container_id: str) -> None:
        def leave(record: Network) -> None:
            record.members.pop(container_id, None)

        self._store.mutate(ResourceKind.NETWORK, network_id, leave)
        if self._store.exists(ResourceKind.CONTAINER, container_id):
            self._store.mutate(
                ResourceKind.CONTAINER,
                container_id,
                lambda c: c.networks.discard(network_id),
            )

    @staticmethod
    def _handle(network: Network, container_id: str) -> NetworkHandle:
        endpoint = network.members.get(container_id)
        return NetworkHandle(
            network_id=network.network_id,
            driver=network.driver.value,
            address=endpoint.address if endpoint else None,
            gateway=network.gateway,
            subnet=network.subnet,
            internal=network.internal,
            aliases=tuple(endpoint.aliases) if endpoint else (),
        )

    def _publish(self, event_type: EventType, network_id: str, **attributes) -> None:
        self._bus.publish(Event(event_type, ResourceKind.NETWORK, network_id, attributes))
