#!/usr/bin/env python3
"""
InfiniBand fabric topology model
Builds switches, endpoints and links from parsed dump records and selects
the subset of the fabric to draw

Copyright (c) 2025 Darren Soothill
All rights reserved.
"""

import re
import logging
from typing import Dict, FrozenSet, Iterable, List, Optional, Set, Tuple
from dataclasses import dataclass, field

from ib_parser import LinkRecord, PortRef, iter_link_records

logger = logging.getLogger(__name__)


@dataclass
class TopologyConfig:
    """Options controlling filtering and graph output"""
    use_color: bool = True          # Colored edges and free port cells
    all_labels: bool = False        # Label every edge with speed and port numbers
    inter_only: bool = False        # Only switch-to-switch links
    hosts_only: bool = False        # Only links with a host on one end
    lids: List[int] = field(default_factory=list)   # Only links touching these LIDs
    host: Optional[str] = None      # Only links to this host (name or number)
    include_guid: bool = False      # Include GUIDs in labels
    switch_format: Optional[str] = None
    node_format: Optional[str] = None
    output: str = 'topology'        # Output basename
    formats: List[str] = field(default_factory=list)  # Export formats (e.g. png, svg)


@dataclass(frozen=True)
class Link:
    """One physical cable, as first reported by a switch"""
    sw_lid: int
    sw_port: int
    sw_guid: str
    sw_name: str
    speed: float
    peer_lid: int
    peer_port: int
    peer_guid: str
    peer_name: str

    @property
    def cable_key(self) -> FrozenSet[Tuple[int, int]]:
        return frozenset(((self.sw_lid, self.sw_port), (self.peer_lid, self.peer_port)))


@dataclass(eq=False)
class Node:
    """A switch or an endpoint (host channel adapter) of the fabric"""
    lid: int
    guid: str = ''
    name: str = ''
    is_switch: bool = False
    total_ports: int = 0
    ports: Dict[int, Link] = field(default_factory=dict)
    reported_ports: Set[int] = field(default_factory=set, repr=False)

    @property
    def used_port_count(self) -> int:
        return len(self.ports)

    @property
    def free_port_count(self) -> int:
        return self.total_ports - self.used_port_count


@dataclass
class Topology:
    nodes: Dict[int, Node] = field(default_factory=dict)
    links: List[Link] = field(default_factory=list)

    @property
    def switches(self) -> List[Node]:
        return [node for node in self.nodes.values() if node.is_switch]

    @property
    def hosts(self) -> List[Node]:
        return [node for node in self.nodes.values() if not node.is_switch]

    def is_empty(self) -> bool:
        return not self.nodes and not self.links


class TopologyBuilder:
    """Accumulates link records into a Topology

    Each cable is usually reported twice, once by each end. The first report
    wins: a record whose port slot is already taken on either end is dropped.
    """

    def __init__(self):
        self.topology = Topology()
        self.discarded = 0

    def get_node(self, ref: PortRef) -> Node:
        """Return the node for ref.lid, creating it on first reference"""
        node = self.topology.nodes.get(ref.lid)
        if node is None:
            node = Node(lid=ref.lid, guid=ref.guid, name=ref.name)
            self.topology.nodes[ref.lid] = node
        elif not node.guid and ref.guid:
            node.guid = ref.guid
        return node

    def record(self, reporting: PortRef, peer: Optional[PortRef], speed: Optional[float]) -> None:
        """Add one switch port report"""
        switch = self.get_node(reporting)

        if not switch.is_switch:
            # First self-report, trust the switch's own description
            if reporting.name:
                switch.name = reporting.name
            if reporting.guid:
                switch.guid = reporting.guid
            switch.is_switch = True

        if reporting.port not in switch.reported_ports:
            switch.reported_ports.add(reporting.port)
            switch.total_ports += 1

        if peer is None or not peer.name:
            # The port is not connected
            return

        remote = self.get_node(peer)

        if peer.port in remote.ports or reporting.port in switch.ports:
            # Already recorded from the other end, or a duplicate line
            self.discarded += 1
            logger.debug(f"Ignoring duplicate link {reporting.lid}:{reporting.port} -> {peer.lid}:{peer.port}")
            return

        link = Link(
            sw_lid=reporting.lid, sw_port=reporting.port, sw_guid=switch.guid, sw_name=switch.name,
            speed=speed or 0.0,
            peer_lid=peer.lid, peer_port=peer.port, peer_guid=peer.guid, peer_name=peer.name,
        )
        switch.ports[reporting.port] = link
        remote.ports[peer.port] = link
        self.topology.links.append(link)

    def add(self, record: LinkRecord) -> None:
        self.record(record.reporting, record.peer, record.speed)


def build_topology(lines: Iterable[str]) -> Topology:
    """Parse dump lines into a Topology"""
    builder = TopologyBuilder()
    for record in iter_link_records(lines):
        builder.add(record)

    topology = builder.topology
    logger.info(f"Parsed {len(topology.switches)} switches, {len(topology.hosts)} hosts "
                f"and {len(topology.links)} links")
    if builder.discarded:
        logger.debug(f"Ignored {builder.discarded} duplicate link reports")
    return topology


# FILTERS

def is_interconnect(link: Link, nodes: Dict[int, Node]) -> bool:
    """True when both ends of the link are switches"""
    return nodes[link.sw_lid].is_switch and nodes[link.peer_lid].is_switch


def host_matches(name: str, host: str) -> bool:
    """Match a host name against a name or a node number ("7" matches "node07")"""
    if name == host:
        return True
    if host.isdigit():
        suffix = re.search(r'(\d+)$', name)
        return bool(suffix) and int(suffix.group(1)) == int(host)
    return False


def _host_side(link: Link, nodes: Dict[int, Node]) -> Optional[Node]:
    for lid in (link.peer_lid, link.sw_lid):
        if not nodes[lid].is_switch:
            return nodes[lid]
    return None


def filter_links(topology: Topology, config: TopologyConfig) -> List[Link]:
    """Apply every active filter of config to the topology links"""
    nodes = topology.nodes
    links = list(topology.links)

    if config.lids:
        lids = set(config.lids)
        logger.info(f"Only keep hardware related to LID {sorted(lids)}")
        links = [l for l in links if lids & {l.sw_lid, l.peer_lid}]

    if config.inter_only:
        logger.info("Only keep interconnection links")
        links = [l for l in links if is_interconnect(l, nodes)]

    if config.hosts_only:
        logger.info("Only keep host links")
        links = [l for l in links if not is_interconnect(l, nodes)]

    if config.host:
        logger.info(f"Only keep links to host {config.host}")
        kept = []
        for link in links:
            host = _host_side(link, nodes)
            if host is not None and host_matches(host.name, config.host):
                kept.append(link)
        links = kept

    return links


def select_nodes(topology: Topology, links: Iterable[Link]) -> Dict[int, Node]:
    """Nodes referenced by the given links, in first-reference order"""
    selected = {}
    for link in links:
        for lid in (link.sw_lid, link.peer_lid):
            if lid not in selected:
                selected[lid] = topology.nodes[lid]
    return selected
