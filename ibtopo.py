#!/usr/bin/env python3
"""
InfiniBand Topology Mapper
Draws the switches, hosts and cables of an InfiniBand fabric from
iblinkinfo / ibtopology output

Copyright (c) 2025 Darren Soothill
All rights reserved.
"""

import argparse
import getpass
import json
import logging
import sys
from collections import defaultdict
from dataclasses import asdict
from pathlib import Path
from typing import Dict, List, Optional

import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
import networkx as nx

from ib_collect import DEFAULT_COMMAND, CollectionError, FabricCollector, FabricHost
from ib_graph import project, render_formats, to_digraph, write_dot
from ib_topology import (Link, Node, Topology, TopologyConfig, build_topology,
                         filter_links, select_nodes)

logger = logging.getLogger(__name__)

DEFAULT_OUTPUT = 'topology'


def setup_logging(verbose: bool) -> logging.Logger:
    """Setup logging configuration"""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    return logging.getLogger(__name__)


def comma_list(value: str) -> List[str]:
    return [item.strip() for item in value.split(',') if item.strip()]


def parse_lid(item: str) -> int:
    """Decimal LID, or hexadecimal with a 0x prefix"""
    if item.lower().startswith('0x'):
        return int(item, 16)
    return int(item)


def lid_list(value: str) -> List[int]:
    try:
        return [parse_lid(item) for item in comma_list(value)]
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid LID list: {value}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='InfiniBand Topology Mapper - Draw fabric wiring from iblinkinfo output',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Draw the whole fabric, write fabric.dot and fabric.png
  iblinkinfo --line > fabric.txt
  %(prog)s -f png fabric.txt

  # Read from standard input
  iblinkinfo --line | %(prog)s -f png,svg -o cluster

  # Only switch-to-switch cables, black and white
  %(prog)s --inter-only --bw -f pdf fabric.txt

  # Only the cables of LIDs 3 and 12, with GUIDs in the labels
  %(prog)s -l 3,12 -g fabric.txt

  # Collect the dump from the subnet manager host
  %(prog)s --ssh sm01 --user root -f png
        """
    )

    parser.add_argument('input', nargs='?', default='-',
                        help="iblinkinfo/ibtopology --line output file (default: standard input)")

    selection = parser.add_argument_group('selection')
    selection.add_argument('--lid', '-l', type=lid_list, default=[], metavar='LID1,LID2',
                           help='Only show hardware related to these LIDs')
    selection.add_argument('--host', metavar='NAME',
                           help='Only show the links of this host (name or node number)')
    exclusive = selection.add_mutually_exclusive_group()
    exclusive.add_argument('--inter-only', '-i', action='store_true',
                           help='Only show interconnections (switch to switch links)')
    exclusive.add_argument('--hosts-only', action='store_true',
                           help='Only show host links')

    output = parser.add_argument_group('output')
    output.add_argument('--output', '-o',
                        help=f'Output file basename (default: input file name or {DEFAULT_OUTPUT})')
    output.add_argument('--formats', '-f', type=comma_list, default=[], metavar='X,Y,Z',
                        help='Export to the specified formats, e.g. png,svg (requires graphviz)')
    output.add_argument('--guid', '-g', action='store_true',
                        help='Include GUIDs in labels')
    output.add_argument('--bw', action='store_true',
                        help='Do not use colors in output')
    output.add_argument('--all-labels', '-a', action='store_true',
                        help='Label every link with its speed and port numbers')
    output.add_argument('--switch-format', metavar='FORMAT',
                        help='Switch label format (%%lid, %%guid, %%name, %%report)')
    output.add_argument('--node-format', metavar='FORMAT',
                        help='Host label format (%%lid, %%guid, %%name)')
    output.add_argument('--json', metavar='FILE',
                        help='Also export the selected topology as JSON')
    output.add_argument('--preview', metavar='FILE',
                        help='Also draw a quick overview PNG with networkx')
    output.add_argument('--summary', action='store_true',
                        help='Log a per-switch port summary')

    remote = parser.add_argument_group('remote collection')
    remote.add_argument('--ssh', metavar='HOST',
                        help='Run the dump command on HOST instead of reading input')
    remote.add_argument('--user',
                        help='SSH username (default: current user)')
    remote.add_argument('--key', help='SSH private key file')
    remote.add_argument('--ask-pass', action='store_true',
                        help='Prompt for the SSH password')
    remote.add_argument('--ssh-port', type=int, default=22,
                        help='SSH port (default: 22)')
    remote.add_argument('--command', default=DEFAULT_COMMAND,
                        help=f"Dump command to run (default: '{DEFAULT_COMMAND}')")

    parser.add_argument('--verbose', '-v', action='store_true',
                        help='Enable verbose logging')
    return parser


def config_from_args(args: argparse.Namespace) -> TopologyConfig:
    """Build the run configuration once from parsed arguments"""
    output = args.output
    if not output:
        if args.input != '-' and not args.ssh:
            output = Path(args.input).stem
        else:
            output = DEFAULT_OUTPUT

    return TopologyConfig(
        use_color=not args.bw,
        all_labels=args.all_labels,
        inter_only=args.inter_only,
        hosts_only=args.hosts_only,
        lids=args.lid,
        host=args.host,
        include_guid=args.guid,
        switch_format=args.switch_format,
        node_format=args.node_format,
        output=output,
        formats=args.formats,
    )


def read_lines(path: str) -> List[str]:
    """Read a dump file, '-' reads standard input"""
    if path == '-':
        return sys.stdin.readlines()
    with open(path, 'r', encoding='utf-8', errors='replace') as f:
        return f.readlines()


def collect_lines(args: argparse.Namespace) -> List[str]:
    username = args.user or getpass.getuser()
    password = getpass.getpass(f"Password for {username}@{args.ssh}: ") if args.ask_pass else None
    host = FabricHost(hostname=args.ssh, username=username, password=password,
                      ssh_key=args.key, port=args.ssh_port, command=args.command)
    return FabricCollector(host).collect()


# REPORTS

def export_to_json(nodes: Dict[int, Node], links: List[Link], output_file: str):
    """Export the selected topology to JSON"""
    data = {
        'nodes': [
            {
                'lid': node.lid,
                'guid': node.guid,
                'name': node.name,
                'switch': node.is_switch,
                # Port counters only make sense for switches
                'total_ports': node.total_ports if node.is_switch else None,
                'used_ports': node.used_port_count if node.is_switch else None,
                'free_ports': node.free_port_count if node.is_switch else None,
            }
            for node in nodes.values()
        ],
        'links': [asdict(link) for link in links],
    }

    with open(output_file, 'w') as f:
        json.dump(data, f, indent=2)

    logger.info(f"Topology exported to {output_file}")


def print_topology_summary(nodes: Dict[int, Node], links: List[Link]):
    """Log a text summary of the selected switches"""
    by_switch = defaultdict(list)
    for link in links:
        by_switch[link.sw_lid].append(link)
        if nodes[link.peer_lid].is_switch:
            by_switch[link.peer_lid].append(link)

    logger.info("=" * 60)
    logger.info("FABRIC TOPOLOGY SUMMARY")
    logger.info("=" * 60)

    for lid in sorted(lid for lid, node in nodes.items() if node.is_switch):
        switch = nodes[lid]
        logger.info(f"switch {lid} {switch.name}: {switch.used_port_count}/{switch.total_ports} ports used")
        for link in sorted(by_switch[lid], key=lambda l: l.sw_port if l.sw_lid == lid else l.peer_port):
            if link.sw_lid == lid:
                port, peer_lid, peer_port = link.sw_port, link.peer_lid, link.peer_port
            else:
                port, peer_lid, peer_port = link.peer_port, link.sw_lid, link.sw_port
            peer = nodes[peer_lid]
            logger.info(f"  port {port:3} -> {peer.name:20} ({peer_lid}:{peer_port}) [{link.speed:g} Gb/s]")

    logger.info("=" * 60)


def to_networkx(nodes: Dict[int, Node], links: List[Link]) -> nx.Graph:
    """Undirected graph of the selection, parallel cables counted on one edge"""
    G = nx.Graph()
    for lid, node in nodes.items():
        G.add_node(lid, name=node.name, switch=node.is_switch)
    for link in links:
        if G.has_edge(link.sw_lid, link.peer_lid):
            G[link.sw_lid][link.peer_lid]['cables'] += 1
        else:
            G.add_edge(link.sw_lid, link.peer_lid, cables=1, speed=link.speed)
    return G


def visualize_preview(nodes: Dict[int, Node], links: List[Link], output_file: str):
    """Quick overview drawing, no port detail"""
    G = to_networkx(nodes, links)
    num_nodes = max(len(G.nodes()), 1)

    plt.figure(figsize=(max(12, num_nodes * 0.5), max(9, num_nodes * 0.4)))
    k_value = 3 / (num_nodes ** 0.5) if num_nodes > 1 else 2
    pos = nx.spring_layout(G, k=k_value, iterations=100, seed=42)

    switches = [n for n, d in G.nodes(data=True) if d['switch']]
    hosts = [n for n, d in G.nodes(data=True) if not d['switch']]
    nx.draw_networkx_nodes(G, pos, nodelist=switches, node_color='#e74c3c', node_shape='s',
                           node_size=900, edgecolors='black')
    nx.draw_networkx_nodes(G, pos, nodelist=hosts, node_color='#3498db', node_size=300,
                           edgecolors='black')

    widths = [min(1 + d['cables'], 6) for _, _, d in G.edges(data=True)]
    nx.draw_networkx_edges(G, pos, width=widths, alpha=0.6, edge_color='#7f8c8d')
    nx.draw_networkx_labels(G, pos, labels={n: d['name'] for n, d in G.nodes(data=True)}, font_size=7)

    plt.title('InfiniBand Fabric Topology', fontsize=14, fontweight='bold')
    plt.axis('off')
    plt.tight_layout()
    plt.savefig(output_file, dpi=150, facecolor='white')
    plt.close()
    logger.info(f"Topology preview saved to {output_file}")


# PIPELINE

def run(lines: List[str], config: TopologyConfig, json_file: Optional[str] = None,
        preview_file: Optional[str] = None, summary: bool = False) -> int:
    """Build, filter and draw the topology, return the exit code"""
    topology: Topology = build_topology(lines)

    # Having no nodes and no links is very suspect
    if topology.is_empty():
        logger.warning("Could not find any links or nodes in the given topology")
        logger.warning("Expected input is 'iblinkinfo --line' or 'ibtopology --line' output")

    links = filter_links(topology, config)
    nodes = select_nodes(topology, links)

    graph = project(links, nodes, config, all_nodes=topology.nodes)
    dot_path = write_dot(to_digraph(graph), config.output)
    failed = render_formats(dot_path, config.output, config.formats)

    if json_file:
        export_to_json(nodes, links, json_file)
    if preview_file:
        visualize_preview(nodes, links, preview_file)
    if summary:
        print_topology_summary(nodes, links)

    return 1 if failed else 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    config = config_from_args(args)

    try:
        lines = collect_lines(args) if args.ssh else read_lines(args.input)
    except CollectionError as e:
        logger.error(f"Fabric collection failed: {e}")
        return 1
    except OSError as e:
        logger.error(f"Cannot read {args.input}: {e}")
        return 1

    return run(lines, config, json_file=args.json, preview_file=args.preview, summary=args.summary)


if __name__ == '__main__':
    sys.exit(main())
