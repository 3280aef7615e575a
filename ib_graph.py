#!/usr/bin/env python3
"""
InfiniBand topology graph output
Projects the filtered topology into Graphviz vertices and edges, writes the
dot file and renders the requested export formats

Copyright (c) 2025 Darren Soothill
All rights reserved.
"""

import html
import logging
import os
from typing import Dict, List, Optional
from dataclasses import dataclass, field

import graphviz

from ib_topology import Link, Node, TopologyConfig, is_interconnect

logger = logging.getLogger(__name__)

# Aggregate link speeds with dedicated host link styles
HIGH_SPEED = 40
LOW_SPEED = 20

FREE_PORT_COLOR = 'lawngreen'
FREE_PORT_COLOR_BW = 'lightgray'

DEFAULT_SWITCH_FORMAT = 'switch_%lid (%report)'
DEFAULT_SWITCH_FORMAT_GUID = 'switch_%lid (%guid, %report)'
DEFAULT_NODE_FORMAT = '%name'
DEFAULT_NODE_FORMAT_GUID = '%lid (%guid)'


class RenderError(Exception):
    """Graphviz could not produce one export format"""


@dataclass
class Vertex:
    name: str
    label: str
    attrs: Dict[str, str] = field(default_factory=dict)
    is_switch: bool = False


@dataclass
class Edge:
    tail: str
    head: str
    tail_port: Optional[str] = None
    head_port: Optional[str] = None
    attrs: Dict[str, str] = field(default_factory=dict)

    @property
    def tail_spec(self) -> str:
        return f"{self.tail}:{self.tail_port}" if self.tail_port else self.tail

    @property
    def head_spec(self) -> str:
        return f"{self.head}:{self.head_port}" if self.head_port else self.head


@dataclass
class GraphDescription:
    """Renderer-independent list of vertices and edges"""
    vertices: List[Vertex] = field(default_factory=list)
    edges: List[Edge] = field(default_factory=list)

    def vertex(self, name: str) -> Optional[Vertex]:
        return next((v for v in self.vertices if v.name == name), None)


# LABELS

def switch_vertex_name(lid: int) -> str:
    return f"switch_{lid}"


def node_vertex_name(lid: int) -> str:
    return f"node_{lid}"


def port_anchor(port: int) -> str:
    return f"p{port}"


def ports_summary(switch: Node) -> str:
    """Free port count in words"""
    total_free = switch.free_port_count
    if total_free == 0:
        return "full"
    if total_free == 1:
        return "1 port free"
    return f"{total_free} ports free"


def ports_line(switch: Node, use_color: bool = True) -> str:
    """One table cell per switch port, free ports highlighted"""
    free_bg = FREE_PORT_COLOR if use_color else FREE_PORT_COLOR_BW
    cells = []
    for port in range(1, switch.total_ports + 1):
        if port in switch.ports:
            cells.append(f'<TD PORT="{port_anchor(port)}">{port}</TD>')
        else:
            cells.append(f'<TD PORT="{port_anchor(port)}" BGCOLOR="{free_bg}">{port}</TD>')
    return ''.join(cells)


def format_string(template: str, values: Dict[str, object]) -> str:
    """Substitute %key tokens of template"""
    result = template
    for key, value in values.items():
        result = result.replace(f"%{key}", str(value))
    return result


def switch_label(switch: Node, config: TopologyConfig) -> str:
    """HTML-like table label: header cell, then one cell per port"""
    if config.switch_format:
        template = config.switch_format
    elif config.include_guid:
        template = DEFAULT_SWITCH_FORMAT_GUID
    else:
        template = DEFAULT_SWITCH_FORMAT

    title = format_string(template, {
        'lid': switch.lid, 'guid': switch.guid, 'name': switch.name,
        'report': ports_summary(switch),
    })
    # A table needs at least one cell per row
    span = max(switch.total_ports, 1)
    ports = ports_line(switch, config.use_color) or '<TD></TD>'

    return (f'<TABLE><TR><TD COLSPAN="{span}">{html.escape(title)}</TD></TR>'
            f'<TR>{ports}</TR></TABLE>')


def node_label(node: Node, config: TopologyConfig) -> str:
    if config.node_format:
        template = config.node_format
    elif config.include_guid:
        template = DEFAULT_NODE_FORMAT_GUID
    else:
        template = DEFAULT_NODE_FORMAT

    return format_string(template, {'lid': node.lid, 'guid': node.guid, 'name': node.name})


def edge_attributes(link: Link, interconnect: bool, config: TopologyConfig) -> Dict[str, str]:
    """Stroke style of a link"""
    attributes = {}

    if interconnect:
        attributes['color'] = 'firebrick'
        attributes['style'] = 'bold'
    elif link.speed == HIGH_SPEED:
        attributes['color'] = 'blue'
        attributes['penwidth'] = '2'
    elif link.speed == LOW_SPEED:
        attributes['color'] = 'lightblue'

    if config.all_labels:
        attributes['label'] = f"{link.speed:g} Gb/s"
        attributes['taillabel'] = str(link.sw_port)
        attributes['headlabel'] = str(link.peer_port)

    # Keep the stroke style only
    if not config.use_color:
        attributes.pop('color', None)

    return attributes


# PROJECTION

def project(links: List[Link], nodes: Dict[int, Node], config: TopologyConfig,
            all_nodes: Optional[Dict[int, Node]] = None) -> GraphDescription:
    """Convert the selected links and nodes into graph primitives

    all_nodes is the full topology node map, used to classify link ends; it
    defaults to nodes.
    """
    all_nodes = all_nodes if all_nodes is not None else nodes
    graph = GraphDescription()

    for lid, node in nodes.items():
        if node.is_switch:
            graph.vertices.append(Vertex(
                name=switch_vertex_name(lid),
                label=f"<{switch_label(node, config)}>",
                attrs={'shape': 'plaintext'},
                is_switch=True,
            ))
        else:
            graph.vertices.append(Vertex(name=node_vertex_name(lid), label=node_label(node, config)))

    emitted = set()
    for link in links:
        if link.cable_key in emitted:
            continue
        emitted.add(link.cable_key)

        interconnect = is_interconnect(link, all_nodes)
        if interconnect:
            head, head_port = switch_vertex_name(link.peer_lid), port_anchor(link.peer_port)
        else:
            head, head_port = node_vertex_name(link.peer_lid), None

        graph.edges.append(Edge(
            tail=switch_vertex_name(link.sw_lid),
            tail_port=port_anchor(link.sw_port),
            head=head,
            head_port=head_port,
            attrs=edge_attributes(link, interconnect, config),
        ))

    return graph


def to_digraph(graph: GraphDescription) -> graphviz.Digraph:
    """Build the Graphviz graph for a description"""
    dot = graphviz.Digraph('G', comment='InfiniBand Topology')
    dot.attr(ratio='1')
    dot.attr('edge', dir='none', fontsize='8')

    for vertex in graph.vertices:
        dot.node(vertex.name, label=vertex.label, **vertex.attrs)

    for edge in graph.edges:
        dot.edge(edge.tail_spec, edge.head_spec, **edge.attrs)

    return dot


# OUTPUT

def write_dot(dot: graphviz.Digraph, basename: str) -> str:
    """Write the canonical dot file, always generated"""
    filename = f"{basename}.dot"
    logger.info(f"Generating {filename}...")
    return dot.save(filename=filename)


def render_format(dot_path: str, basename: str, fmt: str) -> str:
    """Render the dot file into basename.fmt"""
    output_file = f"{basename}.{fmt}"
    if os.path.abspath(output_file) == os.path.abspath(dot_path):
        # The dot file is already written
        logger.info(f"{output_file} already generated")
        return output_file

    logger.info(f"Generating {output_file}...")
    try:
        graphviz.render('dot', format=fmt, filepath=dot_path, outfile=output_file)
    except graphviz.ExecutableNotFound as e:
        raise RenderError(f"Graphviz 'dot' executable not found: {e}") from e
    except graphviz.CalledProcessError as e:
        raise RenderError(f"dot failed with exit code {e.returncode}") from e
    except ValueError as e:
        raise RenderError(str(e)) from e
    return output_file


def render_formats(dot_path: str, basename: str, formats: List[str]) -> List[str]:
    """Render every requested format, return the formats that failed"""
    failed = []
    for fmt in formats:
        try:
            render_format(dot_path, basename, fmt)
        except RenderError as e:
            logger.error(f"Could not generate {basename}.{fmt}: {e}")
            failed.append(fmt)
    return failed
