#!/usr/bin/env python3
"""Test topology building and link deduplication"""

from ib_parser import PortRef
from ib_topology import TopologyBuilder, build_topology

SAMPLE_OUTPUT = """\
0x0002c902004a0e00 "SW1"      3    1[  ] ==( 4X      10.0 Gbps Active/  LinkUp)==>  0x0002c90300a1b2c1      4    1[  ] "node07 HCA-1" ( )
0x0002c902004a0e00 "SW1"      3    2[  ] ==( 4X       5.0 Gbps Active/  LinkUp)==>  0x0002c90300a1b2c2      6    1[  ] "node08 HCA-1" ( )
0x0002c902004a0e00 "SW1"      3    3[  ] ==( 4X      10.0 Gbps Active/  LinkUp)==>  0x0002c902004a0f00      5    3[  ] "SW2" ( )
0x0002c902004a0e00 "SW1"      3    4[  ] ==(                Down/ Polling)==>                             [  ] "" ( )
0x0002c902004a0f00 "SW2"      5    1[  ] ==( 4X      10.0 Gbps Active/  LinkUp)==>  0x0002c90300a1b2c3      7    1[  ] "node09 HCA-1" ( )
0x0002c902004a0f00 "SW2"      5    2[  ] ==(                Down/ Polling)==>                             [  ] "" ( )
0x0002c902004a0f00 "SW2"      5    3[  ] ==( 4X      10.0 Gbps Active/  LinkUp)==>  0x0002c902004a0e00      3    3[  ] "SW1" ( )
0x0002c90300a1b2c1 "node07 HCA-1"      4    1[  ] ==( 4X      10.0 Gbps Active/  LinkUp)==>  0x0002c902004a0e00      3    1[  ] "SW1" ( )
"""


def test_sample_topology():
    topology = build_topology(SAMPLE_OUTPUT.splitlines())

    assert sorted(topology.nodes) == [3, 4, 5, 6, 7]
    assert sorted(n.lid for n in topology.switches) == [3, 5]
    assert sorted(n.lid for n in topology.hosts) == [4, 6, 7]
    assert len(topology.links) == 4, f"Expected 4 cables, got {len(topology.links)}"

    sw1 = topology.nodes[3]
    assert sw1.name == 'SW1'
    assert sw1.guid == '0x0002c902004a0e00'
    assert sw1.total_ports == 4
    assert sw1.used_port_count == 3
    assert sw1.free_port_count == 1

    sw2 = topology.nodes[5]
    assert sw2.total_ports == 3
    assert sw2.used_port_count == 2
    assert sw2.ports[3] is sw1.ports[3], "Interconnect should be shared by both switches"


def test_link_fields():
    topology = build_topology(SAMPLE_OUTPUT.splitlines())
    link = topology.nodes[3].ports[1]

    assert (link.sw_lid, link.sw_port) == (3, 1)
    assert (link.peer_lid, link.peer_port) == (4, 1)
    assert link.peer_name == 'node07'
    assert link.speed == 40
    assert topology.nodes[3].ports[2].speed == 20


def test_every_link_end_is_a_node():
    topology = build_topology(SAMPLE_OUTPUT.splitlines())
    for link in topology.links:
        assert link.sw_lid in topology.nodes
        assert link.peer_lid in topology.nodes


def test_port_counts_add_up():
    topology = build_topology(SAMPLE_OUTPUT.splitlines())
    for switch in topology.switches:
        assert switch.free_port_count + switch.used_port_count == switch.total_ports


def test_duplicate_lines_are_idempotent():
    once = build_topology(SAMPLE_OUTPUT.splitlines())
    twice = build_topology(SAMPLE_OUTPUT.splitlines() * 2)

    assert len(twice.links) == len(once.links)
    for lid, node in once.nodes.items():
        again = twice.nodes[lid]
        assert again.total_ports == node.total_ports, f"LID {lid} port count changed"
        assert again.ports == node.ports


def test_symmetric_reports_dedup():
    """N lines reporting N/2 cables from both ends give N/2 links"""
    builder = TopologyBuilder()
    cables = [((1, 1), (2, 1)), ((1, 2), (2, 2)), ((2, 3), (3, 1))]
    for (a_lid, a_port), (b_lid, b_port) in cables:
        builder.record(PortRef(a_lid, a_port, name=f"sw{a_lid}"), PortRef(b_lid, b_port, name=f"sw{b_lid}"), 40.0)
    for (a_lid, a_port), (b_lid, b_port) in cables:
        builder.record(PortRef(b_lid, b_port, name=f"sw{b_lid}"), PortRef(a_lid, a_port, name=f"sw{a_lid}"), 40.0)

    assert len(builder.topology.links) == len(cables)
    assert builder.discarded == len(cables)
    assert all(node.is_switch for node in builder.topology.nodes.values())


def test_first_report_wins():
    builder = TopologyBuilder()
    builder.record(PortRef(1, 5, name='sw1'), PortRef(10, 1, name='hostA'), 40.0)
    builder.record(PortRef(1, 5, name='sw1'), PortRef(11, 1, name='hostB'), 20.0)

    links = builder.topology.links
    assert len(links) == 1
    assert builder.topology.nodes[1].ports[5].peer_name == 'hostA'


def test_switch_classification_is_order_independent():
    builder = TopologyBuilder()
    # Seen as a peer first, reports later
    builder.record(PortRef(1, 1, name='sw1'), PortRef(2, 7, guid='0xb', name='sw2'), 40.0)
    assert not builder.topology.nodes[2].is_switch

    builder.record(PortRef(2, 8, guid='0xb', name='sw2-full-name'), PortRef(9, 1, name='host9'), 40.0)
    sw2 = builder.topology.nodes[2]
    assert sw2.is_switch
    assert sw2.name == 'sw2-full-name'

    builder.record(PortRef(1, 2, name='sw1'), PortRef(2, 9, name='sw2'), 40.0)
    assert sw2.is_switch, "A switch stays a switch"


def test_unconnected_port_only_counts():
    builder = TopologyBuilder()
    builder.record(PortRef(1, 1, name='sw1'), None, None)

    node = builder.topology.nodes[1]
    assert node.total_ports == 1
    assert node.used_port_count == 0
    assert builder.topology.links == []


def test_adapter_lines_do_not_mutate():
    line = '0x2 "node07 HCA-1" 4 1[  ] ==( 4X 10.0 Gbps Active/ LinkUp)==> 0x1 3 5[  ] "SW1" ( )'
    topology = build_topology([line])

    assert topology.is_empty()


def test_empty_input():
    topology = build_topology(["no link here", ""])
    assert topology.is_empty()


if __name__ == "__main__":
    for name, func in list(globals().items()):
        if name.startswith('test_') and callable(func):
            func()
            print(f"✓ {name}")
