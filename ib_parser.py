#!/usr/bin/env python3
"""
InfiniBand link dump parser
Classifies iblinkinfo / ibtopology output lines and extracts link records

Copyright (c) 2025 Darren Soothill
All rights reserved.
"""

import re
import logging
from enum import Enum
from typing import Iterable, Iterator, Optional
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# Reporting-side names containing this token are host channel adapters
ADAPTER_MARKER = 'HCA'

# Speed values are reported per lane, links are 4 lanes wide
LANE_COUNT = 4

DOWN_MARKER = 'Down'

# Arrow section carrying the speed token:
#   ==( 4X      10.0 Gbps Active/  LinkUp)==>
#   ==(                Down/ Polling)==>
ARROW = r'''
    ==\(
    [^=]*?\s(\d+\.\d+|Down)     # per-lane speed or "Down" for an unused port
    [^=]*
    \)==>
'''

# iblinkinfo --line / ibtopology --line:
# <GUID> "<NAME>" <LID> <PORT>[  ] ==( ... )==> <PEER GUID> <PEER LID> <PEER PORT>[  ] "<PEER NAME>" ( )
LINE_RE = re.compile(r'''
    ^\s*(\w+)                   # reporting GUID
    \s+"([^"]*)"                # quoted reporting name
    \s+(\d+)                    # reporting LID
    \s+(\d+)                    # reporting port
    [^=]*
''' + ARROW + r'''
    \s*(\w*)                    # peer GUID
    \s+(\d*)                    # peer LID
    \s+(\d*)                    # peer port
    [^"]*"([^"]*)"              # quoted peer name
''', re.VERBOSE)

# Plain iblinkinfo, link lines below a section header:
#            3    5[  ] ==( 4X      10.0 Gbps Active/  LinkUp)==>       4    1[  ] "node07 HCA-1" ( )
BLOCK_RE = re.compile(r'''
    ^\s*(?:(0x[0-9a-fA-F]+)\s+)?    # optional reporting GUID (newer releases)
    (\d+)                       # reporting LID
    \s+(\d+)                    # reporting port
    [^=]*
''' + ARROW + r'''
    \s*(\d*)                    # peer LID
    \s+(\d*)                    # peer port
    [^"]*"([^"]*)"              # quoted peer name
''', re.VERBOSE)

# Section headers of plain iblinkinfo output:
#   Switch: 0x0002c902004a0e00 SW1:
#   CA: node07 HCA-1:
HEADER_RE = re.compile(r'^(Switch|CA):?\s+(?:(0x[0-9a-fA-F]+)\s+)?(.*):\s*$')


class LineKind(Enum):
    """Role of a single dump line"""
    HEADER = 'header'
    LINK = 'link'
    IGNORED = 'ignored'


@dataclass(frozen=True)
class PortRef:
    """One end of a cable as seen in a dump line"""
    lid: int
    port: int
    guid: str = ''
    name: str = ''


@dataclass(frozen=True)
class SectionHeader:
    """Current Switch:/CA: section of a block dump"""
    kind: str
    guid: str
    name: str

    @property
    def is_adapter(self) -> bool:
        return self.kind == 'CA'


@dataclass(frozen=True)
class LinkRecord:
    """Fields extracted from one link line

    speed is the aggregate rate, None when the port is down. An unconnected
    port has peer None.
    """
    reporting: PortRef
    peer: Optional[PortRef]
    speed: Optional[float]

    @property
    def from_adapter(self) -> bool:
        return ADAPTER_MARKER in self.reporting.name


@dataclass(frozen=True)
class ParsedLine:
    kind: LineKind
    header: Optional[SectionHeader] = None
    record: Optional[LinkRecord] = None


IGNORED_LINE = ParsedLine(LineKind.IGNORED)


def normalize_speed(token: str) -> Optional[float]:
    """Convert a per-lane speed token into the link rate, None for Down"""
    if token == DOWN_MARKER:
        return None
    return float(token) * LANE_COUNT


def short_name(name: str) -> str:
    """Keep only the first word of a node description ("node07 HCA-1" -> "node07")"""
    parts = name.split()
    return parts[0] if parts else ''


def _peer_ref(guid: str, lid: str, port: str, name: str, speed: Optional[float]) -> Optional[PortRef]:
    # A down port or a partial record without peer address is unconnected
    name = short_name(name)
    if speed is None or not name or not lid or not port:
        return None
    return PortRef(lid=int(lid), port=int(port), guid=guid, name=name)


def parse_line(line: str, section: Optional[SectionHeader] = None) -> ParsedLine:
    """Classify one line and extract its fields

    section is the last header seen, used by the block dialect where link
    lines do not repeat the reporting switch name.
    """
    match = LINE_RE.match(line)
    if match:
        (sw_guid, sw_name, sw_lid, sw_port, speed_token,
         peer_guid, peer_lid, peer_port, peer_name) = match.groups()
        speed = normalize_speed(speed_token)
        record = LinkRecord(
            reporting=PortRef(int(sw_lid), int(sw_port), sw_guid, sw_name.strip()),
            peer=_peer_ref(peer_guid, peer_lid, peer_port, peer_name, speed),
            speed=speed,
        )
        return ParsedLine(LineKind.LINK, record=record)

    match = HEADER_RE.match(line)
    if match:
        kind, guid, name = match.groups()
        return ParsedLine(LineKind.HEADER, header=SectionHeader(kind, guid or '', name.strip()))

    match = BLOCK_RE.match(line)
    if match:
        sw_guid, sw_lid, sw_port, speed_token, peer_lid, peer_port, peer_name = match.groups()
        speed = normalize_speed(speed_token)
        if section:
            sw_guid = sw_guid or section.guid
            sw_name = section.name
        else:
            sw_name = ''
        record = LinkRecord(
            reporting=PortRef(int(sw_lid), int(sw_port), sw_guid or '', sw_name),
            peer=_peer_ref('', peer_lid, peer_port, peer_name, speed),
            speed=speed,
        )
        return ParsedLine(LineKind.LINK, record=record)

    return IGNORED_LINE


def iter_link_records(lines: Iterable[str]) -> Iterator[LinkRecord]:
    """Yield the switch-side link records of a dump

    Adapter-side records are dropped, they repeat what the switch already
    reported about the same cable.
    """
    section = None
    for line in lines:
        parsed = parse_line(line, section)

        if parsed.kind is LineKind.HEADER:
            section = parsed.header
            logger.debug(f"Section {section.kind}: {section.name}")
            continue

        if parsed.kind is not LineKind.LINK:
            continue

        record = parsed.record
        if record.from_adapter or (section is not None and section.is_adapter):
            logger.debug(f"Skipping adapter link {record.reporting.lid}:{record.reporting.port}")
            continue

        yield record
