"""
Shared test fixtures.

The package only reads dta files, so the fixtures assemble small files
byte by byte.
"""

# Standard Library
import struct
from collections import namedtuple

# Community Packages
import pytest

STRL = 32768
DOUBLE = 65526
FLOAT = 65527
LONG = 65528
INT = 65529
BYTE = 65530

LEGACY_CODES = {
    BYTE: 251,
    INT: 252,
    LONG: 253,
    FLOAT: 254,
    DOUBLE: 255,
}

VALUE_FORMATS = {
    STRL: 'Q',
    DOUBLE: 'd',
    FLOAT: 'f',
    LONG: 'i',
    INT: 'h',
    BYTE: 'b',
}

Variable = namedtuple(
    'Variable',
    'name vartype format value_labels label',
    defaults=('%9.0g', '', ''),
)


def fixed(text, width):
    """
    Null-padded, fixed-width field.
    """
    if isinstance(text, str):
        text = text.encode('utf-8')
    return text[:width].ljust(width, b'\x00')


def pack_row(byteorder, variables, row):
    return b''.join(
        fixed(value, v.vartype) if v.vartype <= 2045
        else struct.pack(byteorder + VALUE_FORMATS[v.vartype], value)
        for v, value in zip(variables, row)
    )


def label_table(byteorder, labels):
    """
    Value-label table: counts, offsets, codes, and null-terminated text.
    """
    text = b''
    offsets = []
    for label in labels.values():
        offsets.append(len(text))
        text += label.encode('utf-8') + b'\x00'
    n = len(labels)
    fmt = f'{byteorder}ii{n}i{n}i'
    return struct.pack(fmt, n, len(text), *offsets, *labels.keys()) + text


def build_legacy(
    version,
    variables,
    rows=(),
    byteorder='<',
    label='',
    timestamp='',
    expansion=(),
    value_labels=None,
):
    """
    Assemble a format 114 or 115 file.

    Format 114 files are written without value-label names, matching
    how the reader treats that format.
    """
    bo = byteorder
    nvar = len(variables)
    parts = [
        struct.pack(bo + 'BBBxHI', version, 1 if bo == '>' else 2, 1, nvar, len(rows)),
        fixed(label, 81),
        fixed(timestamp, 18),
        bytes(LEGACY_CODES.get(v.vartype, v.vartype) for v in variables),
        b''.join(fixed(v.name, 33) for v in variables),
        b'\x00' * 2 * (nvar + 1),
        b''.join(fixed(v.format, 49) for v in variables),
    ]
    if version != 114:
        parts.append(b''.join(fixed(v.value_labels, 33) for v in variables))
    parts.append(b''.join(fixed(v.label, 81) for v in variables))
    for kind, payload in expansion:
        parts.append(struct.pack(bo + 'Bi', kind, len(payload)) + payload)
    parts.append(b'\x00' * 5)
    parts.extend(pack_row(bo, variables, row) for row in rows)
    for name, labels in (value_labels or {}).items():
        table = label_table(bo, labels)
        parts.append(struct.pack(bo + 'i', len(table)) + fixed(name, 33) + b'\x00' * 3 + table)
    return b''.join(parts)


def build_tagged(
    version,
    variables,
    rows=(),
    byteorder='<',
    label='',
    timestamp='',
    strls=(),
    value_labels=None,
    release=None,
):
    """
    Assemble a format 117 or 118 file, including its section map.

    Each strL is a tuple ``(v, o, type, content)``.
    """
    bo = byteorder
    nvar = len(variables)
    nobs_fmt = 'Q' if version == 118 else 'I'
    label_fmt = 'H' if version == 118 else 'B'
    label = label.encode('utf-8')
    timestamp = timestamp.encode('utf-8')
    release = release if release is not None else str(version).encode('ascii')
    header = b''.join([
        b'<stata_dta><header><release>',
        release,
        b'</release><byteorder>',
        b'MSF' if bo == '>' else b'LSF',
        b'</byteorder><K>',
        struct.pack(bo + 'H', nvar),
        b'</K><N>',
        struct.pack(bo + nobs_fmt, len(rows)),
        b'</N><label>',
        struct.pack(bo + label_fmt, len(label)),
        label,
        b'</label><timestamp>',
        struct.pack('B', len(timestamp)),
        timestamp,
        b'</timestamp></header>',
    ])

    gsos = b''.join(
        b'GSO' + struct.pack(bo + 'IQBI', v, o, kind, len(content)) + content
        for v, o, kind, content in strls
    )
    lbls = b''
    for name, labels in (value_labels or {}).items():
        table = label_table(bo, labels)
        lbls += b'<lbl>' + struct.pack(bo + 'i', len(table) + 132)
        lbls += fixed(name, 129) + b'\x00' * 3 + table + b'</lbl>'
    sections = [
        ('variable_types', b''.join(struct.pack(bo + 'H', v.vartype) for v in variables)),
        ('varnames', b''.join(fixed(v.name, 129) for v in variables)),
        ('sortlist', b'\x00' * 2 * (nvar + 1)),
        ('formats', b''.join(fixed(v.format, 57) for v in variables)),
        ('value_label_names', b''.join(fixed(v.value_labels, 129) for v in variables)),
        ('variable_labels', b''.join(fixed(v.label, 321) for v in variables)),
        ('characteristics', b''),
        ('data', b''.join(pack_row(bo, variables, row) for row in rows)),
        ('strls', gsos),
        ('value_labels', lbls),
    ]

    map_offset = len(header)
    position = map_offset + len(b'<map>') + 14 * 8 + len(b'</map>')
    offsets = []
    body = b''
    for name, content in sections:
        chunk = f'<{name}>'.encode('ascii') + content + f'</{name}>'.encode('ascii')
        offsets.append(position)
        body += chunk
        position += len(chunk)
    closing = b'</stata_dta>'
    section_map = b'<map>' + struct.pack(
        bo + '14q', 0, map_offset, *offsets, position, position + len(closing)
    ) + b'</map>'
    return header + section_map + body + closing


@pytest.fixture(scope='session')
def variables():
    """
    One variable of each type, in the 117+ type numbering.
    """
    return [
        Variable('name', 12, '%12s', '', 'Respondent name'),
        Variable('income', DOUBLE, '%10.2f', '', 'Annual income'),
        Variable('height', FLOAT, '%9.0g', '', 'Height in cm'),
        Variable('visits', LONG, '%12.0g', '', 'Clinic visits'),
        Variable('age', INT, '%8.0g', '', 'Age in years'),
        Variable('status', BYTE, '%8.0g', 'yesno', 'Enrolled'),
    ]


@pytest.fixture(scope='session')
def rows():
    """
    Ten observations matching ``variables``.
    """
    return [
        (f'person{i}', 1000.5 * i, 150.0 + i, 3 * i, 20 + i, i % 2)
        for i in range(10)
    ]


@pytest.fixture(scope='session')
def legacy():
    return build_legacy


@pytest.fixture(scope='session')
def tagged():
    return build_tagged
