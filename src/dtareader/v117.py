"""
Read the Stata dta file format 117 and 118, from Stata 13 and later.

Format 117 wraps the header and each section in XML-like tags and adds
a map of absolute section offsets.  Long strings (strLs) are stored
out-of-line in their own section.  Format 118 widens the observation
count and dataset-label length and encodes text as UTF-8.
"""

# <stata_dta>
#   <header>
#     <release>117</release>
#     <byteorder>MSF|LSF</byteorder>
#     <K>nvar</K>
#     <N>nobs</N>
#     <label>length-prefixed text</label>
#     <timestamp>length-prefixed text</timestamp>
#   </header>
#   <map>14 offsets</map>
#   <variable_types> ... <value_labels>
# </stata_dta>

# Standard Library
import logging

# dtareader Modules
import dtareader.v114
from dtareader import FormatVersion, InvalidFormat, UnknownTypeTag, UnsupportedVersion
from dtareader.v114 import BYTE, DOUBLE, STRF_MAX, STRL, text_decode

__all__ = [
    'Reader',
    'strl_key',
]

LOG = logging.getLogger(__name__)

# Sections listed in the map, after the offsets of ``<stata_dta>`` and
# ``<map>`` themselves.  Each section begins with the tag ``<name>``.
SECTIONS = (
    'variable_types',
    'varnames',
    'sortlist',
    'formats',
    'value_label_names',
    'variable_labels',
    'characteristics',
    'data',
    'strls',
    'value_labels',
)

STRL_TEXT = 130
STRL_BINARY = 129


class Header(dtareader.v114.Header):
    """
    Dataset metadata from a Stata dta format 117 or 118 file.
    """

    magic = b'<stata_dta>'

    @classmethod
    def from_stream(cls, stream, encoding=None):
        """
        Decode a ``Header`` and the section map at the start of a stream.

        Sets the stream's byte order as a side effect.
        """
        LOG.debug(f'Decode {cls.__name__}')
        opening = stream.read_upto(len(b'<stata_dta><header><release>'))
        if opening[:len(cls.magic)] != cls.magic:
            raise InvalidFormat('Not a Stata dta file', cls.magic, opening[:len(cls.magic)])

        release = stream.read(3)
        try:
            number = int(release.decode('ascii'))
        except ValueError:  # Includes UnicodeDecodeError.
            raise InvalidFormat('Invalid format version', b'3 decimal digits', release)
        version = FormatVersion(number)
        if not version.tagged:
            raise UnsupportedVersion(f'Format {number} does not use the tagged header')
        layout = version.layout
        encoding = encoding or layout.encoding

        stream.skip(len(b'</release><byteorder>'))
        stream.byteorder = '>' if stream.read(3) == b'MSF' else '<'
        stream.skip(len(b'</byteorder><K>'))
        nvar = stream.uint(layout.nvar_width)
        stream.skip(len(b'</K><N>'))
        nobs = stream.uint(layout.nobs_width)
        stream.skip(len(b'</N><label>'))
        n = stream.uint(layout.label_prefix_width)
        dataset_label = text_decode(stream.read(n), encoding, null_terminated=False)
        stream.skip(len(b'</label><timestamp>'))
        n = stream.uint(1)
        timestamp = text_decode(stream.read(n), encoding, null_terminated=False)

        # The map begins with the offsets of ``<stata_dta>`` and ``<map>``.
        stream.skip(len(b'</timestamp></header><map>') + 16)
        offsets = stream.unpack(f'{len(SECTIONS)}q')
        section_offsets = dict(zip(SECTIONS, offsets))
        LOG.debug(f'Section offsets {section_offsets}')

        return cls(
            format_version=version,
            byteorder=stream.byteorder,
            nvar=nvar,
            nobs=nobs,
            dataset_label=dataset_label,
            timestamp=timestamp,
            section_offsets=section_offsets,
        )


class Reader(dtareader.v114.Reader):
    """
    Read observations from a Stata dta format 117 or 118 file.

    In addition to the format 114 metadata, the long-string (strL) and
    value-label sections are decoded at construction.
    """

    Header = Header

    def _initialize(self):
        super()._initialize()
        self._read_strls()
        self.read_value_labels()

    def _seek_section(self, name):
        """
        Position the stream after a section's opening tag.
        """
        offset = self.header.section_offsets[name]
        tag = f'<{name}>'.encode('ascii')
        self._stream.seek(offset)
        got = self._stream.read_upto(len(tag))
        if got != tag:
            raise InvalidFormat(f'No {name} section at offset {offset}', tag, got)

    def _read_vartypes(self):
        width = self.format_version.layout.vartype_width
        vartypes = list(self._stream.uints(width, self.nvar))
        for vartype in vartypes:
            if not (vartype <= STRF_MAX or vartype == STRL or DOUBLE <= vartype <= BYTE):
                raise UnknownTypeTag(f'Unknown variable type code {vartype}')
        return vartypes

    def _skip_sortlist(self):
        pass  # Every section is found by the map.

    def _read_characteristics(self):
        pass  # Characteristics are skipped by the map.

    def _locate_data(self):
        self._seek_section('data')
        return self._stream.tell()

    def _read_strls(self):
        """
        Read the long-string (strL) dictionary.

        Each entry is ``GSO``, a 4-byte variable number ``v``, an 8-byte
        observation number ``o``, a 1-byte type, a 4-byte length, and the
        content.  Anything other than ``GSO`` ends the section.  The scan
        also stops at the value-labels section.
        """
        self._seek_section('strls')
        limit = self.header.section_offsets['value_labels']
        if limit <= self.header.section_offsets['strls']:
            limit = None
        strls = {0: ''}
        while limit is None or self._stream.tell() < limit:
            if self._stream.read_upto(3) != b'GSO':
                break
            v, o, kind, length = self._stream.unpack('IQBI')
            content = self._stream.read(length)
            key = strl_key(v, o)
            if kind == STRL_TEXT:
                strls[key] = text_decode(content, self.encoding)
            elif kind == STRL_BINARY:
                strls[key] = content
            else:
                LOG.warning(f'Skipping strL ({v}, {o}) of unknown type {kind}')
        self._strls = strls
        LOG.debug(f'Read {len(strls) - 1} strLs')

    def read_value_labels(self):
        """
        Read the value-label sets.

        Each set is tagged ``<lbl>``, with a 4-byte length, a 129-byte
        name, and the label table.  Anything else ends the section.
        """
        self._seek_section('value_labels')
        value_labels = {}
        while self._stream.read_upto(5) == b'<lbl>':
            self._stream.skip(4)  # Length of the set.
            name, labels = self._read_label_set(129)
            value_labels[name] = labels
            self._stream.skip(len(b'</lbl>'))
        self._value_labels = value_labels
        LOG.debug(f'Read {len(value_labels)} value-label sets')
        return self.value_labels


def strl_key(v, o):
    """
    Pack a strL's variable and observation numbers into its data key.

    The key matches the 8-byte reference stored in the observation.
    """
    return (v | (o << 16)) & 0xFFFFFFFFFFFFFFFF
