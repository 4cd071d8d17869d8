"""
Read the Stata dta file format 114 and 115, from Stata 10 through 12.

The file is a sequence of contiguous sections with no directory:

    header, variable types, variable names, sort order, formats,
    value-label names, variable labels, expansion fields, data,
    value labels.

Each section's size depends only on the number of variables, the
format version, or a sentinel, so a reader walks them in order.
"""

# Multi-byte numbers use the byte order flagged in the header.
# Fixed-width text fields are null-terminated and null-padded.

# Standard Library
import logging
import struct
import warnings
from types import MappingProxyType

# Community Packages
import numpy as np
import pandas as pd

# dtareader Modules
import dtareader
from dtareader import (
    ColumnKind,
    FormatVersion,
    InvalidFormat,
    ReadError,
    UnknownTypeTag,
    UnsupportedVersion,
)

__all__ = [
    'Reader',
    'translate_vartypes',
]

LOG = logging.getLogger(__name__)

# Variable type codes, in the 117+ numbering.  Codes up to ``STRF_MAX``
# are fixed-width strings of that many bytes.
STRF_MAX = 2045
STRL = 32768
DOUBLE = 65526
FLOAT = 65527
LONG = 65528
INT = 65529
BYTE = 65530

# Formats 114 and 115 use single-byte codes.
LEGACY_STRF_MAX = 244
LEGACY_VARTYPES = {
    251: BYTE,
    252: INT,
    253: LONG,
    254: FLOAT,
    255: DOUBLE,
}

NUMPY_TYPES = {
    STRL: 'u8',
    DOUBLE: 'f8',
    FLOAT: 'f4',
    LONG: 'i4',
    INT: 'i2',
    BYTE: 'i1',
}

VARTYPE_KINDS = {
    DOUBLE: ColumnKind.FLOAT64,
    FLOAT: ColumnKind.FLOAT32,
    LONG: ColumnKind.INT32,
    INT: ColumnKind.INT16,
    BYTE: ColumnKind.INT8,
}

# Stata reserves the top of each numeric range for missing values,
# ``.`` followed by ``.a`` through ``.z``.
MISSING = {
    DOUBLE: lambda x: np.abs(x) > 8.988e307,
    FLOAT: lambda x: np.abs(x) > 1.701e38,
    LONG: lambda x: (x > 2147483620) | (x < -2147483647),
    INT: lambda x: (x > 32740) | (x < -32767),
    BYTE: lambda x: (x < -127) | (x > 100),
}

# Date formats count elapsed time since the Stata epoch.
STATA_EPOCH = np.datetime64('1960-01-01T00:00:00', 'ms')
DATE_UNITS = {
    '%td': 86_400_000,  # Days, in milliseconds.
    '%tc': 1,
}

# Largest elapsed milliseconds either side of the epoch.
DATE_LIMIT = int(np.iinfo('int64').max + STATA_EPOCH.astype('int64'))


class Stream:
    """
    Seekable binary file with byte-order-aware reads.

    Short reads and failures of the underlying file raise ``ReadError``.
    """

    widths = {1: 'B', 2: 'H', 4: 'I', 8: 'Q'}

    def __init__(self, fp, byteorder='<'):
        self.fp = fp
        self.byteorder = byteorder

    def read_upto(self, n):
        """
        Read at most ``n`` bytes, fewer only at the end of the file.
        """
        try:
            bytestring = self.fp.read(n)
        except OSError as err:
            raise ReadError(f'Could not read {n} bytes') from err
        if isinstance(bytestring, str):
            raise TypeError(f'Expected a binary stream in bytes-mode, got {type(self.fp).__name__}')
        return bytestring

    def read(self, n):
        """
        Read exactly ``n`` bytes.
        """
        bytestring = self.read_upto(n)
        if len(bytestring) != n:
            raise ReadError(f'Expected {n} bytes at end of file, got {len(bytestring)}')
        return bytestring

    def unpack(self, fmt):
        """
        Read and unpack a struct format in the file's byte order.
        """
        fmt = self.byteorder + fmt
        return struct.unpack(fmt, self.read(struct.calcsize(fmt)))

    def uint(self, width):
        """
        Read an unsigned integer ``width`` bytes wide.
        """
        value, = self.unpack(self.widths[width])
        return value

    def uints(self, width, n):
        """
        Read ``n`` unsigned integers, each ``width`` bytes wide.
        """
        return self.unpack(f'{n}{self.widths[width]}')

    def seek(self, offset):
        try:
            self.fp.seek(offset)
        except (OSError, ValueError) as err:
            raise ReadError(f'Could not seek to offset {offset}') from err

    def skip(self, n):
        try:
            self.fp.seek(n, 1)
        except (OSError, ValueError) as err:
            raise ReadError(f'Could not skip {n} bytes') from err

    def tell(self):
        try:
            return self.fp.tell()
        except OSError as err:
            raise ReadError('Could not get the file position') from err


class Header:
    """
    Dataset metadata from a Stata dta format 114 or 115 file.
    """

    # struct HEADER {
    #    uchar ds_format;     /* 114 or 115                         */
    #    uchar byteorder;     /* 1=HILO (big), 2=LOHI (little)      */
    #    uchar filetype;      /* always 1                           */
    #    uchar unused;
    #    ushort nvar;         /* number of variables                */
    #    uint nobs;           /* number of observations             */
    #    char data_label[81];
    #    char time_stamp[18]; /* dd Mon yyyy hh:mm                  */
    #    };

    def __init__(
        self,
        format_version,
        byteorder,
        nvar,
        nobs,
        dataset_label='',
        timestamp='',
        section_offsets=None,
    ):
        """
        Initialize a ``Header``.
        """
        self.format_version = format_version
        self.byteorder = byteorder
        self.nvar = nvar
        self.nobs = nobs
        self.dataset_label = dataset_label
        self.timestamp = timestamp
        self.section_offsets = section_offsets

    def __repr__(self):
        """
        Format for the REPL.
        """
        return (
            f'<{type(self).__name__} format={int(self.format_version)} '
            f'byteorder={self.byteorder!r} nvar={self.nvar} nobs={self.nobs} '
            f'label={self.dataset_label!r}>'
        )

    @classmethod
    def from_stream(cls, stream, encoding=None):
        """
        Decode a ``Header`` at the start of a stream.

        Sets the stream's byte order as a side effect, since every
        later multi-byte read depends on it.
        """
        LOG.debug(f'Decode {cls.__name__}')
        number, flag = stream.unpack('BB')
        version = FormatVersion(number)
        if version.tagged:
            raise UnsupportedVersion(f'Format {number} does not use the binary header')
        layout = version.layout
        encoding = encoding or layout.encoding
        stream.byteorder = '>' if flag == 1 else '<'
        stream.skip(2)  # File type and an unused byte.
        nvar = stream.uint(layout.nvar_width)
        nobs = stream.uint(layout.nobs_width)
        dataset_label = text_decode(stream.read(81), encoding)
        timestamp = text_decode(stream.read(18), encoding)
        return cls(
            format_version=version,
            byteorder=stream.byteorder,
            nvar=nvar,
            nobs=nobs,
            dataset_label=dataset_label,
            timestamp=timestamp,
        )


class Reader:
    """
    Read observations from a Stata dta format 114 or 115 file.

    Construction decodes the header and every metadata section.  Each
    call to ``read`` then decodes the next observations, so a large file
    may be read in chunks.

        with open('example.dta', 'rb') as f:
            reader = Reader(f)
            head = reader.read(10)
            rest = reader.read()

    A ``Reader`` keeps a single cursor in the file and is not safe to
    share between threads.
    """

    Header = Header

    def __init__(
        self,
        fp,
        convert_strls=True,
        convert_categoricals=True,
        convert_dates=True,
        encoding=None,
    ):
        """
        Decode the header and metadata sections of an open dta file.

        ``fp`` must be seekable and opened in bytes-mode.  Options:

        convert_strls
            Replace long-string references with their text.
        convert_categoricals
            Replace byte codes with their value labels, or with the
            code's decimal text when there is no label.
        convert_dates
            Convert ``%td`` and ``%tc`` columns to UTC timestamps.
        encoding
            Text encoding, defaulting to latin-1 before format 118 and
            UTF-8 after.
        """
        self.convert_strls = convert_strls
        self.convert_categoricals = convert_categoricals
        self.convert_dates = convert_dates
        self._stream = Stream(fp)
        self._rows_read = 0
        self._value_labels = {}
        self._strls = {0: ''}
        self.header = self.Header.from_stream(self._stream, encoding)
        self.encoding = encoding or self.format_version.layout.encoding
        self._initialize()
        LOG.info(f'Initialized {self!r}')

    def __repr__(self):
        """
        Format for the REPL.
        """
        return (
            f'<{type(self).__name__} format={int(self.format_version)} '
            f'variables={self.nvar} observations={self.nobs} rows_read={self.rows_read}>'
        )

    def _initialize(self):
        """
        Decode the metadata sections, in file order.
        """
        layout = self.format_version.layout

        self._seek_section('variable_types')
        self._vartypes = self._read_vartypes()
        LOG.debug(f'Variable types {self._vartypes}')

        self._seek_section('varnames')
        self._varnames = self._read_strings(layout.varname_width)
        LOG.debug(f'Variable names {self._varnames}')
        self._skip_sortlist()

        self._seek_section('formats')
        self._formats = self._read_strings(layout.format_width)
        self._date_units = [date_unit(fmt) for fmt in self._formats]

        if layout.value_label_name_width is None:
            self._value_label_names = [''] * self.nvar
        else:
            self._seek_section('value_label_names')
            self._value_label_names = self._read_strings(layout.value_label_name_width)

        self._seek_section('variable_labels')
        self._variable_labels = self._read_strings(layout.variable_label_width)

        self._read_characteristics()
        self._data_offset = self._locate_data()
        self._kinds = [self._column_kind(i) for i in range(self.nvar)]
        self._dtype = self._row_dtype()

    def _seek_section(self, name):
        """
        Position the stream at a section's content.

        Sections are contiguous, so the stream is already in place.
        """

    def _read_vartypes(self):
        codes = self._stream.uints(self.format_version.layout.vartype_width, self.nvar)
        return translate_vartypes(codes)

    def _skip_sortlist(self):
        self._stream.skip(2 * (self.nvar + 1))

    def _read_strings(self, width):
        """
        Read one null-padded, fixed-width string per variable.
        """
        return [text_decode(self._stream.read(width), self.encoding) for _ in range(self.nvar)]

    def _read_characteristics(self):
        """
        Skip the expansion fields.

        Each field is a 1-byte type and 4-byte length followed by that
        many bytes.  A zero type with a zero length ends the section.
        """
        n = 0
        while True:
            kind, length = self._stream.unpack('Bi')
            if kind == 0 and length == 0:
                break
            if length < 0:
                raise InvalidFormat(f'Negative expansion field length {length}')
            self._stream.skip(length)
            n += 1
        LOG.debug(f'Skipped {n} expansion fields')

    def _locate_data(self):
        return self._stream.tell()

    def _column_kind(self, i):
        """
        Choose the decoded representation of a column.
        """
        vartype = self._vartypes[i]
        if vartype <= STRF_MAX:
            kind = ColumnKind.TEXT
        elif vartype == STRL:
            kind = ColumnKind.TEXT if self.convert_strls else ColumnKind.STRL_REF
        elif vartype == BYTE and self.convert_categoricals:
            kind = ColumnKind.TEXT
        else:
            kind = VARTYPE_KINDS[vartype]

        if self.convert_dates and self._date_units[i] is not None:
            if kind.numeric:
                kind = ColumnKind.TIMESTAMP
            else:
                LOG.warning(
                    f'Not converting {self._varnames[i]!r} with date format '
                    f'{self._formats[i]!r} from {kind.name.lower()}'
                )
        return kind

    def _row_dtype(self):
        """
        Structured NumPy dtype of one observation.
        """
        fields = []
        for i, vartype in enumerate(self._vartypes):
            if vartype <= STRF_MAX:
                fields.append((f's{i}', f'S{vartype}'))
            else:
                fields.append((f's{i}', self.byteorder + NUMPY_TYPES[vartype]))
        return np.dtype(fields)

    def _read_label_set(self, name_width):
        """
        Read the body of one value-label set.

        Returns the set's name and a mapping of codes to labels.  Each
        label is the null-terminated text at its offset in the text block.
        """
        name = text_decode(self._stream.read(name_width), self.encoding)
        self._stream.skip(3)  # Padding.
        n, length = self._stream.unpack('ii')
        if n < 0 or length < 0:
            raise InvalidFormat(f'Invalid value-label set {name!r} with {n} entries')
        offsets = self._stream.unpack(f'{n}i')
        codes = self._stream.unpack(f'{n}i')
        text = self._stream.read(length)
        labels = {
            code: text_decode(text[offset:] if offset >= 0 else b'', self.encoding)
            for offset, code in zip(offsets, codes)
        }
        LOG.debug(f'Value labels {name!r} with {n} entries')
        return name, labels

    def read_value_labels(self):
        """
        Read the value-label sets that follow the observations.

        Formats 114 and 115 store value labels after the data, so this
        must be called explicitly before reading if category labels
        should be substituted.  Each set is a 4-byte length, a 33-byte
        name, and the label table; the sets continue until the end of
        the file.
        """
        self._stream.seek(self._data_offset + self.nobs * self._dtype.itemsize)
        value_labels = {}
        while len(self._stream.read_upto(4)) == 4:
            name, labels = self._read_label_set(33)
            value_labels[name] = labels
        self._value_labels = value_labels
        LOG.debug(f'Read {len(value_labels)} value-label sets')
        return self.value_labels

    def read(self, rows=-1):
        """
        Decode the next ``rows`` observations, or all remaining if negative.

        Returns a ``dtareader.Dataset`` indexed by observation number,
        with the missing-value mask as its ``missing`` attribute.  An
        error leaves the reader's position unchanged.
        """
        start = self._rows_read
        remaining = self.nobs - start
        count = remaining if rows < 0 else min(rows, remaining)
        index = pd.RangeIndex(start, start + count)
        LOG.debug(f'Reading {count} observations from {start}')

        stride = self._dtype.itemsize
        if stride and count:
            self._stream.seek(self._data_offset + start * stride)
            records = np.frombuffer(self._stream.read(count * stride), dtype=self._dtype)
        else:
            records = np.zeros(count, dtype=self._dtype)

        columns = {}
        missing = {}
        for i, name in enumerate(self._varnames):
            values, mask = self._decode_column(i, records[f's{i}'])
            columns[name] = values
            missing[name] = mask

        if self.convert_dates:
            for i, name in enumerate(self._varnames):
                if self._kinds[i] is ColumnKind.TIMESTAMP:
                    columns[name] = convert_dates(columns[name], missing[name], self._date_units[i])

        kinds = dict(zip(self._varnames, self._kinds))
        dataset = dtareader.Dataset(
            {
                name: pd.Series(values, index=index, dtype=kinds[name].dtype)
                for name, values in columns.items()
            },
            index=index,
            label=self.dataset_label,
            timestamp=self.timestamp,
            format_version=self.format_version,
            missing=pd.DataFrame(missing, index=index, columns=list(self._varnames), dtype=bool),
            kinds=kinds,
            formats=dict(zip(self._varnames, self._formats)),
            variable_labels=dict(zip(self._varnames, self._variable_labels)),
            value_label_names=dict(zip(self._varnames, self._value_label_names)),
        )
        self._rows_read = start + count
        LOG.info(f'Read observations {start} to {self._rows_read} of {self.nobs}')
        return dataset

    def _decode_column(self, i, raw):
        """
        Decode one column of raw values and its missing-value mask.

        Long-string references and byte codes are substituted here;
        dates are converted afterwards.
        """
        vartype = self._vartypes[i]
        if vartype <= STRF_MAX:
            values = [text_decode(s, self.encoding) for s in raw.tolist()]
            return values, np.zeros(len(raw), dtype=bool)

        values = raw.astype(NUMPY_TYPES[vartype])  # Native byte order.
        if vartype == STRL:
            mask = np.zeros(len(values), dtype=bool)
            if self._kinds[i] is ColumnKind.TEXT:
                values = [self._strls.get(key, '') for key in values.tolist()]
            return values, mask

        mask = MISSING[vartype](values)
        if vartype == BYTE and self.convert_categoricals:
            labels = self._value_labels.get(self._value_label_names[i], {})
            values = [labels.get(code, str(code)) for code in values.tolist()]
        return values, mask

    @property
    def format_version(self):
        """The dta format version."""  # noqa: D401
        return self.header.format_version

    @property
    def byteorder(self):
        """Struct byte-order character, ``'<'`` or ``'>'``."""
        return self.header.byteorder

    @property
    def nvar(self):
        """Number of variables."""
        return self.header.nvar

    @property
    def nobs(self):
        """Number of observations."""
        return self.header.nobs

    @property
    def dataset_label(self):
        return self.header.dataset_label

    @property
    def timestamp(self):
        return self.header.timestamp

    @property
    def section_offsets(self):
        """
        Absolute offsets of each section, for the tagged formats only.
        """
        offsets = self.header.section_offsets
        return MappingProxyType(offsets) if offsets is not None else None

    @property
    def rows_read(self):
        """Number of observations already read."""
        return self._rows_read

    @property
    def vartypes(self):
        """
        Variable type codes, in the 117+ numbering.
        """
        return tuple(self._vartypes)

    @property
    def varnames(self):
        return tuple(self._varnames)

    @property
    def formats(self):
        return tuple(self._formats)

    @property
    def value_label_names(self):
        """Name of each variable's value-label set, or empty."""
        return tuple(self._value_label_names)

    @property
    def variable_labels(self):
        return tuple(self._variable_labels)

    @property
    def kinds(self):
        """
        The ``dtareader.ColumnKind`` each variable decodes to.
        """
        return tuple(self._kinds)

    @property
    def value_labels(self):
        """
        Value-label sets, by name, mapping codes to labels.
        """
        return MappingProxyType(self._value_labels)

    @property
    def strls(self):
        """
        Long strings by key: text, or bytes for binary strings.
        """
        return MappingProxyType(self._strls)


def translate_vartypes(codes):
    """
    Map single-byte variable type codes to the 117+ numbering.

    String widths are unchanged.
    """
    vartypes = []
    for code in codes:
        if code <= LEGACY_STRF_MAX:
            vartypes.append(code)
        elif code in LEGACY_VARTYPES:
            vartypes.append(LEGACY_VARTYPES[code])
        else:
            raise UnknownTypeTag(f'Unknown variable type code {code}')
    return vartypes


def text_decode(bytestring, encoding, null_terminated=True):
    """
    Decode text, truncated at the first null byte.

    Falls back to latin-1, with a warning, for text that is not valid
    in the expected encoding.
    """
    bytestring = bytes(bytestring)
    if null_terminated:
        bytestring = bytestring.partition(b'\x00')[0]
    try:
        return bytestring.decode(encoding)
    except UnicodeDecodeError:
        warnings.warn(
            f'Could not decode {bytestring!r} as {encoding}, using latin-1',
            UnicodeWarning,
        )
        return bytestring.decode('latin-1')


def date_unit(fmt):
    """
    Milliseconds per unit of a date format, or None if not a date.
    """
    for prefix, unit in DATE_UNITS.items():
        if fmt.startswith(prefix):
            return unit
    return None


def convert_dates(values, missing, unit):
    """
    Convert elapsed time since 1960-01-01 to UTC timestamps.

    Missing values become ``NaT``, as do values too large for a
    millisecond timestamp.
    """
    values = np.asarray(values)
    invalid = missing | ~np.isfinite(values)
    overflow = ~invalid & (np.abs(np.where(invalid, 0, values)) > DATE_LIMIT // unit)
    if overflow.any():
        LOG.warning(f'Converting {overflow.sum()} out-of-range dates to NaT')
    invalid = invalid | overflow
    elapsed = np.where(invalid, 0, values).astype('int64') * unit
    stamps = STATA_EPOCH + elapsed.astype('timedelta64[ms]')
    stamps[invalid] = np.datetime64('NaT', 'ms')
    return pd.Series(stamps).dt.tz_localize('UTC').array
