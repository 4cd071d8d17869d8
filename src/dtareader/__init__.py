"""
Read Stata dta-format files.
"""

# Standard Library
import enum
import logging
from collections import namedtuple
from io import BytesIO

# Community Packages
import pandas as pd

from .__about__ import __version__  # noqa: F401 module imported but unused

LOG = logging.getLogger(__name__)

__all__ = [
    'ColumnKind',
    'Dataset',
    'DtaError',
    'FormatVersion',
    'InvalidFormat',
    'ReadError',
    'UnknownTypeTag',
    'UnsupportedVersion',
    'load',
    'loads',
    'reader',
]


class DtaError(ValueError):
    """
    Bytes could not be decoded as a Stata dta file.
    """


class InvalidFormat(DtaError):
    """
    Bytes did not match expected format.
    """

    def __init__(self, message, expected=None, got=None):
        if expected is not None:
            message += f' -- expected {expected!r}, got {got!r}'
        super().__init__(message)
        self.expected = expected
        self.got = got


class UnsupportedVersion(InvalidFormat):
    """
    The dta format version is not one of 114, 115, 117, or 118.
    """


class UnknownTypeTag(DtaError):
    """
    A variable type code is outside all recognized ranges.
    """


class ReadError(DtaError):
    """
    The byte source failed or ended before a complete field was read.
    """


# Byte-layout parameters that vary by format version.  Widths are in
# bytes; ``None`` means the field or section does not exist.
Layout = namedtuple(
    'Layout',
    [
        'nvar_width',
        'nobs_width',
        'label_prefix_width',
        'vartype_width',
        'varname_width',
        'format_width',
        'value_label_name_width',
        'variable_label_width',
        'encoding',
    ],
)


class FormatVersion(enum.IntEnum):
    """
    Supported dta format versions.

    Formats 114 and 115 (Stata 10 through 12) use a fixed-offset binary
    header.  Formats 117 and 118 (Stata 13 and later) wrap each section
    in XML-like tags and list the section offsets in a map.
    """
    V114 = 114
    V115 = 115
    V117 = 117
    V118 = 118

    @classmethod
    def _missing_(cls, value):
        raise UnsupportedVersion(f'Unsupported dta format version {value!r}')

    @property
    def layout(self):
        """
        Field widths and text encoding for this format version.
        """
        return LAYOUTS[self]

    @property
    def tagged(self):
        """
        True if the file uses the XML-tagged layout with a section map.
        """
        return self >= FormatVersion.V117


LAYOUTS = {
    FormatVersion.V114: Layout(2, 4, None, 1, 33, 49, None, 81, 'latin-1'),
    FormatVersion.V115: Layout(2, 4, None, 1, 33, 49, 33, 81, 'latin-1'),
    FormatVersion.V117: Layout(2, 4, 1, 2, 129, 57, 129, 321, 'latin-1'),
    FormatVersion.V118: Layout(2, 8, 2, 2, 129, 57, 129, 321, 'utf-8'),
}


class ColumnKind(enum.Enum):
    """
    The decoded representation of a column.

    The kind is fixed once per column from its type code and the
    reader's conversion options.
    """
    TEXT = 'object'
    STRL_REF = 'uint64'
    FLOAT64 = 'float64'
    FLOAT32 = 'float32'
    INT32 = 'int32'
    INT16 = 'int16'
    INT8 = 'int8'
    TIMESTAMP = 'datetime64[ms, UTC]'

    @property
    def dtype(self):
        """
        Pandas dtype of a column of this kind.
        """
        return self.value

    @property
    def numeric(self):
        return self in NUMERIC_KINDS


NUMERIC_KINDS = frozenset({
    ColumnKind.FLOAT64,
    ColumnKind.FLOAT32,
    ColumnKind.INT32,
    ColumnKind.INT16,
    ColumnKind.INT8,
})


class Dataset(pd.DataFrame):
    """
    Observations read from a Stata dta file.

    ``Dataset`` extends Pandas' ``DataFrame``, adding dta metadata and
    a parallel missing-value mask.  The index holds observation numbers,
    so consecutive partial reads concatenate without renumbering.
    """

    _metadata = [
        'label',
        'timestamp',
        'format_version',
        '_missing',
        'kinds',
        'formats',
        'variable_labels',
        'value_label_names',
    ]

    label = None
    timestamp = None
    format_version = None
    _missing = None
    kinds = None
    formats = None
    variable_labels = None
    value_label_names = None

    def __init__(
        self,
        data=None,
        index=None,
        columns=None,
        dtype=None,
        copy=None,
        label=None,
        timestamp=None,
        format_version=None,
        missing=None,
        kinds=None,
        formats=None,
        variable_labels=None,
        value_label_names=None,
    ):
        """
        Initialize dta dataset metadata.
        """
        metadata = {
            'label': label,
            'timestamp': timestamp,
            'format_version': format_version,
            '_missing': missing,
            'kinds': kinds,
            'formats': formats,
            'variable_labels': variable_labels,
            'value_label_names': value_label_names,
        }
        super().__init__(data=data, index=index, columns=columns, dtype=dtype, copy=copy)
        if isinstance(data, Dataset):
            for name in self._metadata:
                object.__setattr__(self, name, getattr(data, name))
        for name, value in metadata.items():
            if value is not None:
                # Avoid ``DataFrame.__setattr__``, which may create columns.
                object.__setattr__(self, name, value)

    @property
    def _constructor(self):
        """
        Construct an instance with the same dimensions as the original.
        """
        return Dataset

    @property
    def missing(self):
        """
        Boolean mask of Stata missing values, aligned with the observations.

        Frames derived by selecting rows or columns get the matching part
        of the mask.  Observations not read from a file are not missing.
        """
        if self._missing is None:
            return None
        return self._missing.reindex(index=self.index, columns=self.columns, fill_value=False)

    @property
    def contents(self):
        """
        Variable metadata, such as kind, format, and label.
        """
        kinds = self.kinds or {}
        formats = self.formats or {}
        labels = self.variable_labels or {}
        value_label_names = self.value_label_names or {}
        df = pd.DataFrame(
            [
                {
                    'Variable': name,
                    'Kind': kinds[name].name.title() if name in kinds else '',
                    'Format': formats.get(name, ''),
                    'Value Labels': value_label_names.get(name, ''),
                    'Label': labels.get(name, ''),
                } for name in self.columns
            ],
            columns=['Variable', 'Kind', 'Format', 'Value Labels', 'Label'],
        )
        if df.empty:
            return df
        df.index = df.index + 1
        df.index.name = '#'
        return df


def reader(fp, **options):
    """
    Create a reader for a seekable dta-format byte stream.

    The first byte selects the header layout: ``<`` begins the tagged
    header of formats 117 and later, anything else is the binary header
    of formats 114 and 115.  Options are passed to the reader.

        >>> with open('example.dta', 'rb') as f:
        ...     rdr = reader(f, convert_dates=False)
        ...     head = rdr.read(10)
    """
    # Avoid circular import problems.
    # dtareader Modules
    from dtareader import v114, v117

    try:
        first = fp.read(1)
        fp.seek(0)
    except OSError as err:
        raise ReadError(f'Could not read from {type(fp).__name__}') from err
    if isinstance(first, str):
        raise TypeError(f'Expected a binary stream in bytes-mode, got {type(fp).__name__}')
    if first == b'<':
        LOG.debug('Detected tagged header')
        return v117.Reader(fp, **options)
    LOG.debug('Detected binary header')
    return v114.Reader(fp, **options)


def load(fp, **options):
    """
    Deserialize every observation from a dta file.

    Value labels are loaded before the observations are decoded, for
    every format version, so that category labels are substituted.

        >>> with open('example.dta', 'rb') as f:
        ...     ds = load(f)
    """
    rdr = reader(fp, **options)
    if not rdr.format_version.tagged:
        rdr.read_value_labels()
    return rdr.read()


def loads(bytestring, **options):
    """
    Deserialize every observation from a dta-format byte string.

        >>> with open('example.dta', 'rb') as f:
        ...     bytestring = f.read()
        >>> ds = loads(bytestring)
    """
    return load(BytesIO(bytestring), **options)
