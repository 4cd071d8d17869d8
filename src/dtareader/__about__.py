"""
Package metadata: the installed version of ``dtareader``.
"""

# The version comes from the installed distribution's metadata, so it is
# ``None`` when the source tree is imported without being installed.

# Standard Library
from collections import namedtuple
from importlib.metadata import PackageNotFoundError, version

__all__ = [
    '__version__',
]


class Version(namedtuple('Version', 'major minor patch')):
    """
    Release number, compared numerically.
    """

    @classmethod
    def parse(cls, s):
        """
        Parse ``major.minor.patch``, ignoring any pre-release suffix.
        """
        return cls(*(int(part) for part in s.split('.')[:3]))

    def __str__(self):
        return f'{self.major}.{self.minor}.{self.patch}'


try:
    __version__ = Version.parse(version('dtareader'))
except PackageNotFoundError:
    __version__ = None
