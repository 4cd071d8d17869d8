"""
Convert Stata dta files to CSV.
"""

# Standard Library
import json
import logging
import logging.config
import sys
from io import BytesIO

# Community Packages
import click
import yaml

# dtareader Modules
import dtareader

__all__ = [
    'cli',
]

DEFAULT_LOG_CONFIG = {'version': 1, 'disable_existing_loggers': False}


def read_log_config(path='logging.yml'):
    """
    Read a ``logging.config.dictConfig`` schema from a YAML file.

    A missing or empty file gives a schema that keeps existing loggers.
    """
    loader = getattr(yaml, 'CSafeLoader', yaml.SafeLoader)
    try:
        with open(path) as f:
            return yaml.load(f, Loader=loader) or dict(DEFAULT_LOG_CONFIG)
    except FileNotFoundError:
        return dict(DEFAULT_LOG_CONFIG)


LOG_CONFIG = read_log_config()
logging.config.dictConfig(LOG_CONFIG)

LOG = logging.getLogger(__name__)
log_levels = [name for x, name in sorted(logging._levelToName.items()) if x]


@click.command(
    context_settings={'help_option_names': ['-h', '--help']},
)
@click.argument('input', type=click.File('rb'))
@click.argument(
    'output',
    type=click.File('wt'),
    default=sys.stdout,
)
@click.option('--no-strls', is_flag=True, help='Keep long-string references as numeric keys.')
@click.option(
    '--no-categoricals', is_flag=True, help='Keep byte codes instead of their value labels.'
)
@click.option('--no-dates', is_flag=True, help='Keep dates as elapsed time since 1960.')
@click.option(
    '--loglevel',
    metavar='LEVEL',
    type=click.Choice(log_levels, case_sensitive=False),
    help=f'Set logging level.  {{{", ".join(log_levels[:-1])}}}',
)
@click.version_option(version=str(dtareader.__version__))
def cli(input, output, no_strls, no_categoricals, no_dates, loglevel):
    """
    Convert a Stata dta file to comma-separated values (CSV).
    """
    if loglevel:
        config = dict(LOG_CONFIG)
        loggers = config.get('loggers') or {'dtareader': {}}
        for name in loggers:
            loggers[name]['level'] = loglevel.upper()
        config['loggers'] = loggers
        config.setdefault('disable_existing_loggers', False)
        if 'handlers' not in config:
            logging.basicConfig()
        logging.config.dictConfig(config)

    LOG.debug('dtareader version %s', dtareader.__version__)
    LOG.debug('CLI arg --loglevel = %r', loglevel)
    LOG.debug('Using logging config %s', json.dumps(LOG_CONFIG, indent=2))

    # Stdin is not seekable.
    fp = input if input.seekable() else BytesIO(input.read())
    ds = dtareader.load(
        fp,
        convert_strls=not no_strls,
        convert_categoricals=not no_categoricals,
        convert_dates=not no_dates,
    )
    LOG.info(f'Decoded {len(ds)} observations of {len(ds.columns)} variables')
    ds.to_csv(output, index=False)
