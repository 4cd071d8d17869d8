"""
Run the ``dtareader`` command as ``python -m dtareader``.
"""

# dtareader Modules
from dtareader.cli import cli

if __name__ == '__main__':
    cli.main(prog_name='dtareader')
