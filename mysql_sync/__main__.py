"""
Entry point for the mysql-sync CLI command.
This allows the package to be run as: python -m mysql_sync
"""

from .cli import main

if __name__ == '__main__':
    main()
