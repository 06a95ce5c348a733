"""Main entry point when executing pacer as a package.

This allows running the package using python -m pacer.
"""

from pacer.main import cli_entry_point

if __name__ == "__main__":
    cli_entry_point()
