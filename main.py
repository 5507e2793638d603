"""
Realm Login Entry Point.

Runs the console login flow from a source checkout.  Installed copies
use the ``realm-login`` console script instead.

Usage::

    python main.py
"""

from realm_login.console import cli


if __name__ == "__main__":
    cli()
