"""
Entry forwarder

The project is packaged as:
  - package: rssi_locator_server
  - CLI: rssi-locator-server

This file only keeps `python main.py` working by forwarding to `rssi_locator_server.cli:main`.
"""

import sys

from rssi_locator_server.cli import main as _cli_main


def main():
    sys.exit(_cli_main())


if __name__ == "__main__":  # pragma: no cover
    main()
