"""
Process-wide logging setup shared by the web app and the CLI.
"""

import logging
import sys

from connectors.redaction import install_redacting_filter


def configure_logging(debug: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
        stream=sys.stdout,
        force=True,
    )
    for _noisy in ("httpcore", "httpx", "urllib3"):
        logging.getLogger(_noisy).setLevel(logging.WARNING)
    install_redacting_filter()
