"""Test package for the reference gateway."""

import logging

logging.getLogger("asyncio").setLevel(logging.ERROR)
