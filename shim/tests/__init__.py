"""Test package for matrix shim unit and integration tests."""

import logging

logging.getLogger("asyncio").setLevel(logging.ERROR)
