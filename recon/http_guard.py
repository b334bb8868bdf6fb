"""HTTP client guard for offline/demo egress control."""

import os
from typing import Any

import httpx


def create_guarded_client(**kwargs: Any) -> httpx.Client:  # noqa: ANN401
    """Create an httpx client that respects RECON_NO_EGRESS.

    A client built on an explicit in-process transport (e.g. httpx.MockTransport)
    never leaves the process and is always allowed.
    """
    if os.getenv("RECON_NO_EGRESS") == "1" and kwargs.get("transport") is None:
        msg = "External API calls blocked in offline mode (RECON_NO_EGRESS=1)"
        raise RuntimeError(msg)
    return httpx.Client(**kwargs)
