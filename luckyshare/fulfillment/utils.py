import os
import logging
from typing import Optional

import requests
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# Ensure environment variables from .env are loaded when this module is imported.
load_dotenv()

USER_AGENT = "luckyshare-draw-engine/1.0"


def open_session(api_token: Optional[str] = None) -> requests.Session:
    """Open a requests session authenticated against the fulfillment service.

    Parameters
    ----------
    api_token : str, optional
        Bearer token. Falls back to ``FULFILLMENT_API_TOKEN``.

    Returns
    -------
    requests.Session
        Session carrying the ``Authorization`` and ``User-Agent`` headers.

    Raises
    ------
    RuntimeError
        If no token is supplied and ``FULFILLMENT_API_TOKEN`` is not set.
    """
    token = api_token or os.environ.get("FULFILLMENT_API_TOKEN")
    if not token:
        raise RuntimeError("Environment variable 'FULFILLMENT_API_TOKEN' is not set")

    session = requests.Session()
    session.headers.update(
        {
            "Accept": "application/json",
            "Authorization": f"Bearer {token}",
            "User-Agent": USER_AGENT,
        }
    )
    # Do not log the token value
    logger.debug("Fulfillment session opened with bearer authentication")
    return session
