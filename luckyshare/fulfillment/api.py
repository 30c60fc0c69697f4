import os
import logging
from urllib.parse import urljoin
from typing import Any, Iterable, Mapping, Optional

import requests
from dotenv import load_dotenv

from luckyshare.errors import FulfillmentError

from .handoff import HandoffAck
from .utils import open_session

logger = logging.getLogger(__name__)


class FulfillmentClient:
    """HTTP client for the prize pickup/fulfillment service.

    Implements the :class:`~luckyshare.fulfillment.handoff.FulfillmentHandoff`
    contract. Claims are keyed by ``round-<id>``, so repeating a hand-off for
    the same round never creates a second claim.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: int = 30,
        session: Optional[requests.Session] = None,
    ):
        load_dotenv()
        url = base_url or os.getenv("FULFILLMENT_BASE_URL")
        if not url:
            raise ValueError("Environment variable 'FULFILLMENT_BASE_URL' is not set")
        if "://" not in url:
            url = f"https://{url}"

        self.base_url = url.rstrip("/")
        self.session = session or open_session()
        self.timeout = timeout

    # -------- headers --------
    @property
    def json_headers(self) -> Mapping[str, str]:
        return {"Accept": "application/json", "Content-Type": "application/json"}

    @staticmethod
    def idempotency_key(round_id: int) -> str:
        return f"round-{round_id}"

    # -------- core request --------
    def _request(
        self,
        method: str,
        path: str,
        *,
        headers: Optional[Mapping[str, str]] = None,
        params: Optional[dict] = None,
        json: Optional[dict] = None,
        accept_statuses: Iterable[int] = (),
    ) -> tuple[int, Any]:
        url = urljoin(self.base_url + "/", path.lstrip("/"))
        try:
            r = self.session.request(
                method=method.upper(),
                url=url,
                headers=headers or self.json_headers,
                params=params,
                json=json,
                timeout=self.timeout,
            )
            if r.status_code not in accept_statuses:
                r.raise_for_status()
        except requests.RequestException as exc:
            logger.error(f"Fulfillment request {method.upper()} {path} failed: {exc}")
            raise FulfillmentError(f"Fulfillment service request failed: {exc}") from exc
        try:
            body = r.json() if r.content else None
        except ValueError:
            body = None
        return r.status_code, body

    # -------- API callers --------
    def hand_off(
        self, round_id: int, winning_ticket_id: int, winning_user_id: int
    ) -> HandoffAck:
        """Create the prize claim for ``round_id``.

        A ``409 Conflict`` means the claim already exists and is reported as
        a duplicate acknowledgement rather than an error.
        """
        key = self.idempotency_key(round_id)
        status, body = self._request(
            "POST",
            "/api/v1/prize-claims",
            headers={**self.json_headers, "Idempotency-Key": key},
            json={
                "round_id": round_id,
                "ticket_id": winning_ticket_id,
                "user_id": winning_user_id,
                "status": "PENDING_CLAIM",
            },
            accept_statuses=(409,),
        )
        reference = None
        if isinstance(body, dict):
            reference = body.get("reference") or body.get("id")
        duplicate = status == 409
        if duplicate:
            logger.warning(f"Prize claim for round {round_id} already existed")
        else:
            logger.info(f"Prize claim for round {round_id} accepted")
        return HandoffAck(
            reference=str(reference) if reference is not None else None,
            duplicate=duplicate,
        )

    def get_claim(self, round_id: int) -> Optional[dict]:
        """Return the claim stored for ``round_id`` or ``None`` when absent."""
        status, body = self._request(
            "GET",
            f"/api/v1/prize-claims/{self.idempotency_key(round_id)}",
            accept_statuses=(404,),
        )
        if status == 404:
            return None
        return body
