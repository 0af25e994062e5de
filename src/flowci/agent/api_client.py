# agent/api_client.py
from __future__ import annotations

import json
import urllib.error
import urllib.request
from typing import Any, Dict, Optional
from urllib.parse import urljoin

from .models import Lease


class APIError(Exception):
    """Raised when API requests fail."""


class APIClient:
    """HTTP client for the flowci control plane."""

    def __init__(self, base_url: str, agent_id: str, timeout: float = 30.0):
        """
        Initialize API client.

        Args:
            base_url: Base URL of the API (e.g., "https://ci.example.com")
            agent_id: Unique identifier for this agent instance
            timeout: Socket timeout per request, in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.agent_id = agent_id
        self.timeout = timeout

    def _request(
        self,
        method: str,
        path: str,
        data: Optional[dict] = None,
    ) -> Dict[str, Any]:
        """
        Make an HTTP request to the API.

        Returns the parsed JSON body ({} for an empty body such as 204).

        Raises:
            APIError: If the request fails
        """
        url = urljoin(self.base_url + "/", path.lstrip("/"))
        req_data = json.dumps(data).encode("utf-8") if data is not None else None
        req = urllib.request.Request(
            url,
            data=req_data,
            headers={"Content-Type": "application/json"},
            method=method,
        )

        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                body = response.read().decode("utf-8")
                return json.loads(body) if body else {}
        except urllib.error.HTTPError as e:
            error_body = e.read().decode("utf-8") if e.fp else ""
            raise APIError(f"API request failed: {e.code} {e.reason}. {error_body}") from e
        except urllib.error.URLError as e:
            raise APIError(f"Network error: {e.reason}") from e
        except json.JSONDecodeError as e:
            raise APIError(f"Invalid JSON response: {e}") from e

    def claim_lease(self) -> Optional[Lease]:
        """
        Claim the next queued invocation.

        Returns:
            Lease if an invocation was available, None otherwise
        """
        response = self._request("POST", "/leases/claim", data={"agent_id": self.agent_id})
        if not response:
            return None
        try:
            return Lease.from_dict(response)
        except (KeyError, TypeError) as e:
            raise APIError(f"Malformed lease: {e}") from e

    def complete_lease(self, invocation_id: str, status: str, details: Dict[str, Any]) -> None:
        """
        Report the outcome of a leased invocation.

        Args:
            invocation_id: ID of the leased invocation
            status: "success" or "failed"
            details: logs per job run and the invocation report
        """
        if status not in ("success", "failed"):
            status = "failed"
        self._request(
            "POST",
            f"/leases/{invocation_id}/complete",
            data={"agent_id": self.agent_id, "status": status, "details": details},
        )

    def submit(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Queue a new invocation (POST /pipelines)."""
        return self._request("POST", "/pipelines", data=payload)
