"""
Smart Device Management API Client

Minimal client for listing thermostats, used by the stale-device poller.
"""

import logging
from typing import Any

import requests

from .exceptions import VendorApiError

logger = logging.getLogger(__name__)

SDM_BASE_URL = "https://smartdevicemanagement.googleapis.com/v1"


class SdmClient:
    """Read-only SDM REST client."""

    def __init__(self, project_id: str, access_token: str, base_url: str = SDM_BASE_URL, timeout: float = 10):
        """Initialize SDM client.

        Args:
            project_id: Device Access project id
            access_token: OAuth access token
            base_url: API root
            timeout: Request timeout in seconds
        """
        self.project_id = project_id
        self.base_url = base_url.rstrip("/")
        self.session = requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        })
        self.timeout = timeout

    def list_devices(self) -> list[dict[str, Any]]:
        """List all devices in the project.

        Returns:
            Device resources (name, traits, parentRelations)

        Raises:
            VendorApiError: If the request fails or the response is not usable
        """
        url = f"{self.base_url}/enterprises/{self.project_id}/devices"
        try:
            response = self.session.get(url, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.HTTPError as e:
            raise VendorApiError(f"Device list failed [{e.response.status_code}]: {e}")
        except requests.exceptions.RequestException as e:
            raise VendorApiError(f"SDM API request failed: {e}")
        except ValueError as e:
            raise VendorApiError(f"SDM API returned invalid JSON: {e}")

        devices = data.get("devices", []) if isinstance(data, dict) else []
        logger.debug(f"SDM returned {len(devices)} device(s)")
        return devices

    def close(self) -> None:
        self.session.close()
