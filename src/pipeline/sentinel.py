"""
Sentinel Hub Imagery Providers

Two collaborators used by the acquisition worker:

- ``SentinelAuthProvider`` exchanges OAuth2 client credentials for a
  bearer token and caches it until shortly before it expires.
- ``SentinelImageryProvider`` calls the Process API for a true-colour
  Sentinel-2 L2A image over a bounding box and returns the TIFF bytes.

Every request carries a bounded timeout. Timeouts, transport errors and
non-success responses are mapped to the retryable ``AuthError`` /
``ProviderError`` so the job queue can redeliver.
"""

import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional, Dict, Any, Callable

import httpx

from src.core.config import Settings
from src.core.exceptions import AuthError, ProviderError
from src.core.logging import get_logger
from src.core.metrics import record_provider_call
from src.modules.imagery.models import BoundingBox, TimeRange

logger = get_logger(__name__)

SERVICE_NAME = "sentinel_hub"

# Refresh the token this many seconds before the provider says it expires
TOKEN_EXPIRY_MARGIN_SECONDS = 60

TRUE_COLOR_EVALSCRIPT = """//VERSION=3
function setup() {
  return {
    input: ["B02", "B03", "B04"],
    output: { bands: 3 }
  };
}

function evaluatePixel(sample) {
  return [2.5 * sample.B04, 2.5 * sample.B03, 2.5 * sample.B02];
}
"""


def _utc_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


# =============================================================================
# Interfaces
# =============================================================================

class ImageryAuthProvider(ABC):
    """Issues access tokens for the imagery provider."""

    @abstractmethod
    async def get_token(self) -> str:
        """Return a bearer token. Raises AuthError on failure."""
        pass


class ImageryProvider(ABC):
    """Fetches imagery for a region of interest."""

    @abstractmethod
    async def fetch_image(
        self,
        token: str,
        bbox: BoundingBox,
        time_range: TimeRange,
        max_cloud_coverage: int
    ) -> bytes:
        """Return the image bytes. Raises ProviderError on failure."""
        pass


# =============================================================================
# Sentinel Hub Implementations
# =============================================================================

class SentinelAuthProvider(ImageryAuthProvider):
    """OAuth2 client-credentials token provider with in-process caching."""

    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        token_url: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_url = token_url
        self.timeout = timeout
        self._transport = transport
        self._clock = clock

        self._token: Optional[str] = None
        self._expires_at: float = 0.0

    async def get_token(self) -> str:
        if self._token and self._clock() < self._expires_at:
            return self._token

        if not self.client_id or not self.client_secret:
            raise AuthError("Sentinel Hub credentials are not configured")

        logger.debug("sentinel_token_requested", url=self.token_url)

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    self.token_url,
                    data={"grant_type": "client_credentials"},
                    auth=(self.client_id, self.client_secret)
                )
        except httpx.TimeoutException as e:
            record_provider_call("token", "timeout")
            raise AuthError(f"Sentinel Hub token request timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            record_provider_call("token", "error")
            raise AuthError(f"Sentinel Hub token request failed: {e}") from e

        record_provider_call(
            "token",
            "success" if response.status_code == 200 else "error",
            response.status_code
        )

        if response.status_code != 200:
            logger.error(
                "sentinel_token_rejected",
                http_status=response.status_code,
                body=response.text[:500]
            )
            raise AuthError(
                f"Sentinel Hub token request returned {response.status_code}",
                http_status=response.status_code
            )

        data = response.json()
        token = data.get("access_token")
        if not token:
            raise AuthError("Sentinel Hub token response has no access_token")

        expires_in = float(data.get("expires_in", 3600))
        self._token = token
        self._expires_at = self._clock() + max(0.0, expires_in - TOKEN_EXPIRY_MARGIN_SECONDS)

        logger.info("sentinel_token_acquired", expires_in=expires_in)
        return token


class SentinelImageryProvider(ImageryProvider):
    """Sentinel Hub Process API client."""

    def __init__(
        self,
        process_url: str,
        collection: str = "sentinel-2-l2a",
        width: int = 512,
        height: int = 512,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.process_url = process_url
        self.collection = collection
        self.width = width
        self.height = height
        self.timeout = timeout
        self._transport = transport

    def build_request(
        self,
        bbox: BoundingBox,
        time_range: TimeRange,
        max_cloud_coverage: int
    ) -> Dict[str, Any]:
        """Process API request body for one TIFF over ``bbox``."""
        return {
            "input": {
                "bounds": {
                    "properties": {
                        "crs": "http://www.opengis.net/def/crs/EPSG/0/4326"
                    },
                    "bbox": bbox.as_lng_lat_list(),
                },
                "data": [
                    {
                        "type": self.collection,
                        "dataFilter": {
                            "timeRange": {
                                "from": _utc_iso(time_range.start),
                                "to": _utc_iso(time_range.end),
                            },
                            "maxCloudCoverage": max_cloud_coverage,
                        },
                        "processing": {
                            "upsampling": "BILINEAR"
                        },
                    }
                ],
            },
            "output": {
                "width": self.width,
                "height": self.height,
                "responses": [
                    {
                        "identifier": "default",
                        "format": {"type": "image/tiff"},
                    }
                ],
            },
            "evalscript": TRUE_COLOR_EVALSCRIPT,
        }

    async def fetch_image(
        self,
        token: str,
        bbox: BoundingBox,
        time_range: TimeRange,
        max_cloud_coverage: int
    ) -> bytes:
        body = self.build_request(bbox, time_range, max_cloud_coverage)
        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "image/tiff",
        }

        logger.debug("sentinel_image_requested", bbox=body["input"]["bounds"]["bbox"])

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.process_url, json=body, headers=headers)
        except httpx.TimeoutException as e:
            record_provider_call("process", "timeout")
            raise ProviderError(
                f"Sentinel Hub process request timed out after {self.timeout}s",
                service=SERVICE_NAME
            ) from e
        except httpx.HTTPError as e:
            record_provider_call("process", "error")
            raise ProviderError(
                f"Sentinel Hub process request failed: {e}",
                service=SERVICE_NAME
            ) from e

        record_provider_call(
            "process",
            "success" if response.status_code == 200 else "error",
            response.status_code
        )

        if response.status_code != 200:
            raise ProviderError(
                f"Sentinel Hub process API error {response.status_code}: {response.text[:500]}",
                service=SERVICE_NAME,
                http_status=response.status_code
            )

        if not response.content:
            raise ProviderError("Sentinel Hub returned an empty image", service=SERVICE_NAME)

        logger.info("sentinel_image_fetched", size=len(response.content))
        return response.content


def build_providers(settings: Settings):
    """Create the (auth, imagery) provider pair from settings."""
    auth = SentinelAuthProvider(
        client_id=settings.SENTINEL_CLIENT_ID,
        client_secret=settings.SENTINEL_CLIENT_SECRET,
        token_url=settings.SENTINEL_TOKEN_URL,
        timeout=settings.HTTP_TIMEOUT_SECONDS
    )
    imagery = SentinelImageryProvider(
        process_url=settings.SENTINEL_PROCESS_URL,
        collection=settings.SENTINEL_COLLECTION,
        width=settings.IMAGE_WIDTH,
        height=settings.IMAGE_HEIGHT,
        timeout=settings.HTTP_TIMEOUT_SECONDS
    )
    return auth, imagery
