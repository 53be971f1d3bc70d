"""Link Minting Strategies.

Turns an issued booking id into the URL the lead will click. Two variants:

    LOCAL     Provider's public scheduling page + pre-fill and tracking
              query parameters. No network I/O.
    EXTERNAL  Asks the scheduling provider for a single-use scheduling
              link (max_event_count=1), then appends the same parameters.

CRITICAL INVARIANTS:
- mint() on the EXTERNAL variant never raises: every provider failure
  (timeout, connection error, HTTP error, unexpected body) is logged and
  served by the LOCAL fallback
- The booking_id tracking parameter is always present in the URL
- The provider gets a single attempt bounded by `timeout`; there are no
  retries before the fallback
"""

from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Optional, Protocol, TypedDict

import requests

from core.logger import get_logger
from pipelines.whatsapp_booking.config import (
    CALENDLY_API_BASE_URL,
    FALLBACK_BOOKING_URL,
    PROVIDER_TIMEOUT_SECONDS,
)
from pipelines.whatsapp_booking.errors import ExternalProviderError
from pipelines.whatsapp_booking.utils.helpers import build_booking_url, retrying_session

logger = get_logger(__name__)


class MintingMode(str, Enum):
    """Which variant produced a link."""

    LOCAL = "local"
    EXTERNAL = "external"


class MintedLink(TypedDict):
    url: str
    minted_by: str
    provider_ref: Optional[str]


class LinkMintingStrategy(Protocol):
    """Protocol for link minting implementations."""

    mode: MintingMode

    def mint(
        self,
        lead: Mapping[str, Any],
        booking_id: str,
        expires_at: datetime,
    ) -> MintedLink:
        """Produce the booking URL for a freshly issued booking id."""
        ...


class LocalOnlyMinter:
    """Builds tracked links on the provider's public scheduling page."""

    mode = MintingMode.LOCAL

    def __init__(self, base_url: str = FALLBACK_BOOKING_URL) -> None:
        self.base_url = base_url

    def mint(
        self,
        lead: Mapping[str, Any],
        booking_id: str,
        expires_at: datetime,
    ) -> MintedLink:
        url = build_booking_url(self.base_url, lead, booking_id, expires_at)
        logger.debug(f"Minted local link for {booking_id}")
        return MintedLink(url=url, minted_by=self.mode.value, provider_ref=None)


class ExternalProviderMinter:
    """
    Mints provider-side single-use scheduling links.

    Attributes:
        api_key: Provider personal access token
        event_type_uri: Event type the scheduling link books into
        timeout: Request timeout in seconds
        fallback: Minter used whenever the provider call fails
    """

    mode = MintingMode.EXTERNAL

    def __init__(
        self,
        api_key: str,
        event_type_uri: str,
        fallback: LocalOnlyMinter | None = None,
        timeout: float = PROVIDER_TIMEOUT_SECONDS,
        api_base_url: str = CALENDLY_API_BASE_URL,
        session: requests.Session | None = None,
    ) -> None:
        self.api_key = api_key
        self.event_type_uri = event_type_uri
        self.fallback = fallback or LocalOnlyMinter()
        self.timeout = timeout
        self.api_base_url = api_base_url.rstrip("/")
        # One attempt: a slow provider falls back to LOCAL after a single timeout
        self.session = session or retrying_session(total=0)

    def _create_scheduling_link(self) -> str:
        """
        Ask the provider for a single-use scheduling link.

        Returns:
            The provider booking URL.

        Raises:
            ExternalProviderError: On any transport or response problem.
        """
        try:
            response = self.session.post(
                f"{self.api_base_url}/scheduling_links",
                json={
                    "max_event_count": 1,
                    "owner": self.event_type_uri,
                    "owner_type": "EventType",
                },
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                timeout=self.timeout,
            )
            response.raise_for_status()
            body = response.json()
        except requests.Timeout as e:
            raise ExternalProviderError(f"Provider timed out after {self.timeout}s") from e
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            raise ExternalProviderError(f"Provider returned HTTP {status}", status_code=status) from e
        except (requests.RequestException, ValueError) as e:
            raise ExternalProviderError(f"Provider request failed: {e}") from e

        resource = body.get("resource") if isinstance(body, dict) else None
        booking_url = resource.get("booking_url") if isinstance(resource, dict) else None
        if not booking_url or not isinstance(booking_url, str):
            raise ExternalProviderError("Provider response missing resource.booking_url")
        return booking_url

    def mint(
        self,
        lead: Mapping[str, Any],
        booking_id: str,
        expires_at: datetime,
    ) -> MintedLink:
        try:
            provider_url = self._create_scheduling_link()
        except ExternalProviderError as e:
            logger.warning(f"Provider link minting failed for {booking_id}: {e}. Using local link.")
            return self.fallback.mint(lead, booking_id, expires_at)

        url = build_booking_url(provider_url, lead, booking_id, expires_at)
        logger.info(f"Minted provider link for {booking_id}")
        return MintedLink(url=url, minted_by=self.mode.value, provider_ref=provider_url)


def build_minter(settings: Mapping[str, Any]) -> LinkMintingStrategy:
    """
    Pick the minting variant from settings.

    EXTERNAL is used only when both the API key and the event type URI
    are configured; otherwise LOCAL.
    """
    local = LocalOnlyMinter(base_url=settings.get("booking_base_url") or FALLBACK_BOOKING_URL)
    api_key = settings.get("calendly_api_key")
    event_type_uri = settings.get("calendly_event_type_uri")

    if api_key and event_type_uri:
        logger.info("Link minting mode: EXTERNAL (provider single-use links)")
        return ExternalProviderMinter(
            api_key=api_key,
            event_type_uri=event_type_uri,
            fallback=local,
            timeout=float(settings.get("provider_timeout_seconds", PROVIDER_TIMEOUT_SECONDS)),
        )

    logger.info("Link minting mode: LOCAL (provider API not configured)")
    return local
