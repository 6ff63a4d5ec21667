"""
Authenticated HTTP delivery of encoded messages to the remote MDM service.

Every request carries HTTP Basic credentials (fixed username, caller
supplied API key). Success is exactly HTTP 200; anything else raises
DeliveryError. There are no retries.
"""

import logging
from typing import Optional
from urllib.parse import quote

import httpx

from mdmbridge.errors import DeliveryError

logger = logging.getLogger(__name__)

DEFAULT_USERNAME = "nanomdm"


class DeliveryClient:
    """
    Client for one remote endpoint.

    Sync deliver() serves the migration driver. Async adeliver() serves the
    command proxy so the outbound call is cancelled with the inbound request.
    Configuration is immutable after construction.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        username: str = DEFAULT_USERNAME,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        if not base_url or not api_key:
            raise ValueError("no URL or API key set")
        self.base_url = base_url.rstrip("/")
        self.username = username
        self._auth = httpx.BasicAuth(username, api_key)
        self._transport = transport
        self._client: Optional[httpx.Client] = None

    def url_for(self, path: Optional[str] = None) -> str:
        if path:
            # path is a single segment (a UDID)
            return f"{self.base_url}/{quote(path, safe='')}"
        return self.base_url

    def _get_client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(auth=self._auth, transport=self._transport)
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def __enter__(self) -> "DeliveryClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    @staticmethod
    def _check(response: httpx.Response) -> bytes:
        if response.status_code != 200:
            raise DeliveryError(response.status_code, response.text)
        return response.content

    def deliver(self, body: bytes, path: Optional[str] = None, method: str = "PUT") -> bytes:
        """
        Send body and return the response body.

        Raises:
            DeliveryError: transport failure or a non-200 response
        """
        url = self.url_for(path)
        logger.debug(f"{method} {url} ({len(body)} bytes)")
        try:
            response = self._get_client().request(method, url, content=body)
        except httpx.HTTPError as e:
            raise DeliveryError(None, str(e)) from e
        return self._check(response)

    async def adeliver(self, body: bytes, path: Optional[str] = None, method: str = "GET") -> bytes:
        """
        Async variant of deliver(); one short-lived connection per call.

        Raises:
            DeliveryError: transport failure or a non-200 response
        """
        url = self.url_for(path)
        logger.debug(f"{method} {url} ({len(body)} bytes)")
        try:
            async with httpx.AsyncClient(auth=self._auth, transport=self._transport) as client:
                response = await client.request(method, url, content=body)
        except httpx.HTTPError as e:
            raise DeliveryError(None, str(e)) from e
        return self._check(response)
