import httpx

from voicelink.client.errors import ProviderLookupError, TokenRequestError


class TokenClient:
    """Talks to the voice REST API on behalf of the widget."""

    def __init__(
        self,
        rest_url: str,
        *,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.rest_url = rest_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    async def fetch_token(self, provider: str, options: dict | None = None) -> dict:
        """POST token/{provider}; returns the token payload.

        Raises:
            TokenRequestError: Transport failure or a non-2xx response, with
                the server's ``message`` when it sent one.
        """
        try:
            async with self._client() as client:
                response = await client.post(f"{self.rest_url}/token/{provider}", json=options or {})
        except httpx.RequestError as exc:
            raise TokenRequestError(f"Token request failed: {exc}") from exc

        try:
            data = response.json()
        except ValueError:
            data = None

        if not response.is_success:
            message = None
            if isinstance(data, dict):
                message = data.get("message") or data.get("detail")
            raise TokenRequestError(
                message or f"Failed to generate token (HTTP {response.status_code})",
                status_code=response.status_code,
            )
        if not isinstance(data, dict) or not data.get("access_token"):
            raise TokenRequestError("Token response did not include an access token")
        return data

    async def fetch_enabled_provider(self):
        """GET providers; returns the decoded body, or None if it was not JSON."""
        try:
            async with self._client() as client:
                response = await client.get(f"{self.rest_url}/providers")
        except httpx.RequestError as exc:
            raise ProviderLookupError(f"Could not reach the voice API: {exc}") from exc
        try:
            return response.json()
        except ValueError:
            return None
