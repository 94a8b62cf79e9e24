"""Request signing for the Bitbucket REST APIs."""
import hashlib
import aiohttp
from bitbucket_discovery.domain.discovery_interfaces import IAuthenticator
from bitbucket_discovery.domain.models import ApiRequest


class BearerTokenAuthenticator(IAuthenticator):
    """Signs requests with an access token (Cloud OAuth or Server HTTP token)."""

    def __init__(self, token: str):
        self._token = token

    @property
    def id(self) -> str:
        # Short digest so the token itself never reaches logs or cache keys.
        return "token-" + hashlib.sha256(self._token.encode()).hexdigest()[:12]

    def configure_request(self, request: ApiRequest) -> None:
        request.headers["Authorization"] = f"Bearer {self._token}"


class BasicAuthenticator(IAuthenticator):
    """Signs requests with a username and (app) password."""

    def __init__(self, username: str, password: str):
        self._username = username
        self._auth = aiohttp.BasicAuth(username, password)

    @property
    def id(self) -> str:
        return self._username

    def configure_request(self, request: ApiRequest) -> None:
        request.headers["Authorization"] = self._auth.encode()
