"""
TrueLayer Provider Client

Speaks the TrueLayer OAuth2 + Data API dialect. No business logic: every method
maps one request to one validated response model.

Documentation: https://docs.truelayer.com/docs/data-api-basics
"""

import httpx
import logging
from typing import Any, Dict, List, Optional, Type, TypeVar
from datetime import date
from urllib.parse import urlencode
from pydantic import BaseModel, ValidationError

from ..errors import ProviderAuthError, ProviderDataError, ProviderSchemaError
from .schemas import (
    TokenResult, InstitutionInfo, ProviderAccount, ProviderBalance, ProviderTransaction
)

logger = logging.getLogger(__name__)

PROVIDER_NAME = "truelayer"
SCOPES = "info accounts balance transactions"

ModelT = TypeVar("ModelT", bound=BaseModel)


class TrueLayerClient:
    """
    HTTP client for the TrueLayer aggregator.

    Constructed explicitly with credentials and endpoints and passed to the
    services that need it. `transport` lets tests swap the network for an
    in-process handler.
    """

    provider_name = PROVIDER_NAME

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        auth_url: str = "https://auth.truelayer.com",
        api_url: str = "https://api.truelayer.com",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.auth_url = auth_url.rstrip("/")
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> "TrueLayerClient":
        return cls(
            client_id=settings.truelayer_client_id,
            client_secret=settings.truelayer_client_secret,
            redirect_uri=settings.truelayer_redirect_uri,
            auth_url=settings.truelayer_auth_url,
            api_url=settings.truelayer_api_url,
            timeout=settings.provider_timeout_seconds,
            transport=transport
        )

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    def build_authorization_url(self, user_id) -> str:
        """
        Build the URL the user is sent to for granting bank access.

        The user id travels as `state` so the callback can be correlated.
        """
        query = urlencode({
            'response_type': 'code',
            'client_id': self.client_id,
            'redirect_uri': self.redirect_uri,
            'scope': SCOPES,
            'state': str(user_id)
        })
        return f"{self.auth_url}/authorize?{query}"

    async def exchange_code(self, code: str) -> TokenResult:
        """
        Exchange an authorization code for access and refresh tokens.

        Raises:
            ProviderAuthError: On any non-2xx response, timeout or transport failure
        """
        return await self._token_request({
            'grant_type': 'authorization_code',
            'client_id': self.client_id,
            'client_secret': self.client_secret,
            'redirect_uri': self.redirect_uri,
            'code': code
        })

    async def refresh_token(self, refresh_token: str) -> TokenResult:
        """
        Obtain a new access token with a refresh-token grant.

        Raises:
            ProviderAuthError: On any non-2xx response, timeout or transport failure
        """
        return await self._token_request({
            'grant_type': 'refresh_token',
            'client_id': self.client_id,
            'client_secret': self.client_secret,
            'refresh_token': refresh_token
        })

    async def fetch_institution_info(self, access_token: str) -> InstitutionInfo:
        results = await self._get(access_token, "/data/v1/info")
        return self._one(InstitutionInfo, results, "info")

    async def fetch_accounts(self, access_token: str) -> List[ProviderAccount]:
        results = await self._get(access_token, "/data/v1/accounts")
        return self._many(ProviderAccount, results, "accounts")

    async def fetch_balance(self, access_token: str, account_id: str) -> ProviderBalance:
        results = await self._get(access_token, f"/data/v1/accounts/{account_id}/balance")
        return self._one(ProviderBalance, results, "balance")

    async def fetch_transactions(
        self,
        access_token: str,
        account_id: str,
        from_date: date,
        to_date: date
    ) -> List[ProviderTransaction]:
        """
        Fetch transactions for one account.

        Args:
            access_token: Valid OAuth access token
            account_id: Aggregator account identifier
            from_date: Start date (inclusive)
            to_date: End date (inclusive)

        Returns:
            Validated transactions in provider order
        """
        results = await self._get(
            access_token,
            f"/data/v1/accounts/{account_id}/transactions",
            params={'from': from_date.isoformat(), 'to': to_date.isoformat()}
        )
        return self._many(ProviderTransaction, results, "transactions")

    async def _token_request(self, form: Dict[str, str]) -> TokenResult:
        grant = form['grant_type']
        try:
            async with self._http() as client:
                # httpx form-encodes `data`
                response = await client.post(f"{self.auth_url}/connect/token", data=form)
        except httpx.TimeoutException as e:
            raise ProviderAuthError(f"Token request ({grant}) timed out") from e
        except httpx.RequestError as e:
            raise ProviderAuthError(f"Token request ({grant}) failed: {e}") from e

        if not response.is_success:
            logger.error(f"TrueLayer token endpoint rejected {grant} grant - Status: {response.status_code}")
            raise ProviderAuthError(
                f"TrueLayer {grant} grant failed with status {response.status_code}",
                status_code=response.status_code,
                body=response.text
            )

        try:
            return TokenResult.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise ProviderAuthError(
                f"Malformed token response for {grant} grant: {e}",
                status_code=response.status_code,
                body=response.text
            ) from e

    async def _get(self, access_token: str, path: str, params: Optional[Dict[str, str]] = None) -> Any:
        try:
            async with self._http() as client:
                response = await client.get(
                    f"{self.api_url}{path}",
                    params=params,
                    headers={
                        'Authorization': f'Bearer {access_token}',
                        'Accept': 'application/json'
                    }
                )
        except httpx.TimeoutException as e:
            raise ProviderDataError(f"GET {path} timed out") from e
        except httpx.RequestError as e:
            raise ProviderDataError(f"GET {path} failed: {e}") from e

        if not response.is_success:
            logger.error(f"TrueLayer API error on {path} - Status: {response.status_code}")
            raise ProviderDataError(
                f"TrueLayer GET {path} failed with status {response.status_code}",
                status_code=response.status_code,
                body=response.text
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderSchemaError(f"GET {path} returned non-JSON body", response.status_code, response.text) from e

        if not isinstance(data, dict) or not isinstance(data.get('results'), list):
            raise ProviderSchemaError(f"GET {path} response has no 'results' list", response.status_code, response.text)
        return data['results']

    @staticmethod
    def _one(model: Type[ModelT], results: List[Any], what: str) -> ModelT:
        if not results:
            raise ProviderSchemaError(f"Empty {what} results from TrueLayer")
        return TrueLayerClient._validate(model, results[0], what)

    @staticmethod
    def _many(model: Type[ModelT], results: List[Any], what: str) -> List[ModelT]:
        return [TrueLayerClient._validate(model, item, what) for item in results]

    @staticmethod
    def _validate(model: Type[ModelT], payload: Any, what: str) -> ModelT:
        try:
            return model.model_validate(payload)
        except ValidationError as e:
            raise ProviderSchemaError(f"Unexpected {what} payload from TrueLayer: {e}") from e
